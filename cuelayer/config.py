"""Configuration for the cue service."""

import os
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field

from cuelayer.services.voice import CUE_TEXT_MODES, DEFAULT_PITCH, DEFAULT_RATE

BRIDGE_TRANSPORTS = ("websocket", "udp")


class CueConfig(BaseModel):
    """Runtime settings for the bridge, the server and spoken cues."""

    # Bridge
    bridge_host: str = Field(default="127.0.0.1")
    bridge_port: int = Field(default=7070)
    bridge_transport: str = Field(default="websocket")  # websocket | udp
    bridge_debug: bool = Field(default=False)

    # Server
    server_host: str = Field(default="0.0.0.0")
    server_port: int = Field(default=5001)

    # Voice cues
    cue_text_mode: str = Field(default="TYPE_COLON_NAME")
    voice_rate: float = Field(default=DEFAULT_RATE)
    voice_pitch: float = Field(default=DEFAULT_PITCH)
    repeat_delay: float = Field(default=0.65)  # seconds between TWICE utterances

    # Logging
    log_level: str = Field(default="INFO")
    log_file: Optional[Path] = Field(default=None)

    @classmethod
    def from_env(cls) -> "CueConfig":
        """Create config from environment variables."""
        mode = os.getenv("CUE_TEXT_MODE", "TYPE_COLON_NAME").strip().upper()
        if mode not in CUE_TEXT_MODES:
            mode = "TYPE_COLON_NAME"
        transport = os.getenv("CUE_BRIDGE_TRANSPORT", "websocket").strip().lower()
        if transport not in BRIDGE_TRANSPORTS:
            transport = "websocket"
        log_file = os.getenv("CUE_LOG_FILE") or None
        return cls(
            bridge_host=os.getenv("CUE_BRIDGE_HOST", "127.0.0.1"),
            bridge_port=int(os.getenv("CUE_BRIDGE_PORT", "7070")),
            bridge_transport=transport,
            bridge_debug=os.getenv("CUE_BRIDGE_DEBUG", "0").strip().lower() in {"1", "true", "yes", "on"},
            server_host=os.getenv("CUE_SERVER_HOST", "0.0.0.0"),
            server_port=int(os.getenv("CUE_SERVER_PORT", "5001")),
            cue_text_mode=mode,
            voice_rate=float(os.getenv("CUE_VOICE_RATE", "0.95")),
            voice_pitch=float(os.getenv("CUE_VOICE_PITCH", "1.0")),
            repeat_delay=float(os.getenv("CUE_REPEAT_DELAY", "0.65")),
            log_level=os.getenv("CUE_LOG_LEVEL", "INFO").strip().upper(),
            log_file=Path(log_file) if log_file else None,
        )
