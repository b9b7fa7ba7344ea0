"""Command line interface for the cue layer."""

import asyncio
import json
from pathlib import Path
from typing import List, Optional

import typer

from cuelayer.config import CueConfig
from cuelayer.custom_logging import setup_logging
from cuelayer.errors import BridgeSendError, MarkerValidationError
from cuelayer.models.envelope import SectionCueEnvelope
from cuelayer.models.marker import Marker, sort_markers, validate_markers
from cuelayer.services.bridge import make_bridge_transport
from cuelayer.services.cue_dispatcher import CueDispatcher
from cuelayer.services.cue_scheduler import plan_cues
from cuelayer.services.voice import CUE_TEXT_MODES, count_in_phrase, format_cue_text

app = typer.Typer()

SEND_TIMEOUT = 2.0  # seconds to wait for the bridge in one-shot commands


def _load_markers(markers_path: Path) -> List[Marker]:
    data = json.loads(markers_path.read_text(encoding="utf-8"))
    if isinstance(data, dict):
        data = data.get("markers", [])
    return sort_markers(validate_markers(Marker.model_validate(item) for item in data))


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, help="Bind address (defaults to CUE_SERVER_HOST)"),
    port: Optional[int] = typer.Option(None, help="Port (defaults to CUE_SERVER_PORT)"),
):
    """Run the cue server."""
    import uvicorn

    from cuelayer.main import app as server_app

    config = CueConfig.from_env()
    server_app.state.config = config
    uvicorn.run(server_app, host=host or config.server_host, port=port or config.server_port)


@app.command()
def plan(
    markers_path: Path = typer.Argument(..., help="JSON file with a marker list (or {'markers': [...]})"),
    bpm: float = typer.Option(120.0, help="Song tempo"),
    mode: str = typer.Option("TYPE_COLON_NAME", help="Cue text mode"),
    position: float = typer.Option(0.0, help="Playback position to arm from (seconds)"),
):
    """Print the cues a schedule would arm, in fire order."""
    if mode not in CUE_TEXT_MODES:
        typer.echo(f"Unknown cue text mode: {mode}")
        raise typer.Exit(2)
    try:
        markers = _load_markers(markers_path)
    except MarkerValidationError as e:
        typer.echo(f"Invalid marker: {e}")
        raise typer.Exit(1)

    planned = plan_cues(markers, bpm, position)
    if not planned:
        typer.echo("No cues to arm")
        return
    for item in planned:
        text = format_cue_text(item.marker, mode)
        if item.kind == "count_in":
            text = count_in_phrase(text)
        typer.echo(f"{item.fire_at:8.3f}s  {item.kind:<8}  {item.mode.value:<11}  {text}")


async def _send_section_cue(config: CueConfig, **kwargs) -> SectionCueEnvelope:
    bridge = make_bridge_transport(config)
    await bridge.start()
    try:
        await bridge.wait_connected(SEND_TIMEOUT)
        envelope = CueDispatcher(bridge).send_section_cue(**kwargs)
        await asyncio.wait_for(bridge.flush(), SEND_TIMEOUT)
        return envelope
    except asyncio.TimeoutError as e:
        raise BridgeSendError("bridge_send_failed", "timed out flushing to the bridge", {"error": str(e)}) from e
    finally:
        await bridge.aclose()


@app.command()
def cue(
    markers_path: Path = typer.Argument(..., help="JSON file with a marker list"),
    marker_id: str = typer.Argument(..., help="Marker to send"),
    song_title: str = typer.Option("Unknown", help="Song title"),
    song_index: int = typer.Option(0, help="Song position in the set"),
    loop_active: bool = typer.Option(False, help="Flag the section as looping"),
):
    """Send one SECTION_CUE for a marker to the bridge."""
    config = CueConfig.from_env()
    setup_logging(config.log_level, config.log_file)
    try:
        markers = _load_markers(markers_path)
    except MarkerValidationError as e:
        typer.echo(f"Invalid marker: {e}")
        raise typer.Exit(1)

    marker = next((m for m in markers if str(m.id) == marker_id), None)
    if marker is None:
        typer.echo(f"Marker not found: {marker_id}")
        raise typer.Exit(1)

    try:
        envelope = asyncio.run(
            _send_section_cue(config, song_title=song_title, marker=marker, song_index=song_index, loop_active=loop_active)
        )
    except BridgeSendError as e:
        typer.echo(f"Send failed: {e}")
        raise typer.Exit(1)
    typer.echo(json.dumps(envelope.to_wire()))


if __name__ == "__main__":
    app()
