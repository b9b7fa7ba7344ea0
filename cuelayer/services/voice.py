"""Spoken cue text and the announcer contract.

Speech itself happens on the performer's device; this side only decides
what phrase to speak and when.
"""

import logging
from typing import Optional, Protocol

from cuelayer.models.marker import Marker

log = logging.getLogger(__name__)

CUE_TEXT_MODES = ("NAME_ONLY", "TYPE_THEN_NAME", "TYPE_COLON_NAME")
DEFAULT_CUE_TEXT_MODE = "TYPE_COLON_NAME"

DEFAULT_RATE = 0.95
DEFAULT_PITCH = 1.0


class Announcer(Protocol):
    def announce(self, phrase: str, *, rate: float = DEFAULT_RATE, pitch: float = DEFAULT_PITCH) -> None:
        ...


class LoggingAnnouncer:
    """Announcer used when no speech output is wired: logs each phrase."""

    def announce(self, phrase: str, *, rate: float = DEFAULT_RATE, pitch: float = DEFAULT_PITCH) -> None:
        log.info("Announce: %s (rate=%s pitch=%s)", phrase, rate, pitch)


def format_cue_text(marker: Optional[Marker], mode: str = DEFAULT_CUE_TEXT_MODE) -> str:
    marker_type = (marker.type if marker is not None else None) or ""
    name = (marker.name if marker is not None else None) or ""
    if mode == "NAME_ONLY":
        return name
    if mode == "TYPE_THEN_NAME":
        return f"{marker_type} {name}".strip() if marker_type else name
    return f"{marker_type}: {name}".strip() if marker_type else name


def count_in_phrase(label: str, beats: int = 4) -> str:
    # "1, 2, 3, 4, Intro"
    counts = ", ".join(str(i + 1) for i in range(beats))
    return f"{counts}, {label}"
