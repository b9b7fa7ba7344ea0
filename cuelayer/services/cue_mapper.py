"""Cue Mapper: quick auto-assignment of producer cue numbers.

Markers are walked in playback order; any marker without a cue number gets
the next one. Producer-assigned numbers are kept as they are.
"""

from typing import Iterable, List

from cuelayer.models.marker import Marker, sort_markers


def _auto_assign(markers: Iterable[Marker], field: str, start_at: int, step: int) -> List[Marker]:
    cue = start_at
    assigned: List[Marker] = []
    for marker in sort_markers(markers or []):
        if getattr(marker, field) is None:
            marker = marker.model_copy(update={field: cue * step})
            cue += 1
        assigned.append(marker)
    return assigned


def auto_assign_lyrics_cues(markers: Iterable[Marker], start_at: int = 1, step: int = 1) -> List[Marker]:
    return _auto_assign(markers, "lyrics_cue", start_at, step)


def auto_assign_lighting_cues(markers: Iterable[Marker], start_at: int = 1, step: int = 1) -> List[Marker]:
    return _auto_assign(markers, "lighting_cue", start_at, step)
