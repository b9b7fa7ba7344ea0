from typing import Any, Dict, Iterable, List, Optional, Union

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from cuelayer.errors import MarkerValidationError


MARKER_TYPES = (
    "Intro",
    "Verse",
    "Chorus",
    "Bridge",
    "Turnaround",
    "Tag",
    "Vamp",
    "Free",
    "Outro",
    "Custom",
)

MARKER_COLORS: List[Dict[str, str]] = [
    {"key": "gray", "label": "Gray", "hex": "#94A3B8"},
    {"key": "blue", "label": "Blue", "hex": "#60A5FA"},
    {"key": "green", "label": "Green", "hex": "#34D399"},
    {"key": "purple", "label": "Purple", "hex": "#A78BFA"},
    {"key": "orange", "label": "Orange", "hex": "#FB923C"},
    {"key": "red", "label": "Red", "hex": "#F87171"},
    {"key": "pink", "label": "Pink", "hex": "#F472B6"},
]

_DEFAULT_COLOR_BY_TYPE = {
    "Intro": "gray",
    "Verse": "blue",
    "Chorus": "green",
    "Bridge": "purple",
    "Turnaround": "orange",
    "Tag": "orange",
    "Vamp": "red",
    "Free": "red",
    "Outro": "gray",
}

CUE_REPEATS = ("ONCE", "TWICE")


class Marker(BaseModel):
    """A timed section of a song, the unit of cueing.

    Attributes are snake_case; JSON uses the camelCase keys producers send
    (``cueVoice``, ``countInBars``, ``lyricsCue`` ...).
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    id: Union[int, str]
    name: str
    start: float  # seconds from song start
    end: Optional[float] = None
    type: Optional[str] = None
    color_key: Optional[str] = None
    cue_voice: bool = True
    cue_visual_only: bool = False
    cue_lead_time: Optional[str] = "1BAR"
    cue_repeat: str = "ONCE"
    count_in_bars: int = 0
    lyrics_cue: Optional[int] = None
    lighting_cue: Optional[int] = None
    lighting_color: Optional[str] = None
    midi_cue: Optional[int] = None

    def resolved_color_key(self) -> str:
        return self.color_key or default_color_for_type(self.type)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


def default_color_for_type(marker_type: Optional[str]) -> str:
    return _DEFAULT_COLOR_BY_TYPE.get(marker_type or "", "blue")


def color_hex(color_key: Optional[str]) -> Optional[str]:
    for color in MARKER_COLORS:
        if color["key"] == color_key:
            return color["hex"]
    return None


def make_marker(**fields: Any) -> Marker:
    """Build a marker from camelCase or snake_case fields.

    Only field presence is checked here; timing is checked by ``validate_marker``.
    """
    return Marker.model_validate(fields)


def sort_markers(markers: Iterable[Marker]) -> List[Marker]:
    """Return markers ascending by start; equal starts keep their input order."""
    return sorted(markers, key=lambda m: m.start)


def validate_marker(marker: Marker) -> Marker:
    if marker.start < 0:
        raise MarkerValidationError(
            "negative_start",
            f"marker '{marker.name}' starts before the song",
            {"id": marker.id, "start": marker.start},
        )
    if marker.end is not None and marker.start >= marker.end:
        raise MarkerValidationError(
            "start_not_before_end",
            f"marker '{marker.name}' must start before it ends",
            {"id": marker.id, "start": marker.start, "end": marker.end},
        )
    if marker.count_in_bars < 0:
        raise MarkerValidationError(
            "negative_count_in",
            f"marker '{marker.name}' has a negative count-in",
            {"id": marker.id, "countInBars": marker.count_in_bars},
        )
    return marker


def validate_markers(markers: Iterable[Marker]) -> List[Marker]:
    return [validate_marker(m) for m in markers]
