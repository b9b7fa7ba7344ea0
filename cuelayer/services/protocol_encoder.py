"""Marker to device-native cue values (ProPresenter MIDI, lighting colors).

Pure functions only: nothing here touches the network or the clock.
"""

import re
import string
from typing import Any, Mapping, Optional, Union

from pydantic import BaseModel

from cuelayer.models.envelope import ControlChange, MidiCue, Rgb
from cuelayer.models.marker import Marker

SECTION_CC = 20
SLIDE_CC = 21

SECTION_VALUE_MAP = {
    "INTRO": 1,
    "VERSE": 2,
    "CHORUS": 3,
    "BRIDGE": 4,
    "TURNAROUND": 5,
    "TAG": 6,
    "OUTRO": 7,
    "VAMP": 100,
    "HOLD": 100,
    "END": 127,
    "CLEAR": 127,
}

# Checked in this order when free-text section names embed a keyword.
_KEYWORD_FALLBACKS = ("VAMP", "HOLD", "END", "CLEAR")

_NON_ALNUM = re.compile(r"[^A-Z0-9]+")


class MidiConfig(BaseModel):
    """Per-target overrides; unset fields fall back to the defaults."""

    channel: Optional[int] = None
    program: Optional[int] = None
    cc_section: Optional[int] = None
    cc_slide: Optional[int] = None


MidiConfigLike = Union[MidiConfig, Mapping[str, Any], None]


def normalize_type(marker_type: Optional[str]) -> str:
    return _NON_ALNUM.sub("_", str(marker_type or "").upper())


def resolve_section_value(marker_type: Optional[str]) -> int:
    type_key = normalize_type(marker_type)
    if type_key in SECTION_VALUE_MAP:
        return SECTION_VALUE_MAP[type_key]
    for keyword in _KEYWORD_FALLBACKS:
        if keyword in type_key:
            return SECTION_VALUE_MAP[keyword]
    return 0


def coerce_midi_config(midi_config: MidiConfigLike) -> MidiConfig:
    if midi_config is None:
        return MidiConfig()
    if isinstance(midi_config, MidiConfig):
        return midi_config
    aliases = {"ccSection": "cc_section", "ccSlide": "cc_slide"}
    values = {}
    for key, value in midi_config.items():
        field = aliases.get(key, key)
        # Non-integer overrides are ignored rather than rejected.
        if field in MidiConfig.model_fields and isinstance(value, int) and not isinstance(value, bool):
            values[field] = value
    return MidiConfig(**values)


def build_propresenter_midi(
    *,
    song_index: int = 0,
    marker: Optional[Marker],
    midi_config: MidiConfigLike = None,
) -> MidiCue:
    config = coerce_midi_config(midi_config)
    section_value = resolve_section_value(marker.type if marker is not None else None)
    channel = config.channel if config.channel is not None else 0
    program = config.program if config.program is not None else song_index + 1
    cc_section = config.cc_section if config.cc_section is not None else SECTION_CC
    cc_slide = config.cc_slide if config.cc_slide is not None else SLIDE_CC

    lyrics_cue = marker.lyrics_cue if marker is not None else None
    return MidiCue(
        channel=channel,
        program=program,
        cc_section=ControlChange(cc=cc_section, value=section_value),
        cc_slide=ControlChange(cc=cc_slide, value=int(lyrics_cue)) if lyrics_cue is not None else None,
    )


def hex_to_rgb(hex_color: Any) -> Optional[Rgb]:
    """Parse ``#RRGGBB`` (leading ``#`` optional). Returns None on malformed input."""
    if not isinstance(hex_color, str) or not hex_color:
        return None
    clean = hex_color.replace("#", "")
    if len(clean) != 6 or any(ch not in string.hexdigits for ch in clean):
        return None
    return Rgb(r=int(clean[0:2], 16), g=int(clean[2:4], 16), b=int(clean[4:6], 16))
