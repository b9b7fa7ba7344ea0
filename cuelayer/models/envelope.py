"""Cue envelopes sent to the bridge.

Every envelope is an immutable value built fresh per dispatch. ``to_wire``
yields the plain JSON-ready dict with the camelCase keys the bridge reads.
"""

from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


class Rgb(WireModel):
    r: int
    g: int
    b: int


class ControlChange(WireModel):
    cc: int
    value: int


class MidiCue(WireModel):
    channel: int
    program: int
    cc_section: ControlChange
    cc_slide: Optional[ControlChange] = None


class SectionInfo(WireModel):
    id: Union[int, str, None] = None
    name: Optional[str] = None
    type: Optional[str] = None
    start: Optional[float] = None
    end: Optional[float] = None
    lyrics_cue: Optional[int] = None
    lighting_cue: Optional[int] = None
    lighting_color: Optional[str] = None
    lighting_color_rgb: Optional[Rgb] = None
    midi_cue: Optional[int] = None


class Envelope(WireModel):
    type: str


class CueEnvelope(Envelope):
    ts: int  # epoch milliseconds


class LyricSyncEnvelope(Envelope):
    """Lyric-software sync messages; these carry ``timestamp`` rather than ``ts``."""

    timestamp: int  # epoch milliseconds


class SectionCueEnvelope(CueEnvelope):
    type: Literal["SECTION_CUE"] = "SECTION_CUE"
    song_title: str
    song_index: int
    propresenter_file_uri: Optional[str] = None
    service_file_uri: Optional[str] = None
    section: SectionInfo
    midi: MidiCue
    loop_active: bool = False


class LoopStateEnvelope(CueEnvelope):
    type: Literal["LOOP_STATE"] = "LOOP_STATE"
    active: bool
    section_id: Union[int, str, None] = None
    section_name: Optional[str] = None


class PitchShiftEnvelope(CueEnvelope):
    type: Literal["PITCH_SHIFT"] = "PITCH_SHIFT"
    semitones: float
    mode: str


class TransportEnvelope(CueEnvelope):
    type: Literal["TRANSPORT"] = "TRANSPORT"
    action: Optional[str] = None
    position_sec: float
    bpm: float


class CueChangeEnvelope(LyricSyncEnvelope):
    type: Literal["CUE_CHANGE"] = "CUE_CHANGE"
    song_title: Optional[str] = None
    section_name: Optional[str] = None
    section_index: int
    total_sections: int
    software: str
    target: str
    osc_path: str
    midi_channel: int


class SectionRef(WireModel):
    index: int
    name: str


class SongLoadedEnvelope(LyricSyncEnvelope):
    type: Literal["SONG_LOADED"] = "SONG_LOADED"
    song_title: Optional[str] = None
    total_sections: int
    sections: List[SectionRef]
    software: str
    target: str


class MidiClockEnvelope(Envelope):
    type: Literal["MIDI_CLOCK"] = "MIDI_CLOCK"
    action: str  # start | stop | continue
    bpm: float
