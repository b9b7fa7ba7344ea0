"""Cue Dispatcher: builds cue envelopes and hands them to the bridge.

Targets behind the bridge:
- ProPresenter / lyric software (MIDI program + CC, OSC slide paths)
- Lighting consoles (cue numbers, RGB colors)
- MIDI clock followers (start / stop / continue)

The dispatcher keeps no state between calls. Sends are fire-and-forget and a
failing transport propagates to the caller, which decides how to surface it.
"""

import logging
import time
from typing import Callable, Iterable, Optional, Union

from pydantic import BaseModel

from cuelayer.models.envelope import (
    CueChangeEnvelope,
    Envelope,
    LoopStateEnvelope,
    MidiClockEnvelope,
    PitchShiftEnvelope,
    SectionCueEnvelope,
    SectionInfo,
    SectionRef,
    SongLoadedEnvelope,
    TransportEnvelope,
)
from cuelayer.models.marker import Marker
from cuelayer.services.bridge import BridgeTransport
from cuelayer.services.protocol_encoder import MidiConfigLike, build_propresenter_midi, hex_to_rgb

log = logging.getLogger(__name__)


class LyricTarget(BaseModel):
    """Which lyric software the bridge should speak to for CUE_CHANGE / SONG_LOADED."""

    software: str = "propresenter7"
    target: str = ""
    osc_path: str = ""  # custom OSC path override
    midi_channel: int = 1


def epoch_ms() -> int:
    return int(time.time() * 1000)


class CueDispatcher:
    def __init__(self, transport: BridgeTransport, clock: Optional[Callable[[], int]] = None):
        self.transport = transport
        self.clock = clock or epoch_ms

    def _send(self, envelope: Envelope) -> Envelope:
        log.debug("Dispatching %s", envelope.type)
        self.transport.send(envelope)
        return envelope

    def send_section_cue(
        self,
        *,
        song_title: Optional[str] = None,
        marker: Optional[Marker] = None,
        song_index: int = 0,
        midi_config: MidiConfigLike = None,
        loop_active: bool = False,
        propresenter_file_uri: Optional[str] = None,
        service_file_uri: Optional[str] = None,
    ) -> Optional[SectionCueEnvelope]:
        # No selection yet is a normal transient UI state, not an error.
        if marker is None:
            return None
        midi = build_propresenter_midi(song_index=song_index, marker=marker, midi_config=midi_config)
        envelope = SectionCueEnvelope(
            song_title=song_title or "Unknown",
            song_index=song_index,
            propresenter_file_uri=propresenter_file_uri,
            service_file_uri=service_file_uri,
            section=SectionInfo(
                id=marker.id,
                name=marker.name,
                type=marker.type,
                start=marker.start,
                end=marker.end,
                lyrics_cue=marker.lyrics_cue,
                lighting_cue=marker.lighting_cue,
                lighting_color=marker.lighting_color,
                lighting_color_rgb=hex_to_rgb(marker.lighting_color),
                midi_cue=marker.midi_cue,
            ),
            midi=midi,
            loop_active=bool(loop_active),
            ts=self.clock(),
        )
        return self._send(envelope)

    def send_loop_state(self, *, active: bool, marker: Optional[Marker] = None) -> LoopStateEnvelope:
        envelope = LoopStateEnvelope(
            active=bool(active),
            section_id=marker.id if marker is not None else None,
            section_name=(marker.name or None) if marker is not None else None,
            ts=self.clock(),
        )
        return self._send(envelope)

    def send_pitch_shift(self, *, semitones: float = 0, mode: Optional[str] = None) -> PitchShiftEnvelope:
        envelope = PitchShiftEnvelope(semitones=semitones, mode=mode or "OFF", ts=self.clock())
        return self._send(envelope)

    def send_transport(
        self,
        *,
        action: Optional[str],
        position_sec: Optional[float] = None,
        bpm: Optional[float] = None,
    ) -> TransportEnvelope:
        # Actions are not validated here; the bridge rejects unknown ones.
        envelope = TransportEnvelope(
            action=action,
            position_sec=position_sec if position_sec is not None else 0,
            bpm=bpm if bpm is not None else 120,
            ts=self.clock(),
        )
        return self._send(envelope)

    def send_cue_change(
        self,
        *,
        song_title: Optional[str],
        section_name: Optional[str],
        section_index: int,
        total_sections: int,
        lyric_target: Optional[LyricTarget] = None,
    ) -> CueChangeEnvelope:
        target = lyric_target or LyricTarget()
        envelope = CueChangeEnvelope(
            song_title=song_title,
            section_name=section_name,
            section_index=section_index,
            total_sections=total_sections,
            software=target.software or "propresenter7",
            target=target.target or "",
            osc_path=target.osc_path or "",
            midi_channel=target.midi_channel or 1,
            timestamp=self.clock(),
        )
        return self._send(envelope)

    def send_song_loaded(
        self,
        *,
        song_title: Optional[str],
        sections: Iterable[Union[Marker, str, None]] = (),
        lyric_target: Optional[LyricTarget] = None,
    ) -> SongLoadedEnvelope:
        target = lyric_target or LyricTarget()
        refs = []
        for index, section in enumerate(sections):
            name = section.name if isinstance(section, Marker) else section
            refs.append(SectionRef(index=index, name=name or f"Section {index + 1}"))
        envelope = SongLoadedEnvelope(
            song_title=song_title,
            total_sections=len(refs),
            sections=refs,
            software=target.software or "propresenter7",
            target=target.target or "",
            timestamp=self.clock(),
        )
        return self._send(envelope)

    def send_midi_clock(self, *, action: str, bpm: Optional[float] = None) -> MidiClockEnvelope:
        """Tell the bridge to start, stop or continue its MIDI clock at ``bpm``."""
        envelope = MidiClockEnvelope(action=action, bpm=bpm if bpm is not None else 120)
        return self._send(envelope)
