import asyncio
import logging
from typing import Any, Dict, Iterable, List, Optional, Union

from cuelayer.config import CueConfig
from cuelayer.models.marker import Marker, sort_markers, validate_markers
from cuelayer.models.timing import DEFAULT_BPM
from cuelayer.services.cue_scheduler import CountInCallback, Schedule, VisualCallback, schedule_cues
from cuelayer.services.protocol_encoder import MidiConfig
from cuelayer.services.tap_tempo import add_tap, bpm_from_taps
from cuelayer.services.voice import CUE_TEXT_MODES, Announcer

log = logging.getLogger(__name__)

MIN_BPM = 20.0
MAX_BPM = 300.0

MarkerLike = Union[Marker, Dict[str, Any]]


class CueSession:
    """Live state for the active song: markers, tempo, cue settings and the armed schedule.

    The scheduler and dispatcher receive these values per call and keep no copy.
    Only one schedule is armed at a time; arming again cancels the previous one
    first, so two arms never share handles.
    """

    def __init__(self, config: Optional[CueConfig] = None):
        self.config = config or CueConfig()
        self.lock = asyncio.Lock()
        self.song_title: Optional[str] = None
        self.song_index: int = 0
        self.markers: List[Marker] = []
        self.bpm: float = DEFAULT_BPM
        self.cue_text_mode: str = self.config.cue_text_mode
        self.midi_config: MidiConfig = MidiConfig()
        self.loop_active: bool = False
        self.is_playing: bool = False
        self.position_sec: float = 0.0
        self.schedule: Optional[Schedule] = None
        self._armed_at: Optional[float] = None  # loop time of the last arm
        self._callbacks: Dict[str, Any] = {}
        self.tap_history: List[float] = []

    async def load_song(
        self,
        song_title: Optional[str],
        markers: Iterable[MarkerLike],
        *,
        bpm: Optional[float] = None,
        song_index: int = 0,
    ) -> List[Marker]:
        """Replace the active song. Raises MarkerValidationError on bad timing."""
        parsed = validate_markers(
            m if isinstance(m, Marker) else Marker.model_validate(m) for m in markers or []
        )
        async with self.lock:
            self._cancel_locked()
            self.song_title = song_title
            self.song_index = int(song_index or 0)
            self.markers = sort_markers(parsed)
            if bpm:
                self.bpm = self._clamp_bpm(bpm)
            self.loop_active = False
            self.is_playing = False
            self.position_sec = 0.0
            log.info("Loaded '%s' with %d marker(s) at %s bpm", song_title, len(self.markers), self.bpm)
            return list(self.markers)

    async def load_markers(self, markers: Iterable[MarkerLike]) -> List[Marker]:
        """Replace the marker list, keeping song title and tempo."""
        async with self.lock:
            title, index = self.song_title, self.song_index
        return await self.load_song(title, markers, song_index=index)

    @staticmethod
    def _clamp_bpm(bpm: Any) -> float:
        try:
            value = float(bpm)
        except (TypeError, ValueError):
            return DEFAULT_BPM
        if value <= 0:
            return DEFAULT_BPM
        return max(MIN_BPM, min(MAX_BPM, value))

    async def set_bpm(self, bpm: Any) -> float:
        async with self.lock:
            self.bpm = self._clamp_bpm(bpm)
            return self.bpm

    async def tap(self, now_ms: Optional[float] = None) -> Optional[int]:
        """Register a tap-tempo tap; updates bpm once two taps exist."""
        async with self.lock:
            self.tap_history = add_tap(self.tap_history, now_ms)
            bpm = bpm_from_taps(self.tap_history)
            if bpm is not None:
                self.bpm = self._clamp_bpm(bpm)
            return bpm

    async def set_cue_text_mode(self, mode: str) -> bool:
        normalized = str(mode or "").strip().upper()
        if normalized not in CUE_TEXT_MODES:
            return False
        async with self.lock:
            self.cue_text_mode = normalized
            return True

    async def set_midi_config(self, midi_config: MidiConfig) -> None:
        async with self.lock:
            self.midi_config = midi_config

    async def set_loop_active(self, active: bool) -> None:
        async with self.lock:
            self.loop_active = bool(active)

    async def get_marker(self, marker_id: Any) -> Optional[Marker]:
        if marker_id is None:
            return None
        async with self.lock:
            needle = str(marker_id)
            return next((m for m in self.markers if str(m.id) == needle), None)

    async def arm(
        self,
        position_sec: float = 0.0,
        *,
        announcer: Optional[Announcer] = None,
        on_visual_cue: Optional[VisualCallback] = None,
        on_count_in: Optional[CountInCallback] = None,
    ) -> Schedule:
        """Cancel whatever is armed and arm the markers from ``position_sec``."""
        async with self.lock:
            self._callbacks = {"announcer": announcer, "on_visual_cue": on_visual_cue, "on_count_in": on_count_in}
            self._cancel_locked()
            self.is_playing = True
            return self._arm_locked(max(0.0, float(position_sec or 0.0)))

    async def update_markers(self, markers: Iterable[MarkerLike]) -> List[Marker]:
        """Replace the markers of the loaded song without touching playback.

        Song title, tempo, loop and play state are kept. While playing, the
        schedule is re-armed from the live position with the callbacks of the
        last ``arm``; cues that already fired are not repeated.
        """
        parsed = validate_markers(
            m if isinstance(m, Marker) else Marker.model_validate(m) for m in markers or []
        )
        async with self.lock:
            self.markers = sort_markers(parsed)
            if self.is_playing:
                position = self._position_locked()
                self._cancel_locked()
                self._arm_locked(position, continuing=True)
            log.info("Updated markers for '%s' (%d marker(s))", self.song_title, len(self.markers))
            return list(self.markers)

    def _arm_locked(self, position: float, continuing: bool = False) -> Schedule:
        self.position_sec = position
        self.schedule = schedule_cues(
            self.markers,
            self.bpm,
            cue_text_mode=self.cue_text_mode,
            position_sec=position,
            voice_rate=self.config.voice_rate,
            voice_pitch=self.config.voice_pitch,
            repeat_delay=self.config.repeat_delay,
            continuing=continuing,
            **self._callbacks,
        )
        self._armed_at = self.schedule.loop.time()
        return self.schedule

    def _position_locked(self) -> float:
        if not self.is_playing or self._armed_at is None:
            return self.position_sec
        return self.position_sec + max(0.0, asyncio.get_running_loop().time() - self._armed_at)

    async def cancel(self, position_sec: Optional[float] = None) -> int:
        """Cancel the armed schedule (pause / stop / before a seek)."""
        async with self.lock:
            if position_sec is not None:
                self.position_sec = max(0.0, float(position_sec))
            else:
                self.position_sec = self._position_locked()
            self.is_playing = False
            return self._cancel_locked()

    def _cancel_locked(self) -> int:
        if self.schedule is None:
            return 0
        count = self.schedule.cancel_all()
        self.schedule = None
        return count

    async def get_status(self) -> Dict[str, Any]:
        async with self.lock:
            return {
                "songTitle": self.song_title,
                "songIndex": self.song_index,
                "bpm": float(self.bpm),
                "cueTextMode": self.cue_text_mode,
                "isPlaying": bool(self.is_playing),
                "positionSec": float(self._position_locked()),
                "loopActive": bool(self.loop_active),
                "markerCount": len(self.markers),
                "pendingCues": len(self.schedule.pending) if self.schedule else 0,
            }
