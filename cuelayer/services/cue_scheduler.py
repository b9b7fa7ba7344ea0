"""Cue Scheduler: turns markers + tempo into one-shot timed actions.

Each marker yields up to two independent actions:

- count-in (``countInBars > 0``): fires ``countInBars`` bars before start
- main cue (speak or visual-only): fires ``lead time`` before start

Fire times are computed once when the schedule is armed, relative to the
playback position passed in (0 = song start). The scheduler does not follow
the transport: callers cancel and re-arm on every pause, seek or resume.
Arming from position p keeps every section that starts at or after p and
clamps its early actions to p, the same way arming from 0 clamps to 0.
Sections that already began are skipped.

Actions fire in nondecreasing fire-time order. Two actions with the same fire
time run in whatever order the event loop's timer queue gives them.
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Iterable, Iterator, List, Optional, Set

from cuelayer.models.marker import Marker, sort_markers
from cuelayer.models.timing import bars_to_seconds, lead_time_to_seconds
from cuelayer.services.voice import (
    DEFAULT_CUE_TEXT_MODE,
    DEFAULT_PITCH,
    DEFAULT_RATE,
    Announcer,
    LoggingAnnouncer,
    count_in_phrase,
    format_cue_text,
)

log = logging.getLogger(__name__)

REPEAT_DELAY = 0.65  # seconds between the two utterances of a TWICE cue

VisualCallback = Callable[[Marker, float], Any]
CountInCallback = Callable[[Marker], Any]

# Strong references to running coroutine callbacks until they finish.
_callback_tasks: Set["asyncio.Future[Any]"] = set()


class FireMode(str, Enum):
    SPEAK = "speak"
    VISUAL_ONLY = "visual_only"
    SILENT = "silent"


class CueState(str, Enum):
    ARMED = "armed"
    FIRED = "fired"
    CANCELLED = "cancelled"


def resolve_fire_mode(marker: Marker) -> FireMode:
    # Visual-only wins when both flags are set.
    if marker.cue_visual_only:
        return FireMode.VISUAL_ONLY
    if marker.cue_voice:
        return FireMode.SPEAK
    return FireMode.SILENT


@dataclass(frozen=True)
class PlannedCue:
    kind: str  # "count_in" | "cue"
    marker: Marker
    fire_at: float  # seconds from song start
    mode: FireMode


def plan_cues(
    markers: Iterable[Marker],
    bpm: Optional[float],
    position_sec: float = 0.0,
    *,
    continuing: bool = False,
) -> List[PlannedCue]:
    """Compute every action a schedule would arm, sorted by fire time.

    Sections starting before ``position_sec`` are skipped; early actions of
    the rest are clamped to ``position_sec``. With ``continuing=True`` playback
    is assumed to have run up to ``position_sec`` already, so actions whose
    fire time has passed are treated as fired and dropped instead of clamped.
    """
    position = max(0.0, float(position_sec or 0.0))
    planned: List[PlannedCue] = []
    for marker in sort_markers(markers):
        start = float(marker.start or 0.0)
        if start < position:
            continue
        mode = resolve_fire_mode(marker)
        actions = []

        if marker.count_in_bars and marker.count_in_bars > 0:
            count_in_mode = FireMode.VISUAL_ONLY if mode is FireMode.VISUAL_ONLY else FireMode.SPEAK
            actions.append(("count_in", start - bars_to_seconds(marker.count_in_bars, bpm), count_in_mode))
        if mode is not FireMode.SILENT:
            actions.append(("cue", start - lead_time_to_seconds(marker.cue_lead_time, bpm), mode))

        for kind, when, action_mode in actions:
            if continuing and when < position:
                continue
            planned.append(PlannedCue(kind, marker, max(position, when), action_mode))

    planned.sort(key=lambda p: p.fire_at)
    return planned


class ScheduledCue:
    """Handle for one armed action. ARMED -> FIRED or ARMED -> CANCELLED, nothing else."""

    def __init__(self, label: str, fire_at: float, callback: Callable[[], Any]):
        self.label = label
        self.fire_at = fire_at
        self.state = CueState.ARMED
        self._callback = callback
        self._timer: Optional[asyncio.TimerHandle] = None

    def __repr__(self) -> str:
        return f"<ScheduledCue {self.label!r} at={self.fire_at:.3f}s {self.state.value}>"

    def arm(self, loop: asyncio.AbstractEventLoop, delay: float) -> None:
        self._timer = loop.call_later(max(0.0, delay), self._fire)

    def cancel(self) -> bool:
        if self.state is not CueState.ARMED:
            return False
        self.state = CueState.CANCELLED
        if self._timer is not None:
            self._timer.cancel()
        return True

    def _fire(self) -> None:
        if self.state is not CueState.ARMED:
            return
        self.state = CueState.FIRED
        log.debug("Cue fired: %s", self.label)
        try:
            result = self._callback()
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                _callback_tasks.add(task)
                task.add_done_callback(_callback_tasks.discard)
                task.add_done_callback(self._report_task_error)
        except Exception:
            # A failing callback must not take down the rest of the schedule.
            log.exception("Cue callback failed: %s", self.label)

    def _report_task_error(self, task: "asyncio.Future[Any]") -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            log.error("Cue callback failed: %s: %s", self.label, exc)


class Schedule:
    """All actions armed by one ``schedule_cues`` call, cancellable as one unit."""

    def __init__(self, loop: asyncio.AbstractEventLoop, position_sec: float = 0.0):
        self.loop = loop
        self.position_sec = position_sec
        self.cancelled = False
        self._handles: List[ScheduledCue] = []

    def __iter__(self) -> Iterator[ScheduledCue]:
        return iter(list(self._handles))

    def __len__(self) -> int:
        return len(self._handles)

    @property
    def handles(self) -> List[ScheduledCue]:
        return list(self._handles)

    @property
    def pending(self) -> List[ScheduledCue]:
        return [h for h in self._handles if h.state is CueState.ARMED]

    @property
    def fired(self) -> List[ScheduledCue]:
        return [h for h in self._handles if h.state is CueState.FIRED]

    def arm(self, label: str, fire_at: float, delay: float, callback: Callable[[], Any]) -> Optional[ScheduledCue]:
        if self.cancelled:
            return None
        handle = ScheduledCue(label, fire_at, callback)
        handle.arm(self.loop, delay)
        self._handles.append(handle)
        return handle

    def cancel_all(self) -> int:
        self.cancelled = True
        count = sum(1 for handle in self._handles if handle.cancel())
        if count:
            log.info("Cancelled %d pending cue(s)", count)
        return count


def schedule_cues(
    markers: Iterable[Marker],
    bpm: Optional[float],
    *,
    announcer: Optional[Announcer] = None,
    on_visual_cue: Optional[VisualCallback] = None,
    on_count_in: Optional[CountInCallback] = None,
    cue_text_mode: str = DEFAULT_CUE_TEXT_MODE,
    position_sec: float = 0.0,
    voice_rate: float = DEFAULT_RATE,
    voice_pitch: float = DEFAULT_PITCH,
    repeat_delay: float = REPEAT_DELAY,
    continuing: bool = False,
    loop: Optional[asyncio.AbstractEventLoop] = None,
) -> Schedule:
    """Arm a timer for every planned action and return the owning Schedule.

    Non-blocking: returns as soon as the timers are on the loop. Callbacks may
    be plain functions or coroutine functions. ``continuing`` drops actions
    already behind ``position_sec`` instead of clamping them.
    """
    loop = loop or asyncio.get_running_loop()
    speaker = announcer or LoggingAnnouncer()
    position = max(0.0, float(position_sec or 0.0))
    schedule = Schedule(loop, position)

    def say(phrase: str) -> None:
        speaker.announce(phrase, rate=voice_rate, pitch=voice_pitch)

    def count_in_action(planned: PlannedCue) -> Callable[[], Any]:
        marker = planned.marker

        def run() -> Any:
            if planned.mode is FireMode.VISUAL_ONLY:
                if on_visual_cue is not None:
                    return on_visual_cue(marker.model_copy(update={"name": f"Count-in: {marker.name}"}), planned.fire_at)
                return None
            if on_count_in is not None:
                return on_count_in(marker)
            say(count_in_phrase(format_cue_text(marker, cue_text_mode)))
            return None

        return run

    def cue_action(planned: PlannedCue) -> Callable[[], Any]:
        marker = planned.marker

        def run() -> Any:
            if planned.mode is FireMode.VISUAL_ONLY:
                if on_visual_cue is not None:
                    return on_visual_cue(marker, planned.fire_at)
                return None
            phrase = format_cue_text(marker, cue_text_mode)
            say(phrase)
            if marker.cue_repeat == "TWICE":
                # Armed into the same schedule so cancel_all() also stops the repeat.
                schedule.arm(f"repeat:{marker.name}", planned.fire_at + repeat_delay, repeat_delay, lambda: say(phrase))
            return None

        return run

    for planned in plan_cues(markers, bpm, position, continuing=continuing):
        action = count_in_action(planned) if planned.kind == "count_in" else cue_action(planned)
        schedule.arm(f"{planned.kind}:{planned.marker.name}", planned.fire_at, planned.fire_at - position, action)

    log.info("Armed %d cue(s) from %.2fs at %s bpm", len(schedule), position, bpm)
    return schedule


def cancel_cues(handles: Iterable[ScheduledCue]) -> None:
    """Cancel every handle. Already fired or cancelled handles are left alone."""
    if isinstance(handles, Schedule):
        handles.cancel_all()
        return
    for handle in list(handles):
        handle.cancel()
