import asyncio

import pytest

from cuelayer.models.marker import make_marker
from cuelayer.services import cue_scheduler
from cuelayer.services.cue_scheduler import (
    CueState,
    FireMode,
    Schedule,
    cancel_cues,
    plan_cues,
    resolve_fire_mode,
    schedule_cues,
)


class RecorderAnnouncer:
    def __init__(self):
        self.phrases = []

    def announce(self, phrase, *, rate=0.95, pitch=1.0):
        self.phrases.append(phrase)


def test_count_in_lands_bars_before_start():
    marker = make_marker(id=1, name="Verse", start=10, countInBars=1, cueLeadTime="NONE")

    planned = plan_cues([marker], bpm=120)

    assert [(p.kind, p.fire_at) for p in planned] == [("count_in", 8.0), ("cue", 10.0)]


def test_no_count_in_without_bars():
    marker = make_marker(id=1, name="Verse", start=10, countInBars=0)

    planned = plan_cues([marker], bpm=120)

    assert [p.kind for p in planned] == ["cue"]


def test_fire_times_clamp_at_zero():
    marker = make_marker(id=1, name="Intro", start=1.0, countInBars=2, cueLeadTime="2s")

    planned = plan_cues([marker], bpm=120)

    assert [p.fire_at for p in planned] == [0.0, 0.0]


def test_silent_marker_has_no_main_cue_but_keeps_count_in():
    marker = make_marker(id=1, name="Bridge", start=20, cueVoice=False, countInBars=1)

    planned = plan_cues([marker], bpm=120)

    assert [(p.kind, p.mode) for p in planned] == [("count_in", FireMode.SPEAK)]


def test_fire_mode_resolved_once_visual_only_wins():
    both = make_marker(id=1, name="A", start=0, cueVoice=True, cueVisualOnly=True)
    voice = make_marker(id=2, name="B", start=0, cueVoice=True)
    silent = make_marker(id=3, name="C", start=0, cueVoice=False)

    assert resolve_fire_mode(both) is FireMode.VISUAL_ONLY
    assert resolve_fire_mode(voice) is FireMode.SPEAK
    assert resolve_fire_mode(silent) is FireMode.SILENT


def test_plan_for_song_with_two_sections_at_100_bpm():
    markers = [
        make_marker(id=1, start=0, name="Intro", cueVoice=True, cueLeadTime="1BAR"),
        make_marker(id=2, start=30, name="Verse", cueVoice=True, cueLeadTime="1BAR"),
    ]

    planned = plan_cues(markers, bpm=100)

    assert [p.marker.id for p in planned] == [1, 2]
    assert planned[0].fire_at == 0.0
    assert planned[1].fire_at == pytest.approx(27.6)


def test_plan_is_sorted_by_fire_time():
    markers = [
        make_marker(id="late", name="Late", start=20, cueLeadTime="NONE"),
        make_marker(id="early", name="Early", start=5, cueLeadTime="NONE"),
        make_marker(id="counted", name="Counted", start=12, countInBars=2, cueLeadTime="NONE"),
    ]

    planned = plan_cues(markers, bpm=120)

    assert [p.fire_at for p in planned] == [5.0, 8.0, 12.0, 20.0]


def test_plan_from_position_drops_past_actions():
    markers = [
        make_marker(id=1, name="Intro", start=0, cueLeadTime="NONE"),
        make_marker(id=2, name="Verse", start=10, cueLeadTime="NONE"),
        make_marker(id=3, name="Chorus", start=30, cueLeadTime="NONE", countInBars=1),
    ]

    planned = plan_cues(markers, bpm=120, position_sec=12)

    assert [(p.kind, p.marker.id, p.fire_at) for p in planned] == [("count_in", 3, 28.0), ("cue", 3, 30.0)]


@pytest.mark.asyncio
async def test_end_to_end_first_cue_fires_and_cancel_prevents_second():
    announcer = RecorderAnnouncer()
    markers = [
        make_marker(id=1, start=0, name="Intro", cueVoice=True, cueLeadTime="1BAR"),
        make_marker(id=2, start=30, name="Verse", cueVoice=True, cueLeadTime="1BAR"),
    ]

    schedule = schedule_cues(markers, 100, announcer=announcer, cue_text_mode="TYPE_COLON_NAME")
    handles = list(schedule)
    assert len(handles) == 2
    assert handles[1].fire_at == pytest.approx(27.6)

    await asyncio.sleep(0.05)
    assert announcer.phrases == ["Intro"]

    cancel_cues(handles)
    assert handles[0].state is CueState.FIRED
    assert handles[1].state is CueState.CANCELLED
    assert announcer.phrases == ["Intro"]


@pytest.mark.asyncio
async def test_cancel_before_fire_time_suppresses_every_callback():
    announcer = RecorderAnnouncer()
    visuals = []
    counts = []
    markers = [
        make_marker(id=1, name="Verse", start=0.1, cueLeadTime="NONE", countInBars=1),
        make_marker(id=2, name="Tag", start=0.1, cueLeadTime="NONE", cueVisualOnly=True),
    ]

    schedule = schedule_cues(
        markers,
        2400,  # one bar = 0.1s
        announcer=announcer,
        on_visual_cue=lambda marker, when: visuals.append(marker.name),
        on_count_in=lambda marker: counts.append(marker.name),
    )
    # The count-in lands at 0.0 and is already queued; cancel before the loop runs it.
    schedule.cancel_all()
    await asyncio.sleep(0.2)

    assert announcer.phrases == []
    assert visuals == []
    assert counts == []
    assert schedule.pending == []
    assert all(h.state is CueState.CANCELLED for h in schedule)


@pytest.mark.asyncio
async def test_cancel_is_idempotent():
    announcer = RecorderAnnouncer()
    marker = make_marker(id=1, name="Intro", start=0.05, cueLeadTime="NONE")

    schedule = schedule_cues([marker], 120, announcer=announcer)
    cancel_cues(schedule)
    cancel_cues(schedule)
    cancel_cues(schedule.handles)
    assert schedule.cancel_all() == 0

    await asyncio.sleep(0.1)
    assert announcer.phrases == []


@pytest.mark.asyncio
async def test_cancelling_a_fired_handle_is_a_no_op():
    announcer = RecorderAnnouncer()
    schedule = schedule_cues([make_marker(id=1, name="Intro", start=0, cueLeadTime="NONE")], 120, announcer=announcer)

    await asyncio.sleep(0.02)
    handle = schedule.handles[0]

    assert handle.state is CueState.FIRED
    assert handle.cancel() is False
    assert handle.state is CueState.FIRED
    assert announcer.phrases == ["Intro"]


@pytest.mark.asyncio
async def test_actions_fire_in_fire_time_order():
    announcer = RecorderAnnouncer()
    markers = [
        make_marker(id=3, name="Chorus", start=0.09, cueLeadTime="NONE"),
        make_marker(id=1, name="Intro", start=0.01, cueLeadTime="NONE"),
        make_marker(id=2, name="Verse", start=0.05, cueLeadTime="NONE"),
    ]

    schedule_cues(markers, 120, announcer=announcer, cue_text_mode="NAME_ONLY")
    await asyncio.sleep(0.2)

    assert announcer.phrases == ["Intro", "Verse", "Chorus"]


@pytest.mark.asyncio
async def test_cue_text_modes():
    marker = make_marker(id=1, name="Chorus 2", type="Chorus", start=0, cueLeadTime="NONE")
    results = {}
    for mode in ("NAME_ONLY", "TYPE_THEN_NAME", "TYPE_COLON_NAME"):
        announcer = RecorderAnnouncer()
        schedule_cues([marker], 120, announcer=announcer, cue_text_mode=mode)
        await asyncio.sleep(0.02)
        results[mode] = announcer.phrases

    assert results == {
        "NAME_ONLY": ["Chorus 2"],
        "TYPE_THEN_NAME": ["Chorus Chorus 2"],
        "TYPE_COLON_NAME": ["Chorus: Chorus 2"],
    }


@pytest.mark.asyncio
async def test_repeat_twice_speaks_again_after_delay():
    announcer = RecorderAnnouncer()
    marker = make_marker(id=1, name="Bridge", type="Bridge", start=0, cueLeadTime="NONE", cueRepeat="TWICE")

    schedule = schedule_cues([marker], 120, announcer=announcer, repeat_delay=0.05)
    await asyncio.sleep(0.02)
    assert announcer.phrases == ["Bridge: Bridge"]

    await asyncio.sleep(0.08)
    assert announcer.phrases == ["Bridge: Bridge", "Bridge: Bridge"]
    assert len(schedule) == 2


@pytest.mark.asyncio
async def test_cancel_stops_pending_repeat():
    announcer = RecorderAnnouncer()
    marker = make_marker(id=1, name="Bridge", start=0, cueLeadTime="NONE", cueRepeat="TWICE")

    schedule = schedule_cues([marker], 120, announcer=announcer, repeat_delay=0.05)
    await asyncio.sleep(0.02)
    schedule.cancel_all()
    await asyncio.sleep(0.08)

    assert announcer.phrases == ["Bridge"]


@pytest.mark.asyncio
async def test_visual_only_marker_uses_visual_callback():
    announcer = RecorderAnnouncer()
    visuals = []
    marker = make_marker(id=1, name="Chorus", start=0.02, cueVoice=True, cueVisualOnly=True, cueLeadTime="NONE")

    schedule_cues([marker], 120, announcer=announcer, on_visual_cue=lambda m, when: visuals.append((m.name, when)))
    await asyncio.sleep(0.06)

    assert visuals == [("Chorus", 0.02)]
    assert announcer.phrases == []


@pytest.mark.asyncio
async def test_visual_only_count_in_prefixes_name():
    visuals = []
    marker = make_marker(id=1, name="Verse", start=0.1, countInBars=1, cueVisualOnly=True, cueLeadTime="NONE")

    schedule_cues([marker], 2400, on_visual_cue=lambda m, when: visuals.append(m.name))
    await asyncio.sleep(0.15)

    assert visuals == ["Count-in: Verse", "Verse"]
    assert marker.name == "Verse"


@pytest.mark.asyncio
async def test_spoken_count_in_default_phrase():
    announcer = RecorderAnnouncer()
    marker = make_marker(id=1, name="Intro", type="Intro", start=0.1, countInBars=1, cueVoice=False)

    schedule_cues([marker], 2400, announcer=announcer)
    await asyncio.sleep(0.05)

    assert announcer.phrases == ["1, 2, 3, 4, Intro: Intro"]


@pytest.mark.asyncio
async def test_custom_count_in_handler_replaces_announcer():
    announcer = RecorderAnnouncer()
    counted = []
    marker = make_marker(id=1, name="Intro", start=0.1, countInBars=1, cueVoice=False)

    schedule_cues([marker], 2400, announcer=announcer, on_count_in=lambda m: counted.append(m.id))
    await asyncio.sleep(0.05)

    assert counted == [1]
    assert announcer.phrases == []


@pytest.mark.asyncio
async def test_coroutine_callbacks_are_awaited():
    seen = []

    async def on_visual(marker, when):
        await asyncio.sleep(0)
        seen.append(marker.name)

    marker = make_marker(id=1, name="Tag", start=0, cueVisualOnly=True)
    schedule_cues([marker], 120, on_visual_cue=on_visual)
    await asyncio.sleep(0.05)

    assert seen == ["Tag"]


@pytest.mark.asyncio
async def test_failing_callback_does_not_break_schedule():
    announcer = RecorderAnnouncer()

    def explode(marker, when):
        raise RuntimeError("display offline")

    markers = [
        make_marker(id=1, name="Intro", start=0, cueVisualOnly=True),
        make_marker(id=2, name="Verse", start=0.03, cueLeadTime="NONE"),
    ]

    schedule = schedule_cues(markers, 120, announcer=announcer, on_visual_cue=explode)
    await asyncio.sleep(0.08)

    assert announcer.phrases == ["Verse"]
    assert [h.state for h in schedule] == [CueState.FIRED, CueState.FIRED]


@pytest.mark.asyncio
async def test_rearm_from_position_only_arms_remaining_cues():
    announcer = RecorderAnnouncer()
    markers = [
        make_marker(id=1, name="Intro", start=0, cueLeadTime="NONE"),
        make_marker(id=2, name="Verse", start=10.05, cueLeadTime="NONE"),
    ]

    schedule = schedule_cues(markers, 120, announcer=announcer, position_sec=10)
    assert isinstance(schedule, Schedule)
    assert len(schedule) == 1

    await asyncio.sleep(0.1)
    assert announcer.phrases == ["Verse"]


@pytest.mark.asyncio
async def test_schedule_cues_returns_immediately():
    loop = asyncio.get_running_loop()
    marker = make_marker(id=1, name="Outro", start=5, cueLeadTime="NONE")

    before = loop.time()
    schedule = schedule_cues([marker], 120, announcer=RecorderAnnouncer())
    assert loop.time() - before < 0.5
    assert len(schedule.pending) == 1
    schedule.cancel_all()


def test_plan_from_position_clamps_upcoming_section_instead_of_dropping():
    verse = make_marker(id=2, name="Verse", start=30, cueLeadTime="1BAR", countInBars=1)

    planned = plan_cues([verse], bpm=100, position_sec=29.0)

    assert [(p.kind, p.fire_at) for p in planned] == [("count_in", 29.0), ("cue", 29.0)]


def test_plan_from_position_keeps_section_starting_exactly_there():
    chorus = make_marker(id=3, name="Chorus", start=45, cueLeadTime="NONE")

    assert [p.fire_at for p in plan_cues([chorus], bpm=120, position_sec=45)] == [45.0]


def test_continuing_plan_drops_actions_already_fired():
    markers = [
        make_marker(id=1, name="Verse", start=30, cueLeadTime="1BAR", countInBars=2),
        make_marker(id=2, name="Chorus", start=60, cueLeadTime="1BAR"),
    ]

    # Playing through 27.0: the Verse count-in (26.0) has fired, its cue (28.0) has not.
    planned = plan_cues(markers, bpm=120, position_sec=27.0, continuing=True)

    assert [(p.kind, p.marker.id, p.fire_at) for p in planned] == [("cue", 1, 28.0), ("cue", 2, 58.0)]


@pytest.mark.asyncio
async def test_rearm_just_before_a_section_still_cues_it():
    announcer = RecorderAnnouncer()
    verse = make_marker(id=2, name="Verse", start=30, cueLeadTime="1BAR")

    schedule_cues([verse], 100, announcer=announcer, position_sec=29.99)
    await asyncio.sleep(0.05)

    assert announcer.phrases == ["Verse"]


@pytest.mark.asyncio
async def test_coroutine_callback_tasks_are_released_when_done():
    seen = []

    async def on_visual(marker, when):
        await asyncio.sleep(0.01)
        seen.append(marker.name)

    before = len(cue_scheduler._callback_tasks)
    schedule_cues([make_marker(id=1, name="Tag", start=0, cueVisualOnly=True)], 120, on_visual_cue=on_visual)
    await asyncio.sleep(0.005)
    assert len(cue_scheduler._callback_tasks) == before + 1

    await asyncio.sleep(0.05)
    assert seen == ["Tag"]
    assert len(cue_scheduler._callback_tasks) == before
