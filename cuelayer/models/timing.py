from typing import Optional

BEATS_PER_BAR = 4
DEFAULT_BPM = 120.0

LEAD_TIMES = ("NONE", "0.5s", "1s", "2s", "1BAR")

_FIXED_LEAD_SECONDS = {
    "NONE": 0.0,
    "0.5s": 0.5,
    "1s": 1.0,
    "2s": 2.0,
}


def seconds_per_bar(bpm: Optional[float]) -> float:
    beat = 60.0 / float(bpm or DEFAULT_BPM)
    return beat * BEATS_PER_BAR


def bars_to_seconds(bars: Optional[int], bpm: Optional[float]) -> float:
    return seconds_per_bar(bpm) * int(bars or 0)


def lead_time_to_seconds(lead_time: Optional[str], bpm: Optional[float]) -> float:
    """Resolve a cue lead-time token to seconds before the marker start.

    Unknown tokens resolve to 0 so a stray value never shifts a cue.
    """
    if not lead_time:
        return 0.0
    if lead_time == "1BAR":
        return seconds_per_bar(bpm)
    return _FIXED_LEAD_SECONDS.get(lead_time, 0.0)
