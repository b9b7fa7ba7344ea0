import math
import time
from typing import List, Optional, Sequence

MAX_TAPS = 8


def add_tap(history: Sequence[float], now_ms: Optional[float] = None, max_taps: int = MAX_TAPS) -> List[float]:
    """Append a tap timestamp (ms), keeping only the most recent ``max_taps``."""
    if now_ms is None:
        now_ms = time.time() * 1000.0
    return [*history, float(now_ms)][-max_taps:]


def bpm_from_taps(history: Sequence[float]) -> Optional[int]:
    if len(history) < 2:
        return None
    diffs = [history[i] - history[i - 1] for i in range(1, len(history))]
    avg = sum(diffs) / len(diffs)
    if avg <= 0:
        return None
    bpm = 60000.0 / avg
    if not math.isfinite(bpm):
        return None
    return int(math.floor(bpm + 0.5))
