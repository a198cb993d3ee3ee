# utils/sparkline.py
from __future__ import annotations
from typing import Sequence

BARS = "▁▂▃▄▅▆▇█"


def _downsample(values: Sequence[float], width: int) -> list[float]:
    if len(values) <= width:
        return list(values)
    step = len(values) / width
    return [values[int(i * step)] for i in range(width)]


def sparkline(values: Sequence[float] | None, width: int = 24) -> str:
    """Render a series as unicode block characters; empty string if no data."""
    if not values:
        return ""
    pts = _downsample([float(v) for v in values if v is not None], width)
    if not pts:
        return ""
    lo, hi = min(pts), max(pts)
    span = hi - lo
    if span == 0:
        return BARS[len(BARS) // 2] * len(pts)
    top = len(BARS) - 1
    return "".join(BARS[int(round((p - lo) / span * top))] for p in pts)
