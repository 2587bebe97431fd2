from __future__ import annotations
import math
from typing import Iterable, List, Optional

def normalize_ms(value) -> Optional[float]:
    """Finite, non-negative number or None."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    try:
        value = float(value)
    except OverflowError:
        return None
    if not math.isfinite(value) or value < 0:
        return None
    return value

def normalize_text(value) -> Optional[str]:
    if not isinstance(value, str):
        return None
    trimmed = value.strip()
    return trimmed or None

def round_metric(value: Optional[float], ndigits: int = 2) -> Optional[float]:
    if value is None or not math.isfinite(value):
        return None
    return round(float(value), ndigits)

def mean(values: Iterable[float]) -> Optional[float]:
    vals = list(values)
    if not vals:
        return None
    return sum(vals) / len(vals)

def percentile(values: List[float], p: float) -> Optional[float]:
    """Nearest-rank percentile: sorted[ceil(p/100 * n) - 1], clamped."""
    if not values:
        return None
    ordered = sorted(values)
    idx = math.ceil((p / 100.0) * len(ordered)) - 1
    idx = max(0, min(len(ordered) - 1, idx))
    return ordered[idx]
