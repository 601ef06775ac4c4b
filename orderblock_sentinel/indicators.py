from __future__ import annotations
from typing import List, Optional, Sequence
import math

from .errors import ScoringDegenerate


def clamp(x: float, lo: float = 0.0, hi: float = 1.0) -> float:
    if x != x:  # NaN
        return lo
    return max(lo, min(hi, x))


def safe_ratio(num: Optional[float], den: Optional[float], label: str) -> float:
    """num / den, raising ScoringDegenerate on a zero, missing or non-finite denominator."""
    if den is None or not math.isfinite(den) or den == 0:
        raise ScoringDegenerate(label, den)
    if num is None or not math.isfinite(num):
        raise ScoringDegenerate(label, num)
    return num / den


def rma_next(prev: Optional[float], x: float, length: int) -> float:
    """Wilder's RMA."""
    if length <= 1:
        return x
    if prev is None:
        return x
    alpha = 1.0 / float(length)
    return prev + alpha * (x - prev)


def sma(values: Sequence[float], length: int) -> Optional[float]:
    if length <= 0 or len(values) < length:
        return None
    return sum(values[-length:]) / float(length)


def median(values: Sequence[float]) -> Optional[float]:
    if not values:
        return None
    arr = sorted(values)
    n = len(arr)
    mid = n // 2
    if n % 2:
        return float(arr[mid])
    return (arr[mid - 1] + arr[mid]) / 2.0


def true_range(high: float, low: float, prev_close: float) -> float:
    return max(high - low, abs(high - prev_close), abs(low - prev_close))


def true_ranges(highs: Sequence[float], lows: Sequence[float], closes: Sequence[float]) -> List[float]:
    out: List[float] = []
    for i in range(len(closes)):
        prev_close = closes[i - 1] if i > 0 else closes[i]
        out.append(true_range(highs[i], lows[i], prev_close))
    return out


def atr_wilder_series(
    highs: Sequence[float],
    lows: Sequence[float],
    closes: Sequence[float],
    length: int = 14,
) -> List[Optional[float]]:
    """Wilder ATR per bar with an SMA seed at the first full window; None before that."""
    trs = true_ranges(highs, lows, closes)
    out: List[Optional[float]] = []
    prev: Optional[float] = None
    for i, tr in enumerate(trs):
        if length <= 0 or i + 1 < length:
            out.append(None)
            continue
        if prev is None:
            prev = sum(trs[i + 1 - length: i + 1]) / float(length)
        else:
            prev = rma_next(prev, tr, length)
        out.append(prev)
    return out


def adx(highs: Sequence[float], lows: Sequence[float], closes: Sequence[float], length: int = 14) -> Optional[float]:
    """Wilder ADX (0-100) of the last bar, or None without 2*length+1 bars."""
    n = len(closes)
    if length <= 0 or n < 2 * length + 1:
        return None

    trs: List[float] = []
    plus_dm: List[float] = []
    minus_dm: List[float] = []
    for i in range(1, n):
        up = highs[i] - highs[i - 1]
        down = lows[i - 1] - lows[i]
        plus_dm.append(up if (up > down and up > 0) else 0.0)
        minus_dm.append(down if (down > up and down > 0) else 0.0)
        trs.append(true_range(highs[i], lows[i], closes[i - 1]))

    s_tr = sum(trs[:length])
    s_pdm = sum(plus_dm[:length])
    s_mdm = sum(minus_dm[:length])

    def _dx() -> float:
        if s_tr <= 0:
            return 0.0
        pdi = 100.0 * s_pdm / s_tr
        mdi = 100.0 * s_mdm / s_tr
        total = pdi + mdi
        return 0.0 if total <= 0 else 100.0 * abs(pdi - mdi) / total

    dxs = [_dx()]
    for i in range(length, len(trs)):
        s_tr = s_tr - s_tr / length + trs[i]
        s_pdm = s_pdm - s_pdm / length + plus_dm[i]
        s_mdm = s_mdm - s_mdm / length + minus_dm[i]
        dxs.append(_dx())

    val = sum(dxs[:length]) / float(length)
    for x in dxs[length:]:
        val = rma_next(val, x, length)
    return val


def decay_factor(age_ms: int, half_life_hours: float) -> float:
    """Exponential age decay, 1.0 at age zero, 0.5 after one half-life."""
    if half_life_hours <= 0:
        return 1.0
    age_h = max(0.0, age_ms / 3_600_000.0)
    return 0.5 ** (age_h / float(half_life_hours))
