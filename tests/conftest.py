from typing import List

import pytest

from orderblock_sentinel.config import Config
from orderblock_sentinel.models import Candle

PIP = 0.0001
BASE = 1.1000
T0 = 1_700_000_000_000
BAR_15M = 900_000


def _c(symbol: str, idx: int, o: float, h: float, l: float, c: float, v: float = 100.0, tf: str = "15m", bar_ms: int = BAR_15M) -> Candle:
    """Candle with prices given in pips above BASE."""
    base = T0 + idx * bar_ms
    return Candle(
        symbol=symbol,
        timeframe=tf,
        open_time_ms=base,
        close_time_ms=base + bar_ms - 1,
        open=BASE + o * PIP,
        high=BASE + h * PIP,
        low=BASE + l * PIP,
        close=BASE + c * PIP,
        volume=v,
    )


_LIQUIDITY_DIP = [
    (40, 42, 30, 38),
    (38, 39, 20, 34),
    (30, 34, 0, 20),  # swing low
    (20, 38, 12, 30),
    (30, 44, 26, 40),
]


def supply_bars(symbol: str = "EURUSD") -> List[Candle]:
    """
    50 bars on 15m. The zone [BASE, BASE+15 pips] is visited twice, a bullish
    origin candle forms it at bar 45 and bar 46 breaks the swing low at BASE.
    Bars 47-49 close inside the zone, which confirms the supply block.
    """
    rows = []
    for _ in range(10):
        rows.append((40, 44, 36, 41, 100.0))
    rows += [r + (100.0,) for r in _LIQUIDITY_DIP]
    for _ in range(10):
        rows.append((40, 44, 36, 41, 100.0))
    rows += [r + (100.0,) for r in _LIQUIDITY_DIP]
    for _ in range(11):
        rows.append((40, 44, 36, 41, 100.0))
    rows += [
        (40, 42, 30, 38, 100.0),
        (38, 39, 24, 30, 100.0),
        (30, 32, 20, 22, 100.0),
        (22, 24, 18, 20, 100.0),
        (2, 15, 0, 12, 300.0),  # origin: last bullish candle before the break
        (12, 14, -20, -17, 300.0),  # break of structure
        (2, 10, -2, 5, 100.0),
        (5, 12, 1, 6, 100.0),
        (6, 13, 2, 8, 100.0),
    ]
    return [_c(symbol, i, *r) for i, r in enumerate(rows)]


def trend_bars(symbol: str, n: int = 60, tf: str = "1h", step: float = 2.0) -> List[Candle]:
    """Steady uptrend with alternating bar sizes; enough bars for ATR/ADX."""
    out = []
    for i in range(n):
        o = i * step
        c = o + step * (1.5 if i % 2 else 0.8)
        out.append(_c(symbol, i, o, c + 1.0, o - 1.0, c, 100.0 + (i % 3) * 10, tf=tf, bar_ms=3_600_000))
    return out


@pytest.fixture
def cfg() -> Config:
    c = Config()
    c.trading.symbols = ["EURUSD"]
    c.trading.timeframes = ["15m"]
    c.telegram.enabled = False
    return c


@pytest.fixture
def bars() -> List[Candle]:
    return supply_bars()


@pytest.fixture
def make_bars():
    return supply_bars


@pytest.fixture
def make_trend():
    return trend_bars
