from __future__ import annotations

from typing import Dict, Iterable, Mapping, Optional, Protocol, Sequence, Tuple

from .models import Candle, Quote


class MarketData(Protocol):
    """Read-only market data source consumed by the engines."""

    def candles(self, symbol: str, timeframe: str, count: int) -> Sequence[Candle]:
        ...

    def quote(self, symbol: str) -> Optional[Quote]:
        ...


class MarketSnapshot:
    """Immutable, ordered candle and quote snapshot for one cycle."""

    def __init__(
        self,
        candles: Optional[Mapping[Tuple[str, str], Iterable[Candle]]] = None,
        quotes: Optional[Mapping[str, Quote]] = None,
        taken_at_ms: int = 0,
    ) -> None:
        series: Dict[Tuple[str, str], Tuple[Candle, ...]] = {}
        for (sym, tf), items in (candles or {}).items():
            ordered = sorted(items, key=lambda c: c.open_time_ms)
            series[(sym.upper(), tf)] = tuple(ordered)
        self._candles = series
        self._quotes: Dict[str, Quote] = {k.upper(): v for k, v in (quotes or {}).items()}
        self.taken_at_ms = int(taken_at_ms)

    def candles(self, symbol: str, timeframe: str, count: int) -> Sequence[Candle]:
        series = self._candles.get((symbol.upper(), timeframe), ())
        if count <= 0:
            return ()
        return series[-count:]

    def quote(self, symbol: str) -> Optional[Quote]:
        return self._quotes.get(symbol.upper())

    def symbols(self) -> Tuple[str, ...]:
        return tuple(sorted({sym for sym, _ in self._candles}))

    def with_quote(self, q: Quote) -> "MarketSnapshot":
        quotes = dict(self._quotes)
        quotes[q.symbol.upper()] = q
        snap = MarketSnapshot(quotes=quotes, taken_at_ms=max(self.taken_at_ms, q.time_ms))
        snap._candles = self._candles
        return snap
