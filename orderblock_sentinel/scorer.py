from __future__ import annotations

from collections import deque
import logging
import time
from typing import Deque, Dict, List, Optional, Sequence, Tuple

from .config import Config
from .errors import DataUnavailable, ScoringDegenerate
from .indicators import adx, atr_wilder_series, clamp, median, safe_ratio, sma
from .market_data import MarketData
from .models import Candle, PairScore, Quote

log = logging.getLogger("scorer")


class SpreadHistory:
    """Rolling per-symbol spread samples used as the typical-spread baseline."""

    def __init__(self, max_history: int = 500) -> None:
        self.max_history = max(1, int(max_history))
        self._samples: Dict[str, Deque[float]] = {}

    def typical(self, symbol: str) -> Optional[float]:
        samples = self._samples.get(symbol)
        if not samples:
            return None
        return median(list(samples))

    def add(self, symbol: str, spread: float) -> None:
        dq = self._samples.setdefault(symbol, deque(maxlen=self.max_history))
        dq.append(float(spread))


class OpportunityScorer:
    """Scores and ranks configured symbols; the only writer of the ranking snapshot."""

    def __init__(self, cfg: Config):
        self.cfg = cfg
        self._spreads = SpreadHistory(cfg.scoring.spread_history)
        self._ranking: Tuple[PairScore, ...] = ()
        self._excluded: Tuple[str, ...] = ()

    def analyze_all_pairs(self, data: MarketData, *, now_ms: Optional[int] = None) -> List[PairScore]:
        computed_at = int(now_ms) if now_ms is not None else int(time.time() * 1000)
        scored: List[Tuple[str, float, float, float, float]] = []
        excluded: List[str] = []

        for sym in self.cfg.trading.symbols:
            symbol = sym.upper()
            try:
                scored.append((symbol,) + self._score_symbol(symbol, data))
            except DataUnavailable as e:
                excluded.append(symbol)
                log.info("pair_excluded symbol=%s err=%s", symbol, e)

        w = self.cfg.scoring.weights
        rows = []
        for symbol, vol, mom, trend, liq in scored:
            composite = clamp(
                w.volatility * vol
                + w.momentum * mom
                + w.trend_strength * trend
                + w.liquidity * liq
            )
            rows.append((symbol, vol, mom, trend, liq, composite))

        rows.sort(key=lambda r: (-r[5], r[0]))
        ranking = tuple(
            PairScore(
                symbol=r[0],
                volatility=r[1],
                momentum=r[2],
                trend_strength=r[3],
                liquidity=r[4],
                opportunity_score=r[5],
                rank=i + 1,
                computed_at_ms=computed_at,
            )
            for i, r in enumerate(rows)
        )

        # baseline learns after scoring: the current quote is judged against history only
        for sym in self.cfg.trading.symbols:
            q = data.quote(sym.upper())
            if q is not None and q.spread > 0:
                self._spreads.add(sym.upper(), q.spread)

        self._ranking = ranking
        self._excluded = tuple(excluded)
        log.info(
            "pairs_ranked scored=%d excluded=%d top=%s",
            len(ranking),
            len(excluded),
            [(p.symbol, round(p.opportunity_score, 3)) for p in ranking[: self.cfg.trading.max_concurrent_pairs]],
        )
        return list(ranking)

    def get_best_pairs(self) -> List[PairScore]:
        return list(self._ranking[: int(self.cfg.trading.max_concurrent_pairs)])

    def rankings(self) -> List[PairScore]:
        return list(self._ranking)

    def excluded(self) -> List[str]:
        return list(self._excluded)

    def get_pair_score(self, symbol: str) -> Optional[PairScore]:
        sym = symbol.upper()
        for p in self._ranking:
            if p.symbol == sym:
                return p
        return None

    def _score_symbol(self, symbol: str, data: MarketData) -> Tuple[float, float, float, float]:
        s = self.cfg.scoring
        candles = list(data.candles(symbol, s.timeframe, s.lookback_bars))
        need = s.min_bars()
        if len(candles) < need:
            raise DataUnavailable(symbol, s.timeframe, len(candles), need)
        quote = data.quote(symbol)
        if quote is None:
            raise DataUnavailable(symbol, "quote", 0, 1)

        highs = [c.high for c in candles]
        lows = [c.low for c in candles]
        closes = [c.close for c in candles]
        atrs = atr_wilder_series(highs, lows, closes, s.atr_len)
        atr_now = atrs[-1]

        vol = self._guarded(symbol, "volatility", lambda: self._volatility(atr_now, atrs))
        mom = self._guarded(symbol, "momentum", lambda: self._momentum(closes, atr_now))
        trend = self._guarded(symbol, "trend_strength", lambda: self._trend(highs, lows, closes))
        liq = self._guarded(symbol, "liquidity", lambda: self._liquidity(symbol, candles, quote))
        return vol, mom, trend, liq

    def _guarded(self, symbol: str, name: str, fn) -> float:
        try:
            return clamp(fn())
        except ScoringDegenerate as e:
            log.warning("scoring_degenerate symbol=%s score=%s err=%s", symbol, name, e)
            return 0.0

    def _volatility(self, atr_now: Optional[float], atrs: Sequence[Optional[float]]) -> float:
        hist = [a for a in atrs if a is not None]
        avg = (sum(hist) / len(hist)) if hist else None
        ratio = safe_ratio(atr_now, avg, "atr_average")
        return ratio / self.cfg.scoring.volatility_cap_ratio

    def _momentum(self, closes: Sequence[float], atr_now: Optional[float]) -> float:
        ma = sma(closes, self.cfg.scoring.ma_len)
        if ma is None:
            raise ScoringDegenerate("moving_average", ma)
        dist = safe_ratio(closes[-1] - ma, atr_now, "atr")
        return abs(dist) / self.cfg.scoring.momentum_cap_atr

    def _trend(self, highs: Sequence[float], lows: Sequence[float], closes: Sequence[float]) -> float:
        val = adx(highs, lows, closes, self.cfg.scoring.adx_len)
        if val is None:
            raise ScoringDegenerate("adx", val)
        return val / 100.0

    def _typical_spread(self, symbol: str, current: float) -> float:
        pips = self.cfg.scoring.typical_spread_pips.get(symbol)
        if pips is not None:
            return float(pips) * self.cfg.trading.pip_size(symbol)
        learned = self._spreads.typical(symbol)
        return learned if learned is not None else current

    def _liquidity(self, symbol: str, candles: Sequence[Candle], quote: Quote) -> float:
        s = self.cfg.scoring
        current = quote.spread
        if current < 0:
            raise ScoringDegenerate("spread", current)
        typical = self._typical_spread(symbol, current)
        if current == 0:
            spread_part = 1.0
        else:
            ratio = safe_ratio(current, typical, "typical_spread")
            spread_part = 0.0 if ratio > s.abnormal_spread_ratio else min(1.0, 1.0 / ratio)

        vols = [c.volume for c in candles]
        n = max(1, int(s.recent_volume_bars))
        recent = sum(vols[-n:]) / float(min(n, len(vols)))
        avg = sum(vols) / float(len(vols))
        vol_ratio = safe_ratio(recent, avg, "average_volume")
        volume_part = 0.0 if vol_ratio < s.thin_volume_ratio else min(1.0, vol_ratio)

        return spread_part * volume_part
