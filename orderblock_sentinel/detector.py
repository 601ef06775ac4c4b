from __future__ import annotations

from dataclasses import replace
import logging
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from .config import Config, DetectorConfig
from .errors import DataUnavailable, ScoringDegenerate
from .indicators import atr_wilder_series, clamp, decay_factor, safe_ratio
from .market_data import MarketData
from .models import BlockDirection, BlockState, Candle, OrderBlock

log = logging.getLogger("detector")

_HOUR_MS = 3_600_000
_EPS = 1e-12


def _is_strict_pivot_low(candles: Sequence[Candle], idx: int, k: int) -> bool:
    if idx - k < 0 or idx + k >= len(candles):
        return False
    pivot_low = candles[idx].low
    for i in range(idx - k, idx + k + 1):
        if i == idx:
            continue
        if pivot_low >= candles[i].low:
            return False
    return True


def _is_strict_pivot_high(candles: Sequence[Candle], idx: int, k: int) -> bool:
    if idx - k < 0 or idx + k >= len(candles):
        return False
    pivot_high = candles[idx].high
    for i in range(idx - k, idx + k + 1):
        if i == idx:
            continue
        if pivot_high <= candles[i].high:
            return False
    return True


def _touches(c: Candle, low: float, high: float) -> bool:
    return c.low <= high and c.high >= low


def count_visits(candles: Sequence[Candle], start: int, end: int, low: float, high: float) -> int:
    """Number of separate runs of bars in [start, end) entering [low, high]."""
    visits = 0
    inside = False
    for i in range(max(0, start), min(end, len(candles))):
        hit = _touches(candles[i], low, high)
        if hit and not inside:
            visits += 1
        inside = hit
    return visits


class OrderBlockCatalog:
    """Per (symbol, timeframe) order block catalog with lifecycle state."""

    def __init__(
        self,
        symbol: str,
        timeframe: str,
        *,
        pip_size: float,
        min_block_pips: float,
        confirmation_bars: int,
        cfg: DetectorConfig,
    ):
        self.symbol = symbol
        self.timeframe = timeframe
        self.pip_size = pip_size
        self.min_block_pips = min_block_pips
        self.confirmation_bars = confirmation_bars
        self.cfg = cfg

        self.blocks: List[OrderBlock] = []
        self.last_open_ms: Optional[int] = None
        self.clock_ms: Optional[int] = None

        self.bos_seen = 0
        self.discarded = 0

    @property
    def max_age_ms(self) -> int:
        return int(self.cfg.max_block_age_hours * _HOUR_MS)

    def live_blocks(self) -> List[OrderBlock]:
        return [b for b in self.blocks if b.is_live]

    def get(self, block_id: str) -> Optional[OrderBlock]:
        for b in self.blocks:
            if b.block_id == block_id:
                return b
        return None

    def update(self, window: Sequence[Candle], *, now_ms: Optional[int] = None) -> List[OrderBlock]:
        """Walk bars newer than the last processed one. Returns blocks confirmed by this call."""
        confirmed: List[OrderBlock] = []

        start = 0
        if self.last_open_ms is not None:
            start = len(window)
            for i, c in enumerate(window):
                if c.open_time_ms > self.last_open_ms:
                    start = i
                    break

        if start < len(window):
            highs = [c.high for c in window]
            lows = [c.low for c in window]
            closes = [c.close for c in window]
            atrs = atr_wilder_series(highs, lows, closes, self.cfg.atr_len)

            for i in range(start, len(window)):
                c = window[i]
                self.clock_ms = c.close_time_ms
                prev = window[i - 1] if i > 0 else None
                confirmed.extend(self._advance(c, prev))
                block = self._detect(window, i, atrs)
                if block is not None:
                    self._add(block)
                self.last_open_ms = c.open_time_ms

        if now_ms is not None and (self.clock_ms is None or now_ms > self.clock_ms):
            self.clock_ms = int(now_ms)
        if self.clock_ms is not None:
            self._expire_aged(self.clock_ms)
            self._refresh_strength(self.clock_ms)
        self._evict()
        return confirmed

    # lifecycle

    def _closes_through(self, b: OrderBlock, close: float) -> bool:
        if b.direction == BlockDirection.DEMAND:
            return close < b.low
        return close > b.high

    def _advance(self, c: Candle, prev: Optional[Candle]) -> List[OrderBlock]:
        confirmed: List[OrderBlock] = []
        tol = self.cfg.touch_tolerance_pips * self.pip_size
        for b in self.blocks:
            if not b.is_live:
                continue
            if self._closes_through(b, c.close):
                b.transition(BlockState.INVALIDATED, c.close_time_ms, "close_through")
                log.info(
                    "block_invalidated id=%s state_was=%s close=%s low=%s high=%s",
                    b.block_id,
                    "confirmed" if b.confirmed_time_ms is not None else "pending",
                    c.close,
                    b.low,
                    b.high,
                )
                continue
            if b.age_ms(c.close_time_ms) > self.max_age_ms:
                b.transition(BlockState.EXPIRED, c.close_time_ms, "age")
                log.info("block_expired id=%s reason=age", b.block_id)
                continue

            zl, zh = b.low - tol, b.high + tol
            if _touches(c, zl, zh) and not (prev is not None and _touches(prev, zl, zh)):
                b.touch_count += 1

            if b.state == BlockState.PENDING:
                b.confirmation_bars += 1
                if b.confirmation_bars >= self.confirmation_bars:
                    b.transition(BlockState.CONFIRMED, c.close_time_ms)
                    confirmed.append(b)
                    log.info(
                        "block_confirmed id=%s bars=%d strength=%.3f touches=%d",
                        b.block_id,
                        b.confirmation_bars,
                        b.strength,
                        b.touch_count,
                    )
        return confirmed

    def _expire_aged(self, at_ms: int) -> None:
        for b in self.blocks:
            if b.is_live and b.age_ms(at_ms) > self.max_age_ms:
                b.transition(BlockState.EXPIRED, at_ms, "age")
                log.info("block_expired id=%s reason=age", b.block_id)

    def _current_strength(self, b: OrderBlock, at_ms: int) -> float:
        base = float(b.extra.get("base_strength", b.strength))
        return clamp(base * decay_factor(b.age_ms(at_ms), self.cfg.strength_half_life_hours))

    def _refresh_strength(self, at_ms: int) -> None:
        for b in self.blocks:
            if b.is_live:
                b.strength = self._current_strength(b, at_ms)

    def _add(self, new: OrderBlock) -> None:
        at_ms = new.created_time_ms
        overlapping = [b for b in self.blocks if b.is_live and b.overlaps(new.low, new.high)]
        for b in overlapping:
            if self._current_strength(b, at_ms) > new.strength:
                self.discarded += 1
                log.info(
                    "block_discarded id=%s reason=weaker_than_overlap other=%s",
                    new.block_id,
                    b.block_id,
                )
                return
        for b in overlapping:
            if self._current_strength(b, at_ms) < new.strength:
                b.transition(BlockState.EXPIRED, at_ms, "superseded")
                log.info("block_expired id=%s reason=superseded by=%s", b.block_id, new.block_id)

        self.blocks.append(new)
        log.info(
            "block_pending id=%s dir=%s low=%s high=%s strength=%.3f touches=%d",
            new.block_id,
            new.direction.value,
            new.low,
            new.high,
            new.strength,
            new.touch_count,
        )

    def _evict(self) -> None:
        excess = len(self.blocks) - int(self.cfg.max_blocks_per_catalog)
        if excess <= 0:
            return
        terminal = sorted((b for b in self.blocks if not b.is_live), key=lambda b: b.created_time_ms)
        live = sorted((b for b in self.blocks if b.is_live), key=lambda b: b.created_time_ms)
        victims = (terminal + live)[:excess]
        drop = {b.block_id for b in victims}
        self.blocks = [b for b in self.blocks if b.block_id not in drop]
        log.debug("blocks_evicted symbol=%s tf=%s count=%d", self.symbol, self.timeframe, len(drop))

    # detection

    def _last_swing_low(self, window: Sequence[Candle], idx: int) -> Optional[float]:
        k = int(self.cfg.swing_strength)
        for j in range(idx - 1 - k, k - 1, -1):
            if _is_strict_pivot_low(window, j, k):
                return window[j].low
        return None

    def _last_swing_high(self, window: Sequence[Candle], idx: int) -> Optional[float]:
        k = int(self.cfg.swing_strength)
        for j in range(idx - 1 - k, k - 1, -1):
            if _is_strict_pivot_high(window, j, k):
                return window[j].high
        return None

    def _find_origin(self, window: Sequence[Candle], idx: int, direction: BlockDirection) -> Optional[int]:
        stop = max(-1, idx - 1 - int(self.cfg.origin_search_bars))
        for j in range(idx - 1, stop, -1):
            c = window[j]
            if direction == BlockDirection.SUPPLY and c.is_bullish:
                return j
            if direction == BlockDirection.DEMAND and c.is_bearish:
                return j
        return None

    def _detect(self, window: Sequence[Candle], idx: int, atrs: List[Optional[float]]) -> Optional[OrderBlock]:
        c = window[idx]
        rng = c.range
        if rng <= 0 or (c.body / rng) <= self.cfg.body_ratio_min:
            return None

        if c.is_bearish:
            swing = self._last_swing_low(window, idx)
            if swing is None or c.close >= swing:
                return None
            direction = BlockDirection.SUPPLY
        elif c.is_bullish:
            swing = self._last_swing_high(window, idx)
            if swing is None or c.close <= swing:
                return None
            direction = BlockDirection.DEMAND
        else:
            return None

        self.bos_seen += 1
        origin_idx = self._find_origin(window, idx, direction)
        if origin_idx is None:
            self.discarded += 1
            log.debug("bos_no_origin symbol=%s tf=%s t=%d", self.symbol, self.timeframe, c.open_time_ms)
            return None

        origin = window[origin_idx]
        low, high = origin.low, origin.high
        height = high - low
        min_height = self.min_block_pips * self.pip_size
        if height + _EPS < min_height:
            self.discarded += 1
            log.debug(
                "bos_zone_too_small symbol=%s tf=%s pips=%.1f min=%.1f",
                self.symbol,
                self.timeframe,
                height / self.pip_size,
                self.min_block_pips,
            )
            return None

        tol = self.cfg.touch_tolerance_pips * self.pip_size
        touches = count_visits(window, 0, origin_idx, low - tol, high + tol)
        if touches < int(self.cfg.min_touches):
            self.discarded += 1
            log.debug(
                "bos_zone_not_liquid symbol=%s tf=%s touches=%d min=%d",
                self.symbol,
                self.timeframe,
                touches,
                self.cfg.min_touches,
            )
            return None

        block_id = f"{self.symbol}:{self.timeframe}:{direction.value}:{origin.open_time_ms}"
        if self.get(block_id) is not None:
            return None

        base, parts = self._base_strength(window, origin_idx, idx, atrs, height)
        extra = dict(parts)
        extra["base_strength"] = base
        extra["bos_time_ms"] = c.open_time_ms
        extra["swing_level"] = swing

        return OrderBlock(
            block_id=block_id,
            symbol=self.symbol,
            timeframe=self.timeframe,
            direction=direction,
            low=low,
            high=high,
            created_time_ms=c.close_time_ms,
            origin_time_ms=origin.open_time_ms,
            strength=clamp(base),
            touch_count=touches,
            extra=extra,
        )

    def _base_strength(
        self,
        window: Sequence[Candle],
        origin_idx: int,
        bos_idx: int,
        atrs: List[Optional[float]],
        height: float,
    ) -> Tuple[float, Dict[str, Optional[float]]]:
        n = int(self.cfg.volume_avg_len)
        prior = [x.volume for x in window[max(0, origin_idx - n):origin_idx]]
        avg_vol = (sum(prior) / len(prior)) if prior else None
        formation_vol = (window[origin_idx].volume + window[bos_idx].volume) / 2.0

        vol_ratio: Optional[float] = None
        try:
            vol_ratio = safe_ratio(formation_vol, avg_vol, "avg_volume")
            vol_part = min(vol_ratio / self.cfg.strength_volume_cap, 1.0)
        except ScoringDegenerate as e:
            log.warning("strength_degenerate symbol=%s tf=%s err=%s", self.symbol, self.timeframe, e)
            vol_part = 0.0

        height_atr: Optional[float] = None
        try:
            height_atr = safe_ratio(height, atrs[bos_idx], "atr")
            atr_part = min(height_atr / self.cfg.strength_atr_cap, 1.0)
        except ScoringDegenerate as e:
            log.warning("strength_degenerate symbol=%s tf=%s err=%s", self.symbol, self.timeframe, e)
            atr_part = 0.0

        base = self.cfg.strength_volume_weight * vol_part + self.cfg.strength_atr_weight * atr_part
        return clamp(base), {"volume_ratio": vol_ratio, "height_atr": height_atr}


class StructureDetector:
    """Owns every (symbol, timeframe) catalog; the only writer of order block state."""

    def __init__(self, cfg: Config):
        self.cfg = cfg
        self._catalogs: Dict[Tuple[str, str], OrderBlockCatalog] = {}
        self._new: Dict[str, List[OrderBlock]] = {}

    def _catalog(self, symbol: str, timeframe: str) -> OrderBlockCatalog:
        key = (symbol, timeframe)
        cat = self._catalogs.get(key)
        if cat is None:
            t = self.cfg.trading
            cat = OrderBlockCatalog(
                symbol,
                timeframe,
                pip_size=t.pip_size(symbol),
                min_block_pips=t.min_block_pips,
                confirmation_bars=t.confirmation_bars,
                cfg=self.cfg.detector,
            )
            self._catalogs[key] = cat
        return cat

    def analyze_symbol(self, symbol: str, data: MarketData, *, now_ms: Optional[int] = None) -> List[OrderBlock]:
        """Advance every timeframe catalog of `symbol`. Returns blocks confirmed in this cycle."""
        sym = symbol.upper()
        t = self.cfg.trading

        windows: List[Tuple[str, Sequence[Candle]]] = []
        for tf in t.timeframes:
            window = list(data.candles(sym, tf, t.lookback_bars))
            if len(window) < t.min_candles:
                self._new[sym] = []
                raise DataUnavailable(sym, tf, len(window), t.min_candles)
            windows.append((tf, window))

        confirmed: List[OrderBlock] = []
        for tf, window in windows:
            confirmed.extend(self._catalog(sym, tf).update(window, now_ms=now_ms))

        self._new[sym] = confirmed
        if confirmed:
            log.info("new_order_blocks symbol=%s count=%d ids=%s", sym, len(confirmed), [b.block_id for b in confirmed])
        return [_view(b) for b in confirmed]

    def begin_cycle(self) -> None:
        """Start a scan cycle: every symbol's new-block flag drops until it is analyzed again."""
        self._new.clear()

    def has_new_order_block(self, symbol: str) -> bool:
        return bool(self._new.get(symbol.upper()))

    def new_order_blocks(self, symbol: str) -> List[OrderBlock]:
        return [_view(b) for b in self._new.get(symbol.upper(), [])]

    def order_blocks(
        self,
        symbol: str,
        timeframe: Optional[str] = None,
        states: Optional[Iterable[BlockState]] = None,
    ) -> List[OrderBlock]:
        sym = symbol.upper()
        wanted = set(states) if states is not None else None
        out: List[OrderBlock] = []
        for (s, tf), cat in self._catalogs.items():
            if s != sym or (timeframe is not None and tf != timeframe):
                continue
            for b in cat.blocks:
                if wanted is None or b.state in wanted:
                    out.append(_view(b))
        out.sort(key=lambda b: (b.created_time_ms, b.block_id))
        return out

    def get_order_block(self, block_id: str) -> Optional[OrderBlock]:
        parts = block_id.split(":")
        if len(parts) < 2:
            return None
        cat = self._catalogs.get((parts[0], parts[1]))
        if cat is None:
            return None
        b = cat.get(block_id)
        return _view(b) if b is not None else None

    def clock_ms(self, symbol: str) -> Optional[int]:
        clocks = [cat.clock_ms for (s, _), cat in self._catalogs.items() if s == symbol.upper() and cat.clock_ms is not None]
        return max(clocks) if clocks else None


def _view(b: OrderBlock) -> OrderBlock:
    """Detached copy handed to readers; catalog state stays private."""
    return replace(b, extra=dict(b.extra))
