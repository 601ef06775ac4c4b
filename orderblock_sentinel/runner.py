from __future__ import annotations

import asyncio
import logging
import time
from typing import Dict, List, Optional, Sequence, Tuple

from .config import Config, validate_config
from .detector import StructureDetector
from .errors import DataUnavailable
from .formatters import format_best_pairs, format_signal
from .market_data import MarketData, MarketSnapshot
from .models import Candle, Quote, Signal
from .notifier.telegram import TelegramNotifier
from .providers.binance import BinanceProvider
from .scorer import OpportunityScorer
from .signals import SignalGenerator, TargetProvider

log = logging.getLogger("runner")


def _ms_now() -> int:
    return int(time.time() * 1000)


class SentinelRunner:
    """Owns the three engines and drives the scan cycle and the per-tick trigger."""

    def __init__(
        self,
        cfg: Config,
        *,
        provider: Optional[BinanceProvider] = None,
        notifier: Optional[TelegramNotifier] = None,
        target_provider: Optional[TargetProvider] = None,
    ):
        validate_config(cfg)
        self.cfg = cfg
        self.provider = provider or BinanceProvider(
            market=cfg.provider.market,
            rest_timeout_s=cfg.provider.rest_timeout_s,
            ws_heartbeat_s=cfg.provider.ws_heartbeat_s,
        )
        self.tg = notifier or TelegramNotifier(
            token=cfg.telegram.token,
            chat_ids=cfg.telegram.chat_ids,
            disable_web_page_preview=cfg.telegram.disable_web_page_preview,
            enabled=cfg.telegram.enabled,
        )

        self.detector = StructureDetector(cfg)
        self.scorer = OpportunityScorer(cfg)
        self.signals = SignalGenerator(cfg, self.detector, target_provider=target_provider)

        self._active: Tuple[str, ...] = ()
        self._last_price: Dict[str, float] = {}
        self._metrics = {
            "cycles_total": 0,
            "symbol_failures_total": 0,
            "signals_total": 0,
            "delivered_total": 0,
        }

    @property
    def active_symbols(self) -> Tuple[str, ...]:
        return self._active

    # synchronous core drive

    def scan_cycle(self, data: MarketData, *, now_ms: Optional[int] = None) -> List[Signal]:
        """One full cycle: rank pairs, rescan the best ones, trigger signals on new blocks."""
        self._metrics["cycles_total"] += 1
        self.detector.begin_cycle()
        self.scorer.analyze_all_pairs(data, now_ms=now_ms)
        best = self.scorer.get_best_pairs()
        self._active = tuple(p.symbol for p in best)

        out: List[Signal] = []
        for pair in best:
            sym = pair.symbol
            try:
                self.detector.analyze_symbol(sym, data, now_ms=now_ms)
            except DataUnavailable as e:
                self._metrics["symbol_failures_total"] += 1
                log.warning("scan_symbol_skipped symbol=%s err=%s", sym, e)
                continue

            if not self.detector.has_new_order_block(sym):
                continue
            price = self._price(sym, data)
            if price is None:
                log.warning("scan_no_price symbol=%s", sym)
                continue
            out.extend(self.signals.process_signal(sym, price, now_ms=now_ms))

        self._metrics["signals_total"] += len(out)
        log.info(
            "scan_cycle_done cycle=%d active=%s signals=%d failures_total=%d",
            self._metrics["cycles_total"],
            list(self._active),
            len(out),
            self._metrics["symbol_failures_total"],
        )
        return out

    def on_tick(self, symbol: str, price: float, *, now_ms: Optional[int] = None) -> List[Signal]:
        """Per-tick trigger: re-evaluate confirmed blocks of an active symbol at `price`."""
        sym = symbol.upper()
        self._last_price[sym] = float(price)
        if sym not in self._active:
            return []
        out = self.signals.process_signal(sym, price, now_ms=now_ms)
        self._metrics["signals_total"] += len(out)
        return out

    def _price(self, symbol: str, data: MarketData) -> Optional[float]:
        q = data.quote(symbol)
        if q is not None:
            return q.mid
        if symbol in self._last_price:
            return self._last_price[symbol]
        for tf in self.cfg.trading.timeframes:
            bars = data.candles(symbol, tf, 1)
            if bars:
                return bars[-1].close
        return None

    # async host

    def _timeframes_to_fetch(self) -> List[str]:
        tfs = list(self.cfg.trading.timeframes)
        if self.cfg.scoring.timeframe not in tfs:
            tfs.append(self.cfg.scoring.timeframe)
        return tfs

    async def fetch_snapshot(self) -> MarketSnapshot:
        symbols = [s.upper() for s in self.cfg.trading.symbols]
        tfs = self._timeframes_to_fetch()
        n = max(int(self.cfg.trading.lookback_bars), int(self.cfg.scoring.lookback_bars))

        sem = asyncio.Semaphore(max(1, int(self.cfg.provider.fetch_concurrency)))
        candles: Dict[Tuple[str, str], List[Candle]] = {}
        quotes: Dict[str, Quote] = {}

        async def _klines(sym: str, tf: str):
            try:
                async with sem:
                    candles[(sym, tf)] = await self.provider.fetch_klines(sym, tf, n)
                return None
            except Exception as e:
                return (sym, tf, repr(e))

        async def _quote(sym: str):
            try:
                async with sem:
                    q = await self.provider.fetch_quote(sym)
                if q is not None:
                    quotes[sym] = q
                return None
            except Exception as e:
                return (sym, "quote", repr(e))

        jobs = [_klines(sym, tf) for sym in symbols for tf in tfs] + [_quote(sym) for sym in symbols]
        results = await asyncio.gather(*jobs, return_exceptions=False)
        failures = [r for r in results if r is not None]
        if failures:
            for sym, what, err in failures[:10]:
                log.warning("fetch_failed symbol=%s what=%s err=%s", sym, what, err)
            if len(failures) > 10:
                log.warning("fetch_failed_more count=%d", len(failures))

        return MarketSnapshot(candles=candles, quotes=quotes, taken_at_ms=_ms_now())

    async def run_cycle(self) -> List[Signal]:
        snapshot = await self.fetch_snapshot()
        before = self._active
        signals = self.scan_cycle(snapshot)
        if self._active != before and self.tg.enabled():
            await self.tg.send(
                format_best_pairs(self.scorer.get_best_pairs(), self.cfg.telegram.parse_mode),
                parse_mode=self.cfg.telegram.parse_mode,
            )
        await self.deliver(signals)
        return signals

    async def _scan_loop(self) -> None:
        interval = max(1, int(self.cfg.trading.scan_interval_s))
        while True:
            started = time.monotonic()
            try:
                await self.run_cycle()
            except DataUnavailable as e:
                log.warning("scan_cycle_data_unavailable err=%s", e)
            await asyncio.sleep(max(0.0, interval - (time.monotonic() - started)))

    async def _tick_loop(self) -> None:
        symbols = [s.upper() for s in self.cfg.trading.symbols]
        async for q in self.provider.stream_quotes(symbols):
            signals = self.on_tick(q.symbol, q.mid, now_ms=None)
            if signals:
                await self.deliver(signals)

    async def run_forever(self) -> None:
        symbols = [s.upper() for s in self.cfg.trading.symbols]
        log.info(
            "runner_start symbols=%d timeframes=%s scan_interval_s=%s",
            len(symbols),
            self.cfg.trading.timeframes,
            self.cfg.trading.scan_interval_s,
        )
        if self.tg.enabled():
            await self.tg.send(f"{self.cfg.app.name}: monitoring {len(symbols)} symbols x {len(self.cfg.trading.timeframes)} TFs.")

        await asyncio.gather(self._scan_loop(), self._tick_loop())

    async def deliver(self, signals: Sequence[Signal]) -> None:
        for sig in signals:
            await self._handle_signal(sig)

    async def _handle_signal(self, sig: Signal) -> None:
        latency_ms = _ms_now() - int(sig.created_at_ms)
        log.info(
            "signal %s %s %s entry=%s sl=%s tp=%s conf=%.3f latency_ms=%s signal_id=%s",
            sig.symbol,
            sig.timeframe,
            sig.signal_type.value,
            sig.entry_price,
            sig.stop_loss,
            sig.take_profit,
            sig.confidence,
            latency_ms,
            sig.signal_id,
        )
        if not self.tg.enabled():
            return

        parse_mode = self.cfg.telegram.parse_mode or "HTML"
        block = self.detector.get_order_block(sig.order_block_id) if sig.order_block_id else None
        sent = await self.tg.send(format_signal(sig, parse_mode, block=block), parse_mode=parse_mode)
        if sent <= 0:
            return
        try:
            self.signals.mark_delivered(sig.signal_id)
        except (KeyError, ValueError) as e:
            # expired or evicted between creation and delivery
            log.info("signal_not_marked signal_id=%s err=%s", sig.signal_id, e)
            return
        self._metrics["delivered_total"] += 1
