import asyncio

import pytest

from orderblock_sentinel.errors import InvalidConfiguration
from orderblock_sentinel.market_data import MarketSnapshot
from orderblock_sentinel.models import Quote, SignalStatus, SignalType
from orderblock_sentinel.runner import SentinelRunner

from conftest import BASE, PIP, _c


class FakeProvider:
    def __init__(self, klines, quotes, fail=()):
        self.klines = klines
        self.quotes = quotes
        self.fail = set(fail)
        self.closed = False

    async def fetch_klines(self, symbol, timeframe, limit, *, closed_only=True):
        if (symbol, timeframe) in self.fail:
            raise RuntimeError("boom")
        return list(self.klines.get((symbol, timeframe), []))[-limit:]

    async def fetch_quote(self, symbol):
        return self.quotes.get(symbol)

    async def close(self):
        self.closed = True


class FakeNotifier:
    def __init__(self):
        self.sent = []

    def enabled(self):
        return True

    async def send(self, text, *, parse_mode=None):
        self.sent.append((text, parse_mode))
        return 1


def _quote(symbol, mid_pips):
    mid = BASE + mid_pips * PIP
    return Quote(symbol=symbol, bid=mid - 0.5 * PIP, ask=mid + 0.5 * PIP, time_ms=1)


@pytest.fixture
def two_pair_cfg(cfg):
    cfg.trading.symbols = ["EURUSD", "GBPUSD"]
    cfg.scoring.timeframe = "1h"
    return cfg


def _market(bars, make_trend, n=None):
    eur = bars if n is None else bars[:n]
    return {
        ("EURUSD", "15m"): eur,
        ("EURUSD", "1h"): make_trend("EURUSD"),
        ("GBPUSD", "15m"): [_c("GBPUSD", i, 40, 44, 36, 41) for i in range(5)],
        ("GBPUSD", "1h"): make_trend("GBPUSD"),
    }


def test_invalid_config_never_starts(cfg):
    cfg.trading.symbols = []
    with pytest.raises(InvalidConfiguration):
        SentinelRunner(cfg, provider=FakeProvider({}, {}), notifier=FakeNotifier())


def test_symbol_without_data_does_not_abort_cycle(two_pair_cfg, bars, make_trend):
    runner = SentinelRunner(two_pair_cfg, provider=FakeProvider({}, {}), notifier=FakeNotifier())
    quotes = {"EURUSD": _quote("EURUSD", -10), "GBPUSD": _quote("GBPUSD", 0)}

    first = runner.scan_cycle(MarketSnapshot(candles=_market(bars, make_trend, 47), quotes=quotes), now_ms=bars[46].close_time_ms)
    assert first == []
    assert set(runner.active_symbols) == {"EURUSD", "GBPUSD"}
    assert runner._metrics["symbol_failures_total"] == 1

    second = runner.scan_cycle(MarketSnapshot(candles=_market(bars, make_trend), quotes=quotes), now_ms=bars[-1].close_time_ms)
    assert len(second) == 1
    assert second[0].symbol == "EURUSD"
    assert second[0].signal_type == SignalType.SELL_ENTRY
    assert runner._metrics["symbol_failures_total"] == 2

    # next cycle has nothing new
    assert runner.scan_cycle(MarketSnapshot(candles=_market(bars, make_trend), quotes=quotes), now_ms=bars[-1].close_time_ms) == []


def test_tick_only_for_active_symbols(two_pair_cfg, bars, make_trend):
    runner = SentinelRunner(two_pair_cfg, provider=FakeProvider({}, {}), notifier=FakeNotifier())
    # quote inside the zone: block confirms but no entry yet
    quotes = {"EURUSD": _quote("EURUSD", 5), "GBPUSD": _quote("GBPUSD", 0)}
    runner.scan_cycle(MarketSnapshot(candles=_market(bars, make_trend, 47), quotes=quotes), now_ms=bars[46].close_time_ms)
    assert runner.scan_cycle(MarketSnapshot(candles=_market(bars, make_trend), quotes=quotes), now_ms=bars[-1].close_time_ms) == []

    assert runner.on_tick("USDCAD", 1.35, now_ms=bars[-1].close_time_ms) == []
    sigs = runner.on_tick("EURUSD", BASE - 6 * PIP, now_ms=bars[-1].close_time_ms + 1000)
    assert [s.signal_type for s in sigs] == [SignalType.SELL_ENTRY]


def test_delivery_marks_signal_delivered(two_pair_cfg, bars, make_trend):
    notifier = FakeNotifier()
    runner = SentinelRunner(two_pair_cfg, provider=FakeProvider({}, {}), notifier=notifier)
    quotes = {"EURUSD": _quote("EURUSD", -10), "GBPUSD": _quote("GBPUSD", 0)}
    runner.scan_cycle(MarketSnapshot(candles=_market(bars, make_trend, 47), quotes=quotes), now_ms=bars[46].close_time_ms)
    [sig] = runner.scan_cycle(MarketSnapshot(candles=_market(bars, make_trend), quotes=quotes), now_ms=bars[-1].close_time_ms)

    asyncio.run(runner.deliver([sig]))

    assert len(notifier.sent) == 1
    text, parse_mode = notifier.sent[0]
    assert "<b>EURUSD</b>" in text
    assert "SELL ENTRY" in text
    assert parse_mode == "HTML"
    assert runner.signals.get_signal(sig.signal_id).status == SignalStatus.DELIVERED
    assert runner._metrics["delivered_total"] == 1


def test_fetch_snapshot_skips_failed_series(two_pair_cfg, bars, make_trend):
    quotes = {"EURUSD": _quote("EURUSD", -10), "GBPUSD": _quote("GBPUSD", 0)}
    market = _market(bars, make_trend)
    market[("GBPUSD", "15m")] = bars
    provider = FakeProvider(market, quotes, fail=[("GBPUSD", "15m")])
    runner = SentinelRunner(two_pair_cfg, provider=provider, notifier=FakeNotifier())

    snap = asyncio.run(runner.fetch_snapshot())
    assert len(snap.candles("EURUSD", "15m", 100)) == 50
    assert len(snap.candles("EURUSD", "1h", 100)) == 60
    assert snap.candles("GBPUSD", "15m", 100) == ()
    assert snap.quote("GBPUSD") == quotes["GBPUSD"]

    runner.scan_cycle(snap, now_ms=bars[-1].close_time_ms)
    assert runner._metrics["symbol_failures_total"] == 1


def test_run_cycle_announces_new_pair_set(two_pair_cfg, bars, make_trend):
    notifier = FakeNotifier()
    quotes = {"EURUSD": _quote("EURUSD", 5), "GBPUSD": _quote("GBPUSD", 0)}
    runner = SentinelRunner(two_pair_cfg, provider=FakeProvider(_market(bars, make_trend), quotes), notifier=notifier)

    asyncio.run(runner.run_cycle())
    assert any("Best pairs" in text for text, _ in notifier.sent)

    sent_before = len(notifier.sent)
    asyncio.run(runner.run_cycle())
    assert len(notifier.sent) == sent_before


def _flat(symbol):
    return [_c(symbol, i, 10, 10, 10, 10, tf="1h", bar_ms=3_600_000) for i in range(60)]


def test_new_block_flag_drops_when_symbol_leaves_best_pairs(two_pair_cfg, bars, make_trend):
    two_pair_cfg.trading.max_concurrent_pairs = 1
    runner = SentinelRunner(two_pair_cfg, provider=FakeProvider({}, {}), notifier=FakeNotifier())
    quotes = {"EURUSD": _quote("EURUSD", 20), "GBPUSD": _quote("GBPUSD", 0)}

    def snap(n, leader):
        market = _market(bars, make_trend, n)
        lagger = "GBPUSD" if leader == "EURUSD" else "EURUSD"
        market[(lagger, "1h")] = _flat(lagger)
        return MarketSnapshot(candles=market, quotes=quotes)

    runner.scan_cycle(snap(47, "EURUSD"), now_ms=bars[46].close_time_ms)
    runner.scan_cycle(snap(None, "EURUSD"), now_ms=bars[-1].close_time_ms)
    assert runner.active_symbols == ("EURUSD",)
    assert runner.detector.has_new_order_block("EURUSD") is True

    runner.scan_cycle(snap(None, "GBPUSD"), now_ms=bars[-1].close_time_ms + 1)
    assert runner.active_symbols == ("GBPUSD",)
    assert runner.detector.has_new_order_block("EURUSD") is False
    assert runner.detector.new_order_blocks("EURUSD") == []
