from dataclasses import replace

import pytest

from orderblock_sentinel.detector import StructureDetector
from orderblock_sentinel.market_data import MarketSnapshot
from orderblock_sentinel.models import BlockDirection, BlockState, OrderBlock, SignalStatus, SignalType
from orderblock_sentinel.signals import SignalGenerator, _target_at_ratio

from conftest import BASE, PIP, T0, _c


def _snap(bars):
    return MarketSnapshot(candles={("EURUSD", "15m"): bars})


def _mirror(bars):
    """Reflect prices around BASE: a supply setup becomes a demand setup."""
    out = []
    for c in bars:
        out.append(replace(
            c,
            open=2 * BASE - c.open,
            high=2 * BASE - c.low,
            low=2 * BASE - c.high,
            close=2 * BASE - c.close,
        ))
    return out


def _confirmed(cfg, bars, **kw):
    det = StructureDetector(cfg)
    det.analyze_symbol("EURUSD", _snap(bars[:47]))
    det.analyze_symbol("EURUSD", _snap(bars))
    assert det.has_new_order_block("EURUSD")
    return det, SignalGenerator(cfg, det, **kw)


def test_sell_entry_when_price_leaves_supply_zone(cfg, bars):
    det, gen = _confirmed(cfg, bars)
    now = bars[-1].close_time_ms

    sigs = gen.process_signal("EURUSD", BASE - 10 * PIP, now_ms=now)
    assert len(sigs) == 1
    s = sigs[0]
    assert s.signal_type == SignalType.SELL_ENTRY
    assert s.side == "SHORT"
    assert s.entry_price == pytest.approx(BASE)
    assert s.stop_loss == pytest.approx(BASE + 17 * PIP)
    assert s.take_profit == pytest.approx(BASE - 1.5 * 17 * PIP)
    assert s.take_profit < s.entry_price < s.stop_loss
    assert s.risk_reward >= 1.5
    assert abs(s.take_profit - s.entry_price) / abs(s.entry_price - s.stop_loss) >= 1.5
    assert 0.40 <= s.confidence <= 1.0
    assert s.order_block_id == det.order_blocks("EURUSD")[0].block_id
    assert s.expires_at_ms == now + 240 * 60_000
    assert gen.get_signals("EURUSD", now_ms=now) == [s]


def test_buy_entry_from_demand_zone(cfg, bars):
    demand = _mirror(bars)
    det, gen = _confirmed(cfg, demand)
    block = det.order_blocks("EURUSD")[0]
    assert block.direction == BlockDirection.DEMAND
    assert block.high == pytest.approx(BASE)

    sigs = gen.process_signal("EURUSD", BASE + 10 * PIP, now_ms=demand[-1].close_time_ms)
    assert len(sigs) == 1
    s = sigs[0]
    assert s.signal_type == SignalType.BUY_ENTRY
    assert s.stop_loss < s.entry_price < s.take_profit
    assert s.entry_price == pytest.approx(BASE)
    assert s.stop_loss == pytest.approx(BASE - 17 * PIP)
    assert s.risk_reward >= 1.5
    assert abs(s.take_profit - s.entry_price) / abs(s.entry_price - s.stop_loss) >= 1.5


def test_no_entry_while_price_inside_zone_and_one_entry_per_block(cfg, bars):
    _, gen = _confirmed(cfg, bars)
    now = bars[-1].close_time_ms

    assert gen.process_signal("EURUSD", BASE + 5 * PIP, now_ms=now) == []
    assert len(gen.process_signal("EURUSD", BASE - 5 * PIP, now_ms=now + 1)) == 1
    assert gen.process_signal("EURUSD", BASE - 8 * PIP, now_ms=now + 2) == []


def test_pending_block_never_signals(cfg, bars):
    det = StructureDetector(cfg)
    det.analyze_symbol("EURUSD", _snap(bars[:47]))
    gen = SignalGenerator(cfg, det)
    assert gen.process_signal("EURUSD", BASE - 10 * PIP, now_ms=bars[46].close_time_ms) == []


def test_block_older_than_max_age_is_rejected(cfg, bars):
    _, gen = _confirmed(cfg, bars)
    later = bars[46].close_time_ms + 169 * 3_600_000
    assert gen.process_signal("EURUSD", BASE - 10 * PIP, now_ms=later) == []
    assert gen._metrics["rejected_total"] == 1


def test_low_confidence_is_rejected(cfg, bars):
    cfg.signals.min_confidence = 0.99
    _, gen = _confirmed(cfg, bars)
    assert gen.process_signal("EURUSD", BASE - 10 * PIP, now_ms=bars[-1].close_time_ms) == []


def test_dynamic_target_must_meet_minimum_risk_reward(cfg, bars):
    # half a risk unit of reward
    near = lambda block, entry, stop: entry - 0.5 * (stop - entry)
    _, gen = _confirmed(cfg, bars, target_provider=near)
    assert gen.process_signal("EURUSD", BASE - 10 * PIP, now_ms=bars[-1].close_time_ms) == []

    far = lambda block, entry, stop: entry - 3.0 * (stop - entry)
    _, gen = _confirmed(cfg, bars, target_provider=far)
    sigs = gen.process_signal("EURUSD", BASE - 10 * PIP, now_ms=bars[-1].close_time_ms)
    assert len(sigs) == 1
    assert sigs[0].risk_reward == pytest.approx(3.0)
    assert sigs[0].extra["dynamic_target"] is True


def test_invalidated_block_emits_exit_and_expires_entry(cfg, bars):
    det, gen = _confirmed(cfg, bars)
    now = bars[-1].close_time_ms
    entry = gen.process_signal("EURUSD", BASE - 10 * PIP, now_ms=now)[0]

    breach = bars + [_c("EURUSD", 50, 8, 20, 5, 16)]
    det.analyze_symbol("EURUSD", _snap(breach))
    exits = gen.process_signal("EURUSD", BASE + 16 * PIP, now_ms=breach[-1].close_time_ms)

    assert len(exits) == 1
    x = exits[0]
    assert x.signal_type == SignalType.SELL_EXIT
    assert x.confidence == 1.0
    assert (x.entry_price, x.stop_loss, x.take_profit) == (entry.entry_price, entry.stop_loss, entry.take_profit)
    assert x.extra["entry_signal_id"] == entry.signal_id
    assert gen.get_signal(entry.signal_id).status == SignalStatus.EXPIRED
    assert gen.get_signals("EURUSD", now_ms=breach[-1].close_time_ms) == [x]

    # exit is emitted once
    assert gen.process_signal("EURUSD", BASE + 16 * PIP, now_ms=breach[-1].close_time_ms + 1) == []


def test_signal_status_transitions(cfg, bars):
    _, gen = _confirmed(cfg, bars)
    now = bars[-1].close_time_ms
    s = gen.process_signal("EURUSD", BASE - 10 * PIP, now_ms=now)[0]

    assert gen.mark_delivered(s.signal_id).status == SignalStatus.DELIVERED
    assert gen.consume(s.signal_id).status == SignalStatus.CONSUMED
    assert gen.get_signals("EURUSD", now_ms=now) == []
    with pytest.raises(ValueError):
        gen.consume(s.signal_id)
    with pytest.raises(ValueError):
        gen.mark_delivered(s.signal_id)
    with pytest.raises(KeyError):
        gen.consume("missing")


def test_signals_expire_after_ttl(cfg, bars):
    _, gen = _confirmed(cfg, bars)
    now = bars[-1].close_time_ms
    s = gen.process_signal("EURUSD", BASE - 10 * PIP, now_ms=now)[0]

    after = s.expires_at_ms + 1
    assert gen.get_signals("EURUSD", now_ms=after) == []
    gen.process_signal("EURUSD", BASE - 10 * PIP, now_ms=after)
    assert gen.get_signal(s.signal_id).status == SignalStatus.EXPIRED


@pytest.mark.parametrize(
    "entry,stop",
    [
        (1.1, 1.1017),
        (1.1, 1.0983),
        (0.3, 0.1),
        (1.23456, 1.23401),
        (151.234, 151.517),
        (0.70001, 0.69989),
    ],
)
def test_default_target_holds_minimum_ratio_in_floats(entry, stop):
    tp = _target_at_ratio(entry, stop, 1.5)
    assert abs(tp - entry) / abs(entry - stop) >= 1.5
    assert tp == pytest.approx(entry + 1.5 * (entry - stop))


def test_bookkeeping_dropped_after_block_evicted_and_entry_finished(cfg, bars):
    det, gen = _confirmed(cfg, bars)
    now = bars[-1].close_time_ms
    s = gen.process_signal("EURUSD", BASE - 10 * PIP, now_ms=now)[0]

    det._catalogs[("EURUSD", "15m")].blocks.clear()
    assert det.get_order_block(s.order_block_id) is None

    # the entry is still live, so its block stays tracked
    gen.process_signal("EURUSD", BASE - 10 * PIP, now_ms=now + 1)
    assert gen._entry_by_block == {s.order_block_id: s.signal_id}

    gen.consume(s.signal_id)
    gen.process_signal("EURUSD", BASE - 10 * PIP, now_ms=s.expires_at_ms + 1)
    assert gen._used_blocks == set()
    assert gen._entry_by_block == {}
    assert gen._last_reject == {}


def test_reject_memory_dropped_once_block_expires(cfg, bars):
    det, gen = _confirmed(cfg, bars)
    block_id = det.order_blocks("EURUSD")[0].block_id
    later = bars[46].close_time_ms + 169 * 3_600_000

    assert gen.process_signal("EURUSD", BASE - 10 * PIP, now_ms=later) == []
    assert gen._last_reject == {block_id: "age"}

    det.analyze_symbol("EURUSD", _snap(bars), now_ms=later)
    assert det.get_order_block(block_id).state == BlockState.EXPIRED
    gen.process_signal("EURUSD", BASE - 10 * PIP, now_ms=later + 1)
    assert gen._last_reject == {}
    assert gen._used_blocks == set()


def _ob(tf: str, low: float, high: float, state=BlockState.CONFIRMED, direction=BlockDirection.SUPPLY) -> OrderBlock:
    return OrderBlock(
        block_id=f"EURUSD:{tf}:{direction.value}:{T0}",
        symbol="EURUSD",
        timeframe=tf,
        direction=direction,
        low=low,
        high=high,
        created_time_ms=T0,
        origin_time_ms=T0,
        strength=0.5,
        state=state,
    )


def test_confidence_confluence_bonus_is_capped(cfg):
    gen = SignalGenerator(cfg, StructureDetector(cfg))
    block = _ob("15m", 1.1000, 1.1015)

    assert gen.confidence(block, T0) == pytest.approx(0.5)
    assert gen.confidence(block, T0, [_ob("1h", 1.1010, 1.1030)]) == pytest.approx(0.6)
    peers = [_ob("1h", 1.1010, 1.1030), _ob("4h", 1.0990, 1.1005), _ob("1d", 1.0950, 1.1100)]
    assert gen.confidence(block, T0, peers) == pytest.approx(0.7)

    # same timeframe, opposite direction or unconfirmed peers add nothing
    others = [
        _ob("15m", 1.1010, 1.1030),
        _ob("1h", 1.1010, 1.1030, direction=BlockDirection.DEMAND),
        _ob("4h", 1.1010, 1.1030, state=BlockState.PENDING),
    ]
    assert gen.confidence(block, T0, others) == pytest.approx(0.5)


def test_confidence_decays_and_drops_to_zero_past_max_age(cfg):
    gen = SignalGenerator(cfg, StructureDetector(cfg))
    block = _ob("15m", 1.1000, 1.1015)
    assert gen.confidence(block, T0 + 48 * 3_600_000) == pytest.approx(0.25)
    assert gen.confidence(block, T0 + 169 * 3_600_000) == 0.0
