from __future__ import annotations

from orderblock_sentinel.config import Config
from orderblock_sentinel.detector import StructureDetector
from orderblock_sentinel.market_data import MarketSnapshot
from orderblock_sentinel.models import Candle
from orderblock_sentinel.signals import SignalGenerator

PIP = 0.0001
BASE = 1.1000


def candle(idx: int, o: float, h: float, l: float, c: float, vol: float = 100.0) -> Candle:
    base = 1_700_000_000_000 + idx * 900_000
    return Candle(
        symbol="EURUSD",
        timeframe="15m",
        open_time_ms=base,
        close_time_ms=base + 900_000 - 1,
        open=BASE + o * PIP,
        high=BASE + h * PIP,
        low=BASE + l * PIP,
        close=BASE + c * PIP,
        volume=vol,
    )


def supply_sequence():
    """Two visits of a 15 pip zone, a bullish origin candle, a bearish break, three closes inside."""
    flat = (40, 44, 36, 41)
    dip = [(40, 42, 30, 38), (38, 39, 20, 34), (30, 34, 0, 20), (20, 38, 12, 30), (30, 44, 26, 40)]
    rows = [flat] * 10 + dip + [flat] * 10 + dip + [flat] * 11
    rows += [(40, 42, 30, 38), (38, 39, 24, 30), (30, 32, 20, 22), (22, 24, 18, 20)]
    seq = [candle(i, *r) for i, r in enumerate(rows)]
    n = len(seq)
    seq.append(candle(n, 2, 15, 0, 12, 300))  # origin
    seq.append(candle(n + 1, 12, 14, -20, -17, 300))  # break of structure
    for j, r in enumerate([(2, 10, -2, 5), (5, 12, 1, 6), (6, 13, 2, 8)]):
        seq.append(candle(n + 2 + j, *r))
    return seq


def run_cycle(name: str, det: StructureDetector, candles):
    snap = MarketSnapshot(candles={("EURUSD", "15m"): candles})
    det.analyze_symbol("EURUSD", snap)
    blocks = det.order_blocks("EURUSD")
    print(
        f"{name}: bars={len(candles)} new={det.has_new_order_block('EURUSD')}",
        [(b.direction.value, b.state.value, round(b.low, 5), round(b.high, 5), b.touch_count, round(b.strength, 3)) for b in blocks],
    )


def main():
    cfg = Config()
    cfg.trading.symbols = ["EURUSD"]
    cfg.trading.timeframes = ["15m"]

    seq = supply_sequence()
    det = StructureDetector(cfg)
    gen = SignalGenerator(cfg, det)

    run_cycle("cycle_1", det, seq[:-3])
    run_cycle("cycle_2", det, seq)
    run_cycle("cycle_3", det, seq)

    price = BASE - 10 * PIP
    for s in gen.process_signal("EURUSD", price, now_ms=seq[-1].close_time_ms):
        print(
            f"signal: {s.signal_type.value} entry={s.entry_price:.5f} sl={s.stop_loss:.5f} "
            f"tp={s.take_profit:.5f} rr={s.risk_reward:.2f} conf={s.confidence:.2f}"
        )


if __name__ == "__main__":
    main()
