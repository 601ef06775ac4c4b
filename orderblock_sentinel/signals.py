from __future__ import annotations

from dataclasses import replace
import hashlib
import logging
import math
import time
from typing import Callable, Dict, List, Optional, Sequence, Set

from .config import Config
from .detector import StructureDetector
from .errors import SignalRejected
from .indicators import clamp, decay_factor
from .models import BlockDirection, BlockState, OrderBlock, Signal, SignalStatus, SignalType

log = logging.getLogger("signals")

_HOUR_MS = 3_600_000

# (block, entry, stop) -> take-profit price, or None to keep the risk-reward default
TargetProvider = Callable[[OrderBlock, float, float], Optional[float]]

_SIGNAL_TRANSITIONS = {
    SignalStatus.GENERATED: (SignalStatus.DELIVERED, SignalStatus.CONSUMED, SignalStatus.EXPIRED),
    SignalStatus.DELIVERED: (SignalStatus.CONSUMED, SignalStatus.EXPIRED),
    SignalStatus.CONSUMED: (),
    SignalStatus.EXPIRED: (),
}


def _signal_id(block_id: str, signal_type: SignalType, created_at_ms: int) -> str:
    base = f"{block_id}:{signal_type.value}:{created_at_ms}"
    return hashlib.sha256(base.encode("utf-8")).hexdigest()


def _target_at_ratio(entry: float, stop: float, ratio: float) -> float:
    """Price `ratio` risk units past `entry`, nudged outward until the float ratio holds."""
    risk = abs(entry - stop)
    if entry > stop:
        tp, away = entry + ratio * risk, math.inf
    else:
        tp, away = entry - ratio * risk, -math.inf
    while abs(tp - entry) / risk < ratio:
        tp = math.nextafter(tp, away)
    return tp


class SignalGenerator:
    """Turns confirmed order blocks into quality-gated entry and exit signals."""

    def __init__(
        self,
        cfg: Config,
        detector: StructureDetector,
        *,
        target_provider: Optional[TargetProvider] = None,
        max_history: int = 1000,
    ):
        self.cfg = cfg
        self._detector = detector
        self._target_provider = target_provider
        self.max_history = max(1, int(max_history))

        self._signals: Dict[str, Signal] = {}
        self._entry_by_block: Dict[str, str] = {}
        self._used_blocks: Set[str] = set()
        self._last_reject: Dict[str, str] = {}
        self._metrics = {
            "entries_total": 0,
            "exits_total": 0,
            "rejected_total": 0,
        }

    # public API

    def process_signal(self, symbol: str, price: float, *, now_ms: Optional[int] = None) -> List[Signal]:
        """Evaluate confirmed blocks of `symbol` at `price`. Returns the signals created by this call."""
        sym = symbol.upper()
        now = int(now_ms) if now_ms is not None else int(time.time() * 1000)
        self._expire(now)

        out: List[Signal] = self._exits(sym, price, now)
        self._prune()

        confirmed = self._detector.order_blocks(sym, states=[BlockState.CONFIRMED])
        for block in confirmed:
            if block.block_id in self._used_blocks:
                continue
            try:
                sig = self._evaluate(block, price, now, confirmed)
            except SignalRejected as e:
                self._metrics["rejected_total"] += 1
                if self._last_reject.get(block.block_id) != e.reason:
                    self._last_reject[block.block_id] = e.reason
                    log.info("signal_rejected symbol=%s block=%s reason=%s", sym, block.block_id, e.reason)
                continue
            if sig is None:
                continue

            self._store(sig)
            self._used_blocks.add(block.block_id)
            self._entry_by_block[block.block_id] = sig.signal_id
            self._last_reject.pop(block.block_id, None)
            self._metrics["entries_total"] += 1
            log.info(
                "signal %s %s %s entry=%s sl=%s tp=%s conf=%.3f rr=%.2f block=%s entries_total=%d",
                sig.symbol,
                sig.timeframe,
                sig.signal_type.value,
                sig.entry_price,
                sig.stop_loss,
                sig.take_profit,
                sig.confidence,
                sig.risk_reward,
                block.block_id,
                self._metrics["entries_total"],
            )
            out.append(sig)

        return out

    def get_signals(self, symbol: str, *, now_ms: Optional[int] = None) -> List[Signal]:
        sym = symbol.upper()
        now = int(now_ms) if now_ms is not None else int(time.time() * 1000)
        active = [
            s for s in self._signals.values()
            if s.symbol == sym and s.status.is_active and s.expires_at_ms > now
        ]
        active.sort(key=lambda s: (s.created_at_ms, s.signal_id))
        return active

    def get_signal(self, signal_id: str) -> Optional[Signal]:
        return self._signals.get(signal_id)

    def mark_delivered(self, signal_id: str) -> Signal:
        return self._set_status(signal_id, SignalStatus.DELIVERED)

    def consume(self, signal_id: str) -> Signal:
        return self._set_status(signal_id, SignalStatus.CONSUMED)

    def confidence(self, block: OrderBlock, now_ms: int, peers: Sequence[OrderBlock] = ()) -> float:
        g = self.cfg.signals
        age = block.age_ms(now_ms)
        if age > g.max_block_age_hours * _HOUR_MS:
            return 0.0
        base = block.strength * decay_factor(age, g.confidence_half_life_hours)
        bonus = 0.0
        for p in peers:
            if (
                p.block_id != block.block_id
                and p.timeframe != block.timeframe
                and p.direction == block.direction
                and p.state == BlockState.CONFIRMED
                and p.overlaps(block.low, block.high)
            ):
                bonus += g.confluence_bonus
        return clamp(base + min(bonus, g.max_confluence_bonus))

    # internals

    def _evaluate(
        self,
        block: OrderBlock,
        price: float,
        now: int,
        peers: Sequence[OrderBlock],
    ) -> Optional[Signal]:
        g = self.cfg.signals
        sym = block.symbol

        if block.state != BlockState.CONFIRMED:
            raise SignalRejected(sym, f"state={block.state.value}", block.block_id)
        if block.age_ms(now) > g.max_block_age_hours * _HOUR_MS:
            raise SignalRejected(sym, "age", block.block_id)

        buf = g.sl_buffer_pips * self.cfg.trading.pip_size(sym)
        if block.direction == BlockDirection.DEMAND:
            if price <= block.high:
                return None
            signal_type = SignalType.BUY_ENTRY
            entry = block.high
            stop = block.low - buf
        else:
            if price >= block.low:
                return None
            signal_type = SignalType.SELL_ENTRY
            entry = block.low
            stop = block.high + buf

        risk = abs(entry - stop)
        if risk <= 0:
            raise SignalRejected(sym, "zero_risk", block.block_id)

        take_profit = _target_at_ratio(entry, stop, g.min_risk_reward)
        dynamic = None
        if self._target_provider is not None:
            dynamic = self._target_provider(block, entry, stop)
            if dynamic is not None:
                take_profit = float(dynamic)

        reward = (take_profit - entry) if signal_type == SignalType.BUY_ENTRY else (entry - take_profit)
        rr = max(0.0, reward) / risk

        conf = self.confidence(block, now, peers)
        if conf < g.min_confidence:
            raise SignalRejected(sym, f"confidence={conf:.3f}<{g.min_confidence}", block.block_id)
        if rr < g.min_risk_reward:
            raise SignalRejected(sym, f"risk_reward={rr:.3f}<{g.min_risk_reward}", block.block_id)

        reason = (
            f"{block.direction.value} block {block.timeframe} "
            f"[{block.low:g}, {block.high:g}] strength={block.strength:.2f} touches={block.touch_count}"
        )
        return Signal(
            signal_id=_signal_id(block.block_id, signal_type, now),
            symbol=sym,
            timeframe=block.timeframe,
            signal_type=signal_type,
            entry_price=float(entry),
            stop_loss=float(stop),
            take_profit=float(take_profit),
            confidence=float(conf),
            risk_reward=float(rr),
            reason=reason,
            created_at_ms=now,
            expires_at_ms=now + int(g.signal_ttl_minutes) * 60_000,
            order_block_id=block.block_id,
            extra={
                "price": float(price),
                "block_strength": block.strength,
                "block_age_ms": block.age_ms(now),
                "dynamic_target": dynamic is not None,
            },
        )

    def _exits(self, symbol: str, price: float, now: int) -> List[Signal]:
        out: List[Signal] = []
        for block_id, entry_id in list(self._entry_by_block.items()):
            entry = self._signals.get(entry_id)
            if entry is None or entry.symbol != symbol:
                continue
            block = self._detector.get_order_block(block_id)
            if block is None:
                continue  # evicted; the entry lives on until its own expiry
            if block.state == BlockState.EXPIRED:
                del self._entry_by_block[block_id]
                continue
            if block.state != BlockState.INVALIDATED:
                continue

            del self._entry_by_block[block_id]
            if entry.status == SignalStatus.EXPIRED:
                continue

            exit_type = entry.signal_type.exit_type
            sig = Signal(
                signal_id=_signal_id(block_id, exit_type, now),
                symbol=symbol,
                timeframe=entry.timeframe,
                signal_type=exit_type,
                entry_price=entry.entry_price,
                stop_loss=entry.stop_loss,
                take_profit=entry.take_profit,
                confidence=1.0,
                risk_reward=entry.risk_reward,
                reason=f"order block invalidated ({block.close_reason or 'close_through'})",
                created_at_ms=now,
                expires_at_ms=now + int(self.cfg.signals.signal_ttl_minutes) * 60_000,
                order_block_id=block_id,
                extra={"entry_signal_id": entry_id, "price": float(price)},
            )
            if entry.status.is_active:
                self._signals[entry_id] = replace(entry, status=SignalStatus.EXPIRED)
            self._store(sig)
            self._metrics["exits_total"] += 1
            log.info(
                "signal %s %s %s block=%s entry_signal=%s exits_total=%d",
                sig.symbol,
                sig.timeframe,
                sig.signal_type.value,
                block_id,
                entry_id,
                self._metrics["exits_total"],
            )
            out.append(sig)
        return out

    def _prune(self) -> None:
        """Forget bookkeeping for blocks that are terminal or evicted and no longer back an active entry."""
        for block_id, entry_id in list(self._entry_by_block.items()):
            block = self._detector.get_order_block(block_id)
            if block is not None and block.state == BlockState.EXPIRED:
                del self._entry_by_block[block_id]
                continue
            entry = self._signals.get(entry_id)
            if entry is not None and entry.status.is_active:
                continue
            # an invalidated block keeps its entry until the exit is emitted
            if block is None:
                del self._entry_by_block[block_id]

        for block_id in (self._used_blocks | set(self._last_reject)) - set(self._entry_by_block):
            block = self._detector.get_order_block(block_id)
            if block is None or block.state.is_terminal:
                self._used_blocks.discard(block_id)
                self._last_reject.pop(block_id, None)

    def _expire(self, now: int) -> None:
        for sid, s in list(self._signals.items()):
            if s.status.is_active and s.expires_at_ms <= now:
                self._signals[sid] = replace(s, status=SignalStatus.EXPIRED)
                log.debug("signal_expired id=%s symbol=%s type=%s", sid, s.symbol, s.signal_type.value)

    def _store(self, sig: Signal) -> None:
        self._signals[sig.signal_id] = sig
        if len(self._signals) <= self.max_history:
            return
        # cap to avoid unbounded growth; only finished signals are dropped
        for sid in [k for k, s in self._signals.items() if not s.status.is_active]:
            if len(self._signals) <= self.max_history:
                break
            del self._signals[sid]

    def _set_status(self, signal_id: str, status: SignalStatus) -> Signal:
        sig = self._signals.get(signal_id)
        if sig is None:
            raise KeyError(f"unknown signal {signal_id}")
        if status not in _SIGNAL_TRANSITIONS[sig.status]:
            raise ValueError(f"illegal signal transition {sig.status.value} -> {status.value} id={signal_id}")
        updated = replace(sig, status=status)
        self._signals[signal_id] = updated
        return updated
