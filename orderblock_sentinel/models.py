from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


@dataclass(frozen=True)
class Candle:
    symbol: str
    timeframe: str
    open_time_ms: int
    close_time_ms: int
    open: float
    high: float
    low: float
    close: float
    volume: float

    @property
    def range(self) -> float:
        return self.high - self.low

    @property
    def body(self) -> float:
        return abs(self.close - self.open)

    @property
    def is_bullish(self) -> bool:
        return self.close > self.open

    @property
    def is_bearish(self) -> bool:
        return self.close < self.open


@dataclass(frozen=True)
class Quote:
    symbol: str
    bid: float
    ask: float
    time_ms: int = 0

    @property
    def spread(self) -> float:
        return self.ask - self.bid

    @property
    def mid(self) -> float:
        return (self.bid + self.ask) / 2.0


class BlockDirection(str, Enum):
    DEMAND = "demand"
    SUPPLY = "supply"


class BlockState(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    INVALIDATED = "invalidated"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self in (BlockState.INVALIDATED, BlockState.EXPIRED)


_BLOCK_TRANSITIONS = {
    BlockState.PENDING: (BlockState.CONFIRMED, BlockState.INVALIDATED, BlockState.EXPIRED),
    BlockState.CONFIRMED: (BlockState.INVALIDATED, BlockState.EXPIRED),
    BlockState.INVALIDATED: (),
    BlockState.EXPIRED: (),
}


@dataclass
class OrderBlock:
    block_id: str
    symbol: str
    timeframe: str
    direction: BlockDirection
    low: float
    high: float
    created_time_ms: int  # close time of the break-of-structure candle
    origin_time_ms: int
    strength: float = 0.0
    confirmation_bars: int = 0
    touch_count: int = 0
    state: BlockState = BlockState.PENDING
    confirmed_time_ms: Optional[int] = None
    closed_time_ms: Optional[int] = None
    close_reason: Optional[str] = None
    extra: dict = field(default_factory=dict)

    @property
    def height(self) -> float:
        return self.high - self.low

    @property
    def is_live(self) -> bool:
        return not self.state.is_terminal

    def age_ms(self, now_ms: int) -> int:
        return max(0, int(now_ms) - int(self.created_time_ms))

    def overlaps(self, low: float, high: float) -> bool:
        return self.low <= high and low <= self.high

    def transition(self, new_state: BlockState, at_ms: int, reason: Optional[str] = None) -> None:
        if new_state not in _BLOCK_TRANSITIONS[self.state]:
            raise ValueError(f"illegal order block transition {self.state.value} -> {new_state.value} id={self.block_id}")
        self.state = new_state
        if new_state == BlockState.CONFIRMED:
            self.confirmed_time_ms = at_ms
        else:
            self.closed_time_ms = at_ms
            self.close_reason = reason


@dataclass(frozen=True)
class PairScore:
    symbol: str
    volatility: float
    momentum: float
    trend_strength: float
    liquidity: float
    opportunity_score: float
    rank: int
    computed_at_ms: int


class SignalType(str, Enum):
    BUY_ENTRY = "buy_entry"
    SELL_ENTRY = "sell_entry"
    BUY_EXIT = "buy_exit"
    SELL_EXIT = "sell_exit"

    @property
    def is_entry(self) -> bool:
        return self in (SignalType.BUY_ENTRY, SignalType.SELL_ENTRY)

    @property
    def side(self) -> str:
        return "LONG" if self in (SignalType.BUY_ENTRY, SignalType.BUY_EXIT) else "SHORT"

    @property
    def exit_type(self) -> "SignalType":
        if self == SignalType.BUY_ENTRY:
            return SignalType.BUY_EXIT
        if self == SignalType.SELL_ENTRY:
            return SignalType.SELL_EXIT
        raise ValueError(f"{self.value} has no exit counterpart")


class SignalStatus(str, Enum):
    GENERATED = "generated"
    DELIVERED = "delivered"
    CONSUMED = "consumed"
    EXPIRED = "expired"

    @property
    def is_active(self) -> bool:
        return self in (SignalStatus.GENERATED, SignalStatus.DELIVERED)


@dataclass(frozen=True)
class Signal:
    signal_id: str
    symbol: str
    timeframe: str
    signal_type: SignalType
    entry_price: float
    stop_loss: float
    take_profit: float
    confidence: float
    risk_reward: float
    reason: str
    created_at_ms: int
    expires_at_ms: int
    order_block_id: Optional[str] = None  # lookup only
    status: SignalStatus = SignalStatus.GENERATED
    extra: dict = field(default_factory=dict)

    @property
    def side(self) -> str:
        return self.signal_type.side
