from __future__ import annotations

from typing import List, Optional


class SentinelError(Exception):
    """Base class for core errors."""


class DataUnavailable(SentinelError):
    """Not enough candle history for a symbol/timeframe this cycle."""

    def __init__(self, symbol: str, timeframe: Optional[str] = None, have: int = 0, need: int = 0):
        self.symbol = symbol
        self.timeframe = timeframe
        self.have = have
        self.need = need
        where = f"{symbol}/{timeframe}" if timeframe else symbol
        super().__init__(f"data unavailable for {where}: have={have} need={need}")


class InvalidConfiguration(SentinelError):
    def __init__(self, errors: List[str]):
        self.errors = list(errors)
        super().__init__("invalid configuration: " + "; ".join(self.errors))


class ScoringDegenerate(SentinelError):
    """Zero or NaN in a normalization denominator."""

    def __init__(self, label: str, value: object = None):
        self.label = label
        self.value = value
        super().__init__(f"degenerate denominator {label}={value!r}")


class SignalRejected(SentinelError):
    """Quality-gate failure. Informational, not an error condition."""

    def __init__(self, symbol: str, reason: str, block_id: Optional[str] = None):
        self.symbol = symbol
        self.reason = reason
        self.block_id = block_id
        super().__init__(f"signal rejected {symbol}: {reason}")
