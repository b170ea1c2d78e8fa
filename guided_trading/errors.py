"""Error taxonomy for the guided trading engine.

InvalidArgument and its subclasses are client errors (never retried).
InsufficientDataError tells batch callers to skip an item. UpstreamUnavailable
is a collaborator I/O failure, isolated per market/trade and retried on the
next scheduled tick. InvariantViolation aborts a single operation before any
write reaches the store.
"""
from typing import Any, Dict, Optional


class GuidedTradingError(Exception):
    """Base class for all engine errors."""

    code = "GUIDED_TRADING_ERROR"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code, "message": self.message}


class InvalidArgument(GuidedTradingError):
    """Bad input shape or range; surfaced to the caller as a 400-equivalent."""

    code = "INVALID_ARGUMENT"

    def __init__(self, message: str, field: Optional[str] = None, current_state: Optional[str] = None):
        super().__init__(message)
        self.field = field
        self.current_state = current_state

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        body["field"] = self.field
        body["currentState"] = self.current_state
        return body


class PositionAlreadyOpen(InvalidArgument):
    """An OPEN trade already exists for the market."""

    code = "POSITION_ALREADY_OPEN"

    def __init__(self, market: str, trade_id: int):
        super().__init__(
            f"open position already exists for {market} (trade #{trade_id})",
            field="market",
            current_state="OPEN",
        )
        self.market = market
        self.trade_id = trade_id

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        body["tradeId"] = self.trade_id
        return body


class PositionNotFound(InvalidArgument):
    """No OPEN trade exists for the market."""

    code = "POSITION_NOT_FOUND"

    def __init__(self, market: str):
        super().__init__(f"no open position for {market}", field="market", current_state="NONE")
        self.market = market


class InsufficientDataError(GuidedTradingError):
    """Too few candles to analyse; callers skip or defer."""

    code = "INSUFFICIENT_DATA"

    def __init__(self, required: int, actual: int):
        super().__init__(f"need at least {required} candles, got {actual}")
        self.required = required
        self.actual = actual


class UpstreamUnavailable(GuidedTradingError):
    """A collaborator (candles, prices, balances, orders) failed."""

    code = "UPSTREAM_UNAVAILABLE"

    def __init__(self, message: str, market: Optional[str] = None):
        super().__init__(message)
        self.market = market


class OrderRejected(UpstreamUnavailable):
    """The exchange refused an order."""

    code = "ORDER_REJECTED"

    def __init__(self, reason: str, market: Optional[str] = None):
        super().__init__(f"order rejected: {reason}", market=market)
        self.reason = reason


class InvariantViolation(GuidedTradingError):
    """A transition would break a trade invariant; nothing is persisted."""

    code = "INVARIANT_VIOLATION"
