"""
Guided trade aggregate: entry, trailing ratchet and exit accounting.

This module provides the GuidedTrade dataclass which maintains:
- Entry price, entry quantity and remaining quantity
- Stop-loss, take-profit and trailing stop levels
- Closed-state accounting (exit quantity, average exit price, realized P&L)

Mutations happen on a copy owned by the lifecycle manager and are persisted
together with their ledger events; the invariants checked by
``check_invariants()`` must hold after every transition:

- remaining_quantity == entry_quantity - cumulative_exit_quantity
- remaining_quantity == 0  <=>  status == CLOSED
- trailing_stop_price only moves upward and stays <= peak * (1 - offset)

Examples:
    >>> from decimal import Decimal
    >>> trade = GuidedTrade(
    ...     market="KRW-BTC",
    ...     average_entry_price=Decimal("100"),
    ...     entry_quantity=Decimal("1"),
    ...     remaining_quantity=Decimal("1"),
    ...     stop_loss_price=Decimal("95"),
    ...     take_profit_price=Decimal("120"),
    ... )
    >>> trade.ratchet_trailing(Decimal("103"))
    True
    >>> trade.trailing_stop_price
    Decimal('101.97000000')
"""

import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import ROUND_DOWN, ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Optional

from .errors import InvariantViolation

ZERO = Decimal("0")
ONE = Decimal("1")
HUNDRED = Decimal("100")
QTY_PLACES = Decimal("0.00000001")
PRICE_PLACES = Decimal("0.00000001")
KRW_PLACES = Decimal("0.01")
PERCENT_PLACES = Decimal("0.0001")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def floor_quantity(qty: Decimal) -> Decimal:
    """Round a quantity down to exchange precision (8 dp)."""
    return qty.quantize(QTY_PLACES, rounding=ROUND_DOWN)


class TradeStatus(str, Enum):
    OPEN = "OPEN"
    CLOSED = "CLOSED"


class PnlConfidence(str, Enum):
    LEGACY = "LEGACY"
    HIGH = "HIGH"
    LOW = "LOW"


class EventType(str, Enum):
    ENTRY = "ENTRY"
    PARTIAL_EXIT = "PARTIAL_EXIT"
    TRAILING_UPDATE = "TRAILING_UPDATE"
    CLOSE = "CLOSE"
    ADOPT = "ADOPT"


ENTRY_FILL_EVENTS = (EventType.ENTRY, EventType.ADOPT)
EXIT_FILL_EVENTS = (EventType.PARTIAL_EXIT, EventType.CLOSE)


class TradingMode(Enum):
    """Exit geometry and simulated holding horizon per trading style.

    Values: (stop-loss fraction, take-profit cap fraction, reward/risk ratio,
    ATR multiplier for the stop distance, holding horizon in bars).
    """

    SCALP = (Decimal("0.003"), Decimal("0.008"), Decimal("1.5"), Decimal("0.5"), 6)
    SWING = (Decimal("0.007"), Decimal("0.02"), Decimal("1.5"), Decimal("1.0"), 12)
    POSITION = (Decimal("0.02"), Decimal("0.05"), Decimal("2.0"), Decimal("2.0"), 36)

    def __init__(self, sl_fraction, tp_cap_fraction, rr_ratio, atr_multiplier, horizon_bars):
        self.sl_fraction = sl_fraction
        self.tp_cap_fraction = tp_cap_fraction
        self.rr_ratio = rr_ratio
        self.atr_multiplier = atr_multiplier
        self.horizon_bars = horizon_bars

    @classmethod
    def from_string(cls, value: Optional[str]) -> "TradingMode":
        """Case-insensitive lookup; unknown or empty names fall back to SWING."""
        if value:
            try:
                return cls[value.strip().upper()]
            except KeyError:
                pass
        return cls.SWING


@dataclass
class GuidedTradeEvent:
    """Append-only ledger row owned by one GuidedTrade."""

    trade_id: int
    event_type: EventType
    price: Optional[Decimal] = None
    quantity: Optional[Decimal] = None
    timestamp: datetime = field(default_factory=utcnow)
    message: Optional[str] = None
    order_id: Optional[str] = None
    id: Optional[int] = None


@dataclass
class GuidedTrade:
    """A single managed long position from entry to close.

    Attributes:
        market: Market code, e.g. "KRW-BTC"
        average_entry_price: Volume-weighted entry price
        entry_quantity: Total quantity bought or adopted
        remaining_quantity: Quantity still held (non-increasing while OPEN)
        stop_loss_price / take_profit_price: Fixed exit boundaries
        trailing_trigger_percent: Gain (percent) that arms the trailing stop
        trailing_offset_percent: Distance (percent) of the stop below the peak
        trailing_peak_price / trailing_stop_price: None until armed
        cumulative_exit_quantity / average_exit_price: Exit accounting
        realized_pnl / realized_pnl_percent: Realized result of exits so far
        pnl_confidence: LEGACY until the reconciler grades the trade
    """

    market: str
    average_entry_price: Decimal
    entry_quantity: Decimal
    remaining_quantity: Decimal
    stop_loss_price: Decimal
    take_profit_price: Decimal
    id: Optional[int] = None
    status: TradeStatus = TradeStatus.OPEN
    trailing_trigger_percent: Decimal = Decimal("2.0")
    trailing_offset_percent: Decimal = Decimal("1.0")
    trailing_peak_price: Optional[Decimal] = None
    trailing_stop_price: Optional[Decimal] = None
    dca_step_percent: Decimal = Decimal("2.0")
    half_take_profit_ratio: Decimal = Decimal("0.5")
    half_take_profit_done: bool = False
    cumulative_exit_quantity: Decimal = ZERO
    average_exit_price: Decimal = ZERO
    realized_pnl: Decimal = ZERO
    realized_pnl_percent: Decimal = ZERO
    pnl_confidence: PnlConfidence = PnlConfidence.LEGACY
    pnl_reconciled_at: Optional[datetime] = None
    mode: str = "SWING"
    entry_source: str = "MANUAL"
    notes: Optional[str] = None
    exit_reason: Optional[str] = None
    last_action: Optional[str] = None
    last_price_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    closed_at: Optional[datetime] = None

    @property
    def is_open(self) -> bool:
        return self.status == TradeStatus.OPEN

    @property
    def trailing_active(self) -> bool:
        return self.trailing_stop_price is not None

    def copy(self) -> "GuidedTrade":
        return copy.deepcopy(self)

    def pnl_percent_at(self, price: Decimal) -> Decimal:
        if self.average_entry_price <= 0:
            return ZERO
        return (price - self.average_entry_price) / self.average_entry_price * HUNDRED

    def compute_trailing_stop(self, peak: Decimal) -> Decimal:
        """Stop level for a given peak: peak * (1 - offset%)."""
        offset = self.trailing_offset_percent / HUNDRED
        return (peak * (ONE - offset)).quantize(PRICE_PLACES, rounding=ROUND_DOWN)

    def ratchet_trailing(self, price: Decimal) -> bool:
        """Arm or raise the trailing stop for a new observed price.

        The stop arms once the gain from entry reaches
        ``trailing_trigger_percent``; afterwards every new peak recomputes the
        stop, which is only ever replaced by a higher value.

        Returns:
            True if trailing_stop_price changed
        """
        if not self.trailing_active:
            if self.pnl_percent_at(price) < self.trailing_trigger_percent:
                return False
            self.trailing_peak_price = price
            self.trailing_stop_price = self.compute_trailing_stop(price)
            return True

        if price <= self.trailing_peak_price:
            return False
        self.trailing_peak_price = price
        new_stop = self.compute_trailing_stop(price)
        # Never move stop down.
        if new_stop <= self.trailing_stop_price:
            return False
        self.trailing_stop_price = new_stop
        return True

    def apply_exit_fill(self, quantity: Decimal, price: Decimal, reason: str) -> Decimal:
        """Record a sell fill: volume-weighted exit price and realized P&L.

        Returns:
            The quantity actually applied (capped at remaining_quantity)

        Raises:
            InvariantViolation: Non-positive quantity/price or trade not open
        """
        if not self.is_open:
            raise InvariantViolation(f"exit fill on {self.status.value} trade #{self.id}")
        if quantity <= 0 or price <= 0:
            raise InvariantViolation(f"exit fill requires positive quantity/price, got {quantity}@{price}")

        effective = min(quantity, self.remaining_quantity)
        prev_qty = self.cumulative_exit_quantity
        new_qty = prev_qty + effective
        self.average_exit_price = (
            (self.average_exit_price * prev_qty + price * effective) / new_qty
        ).quantize(PRICE_PLACES, rounding=ROUND_HALF_UP)
        self.cumulative_exit_quantity = new_qty
        self.remaining_quantity = self.entry_quantity - new_qty

        self.realized_pnl = (self.realized_pnl + (price - self.average_entry_price) * effective).quantize(
            KRW_PLACES, rounding=ROUND_HALF_UP
        )
        invested = self.average_entry_price * new_qty
        self.realized_pnl_percent = (
            (self.realized_pnl / invested * HUNDRED).quantize(PERCENT_PLACES, rounding=ROUND_HALF_UP)
            if invested > 0
            else ZERO
        )
        self.exit_reason = reason
        return effective

    def mark_closed(self, reason: str, at: Optional[datetime] = None) -> None:
        if self.remaining_quantity != 0:
            raise InvariantViolation(
                f"cannot close trade #{self.id} with remaining quantity {self.remaining_quantity}"
            )
        self.status = TradeStatus.CLOSED
        self.exit_reason = reason
        self.closed_at = at or utcnow()

    def check_invariants(self) -> None:
        """Raise InvariantViolation if the aggregate is inconsistent."""
        if self.remaining_quantity < 0:
            raise InvariantViolation(f"negative remaining quantity {self.remaining_quantity}")
        if self.remaining_quantity != self.entry_quantity - self.cumulative_exit_quantity:
            raise InvariantViolation(
                "remaining quantity "
                f"{self.remaining_quantity} != entry {self.entry_quantity} - exits {self.cumulative_exit_quantity}"
            )
        if (self.remaining_quantity == 0) != (self.status == TradeStatus.CLOSED):
            raise InvariantViolation(
                f"status {self.status.value} inconsistent with remaining quantity {self.remaining_quantity}"
            )
        if self.trailing_stop_price is not None:
            if self.trailing_peak_price is None or self.trailing_stop_price > self.compute_trailing_stop(
                self.trailing_peak_price
            ):
                raise InvariantViolation("trailing stop above peak minus offset")
