"""
Guided trade lifecycle: entry, adoption, trailing stop, partial exits, close.

States: OPEN -> OPEN (trailing update | partial exit)* -> CLOSED. CLOSED is
terminal; only the reconciler touches a closed trade afterwards.

Every transition works on a copy of the stored trade and persists the new
row together with its ledger events in one store transaction. If anything
raises before the write (bad input, rejected order, broken invariant), the
stored trade is untouched.
"""

import re
import threading
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, List, Mapping, Optional, Sequence

from .api import (
    AdoptRequest,
    AdoptResponse,
    DailyStats,
    PartialExitRequest,
    StartRequest,
    StartResponse,
    TradeSummary,
    parse_request,
)
from .backtest import exit_levels
from .candles import atr, normalize_candles
from .config import GuidedTradingConfig
from .errors import (
    InvalidArgument,
    InvariantViolation,
    OrderRejected,
    PositionAlreadyOpen,
    PositionNotFound,
    UpstreamUnavailable,
)
from .exchange import SIDE_BUY, SIDE_SELL, AccountGateway, Balance, MarketDataSource, OrderResult
from .logging_setup import logger, trade_logger
from .persistence_sqlite import SQLiteTradeStore
from .trade import (
    HUNDRED,
    ZERO,
    EventType,
    GuidedTrade,
    GuidedTradeEvent,
    PnlConfidence,
    TradingMode,
    floor_quantity,
    utcnow,
)

MARKET_PATTERN = re.compile(r"^KRW-[A-Z0-9]+$")

# (min, max) accepted for per-trade tunables; values outside are clamped
TRAILING_TRIGGER_BOUNDS = (Decimal("0.5"), Decimal("20"))
TRAILING_OFFSET_BOUNDS = (Decimal("0.2"), Decimal("10"))
DCA_STEP_BOUNDS = (Decimal("0.5"), Decimal("15"))
HALF_TP_RATIO_BOUNDS = (Decimal("0.2"), Decimal("0.8"))


def _clamp(value: Optional[Decimal], default: Decimal, bounds) -> Decimal:
    low, high = bounds
    value = default if value is None else Decimal(value)
    return min(max(value, low), high)


@dataclass(frozen=True)
class TickOutcome:
    """What a price tick did to the market's open trade.

    action is one of NO_POSITION, NO_PRICE, STALE, HOLD, TRAILING_UPDATED,
    CLOSED, PARTIAL_CLOSE, CLOSE_FAILED, ERROR.
    """

    market: str
    action: str
    trade_id: Optional[int] = None
    price: Optional[Decimal] = None
    trailing_stop_price: Optional[Decimal] = None
    exit_reason: Optional[str] = None
    message: Optional[str] = None

    @property
    def closed(self) -> bool:
        return self.action == "CLOSED"


class GuidedTradingManager:
    """Owns every state transition of a guided trade.

    APIs:
    - `start_auto_trading(request)`: buy and open a trade
    - `adopt_external_position(request)`: idempotently manage an existing balance
    - `partial_take_profit(market, ratio)`: sell a share of the remaining quantity
    - `on_price_tick(market, price, observed_at)`: trailing ratchet and exit checks
    - `record_exit_fill(market, order_id, quantity, price)`: late/external fill report
    - `stop_auto_trading(market)`: forced close at market
    - `monitor_open_trades(prices)`: scheduled sweep over all open trades
    - `get_active_trade` / `list_open_trades` / `list_closed_trades` / `get_today_stats`

    Transitions for one market are serialized in-process; the store's
    open-trade guard covers other processes.
    """

    def __init__(
        self,
        store: SQLiteTradeStore,
        market_data: MarketDataSource,
        account: AccountGateway,
        config: Optional[GuidedTradingConfig] = None,
    ):
        self.store = store
        self.market_data = market_data
        self.account = account
        self.config = config or GuidedTradingConfig()
        self.defaults = self.config.guided
        self._locks: Dict[str, threading.RLock] = defaultdict(threading.RLock)
        self._locks_guard = threading.Lock()

    @contextmanager
    def _market_lock(self, market: str):
        with self._locks_guard:
            lock = self._locks[market]
        with lock:
            yield

    # --- Collaborator helpers ---
    @staticmethod
    def normalize_market(market: Optional[str]) -> str:
        code = (market or "").strip().upper()
        if not MARKET_PATTERN.match(code):
            raise InvalidArgument(f"market must look like KRW-BTC, got {market!r}", field="market")
        return code

    def _current_price(self, market: str) -> Optional[Decimal]:
        try:
            price = self.market_data.get_current_price(market)
        except Exception as e:
            raise UpstreamUnavailable(f"price lookup failed: {e}", market=market) from e
        if price is None or price <= 0:
            return None
        return price

    def _require_price(self, market: str) -> Decimal:
        price = self._current_price(market)
        if price is None:
            raise InvalidArgument(f"unknown market {market}: no current price", field="market")
        return price

    def _entry_atr(self, market: str, interval: Optional[str]) -> Optional[Decimal]:
        """ATR for stop/target placement; None when candles are unavailable."""
        interval = interval or self.defaults.default_interval
        try:
            candles = normalize_candles(
                self.market_data.get_candles(market, interval, self.config.ranking.candle_count)
            )
        except Exception as e:
            logger.warning(f"Candles unavailable for exit levels | market={market} error={e!r}")
            return None
        if len(candles) <= self.config.regime.atr_period:
            return None
        return atr(candles, self.config.regime.atr_period)

    def effective_holding(
        self, market: str, price: Decimal, balances: Optional[Sequence[Balance]] = None
    ) -> Decimal:
        """Held base quantity, or zero when worth less than the minimum effective holding."""
        currency = market.split("-", 1)[1].upper()
        if balances is None:
            balances = self.account.get_balances()
        quantity = ZERO
        for balance in balances:
            if balance.currency.upper() == currency:
                quantity = balance.total
                break
        if quantity <= 0:
            return ZERO
        if price > 0 and quantity * price < self.defaults.min_effective_holding_krw:
            return ZERO
        return quantity

    # --- Entry ---
    def start_auto_trading(self, request) -> StartResponse:
        """Place a market buy and open a guided trade.

        Raises:
            InvalidArgument: Malformed market, non-positive amount, unknown market
            PositionAlreadyOpen: The market already has an OPEN trade
            OrderRejected: The exchange refused the buy (nothing is written)
        """
        request = parse_request(StartRequest, request)
        market = self.normalize_market(request.market)
        if request.amount_krw <= 0:
            raise InvalidArgument(f"amountKrw must be positive, got {request.amount_krw}", field="amountKrw")

        with self._market_lock(market):
            existing = self.store.find_open_trade(market)
            if existing is not None:
                raise PositionAlreadyOpen(market, existing.id)

            price = self._require_price(market)
            amount = max(request.amount_krw, self.defaults.min_order_krw)
            if floor_quantity(amount / price) <= 0:
                raise InvalidArgument(f"amount {amount} buys zero quantity at {price}", field="amountKrw")

            mode = TradingMode.from_string(request.mode or self.defaults.default_mode)
            atr_value = self._entry_atr(market, request.interval)

            order = self.account.place_market_order(market, SIDE_BUY, amount)
            fill_price = order.average_price if order.average_price and order.average_price > 0 else price
            quantity = order.executed_quantity
            if quantity is None or quantity <= 0:
                quantity = amount / fill_price
            quantity = floor_quantity(quantity)
            if quantity <= 0:
                raise InvariantViolation(f"buy order {order.order_id} for {market} reported no quantity")

            stop, target = exit_levels(fill_price, atr_value, mode)
            entry_source = request.entry_source or "MANUAL"
            trade = GuidedTrade(
                market=market,
                average_entry_price=fill_price,
                entry_quantity=quantity,
                remaining_quantity=quantity,
                stop_loss_price=request.stop_loss_price or stop,
                take_profit_price=request.take_profit_price or target,
                trailing_trigger_percent=_clamp(
                    request.trailing_trigger_percent, self.defaults.trailing_trigger_percent, TRAILING_TRIGGER_BOUNDS
                ),
                trailing_offset_percent=_clamp(
                    request.trailing_offset_percent, self.defaults.trailing_offset_percent, TRAILING_OFFSET_BOUNDS
                ),
                dca_step_percent=_clamp(request.dca_step_percent, self.defaults.dca_step_percent, DCA_STEP_BOUNDS),
                half_take_profit_ratio=_clamp(
                    request.half_take_profit_ratio, self.defaults.half_take_profit_ratio, HALF_TP_RATIO_BOUNDS
                ),
                mode=mode.name,
                entry_source=entry_source,
                notes=f"entrySource={entry_source} | mode={mode.name} | amountKrw={amount}",
                last_action="ENTRY_FILLED",
            )
            event = GuidedTradeEvent(
                trade_id=0,
                event_type=EventType.ENTRY,
                price=fill_price,
                quantity=quantity,
                order_id=order.order_id,
                message=f"market entry {amount} KRW",
            )
            try:
                self.store.insert_open_trade(trade, [event])
            except PositionAlreadyOpen:
                logger.error(
                    f"Entry filled but market already managed | market={market} order_id={order.order_id} qty={quantity}"
                )
                raise

        trade_logger(market, trade.id).info(
            f"Guided entry opened | price={fill_price} qty={quantity} stop={trade.stop_loss_price} "
            f"target={trade.take_profit_price} mode={mode.name}"
        )
        return StartResponse(trade_id=trade.id, status=trade.status)

    def adopt_external_position(self, request) -> AdoptResponse:
        """Bring a balance opened outside the engine under management.

        Idempotent: an existing OPEN trade for the market is returned with
        ``adopted=False`` and nothing is written. The open-trade check is
        repeated inside the insert transaction.

        Raises:
            InvalidArgument: Malformed market, no price, or no effective holding
        """
        request = parse_request(AdoptRequest, request)
        market = self.normalize_market(request.market)

        with self._market_lock(market):
            existing = self.store.find_open_trade(market)
            if existing is not None:
                return self._not_adopted(existing)

            price = self._require_price(market)
            quantity = self.effective_holding(market, price)
            if quantity <= 0:
                raise InvalidArgument(
                    f"no effective holding for {market} (dust below {self.defaults.min_effective_holding_krw} KRW is ignored)",
                    field="market",
                    current_state="NO_BALANCE",
                )

            mode = TradingMode.from_string(request.mode or self.defaults.default_mode)
            stop, target = exit_levels(price, self._entry_atr(market, request.interval), mode)
            entry_source = request.entry_source or "EXTERNAL"
            interval = request.interval or self.defaults.default_interval
            reason_parts = [f"entrySource={entry_source}", f"mode={mode.name}", f"interval={interval}"]
            if request.notes and request.notes.strip():
                reason_parts.append(f"notes={request.notes.strip()}")

            trade = GuidedTrade(
                market=market,
                average_entry_price=price,
                entry_quantity=quantity,
                remaining_quantity=quantity,
                stop_loss_price=stop,
                take_profit_price=target,
                trailing_trigger_percent=self.defaults.trailing_trigger_percent,
                trailing_offset_percent=self.defaults.trailing_offset_percent,
                dca_step_percent=self.defaults.dca_step_percent,
                half_take_profit_ratio=self.defaults.half_take_profit_ratio,
                mode=mode.name,
                entry_source=entry_source,
                notes=" | ".join(reason_parts),
                last_action="ADOPTED_EXTERNAL_ENTRY",
            )
            event = GuidedTradeEvent(
                trade_id=0,
                event_type=EventType.ADOPT,
                price=price,
                quantity=quantity,
                message=f"adopted external position: {entry_source}",
            )
            try:
                self.store.insert_open_trade(trade, [event])
            except PositionAlreadyOpen as e:
                logger.info(f"Adoption lost race | market={market} existing_trade={e.trade_id}")
                winner = self.store.get_trade(e.trade_id)
                if winner is None:
                    return AdoptResponse(adopted=False, position_id=e.trade_id)
                return self._not_adopted(winner)

        trade_logger(market, trade.id).info(f"External position adopted | price={price} qty={quantity}")
        return AdoptResponse(
            adopted=True,
            position_id=trade.id,
            quantity=trade.remaining_quantity,
            average_entry_price=trade.average_entry_price,
        )

    @staticmethod
    def _not_adopted(trade: GuidedTrade) -> AdoptResponse:
        return AdoptResponse(
            adopted=False,
            position_id=trade.id,
            quantity=trade.remaining_quantity,
            average_entry_price=trade.average_entry_price,
        )

    # --- Exits ---
    def _require_open(self, market: str) -> GuidedTrade:
        trade = self.store.find_open_trade(market)
        if trade is None:
            raise PositionNotFound(market)
        return trade

    def _apply_fill(
        self,
        working: GuidedTrade,
        order: OrderResult,
        requested: Decimal,
        reference_price: Decimal,
        reason: str,
    ) -> List[GuidedTradeEvent]:
        """Apply a sell fill to ``working`` and return the events it produces.

        The trade closes when nothing remains; otherwise a PARTIAL_EXIT is
        written and the trade stays OPEN.
        """
        executed = order.executed_quantity if order.executed_quantity is not None else requested
        executed = min(executed, working.remaining_quantity)
        price = order.average_price if order.average_price and order.average_price > 0 else reference_price
        if executed <= 0:
            working.last_action = f"CLOSE_NO_FILL_{reason}"
            return []

        applied = working.apply_exit_fill(executed, price, reason)
        if working.remaining_quantity > 0:
            working.last_action = reason
            return [
                GuidedTradeEvent(
                    trade_id=working.id,
                    event_type=EventType.PARTIAL_EXIT,
                    price=price,
                    quantity=applied,
                    order_id=order.order_id,
                    message=reason,
                )
            ]

        working.mark_closed(reason)
        working.last_action = f"CLOSED_{reason}"
        return [
            GuidedTradeEvent(
                trade_id=working.id,
                event_type=EventType.CLOSE,
                price=price,
                quantity=applied,
                order_id=order.order_id,
                message=f"closed: {reason}",
            )
        ]

    def _write_off(self, working: GuidedTrade, price: Decimal, reason: str, message: str) -> List[GuidedTradeEvent]:
        """Close without an order. The ledger gets no fill, so confidence is LOW."""
        working.apply_exit_fill(working.remaining_quantity, price, reason)
        working.pnl_confidence = PnlConfidence.LOW
        working.mark_closed(reason)
        working.last_action = f"CLOSED_{reason}"
        return [
            GuidedTradeEvent(
                trade_id=working.id,
                event_type=EventType.CLOSE,
                price=price,
                quantity=None,
                message=message,
            )
        ]

    def _close_position(self, working: GuidedTrade, reference_price: Decimal, reason: str) -> List[GuidedTradeEvent]:
        """Sell everything that remains.

        Raises:
            OrderRejected: The sell was refused; ``working`` is unchanged
        """
        quantity = working.remaining_quantity
        value = quantity * reference_price
        if value < self.defaults.min_effective_holding_krw:
            trade_logger(working.market, working.id).warning(
                f"Remaining value below minimum order, closing without sell | qty={quantity} value={value}"
            )
            return self._write_off(
                working, reference_price, f"{reason}_BELOW_MIN_ORDER", f"closed below minimum order ({value} KRW)"
            )

        order = self.account.place_market_order(working.market, SIDE_SELL, quantity)
        return self._apply_fill(working, order, quantity, reference_price, reason)

    def _raise_stop_to_break_even(self, working: GuidedTrade) -> None:
        if working.half_take_profit_done:
            return
        working.half_take_profit_done = True
        working.stop_loss_price = max(working.stop_loss_price, working.average_entry_price)

    def partial_take_profit(self, market, ratio=None) -> TradeSummary:
        """Sell ``ratio`` of the remaining quantity at market.

        ``market`` may also be a PartialExitRequest (or its camelCase body),
        in which case ``ratio`` is taken from it. ``ratio`` defaults to the
        trade's half_take_profit_ratio. After the first partial exit the stop
        moves up to break-even; a remainder worth less than the minimum
        effective holding is written off and the trade closes.

        Raises:
            InvalidArgument: ratio not a number, outside (0, 1], or the slice
                is below the minimum order
            PositionNotFound: No OPEN trade for the market
            OrderRejected: The sell was refused (nothing is written)
        """
        if isinstance(market, (PartialExitRequest, dict)):
            request = parse_request(PartialExitRequest, market)
        else:
            request = parse_request(PartialExitRequest, {"market": market, "ratio": ratio})
        market = self.normalize_market(request.market)
        with self._market_lock(market):
            trade = self._require_open(market)
            ratio = trade.half_take_profit_ratio if request.ratio is None else request.ratio
            if not ratio.is_finite() or not (ZERO < ratio <= 1):
                raise InvalidArgument(
                    f"ratio must be in (0, 1], got {ratio}", field="ratio", current_state=trade.status.value
                )

            quantity = floor_quantity(trade.remaining_quantity * ratio)
            if quantity <= 0:
                raise InvalidArgument(
                    f"ratio {ratio} of {trade.remaining_quantity} rounds to zero", field="ratio", current_state="OPEN"
                )
            price = self._current_price(market) or trade.average_entry_price
            value = quantity * price
            if value < self.defaults.min_effective_holding_krw:
                raise InvalidArgument(
                    f"partial exit of {value} KRW is below the minimum order; close the position instead",
                    field="ratio",
                    current_state="BELOW_MIN_ORDER",
                )

            order = self.account.place_market_order(market, SIDE_SELL, quantity)
            working = trade.copy()
            events = self._apply_fill(working, order, quantity, price, "MANUAL_PARTIAL_TP")
            if events and events[0].event_type == EventType.CLOSE:
                # keep the exit itself as a PARTIAL_EXIT fill, followed by the close marker
                fill = events[0]
                events = [
                    GuidedTradeEvent(
                        trade_id=trade.id,
                        event_type=EventType.PARTIAL_EXIT,
                        price=fill.price,
                        quantity=fill.quantity,
                        order_id=fill.order_id,
                        message="MANUAL_PARTIAL_TP",
                    ),
                    GuidedTradeEvent(
                        trade_id=trade.id,
                        event_type=EventType.CLOSE,
                        price=fill.price,
                        message="closed by partial take-profit",
                    ),
                ]
            if working.is_open and events:
                dust_value = working.remaining_quantity * price
                if dust_value < self.defaults.min_effective_holding_krw:
                    events.extend(self._write_off(
                        working, price, "MANUAL_PARTIAL_TP_DUST", f"dust remainder written off ({dust_value} KRW)"
                    ))
                else:
                    self._raise_stop_to_break_even(working)
            self.store.save_transition(working, events)

        trade_logger(market, trade.id).info(
            f"Partial take-profit | ratio={ratio} qty={quantity} remaining={working.remaining_quantity} "
            f"status={working.status.value}"
        )
        return TradeSummary.from_trade(working)

    def record_exit_fill(
        self, market: str, order_id: str, quantity: Decimal, price: Decimal, reason: str = "EXTERNAL_FILL"
    ) -> Optional[TradeSummary]:
        """Apply a sell fill reported after the fact (limit order, retried report).

        A fill whose order_id is already in the trade's ledger is ignored and
        returns None.

        Raises:
            PositionNotFound: No OPEN trade for the market
        """
        market = self.normalize_market(market)
        if not order_id:
            raise InvalidArgument("order_id is required to apply a fill", field="orderId")
        with self._market_lock(market):
            trade = self._require_open(market)
            if self.store.has_order_event(trade.id, order_id):
                trade_logger(market, trade.id).info(f"Duplicate fill ignored | order_id={order_id}")
                return None
            working = trade.copy()
            order = OrderResult(
                order_id=order_id, market=market, side=SIDE_SELL, executed_quantity=quantity, average_price=price
            )
            events = self._apply_fill(working, order, quantity, price, reason)
            if working.is_open and events:
                self._raise_stop_to_break_even(working)
            self.store.save_transition(working, events)
        return TradeSummary.from_trade(working)

    def stop_auto_trading(self, market: str) -> TradeSummary:
        """Force-close the market's open trade at the current price.

        Raises:
            PositionNotFound: No OPEN trade for the market
            OrderRejected: The sell was refused; the trade stays OPEN
        """
        market = self.normalize_market(market)
        with self._market_lock(market):
            trade = self._require_open(market)
            price = self._current_price(market) or trade.average_entry_price
            working = trade.copy()
            try:
                events = self._close_position(working, price, "MANUAL_STOP")
            except OrderRejected:
                failed = trade.copy()
                failed.last_action = "SELL_FAILED:MANUAL_STOP"
                self.store.save_transition(failed)
                raise
            self.store.save_transition(working, events)

        trade_logger(market, trade.id).info(
            f"Guided trade stopped | price={working.average_exit_price} pnl={working.realized_pnl} "
            f"status={working.status.value}"
        )
        return TradeSummary.from_trade(working)

    # --- Price-driven transitions ---
    def _exit_reason(self, trade: GuidedTrade, price: Decimal) -> Optional[str]:
        if trade.trailing_stop_price is not None and price <= trade.trailing_stop_price:
            return "TRAILING_STOP"
        if price <= trade.stop_loss_price:
            return "STOP_LOSS"
        if price >= trade.take_profit_price:
            return "TAKE_PROFIT"
        return None

    def on_price_tick(self, market: str, price: Decimal, observed_at: Optional[datetime] = None) -> TickOutcome:
        """Apply one observed price to the market's open trade.

        Ticks observed at or before the last applied tick are ignored, so a
        retried stale tick can never move the trailing stop backward.
        """
        market = self.normalize_market(market)
        if not isinstance(price, Decimal):
            price = Decimal(str(price))
        if price <= 0:
            raise InvalidArgument(f"price must be positive, got {price}", field="price")
        observed_at = observed_at or utcnow()
        if observed_at.tzinfo is None:
            # naive timestamps are taken as UTC
            observed_at = observed_at.replace(tzinfo=timezone.utc)

        with self._market_lock(market):
            trade = self.store.find_open_trade(market)
            if trade is None:
                return TickOutcome(market=market, action="NO_POSITION", price=price)
            log = trade_logger(market, trade.id)
            if trade.last_price_at is not None and observed_at <= trade.last_price_at:
                log.debug(f"Stale tick ignored | observed_at={observed_at} last={trade.last_price_at}")
                return TickOutcome(
                    market=market,
                    action="STALE",
                    trade_id=trade.id,
                    price=price,
                    trailing_stop_price=trade.trailing_stop_price,
                )

            working = trade.copy()
            working.last_price_at = observed_at
            events: List[GuidedTradeEvent] = []
            if working.ratchet_trailing(price):
                working.last_action = "TRAILING_UPDATED"
                events.append(
                    GuidedTradeEvent(
                        trade_id=trade.id,
                        event_type=EventType.TRAILING_UPDATE,
                        price=working.trailing_stop_price,
                        message=f"peak={working.trailing_peak_price}",
                    )
                )
                log.info(f"Trailing stop raised | peak={working.trailing_peak_price} stop={working.trailing_stop_price}")

            reason = self._exit_reason(working, price)
            if reason is None:
                self.store.save_transition(working, events)
                return TickOutcome(
                    market=market,
                    action="TRAILING_UPDATED" if events else "HOLD",
                    trade_id=trade.id,
                    price=price,
                    trailing_stop_price=working.trailing_stop_price,
                )

            before_close = working.copy()
            try:
                events.extend(self._close_position(working, price, reason))
            except OrderRejected as e:
                log.warning(f"Exit order rejected, trade stays open | reason={reason} error={e.reason}")
                before_close.last_action = f"SELL_FAILED:{reason}"
                self.store.save_transition(before_close, events)
                return TickOutcome(
                    market=market,
                    action="CLOSE_FAILED",
                    trade_id=trade.id,
                    price=price,
                    trailing_stop_price=before_close.trailing_stop_price,
                    exit_reason=reason,
                    message=e.message,
                )
            self.store.save_transition(working, events)

        action = "CLOSED" if not working.is_open else "PARTIAL_CLOSE"
        log.info(
            f"Exit triggered | reason={reason} price={price} avg_exit={working.average_exit_price} "
            f"pnl={working.realized_pnl} action={action}"
        )
        return TickOutcome(
            market=market,
            action=action,
            trade_id=trade.id,
            price=price,
            trailing_stop_price=working.trailing_stop_price,
            exit_reason=working.exit_reason,
        )

    def monitor_open_trades(self, prices: Optional[Mapping[str, Decimal]] = None) -> List[TickOutcome]:
        """Scheduled sweep: one tick per open trade, failures isolated per trade.

        Prices come from ``prices`` when given, otherwise from the market data
        source. A trade whose balance has disappeared (sold outside the
        engine) is closed without an order at the current price.
        """
        trades = self.store.list_open_trades()
        if not trades:
            return []

        try:
            balances: Optional[List[Balance]] = self.account.get_balances()
        except Exception as e:
            logger.warning(f"Balances unavailable, skipping balance check | error={e!r}")
            balances = None

        outcomes = []
        for trade in trades:
            log = trade_logger(trade.market, trade.id)
            try:
                price = prices.get(trade.market) if prices is not None else self._current_price(trade.market)
                if price is None:
                    log.warning("No price for open trade, skipping")
                    outcomes.append(TickOutcome(market=trade.market, action="NO_PRICE", trade_id=trade.id))
                    continue
                if balances is not None and self.effective_holding(trade.market, price, balances) <= 0:
                    outcomes.append(self._close_without_balance(trade.market, price))
                    continue
                outcomes.append(self.on_price_tick(trade.market, price))
            except Exception as e:
                log.exception(f"Monitor failed for trade | error={e!r}")
                outcomes.append(TickOutcome(market=trade.market, action="ERROR", trade_id=trade.id, message=str(e)))
        return outcomes

    def _close_without_balance(self, market: str, price: Decimal) -> TickOutcome:
        with self._market_lock(market):
            trade = self._require_open(market)
            working = trade.copy()
            events = self._write_off(
                working, price, "NO_EFFECTIVE_BALANCE", "no effective balance left, closed without sell"
            )
            self.store.save_transition(working, events)
        trade_logger(market, trade.id).warning(f"Closed without balance | price={price}")
        return TickOutcome(
            market=market, action="CLOSED", trade_id=trade.id, price=price, exit_reason=working.exit_reason
        )

    # --- Reads ---
    def get_active_trade(self, market: str) -> Optional[GuidedTrade]:
        return self.store.find_open_trade(self.normalize_market(market))

    def list_open_trades(self) -> List[GuidedTrade]:
        return self.store.list_open_trades()

    def list_closed_trades(self, limit: int = 50) -> List[GuidedTrade]:
        return self.store.list_closed_trades(limit=max(1, limit))

    def list_events(self, trade_id: int) -> List[GuidedTradeEvent]:
        return self.store.list_events(trade_id)

    def get_today_stats(self, now: Optional[datetime] = None) -> DailyStats:
        """Closed-today summary; the day boundary uses the configured UTC offset."""
        tz = timezone(timedelta(hours=self.defaults.stats_utc_offset_hours))
        local_now = (now or utcnow()).astimezone(tz)
        day_start = local_now.replace(hour=0, minute=0, second=0, microsecond=0)

        closed = self.store.list_closed_trades(since=day_start.astimezone(timezone.utc))
        wins = sum(1 for t in closed if t.realized_pnl > 0)
        total_pnl = sum((t.realized_pnl for t in closed), ZERO)
        avg_pnl_percent = (
            (sum((t.realized_pnl_percent for t in closed), ZERO) / len(closed)).quantize(Decimal("0.0001"))
            if closed
            else ZERO
        )
        win_rate = (
            (Decimal(wins) / Decimal(len(closed)) * HUNDRED).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
            if closed
            else ZERO
        )
        open_trades = self.store.list_open_trades()
        invested = sum((t.average_entry_price * t.remaining_quantity for t in open_trades), ZERO)
        return DailyStats(
            total_trades=len(closed),
            wins=wins,
            losses=len(closed) - wins,
            total_pnl_krw=total_pnl,
            avg_pnl_percent=avg_pnl_percent,
            win_rate=win_rate,
            open_position_count=len(open_trades),
            total_invested_krw=invested.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP),
            trades=[TradeSummary.from_trade(t) for t in closed],
        )
