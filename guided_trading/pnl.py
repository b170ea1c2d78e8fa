"""P&L reconciliation for closed guided trades.

The event ledger is the source of truth: :func:`replay_ledger` folds a
trade's ordered events into entry/exit averages and realized P&L without
touching any state, and :class:`PnlReconciler` compares the result with the
stored summary, grading each trade HIGH or LOW confidence.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable, Iterable, Optional

from .api import ReconcileItem, ReconcileResponse
from .config import ReconcileConfig
from .logging_setup import logger, trade_logger
from .persistence_sqlite import SQLiteTradeStore
from .trade import (
    ENTRY_FILL_EVENTS,
    EXIT_FILL_EVENTS,
    HUNDRED,
    KRW_PLACES,
    PERCENT_PLACES,
    PRICE_PLACES,
    ZERO,
    GuidedTrade,
    GuidedTradeEvent,
    PnlConfidence,
    utcnow,
)


@dataclass(frozen=True)
class LedgerReplay:
    """Closed-trade figures rebuilt from the ledger.

    Attributes:
        confidence: HIGH when both sides come from fills and the exit
            quantity explains the entry quantity; LOW otherwise
        can_apply: Whether the figures may overwrite the stored summary
        reason: Short human-readable source description
    """

    confidence: PnlConfidence
    can_apply: bool
    average_entry_price: Decimal
    entry_quantity: Decimal
    cumulative_exit_quantity: Decimal
    average_exit_price: Decimal
    realized_pnl: Decimal
    realized_pnl_percent: Decimal
    reason: str


def _is_fill(event: GuidedTradeEvent) -> bool:
    return (
        event.quantity is not None
        and event.quantity > 0
        and event.price is not None
        and event.price > 0
    )


def _stored(trade: GuidedTrade, reason: str) -> LedgerReplay:
    return LedgerReplay(
        confidence=PnlConfidence.LOW,
        can_apply=False,
        average_entry_price=trade.average_entry_price,
        entry_quantity=trade.entry_quantity,
        cumulative_exit_quantity=trade.cumulative_exit_quantity,
        average_exit_price=trade.average_exit_price,
        realized_pnl=trade.realized_pnl.quantize(KRW_PLACES, rounding=ROUND_HALF_UP),
        realized_pnl_percent=trade.realized_pnl_percent.quantize(PERCENT_PLACES, rounding=ROUND_HALF_UP),
        reason=reason,
    )


def replay_ledger(
    trade: GuidedTrade,
    events: Iterable[GuidedTradeEvent],
    quantity_tolerance: Decimal = Decimal("0.00000001"),
) -> LedgerReplay:
    """Recompute closed-state accounting from the ordered event ledger.

    ENTRY/ADOPT events with a positive quantity and price are entry fills;
    PARTIAL_EXIT/CLOSE events with a positive quantity and price are exit
    fills. TRAILING_UPDATE and quantity-less CLOSE markers carry no fill.

    A missing side falls back to the stored summary and grades LOW. Only a
    HIGH replay (both sides from fills, exit quantity equal to entry quantity
    within ``quantity_tolerance``) may overwrite stored figures.
    """
    entry_qty = ZERO
    entry_value = ZERO
    exit_qty = ZERO
    exit_value = ZERO
    for event in events:
        if not _is_fill(event):
            continue
        if event.event_type in ENTRY_FILL_EVENTS:
            entry_qty += event.quantity
            entry_value += event.price * event.quantity
        elif event.event_type in EXIT_FILL_EVENTS:
            exit_qty += event.quantity
            exit_value += event.price * event.quantity

    confidence = PnlConfidence.HIGH
    reasons = []
    if entry_qty <= 0:
        confidence = PnlConfidence.LOW
        reasons.append("no entry fills")
        entry_qty = trade.entry_quantity
        entry_value = trade.average_entry_price * entry_qty
    if exit_qty <= 0:
        confidence = PnlConfidence.LOW
        reasons.append("no exit fills")
        exit_qty = trade.cumulative_exit_quantity
        exit_value = trade.average_exit_price * exit_qty

    closed_qty = min(entry_qty, exit_qty)
    if closed_qty <= 0 or entry_value <= 0 or exit_value <= 0:
        return _stored(trade, "insufficient fill data")

    if confidence == PnlConfidence.HIGH and abs(exit_qty - entry_qty) > quantity_tolerance:
        confidence = PnlConfidence.LOW
        reasons.append(f"unexplained residual {entry_qty - exit_qty}")

    average_entry = (entry_value / entry_qty).quantize(PRICE_PLACES, rounding=ROUND_HALF_UP)
    average_exit = (exit_value / exit_qty).quantize(PRICE_PLACES, rounding=ROUND_HALF_UP)
    invested = average_entry * closed_qty
    realized = ((average_exit - average_entry) * closed_qty).quantize(KRW_PLACES, rounding=ROUND_HALF_UP)
    percent = (
        (realized / invested * HUNDRED).quantize(PERCENT_PLACES, rounding=ROUND_HALF_UP)
        if invested > 0
        else ZERO.quantize(PERCENT_PLACES)
    )

    high = confidence == PnlConfidence.HIGH
    return LedgerReplay(
        confidence=confidence,
        can_apply=high,
        average_entry_price=average_entry,
        entry_quantity=entry_qty,
        cumulative_exit_quantity=entry_qty if high else closed_qty,
        average_exit_price=average_exit,
        realized_pnl=realized,
        realized_pnl_percent=percent,
        reason="ledger" if high else "fallback: " + ", ".join(reasons),
    )


class PnlReconciler:
    """Sweep recently closed trades and correct drift from their ledgers.

    In dry-run mode nothing is written; otherwise every scanned trade gets
    its confidence and ``pnl_reconciled_at`` stamped, and HIGH replays also
    overwrite the entry/exit/P&L figures. Only reconciliation columns of
    CLOSED rows are ever written.
    """

    def __init__(
        self,
        store: SQLiteTradeStore,
        config: Optional[ReconcileConfig] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.config = config or ReconcileConfig()
        self.clock = clock

    def _differs(self, trade: GuidedTrade, replay: LedgerReplay) -> bool:
        if trade.pnl_confidence != replay.confidence:
            return True
        if not replay.can_apply:
            return False
        cfg = self.config
        return (
            abs(trade.average_entry_price - replay.average_entry_price) > cfg.price_tolerance
            or abs(trade.entry_quantity - replay.entry_quantity) > cfg.quantity_tolerance
            or abs(trade.cumulative_exit_quantity - replay.cumulative_exit_quantity) > cfg.quantity_tolerance
            or abs(trade.average_exit_price - replay.average_exit_price) > cfg.price_tolerance
            or abs(trade.realized_pnl - replay.realized_pnl) > cfg.pnl_tolerance
            or abs(trade.realized_pnl_percent - replay.realized_pnl_percent) > PERCENT_PLACES
        )

    def reconcile(self, window_days: int = 30, dry_run: bool = True) -> ReconcileResponse:
        """Replay every trade closed in the last ``window_days`` (clamped to 1..max)."""
        days = min(max(int(window_days), 1), self.config.max_window_days)
        now = self.clock()
        since = now - timedelta(days=days)
        trades = self.store.list_closed_trades(since=since, limit=self.config.max_trades)

        result = ReconcileResponse(window_days=days, dry_run=dry_run, scanned_trades=len(trades))
        for trade in trades:
            log = trade_logger(trade.market, trade.id)
            try:
                replay = replay_ledger(trade, self.store.list_events(trade.id), self.config.quantity_tolerance)
                changed = self._differs(trade, replay)
                if not dry_run:
                    self._persist(trade, replay, now)
            except Exception as e:
                log.exception(f"Reconcile failed for trade | error={e!r}")
                result.failed_trades += 1
                continue

            if replay.confidence == PnlConfidence.HIGH:
                result.high_confidence_trades += 1
            else:
                result.low_confidence_trades += 1
            if changed:
                result.updated_trades += 1
                log.info(
                    f"P&L drift | stored_pnl={trade.realized_pnl} ledger_pnl={replay.realized_pnl} "
                    f"confidence={replay.confidence.value} dry_run={dry_run}"
                )
            else:
                result.unchanged_trades += 1

            if len(result.sample) < self.config.sample_size:
                result.sample.append(
                    ReconcileItem(
                        trade_id=trade.id,
                        market=trade.market,
                        confidence=replay.confidence,
                        reason=replay.reason,
                        recalculated=replay.can_apply,
                        changed=changed,
                        realized_pnl=replay.realized_pnl,
                        realized_pnl_percent=replay.realized_pnl_percent,
                    )
                )

        logger.info(
            f"Reconcile done | window_days={days} dry_run={dry_run} scanned={result.scanned_trades} "
            f"updated={result.updated_trades} unchanged={result.unchanged_trades} "
            f"high={result.high_confidence_trades} low={result.low_confidence_trades} failed={result.failed_trades}"
        )
        return result

    def _persist(self, trade: GuidedTrade, replay: LedgerReplay, now: datetime) -> None:
        updated = trade.copy()
        updated.pnl_confidence = replay.confidence
        updated.pnl_reconciled_at = now
        if replay.can_apply:
            updated.average_entry_price = replay.average_entry_price
            updated.entry_quantity = replay.entry_quantity
            updated.cumulative_exit_quantity = replay.cumulative_exit_quantity
            updated.average_exit_price = replay.average_exit_price
            updated.realized_pnl = replay.realized_pnl
            updated.realized_pnl_percent = replay.realized_pnl_percent
        self.store.save_reconciliation(updated)
