import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Iterable, List, Optional, Union

from .errors import InvariantViolation, PositionAlreadyOpen
from .trade import EventType, GuidedTrade, GuidedTradeEvent, PnlConfidence, TradeStatus, utcnow

_DECIMAL_COLUMNS = (
    "average_entry_price",
    "entry_quantity",
    "remaining_quantity",
    "stop_loss_price",
    "take_profit_price",
    "trailing_trigger_percent",
    "trailing_offset_percent",
    "trailing_peak_price",
    "trailing_stop_price",
    "dca_step_percent",
    "half_take_profit_ratio",
    "cumulative_exit_quantity",
    "average_exit_price",
    "realized_pnl",
    "realized_pnl_percent",
)
_DATETIME_COLUMNS = ("pnl_reconciled_at", "last_price_at", "created_at", "updated_at", "closed_at")
_TEXT_COLUMNS = ("market", "mode", "entry_source", "notes", "exit_reason", "last_action")
_MUTABLE_COLUMNS = tuple(
    c for c in ("status",) + _DECIMAL_COLUMNS + ("half_take_profit_done", "pnl_confidence") + _DATETIME_COLUMNS + _TEXT_COLUMNS
    if c not in ("market", "created_at")
)
_RECONCILE_COLUMNS = (
    "average_entry_price",
    "entry_quantity",
    "cumulative_exit_quantity",
    "average_exit_price",
    "realized_pnl",
    "realized_pnl_percent",
    "pnl_confidence",
    "pnl_reconciled_at",
    "updated_at",
)


def _dec_out(value: Optional[Decimal]) -> Optional[str]:
    return format(value, "f") if value is not None else None


def _dec_in(value: Optional[str]) -> Optional[Decimal]:
    return Decimal(value) if value is not None else None


def _dt_out(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat(timespec="microseconds") if value is not None else None


def _dt_in(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value is not None else None


def _column_value(trade: GuidedTrade, column: str):
    value = getattr(trade, column)
    if column in _DECIMAL_COLUMNS:
        return _dec_out(value)
    if column in _DATETIME_COLUMNS:
        return _dt_out(value)
    if column in ("status", "pnl_confidence"):
        return value.value
    if column == "half_take_profit_done":
        return 1 if value else 0
    return value


def _trade_from_row(row: sqlite3.Row) -> GuidedTrade:
    kwargs = {"id": row["id"]}
    for column in _DECIMAL_COLUMNS:
        kwargs[column] = _dec_in(row[column])
    for column in _DATETIME_COLUMNS:
        kwargs[column] = _dt_in(row[column])
    for column in _TEXT_COLUMNS:
        kwargs[column] = row[column]
    kwargs["status"] = TradeStatus(row["status"])
    kwargs["pnl_confidence"] = PnlConfidence(row["pnl_confidence"])
    kwargs["half_take_profit_done"] = bool(row["half_take_profit_done"])
    return GuidedTrade(**kwargs)


def _event_from_row(row: sqlite3.Row) -> GuidedTradeEvent:
    return GuidedTradeEvent(
        id=row["id"],
        trade_id=row["trade_id"],
        event_type=EventType(row["event_type"]),
        price=_dec_in(row["price"]),
        quantity=_dec_in(row["quantity"]),
        message=row["message"],
        order_id=row["order_id"],
        timestamp=_dt_in(row["created_at"]),
    )


class SQLiteTradeStore:
    """SQLite-backed store for guided trades and their append-only event ledger.

    APIs:
    - `insert_open_trade(trade, events)`: guarded insert of a new OPEN trade
    - `save_transition(trade, events)`: atomic update of an OPEN trade plus events
    - `save_reconciliation(trade)`: reconciliation fields of a CLOSED trade only
    - `find_open_trade(market)` / `get_trade(id)` / `list_open_trades()`
    - `list_closed_trades(since, limit)` / `list_events(trade_id)`

    All writes use BEGIN IMMEDIATE transactions for atomicity; events are
    insert-only.
    """

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(str(self.path), timeout=30, check_same_thread=False, isolation_level=None)
        self.conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._init_db()

    def _init_db(self):
        from .db_migrations import apply_migrations

        self.conn.execute("PRAGMA foreign_keys = ON")
        apply_migrations(self.conn)

    @contextmanager
    def transaction(self):
        with self._lock:
            self.conn.execute("BEGIN IMMEDIATE")
            try:
                yield self.conn
            except BaseException:
                self.conn.execute("ROLLBACK")
                raise
            self.conn.execute("COMMIT")

    # --- Trade writes ---
    def insert_open_trade(self, trade: GuidedTrade, events: Iterable[GuidedTradeEvent] = ()) -> GuidedTrade:
        """Insert a new OPEN trade and its first events.

        The open-trade check runs inside the write transaction, right before
        the insert; the partial unique index catches writers in other
        processes.

        Raises:
            PositionAlreadyOpen: An OPEN trade already exists for the market
        """
        trade.check_invariants()
        columns = ("market", "created_at") + _MUTABLE_COLUMNS
        sql = (
            f"INSERT INTO guided_trades({', '.join(columns)}) "
            f"VALUES({', '.join('?' for _ in columns)})"
        )
        try:
            with self.transaction() as conn:
                existing = self._open_trade_id(conn, trade.market)
                if existing is not None:
                    raise PositionAlreadyOpen(trade.market, existing)
                cur = conn.execute(sql, [_column_value(trade, c) for c in columns])
                trade.id = cur.lastrowid
                self._insert_events(conn, trade.id, events)
        except sqlite3.IntegrityError:
            with self._lock:
                existing = self._open_trade_id(self.conn, trade.market)
            if existing is None:
                raise
            raise PositionAlreadyOpen(trade.market, existing)
        return trade

    def save_transition(self, trade: GuidedTrade, events: Iterable[GuidedTradeEvent] = ()) -> None:
        """Persist a transition of an OPEN trade and append its events atomically.

        Raises:
            InvariantViolation: The trade breaks an invariant, or the stored
                row is no longer OPEN (closed trades are immutable)
        """
        trade.check_invariants()
        trade.updated_at = utcnow()
        assignments = ", ".join(f"{c} = ?" for c in _MUTABLE_COLUMNS)
        params = [_column_value(trade, c) for c in _MUTABLE_COLUMNS] + [trade.id]
        with self.transaction() as conn:
            cur = conn.execute(
                f"UPDATE guided_trades SET {assignments} WHERE id = ? AND status = 'OPEN'", params
            )
            if cur.rowcount != 1:
                raise InvariantViolation(f"trade #{trade.id} is not OPEN in the store")
            self._insert_events(conn, trade.id, events)

    def save_reconciliation(self, trade: GuidedTrade) -> None:
        """Write the reconciliation fields of a CLOSED trade."""
        assignments = ", ".join(f"{c} = ?" for c in _RECONCILE_COLUMNS)
        trade.updated_at = utcnow()
        params = [_column_value(trade, c) for c in _RECONCILE_COLUMNS] + [trade.id]
        with self.transaction() as conn:
            cur = conn.execute(
                f"UPDATE guided_trades SET {assignments} WHERE id = ? AND status = 'CLOSED'", params
            )
            if cur.rowcount != 1:
                raise InvariantViolation(f"trade #{trade.id} is not CLOSED in the store")

    def _insert_events(self, conn, trade_id: int, events: Iterable[GuidedTradeEvent]) -> None:
        for event in events:
            event.trade_id = trade_id
            cur = conn.execute(
                "INSERT INTO guided_trade_events(trade_id, event_type, price, quantity, message, order_id, created_at) "
                "VALUES(?, ?, ?, ?, ?, ?, ?)",
                (
                    trade_id,
                    event.event_type.value,
                    _dec_out(event.price),
                    _dec_out(event.quantity),
                    event.message,
                    event.order_id,
                    _dt_out(event.timestamp),
                ),
            )
            event.id = cur.lastrowid

    # --- Trade reads ---
    @staticmethod
    def _open_trade_id(conn, market: str) -> Optional[int]:
        row = conn.execute(
            "SELECT id FROM guided_trades WHERE market = ? AND status = 'OPEN'", (market,)
        ).fetchone()
        return row[0] if row else None

    def find_open_trade(self, market: str) -> Optional[GuidedTrade]:
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM guided_trades WHERE market = ? AND status = 'OPEN'", (market,)
            ).fetchone()
        return _trade_from_row(row) if row else None

    def get_trade(self, trade_id: int) -> Optional[GuidedTrade]:
        with self._lock:
            row = self.conn.execute("SELECT * FROM guided_trades WHERE id = ?", (trade_id,)).fetchone()
        return _trade_from_row(row) if row else None

    def list_open_trades(self) -> List[GuidedTrade]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT * FROM guided_trades WHERE status = 'OPEN' ORDER BY id"
            ).fetchall()
        return [_trade_from_row(r) for r in rows]

    def list_closed_trades(self, since: Optional[datetime] = None, limit: Optional[int] = None) -> List[GuidedTrade]:
        """CLOSED trades, most recently closed first."""
        sql = "SELECT * FROM guided_trades WHERE status = 'CLOSED'"
        params: list = []
        if since is not None:
            sql += " AND closed_at >= ?"
            params.append(_dt_out(since))
        sql += " ORDER BY closed_at DESC, id DESC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        with self._lock:
            rows = self.conn.execute(sql, params).fetchall()
        return [_trade_from_row(r) for r in rows]

    # --- Event reads ---
    def list_events(self, trade_id: int) -> List[GuidedTradeEvent]:
        """Ledger of a trade in insertion order."""
        with self._lock:
            rows = self.conn.execute(
                "SELECT * FROM guided_trade_events WHERE trade_id = ? ORDER BY id", (trade_id,)
            ).fetchall()
        return [_event_from_row(r) for r in rows]

    def has_order_event(self, trade_id: int, order_id: str) -> bool:
        with self._lock:
            row = self.conn.execute(
                "SELECT 1 FROM guided_trade_events WHERE trade_id = ? AND order_id = ? LIMIT 1",
                (trade_id, order_id),
            ).fetchone()
        return row is not None

    def close(self):
        with self._lock:
            self.conn.close()
