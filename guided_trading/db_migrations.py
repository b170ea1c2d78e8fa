"""Versioned schema migrations for the guided trade store.

Decimal columns are TEXT holding canonical fixed-point strings so that no
price, quantity or P&L value ever round-trips through a binary float.
"""
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional


def _migration_1(conn):
    cur = conn.cursor()
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS guided_trades (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            market TEXT NOT NULL,
            status TEXT NOT NULL,
            average_entry_price TEXT NOT NULL,
            entry_quantity TEXT NOT NULL,
            remaining_quantity TEXT NOT NULL,
            stop_loss_price TEXT NOT NULL,
            take_profit_price TEXT NOT NULL,
            trailing_trigger_percent TEXT NOT NULL,
            trailing_offset_percent TEXT NOT NULL,
            trailing_peak_price TEXT,
            trailing_stop_price TEXT,
            dca_step_percent TEXT NOT NULL,
            half_take_profit_ratio TEXT NOT NULL,
            half_take_profit_done INTEGER NOT NULL DEFAULT 0,
            cumulative_exit_quantity TEXT NOT NULL,
            average_exit_price TEXT NOT NULL,
            realized_pnl TEXT NOT NULL,
            realized_pnl_percent TEXT NOT NULL,
            pnl_confidence TEXT NOT NULL,
            pnl_reconciled_at TEXT,
            mode TEXT NOT NULL,
            entry_source TEXT NOT NULL,
            notes TEXT,
            exit_reason TEXT,
            last_action TEXT,
            last_price_at TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            closed_at TEXT
        )
        """
    )
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS guided_trade_events (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            trade_id INTEGER NOT NULL REFERENCES guided_trades(id),
            event_type TEXT NOT NULL,
            price TEXT,
            quantity TEXT,
            message TEXT,
            order_id TEXT,
            created_at TEXT NOT NULL
        )
        """
    )


def _migration_1_down(conn):
    cur = conn.cursor()
    cur.execute("DROP TABLE IF EXISTS guided_trade_events")
    cur.execute("DROP TABLE IF EXISTS guided_trades")


def _migration_2(conn):
    """Indices for lookups plus the one-open-trade-per-market guard."""
    cur = conn.cursor()
    cur.execute("CREATE INDEX IF NOT EXISTS idx_guided_trades_market ON guided_trades(market)")
    cur.execute("CREATE INDEX IF NOT EXISTS idx_guided_trades_status ON guided_trades(status)")
    cur.execute("CREATE INDEX IF NOT EXISTS idx_guided_trades_closed ON guided_trades(closed_at)")
    cur.execute(
        "CREATE UNIQUE INDEX IF NOT EXISTS uq_guided_trades_open_market "
        "ON guided_trades(market) WHERE status = 'OPEN'"
    )
    cur.execute("CREATE INDEX IF NOT EXISTS idx_guided_trade_events_trade ON guided_trade_events(trade_id)")
    cur.execute("CREATE INDEX IF NOT EXISTS idx_guided_trade_events_order ON guided_trade_events(order_id)")


def _migration_2_down(conn):
    """Drop indices."""
    cur = conn.cursor()
    cur.execute("DROP INDEX IF EXISTS idx_guided_trades_market")
    cur.execute("DROP INDEX IF EXISTS idx_guided_trades_status")
    cur.execute("DROP INDEX IF EXISTS idx_guided_trades_closed")
    cur.execute("DROP INDEX IF EXISTS uq_guided_trades_open_market")
    cur.execute("DROP INDEX IF EXISTS idx_guided_trade_events_trade")
    cur.execute("DROP INDEX IF EXISTS idx_guided_trade_events_order")


MIGRATIONS: Dict[int, Callable] = {
    1: _migration_1,
    2: _migration_2,
}

MIGRATION_DOWNS: Dict[int, Callable] = {
    1: _migration_1_down,
    2: _migration_2_down,
}


def applied_versions(conn) -> List[int]:
    cur = conn.cursor()
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version INTEGER PRIMARY KEY,
            applied_at TEXT NOT NULL
        )
        """
    )
    cur.execute("SELECT version FROM schema_migrations ORDER BY version")
    return [row[0] for row in cur.fetchall()]


def apply_migrations(conn) -> List[int]:
    """Apply pending migrations to the given sqlite3 connection.

    The connection must be in autocommit mode (``isolation_level=None``);
    each migration runs in its own explicit transaction.

    Returns the list of applied migration versions.
    """
    applied = set(applied_versions(conn))
    to_apply = sorted(v for v in MIGRATIONS if v not in applied)
    applied_now = []
    for v in to_apply:
        conn.execute("BEGIN IMMEDIATE")
        try:
            MIGRATIONS[v](conn)
            conn.execute(
                "INSERT INTO schema_migrations(version, applied_at) VALUES(?, ?)",
                (v, datetime.now(timezone.utc).isoformat()),
            )
        except Exception:
            conn.execute("ROLLBACK")
            raise
        conn.execute("COMMIT")
        applied_now.append(v)

    return applied_now


def rollback_migration(conn, version: int) -> None:
    """Rollback a specific migration version if a down migration is registered."""
    if version not in MIGRATION_DOWNS:
        raise RuntimeError(f"No down migration registered for version {version}")

    conn.execute("BEGIN IMMEDIATE")
    try:
        MIGRATION_DOWNS[version](conn)
        conn.execute("DELETE FROM schema_migrations WHERE version = ?", (version,))
    except Exception:
        conn.execute("ROLLBACK")
        raise
    conn.execute("COMMIT")


def rollback_last(conn) -> Optional[int]:
    """Rollback the latest applied migration if possible; returns rolled-back version or None."""
    versions = applied_versions(conn)
    if not versions:
        return None
    v = versions[-1]
    rollback_migration(conn, v)
    return v
