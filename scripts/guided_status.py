#!/usr/bin/env python
"""Guided trade status CLI: query trades, ledgers and today's stats.

Usage:
    python scripts/guided_status.py --db guided.db open
    python scripts/guided_status.py --db guided.db closed --limit 20
    python scripts/guided_status.py --db guided.db events <trade_id>
    python scripts/guided_status.py --db guided.db stats
"""
import argparse
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from guided_trading.lifecycle import GuidedTradingManager
from guided_trading.persistence_sqlite import SQLiteTradeStore
from guided_trading.trade import GuidedTrade


def format_decimal(d, decimals=2):
    """Format decimal for display."""
    if d is None:
        return "-"
    return f"{d:.{decimals}f}"


class _NoExchange:
    """Read-only commands never touch the exchange."""

    def __getattr__(self, name):
        raise RuntimeError(f"exchange access ({name}) is not available from the status CLI")


def print_trades(trades):
    if not trades:
        print("No trades")
        return

    print(
        f"\n{'ID':<6} {'Market':<12} {'Status':<7} {'Entry':>14} {'Remaining':>16} "
        f"{'Stop':>14} {'Trailing':>14} {'P&L':>12} {'Conf':<6}"
    )
    print("-" * 110)
    for t in trades:
        print(
            f"{t.id:<6} {t.market:<12} {t.status.value:<7} "
            f"{format_decimal(t.average_entry_price, 4):>14} "
            f"{format_decimal(t.remaining_quantity, 8):>16} "
            f"{format_decimal(t.stop_loss_price, 4):>14} "
            f"{format_decimal(t.trailing_stop_price, 4):>14} "
            f"{format_decimal(t.realized_pnl):>12} "
            f"{t.pnl_confidence.value:<6}"
        )


def show_events(manager, trade_id):
    trade: GuidedTrade = manager.store.get_trade(trade_id)
    if trade is None:
        print(f"Trade not found: {trade_id}")
        return 1

    print(f"\n=== Trade #{trade.id} {trade.market} ({trade.status.value}) ===")
    print(f"Mode: {trade.mode}  Source: {trade.entry_source}  Last action: {trade.last_action or '-'}")
    print(f"Exit reason: {trade.exit_reason or '-'}")
    events = manager.list_events(trade_id)
    print(f"\nEvents ({len(events)}):")
    print(f"{'Type':<16} {'Price':>16} {'Qty':>16} {'Order':<14} {'At':<34} Message")
    print("-" * 120)
    for e in events:
        print(
            f"{e.event_type.value:<16} {format_decimal(e.price, 8):>16} {format_decimal(e.quantity, 8):>16} "
            f"{e.order_id or '-':<14} {e.timestamp.isoformat():<34} {e.message or ''}"
        )
    return 0


def show_stats(manager):
    stats = manager.get_today_stats()
    print("\n=== Today ===")
    print(f"Closed trades: {stats.total_trades} (wins {stats.wins}, losses {stats.losses})")
    print(f"Win rate:      {stats.win_rate}%")
    print(f"Total P&L:     {format_decimal(stats.total_pnl_krw)} KRW")
    print(f"Avg P&L %:     {stats.avg_pnl_percent}")
    print(f"Open:          {stats.open_position_count} ({format_decimal(stats.total_invested_krw)} KRW invested)")


def main(argv=None):
    parser = argparse.ArgumentParser(description="Guided trade status")
    parser.add_argument("--db", required=True, help="Path to sqlite DB file")
    sub = parser.add_subparsers(dest="cmd")
    sub.add_parser("open", help="List open trades")
    closed_p = sub.add_parser("closed", help="List recently closed trades")
    closed_p.add_argument("--limit", type=int, default=50)
    events_p = sub.add_parser("events", help="Show one trade and its ledger")
    events_p.add_argument("trade_id", type=int)
    sub.add_parser("stats", help="Today's closed-trade stats")
    args = parser.parse_args(argv)

    store = SQLiteTradeStore(args.db)
    exchange = _NoExchange()
    manager = GuidedTradingManager(store, exchange, exchange)
    try:
        if args.cmd == "open":
            print_trades(manager.list_open_trades())
        elif args.cmd == "closed":
            print_trades(manager.list_closed_trades(limit=args.limit))
        elif args.cmd == "events":
            return show_events(manager, args.trade_id)
        elif args.cmd == "stats":
            show_stats(manager)
        else:
            parser.print_help()
            return 2
    finally:
        store.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
