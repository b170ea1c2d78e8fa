#!/usr/bin/env python
"""P&L reconciliation CLI: replay closed trades from their ledgers.

Usage:
    python scripts/reconcile_pnl.py --db guided.db
    python scripts/reconcile_pnl.py --db guided.db --window-days 7 --apply
    python scripts/reconcile_pnl.py --config config.yaml --json
"""
import argparse
import json
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from guided_trading.api import ReconcileRequest, parse_request
from guided_trading.config import GuidedTradingConfig
from guided_trading.errors import GuidedTradingError
from guided_trading.logging_setup import setup_logging
from guided_trading.persistence_sqlite import SQLiteTradeStore
from guided_trading.pnl import PnlReconciler


def print_report(report):
    mode = "DRY RUN" if report.dry_run else "APPLIED"
    print(f"\n=== P&L Reconcile ({mode}, last {report.window_days} days) ===")
    print(f"Scanned:   {report.scanned_trades}")
    print(f"Updated:   {report.updated_trades}")
    print(f"Unchanged: {report.unchanged_trades}")
    print(f"HIGH/LOW:  {report.high_confidence_trades}/{report.low_confidence_trades}")
    print(f"Failed:    {report.failed_trades}")
    if report.sample:
        print(f"\n{'Trade':<8} {'Market':<12} {'Conf':<6} {'Changed':<8} {'P&L':>14} {'P&L %':>10}  Reason")
        print("-" * 80)
        for item in report.sample:
            print(
                f"{item.trade_id:<8} {item.market:<12} {item.confidence.value:<6} "
                f"{str(item.changed):<8} {item.realized_pnl:>14} {item.realized_pnl_percent:>10}  {item.reason}"
            )


def main(argv=None):
    parser = argparse.ArgumentParser(description="Reconcile guided trade P&L against the event ledger")
    parser.add_argument("--config", help="YAML config file")
    parser.add_argument("--db", help="Path to sqlite DB file (overrides config)")
    parser.add_argument("--window-days", type=int, default=30, help="Closed-trade window in days")
    parser.add_argument("--apply", action="store_true", help="Write corrections (default is dry run)")
    parser.add_argument("--json", action="store_true", help="Print the report as JSON")
    args = parser.parse_args(argv)

    config = GuidedTradingConfig.from_yaml(args.config) if args.config else GuidedTradingConfig()
    setup_logging(log_file=None, level=config.persistence.log_level, enable_console=not args.json)
    db_path = args.db or config.persistence.db_path

    store = SQLiteTradeStore(db_path)
    try:
        request = parse_request(
            ReconcileRequest, {"windowDays": args.window_days, "dryRun": not args.apply}
        )
        report = PnlReconciler(store, config.reconcile).reconcile(request.window_days, request.dry_run)
    except GuidedTradingError as e:
        print(json.dumps(e.to_dict()), file=sys.stderr)
        return 1
    finally:
        store.close()

    if args.json:
        print(json.dumps(report.to_response(), indent=2))
    else:
        print_report(report)
    return 0


if __name__ == "__main__":
    sys.exit(main())
