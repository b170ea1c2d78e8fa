"""Integration tests for the operational CLI tools: guided_status, reconcile_pnl."""
import json
import subprocess
import sys
from decimal import Decimal
from pathlib import Path

import pytest

from guided_trading.exchange import InMemoryExchange
from guided_trading.lifecycle import GuidedTradingManager
from guided_trading.persistence_sqlite import SQLiteTradeStore
from guided_trading.trade import PnlConfidence

SCRIPTS = Path(__file__).resolve().parents[1] / "scripts"


def run_script(name, args):
    cmd = [sys.executable, str(SCRIPTS / name)] + [str(a) for a in args]
    res = subprocess.run(cmd, capture_output=True, text=True, stdin=subprocess.DEVNULL)
    return res.returncode, res.stdout, res.stderr


@pytest.fixture
def seeded_db(tmp_path: Path):
    """One closed KRW-AAA trade and one open KRW-BBB trade."""
    db = tmp_path / "ops.db"
    store = SQLiteTradeStore(db)
    exchange = InMemoryExchange()
    manager = GuidedTradingManager(store, exchange, exchange)

    exchange.set_price("KRW-AAA", Decimal('100'))
    closed_id = manager.start_auto_trading({"market": "KRW-AAA", "amountKrw": "100000"}).trade_id
    exchange.set_price("KRW-AAA", Decimal('103'))
    manager.stop_auto_trading("KRW-AAA")

    exchange.set_price("KRW-BBB", Decimal('50'))
    open_id = manager.start_auto_trading({"market": "KRW-BBB", "amountKrw": "20000"}).trade_id
    store.close()
    return db, closed_id, open_id


def test_status_open_and_closed(seeded_db):
    db, closed_id, open_id = seeded_db

    code, out, err = run_script("guided_status.py", ["--db", db, "open"])
    assert code == 0, err
    assert "KRW-BBB" in out
    assert "KRW-AAA" not in out

    code, out, err = run_script("guided_status.py", ["--db", db, "closed", "--limit", "5"])
    assert code == 0, err
    assert "KRW-AAA" in out
    assert "3000.00" in out


def test_status_events_and_stats(seeded_db):
    db, closed_id, open_id = seeded_db

    code, out, err = run_script("guided_status.py", ["--db", db, "events", closed_id])
    assert code == 0, err
    assert "ENTRY" in out
    assert "CLOSE" in out
    assert "MANUAL_STOP" in out

    code, out, err = run_script("guided_status.py", ["--db", db, "events", 999])
    assert code == 1
    assert "Trade not found" in out

    code, out, err = run_script("guided_status.py", ["--db", db, "stats"])
    assert code == 0, err
    assert "Closed trades: 1 (wins 1, losses 0)" in out
    assert "Open:          1" in out


def test_reconcile_dry_run_then_apply(seeded_db):
    db, closed_id, open_id = seeded_db

    code, out, err = run_script("reconcile_pnl.py", ["--db", db, "--json"])
    assert code == 0, err
    report = json.loads(out)
    assert report["dryRun"] is True
    assert report["scannedTrades"] == 1
    assert report["highConfidenceTrades"] == 1
    assert report["sample"][0]["tradeId"] == closed_id

    store = SQLiteTradeStore(db)
    assert store.get_trade(closed_id).pnl_confidence == PnlConfidence.LEGACY
    store.close()

    code, out, err = run_script("reconcile_pnl.py", ["--db", db, "--apply", "--window-days", 7])
    assert code == 0, err
    assert "APPLIED" in out

    store = SQLiteTradeStore(db)
    assert store.get_trade(closed_id).pnl_confidence == PnlConfidence.HIGH
    store.close()
