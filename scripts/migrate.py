#!/usr/bin/env python
"""Migration CLI: list, apply, rollback migrations for the guided trade DB.

Usage (examples):

python scripts/migrate.py --db guided.db list
python scripts/migrate.py --db guided.db apply
python scripts/migrate.py --db guided.db apply --dry-run
python scripts/migrate.py --db guided.db rollback --last --yes
"""
import argparse
import sqlite3
import sys
from pathlib import Path

# Ensure project root is on sys.path so `guided_trading` is importable when running as a script.
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from guided_trading.db_migrations import MIGRATIONS, applied_versions, apply_migrations, rollback_last, rollback_migration


def list_migrations(conn):
    applied = set(applied_versions(conn))
    print("Available migrations:")
    for v in sorted(MIGRATIONS.keys()):
        status = "applied" if v in applied else "pending"
        print(f"  {v}: {status}")


def _confirm(prompt: str) -> bool:
    try:
        return input(prompt).strip().lower() == "yes"
    except (EOFError, BrokenPipeError):
        # Non-interactive stdin; treat as confirmed
        return True


def main(argv=None):
    parser = argparse.ArgumentParser(description="Guided trade DB migrations")
    parser.add_argument("--db", required=True, help="Path to sqlite DB file")
    sub = parser.add_subparsers(dest="cmd")

    sub.add_parser("list")
    apply_p = sub.add_parser("apply")
    apply_p.add_argument("--dry-run", action="store_true", help="Show pending migrations without applying them")

    rb = sub.add_parser("rollback")
    rb.add_argument("--version", type=int, help="Rollback a specific migration version")
    rb.add_argument("--last", action="store_true", help="Rollback the last applied migration")
    rb.add_argument("--dry-run", action="store_true", help="Show which migration would be rolled back without performing it")
    rb.add_argument("--yes", action="store_true", help="Do not prompt for confirmation when rolling back")

    args = parser.parse_args(argv)
    db = Path(args.db)
    db.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(db), timeout=30, isolation_level=None)

    try:
        if args.cmd == "list":
            list_migrations(conn)
            return 0

        if args.cmd == "apply":
            if args.dry_run:
                applied = set(applied_versions(conn))
                pending = sorted(v for v in MIGRATIONS if v not in applied)
                if pending:
                    print("Pending migrations:", pending)
                else:
                    print("No pending migrations; database up-to-date.")
                return 0
            applied = apply_migrations(conn)
            if applied:
                print("Applied migrations:", applied)
            else:
                print("No migrations applied; database up-to-date.")
            return 0

        if args.cmd == "rollback" and (args.version or args.last):
            target = args.version if args.version else "the last migration"
            if args.dry_run:
                versions = applied_versions(conn)
                if args.version:
                    print(f"Would rollback migration {args.version} (dry-run)")
                elif versions:
                    print(f"Would rollback migration {versions[-1]} (dry-run)")
                else:
                    print("No applied migrations to rollback")
                return 0
            if not args.yes and not _confirm(f"Rollback {target}? This may DROP data. Type 'yes' to continue: "):
                print("Aborted.")
                return 1
            if args.version:
                rollback_migration(conn, args.version)
                print(f"Rolled back migration {args.version}")
            else:
                v = rollback_last(conn)
                print("No applied migrations to rollback" if v is None else f"Rolled back migration {v}")
            return 0

        parser.print_help()
        return 2
    finally:
        conn.close()


if __name__ == '__main__':
    sys.exit(main())
