#!/usr/bin/env python3
"""
Commission ledger maintenance commands.

Usage:
    python cli.py reconcile [--full] [--batch-size N]
    python cli.py release-matured [--user-id ID]
    python cli.py resync --user-id ID
    python cli.py init-db
"""

import argparse
import json
import sys
from typing import List, Optional

from loguru import logger

from balance_db import release_matured_commissions, resync_balance
from db.db import Database
from errors import LedgerError
from models import CommissionPolicy
from reconciliation import run_reconciliation
from settings import settings, setup_logging


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Referral commission ledger maintenance")
    parser.add_argument("--log-level", default=None, help="override LEDGER_LOG_LEVEL")
    sub = parser.add_subparsers(dest="command", required=True)

    reconcile = sub.add_parser("reconcile", help="credit missing commissions and resync balances")
    reconcile.add_argument("--full", action="store_true", help="ignore the cursor and rescan all purchases")
    reconcile.add_argument("--batch-size", type=int, default=settings.reconciliation_batch_size)

    release = sub.add_parser("release-matured", help="move matured pending commissions to available")
    release.add_argument("--user-id", type=int, default=None)

    resync = sub.add_parser("resync", help="rebuild one user's balance from the ledger")
    resync.add_argument("--user-id", type=int, required=True)

    sub.add_parser("init-db", help="create the ledger schema")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = _build_parser().parse_args(argv)
    setup_logging(args.log_level)

    db = Database.from_settings(settings)
    policy = CommissionPolicy.from_settings(settings)
    try:
        if args.command == "reconcile":
            report = run_reconciliation(db, policy, full=args.full, batch_size=args.batch_size)
            print(json.dumps(report.model_dump(mode="json"), indent=2))
            return 1 if report.failures else 0

        if args.command == "release-matured":
            result = release_matured_commissions(db, user_id=args.user_id)
            print(json.dumps(result, indent=2))
            return 1 if result["failed"] else 0

        if args.command == "resync":
            balance = resync_balance(db, args.user_id)
            print(json.dumps(balance.model_dump(mode="json"), indent=2))
            return 0

        if args.command == "init-db":
            db.apply_schema()
            return 0
    except LedgerError as e:
        logger.error(f"{args.command} failed: {e}")
        return 1
    except Exception as e:
        logger.exception(f"{args.command} failed: {e}")
        return 2
    finally:
        db.close()

    return 0


if __name__ == "__main__":
    sys.exit(main())
