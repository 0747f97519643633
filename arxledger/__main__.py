"""
arxledger.__main__ — Entry point for ``python -m arxledger``
============================================================

Wiring:
1. Load .env (``DATABASE_URL``).
2. Load config.yaml (tuning); fall back to defaults when it is absent.
3. Create the SQLAlchemy engine.
4. Run one reconciliation pass.
5. Print the JSON report to stdout; exit non-zero if the store was unreachable.

Run from cron with::

    python -m arxledger --mode rebuild_balances --apply --batch-size 200 --offset 0
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

from dotenv import load_dotenv

from arxledger.config import LedgerConfig, load_config
from arxledger.constants import ReconcileMode
from arxledger.database.engine import create_db_engine
from arxledger.services.reconciliation_service import reconcile

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s │ %(levelname)-8s │ %(name)s │ %(message)s",
    datefmt="%H:%M:%S",
    stream=sys.stderr,
)
logger = logging.getLogger("arxledger")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="arxledger",
        description="Reconcile cached point balances and arena earnings against the event tables.",
    )
    parser.add_argument(
        "--mode",
        required=True,
        choices=[m.value for m in ReconcileMode],
        help="which pass to run",
    )
    parser.add_argument(
        "--apply",
        action="store_true",
        help="write corrections (default is a dry run)",
    )
    parser.add_argument("--batch-size", type=int, default=None, help="users / battles per run")
    parser.add_argument("--offset", type=int, default=0, help="cursor from the previous run")
    parser.add_argument("--user", default=None, help="user id or username substring")
    parser.add_argument("--config", default="config.yaml", help="path to config.yaml")
    parser.add_argument("--actor", default="cron", help="recorded as created_by on audit rows")
    return parser


def main(argv: list[str] | None = None) -> int:
    """Run one pass and print its report.  Returns the process exit code."""
    args = build_parser().parse_args(argv)

    # 1. Environment variables (secrets).
    load_dotenv()

    # 2. Soft configuration.
    if Path(args.config).exists():
        cfg = load_config(args.config)
        logger.info("Config loaded from %s", args.config)
    else:
        cfg = LedgerConfig()
        logger.info("No %s found, using default configuration", args.config)

    # 3. Database.
    engine = create_db_engine(pool_size=max(5, cfg.max_workers))

    # 4. Reconcile.
    report = reconcile(
        engine,
        args.mode,
        dry_run=not args.apply,
        batch_size=args.batch_size,
        offset=args.offset,
        user_filter=args.user,
        config=cfg,
        actor=args.actor,
    )

    # 5. Report.
    json.dump(report.as_dict(), sys.stdout, indent=2, default=str)
    sys.stdout.write("\n")
    return 2 if report.fatal else 0


if __name__ == "__main__":
    sys.exit(main())
