"""
Batch entry point for the external scheduler.

Run one interest pass against the configured store, e.g. from cron:

    python -m loan_ledger.batch accrual
    python -m loan_ledger.batch capitalization
    python -m loan_ledger.batch all
"""

import argparse
import logging
import sys
from typing import List, Optional

from .api import LedgerSystem
from .config import get_config
from .errors import ConfigurationError, PersistenceError
from .logging_config import setup_logging

logger = logging.getLogger("loan_ledger.batch")

PASSES = ("accrual", "capitalization", "all")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run loan ledger interest passes")
    parser.add_argument("job", choices=PASSES, help="Which pass to run")
    parser.add_argument("--database-url", default=None,
                        help="Override LOAN_LEDGER_DATABASE_URL")
    parser.add_argument("--log-level", default=None, type=str.upper, choices=LOG_LEVELS,
                        help="Override LOAN_LEDGER_LOG_LEVEL")
    return parser


def main(argv: Optional[List[str]] = None, system: Optional[LedgerSystem] = None) -> int:
    args = build_parser().parse_args(argv)

    config = get_config()
    if args.database_url:
        config = config.model_copy(update={"database_url": args.database_url})
    setup_logging(args.log_level or config.log_level, config.log_format)

    if system is None:
        try:
            system = LedgerSystem(config=config)
        except (ConfigurationError, PersistenceError) as e:
            logger.error(f"Could not initialise ledger: {e}")
            return 1

    try:
        # Accrual first so capitalization sees today's interest
        if args.job in ("accrual", "all"):
            system.ledger.run_daily_accrual()
        if args.job in ("capitalization", "all"):
            system.ledger.run_monthly_capitalization()
    finally:
        system.close()

    return 0


if __name__ == "__main__":
    sys.exit(main())
