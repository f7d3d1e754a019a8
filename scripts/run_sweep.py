#!/usr/bin/env python3
"""Run the scheduled availability sweep once or on a fixed interval."""

from __future__ import annotations

import argparse
import sys
import time
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from backend.domain.errors import PersistenceError
from backend.repository.data_repository import DataRepository
from backend.services.sweep_service import ScheduledTransitionSweeper
from backend.utils.config import get_settings
from backend.utils.logger import get_logger


logger = get_logger("run_sweep")


def _parse_args() -> argparse.Namespace:
    settings = get_settings()
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single sweep and exit.",
    )
    parser.add_argument(
        "--interval",
        type=int,
        default=settings.sweep_interval_seconds,
        help="Seconds between sweeps (default: %(default)s).",
    )
    return parser.parse_args()


def main() -> int:
    args = _parse_args()
    settings = get_settings()
    repository = DataRepository(settings)
    repository.initialize_database()
    sweeper = ScheduledTransitionSweeper(repository=repository, settings=settings)

    while True:
        try:
            report = sweeper.sweep()
        except PersistenceError:
            # Retriable; the next tick tries again.
            logger.exception("Sweep aborted by a storage failure")
            if args.once:
                return 1
        else:
            if args.once:
                return 1 if report.partial_failure else 0
        try:
            time.sleep(max(1, args.interval))
        except KeyboardInterrupt:
            logger.info("Sweep loop stopped")
            return 0


if __name__ == "__main__":
    raise SystemExit(main())
