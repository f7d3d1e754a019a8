#!/usr/bin/env python3
"""Validate local team availability service environment readiness."""

from __future__ import annotations

import importlib
import shutil
import sys
import tempfile
from dataclasses import replace
from datetime import timedelta
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from backend.domain.models import AvailabilityStatus
from backend.repository.data_repository import DataRepository
from backend.services.assignment_service import AutoAssignmentService
from backend.services.availability_service import AvailabilityService
from backend.services.sweep_service import ScheduledTransitionSweeper
from backend.utils.config import get_settings

SEPARATOR_LINE = "=" * 44


def _print_result(name: str, success: bool, detail: str = "") -> tuple[bool, str]:
    if success:
        return True, f"[PASS] {name}{detail}"
    return False, f"[FAIL] {name}: {detail}"


def main() -> int:
    results: list[str] = []
    all_passed = True
    temp_dir = tempfile.mkdtemp(prefix="availability-env-")

    # CHECK 1: Python version >= 3.11
    if sys.version_info >= (3, 11):
        ok, line = _print_result("Python " + sys.version.split()[0], True)
    else:
        ok, line = _print_result(
            "Python version >= 3.11",
            False,
            f"found {sys.version.split()[0]}",
        )
    results.append(line)
    all_passed = all_passed and ok

    # CHECK 2: Required packages importable
    package_specs = [
        ("fastapi", "fastapi"),
        ("uvicorn", "uvicorn"),
        ("pydantic", "pydantic"),
        ("numpy", "numpy"),
        ("pandas", "pandas"),
        ("sklearn", "scikit-learn"),
        ("httpx", "httpx"),
        ("pytest", "pytest"),
    ]
    import_errors: list[str] = []
    from importlib.metadata import version

    for module_name, dist_name in package_specs:
        try:
            importlib.import_module(module_name)
            _ = version(dist_name)
        except Exception as exc:  # pragma: no cover - runtime guard
            import_errors.append(f"{module_name} ({exc})")
    if import_errors:
        ok, line = _print_result(
            "Required packages",
            False,
            "missing/unimportable -> " + "; ".join(import_errors),
        )
    else:
        ok, line = _print_result("Required packages: all importable", True)
    results.append(line)
    all_passed = all_passed and ok

    try:
        validation_settings = replace(
            get_settings(),
            database_path=Path(temp_dir) / "availability_validation.db",
            expertise_matcher_url="",
        )
        repository = DataRepository(validation_settings)

        # CHECK 3: Database initialization
        try:
            repository.initialize_database()
            ok, line = _print_result("Database initialization", True)
        except Exception as exc:
            ok, line = _print_result("Database initialization", False, str(exc))
        results.append(line)
        all_passed = all_passed and ok

        # CHECK 4: Demo seeding
        mailbox_id = 1
        try:
            seeded = repository.seed_demo_data_if_empty()
            if seeded <= 0:
                raise RuntimeError(f"expected demo conversations, got {seeded}")
            ok, line = _print_result("Demo seeding", True, f": {seeded} conversations")
        except Exception as exc:
            ok, line = _print_result("Demo seeding", False, str(exc))
        results.append(line)
        all_passed = all_passed and ok

        availability_service = AvailabilityService(
            repository=repository,
            settings=validation_settings,
        )

        # CHECK 5: Status transition with history
        try:
            availability_service.set_status("user_ada", mailbox_id, AvailabilityStatus.ONLINE)
            availability_service.set_status("user_ada", mailbox_id, AvailabilityStatus.BUSY)
            history = repository.list_user_history("user_ada", mailbox_id)
            if len(history) != 2:
                raise RuntimeError(f"expected 2 history entries, got {len(history)}")
            ok, line = _print_result("Status transitions", True, ": 2 history entries")
        except Exception as exc:
            ok, line = _print_result("Status transitions", False, str(exc))
        results.append(line)
        all_passed = all_passed and ok

        # CHECK 6: Sweep of an expired auto-away deadline
        try:
            now = availability_service.now()
            availability_service.set_status(
                "user_grace",
                mailbox_id,
                AvailabilityStatus.ONLINE,
                auto_away_at=now + timedelta(minutes=1),
            )
            sweeper = ScheduledTransitionSweeper(
                repository=repository,
                availability_service=availability_service,
                settings=validation_settings,
            )
            report = sweeper.sweep(now + timedelta(minutes=2))
            if ("user_grace", mailbox_id) not in report.auto_away:
                raise RuntimeError("user_grace was not moved to away")
            ok, line = _print_result("Scheduled sweep", True)
        except Exception as exc:
            ok, line = _print_result("Scheduled sweep", False, str(exc))
        results.append(line)
        all_passed = all_passed and ok

        # CHECK 7: Conversation assignment
        try:
            assignment_service = AutoAssignmentService(
                repository=repository,
                availability_service=availability_service,
                settings=validation_settings,
            )
            outcome = assignment_service.auto_assign(1)
            if not outcome.assigned:
                raise RuntimeError(outcome.message)
            ok, line = _print_result("Auto assignment", True, f": {outcome.assignee_id}")
        except Exception as exc:
            ok, line = _print_result("Auto assignment", False, str(exc))
        results.append(line)
        all_passed = all_passed and ok

    finally:
        shutil.rmtree(temp_dir, ignore_errors=True)

    print(SEPARATOR_LINE)
    print(" Team Availability Environment Validation")
    print(SEPARATOR_LINE)
    for line in results:
        print(f" {line}")
    print(SEPARATOR_LINE)
    if all_passed:
        print(" All checks passed. Environment is ready.")
        print(SEPARATOR_LINE)
        return 0
    print(" One or more checks failed.")
    print(SEPARATOR_LINE)
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
