#!/usr/bin/env python3
"""Validate local booking-admission environment readiness."""

from __future__ import annotations

import importlib
import shutil
import sys
import tempfile
from dataclasses import replace
from datetime import timedelta
from importlib.metadata import version
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from admission.domain.models import BookingStatus, Decision
from admission.repository.data_repository import DataRepository
from admission.services.admission_service import AdmissionService
from admission.utils.config import get_settings
from admission.utils.timeutils import utc_now

SEPARATOR_LINE = "=" * 44


def _print_result(name: str, success: bool, detail: str = "") -> tuple[bool, str]:
    if success:
        return True, f"[PASS] {name}{detail}"
    return False, f"[FAIL] {name}: {detail}"


def main() -> int:
    results: list[str] = []
    all_passed = True
    temp_dir = tempfile.mkdtemp(prefix="admission-env-")

    # CHECK 1 — Python version >= 3.11
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

    # CHECK 2 — Required packages importable with versions
    package_specs = [
        ("fastapi", "fastapi"),
        ("uvicorn", "uvicorn"),
        ("pydantic", "pydantic"),
        ("pandas", "pandas"),
        ("httpx", "httpx"),
        ("pytest", "pytest"),
    ]
    import_errors: list[str] = []
    for module_name, dist_name in package_specs:
        try:
            importlib.import_module(module_name)
            version(dist_name)
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
            database_path=Path(temp_dir) / "admission_validation.db",
        )
        repository = DataRepository(validation_settings)

        # CHECK 3 — Database initialization
        try:
            repository.initialize_database()
            ok, line = _print_result("Database initialization", True)
        except Exception as exc:
            ok, line = _print_result("Database initialization", False, str(exc))
        results.append(line)
        all_passed = all_passed and ok

        # CHECK 4 — Sample catalog seeding
        try:
            repository.seed_sample_data()
            count = len(repository.list_accommodations())
            if count == 0:
                raise RuntimeError("no accommodations seeded")
            ok, line = _print_result("Sample catalog", True, f": {count} accommodations")
        except Exception as exc:
            ok, line = _print_result("Sample catalog", False, str(exc))
        results.append(line)
        all_passed = all_passed and ok

        # CHECK 5 — Admission round trip
        service = AdmissionService(repository=repository, settings=validation_settings)
        try:
            accommodation = repository.list_accommodations()[0]
            check_in = utc_now().date() + timedelta(days=14)
            submitted = service.submit_request(
                accommodation_id=accommodation.accommodation_id,
                requester_id="env-check",
                check_in=check_in,
                check_out=check_in + timedelta(days=30),
                guests=1,
            )
            service.decide(submitted.request_id, Decision.APPROVE, admin_id="env-check")
            confirmed = service.confirm(submitted.request_id)
            if confirmed.status is not BookingStatus.CONFIRMED:
                raise RuntimeError(f"expected confirmed, got {confirmed.status.value}")
            ok, line = _print_result("Submit / approve / confirm", True)
        except Exception as exc:
            ok, line = _print_result("Submit / approve / confirm", False, str(exc))
        results.append(line)
        all_passed = all_passed and ok

        # CHECK 6 — Ledger agrees with booking rows
        try:
            for accommodation in repository.list_accommodations():
                stored, recount = service.reconcile_ledger(accommodation.accommodation_id)
                if not recount.same_counts(stored):
                    raise RuntimeError(
                        f"accommodation {accommodation.accommodation_id} ledger drifted"
                    )
            ok, line = _print_result("Ledger consistency", True)
        except Exception as exc:
            ok, line = _print_result("Ledger consistency", False, str(exc))
        results.append(line)
        all_passed = all_passed and ok

    finally:
        shutil.rmtree(temp_dir, ignore_errors=True)

    print(SEPARATOR_LINE)
    print(" Booking Admission Environment Validation")
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
