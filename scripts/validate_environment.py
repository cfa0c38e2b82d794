#!/usr/bin/env python3
"""Validate local FleetSlot environment readiness."""

from __future__ import annotations

import importlib
import shutil
import sys
import tempfile
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from fleetslot.domain.constraints import engine_config_from_settings, validate_engine_config
from fleetslot.repository.data_repository import DataRepository
from fleetslot.services.allocation_service import AllocationService
from fleetslot.services.reclamation_service import ReclamationService
from fleetslot.utils.config import get_settings

SEPARATOR_LINE = "=" * 44


def _print_result(name: str, success: bool, detail: str = "") -> tuple[bool, str]:
    if success:
        return True, f"[PASS] {name}{detail}"
    return False, f"[FAIL] {name}: {detail}"


def main() -> int:
    results: list[str] = []
    all_passed = True
    temp_dir = tempfile.mkdtemp(prefix="fleetslot-env-")

    # CHECK 1: Python version >= 3.10
    if sys.version_info >= (3, 10):
        ok, line = _print_result("Python " + sys.version.split()[0], True)
    else:
        ok, line = _print_result(
            "Python version >= 3.10",
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
        ("apscheduler", "APScheduler"),
        ("pandas", "pandas"),
        ("requests", "requests"),
        ("httpx", "httpx"),
        ("pytest", "pytest"),
    ]
    from importlib.metadata import version

    import_errors: list[str] = []
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
        base_settings = get_settings()
        validation_settings = replace(
            base_settings,
            database_path=Path(temp_dir) / "fleetslot_validation.db",
        )

        # CHECK 3: Engine configuration
        try:
            validate_engine_config(engine_config_from_settings(validation_settings))
            ok, line = _print_result("Engine configuration", True)
        except ValueError as exc:
            ok, line = _print_result("Engine configuration", False, str(exc))
        results.append(line)
        all_passed = all_passed and ok

        repository = DataRepository(validation_settings)

        # CHECK 4: Database initialization
        try:
            repository.initialize_database()
            ok, line = _print_result("Database initialization", True)
        except Exception as exc:
            ok, line = _print_result("Database initialization", False, str(exc))
        results.append(line)
        all_passed = all_passed and ok

        # CHECK 5: Demo material seeding
        try:
            seeded = repository.seed_demo_materials()
            if seeded != len(validation_settings.demo_materials):
                raise RuntimeError(
                    f"expected {len(validation_settings.demo_materials)} materials, got {seeded}"
                )
            ok, line = _print_result("Demo materials", True, f": {seeded} registered")
        except Exception as exc:
            ok, line = _print_result("Demo materials", False, str(exc))
        results.append(line)
        all_passed = all_passed and ok

        # CHECK 6: Reserve / release round trip
        service = AllocationService(repository=repository, settings=validation_settings)
        material_id = validation_settings.demo_materials[0][0]
        start = datetime.now(timezone.utc)
        try:
            service.reserve("ENV-CHECK", [material_id], start, start + timedelta(days=1))
            held = service.get_availability([material_id])[0]
            service.release("ENV-CHECK", [material_id])
            freed = service.get_availability([material_id])[0]
            if held.occupied_slots != 1 or freed.occupied_slots != 0:
                raise RuntimeError(
                    f"occupied slots {held.occupied_slots} -> {freed.occupied_slots}"
                )
            ok, line = _print_result("Reserve/release", True)
        except Exception as exc:
            ok, line = _print_result("Reserve/release", False, str(exc))
        results.append(line)
        all_passed = all_passed and ok

        # CHECK 7: Reclamation run
        try:
            report = ReclamationService(
                repository=repository,
                allocation_service=service,
                settings=validation_settings,
            ).run()
            errors = report.backlog.error_count + report.unpaid.error_count + report.expired.error_count
            if errors:
                raise RuntimeError(f"{errors} sweep errors")
            ok, line = _print_result("Reclamation run", True)
        except Exception as exc:
            ok, line = _print_result("Reclamation run", False, str(exc))
        results.append(line)
        all_passed = all_passed and ok

    finally:
        shutil.rmtree(temp_dir, ignore_errors=True)

    print(SEPARATOR_LINE)
    print(" FleetSlot Environment Validation")
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
