#!/usr/bin/env python3
"""Validate local housing service environment readiness."""

from __future__ import annotations

import importlib
import shutil
import sys
import tempfile
from dataclasses import replace
from datetime import date
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from housing.domain.models import Gender
from housing.repository.data_repository import DEFAULT_ROOMS, DataRepository
from housing.services.allocation_service import RoomAllocationService
from housing.services.cache_service import CacheService
from housing.services.settings_service import SettingsService
from housing.utils.config import get_settings

SEPARATOR_LINE = "=" * 44


def _print_result(name: str, success: bool, detail: str = "") -> tuple[bool, str]:
    if success:
        return True, f"[PASS] {name}{detail}"
    return False, f"[FAIL] {name}: {detail}"


def main() -> int:
    results: list[str] = []
    all_passed = True
    temp_dir = tempfile.mkdtemp(prefix="housing-env-")

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

    # CHECK 2: Required packages importable with versions
    package_specs = [
        ("fastapi", "fastapi"),
        ("uvicorn", "uvicorn"),
        ("pydantic", "pydantic"),
        ("pandas", "pandas"),
        ("redis", "redis"),
        ("httpx", "httpx"),
        ("pytest", "pytest"),
    ]
    import_errors: list[str] = []
    for module_name, dist_name in package_specs:
        try:
            importlib.import_module(module_name)
            version(dist_name)
        except (ImportError, PackageNotFoundError) as exc:
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
            database_path=Path(temp_dir) / "housing_validation.db",
            redis_url=None,
        )
        repository = DataRepository(validation_settings)
        cache = CacheService()
        settings_service = SettingsService(repository, cache, settings=validation_settings)
        service = RoomAllocationService(
            repository=repository,
            settings_service=settings_service,
            cache=cache,
            settings=validation_settings,
        )

        # CHECK 3: Database initialization
        try:
            repository.initialize_database()
            ok, line = _print_result("Database initialization", True)
        except Exception as exc:
            ok, line = _print_result("Database initialization", False, str(exc))
        results.append(line)
        all_passed = all_passed and ok

        # CHECK 4: Default room seeding
        try:
            seeded = service.seed_default_rooms()
            if seeded != len(DEFAULT_ROOMS):
                raise RuntimeError(f"expected {len(DEFAULT_ROOMS)} rooms, got {seeded}")
            ok, line = _print_result("Default rooms", True, f": {seeded} rooms")
        except Exception as exc:
            ok, line = _print_result("Default rooms", False, str(exc))
        results.append(line)
        all_passed = all_passed and ok

        # CHECK 5: Allocation round-trip
        try:
            registrant_id = repository.add_registrant("Validation Person", Gender.MALE, date(2000, 1, 1))
            room = repository.list_rooms(gender=Gender.MALE)[0]
            allocated = service.allocate(registrant_id, room.room_id, "validate-environment")
            if not allocated.ok:
                raise RuntimeError(allocated.error.message)
            released = service.deallocate(registrant_id, "validate-environment")
            if not released.ok:
                raise RuntimeError(released.error.message)
            ok, line = _print_result(
                "Allocation round-trip",
                True,
                f": allocation {allocated.allocation.allocation_id} in {room.name}",
            )
        except Exception as exc:
            ok, line = _print_result("Allocation round-trip", False, str(exc))
        results.append(line)
        all_passed = all_passed and ok

    finally:
        shutil.rmtree(temp_dir, ignore_errors=True)

    print(SEPARATOR_LINE)
    print(" Housing Service Environment Validation")
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
