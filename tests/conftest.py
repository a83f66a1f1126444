from __future__ import annotations

from dataclasses import replace
from datetime import date, datetime, timezone

import pytest

from housing.domain.models import Gender
from housing.repository.allocation_ledger import AllocationLedger
from housing.repository.data_repository import DataRepository
from housing.services.allocation_service import RoomAllocationService
from housing.services.cache_service import CacheService
from housing.services.settings_service import SettingsService
from housing.utils.config import get_settings


FIXED_NOW = datetime(2026, 6, 15, 12, 0, tzinfo=timezone.utc)


def born_years_ago(years: int) -> date:
    """Birth date that makes someone exactly ``years`` old at FIXED_NOW."""
    return date(FIXED_NOW.year - years, 1, 1)


@pytest.fixture
def fixed_now() -> datetime:
    return FIXED_NOW


@pytest.fixture
def settings(tmp_path):
    get_settings.cache_clear()
    return replace(
        get_settings(),
        database_path=tmp_path / "housing_test.db",
        redis_url=None,
        age_gap_default_years=3,
        age_gap_min_years=1,
        age_gap_max_years=20,
        reconciler_autostart=False,
        seed_demo_registrants=False,
    )


@pytest.fixture
def repository(settings) -> DataRepository:
    repository = DataRepository(settings)
    repository.initialize_database()
    return repository


@pytest.fixture
def cache() -> CacheService:
    return CacheService()


@pytest.fixture
def ledger(repository) -> AllocationLedger:
    return AllocationLedger(repository)


@pytest.fixture
def settings_service(repository, cache, settings) -> SettingsService:
    return SettingsService(repository=repository, cache=cache, settings=settings)


@pytest.fixture
def allocation_service(repository, settings_service, cache, ledger, settings) -> RoomAllocationService:
    return RoomAllocationService(
        repository=repository,
        settings_service=settings_service,
        cache=cache,
        ledger=ledger,
        settings=settings,
        clock=lambda: FIXED_NOW,
    )


@pytest.fixture
def make_registrant(repository):
    def _make(name: str, gender: Gender = Gender.MALE, age: int = 20, **contact) -> int:
        return repository.add_registrant(name, gender, born_years_ago(age), **contact)

    return _make


@pytest.fixture
def make_room(repository):
    def _make(name: str, gender: Gender = Gender.MALE, capacity: int = 2) -> int:
        return repository.create_room(name, gender, capacity).room_id

    return _make
