"""Concurrent allocation attempts must never break capacity or uniqueness."""

from __future__ import annotations

import sqlite3
import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from housing.domain.errors import AllocationErrorKind
from housing.domain.models import Gender
from housing.services.allocation_service import RoomAllocationService


WORKERS = 8


def _race(calls):
    barrier = threading.Barrier(len(calls))

    def run(call):
        barrier.wait(timeout=10)
        return call()

    with ThreadPoolExecutor(max_workers=len(calls)) as pool:
        return list(pool.map(run, calls))


def _independent_service(repository, settings_service, cache, settings, now) -> RoomAllocationService:
    """A second service instance with its own locks, as a separate worker process would have."""
    return RoomAllocationService(
        repository=repository,
        settings_service=settings_service,
        cache=cache,
        settings=settings,
        clock=lambda: now,
    )


def test_only_one_thread_wins_the_last_slot(allocation_service, ledger, make_room, make_registrant) -> None:
    room_id = make_room("Last Slot", Gender.MALE, capacity=2)
    assert allocation_service.allocate(make_registrant("Incumbent"), room_id, "admin").ok
    contenders = [make_registrant(f"Contender {index}") for index in range(WORKERS)]

    outcomes = _race(
        [
            lambda registrant_id=registrant_id: allocation_service.allocate(registrant_id, room_id, "admin")
            for registrant_id in contenders
        ]
    )

    assert sum(outcome.ok for outcome in outcomes) == 1
    assert {
        outcome.error.kind for outcome in outcomes if not outcome.ok
    } == {AllocationErrorKind.CAPACITY_EXCEEDED}
    assert len(ledger.list_occupants(room_id)) == 2


def test_only_one_room_wins_the_same_registrant(allocation_service, ledger, make_room, make_registrant) -> None:
    rooms = [make_room(f"Room {index}", Gender.FEMALE, capacity=4) for index in range(4)]
    registrant_id = make_registrant("Popular", Gender.FEMALE)

    outcomes = _race(
        [
            lambda room_id=room_id: allocation_service.allocate(registrant_id, room_id, "admin")
            for room_id in rooms
        ]
    )

    assert sum(outcome.ok for outcome in outcomes) == 1
    assert {
        outcome.error.kind for outcome in outcomes if not outcome.ok
    } == {AllocationErrorKind.ALREADY_ALLOCATED}
    assert ledger.count_active_allocations() == 1


def test_storage_transaction_serializes_without_shared_locks(
    repository, settings_service, cache, settings, ledger, make_room, make_registrant, fixed_now
) -> None:
    room_id = make_room("Cross Process", Gender.MALE, capacity=1)
    services = [
        _independent_service(repository, settings_service, cache, settings, fixed_now) for _ in range(WORKERS)
    ]
    contenders = [make_registrant(f"Racer {index}") for index in range(WORKERS)]

    outcomes = _race(
        [
            lambda service=service, registrant_id=registrant_id: service.allocate(
                registrant_id, room_id, "admin"
            )
            for service, registrant_id in zip(services, contenders)
        ]
    )

    assert sum(outcome.ok for outcome in outcomes) == 1
    assert len(ledger.list_occupants(room_id)) == 1


def test_unique_index_rejects_second_active_row(
    repository, allocation_service, make_room, make_registrant, fixed_now
) -> None:
    room_id = make_room("Indexed", Gender.MALE, capacity=3)
    registrant_id = make_registrant("Indexed Person")
    assert allocation_service.allocate(registrant_id, room_id, "admin").ok

    with pytest.raises(sqlite3.IntegrityError):
        with repository.transaction() as conn:
            conn.execute(
                """
                INSERT INTO Allocations (registrant_id, room_id, allocated_by, is_active, allocated_at)
                VALUES (?, ?, 'sneaky', 1, ?);
                """,
                (registrant_id, room_id, fixed_now.isoformat()),
            )
