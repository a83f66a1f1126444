"""Domain-level eligibility rules for room allocation."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional, Sequence, Union

from housing.domain.errors import AllocationError, AllocationErrorKind
from housing.domain.models import Allocation, ConflictType, Occupant, Registrant, Room


SAFE_AUTO_RESOLVE_TYPES = frozenset({ConflictType.ORPHANED_REFERENCE})


def calculate_age(date_of_birth: date, as_of: Union[date, datetime]) -> int:
    """Whole years between birth and ``as_of``; not-yet-reached birthdays roll back one."""
    today = as_of.date() if isinstance(as_of, datetime) else as_of
    age = today.year - date_of_birth.year
    if (today.month, today.day) < (date_of_birth.month, date_of_birth.day):
        age -= 1
    return max(age, 0)


def age_gap(first: Registrant, second: Registrant, as_of: Union[date, datetime]) -> int:
    return abs(
        calculate_age(first.date_of_birth, as_of)
        - calculate_age(second.date_of_birth, as_of)
    )


def check_allocation(
    *,
    registrant: Optional[Registrant],
    room: Optional[Room],
    existing_allocation: Optional[Allocation],
    occupants: Sequence[Occupant],
    age_gap_tolerance: int,
    as_of: datetime,
    occupied: Optional[int] = None,
) -> Optional[AllocationError]:
    """Return the first violated precondition, or None when allocation may proceed.

    ``occupied`` is the number of active allocations referencing the room,
    including ones whose registrant row has gone missing. It defaults to
    ``len(occupants)``.
    """
    if registrant is None:
        return AllocationError(
            AllocationErrorKind.NOT_FOUND,
            "Registrant not found",
        )
    if room is None:
        return AllocationError(
            AllocationErrorKind.NOT_FOUND,
            "Room not found",
        )
    if not room.is_active:
        return AllocationError(
            AllocationErrorKind.ROOM_INACTIVE,
            f"Room {room.name} is inactive",
            {"room_id": room.room_id},
        )
    if existing_allocation is not None:
        return AllocationError(
            AllocationErrorKind.ALREADY_ALLOCATED,
            "Registrant is already allocated to a room",
            {
                "registrant_id": registrant.registrant_id,
                "room_id": existing_allocation.room_id,
                "allocation_id": existing_allocation.allocation_id,
            },
        )
    if room.gender != registrant.gender:
        return AllocationError(
            AllocationErrorKind.GENDER_MISMATCH,
            "Room gender does not match registrant gender",
            {"room_gender": room.gender.value, "registrant_gender": registrant.gender.value},
        )
    taken = len(occupants) if occupied is None else occupied
    if taken >= room.capacity:
        return AllocationError(
            AllocationErrorKind.CAPACITY_EXCEEDED,
            f"Room {room.name} is at full capacity",
            {"room_id": room.room_id, "capacity": room.capacity, "occupied": taken},
        )

    candidate_age = calculate_age(registrant.date_of_birth, as_of)
    offenders = [
        occupant.registrant.registrant_id
        for occupant in occupants
        if abs(calculate_age(occupant.registrant.date_of_birth, as_of) - candidate_age)
        > age_gap_tolerance
    ]
    if offenders:
        return AllocationError(
            AllocationErrorKind.AGE_GAP_VIOLATION,
            f"Age gap exceeds allowed {age_gap_tolerance} years for this room",
            {
                "room_id": room.room_id,
                "age_gap_tolerance": age_gap_tolerance,
                "candidate_age": candidate_age,
                "conflicting_registrant_ids": offenders,
            },
        )
    return None


@dataclass(frozen=True)
class ReconcilerConfig:
    interval_seconds: float
    auto_resolve_types: frozenset[ConflictType]
    retroactive_age_gap: bool = False


def parse_conflict_types(values: Sequence[str]) -> frozenset[ConflictType]:
    try:
        return frozenset(ConflictType(value) for value in values)
    except ValueError as exc:
        raise ValueError(f"unknown conflict type in {list(values)!r}") from exc


def validate_reconciler_config(config: ReconcilerConfig) -> None:
    if config.interval_seconds <= 0:
        raise ValueError("interval_seconds must be > 0")
    unsafe = config.auto_resolve_types - SAFE_AUTO_RESOLVE_TYPES
    if unsafe:
        names = ", ".join(sorted(item.value for item in unsafe))
        raise ValueError(f"conflict types cannot be auto-resolved: {names}")


def validate_room_fields(*, name: Optional[str] = None, capacity: Optional[int] = None) -> None:
    if name is not None and not name.strip():
        raise ValueError("room name must be non-empty")
    if capacity is not None and capacity <= 0:
        raise ValueError("capacity must be > 0")
