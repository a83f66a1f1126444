"""Domain models for room allocation and integrity reconciliation."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Optional


class Gender(str, Enum):
    MALE = "Male"
    FEMALE = "Female"


@dataclass(frozen=True)
class Registrant:
    registrant_id: int
    full_name: str
    gender: Gender
    date_of_birth: date
    phone_number: str = ""
    email_address: str = ""


@dataclass(frozen=True)
class Room:
    room_id: int
    name: str
    gender: Gender
    capacity: int
    is_active: bool
    description: str = ""


@dataclass(frozen=True)
class Allocation:
    allocation_id: int
    registrant_id: int
    room_id: int
    allocated_by: str
    is_active: bool
    allocated_at: datetime
    age_gap_tolerance: Optional[int] = None
    deallocated_at: Optional[datetime] = None
    deallocated_by: Optional[str] = None
    deallocation_reason: Optional[str] = None


@dataclass(frozen=True)
class Occupant:
    """An active allocation joined with the registrant it binds."""

    allocation: Allocation
    registrant: Registrant


@dataclass(frozen=True)
class AllocationDetail:
    allocation: Allocation
    room: Room
    registrant: Registrant


@dataclass(frozen=True)
class RoomOccupancy:
    room: Room
    occupied: int

    @property
    def available(self) -> int:
        return max(self.room.capacity - self.occupied, 0)


@dataclass(frozen=True)
class OccupancyStats:
    total_registrants: int
    allocated_registrants: int
    unallocated_registrants: int
    allocation_rate: int
    active_rooms: int
    total_capacity: int
    occupied_spaces: int
    available_spaces: int


@dataclass(frozen=True)
class OccupancySnapshot:
    stats: OccupancyStats
    rooms: list[RoomOccupancy]
    unallocated_by_gender: dict[str, list[Registrant]]


@dataclass(frozen=True)
class RegistrantSearchResult:
    registrant: Registrant
    room_name: Optional[str]


class ConflictType(str, Enum):
    CAPACITY_EXCEEDED = "capacity-exceeded"
    GENDER_MISMATCH = "gender-mismatch"
    DUPLICATE_ALLOCATION = "duplicate-allocation"
    AGE_GAP_VIOLATION = "age-gap-violation"
    ORPHANED_REFERENCE = "orphaned-reference"
    INACTIVE_ROOM_OCCUPANCY = "inactive-room-occupancy"


class Severity(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


@dataclass(frozen=True)
class Conflict:
    conflict_type: ConflictType
    severity: Severity
    message: str
    room_id: Optional[int] = None
    registrant_ids: tuple[int, ...] = ()
    allocation_ids: tuple[int, ...] = ()
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def conflict_id(self) -> str:
        allocations = ",".join(str(item) for item in sorted(self.allocation_ids))
        return f"{self.conflict_type.value}:{self.room_id or '-'}:{allocations}"


@dataclass(frozen=True)
class LedgerSnapshot:
    """Rooms, referenced registrants and active allocations read in one transaction."""

    taken_at: datetime
    rooms: dict[int, Room]
    registrants: dict[int, Registrant]
    allocations: list[Allocation]
