"""Admin-directed room allocation with per-room and per-registrant serialization."""

from __future__ import annotations

from dataclasses import asdict
from datetime import datetime
from typing import Callable, Optional

import pandas as pd

from housing.domain.constraints import calculate_age, validate_room_fields
from housing.domain.errors import (
    AllocationError,
    AllocationErrorKind,
    AllocationOutcome,
    AllocationRejected,
)
from housing.domain.models import (
    Allocation,
    AllocationDetail,
    Gender,
    Occupant,
    OccupancySnapshot,
    OccupancyStats,
    Registrant,
    RegistrantSearchResult,
    Room,
)
from housing.repository.allocation_ledger import AllocationLedger
from housing.repository.data_repository import DataRepository, utc_now
from housing.services.cache_service import CacheService
from housing.services.settings_service import SettingsService
from housing.utils.config import Settings, get_settings
from housing.utils.locks import KeyedLock
from housing.utils.logger import get_logger


logger = get_logger(__name__)

STATS_CACHE_KEY = "accommodations:stats"
EXPORT_COLUMNS = [
    "Full Name",
    "Gender",
    "Date of Birth",
    "Phone Number",
    "Email Address",
    "Room Name",
]


class RoomCatalogError(Exception):
    """Raised when an administrator room edit is invalid."""


class RoomAllocationService:
    """Allocate, deallocate and report on room assignments."""

    def __init__(
        self,
        repository: DataRepository,
        settings_service: SettingsService,
        cache: CacheService,
        ledger: Optional[AllocationLedger] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository
        self._settings_service = settings_service
        self._cache = cache
        self._ledger = ledger or AllocationLedger(repository)
        self._clock = clock
        self._locks = KeyedLock()

    @property
    def ledger(self) -> AllocationLedger:
        return self._ledger

    # --- Write operations ---------------------------------------------------

    def allocate(self, registrant_id: int, room_id: int, actor: str) -> AllocationOutcome:
        """Bind a registrant to a room if every eligibility rule holds.

        Rule violations come back as a failed outcome. Storage failures raise
        ``AllocationStorageError``.
        """
        _require_actor(actor)
        registrant = self._repository.get_registrant(registrant_id)
        if registrant is None:
            return AllocationOutcome.failure(
                AllocationError(
                    AllocationErrorKind.NOT_FOUND,
                    "Registrant not found",
                    {"registrant_id": registrant_id},
                )
            )

        tolerance = self._settings_service.get_age_gap_tolerance()
        with self._locks.hold(("registrant", registrant_id), ("room", room_id)):
            try:
                allocation = self._ledger.create_allocation(
                    registrant=registrant,
                    room_id=room_id,
                    actor=actor,
                    age_gap_tolerance=tolerance,
                    as_of=self._clock(),
                )
            except AllocationRejected as rejected:
                logger.info(
                    "Allocation rejected | registrant_id=%s | room_id=%s | kind=%s | actor=%s",
                    registrant_id,
                    room_id,
                    rejected.error.kind.value,
                    actor,
                )
                return AllocationOutcome.failure(rejected.error)

        self._cache.invalidate(STATS_CACHE_KEY)
        logger.info(
            "Allocation created | allocation_id=%s | registrant_id=%s | room_id=%s | tolerance=%s | actor=%s",
            allocation.allocation_id,
            registrant_id,
            room_id,
            tolerance,
            actor,
        )
        return AllocationOutcome.success(allocation)

    def deallocate(
        self,
        registrant_id: int,
        actor: str,
        reason: Optional[str] = None,
    ) -> AllocationOutcome:
        _require_actor(actor)
        with self._locks.hold(("registrant", registrant_id)):
            try:
                allocation = self._ledger.deactivate_allocation(
                    registrant_id=registrant_id,
                    actor=actor,
                    reason=reason,
                    as_of=self._clock(),
                )
            except AllocationRejected as rejected:
                logger.info(
                    "Deallocation rejected | registrant_id=%s | kind=%s | actor=%s",
                    registrant_id,
                    rejected.error.kind.value,
                    actor,
                )
                return AllocationOutcome.failure(rejected.error)

        self._cache.invalidate(STATS_CACHE_KEY)
        logger.info(
            "Allocation ended | allocation_id=%s | registrant_id=%s | room_id=%s | actor=%s",
            allocation.allocation_id,
            registrant_id,
            allocation.room_id,
            actor,
        )
        return AllocationOutcome.success(allocation)

    # --- Room catalog administration ----------------------------------------

    def create_room(
        self,
        name: str,
        gender: Gender,
        capacity: int,
        description: str = "",
    ) -> Room:
        try:
            validate_room_fields(name=name, capacity=capacity)
            room = self._repository.create_room(name, gender, capacity, description)
        except ValueError as exc:
            raise RoomCatalogError(str(exc)) from exc
        self._cache.invalidate(STATS_CACHE_KEY)
        logger.info("Room created | room_id=%s | name=%s | capacity=%s", room.room_id, room.name, capacity)
        return room

    def update_room(
        self,
        room_id: int,
        *,
        name: Optional[str] = None,
        gender: Optional[Gender] = None,
        capacity: Optional[int] = None,
        is_active: Optional[bool] = None,
        description: Optional[str] = None,
    ) -> Optional[Room]:
        """Edit a room; lowering capacity below occupancy is left for the reconciler to report."""
        try:
            validate_room_fields(name=name, capacity=capacity)
            # Held so an edit cannot interleave with an allocation re-reading this room.
            with self._locks.hold(("room", room_id)):
                room = self._repository.update_room(
                    room_id,
                    name=name,
                    gender=gender,
                    capacity=capacity,
                    is_active=is_active,
                    description=description,
                )
        except ValueError as exc:
            raise RoomCatalogError(str(exc)) from exc
        if room is not None:
            self._cache.invalidate(STATS_CACHE_KEY)
            logger.info(
                "Room updated | room_id=%s | capacity=%s | is_active=%s",
                room_id,
                room.capacity,
                room.is_active,
            )
        return room

    def seed_default_rooms(self) -> int:
        created = self._repository.seed_default_rooms()
        if created:
            self._cache.invalidate(STATS_CACHE_KEY)
        return created

    # --- Queries ------------------------------------------------------------

    def get_allocation(self, registrant_id: int) -> Optional[AllocationDetail]:
        return self._ledger.get_allocation_detail(registrant_id)

    def list_allocation_history(self, registrant_id: int) -> list[Allocation]:
        return self._ledger.list_allocation_history(registrant_id)

    def get_room(self, room_id: int) -> Optional[Room]:
        return self._repository.get_room(room_id)

    def list_room_occupants(self, room_id: int) -> list[tuple[Occupant, int]]:
        """Active occupants of a room paired with their current age."""
        today = self._clock()
        return [
            (occupant, calculate_age(occupant.registrant.date_of_birth, today))
            for occupant in self._ledger.list_occupants(room_id)
        ]

    def _compute_stats(self) -> dict[str, int]:
        rooms = self._repository.list_room_occupancy()
        total_registrants = self._repository.count_registrants()
        # Allocations left behind by deleted registrants still hold a space.
        allocated = self._ledger.count_allocated_registrants()
        occupied = self._ledger.count_active_allocations()
        total_capacity = sum(item.room.capacity for item in rooms)
        allocation_rate = (
            round(allocated / total_registrants * 100) if total_registrants > 0 else 0
        )
        return asdict(
            OccupancyStats(
                total_registrants=total_registrants,
                allocated_registrants=allocated,
                unallocated_registrants=max(total_registrants - allocated, 0),
                allocation_rate=allocation_rate,
                active_rooms=len(rooms),
                total_capacity=total_capacity,
                occupied_spaces=occupied,
                available_spaces=max(total_capacity - occupied, 0),
            )
        )

    def occupancy_statistics(self, gender: Optional[Gender] = None) -> OccupancySnapshot:
        stats_payload = self._cache.with_cache(
            STATS_CACHE_KEY,
            self._settings.statistics_cache_ttl_seconds,
            self._compute_stats,
        )
        rooms = self._repository.list_room_occupancy(gender=gender)
        genders = [gender] if gender is not None else list(Gender)
        unallocated_by_gender = {
            item.value: self._repository.list_unallocated_registrants(gender=item)
            for item in genders
        }
        return OccupancySnapshot(
            stats=OccupancyStats(**stats_payload),
            rooms=rooms,
            unallocated_by_gender=unallocated_by_gender,
        )

    def _clamp_limit(self, limit: Optional[int]) -> int:
        if limit is None:
            return self._settings.search_default_limit
        return min(max(int(limit), 1), self._settings.search_max_limit)

    def search_unallocated(
        self,
        query: Optional[str] = None,
        gender: Optional[Gender] = None,
        limit: Optional[int] = None,
    ) -> list[Registrant]:
        cleaned = (query or "").strip() or None
        return self._repository.list_unallocated_registrants(
            query=cleaned,
            gender=gender,
            limit=self._clamp_limit(limit),
        )

    def search_registrants(
        self,
        query: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[RegistrantSearchResult]:
        cleaned = (query or "").strip() or None
        return self._repository.search_registrants(query=cleaned, limit=self._clamp_limit(limit))

    def export_allocations_csv(self, query: Optional[str] = None) -> str:
        """CSV of every matching registrant and the room they currently hold."""
        cleaned = (query or "").strip() or None
        results = self._repository.search_registrants(query=cleaned)
        frame = pd.DataFrame(
            [
                [
                    item.registrant.full_name,
                    item.registrant.gender.value,
                    item.registrant.date_of_birth.isoformat(),
                    item.registrant.phone_number,
                    item.registrant.email_address,
                    item.room_name or "",
                ]
                for item in results
            ],
            columns=EXPORT_COLUMNS,
        )
        return frame.to_csv(index=False)


def _require_actor(actor: str) -> None:
    if not actor or not actor.strip():
        raise ValueError("an acting identity is required for allocation changes")
