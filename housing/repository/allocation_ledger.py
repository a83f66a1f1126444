"""Allocation ledger: the only write path for room assignments.

Every precondition is re-read inside the same ``BEGIN IMMEDIATE`` transaction
as the insert, and the partial unique index on ``Allocations(registrant_id)``
backs the one-active-allocation rule underneath.
"""

from __future__ import annotations

import sqlite3
from datetime import datetime
from typing import Optional

from housing.domain.constraints import check_allocation
from housing.domain.errors import (
    AllocationError,
    AllocationErrorKind,
    AllocationRejected,
    AllocationStorageError,
)
from housing.domain.models import (
    Allocation,
    AllocationDetail,
    LedgerSnapshot,
    Occupant,
    Registrant,
)
from housing.repository.data_repository import (
    DataRepository,
    row_to_allocation,
    row_to_registrant,
    row_to_room,
    utc_now,
)
from housing.utils.logger import get_logger


logger = get_logger(__name__)


_ALLOCATION_COLUMNS = (
    "a.id, a.registrant_id, a.room_id, a.allocated_by, a.is_active, a.allocated_at, "
    "a.age_gap_tolerance, a.deallocated_at, a.deallocated_by, a.deallocation_reason"
)


class AllocationLedger:
    def __init__(self, repository: DataRepository) -> None:
        self._repository = repository

    # --- Writes -------------------------------------------------------------

    def create_allocation(
        self,
        *,
        registrant: Optional[Registrant],
        room_id: int,
        actor: str,
        age_gap_tolerance: int,
        as_of: Optional[datetime] = None,
    ) -> Allocation:
        """Validate and insert one allocation atomically.

        Raises ``AllocationRejected`` for rule violations and
        ``AllocationStorageError`` for anything the rules do not explain.
        """
        allocated_at = as_of or utc_now()
        try:
            with self._repository.transaction(immediate=True) as conn:
                room_row = conn.execute(
                    "SELECT id, name, gender, capacity, is_active, description FROM Rooms WHERE id = ?;",
                    (room_id,),
                ).fetchone()
                room = row_to_room(room_row) if room_row is not None else None

                existing = None
                if registrant is not None:
                    existing = self._active_allocation(conn, registrant.registrant_id)

                occupants = self._occupants(conn, room_id) if room is not None else []
                occupied = self._active_room_references(conn, room_id) if room is not None else 0

                error = check_allocation(
                    registrant=registrant,
                    room=room,
                    existing_allocation=existing,
                    occupants=occupants,
                    age_gap_tolerance=age_gap_tolerance,
                    as_of=allocated_at,
                    occupied=occupied,
                )
                if error is not None:
                    raise AllocationRejected(error)

                cursor = conn.execute(
                    """
                    INSERT INTO Allocations (
                        registrant_id,
                        room_id,
                        allocated_by,
                        is_active,
                        allocated_at,
                        age_gap_tolerance
                    )
                    VALUES (?, ?, ?, 1, ?, ?);
                    """,
                    (
                        registrant.registrant_id,
                        room_id,
                        actor,
                        allocated_at.isoformat(),
                        age_gap_tolerance,
                    ),
                )
                allocation_id = int(cursor.lastrowid)
        except sqlite3.IntegrityError as exc:
            # Only reachable if the uniqueness check above was bypassed.
            logger.warning(
                "Unique active allocation constraint fired | registrant_id=%s | room_id=%s",
                getattr(registrant, "registrant_id", None),
                room_id,
            )
            raise AllocationRejected(
                AllocationError(
                    AllocationErrorKind.ALREADY_ALLOCATED,
                    "Registrant is already allocated to a room",
                    {"registrant_id": getattr(registrant, "registrant_id", None)},
                )
            ) from exc
        except sqlite3.Error as exc:
            raise AllocationStorageError(f"Allocation write failed: {exc}") from exc

        return Allocation(
            allocation_id=allocation_id,
            registrant_id=registrant.registrant_id,
            room_id=room_id,
            allocated_by=actor,
            is_active=True,
            allocated_at=allocated_at,
            age_gap_tolerance=age_gap_tolerance,
        )

    def deactivate_allocation(
        self,
        *,
        registrant_id: int,
        actor: str,
        reason: Optional[str] = None,
        as_of: Optional[datetime] = None,
    ) -> Allocation:
        """Mark the registrant's active allocation inactive, keeping the row for audit."""
        deallocated_at = as_of or utc_now()
        try:
            with self._repository.transaction(immediate=True) as conn:
                current = self._active_allocation(conn, registrant_id)
                if current is None:
                    raise AllocationRejected(
                        AllocationError(
                            AllocationErrorKind.NOT_ALLOCATED,
                            "Registrant has no active allocation",
                            {"registrant_id": registrant_id},
                        )
                    )
                conn.execute(
                    """
                    UPDATE Allocations
                    SET is_active = 0,
                        deallocated_at = ?,
                        deallocated_by = ?,
                        deallocation_reason = ?
                    WHERE id = ? AND is_active = 1;
                    """,
                    (deallocated_at.isoformat(), actor, reason, current.allocation_id),
                )
        except sqlite3.Error as exc:
            raise AllocationStorageError(f"Deallocation write failed: {exc}") from exc

        return Allocation(
            allocation_id=current.allocation_id,
            registrant_id=current.registrant_id,
            room_id=current.room_id,
            allocated_by=current.allocated_by,
            is_active=False,
            allocated_at=current.allocated_at,
            age_gap_tolerance=current.age_gap_tolerance,
            deallocated_at=deallocated_at,
            deallocated_by=actor,
            deallocation_reason=reason,
        )

    def deactivate_if_orphaned(
        self,
        allocation_id: int,
        *,
        actor: str,
        reason: str,
        as_of: Optional[datetime] = None,
    ) -> bool:
        """Deactivate an allocation only if its room or registrant is still missing.

        Returns False when the allocation was already inactive or its
        references have been restored since the scan.
        """
        deallocated_at = as_of or utc_now()
        try:
            with self._repository.transaction(immediate=True) as conn:
                cursor = conn.execute(
                    """
                    UPDATE Allocations
                    SET is_active = 0,
                        deallocated_at = ?,
                        deallocated_by = ?,
                        deallocation_reason = ?
                    WHERE id = ?
                      AND is_active = 1
                      AND (
                          NOT EXISTS (SELECT 1 FROM Rooms WHERE Rooms.id = Allocations.room_id)
                          OR NOT EXISTS (
                              SELECT 1 FROM Registrants WHERE Registrants.id = Allocations.registrant_id
                          )
                      );
                    """,
                    (deallocated_at.isoformat(), actor, reason, allocation_id),
                )
                return cursor.rowcount == 1
        except sqlite3.Error as exc:
            raise AllocationStorageError(f"Orphan deactivation failed: {exc}") from exc

    # --- Reads --------------------------------------------------------------

    def _active_allocation(
        self,
        conn: sqlite3.Connection,
        registrant_id: int,
    ) -> Optional[Allocation]:
        row = conn.execute(
            f"""
            SELECT {_ALLOCATION_COLUMNS}
            FROM Allocations AS a
            WHERE a.registrant_id = ? AND a.is_active = 1
            ORDER BY a.id ASC
            LIMIT 1;
            """,
            (registrant_id,),
        ).fetchone()
        if row is None:
            return None
        return row_to_allocation(row)

    def _active_room_references(self, conn: sqlite3.Connection, room_id: int) -> int:
        row = conn.execute(
            "SELECT COUNT(*) AS count FROM Allocations WHERE room_id = ? AND is_active = 1;",
            (room_id,),
        ).fetchone()
        return int(row["count"])

    def _occupants(self, conn: sqlite3.Connection, room_id: int) -> list[Occupant]:
        """Occupants with an existing registrant row; used for age comparisons."""
        rows = conn.execute(
            f"""
            SELECT
                {_ALLOCATION_COLUMNS},
                r.id AS r_id,
                r.full_name AS r_full_name,
                r.gender AS r_gender,
                r.date_of_birth AS r_date_of_birth,
                r.phone_number AS r_phone_number,
                r.email_address AS r_email_address
            FROM Allocations AS a
            INNER JOIN Registrants AS r ON r.id = a.registrant_id
            WHERE a.room_id = ? AND a.is_active = 1
            ORDER BY a.allocated_at ASC, a.id ASC;
            """,
            (room_id,),
        ).fetchall()
        return [
            Occupant(
                allocation=row_to_allocation(row),
                registrant=row_to_registrant(row, prefix="r_"),
            )
            for row in rows
        ]

    def get_active_allocation(self, registrant_id: int) -> Optional[Allocation]:
        with self._repository.transaction() as conn:
            return self._active_allocation(conn, registrant_id)

    def list_occupants(self, room_id: int) -> list[Occupant]:
        with self._repository.transaction() as conn:
            return self._occupants(conn, room_id)

    def get_allocation_detail(self, registrant_id: int) -> Optional[AllocationDetail]:
        with self._repository.transaction() as conn:
            allocation = self._active_allocation(conn, registrant_id)
            if allocation is None:
                return None
            room_row = conn.execute(
                "SELECT id, name, gender, capacity, is_active, description FROM Rooms WHERE id = ?;",
                (allocation.room_id,),
            ).fetchone()
            registrant_row = conn.execute(
                """
                SELECT id, full_name, gender, date_of_birth, phone_number, email_address
                FROM Registrants
                WHERE id = ?;
                """,
                (registrant_id,),
            ).fetchone()
        if room_row is None or registrant_row is None:
            return None
        return AllocationDetail(
            allocation=allocation,
            room=row_to_room(room_row),
            registrant=row_to_registrant(registrant_row),
        )

    def list_allocation_history(self, registrant_id: int) -> list[Allocation]:
        with self._repository.transaction() as conn:
            rows = conn.execute(
                f"""
                SELECT {_ALLOCATION_COLUMNS}
                FROM Allocations AS a
                WHERE a.registrant_id = ?
                ORDER BY a.allocated_at ASC, a.id ASC;
                """,
                (registrant_id,),
            ).fetchall()
        return [row_to_allocation(row) for row in rows]

    def count_active_allocations(self) -> int:
        with self._repository.transaction() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS count FROM Allocations WHERE is_active = 1;"
            ).fetchone()
            return int(row["count"])

    def count_allocated_registrants(self) -> int:
        """Registrants that exist and hold an active allocation."""
        with self._repository.transaction() as conn:
            row = conn.execute(
                """
                SELECT COUNT(DISTINCT a.registrant_id) AS count
                FROM Allocations AS a
                INNER JOIN Registrants AS r ON r.id = a.registrant_id
                WHERE a.is_active = 1;
                """
            ).fetchone()
            return int(row["count"])

    def snapshot(self) -> LedgerSnapshot:
        """Read rooms, referenced registrants and active allocations in one transaction."""
        try:
            with self._repository.transaction() as conn:
                allocation_rows = conn.execute(
                    f"""
                    SELECT {_ALLOCATION_COLUMNS}
                    FROM Allocations AS a
                    WHERE a.is_active = 1
                    ORDER BY a.room_id ASC, a.allocated_at ASC, a.id ASC;
                    """
                ).fetchall()
                room_rows = conn.execute(
                    "SELECT id, name, gender, capacity, is_active, description FROM Rooms;"
                ).fetchall()
                registrant_rows = conn.execute(
                    """
                    SELECT id, full_name, gender, date_of_birth, phone_number, email_address
                    FROM Registrants
                    WHERE id IN (SELECT registrant_id FROM Allocations WHERE is_active = 1);
                    """
                ).fetchall()
        except sqlite3.Error as exc:
            raise AllocationStorageError(f"Ledger snapshot failed: {exc}") from exc

        rooms = {int(row["id"]): row_to_room(row) for row in room_rows}
        registrants = {int(row["id"]): row_to_registrant(row) for row in registrant_rows}
        return LedgerSnapshot(
            taken_at=utc_now(),
            rooms=rooms,
            registrants=registrants,
            allocations=[row_to_allocation(row) for row in allocation_rows],
        )
