"""Repository layer responsible for all database access."""

from __future__ import annotations

import random
import sqlite3
from contextlib import contextmanager
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import Iterator, Optional

from housing.domain.models import (
    Allocation,
    Gender,
    RegistrantSearchResult,
    Registrant,
    Room,
    RoomOccupancy,
)
from housing.utils.config import Settings, get_settings
from housing.utils.logger import get_logger


logger = get_logger(__name__)


DEFAULT_ROOMS: tuple[tuple[str, str, int, str], ...] = (
    ("Room Alpha", "Male", 4, "Male accommodation room"),
    ("Room Beta", "Male", 4, "Male accommodation room"),
    ("Room Gamma", "Male", 6, "Male accommodation room"),
    ("Room Delta", "Male", 4, "Male accommodation room"),
    ("Room Epsilon", "Male", 6, "Male accommodation room"),
    ("Room Zion", "Female", 4, "Female accommodation room"),
    ("Room Grace", "Female", 4, "Female accommodation room"),
    ("Room Faith", "Female", 6, "Female accommodation room"),
    ("Room Hope", "Female", 4, "Female accommodation room"),
    ("Room Joy", "Female", 6, "Female accommodation room"),
)

_DEMO_FIRST_NAMES = {
    "Male": ("Adebayo", "Chinedu", "Emeka", "Ibrahim", "Kwame", "Musa", "Tunde", "Yusuf"),
    "Female": ("Amaka", "Bisi", "Chioma", "Fatima", "Ngozi", "Sade", "Temi", "Zainab"),
}
_DEMO_LAST_NAMES = ("Okafor", "Adeyemi", "Bello", "Eze", "Mensah", "Ogunleye", "Danjuma", "Nwosu")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    parsed = datetime.fromisoformat(str(value))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def row_to_registrant(row: sqlite3.Row, prefix: str = "") -> Registrant:
    return Registrant(
        registrant_id=int(row[f"{prefix}id"]),
        full_name=str(row[f"{prefix}full_name"]),
        gender=Gender(str(row[f"{prefix}gender"])),
        date_of_birth=date.fromisoformat(str(row[f"{prefix}date_of_birth"])),
        phone_number=str(row[f"{prefix}phone_number"] or ""),
        email_address=str(row[f"{prefix}email_address"] or ""),
    )


def row_to_room(row: sqlite3.Row, prefix: str = "") -> Room:
    return Room(
        room_id=int(row[f"{prefix}id"]),
        name=str(row[f"{prefix}name"]),
        gender=Gender(str(row[f"{prefix}gender"])),
        capacity=int(row[f"{prefix}capacity"]),
        is_active=bool(row[f"{prefix}is_active"]),
        description=str(row[f"{prefix}description"] or ""),
    )


def row_to_allocation(row: sqlite3.Row, prefix: str = "") -> Allocation:
    tolerance = row[f"{prefix}age_gap_tolerance"]
    return Allocation(
        allocation_id=int(row[f"{prefix}id"]),
        registrant_id=int(row[f"{prefix}registrant_id"]),
        room_id=int(row[f"{prefix}room_id"]),
        allocated_by=str(row[f"{prefix}allocated_by"]),
        is_active=bool(row[f"{prefix}is_active"]),
        allocated_at=_parse_timestamp(row[f"{prefix}allocated_at"]),
        age_gap_tolerance=int(tolerance) if tolerance is not None else None,
        deallocated_at=_parse_timestamp(row[f"{prefix}deallocated_at"]),
        deallocated_by=row[f"{prefix}deallocated_by"],
        deallocation_reason=row[f"{prefix}deallocation_reason"],
    )


def _like_pattern(query: str) -> str:
    escaped = query.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped.lower()}%"


_REGISTRANT_COLUMNS = "r.id, r.full_name, r.gender, r.date_of_birth, r.phone_number, r.email_address"
_TEXT_MATCH = """
    (
        LOWER(r.full_name) LIKE ? ESCAPE '\\'
        OR LOWER(COALESCE(r.phone_number, '')) LIKE ? ESCAPE '\\'
        OR LOWER(COALESCE(r.email_address, '')) LIKE ? ESCAPE '\\'
    )
"""


class DataRepository:
    """Encapsulates SQLite access so business logic stays storage-agnostic."""

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self._settings = settings or get_settings()
        self._db_path = Path(self._settings.database_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def database_path(self) -> Path:
        return self._db_path

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        connection = sqlite3.connect(
            self._db_path,
            timeout=self._settings.sqlite_busy_timeout_seconds,
            isolation_level=None,
            check_same_thread=False,
        )
        connection.row_factory = sqlite3.Row
        try:
            yield connection
        finally:
            connection.close()

    @contextmanager
    def transaction(self, *, immediate: bool = False) -> Iterator[sqlite3.Connection]:
        """Run statements in one transaction.

        ``immediate`` takes the database write lock up front, so reads made
        inside the block cannot be invalidated by another writer before commit.
        """
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE;" if immediate else "BEGIN;")
            try:
                yield conn
            except BaseException:
                if conn.in_transaction:
                    conn.execute("ROLLBACK;")
                raise
            conn.execute("COMMIT;")

    def initialize_database(self) -> None:
        """Create all persistence artifacts before API startup."""
        try:
            with self._connect() as conn:
                conn.execute("PRAGMA journal_mode = WAL;")
                cursor = conn.cursor()
                cursor.execute("BEGIN;")

                cursor.execute(
                    """
                    CREATE TABLE IF NOT EXISTS Registrants (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        full_name TEXT NOT NULL,
                        gender TEXT NOT NULL CHECK (gender IN ('Male', 'Female')),
                        date_of_birth TEXT NOT NULL,
                        phone_number TEXT,
                        email_address TEXT,
                        created_at DATETIME DEFAULT CURRENT_TIMESTAMP
                    );
                    """
                )

                cursor.execute(
                    """
                    CREATE TABLE IF NOT EXISTS Rooms (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        name TEXT NOT NULL UNIQUE,
                        gender TEXT NOT NULL CHECK (gender IN ('Male', 'Female')),
                        capacity INTEGER NOT NULL CHECK (capacity > 0),
                        is_active INTEGER NOT NULL DEFAULT 1 CHECK (is_active IN (0, 1)),
                        description TEXT,
                        created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
                        updated_at DATETIME DEFAULT CURRENT_TIMESTAMP
                    );
                    """
                )

                # Registrants and rooms are owned elsewhere; dangling references
                # are reported by the integrity reconciler instead of a foreign key.
                cursor.execute(
                    """
                    CREATE TABLE IF NOT EXISTS Allocations (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        registrant_id INTEGER NOT NULL,
                        room_id INTEGER NOT NULL,
                        allocated_by TEXT NOT NULL,
                        is_active INTEGER NOT NULL DEFAULT 1 CHECK (is_active IN (0, 1)),
                        allocated_at TEXT NOT NULL,
                        age_gap_tolerance INTEGER,
                        deallocated_at TEXT,
                        deallocated_by TEXT,
                        deallocation_reason TEXT
                    );
                    """
                )

                cursor.execute(
                    """
                    CREATE TABLE IF NOT EXISTS Settings (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        category TEXT NOT NULL,
                        key TEXT NOT NULL,
                        value TEXT NOT NULL,
                        value_type TEXT NOT NULL,
                        description TEXT,
                        updated_by TEXT,
                        updated_at DATETIME DEFAULT CURRENT_TIMESTAMP,
                        UNIQUE (category, key)
                    );
                    """
                )

                cursor.execute(
                    """
                    CREATE UNIQUE INDEX IF NOT EXISTS ux_allocations_active_registrant
                    ON Allocations(registrant_id)
                    WHERE is_active = 1;
                    """
                )
                cursor.execute(
                    """
                    CREATE INDEX IF NOT EXISTS idx_allocations_room_active
                    ON Allocations(room_id, is_active);
                    """
                )
                cursor.execute(
                    """
                    CREATE INDEX IF NOT EXISTS idx_rooms_gender_active
                    ON Rooms(gender, is_active);
                    """
                )
                cursor.execute("COMMIT;")
            logger.info("Database initialized at %s", self._db_path)
        except sqlite3.Error as exc:
            raise RuntimeError(f"Database initialization failed: {exc}") from exc

    def seed_default_rooms(self) -> int:
        """Insert the default room set only when the Rooms table is empty."""
        try:
            with self.transaction() as conn:
                row = conn.execute("SELECT COUNT(*) AS count FROM Rooms;").fetchone()
                if int(row["count"]) > 0:
                    logger.info("Rooms already present; skipping default room seed")
                    return 0
                conn.executemany(
                    """
                    INSERT INTO Rooms (name, gender, capacity, description)
                    VALUES (?, ?, ?, ?);
                    """,
                    DEFAULT_ROOMS,
                )
            logger.info("Default room seed completed with %s rooms", len(DEFAULT_ROOMS))
            return len(DEFAULT_ROOMS)
        except sqlite3.Error as exc:
            raise RuntimeError(f"Default room seeding failed: {exc}") from exc

    def seed_demo_registrants(self) -> int:
        """Seed deterministic demo registrants only when the table is empty."""
        rng = random.Random(self._settings.synthetic_random_seed)
        today = utc_now().date()
        rows = []
        for index in range(self._settings.synthetic_registrant_count):
            gender = "Male" if index % 2 == 0 else "Female"
            first_name = rng.choice(_DEMO_FIRST_NAMES[gender])
            last_name = rng.choice(_DEMO_LAST_NAMES)
            date_of_birth = today - timedelta(days=rng.randint(17 * 365, 30 * 365))
            rows.append(
                (
                    f"{first_name} {last_name}",
                    gender,
                    date_of_birth.isoformat(),
                    f"+234800000{index:04d}",
                    f"{first_name.lower()}.{last_name.lower()}{index}@example.org",
                )
            )
        try:
            with self.transaction() as conn:
                row = conn.execute("SELECT COUNT(*) AS count FROM Registrants;").fetchone()
                if int(row["count"]) > 0:
                    logger.info("Registrants already present; skipping demo seed")
                    return 0
                conn.executemany(
                    """
                    INSERT INTO Registrants (full_name, gender, date_of_birth, phone_number, email_address)
                    VALUES (?, ?, ?, ?, ?);
                    """,
                    rows,
                )
            logger.info("Demo registrant seed completed with %s records", len(rows))
            return len(rows)
        except sqlite3.Error as exc:
            raise RuntimeError(f"Demo registrant seeding failed: {exc}") from exc

    # --- Registrant catalog -------------------------------------------------

    def add_registrant(
        self,
        full_name: str,
        gender: Gender | str,
        date_of_birth: date,
        phone_number: str = "",
        email_address: str = "",
    ) -> int:
        """Intake helper: insert a registrant row and return its id."""
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO Registrants (full_name, gender, date_of_birth, phone_number, email_address)
                VALUES (?, ?, ?, ?, ?);
                """,
                (
                    full_name,
                    Gender(gender).value,
                    date_of_birth.isoformat(),
                    phone_number,
                    email_address,
                ),
            )
            return int(cursor.lastrowid)

    def get_registrant(self, registrant_id: int) -> Optional[Registrant]:
        """Fetch a registrant; lookup failures are reported as a missing registrant."""
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"SELECT {_REGISTRANT_COLUMNS} FROM Registrants AS r WHERE r.id = ?;",
                    (registrant_id,),
                ).fetchone()
        except sqlite3.Error as exc:
            logger.warning(
                "Registrant lookup failed | registrant_id=%s | error=%s",
                registrant_id,
                exc,
            )
            return None
        if row is None:
            return None
        return row_to_registrant(row)

    def count_registrants(self) -> int:
        with self._connect() as conn:
            row = conn.execute("SELECT COUNT(*) AS count FROM Registrants;").fetchone()
            return int(row["count"])

    def list_unallocated_registrants(
        self,
        *,
        query: Optional[str] = None,
        gender: Optional[Gender] = None,
        limit: Optional[int] = None,
    ) -> list[Registrant]:
        """Registrants without an active allocation, ordered by name."""
        clauses = [
            "NOT EXISTS (SELECT 1 FROM Allocations AS a WHERE a.registrant_id = r.id AND a.is_active = 1)"
        ]
        params: list[object] = []
        if gender is not None:
            clauses.append("r.gender = ?")
            params.append(gender.value)
        if query:
            clauses.append(_TEXT_MATCH)
            pattern = _like_pattern(query)
            params.extend([pattern, pattern, pattern])
        sql = (
            f"SELECT {_REGISTRANT_COLUMNS} FROM Registrants AS r "
            f"WHERE {' AND '.join(clauses)} "
            "ORDER BY r.full_name ASC, r.id ASC"
        )
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        with self._connect() as conn:
            return [row_to_registrant(row) for row in conn.execute(sql + ";", params).fetchall()]

    def search_registrants(
        self,
        *,
        query: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[RegistrantSearchResult]:
        """All registrants matching ``query`` together with their current room name."""
        params: list[object] = []
        where = ""
        if query:
            where = f"WHERE {_TEXT_MATCH}"
            pattern = _like_pattern(query)
            params.extend([pattern, pattern, pattern])
        sql = f"""
            SELECT {_REGISTRANT_COLUMNS}, rm.name AS room_name
            FROM Registrants AS r
            LEFT JOIN Allocations AS a ON a.registrant_id = r.id AND a.is_active = 1
            LEFT JOIN Rooms AS rm ON rm.id = a.room_id
            {where}
            ORDER BY r.full_name ASC, r.id ASC
        """
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        with self._connect() as conn:
            return [
                RegistrantSearchResult(
                    registrant=row_to_registrant(row),
                    room_name=row["room_name"],
                )
                for row in conn.execute(sql + ";", params).fetchall()
            ]

    # --- Room catalog -------------------------------------------------------

    def get_room(self, room_id: int) -> Optional[Room]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT id, name, gender, capacity, is_active, description FROM Rooms WHERE id = ?;",
                (room_id,),
            ).fetchone()
        if row is None:
            return None
        return row_to_room(row)

    def list_rooms(
        self,
        *,
        gender: Optional[Gender] = None,
        active_only: bool = True,
    ) -> list[Room]:
        clauses: list[str] = []
        params: list[object] = []
        if active_only:
            clauses.append("is_active = 1")
        if gender is not None:
            clauses.append("gender = ?")
            params.append(gender.value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT id, name, gender, capacity, is_active, description
                FROM Rooms
                {where}
                ORDER BY name ASC;
                """,
                params,
            ).fetchall()
        return [row_to_room(row) for row in rows]

    def create_room(
        self,
        name: str,
        gender: Gender,
        capacity: int,
        description: str = "",
    ) -> Room:
        try:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO Rooms (name, gender, capacity, description)
                    VALUES (?, ?, ?, ?);
                    """,
                    (name.strip(), gender.value, capacity, description),
                )
                room_id = int(cursor.lastrowid)
        except sqlite3.IntegrityError as exc:
            raise ValueError(f"room name already exists: {name}") from exc
        return Room(
            room_id=room_id,
            name=name.strip(),
            gender=gender,
            capacity=capacity,
            is_active=True,
            description=description,
        )

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
        """Apply administrator edits; allocation rows are never touched here."""
        assignments: list[str] = []
        params: list[object] = []
        if name is not None:
            assignments.append("name = ?")
            params.append(name.strip())
        if gender is not None:
            assignments.append("gender = ?")
            params.append(gender.value)
        if capacity is not None:
            assignments.append("capacity = ?")
            params.append(capacity)
        if is_active is not None:
            assignments.append("is_active = ?")
            params.append(1 if is_active else 0)
        if description is not None:
            assignments.append("description = ?")
            params.append(description)
        if assignments:
            assignments.append("updated_at = CURRENT_TIMESTAMP")
            try:
                with self._connect() as conn:
                    conn.execute(
                        f"UPDATE Rooms SET {', '.join(assignments)} WHERE id = ?;",
                        (*params, room_id),
                    )
            except sqlite3.IntegrityError as exc:
                raise ValueError(f"room update rejected: {exc}") from exc
        return self.get_room(room_id)

    def list_room_occupancy(self, *, gender: Optional[Gender] = None) -> list[RoomOccupancy]:
        """Active rooms with their active allocation counts."""
        params: list[object] = []
        gender_clause = ""
        if gender is not None:
            gender_clause = "AND rm.gender = ?"
            params.append(gender.value)
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT
                    rm.id, rm.name, rm.gender, rm.capacity, rm.is_active, rm.description,
                    COUNT(a.id) AS occupied
                FROM Rooms AS rm
                LEFT JOIN Allocations AS a ON a.room_id = rm.id AND a.is_active = 1
                WHERE rm.is_active = 1 {gender_clause}
                GROUP BY rm.id
                ORDER BY rm.name ASC;
                """,
                params,
            ).fetchall()
        return [RoomOccupancy(room=row_to_room(row), occupied=int(row["occupied"])) for row in rows]

    # --- Settings rows ------------------------------------------------------

    def get_setting_value(self, category: str, key: str) -> Optional[str]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT value FROM Settings WHERE category = ? AND key = ?;",
                (category, key),
            ).fetchone()
        if row is None:
            return None
        return str(row["value"])

    def upsert_setting(
        self,
        *,
        category: str,
        key: str,
        value: str,
        value_type: str,
        description: str,
        updated_by: str,
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO Settings (category, key, value, value_type, description, updated_by)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT (category, key) DO UPDATE SET
                    value = excluded.value,
                    value_type = excluded.value_type,
                    updated_by = excluded.updated_by,
                    updated_at = CURRENT_TIMESTAMP;
                """,
                (category, key, value, value_type, description, updated_by),
            )
