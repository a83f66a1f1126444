"""Background integrity reconciler for the allocation ledger.

``IntegrityReconciler`` performs one scan/resolve/report cycle against a
consistent ledger snapshot. ``ReconcilerSupervisor`` owns the single worker
thread that schedules those cycles; callers talk to it only through a
command queue and read its published ``ReconcilerStatus``.
"""

from __future__ import annotations

import queue
import threading
import time
from collections import deque
from concurrent.futures import Future
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from enum import Enum
from itertools import combinations
from typing import Any, Callable, Iterable, Optional

from housing.domain.constraints import (
    SAFE_AUTO_RESOLVE_TYPES,
    ReconcilerConfig,
    age_gap,
    parse_conflict_types,
    validate_reconciler_config,
)
from housing.domain.models import (
    Allocation,
    Conflict,
    ConflictType,
    LedgerSnapshot,
    Severity,
)
from housing.repository.allocation_ledger import AllocationLedger
from housing.repository.data_repository import utc_now
from housing.services.allocation_service import STATS_CACHE_KEY
from housing.services.cache_service import CacheService
from housing.services.settings_service import SettingsService
from housing.utils.config import Settings, get_settings
from housing.utils.logger import get_logger


logger = get_logger(__name__)

RECONCILER_ACTOR = "integrity-reconciler"

_SEVERITY = {
    ConflictType.CAPACITY_EXCEEDED: Severity.HIGH,
    ConflictType.DUPLICATE_ALLOCATION: Severity.HIGH,
    ConflictType.GENDER_MISMATCH: Severity.HIGH,
    ConflictType.AGE_GAP_VIOLATION: Severity.MEDIUM,
    ConflictType.ORPHANED_REFERENCE: Severity.MEDIUM,
    ConflictType.INACTIVE_ROOM_OCCUPANCY: Severity.LOW,
}


class ReconcilerConfigError(Exception):
    """Raised when a reconciler configuration is rejected."""


class ReconcilerState(str, Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    REPORTING = "reporting"
    RESOLVING = "resolving"


@dataclass(frozen=True)
class ReconcileReport:
    started_at: datetime
    finished_at: datetime
    conflicts: tuple[Conflict, ...] = ()
    resolved: tuple[str, ...] = ()
    reported: tuple[str, ...] = ()
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class ReconcilerStatus:
    running: bool
    state: ReconcilerState
    config: ReconcilerConfig
    last_report: Optional[ReconcileReport] = None
    next_run_at: Optional[datetime] = None
    cycles_completed: int = 0


def build_reconciler_config(settings: Optional[Settings] = None) -> ReconcilerConfig:
    resolved = settings or get_settings()
    return merge_reconciler_config(
        ReconcilerConfig(
            interval_seconds=resolved.reconciler_interval_seconds,
            auto_resolve_types=frozenset(),
            retroactive_age_gap=resolved.reconciler_retroactive_age_gap,
        ),
        auto_resolve_types=resolved.reconciler_auto_resolve_types,
    )


def merge_reconciler_config(
    base: ReconcilerConfig,
    *,
    interval_seconds: Optional[float] = None,
    auto_resolve_types: Optional[Iterable[str]] = None,
    retroactive_age_gap: Optional[bool] = None,
) -> ReconcilerConfig:
    """Apply partial updates to ``base`` and validate the result."""
    try:
        config = replace(
            base,
            interval_seconds=(
                float(interval_seconds) if interval_seconds is not None else base.interval_seconds
            ),
            auto_resolve_types=(
                parse_conflict_types(list(auto_resolve_types))
                if auto_resolve_types is not None
                else base.auto_resolve_types
            ),
            retroactive_age_gap=(
                bool(retroactive_age_gap)
                if retroactive_age_gap is not None
                else base.retroactive_age_gap
            ),
        )
        validate_reconciler_config(config)
    except ValueError as exc:
        raise ReconcilerConfigError(str(exc)) from exc
    return config


def _conflict(conflict_type: ConflictType, message: str, **kwargs: Any) -> Conflict:
    return Conflict(
        conflict_type=conflict_type,
        severity=_SEVERITY[conflict_type],
        message=message,
        **kwargs,
    )


def detect_conflicts(
    snapshot: LedgerSnapshot,
    *,
    current_tolerance: Optional[int] = None,
) -> list[Conflict]:
    """Evaluate every allocation invariant over one ledger snapshot.

    Orphaned allocations are reported on their own and only count towards
    room capacity. When ``current_tolerance`` is given, occupant pairs are
    also checked against it at the snapshot's ages.
    """
    conflicts: list[Conflict] = []
    valid: list[Allocation] = []
    # Every active allocation in an existing room takes a space, orphaned or not.
    room_references: dict[int, list[Allocation]] = {}

    for allocation in snapshot.allocations:
        if allocation.room_id in snapshot.rooms:
            room_references.setdefault(allocation.room_id, []).append(allocation)
        missing = []
        if allocation.room_id not in snapshot.rooms:
            missing.append("room")
        if allocation.registrant_id not in snapshot.registrants:
            missing.append("registrant")
        if missing:
            conflicts.append(
                _conflict(
                    ConflictType.ORPHANED_REFERENCE,
                    f"Allocation {allocation.allocation_id} references a missing {' and '.join(missing)}",
                    room_id=allocation.room_id,
                    registrant_ids=(allocation.registrant_id,),
                    allocation_ids=(allocation.allocation_id,),
                    details={"missing": missing},
                )
            )
        else:
            valid.append(allocation)

    by_registrant: dict[int, list[Allocation]] = {}
    by_room: dict[int, list[Allocation]] = {}
    for allocation in valid:
        by_registrant.setdefault(allocation.registrant_id, []).append(allocation)
        by_room.setdefault(allocation.room_id, []).append(allocation)

    for registrant_id, allocations in sorted(by_registrant.items()):
        if len(allocations) > 1:
            name = snapshot.registrants[registrant_id].full_name
            conflicts.append(
                _conflict(
                    ConflictType.DUPLICATE_ALLOCATION,
                    f"{name} holds {len(allocations)} active allocations",
                    registrant_ids=(registrant_id,),
                    allocation_ids=tuple(item.allocation_id for item in allocations),
                    details={"room_ids": [item.room_id for item in allocations]},
                )
            )

    for allocation in valid:
        room = snapshot.rooms[allocation.room_id]
        registrant = snapshot.registrants[allocation.registrant_id]
        if room.gender != registrant.gender:
            conflicts.append(
                _conflict(
                    ConflictType.GENDER_MISMATCH,
                    f"{registrant.full_name} ({registrant.gender.value}) is in {room.name} ({room.gender.value})",
                    room_id=room.room_id,
                    registrant_ids=(registrant.registrant_id,),
                    allocation_ids=(allocation.allocation_id,),
                    details={
                        "room_gender": room.gender.value,
                        "registrant_gender": registrant.gender.value,
                    },
                )
            )

    for room_id, references in sorted(room_references.items()):
        room = snapshot.rooms[room_id]
        if len(references) > room.capacity:
            conflicts.append(
                _conflict(
                    ConflictType.CAPACITY_EXCEEDED,
                    f"{room.name} holds {len(references)} active allocations but capacity is {room.capacity}",
                    room_id=room_id,
                    registrant_ids=tuple(item.registrant_id for item in references),
                    allocation_ids=tuple(item.allocation_id for item in references),
                    details={"capacity": room.capacity, "occupied": len(references)},
                )
            )

        allocations = by_room.get(room_id)
        if not allocations:
            continue
        registrant_ids = tuple(item.registrant_id for item in allocations)
        allocation_ids = tuple(item.allocation_id for item in allocations)
        if not room.is_active:
            conflicts.append(
                _conflict(
                    ConflictType.INACTIVE_ROOM_OCCUPANCY,
                    f"{room.name} is inactive but holds {len(allocations)} active allocations",
                    room_id=room_id,
                    registrant_ids=registrant_ids,
                    allocation_ids=allocation_ids,
                )
            )
        conflicts.extend(
            _age_gap_conflicts(snapshot, room_id, allocations, current_tolerance)
        )

    return conflicts


def _age_gap_conflicts(
    snapshot: LedgerSnapshot,
    room_id: int,
    allocations: list[Allocation],
    current_tolerance: Optional[int],
) -> list[Conflict]:
    ordered = sorted(allocations, key=lambda item: (item.allocated_at, item.allocation_id))
    found: list[Conflict] = []
    for earlier, later in combinations(ordered, 2):
        first = snapshot.registrants[earlier.registrant_id]
        second = snapshot.registrants[later.registrant_id]
        pair = {
            "room_id": room_id,
            "registrant_ids": (first.registrant_id, second.registrant_id),
            "allocation_ids": (earlier.allocation_id, later.allocation_id),
        }

        # Legacy rows without a recorded tolerance are only judged retroactively.
        if later.age_gap_tolerance is not None:
            gap = age_gap(first, second, later.allocated_at)
            if gap > later.age_gap_tolerance:
                found.append(
                    _conflict(
                        ConflictType.AGE_GAP_VIOLATION,
                        (
                            f"{first.full_name} and {second.full_name} differ by {gap} years; "
                            f"tolerance at allocation was {later.age_gap_tolerance}"
                        ),
                        details={
                            "policy": "recorded",
                            "age_gap": gap,
                            "tolerance": later.age_gap_tolerance,
                            "evaluated_at": later.allocated_at.isoformat(),
                        },
                        **pair,
                    )
                )
                continue

        if current_tolerance is not None:
            gap = age_gap(first, second, snapshot.taken_at)
            if gap > current_tolerance:
                found.append(
                    _conflict(
                        ConflictType.AGE_GAP_VIOLATION,
                        (
                            f"{first.full_name} and {second.full_name} differ by {gap} years; "
                            f"current tolerance is {current_tolerance}"
                        ),
                        details={
                            "policy": "current",
                            "age_gap": gap,
                            "tolerance": current_tolerance,
                            "evaluated_at": snapshot.taken_at.isoformat(),
                        },
                        **pair,
                    )
                )
    return found


def _log_conflict(conflict: Conflict) -> None:
    if conflict.severity == Severity.HIGH:
        log = logger.error
    elif conflict.severity == Severity.MEDIUM:
        log = logger.warning
    else:
        log = logger.info
    log(
        "Integrity conflict | id=%s | severity=%s | %s",
        conflict.conflict_id,
        conflict.severity.value,
        conflict.message,
    )


class IntegrityReconciler:
    def __init__(
        self,
        ledger: AllocationLedger,
        settings_service: Optional[SettingsService] = None,
        cache: Optional[CacheService] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._ledger = ledger
        self._settings_service = settings_service
        self._cache = cache
        self._clock = clock

    def scan(self, config: Optional[ReconcilerConfig] = None) -> list[Conflict]:
        snapshot = self._ledger.snapshot()
        current_tolerance = None
        if config is not None and config.retroactive_age_gap and self._settings_service is not None:
            current_tolerance = self._settings_service.get_age_gap_tolerance()
        return detect_conflicts(snapshot, current_tolerance=current_tolerance)

    def _resolve(self, conflict: Conflict) -> bool:
        if conflict.conflict_type not in SAFE_AUTO_RESOLVE_TYPES:
            return False
        resolved = False
        for allocation_id in conflict.allocation_ids:
            resolved = (
                self._ledger.deactivate_if_orphaned(
                    allocation_id,
                    actor=RECONCILER_ACTOR,
                    reason=conflict.message,
                    as_of=self._clock(),
                )
                or resolved
            )
        return resolved

    def reconcile(
        self,
        config: ReconcilerConfig,
        on_state: Optional[Callable[[ReconcilerState], None]] = None,
    ) -> ReconcileReport:
        """Scan, auto-resolve what ``config`` permits and report the rest."""
        notify = on_state or (lambda state: None)
        started_at = self._clock()

        notify(ReconcilerState.SCANNING)
        conflicts = self.scan(config)
        resolvable = [
            conflict
            for conflict in conflicts
            if conflict.conflict_type in config.auto_resolve_types
        ]
        resolved: list[str] = []
        if resolvable:
            notify(ReconcilerState.RESOLVING)
            for conflict in resolvable:
                if self._resolve(conflict):
                    resolved.append(conflict.conflict_id)
                    logger.info(
                        "Integrity conflict auto-resolved | id=%s | actor=%s",
                        conflict.conflict_id,
                        RECONCILER_ACTOR,
                    )
            if resolved and self._cache is not None:
                self._cache.invalidate(STATS_CACHE_KEY)

        resolved_ids = set(resolved)
        reported = [conflict for conflict in conflicts if conflict.conflict_id not in resolved_ids]
        if reported:
            notify(ReconcilerState.REPORTING)
            for conflict in reported:
                _log_conflict(conflict)

        logger.info(
            "Integrity scan finished | conflicts=%s | resolved=%s | reported=%s",
            len(conflicts),
            len(resolved),
            len(reported),
        )
        return ReconcileReport(
            started_at=started_at,
            finished_at=self._clock(),
            conflicts=tuple(conflicts),
            resolved=tuple(resolved),
            reported=tuple(conflict.conflict_id for conflict in reported),
        )


class _Command(Enum):
    START = "start"
    STOP = "stop"
    RECONFIGURE = "reconfigure"
    RUN_NOW = "run_now"
    SHUTDOWN = "shutdown"


class ReconcilerSupervisor:
    """Runs reconcile cycles on one daemon thread driven by queued commands.

    Commands are processed strictly between cycles, so ``stop`` never
    interrupts a scan in progress. Every command returns a ``Future``.
    """

    def __init__(
        self,
        reconciler: IntegrityReconciler,
        config: ReconcilerConfig,
        history_size: int = 20,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        try:
            validate_reconciler_config(config)
        except ValueError as exc:
            raise ReconcilerConfigError(str(exc)) from exc
        self._reconciler = reconciler
        self._clock = clock
        self._commands: "queue.Queue[tuple[_Command, Any, Future]]" = queue.Queue()
        self._listeners: list[Callable[[ReconcileReport], None]] = []
        self._thread: Optional[threading.Thread] = None
        self._thread_lock = threading.Lock()
        self._closed = False

        # Owned by the worker thread once it starts.
        self._config = config
        self._running = False
        self._state = ReconcilerState.IDLE
        self._deadline: Optional[float] = None
        self._next_run_at: Optional[datetime] = None
        self._last_report: Optional[ReconcileReport] = None
        self._cycles = 0
        self._history: deque[ReconcileReport] = deque(maxlen=max(history_size, 1))

        self._status = ReconcilerStatus(running=False, state=ReconcilerState.IDLE, config=config)
        self._reports: tuple[ReconcileReport, ...] = ()

    # --- Caller-facing API --------------------------------------------------

    def status(self) -> ReconcilerStatus:
        return self._status

    def reports(self) -> tuple[ReconcileReport, ...]:
        """Most recent reports, newest last."""
        return self._reports

    def add_listener(self, listener: Callable[[ReconcileReport], None]) -> None:
        self._listeners.append(listener)

    def start(self) -> "Future[ReconcilerStatus]":
        return self._submit(_Command.START)

    def stop(self) -> "Future[ReconcilerStatus]":
        return self._submit(_Command.STOP)

    def reconfigure(self, config: ReconcilerConfig) -> "Future[ReconcilerStatus]":
        try:
            validate_reconciler_config(config)
        except ValueError as exc:
            raise ReconcilerConfigError(str(exc)) from exc
        return self._submit(_Command.RECONFIGURE, config)

    def update_config(self, **changes: Any) -> "Future[ReconcilerStatus]":
        """Merge partial changes into the live config on the worker thread.

        The future fails with ``ReconcilerConfigError`` when the merged
        config is invalid.
        """
        return self._submit(_Command.RECONFIGURE, changes)

    def run_now(self) -> "Future[ReconcileReport]":
        return self._submit(_Command.RUN_NOW)

    def shutdown(self, timeout: Optional[float] = 5.0) -> None:
        with self._thread_lock:
            if self._closed:
                return
            self._closed = True
            thread = self._thread
        if thread is None:
            return
        self._commands.put((_Command.SHUTDOWN, None, Future()))
        thread.join(timeout)
        if thread.is_alive():
            logger.warning("Integrity reconciler did not stop within %.1fs", timeout or 0.0)

    def _submit(self, command: _Command, payload: Any = None) -> Future:
        with self._thread_lock:
            if self._closed:
                raise RuntimeError("Integrity reconciler has been shut down")
            if self._thread is None:
                self._thread = threading.Thread(
                    target=self._run,
                    name="integrity-reconciler",
                    daemon=True,
                )
                self._thread.start()
            future: Future = Future()
            self._commands.put((command, payload, future))
        return future

    # --- Worker thread ------------------------------------------------------

    def _run(self) -> None:
        logger.info("Integrity reconciler thread started")
        while True:
            timeout = None
            if self._running and self._deadline is not None:
                timeout = max(self._deadline - time.monotonic(), 0.0)
            try:
                command, payload, future = self._commands.get(timeout=timeout)
            except queue.Empty:
                self._cycle()
                self._schedule()
                self._publish()
                continue

            if command is _Command.SHUTDOWN:
                self._running = False
                self._deadline = None
                self._next_run_at = None
                self._publish()
                future.set_result(self._status)
                break

            if not future.set_running_or_notify_cancel():
                continue
            try:
                future.set_result(self._handle(command, payload))
            except ReconcilerConfigError as exc:
                logger.info("Integrity reconciler config rejected | error=%s", exc)
                future.set_exception(exc)
            except Exception as exc:
                logger.exception("Integrity reconciler command failed | command=%s", command.value)
                future.set_exception(exc)

        self._drain()
        logger.info("Integrity reconciler thread stopped")

    def _drain(self) -> None:
        while True:
            try:
                _, _, future = self._commands.get_nowait()
            except queue.Empty:
                return
            if future.set_running_or_notify_cancel():
                future.set_exception(RuntimeError("Integrity reconciler has been shut down"))

    def _handle(self, command: _Command, payload: Any) -> Any:
        if command is _Command.START:
            if not self._running:
                self._running = True
                logger.info(
                    "Integrity reconciler started | interval_seconds=%s",
                    self._config.interval_seconds,
                )
                self._cycle()
                self._schedule()
            self._publish()
            return self._status

        if command is _Command.STOP:
            if self._running:
                logger.info("Integrity reconciler stopped")
            self._running = False
            self._deadline = None
            self._next_run_at = None
            self._publish()
            return self._status

        if command is _Command.RECONFIGURE:
            if isinstance(payload, ReconcilerConfig):
                config = payload
            else:
                config = merge_reconciler_config(self._config, **payload)
            self._config = config
            logger.info(
                "Integrity reconciler reconfigured | interval_seconds=%s | auto_resolve=%s | retroactive_age_gap=%s",
                config.interval_seconds,
                sorted(item.value for item in config.auto_resolve_types),
                config.retroactive_age_gap,
            )
            if self._running:
                self._schedule()
            self._publish()
            return self._status

        if command is _Command.RUN_NOW:
            report = self._cycle()
            if self._running:
                self._schedule()
            self._publish()
            return report

        raise ValueError(f"unknown command {command!r}")

    def _schedule(self) -> None:
        if not self._running:
            return
        interval = self._config.interval_seconds
        self._deadline = time.monotonic() + interval
        self._next_run_at = self._clock() + timedelta(seconds=interval)

    def _set_state(self, state: ReconcilerState) -> None:
        self._state = state
        self._publish()

    def _publish(self) -> None:
        self._status = ReconcilerStatus(
            running=self._running,
            state=self._state,
            config=self._config,
            last_report=self._last_report,
            next_run_at=self._next_run_at,
            cycles_completed=self._cycles,
        )

    def _cycle(self) -> ReconcileReport:
        started_at = self._clock()
        try:
            report = self._reconciler.reconcile(self._config, on_state=self._set_state)
        except Exception as exc:
            logger.exception("Integrity cycle failed")
            report = ReconcileReport(
                started_at=started_at,
                finished_at=self._clock(),
                error=f"{type(exc).__name__}: {exc}",
            )

        self._cycles += 1
        self._last_report = report
        self._history.append(report)
        self._reports = tuple(self._history)
        self._set_state(ReconcilerState.IDLE)

        for listener in list(self._listeners):
            try:
                listener(report)
            except Exception:
                logger.exception("Integrity report listener failed")
        return report
