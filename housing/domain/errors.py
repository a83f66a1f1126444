"""Typed allocation failures shared by the ledger, services and controllers."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from housing.domain.models import Allocation


class AllocationErrorKind(str, Enum):
    NOT_FOUND = "not-found"
    ALREADY_ALLOCATED = "already-allocated"
    GENDER_MISMATCH = "gender-mismatch"
    CAPACITY_EXCEEDED = "capacity-exceeded"
    AGE_GAP_VIOLATION = "age-gap-violation"
    ROOM_INACTIVE = "room-inactive"
    POLICY_OUT_OF_RANGE = "policy-out-of-range"
    NOT_ALLOCATED = "not-allocated"


@dataclass(frozen=True)
class AllocationError:
    """Expected, caller-recoverable rejection of an allocation operation."""

    kind: AllocationErrorKind
    message: str
    details: dict[str, Any] = field(default_factory=dict)


class AllocationRejected(Exception):
    """Aborts a ledger transaction; converted back into an outcome by services."""

    def __init__(self, error: AllocationError) -> None:
        super().__init__(error.message)
        self.error = error


class AllocationStorageError(Exception):
    """Raised for storage failures that no allocation rule anticipates."""


@dataclass(frozen=True)
class AllocationOutcome:
    allocation: Optional[Allocation] = None
    error: Optional[AllocationError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, allocation: Allocation) -> "AllocationOutcome":
        return cls(allocation=allocation)

    @classmethod
    def failure(cls, error: AllocationError) -> "AllocationOutcome":
        return cls(error=error)


@dataclass(frozen=True)
class SettingUpdateOutcome:
    value: Any = None
    error: Optional[AllocationError] = None

    @property
    def ok(self) -> bool:
        return self.error is None
