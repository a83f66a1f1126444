"""Controller layer for the background integrity reconciler."""

from __future__ import annotations

from concurrent.futures import TimeoutError as FutureTimeoutError
from datetime import datetime
from typing import Any, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field, field_validator, model_validator

from housing.controllers.dependencies import get_actor, get_reconciler_supervisor
from housing.domain.models import Conflict, ConflictType, Severity
from housing.services.reconciler_service import (
    ReconcileReport,
    ReconcilerConfigError,
    ReconcilerState,
    ReconcilerStatus,
    ReconcilerSupervisor,
)
from housing.utils.logger import get_logger


logger = get_logger(__name__)

router = APIRouter(prefix="/integrity", tags=["integrity"])

COMMAND_TIMEOUT_SECONDS = 30.0


class ConflictResponse(BaseModel):
    conflict_id: str
    conflict_type: ConflictType
    severity: Severity
    message: str
    room_id: Optional[int] = None
    registrant_ids: list[int]
    allocation_ids: list[int]
    details: dict[str, Any]


class ReconcileReportResponse(BaseModel):
    started_at: datetime
    finished_at: datetime
    conflicts: list[ConflictResponse]
    resolved: list[str]
    reported: list[str]
    error: Optional[str] = None


class ReconcilerConfigResponse(BaseModel):
    interval_seconds: float = Field(gt=0.0)
    auto_resolve_types: list[ConflictType]
    retroactive_age_gap: bool


class ReconcilerStatusResponse(BaseModel):
    running: bool
    state: ReconcilerState
    config: ReconcilerConfigResponse
    last_report: Optional[ReconcileReportResponse] = None
    next_run_at: Optional[datetime] = None
    cycles_completed: int = Field(ge=0)


class ReconcilerConfigRequest(BaseModel):
    interval_seconds: Optional[float] = Field(default=None, gt=0.0)
    auto_resolve_types: Optional[list[str]] = None
    retroactive_age_gap: Optional[bool] = None

    @field_validator("auto_resolve_types")
    @classmethod
    def validate_auto_resolve_types(cls, value: Optional[list[str]]) -> Optional[list[str]]:
        if value is None:
            return None
        return [item.strip() for item in value if item.strip()]


class IntegrityActionRequest(BaseModel):
    action: Literal["start", "stop", "config", "run"]
    config: Optional[ReconcilerConfigRequest] = None

    @model_validator(mode="after")
    def validate_config_present(self) -> "IntegrityActionRequest":
        if self.action == "config" and self.config is None:
            raise ValueError("config is required for the config action")
        return self


class IntegrityActionResponse(BaseModel):
    success: bool
    message: str
    status: ReconcilerStatusResponse
    report: Optional[ReconcileReportResponse] = None


def _conflict_response(conflict: Conflict) -> ConflictResponse:
    return ConflictResponse(
        conflict_id=conflict.conflict_id,
        conflict_type=conflict.conflict_type,
        severity=conflict.severity,
        message=conflict.message,
        room_id=conflict.room_id,
        registrant_ids=list(conflict.registrant_ids),
        allocation_ids=list(conflict.allocation_ids),
        details=conflict.details,
    )


def _report_response(report: ReconcileReport) -> ReconcileReportResponse:
    return ReconcileReportResponse(
        started_at=report.started_at,
        finished_at=report.finished_at,
        conflicts=[_conflict_response(item) for item in report.conflicts],
        resolved=list(report.resolved),
        reported=list(report.reported),
        error=report.error,
    )


def _status_response(current: ReconcilerStatus) -> ReconcilerStatusResponse:
    return ReconcilerStatusResponse(
        running=current.running,
        state=current.state,
        config=ReconcilerConfigResponse(
            interval_seconds=current.config.interval_seconds,
            auto_resolve_types=sorted(current.config.auto_resolve_types, key=lambda item: item.value),
            retroactive_age_gap=current.config.retroactive_age_gap,
        ),
        last_report=(
            _report_response(current.last_report) if current.last_report is not None else None
        ),
        next_run_at=current.next_run_at,
        cycles_completed=current.cycles_completed,
    )


@router.get(
    "/status",
    response_model=ReconcilerStatusResponse,
    status_code=status.HTTP_200_OK,
)
async def get_status(
    supervisor: ReconcilerSupervisor = Depends(get_reconciler_supervisor),
) -> ReconcilerStatusResponse:
    return _status_response(supervisor.status())


@router.get(
    "/reports",
    response_model=list[ReconcileReportResponse],
    status_code=status.HTTP_200_OK,
)
async def list_reports(
    limit: int = Query(default=10, ge=1, le=100),
    supervisor: ReconcilerSupervisor = Depends(get_reconciler_supervisor),
) -> list[ReconcileReportResponse]:
    """Most recent cycle reports, newest first."""
    reports = list(supervisor.reports())[-limit:]
    return [_report_response(item) for item in reversed(reports)]


@router.post(
    "",
    response_model=IntegrityActionResponse,
    status_code=status.HTTP_200_OK,
)
def control_reconciler(
    payload: IntegrityActionRequest,
    actor: str = Depends(get_actor),
    supervisor: ReconcilerSupervisor = Depends(get_reconciler_supervisor),
) -> IntegrityActionResponse:
    """Start, stop, reconfigure or trigger the reconciler; waits for the command to be applied."""
    report = None
    try:
        if payload.action == "start":
            supervisor.start().result(timeout=COMMAND_TIMEOUT_SECONDS)
            message = "Service started"
        elif payload.action == "stop":
            supervisor.stop().result(timeout=COMMAND_TIMEOUT_SECONDS)
            message = "Service stopped"
        elif payload.action == "config":
            supervisor.update_config(
                interval_seconds=payload.config.interval_seconds,
                auto_resolve_types=payload.config.auto_resolve_types,
                retroactive_age_gap=payload.config.retroactive_age_gap,
            ).result(timeout=COMMAND_TIMEOUT_SECONDS)
            message = "Config updated"
        else:
            report = supervisor.run_now().result(timeout=COMMAND_TIMEOUT_SECONDS)
            message = "Integrity check completed"
    except ReconcilerConfigError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(exc),
        ) from exc
    except FutureTimeoutError as exc:
        raise HTTPException(
            status_code=status.HTTP_504_GATEWAY_TIMEOUT,
            detail=f"Integrity reconciler did not apply '{payload.action}' in time",
        ) from exc
    except Exception as exc:  # pragma: no cover
        logger.exception("Integrity reconciler command failed")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to process request",
        ) from exc

    logger.info("Integrity reconciler command applied | action=%s | actor=%s", payload.action, actor)
    return IntegrityActionResponse(
        success=True,
        message=message,
        status=_status_response(supervisor.status()),
        report=_report_response(report) if report is not None else None,
    )
