"""Shared FastAPI dependency providers for controller layer."""

from __future__ import annotations

from typing import Optional

from fastapi import Header, HTTPException, Request, status

from housing.services.allocation_service import RoomAllocationService
from housing.services.reconciler_service import ReconcilerSupervisor
from housing.services.settings_service import SettingsService


def _require_state(request: Request, name: str, label: str):
    service = getattr(request.app.state, name, None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"{label} is not initialized",
        )
    return service


def get_allocation_service(request: Request) -> RoomAllocationService:
    return _require_state(request, "allocation_service", "Allocation service")


def get_settings_service(request: Request) -> SettingsService:
    return _require_state(request, "settings_service", "Settings service")


def get_reconciler_supervisor(request: Request) -> ReconcilerSupervisor:
    return _require_state(request, "reconciler_supervisor", "Integrity reconciler")


async def get_actor(x_actor: Optional[str] = Header(default=None)) -> str:
    """Identity of the administrator performing a mutation.

    Authentication happens upstream; the header value is trusted as given.
    """
    if x_actor is None or not x_actor.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="X-Actor header is required for this operation",
        )
    return x_actor.strip()
