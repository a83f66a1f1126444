"""HTTP controller layer for room allocation and the age-gap policy."""

from __future__ import annotations

from dataclasses import asdict
from datetime import date, datetime
from typing import Any, NoReturn, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from pydantic import BaseModel, Field, field_validator, model_validator

from housing.controllers.dependencies import (
    get_actor,
    get_allocation_service,
    get_settings_service,
)
from housing.domain.errors import (
    AllocationError,
    AllocationErrorKind,
    AllocationStorageError,
)
from housing.domain.models import Allocation, Gender, Registrant, Room
from housing.services.allocation_service import RoomAllocationService, RoomCatalogError
from housing.services.settings_service import SettingsService
from housing.utils.config import get_settings
from housing.utils.logger import get_logger


logger = get_logger(__name__)
settings = get_settings()

router = APIRouter(prefix="/accommodations", tags=["accommodations"])


_ERROR_STATUS = {
    AllocationErrorKind.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    AllocationErrorKind.NOT_ALLOCATED: status.HTTP_404_NOT_FOUND,
    AllocationErrorKind.ALREADY_ALLOCATED: status.HTTP_409_CONFLICT,
    AllocationErrorKind.GENDER_MISMATCH: status.HTTP_409_CONFLICT,
    AllocationErrorKind.CAPACITY_EXCEEDED: status.HTTP_409_CONFLICT,
    AllocationErrorKind.AGE_GAP_VIOLATION: status.HTTP_409_CONFLICT,
    AllocationErrorKind.ROOM_INACTIVE: status.HTTP_409_CONFLICT,
    AllocationErrorKind.POLICY_OUT_OF_RANGE: status.HTTP_400_BAD_REQUEST,
}


class RegistrantResponse(BaseModel):
    registrant_id: int
    full_name: str
    gender: Gender
    date_of_birth: date
    phone_number: str
    email_address: str


class RoomResponse(BaseModel):
    room_id: int
    name: str
    gender: Gender
    capacity: int = Field(gt=0)
    is_active: bool
    description: str


class RoomOccupancyResponse(BaseModel):
    room: RoomResponse
    occupied: int = Field(ge=0)
    available: int = Field(ge=0)


class OccupancyStatsResponse(BaseModel):
    total_registrants: int = Field(ge=0)
    allocated_registrants: int = Field(ge=0)
    unallocated_registrants: int = Field(ge=0)
    allocation_rate: int = Field(ge=0, le=100)
    active_rooms: int = Field(ge=0)
    total_capacity: int = Field(ge=0)
    occupied_spaces: int = Field(ge=0)
    available_spaces: int = Field(ge=0)


class AccommodationsResponse(BaseModel):
    stats: OccupancyStatsResponse
    rooms: list[RoomOccupancyResponse]
    unallocated_by_gender: dict[str, list[RegistrantResponse]]


class AllocateRequest(BaseModel):
    registrant_id: int = Field(gt=0)
    room_id: int = Field(gt=0)


class AllocationResponse(BaseModel):
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


class AllocationDetailResponse(BaseModel):
    allocation: AllocationResponse
    room: RoomResponse
    registrant: RegistrantResponse


class RegistrantSearchResponse(BaseModel):
    registrant: RegistrantResponse
    room_name: Optional[str] = None


class OccupantResponse(BaseModel):
    allocation_id: int
    allocated_at: datetime
    age: int = Field(ge=0)
    registrant: RegistrantResponse


class CreateRoomRequest(BaseModel):
    name: str = Field(min_length=1, max_length=120)
    gender: Gender
    capacity: int = Field(gt=0)
    description: str = ""

    @field_validator("name")
    @classmethod
    def validate_name(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("name must be non-empty")
        return value.strip()


class UpdateRoomRequest(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=120)
    gender: Optional[Gender] = None
    capacity: Optional[int] = Field(default=None, gt=0)
    is_active: Optional[bool] = None
    description: Optional[str] = None

    @model_validator(mode="after")
    def validate_has_changes(self) -> "UpdateRoomRequest":
        if all(
            value is None
            for value in (self.name, self.gender, self.capacity, self.is_active, self.description)
        ):
            raise ValueError("at least one room field must be provided")
        return self


class AgeGapConfigRequest(BaseModel):
    age_gap_years: int = Field(strict=True)


class AgeGapConfigResponse(BaseModel):
    age_gap_years: int
    minimum: int
    maximum: int


def _registrant_response(registrant: Registrant) -> RegistrantResponse:
    return RegistrantResponse(
        registrant_id=registrant.registrant_id,
        full_name=registrant.full_name,
        gender=registrant.gender,
        date_of_birth=registrant.date_of_birth,
        phone_number=registrant.phone_number,
        email_address=registrant.email_address,
    )


def _room_response(room: Room) -> RoomResponse:
    return RoomResponse(
        room_id=room.room_id,
        name=room.name,
        gender=room.gender,
        capacity=room.capacity,
        is_active=room.is_active,
        description=room.description,
    )


def _allocation_response(allocation: Allocation) -> AllocationResponse:
    return AllocationResponse(
        allocation_id=allocation.allocation_id,
        registrant_id=allocation.registrant_id,
        room_id=allocation.room_id,
        allocated_by=allocation.allocated_by,
        is_active=allocation.is_active,
        allocated_at=allocation.allocated_at,
        age_gap_tolerance=allocation.age_gap_tolerance,
        deallocated_at=allocation.deallocated_at,
        deallocated_by=allocation.deallocated_by,
        deallocation_reason=allocation.deallocation_reason,
    )


def _raise_for_error(error: AllocationError) -> NoReturn:
    detail: dict[str, Any] = {
        "kind": error.kind.value,
        "message": error.message,
        "details": error.details,
    }
    raise HTTPException(status_code=_ERROR_STATUS[error.kind], detail=detail)


def _storage_failure(message: str) -> HTTPException:
    logger.exception(message)
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail=message,
    )


@router.get(
    "",
    response_model=AccommodationsResponse,
    status_code=status.HTTP_200_OK,
)
def get_accommodations(
    gender: Optional[Gender] = Query(default=None),
    service: RoomAllocationService = Depends(get_allocation_service),
) -> AccommodationsResponse:
    """Occupancy totals, per-room occupancy and unallocated registrants."""
    try:
        snapshot = service.occupancy_statistics(gender=gender)
    except Exception as exc:  # pragma: no cover
        raise _storage_failure("Failed to load accommodations") from exc
    return AccommodationsResponse(
        stats=OccupancyStatsResponse(**asdict(snapshot.stats)),
        rooms=[
            RoomOccupancyResponse(
                room=_room_response(item.room),
                occupied=item.occupied,
                available=item.available,
            )
            for item in snapshot.rooms
        ],
        unallocated_by_gender={
            key: [_registrant_response(registrant) for registrant in registrants]
            for key, registrants in snapshot.unallocated_by_gender.items()
        },
    )


@router.post(
    "/allocate",
    response_model=AllocationResponse,
    status_code=status.HTTP_201_CREATED,
)
def allocate_room(
    payload: AllocateRequest,
    actor: str = Depends(get_actor),
    service: RoomAllocationService = Depends(get_allocation_service),
) -> AllocationResponse:
    try:
        outcome = service.allocate(payload.registrant_id, payload.room_id, actor)
    except AllocationStorageError as exc:
        raise _storage_failure("Allocation could not be stored") from exc
    except Exception as exc:  # pragma: no cover
        raise _storage_failure("Failed to allocate room") from exc
    if not outcome.ok:
        _raise_for_error(outcome.error)
    return _allocation_response(outcome.allocation)


@router.get(
    "/allocation/{registrant_id}",
    response_model=AllocationDetailResponse,
    status_code=status.HTTP_200_OK,
)
def get_allocation(
    registrant_id: int,
    service: RoomAllocationService = Depends(get_allocation_service),
) -> AllocationDetailResponse:
    try:
        detail = service.get_allocation(registrant_id)
    except Exception as exc:  # pragma: no cover
        raise _storage_failure("Failed to load allocation") from exc
    if detail is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Registrant has no active allocation",
        )
    return AllocationDetailResponse(
        allocation=_allocation_response(detail.allocation),
        room=_room_response(detail.room),
        registrant=_registrant_response(detail.registrant),
    )


@router.get(
    "/allocation/{registrant_id}/history",
    response_model=list[AllocationResponse],
    status_code=status.HTTP_200_OK,
)
def get_allocation_history(
    registrant_id: int,
    service: RoomAllocationService = Depends(get_allocation_service),
) -> list[AllocationResponse]:
    try:
        history = service.list_allocation_history(registrant_id)
    except Exception as exc:  # pragma: no cover
        raise _storage_failure("Failed to load allocation history") from exc
    return [_allocation_response(item) for item in history]


@router.delete(
    "/allocation/{registrant_id}",
    response_model=AllocationResponse,
    status_code=status.HTTP_200_OK,
)
def deallocate_room(
    registrant_id: int,
    reason: Optional[str] = Query(default=None, max_length=500),
    actor: str = Depends(get_actor),
    service: RoomAllocationService = Depends(get_allocation_service),
) -> AllocationResponse:
    try:
        outcome = service.deallocate(registrant_id, actor, reason=reason)
    except AllocationStorageError as exc:
        raise _storage_failure("Deallocation could not be stored") from exc
    except Exception as exc:  # pragma: no cover
        raise _storage_failure("Failed to deallocate room") from exc
    if not outcome.ok:
        _raise_for_error(outcome.error)
    return _allocation_response(outcome.allocation)


@router.get(
    "/search",
    response_model=list[RegistrantSearchResponse],
    status_code=status.HTTP_200_OK,
)
def search_registrants(
    q: Optional[str] = Query(default=None, max_length=200),
    limit: int = Query(default=settings.search_default_limit),
    service: RoomAllocationService = Depends(get_allocation_service),
) -> list[RegistrantSearchResponse]:
    """Case-insensitive match on name, phone or email across all registrants."""
    try:
        results = service.search_registrants(query=q, limit=limit)
    except Exception as exc:  # pragma: no cover
        raise _storage_failure("Failed to search registrants") from exc
    return [
        RegistrantSearchResponse(
            registrant=_registrant_response(item.registrant),
            room_name=item.room_name,
        )
        for item in results
    ]


@router.get(
    "/unallocated",
    response_model=list[RegistrantResponse],
    status_code=status.HTTP_200_OK,
)
def search_unallocated(
    q: Optional[str] = Query(default=None, max_length=200),
    gender: Optional[Gender] = Query(default=None),
    limit: int = Query(default=settings.search_default_limit),
    service: RoomAllocationService = Depends(get_allocation_service),
) -> list[RegistrantResponse]:
    try:
        registrants = service.search_unallocated(query=q, gender=gender, limit=limit)
    except Exception as exc:  # pragma: no cover
        raise _storage_failure("Failed to search unallocated registrants") from exc
    return [_registrant_response(item) for item in registrants]


@router.get("/export", status_code=status.HTTP_200_OK)
def export_allocations(
    q: Optional[str] = Query(default=None, max_length=200),
    service: RoomAllocationService = Depends(get_allocation_service),
) -> Response:
    try:
        content = service.export_allocations_csv(query=q)
    except Exception as exc:  # pragma: no cover
        raise _storage_failure("Failed to export allocations") from exc
    return Response(
        content=content,
        media_type="text/csv",
        headers={"Content-Disposition": 'attachment; filename="accommodations.csv"'},
    )


@router.get(
    "/rooms/{room_id}/occupants",
    response_model=list[OccupantResponse],
    status_code=status.HTTP_200_OK,
)
def list_room_occupants(
    room_id: int,
    service: RoomAllocationService = Depends(get_allocation_service),
) -> list[OccupantResponse]:
    try:
        room = service.get_room(room_id)
        occupants = service.list_room_occupants(room_id) if room is not None else []
    except Exception as exc:  # pragma: no cover
        raise _storage_failure("Failed to load room occupants") from exc
    if room is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Room not found")
    return [
        OccupantResponse(
            allocation_id=occupant.allocation.allocation_id,
            allocated_at=occupant.allocation.allocated_at,
            age=age,
            registrant=_registrant_response(occupant.registrant),
        )
        for occupant, age in occupants
    ]


@router.post(
    "/rooms",
    response_model=RoomResponse,
    status_code=status.HTTP_201_CREATED,
)
def create_room(
    payload: CreateRoomRequest,
    actor: str = Depends(get_actor),
    service: RoomAllocationService = Depends(get_allocation_service),
) -> RoomResponse:
    try:
        room = service.create_room(
            payload.name,
            payload.gender,
            payload.capacity,
            payload.description,
        )
    except RoomCatalogError as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=str(exc),
        ) from exc
    except Exception as exc:  # pragma: no cover
        raise _storage_failure("Failed to create room") from exc
    logger.info("Room created via API | room_id=%s | actor=%s", room.room_id, actor)
    return _room_response(room)


@router.patch(
    "/rooms/{room_id}",
    response_model=RoomResponse,
    status_code=status.HTTP_200_OK,
)
def update_room(
    room_id: int,
    payload: UpdateRoomRequest,
    actor: str = Depends(get_actor),
    service: RoomAllocationService = Depends(get_allocation_service),
) -> RoomResponse:
    """Edit a room. Lowering capacity below occupancy is accepted and reported later."""
    try:
        room = service.update_room(
            room_id,
            name=payload.name,
            gender=payload.gender,
            capacity=payload.capacity,
            is_active=payload.is_active,
            description=payload.description,
        )
    except RoomCatalogError as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=str(exc),
        ) from exc
    except Exception as exc:  # pragma: no cover
        raise _storage_failure("Failed to update room") from exc
    if room is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Room not found")
    logger.info("Room updated via API | room_id=%s | actor=%s", room_id, actor)
    return _room_response(room)


@router.get(
    "/age-gap-config",
    response_model=AgeGapConfigResponse,
    status_code=status.HTTP_200_OK,
)
def get_age_gap_config(
    settings_service: SettingsService = Depends(get_settings_service),
) -> AgeGapConfigResponse:
    definition = settings_service.age_gap_tolerance
    try:
        value = settings_service.get_age_gap_tolerance()
    except Exception as exc:  # pragma: no cover
        raise _storage_failure("Failed to load age gap configuration") from exc
    return AgeGapConfigResponse(
        age_gap_years=value,
        minimum=definition.minimum,
        maximum=definition.maximum,
    )


@router.put(
    "/age-gap-config",
    response_model=AgeGapConfigResponse,
    status_code=status.HTTP_200_OK,
)
def update_age_gap_config(
    payload: AgeGapConfigRequest,
    actor: str = Depends(get_actor),
    settings_service: SettingsService = Depends(get_settings_service),
) -> AgeGapConfigResponse:
    definition = settings_service.age_gap_tolerance
    try:
        outcome = settings_service.set_age_gap_tolerance(payload.age_gap_years, actor)
    except Exception as exc:  # pragma: no cover
        raise _storage_failure("Failed to update age gap configuration") from exc
    if not outcome.ok:
        _raise_for_error(outcome.error)
    return AgeGapConfigResponse(
        age_gap_years=outcome.value,
        minimum=definition.minimum,
        maximum=definition.maximum,
    )
