"""HTTP controller layer for slot reservation, release and availability reporting."""

from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field, field_validator, model_validator

from fleetslot.controllers.dependencies import (
    get_allocation_service,
    get_reclamation_service,
    to_http_exception,
)
from fleetslot.domain.errors import AllocationError
from fleetslot.domain.models import (
    AvailabilityView,
    Material,
    PendingEntry,
    ReclamationOutcome,
)
from fleetslot.services.allocation_service import AllocationService
from fleetslot.services.reclamation_service import ReclamationService
from fleetslot.utils.clock import ensure_utc
from fleetslot.utils.logger import get_logger


logger = get_logger(__name__)

router = APIRouter(tags=["allocation"])


class TimeWindowModel(BaseModel):
    start_time: datetime
    end_time: datetime

    @field_validator("start_time", "end_time")
    @classmethod
    def normalize_to_utc(cls, value: datetime) -> datetime:
        # naive timestamps are read as UTC, matching the service layer
        return ensure_utc(value)

    @model_validator(mode="after")
    def validate_window(self) -> "TimeWindowModel":
        if self.start_time >= self.end_time:
            raise ValueError("start_time must be earlier than end_time")
        return self


class ReserveRequest(TimeWindowModel):
    """Input DTO validated before entering service layer."""

    campaign_id: str = Field(min_length=1)
    material_ids: list[str] = Field(min_length=1)

    @field_validator("material_ids")
    @classmethod
    def validate_unique_ids(cls, value: list[str]) -> list[str]:
        if len(set(value)) != len(value):
            raise ValueError("material_ids must not contain duplicates")
        return value


class ReserveByFiltersRequest(TimeWindowModel):
    campaign_id: str = Field(min_length=1)
    material_type: str = Field(min_length=1)
    vehicle_type: str = Field(min_length=1)
    category: str = Field(min_length=1)
    device_count: int = Field(gt=0)


class ReservationResponse(BaseModel):
    material_id: str
    slot_number: int = Field(ge=1)
    start_time: datetime
    end_time: datetime


class ReserveResponse(BaseModel):
    campaign_id: str
    reservations: list[ReservationResponse]


class ReleaseRequest(BaseModel):
    campaign_id: str = Field(min_length=1)
    material_ids: list[str] | None = None


class ReleaseResponse(BaseModel):
    campaign_id: str
    material_ids: list[str]
    status: str


class MaterialIdsRequest(BaseModel):
    material_ids: list[str] = Field(min_length=1)


class AvailabilityResponse(BaseModel):
    material_id: str
    total_slots: int = Field(ge=1)
    occupied_slots: int = Field(ge=0)
    available_slots: int = Field(ge=0)
    next_available_date: datetime
    all_slots_free_date: datetime
    status: str
    can_accept: bool


class ValidateWindowRequest(TimeWindowModel):
    material_ids: list[str] = Field(min_length=1)
    required_count: int | None = Field(default=None, gt=0)


class FeasibilityResponse(BaseModel):
    requested_count: int = Field(ge=0)
    eligible_count: int = Field(ge=0)
    total_available_slots: int = Field(ge=0)
    earliest_next_available: datetime | None
    can_place: bool


class SummaryResponse(BaseModel):
    total_materials: int = Field(ge=0)
    total_slots: int = Field(ge=0)
    occupied_slots: int = Field(ge=0)
    available_slots: int = Field(ge=0)
    utilization_rate: float = Field(ge=0.0, le=100.0)
    materials_by_status: dict[str, int]


class MaterialPayload(BaseModel):
    material_id: str = Field(min_length=1)
    material_type: str = Field(min_length=1)
    vehicle_type: str = Field(min_length=1)
    category: str = Field(min_length=1)


class SelectMaterialsRequest(TimeWindowModel):
    candidates: list[MaterialPayload]


class SelectMaterialsResponse(BaseModel):
    materials: list[MaterialPayload]


class MaterialStatusRequest(BaseModel):
    maintenance: bool


class MaterialSlotsRequest(BaseModel):
    total_slots: int = Field(gt=0)


class PendingRequest(BaseModel):
    campaign_id: str = Field(min_length=1)
    requested_start_time: datetime
    priority: int = Field(default=0, ge=0, le=10)


class PendingResponse(BaseModel):
    campaign_id: str
    requested_start_time: datetime
    priority: int
    queued_at: datetime


class ReclamationOutcomeResponse(BaseModel):
    total_found: int = Field(ge=0)
    cleaned_count: int = Field(ge=0)
    error_count: int = Field(ge=0)
    campaign_ids: list[str]


class ReclamationResponse(BaseModel):
    backlog: ReclamationOutcomeResponse
    unpaid: ReclamationOutcomeResponse
    expired: ReclamationOutcomeResponse
    ran_at: datetime


def _availability_response(view: AvailabilityView) -> AvailabilityResponse:
    return AvailabilityResponse(
        material_id=view.material_id,
        total_slots=view.total_slots,
        occupied_slots=view.occupied_slots,
        available_slots=view.available_slots,
        next_available_date=view.next_available_date,
        all_slots_free_date=view.all_slots_free_date,
        status=view.status.value,
        can_accept=view.can_accept,
    )


def _pending_response(entry: PendingEntry) -> PendingResponse:
    return PendingResponse(
        campaign_id=entry.campaign_id,
        requested_start_time=entry.requested_start_time,
        priority=entry.priority,
        queued_at=entry.queued_at,
    )


def _outcome_response(outcome: ReclamationOutcome) -> ReclamationOutcomeResponse:
    return ReclamationOutcomeResponse(
        total_found=outcome.total_found,
        cleaned_count=outcome.cleaned_count,
        error_count=outcome.error_count,
        campaign_ids=list(outcome.campaign_ids),
    )


def _unexpected(action: str) -> HTTPException:
    logger.exception("Unexpected failure during %s", action)
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail=f"Failed to {action}",
    )


@router.post("/reserve", response_model=ReserveResponse, status_code=status.HTTP_201_CREATED)
def reserve(
    payload: ReserveRequest,
    service: AllocationService = Depends(get_allocation_service),
) -> ReserveResponse:
    """All requested materials hold the campaign afterwards, or none do."""
    try:
        reservations = service.reserve(
            campaign_id=payload.campaign_id,
            material_ids=payload.material_ids,
            start=payload.start_time,
            end=payload.end_time,
        )
    except AllocationError as exc:
        raise to_http_exception(exc) from exc
    except Exception as exc:  # pragma: no cover - unexpected failure
        raise _unexpected("reserve slots") from exc
    return ReserveResponse(
        campaign_id=payload.campaign_id,
        reservations=[
            ReservationResponse(
                material_id=material_id,
                slot_number=reservation.slot_number,
                start_time=reservation.start_time,
                end_time=reservation.end_time,
            )
            for material_id, reservation in zip(payload.material_ids, reservations)
        ],
    )


@router.post(
    "/reserve_by_filters",
    response_model=ReserveResponse,
    status_code=status.HTTP_201_CREATED,
)
def reserve_by_filters(
    payload: ReserveByFiltersRequest,
    service: AllocationService = Depends(get_allocation_service),
) -> ReserveResponse:
    """Pick the fullest eligible materials for the filters and reserve them."""
    try:
        assigned = service.reserve_for_filters(
            campaign_id=payload.campaign_id,
            material_type=payload.material_type,
            vehicle_type=payload.vehicle_type,
            category=payload.category,
            device_count=payload.device_count,
            start=payload.start_time,
            end=payload.end_time,
        )
    except AllocationError as exc:
        raise to_http_exception(exc) from exc
    except Exception as exc:  # pragma: no cover - unexpected failure
        raise _unexpected("reserve slots") from exc
    return ReserveResponse(
        campaign_id=payload.campaign_id,
        reservations=[
            ReservationResponse(
                material_id=material_id,
                slot_number=reservation.slot_number,
                start_time=reservation.start_time,
                end_time=reservation.end_time,
            )
            for material_id, reservation in assigned
        ],
    )


@router.post("/release", response_model=ReleaseResponse)
def release(
    payload: ReleaseRequest,
    service: AllocationService = Depends(get_allocation_service),
) -> ReleaseResponse:
    """Idempotent; omitting material_ids releases the campaign everywhere."""
    try:
        if payload.material_ids is None:
            material_ids = service.release_everywhere(payload.campaign_id)
        else:
            material_ids = list(payload.material_ids)
            service.release(payload.campaign_id, material_ids)
    except AllocationError as exc:
        raise to_http_exception(exc) from exc
    except Exception as exc:  # pragma: no cover - unexpected failure
        raise _unexpected("release slots") from exc
    return ReleaseResponse(
        campaign_id=payload.campaign_id,
        material_ids=material_ids,
        status="RELEASED",
    )


@router.post("/availability", response_model=list[AvailabilityResponse])
def get_availability(
    payload: MaterialIdsRequest,
    service: AllocationService = Depends(get_allocation_service),
) -> list[AvailabilityResponse]:
    try:
        views = service.get_availability(payload.material_ids)
    except AllocationError as exc:
        raise to_http_exception(exc) from exc
    return [_availability_response(view) for view in views]


@router.post("/validate_window", response_model=FeasibilityResponse)
def validate_window(
    payload: ValidateWindowRequest,
    service: AllocationService = Depends(get_allocation_service),
) -> FeasibilityResponse:
    """Non-mutating feasibility check ahead of a reservation attempt."""
    try:
        report = service.validate_window(
            payload.material_ids,
            payload.start_time,
            payload.end_time,
            required_count=payload.required_count,
        )
    except AllocationError as exc:
        raise to_http_exception(exc) from exc
    return FeasibilityResponse(
        requested_count=report.requested_count,
        eligible_count=report.eligible_count,
        total_available_slots=report.total_available_slots,
        earliest_next_available=report.earliest_next_available,
        can_place=report.can_place,
    )


@router.get("/summary", response_model=SummaryResponse)
def summary(
    service: AllocationService = Depends(get_allocation_service),
) -> SummaryResponse:
    result = service.summarize()
    return SummaryResponse(
        total_materials=result.total_materials,
        total_slots=result.total_slots,
        occupied_slots=result.occupied_slots,
        available_slots=result.available_slots,
        utilization_rate=result.utilization_rate,
        materials_by_status={
            "available": result.available_materials,
            "full": result.full_materials,
            "maintenance": result.maintenance_materials,
        },
    )


@router.post("/select_materials", response_model=SelectMaterialsResponse)
def select_materials(
    payload: SelectMaterialsRequest,
    service: AllocationService = Depends(get_allocation_service),
) -> SelectMaterialsResponse:
    candidates = [
        Material(
            material_id=item.material_id,
            material_type=item.material_type,
            vehicle_type=item.vehicle_type,
            category=item.category,
        )
        for item in payload.candidates
    ]
    try:
        ranked = service.select_materials(candidates, payload.start_time, payload.end_time)
    except AllocationError as exc:
        raise to_http_exception(exc) from exc
    return SelectMaterialsResponse(
        materials=[
            MaterialPayload(
                material_id=material.material_id,
                material_type=material.material_type,
                vehicle_type=material.vehicle_type,
                category=material.category,
            )
            for material in ranked
        ]
    )


@router.post("/materials/{material_id}/status", response_model=AvailabilityResponse)
def set_material_status(
    material_id: str,
    payload: MaterialStatusRequest,
    service: AllocationService = Depends(get_allocation_service),
) -> AvailabilityResponse:
    try:
        view = service.set_status(material_id, maintenance=payload.maintenance)
    except AllocationError as exc:
        raise to_http_exception(exc) from exc
    return _availability_response(view)


@router.post("/materials/{material_id}/slots", response_model=AvailabilityResponse)
def set_material_slots(
    material_id: str,
    payload: MaterialSlotsRequest,
    service: AllocationService = Depends(get_allocation_service),
) -> AvailabilityResponse:
    try:
        view = service.set_total_slots(material_id, payload.total_slots)
    except AllocationError as exc:
        raise to_http_exception(exc) from exc
    return _availability_response(view)


@router.post(
    "/materials/{material_id}/pending",
    response_model=list[PendingResponse],
    status_code=status.HTTP_201_CREATED,
)
def enqueue_pending(
    material_id: str,
    payload: PendingRequest,
    service: AllocationService = Depends(get_allocation_service),
) -> list[PendingResponse]:
    try:
        entries = service.enqueue_pending(
            payload.campaign_id,
            material_id,
            payload.requested_start_time,
            priority=payload.priority,
        )
    except AllocationError as exc:
        raise to_http_exception(exc) from exc
    return [_pending_response(entry) for entry in entries]


@router.get("/materials/{material_id}/pending", response_model=list[PendingResponse])
def list_pending(
    material_id: str,
    service: AllocationService = Depends(get_allocation_service),
) -> list[PendingResponse]:
    try:
        entries = service.list_pending(material_id)
    except AllocationError as exc:
        raise to_http_exception(exc) from exc
    return [_pending_response(entry) for entry in entries]


@router.post("/reclaim", response_model=ReclamationResponse)
def reclaim(
    service: ReclamationService = Depends(get_reclamation_service),
) -> ReclamationResponse:
    """Run the reclamation sweeps once, outside the scheduler interval."""
    try:
        report = service.run()
    except Exception as exc:  # pragma: no cover - unexpected failure
        raise _unexpected("run reclamation") from exc
    return ReclamationResponse(
        backlog=_outcome_response(report.backlog),
        unpaid=_outcome_response(report.unpaid),
        expired=_outcome_response(report.expired),
        ran_at=report.ran_at,
    )
