"""Shared FastAPI dependency providers for controller layer."""

from __future__ import annotations

from fastapi import HTTPException, Request, status

from fleetslot.domain.errors import (
    AllocationError,
    AllocationValidationError,
    CapacityExceededError,
    ConcurrentModificationError,
    DuplicateReservationError,
    MaintenanceError,
    NotFoundError,
    TimeConflictError,
)
from fleetslot.repository.data_repository import DataRepository
from fleetslot.services.allocation_service import AllocationService
from fleetslot.services.reclamation_service import ReclamationService


def get_repository(request: Request) -> DataRepository:
    repository = getattr(request.app.state, "repository", None)
    if repository is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Repository is not initialized",
        )
    return repository


def get_allocation_service(request: Request) -> AllocationService:
    service = getattr(request.app.state, "allocation_service", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Allocation service is not initialized",
        )
    return service


def get_reclamation_service(request: Request) -> ReclamationService:
    service = getattr(request.app.state, "reclamation_service", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Reclamation service is not initialized",
        )
    return service


def to_http_exception(exc: AllocationError) -> HTTPException:
    """Map the allocation error taxonomy onto HTTP status codes."""
    if isinstance(exc, AllocationValidationError):
        status_code = status.HTTP_400_BAD_REQUEST
    elif isinstance(exc, NotFoundError):
        status_code = status.HTTP_404_NOT_FOUND
    elif isinstance(
        exc,
        (CapacityExceededError, TimeConflictError, MaintenanceError, DuplicateReservationError),
    ):
        status_code = status.HTTP_409_CONFLICT
    elif isinstance(exc, ConcurrentModificationError):
        status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    else:
        status_code = status.HTTP_400_BAD_REQUEST
    return HTTPException(status_code=status_code, detail=str(exc))
