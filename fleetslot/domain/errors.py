"""Error taxonomy raised by the allocation engine."""

from __future__ import annotations

from typing import Optional


class AllocationError(Exception):
    """Base failure for slot allocation operations."""

    def __init__(
        self,
        message: str,
        *,
        material_id: Optional[str] = None,
        campaign_id: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.material_id = material_id
        self.campaign_id = campaign_id


class AllocationValidationError(AllocationError):
    """Raised when request inputs are malformed (empty pool, inverted window)."""


class NotFoundError(AllocationError):
    """Raised for unknown material or campaign identities."""


class CapacityExceededError(AllocationError):
    """Raised when no free slot remains on a required material."""


class TimeConflictError(AllocationError):
    """Raised when the requested window overlaps an existing reservation."""


class MaintenanceError(AllocationError):
    """Raised when a material is not accepting reservations."""


class ConcurrentModificationError(AllocationError):
    """Raised when optimistic-concurrency retries are exhausted."""


class DuplicateReservationError(AllocationError):
    """Raised when the campaign already holds a slot on the material."""
