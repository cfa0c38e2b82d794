"""Domain models for material slot availability and campaign reservations."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional


class SlotStatus(str, Enum):
    AVAILABLE = "AVAILABLE"
    FULL = "FULL"
    MAINTENANCE = "MAINTENANCE"


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    FAILED = "FAILED"


class CampaignStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    RUNNING = "RUNNING"
    REJECTED = "REJECTED"
    ENDED = "ENDED"


@dataclass(frozen=True)
class Material:
    material_id: str
    material_type: str
    vehicle_type: str
    category: str


@dataclass(frozen=True)
class Reservation:
    campaign_id: str
    slot_number: int
    start_time: datetime
    end_time: datetime


@dataclass(frozen=True)
class PendingEntry:
    campaign_id: str
    requested_start_time: datetime
    priority: int
    queued_at: datetime


@dataclass(frozen=True)
class AvailabilityRecord:
    """Slot ledger for one material.

    Counts and dates are derived from ``reservations`` so they cannot drift
    from the reservation set held in memory.
    """

    material_id: str
    total_slots: int
    reservations: tuple[Reservation, ...]
    status: SlotStatus
    version: int
    updated_at: datetime
    pending: tuple[PendingEntry, ...] = ()

    @property
    def occupied_slots(self) -> int:
        return len(self.reservations)

    @property
    def available_slots(self) -> int:
        return max(0, self.total_slots - self.occupied_slots)

    @property
    def next_available_date(self) -> datetime:
        if not self.reservations:
            return self.updated_at
        return min(reservation.end_time for reservation in self.reservations)

    @property
    def all_slots_free_date(self) -> datetime:
        if not self.reservations:
            return self.updated_at
        return max(reservation.end_time for reservation in self.reservations)

    def reservation_for(self, campaign_id: str) -> Optional[Reservation]:
        for reservation in self.reservations:
            if reservation.campaign_id == campaign_id:
                return reservation
        return None


@dataclass(frozen=True)
class Campaign:
    campaign_id: str
    start_time: datetime
    end_time: datetime
    payment_status: PaymentStatus
    status: CampaignStatus
    material_ids: tuple[str, ...]
    created_at: datetime
    reason_for_reject: Optional[str] = None


@dataclass(frozen=True)
class AvailabilityView:
    material_id: str
    total_slots: int
    occupied_slots: int
    available_slots: int
    next_available_date: datetime
    all_slots_free_date: datetime
    status: SlotStatus
    can_accept: bool

    @classmethod
    def from_record(cls, record: AvailabilityRecord) -> "AvailabilityView":
        return cls(
            material_id=record.material_id,
            total_slots=record.total_slots,
            occupied_slots=record.occupied_slots,
            available_slots=record.available_slots,
            next_available_date=record.next_available_date,
            all_slots_free_date=record.all_slots_free_date,
            status=record.status,
            can_accept=(
                record.available_slots > 0 and record.status == SlotStatus.AVAILABLE
            ),
        )


@dataclass(frozen=True)
class FeasibilityReport:
    requested_count: int
    eligible_count: int
    total_available_slots: int
    earliest_next_available: Optional[datetime]

    @property
    def can_place(self) -> bool:
        return self.requested_count > 0 and self.eligible_count >= self.requested_count


@dataclass(frozen=True)
class AvailabilitySummary:
    total_materials: int
    total_slots: int
    occupied_slots: int
    available_slots: int
    utilization_rate: float
    available_materials: int
    full_materials: int
    maintenance_materials: int


@dataclass(frozen=True)
class ReclamationOutcome:
    sweep: str
    total_found: int
    cleaned_count: int
    error_count: int
    campaign_ids: tuple[str, ...]


@dataclass(frozen=True)
class ReclamationReport:
    backlog: ReclamationOutcome
    unpaid: ReclamationOutcome
    expired: ReclamationOutcome
    ran_at: datetime
