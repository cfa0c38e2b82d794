"""Pure slot-conflict checks and record transitions.

Nothing in this module touches storage. Every function takes an
``AvailabilityRecord`` and either answers a question about it or returns a
new record, which keeps the scheduling rules testable without a database.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime
from enum import Enum
from typing import Optional

from fleetslot.domain.models import AvailabilityRecord, PendingEntry, Reservation, SlotStatus


class RejectionReason(str, Enum):
    MAINTENANCE = "MAINTENANCE"
    NO_CAPACITY = "NO_CAPACITY"
    TIME_CONFLICT = "TIME_CONFLICT"


def windows_overlap(
    a_start: datetime,
    a_end: datetime,
    b_start: datetime,
    b_end: datetime,
) -> bool:
    """Half-open overlap test; touching boundaries do not overlap."""
    return a_start < b_end and b_start < a_end


def rejection_reason(
    record: AvailabilityRecord,
    start: datetime,
    end: datetime,
) -> Optional[RejectionReason]:
    if record.status == SlotStatus.MAINTENANCE:
        return RejectionReason.MAINTENANCE
    if record.status != SlotStatus.AVAILABLE or record.available_slots <= 0:
        return RejectionReason.NO_CAPACITY
    for reservation in record.reservations:
        if windows_overlap(start, end, reservation.start_time, reservation.end_time):
            return RejectionReason.TIME_CONFLICT
    return None


def can_accept(record: AvailabilityRecord, start: datetime, end: datetime) -> bool:
    """Return whether ``[start, end)`` fits on the record. Requires start < end."""
    return rejection_reason(record, start, end) is None


def next_slot_number(record: AvailabilityRecord) -> int:
    """Lowest slot number in 1..total_slots not held by a reservation."""
    used = {reservation.slot_number for reservation in record.reservations}
    for slot_number in range(1, record.total_slots + 1):
        if slot_number not in used:
            return slot_number
    raise ValueError(f"material {record.material_id} has no free slot number")


def verify_invariants(record: AvailabilityRecord) -> None:
    """Raise ``ValueError`` if the record breaks a slot-ledger invariant."""
    if record.occupied_slots > record.total_slots:
        raise ValueError(
            f"material {record.material_id} holds {record.occupied_slots} reservations "
            f"for {record.total_slots} slots"
        )
    slot_numbers = [reservation.slot_number for reservation in record.reservations]
    if len(set(slot_numbers)) != len(slot_numbers):
        raise ValueError(f"material {record.material_id} has duplicate slot numbers")
    if any(not 1 <= number <= record.total_slots for number in slot_numbers):
        raise ValueError(f"material {record.material_id} has a slot number out of range")
    campaign_ids = [reservation.campaign_id for reservation in record.reservations]
    if len(set(campaign_ids)) != len(campaign_ids):
        raise ValueError(f"material {record.material_id} holds a campaign twice")
    ordered = sorted(record.reservations, key=lambda item: item.start_time)
    for previous, current in zip(ordered, ordered[1:]):
        if windows_overlap(
            previous.start_time,
            previous.end_time,
            current.start_time,
            current.end_time,
        ):
            raise ValueError(
                f"material {record.material_id} has overlapping reservations "
                f"{previous.campaign_id} and {current.campaign_id}"
            )


def derive_status(current: SlotStatus, total_slots: int, occupied_slots: int) -> SlotStatus:
    if current == SlotStatus.MAINTENANCE:
        return SlotStatus.MAINTENANCE
    if occupied_slots >= total_slots:
        return SlotStatus.FULL
    return SlotStatus.AVAILABLE


def _rebuild(
    record: AvailabilityRecord,
    *,
    reservations: tuple[Reservation, ...],
    now: datetime,
    status: Optional[SlotStatus] = None,
    total_slots: Optional[int] = None,
    pending: Optional[tuple[PendingEntry, ...]] = None,
) -> AvailabilityRecord:
    resolved_total = record.total_slots if total_slots is None else total_slots
    resolved_status = record.status if status is None else status
    return replace(
        record,
        total_slots=resolved_total,
        reservations=reservations,
        pending=record.pending if pending is None else pending,
        status=derive_status(resolved_status, resolved_total, len(reservations)),
        updated_at=now,
    )


def with_reservation(
    record: AvailabilityRecord,
    *,
    campaign_id: str,
    start: datetime,
    end: datetime,
    now: datetime,
) -> AvailabilityRecord:
    """Append a reservation on the lowest free slot.

    Callers must have checked ``can_accept`` against this same record.
    Any pending entry for the campaign is dropped since it is now served.
    """
    reservation = Reservation(
        campaign_id=campaign_id,
        slot_number=next_slot_number(record),
        start_time=start,
        end_time=end,
    )
    return _rebuild(
        record,
        reservations=record.reservations + (reservation,),
        pending=tuple(
            entry for entry in record.pending if entry.campaign_id != campaign_id
        ),
        now=now,
    )


def without_reservation(
    record: AvailabilityRecord,
    *,
    campaign_id: str,
    now: datetime,
) -> Optional[AvailabilityRecord]:
    """Drop the campaign's reservation; ``None`` means nothing to remove."""
    remaining = tuple(
        reservation
        for reservation in record.reservations
        if reservation.campaign_id != campaign_id
    )
    if len(remaining) == len(record.reservations):
        return None
    return _rebuild(record, reservations=remaining, now=now)


def with_pending(
    record: AvailabilityRecord,
    *,
    entry: PendingEntry,
    now: datetime,
) -> Optional[AvailabilityRecord]:
    if any(item.campaign_id == entry.campaign_id for item in record.pending):
        return None
    ordered = sorted(
        record.pending + (entry,),
        key=lambda item: (-item.priority, item.queued_at, item.campaign_id),
    )
    return _rebuild(
        record,
        reservations=record.reservations,
        pending=tuple(ordered),
        now=now,
    )


def with_status(
    record: AvailabilityRecord,
    *,
    maintenance: bool,
    now: datetime,
) -> Optional[AvailabilityRecord]:
    if maintenance == (record.status == SlotStatus.MAINTENANCE):
        return None
    # Leaving maintenance re-derives AVAILABLE/FULL from the reservation count.
    target = SlotStatus.MAINTENANCE if maintenance else SlotStatus.AVAILABLE
    return _rebuild(record, reservations=record.reservations, status=target, now=now)


def with_total_slots(
    record: AvailabilityRecord,
    *,
    total_slots: int,
    now: datetime,
) -> Optional[AvailabilityRecord]:
    """Resize capacity; ``None`` when unchanged.

    Raises ``ValueError`` if a current reservation would fall outside the new
    slot range.
    """
    if total_slots == record.total_slots:
        return None
    highest_used = max(
        (reservation.slot_number for reservation in record.reservations),
        default=0,
    )
    if total_slots < highest_used:
        raise ValueError(
            f"total_slots={total_slots} is below slot {highest_used} held on "
            f"material {record.material_id}"
        )
    return _rebuild(
        record,
        reservations=record.reservations,
        total_slots=total_slots,
        now=now,
    )
