"""Multi-material slot reservation with compensation, release and reporting."""

from __future__ import annotations

from datetime import datetime
from typing import Callable, Optional, Sequence

from fleetslot.domain.conflicts import (
    RejectionReason,
    can_accept,
    rejection_reason,
    with_pending,
    with_reservation,
    with_status,
    with_total_slots,
    without_reservation,
)
from fleetslot.domain.constraints import validate_total_slots
from fleetslot.domain.errors import (
    AllocationError,
    AllocationValidationError,
    CapacityExceededError,
    DuplicateReservationError,
    MaintenanceError,
    NotFoundError,
    TimeConflictError,
)
from fleetslot.domain.models import (
    AvailabilityRecord,
    AvailabilitySummary,
    AvailabilityView,
    FeasibilityReport,
    Material,
    PendingEntry,
    Reservation,
    SlotStatus,
)
from fleetslot.repository.availability_store import AvailabilityStore
from fleetslot.repository.data_repository import DataRepository
from fleetslot.services.selection_service import MaterialSelector
from fleetslot.utils.clock import ensure_utc, utc_now
from fleetslot.utils.config import Settings, get_settings
from fleetslot.utils.logger import get_logger


logger = get_logger(__name__)


def _validate_window(start: datetime, end: datetime) -> tuple[datetime, datetime]:
    start_utc = ensure_utc(start)
    end_utc = ensure_utc(end)
    if start_utc >= end_utc:
        raise AllocationValidationError("start_time must be earlier than end_time")
    return start_utc, end_utc


def _validate_material_ids(material_ids: Sequence[str]) -> list[str]:
    ids = [str(material_id).strip() for material_id in material_ids]
    if not ids:
        raise AllocationValidationError("material_ids must not be empty")
    if any(not material_id for material_id in ids):
        raise AllocationValidationError("material_ids must not contain blank ids")
    if len(set(ids)) != len(ids):
        raise AllocationValidationError("material_ids must not contain duplicates")
    return ids


def _error_for(
    reason: RejectionReason,
    record: AvailabilityRecord,
    campaign_id: str,
    start: datetime,
    end: datetime,
) -> AllocationError:
    if reason == RejectionReason.MAINTENANCE:
        return MaintenanceError(
            f"Material {record.material_id} is under maintenance",
            material_id=record.material_id,
            campaign_id=campaign_id,
        )
    if reason == RejectionReason.NO_CAPACITY:
        return CapacityExceededError(
            f"Material {record.material_id} has no available slots",
            material_id=record.material_id,
            campaign_id=campaign_id,
        )
    return TimeConflictError(
        (
            f"Material {record.material_id} already has a reservation overlapping "
            f"{start.isoformat()} - {end.isoformat()}"
        ),
        material_id=record.material_id,
        campaign_id=campaign_id,
    )


class AllocationService:
    """Orchestrates reservations across materials on top of the versioned store."""

    def __init__(
        self,
        repository: Optional[DataRepository] = None,
        store: Optional[AvailabilityStore] = None,
        selector: Optional[MaterialSelector] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository or DataRepository(self._settings)
        self._clock = clock
        self._store = store or AvailabilityStore(
            self._repository,
            settings=self._settings,
            clock=clock,
        )
        self._selector = selector or MaterialSelector(
            self._store,
            repository=self._repository,
            settings=self._settings,
        )

    @property
    def store(self) -> AvailabilityStore:
        return self._store

    def _require_known(self, material_ids: Sequence[str]) -> None:
        missing = self._repository.find_missing_material_ids(material_ids)
        if missing:
            raise NotFoundError(
                f"Unknown material ids: {', '.join(missing)}",
                material_id=missing[0],
            )

    def reserve(
        self,
        campaign_id: str,
        material_ids: Sequence[str],
        start: datetime,
        end: datetime,
    ) -> list[Reservation]:
        """Reserve one slot per material in the given order, all or nothing.

        On failure every reservation made earlier in this call is released
        before the error propagates. Returned reservations line up with
        ``material_ids``. A campaign holds one window: a material it already
        holds is rejected, as is a window other than the one it holds elsewhere.
        """
        if not campaign_id or not campaign_id.strip():
            raise AllocationValidationError("campaign_id must not be empty")
        start_utc, end_utc = _validate_window(start, end)
        ids = _validate_material_ids(material_ids)
        self._require_known(ids)
        held_windows = self._store.list_campaign_windows(campaign_id)
        if any(window != (start_utc, end_utc) for window in held_windows):
            raise AllocationValidationError(
                f"Campaign {campaign_id} already holds slots for another window",
                campaign_id=campaign_id,
            )

        # only slots created by this call are ever compensated
        committed: list[str] = []
        reservations: list[Reservation] = []
        try:
            for material_id in ids:
                reservations.append(
                    self._reserve_one(campaign_id, material_id, start_utc, end_utc)
                )
                committed.append(material_id)
        except Exception as exc:
            logger.warning(
                "Reservation failed | campaign_id=%s | material_id=%s | error=%s | compensating=%s",
                campaign_id,
                getattr(exc, "material_id", None),
                exc,
                len(committed),
            )
            self._compensate(campaign_id, committed)
            raise

        logger.info(
            "Reservation committed | campaign_id=%s | materials=%s | window=%s..%s",
            campaign_id,
            ids,
            start_utc.isoformat(),
            end_utc.isoformat(),
        )
        return reservations

    def _reserve_one(
        self,
        campaign_id: str,
        material_id: str,
        start: datetime,
        end: datetime,
    ) -> Reservation:
        outcome: list[Reservation] = []

        def mutate(record: AvailabilityRecord) -> Optional[AvailabilityRecord]:
            outcome.clear()
            existing = record.reservation_for(campaign_id)
            if existing is not None:
                raise DuplicateReservationError(
                    (
                        f"Campaign {campaign_id} already holds slot "
                        f"{existing.slot_number} on {material_id}"
                    ),
                    material_id=material_id,
                    campaign_id=campaign_id,
                )

            reason = rejection_reason(record, start, end)
            if reason is not None:
                raise _error_for(reason, record, campaign_id, start, end)

            updated = with_reservation(
                record,
                campaign_id=campaign_id,
                start=start,
                end=end,
                now=self._clock(),
            )
            reservation = updated.reservation_for(campaign_id)
            if reservation is not None:
                outcome.append(reservation)
            return updated

        self._store.compare_and_apply(material_id, mutate)
        return outcome[0]

    def _compensate(self, campaign_id: str, material_ids: Sequence[str]) -> None:
        """Best-effort rollback; failures are queued for the reclamation sweep."""
        for material_id in reversed(material_ids):
            try:
                self._release_one(campaign_id, material_id)
            except Exception as exc:
                logger.error(
                    "Compensating release failed | campaign_id=%s | material_id=%s | error=%s",
                    campaign_id,
                    material_id,
                    exc,
                )
                self._queue_release_retry(campaign_id, material_id, str(exc))

    def _queue_release_retry(self, campaign_id: str, material_id: str, reason: str) -> None:
        try:
            self._repository.add_release_backlog(campaign_id, material_id, reason)
        except Exception:
            logger.exception(
                "Could not queue release retry | campaign_id=%s | material_id=%s",
                campaign_id,
                material_id,
            )

    def _release_one(self, campaign_id: str, material_id: str) -> bool:
        if not self._store.has_record(material_id):
            return False
        removed: list[bool] = []

        def mutate(record: AvailabilityRecord) -> Optional[AvailabilityRecord]:
            removed.clear()
            updated = without_reservation(record, campaign_id=campaign_id, now=self._clock())
            removed.append(updated is not None)
            return updated

        self._store.compare_and_apply(material_id, mutate)
        return bool(removed and removed[0])

    def release_expired(self, campaign_id: str, material_id: str, now: datetime) -> bool:
        """Release only if the reservation's end time is still at or before ``now``."""
        if not self._store.has_record(material_id):
            return False
        cutoff = ensure_utc(now)
        removed: list[bool] = []

        def mutate(record: AvailabilityRecord) -> Optional[AvailabilityRecord]:
            removed.clear()
            existing = record.reservation_for(campaign_id)
            if existing is None or existing.end_time > cutoff:
                return None
            removed.append(True)
            return without_reservation(record, campaign_id=campaign_id, now=self._clock())

        self._store.compare_and_apply(material_id, mutate)
        return bool(removed)

    def release(self, campaign_id: str, material_ids: Sequence[str]) -> None:
        """Drop the campaign's reservation on each material; absent ones are skipped."""
        freed = 0
        for material_id in dict.fromkeys(material_ids):
            if self._release_one(campaign_id, material_id):
                freed += 1
        logger.info(
            "Release completed | campaign_id=%s | requested=%s | freed=%s",
            campaign_id,
            len(material_ids),
            freed,
        )

    def release_everywhere(self, campaign_id: str) -> list[str]:
        """Release the campaign on every material currently holding it."""
        material_ids = self._store.find_materials_holding(campaign_id)
        if material_ids:
            self.release(campaign_id, material_ids)
        return material_ids

    def select_materials(
        self,
        candidates: Sequence[Material],
        start: datetime,
        end: datetime,
    ) -> list[Material]:
        start_utc, end_utc = _validate_window(start, end)
        return self._selector.select_materials(candidates, start_utc, end_utc)

    def reserve_for_filters(
        self,
        campaign_id: str,
        material_type: str,
        vehicle_type: str,
        category: str,
        device_count: int,
        start: datetime,
        end: datetime,
    ) -> list[tuple[str, Reservation]]:
        """Pick the best ``device_count`` materials for the filters and reserve them."""
        if device_count <= 0:
            raise AllocationValidationError("device_count must be > 0")
        start_utc, end_utc = _validate_window(start, end)
        ranked = self._selector.select_for_filters(
            material_type,
            vehicle_type,
            category,
            start_utc,
            end_utc,
        )
        if len(ranked) < device_count:
            raise CapacityExceededError(
                f"Only {len(ranked)} devices available, but {device_count} requested",
                campaign_id=campaign_id,
            )
        selected = [material.material_id for material in ranked[:device_count]]
        reservations = self.reserve(campaign_id, selected, start_utc, end_utc)
        return list(zip(selected, reservations))

    def get_availability(self, material_ids: Sequence[str]) -> list[AvailabilityView]:
        ids = _validate_material_ids(material_ids)
        self._require_known(ids)
        return [AvailabilityView.from_record(record) for record in self._store.list_by_ids(ids)]

    def validate_window(
        self,
        material_ids: Sequence[str],
        start: datetime,
        end: datetime,
        required_count: Optional[int] = None,
    ) -> FeasibilityReport:
        """Non-mutating check of how many materials could take the window."""
        start_utc, end_utc = _validate_window(start, end)
        ids = _validate_material_ids(material_ids)
        self._require_known(ids)
        if required_count is not None and required_count <= 0:
            raise AllocationValidationError("required_count must be > 0")

        records = self._store.list_by_ids(ids)
        eligible = [record for record in records if can_accept(record, start_utc, end_utc)]
        return FeasibilityReport(
            requested_count=required_count if required_count is not None else len(ids),
            eligible_count=len(eligible),
            total_available_slots=sum(record.available_slots for record in records),
            earliest_next_available=min(
                (record.next_available_date for record in records),
                default=None,
            ),
        )

    def summarize(self, material_ids: Optional[Sequence[str]] = None) -> AvailabilitySummary:
        """Fleet-wide slot totals; each record is a consistent snapshot on its own."""
        if material_ids is None:
            records = self._store.list_all()
        else:
            records = self._store.list_by_ids(_validate_material_ids(material_ids))

        total_slots = sum(record.total_slots for record in records)
        occupied_slots = sum(record.occupied_slots for record in records)
        utilization = (occupied_slots / total_slots) * 100.0 if total_slots > 0 else 0.0
        return AvailabilitySummary(
            total_materials=len(records),
            total_slots=total_slots,
            occupied_slots=occupied_slots,
            available_slots=sum(record.available_slots for record in records),
            utilization_rate=round(utilization, 2),
            available_materials=sum(
                1 for record in records if record.status == SlotStatus.AVAILABLE
            ),
            full_materials=sum(1 for record in records if record.status == SlotStatus.FULL),
            maintenance_materials=sum(
                1 for record in records if record.status == SlotStatus.MAINTENANCE
            ),
        )

    def set_status(self, material_id: str, maintenance: bool) -> AvailabilityView:
        self._require_known([material_id])
        record = self._store.compare_and_apply(
            material_id,
            lambda current: with_status(current, maintenance=maintenance, now=self._clock()),
        )
        logger.info(
            "Material status changed | material_id=%s | status=%s",
            material_id,
            record.status.value,
        )
        return AvailabilityView.from_record(record)

    def set_total_slots(self, material_id: str, total_slots: int) -> AvailabilityView:
        try:
            validate_total_slots(total_slots, self._settings.max_total_slots)
        except ValueError as exc:
            raise AllocationValidationError(str(exc), material_id=material_id) from exc
        self._require_known([material_id])

        def mutate(record: AvailabilityRecord) -> Optional[AvailabilityRecord]:
            try:
                return with_total_slots(record, total_slots=total_slots, now=self._clock())
            except ValueError as exc:
                raise AllocationValidationError(str(exc), material_id=material_id) from exc

        record = self._store.compare_and_apply(material_id, mutate)
        return AvailabilityView.from_record(record)

    def enqueue_pending(
        self,
        campaign_id: str,
        material_id: str,
        requested_start: datetime,
        priority: int = 0,
    ) -> list[PendingEntry]:
        """Queue a campaign for a full material; best-effort, not a fulfilment promise."""
        if not 0 <= priority <= 10:
            raise AllocationValidationError("priority must be between 0 and 10")
        self._require_known([material_id])
        entry = PendingEntry(
            campaign_id=campaign_id,
            requested_start_time=ensure_utc(requested_start),
            priority=priority,
            queued_at=self._clock(),
        )
        record = self._store.compare_and_apply(
            material_id,
            lambda current: with_pending(current, entry=entry, now=self._clock()),
        )
        return list(record.pending)

    def list_pending(self, material_id: str) -> list[PendingEntry]:
        self._require_known([material_id])
        return list(self._store.list_by_ids([material_id])[0].pending)
