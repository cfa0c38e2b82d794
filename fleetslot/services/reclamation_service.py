"""Periodic release of slots held by unpaid or expired campaigns.

Sweeps run independently of request traffic and only write through the
allocation service, so they share the same version-checked path as live
``reserve``/``release`` calls. One failing campaign is logged and counted;
it never stops the rest of the sweep.
"""

from __future__ import annotations

from collections import defaultdict
from datetime import datetime, timedelta
from typing import Callable, Optional

from fleetslot.domain.models import ReclamationOutcome, ReclamationReport
from fleetslot.repository.data_repository import DataRepository
from fleetslot.services.allocation_service import AllocationService
from fleetslot.utils.clock import ensure_utc, utc_now
from fleetslot.utils.config import Settings, get_settings
from fleetslot.utils.logger import get_logger


logger = get_logger(__name__)


class ReclamationService:
    """Backlog retry, unpaid sweep and expiry sweep, in that order."""

    def __init__(
        self,
        repository: Optional[DataRepository] = None,
        allocation_service: Optional[AllocationService] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository or DataRepository(self._settings)
        self._clock = clock
        self._allocation_service = allocation_service or AllocationService(
            repository=self._repository,
            settings=self._settings,
            clock=clock,
        )

    def _resolve_now(self, now: Optional[datetime]) -> datetime:
        return ensure_utc(now) if now is not None else self._clock()

    def sweep_release_backlog(self) -> ReclamationOutcome:
        """Retry releases that a failed reservation could not roll back inline."""
        backlog = self._repository.list_release_backlog()
        cleaned: list[str] = []
        error_count = 0
        for campaign_id, material_id in backlog:
            try:
                self._allocation_service.release(campaign_id, [material_id])
                self._repository.remove_release_backlog(campaign_id, material_id)
                cleaned.append(campaign_id)
            except Exception as exc:
                error_count += 1
                self._repository.record_release_backlog_attempt(campaign_id, material_id)
                logger.error(
                    "Backlog release failed | campaign_id=%s | material_id=%s | error=%s",
                    campaign_id,
                    material_id,
                    exc,
                )
        return ReclamationOutcome(
            sweep="backlog",
            total_found=len(backlog),
            cleaned_count=len(cleaned),
            error_count=error_count,
            campaign_ids=tuple(dict.fromkeys(cleaned)),
        )

    def sweep_unpaid(self, now: Optional[datetime] = None) -> ReclamationOutcome:
        current = self._resolve_now(now)
        timeout_hours = self._settings.payment_timeout_hours
        cutoff = current - timedelta(hours=timeout_hours)
        campaigns = self._repository.list_unpaid_campaigns(created_before=cutoff)
        logger.info(
            "Unpaid sweep started | candidates=%s | cutoff=%s",
            len(campaigns),
            cutoff.isoformat(),
        )

        cleaned: list[str] = []
        error_count = 0
        for campaign in campaigns:
            try:
                holding = self._allocation_service.store.find_materials_holding(
                    campaign.campaign_id
                )
                material_ids = list(dict.fromkeys(campaign.material_ids + tuple(holding)))
                self._allocation_service.release(campaign.campaign_id, material_ids)
                self._repository.mark_campaign_rejected(
                    campaign.campaign_id,
                    reason=(
                        "Campaign automatically cancelled due to non-payment after "
                        f"{timeout_hours} hours"
                    ),
                    now=current,
                )
                cleaned.append(campaign.campaign_id)
            except Exception as exc:
                error_count += 1
                logger.error(
                    "Unpaid cleanup failed | campaign_id=%s | error=%s",
                    campaign.campaign_id,
                    exc,
                )

        logger.info(
            "Unpaid sweep completed | cleaned=%s | errors=%s",
            len(cleaned),
            error_count,
        )
        return ReclamationOutcome(
            sweep="unpaid",
            total_found=len(campaigns),
            cleaned_count=len(cleaned),
            error_count=error_count,
            campaign_ids=tuple(cleaned),
        )

    def sweep_expired(self, now: Optional[datetime] = None) -> ReclamationOutcome:
        current = self._resolve_now(now)
        expired = self._allocation_service.store.list_expired_reservations(current)
        materials_by_campaign: dict[str, list[str]] = defaultdict(list)
        for material_id, reservation in expired:
            materials_by_campaign[reservation.campaign_id].append(material_id)
        logger.info(
            "Expiry sweep started | reservations=%s | campaigns=%s",
            len(expired),
            len(materials_by_campaign),
        )

        cleaned: list[str] = []
        error_count = 0
        for campaign_id, material_ids in materials_by_campaign.items():
            try:
                freed = sum(
                    1
                    for material_id in material_ids
                    if self._allocation_service.release_expired(campaign_id, material_id, current)
                )
                if freed == 0:
                    continue
                still_held = self._allocation_service.store.find_materials_holding(campaign_id)
                if still_held:
                    logger.info(
                        "Campaign still holds live slots | campaign_id=%s | materials=%s",
                        campaign_id,
                        still_held,
                    )
                elif not self._repository.mark_campaign_ended(campaign_id, now=current):
                    logger.debug(
                        "Campaign not transitioned to ENDED | campaign_id=%s",
                        campaign_id,
                    )
                logger.info(
                    "Expired campaign released | campaign_id=%s | freed=%s",
                    campaign_id,
                    freed,
                )
                cleaned.append(campaign_id)
            except Exception as exc:
                error_count += 1
                logger.error(
                    "Expired cleanup failed | campaign_id=%s | error=%s",
                    campaign_id,
                    exc,
                )

        return ReclamationOutcome(
            sweep="expired",
            total_found=len(materials_by_campaign),
            cleaned_count=len(cleaned),
            error_count=error_count,
            campaign_ids=tuple(cleaned),
        )

    def run(self, now: Optional[datetime] = None) -> ReclamationReport:
        """Run every sweep once.

        Unpaid runs before expiry, so a campaign that is both unpaid and past
        its end time ends up REJECTED rather than ENDED.
        """
        current = self._resolve_now(now)
        backlog = self.sweep_release_backlog()
        unpaid = self.sweep_unpaid(current)
        expired = self.sweep_expired(current)
        logger.info(
            (
                "Reclamation completed | backlog=%s/%s | unpaid=%s/%s | "
                "expired=%s/%s | errors=%s"
            ),
            backlog.cleaned_count,
            backlog.total_found,
            unpaid.cleaned_count,
            unpaid.total_found,
            expired.cleaned_count,
            expired.total_found,
            backlog.error_count + unpaid.error_count + expired.error_count,
        )
        return ReclamationReport(
            backlog=backlog,
            unpaid=unpaid,
            expired=expired,
            ran_at=current,
        )
