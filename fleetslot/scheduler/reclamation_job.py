"""
Reclamation job: every RECLAMATION_INTERVAL_MINUTES, release slots held by
campaigns that never paid or whose end time has passed.
"""
from __future__ import annotations

from apscheduler.schedulers.background import BackgroundScheduler

from fleetslot.services.reclamation_service import ReclamationService
from fleetslot.utils.config import Settings
from fleetslot.utils.logger import get_logger

logger = get_logger(__name__)

RECLAMATION_JOB_ID = "slot_reclamation"


def run_reclamation_job(service: ReclamationService) -> None:
    try:
        report = service.run()
        logger.info(
            "Reclamation job tick | unpaid=%s | expired=%s | backlog=%s",
            report.unpaid.cleaned_count,
            report.expired.cleaned_count,
            report.backlog.cleaned_count,
        )
    except Exception as e:
        logger.warning("Reclamation job failed: %s", e, exc_info=True)


def build_scheduler(service: ReclamationService, settings: Settings) -> BackgroundScheduler:
    scheduler = BackgroundScheduler(timezone="UTC")
    # One run at a time; a slow sweep must not overlap the next tick.
    scheduler.add_job(
        run_reclamation_job,
        "interval",
        minutes=settings.reclamation_interval_minutes,
        id=RECLAMATION_JOB_ID,
        args=[service],
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )
    return scheduler
