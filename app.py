"""
app.py: FastAPI application factory and startup lifecycle.

This is the ASGI application object imported by uvicorn.
It wires the allocation engine, registers routers, and owns the
reclamation scheduler for the lifetime of the process.

Usage (via launcher):
    python main.py

Usage (direct uvicorn):
    uvicorn app:app --reload
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from fleetslot.controllers.allocation_controller import router as allocation_router
from fleetslot.controllers.registry_controller import router as registry_router
from fleetslot.domain.constraints import engine_config_from_settings, validate_engine_config
from fleetslot.repository.availability_store import AvailabilityStore
from fleetslot.repository.data_repository import DataRepository
from fleetslot.scheduler.reclamation_job import build_scheduler
from fleetslot.services.allocation_service import AllocationService
from fleetslot.services.reclamation_service import ReclamationService
from fleetslot.services.selection_service import MaterialSelector
from fleetslot.utils.config import Settings, get_settings
from fleetslot.utils.logger import get_logger


logger = get_logger(__name__)


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """
    Build and wire the FastAPI application.

    Every collaborator is constructed here and exposed through app.state;
    controllers resolve them per request.
    """
    settings = settings or get_settings()

    # --- Repository (SQLite connection factory + versioned availability store) ---
    repository = DataRepository(settings)
    store = AvailabilityStore(repository, settings=settings)

    # --- Services ---
    selector = MaterialSelector(store, repository=repository, settings=settings)
    allocation_service = AllocationService(
        repository=repository,
        store=store,
        selector=selector,
        settings=settings,
    )
    reclamation_service = ReclamationService(
        repository=repository,
        allocation_service=allocation_service,
        settings=settings,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Run startup initialization before accepting requests."""
        _startup(app)
        scheduler = None
        if settings.reclamation_enabled:
            scheduler = build_scheduler(reclamation_service, settings)
            scheduler.start()
            logger.info(
                "Reclamation scheduler started | interval_minutes=%s",
                settings.reclamation_interval_minutes,
            )
        try:
            yield
        finally:
            if scheduler is not None:
                scheduler.shutdown(wait=False)
                logger.info("Reclamation scheduler stopped")

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        lifespan=lifespan,
    )

    # --- Routers ---
    app.include_router(allocation_router)
    app.include_router(registry_router)

    # --- Inject services into app.state for dependency resolution ---
    app.state.settings = settings
    app.state.repository = repository
    app.state.availability_store = store
    app.state.allocation_service = allocation_service
    app.state.reclamation_service = reclamation_service

    return app


def _startup(app: FastAPI) -> None:
    """
    Idempotent startup sequence. Safe to re-run on server restarts.

    Configuration is validated before touching storage; the schema must exist
    before the demo fleet is registered.
    """
    settings: Settings = app.state.settings
    repository: DataRepository = app.state.repository

    logger.info("Startup: validating engine configuration")
    validate_engine_config(engine_config_from_settings(settings))

    logger.info("Startup: initializing database schema")
    repository.initialize_database()

    if settings.seed_demo_materials:
        logger.info("Startup: registering demo materials (skipped if registry not empty)")
        repository.seed_demo_materials()

    logger.info("Startup complete, allocation engine ready")


# Module-level app object for uvicorn
app = create_app()
