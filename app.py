"""
app.py: FastAPI application factory and startup lifecycle.

This is the ASGI application object imported by uvicorn.
It wires all services, registers routers, and runs startup initialization.

Usage (via launcher):
    python main.py

Usage (direct uvicorn):
    uvicorn app:app --reload
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from housing.controllers.accommodation_controller import router as accommodation_router
from housing.controllers.reconciler_controller import router as integrity_router
from housing.repository.allocation_ledger import AllocationLedger
from housing.repository.data_repository import DataRepository
from housing.services.allocation_service import RoomAllocationService
from housing.services.cache_service import CacheService, build_cache_service
from housing.services.reconciler_service import (
    IntegrityReconciler,
    ReconcilerSupervisor,
    build_reconciler_config,
)
from housing.services.settings_service import SettingsService
from housing.utils.config import Settings, get_settings
from housing.utils.logger import configure_logging, get_logger


logger = get_logger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    cache: Optional[CacheService] = None,
) -> FastAPI:
    """
    Build and wire the FastAPI application.

    Instantiates all services with explicit dependency injection via app.state.
    Every dependency is traceable from this function.
    """
    settings = settings or get_settings()
    configure_logging(settings.log_level)

    # --- Storage ---
    repository = DataRepository(settings)
    ledger = AllocationLedger(repository)
    cache = cache or build_cache_service(settings)

    # --- Services ---
    settings_service = SettingsService(repository=repository, cache=cache, settings=settings)
    allocation_service = RoomAllocationService(
        repository=repository,
        settings_service=settings_service,
        cache=cache,
        ledger=ledger,
        settings=settings,
    )
    reconciler_supervisor = ReconcilerSupervisor(
        IntegrityReconciler(ledger, settings_service=settings_service, cache=cache),
        build_reconciler_config(settings),
        history_size=settings.reconciler_report_history,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Run startup initialization before accepting requests."""
        _startup(app, settings)
        try:
            yield
        finally:
            logger.info("Shutdown: stopping integrity reconciler")
            app.state.reconciler_supervisor.shutdown()

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        lifespan=lifespan,
    )

    # --- Routers ---
    app.include_router(accommodation_router)
    app.include_router(integrity_router)

    # --- Inject services into app.state for dependency resolution ---
    app.state.repository = repository
    app.state.cache = cache
    app.state.settings_service = settings_service
    app.state.allocation_service = allocation_service
    app.state.reconciler_supervisor = reconciler_supervisor

    return app


def _startup(app: FastAPI, settings: Settings) -> None:
    """
    Idempotent startup sequence. Safe to re-run on server restarts.

    Schema must exist before seeding, and seeding must finish before the
    reconciler takes its first snapshot.
    """
    repository: DataRepository = app.state.repository
    allocation_service: RoomAllocationService = app.state.allocation_service

    logger.info("Startup: initializing database schema")
    repository.initialize_database()

    if settings.seed_default_rooms:
        logger.info("Startup: seeding default rooms (skipped if Rooms table not empty)")
        allocation_service.seed_default_rooms()

    if settings.seed_demo_registrants:
        logger.info("Startup: seeding demo registrants (skipped if Registrants table not empty)")
        repository.seed_demo_registrants()

    if settings.reconciler_autostart:
        logger.info("Startup: starting integrity reconciler")
        app.state.reconciler_supervisor.start()

    logger.info("Startup complete | database=%s", settings.database_path)


# Module-level app object for uvicorn
app = create_app()
