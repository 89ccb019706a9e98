"""FastAPI application bootstrap and lifecycle wiring."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from admission.controllers.accommodation_controller import router as accommodation_router
from admission.controllers.booking_controller import router as booking_router
from admission.repository.booking_store import BookingRequestStore
from admission.repository.capacity_ledger import CapacityLedger
from admission.repository.data_repository import DataRepository
from admission.services.admission_service import AdmissionService
from admission.services.auth_service import AuthService
from admission.services.maintenance_service import LedgerConsistencyService, OverdueSweeper
from admission.services.payment_gate import PaymentGateAdapter
from admission.services.stats_service import StatsService
from admission.utils.config import Settings, get_settings
from admission.utils.logger import get_logger


logger = get_logger(__name__)


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Build the app with every service wired through app.state."""
    settings = settings or get_settings()
    repository = DataRepository(settings)
    ledger = CapacityLedger(repository)
    booking_store = BookingRequestStore(repository)
    admission_service = AdmissionService(
        repository=repository,
        settings=settings,
        booking_store=booking_store,
        ledger=ledger,
    )
    stats_service = StatsService(repository=repository, settings=settings, ledger=ledger)
    admission_service.add_listener(stats_service.on_transition)
    payment_gate = PaymentGateAdapter(admission_service)
    overdue_sweeper = OverdueSweeper(admission_service, settings=settings)
    consistency_service = LedgerConsistencyService(
        repository=repository,
        admission_service=admission_service,
        stats_service=stats_service,
        settings=settings,
    )
    auth_service = AuthService(settings=settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        startup(app)
        try:
            yield
        finally:
            shutdown(app)

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        lifespan=lifespan,
    )
    app.include_router(accommodation_router)
    app.include_router(booking_router)

    app.state.settings = settings
    app.state.repository = repository
    app.state.admission_service = admission_service
    app.state.stats_service = stats_service
    app.state.payment_gate = payment_gate
    app.state.overdue_sweeper = overdue_sweeper
    app.state.consistency_service = consistency_service
    app.state.auth_service = auth_service

    return app


def startup(app: FastAPI) -> None:
    """Create schema, seed the catalog, repair the ledger, start background workers."""
    settings: Settings = app.state.settings
    repository: DataRepository = app.state.repository

    repository.initialize_database()
    if settings.seed_sample_data:
        repository.seed_sample_data()
    # Heals counters edited outside the service since the last run.
    app.state.consistency_service.reconcile()
    if settings.overdue_sweep_enabled:
        app.state.overdue_sweeper.start()
    if settings.ledger_check_enabled:
        app.state.consistency_service.start()
    logger.info("System startup completed")


def shutdown(app: FastAPI) -> None:
    app.state.overdue_sweeper.stop()
    app.state.consistency_service.stop()
    logger.info("System shutdown completed")


app = create_app()
