import os
from collections.abc import AsyncGenerator, Callable
from contextlib import asynccontextmanager
from datetime import datetime

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from budget_categorizer.api.routes import automation, ml, suggestions, transactions
from budget_categorizer.classifiers.model import ModelCache
from budget_categorizer.core import settings
from budget_categorizer.core.settings import AutomationOptions, MLOptions
from budget_categorizer.domain.timefmt import utcnow
from budget_categorizer.errors import CategorizerError, InternalError
from budget_categorizer.logger import get_logger, setup_logging
from budget_categorizer.manager import CategorizerService
from budget_categorizer.services.assignment import AssignmentService
from budget_categorizer.services.automation import (
    AutoApplyScheduler,
    AutomationOrchestrator,
    RetrainingScheduler,
)
from budget_categorizer.services.monitoring import MonitoringReporter
from budget_categorizer.services.suggestions import SuggestionService
from budget_categorizer.services.training import ModelTrainer
from budget_categorizer.services.undo import UndoCoordinator
from budget_categorizer.storage.base import Storage
from budget_categorizer.storage.files import FileModelStore, FileProfileStore
from budget_categorizer.storage.memory import InMemoryStorage

logger = get_logger(__name__)


def build_default_storage(clock: Callable[[], datetime] = utcnow) -> InMemoryStorage:
    return InMemoryStorage(
        clock,
        models=FileModelStore(os.path.join(settings.DATA_DIR, "models.pkl")),
        profiles=FileProfileStore(os.path.join(settings.DATA_DIR, "profiles.json")),
    )


def wire_services(
    app: FastAPI,
    storage: Storage,
    ml_options: MLOptions,
    automation_options: AutomationOptions,
    clock: Callable[[], datetime],
) -> None:
    cache = ModelCache()
    service = CategorizerService(storage, ml_options, cache)
    orchestrator = AutomationOrchestrator(storage, service, automation_options, clock)
    undo = UndoCoordinator(storage, automation_options, clock)
    trainer = ModelTrainer(storage, cache, ml_options, clock)

    app.state.storage = storage
    app.state.service = service
    app.state.suggestions = SuggestionService(storage, service, clock)
    app.state.trainer = trainer
    app.state.assignment = AssignmentService(storage, clock)
    app.state.orchestrator = orchestrator
    app.state.undo = undo
    app.state.monitoring = MonitoringReporter(storage, undo, automation_options)
    app.state.scheduler = AutoApplyScheduler(orchestrator)
    app.state.retraining = RetrainingScheduler(trainer, automation_options)


def create_app(
    storage: Storage | None = None,
    ml_options: MLOptions | None = None,
    automation_options: AutomationOptions | None = None,
    clock: Callable[[], datetime] = utcnow,
    persist_settings: bool = True,
) -> FastAPI:
    setup_logging()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        logger.info("Initializing services...")
        settings.log_environment()

        automation = automation_options or settings.load_automation_options()
        wire_services(
            app,
            storage or build_default_storage(clock),
            ml_options or settings.load_ml_options(),
            automation,
            clock,
        )
        app.state.persist_settings = persist_settings

        if automation.enabled:
            app.state.scheduler.start()
        else:
            logger.info("AUTO_APPLY_ENABLED is false. Scheduled auto-apply is disabled.")
        if automation.retraining_enabled:
            app.state.retraining.start()

        logger.info("Services initialized.")
        yield
        await app.state.scheduler.stop()
        await app.state.retraining.stop()
        logger.info("Service shutting down.")

    app = FastAPI(title="Budget Categorizer", lifespan=lifespan)

    @app.exception_handler(CategorizerError)
    async def categorizer_error_handler(request: Request, exc: CategorizerError) -> JSONResponse:
        if isinstance(exc, InternalError):
            logger.error("%s %s failed: %s %s", request.method, request.url.path, exc.message, exc.detail)
            return JSONResponse(
                status_code=exc.status_code,
                content={"title": exc.title, "detail": "An unexpected error occurred."},
            )
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("%s %s failed unexpectedly", request.method, request.url.path)
        return JSONResponse(
            status_code=500,
            content={"title": "Internal Server Error", "detail": "An unexpected error occurred."},
        )

    app.include_router(suggestions.router)
    app.include_router(ml.router)
    app.include_router(automation.router)
    app.include_router(transactions.router)

    return app
