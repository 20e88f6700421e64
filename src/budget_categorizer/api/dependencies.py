from fastapi import HTTPException, Request

from budget_categorizer.services.assignment import AssignmentService
from budget_categorizer.services.automation import AutomationOrchestrator
from budget_categorizer.services.monitoring import MonitoringReporter
from budget_categorizer.services.suggestions import SuggestionService
from budget_categorizer.services.training import ModelTrainer
from budget_categorizer.services.undo import UndoCoordinator
from budget_categorizer.storage.base import Storage


def _require(request: Request, name: str):
    value = getattr(request.app.state, name, None)
    if value is None:
        raise HTTPException(status_code=500, detail="Service not initialized")
    return value


def get_storage(request: Request) -> Storage:
    return _require(request, "storage")


def get_suggestions(request: Request) -> SuggestionService:
    return _require(request, "suggestions")


def get_trainer(request: Request) -> ModelTrainer:
    return _require(request, "trainer")


def get_assignment(request: Request) -> AssignmentService:
    return _require(request, "assignment")


def get_orchestrator(request: Request) -> AutomationOrchestrator:
    return _require(request, "orchestrator")


def get_undo(request: Request) -> UndoCoordinator:
    return _require(request, "undo")


def get_monitoring(request: Request) -> MonitoringReporter:
    return _require(request, "monitoring")
