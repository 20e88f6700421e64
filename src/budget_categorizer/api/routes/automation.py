from typing import Annotated

from fastapi import APIRouter, Depends, Request

from budget_categorizer.api.dependencies import get_monitoring, get_orchestrator, get_undo
from budget_categorizer.api.schemas import AlertResponse, CanUndoResponse
from budget_categorizer.core import configuration
from budget_categorizer.models import (
    AutoApplyHistoryItem,
    AutoApplySettings,
    AutoApplyStats,
    SweepResult,
    UndoResult,
)
from budget_categorizer.services.automation import AutomationOrchestrator
from budget_categorizer.services.monitoring import MonitoringReporter
from budget_categorizer.services.undo import UndoCoordinator

router = APIRouter(prefix="/api/automation")


@router.post("/sweep", response_model=SweepResult)
async def run_sweep(
    orchestrator: Annotated[AutomationOrchestrator, Depends(get_orchestrator)],
) -> SweepResult:
    return await orchestrator.run_sweep()


@router.get("/settings", response_model=AutoApplySettings)
async def get_settings(
    orchestrator: Annotated[AutomationOrchestrator, Depends(get_orchestrator)],
) -> AutoApplySettings:
    return orchestrator.get_settings()


@router.put("/settings", response_model=AutoApplySettings)
async def update_settings(
    new_settings: AutoApplySettings,
    request: Request,
    orchestrator: Annotated[AutomationOrchestrator, Depends(get_orchestrator)],
) -> AutoApplySettings:
    updated = orchestrator.update_settings(new_settings)
    if getattr(request.app.state, "persist_settings", True):
        updates = configuration.save_auto_apply_settings(updated)
        configuration.apply_runtime_updates(request.app, updates)
    return updated


@router.post("/undo/{transaction_id}", response_model=UndoResult)
async def undo(
    transaction_id: str,
    coordinator: Annotated[UndoCoordinator, Depends(get_undo)],
) -> UndoResult:
    return await coordinator.undo(transaction_id)


@router.get("/undo/{transaction_id}", response_model=CanUndoResponse)
async def can_undo(
    transaction_id: str,
    coordinator: Annotated[UndoCoordinator, Depends(get_undo)],
) -> CanUndoResponse:
    return CanUndoResponse(
        transaction_id=transaction_id,
        can_undo=await coordinator.can_undo(transaction_id),
    )


@router.get("/stats", response_model=AutoApplyStats)
async def stats(
    monitoring: Annotated[MonitoringReporter, Depends(get_monitoring)],
    window_days: int = 30,
) -> AutoApplyStats:
    return await monitoring.stats(window_days)


@router.get("/alert", response_model=AlertResponse)
async def undo_rate_alert(
    monitoring: Annotated[MonitoringReporter, Depends(get_monitoring)],
    window_days: int = 30,
) -> AlertResponse:
    return AlertResponse(
        window_days=window_days,
        above_threshold=await monitoring.undo_rate_alert(window_days),
    )


@router.get("/history", response_model=list[AutoApplyHistoryItem])
async def history(
    monitoring: Annotated[MonitoringReporter, Depends(get_monitoring)],
    limit: int = 50,
) -> list[AutoApplyHistoryItem]:
    return await monitoring.history(limit)
