from typing import Annotated

from fastapi import APIRouter, Depends

from budget_categorizer.api.dependencies import get_storage, get_suggestions, get_trainer
from budget_categorizer.api.schemas import ModelSummary, TrainRequest
from budget_categorizer.errors import ModelUnavailableError, NotFoundError
from budget_categorizer.logger import get_logger
from budget_categorizer.models import (
    ActiveModelInfo,
    CategoryPrediction,
    TrainingResult,
    TrainingStats,
)
from budget_categorizer.services.suggestions import SuggestionService
from budget_categorizer.services.training import ModelTrainer
from budget_categorizer.storage.base import Storage

logger = get_logger(__name__)

router = APIRouter(prefix="/api/ml")


@router.post("/train", response_model=TrainingResult)
async def train_model(
    trainer: Annotated[ModelTrainer, Depends(get_trainer)],
    req: TrainRequest | None = None,
) -> TrainingResult:
    return await trainer.train(req.window_days if req else None)


@router.post("/train/cancel")
async def cancel_training(
    trainer: Annotated[ModelTrainer, Depends(get_trainer)],
) -> dict[str, str]:
    if trainer.request_cancel():
        logger.info("[TRAIN] Cancel requested by user.")
        return {"status": "cancelling"}
    return {"status": "idle"}


@router.get("/train/status")
async def training_status(
    trainer: Annotated[ModelTrainer, Depends(get_trainer)],
) -> dict:
    return trainer.get_status()


@router.get("/training-stats", response_model=TrainingStats)
async def training_stats(
    trainer: Annotated[ModelTrainer, Depends(get_trainer)],
    window_days: int | None = None,
) -> TrainingStats:
    return await trainer.training_stats(window_days)


@router.get("/model", response_model=ActiveModelInfo)
async def active_model(
    trainer: Annotated[ModelTrainer, Depends(get_trainer)],
) -> ActiveModelInfo:
    info = await trainer.active_model()
    if info is None:
        raise ModelUnavailableError("No trained model is active yet.")
    return info


@router.get("/models", response_model=list[ModelSummary])
async def list_models(
    storage: Annotated[Storage, Depends(get_storage)],
) -> list[ModelSummary]:
    active = await storage.models.active()
    return [
        ModelSummary(
            version=record.version,
            trained_at=record.trained_at.isoformat(),
            metrics=record.metrics,
            archived=record.archived,
            active=active is not None and active.version == record.version,
        )
        for record in await storage.models.all()
    ]


@router.post("/models/{version}/activate", response_model=ActiveModelInfo)
async def activate_model(
    version: int,
    trainer: Annotated[ModelTrainer, Depends(get_trainer)],
) -> ActiveModelInfo:
    return await trainer.activate_model(version)


@router.post("/models/{version}/archive")
async def archive_model(
    version: int,
    trainer: Annotated[ModelTrainer, Depends(get_trainer)],
) -> dict[str, int | str]:
    await trainer.archive_model(version)
    return {"status": "archived", "version": version}


@router.get("/predict/{transaction_id}", response_model=CategoryPrediction)
async def predict(
    transaction_id: str,
    suggestions: Annotated[SuggestionService, Depends(get_suggestions)],
    storage: Annotated[Storage, Depends(get_storage)],
) -> CategoryPrediction:
    if await storage.transactions.get(transaction_id) is None:
        raise NotFoundError(f"Transaction {transaction_id} not found", transaction_id=transaction_id)
    prediction = await suggestions.service.predictor.predict(transaction_id)
    if prediction is None:
        raise ModelUnavailableError("No trained model is active yet.")
    return prediction
