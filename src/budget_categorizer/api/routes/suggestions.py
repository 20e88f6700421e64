from typing import Annotated

from fastapi import APIRouter, Depends

from budget_categorizer.api.dependencies import get_suggestions
from budget_categorizer.api.schemas import FeedbackRequest
from budget_categorizer.models import CategorizationResult, LabeledExample
from budget_categorizer.services.suggestions import SuggestionService

router = APIRouter(prefix="/api/suggestions")


@router.get("/{transaction_id}", response_model=CategorizationResult | None)
async def suggest_category(
    transaction_id: str,
    suggestions: Annotated[SuggestionService, Depends(get_suggestions)],
) -> CategorizationResult | None:
    return await suggestions.suggest_category(transaction_id)


@router.post("/{transaction_id}/feedback", response_model=LabeledExample)
async def record_feedback(
    transaction_id: str,
    req: FeedbackRequest,
    suggestions: Annotated[SuggestionService, Depends(get_suggestions)],
) -> LabeledExample:
    return await suggestions.record_feedback(
        transaction_id,
        req.accepted,
        req.final_category_id,
        suggestion_confidence=req.suggestion_confidence,
        model_version=req.model_version,
        was_auto_applied=req.was_auto_applied,
    )
