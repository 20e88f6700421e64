from collections.abc import Callable
from datetime import datetime

from budget_categorizer.domain.timefmt import utcnow
from budget_categorizer.errors import NotFoundError, ValidationError
from budget_categorizer.logger import get_logger
from budget_categorizer.manager import CategorizerService
from budget_categorizer.models import CategorizationResult, LabeledExample
from budget_categorizer.storage.base import Storage

logger = get_logger(__name__)


class SuggestionService:
    def __init__(
        self,
        storage: Storage,
        service: CategorizerService,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.storage = storage
        self.service = service
        self.clock = clock

    async def suggest_category(self, transaction_id: str) -> CategorizationResult | None:
        transaction = await self.storage.transactions.get(transaction_id)
        if transaction is None:
            raise NotFoundError(f"Transaction {transaction_id} not found", transaction_id=transaction_id)

        logger.debug("[PREDICT] Starting categorization for transaction ID: %s", transaction_id)
        return await self.service.categorize(transaction)

    async def record_feedback(
        self,
        transaction_id: str,
        accepted: bool,
        final_category_id: str,
        suggestion_confidence: float | None = None,
        model_version: int | None = None,
        was_auto_applied: bool = False,
    ) -> LabeledExample:
        if suggestion_confidence is not None and not 0.0 <= suggestion_confidence <= 1.0:
            raise ValidationError(
                "suggestionConfidence must be between 0 and 1.",
                suggestion_confidence=suggestion_confidence,
            )

        transaction = await self.storage.transactions.get(transaction_id)
        if transaction is None:
            raise NotFoundError(f"Transaction {transaction_id} not found", transaction_id=transaction_id)
        category = await self.storage.categories.get(final_category_id)
        if category is None:
            raise NotFoundError(f"Category {final_category_id} not found", category_id=final_category_id)

        example = await self.storage.examples.add(LabeledExample(
            transaction_id=transaction_id,
            category_id=category.id,
            was_auto_applied=was_auto_applied,
            accepted_suggestion=accepted,
            suggestion_confidence=suggestion_confidence,
            model_version=model_version,
            created_at=self.clock(),
        ))
        await self.service.learn(transaction, category.id)

        logger.info(
            "[CATEGORIZE] Transaction ID: %s -> Category: '%s' (Source: %s)",
            transaction_id,
            category.name,
            "model" if accepted else "manual",
        )
        return example
