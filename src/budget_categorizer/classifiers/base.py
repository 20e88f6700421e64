from abc import ABC, abstractmethod

from budget_categorizer.models import CategorizationResult, Transaction


class Classifier(ABC):
    @abstractmethod
    async def classify(self, transaction: Transaction) -> CategorizationResult | None:
        """Attempt to categorize the transaction."""
        pass
