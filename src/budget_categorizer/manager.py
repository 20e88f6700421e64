from budget_categorizer.classifiers.base import Classifier
from budget_categorizer.classifiers.model import ModelCache, ModelClassifier, Predictor
from budget_categorizer.classifiers.rules import RuleMatcher
from budget_categorizer.classifiers.scoring import ScoringEngine
from budget_categorizer.core.settings import MLOptions
from budget_categorizer.logger import get_logger
from budget_categorizer.models import CategorizationResult, LearningProfile, Transaction
from budget_categorizer.storage.base import Storage

logger = get_logger(__name__)


class CategorizerService:
    def __init__(
        self,
        storage: Storage,
        options: MLOptions | None = None,
        cache: ModelCache | None = None,
    ) -> None:
        self.options = options or MLOptions()
        self.cache = cache or ModelCache()

        self.classifiers: list[Classifier] = []

        # 1. Rules (highest priority)
        self.rules = RuleMatcher(storage.rules, storage.categories)
        self.classifiers.append(self.rules)

        # 2. Trained model, when one is active
        self.predictor = Predictor(
            storage.transactions,
            storage.categories,
            storage.models,
            self.cache,
            top_features=self.options.top_features_count,
        )
        self.model = ModelClassifier(self.predictor, storage.categories)
        self.classifiers.append(self.model)

        # 3. Learning profile scoring (fallback)
        self.scoring = ScoringEngine(
            storage.profiles,
            storage.categories,
            threshold=self.options.scoring_threshold,
        )
        self.classifiers.append(self.scoring)

    async def categorize(self, transaction: Transaction) -> CategorizationResult | None:
        for classifier in self.classifiers:
            classifier_name = classifier.__class__.__name__
            logger.debug("Trying %s for: '%s...'", classifier_name, transaction.description[:50])

            result = await classifier.classify(transaction)

            if result:
                logger.debug(
                    "%s returned: '%s' (confidence: %.2f)",
                    classifier_name,
                    result.category.name,
                    result.confidence,
                )
                return result
            else:
                logger.debug("%s returned: None", classifier_name)

        logger.debug("No classifier matched for: '%s...'", transaction.description[:50])
        return None

    async def learn(self, transaction: Transaction, category_id: str) -> LearningProfile:
        """
        Extend the learning profile of the chosen category.

        The trained model only picks up new labels on the next training run.
        """
        return await self.scoring.learn(transaction, category_id)
