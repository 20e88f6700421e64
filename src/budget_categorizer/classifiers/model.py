import asyncio
import pickle
from collections.abc import Callable, Sequence

import numpy as np
from scipy import sparse
from sklearn.ensemble import GradientBoostingClassifier
from sklearn.feature_extraction.text import TfidfVectorizer
from sklearn.metrics import log_loss
from sklearn.preprocessing import OneHotEncoder

from budget_categorizer.classifiers.base import Classifier
from budget_categorizer.core.settings import MLOptions
from budget_categorizer.domain.features import TransactionFeatures, explain, extract_features
from budget_categorizer.errors import InternalError, TrainingCancelledError
from budget_categorizer.logger import get_logger
from budget_categorizer.models import (
    CategorizationResult,
    CategoryPrediction,
    ClassifierModel,
    ModelMetrics,
    Transaction,
)
from budget_categorizer.storage.base import CategoryStore, ModelStore, TransactionStore

logger = get_logger(__name__)


class FeatureEncoder:
    """Turns extracted transaction features into one sparse design matrix."""

    def __init__(self) -> None:
        # Tokens are already normalised; split on whitespace only.
        self.text: TfidfVectorizer | None = TfidfVectorizer(
            token_pattern=r"\S+",
            lowercase=False,
        )
        self.counterparty = OneHotEncoder(handle_unknown="ignore")

    def fit(self, rows: Sequence[TransactionFeatures]) -> "FeatureEncoder":
        texts = [row.description_text for row in rows]
        if any(texts):
            self.text.fit(texts)
        else:
            self.text = None
        self.counterparty.fit([[row.counterparty] for row in rows])
        return self

    def transform(self, rows: Sequence[TransactionFeatures]) -> sparse.csr_matrix:
        blocks = []
        if self.text is not None:
            blocks.append(self.text.transform([row.description_text for row in rows]))
        blocks.append(self.counterparty.transform([[row.counterparty] for row in rows]))
        numeric = np.array([row.numeric_row() for row in rows], dtype=float)
        blocks.append(sparse.csr_matrix(numeric))
        return sparse.hstack(blocks, format="csr")


class BoostedCategoryModel:
    """
    One-vs-all wrapper over binary gradient-boosted learners.

    One binary learner per category seen in training. Probabilities are the
    positive-class scores of each learner, normalised so each row sums to one.
    """

    def __init__(self, options: MLOptions) -> None:
        self.options = options
        self.encoder = FeatureEncoder()
        self.labels: list[str] = []
        self.estimators: list[GradientBoostingClassifier] = []

    def _new_estimator(self) -> GradientBoostingClassifier:
        return GradientBoostingClassifier(
            n_estimators=self.options.number_of_trees,
            max_leaf_nodes=self.options.number_of_leaves,
            min_samples_leaf=self.options.min_examples_per_leaf,
            learning_rate=self.options.learning_rate,
            random_state=self.options.random_seed,
        )

    def fit(
        self,
        rows: Sequence[TransactionFeatures],
        labels: Sequence[str],
        should_stop: Callable[[], bool] = lambda: False,
    ) -> "BoostedCategoryModel":
        X = self.encoder.fit(rows).transform(rows)
        y = np.asarray(labels)
        self.labels = sorted(set(labels))
        self.estimators = []

        for label in self.labels:
            if should_stop():
                raise TrainingCancelledError("Training was cancelled.")
            estimator = self._new_estimator()
            # The monitor hook is polled after every boosting stage.
            estimator.fit(X, y == label, monitor=lambda i, est, env: should_stop())
            if should_stop():
                raise TrainingCancelledError("Training was cancelled.")
            self.estimators.append(estimator)
        return self

    def predict_proba(self, rows: Sequence[TransactionFeatures]) -> np.ndarray:
        X = self.encoder.transform(rows)
        scores = np.column_stack([
            estimator.predict_proba(X)[:, 1] for estimator in self.estimators
        ])
        totals = scores.sum(axis=1, keepdims=True)
        uniform = np.full_like(scores, 1.0 / len(self.labels))
        safe_totals = np.where(totals > 0, totals, 1.0)
        return np.where(totals > 0, scores / safe_totals, uniform)

    def predict_one(self, features: TransactionFeatures) -> tuple[str, float]:
        probabilities = self.predict_proba([features])[0]
        index = int(np.argmax(probabilities))
        return self.labels[index], float(probabilities[index])


def evaluate_model(
    model: BoostedCategoryModel,
    rows: Sequence[TransactionFeatures],
    labels: Sequence[str],
) -> tuple[float, float, float]:
    """Return (macro accuracy, micro accuracy, log loss) over an evaluation set."""
    probabilities = model.predict_proba(rows)
    predicted = [model.labels[i] for i in np.argmax(probabilities, axis=1)]
    actual = list(labels)

    micro = float(np.mean([p == a for p, a in zip(predicted, actual)]))

    recalls = []
    for label in sorted(set(actual)):
        positions = [i for i, a in enumerate(actual) if a == label]
        hits = sum(1 for i in positions if predicted[i] == label)
        recalls.append(hits / len(positions))
    macro = float(np.mean(recalls))

    # Categories only seen in evaluation get a zero column.
    all_labels = sorted(set(model.labels) | set(actual))
    padded = np.zeros((len(actual), len(all_labels)))
    for column, label in enumerate(model.labels):
        padded[:, all_labels.index(label)] = probabilities[:, column]
    if len(all_labels) > 1:
        loss = float(log_loss(actual, padded, labels=all_labels))
    else:
        loss = 0.0
    return macro, micro, loss


def build_metrics(
    macro: float,
    micro: float,
    loss: float,
    sample_size: int,
    category_count: int,
) -> ModelMetrics:
    return ModelMetrics(
        macro_accuracy=macro,
        micro_accuracy=micro,
        log_loss=loss,
        f1_score=2 * macro / (1 + macro) if macro > 0 else 0.0,
        sample_size=sample_size,
        category_count=category_count,
    )


def serialize_model(model: BoostedCategoryModel) -> bytes:
    return pickle.dumps(model)


def deserialize_model(payload: bytes) -> BoostedCategoryModel:
    try:
        model = pickle.loads(payload)
    except (pickle.UnpicklingError, EOFError, AttributeError, ImportError, IndexError) as exc:
        raise InternalError("Stored model payload could not be loaded.", error=str(exc)) from exc
    if not isinstance(model, BoostedCategoryModel):
        raise InternalError(
            "Stored model payload is not a category model.",
            payload_type=type(model).__name__,
        )
    return model


class ModelCache:
    """Holds the loaded active model; readers always see a whole (version, model) pair."""

    def __init__(self) -> None:
        self._entry: tuple[int, BoostedCategoryModel] | None = None

    @property
    def version(self) -> int | None:
        entry = self._entry
        return entry[0] if entry else None

    def swap(self, version: int, model: BoostedCategoryModel) -> None:
        self._entry = (version, model)
        logger.info("[PREDICT] Model cache now serving version %s", version)

    def clear(self) -> None:
        self._entry = None

    async def resolve(self, record: ClassifierModel) -> BoostedCategoryModel:
        entry = self._entry
        if entry is not None and entry[0] == record.version:
            return entry[1]
        logger.info("[PREDICT] Loading model version %s from storage", record.version)
        model = await asyncio.to_thread(deserialize_model, record.payload)
        self.swap(record.version, model)
        return model


class Predictor:
    def __init__(
        self,
        transactions: TransactionStore,
        categories: CategoryStore,
        models: ModelStore,
        cache: ModelCache,
        top_features: int = 3,
    ) -> None:
        self.transactions = transactions
        self.categories = categories
        self.models = models
        self.cache = cache
        self.top_features = top_features

    async def predict(self, transaction_id: str) -> CategoryPrediction | None:
        transaction = await self.transactions.get(transaction_id)
        if transaction is None:
            logger.debug("[PREDICT] Transaction %s not found", transaction_id)
            return None
        return await self.predict_transaction(transaction)

    async def predict_transaction(self, transaction: Transaction) -> CategoryPrediction | None:
        record = await self.models.active()
        if record is None:
            return None

        model = await self.cache.resolve(record)
        features = extract_features(transaction)
        category_id, confidence = await asyncio.to_thread(model.predict_one, features)

        category = await self.categories.get(category_id)
        if category is None:
            logger.warning(
                "[PREDICT] Model v%s predicted unknown category %s",
                record.version,
                category_id,
            )
            return None

        return CategoryPrediction(
            category_id=category.id,
            category_name=category.name,
            confidence=confidence,
            top_features=explain(features, self.top_features),
            model_version=record.version,
        )


class ModelClassifier(Classifier):
    def __init__(self, predictor: Predictor, categories: CategoryStore) -> None:
        self.predictor = predictor
        self.categories = categories

    async def classify(self, transaction: Transaction) -> CategorizationResult | None:
        prediction = await self.predictor.predict_transaction(transaction)
        if prediction is None:
            return None
        category = await self.categories.get(prediction.category_id)
        if category is None:
            return None
        return CategorizationResult(
            category=category,
            confidence=prediction.confidence,
            source="model",
            model_version=prediction.model_version,
            explanation=prediction.top_features,
        )
