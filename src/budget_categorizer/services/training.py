import asyncio
import threading
from collections import Counter
from collections.abc import Callable
from datetime import datetime
from time import perf_counter
from typing import Any

from sklearn.model_selection import train_test_split

from budget_categorizer.classifiers.model import (
    BoostedCategoryModel,
    ModelCache,
    build_metrics,
    deserialize_model,
    evaluate_model,
    serialize_model,
)
from budget_categorizer.core import settings
from budget_categorizer.core.settings import MLOptions
from budget_categorizer.domain.features import TransactionFeatures, extract_features
from budget_categorizer.domain.timefmt import format_duration, utcnow
from budget_categorizer.errors import (
    InsufficientDataError,
    NotFoundError,
    TrainingCancelledError,
    ValidationError,
)
from budget_categorizer.logger import get_logger
from budget_categorizer.models import ActiveModelInfo, ModelMetrics, TrainingResult, TrainingStats
from budget_categorizer.storage.base import Storage

logger = get_logger(__name__)

TEST_FRACTION = 0.2


def validate_window(window_days: int) -> int:
    if not settings.MIN_WINDOW_DAYS <= window_days <= settings.MAX_WINDOW_DAYS:
        raise ValidationError(
            f"windowDays must be between {settings.MIN_WINDOW_DAYS} and {settings.MAX_WINDOW_DAYS}.",
            window_days=window_days,
        )
    return window_days


class ModelTrainer:
    def __init__(
        self,
        storage: Storage,
        cache: ModelCache,
        options: MLOptions | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.storage = storage
        self.cache = cache
        self.options = options or MLOptions()
        self.clock = clock
        self._lock = asyncio.Lock()
        # Set from the event loop, read from the worker thread running the fit.
        self._cancel_event = threading.Event()
        self.active = False
        self.status: dict[str, Any] = {"stage": "idle", "active": False}

    def _should_stop(self) -> bool:
        return self._cancel_event.is_set()

    def request_cancel(self) -> bool:
        if self.active:
            self._cancel_event.set()
            return True
        return False

    def get_status(self) -> dict[str, Any]:
        status = dict(self.status)
        status["active"] = self.active
        return status

    def _set_status(self, stage: str, **extra: Any) -> None:
        self.status.clear()
        self.status.update({"stage": stage, "active": self.active, **extra})

    def _fit(
        self,
        rows: list[TransactionFeatures],
        labels: list[str],
        should_stop: Callable[[], bool],
    ) -> tuple[BoostedCategoryModel, ModelMetrics]:
        indices = list(range(len(rows)))
        train_idx, test_idx = train_test_split(
            indices,
            test_size=TEST_FRACTION,
            random_state=self.options.random_seed,
        )
        train_labels = [labels[i] for i in train_idx]
        if len(set(train_labels)) < 2:
            raise InsufficientDataError(
                "Training partition needs at least two categories.",
                categories=sorted(set(train_labels)),
            )

        model = BoostedCategoryModel(self.options)
        model.fit([rows[i] for i in train_idx], train_labels, should_stop=should_stop)

        macro, micro, loss = evaluate_model(
            model,
            [rows[i] for i in test_idx],
            [labels[i] for i in test_idx],
        )
        metrics = build_metrics(
            macro,
            micro,
            loss,
            sample_size=len(rows),
            category_count=len(set(labels)),
        )
        return model, metrics

    async def _collect(self, window_days: int) -> tuple[list[TransactionFeatures], list[str]]:
        examples = await self.storage.examples.in_window(window_days)
        if not examples:
            raise InsufficientDataError(
                f"No labeled examples in the last {window_days} days.",
                window_days=window_days,
            )

        counts = Counter(example.category_id for example in examples)
        minimum = self.options.min_labeled_examples_per_category
        short = sorted(category for category, n in counts.items() if n < minimum)
        if len(short) == len(counts):
            raise InsufficientDataError(
                f"Every category has fewer than {minimum} labeled examples.",
                window_days=window_days,
                minimum_per_category=minimum,
                examples_per_category=dict(counts),
            )
        if short:
            logger.warning(
                "[TRAIN] %s categories below %s examples: %s",
                len(short),
                minimum,
                ", ".join(short),
            )

        rows: list[TransactionFeatures] = []
        labels: list[str] = []
        for example in examples:
            transaction = await self.storage.transactions.get(example.transaction_id)
            if transaction is None:
                logger.warning(
                    "[TRAIN] Labeled transaction %s no longer exists; skipping.",
                    example.transaction_id,
                )
                continue
            rows.append(extract_features(transaction))
            labels.append(example.category_id)

        if len(rows) < 2:
            raise InsufficientDataError(
                "At least two labeled transactions are required.",
                sample_size=len(rows),
            )
        return rows, labels

    async def train(self, window_days: int | None = None) -> TrainingResult:
        window = validate_window(
            self.options.training_window_days if window_days is None else window_days
        )

        async with self._lock:
            self.active = True
            self._cancel_event.clear()
            self._set_status("training", window_days=window)
            start = perf_counter()
            logger.info("[TRAIN] Starting training over the last %s days...", window)

            try:
                rows, labels = await self._collect(window)
                should_stop = self._should_stop
                model, metrics = await asyncio.to_thread(self._fit, rows, labels, should_stop)
                payload = await asyncio.to_thread(serialize_model, model)

                approved = metrics.f1_score >= self.options.min_f1_score_for_approval
                # A rejected model is stored archived so it never becomes active by itself.
                record = await self.storage.models.add_next(
                    payload,
                    metrics,
                    trained_at=self.clock(),
                    archived=not approved,
                )
                if approved:
                    self.cache.swap(record.version, model)
            except TrainingCancelledError:
                self.active = False
                self._set_status("cancelled")
                logger.info("[TRAIN] Training cancelled; no model stored.")
                raise
            except InsufficientDataError as exc:
                self.active = False
                self._set_status("failed", message=exc.message)
                logger.warning("[TRAIN] %s", exc.message)
                raise
            except Exception:
                self.active = False
                self._set_status("failed", message="Unexpected training failure")
                logger.exception("[TRAIN] Training failed.")
                raise
            finally:
                self.active = False
                self._cancel_event.clear()

            if approved:
                message = f"Model v{record.version} approved and activated."
            else:
                message = (
                    f"Model v{record.version} stored but not activated: F1 {metrics.f1_score:.4f} "
                    f"is below {self.options.min_f1_score_for_approval:.4f}."
                )
            logger.info(
                "[TRAIN] Complete in %s. Version: %s, samples: %s, categories: %s, "
                "macro: %.4f, micro: %.4f, log-loss: %.4f, F1: %.4f, approved: %s",
                format_duration(perf_counter() - start),
                record.version,
                metrics.sample_size,
                metrics.category_count,
                metrics.macro_accuracy,
                metrics.micro_accuracy,
                metrics.log_loss,
                metrics.f1_score,
                approved,
            )
            self._set_status("complete", version=record.version, approved=approved)
            return TrainingResult(
                version=record.version,
                trained_at=record.trained_at,
                metrics=metrics,
                approved=approved,
                message=message,
            )

    async def activate_model(self, version: int) -> ActiveModelInfo:
        async with self._lock:
            record = await self.storage.models.get(version)
            if record is None:
                raise NotFoundError(f"Model version {version} not found", version=version)

            record = await self.storage.models.set_archived(version, False)
            for other in await self.storage.models.all():
                if other.version > version and not other.archived:
                    await self.storage.models.set_archived(other.version, True)
                    logger.info("[TRAIN] Archived model v%s in favour of v%s", other.version, version)

            model = await asyncio.to_thread(deserialize_model, record.payload)
            self.cache.swap(record.version, model)
            logger.info("[TRAIN] Model v%s manually activated", version)
            return ActiveModelInfo(
                version=record.version,
                trained_at=record.trained_at,
                metrics=record.metrics,
            )

    async def archive_model(self, version: int) -> None:
        async with self._lock:
            await self.storage.models.set_archived(version, True)
            if self.cache.version == version:
                self.cache.clear()
            logger.info("[TRAIN] Model v%s archived", version)

    async def active_model(self) -> ActiveModelInfo | None:
        record = await self.storage.models.active()
        if record is None:
            return None
        return ActiveModelInfo(
            version=record.version,
            trained_at=record.trained_at,
            metrics=record.metrics,
        )

    async def training_stats(self, window_days: int | None = None) -> TrainingStats:
        window = validate_window(
            self.options.training_window_days if window_days is None else window_days
        )
        examples = await self.storage.examples.in_window(window)
        counts = Counter(example.category_id for example in examples)
        minimum = self.options.min_labeled_examples_per_category

        rated = [e for e in examples if e.accepted_suggestion is not None]
        acceptance = (
            sum(1 for e in rated if e.accepted_suggestion) / len(rated)
            if rated
            else None
        )
        return TrainingStats(
            window_days=window,
            total_examples=len(examples),
            examples_per_category=dict(counts),
            categories_below_minimum=sorted(c for c, n in counts.items() if n < minimum),
            minimum_per_category=minimum,
            acceptance_rate=acceptance,
        )
