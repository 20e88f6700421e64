import asyncio
import contextlib
from collections.abc import Awaitable, Callable
from datetime import datetime

from budget_categorizer.core.settings import AutomationOptions
from budget_categorizer.domain.snapshots import build_state_snapshot
from budget_categorizer.domain.timefmt import utcnow
from budget_categorizer.errors import (
    CategorizerError,
    ConflictError,
    InsufficientDataError,
    TrainingCancelledError,
)
from budget_categorizer.logger import get_logger
from budget_categorizer.manager import CategorizerService
from budget_categorizer.models import (
    AuditAction,
    AuditEntry,
    AutoApplySettings,
    CategorizationResult,
    Split,
    SweepResult,
    TrainingResult,
    Transaction,
)
from budget_categorizer.services.training import ModelTrainer
from budget_categorizer.storage.base import Storage, sweep_key

logger = get_logger(__name__)

AUTO_APPLY_ACTOR = "AutoApplyService"

SKIP_ACCOUNT_NOT_ALLOWED = "account_not_allowed"
SKIP_NO_PREDICTION = "no_prediction"
SKIP_EXCLUDED_CATEGORY = "excluded_category"
SKIP_LOW_CONFIDENCE = "low_confidence"
SKIP_ALREADY_ASSIGNED = "already_assigned"
SKIP_PREVIOUSLY_UNDONE = "previously_undone"


def settings_from_options(options: AutomationOptions) -> AutoApplySettings:
    return AutoApplySettings(
        enabled=options.enabled,
        minimum_confidence=options.confidence_threshold,
        account_ids=list(options.account_ids),
        excluded_category_ids=list(options.excluded_category_ids),
        interval_minutes=options.interval_minutes,
    )


def auto_apply_reason(result: CategorizationResult) -> str:
    if result.source == "rule":
        return f"Auto-applied rule {result.rule_id} match"
    if result.model_version is not None:
        return f"Auto-applied ML suggestion (model v{result.model_version})"
    return f"Auto-applied {result.source} suggestion"


class AutomationOrchestrator:
    def __init__(
        self,
        storage: Storage,
        service: CategorizerService,
        options: AutomationOptions | None = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.storage = storage
        self.service = service
        self.options = options or AutomationOptions()
        self.current = settings_from_options(self.options)
        self.clock = clock
        self.sleep = sleep
        self.last_run_at: datetime | None = None
        # Where the next sweep resumes, so skipped rows cannot fill every batch.
        self._cursor: tuple[datetime, str] | None = None
        self._sweep_lock = asyncio.Lock()

    def get_settings(self) -> AutoApplySettings:
        return self.current.model_copy(deep=True)

    def update_settings(self, new_settings: AutoApplySettings) -> AutoApplySettings:
        self.current = new_settings.model_copy(deep=True)
        logger.info(
            "[AUTO-APPLY] Settings updated: enabled=%s, minimum confidence=%.2f, "
            "accounts=%s, excluded categories=%s, interval=%s min",
            self.current.enabled,
            self.current.minimum_confidence,
            self.current.account_ids or "all",
            self.current.excluded_category_ids or "none",
            self.current.interval_minutes,
        )
        return self.get_settings()

    def skip_reason(
        self,
        transaction: Transaction,
        result: CategorizationResult | None,
    ) -> str | None:
        settings = self.current
        if settings.account_ids and transaction.account_id not in settings.account_ids:
            return SKIP_ACCOUNT_NOT_ALLOWED
        if result is None:
            return SKIP_NO_PREDICTION
        if result.category.id in settings.excluded_category_ids:
            return SKIP_EXCLUDED_CATEGORY
        if result.confidence < settings.minimum_confidence:
            logger.debug(
                "[AUTO-APPLY] Confidence %.2f below threshold %.2f for transaction %s; suggested '%s'.",
                result.confidence,
                settings.minimum_confidence,
                transaction.id,
                result.category.name,
            )
            return SKIP_LOW_CONFIDENCE
        return None

    async def previously_undone(self, transaction_id: str) -> bool:
        """True when the latest auto-apply of the transaction was undone by the user."""
        for entry in await self.storage.audit.by_transaction(transaction_id):
            if entry.action == AuditAction.UNDO:
                return True
            if entry.action == AuditAction.AUTO_APPLY:
                return False
        return False

    async def _next_batch(self) -> list[Transaction]:
        accounts = self.current.account_ids
        size = self.options.batch_size
        batch = await self.storage.transactions.unassigned(size, accounts, after=self._cursor)
        if not batch and self._cursor is not None:
            self._cursor = None
            batch = await self.storage.transactions.unassigned(size, accounts)
        self._cursor = sweep_key(batch[-1]) if len(batch) == size else None
        return batch

    async def _apply(self, transaction: Transaction, result: CategorizationResult) -> Transaction:
        split = Split(category_id=result.category.id, amount=abs(transaction.amount))
        async with self.storage.atomic():
            updated = await self.storage.transactions.update_splits(
                transaction.id,
                [split],
                transaction.version,
            )
            await self.storage.audit.append(AuditEntry(
                transaction_id=transaction.id,
                action=AuditAction.AUTO_APPLY,
                actor=AUTO_APPLY_ACTOR,
                timestamp=self.clock(),
                before_state=build_state_snapshot(transaction),
                after_state=build_state_snapshot(updated),
                reason=auto_apply_reason(result),
                auto_applied=True,
                confidence=result.confidence,
                model_version=result.model_version,
            ))
        return updated

    async def _apply_with_retry(
        self,
        transaction: Transaction,
        result: CategorizationResult,
    ) -> str:
        """Return "applied", "failed" or a skip reason."""
        current = transaction
        for attempt in range(self.options.max_retries + 1):
            try:
                await self._apply(current, result)
                return "applied"
            except ConflictError:
                if attempt >= self.options.max_retries:
                    logger.error(
                        "[AUTO-APPLY] Giving up on transaction %s after %s attempts",
                        transaction.id,
                        attempt + 1,
                    )
                    return "failed"
                delay = self.options.retry_base_seconds * (2 ** attempt)
                logger.warning(
                    "[AUTO-APPLY] Conflict on transaction %s; retrying in %.1f s (attempt %s/%s)",
                    transaction.id,
                    delay,
                    attempt + 1,
                    self.options.max_retries,
                )
                await self.sleep(delay)
                refreshed = await self.storage.transactions.get(transaction.id)
                if refreshed is None or refreshed.is_assigned:
                    return SKIP_ALREADY_ASSIGNED
                current = refreshed
        return "failed"

    async def run_sweep(self) -> SweepResult:
        async with self._sweep_lock:
            result = SweepResult()
            confidences: list[float] = []
            batch = await self._next_batch()
            logger.info("[AUTO-APPLY] Sweep started over %s unassigned transactions", len(batch))

            for transaction in batch:
                result.processed += 1
                try:
                    prediction = None
                    if await self.previously_undone(transaction.id):
                        reason = SKIP_PREVIOUSLY_UNDONE
                    else:
                        prediction = await self.service.categorize(transaction)
                        reason = self.skip_reason(transaction, prediction)
                    if reason is None:
                        reason = await self._apply_with_retry(transaction, prediction)
                except CategorizerError as exc:
                    logger.error(
                        "[AUTO-APPLY] Transaction %s failed: %s",
                        transaction.id,
                        exc.message,
                    )
                    reason = "failed"
                except Exception:
                    logger.exception("[AUTO-APPLY] Unexpected error on transaction %s", transaction.id)
                    reason = "failed"

                if reason == "applied":
                    result.applied += 1
                    confidences.append(prediction.confidence)
                    logger.info(
                        "[AUTO-APPLY] Transaction %s: '%s' (confidence: %.2f >= %.2f, source: %s)",
                        transaction.id,
                        prediction.category.name,
                        prediction.confidence,
                        self.current.minimum_confidence,
                        prediction.source,
                    )
                elif reason == "failed":
                    result.failed += 1
                else:
                    result.skipped[reason] = result.skipped.get(reason, 0) + 1

            if confidences:
                result.average_confidence = sum(confidences) / len(confidences)
            self.last_run_at = self.clock()
            logger.info(
                "[AUTO-APPLY] Sweep complete. Processed: %s, applied: %s, skipped: %s, failed: %s",
                result.processed,
                result.applied,
                result.skipped,
                result.failed,
            )
            return result


class AutoApplyScheduler:
    """Runs the sweep on an interval while auto-apply is enabled."""

    def __init__(self, orchestrator: AutomationOrchestrator) -> None:
        self.orchestrator = orchestrator
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop())
        logger.info("[AUTO-APPLY] Scheduler started.")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        logger.info("[AUTO-APPLY] Scheduler stopped.")

    async def tick(self) -> SweepResult | None:
        if not self.orchestrator.current.enabled:
            logger.debug("[AUTO-APPLY] Disabled; skipping scheduled sweep.")
            return None
        try:
            return await self.orchestrator.run_sweep()
        except Exception:
            logger.exception("[AUTO-APPLY] Scheduled sweep failed.")
            return None

    async def _loop(self) -> None:
        while True:
            await self.tick()
            await asyncio.sleep(self.orchestrator.current.interval_minutes * 60)


class RetrainingScheduler:
    """Retrains the model over the configured window every few hours."""

    def __init__(self, trainer: ModelTrainer, options: AutomationOptions | None = None) -> None:
        self.trainer = trainer
        self.options = options or AutomationOptions()
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop())
        logger.info(
            "[RETRAIN] Scheduler started; retraining every %s hours.",
            self.options.retraining_interval_hours,
        )

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        logger.info("[RETRAIN] Scheduler stopped.")

    async def tick(self) -> TrainingResult | None:
        logger.info("[RETRAIN] Starting scheduled retraining.")
        try:
            result = await self.trainer.train()
        except InsufficientDataError as exc:
            logger.warning("[RETRAIN] Skipped: %s", exc.message)
            return None
        except TrainingCancelledError:
            logger.info("[RETRAIN] Scheduled retraining was cancelled.")
            return None
        except Exception:
            logger.exception("[RETRAIN] Scheduled retraining failed. Previous model remains active.")
            return None

        metrics = result.metrics
        if result.approved:
            logger.info(
                "[RETRAIN] Model v%s approved with F1 %.4f (%s samples, %s categories).",
                result.version,
                metrics.f1_score,
                metrics.sample_size,
                metrics.category_count,
            )
        else:
            logger.warning(
                "[RETRAIN] Model v%s rejected: F1 %.4f below %.4f. Previous model remains active.",
                result.version,
                metrics.f1_score,
                self.trainer.options.min_f1_score_for_approval,
            )
        return result

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.options.retraining_interval_hours * 3600)
            await self.tick()
