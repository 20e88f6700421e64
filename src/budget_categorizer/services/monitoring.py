from budget_categorizer.core import settings
from budget_categorizer.core.settings import AutomationOptions
from budget_categorizer.logger import get_logger
from budget_categorizer.models import (
    AuditAction,
    AuditEntry,
    AutoApplyHistoryItem,
    AutoApplyStats,
)
from budget_categorizer.services.training import validate_window
from budget_categorizer.services.undo import UndoCoordinator
from budget_categorizer.storage.base import Storage

logger = get_logger(__name__)

STATUS_ACCEPTED = "Accepted"
STATUS_UNDONE = "Undone"


def is_auto_apply(entry: AuditEntry) -> bool:
    return entry.action == AuditAction.AUTO_APPLY and entry.auto_applied


def is_auto_apply_undo(entry: AuditEntry) -> bool:
    return entry.action == AuditAction.UNDO and "auto-applied" in (entry.reason or "").lower()


class MonitoringReporter:
    def __init__(
        self,
        storage: Storage,
        undo: UndoCoordinator,
        options: AutomationOptions | None = None,
    ) -> None:
        self.storage = storage
        self.undo = undo
        self.options = options or AutomationOptions()

    async def stats(self, window_days: int = 30) -> AutoApplyStats:
        window = validate_window(window_days)
        applied = await self.storage.audit.query(is_auto_apply, window)
        undone = await self.storage.audit.query(is_auto_apply_undo, window)

        total_applied = len(applied)
        total_undone = len(undone)
        undo_rate = total_undone / total_applied if total_applied else 0.0

        confidences = [e.confidence for e in applied if e.confidence is not None]
        average_confidence = sum(confidences) / len(confidences) if confidences else 0.0

        threshold = self.options.undo_rate_alert_threshold
        above = undo_rate > threshold
        if above:
            logger.warning(
                "[MONITOR] Undo rate %.1f%% over the last %s days exceeds the %.1f%% alert threshold "
                "(%s of %s auto-applied assignments undone).",
                undo_rate * 100,
                window,
                threshold * 100,
                total_undone,
                total_applied,
            )

        return AutoApplyStats(
            window_days=window,
            total_auto_applied=total_applied,
            total_undone=total_undone,
            undo_rate=undo_rate,
            average_confidence=average_confidence,
            above_threshold=above,
            alert_threshold=threshold,
            last_run_at=applied[0].timestamp if applied else None,
        )

    async def undo_rate_alert(self, window_days: int = 30) -> bool:
        return (await self.stats(window_days)).above_threshold

    async def history(self, limit: int = 50) -> list[AutoApplyHistoryItem]:
        entries = await self.storage.audit.query(is_auto_apply, settings.MAX_WINDOW_DAYS)
        items: list[AutoApplyHistoryItem] = []
        for entry in entries[:limit]:
            transaction = await self.storage.transactions.get(entry.transaction_id)
            if transaction is None:
                continue

            trail = await self.storage.audit.by_transaction(entry.transaction_id)
            newer = trail[:next((i for i, e in enumerate(trail) if e.id == entry.id), 0)]
            # The undo that reverted this entry comes before any later auto-apply.
            markers = (AuditAction.UNDO, AuditAction.AUTO_APPLY)
            following = next((e for e in reversed(newer) if e.action in markers), None)
            undone = following is not None and following.action == AuditAction.UNDO
            # Only the latest auto-apply of a transaction can still be undone.
            latest = not any(is_auto_apply(e) for e in newer)
            undoable = latest and not undone and await self.undo.can_undo(transaction.id)

            category_id = transaction.splits[0].category_id if transaction.splits else None
            category = await self.storage.categories.get(category_id) if category_id else None

            items.append(AutoApplyHistoryItem(
                transaction_id=transaction.id,
                description=transaction.description,
                amount=transaction.amount,
                category_id=category_id,
                category_name=category.name if category else None,
                confidence=entry.confidence,
                model_version=entry.model_version,
                auto_applied_at=entry.timestamp,
                status=STATUS_UNDONE if undone else STATUS_ACCEPTED,
                can_undo=undoable,
            ))
        return items
