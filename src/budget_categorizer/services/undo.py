from collections.abc import Callable
from datetime import datetime

from budget_categorizer.core.settings import AutomationOptions
from budget_categorizer.domain.snapshots import build_state_snapshot
from budget_categorizer.domain.timefmt import as_utc, utcnow, window_start
from budget_categorizer.errors import CategorizerError, ConflictError, NotFoundError
from budget_categorizer.logger import get_logger
from budget_categorizer.models import AuditAction, AuditEntry, Transaction, UndoResult
from budget_categorizer.storage.base import Storage

logger = get_logger(__name__)

UNDO_ACTOR = "user"


def undo_reason(entry: AuditEntry) -> str:
    confidence = entry.confidence if entry.confidence is not None else 0.0
    if entry.model_version is None:
        return f"Reverted auto-applied assignment (rule match, confidence: {confidence:.4f})"
    return (
        f"Reverted auto-applied assignment "
        f"(model v{entry.model_version}, confidence: {confidence:.4f})"
    )


class UndoCoordinator:
    def __init__(
        self,
        storage: Storage,
        options: AutomationOptions | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.storage = storage
        self.options = options or AutomationOptions()
        self.clock = clock

    async def _undo_target(self, transaction_id: str) -> tuple[Transaction, AuditEntry]:
        transaction = await self.storage.transactions.get(transaction_id)
        if transaction is None:
            raise NotFoundError(
                f"Transaction {transaction_id} not found",
                transaction_id=transaction_id,
                reason="transaction_not_found",
            )

        history = await self.storage.audit.by_transaction(transaction_id)
        position, target = next(
            (
                (i, entry) for i, entry in enumerate(history)
                if entry.action == AuditAction.AUTO_APPLY and entry.auto_applied
            ),
            (None, None),
        )
        if target is None:
            raise NotFoundError(
                "This transaction was not auto-applied.",
                transaction_id=transaction_id,
                reason="not_auto_applied",
            )

        retention = self.options.undo_retention_days
        applied_at = as_utc(target.timestamp)
        if applied_at < window_start(self.clock(), retention):
            raise NotFoundError(
                f"The {retention}-day undo window for this auto-applied assignment has passed.",
                transaction_id=transaction_id,
                reason="window_expired",
                auto_applied_at=applied_at.isoformat(),
                retention_days=retention,
            )

        # History is newest first, so everything before the target came later.
        newer = history[:position]
        if any(entry.action == AuditAction.UNDO for entry in newer):
            raise NotFoundError(
                "This auto-applied assignment was already undone.",
                transaction_id=transaction_id,
                reason="already_undone",
            )

        edits = [
            entry for entry in newer
            if not entry.auto_applied and as_utc(entry.timestamp) > applied_at
        ]
        if edits:
            raise ConflictError(
                "The transaction was changed manually after it was auto-applied; "
                "review it instead of undoing.",
                transaction_id=transaction_id,
                reason="modified_after_auto_apply",
                modified_at=as_utc(edits[0].timestamp).isoformat(),
                modified_by=edits[0].actor,
            )
        return transaction, target

    async def can_undo(self, transaction_id: str) -> bool:
        try:
            await self._undo_target(transaction_id)
        except CategorizerError:
            return False
        return True

    async def undo(self, transaction_id: str, actor: str = UNDO_ACTOR) -> UndoResult:
        transaction, target = await self._undo_target(transaction_id)
        reason = undo_reason(target)

        async with self.storage.atomic():
            updated = await self.storage.transactions.update_splits(
                transaction.id,
                [],
                transaction.version,
            )
            await self.storage.audit.append(AuditEntry(
                transaction_id=transaction.id,
                action=AuditAction.UNDO,
                actor=actor,
                timestamp=self.clock(),
                before_state=build_state_snapshot(transaction),
                after_state=build_state_snapshot(updated),
                reason=reason,
                confidence=target.confidence,
                model_version=target.model_version,
            ))

        logger.info("[UNDO] Transaction %s: %s", transaction_id, reason)
        return UndoResult(
            transaction_id=transaction_id,
            undone_entry_id=target.id,
            model_version=target.model_version,
            confidence=target.confidence,
            message=reason,
        )
