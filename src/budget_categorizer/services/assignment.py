from collections.abc import Callable
from datetime import datetime

from budget_categorizer.domain.amounts import ROUNDING_TOLERANCE, split_total, splits_balance
from budget_categorizer.domain.snapshots import build_state_snapshot
from budget_categorizer.domain.timefmt import utcnow
from budget_categorizer.errors import CategorizerError, NotFoundError, ValidationError
from budget_categorizer.logger import get_logger
from budget_categorizer.models import (
    AssignmentOutcome,
    AuditAction,
    AuditEntry,
    Split,
    Transaction,
)
from budget_categorizer.storage.base import Storage

logger = get_logger(__name__)

DEFAULT_ACTOR = "user"


class AssignmentService:
    """Manual category assignment; every write goes through the audit log."""

    def __init__(self, storage: Storage, clock: Callable[[], datetime] = utcnow) -> None:
        self.storage = storage
        self.clock = clock

    async def _load(self, transaction_id: str) -> Transaction:
        transaction = await self.storage.transactions.get(transaction_id)
        if transaction is None:
            raise NotFoundError(f"Transaction {transaction_id} not found", transaction_id=transaction_id)
        return transaction

    async def _write(
        self,
        transaction: Transaction,
        splits: list[Split],
        action: AuditAction,
        actor: str,
        reason: str,
        expected_version: int | None,
    ) -> Transaction:
        version = transaction.version if expected_version is None else expected_version
        async with self.storage.atomic():
            updated = await self.storage.transactions.update_splits(transaction.id, splits, version)
            await self.storage.audit.append(AuditEntry(
                transaction_id=transaction.id,
                action=action,
                actor=actor,
                timestamp=self.clock(),
                before_state=build_state_snapshot(transaction),
                after_state=build_state_snapshot(updated),
                reason=reason,
            ))
        return updated

    async def assign(
        self,
        transaction_id: str,
        category_id: str,
        note: str | None = None,
        expected_version: int | None = None,
        actor: str = DEFAULT_ACTOR,
    ) -> Transaction:
        transaction = await self._load(transaction_id)
        category = await self.storage.categories.validate_belongs_to_account_year(
            category_id,
            transaction.account_id,
            transaction.date.year,
        )
        split = Split(category_id=category.id, amount=abs(transaction.amount), note=note)
        updated = await self._write(
            transaction,
            [split],
            AuditAction.ASSIGN,
            actor,
            f"Assigned to '{category.name}'",
            expected_version,
        )
        logger.info("[ASSIGN] Transaction %s -> '%s'", transaction_id, category.name)
        return updated

    async def split(
        self,
        transaction_id: str,
        splits: list[Split],
        expected_version: int | None = None,
        actor: str = DEFAULT_ACTOR,
    ) -> Transaction:
        if not splits:
            raise ValidationError("At least one split is required.", transaction_id=transaction_id)
        if any(split.amount <= 0 for split in splits):
            raise ValidationError("Split amounts must be positive.", transaction_id=transaction_id)

        transaction = await self._load(transaction_id)
        amounts = [split.amount for split in splits]
        if not splits_balance(amounts, transaction.amount):
            raise ValidationError(
                f"Split amounts must add up to {abs(transaction.amount):.2f} "
                f"(within {ROUNDING_TOLERANCE}).",
                transaction_id=transaction_id,
                expected_total=abs(transaction.amount),
                actual_total=split_total(amounts),
            )

        for split in splits:
            await self.storage.categories.validate_belongs_to_account_year(
                split.category_id,
                transaction.account_id,
                transaction.date.year,
            )

        updated = await self._write(
            transaction,
            splits,
            AuditAction.SPLIT,
            actor,
            f"Split across {len(splits)} categories",
            expected_version,
        )
        logger.info("[ASSIGN] Transaction %s split into %s parts", transaction_id, len(splits))
        return updated

    async def bulk_assign(
        self,
        transaction_ids: list[str],
        category_id: str,
        actor: str = DEFAULT_ACTOR,
    ) -> list[AssignmentOutcome]:
        outcomes: list[AssignmentOutcome] = []
        for transaction_id in transaction_ids:
            try:
                await self.assign(transaction_id, category_id, actor=actor)
            except CategorizerError as exc:
                outcomes.append(AssignmentOutcome(
                    transaction_id=transaction_id,
                    success=False,
                    error=exc.message,
                ))
                continue
            outcomes.append(AssignmentOutcome(transaction_id=transaction_id, success=True))

        failed = sum(1 for outcome in outcomes if not outcome.success)
        logger.info(
            "[ASSIGN] Bulk assignment to %s: %s succeeded, %s failed",
            category_id,
            len(outcomes) - failed,
            failed,
        )
        return outcomes

    async def history(self, transaction_id: str) -> list[AuditEntry]:
        await self._load(transaction_id)
        return await self.storage.audit.by_transaction(transaction_id)
