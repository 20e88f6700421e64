"""
Contracts of the persistence collaborators.

The categorization core only talks to storage through these protocols; the
in-memory implementation in ``storage.memory`` is the reference used by the
app and the tests.
"""
from collections.abc import Callable, Sequence
from contextlib import AbstractAsyncContextManager
from datetime import datetime
from typing import Protocol

from budget_categorizer.domain.timefmt import as_utc
from budget_categorizer.models import (
    AuditEntry,
    Category,
    ClassifierModel,
    LabeledExample,
    LearningProfile,
    ModelMetrics,
    Rule,
    Split,
    Transaction,
)

AuditPredicate = Callable[[AuditEntry], bool]


def sweep_key(transaction: Transaction) -> tuple[datetime, str]:
    """Ordering of unassigned transactions for auto-apply batches."""
    return as_utc(transaction.date), transaction.id


class TransactionStore(Protocol):
    async def add(self, transaction: Transaction) -> Transaction: ...

    async def get(self, transaction_id: str) -> Transaction | None: ...

    async def by_account(self, account_id: str) -> list[Transaction]: ...

    async def unassigned(
        self,
        limit: int,
        account_ids: Sequence[str] = (),
        after: tuple[datetime, str] | None = None,
    ) -> list[Transaction]:
        """Oldest first by (date, id); `after` resumes past a previous batch."""
        ...

    async def update_splits(
        self,
        transaction_id: str,
        splits: list[Split],
        expected_version: int,
    ) -> Transaction:
        """Replace the splits; raises ConflictError when the version is stale."""
        ...


class CategoryStore(Protocol):
    async def add(self, category: Category) -> Category: ...

    async def get(self, category_id: str) -> Category | None: ...

    async def all(self) -> list[Category]: ...

    async def validate_belongs_to_account_year(
        self,
        category_id: str,
        account_id: str,
        year: int,
    ) -> Category: ...


class AuditLogStore(Protocol):
    async def append(self, entry: AuditEntry) -> AuditEntry: ...

    async def latest_by_transaction(self, transaction_id: str) -> AuditEntry | None: ...

    async def by_transaction(self, transaction_id: str) -> list[AuditEntry]:
        """Entries for one transaction, newest first."""
        ...

    async def query(self, predicate: AuditPredicate, window_days: int) -> list[AuditEntry]: ...


class RuleStore(Protocol):
    async def add(self, rule: Rule) -> Rule: ...

    async def all_active(self) -> list[Rule]: ...


class LabeledExampleStore(Protocol):
    async def add(self, example: LabeledExample) -> LabeledExample: ...

    async def in_window(self, window_days: int) -> list[LabeledExample]:
        """Latest example per transaction created within the window."""
        ...

    async def latest_by_transaction(self, transaction_id: str) -> LabeledExample | None: ...


class ModelStore(Protocol):
    async def add_next(
        self,
        payload: bytes,
        metrics: ModelMetrics,
        trained_at: datetime,
        archived: bool,
    ) -> ClassifierModel:
        """Store a model under ``max(version) + 1``, assigned atomically."""
        ...

    async def get(self, version: int) -> ClassifierModel | None: ...

    async def active(self) -> ClassifierModel | None:
        """Highest version that is not archived."""
        ...

    async def all(self) -> list[ClassifierModel]: ...

    async def set_archived(self, version: int, archived: bool) -> ClassifierModel: ...


class LearningProfileStore(Protocol):
    async def get(self, category_id: str) -> LearningProfile | None: ...

    async def all(self) -> list[LearningProfile]: ...

    async def record(self, category_id: str, transaction: Transaction) -> LearningProfile: ...


class Storage(Protocol):
    transactions: TransactionStore
    categories: CategoryStore
    audit: AuditLogStore
    rules: RuleStore
    examples: LabeledExampleStore
    models: ModelStore
    profiles: LearningProfileStore

    def atomic(self) -> AbstractAsyncContextManager[None]:
        """Split writes and audit appends inside commit or roll back together."""
        ...
