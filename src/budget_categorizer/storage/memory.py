import asyncio
from collections.abc import AsyncIterator, Callable, Sequence
from contextlib import asynccontextmanager
from datetime import datetime
from itertools import count

from budget_categorizer.domain.amounts import amount_bucket
from budget_categorizer.domain.text import extract_words, normalize_counterparty
from budget_categorizer.domain.timefmt import as_utc, utcnow, window_start
from budget_categorizer.errors import ConflictError, NotFoundError, ValidationError
from budget_categorizer.logger import get_logger
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
from budget_categorizer.storage.base import AuditPredicate, sweep_key

logger = get_logger(__name__)

Clock = Callable[[], datetime]


class InMemoryTransactionStore:
    def __init__(self) -> None:
        self.items: dict[str, Transaction] = {}

    async def add(self, transaction: Transaction) -> Transaction:
        if transaction.id in self.items:
            raise ConflictError(
                f"Transaction {transaction.id} already exists",
                transaction_id=transaction.id,
            )
        self.items[transaction.id] = transaction.model_copy(deep=True)
        return transaction

    async def get(self, transaction_id: str) -> Transaction | None:
        transaction = self.items.get(transaction_id)
        return transaction.model_copy(deep=True) if transaction else None

    async def by_account(self, account_id: str) -> list[Transaction]:
        return [
            t.model_copy(deep=True)
            for t in self.items.values()
            if t.account_id == account_id
        ]

    async def unassigned(
        self,
        limit: int,
        account_ids: Sequence[str] = (),
        after: tuple[datetime, str] | None = None,
    ) -> list[Transaction]:
        pending = [
            t for t in self.items.values()
            if not t.archived
            and not t.splits
            and (not account_ids or t.account_id in account_ids)
        ]
        pending.sort(key=sweep_key)
        if after is not None:
            pending = [t for t in pending if sweep_key(t) > after]
        return [t.model_copy(deep=True) for t in pending[:limit]]

    async def update_splits(
        self,
        transaction_id: str,
        splits: list[Split],
        expected_version: int,
    ) -> Transaction:
        current = self.items.get(transaction_id)
        if current is None:
            raise NotFoundError(f"Transaction {transaction_id} not found", transaction_id=transaction_id)
        if current.version != expected_version:
            raise ConflictError(
                "Transaction was modified by another request. Reload and try again.",
                transaction_id=transaction_id,
                expected_version=expected_version,
                current_version=current.version,
            )
        # Replace rather than mutate so a rollback can restore the old object.
        updated = current.model_copy(
            update={
                "splits": [s.model_copy() for s in splits],
                "version": current.version + 1,
            },
            deep=True,
        )
        self.items[transaction_id] = updated
        return updated.model_copy(deep=True)


class InMemoryCategoryStore:
    def __init__(self) -> None:
        self.items: dict[str, Category] = {}

    async def add(self, category: Category) -> Category:
        self.items[category.id] = category
        return category

    async def get(self, category_id: str) -> Category | None:
        return self.items.get(category_id)

    async def all(self) -> list[Category]:
        return sorted(self.items.values(), key=lambda c: c.id)

    async def validate_belongs_to_account_year(
        self,
        category_id: str,
        account_id: str,
        year: int,
    ) -> Category:
        category = self.items.get(category_id)
        if category is None:
            raise NotFoundError(f"Category {category_id} not found", category_id=category_id)
        if category.account_id is not None and category.account_id != account_id:
            raise ValidationError(
                f"Category {category_id} belongs to another account",
                category_id=category_id,
                account_id=account_id,
            )
        if category.year is not None and category.year != year:
            raise ValidationError(
                f"Cannot assign {year} transaction to {category.year} budget plan. "
                f"Create a budget plan for {year} first.",
                category_id=category_id,
                transaction_year=year,
                budget_year=category.year,
            )
        return category


class InMemoryAuditLog:
    def __init__(self, clock: Clock = utcnow) -> None:
        self.clock = clock
        self.entries: list[AuditEntry] = []
        # Timestamps can collide; insertion sequence breaks the tie.
        self._sequence = count()
        self._order: dict[str, int] = {}

    async def append(self, entry: AuditEntry) -> AuditEntry:
        self.entries.append(entry)
        self._order[entry.id] = next(self._sequence)
        return entry

    def _newest_first(self, entries: list[AuditEntry]) -> list[AuditEntry]:
        return sorted(
            entries,
            key=lambda e: (as_utc(e.timestamp), self._order.get(e.id, -1)),
            reverse=True,
        )

    async def by_transaction(self, transaction_id: str) -> list[AuditEntry]:
        return self._newest_first([
            e for e in self.entries
            if e.transaction_id == transaction_id and not e.archived
        ])

    async def latest_by_transaction(self, transaction_id: str) -> AuditEntry | None:
        history = await self.by_transaction(transaction_id)
        return history[0] if history else None

    async def query(self, predicate: AuditPredicate, window_days: int) -> list[AuditEntry]:
        cutoff = window_start(self.clock(), window_days)
        return self._newest_first([
            e for e in self.entries
            if not e.archived and as_utc(e.timestamp) >= cutoff and predicate(e)
        ])


class InMemoryRuleStore:
    def __init__(self) -> None:
        self.items: dict[int, Rule] = {}

    async def add(self, rule: Rule) -> Rule:
        self.items[rule.id] = rule
        return rule

    async def all_active(self) -> list[Rule]:
        return [rule for rule in self.items.values() if rule.active]


class InMemoryLabeledExampleStore:
    def __init__(self, clock: Clock = utcnow) -> None:
        self.clock = clock
        self.items: list[LabeledExample] = []

    async def add(self, example: LabeledExample) -> LabeledExample:
        self.items.append(example)
        return example

    async def in_window(self, window_days: int) -> list[LabeledExample]:
        cutoff = window_start(self.clock(), window_days)
        latest: dict[str, LabeledExample] = {}
        # Later rows supersede earlier ones for the same transaction.
        for example in self.items:
            if as_utc(example.created_at) < cutoff:
                continue
            previous = latest.get(example.transaction_id)
            if previous is None or as_utc(example.created_at) >= as_utc(previous.created_at):
                latest[example.transaction_id] = example
        return sorted(latest.values(), key=lambda e: as_utc(e.created_at), reverse=True)

    async def latest_by_transaction(self, transaction_id: str) -> LabeledExample | None:
        matches = [e for e in self.items if e.transaction_id == transaction_id]
        if not matches:
            return None
        return max(matches, key=lambda e: as_utc(e.created_at))


class InMemoryModelStore:
    def __init__(self) -> None:
        self.items: dict[int, ClassifierModel] = {}
        self._version_lock = asyncio.Lock()

    async def _persist(self) -> None:
        """Hook for durable subclasses; called while the version lock is held."""

    async def add_next(
        self,
        payload: bytes,
        metrics: ModelMetrics,
        trained_at: datetime,
        archived: bool,
    ) -> ClassifierModel:
        async with self._version_lock:
            version = max(self.items, default=0) + 1
            model = ClassifierModel(
                payload=payload,
                version=version,
                trained_at=trained_at,
                metrics=metrics,
                archived=archived,
            )
            self.items[version] = model
            await self._persist()
            return model

    async def get(self, version: int) -> ClassifierModel | None:
        return self.items.get(version)

    async def active(self) -> ClassifierModel | None:
        candidates = [m for m in self.items.values() if not m.archived]
        if not candidates:
            return None
        return max(candidates, key=lambda m: m.version)

    async def all(self) -> list[ClassifierModel]:
        return sorted(self.items.values(), key=lambda m: m.version)

    async def set_archived(self, version: int, archived: bool) -> ClassifierModel:
        async with self._version_lock:
            model = self.items.get(version)
            if model is None:
                raise NotFoundError(f"Model version {version} not found", version=version)
            updated = model.model_copy(update={"archived": archived})
            self.items[version] = updated
            await self._persist()
            return updated


def _increment(counter: dict[str, int], key: str) -> None:
    counter[key] = counter.get(key, 0) + 1


class InMemoryProfileStore:
    def __init__(self) -> None:
        self.items: dict[str, LearningProfile] = {}
        self._lock = asyncio.Lock()

    async def _persist(self) -> None:
        """Hook for durable subclasses; called while the profile lock is held."""

    async def get(self, category_id: str) -> LearningProfile | None:
        profile = self.items.get(category_id)
        return profile.model_copy(deep=True) if profile else None

    async def all(self) -> list[LearningProfile]:
        return [p.model_copy(deep=True) for p in self.items.values()]

    async def record(self, category_id: str, transaction: Transaction) -> LearningProfile:
        async with self._lock:
            profile = self.items.get(category_id)
            if profile is None:
                profile = LearningProfile(category_id=category_id)
                self.items[category_id] = profile

            for word in extract_words(transaction.description):
                _increment(profile.word_frequency, word)
            counterparty = normalize_counterparty(transaction.counterparty)
            if counterparty:
                _increment(profile.counterparty_frequency, counterparty)
            _increment(profile.amount_bucket_frequency, amount_bucket(transaction.amount))

            await self._persist()
            return profile.model_copy(deep=True)


class InMemoryStorage:
    """All collaborators behind one write lock with rollback on failure."""

    def __init__(
        self,
        clock: Clock = utcnow,
        *,
        models: InMemoryModelStore | None = None,
        profiles: InMemoryProfileStore | None = None,
    ) -> None:
        self.clock = clock
        self.transactions = InMemoryTransactionStore()
        self.categories = InMemoryCategoryStore()
        self.audit = InMemoryAuditLog(clock)
        self.rules = InMemoryRuleStore()
        self.examples = InMemoryLabeledExampleStore(clock)
        self.models = models or InMemoryModelStore()
        self.profiles = profiles or InMemoryProfileStore()
        self._write_lock = asyncio.Lock()

    @asynccontextmanager
    async def atomic(self) -> AsyncIterator[None]:
        async with self._write_lock:
            transactions = dict(self.transactions.items)
            entry_count = len(self.audit.entries)
            try:
                yield
            except BaseException:
                self.transactions.items = transactions
                for entry in self.audit.entries[entry_count:]:
                    self.audit._order.pop(entry.id, None)
                del self.audit.entries[entry_count:]
                logger.debug("[STORE] Rolled back unit of work.")
                raise
