from datetime import datetime, timedelta, timezone

import pytest

from budget_categorizer.core.settings import AutomationOptions, MLOptions
from budget_categorizer.models import Category, Transaction
from budget_categorizer.storage.memory import InMemoryStorage

NOW = datetime(2024, 6, 15, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def storage(clock: FakeClock) -> InMemoryStorage:
    return InMemoryStorage(clock)


@pytest.fixture
def ml_options() -> MLOptions:
    # Small forests keep the suite fast; leaves of one sample let tiny sets split.
    return MLOptions(
        min_labeled_examples_per_category=10,
        number_of_trees=20,
        number_of_leaves=4,
        min_examples_per_leaf=1,
        learning_rate=0.3,
    )


@pytest.fixture
def automation_options() -> AutomationOptions:
    return AutomationOptions(retry_base_seconds=0.5, max_retries=2)


def make_transaction(
    description: str = "Shell gas station",
    amount: float = -42.5,
    counterparty: str | None = None,
    account_id: str = "acc-1",
    date: datetime = NOW - timedelta(days=1),
    **kwargs,
) -> Transaction:
    return Transaction(
        account_id=account_id,
        date=date,
        amount=amount,
        description=description,
        counterparty=counterparty,
        **kwargs,
    )


async def add_category(storage: InMemoryStorage, category_id: str, name: str | None = None) -> Category:
    return await storage.categories.add(Category(id=category_id, name=name or category_id.title()))
