from datetime import timedelta

import pytest
from conftest import NOW, add_category, make_transaction

from budget_categorizer.core.settings import AutomationOptions
from budget_categorizer.errors import ConflictError
from budget_categorizer.manager import CategorizerService
from budget_categorizer.models import AuditAction, AutoApplySettings, LearningProfile, MatchType, Rule
from budget_categorizer.services.automation import AutoApplyScheduler, AutomationOrchestrator
from budget_categorizer.services.undo import UndoCoordinator


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def sleeper() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def orchestrator(storage, ml_options, automation_options, clock, sleeper) -> AutomationOrchestrator:
    service = CategorizerService(storage, ml_options)
    return AutomationOrchestrator(storage, service, automation_options, clock, sleep=sleeper)


async def seed_fuel_rule(storage) -> None:
    await add_category(storage, "fuel", "Fuel")
    await storage.rules.add(Rule(
        id=1,
        match_type=MatchType.CONTAINS,
        pattern="shell",
        target_category_id="fuel",
        priority=10,
    ))


@pytest.mark.anyio
async def test_sweep_applies_rule_match(orchestrator, storage) -> None:
    await seed_fuel_rule(storage)
    tx = await storage.transactions.add(make_transaction("Shell gas station", amount=-42.5))

    result = await orchestrator.run_sweep()

    assert result.processed == 1
    assert result.applied == 1
    assert result.average_confidence == pytest.approx(1.0)

    stored = await storage.transactions.get(tx.id)
    assert len(stored.splits) == 1
    assert stored.splits[0].category_id == "fuel"
    assert stored.splits[0].amount == pytest.approx(42.5)

    entry = await storage.audit.latest_by_transaction(tx.id)
    assert entry.action == AuditAction.AUTO_APPLY
    assert entry.auto_applied
    assert entry.confidence == pytest.approx(1.0)
    assert entry.actor == "AutoApplyService"
    assert orchestrator.last_run_at == NOW


@pytest.mark.anyio
async def test_sweep_skip_reasons(orchestrator, storage) -> None:
    await seed_fuel_rule(storage)
    await add_category(storage, "groceries", "Groceries")
    storage.profiles.items["groceries"] = LearningProfile(
        category_id="groceries",
        word_frequency={"bakery": 1, "bread": 1},
    )
    orchestrator.update_settings(AutoApplySettings(
        minimum_confidence=0.85,
        account_ids=["acc-1"],
        excluded_category_ids=["fuel"],
    ))

    await storage.transactions.add(make_transaction("Shell", account_id="acc-2"))
    await storage.transactions.add(make_transaction("Unknown merchant"))
    await storage.transactions.add(make_transaction("Shell gas station"))
    # Word score only: 0.5 total, under the auto-apply bar but above the suggestion bar.
    await storage.transactions.add(make_transaction("bakery bread", amount=-3))

    result = await orchestrator.run_sweep()

    # Accounts outside the allow-list are filtered before the batch is taken.
    assert result.processed == 3
    assert result.applied == 0
    assert result.skipped == {
        "no_prediction": 1,
        "excluded_category": 1,
        "low_confidence": 1,
    }
    assert orchestrator.skip_reason(make_transaction("Shell", account_id="acc-2"), None) == (
        "account_not_allowed"
    )


@pytest.mark.anyio
async def test_sweep_only_touches_unassigned_in_batches(storage, ml_options, clock, sleeper) -> None:
    await seed_fuel_rule(storage)
    for days in range(3):
        await storage.transactions.add(make_transaction("Shell", date=NOW - timedelta(days=days + 1)))
    orchestrator = AutomationOrchestrator(
        storage,
        CategorizerService(storage, ml_options),
        AutomationOptions(batch_size=2),
        clock,
        sleep=sleeper,
    )

    assert (await orchestrator.run_sweep()).applied == 2
    assert (await orchestrator.run_sweep()).applied == 1
    assert (await orchestrator.run_sweep()).processed == 0


@pytest.mark.anyio
async def test_sweep_retries_on_conflict(orchestrator, storage, sleeper, monkeypatch) -> None:
    await seed_fuel_rule(storage)
    tx = await storage.transactions.add(make_transaction("Shell gas station"))

    original = storage.transactions.update_splits
    calls: list[int] = []

    async def flaky(transaction_id, splits, expected_version):
        calls.append(expected_version)
        if len(calls) == 1:
            raise ConflictError("stale")
        return await original(transaction_id, splits, expected_version)

    monkeypatch.setattr(storage.transactions, "update_splits", flaky)

    result = await orchestrator.run_sweep()

    assert result.applied == 1
    assert sleeper.delays == [0.5]
    assert len(calls) == 2
    assert len(await storage.audit.by_transaction(tx.id)) == 1


@pytest.mark.anyio
async def test_sweep_gives_up_after_max_retries(orchestrator, storage, sleeper, monkeypatch) -> None:
    await seed_fuel_rule(storage)
    tx = await storage.transactions.add(make_transaction("Shell gas station"))

    async def always_stale(transaction_id, splits, expected_version):
        raise ConflictError("stale")

    monkeypatch.setattr(storage.transactions, "update_splits", always_stale)

    result = await orchestrator.run_sweep()

    assert result.failed == 1
    assert sleeper.delays == [0.5, 1.0]
    assert await storage.audit.by_transaction(tx.id) == []


@pytest.mark.anyio
async def test_scheduler_tick_respects_enabled_flag(orchestrator, storage) -> None:
    await seed_fuel_rule(storage)
    await storage.transactions.add(make_transaction("Shell gas station"))
    scheduler = AutoApplyScheduler(orchestrator)

    assert await scheduler.tick() is None

    orchestrator.update_settings(AutoApplySettings(enabled=True))
    result = await scheduler.tick()
    assert result is not None
    assert result.applied == 1


@pytest.mark.anyio
async def test_scheduler_start_and_stop(orchestrator) -> None:
    scheduler = AutoApplyScheduler(orchestrator)
    scheduler.start()
    assert scheduler.running
    await scheduler.stop()
    assert not scheduler.running


def _batched(storage, ml_options, clock, sleeper, **options) -> AutomationOrchestrator:
    return AutomationOrchestrator(
        storage,
        CategorizerService(storage, ml_options),
        AutomationOptions(**options),
        clock,
        sleep=sleeper,
    )


@pytest.mark.anyio
async def test_undone_transaction_is_not_applied_again(
    orchestrator, storage, automation_options, clock,
) -> None:
    await seed_fuel_rule(storage)
    tx = await storage.transactions.add(make_transaction("Shell gas station"))

    assert (await orchestrator.run_sweep()).applied == 1
    await UndoCoordinator(storage, automation_options, clock).undo(tx.id)
    clock.advance(minutes=15)

    result = await orchestrator.run_sweep()

    assert result.applied == 0
    assert result.skipped == {"previously_undone": 1}
    assert not (await storage.transactions.get(tx.id)).is_assigned
    history = await storage.audit.by_transaction(tx.id)
    assert [entry.action for entry in history] == [AuditAction.UNDO, AuditAction.AUTO_APPLY]


@pytest.mark.anyio
async def test_other_accounts_do_not_fill_the_batch(storage, ml_options, clock, sleeper) -> None:
    await seed_fuel_rule(storage)
    for days in range(3):
        await storage.transactions.add(make_transaction(
            "Shell", account_id="other", date=NOW - timedelta(days=10 + days),
        ))
    eligible = await storage.transactions.add(make_transaction("Shell gas station"))
    orchestrator = _batched(storage, ml_options, clock, sleeper, batch_size=3, account_ids=("acc-1",))

    result = await orchestrator.run_sweep()

    assert result.processed == 1
    assert result.applied == 1
    assert (await storage.transactions.get(eligible.id)).is_assigned


@pytest.mark.anyio
async def test_skipped_transactions_do_not_block_later_ones(storage, ml_options, clock, sleeper) -> None:
    await seed_fuel_rule(storage)
    for days in range(3):
        await storage.transactions.add(make_transaction(
            "Unknown merchant", date=NOW - timedelta(days=10 + days),
        ))
    eligible = await storage.transactions.add(make_transaction("Shell gas station"))
    orchestrator = _batched(storage, ml_options, clock, sleeper, batch_size=3)

    first = await orchestrator.run_sweep()
    assert first.processed == 3
    assert first.skipped == {"no_prediction": 3}

    second = await orchestrator.run_sweep()
    assert second.applied == 1
    assert (await storage.transactions.get(eligible.id)).is_assigned

    # The next sweep starts over from the oldest pending transaction.
    third = await orchestrator.run_sweep()
    assert third.processed == 3
    assert third.applied == 0
