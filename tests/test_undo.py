from datetime import timedelta

import pytest
from conftest import NOW, add_category, make_transaction

from budget_categorizer.errors import ConflictError, NotFoundError
from budget_categorizer.manager import CategorizerService
from budget_categorizer.models import AuditAction, AuditEntry, MatchType, Rule, Split
from budget_categorizer.services.assignment import AssignmentService
from budget_categorizer.services.automation import AutomationOrchestrator
from budget_categorizer.services.undo import UndoCoordinator


@pytest.fixture
def coordinator(storage, automation_options, clock) -> UndoCoordinator:
    return UndoCoordinator(storage, automation_options, clock)


async def auto_apply_one(storage, ml_options, automation_options, clock) -> str:
    await add_category(storage, "fuel", "Fuel")
    await storage.rules.add(Rule(
        id=1, match_type=MatchType.CONTAINS, pattern="shell", target_category_id="fuel",
    ))
    tx = await storage.transactions.add(make_transaction("Shell gas station"))
    orchestrator = AutomationOrchestrator(
        storage, CategorizerService(storage, ml_options), automation_options, clock,
    )
    assert (await orchestrator.run_sweep()).applied == 1
    return tx.id


@pytest.mark.anyio
async def test_undo_clears_splits_and_records_entry(
    storage, coordinator, ml_options, automation_options, clock
) -> None:
    tx_id = await auto_apply_one(storage, ml_options, automation_options, clock)
    assert await coordinator.can_undo(tx_id)

    clock.advance(hours=1)
    result = await coordinator.undo(tx_id)

    assert "auto-applied" in result.message
    stored = await storage.transactions.get(tx_id)
    assert stored.splits == []
    latest = await storage.audit.latest_by_transaction(tx_id)
    assert latest.action == AuditAction.UNDO
    assert latest.before_state is not None
    assert latest.after_state is not None
    assert not await coordinator.can_undo(tx_id)


@pytest.mark.anyio
async def test_second_undo_is_not_found_without_new_entry(
    storage, coordinator, ml_options, automation_options, clock
) -> None:
    tx_id = await auto_apply_one(storage, ml_options, automation_options, clock)
    await coordinator.undo(tx_id)

    with pytest.raises(NotFoundError) as exc_info:
        await coordinator.undo(tx_id)

    assert exc_info.value.detail["reason"] == "already_undone"
    undo_entries = [
        e for e in await storage.audit.by_transaction(tx_id) if e.action == AuditAction.UNDO
    ]
    assert len(undo_entries) == 1


@pytest.mark.anyio
async def test_manual_edit_after_auto_apply_conflicts(
    storage, coordinator, ml_options, automation_options, clock
) -> None:
    tx_id = await auto_apply_one(storage, ml_options, automation_options, clock)
    await add_category(storage, "travel", "Travel")

    clock.advance(minutes=5)
    await AssignmentService(storage, clock).assign(tx_id, "travel")

    assert not await coordinator.can_undo(tx_id)
    with pytest.raises(ConflictError) as exc_info:
        await coordinator.undo(tx_id)
    assert exc_info.value.detail["reason"] == "modified_after_auto_apply"
    assert (await storage.transactions.get(tx_id)).splits[0].category_id == "travel"


@pytest.mark.anyio
async def test_expired_auto_apply_cannot_be_undone(storage, coordinator) -> None:
    tx = await storage.transactions.add(make_transaction(
        splits=[Split(category_id="fuel", amount=42.5)],
    ))
    await storage.audit.append(AuditEntry(
        transaction_id=tx.id,
        action=AuditAction.AUTO_APPLY,
        actor="AutoApplyService",
        timestamp=NOW - timedelta(days=35),
        auto_applied=True,
        confidence=0.91,
        model_version=3,
    ))

    assert not await coordinator.can_undo(tx.id)
    with pytest.raises(NotFoundError) as exc_info:
        await coordinator.undo(tx.id)
    assert exc_info.value.detail["reason"] == "window_expired"


@pytest.mark.anyio
async def test_manual_assignment_is_not_undoable(storage, coordinator, clock) -> None:
    await add_category(storage, "fuel")
    tx = await storage.transactions.add(make_transaction())
    await AssignmentService(storage, clock).assign(tx.id, "fuel")

    with pytest.raises(NotFoundError) as exc_info:
        await coordinator.undo(tx.id)
    assert exc_info.value.detail["reason"] == "not_auto_applied"
    assert not await coordinator.can_undo("missing")


@pytest.mark.anyio
async def test_undo_reason_names_model_and_confidence(storage, coordinator) -> None:
    tx = await storage.transactions.add(make_transaction(
        splits=[Split(category_id="fuel", amount=42.5)],
    ))
    await storage.audit.append(AuditEntry(
        transaction_id=tx.id,
        action=AuditAction.AUTO_APPLY,
        actor="AutoApplyService",
        timestamp=NOW - timedelta(days=2),
        auto_applied=True,
        confidence=0.91,
        model_version=3,
    ))

    result = await coordinator.undo(tx.id)
    assert result.message == "Reverted auto-applied assignment (model v3, confidence: 0.9100)"
    assert result.model_version == 3
