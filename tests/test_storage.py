from datetime import timedelta

import pytest
from conftest import NOW, make_transaction

from budget_categorizer.errors import ConflictError, NotFoundError
from budget_categorizer.models import AuditAction, AuditEntry, LabeledExample, ModelMetrics, Split
from budget_categorizer.storage.files import FileModelStore, FileProfileStore


def _metrics() -> ModelMetrics:
    return ModelMetrics(
        macro_accuracy=0.9,
        micro_accuracy=0.9,
        log_loss=0.2,
        f1_score=0.947,
        sample_size=20,
        category_count=2,
    )


@pytest.mark.anyio
async def test_update_splits_checks_version(storage) -> None:
    tx = await storage.transactions.add(make_transaction())
    updated = await storage.transactions.update_splits(tx.id, [Split(category_id="fuel", amount=42.5)], 0)
    assert updated.version == 1

    with pytest.raises(ConflictError):
        await storage.transactions.update_splits(tx.id, [], 0)
    with pytest.raises(NotFoundError):
        await storage.transactions.update_splits("missing", [], 0)


@pytest.mark.anyio
async def test_get_returns_a_copy(storage) -> None:
    tx = await storage.transactions.add(make_transaction())
    loaded = await storage.transactions.get(tx.id)
    loaded.splits.append(Split(category_id="fuel", amount=1.0))
    assert (await storage.transactions.get(tx.id)).splits == []


@pytest.mark.anyio
async def test_atomic_rolls_back_splits_and_audit(storage) -> None:
    tx = await storage.transactions.add(make_transaction())

    with pytest.raises(RuntimeError):
        async with storage.atomic():
            await storage.transactions.update_splits(tx.id, [Split(category_id="fuel", amount=42.5)], 0)
            await storage.audit.append(AuditEntry(
                transaction_id=tx.id,
                action=AuditAction.ASSIGN,
                actor="user",
                timestamp=NOW,
            ))
            raise RuntimeError("boom")

    restored = await storage.transactions.get(tx.id)
    assert restored.splits == []
    assert restored.version == 0
    assert await storage.audit.by_transaction(tx.id) == []


@pytest.mark.anyio
async def test_audit_history_is_newest_first(storage) -> None:
    first = await storage.audit.append(AuditEntry(
        transaction_id="tx", action=AuditAction.ASSIGN, actor="user", timestamp=NOW,
    ))
    second = await storage.audit.append(AuditEntry(
        transaction_id="tx", action=AuditAction.SPLIT, actor="user", timestamp=NOW,
    ))
    older = await storage.audit.append(AuditEntry(
        transaction_id="tx", action=AuditAction.ASSIGN, actor="user", timestamp=NOW - timedelta(days=1),
    ))

    history = await storage.audit.by_transaction("tx")
    assert [e.id for e in history] == [second.id, first.id, older.id]
    assert (await storage.audit.latest_by_transaction("tx")).id == second.id


@pytest.mark.anyio
async def test_query_respects_window(storage) -> None:
    await storage.audit.append(AuditEntry(
        transaction_id="a", action=AuditAction.ASSIGN, actor="user", timestamp=NOW - timedelta(days=40),
    ))
    recent = await storage.audit.append(AuditEntry(
        transaction_id="b", action=AuditAction.ASSIGN, actor="user", timestamp=NOW - timedelta(days=2),
    ))
    found = await storage.audit.query(lambda e: True, 30)
    assert [e.id for e in found] == [recent.id]


@pytest.mark.anyio
async def test_labeled_examples_keep_latest_per_transaction(storage) -> None:
    await storage.examples.add(LabeledExample(
        transaction_id="tx", category_id="old", created_at=NOW - timedelta(days=3),
    ))
    await storage.examples.add(LabeledExample(
        transaction_id="tx", category_id="new", created_at=NOW - timedelta(days=1),
    ))
    await storage.examples.add(LabeledExample(
        transaction_id="stale", category_id="x", created_at=NOW - timedelta(days=200),
    ))

    in_window = await storage.examples.in_window(90)
    assert [(e.transaction_id, e.category_id) for e in in_window] == [("tx", "new")]
    assert len(storage.examples.items) == 3


@pytest.mark.anyio
async def test_model_versions_and_active_model(storage) -> None:
    first = await storage.models.add_next(b"one", _metrics(), NOW, archived=False)
    second = await storage.models.add_next(b"two", _metrics(), NOW, archived=True)

    assert (first.version, second.version) == (1, 2)
    assert (await storage.models.active()).version == 1

    await storage.models.set_archived(2, False)
    assert (await storage.models.active()).version == 2


@pytest.mark.anyio
async def test_file_profile_store_persists(tmp_path) -> None:
    path = str(tmp_path / "profiles.json")
    store = FileProfileStore(path)
    await store.record("fuel", make_transaction("Shell gas station", counterparty="NL99"))

    reloaded = FileProfileStore(path)
    profile = await reloaded.get("fuel")
    assert profile.word_frequency == {"shell": 1, "gas": 1, "station": 1}
    assert profile.counterparty_frequency == {"NL99": 1}


def test_file_profile_store_ignores_corrupt_file(tmp_path) -> None:
    path = tmp_path / "profiles.json"
    path.write_text("{not json")
    assert FileProfileStore(str(path)).items == {}


@pytest.mark.anyio
async def test_file_model_store_persists(tmp_path) -> None:
    path = str(tmp_path / "models.pkl")
    store = FileModelStore(path)
    await store.add_next(b"payload", _metrics(), NOW, archived=False)

    reloaded = FileModelStore(path)
    active = await reloaded.active()
    assert active.version == 1
    assert active.payload == b"payload"
    assert (await reloaded.add_next(b"next", _metrics(), NOW, archived=False)).version == 2
