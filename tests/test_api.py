from collections.abc import Generator

import pytest
from conftest import FakeClock
from fastapi.testclient import TestClient

from budget_categorizer.app import create_app
from budget_categorizer.core.settings import AutomationOptions, MLOptions
from budget_categorizer.storage.memory import InMemoryStorage


@pytest.fixture
def client() -> Generator[TestClient, None, None]:
    clock = FakeClock()
    app = create_app(
        storage=InMemoryStorage(clock),
        ml_options=MLOptions(),
        automation_options=AutomationOptions(),
        clock=clock,
        persist_settings=False,
    )
    with TestClient(app) as test_client:
        yield test_client


def _seed(client: TestClient) -> str:
    assert client.post("/api/categories", json={"id": "fuel", "name": "Fuel"}).status_code == 201
    assert client.post("/api/rules", json={
        "id": 1,
        "match_type": "contains",
        "pattern": "shell",
        "target_category_id": "fuel",
        "priority": 10,
    }).status_code == 201
    response = client.post("/api/transactions", json={
        "account_id": "acc-1",
        "date": "2024-06-14T10:00:00Z",
        "amount": -42.5,
        "description": "Shell gas station",
    })
    assert response.status_code == 201
    return response.json()["id"]


def test_suggestion_from_rule(client: TestClient) -> None:
    tx_id = _seed(client)
    response = client.get(f"/api/suggestions/{tx_id}")
    assert response.status_code == 200
    data = response.json()
    assert data["source"] == "rule"
    assert data["category"]["id"] == "fuel"
    assert data["confidence"] == 1.0


def test_unknown_transaction_is_404(client: TestClient) -> None:
    response = client.get("/api/suggestions/missing")
    assert response.status_code == 404
    assert response.json()["title"] == "Not found"


def test_feedback_validation_is_400(client: TestClient) -> None:
    tx_id = _seed(client)
    response = client.post(f"/api/suggestions/{tx_id}/feedback", json={
        "accepted": True,
        "final_category_id": "fuel",
        "suggestion_confidence": 2,
    })
    assert response.status_code == 400


def test_sweep_then_undo(client: TestClient) -> None:
    tx_id = _seed(client)

    sweep = client.post("/api/automation/sweep").json()
    assert sweep["applied"] == 1

    assert client.get(f"/api/automation/undo/{tx_id}").json()["can_undo"] is True
    first = client.post(f"/api/automation/undo/{tx_id}")
    assert first.status_code == 200

    second = client.post(f"/api/automation/undo/{tx_id}")
    assert second.status_code == 404
    assert second.json()["reason"] == "already_undone"

    stats = client.get("/api/automation/stats", params={"window_days": 30}).json()
    assert stats["total_auto_applied"] == 1
    assert stats["total_undone"] == 1
    assert stats["above_threshold"] is True

    history = client.get(f"/api/transactions/{tx_id}/history").json()
    assert [entry["action"] for entry in history] == ["Undo", "AutoApply"]


def test_stats_window_out_of_range(client: TestClient) -> None:
    assert client.get("/api/automation/stats", params={"window_days": 0}).status_code == 400
    assert client.get("/api/automation/alert", params={"window_days": 400}).status_code == 400


def test_training_without_data(client: TestClient) -> None:
    response = client.post("/api/ml/train", json={"window_days": 30})
    assert response.status_code == 400
    assert response.json()["title"] == "Insufficient training data"
    assert client.get("/api/ml/models").json() == []


def test_no_active_model(client: TestClient) -> None:
    assert client.get("/api/ml/model").status_code == 404
    tx_id = _seed(client)
    assert client.get(f"/api/ml/predict/{tx_id}").status_code == 404


def test_assign_and_split(client: TestClient) -> None:
    tx_id = _seed(client)

    assigned = client.post(f"/api/transactions/{tx_id}/assign", json={"category_id": "fuel"})
    assert assigned.status_code == 200
    assert assigned.json()["splits"][0]["amount"] == 42.5

    stale = client.post(f"/api/transactions/{tx_id}/assign", json={
        "category_id": "fuel",
        "expected_version": 0,
    })
    assert stale.status_code == 409

    bad_split = client.post(f"/api/transactions/{tx_id}/split", json={
        "splits": [{"category_id": "fuel", "amount": 40.0}],
    })
    assert bad_split.status_code == 400


def test_settings_round_trip(client: TestClient) -> None:
    current = client.get("/api/automation/settings").json()
    assert current["enabled"] is False
    assert current["minimum_confidence"] == 0.85

    updated = client.put("/api/automation/settings", json={
        **current,
        "minimum_confidence": 0.9,
        "excluded_category_ids": ["fuel"],
    })
    assert updated.status_code == 200
    assert client.get("/api/automation/settings").json()["excluded_category_ids"] == ["fuel"]

    invalid = client.put("/api/automation/settings", json={**current, "minimum_confidence": 1.5})
    assert invalid.status_code == 422


def test_transaction_ingest_rejects_assignments_and_duplicates(client: TestClient) -> None:
    payload = {
        "id": "tx-1",
        "account_id": "acc-1",
        "date": "2024-06-14T10:00:00Z",
        "amount": -50.0,
        "description": "Imported row",
    }
    with_splits = client.post("/api/transactions", json={
        **payload,
        "splits": [{"category_id": "ghost", "amount": 1.0}],
    })
    assert with_splits.status_code == 422

    created = client.post("/api/transactions", json=payload)
    assert created.status_code == 201
    assert created.json()["splits"] == []
    assert created.json()["version"] == 0

    duplicate = client.post("/api/transactions", json={**payload, "description": "Overwrite"})
    assert duplicate.status_code == 409
    assert client.get("/api/transactions/tx-1").json()["description"] == "Imported row"
