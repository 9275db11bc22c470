"""
Tests for the REST API.

Tests:
1. Strategy endpoints
2. Operation workflow over HTTP
3. Error to status code mapping
4. Scan, performance and health endpoints
"""

import pytest
from fastapi.testclient import TestClient

from app import create_app


OWNER_HEADERS = {"X-User-Id": "user-1"}
STRANGER_HEADERS = {"X-User-Id": "user-2"}
ADMIN_HEADERS = {"X-User-Id": "admin-1", "X-User-Role": "admin"}


def strategy_body(**overrides) -> dict:
    body = {
        "name": "Core portfolio",
        "target_allocations": [
            {"scope": "asset", "id": "DOT", "target_pct": "60"},
            {"scope": "asset", "id": "USDC", "target_pct": "40"},
        ],
    }
    body.update(overrides)
    return body


@pytest.fixture
def client(engine):
    with TestClient(create_app(engine=engine)) as test_client:
        yield test_client


@pytest.fixture
def active_strategy_id(client) -> str:
    created = client.post("/rebalancing/strategies", json=strategy_body(), headers=OWNER_HEADERS)
    strategy_id = created.json()["strategy_id"]
    client.post(f"/rebalancing/strategies/{strategy_id}/activate", headers=OWNER_HEADERS)
    return strategy_id


def plan(client, strategy_id: str) -> dict:
    response = client.post(
        "/rebalancing/operations",
        json={"strategy_id": strategy_id},
        headers=OWNER_HEADERS,
    )
    assert response.status_code == 201
    return response.json()


# =============================================================
# STRATEGIES
# =============================================================

class TestStrategyEndpoints:

    def test_create_returns_draft(self, client):
        response = client.post("/rebalancing/strategies", json=strategy_body(), headers=OWNER_HEADERS)

        assert response.status_code == 201
        data = response.json()
        assert data["status"] == "draft"
        assert data["owner_id"] == "user-1"
        assert data["target_allocations"][0]["target_pct"] == "60"
        assert data["version"] == 1

    def test_invalid_strategy_lists_every_violation(self, client):
        body = strategy_body(
            target_allocations=[{"scope": "asset", "id": "DOT", "target_pct": "90"}],
            triggers={"deviation_threshold_pct": "0.5"},
        )

        response = client.post("/rebalancing/strategies", json=body, headers=OWNER_HEADERS)

        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_ERROR"
        assert len(response.json()["details"]["errors"]) >= 2

    def test_identity_header_required(self, client):
        response = client.post("/rebalancing/strategies", json=strategy_body())

        assert response.status_code == 422

    def test_other_owner_forbidden(self, client, active_strategy_id):
        response = client.get(f"/rebalancing/strategies/{active_strategy_id}", headers=STRANGER_HEADERS)

        assert response.status_code == 403
        assert response.json()["code"] == "FORBIDDEN"

    def test_unknown_strategy(self, client):
        response = client.get("/rebalancing/strategies/missing", headers=OWNER_HEADERS)

        assert response.status_code == 404

    def test_activate_twice_conflicts(self, client, active_strategy_id):
        response = client.post(
            f"/rebalancing/strategies/{active_strategy_id}/activate", headers=OWNER_HEADERS
        )

        assert response.status_code == 409
        assert response.json()["code"] == "INVALID_STATE_TRANSITION"

    def test_list_for_caller(self, client, active_strategy_id):
        response = client.get("/rebalancing/strategies", headers=OWNER_HEADERS)

        assert response.json()["total"] == 1
        assert response.json()["strategies"][0]["status"] == "active"

    def test_stale_update_conflicts(self, client, active_strategy_id):
        url = f"/rebalancing/strategies/{active_strategy_id}"
        first = client.put(url, json=strategy_body(name="v2", version=2), headers=OWNER_HEADERS)
        second = client.put(url, json=strategy_body(name="v3", version=2), headers=OWNER_HEADERS)

        assert first.status_code == 200
        assert first.json()["version"] == 3
        assert second.status_code == 409
        assert second.json()["code"] == "CONCURRENT_MODIFICATION"

    def test_delete_blocked_then_allowed(self, client, active_strategy_id):
        operation = plan(client, active_strategy_id)
        url = f"/rebalancing/strategies/{active_strategy_id}"

        blocked = client.delete(url, headers=OWNER_HEADERS)
        client.post(f"/rebalancing/operations/{operation['operation_id']}/cancel", headers=OWNER_HEADERS)
        deleted = client.delete(url, headers=OWNER_HEADERS)

        assert blocked.status_code == 409
        assert deleted.status_code == 204


# =============================================================
# OPERATIONS
# =============================================================

class TestOperationEndpoints:

    def test_plan_stays_pending(self, client, active_strategy_id):
        operation = plan(client, active_strategy_id)

        assert operation["status"] == "pending"
        assert operation["planned"] is True
        assert operation["transactions"][0]["tx_type"] == "swap"

    def test_second_plan_conflicts(self, client, active_strategy_id):
        plan(client, active_strategy_id)

        response = client.post(
            "/rebalancing/operations",
            json={"strategy_id": active_strategy_id},
            headers=OWNER_HEADERS,
        )

        assert response.status_code == 409
        assert response.json()["details"]["active_operation_id"]

    def test_simulate_then_reject(self, client, active_strategy_id):
        operation_id = plan(client, active_strategy_id)["operation_id"]

        simulated = client.post(f"/rebalancing/operations/{operation_id}/simulate", headers=OWNER_HEADERS)
        blocked = client.post(f"/rebalancing/operations/{operation_id}/execute", headers=OWNER_HEADERS)
        rejected = client.post(
            f"/rebalancing/operations/{operation_id}/reject",
            json={"reason": "not now"},
            headers=OWNER_HEADERS,
        )

        assert simulated.json()["status"] == "waitingApproval"
        assert simulated.json()["simulation"]["result"] == "success"
        assert blocked.status_code == 409
        assert rejected.json()["status"] == "cancelled"
        assert rejected.json()["approval"]["rejection_reason"] == "not now"

    def test_approve_starts_execution(self, client, active_strategy_id):
        operation_id = plan(client, active_strategy_id)["operation_id"]
        client.post(f"/rebalancing/operations/{operation_id}/simulate", headers=OWNER_HEADERS)

        approved = client.post(f"/rebalancing/operations/{operation_id}/approve", headers=OWNER_HEADERS)

        assert approved.status_code == 200
        assert approved.json()["status"] == "executing"
        assert approved.json()["approval"]["approved_by"] == "user-1"

    def test_stranger_cannot_approve(self, client, active_strategy_id):
        operation_id = plan(client, active_strategy_id)["operation_id"]
        client.post(f"/rebalancing/operations/{operation_id}/simulate", headers=OWNER_HEADERS)

        response = client.post(f"/rebalancing/operations/{operation_id}/approve", headers=STRANGER_HEADERS)

        assert response.status_code == 403

    def test_override_requires_role(self, client, active_strategy_id):
        operation_id = plan(client, active_strategy_id)["operation_id"]
        client.post(f"/rebalancing/operations/{operation_id}/simulate", headers=OWNER_HEADERS)
        body = {"reason": "window closing", "force": True}

        denied = client.post(
            f"/rebalancing/operations/{operation_id}/override", json=body, headers=OWNER_HEADERS
        )
        forced = client.post(
            f"/rebalancing/operations/{operation_id}/override", json=body, headers=ADMIN_HEADERS
        )

        assert denied.status_code == 403
        assert forced.status_code == 200
        assert forced.json()["manual_override"]["overridden"] is True

    def test_execute_accepted(self, client):
        strategy = strategy_body(triggers={"manual_approval_required": False})
        strategy_id = client.post(
            "/rebalancing/strategies", json=strategy, headers=OWNER_HEADERS
        ).json()["strategy_id"]
        client.post(f"/rebalancing/strategies/{strategy_id}/activate", headers=OWNER_HEADERS)
        operation_id = plan(client, strategy_id)["operation_id"]

        response = client.post(f"/rebalancing/operations/{operation_id}/execute", headers=OWNER_HEADERS)

        assert response.status_code == 202
        assert response.json()["operation_id"] == operation_id

    def test_list_and_filter(self, client, active_strategy_id):
        operation_id = plan(client, active_strategy_id)["operation_id"]

        listed = client.get("/rebalancing/operations", headers=OWNER_HEADERS)
        filtered = client.get(
            "/rebalancing/operations", params={"status": "completed"}, headers=OWNER_HEADERS
        )

        assert [op["operation_id"] for op in listed.json()["operations"]] == [operation_id]
        assert filtered.json()["operations"] == []

    def test_unknown_operation(self, client):
        response = client.get("/rebalancing/operations/missing", headers=OWNER_HEADERS)

        assert response.status_code == 404
        assert response.json()["code"] == "NOT_FOUND"


# =============================================================
# SCAN, PERFORMANCE, HEALTH
# =============================================================

class TestServiceEndpoints:

    def test_threshold_scan(self, client, active_strategy_id):
        response = client.post("/rebalancing/check-thresholds", headers=ADMIN_HEADERS)

        assert response.status_code == 200
        assert response.json()["evaluated"] == 1
        assert response.json()["created"] == 1

    def test_performance_defaults(self, client):
        response = client.get("/rebalancing/performance", headers=OWNER_HEADERS)

        assert response.status_code == 200
        assert response.json()["window_days"] == 30
        assert response.json()["total_operations"] == 0
        assert response.json()["success_rate_pct"] == "0"

    def test_performance_window_validated(self, client):
        response = client.get(
            "/rebalancing/performance", params={"days": 0}, headers=OWNER_HEADERS
        )

        assert response.status_code == 400
        assert response.json()["details"]["field"] == "days"

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "ok"
        assert response.json()["scheduler"]["running"] is False
