# tests/test_http_app.py
"""
Tests for the ops HTTP surface: auth, request validation and the mapping
of engine errors to status codes. The scheduler is mocked; engine
behaviour is covered by the scheduler and dispatch loop tests.
"""
from datetime import datetime, timezone
from unittest.mock import AsyncMock, patch

import pytest
from fastapi.testclient import TestClient

from outreach.core.domain import Run, RunStatus
from outreach.core.errors import InvalidScheduleError, RunNotFoundError, RunStateError
from outreach.core.scheduler import RunScheduler
from outreach.transport.http_app import app, get_scheduler

TOKEN = "test-admin-token-1234567890123456"
AUTH = {"Authorization": f"Bearer {TOKEN}"}


@pytest.fixture
def scheduler():
    mock = AsyncMock(spec=RunScheduler)
    app.dependency_overrides[get_scheduler] = lambda: mock
    yield mock
    app.dependency_overrides.clear()


@pytest.fixture
def client():
    with patch("outreach.transport.security.settings") as mock_settings:
        mock_settings.admin_token = TOKEN
        yield TestClient(app, raise_server_exceptions=False)


def _run(status=RunStatus.RUNNING, scheduled_at=None):
    return Run(id="run-1", org_id="org-1", campaign_id="camp-1", status=status, scheduled_at=scheduled_at)


class TestPublicEndpoints:
    def test_health_needs_no_token(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "healthy"}
        assert "X-Request-ID" in resp.headers


class TestAuth:
    def test_missing_token(self, client, scheduler):
        resp = client.post("/runs/run-1/start", json={"org_id": "org-1"})
        assert resp.status_code == 401
        assert resp.json() == {"error": "Unauthorized"}
        assert resp.headers["WWW-Authenticate"] == "Bearer"
        scheduler.start_run.assert_not_called()

    def test_wrong_token(self, client, scheduler):
        resp = client.post(
            "/runs/run-1/start",
            json={"org_id": "org-1"},
            headers={"Authorization": "Bearer wrong"},
        )
        assert resp.status_code == 401

    def test_unconfigured_token_is_unavailable(self, scheduler):
        with patch("outreach.transport.security.settings") as mock_settings:
            mock_settings.admin_token = None
            client = TestClient(app)
            resp = client.post("/runs/run-1/start", json={"org_id": "org-1"}, headers=AUTH)
        assert resp.status_code == 503

    def test_metrics_requires_token(self, client):
        assert client.get("/metrics").status_code == 401
        resp = client.get("/metrics", headers=AUTH)
        assert resp.status_code == 200
        assert "counters" in resp.json()


class TestRunRoutes:
    def test_start(self, client, scheduler):
        scheduler.start_run.return_value = True
        resp = client.post("/runs/run-1/start", json={"org_id": "org-1"}, headers=AUTH)
        assert resp.status_code == 200
        assert resp.json() == {"run_id": "run-1", "started": True}
        scheduler.start_run.assert_awaited_once_with("run-1", "org-1")

    def test_start_requires_org(self, client, scheduler):
        resp = client.post("/runs/run-1/start", json={"org_id": ""}, headers=AUTH)
        assert resp.status_code == 422
        scheduler.start_run.assert_not_called()

    def test_schedule(self, client, scheduler):
        at = datetime(2026, 5, 1, 14, tzinfo=timezone.utc)
        scheduler.schedule_run.return_value = _run(RunStatus.SCHEDULED, scheduled_at=at)

        resp = client.post(
            "/runs/run-1/schedule",
            json={"org_id": "org-1", "scheduled_at": "2026-05-01T14:00:00Z"},
            headers=AUTH,
        )

        assert resp.status_code == 200
        assert resp.json() == {
            "run_id": "run-1",
            "status": "scheduled",
            "scheduled_at": "2026-05-01T14:00:00+00:00",
        }
        scheduler.schedule_run.assert_awaited_once_with("run-1", "2026-05-01T14:00:00Z", "org-1")

    def test_schedule_invalid_time(self, client, scheduler):
        scheduler.schedule_run.side_effect = InvalidScheduleError("Invalid schedule time: 'soon'")
        resp = client.post(
            "/runs/run-1/schedule",
            json={"org_id": "org-1", "scheduled_at": "soon"},
            headers=AUTH,
        )
        assert resp.status_code == 400
        assert resp.json() == {"error": "Invalid schedule time: 'soon'"}

    def test_cancel_schedule(self, client, scheduler):
        scheduler.cancel_schedule.return_value = _run(RunStatus.READY)
        resp = client.delete("/runs/run-1/schedule?org_id=org-1", headers=AUTH)
        assert resp.status_code == 200
        assert resp.json() == {"run_id": "run-1", "status": "ready"}

    def test_pause_conflict(self, client, scheduler):
        scheduler.pause_run.side_effect = RunStateError("Run run-1 cannot be paused from status ready")
        resp = client.post("/runs/run-1/pause", json={"org_id": "org-1"}, headers=AUTH)
        assert resp.status_code == 409

    def test_unknown_run(self, client, scheduler):
        scheduler.complete_run.side_effect = RunNotFoundError("Run run-1 not found")
        resp = client.post("/runs/run-1/complete", json={"org_id": "org-1"}, headers=AUTH)
        assert resp.status_code == 404
        assert resp.json() == {"error": "Run run-1 not found"}

    def test_complete(self, client, scheduler):
        scheduler.complete_run.return_value = False
        resp = client.post("/runs/run-1/complete", json={"org_id": "org-1"}, headers=AUTH)
        assert resp.json() == {"run_id": "run-1", "completed": False}

    def test_increment_metric(self, client, scheduler):
        scheduler.increment_metric.return_value = True
        resp = client.post(
            "/runs/run-1/metrics",
            json={"path": "calls.completed", "amount": 2},
            headers=AUTH,
        )
        assert resp.json() == {"run_id": "run-1", "path": "calls.completed", "applied": True}
        scheduler.increment_metric.assert_awaited_once_with("run-1", "calls.completed", 2)

    def test_increment_metric_rejected(self, client, scheduler):
        scheduler.increment_metric.side_effect = ValueError("Negative increment for calls.completed")
        resp = client.post(
            "/runs/run-1/metrics",
            json={"path": "calls.completed", "amount": -1},
            headers=AUTH,
        )
        assert resp.status_code == 400

    def test_check_scheduled(self, client, scheduler):
        scheduler.check_scheduled_runs.return_value = ["run-1", "run-2"]
        resp = client.post("/internal/check-scheduled", headers=AUTH)
        assert resp.json() == {"started": ["run-1", "run-2"], "count": 2}

    def test_unexpected_error_is_500(self, client, scheduler):
        scheduler.start_run.side_effect = RuntimeError("boom")
        resp = client.post("/runs/run-1/start", json={"org_id": "org-1"}, headers=AUTH)
        assert resp.status_code == 500
        assert "error" in resp.json()


class TestEngineNotStarted:
    def test_routes_unavailable_without_scheduler(self, client):
        app.state.scheduler = None
        resp = client.post("/runs/run-1/start", json={"org_id": "org-1"}, headers=AUTH)
        assert resp.status_code == 503
        assert resp.json() == {"error": "Dispatch engine not started"}
