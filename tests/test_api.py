"""HTTP API tests with the store and scheduler swapped for test doubles."""

from unittest.mock import AsyncMock, MagicMock

import pytest
import redis
from fastapi.testclient import TestClient
from sqlmodel import Session

from trailstop.api.deps import (
    get_active_scheduler,
    get_optional_scheduler,
    get_store,
    get_tick_runner,
)
from trailstop.database import get_session
from trailstop.engine.tick import TickRunner
from trailstop.main import app
from trailstop.models.trailing_stop import PositionStatus


@pytest.fixture
def scheduler():
    scheduler = MagicMock()
    scheduler.name = "poller"
    scheduler.status.return_value = {"mode": "poller", "running": True, "job_count": 0, "jobs": []}
    return scheduler


@pytest.fixture
def client(engine, store, prices, scheduler):
    def _session():
        with Session(engine) as session:
            yield session

    app.dependency_overrides[get_store] = lambda: store
    app.dependency_overrides[get_active_scheduler] = lambda: scheduler
    app.dependency_overrides[get_optional_scheduler] = lambda: scheduler
    app.dependency_overrides[get_session] = _session
    app.dependency_overrides[get_tick_runner] = lambda: TickRunner(
        store, prices, AsyncMock(), scheduler_name="manual"
    )
    yield TestClient(app)
    app.dependency_overrides.clear()


NEW_POSITION = {
    "symbol": "btc/usdt",
    "side": "sell",
    "entry_price": 100.0,
    "quantity": 0.5,
    "trailing_percent": 5,
}


class TestCreate:
    def test_create_active_position(self, client, store, scheduler):
        resp = client.post("/api/positions", json=NEW_POSITION)
        assert resp.status_code == 201
        body = resp.json()
        assert body["status"] == "active"
        assert body["state_key"].startswith("BTCUSDT-")

        saved = store.get(body["state_key"])
        assert saved.symbol == "BTC/USDT"
        assert saved.trigger_price == 95.0
        scheduler.schedule.assert_called_once_with(body["state_key"])

    def test_create_pending_position(self, client):
        resp = client.post("/api/positions", json={**NEW_POSITION, "activation_price": 110.0})
        assert resp.status_code == 201
        assert resp.json()["status"] == "pending_activation"

    @pytest.mark.parametrize("field, value", [
        ("trailing_percent", 0),
        ("trailing_percent", -1),
        ("entry_price", 0),
        ("side", "hold"),
        ("symbol", "  "),
    ])
    def test_invalid_input_rejected(self, client, scheduler, field, value):
        resp = client.post("/api/positions", json={**NEW_POSITION, field: value})
        assert resp.status_code == 422
        scheduler.schedule.assert_not_called()

    def test_schedule_failure_is_503_and_row_is_errored(self, client, store, scheduler):
        scheduler.schedule.side_effect = ConnectionError("broker gone")
        resp = client.post("/api/positions", json=NEW_POSITION)
        assert resp.status_code == 503
        assert store.count_by_status() == {"error": 1}


class TestRead:
    def test_get_and_404(self, client, store, position_factory):
        pos = store.upsert(position_factory())
        resp = client.get(f"/api/positions/{pos.state_key}")
        assert resp.status_code == 200
        assert resp.json()["trigger_price"] == 95.0

        assert client.get("/api/positions/unknown").status_code == 404

    def test_list_excludes_closed_and_is_newest_first(self, client, store, position_factory):
        older = store.upsert(position_factory())
        errored = store.upsert(position_factory(status=PositionStatus.ERROR, error_message="boom"))
        store.upsert(position_factory(status=PositionStatus.TRIGGERED))
        store.upsert(position_factory(status=PositionStatus.CANCELLED))

        keys = [p["state_key"] for p in client.get("/api/positions").json()]
        assert keys == [errored.state_key, older.state_key]

    def test_list_status_filter(self, client, store, position_factory):
        store.upsert(position_factory())
        triggered = store.upsert(position_factory(status=PositionStatus.TRIGGERED))
        resp = client.get("/api/positions", params={"status": "triggered"})
        assert [p["state_key"] for p in resp.json()] == [triggered.state_key]


class TestCancel:
    def test_cancel_active(self, client, store, scheduler, position_factory):
        pos = store.upsert(position_factory())
        resp = client.post(f"/api/positions/{pos.state_key}/cancel")
        assert resp.status_code == 200
        assert resp.json()["status"] == "cancelled"
        scheduler.unschedule.assert_called_once_with(pos.state_key)

    def test_cancel_twice_is_noop(self, client, store, position_factory):
        pos = store.upsert(position_factory())
        client.post(f"/api/positions/{pos.state_key}/cancel")
        resp = client.post(f"/api/positions/{pos.state_key}/cancel")
        assert resp.status_code == 200
        assert resp.json()["status"] == "cancelled"

    @pytest.mark.parametrize("status", [PositionStatus.TRIGGERED, PositionStatus.ERROR])
    def test_cancel_closed_position_conflicts(self, client, store, position_factory, status):
        pos = store.upsert(position_factory(status=status))
        resp = client.post(f"/api/positions/{pos.state_key}/cancel")
        assert resp.status_code == 409
        assert store.get(pos.state_key).status == status

    def test_cancel_unknown(self, client):
        assert client.post("/api/positions/unknown/cancel").status_code == 404

    def test_cancel_succeeds_when_scheduler_is_unreachable(self, client, store, scheduler, position_factory):
        pos = store.upsert(position_factory())
        scheduler.unschedule.side_effect = redis.ConnectionError("Connection refused")

        resp = client.post(f"/api/positions/{pos.state_key}/cancel")

        assert resp.status_code == 200
        assert resp.json()["status"] == "cancelled"
        assert store.get(pos.state_key).status == PositionStatus.CANCELLED

    def test_cancel_without_active_scheduler(self, client, store, position_factory):
        pos = store.upsert(position_factory())
        app.dependency_overrides[get_optional_scheduler] = lambda: None

        resp = client.post(f"/api/positions/{pos.state_key}/cancel")

        assert resp.status_code == 200
        assert store.get(pos.state_key).status == PositionStatus.CANCELLED


class TestRecreate:
    def test_recreate_errored_position(self, client, store, scheduler, position_factory):
        old = store.upsert(position_factory(status=PositionStatus.ERROR, error_message="boom"))
        resp = client.post(f"/api/positions/{old.state_key}/recreate")

        assert resp.status_code == 201
        new_key = resp.json()["state_key"]
        assert new_key != old.state_key
        assert store.get(new_key).status == PositionStatus.ACTIVE
        assert store.get(old.state_key).status == PositionStatus.ERROR
        scheduler.schedule.assert_called_once_with(new_key)

    def test_recreate_live_position_conflicts(self, client, store, position_factory):
        pos = store.upsert(position_factory())
        assert client.post(f"/api/positions/{pos.state_key}/recreate").status_code == 409


class TestSystem:
    def test_health(self, client):
        assert client.get("/api/system/health").json() == {"status": "ok"}

    def test_scheduler_status(self, client):
        assert client.get("/api/system/scheduler").json()["mode"] == "poller"

    def test_queue_status(self, client, store, position_factory):
        store.upsert(position_factory())
        body = client.get("/api/system/queue-status").json()
        assert body["positions"] == {"active": 1}
        assert "jobs" not in body["scheduler"]

    def test_manual_tick_and_logs(self, client, store, prices, scheduler, position_factory):
        pos = store.upsert(position_factory())
        prices.prices["BTC/USDT"] = 90.0

        resp = client.post(f"/api/system/tick/{pos.state_key}")

        assert resp.status_code == 200
        assert resp.json()["action"] == "triggered"
        scheduler.unschedule.assert_called_once_with(pos.state_key)

        logs = client.get("/api/system/logs", params={"state_key": pos.state_key}).json()
        assert [row["action"] for row in logs] == ["triggered"]
