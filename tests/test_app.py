"""Tests for the operator status endpoints."""
import importlib
import sys

import pytest


@pytest.fixture
def client(monkeypatch, tmp_path):
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'flipper.db'}")
    monkeypatch.setenv("LOCK_DIR", str(tmp_path / "locks"))
    monkeypatch.setenv("SCHEDULER_ENABLED", "0")

    import flipper.db as db

    monkeypatch.setattr(db, "_ENGINE", None)
    monkeypatch.setattr(db, "SessionLocal", None)
    sys.modules.pop("app", None)
    app_module = importlib.import_module("app")
    yield app_module, app_module.app.test_client()
    sys.modules.pop("app", None)


def test_health(client):
    _, http = client
    response = http.get("/api/health")
    assert response.status_code == 200
    assert response.get_json()["ok"] is True


def test_status_reports_queue_and_locks(client):
    app_module, http = client
    app_module.lock_manager.acquire("canonical")
    try:
        payload = http.get("/api/status").get_json()
    finally:
        app_module.lock_manager.release("canonical")

    assert payload["ok"] is True
    assert payload["dirty_items"] == 0
    assert payload["counts"]["canonical_items"] == 0
    assert [lock["name"] for lock in payload["locks"]] == ["canonical"]
    assert payload["scheduler"]["latest_running"] is False
    assert payload["canonical_state"] == "idle"


def test_shutdown_waits_for_scheduler_before_releasing_locks(client, monkeypatch):
    app_module, _ = client
    calls = []
    monkeypatch.setattr(app_module.scheduler, "stop", lambda timeout=60.0: calls.append(("stop", timeout)))
    monkeypatch.setattr(app_module.lock_manager, "release_all", lambda: calls.append(("release_all",)))

    with pytest.raises(SystemExit):
        app_module._shutdown(15, None)

    assert calls == [("stop", None), ("release_all",)]
