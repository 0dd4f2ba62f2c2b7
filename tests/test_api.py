from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from tracker.config import get_config_path, save_config
from tracker.main import app
from tracker.storage.base import SHOW_LIMIT_MESSAGE


@pytest.fixture
def client(tmp_path):
    save_config(
        {
            "relational": {"url": f"sqlite:///{tmp_path / 'api.db'}"},
            "embedded_file": {"filename": str(tmp_path / "embedded.sqlite")},
            "archive_sweep_interval_seconds": 0,
        },
        get_config_path(),
    )
    with TestClient(app) as test_client:
        yield test_client


def test_health_reports_active_provider_without_caching(client):
    response = client.get("/api/health")
    assert response.status_code == 200
    body = response.json()
    assert body["ok"] is True
    assert body["provider"] == "relational"
    assert body["storage"]["driver"] == "sqlite"
    assert "no-store" in response.headers["Cache-Control"]
    assert response.headers["Pragma"] == "no-cache"


def test_show_crud(client):
    created = client.post("/api/shows", json={"date": "2024-06-01", "label": "Pier", "leadPilot": "Casey"})
    assert created.status_code == 201
    show = created.json()
    assert show["leadPilot"] == "Casey"
    assert "archivedAt" not in show

    assert client.get(f"/api/shows/{show['id']}").json() == show
    assert [item["id"] for item in client.get("/api/shows").json()] == [show["id"]]

    updated = client.put(f"/api/shows/{show['id']}", json={"label": "Beach"})
    assert updated.status_code == 200
    assert updated.json()["label"] == "Beach"

    assert client.delete(f"/api/shows/{show['id']}").json() == {"ok": True}
    missing = client.get(f"/api/shows/{show['id']}")
    assert missing.status_code == 404
    assert missing.json() == {"detail": "Show not found"}
    assert client.put("/api/shows/missing", json={"label": "x"}).status_code == 404


def test_capacity_violation_maps_to_bad_request(client):
    for _ in range(5):
        assert client.post("/api/shows", json={"date": "2024-06-01"}).status_code == 201
    rejected = client.post("/api/shows", json={"date": "2024-06-01"})
    assert rejected.status_code == 400
    assert rejected.json() == {"detail": SHOW_LIMIT_MESSAGE}


def test_entry_routes(client):
    show_id = client.post("/api/shows", json={"date": "2024-06-01"}).json()["id"]

    created = client.post(f"/api/shows/{show_id}/entries", json={"operator": "Alex", "unitId": "U1"})
    assert created.status_code == 201
    entry = created.json()
    assert entry["unitId"] == "U1"

    conflict = client.post(f"/api/shows/{show_id}/entries", json={"operator": "ALEX"})
    assert conflict.status_code == 400

    updated = client.put(f"/api/shows/{show_id}/entries/{entry['id']}", json={"status": "abort"})
    assert updated.json()["status"] == "Abort"
    assert client.put(f"/api/shows/{show_id}/entries/missing", json={}).status_code == 404
    assert client.post("/api/shows/missing/entries", json={}).status_code == 404

    assert client.delete(f"/api/shows/{show_id}/entries/{entry['id']}").json() == {"ok": True}
    assert client.delete(f"/api/shows/{show_id}/entries/{entry['id']}").status_code == 404


def test_archive_routes(client):
    show_id = client.post("/api/shows", json={"date": "2024-06-01", "entries": [{"operator": "Sam"}]}).json()["id"]

    archived = client.post(f"/api/shows/{show_id}/archive")
    assert archived.status_code == 200
    assert archived.json()["archivedAt"] > 0
    assert client.get(f"/api/shows/{show_id}").status_code == 404
    assert [item["id"] for item in client.get("/api/archive").json()] == [show_id]
    assert client.get(f"/api/archive/{show_id}").json()["entries"][0]["operator"] == "Sam"
    assert client.get("/api/archive/missing").status_code == 404
    assert client.post("/api/shows/missing/archive").status_code == 404


def test_staff_routes(client):
    roster = client.get("/api/staff").json()
    assert roster["pilots"] == ["Casey", "Morgan", "Riley"]

    replaced = client.put("/api/staff", json={"monkeyLeads": ["Quinn", "quinn"]})
    assert replaced.json()["monkeyLeads"] == ["Quinn"]
    assert replaced.json()["crew"] == roster["crew"]


def test_config_routes_hide_secrets_and_switch_provider(client):
    config = client.get("/api/config").json()
    assert config["provider"] == "relational"
    assert "password" not in config["default_admin"]

    switched = client.put("/api/config", json={"provider": "embedded-file"})
    assert switched.status_code == 200
    assert client.get("/api/health").json()["provider"] == "embedded-file"
    assert client.get("/api/shows").json() == []
    assert client.get("/api/archive").json() == []
    assert client.get("/api/staff").status_code == 501

    invalid = client.put("/api/config", json={"provider": "carrier-pigeon"})
    assert invalid.status_code == 400
    assert client.get("/api/health").json()["provider"] == "embedded-file"


def test_unconfigured_remote_table_reports_service_unavailable(client):
    client.put("/api/config", json={"provider": "remote-table"})
    response = client.get("/api/shows")
    assert response.status_code == 503
    assert "not fully configured" in response.json()["detail"]


def test_backend_failures_use_a_generic_message(client, tmp_path):
    response = client.put(
        "/api/config",
        json={"relational": {"url": f"sqlite:///{tmp_path / 'missing-dir' / 'api.db'}"}},
    )
    assert response.status_code == 500
    assert response.json() == {"detail": "Storage backend failure"}
    assert client.get("/api/health").json()["provider"] == "relational"


def test_staff_payload_accepts_snake_case_and_rejects_non_lists(client):
    replaced = client.put("/api/staff", json={"monkey_leads": ["Rowan"], "pilots": ["Casey", " casey "]})
    assert replaced.status_code == 200
    assert replaced.json()["monkeyLeads"] == ["Rowan"]
    assert replaced.json()["pilots"] == ["Casey"]

    rejected = client.put("/api/staff", json={"crew": "Alex"})
    assert rejected.status_code == 422
    assert client.get("/api/staff").json()["monkeyLeads"] == ["Rowan"]


def test_config_payload_must_be_an_object(client):
    assert client.put("/api/config", json=["embedded-file"]).status_code == 422
    assert client.put("/api/config", json={"archive_sweep_interval_seconds": "often"}).status_code == 422
    assert client.get("/api/health").json()["provider"] == "relational"

    partial = client.put("/api/config", json={"relational": {"echo": False}})
    assert partial.status_code == 200
    assert partial.json()["provider"] == "relational"
