"""Smoke tests for the HTTP surface."""

import pytest
from fastapi.testclient import TestClient

from api import app, get_uow, get_uow_factory
from conftest import make_plan, store
from infrastructure import InMemoryUnitOfWork

CLIENT = "client-1"
BASE = f"/api/v1/clients/{CLIENT}/care-plans"


@pytest.fixture
def client(db):
    app.dependency_overrides[get_uow] = lambda: InMemoryUnitOfWork(db)
    app.dependency_overrides[get_uow_factory] = lambda: (lambda: InMemoryUnitOfWork(db))
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def plan_body(**overrides):
    body = {
        "assessment_date": "2025-01-01",
        "draft_date": "2025-01-10",
        "needs": [
            {
                "content": "Wants to keep walking to the shops",
                "long_term_goal": "Live independently at home",
                "short_term_goals": [{"content": "Walk 20 minutes daily"}],
                "services": [{"content": "Day-care rehabilitation", "type": "day_care"}],
            }
        ],
        "assessment_id": "assessment-1",
    }
    body.update(overrides)
    return body


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_validate_reports_date_order(client):
    resp = client.post(
        "/api/v1/care-plans/validate",
        json=plan_body(assessment_date="2025-02-01", draft_date="2025-01-01"),
    )

    assert resp.status_code == 200
    data = resp.json()["data"]
    assert data["is_valid"] is False
    assert len(data["errors"]) == 1


def test_blank_dates_are_accepted(client):
    resp = client.post(
        "/api/v1/care-plans/validate", json=plan_body(assessment_date="", draft_date="")
    )

    assert resp.json()["data"]["is_valid"] is True


def test_save_reload_and_history(client):
    created = client.post(BASE, json=plan_body())
    assert created.status_code == 200
    saved = created.json()["data"]
    plan_id = saved["plan"]["id"]
    assert saved["validation"]["is_valid"] is True
    assert saved["plan"]["long_term_goal"] == "Live independently at home"
    assert [g["content"] for g in saved["plan"]["short_term_goals"]] == ["Walk 20 minutes daily"]

    client.post(BASE, json=plan_body(id=plan_id, status="review"))

    fetched = client.get(f"{BASE}/{plan_id}").json()["data"]
    assert fetched["status"] == "review"
    history = client.get(f"{BASE}/{plan_id}/history").json()["data"]
    assert len(history) == 1
    assert history[0]["status"] == "draft"
    listing = client.get(BASE).json()["data"]
    assert [p["id"] for p in listing] == [plan_id]


def test_save_without_assessment_is_rejected(client):
    resp = client.post(BASE, json=plan_body(assessment_id=None))

    assert resp.status_code == 422
    assert "assessment" in resp.json()["detail"]


def test_unknown_status_is_rejected(client):
    resp = client.post(BASE, json=plan_body(status="archived"))

    assert resp.status_code == 422


def test_missing_plan_is_404(client):
    assert client.get(f"{BASE}/missing").status_code == 404


def test_listing_migrates_legacy_plan(client, uow):
    store(uow, make_plan(CLIENT, id="p1"))

    listing = client.get(BASE).json()["data"]

    assert len(listing) == 1
    assert listing[0]["id"] != "p1"
    again = client.post(f"{BASE}/migrate-legacy").json()["data"]
    assert again == {"migrated_plan_id": None}


def test_store_outage_is_503(client, db):
    def broken_uow():
        uow = InMemoryUnitOfWork(db)

        def boom(client_id, plan_id):
            raise ConnectionError("plan store down")

        uow.care_plans.get = boom
        return uow

    app.dependency_overrides[get_uow] = broken_uow

    resp = client.get(f"{BASE}/anything")

    assert resp.status_code == 503


def test_dashboard(client):
    resp = client.post(
        "/api/v1/dashboard",
        json={
            "today": "2025-06-15",
            "clients": [
                {"id": "c1", "name": "Aiko", "certification_expiry": "2025-08-01"},
                {"id": "c2", "name": "Ben", "certification_expiry": "2025-06-01"},
                {"id": "c3", "name": "Chie", "certification_expiry": "garbage"},
            ],
        },
    )

    assert resp.status_code == 200
    data = resp.json()["data"]
    assert [i["client_id"] for i in data["items"]] == ["c1", "c2", "c3"]
    assert [i["client_id"] for i in data["action_items"]] == ["c2", "c1", "c3"]
    assert data["items"][2]["certification_urgency"] == "unknown"
    assert data["summary"]["total_clients"] == 3
    assert data["summary"]["certification_alerts"] == 2
