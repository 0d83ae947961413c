from __future__ import annotations

import uuid
from collections.abc import Generator
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from erp.core.config import Settings
from erp.core.database import Base, get_db
from erp.crm.api import get_current_user
from erp.crm.container import build_crm_services
from erp.crm.models import CRMDealActivity
from erp.crm.service import ActorUser
from erp.main import app


ALL_PERMISSIONS = {
    "crm.pipelines.manage",
    "crm.deals.read",
    "crm.deals.write",
    "crm.activities.read",
    "crm.activities.write",
}
ACTOR_ID = uuid.UUID("0b7a4f4e-3c51-4f0c-8d3b-2b8f0e6e9a01")


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user() -> ActorUser:
        return ActorUser(user_id=str(ACTOR_ID), permissions=ALL_PERMISSIONS, correlation_id="corr-activities")

    previous_services = app.state.crm_services
    app.state.crm_services = build_crm_services(Settings(scheduled_activities_limit=3))
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
    app.state.crm_services = previous_services


@pytest.fixture()
def deal(client: TestClient) -> dict:
    pipeline = client.post("/api/crm/pipelines", json={"name": "Sales"})
    assert pipeline.status_code == 201
    stages = {stage["name"]: stage["id"] for stage in pipeline.json()["stages"]}
    response = client.post(
        "/api/crm/deals",
        json={"title": "Support contract", "pipeline_id": pipeline.json()["id"], "stage_id": stages["New Lead"]},
    )
    assert response.status_code == 201
    body = response.json()
    body["stage_ids"] = stages
    return body


def _in(days: float) -> str:
    return (datetime.now(timezone.utc) + timedelta(days=days)).isoformat()


def test_create_list_update_and_delete_manual_activity(client: TestClient, deal: dict) -> None:
    created = client.post(
        f"/api/crm/deals/{deal['id']}/activities",
        json={"type": "call", "title": "Intro call", "description": "Discuss scope", "scheduled_at": _in(1)},
    )
    assert created.status_code == 201
    activity = created.json()
    assert activity["type"] == "call"
    assert activity["is_completed"] is False
    assert activity["created_by"] == str(ACTOR_ID)

    listed = client.get(f"/api/crm/deals/{deal['id']}/activities")
    assert listed.status_code == 200
    assert {item["title"] for item in listed.json()} == {"Intro call", "Deal created"}

    updated = client.put(f"/api/crm/activities/{activity['id']}", json={"type": "meeting", "title": "On-site visit"})
    assert updated.status_code == 200
    assert updated.json()["type"] == "meeting"
    assert updated.json()["title"] == "On-site visit"
    assert updated.json()["description"] == "Discuss scope"

    deleted = client.delete(f"/api/crm/activities/{activity['id']}")
    assert deleted.status_code == 204
    remaining = client.get(f"/api/crm/deals/{deal['id']}/activities").json()
    assert [item["title"] for item in remaining] == ["Deal created"]


def test_user_cannot_create_system_activity_types(client: TestClient, deal: dict) -> None:
    response = client.post(
        f"/api/crm/deals/{deal['id']}/activities",
        json={"type": "stage_change", "title": "Forged move"},
    )

    assert response.status_code == 400
    assert response.json()["code"] == "crm_activity_create_failed"

    unknown = client.post(f"/api/crm/deals/{deal['id']}/activities", json={"type": "sms", "title": "Text"})
    assert unknown.status_code == 400

    missing_deal = client.post(f"/api/crm/deals/{uuid.uuid4()}/activities", json={"type": "note", "title": "x"})
    assert missing_deal.status_code == 404


def test_system_activities_are_read_only(client: TestClient, deal: dict, db_session: Session) -> None:
    moved = client.patch(
        f"/api/crm/deals/{deal['id']}/move",
        json={"stage_id": deal["stage_ids"]["Contact"], "position": 0},
    )
    assert moved.status_code == 200
    stage_change = db_session.scalar(
        select(CRMDealActivity).where(
            CRMDealActivity.deal_id == uuid.UUID(deal["id"]),
            CRMDealActivity.type == "stage_change",
        )
    )
    assert stage_change is not None

    edit = client.put(f"/api/crm/activities/{stage_change.id}", json={"title": "Rewritten"})
    assert edit.status_code == 400
    assert edit.json()["message"] == "system activities are read-only"

    remove = client.delete(f"/api/crm/activities/{stage_change.id}")
    assert remove.status_code == 400

    manual = client.post(f"/api/crm/deals/{deal['id']}/activities", json={"type": "note", "title": "Keep"}).json()
    retype = client.put(f"/api/crm/activities/{manual['id']}", json={"type": "status_change"})
    assert retype.status_code == 400


def test_complete_is_idempotent(client: TestClient, deal: dict) -> None:
    activity = client.post(
        f"/api/crm/deals/{deal['id']}/activities",
        json={"type": "task", "title": "Send offer"},
    ).json()

    first = client.patch(f"/api/crm/activities/{activity['id']}/complete")
    second = client.patch(f"/api/crm/activities/{activity['id']}/complete")

    assert first.status_code == 200
    assert first.json()["is_completed"] is True
    assert first.json()["completed_at"] is not None
    assert second.status_code == 200
    assert second.json()["completed_at"] == first.json()["completed_at"]

    missing = client.patch(f"/api/crm/activities/{uuid.uuid4()}/complete")
    assert missing.status_code == 404


def test_follow_ups_window_limit_and_owner(client: TestClient, deal: dict, db_session: Session) -> None:
    for offset, title in ((0.5, "Tomorrow-ish"), (2, "In two days"), (5, "In five days"), (6, "In six days")):
        created = client.post(
            f"/api/crm/deals/{deal['id']}/activities",
            json={"type": "task", "title": title, "scheduled_at": _in(offset)},
        )
        assert created.status_code == 201
    client.post(
        f"/api/crm/deals/{deal['id']}/activities",
        json={"type": "call", "title": "Past", "scheduled_at": _in(-1)},
    )
    client.post(
        f"/api/crm/deals/{deal['id']}/activities",
        json={"type": "call", "title": "Too far", "scheduled_at": _in(30)},
    )
    done = client.post(
        f"/api/crm/deals/{deal['id']}/activities",
        json={"type": "call", "title": "Already done", "scheduled_at": _in(1)},
    ).json()
    client.patch(f"/api/crm/activities/{done['id']}/complete")

    other_owner = CRMDealActivity(
        deal_id=uuid.UUID(deal["id"]),
        type="meeting",
        title="Someone else's meeting",
        scheduled_at=datetime.now(timezone.utc) + timedelta(days=1),
        created_by=uuid.uuid4(),
    )
    db_session.add(other_owner)
    db_session.commit()
    other_owner_id = other_owner.created_by

    mine = client.get("/api/crm/follow-ups")
    assert mine.status_code == 200
    assert [item["title"] for item in mine.json()] == ["Tomorrow-ish", "In two days", "In five days"]

    narrow = client.get("/api/crm/follow-ups", params={"days": 3}).json()
    assert [item["title"] for item in narrow] == ["Tomorrow-ish", "In two days"]

    theirs = client.get("/api/crm/follow-ups", params={"user_id": str(other_owner_id)}).json()
    assert [item["title"] for item in theirs] == ["Someone else's meeting"]

    invalid = client.get("/api/crm/follow-ups", params={"days": -1})
    assert invalid.status_code == 400
