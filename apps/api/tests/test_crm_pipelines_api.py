from __future__ import annotations

import uuid
from collections.abc import Callable, Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from erp.core.database import Base, get_db
from erp.crm.api import get_current_user
from erp.crm.container import build_crm_services
from erp.crm.models import CRMDealActivity
from erp.crm.service import ActorUser
from erp.main import app


ALL_PERMISSIONS = {
    "crm.pipelines.read",
    "crm.pipelines.manage",
    "crm.deals.read",
    "crm.deals.write",
}


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
def client(db_session: Session) -> Generator[tuple[TestClient, Callable[[str], None]], None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    actors = {
        "manager": ActorUser(user_id="manager-1", permissions=ALL_PERMISSIONS, correlation_id="corr-pipelines"),
        "viewer": ActorUser(user_id="viewer-1", permissions={"crm.pipelines.read"}, correlation_id="corr-pipelines"),
    }
    state = {"current": "manager"}

    def override_get_current_user() -> ActorUser:
        return actors[state["current"]]

    def set_actor(name: str) -> None:
        state["current"] = name

    previous_services = app.state.crm_services
    app.state.crm_services = build_crm_services()
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client, set_actor
    app.dependency_overrides.clear()
    app.state.crm_services = previous_services


def _create_pipeline(test_client: TestClient, name: str = "Sales") -> dict:
    response = test_client.post("/api/crm/pipelines", json={"name": name, "description": "Main funnel"})
    assert response.status_code == 201
    return response.json()


def _stage(pipeline: dict, name: str) -> dict:
    return next(stage for stage in pipeline["stages"] if stage["name"] == name)


def test_create_pipeline_seeds_default_stages(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client

    pipeline = _create_pipeline(test_client)

    assert pipeline["is_active"] is True
    assert pipeline["color"] == "#3B82F6"
    assert [stage["name"] for stage in pipeline["stages"]] == [
        "New Lead",
        "Contact",
        "Proposal",
        "Negotiation",
        "Won",
        "Lost",
    ]
    assert [stage["position"] for stage in pipeline["stages"]] == [0, 1, 2, 3, 4, 5]
    assert [stage["win_probability"] for stage in pipeline["stages"]] == [10, 20, 40, 60, 100, 0]
    assert _stage(pipeline, "Won")["is_won_stage"] is True
    assert _stage(pipeline, "Lost")["is_lost_stage"] is True
    assert all(stage["deal_count"] == 0 for stage in pipeline["stages"])


def test_deleted_pipeline_is_hidden_from_list_but_still_readable(
    client: tuple[TestClient, Callable[[str], None]],
) -> None:
    test_client, _ = client
    keep = _create_pipeline(test_client, "Keep")
    drop = _create_pipeline(test_client, "Drop")

    deleted = test_client.delete(f"/api/crm/pipelines/{drop['id']}")
    assert deleted.status_code == 204

    listed = test_client.get("/api/crm/pipelines")
    assert listed.status_code == 200
    assert [item["id"] for item in listed.json()] == [keep["id"]]

    fetched = test_client.get(f"/api/crm/pipelines/{drop['id']}")
    assert fetched.status_code == 200
    assert fetched.json()["is_active"] is False


def test_update_pipeline_changes_name_and_color(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    pipeline = _create_pipeline(test_client)

    response = test_client.put(
        f"/api/crm/pipelines/{pipeline['id']}",
        json={"name": "Enterprise", "color": "#112233"},
    )

    assert response.status_code == 200
    assert response.json()["name"] == "Enterprise"
    assert response.json()["color"] == "#112233"
    assert response.json()["description"] == "Main funnel"


def test_reorder_pipelines_puts_listed_first(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    first = _create_pipeline(test_client, "First")
    second = _create_pipeline(test_client, "Second")
    third = _create_pipeline(test_client, "Third")

    response = test_client.post("/api/crm/pipelines/reorder", json={"ids": [third["id"], first["id"]]})

    assert response.status_code == 200
    assert [item["name"] for item in response.json()] == ["Third", "First", "Second"]
    assert [item["position"] for item in response.json()] == [0, 1, 2]

    duplicate = test_client.post("/api/crm/pipelines/reorder", json={"ids": [second["id"], second["id"]]})
    assert duplicate.status_code == 400
    assert duplicate.json()["code"] == "crm_pipeline_reorder_failed"

    unknown = test_client.post("/api/crm/pipelines/reorder", json={"ids": [str(uuid.uuid4())]})
    assert unknown.status_code == 400


def test_stage_create_update_and_reorder(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    pipeline = _create_pipeline(test_client)

    created = test_client.post(
        f"/api/crm/pipelines/{pipeline['id']}/stages",
        json={"name": "Legal review", "win_probability": 80},
    )
    assert created.status_code == 201
    assert created.json()["position"] == 6
    assert created.json()["color"] == "#6B7280"

    updated = test_client.put(
        f"/api/crm/stages/{created.json()['id']}",
        json={"name": "Legal", "win_probability": 85, "color": "#000000"},
    )
    assert updated.status_code == 200
    assert updated.json()["name"] == "Legal"
    assert updated.json()["win_probability"] == 85

    won = _stage(pipeline, "Won")
    reordered = test_client.post(
        f"/api/crm/pipelines/{pipeline['id']}/stages/reorder",
        json={"ids": [won["id"], created.json()["id"]]},
    )
    assert reordered.status_code == 200
    names = [stage["name"] for stage in reordered.json()]
    assert names[:3] == ["Won", "Legal", "New Lead"]
    assert [stage["position"] for stage in reordered.json()] == list(range(7))


def test_stage_payload_validation(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    pipeline = _create_pipeline(test_client)

    bad_probability = test_client.post(
        f"/api/crm/pipelines/{pipeline['id']}/stages",
        json={"name": "Odd", "win_probability": 140},
    )
    assert bad_probability.status_code == 400
    assert bad_probability.json()["code"] == "validation_error"

    bad_color = test_client.post("/api/crm/pipelines", json={"name": "Colorful", "color": "red"})
    assert bad_color.status_code == 400

    missing = test_client.post(f"/api/crm/pipelines/{uuid.uuid4()}/stages", json={"name": "Orphan"})
    assert missing.status_code == 404
    assert missing.json()["code"] == "crm_stage_create_failed"


def test_delete_stage_redirects_deals_and_applies_status(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
) -> None:
    test_client, _ = client
    pipeline = _create_pipeline(test_client)
    new_lead = _stage(pipeline, "New Lead")
    won = _stage(pipeline, "Won")

    existing = test_client.post(
        "/api/crm/deals",
        json={"title": "Already won", "pipeline_id": pipeline["id"], "stage_id": won["id"]},
    )
    assert existing.status_code == 201
    moving = test_client.post(
        "/api/crm/deals",
        json={"title": "Redirected", "pipeline_id": pipeline["id"], "stage_id": new_lead["id"]},
    )
    assert moving.status_code == 201

    deleted = test_client.request(
        "DELETE",
        f"/api/crm/stages/{new_lead['id']}",
        json={"move_deals_to_stage_id": won["id"]},
    )
    assert deleted.status_code == 204

    deal = test_client.get(f"/api/crm/deals/{moving.json()['id']}").json()
    assert deal["stage_id"] == won["id"]
    assert deal["status"] == "won"
    assert deal["position"] == 1

    stage_changes = list(
        db_session.scalars(
            select(CRMDealActivity.title).where(
                CRMDealActivity.deal_id == uuid.UUID(deal["id"]),
                CRMDealActivity.type == "stage_change",
            )
        )
    )
    assert stage_changes == ['Moved from "New Lead" to "Won"']

    refreshed = test_client.get(f"/api/crm/pipelines/{pipeline['id']}").json()
    assert _stage(refreshed, "New Lead")["is_active"] is False
    listed = test_client.get("/api/crm/pipelines").json()
    assert "New Lead" not in [stage["name"] for stage in listed[0]["stages"]]

    grouped = test_client.get(f"/api/crm/pipelines/{pipeline['id']}/deals").json()
    assert new_lead["id"] not in grouped
    assert [item["title"] for item in grouped[won["id"]]] == ["Already won", "Redirected"]


def test_delete_stage_rejects_target_in_other_pipeline(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    sales = _create_pipeline(test_client, "Sales")
    partners = _create_pipeline(test_client, "Partners")

    response = test_client.request(
        "DELETE",
        f"/api/crm/stages/{_stage(sales, 'Contact')['id']}",
        json={"move_deals_to_stage_id": _stage(partners, "Contact")["id"]},
    )

    assert response.status_code == 400
    assert response.json()["code"] == "crm_stage_delete_failed"
    refreshed = test_client.get(f"/api/crm/pipelines/{sales['id']}").json()
    assert _stage(refreshed, "Contact")["is_active"] is True


def test_delete_stage_without_body_only_deactivates(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    pipeline = _create_pipeline(test_client)
    proposal = _stage(pipeline, "Proposal")

    response = test_client.delete(f"/api/crm/stages/{proposal['id']}")

    assert response.status_code == 204
    refreshed = test_client.get(f"/api/crm/pipelines/{pipeline['id']}").json()
    assert _stage(refreshed, "Proposal")["is_active"] is False


def test_manage_routes_require_permission(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, set_actor = client
    _create_pipeline(test_client)
    set_actor("viewer")

    listed = test_client.get("/api/crm/pipelines")
    assert listed.status_code == 200

    forbidden = test_client.post("/api/crm/pipelines", json={"name": "Nope"})
    assert forbidden.status_code == 403
    assert forbidden.json()["code"] == "crm_pipeline_create_failed"
    assert forbidden.json()["message"] == "Missing permission: crm.pipelines.manage"
