from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from erp.core.config import get_settings
from erp.core.database import Base, get_db
from erp.core.events import InternalEvent
from erp.crm.api import get_current_user as crm_get_current_user
from erp.crm.container import build_crm_services
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


@pytest.fixture(autouse=True)
def clear_settings() -> Generator[None, None, None]:
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def published() -> list[InternalEvent]:
    return []


@pytest.fixture()
def client(db_session: Session, published: list[InternalEvent]) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user(request: Request) -> ActorUser:
        return ActorUser(
            user_id="user-1",
            permissions=ALL_PERMISSIONS,
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    services = build_crm_services()
    services.bus.subscribe("crm.pipeline.created", published.append)
    services.bus.subscribe("crm.deal.created", published.append)

    previous_services = app.state.crm_services
    app.state.crm_services = services
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[crm_get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
    app.state.crm_services = previous_services


def test_generated_correlation_id_returned_in_header_and_error_envelope(client: TestClient) -> None:
    response = client.get(f"/api/crm/deals/{uuid.uuid4()}")
    assert response.status_code == 404
    header_value = response.headers.get("x-correlation-id")
    assert header_value
    body = response.json()
    assert body["correlation_id"] == header_value


def test_correlation_id_respected_when_provided(client: TestClient) -> None:
    response = client.get(f"/api/crm/pipelines/{uuid.uuid4()}", headers={"X-Correlation-Id": "abc-123"})
    assert response.status_code == 404
    assert response.headers.get("x-correlation-id") == "abc-123"
    assert response.json()["correlation_id"] == "abc-123"


def test_validation_error_envelope_carries_correlation_id(client: TestClient) -> None:
    response = client.post(
        "/api/crm/pipelines",
        json={"name": ""},
        headers={"X-Correlation-Id": "corr-invalid-1"},
    )
    assert response.status_code == 400
    body = response.json()
    assert body["code"] == "validation_error"
    assert body["correlation_id"] == "corr-invalid-1"
    assert body["details"]


def test_event_envelope_includes_correlation_id(client: TestClient, published: list[InternalEvent]) -> None:
    pipeline = client.post("/api/crm/pipelines", json={"name": "Sales"}, headers={"X-Correlation-Id": "corr-event-1"})
    assert pipeline.status_code == 201
    stage_id = pipeline.json()["stages"][0]["id"]

    deal = client.post(
        "/api/crm/deals",
        json={"title": "Tracked", "pipeline_id": pipeline.json()["id"], "stage_id": stage_id},
        headers={"X-Correlation-Id": "corr-event-2"},
    )
    assert deal.status_code == 201

    envelopes = {event.name: event.payload for event in published}
    assert envelopes["crm.pipeline.created"]["correlation_id"] == "corr-event-1"
    assert envelopes["crm.deal.created"]["correlation_id"] == "corr-event-2"
    assert envelopes["crm.deal.created"]["actor_user_id"] == "user-1"
    assert envelopes["crm.deal.created"]["version"] == 1
    assert envelopes["crm.deal.created"]["payload"]["deal_id"] == deal.json()["id"]


def test_unsafe_correlation_id_is_replaced(client: TestClient) -> None:
    response = client.get(f"/api/crm/deals/{uuid.uuid4()}", headers={"X-Correlation-Id": "x" * 200})
    assert response.status_code == 404
    replaced = response.headers.get("x-correlation-id")
    assert replaced != "x" * 200
    assert uuid.UUID(replaced)
    assert response.json()["correlation_id"] == replaced
