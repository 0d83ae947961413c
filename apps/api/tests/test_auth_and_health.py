from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from erp.core.auth import AuthUser, decode_token
from erp.core.config import get_settings
from erp.core.database import Base, get_db
from erp.main import app


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

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _token(**claims: object) -> str:
    settings = get_settings()
    return jwt.encode({"sub": "user-42", **claims}, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def test_roles_expand_to_crm_permissions() -> None:
    viewer = AuthUser(sub="v", roles=["crm.viewer"])
    assert viewer.has("crm.deals.read")
    assert not viewer.has("crm.deals.write")

    manager = AuthUser(sub="m", roles=["crm.manager"])
    assert manager.has("crm.pipelines.manage")
    assert manager.has("crm.deals.convert")
    assert not manager.has("system.metrics.read")

    explicit = AuthUser(sub="e", roles=["user"], permissions=["crm.analytics.read"])
    assert explicit.granted() == {"user", "crm.analytics.read"}


def test_decode_token_reads_roles_and_permissions() -> None:
    user = decode_token(_token(roles=["crm.sales"], permissions=["crm.deals.convert"]))
    assert user.sub == "user-42"
    assert user.roles == ["crm.sales"]
    assert user.has("crm.deals.write")
    assert user.has("crm.deals.convert")


def test_invalid_token_falls_back_to_guest() -> None:
    user = decode_token("not-a-jwt")
    assert user.sub == "anonymous"
    assert user.roles == ["guest"]
    assert not user.has("crm.deals.read")


def test_me_lists_effective_permissions(client: TestClient) -> None:
    response = client.get("/me", headers={"Authorization": f"Bearer {_token(roles=['crm.viewer'])}"})
    assert response.status_code == 200
    body = response.json()
    assert body["sub"] == "user-42"
    assert "crm.pipelines.read" in body["permissions"]
    assert "crm.viewer" in body["permissions"]
    assert "crm.deals.write" not in body["permissions"]


def test_crm_routes_reject_guest(client: TestClient) -> None:
    response = client.get("/api/crm/pipelines")
    assert response.status_code == 403
    assert response.json()["code"] == "crm_pipeline_list_failed"


def test_health_reports_database(client: TestClient) -> None:
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"
    assert response.json()["database"] == "ok"
