from __future__ import annotations

import uuid
from collections.abc import Generator
from datetime import date
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from erp.core.config import Settings
from erp.core.database import Base, get_db
from erp.crm.api import get_current_user
from erp.crm.container import CrmServices, build_crm_services
from erp.crm.errors import NotFoundError
from erp.crm.models import CRMPipeline, CRMPipelineStage
from erp.crm.schemas import DealCreate, PipelineStageUpdate
from erp.crm.service import ActorUser
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
def crm() -> CrmServices:
    return build_crm_services(Settings())


@pytest.fixture()
def actor() -> ActorUser:
    return ActorUser(user_id="analyst-1", correlation_id="corr-analytics")


def _pipeline(session: Session, name: str, *stages: tuple[str, int, bool, bool]) -> tuple[uuid.UUID, dict[str, uuid.UUID]]:
    pipeline = CRMPipeline(name=name, position=0, created_by=uuid.uuid4())
    session.add(pipeline)
    session.flush()
    stage_ids: dict[str, uuid.UUID] = {}
    for position, (stage_name, probability, is_won, is_lost) in enumerate(stages):
        stage = CRMPipelineStage(
            pipeline_id=pipeline.id,
            name=stage_name,
            position=position,
            win_probability=probability,
            is_won_stage=is_won,
            is_lost_stage=is_lost,
        )
        session.add(stage)
        session.flush()
        stage_ids[stage_name] = stage.id
    pipeline_id = pipeline.id
    session.commit()
    return pipeline_id, stage_ids


@pytest.fixture()
def funnel(db_session: Session, crm: CrmServices, actor: ActorUser) -> tuple[uuid.UUID, dict[str, uuid.UUID]]:
    pipeline_id, stages = _pipeline(
        db_session,
        "Funnel",
        ("Qualify", 20, False, False),
        ("Propose", 50, False, False),
        ("Won", 100, True, False),
        ("Lost", 0, False, True),
    )
    rows = (
        ("Qualify", "d1", Decimal("100"), date(2026, 11, 3)),
        ("Propose", "d2", Decimal("200"), date(2026, 11, 20)),
        ("Propose", "d3", Decimal("33.33"), date(2026, 12, 1)),
        ("Won", "d4", Decimal("1000"), date(2026, 11, 10)),
        ("Qualify", "d5", Decimal("0"), None),
        ("Lost", "d6", Decimal("10"), date(2026, 11, 12)),
    )
    for stage_name, title, value, close_date in rows:
        crm.deals.create_deal(
            db_session,
            actor,
            DealCreate(
                title=title,
                pipeline_id=pipeline_id,
                stage_id=stages[stage_name],
                value=value,
                expected_close_date=close_date,
            ),
        )
    return pipeline_id, stages


def test_statistics_totals_and_stage_breakdown(
    db_session: Session,
    crm: CrmServices,
    funnel: tuple[uuid.UUID, dict[str, uuid.UUID]],
) -> None:
    pipeline_id, stages = funnel

    stats = crm.statistics.get_statistics(db_session, pipeline_id)

    assert stats.total_deals == 6
    assert (stats.open_deals, stats.won_deals, stats.lost_deals) == (4, 1, 1)
    assert stats.total_value == Decimal("1343.33")
    assert stats.won_value == Decimal("1000.00")
    assert stats.avg_deal_size == Decimal("223.89")
    assert [row.stage_name for row in stats.deals_by_stage] == ["Qualify", "Propose", "Won", "Lost"]
    assert [row.count for row in stats.deals_by_stage] == [2, 2, 1, 1]
    assert [row.value for row in stats.deals_by_stage] == [
        Decimal("100.00"),
        Decimal("233.33"),
        Decimal("1000.00"),
        Decimal("10.00"),
    ]
    assert sum(row.count for row in stats.deals_by_stage) == stats.total_deals
    assert stats.open_deals + stats.won_deals + stats.lost_deals == stats.total_deals
    assert stats.deals_by_stage[0].stage_id == stages["Qualify"]


def test_statistics_scope_and_empty_pipeline(
    db_session: Session,
    crm: CrmServices,
    funnel: tuple[uuid.UUID, dict[str, uuid.UUID]],
) -> None:
    empty_id, _ = _pipeline(db_session, "Empty", ("Only", 10, False, False))

    empty = crm.statistics.get_statistics(db_session, empty_id)
    assert empty.total_deals == 0
    assert empty.avg_deal_size == Decimal("0.00")
    assert [row.count for row in empty.deals_by_stage] == [0]

    everything = crm.statistics.get_statistics(db_session)
    assert everything.total_deals == 6
    assert len(everything.deals_by_stage) == 5

    with pytest.raises(NotFoundError):
        crm.statistics.get_statistics(db_session, uuid.uuid4())


def test_forecast_weights_open_deals_by_stage_probability(
    db_session: Session,
    crm: CrmServices,
    funnel: tuple[uuid.UUID, dict[str, uuid.UUID]],
) -> None:
    pipeline_id, _ = funnel

    forecast = crm.forecast.get_forecast(db_session, pipeline_id)

    assert [row.month for row in forecast] == ["2026-11", "2026-12"]
    november, december = forecast
    assert november.total_value == Decimal("300.00")
    assert november.weighted_value == Decimal("120.00")
    assert november.deal_count == 2
    assert december.total_value == Decimal("33.33")
    assert december.weighted_value == Decimal("16.67")
    assert december.deal_count == 1


def test_conversion_rates_use_current_stage_position(
    db_session: Session,
    crm: CrmServices,
    funnel: tuple[uuid.UUID, dict[str, uuid.UUID]],
) -> None:
    pipeline_id, _ = funnel

    rates = crm.conversion.get_conversion_rates(db_session, pipeline_id)

    assert [row.stage_name for row in rates] == ["Qualify", "Propose", "Won", "Lost"]
    assert [row.deal_count for row in rates] == [6, 4, 2, 1]
    assert [row.conversion_rate for row in rates] == [100, 67, 33, 17]


def test_conversion_rates_skip_inactive_stages(
    db_session: Session,
    crm: CrmServices,
    actor: ActorUser,
    funnel: tuple[uuid.UUID, dict[str, uuid.UUID]],
) -> None:
    pipeline_id, stages = funnel
    crm.pipelines.update_stage(db_session, actor, stages["Propose"], PipelineStageUpdate(is_active=False))

    rates = crm.conversion.get_conversion_rates(db_session, pipeline_id)

    assert [row.stage_name for row in rates] == ["Qualify", "Won", "Lost"]
    assert [row.conversion_rate for row in rates] == [100, 33, 17]


def test_conversion_rates_without_deals_are_zero(db_session: Session, crm: CrmServices) -> None:
    pipeline_id, _ = _pipeline(
        db_session,
        "Quiet",
        ("One", 10, False, False),
        ("Two", 50, False, False),
        ("Three", 90, False, False),
    )

    rates = crm.conversion.get_conversion_rates(db_session, pipeline_id)

    assert [row.position for row in rates] == [0, 1, 2]
    assert all(row.conversion_rate == 0 for row in rates)
    assert all(row.deal_count == 0 for row in rates)


def test_analytics_routes(db_session: Session, funnel: tuple[uuid.UUID, dict[str, uuid.UUID]]) -> None:
    pipeline_id, _ = funnel

    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user() -> ActorUser:
        return ActorUser(user_id="analyst-1", permissions={"crm.analytics.read"}, correlation_id="corr-analytics")

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    try:
        with TestClient(app) as test_client:
            stats = test_client.get("/api/crm/statistics", params={"pipeline_id": str(pipeline_id)})
            assert stats.status_code == 200
            assert stats.json()["total_deals"] == 6

            forecast = test_client.get("/api/crm/forecast")
            assert forecast.status_code == 200
            assert [row["month"] for row in forecast.json()] == ["2026-11", "2026-12"]

            rates = test_client.get("/api/crm/conversion-rates", params={"pipeline_id": str(pipeline_id)})
            assert rates.status_code == 200
            assert rates.json()[0]["conversion_rate"] == 100

            missing_param = test_client.get("/api/crm/conversion-rates")
            assert missing_param.status_code == 400
            assert missing_param.json()["code"] == "validation_error"

            unknown = test_client.get("/api/crm/statistics", params={"pipeline_id": str(uuid.uuid4())})
            assert unknown.status_code == 404
            assert unknown.json()["code"] == "crm_statistics_failed"
    finally:
        app.dependency_overrides.clear()
