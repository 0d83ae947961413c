from __future__ import annotations

import uuid
from collections.abc import Sequence
from datetime import datetime
from typing import Any

from sqlalchemy import Select, and_, delete, func, or_, select, update
from sqlalchemy.orm import Session

from erp.crm.models import CRMDeal, CRMDealActivity, CRMPipeline, CRMPipelineStage


class PipelineRepository:
    def get(self, session: Session, pipeline_id: uuid.UUID) -> CRMPipeline | None:
        return session.get(CRMPipeline, pipeline_id)

    def get_for_update(self, session: Session, pipeline_id: uuid.UUID) -> CRMPipeline | None:
        return session.scalar(select(CRMPipeline).where(CRMPipeline.id == pipeline_id).with_for_update())

    def list_active(self, session: Session) -> list[CRMPipeline]:
        return list(
            session.scalars(
                select(CRMPipeline)
                .where(CRMPipeline.is_active.is_(True))
                .order_by(CRMPipeline.position.asc(), CRMPipeline.created_at.asc())
            )
        )

    def list_all(self, session: Session) -> list[CRMPipeline]:
        return list(session.scalars(select(CRMPipeline).order_by(CRMPipeline.position.asc(), CRMPipeline.created_at.asc())))

    def next_position(self, session: Session) -> int:
        current = session.scalar(select(func.max(CRMPipeline.position)))
        return 0 if current is None else int(current) + 1


class StageRepository:
    def get(self, session: Session, stage_id: uuid.UUID) -> CRMPipelineStage | None:
        return session.get(CRMPipelineStage, stage_id)

    def get_for_update(self, session: Session, stage_id: uuid.UUID) -> CRMPipelineStage | None:
        return session.scalar(select(CRMPipelineStage).where(CRMPipelineStage.id == stage_id).with_for_update())

    def get_many(self, session: Session, stage_ids: Sequence[uuid.UUID]) -> dict[uuid.UUID, CRMPipelineStage]:
        if not stage_ids:
            return {}
        rows = session.scalars(select(CRMPipelineStage).where(CRMPipelineStage.id.in_(list(stage_ids))))
        return {row.id: row for row in rows}

    def list_for_pipeline(
        self,
        session: Session,
        pipeline_id: uuid.UUID,
        *,
        active_only: bool = False,
    ) -> list[CRMPipelineStage]:
        query = select(CRMPipelineStage).where(CRMPipelineStage.pipeline_id == pipeline_id)
        if active_only:
            query = query.where(CRMPipelineStage.is_active.is_(True))
        return list(session.scalars(query.order_by(CRMPipelineStage.position.asc(), CRMPipelineStage.created_at.asc())))

    def list_for_pipelines(self, session: Session, pipeline_ids: Sequence[uuid.UUID]) -> list[CRMPipelineStage]:
        if not pipeline_ids:
            return []
        return list(
            session.scalars(
                select(CRMPipelineStage)
                .where(CRMPipelineStage.pipeline_id.in_(list(pipeline_ids)))
                .order_by(CRMPipelineStage.position.asc(), CRMPipelineStage.created_at.asc())
            )
        )

    def next_position(self, session: Session, pipeline_id: uuid.UUID) -> int:
        current = session.scalar(
            select(func.max(CRMPipelineStage.position)).where(CRMPipelineStage.pipeline_id == pipeline_id)
        )
        return 0 if current is None else int(current) + 1

    def deal_counts(self, session: Session, stage_ids: Sequence[uuid.UUID]) -> dict[uuid.UUID, int]:
        if not stage_ids:
            return {}
        rows = session.execute(
            select(CRMDeal.stage_id, func.count(CRMDeal.id))
            .where(CRMDeal.stage_id.in_(list(stage_ids)))
            .group_by(CRMDeal.stage_id)
        ).all()
        return {stage_id: int(count) for stage_id, count in rows}


class DealRepository:
    def get(self, session: Session, deal_id: uuid.UUID) -> CRMDeal | None:
        return session.get(CRMDeal, deal_id)

    def get_for_update(self, session: Session, deal_id: uuid.UUID) -> CRMDeal | None:
        return session.scalar(
            select(CRMDeal).where(CRMDeal.id == deal_id).with_for_update().execution_options(populate_existing=True)
        )

    def lock_stage_rows(self, session: Session, stage_ids: Sequence[uuid.UUID]) -> None:
        """Row-lock the stages and every deal in them, in stable id order."""
        ordered = sorted(set(stage_ids), key=str)
        if not ordered:
            return
        session.execute(
            select(CRMPipelineStage.id)
            .where(CRMPipelineStage.id.in_(ordered))
            .order_by(CRMPipelineStage.id)
            .with_for_update()
        ).all()
        session.execute(
            select(CRMDeal.id).where(CRMDeal.stage_id.in_(ordered)).order_by(CRMDeal.id).with_for_update()
        ).all()

    def next_position(self, session: Session, stage_id: uuid.UUID) -> int:
        current = session.scalar(select(func.max(CRMDeal.position)).where(CRMDeal.stage_id == stage_id))
        return 0 if current is None else int(current) + 1

    def count_in_stage(self, session: Session, stage_id: uuid.UUID, *, exclude_id: uuid.UUID | None = None) -> int:
        query = select(func.count(CRMDeal.id)).where(CRMDeal.stage_id == stage_id)
        if exclude_id is not None:
            query = query.where(CRMDeal.id != exclude_id)
        return int(session.scalar(query) or 0)

    def shift_positions(
        self,
        session: Session,
        stage_id: uuid.UUID,
        *,
        delta: int,
        above: int | None = None,
        at_or_above: int | None = None,
        exclude_id: uuid.UUID | None = None,
    ) -> int:
        conditions: list[Any] = [CRMDeal.stage_id == stage_id]
        if above is not None:
            conditions.append(CRMDeal.position > above)
        if at_or_above is not None:
            conditions.append(CRMDeal.position >= at_or_above)
        if exclude_id is not None:
            conditions.append(CRMDeal.id != exclude_id)
        result = session.execute(
            update(CRMDeal)
            .where(and_(*conditions))
            .values(position=CRMDeal.position + delta)
            .execution_options(synchronize_session="fetch")
        )
        return int(result.rowcount or 0)

    def list_in_stage(self, session: Session, stage_id: uuid.UUID) -> list[CRMDeal]:
        return list(
            session.scalars(
                select(CRMDeal)
                .where(CRMDeal.stage_id == stage_id)
                .order_by(CRMDeal.position.asc(), CRMDeal.created_at.asc())
                .execution_options(populate_existing=True)
            )
        )

    def list_for_pipeline(
        self,
        session: Session,
        pipeline_id: uuid.UUID,
        *,
        status: str | None = None,
        priority: str | None = None,
        assigned_to: uuid.UUID | None = None,
        search: str | None = None,
    ) -> list[CRMDeal]:
        query: Select[Any] = select(CRMDeal).where(CRMDeal.pipeline_id == pipeline_id)
        if status:
            query = query.where(CRMDeal.status == status)
        if priority:
            query = query.where(CRMDeal.priority == priority)
        if assigned_to is not None:
            query = query.where(CRMDeal.assigned_to == assigned_to)
        if search:
            term = search.strip().lower()
            query = query.where(
                or_(
                    func.lower(CRMDeal.title).contains(term, autoescape=True),
                    func.lower(func.coalesce(CRMDeal.contact_person, "")).contains(term, autoescape=True),
                )
            )
        return list(session.scalars(query.order_by(CRMDeal.position.asc(), CRMDeal.created_at.asc())))

    def list_for_client(self, session: Session, client_id: uuid.UUID) -> list[CRMDeal]:
        return list(
            session.scalars(
                select(CRMDeal).where(CRMDeal.client_id == client_id).order_by(CRMDeal.created_at.desc())
            )
        )

    def list_in_scope(self, session: Session, pipeline_id: uuid.UUID | None = None) -> list[CRMDeal]:
        query = select(CRMDeal)
        if pipeline_id is not None:
            query = query.where(CRMDeal.pipeline_id == pipeline_id)
        return list(session.scalars(query))

    def list_open_with_close_date(self, session: Session, pipeline_id: uuid.UUID | None = None) -> list[CRMDeal]:
        query = select(CRMDeal).where(and_(CRMDeal.status == "open", CRMDeal.expected_close_date.is_not(None)))
        if pipeline_id is not None:
            query = query.where(CRMDeal.pipeline_id == pipeline_id)
        return list(session.scalars(query.order_by(CRMDeal.expected_close_date.asc())))

    def mark_invoiced(self, session: Session, deal_id: uuid.UUID, invoice_id: uuid.UUID, updated_at: datetime) -> bool:
        result = session.execute(
            update(CRMDeal)
            .where(and_(CRMDeal.id == deal_id, CRMDeal.won_invoice_id.is_(None), CRMDeal.status == "won"))
            .values(won_invoice_id=invoice_id, updated_at=updated_at)
            .execution_options(synchronize_session="fetch")
        )
        return bool(result.rowcount)

    def delete(self, session: Session, deal: CRMDeal) -> None:
        session.delete(deal)
        session.flush()


class ActivityRepository:
    def get(self, session: Session, activity_id: uuid.UUID) -> CRMDealActivity | None:
        return session.get(CRMDealActivity, activity_id)

    def list_for_deal(self, session: Session, deal_id: uuid.UUID) -> list[CRMDealActivity]:
        return list(
            session.scalars(
                select(CRMDealActivity)
                .where(CRMDealActivity.deal_id == deal_id)
                .order_by(CRMDealActivity.created_at.desc(), CRMDealActivity.id.asc())
            )
        )

    def list_scheduled(
        self,
        session: Session,
        *,
        after: datetime,
        until: datetime,
        limit: int,
        created_by: uuid.UUID | None = None,
    ) -> list[CRMDealActivity]:
        query = select(CRMDealActivity).where(
            and_(
                CRMDealActivity.is_completed.is_(False),
                CRMDealActivity.scheduled_at.is_not(None),
                CRMDealActivity.scheduled_at > after,
                CRMDealActivity.scheduled_at <= until,
            )
        )
        if created_by is not None:
            query = query.where(CRMDealActivity.created_by == created_by)
        return list(session.scalars(query.order_by(CRMDealActivity.scheduled_at.asc()).limit(limit)))

    def delete_for_deal(self, session: Session, deal_id: uuid.UUID) -> int:
        result = session.execute(delete(CRMDealActivity).where(CRMDealActivity.deal_id == deal_id))
        return int(result.rowcount or 0)
