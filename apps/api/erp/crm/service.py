from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager, nullcontext
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from erp.core.config import Settings
from erp.core.events import InProcessEventBus, build_envelope
from erp.crm.errors import ConcurrencyError, ConflictError, NotFoundError, ValidationError
from erp.crm.locks import StageLockRegistry
from erp.crm.models import (
    DEAL_PRIORITIES,
    DEAL_STATUSES,
    SYSTEM_ACTIVITY_TYPES,
    USER_ACTIVITY_TYPES,
    CRMDeal,
    CRMDealActivity,
    CRMPipeline,
    CRMPipelineStage,
    utcnow,
)
from erp.crm.repositories import ActivityRepository, DealRepository, PipelineRepository, StageRepository
from erp.crm.schemas import (
    ActivityCreate,
    ActivityRead,
    ActivityUpdate,
    ClientRef,
    DealCreate,
    DealFilters,
    DealMoveRequest,
    DealRead,
    DealStatusUpdateRequest,
    DealUpdate,
    InvoiceConversionRead,
    PipelineCreate,
    PipelineRead,
    PipelineStageCreate,
    PipelineStageRead,
    PipelineStageUpdate,
    PipelineSummary,
    PipelineUpdate,
    ReorderRequest,
    StageSummary,
    UserRef,
)
from erp.directory import ClientDirectory, UserDirectory
from erp.invoicing import DraftInvoiceLine, DraftInvoiceRequest, InvoicingClient
from erp.metrics import (
    observe_concurrency_conflict,
    observe_deal_move,
    observe_invoice_conversion,
    observe_status_transition,
)


logger = logging.getLogger(__name__)
tracer = trace.get_tracer("erp.crm.service")

ClientDirectoryFactory = Callable[[Session], ClientDirectory]
UserDirectoryFactory = Callable[[Session], UserDirectory]
InvoicingClientFactory = Callable[[Session], InvoicingClient]

# name, color, win probability, won flag, lost flag
DEFAULT_STAGES: tuple[tuple[str, str, int, bool, bool], ...] = (
    ("New Lead", "#6B7280", 10, False, False),
    ("Contact", "#3B82F6", 20, False, False),
    ("Proposal", "#8B5CF6", 40, False, False),
    ("Negotiation", "#F59E0B", 60, False, False),
    ("Won", "#10B981", 100, True, False),
    ("Lost", "#EF4444", 0, False, True),
)


def _coerce_user_uuid(value: str) -> uuid.UUID:
    try:
        return uuid.UUID(value)
    except ValueError:
        return uuid.uuid5(uuid.NAMESPACE_URL, f"erp-actor:{value}")


@dataclass
class ActorUser:
    user_id: str
    permissions: set[str] = field(default_factory=set)
    correlation_id: str | None = None

    @property
    def actor_uuid(self) -> uuid.UUID:
        return _coerce_user_uuid(self.user_id)


@contextmanager
def atomic(
    session: Session,
    *,
    operation: str | None = None,
    locks: StageLockRegistry | None = None,
    stage_ids: Iterable[uuid.UUID | None] = (),
) -> Iterator[None]:
    """Run the block as one unit of work and commit once at the end.

    Any exception rolls the session back. When ``operation`` is given, lock
    timeouts and database write conflicts surface as a retryable
    ``ConcurrencyError``. Stage locks, if requested, are held until after the
    commit.
    """
    guard = locks.hold(stage_ids, operation=operation or "write") if locks is not None else nullcontext()
    try:
        with guard:
            yield
            session.commit()
    except ConcurrencyError as exc:
        session.rollback()
        observe_concurrency_conflict(exc.operation)
        logger.warning("crm concurrency conflict", extra={"operation": exc.operation, "error": exc.message})
        raise
    except (OperationalError, IntegrityError) as exc:
        session.rollback()
        if operation is None:
            raise
        observe_concurrency_conflict(operation)
        logger.warning("crm concurrency conflict", extra={"operation": operation, "error": str(exc)})
        raise ConcurrencyError(f"{operation} conflicted with a concurrent write, retry", operation=operation) from exc
    except Exception:
        session.rollback()
        raise


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def apply_stage_status(deal: CRMDeal, stage: CRMPipelineStage) -> str | None:
    """Align deal status with the stage flags; return the previous status if it changed."""
    previous = deal.status
    if stage.is_won_stage:
        if deal.status != "won":
            deal.status = "won"
            deal.actual_close_date = utcnow()
    elif stage.is_lost_stage:
        if deal.status != "lost":
            deal.status = "lost"
            deal.actual_close_date = utcnow()
    elif deal.status != "open":
        deal.status = "open"
        deal.actual_close_date = None
    return previous if previous != deal.status else None


class _EventPublisher:
    def __init__(self, bus: InProcessEventBus) -> None:
        self.bus = bus

    def publish(self, event_type: str, actor_user: ActorUser, payload: dict[str, Any]) -> None:
        self.bus.publish(
            event_type,
            build_envelope(
                event_type,
                payload,
                actor_user_id=actor_user.user_id,
                correlation_id=actor_user.correlation_id,
            ),
        )


class PipelineService:
    entity_type = "crm.pipeline"

    def __init__(
        self,
        *,
        settings: Settings,
        bus: InProcessEventBus,
        locks: StageLockRegistry,
        user_directory_factory: UserDirectoryFactory,
        activity_service: ActivityLogService,
        pipelines: PipelineRepository | None = None,
        stages: StageRepository | None = None,
        deals: DealRepository | None = None,
    ) -> None:
        self.settings = settings
        self.events = _EventPublisher(bus)
        self.locks = locks
        self.user_directory_factory = user_directory_factory
        self.activity_service = activity_service
        self.pipelines = pipelines or PipelineRepository()
        self.stages = stages or StageRepository()
        self.deals = deals or DealRepository()

    def list_pipelines(self, session: Session) -> list[PipelineRead]:
        pipelines = self.pipelines.list_active(session)
        stages = [stage for stage in self.stages.list_for_pipelines(session, [p.id for p in pipelines]) if stage.is_active]
        counts = self.stages.deal_counts(session, [stage.id for stage in stages])
        users = self.user_directory_factory(session).get_users(p.created_by for p in pipelines)

        by_pipeline: dict[uuid.UUID, list[CRMPipelineStage]] = {}
        for stage in stages:
            by_pipeline.setdefault(stage.pipeline_id, []).append(stage)
        return [
            self._to_pipeline_read(pipeline, by_pipeline.get(pipeline.id, []), counts, users)
            for pipeline in pipelines
        ]

    def get_pipeline(self, session: Session, pipeline_id: uuid.UUID) -> PipelineRead:
        pipeline = self._get_pipeline(session, pipeline_id)
        stages = self.stages.list_for_pipeline(session, pipeline.id)
        counts = self.stages.deal_counts(session, [stage.id for stage in stages])
        users = self.user_directory_factory(session).get_users([pipeline.created_by])
        return self._to_pipeline_read(pipeline, stages, counts, users)

    def create_pipeline(self, session: Session, actor_user: ActorUser, dto: PipelineCreate) -> PipelineRead:
        with atomic(session):
            pipeline = CRMPipeline(
                name=dto.name.strip(),
                description=dto.description,
                color=dto.color or self.settings.default_pipeline_color,
                position=self.pipelines.next_position(session),
                is_active=True,
                created_by=actor_user.actor_uuid,
            )
            session.add(pipeline)
            session.flush()
            for position, (name, color, probability, is_won, is_lost) in enumerate(DEFAULT_STAGES):
                session.add(
                    CRMPipelineStage(
                        pipeline_id=pipeline.id,
                        name=name,
                        color=color,
                        position=position,
                        win_probability=probability,
                        is_won_stage=is_won,
                        is_lost_stage=is_lost,
                        is_active=True,
                    )
                )
            pipeline_id = pipeline.id

        self.events.publish("crm.pipeline.created", actor_user, {"pipeline_id": str(pipeline_id)})
        return self.get_pipeline(session, pipeline_id)

    def update_pipeline(
        self,
        session: Session,
        actor_user: ActorUser,
        pipeline_id: uuid.UUID,
        dto: PipelineUpdate,
    ) -> PipelineRead:
        with atomic(session):
            pipeline = self._get_pipeline(session, pipeline_id)
            changes = dto.model_dump(exclude_unset=True)
            if changes.get("name") is not None:
                pipeline.name = changes["name"].strip()
            if "description" in changes:
                pipeline.description = changes["description"]
            if changes.get("color") is not None:
                pipeline.color = changes["color"]
            if changes.get("is_active") is not None:
                pipeline.is_active = changes["is_active"]
        return self.get_pipeline(session, pipeline_id)

    def delete_pipeline(self, session: Session, actor_user: ActorUser, pipeline_id: uuid.UUID) -> None:
        with atomic(session):
            pipeline = self._get_pipeline(session, pipeline_id)
            pipeline.is_active = False
        logger.info("pipeline deactivated", extra={"pipeline_id": str(pipeline_id)})

    def reorder_pipelines(self, session: Session, actor_user: ActorUser, dto: ReorderRequest) -> list[PipelineRead]:
        with atomic(session, operation="reorder_pipelines"):
            pipelines = self.pipelines.list_all(session)
            for position, pipeline in enumerate(_reordered(pipelines, dto.ids, "pipeline")):
                pipeline.position = position
        return self.list_pipelines(session)

    def create_stage(
        self,
        session: Session,
        actor_user: ActorUser,
        pipeline_id: uuid.UUID,
        dto: PipelineStageCreate,
    ) -> PipelineStageRead:
        with atomic(session):
            pipeline = self._get_pipeline(session, pipeline_id)
            stage = CRMPipelineStage(
                pipeline_id=pipeline.id,
                name=dto.name.strip(),
                color=dto.color or self.settings.default_stage_color,
                position=self.stages.next_position(session, pipeline.id),
                win_probability=dto.win_probability,
                is_won_stage=dto.is_won_stage,
                is_lost_stage=dto.is_lost_stage,
                is_active=True,
            )
            session.add(stage)
            session.flush()
            stage_id = stage.id
        return self._to_stage_read(self._get_stage(session, stage_id), 0)

    def update_stage(
        self,
        session: Session,
        actor_user: ActorUser,
        stage_id: uuid.UUID,
        dto: PipelineStageUpdate,
    ) -> PipelineStageRead:
        with atomic(session):
            stage = self._get_stage(session, stage_id)
            changes = {key: value for key, value in dto.model_dump(exclude_unset=True).items() if value is not None}
            if "name" in changes:
                changes["name"] = changes["name"].strip()
            for key, value in changes.items():
                setattr(stage, key, value)
        stage = self._get_stage(session, stage_id)
        return self._to_stage_read(stage, self.stages.deal_counts(session, [stage.id]).get(stage.id, 0))

    def delete_stage(
        self,
        session: Session,
        actor_user: ActorUser,
        stage_id: uuid.UUID,
        move_deals_to_stage_id: uuid.UUID | None = None,
    ) -> None:
        with tracer.start_as_current_span("crm.stage.delete") as span:
            span.set_attribute("stage_id", str(stage_id))
            stage = self._get_stage(session, stage_id)
            target: CRMPipelineStage | None = None
            if move_deals_to_stage_id is not None:
                span.set_attribute("target_stage_id", str(move_deals_to_stage_id))
                target = self.stages.get(session, move_deals_to_stage_id)
                if target is None:
                    raise NotFoundError("target stage not found")
                if target.id == stage.id:
                    raise ValidationError("cannot redirect deals to the stage being deleted")
                if target.pipeline_id != stage.pipeline_id:
                    raise ValidationError("target stage belongs to a different pipeline")
                if not target.is_active:
                    raise ValidationError("target stage is inactive")

            moved: list[tuple[uuid.UUID, str | None]] = []
            with atomic(
                session,
                operation="delete_stage",
                locks=self.locks,
                stage_ids=[stage.id, target.id if target else None],
            ):
                stage_ids = [stage.id] + ([target.id] if target else [])
                self.deals.lock_stage_rows(session, stage_ids)
                stage.is_active = False
                if target is not None:
                    next_position = self.deals.next_position(session, target.id)
                    for deal in self.deals.list_in_stage(session, stage.id):
                        deal.stage_id = target.id
                        deal.position = next_position
                        next_position += 1
                        previous_status = apply_stage_status(deal, target)
                        self.activity_service.record(
                            session,
                            deal_id=deal.id,
                            activity_type="stage_change",
                            title=f'Moved from "{stage.name}" to "{target.name}"',
                            created_by=actor_user.actor_uuid,
                            metadata={
                                "from_stage_id": str(stage.id),
                                "to_stage_id": str(target.id),
                                "from_stage": stage.name,
                                "to_stage": target.name,
                            },
                        )
                        moved.append((deal.id, previous_status))
                    session.flush()
                span.set_attribute("redirected_deals", len(moved))

            for deal_id, previous_status in moved:
                self.events.publish(
                    "crm.deal.moved",
                    actor_user,
                    {"deal_id": str(deal_id), "from_stage_id": str(stage_id), "to_stage_id": str(move_deals_to_stage_id)},
                )
                if previous_status is not None:
                    deal = self.deals.get(session, deal_id)
                    if deal is not None:
                        observe_status_transition(deal.status)
                        self.events.publish(
                            "crm.deal.status_changed",
                            actor_user,
                            {"deal_id": str(deal_id), "from_status": previous_status, "to_status": deal.status},
                        )
            logger.info("stage deactivated", extra={"stage_id": str(stage_id)})

    def reorder_stages(
        self,
        session: Session,
        actor_user: ActorUser,
        pipeline_id: uuid.UUID,
        dto: ReorderRequest,
    ) -> list[PipelineStageRead]:
        with atomic(session, operation="reorder_stages"):
            pipeline = self.pipelines.get_for_update(session, pipeline_id)
            if pipeline is None:
                raise NotFoundError("pipeline not found")
            stages = self.stages.list_for_pipeline(session, pipeline.id)
            for position, stage in enumerate(_reordered(stages, dto.ids, "stage")):
                stage.position = position
        stages = self.stages.list_for_pipeline(session, pipeline_id)
        counts = self.stages.deal_counts(session, [stage.id for stage in stages])
        return [self._to_stage_read(stage, counts.get(stage.id, 0)) for stage in stages]

    def _get_pipeline(self, session: Session, pipeline_id: uuid.UUID) -> CRMPipeline:
        pipeline = self.pipelines.get(session, pipeline_id)
        if pipeline is None:
            raise NotFoundError("pipeline not found")
        return pipeline

    def _get_stage(self, session: Session, stage_id: uuid.UUID) -> CRMPipelineStage:
        stage = self.stages.get(session, stage_id)
        if stage is None:
            raise NotFoundError("stage not found")
        return stage

    def _to_pipeline_read(
        self,
        pipeline: CRMPipeline,
        stages: list[CRMPipelineStage],
        counts: dict[uuid.UUID, int],
        users: dict[uuid.UUID, Any],
    ) -> PipelineRead:
        creator = users.get(pipeline.created_by)
        return PipelineRead(
            id=pipeline.id,
            name=pipeline.name,
            description=pipeline.description,
            color=pipeline.color,
            position=pipeline.position,
            is_active=pipeline.is_active,
            created_by=pipeline.created_by,
            created_at=pipeline.created_at,
            updated_at=pipeline.updated_at,
            creator=UserRef.model_validate(creator) if creator is not None else None,
            stages=[self._to_stage_read(stage, counts.get(stage.id, 0)) for stage in stages],
        )

    def _to_stage_read(self, stage: CRMPipelineStage, deal_count: int) -> PipelineStageRead:
        read = PipelineStageRead.model_validate(stage)
        read.deal_count = deal_count
        return read


def _reordered(rows: list[Any], ids: list[uuid.UUID], label: str) -> list[Any]:
    """Listed rows first in the given order, then the rest in their current order."""
    if len(set(ids)) != len(ids):
        raise ValidationError(f"duplicate {label} ids in reorder request")
    by_id = {row.id: row for row in rows}
    unknown = [str(item) for item in ids if item not in by_id]
    if unknown:
        raise ValidationError(f"unknown {label} ids: {', '.join(unknown)}")
    listed = [by_id[item] for item in ids]
    listed_ids = set(ids)
    rest = [row for row in rows if row.id not in listed_ids]
    return listed + rest


class ActivityLogService:
    def __init__(
        self,
        *,
        settings: Settings,
        user_directory_factory: UserDirectoryFactory,
        activities: ActivityRepository | None = None,
        deals: DealRepository | None = None,
    ) -> None:
        self.settings = settings
        self.user_directory_factory = user_directory_factory
        self.activities = activities or ActivityRepository()
        self.deals = deals or DealRepository()

    def record(
        self,
        session: Session,
        *,
        deal_id: uuid.UUID,
        activity_type: str,
        title: str,
        created_by: uuid.UUID,
        description: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> CRMDealActivity:
        """Append an activity inside the caller's transaction. Nothing is committed here."""
        activity = CRMDealActivity(
            deal_id=deal_id,
            type=activity_type,
            title=title,
            description=description,
            metadata_json=metadata,
            is_completed=False,
            created_by=created_by,
        )
        session.add(activity)
        return activity

    def list_for_deal(self, session: Session, deal_id: uuid.UUID) -> list[ActivityRead]:
        if self.deals.get(session, deal_id) is None:
            raise NotFoundError("deal not found")
        return self.to_reads(session, self.activities.list_for_deal(session, deal_id))

    def create_activity(
        self,
        session: Session,
        actor_user: ActorUser,
        deal_id: uuid.UUID,
        dto: ActivityCreate,
    ) -> ActivityRead:
        self._validate_user_type(dto.type)
        with atomic(session):
            if self.deals.get(session, deal_id) is None:
                raise NotFoundError("deal not found")
            activity = self.record(
                session,
                deal_id=deal_id,
                activity_type=dto.type,
                title=dto.title.strip(),
                description=dto.description,
                created_by=actor_user.actor_uuid,
            )
            activity.scheduled_at = _as_utc(dto.scheduled_at)
            session.flush()
            activity_id = activity.id
        return self._to_read_model(session, activity_id)

    def update_activity(
        self,
        session: Session,
        actor_user: ActorUser,
        activity_id: uuid.UUID,
        dto: ActivityUpdate,
    ) -> ActivityRead:
        with atomic(session):
            activity = self._get_manual(session, activity_id)
            changes = dto.model_dump(exclude_unset=True)
            if changes.get("type") is not None:
                self._validate_user_type(changes["type"])
                activity.type = changes["type"]
            if changes.get("title") is not None:
                activity.title = changes["title"].strip()
            if "description" in changes:
                activity.description = changes["description"]
            if "scheduled_at" in changes:
                activity.scheduled_at = _as_utc(changes["scheduled_at"])
        return self._to_read_model(session, activity_id)

    def delete_activity(self, session: Session, actor_user: ActorUser, activity_id: uuid.UUID) -> None:
        with atomic(session):
            activity = self._get_manual(session, activity_id)
            session.delete(activity)

    def mark_completed(self, session: Session, actor_user: ActorUser, activity_id: uuid.UUID) -> ActivityRead:
        with atomic(session):
            activity = self.activities.get(session, activity_id)
            if activity is None:
                raise NotFoundError("activity not found")
            if not activity.is_completed:
                activity.is_completed = True
                activity.completed_at = utcnow()
        return self._to_read_model(session, activity_id)

    def list_scheduled(
        self,
        session: Session,
        actor_user: ActorUser,
        *,
        user_id: uuid.UUID | None = None,
        days: int | None = None,
    ) -> list[ActivityRead]:
        days_ahead = self.settings.scheduled_activities_days_ahead if days is None else days
        if days_ahead < 0:
            raise ValidationError("days must not be negative")
        now = utcnow()
        rows = self.activities.list_scheduled(
            session,
            after=now,
            until=now + timedelta(days=days_ahead),
            limit=self.settings.scheduled_activities_limit,
            created_by=user_id or actor_user.actor_uuid,
        )
        return self.to_reads(session, rows)

    def to_reads(self, session: Session, activities: list[CRMDealActivity]) -> list[ActivityRead]:
        users = self.user_directory_factory(session).get_users(activity.created_by for activity in activities)
        reads: list[ActivityRead] = []
        for activity in activities:
            read = ActivityRead.model_validate(activity)
            creator = users.get(activity.created_by)
            if creator is not None:
                read.creator = UserRef.model_validate(creator)
            reads.append(read)
        return reads

    def _to_read_model(self, session: Session, activity_id: uuid.UUID) -> ActivityRead:
        activity = self.activities.get(session, activity_id)
        if activity is None:
            raise NotFoundError("activity not found")
        return self.to_reads(session, [activity])[0]

    def _get_manual(self, session: Session, activity_id: uuid.UUID) -> CRMDealActivity:
        activity = self.activities.get(session, activity_id)
        if activity is None:
            raise NotFoundError("activity not found")
        if activity.type in SYSTEM_ACTIVITY_TYPES:
            raise ValidationError("system activities are read-only")
        return activity

    def _validate_user_type(self, activity_type: str) -> None:
        if activity_type not in USER_ACTIVITY_TYPES:
            raise ValidationError(
                f"invalid activity type, expected one of: {', '.join(USER_ACTIVITY_TYPES)}",
            )


class DealService:
    entity_type = "crm.deal"

    def __init__(
        self,
        *,
        settings: Settings,
        bus: InProcessEventBus,
        locks: StageLockRegistry,
        activity_service: ActivityLogService,
        client_directory_factory: ClientDirectoryFactory,
        user_directory_factory: UserDirectoryFactory,
        pipelines: PipelineRepository | None = None,
        stages: StageRepository | None = None,
        deals: DealRepository | None = None,
        activities: ActivityRepository | None = None,
    ) -> None:
        self.settings = settings
        self.events = _EventPublisher(bus)
        self.locks = locks
        self.activity_service = activity_service
        self.client_directory_factory = client_directory_factory
        self.user_directory_factory = user_directory_factory
        self.pipelines = pipelines or PipelineRepository()
        self.stages = stages or StageRepository()
        self.deals = deals or DealRepository()
        self.activities = activities or ActivityRepository()

    def list_deals_by_pipeline(
        self,
        session: Session,
        pipeline_id: uuid.UUID,
        filters: DealFilters | None = None,
    ) -> dict[str, list[DealRead]]:
        filters = filters or DealFilters()
        if filters.status and filters.status not in DEAL_STATUSES:
            raise ValidationError(f"invalid status filter: {filters.status}")
        if filters.priority and filters.priority not in DEAL_PRIORITIES:
            raise ValidationError(f"invalid priority filter: {filters.priority}")
        if self.pipelines.get(session, pipeline_id) is None:
            raise NotFoundError("pipeline not found")

        deals = self.deals.list_for_pipeline(
            session,
            pipeline_id,
            status=filters.status,
            priority=filters.priority,
            assigned_to=filters.assigned_to,
            search=filters.search,
        )
        grouped: dict[str, list[DealRead]] = {
            str(stage.id): [] for stage in self.stages.list_for_pipeline(session, pipeline_id, active_only=True)
        }
        for read in self.to_reads(session, deals):
            grouped.setdefault(str(read.stage_id), []).append(read)
        return grouped

    def list_deals_for_client(self, session: Session, client_id: uuid.UUID) -> list[DealRead]:
        return self.to_reads(session, self.deals.list_for_client(session, client_id))

    def get_deal(self, session: Session, deal_id: uuid.UUID) -> DealRead:
        read = self._to_read_model(session, deal_id)
        read.activities = self.activity_service.to_reads(session, self.activities.list_for_deal(session, deal_id))
        return read

    def create_deal(self, session: Session, actor_user: ActorUser, dto: DealCreate) -> DealRead:
        title = (dto.title or "").strip()
        if not title:
            raise ValidationError("title is required")
        if dto.stage_id is None:
            raise ValidationError("stage_id is required")
        pipeline = self.pipelines.get(session, dto.pipeline_id)
        if pipeline is None:
            raise NotFoundError("pipeline not found")
        stage = self.stages.get(session, dto.stage_id)
        if stage is None or stage.pipeline_id != pipeline.id:
            raise ValidationError("stage does not belong to the pipeline")
        if not stage.is_active:
            raise ValidationError("stage is inactive")

        actor_id = actor_user.actor_uuid
        with atomic(session, operation="create_deal", locks=self.locks, stage_ids=[stage.id]):
            self.deals.lock_stage_rows(session, [stage.id])
            deal = CRMDeal(
                title=title,
                description=dto.description,
                pipeline_id=pipeline.id,
                stage_id=stage.id,
                client_id=dto.client_id,
                contact_person=dto.contact_person,
                contact_email=dto.contact_email,
                contact_phone=dto.contact_phone,
                value=dto.value,
                currency=(dto.currency or self.settings.default_currency).upper(),
                status="open",
                priority=dto.priority,
                expected_close_date=dto.expected_close_date,
                assigned_to=dto.assigned_to,
                position=self.deals.next_position(session, stage.id),
                created_by=actor_id,
            )
            apply_stage_status(deal, stage)
            session.add(deal)
            session.flush()
            self.activity_service.record(
                session,
                deal_id=deal.id,
                activity_type="note",
                title="Deal created",
                created_by=actor_id,
                metadata={"stage_id": str(stage.id), "stage": stage.name},
            )
            deal_id = deal.id

        logger.info("deal created", extra={"deal_id": str(deal_id), "stage_id": str(dto.stage_id)})
        self.events.publish(
            "crm.deal.created",
            actor_user,
            {"deal_id": str(deal_id), "pipeline_id": str(dto.pipeline_id), "stage_id": str(dto.stage_id)},
        )
        return self._to_read_model(session, deal_id)

    def update_deal(self, session: Session, actor_user: ActorUser, deal_id: uuid.UUID, dto: DealUpdate) -> DealRead:
        changes = dto.model_dump(exclude_unset=True)
        if "title" in changes:
            title = (changes["title"] or "").strip()
            if not title:
                raise ValidationError("title is required")
            changes["title"] = title
        if changes.get("currency"):
            changes["currency"] = changes["currency"].upper()
        for required in ("value", "currency", "priority"):
            if required in changes and changes[required] is None:
                changes.pop(required)

        with atomic(session):
            deal = self._get_deal(session, deal_id)
            for key, value in changes.items():
                setattr(deal, key, value)

        self.events.publish("crm.deal.updated", actor_user, {"deal_id": str(deal_id), "fields": sorted(changes)})
        return self._to_read_model(session, deal_id)

    def move_deal(self, session: Session, actor_user: ActorUser, deal_id: uuid.UUID, dto: DealMoveRequest) -> DealRead:
        started = time.perf_counter()
        with tracer.start_as_current_span("crm.deal.move") as span:
            span.set_attribute("deal_id", str(deal_id))
            span.set_attribute("to_stage_id", str(dto.stage_id))
            span.set_attribute("position", dto.position)
            try:
                outcome, previous_status, from_stage_id = self._move(session, actor_user, deal_id, dto)
            except Exception as exc:
                observe_deal_move("failed", time.perf_counter() - started)
                span.record_exception(exc)
                span.set_status(Status(StatusCode.ERROR))
                raise
            observe_deal_move(outcome, time.perf_counter() - started)
            span.set_attribute("outcome", outcome)

        if outcome == "moved":
            logger.info(
                "deal moved",
                extra={
                    "deal_id": str(deal_id),
                    "from_stage_id": str(from_stage_id),
                    "to_stage_id": str(dto.stage_id),
                    "position": dto.position,
                },
            )
            self.events.publish(
                "crm.deal.moved",
                actor_user,
                {"deal_id": str(deal_id), "from_stage_id": str(from_stage_id), "to_stage_id": str(dto.stage_id)},
            )
        read = self._to_read_model(session, deal_id)
        if previous_status is not None:
            self._status_changed(actor_user, read, previous_status)
        return read

    def _move(
        self,
        session: Session,
        actor_user: ActorUser,
        deal_id: uuid.UUID,
        dto: DealMoveRequest,
    ) -> tuple[str, str | None, uuid.UUID]:
        if dto.position < 0:
            raise ValidationError("position must not be negative")
        deal = self._get_deal(session, deal_id)
        target = self.stages.get(session, dto.stage_id)
        if target is None:
            raise NotFoundError("stage not found")
        if target.pipeline_id != deal.pipeline_id:
            raise ValidationError("stage belongs to a different pipeline")
        if not target.is_active:
            raise ValidationError("stage is inactive")
        source_stage_id = deal.stage_id

        with atomic(session, operation="move_deal", locks=self.locks, stage_ids=[source_stage_id, target.id]):
            self.deals.lock_stage_rows(session, [source_stage_id, target.id])
            deal = self.deals.get_for_update(session, deal_id)
            if deal is None:
                raise NotFoundError("deal not found")
            if deal.stage_id != source_stage_id:
                raise ConcurrencyError("deal was moved by a concurrent request", operation="move_deal")

            old_position = deal.position
            new_position = min(dto.position, self.deals.count_in_stage(session, target.id, exclude_id=deal.id))
            if source_stage_id == target.id and new_position == old_position:
                return "noop", None, source_stage_id

            self.deals.shift_positions(session, source_stage_id, delta=-1, above=old_position, exclude_id=deal.id)
            self.deals.shift_positions(session, target.id, delta=1, at_or_above=new_position, exclude_id=deal.id)
            deal.stage_id = target.id
            deal.position = new_position
            previous_status = apply_stage_status(deal, target)

            if source_stage_id != target.id:
                source = self.stages.get(session, source_stage_id)
                source_name = source.name if source is not None else ""
                self.activity_service.record(
                    session,
                    deal_id=deal.id,
                    activity_type="stage_change",
                    title=f'Moved from "{source_name}" to "{target.name}"',
                    created_by=actor_user.actor_uuid,
                    metadata={
                        "from_stage_id": str(source_stage_id),
                        "to_stage_id": str(target.id),
                        "from_stage": source_name,
                        "to_stage": target.name,
                    },
                )
            session.flush()
        return "moved", previous_status, source_stage_id

    def update_deal_status(
        self,
        session: Session,
        actor_user: ActorUser,
        deal_id: uuid.UUID,
        dto: DealStatusUpdateRequest,
    ) -> DealRead:
        with atomic(session, operation="update_deal_status"):
            deal = self.deals.get_for_update(session, deal_id)
            if deal is None:
                raise NotFoundError("deal not found")
            previous_status = deal.status
            if dto.status == "lost" and dto.lost_reason is not None:
                deal.lost_reason = dto.lost_reason
            if dto.status != previous_status:
                deal.status = dto.status
                deal.actual_close_date = None if dto.status == "open" else utcnow()
                self.activity_service.record(
                    session,
                    deal_id=deal.id,
                    activity_type="status_change",
                    title=f'Status changed from "{previous_status}" to "{dto.status}"',
                    created_by=actor_user.actor_uuid,
                    metadata={"from_status": previous_status, "to_status": dto.status},
                )

        read = self._to_read_model(session, deal_id)
        if previous_status != dto.status:
            self._status_changed(actor_user, read, previous_status)
        return read

    def delete_deal(self, session: Session, actor_user: ActorUser, deal_id: uuid.UUID) -> None:
        with tracer.start_as_current_span("crm.deal.delete") as span:
            span.set_attribute("deal_id", str(deal_id))
            deal = self._get_deal(session, deal_id)
            if deal.won_invoice_id is not None:
                raise ConflictError("deal is linked to an invoice and cannot be deleted")
            stage_id = deal.stage_id
            span.set_attribute("stage_id", str(stage_id))

            with atomic(session, operation="delete_deal", locks=self.locks, stage_ids=[stage_id]):
                self.deals.lock_stage_rows(session, [stage_id])
                deal = self.deals.get_for_update(session, deal_id)
                if deal is None:
                    raise NotFoundError("deal not found")
                if deal.stage_id != stage_id:
                    raise ConcurrencyError("deal was moved by a concurrent request", operation="delete_deal")
                position = deal.position
                self.activities.delete_for_deal(session, deal.id)
                self.deals.delete(session, deal)
                self.deals.shift_positions(session, stage_id, delta=-1, above=position)

        logger.info("deal deleted", extra={"deal_id": str(deal_id), "stage_id": str(stage_id)})
        self.events.publish("crm.deal.deleted", actor_user, {"deal_id": str(deal_id), "stage_id": str(stage_id)})

    def to_reads(self, session: Session, deals: list[CRMDeal]) -> list[DealRead]:
        stages = self.stages.get_many(session, list({deal.stage_id for deal in deals}))
        pipelines = {pipeline_id: self.pipelines.get(session, pipeline_id) for pipeline_id in {d.pipeline_id for d in deals}}
        clients = self.client_directory_factory(session).get_clients(deal.client_id for deal in deals if deal.client_id)
        users = self.user_directory_factory(session).get_users(
            [deal.created_by for deal in deals] + [deal.assigned_to for deal in deals if deal.assigned_to]
        )

        reads: list[DealRead] = []
        for deal in deals:
            read = DealRead.model_validate(deal)
            stage = stages.get(deal.stage_id)
            pipeline = pipelines.get(deal.pipeline_id)
            client = clients.get(deal.client_id) if deal.client_id else None
            assignee = users.get(deal.assigned_to) if deal.assigned_to else None
            creator = users.get(deal.created_by)
            read.stage = StageSummary.model_validate(stage) if stage is not None else None
            read.pipeline = PipelineSummary.model_validate(pipeline) if pipeline is not None else None
            read.client = ClientRef.model_validate(client) if client is not None else None
            read.assignee = UserRef.model_validate(assignee) if assignee is not None else None
            read.creator = UserRef.model_validate(creator) if creator is not None else None
            reads.append(read)
        return reads

    def _status_changed(self, actor_user: ActorUser, read: DealRead, previous_status: str) -> None:
        observe_status_transition(read.status)
        self.events.publish(
            "crm.deal.status_changed",
            actor_user,
            {
                "deal_id": str(read.id),
                "from_status": previous_status,
                "to_status": read.status,
                "value": str(read.value),
                "currency": read.currency,
            },
        )

    def _get_deal(self, session: Session, deal_id: uuid.UUID) -> CRMDeal:
        deal = self.deals.get(session, deal_id)
        if deal is None:
            raise NotFoundError("deal not found")
        return deal

    def _to_read_model(self, session: Session, deal_id: uuid.UUID) -> DealRead:
        return self.to_reads(session, [self._get_deal(session, deal_id)])[0]


class InvoiceBridgeService:
    def __init__(
        self,
        *,
        settings: Settings,
        bus: InProcessEventBus,
        activity_service: ActivityLogService,
        invoicing_client_factory: InvoicingClientFactory,
        deals: DealRepository | None = None,
    ) -> None:
        self.settings = settings
        self.events = _EventPublisher(bus)
        self.activity_service = activity_service
        self.invoicing_client_factory = invoicing_client_factory
        self.deals = deals or DealRepository()

    def convert_won_deal(self, session: Session, actor_user: ActorUser, deal_id: uuid.UUID) -> InvoiceConversionRead:
        with tracer.start_as_current_span("crm.deal.convert_to_invoice") as span:
            span.set_attribute("deal_id", str(deal_id))
            try:
                result = self._convert(session, actor_user, deal_id)
            except ConflictError:
                observe_invoice_conversion("conflict")
                raise
            except Exception as exc:
                observe_invoice_conversion("failed")
                span.record_exception(exc)
                span.set_status(Status(StatusCode.ERROR))
                raise
            observe_invoice_conversion("converted")
            span.set_attribute("invoice_id", str(result.invoice_id))

        logger.info("deal converted to invoice", extra={"deal_id": str(deal_id), "invoice_id": str(result.invoice_id)})
        self.events.publish(
            "crm.deal.invoiced",
            actor_user,
            {"deal_id": str(deal_id), "invoice_id": str(result.invoice_id), "invoice_number": result.invoice_number},
        )
        return result

    def _convert(self, session: Session, actor_user: ActorUser, deal_id: uuid.UUID) -> InvoiceConversionRead:
        with atomic(session, operation="convert_to_invoice"):
            deal = self.deals.get_for_update(session, deal_id)
            if deal is None:
                raise NotFoundError("deal not found")
            if deal.status != "won":
                raise ConflictError("only won deals can be converted to an invoice")
            if deal.won_invoice_id is not None:
                raise ConflictError("deal already converted to an invoice")
            if deal.client_id is None:
                raise ConflictError("client required to create an invoice")

            actor_id = actor_user.actor_uuid
            invoice = self.invoicing_client_factory(session).create_draft_invoice(
                DraftInvoiceRequest(
                    client_id=deal.client_id,
                    currency=deal.currency or self.settings.default_currency,
                    vat_rate=self.settings.invoice_vat_rate,
                    payment_terms_days=self.settings.invoice_payment_terms_days,
                    lines=[DraftInvoiceLine(description=deal.title, unit_price=deal.value)],
                    created_by=actor_id,
                    notes=f"Generated from deal: {deal.title}",
                )
            )
            if not self.deals.mark_invoiced(session, deal.id, invoice.id, utcnow()):
                raise ConflictError("deal already converted to an invoice")
            self.activity_service.record(
                session,
                deal_id=deal.id,
                activity_type="note",
                title=f"Invoice {invoice.number} generated",
                created_by=actor_id,
                metadata={"invoice_id": str(invoice.id), "invoice_number": invoice.number},
            )
            result = InvoiceConversionRead(
                deal_id=deal.id,
                invoice_id=invoice.id,
                invoice_number=invoice.number,
                status="draft",
            )
        return result
