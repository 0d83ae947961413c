from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Literal
from uuid import UUID

from pydantic import AliasChoices, BaseModel, ConfigDict, EmailStr, Field


DealStatus = Literal["open", "won", "lost"]
DealPriority = Literal["low", "medium", "high", "critical"]
UserActivityType = Literal["note", "call", "meeting", "email", "task"]


class PipelineCreate(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    description: str | None = None
    color: str | None = Field(default=None, pattern=r"^#[0-9A-Fa-f]{6}$")


class PipelineUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=100)
    description: str | None = None
    color: str | None = Field(default=None, pattern=r"^#[0-9A-Fa-f]{6}$")
    is_active: bool | None = None


class ReorderRequest(BaseModel):
    ids: list[UUID] = Field(min_length=1)


class PipelineStageCreate(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    color: str | None = Field(default=None, pattern=r"^#[0-9A-Fa-f]{6}$")
    win_probability: int = Field(default=0, ge=0, le=100)
    is_won_stage: bool = False
    is_lost_stage: bool = False


class PipelineStageUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=100)
    color: str | None = Field(default=None, pattern=r"^#[0-9A-Fa-f]{6}$")
    win_probability: int | None = Field(default=None, ge=0, le=100)
    is_won_stage: bool | None = None
    is_lost_stage: bool | None = None
    is_active: bool | None = None


class StageDeleteRequest(BaseModel):
    move_deals_to_stage_id: UUID | None = None


class PipelineStageRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    pipeline_id: UUID
    name: str
    color: str
    position: int
    win_probability: int
    is_won_stage: bool
    is_lost_stage: bool
    is_active: bool
    deal_count: int = 0
    created_at: datetime
    updated_at: datetime


class UserRef(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    display_name: str
    email: str | None = None
    avatar_url: str | None = None


class ClientRef(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    contact_person: str | None = None
    email: str | None = None
    phone: str | None = None


class PipelineRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    description: str | None
    color: str
    position: int
    is_active: bool
    created_by: UUID
    created_at: datetime
    updated_at: datetime
    creator: UserRef | None = None
    stages: list[PipelineStageRead] = Field(default_factory=list)


class DealCreate(BaseModel):
    # title and stage_id are checked by the service so a missing value is a domain validation error
    title: str | None = None
    pipeline_id: UUID
    stage_id: UUID | None = None
    description: str | None = None
    client_id: UUID | None = None
    contact_person: str | None = None
    contact_email: EmailStr | None = None
    contact_phone: str | None = None
    value: Decimal = Field(default=Decimal("0"), ge=0, max_digits=14, decimal_places=2)
    currency: str | None = Field(default=None, min_length=3, max_length=3)
    priority: DealPriority = "medium"
    expected_close_date: date | None = None
    assigned_to: UUID | None = None


class DealUpdate(BaseModel):
    title: str | None = None
    description: str | None = None
    client_id: UUID | None = None
    contact_person: str | None = None
    contact_email: EmailStr | None = None
    contact_phone: str | None = None
    value: Decimal | None = Field(default=None, ge=0, max_digits=14, decimal_places=2)
    currency: str | None = Field(default=None, min_length=3, max_length=3)
    priority: DealPriority | None = None
    expected_close_date: date | None = None
    assigned_to: UUID | None = None


class DealMoveRequest(BaseModel):
    stage_id: UUID
    position: int


class DealStatusUpdateRequest(BaseModel):
    status: DealStatus
    lost_reason: str | None = None


class DealFilters(BaseModel):
    status: str | None = None
    priority: str | None = None
    assigned_to: UUID | None = None
    search: str | None = None


class StageSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    color: str
    position: int
    win_probability: int
    is_won_stage: bool
    is_lost_stage: bool


class PipelineSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    color: str


class DealRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    title: str
    description: str | None
    pipeline_id: UUID
    stage_id: UUID
    client_id: UUID | None
    contact_person: str | None
    contact_email: str | None
    contact_phone: str | None
    value: Decimal
    currency: str
    status: DealStatus
    priority: DealPriority
    expected_close_date: date | None
    actual_close_date: datetime | None
    assigned_to: UUID | None
    lost_reason: str | None
    won_invoice_id: UUID | None
    position: int
    created_by: UUID
    created_at: datetime
    updated_at: datetime
    stage: StageSummary | None = None
    pipeline: PipelineSummary | None = None
    client: ClientRef | None = None
    assignee: UserRef | None = None
    creator: UserRef | None = None
    activities: list[ActivityRead] | None = None


class ActivityCreate(BaseModel):
    type: str
    title: str = Field(min_length=1, max_length=255)
    description: str | None = None
    scheduled_at: datetime | None = None


class ActivityUpdate(BaseModel):
    type: str | None = None
    title: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = None
    scheduled_at: datetime | None = None


class ActivityRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    deal_id: UUID
    type: str
    title: str
    description: str | None
    scheduled_at: datetime | None
    completed_at: datetime | None
    is_completed: bool
    metadata: dict[str, Any] | None = Field(
        default=None,
        validation_alias=AliasChoices("metadata_json", "metadata"),
    )
    created_by: UUID
    created_at: datetime
    updated_at: datetime
    creator: UserRef | None = None


class StageBreakdown(BaseModel):
    stage_id: UUID
    pipeline_id: UUID
    stage_name: str
    stage_color: str
    position: int
    count: int
    value: Decimal


class DealStatisticsRead(BaseModel):
    total_deals: int
    open_deals: int
    won_deals: int
    lost_deals: int
    total_value: Decimal
    won_value: Decimal
    avg_deal_size: Decimal
    deals_by_stage: list[StageBreakdown] = Field(default_factory=list)


class ForecastMonthRead(BaseModel):
    month: str
    weighted_value: Decimal
    total_value: Decimal
    deal_count: int


class StageConversionRead(BaseModel):
    stage_id: UUID
    stage_name: str
    stage_color: str
    position: int
    deal_count: int
    conversion_rate: int


class InvoiceConversionRead(BaseModel):
    deal_id: UUID
    invoice_id: UUID
    invoice_number: str
    status: str


class MessageResponse(BaseModel):
    message: str


DealRead.model_rebuild()
