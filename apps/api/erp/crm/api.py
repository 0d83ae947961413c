from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse, Response
from sqlalchemy.orm import Session

from erp.context import get_correlation_id
from erp.core.auth import AuthUser, get_current_user as get_auth_user
from erp.core.database import get_db
from erp.crm.container import CrmServices
from erp.crm.schemas import (
    ActivityCreate,
    ActivityRead,
    ActivityUpdate,
    DealCreate,
    DealFilters,
    DealMoveRequest,
    DealRead,
    DealStatisticsRead,
    DealStatusUpdateRequest,
    DealUpdate,
    ForecastMonthRead,
    InvoiceConversionRead,
    PipelineCreate,
    PipelineRead,
    PipelineStageCreate,
    PipelineStageRead,
    PipelineStageUpdate,
    PipelineUpdate,
    ReorderRequest,
    StageConversionRead,
    StageDeleteRequest,
)
from erp.crm.service import ActorUser

pipelines_router = APIRouter(prefix="/api/crm", tags=["crm.pipelines"])
deals_router = APIRouter(prefix="/api/crm", tags=["crm.deals"])
activities_router = APIRouter(prefix="/api/crm", tags=["crm.activities"])
analytics_router = APIRouter(prefix="/api/crm", tags=["crm.analytics"])


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(request.state, "correlation_id", None)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def _failed(request: Request, exc: HTTPException, code: str) -> JSONResponse:
    message = exc.detail.get("message", "") if isinstance(exc.detail, dict) else exc.detail
    return error_response(
        request,
        status_code=exc.status_code,
        code=code,
        message=str(message),
        details=exc.detail,
    )


def get_current_user(request: Request, auth_user: AuthUser = Depends(get_auth_user)) -> ActorUser:
    return ActorUser(
        user_id=auth_user.sub,
        permissions=auth_user.granted(),
        correlation_id=get_correlation_id(),
    )


def get_crm_services(request: Request) -> CrmServices:
    return request.app.state.crm_services


def require_permission(user: ActorUser, permission: str) -> None:
    if permission not in user.permissions:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Missing permission: {permission}")


@pipelines_router.get("/pipelines", response_model=list[PipelineRead])
def list_pipelines(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
    crm: CrmServices = Depends(get_crm_services),
) -> list[PipelineRead] | JSONResponse:
    try:
        require_permission(user, "crm.pipelines.read")
        return crm.pipelines.list_pipelines(db)
    except HTTPException as exc:
        return _failed(request, exc, "crm_pipeline_list_failed")


@pipelines_router.post("/pipelines", response_model=PipelineRead, status_code=status.HTTP_201_CREATED)
def create_pipeline(
    request: Request,
    payload: PipelineCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
    crm: CrmServices = Depends(get_crm_services),
) -> PipelineRead | JSONResponse:
    try:
        require_permission(user, "crm.pipelines.manage")
        return crm.pipelines.create_pipeline(db, user, payload)
    except HTTPException as exc:
        return _failed(request, exc, "crm_pipeline_create_failed")


@pipelines_router.post("/pipelines/reorder", response_model=list[PipelineRead])
def reorder_pipelines(
    request: Request,
    payload: ReorderRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
    crm: CrmServices = Depends(get_crm_services),
) -> list[PipelineRead] | JSONResponse:
    try:
        require_permission(user, "crm.pipelines.manage")
        return crm.pipelines.reorder_pipelines(db, user, payload)
    except HTTPException as exc:
        return _failed(request, exc, "crm_pipeline_reorder_failed")


@pipelines_router.get("/pipelines/{pipeline_id}", response_model=PipelineRead)
def get_pipeline(
    request: Request,
    pipeline_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
    crm: CrmServices = Depends(get_crm_services),
) -> PipelineRead | JSONResponse:
    try:
        require_permission(user, "crm.pipelines.read")
        return crm.pipelines.get_pipeline(db, pipeline_id)
    except HTTPException as exc:
        return _failed(request, exc, "crm_pipeline_get_failed")


@pipelines_router.put("/pipelines/{pipeline_id}", response_model=PipelineRead)
def update_pipeline(
    request: Request,
    pipeline_id: uuid.UUID,
    payload: PipelineUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
    crm: CrmServices = Depends(get_crm_services),
) -> PipelineRead | JSONResponse:
    try:
        require_permission(user, "crm.pipelines.manage")
        return crm.pipelines.update_pipeline(db, user, pipeline_id, payload)
    except HTTPException as exc:
        return _failed(request, exc, "crm_pipeline_update_failed")


@pipelines_router.delete("/pipelines/{pipeline_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_pipeline(
    request: Request,
    pipeline_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
    crm: CrmServices = Depends(get_crm_services),
) -> Response:
    try:
        require_permission(user, "crm.pipelines.manage")
        crm.pipelines.delete_pipeline(db, user, pipeline_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    except HTTPException as exc:
        return _failed(request, exc, "crm_pipeline_delete_failed")


@pipelines_router.post(
    "/pipelines/{pipeline_id}/stages",
    response_model=PipelineStageRead,
    status_code=status.HTTP_201_CREATED,
)
def create_stage(
    request: Request,
    pipeline_id: uuid.UUID,
    payload: PipelineStageCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
    crm: CrmServices = Depends(get_crm_services),
) -> PipelineStageRead | JSONResponse:
    try:
        require_permission(user, "crm.pipelines.manage")
        return crm.pipelines.create_stage(db, user, pipeline_id, payload)
    except HTTPException as exc:
        return _failed(request, exc, "crm_stage_create_failed")


@pipelines_router.post("/pipelines/{pipeline_id}/stages/reorder", response_model=list[PipelineStageRead])
def reorder_stages(
    request: Request,
    pipeline_id: uuid.UUID,
    payload: ReorderRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
    crm: CrmServices = Depends(get_crm_services),
) -> list[PipelineStageRead] | JSONResponse:
    try:
        require_permission(user, "crm.pipelines.manage")
        return crm.pipelines.reorder_stages(db, user, pipeline_id, payload)
    except HTTPException as exc:
        return _failed(request, exc, "crm_stage_reorder_failed")


@pipelines_router.put("/stages/{stage_id}", response_model=PipelineStageRead)
def update_stage(
    request: Request,
    stage_id: uuid.UUID,
    payload: PipelineStageUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
    crm: CrmServices = Depends(get_crm_services),
) -> PipelineStageRead | JSONResponse:
    try:
        require_permission(user, "crm.pipelines.manage")
        return crm.pipelines.update_stage(db, user, stage_id, payload)
    except HTTPException as exc:
        return _failed(request, exc, "crm_stage_update_failed")


@pipelines_router.delete("/stages/{stage_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_stage(
    request: Request,
    stage_id: uuid.UUID,
    payload: StageDeleteRequest | None = Body(default=None),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
    crm: CrmServices = Depends(get_crm_services),
) -> Response:
    try:
        require_permission(user, "crm.pipelines.manage")
        target_id = payload.move_deals_to_stage_id if payload is not None else None
        crm.pipelines.delete_stage(db, user, stage_id, target_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    except HTTPException as exc:
        return _failed(request, exc, "crm_stage_delete_failed")


@deals_router.get("/pipelines/{pipeline_id}/deals", response_model=dict[str, list[DealRead]])
def list_pipeline_deals(
    request: Request,
    pipeline_id: uuid.UUID,
    status_filter: str | None = Query(default=None, alias="status"),
    priority: str | None = Query(default=None),
    assigned_to: uuid.UUID | None = Query(default=None),
    search: str | None = Query(default=None, max_length=200),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
    crm: CrmServices = Depends(get_crm_services),
) -> dict[str, list[DealRead]] | JSONResponse:
    try:
        require_permission(user, "crm.deals.read")
        filters = DealFilters(status=status_filter, priority=priority, assigned_to=assigned_to, search=search)
        return crm.deals.list_deals_by_pipeline(db, pipeline_id, filters)
    except HTTPException as exc:
        return _failed(request, exc, "crm_deal_list_failed")


@deals_router.post("/deals", response_model=DealRead, status_code=status.HTTP_201_CREATED)
def create_deal(
    request: Request,
    payload: DealCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
    crm: CrmServices = Depends(get_crm_services),
) -> DealRead | JSONResponse:
    try:
        require_permission(user, "crm.deals.write")
        return crm.deals.create_deal(db, user, payload)
    except HTTPException as exc:
        return _failed(request, exc, "crm_deal_create_failed")


@deals_router.get("/deals/{deal_id}", response_model=DealRead)
def get_deal(
    request: Request,
    deal_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
    crm: CrmServices = Depends(get_crm_services),
) -> DealRead | JSONResponse:
    try:
        require_permission(user, "crm.deals.read")
        return crm.deals.get_deal(db, deal_id)
    except HTTPException as exc:
        return _failed(request, exc, "crm_deal_get_failed")


@deals_router.put("/deals/{deal_id}", response_model=DealRead)
def update_deal(
    request: Request,
    deal_id: uuid.UUID,
    payload: DealUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
    crm: CrmServices = Depends(get_crm_services),
) -> DealRead | JSONResponse:
    try:
        require_permission(user, "crm.deals.write")
        return crm.deals.update_deal(db, user, deal_id, payload)
    except HTTPException as exc:
        return _failed(request, exc, "crm_deal_update_failed")


@deals_router.delete("/deals/{deal_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_deal(
    request: Request,
    deal_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
    crm: CrmServices = Depends(get_crm_services),
) -> Response:
    try:
        require_permission(user, "crm.deals.write")
        crm.deals.delete_deal(db, user, deal_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    except HTTPException as exc:
        return _failed(request, exc, "crm_deal_delete_failed")


@deals_router.patch("/deals/{deal_id}/move", response_model=DealRead)
def move_deal(
    request: Request,
    deal_id: uuid.UUID,
    payload: DealMoveRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
    crm: CrmServices = Depends(get_crm_services),
) -> DealRead | JSONResponse:
    try:
        require_permission(user, "crm.deals.write")
        return crm.deals.move_deal(db, user, deal_id, payload)
    except HTTPException as exc:
        return _failed(request, exc, "crm_deal_move_failed")


@deals_router.patch("/deals/{deal_id}/status", response_model=DealRead)
def update_deal_status(
    request: Request,
    deal_id: uuid.UUID,
    payload: DealStatusUpdateRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
    crm: CrmServices = Depends(get_crm_services),
) -> DealRead | JSONResponse:
    try:
        require_permission(user, "crm.deals.write")
        return crm.deals.update_deal_status(db, user, deal_id, payload)
    except HTTPException as exc:
        return _failed(request, exc, "crm_deal_status_failed")


@deals_router.get("/clients/{client_id}/deals", response_model=list[DealRead])
def list_client_deals(
    request: Request,
    client_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
    crm: CrmServices = Depends(get_crm_services),
) -> list[DealRead] | JSONResponse:
    try:
        require_permission(user, "crm.deals.read")
        return crm.deals.list_deals_for_client(db, client_id)
    except HTTPException as exc:
        return _failed(request, exc, "crm_client_deals_failed")


@deals_router.post("/deals/{deal_id}/convert-to-invoice", response_model=InvoiceConversionRead)
def convert_deal_to_invoice(
    request: Request,
    deal_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
    crm: CrmServices = Depends(get_crm_services),
) -> InvoiceConversionRead | JSONResponse:
    try:
        require_permission(user, "crm.deals.convert")
        return crm.invoices.convert_won_deal(db, user, deal_id)
    except HTTPException as exc:
        return _failed(request, exc, "crm_deal_invoice_failed")


@activities_router.get("/deals/{deal_id}/activities", response_model=list[ActivityRead])
def list_deal_activities(
    request: Request,
    deal_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
    crm: CrmServices = Depends(get_crm_services),
) -> list[ActivityRead] | JSONResponse:
    try:
        require_permission(user, "crm.activities.read")
        return crm.activities.list_for_deal(db, deal_id)
    except HTTPException as exc:
        return _failed(request, exc, "crm_activity_list_failed")


@activities_router.post(
    "/deals/{deal_id}/activities",
    response_model=ActivityRead,
    status_code=status.HTTP_201_CREATED,
)
def create_activity(
    request: Request,
    deal_id: uuid.UUID,
    payload: ActivityCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
    crm: CrmServices = Depends(get_crm_services),
) -> ActivityRead | JSONResponse:
    try:
        require_permission(user, "crm.activities.write")
        return crm.activities.create_activity(db, user, deal_id, payload)
    except HTTPException as exc:
        return _failed(request, exc, "crm_activity_create_failed")


@activities_router.put("/activities/{activity_id}", response_model=ActivityRead)
def update_activity(
    request: Request,
    activity_id: uuid.UUID,
    payload: ActivityUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
    crm: CrmServices = Depends(get_crm_services),
) -> ActivityRead | JSONResponse:
    try:
        require_permission(user, "crm.activities.write")
        return crm.activities.update_activity(db, user, activity_id, payload)
    except HTTPException as exc:
        return _failed(request, exc, "crm_activity_update_failed")


@activities_router.delete("/activities/{activity_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_activity(
    request: Request,
    activity_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
    crm: CrmServices = Depends(get_crm_services),
) -> Response:
    try:
        require_permission(user, "crm.activities.write")
        crm.activities.delete_activity(db, user, activity_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    except HTTPException as exc:
        return _failed(request, exc, "crm_activity_delete_failed")


@activities_router.patch("/activities/{activity_id}/complete", response_model=ActivityRead)
def complete_activity(
    request: Request,
    activity_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
    crm: CrmServices = Depends(get_crm_services),
) -> ActivityRead | JSONResponse:
    try:
        require_permission(user, "crm.activities.write")
        return crm.activities.mark_completed(db, user, activity_id)
    except HTTPException as exc:
        return _failed(request, exc, "crm_activity_complete_failed")


@activities_router.get("/follow-ups", response_model=list[ActivityRead])
def list_follow_ups(
    request: Request,
    user_id: uuid.UUID | None = Query(default=None),
    days: int | None = Query(default=None, ge=0, le=365),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
    crm: CrmServices = Depends(get_crm_services),
) -> list[ActivityRead] | JSONResponse:
    try:
        require_permission(user, "crm.activities.read")
        return crm.activities.list_scheduled(db, user, user_id=user_id, days=days)
    except HTTPException as exc:
        return _failed(request, exc, "crm_follow_ups_failed")


@analytics_router.get("/statistics", response_model=DealStatisticsRead)
def get_statistics(
    request: Request,
    pipeline_id: uuid.UUID | None = Query(default=None),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
    crm: CrmServices = Depends(get_crm_services),
) -> DealStatisticsRead | JSONResponse:
    try:
        require_permission(user, "crm.analytics.read")
        return crm.statistics.get_statistics(db, pipeline_id)
    except HTTPException as exc:
        return _failed(request, exc, "crm_statistics_failed")


@analytics_router.get("/forecast", response_model=list[ForecastMonthRead])
def get_forecast(
    request: Request,
    pipeline_id: uuid.UUID | None = Query(default=None),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
    crm: CrmServices = Depends(get_crm_services),
) -> list[ForecastMonthRead] | JSONResponse:
    try:
        require_permission(user, "crm.analytics.read")
        return crm.forecast.get_forecast(db, pipeline_id)
    except HTTPException as exc:
        return _failed(request, exc, "crm_forecast_failed")


@analytics_router.get("/conversion-rates", response_model=list[StageConversionRead])
def get_conversion_rates(
    request: Request,
    pipeline_id: uuid.UUID = Query(...),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
    crm: CrmServices = Depends(get_crm_services),
) -> list[StageConversionRead] | JSONResponse:
    try:
        require_permission(user, "crm.analytics.read")
        return crm.conversion.get_conversion_rates(db, pipeline_id)
    except HTTPException as exc:
        return _failed(request, exc, "crm_conversion_rates_failed")
