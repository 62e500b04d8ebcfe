from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, Query, Response, status
from sqlalchemy.orm import Session

from app.core.auth import UserContext, get_current_user, require_elevated
from app.core.errors import NotFoundError, SchedulerError, to_http_exception
from app.database.connection import get_db
from app.schemas.permissions import PermissionsSummary
from app.schemas.scheduler import (
    Channel,
    CreateScheduleRequest,
    CreateScheduleResponse,
    DispatchCycleSummary,
    ExecutionLogEntry,
    MessageSchedule,
    RunReport,
    ScheduleFilters,
    ScheduleStatistics,
    ScheduleStatus,
)
from app.services.scheduler_service import scheduler_service

router = APIRouter(prefix="/schedules", tags=["schedules"], dependencies=[Depends(get_current_user)])


@router.get("", response_model=list[MessageSchedule])
def list_schedules(
    channel: Optional[Channel] = None,
    status_filter: Optional[ScheduleStatus] = Query(None, alias="status"),
    limit: Optional[int] = Query(None, ge=1),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    current_user: UserContext = Depends(get_current_user),
) -> list[MessageSchedule]:
    filters = ScheduleFilters(channel=channel, status=status_filter, limit=limit, offset=offset)
    try:
        return scheduler_service.query(db, current_user, filters)
    except SchedulerError as exc:
        raise to_http_exception(exc) from exc


@router.post("", response_model=CreateScheduleResponse, status_code=status.HTTP_201_CREATED)
def create_schedule(
    schedule_in: CreateScheduleRequest,
    db: Session = Depends(get_db),
    current_user: UserContext = Depends(get_current_user),
) -> CreateScheduleResponse:
    try:
        schedule_id = scheduler_service.create(db, current_user, schedule_in)
    except SchedulerError as exc:
        raise to_http_exception(exc) from exc
    return CreateScheduleResponse(id=schedule_id)


@router.get("/statistics", response_model=ScheduleStatistics)
def get_statistics(
    channel: Optional[Channel] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    db: Session = Depends(get_db),
    current_user: UserContext = Depends(get_current_user),
) -> ScheduleStatistics:
    try:
        return scheduler_service.statistics(
            db,
            current_user,
            channel=channel,
            date_from=date_from,
            date_to=date_to,
        )
    except SchedulerError as exc:
        raise to_http_exception(exc) from exc


@router.get("/permissions", response_model=PermissionsSummary)
def get_permissions(current_user: UserContext = Depends(get_current_user)) -> PermissionsSummary:
    try:
        return scheduler_service.permissions(current_user)
    except SchedulerError as exc:
        raise to_http_exception(exc) from exc


@router.post(
    "/execute-due",
    response_model=DispatchCycleSummary,
    dependencies=[Depends(require_elevated())],
)
async def execute_due_schedules(db: Session = Depends(get_db)) -> DispatchCycleSummary:
    """Run every pending schedule whose next execution time has passed.

    Meant to be called periodically by an external trigger (cron job,
    Kubernetes CronJob, cloud scheduler). Safe to call from several
    replicas at once: each schedule is claimed by exactly one caller.
    """
    try:
        return await scheduler_service.execute_due_schedules(db)
    except SchedulerError as exc:
        raise to_http_exception(exc) from exc


@router.get("/{schedule_id}", response_model=MessageSchedule)
def get_schedule(
    schedule_id: int,
    db: Session = Depends(get_db),
    current_user: UserContext = Depends(get_current_user),
) -> MessageSchedule:
    try:
        return scheduler_service.get(db, current_user, schedule_id)
    except SchedulerError as exc:
        raise to_http_exception(exc) from exc


@router.patch("/{schedule_id}", response_model=MessageSchedule)
def update_schedule(
    schedule_id: int,
    partial: Dict[str, Any] = Body(...),
    db: Session = Depends(get_db),
    current_user: UserContext = Depends(get_current_user),
) -> MessageSchedule:
    try:
        return scheduler_service.update(db, current_user, schedule_id, partial)
    except SchedulerError as exc:
        raise to_http_exception(exc) from exc


@router.post("/{schedule_id}/cancel", response_model=MessageSchedule)
def cancel_schedule(
    schedule_id: int,
    version: Optional[int] = None,
    db: Session = Depends(get_db),
    current_user: UserContext = Depends(get_current_user),
) -> MessageSchedule:
    try:
        return scheduler_service.cancel(db, current_user, schedule_id, version=version)
    except SchedulerError as exc:
        raise to_http_exception(exc) from exc


@router.post("/{schedule_id}/execute", response_model=RunReport)
async def execute_schedule(
    schedule_id: int,
    db: Session = Depends(get_db),
    current_user: UserContext = Depends(get_current_user),
) -> RunReport:
    try:
        return await scheduler_service.execute_now(db, current_user, schedule_id)
    except SchedulerError as exc:
        raise to_http_exception(exc) from exc


@router.delete("/{schedule_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_schedule(
    schedule_id: int,
    db: Session = Depends(get_db),
    current_user: UserContext = Depends(get_current_user),
) -> Response:
    try:
        deleted = scheduler_service.delete(db, current_user, schedule_id)
    except SchedulerError as exc:
        raise to_http_exception(exc) from exc
    if not deleted:
        raise to_http_exception(NotFoundError(f"Schedule {schedule_id} not found"))
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/{schedule_id}/logs", response_model=list[ExecutionLogEntry])
def get_schedule_logs(
    schedule_id: int,
    limit: Optional[int] = Query(None, ge=1),
    db: Session = Depends(get_db),
    current_user: UserContext = Depends(get_current_user),
) -> list[ExecutionLogEntry]:
    try:
        return scheduler_service.fetch_logs(db, current_user, schedule_id, limit=limit)
    except SchedulerError as exc:
        raise to_http_exception(exc) from exc
