import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Set, Union

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm import Session

from app.core.auth import UserContext
from app.core.authorization import Action, AuthorizationGate
from app.core.config import Settings, get_settings
from app.core.errors import ConflictError, NotFoundError, ValidationError
from app.core.recurrence import compute_next, has_further_occurrence
from app.database.models import models as db_models
from app.database.services.permission_service import session_profile_loader, session_revision_loader
from app.database.services.schedule_repository import (
    ScheduleRepository,
    schedule_repository,
    to_log_schema,
    to_schedule_schema,
)
from app.schemas.permissions import PermissionsSummary
from app.schemas.scheduler import (
    TERMINAL_STATUSES,
    Channel,
    CreateScheduleRequest,
    DispatchCycleSummary,
    ExecutionLogEntry,
    MessageSchedule,
    RecurrencePattern,
    RunReport,
    ScheduleFilters,
    ScheduleMode,
    ScheduleStatistics,
    ScheduleStatus,
    ScheduleUpdate,
    payload_adapter,
)
from app.services.execution_coordinator import ExecutionCoordinator
from app.services.statistics_service import StatisticsService

logger = logging.getLogger(__name__)

ENGINE_OWNED_FIELDS = frozenset(
    {
        "id",
        "schedule_mode",
        "execution_count",
        "success_count",
        "error_count",
        "run_count",
        "next_execution_at",
        "last_executed_at",
        "last_error",
        "created_by",
        "created_at",
        "updated_at",
    }
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(moment: Optional[datetime]) -> Optional[datetime]:
    if moment is None:
        return None
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def _clean_recipients(recipients: Iterable[str]) -> List[str]:
    seen: Set[str] = set()
    cleaned: List[str] = []
    for recipient in recipients:
        value = str(recipient).strip()
        if value and value not in seen:
            seen.add(value)
            cleaned.append(value)
    if not cleaned:
        raise ValidationError("At least one recipient is required")
    return cleaned


class SchedulerService:
    """Entry point for every schedule operation.

    Authorization is enforced here, before any storage access; routes and
    the dispatch trigger never reach the repository directly.
    """

    def __init__(
        self,
        repository: Optional[ScheduleRepository] = None,
        gate: Optional[AuthorizationGate] = None,
        coordinator: Optional[ExecutionCoordinator] = None,
        statistics: Optional[StatisticsService] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.repository = repository or schedule_repository
        self.gate = gate or AuthorizationGate(
            session_profile_loader(),
            settings=self.settings,
            revision_loader=session_revision_loader(),
        )
        self.coordinator = coordinator or ExecutionCoordinator(self.repository, settings=self.settings)
        self.statistics_service = statistics or StatisticsService(self.repository)

    # --- Validation helpers ---

    def _validate_scheduled_for(self, scheduled_for: Optional[datetime], now: datetime) -> Optional[datetime]:
        scheduled_for = _as_utc(scheduled_for)
        if scheduled_for is not None and scheduled_for <= now:
            raise ValidationError(
                "scheduled_for must be in the future",
                details={"scheduled_for": scheduled_for.isoformat()},
            )
        return scheduled_for

    def _validate_payload(self, channel: Channel, payload: Any) -> Dict[str, Any]:
        if hasattr(payload, "model_dump"):
            payload = payload.model_dump()
        if not isinstance(payload, dict):
            raise ValidationError("payload must be an object")
        kind = payload.get("kind", channel.value)
        if kind != channel.value:
            raise ValidationError(
                f"Payload of kind '{kind}' does not match channel '{channel.value}'",
                details={"kind": kind, "channel": channel.value},
            )
        try:
            validated = payload_adapter.validate_python({**payload, "kind": channel.value})
        except PydanticValidationError as exc:
            raise ValidationError(f"Invalid {channel.value} payload: {exc}") from exc
        return validated.model_dump()

    def _validate_max_executions(self, max_executions: Optional[int]) -> Optional[int]:
        if max_executions is not None and max_executions < 1:
            raise ValidationError("max_executions must be at least 1")
        return max_executions

    def _initial_next_execution(
        self,
        mode: ScheduleMode,
        scheduled_for: Optional[datetime],
        recurrence: Optional[RecurrencePattern],
        now: datetime,
    ) -> Optional[datetime]:
        if mode == ScheduleMode.RECURRING:
            if recurrence is None:
                raise ValidationError("Recurring schedules require a recurrence pattern")
            first = scheduled_for or compute_next(recurrence, now, self.settings.scheduler_default_timezone)
            if not has_further_occurrence(recurrence, first):
                raise ValidationError(
                    "Recurrence ends before its first occurrence",
                    details={"first_occurrence": first.isoformat()},
                )
            return first
        if recurrence is not None:
            raise ValidationError(f"Recurrence is only allowed for recurring schedules, not {mode.value}")
        if mode == ScheduleMode.IMMEDIATE:
            return scheduled_for or now
        # Conditional schedules without a date only run on demand
        return scheduled_for

    def _annotate(self, schedule: MessageSchedule, manageable: Set[Channel]) -> MessageSchedule:
        can_manage = schedule.channel in manageable
        schedule.can_edit = can_manage and schedule.status == ScheduleStatus.PENDING
        schedule.can_delete = can_manage
        schedule.target_count = len(schedule.recipients)
        return schedule

    def _to_schema(self, principal: UserContext, row: db_models.MessageSchedule) -> MessageSchedule:
        manageable = set(self.gate.available_channels(principal, Action.MANAGE))
        return self._annotate(to_schedule_schema(row), manageable)

    # --- Schedule management ---

    def create(
        self,
        db: Session,
        principal: UserContext,
        request: CreateScheduleRequest,
        now: Optional[datetime] = None,
    ) -> int:
        now = _as_utc(now) or _utcnow()
        channel = Channel(request.channel)
        self.gate.require(principal, channel, Action.MANAGE)

        payload = self._validate_payload(channel, request.payload)
        recipients = _clean_recipients(request.recipients)
        scheduled_for = self._validate_scheduled_for(request.scheduled_for, now)
        max_executions = self._validate_max_executions(request.max_executions)
        mode = ScheduleMode(request.schedule_mode)
        next_execution_at = self._initial_next_execution(mode, scheduled_for, request.recurrence, now)

        row = self.repository.insert(
            db,
            {
                "channel": channel.value,
                "title": request.title,
                "description": request.description,
                "payload": payload,
                "recipients": recipients,
                "schedule_mode": mode.value,
                "status": ScheduleStatus.PENDING.value,
                "scheduled_for": scheduled_for,
                "recurrence": request.recurrence.model_dump(mode="json") if request.recurrence else None,
                "next_execution_at": next_execution_at,
                "last_executed_at": None,
                "execution_count": 0,
                "success_count": 0,
                "error_count": 0,
                "run_count": 0,
                "max_executions": max_executions,
                "last_error": None,
                "created_by": principal.id,
                "created_at": now,
                "updated_at": now,
                "version": 1,
            },
        )

        logger.info(
            "Schedule %s (%s) created on %s by %s, next execution %s",
            row.id,
            mode.value,
            channel.value,
            principal.id,
            next_execution_at.isoformat() if next_execution_at else "on demand",
        )
        return row.id

    def _content_values(
        self,
        row: db_models.MessageSchedule,
        changes: Dict[str, Any],
        now: datetime,
    ) -> Dict[str, Any]:
        channel = Channel(row.channel)
        mode = ScheduleMode(row.schedule_mode)
        values: Dict[str, Any] = {}

        if "title" in changes:
            if not changes["title"]:
                raise ValidationError("title cannot be empty")
            values["title"] = changes["title"]
        if "description" in changes:
            values["description"] = changes["description"]
        if "payload" in changes:
            if changes["payload"] is None:
                raise ValidationError("payload cannot be removed")
            values["payload"] = self._validate_payload(channel, changes["payload"])
        if "recipients" in changes:
            values["recipients"] = _clean_recipients(changes["recipients"] or [])
        if "max_executions" in changes:
            values["max_executions"] = self._validate_max_executions(changes["max_executions"])

        if "scheduled_for" in changes or "recurrence" in changes:
            if "scheduled_for" in changes:
                scheduled_for = self._validate_scheduled_for(changes["scheduled_for"], now)
                values["scheduled_for"] = scheduled_for
            else:
                scheduled_for = _as_utc(row.scheduled_for)
                if scheduled_for is not None and scheduled_for <= now:
                    scheduled_for = None

            if "recurrence" in changes:
                recurrence = (
                    RecurrencePattern.model_validate(changes["recurrence"])
                    if changes["recurrence"] is not None
                    else None
                )
                values["recurrence"] = recurrence.model_dump(mode="json") if recurrence else None
            else:
                recurrence = RecurrencePattern.model_validate(row.recurrence) if row.recurrence else None

            values["next_execution_at"] = self._initial_next_execution(mode, scheduled_for, recurrence, now)

        return values

    def update(
        self,
        db: Session,
        principal: UserContext,
        schedule_id: int,
        partial: Union[ScheduleUpdate, Dict[str, Any]],
        now: Optional[datetime] = None,
    ) -> MessageSchedule:
        now = _as_utc(now) or _utcnow()
        if isinstance(partial, dict):
            owned = sorted(ENGINE_OWNED_FIELDS.intersection(partial))
            if owned:
                raise ValidationError(
                    f"Fields managed by the scheduler cannot be updated: {', '.join(owned)}",
                    details={"fields": owned},
                )
            try:
                partial = ScheduleUpdate.model_validate(partial)
            except PydanticValidationError as exc:
                raise ValidationError(f"Invalid schedule update: {exc}") from exc

        row = self.repository.get_or_raise(db, schedule_id)
        channel = Channel(row.channel)
        self.gate.require(principal, channel, Action.MANAGE)

        changes = partial.model_dump(exclude_unset=True)
        expected_version = changes.pop("version", None) or row.version

        if "channel" in changes:
            requested = changes.pop("channel")
            if requested is not None and Channel(requested) != channel:
                raise ValidationError(
                    "The channel of a schedule cannot be changed",
                    details={"channel": channel.value, "requested": Channel(requested).value},
                )

        current_status = ScheduleStatus(row.status)
        values: Dict[str, Any] = {}

        requested_status = changes.pop("status", None)
        if requested_status is not None:
            if ScheduleStatus(requested_status) != ScheduleStatus.CANCELLED:
                raise ValidationError("Status can only be changed to cancelled")
            if current_status in TERMINAL_STATUSES:
                raise ConflictError(
                    f"Schedule {schedule_id} is already {current_status.value}",
                    details={"status": current_status.value},
                )
            values["status"] = ScheduleStatus.CANCELLED.value
            values["next_execution_at"] = None

        if changes:
            if current_status != ScheduleStatus.PENDING:
                raise ConflictError(
                    f"Schedule {schedule_id} can only be edited while pending (currently {current_status.value})",
                    details={"status": current_status.value},
                )
            content = self._content_values(row, changes, now)
            if "status" in values:
                content.pop("next_execution_at", None)
            values.update(content)

        if not values:
            return self._to_schema(principal, row)

        updated = self.repository.update_fields(db, schedule_id, values, expected_version, now=now)

        if values.get("status") == ScheduleStatus.CANCELLED.value:
            logger.info("Schedule %s cancelled by %s", schedule_id, principal.id)
        else:
            logger.info("Schedule %s updated by %s: %s", schedule_id, principal.id, ", ".join(sorted(values)))
        return self._to_schema(principal, updated)

    def cancel(
        self,
        db: Session,
        principal: UserContext,
        schedule_id: int,
        version: Optional[int] = None,
    ) -> MessageSchedule:
        return self.update(
            db,
            principal,
            schedule_id,
            ScheduleUpdate(status=ScheduleStatus.CANCELLED, version=version),
        )

    def delete(self, db: Session, principal: UserContext, schedule_id: int) -> bool:
        row = self.repository.get(db, schedule_id)
        if row is None:
            return False
        channel = Channel(row.channel)
        self.gate.require(principal, channel, Action.MANAGE)

        if not self.repository.delete(db, schedule_id):
            return False
        logger.info("Schedule %s deleted by %s", schedule_id, principal.id)
        return True

    # --- Reads ---

    def get(self, db: Session, principal: UserContext, schedule_id: int) -> MessageSchedule:
        row = self.repository.get_or_raise(db, schedule_id)
        self.gate.require(principal, Channel(row.channel), Action.VIEW)
        return self._to_schema(principal, row)

    def query(
        self,
        db: Session,
        principal: UserContext,
        filters: Optional[ScheduleFilters] = None,
    ) -> List[MessageSchedule]:
        filters = filters or ScheduleFilters()
        if filters.channel is not None:
            self.gate.require(principal, filters.channel, Action.VIEW)
            channels = [Channel(filters.channel)]
        else:
            channels = self.gate.available_channels(principal, Action.VIEW)

        limit = min(
            filters.limit or self.settings.schedule_query_default_limit,
            self.settings.schedule_query_max_limit,
        )
        rows = self.repository.list_schedules(
            db,
            channels=channels,
            status=filters.status,
            limit=limit,
            offset=filters.offset,
        )
        manageable = set(self.gate.available_channels(principal, Action.MANAGE))
        return [self._annotate(to_schedule_schema(row), manageable) for row in rows]

    def fetch_logs(
        self,
        db: Session,
        principal: UserContext,
        schedule_id: int,
        limit: Optional[int] = None,
    ) -> List[ExecutionLogEntry]:
        row = self.repository.get(db, schedule_id)
        # Logs outlive their schedule and carry its channel
        channel_value = row.channel if row is not None else self.repository.log_channel(db, schedule_id)
        if channel_value is None:
            raise NotFoundError(f"Schedule {schedule_id} not found")
        self.gate.require(principal, Channel(channel_value), Action.VIEW)

        limit = min(
            limit or self.settings.schedule_log_fetch_limit,
            self.settings.schedule_query_max_limit,
        )
        return [to_log_schema(entry) for entry in self.repository.list_logs(db, schedule_id, limit)]

    def statistics(
        self,
        db: Session,
        principal: UserContext,
        channel: Optional[Channel] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        now: Optional[datetime] = None,
    ) -> ScheduleStatistics:
        if channel is not None:
            self.gate.require(principal, channel, Action.VIEW)
            channels = [Channel(channel)]
        else:
            channels = self.gate.available_channels(principal, Action.VIEW)
        if date_from is not None and date_to is not None and _as_utc(date_from) > _as_utc(date_to):
            raise ValidationError("date_from must not be after date_to")
        return self.statistics_service.compute(
            db,
            channels,
            now=now,
            date_from=date_from,
            date_to=date_to,
        )

    def permissions(self, principal: UserContext) -> PermissionsSummary:
        return self.gate.permissions_summary(principal)

    # --- Execution ---

    async def execute_due_schedules(self, db: Session, now: Optional[datetime] = None) -> DispatchCycleSummary:
        now = _as_utc(now) or _utcnow()
        due_ids = [row.id for row in self.repository.find_due(db, now)]
        summary = DispatchCycleSummary(due=len(due_ids), claimed=0, skipped=0)

        for schedule_id in due_ids:
            try:
                report = await self.coordinator.run(db, schedule_id, now)
            except ConflictError:
                logger.info("Schedule %s no longer pending; skipping", schedule_id)
                summary.skipped += 1
                continue
            summary.claimed += 1
            summary.runs.append(report)

        logger.info(
            "Dispatch cycle finished: %s due, %s claimed, %s skipped",
            summary.due,
            summary.claimed,
            summary.skipped,
        )
        return summary

    async def execute_now(
        self,
        db: Session,
        principal: UserContext,
        schedule_id: int,
        now: Optional[datetime] = None,
    ) -> RunReport:
        row = self.repository.get_or_raise(db, schedule_id)
        self.gate.require(principal, Channel(row.channel), Action.MANAGE)
        status = ScheduleStatus(row.status)
        if status != ScheduleStatus.PENDING:
            raise ConflictError(
                f"Only pending schedules can be executed (schedule {schedule_id} is {status.value})",
                details={"status": status.value},
            )
        logger.info("Manual execution of schedule %s requested by %s", schedule_id, principal.id)
        return await self.coordinator.run(db, schedule_id, _as_utc(now) or _utcnow())


scheduler_service = SchedulerService()
