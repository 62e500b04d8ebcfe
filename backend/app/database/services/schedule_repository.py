import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Iterator, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.errors import ConflictError, NotFoundError, PersistenceError
from app.database.models import models as db_models
from app.schemas.scheduler import (
    Channel,
    ExecutionLogEntry,
    LogLevel,
    MessageSchedule,
    RecurrencePattern,
    ScheduleMode,
    ScheduleStatus,
)

logger = logging.getLogger(__name__)

Schedule = db_models.MessageSchedule
ExecutionLog = db_models.ExecutionLog


@dataclass
class ClaimedSchedule:
    """Detached copy of a schedule taken at claim time.

    A run works from this copy only, so the row may be edited, cancelled or
    deleted while sends are in flight without the run reloading it.
    """

    id: int
    channel: str
    schedule_mode: str
    version: int
    run_count: int = 0
    payload: Dict[str, Any] = field(default_factory=dict)
    recipients: List[str] = field(default_factory=list)
    recurrence: Optional[Dict[str, Any]] = None
    max_executions: Optional[int] = None
    next_execution_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Schedule) -> "ClaimedSchedule":
        return cls(
            id=row.id,
            channel=row.channel,
            schedule_mode=row.schedule_mode,
            version=row.version,
            run_count=row.run_count or 0,
            payload=dict(row.payload or {}),
            recipients=list(row.recipients or []),
            recurrence=dict(row.recurrence) if row.recurrence else None,
            max_executions=row.max_executions,
            next_execution_at=row.next_execution_at,
        )


class ScheduleRepository:
    """Storage for schedule rows and their append-only execution log.

    Every status-changing write is conditional on the stored state so that
    concurrent writers (multiple trigger replicas, user edits racing a run)
    cannot overwrite each other silently. The ``stage_*`` helpers leave the
    commit to the caller so a run can be finalized in one transaction;
    everything else commits its own work.
    """

    @contextmanager
    def _guard(self, db: Session, operation: str) -> Iterator[None]:
        try:
            yield
        except SQLAlchemyError as exc:
            db.rollback()
            logger.exception("Schedule storage failed during %s", operation)
            raise PersistenceError(f"Schedule storage unavailable during {operation}") from exc

    # --- Reads ---

    def get(self, db: Session, schedule_id: int) -> Optional[Schedule]:
        with self._guard(db, "get"):
            return db.get(Schedule, schedule_id, populate_existing=True)

    def get_or_raise(self, db: Session, schedule_id: int) -> Schedule:
        row = self.get(db, schedule_id)
        if row is None:
            raise NotFoundError(f"Schedule {schedule_id} not found")
        return row

    def list_schedules(
        self,
        db: Session,
        *,
        channels: Iterable[Channel],
        status: Optional[ScheduleStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[Schedule]:
        channel_values = [Channel(c).value for c in channels]
        if not channel_values:
            return []
        with self._guard(db, "list"):
            query = db.query(Schedule).filter(Schedule.channel.in_(channel_values))
            if status is not None:
                query = query.filter(Schedule.status == ScheduleStatus(status).value)
            return (
                query.order_by(Schedule.created_at.desc(), Schedule.id.desc())
                .offset(offset)
                .limit(limit)
                .all()
            )

    def find_due(self, db: Session, now: datetime) -> List[Schedule]:
        with self._guard(db, "find_due"):
            return (
                db.query(Schedule)
                .filter(
                    Schedule.status == ScheduleStatus.PENDING.value,
                    Schedule.next_execution_at.isnot(None),
                    Schedule.next_execution_at <= now,
                )
                .order_by(Schedule.next_execution_at, Schedule.id)
                .all()
            )

    def snapshot(self, db: Session, channels: Iterable[Channel]) -> List[Schedule]:
        channel_values = [Channel(c).value for c in channels]
        if not channel_values:
            return []
        with self._guard(db, "snapshot"):
            return db.query(Schedule).filter(Schedule.channel.in_(channel_values)).all()

    def list_logs(self, db: Session, schedule_id: int, limit: int = 100) -> List[ExecutionLog]:
        with self._guard(db, "list_logs"):
            return (
                db.query(ExecutionLog)
                .filter(ExecutionLog.schedule_id == schedule_id)
                .order_by(ExecutionLog.created_at.desc(), ExecutionLog.id.desc())
                .limit(limit)
                .all()
            )

    def log_channel(self, db: Session, schedule_id: int) -> Optional[str]:
        with self._guard(db, "log_channel"):
            row = (
                db.query(ExecutionLog.channel)
                .filter(ExecutionLog.schedule_id == schedule_id)
                .order_by(ExecutionLog.id.desc())
                .first()
            )
        return row[0] if row else None

    # --- Writes ---

    def insert(self, db: Session, values: Dict[str, Any]) -> Schedule:
        row = Schedule(**values)
        with self._guard(db, "insert"):
            db.add(row)
            db.commit()
            db.refresh(row)
        return row

    def update_fields(
        self,
        db: Session,
        schedule_id: int,
        values: Dict[str, Any],
        expected_version: int,
        now: Optional[datetime] = None,
    ) -> Schedule:
        values = dict(values)
        values["version"] = Schedule.version + 1
        values["updated_at"] = now or datetime.now(timezone.utc)

        with self._guard(db, "update"):
            updated = (
                db.query(Schedule)
                .filter(Schedule.id == schedule_id, Schedule.version == expected_version)
                .update(values, synchronize_session=False)
            )
            if updated != 1:
                db.rollback()
                if db.get(Schedule, schedule_id) is None:
                    raise NotFoundError(f"Schedule {schedule_id} not found")
                raise ConflictError(
                    f"Schedule {schedule_id} was modified concurrently; reload and retry",
                    details={"expected_version": expected_version},
                )
            db.commit()
            return db.get(Schedule, schedule_id, populate_existing=True)

    def claim(self, db: Session, schedule_id: int, now: datetime) -> ClaimedSchedule:
        """Atomically move a schedule from pending to processing.

        The occurrence being served moves from ``next_execution_at`` onto
        the returned snapshot; the column stays empty while the run is in
        flight. Raises ConflictError when another claimant (or a
        cancellation, or an edit) got there first.
        """
        with self._guard(db, "claim"):
            row = db.get(Schedule, schedule_id, populate_existing=True)
            if row is None or row.status != ScheduleStatus.PENDING.value:
                db.rollback()
                raise ConflictError(f"Schedule {schedule_id} is not pending; claim lost")
            snapshot = ClaimedSchedule.from_row(row)

            claimed = (
                db.query(Schedule)
                .filter(
                    Schedule.id == schedule_id,
                    Schedule.status == ScheduleStatus.PENDING.value,
                    Schedule.version == snapshot.version,
                )
                .update(
                    {
                        Schedule.status: ScheduleStatus.PROCESSING.value,
                        Schedule.next_execution_at: None,
                        Schedule.version: Schedule.version + 1,
                        Schedule.updated_at: now,
                    },
                    synchronize_session=False,
                )
            )
            if claimed != 1:
                db.rollback()
                raise ConflictError(f"Schedule {schedule_id} is not pending; claim lost")
            db.commit()
        return snapshot

    def stage_run_counters(
        self,
        db: Session,
        schedule_id: int,
        *,
        attempted: int,
        succeeded: int,
        failed: int,
        executed_at: datetime,
        last_error: Optional[str],
    ) -> int:
        """Fold one run into the counters; returns 0 if the row is gone."""
        values: Dict[Any, Any] = {
            Schedule.execution_count: Schedule.execution_count + attempted,
            Schedule.success_count: Schedule.success_count + succeeded,
            Schedule.error_count: Schedule.error_count + failed,
            Schedule.run_count: Schedule.run_count + 1,
            Schedule.last_executed_at: executed_at,
            Schedule.version: Schedule.version + 1,
            Schedule.updated_at: executed_at,
        }
        if last_error is not None:
            values[Schedule.last_error] = last_error
        with self._guard(db, "fold_counters"):
            return db.query(Schedule).filter(Schedule.id == schedule_id).update(
                values, synchronize_session=False
            )

    def stage_transition(
        self,
        db: Session,
        schedule_id: int,
        *,
        from_status: ScheduleStatus,
        to_status: ScheduleStatus,
        values: Optional[Dict[str, Any]] = None,
    ) -> bool:
        update_values: Dict[Any, Any] = {Schedule.status: to_status.value}
        for key, value in (values or {}).items():
            update_values[getattr(Schedule, key)] = value
        with self._guard(db, "transition"):
            moved = (
                db.query(Schedule)
                .filter(Schedule.id == schedule_id, Schedule.status == from_status.value)
                .update(update_values, synchronize_session=False)
            )
        return moved == 1

    def stage_log(
        self,
        db: Session,
        schedule_id: int,
        channel: Channel,
        level: LogLevel,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> ExecutionLog:
        entry = ExecutionLog(
            schedule_id=schedule_id,
            channel=Channel(channel).value,
            level=LogLevel(level).value,
            message=message,
            details=details or {},
            created_at=now or datetime.now(timezone.utc),
        )
        with self._guard(db, "append_log"):
            db.add(entry)
        return entry

    def append_log(
        self,
        db: Session,
        schedule_id: int,
        channel: Channel,
        level: LogLevel,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> ExecutionLog:
        entry = self.stage_log(db, schedule_id, channel, level, message, details, now)
        self.commit(db)
        return entry

    def commit(self, db: Session) -> None:
        with self._guard(db, "commit"):
            db.commit()

    def delete(self, db: Session, schedule_id: int) -> bool:
        with self._guard(db, "delete"):
            row = db.get(Schedule, schedule_id)
            if row is None:
                return False
            db.delete(row)
            db.commit()
        return True


def to_schedule_schema(row: Schedule) -> MessageSchedule:
    return MessageSchedule(
        id=row.id,
        channel=Channel(row.channel),
        title=row.title,
        description=row.description,
        payload=row.payload or {},
        recipients=list(row.recipients or []),
        schedule_mode=ScheduleMode(row.schedule_mode),
        status=ScheduleStatus(row.status),
        scheduled_for=row.scheduled_for,
        recurrence=RecurrencePattern.model_validate(row.recurrence) if row.recurrence else None,
        next_execution_at=row.next_execution_at,
        last_executed_at=row.last_executed_at,
        execution_count=row.execution_count or 0,
        success_count=row.success_count or 0,
        error_count=row.error_count or 0,
        run_count=row.run_count or 0,
        max_executions=row.max_executions,
        last_error=row.last_error,
        created_by=row.created_by,
        created_at=row.created_at,
        updated_at=row.updated_at,
        version=row.version,
    )


def to_log_schema(row: ExecutionLog) -> ExecutionLogEntry:
    return ExecutionLogEntry(
        id=row.id,
        schedule_id=row.schedule_id,
        channel=Channel(row.channel),
        level=LogLevel(row.level),
        message=row.message,
        details=row.details or {},
        created_at=row.created_at,
    )


schedule_repository = ScheduleRepository()
