from datetime import datetime, time, timedelta, timezone
from typing import Dict, Iterable, Optional, Tuple

from sqlalchemy.orm import Session

from app.database.services.schedule_repository import ScheduleRepository, schedule_repository
from app.schemas.scheduler import ACTIVE_STATUSES, Channel, ScheduleStatistics, ScheduleStatus


def _as_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def _window(
    now: datetime,
    date_from: Optional[datetime],
    date_to: Optional[datetime],
) -> Tuple[datetime, datetime]:
    """Return the half-open reporting window.

    Without bounds this is the current UTC day. A lone ``date_from`` runs up
    to ``now``; a lone ``date_to`` starts at the beginning of its UTC day.
    """
    day_start = datetime.combine(now.date(), time.min, tzinfo=timezone.utc)
    if date_from is None and date_to is None:
        return day_start, day_start + timedelta(days=1)

    if date_from is not None:
        start = _as_utc(date_from)
    else:
        end_utc = _as_utc(date_to)
        start = datetime.combine(end_utc.date(), time.min, tzinfo=timezone.utc)
    end = _as_utc(date_to) if date_to is not None else now
    return start, end


class StatisticsService:
    def __init__(self, repository: Optional[ScheduleRepository] = None) -> None:
        self.repository = repository or schedule_repository

    def compute(
        self,
        db: Session,
        channels: Iterable[Channel],
        now: Optional[datetime] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
    ) -> ScheduleStatistics:
        now = _as_utc(now or datetime.now(timezone.utc))
        start, end = _window(now, date_from, date_to)
        rows = self.repository.snapshot(db, channels)

        active = 0
        completed = 0
        failures = 0
        total_success = 0
        total_executions = 0
        next_execution: Optional[datetime] = None
        by_channel: Dict[Channel, int] = {channel: 0 for channel in Channel}

        for row in rows:
            status = ScheduleStatus(row.status)
            by_channel[Channel(row.channel)] += 1
            total_success += row.success_count or 0
            total_executions += row.execution_count or 0

            if status in ACTIVE_STATUSES:
                active += 1

            executed_at = row.last_executed_at
            if executed_at is not None and start <= _as_utc(executed_at) < end:
                if status == ScheduleStatus.COMPLETED:
                    completed += 1
                elif status == ScheduleStatus.FAILED:
                    failures += 1

            if status == ScheduleStatus.PENDING and row.next_execution_at is not None:
                candidate = _as_utc(row.next_execution_at)
                if next_execution is None or candidate < next_execution:
                    next_execution = candidate

        success_rate = 0.0
        if total_executions:
            success_rate = round(total_success / total_executions * 100, 2)

        return ScheduleStatistics(
            active_schedules=active,
            completed_today=completed,
            failures_today=failures,
            success_rate=success_rate,
            next_execution=next_execution,
            total_by_channel=by_channel,
        )
