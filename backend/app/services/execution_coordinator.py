import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm import Session

from app.core.config import Settings, get_settings
from app.core.errors import PersistenceError
from app.core.recurrence import RecurrenceError, compute_next, has_further_occurrence
from app.database.services.schedule_repository import ClaimedSchedule, ScheduleRepository, schedule_repository
from app.schemas.scheduler import (
    Channel,
    LogLevel,
    RecurrencePattern,
    RunReport,
    ScheduleMode,
    ScheduleStatus,
    payload_adapter,
)
from app.services.channel_adapters import ChannelAdapterRegistry

logger = logging.getLogger(__name__)

NO_ADAPTER_DETAIL = "no adapter configured for channel"
_MAX_SKIPPED_OCCURRENCES = 10_000


@dataclass
class RecipientOutcome:
    recipient_id: str
    success: bool
    error_detail: Optional[str] = None
    timed_out: bool = False


@dataclass
class _Settlement:
    status: ScheduleStatus
    next_execution_at: Optional[datetime] = None
    reason: Optional[str] = None


class ExecutionCoordinator:
    """Runs claimed schedules: fan-out to recipients, then one atomic settle.

    A run never raises because individual sends failed. Send failures are
    folded into the schedule counters and written to the execution log;
    only losing the claim (ConflictError) or losing the database
    (PersistenceError) propagates.
    """

    def __init__(
        self,
        repository: Optional[ScheduleRepository] = None,
        adapters: Optional[ChannelAdapterRegistry] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.repository = repository or schedule_repository
        self.adapters = adapters if adapters is not None else ChannelAdapterRegistry.from_settings(self.settings)

    async def run(self, db: Session, schedule_id: int, now: Optional[datetime] = None) -> RunReport:
        now = now or datetime.now(timezone.utc)
        row = self.repository.claim(db, schedule_id, now)
        logger.info("Claimed schedule %s for execution", schedule_id)

        try:
            return await self._execute_claimed(db, row, now)
        except PersistenceError:
            raise
        except Exception as exc:
            logger.exception("Run of schedule %s aborted", schedule_id)
            db.rollback()
            return self._settle(
                db,
                row,
                outcomes=[],
                now=now,
                fatal_error=f"run aborted: {exc}",
            )

    async def _execute_claimed(
        self,
        db: Session,
        row: ClaimedSchedule,
        now: datetime,
    ) -> RunReport:
        channel = Channel(row.channel)
        recipients: List[str] = list(row.recipients or [])

        if not recipients:
            return self._settle(db, row, outcomes=[], now=now, fatal_error="no recipients")

        try:
            payload = payload_adapter.validate_python({**(row.payload or {}), "kind": channel.value})
        except PydanticValidationError as exc:
            return self._settle(db, row, outcomes=[], now=now, fatal_error=f"invalid payload: {exc}")

        self.repository.append_log(
            db,
            row.id,
            channel,
            LogLevel.INFO,
            f"Run {row.run_count + 1} started for {len(recipients)} recipient(s)",
            details={"recipients": len(recipients)},
            now=now,
        )

        outcomes = await self.dispatch(channel, payload, recipients)
        return self._settle(db, row, outcomes=outcomes, now=now)

    async def dispatch(self, channel: Channel, payload: Any, recipients: List[str]) -> List[RecipientOutcome]:
        """Send ``payload`` to every recipient with bounded concurrency.

        Always returns exactly one outcome per recipient, in recipient order.
        """
        adapter = self.adapters.get(channel)
        timeout = self.settings.dispatch_send_timeout_seconds
        semaphore = asyncio.Semaphore(max(1, self.settings.dispatch_max_concurrency))

        async def _send_one(recipient_id: str) -> RecipientOutcome:
            if adapter is None:
                return RecipientOutcome(recipient_id, False, NO_ADAPTER_DETAIL)
            async with semaphore:
                try:
                    outcome = await asyncio.wait_for(adapter.send(recipient_id, payload), timeout=timeout)
                except asyncio.TimeoutError:
                    return RecipientOutcome(
                        recipient_id,
                        False,
                        f"send timed out after {timeout:g}s",
                        timed_out=True,
                    )
                except Exception as exc:
                    logger.warning("Adapter for %s raised for recipient %s: %s", channel.value, recipient_id, exc)
                    return RecipientOutcome(recipient_id, False, str(exc) or exc.__class__.__name__)
            return RecipientOutcome(recipient_id, outcome.success, outcome.error_detail)

        return list(await asyncio.gather(*(_send_one(recipient_id) for recipient_id in recipients)))

    # --- Settlement ---

    def _next_occurrence(self, row: ClaimedSchedule, now: datetime) -> _Settlement:
        pattern = RecurrencePattern.model_validate(row.recurrence or {})
        tz_name = self.settings.scheduler_default_timezone

        anchor = row.next_execution_at
        if anchor is not None and anchor > now:
            # Manual run ahead of time; the upcoming occurrence still stands
            next_at = anchor
        else:
            # Advance from the occurrence just served, skipping any that were missed
            next_at = compute_next(pattern, anchor or now, tz_name)
            skipped = 0
            while next_at <= now:
                skipped += 1
                if skipped >= _MAX_SKIPPED_OCCURRENCES:
                    next_at = compute_next(pattern, now, tz_name)
                    break
                next_at = compute_next(pattern, next_at, tz_name)

        if not has_further_occurrence(pattern, next_at):
            return _Settlement(ScheduleStatus.COMPLETED, reason="recurrence ended")
        return _Settlement(ScheduleStatus.PENDING, next_execution_at=next_at)

    def _decide(
        self,
        row: ClaimedSchedule,
        succeeded: int,
        now: datetime,
    ) -> _Settlement:
        if succeeded == 0:
            return _Settlement(ScheduleStatus.FAILED)

        if ScheduleMode(row.schedule_mode) != ScheduleMode.RECURRING:
            return _Settlement(ScheduleStatus.COMPLETED, reason="single run finished")

        runs_done = (row.run_count or 0) + 1
        if row.max_executions is not None and runs_done >= row.max_executions:
            return _Settlement(ScheduleStatus.COMPLETED, reason="max_executions reached")

        try:
            return self._next_occurrence(row, now)
        except RecurrenceError as exc:
            return _Settlement(ScheduleStatus.FAILED, reason=exc.message)

    def _stage_outcome_logs(
        self,
        db: Session,
        row: ClaimedSchedule,
        channel: Channel,
        outcomes: List[RecipientOutcome],
        run_number: int,
        now: datetime,
        fatal_error: Optional[str],
    ) -> None:
        attempted = len(outcomes)
        failures = [outcome for outcome in outcomes if not outcome.success]
        succeeded = attempted - len(failures)

        for failure in failures:
            self.repository.stage_log(
                db,
                row.id,
                channel,
                LogLevel.ERROR,
                f"Send to {failure.recipient_id} failed: {failure.error_detail}",
                details={
                    "recipient_id": failure.recipient_id,
                    "error": failure.error_detail,
                    "timed_out": failure.timed_out,
                },
                now=now,
            )

        if not failures and attempted > 0:
            level = LogLevel.SUCCESS
        elif succeeded > 0:
            level = LogLevel.WARNING
        else:
            level = LogLevel.ERROR
        self.repository.stage_log(
            db,
            row.id,
            channel,
            level,
            f"Run {run_number} finished: {succeeded}/{attempted} delivered",
            details={
                "run": run_number,
                "attempted": attempted,
                "succeeded": succeeded,
                "failed": len(failures),
                **({"error": fatal_error} if fatal_error else {}),
            },
            now=now,
        )

    def _settle(
        self,
        db: Session,
        row: ClaimedSchedule,
        outcomes: List[RecipientOutcome],
        now: datetime,
        fatal_error: Optional[str] = None,
    ) -> RunReport:
        schedule_id = row.id
        channel = Channel(row.channel)
        run_number = row.run_count + 1

        attempted = len(outcomes)
        succeeded = sum(1 for outcome in outcomes if outcome.success)
        failed = attempted - succeeded
        failures = [outcome for outcome in outcomes if not outcome.success]

        settlement = self._decide(row, succeeded, now)

        last_error: Optional[str] = fatal_error
        if last_error is None and settlement.status == ScheduleStatus.FAILED and settlement.reason:
            last_error = settlement.reason
        if last_error is None and failures:
            if succeeded == 0:
                last_error = f"all {attempted} send(s) failed; last error: {failures[-1].error_detail}"
            else:
                last_error = f"{failed} of {attempted} send(s) failed; last error: {failures[-1].error_detail}"

        folded = self.repository.stage_run_counters(
            db,
            schedule_id,
            attempted=attempted,
            succeeded=succeeded,
            failed=failed,
            executed_at=now,
            last_error=last_error,
        )
        self._stage_outcome_logs(db, row, channel, outcomes, run_number, now, fatal_error)

        if not folded:
            # Deleted while the sends were in flight; only the log keeps the outcome
            self.repository.stage_log(
                db,
                schedule_id,
                channel,
                LogLevel.SYSTEM_ALERT,
                "Schedule was deleted during a run; its outcome is kept in this log only",
                details={"run": run_number},
                now=now,
            )
            self.repository.commit(db)
            logger.warning(
                "Schedule %s was deleted during run %s (%s/%s delivered)",
                schedule_id,
                run_number,
                succeeded,
                attempted,
            )
            return RunReport(
                schedule_id=schedule_id,
                status=ScheduleStatus.CANCELLED,
                attempted=attempted,
                succeeded=succeeded,
                failed=failed,
                deleted=True,
            )

        transition_values: Dict[str, Any] = {"next_execution_at": settlement.next_execution_at}
        moved = self.repository.stage_transition(
            db,
            schedule_id,
            from_status=ScheduleStatus.PROCESSING,
            to_status=settlement.status,
            values=transition_values,
        )

        final_status = settlement.status
        next_execution_at = settlement.next_execution_at
        if not moved:
            # Cancelled while the run was in flight; the cancellation stands
            final_status = ScheduleStatus.CANCELLED
            next_execution_at = None
            self.repository.stage_log(
                db,
                schedule_id,
                channel,
                LogLevel.SYSTEM_ALERT,
                "Schedule was cancelled during a run; no further occurrences will be dispatched",
                details={"run": run_number},
                now=now,
            )
        elif final_status == ScheduleStatus.FAILED:
            self.repository.stage_log(
                db,
                schedule_id,
                channel,
                LogLevel.SYSTEM_ALERT,
                f"Schedule failed: {last_error}",
                details={"run": run_number},
                now=now,
            )
        elif final_status == ScheduleStatus.PENDING:
            self.repository.stage_log(
                db,
                schedule_id,
                channel,
                LogLevel.INFO,
                f"Next occurrence scheduled for {next_execution_at.isoformat()}",
                details={"next_execution_at": next_execution_at.isoformat()},
                now=now,
            )
        else:
            self.repository.stage_log(
                db,
                schedule_id,
                channel,
                LogLevel.INFO,
                f"Schedule completed: {settlement.reason}",
                details={"reason": settlement.reason},
                now=now,
            )

        self.repository.commit(db)
        logger.info(
            "Schedule %s run %s settled as %s (%s/%s delivered)",
            schedule_id,
            run_number,
            final_status.value,
            succeeded,
            attempted,
        )

        return RunReport(
            schedule_id=schedule_id,
            status=final_status,
            attempted=attempted,
            succeeded=succeeded,
            failed=failed,
            next_execution_at=next_execution_at,
        )
