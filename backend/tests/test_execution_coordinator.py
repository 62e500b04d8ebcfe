import asyncio
from datetime import timedelta

import pytest

from app.core.errors import ConflictError
from app.database.connection import Base, SessionLocal, engine
from app.database.models import models as db_models
from app.schemas.scheduler import Channel, ScheduleStatus
from app.services.channel_adapters import ChannelAdapterRegistry
from app.services.execution_coordinator import NO_ADAPTER_DETAIL, ExecutionCoordinator

from scheduler_fixtures import NOW, FakeAdapter, fast_settings, insert_schedule, load_logs, load_schedule

DAILY = {"frequency": "daily", "time_of_day": "09:00"}


def setup_function(_function):
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)


def _coordinator(*adapters: FakeAdapter, **settings_overrides) -> ExecutionCoordinator:
    return ExecutionCoordinator(
        adapters=ChannelAdapterRegistry(adapters),
        settings=fast_settings(**settings_overrides),
    )


def _run(coordinator: ExecutionCoordinator, schedule_id: int, now=NOW):
    db = SessionLocal()
    try:
        return asyncio.run(coordinator.run(db, schedule_id, now))
    finally:
        db.close()


def test_mixed_outcomes_complete_with_one_error_entry_per_failure() -> None:
    schedule_id = insert_schedule(recipients=["r1", "r2", "r3"])
    adapter = FakeAdapter(hangs=["r3"])

    report = _run(_coordinator(adapter), schedule_id)

    assert report.status == ScheduleStatus.COMPLETED
    assert (report.attempted, report.succeeded, report.failed) == (3, 2, 1)
    assert sorted(adapter.sent) == ["r1", "r2", "r3"]

    row = load_schedule(schedule_id)
    assert row.status == "completed"
    assert (row.execution_count, row.success_count, row.error_count, row.run_count) == (3, 2, 1, 1)
    assert row.next_execution_at is None
    assert row.last_executed_at == NOW
    assert "timed out" in row.last_error

    logs = load_logs(schedule_id)
    levels = [entry.level for entry in logs]
    assert levels.count("error") == 1
    assert levels.count("warning") == 1
    assert "system_alert" not in levels
    error_entry = next(entry for entry in logs if entry.level == "error")
    assert error_entry.details["recipient_id"] == "r3"
    assert error_entry.details["timed_out"] is True
    assert all(entry.channel == "notification" for entry in logs)


def test_all_sends_succeeding_logs_success() -> None:
    schedule_id = insert_schedule(channel="email", recipients=["a", "b"])

    report = _run(_coordinator(FakeAdapter(Channel.EMAIL)), schedule_id)

    assert report.status == ScheduleStatus.COMPLETED
    row = load_schedule(schedule_id)
    assert row.last_error is None
    assert "success" in [entry.level for entry in load_logs(schedule_id)]


def test_zero_successes_fail_the_schedule() -> None:
    schedule_id = insert_schedule(recipients=["r1", "r2"], schedule_mode="recurring", recurrence=DAILY)
    adapter = FakeAdapter(rejects=["r1"], raises=["r2"])

    report = _run(_coordinator(adapter), schedule_id)

    assert report.status == ScheduleStatus.FAILED
    row = load_schedule(schedule_id)
    assert row.status == "failed"
    assert row.next_execution_at is None
    assert (row.execution_count, row.success_count, row.error_count) == (2, 0, 2)
    assert row.last_error.startswith("all 2 send(s) failed")

    logs = load_logs(schedule_id)
    details = sorted(entry.details["error"] for entry in logs if entry.level == "error" and "recipient_id" in entry.details)
    assert details == ["gateway connection reset", "recipient rejected"]
    assert [entry.level for entry in logs].count("system_alert") == 1


def test_empty_recipient_list_fails_without_attempts() -> None:
    schedule_id = insert_schedule(recipients=[])
    adapter = FakeAdapter()

    report = _run(_coordinator(adapter), schedule_id)

    assert report.status == ScheduleStatus.FAILED
    assert report.attempted == 0
    assert adapter.sent == []
    row = load_schedule(schedule_id)
    assert row.last_error == "no recipients"
    assert row.execution_count == 0
    assert row.run_count == 1


def test_missing_adapter_fails_every_recipient() -> None:
    schedule_id = insert_schedule(channel="survey", recipients=["x", "y"])

    report = _run(_coordinator(FakeAdapter(Channel.NOTIFICATION)), schedule_id)

    assert report.status == ScheduleStatus.FAILED
    assert report.failed == 2
    errors = [entry for entry in load_logs(schedule_id) if entry.level == "error" and "recipient_id" in entry.details]
    assert {entry.details["error"] for entry in errors} == {NO_ADAPTER_DETAIL}


def test_recurring_schedule_reschedules_until_max_executions() -> None:
    schedule_id = insert_schedule(
        recipients=["r1"],
        schedule_mode="recurring",
        recurrence=DAILY,
        max_executions=3,
    )
    coordinator = _coordinator(FakeAdapter())

    first = _run(coordinator, schedule_id, NOW)
    assert first.status == ScheduleStatus.PENDING
    assert first.next_execution_at == NOW + timedelta(days=1)

    second = _run(coordinator, schedule_id, first.next_execution_at)
    assert second.status == ScheduleStatus.PENDING
    assert second.next_execution_at == NOW + timedelta(days=2)

    third = _run(coordinator, schedule_id, second.next_execution_at)
    assert third.status == ScheduleStatus.COMPLETED
    assert third.next_execution_at is None

    row = load_schedule(schedule_id)
    assert row.run_count == 3
    assert row.execution_count == 3
    assert row.status == "completed"

    with pytest.raises(ConflictError):
        _run(coordinator, schedule_id, NOW + timedelta(days=3))


def test_recurring_schedule_skips_missed_occurrences() -> None:
    schedule_id = insert_schedule(
        recipients=["r1"],
        schedule_mode="recurring",
        recurrence=DAILY,
        next_execution_at=NOW - timedelta(days=3),
    )

    report = _run(_coordinator(FakeAdapter()), schedule_id, NOW + timedelta(minutes=5))

    assert report.status == ScheduleStatus.PENDING
    assert report.next_execution_at == NOW + timedelta(days=1)


def test_recurring_schedule_completes_after_recurrence_end() -> None:
    schedule_id = insert_schedule(
        recipients=["r1"],
        schedule_mode="recurring",
        recurrence={**DAILY, "ends_at": (NOW + timedelta(hours=12)).isoformat()},
    )

    report = _run(_coordinator(FakeAdapter()), schedule_id)

    assert report.status == ScheduleStatus.COMPLETED
    assert load_schedule(schedule_id).next_execution_at is None


def test_early_manual_run_keeps_upcoming_occurrence() -> None:
    upcoming = NOW + timedelta(hours=6)
    schedule_id = insert_schedule(
        recipients=["r1"],
        schedule_mode="recurring",
        recurrence={"frequency": "weekly"},
        next_execution_at=upcoming,
    )

    report = _run(_coordinator(FakeAdapter()), schedule_id, NOW)

    assert report.status == ScheduleStatus.PENDING
    assert report.next_execution_at == upcoming


def test_cancellation_during_run_suppresses_reschedule() -> None:
    schedule_id = insert_schedule(recipients=["r1", "r2"], schedule_mode="recurring", recurrence=DAILY)
    cancelled = []

    def cancel_once(_recipient_id: str) -> None:
        if cancelled:
            return
        other = SessionLocal()
        try:
            other.query(db_models.MessageSchedule).filter(db_models.MessageSchedule.id == schedule_id).update(
                {"status": "cancelled", "next_execution_at": None}, synchronize_session=False
            )
            other.commit()
        finally:
            other.close()
        cancelled.append(True)

    report = _run(_coordinator(FakeAdapter(on_send=cancel_once)), schedule_id)

    assert report.status == ScheduleStatus.CANCELLED
    assert report.next_execution_at is None
    row = load_schedule(schedule_id)
    assert row.status == "cancelled"
    assert row.next_execution_at is None
    # Sends already in flight still count
    assert row.execution_count == 2
    assert [entry.level for entry in load_logs(schedule_id)][-1] == "system_alert"


def test_concurrency_is_bounded() -> None:
    recipients = [f"r{i}" for i in range(8)]
    schedule_id = insert_schedule(recipients=recipients)
    adapter = FakeAdapter(delay=0.01)

    report = _run(_coordinator(adapter, dispatch_max_concurrency=2), schedule_id)

    assert report.succeeded == 8
    assert adapter.max_in_flight <= 2


def test_invalid_stored_payload_fails_the_run() -> None:
    schedule_id = insert_schedule(payload={"kind": "notification"})
    adapter = FakeAdapter()

    report = _run(_coordinator(adapter), schedule_id)

    assert report.status == ScheduleStatus.FAILED
    assert adapter.sent == []
    assert load_schedule(schedule_id).last_error.startswith("invalid payload")


def _delete_through_another_session(schedule_id: int):
    deleted = []

    def delete_once(_recipient_id: str) -> None:
        if deleted:
            return
        other = SessionLocal()
        try:
            other.query(db_models.MessageSchedule).filter(db_models.MessageSchedule.id == schedule_id).delete(
                synchronize_session=False
            )
            other.commit()
        finally:
            other.close()
        deleted.append(True)

    return delete_once


def test_deletion_during_run_is_reported_not_raised() -> None:
    schedule_id = insert_schedule(recipients=["r1", "r2"], schedule_mode="recurring", recurrence=DAILY)
    adapter = FakeAdapter(rejects=["r2"], on_send=_delete_through_another_session(schedule_id))

    report = _run(_coordinator(adapter), schedule_id)

    assert report.deleted is True
    assert report.status == ScheduleStatus.CANCELLED
    assert (report.attempted, report.succeeded, report.failed) == (2, 1, 1)
    assert report.next_execution_at is None
    assert load_schedule(schedule_id) is None

    logs = load_logs(schedule_id)
    assert [entry.level for entry in logs] == ["info", "error", "warning", "system_alert"]
    assert "deleted during a run" in logs[-1].message
