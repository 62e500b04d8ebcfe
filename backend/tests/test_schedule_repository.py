from datetime import timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from app.core.errors import ConflictError, NotFoundError, PersistenceError
from app.database.connection import Base, SessionLocal, engine
from app.database.services.schedule_repository import ScheduleRepository, to_schedule_schema
from app.schemas.scheduler import Channel, LogLevel, ScheduleStatus

from scheduler_fixtures import NOW, insert_schedule, load_logs, load_schedule

repository = ScheduleRepository()


def setup_function(_function):
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)


def test_only_one_of_two_concurrent_claims_wins() -> None:
    schedule_id = insert_schedule()
    first, second = SessionLocal(), SessionLocal()
    try:
        # Both claimants saw the schedule as pending
        assert repository.get(first, schedule_id).status == "pending"
        assert repository.get(second, schedule_id).status == "pending"

        claimed = repository.claim(first, schedule_id, NOW)
        assert claimed.id == schedule_id
        # The served occurrence travels with the claim, not in the row
        assert claimed.next_execution_at == NOW

        with pytest.raises(ConflictError):
            repository.claim(second, schedule_id, NOW)
    finally:
        first.close()
        second.close()

    row = load_schedule(schedule_id)
    assert row.status == "processing"
    assert row.version == 2
    assert row.next_execution_at is None


def test_claim_of_cancelled_schedule_is_a_conflict() -> None:
    schedule_id = insert_schedule(status="cancelled", next_execution_at=None)
    db = SessionLocal()
    try:
        with pytest.raises(ConflictError):
            repository.claim(db, schedule_id, NOW)
    finally:
        db.close()


def test_update_fields_checks_version() -> None:
    schedule_id = insert_schedule()
    db = SessionLocal()
    try:
        updated = repository.update_fields(db, schedule_id, {"title": "Renamed"}, expected_version=1, now=NOW)
        assert updated.title == "Renamed"
        assert updated.version == 2

        with pytest.raises(ConflictError):
            repository.update_fields(db, schedule_id, {"title": "Stale"}, expected_version=1, now=NOW)

        with pytest.raises(NotFoundError):
            repository.update_fields(db, schedule_id + 100, {"title": "Ghost"}, expected_version=1)
    finally:
        db.close()

    assert load_schedule(schedule_id).title == "Renamed"


def test_run_counters_are_folded_not_overwritten() -> None:
    schedule_id = insert_schedule(execution_count=4, success_count=3, error_count=1, run_count=2)
    first, second = SessionLocal(), SessionLocal()
    try:
        repository.stage_run_counters(
            first, schedule_id, attempted=3, succeeded=2, failed=1, executed_at=NOW, last_error="r3: rejected"
        )
        repository.commit(first)
        repository.stage_run_counters(
            second, schedule_id, attempted=2, succeeded=2, failed=0, executed_at=NOW, last_error=None
        )
        repository.commit(second)
    finally:
        first.close()
        second.close()

    row = load_schedule(schedule_id)
    assert (row.execution_count, row.success_count, row.error_count, row.run_count) == (9, 7, 2, 4)
    assert row.success_count + row.error_count == row.execution_count
    assert row.last_error == "r3: rejected"
    assert row.last_executed_at == NOW


def test_folding_counters_into_a_deleted_schedule_touches_nothing() -> None:
    schedule_id = insert_schedule(status="processing", next_execution_at=None)
    db = SessionLocal()
    try:
        assert repository.delete(db, schedule_id)
        folded = repository.stage_run_counters(
            db, schedule_id, attempted=1, succeeded=1, failed=0, executed_at=NOW, last_error=None
        )
        repository.commit(db)
    finally:
        db.close()

    assert folded == 0
    assert load_schedule(schedule_id) is None


def test_transition_is_conditional_on_current_status() -> None:
    schedule_id = insert_schedule(status="processing")
    db = SessionLocal()
    try:
        assert not repository.stage_transition(
            db, schedule_id, from_status=ScheduleStatus.PENDING, to_status=ScheduleStatus.COMPLETED
        )
        assert repository.stage_transition(
            db,
            schedule_id,
            from_status=ScheduleStatus.PROCESSING,
            to_status=ScheduleStatus.COMPLETED,
            values={"next_execution_at": None},
        )
        repository.commit(db)
    finally:
        db.close()

    row = load_schedule(schedule_id)
    assert row.status == "completed"
    assert row.next_execution_at is None


def test_find_due_returns_pending_schedules_in_due_order() -> None:
    later = insert_schedule(next_execution_at=NOW - timedelta(minutes=1))
    earlier = insert_schedule(next_execution_at=NOW - timedelta(hours=1))
    insert_schedule(next_execution_at=NOW + timedelta(minutes=1))
    insert_schedule(status="processing", next_execution_at=NOW - timedelta(hours=2))
    insert_schedule(schedule_mode="conditional", next_execution_at=None)

    db = SessionLocal()
    try:
        due = repository.find_due(db, NOW)
    finally:
        db.close()

    assert [row.id for row in due] == [earlier, later]


def test_list_schedules_filters_by_channel_and_orders_newest_first() -> None:
    oldest = insert_schedule(created_at=NOW - timedelta(days=2))
    newest = insert_schedule(created_at=NOW)
    insert_schedule(channel="email", created_at=NOW - timedelta(days=1))

    db = SessionLocal()
    try:
        rows = repository.list_schedules(db, channels=[Channel.NOTIFICATION])
        assert [row.id for row in rows] == [newest, oldest]
        assert repository.list_schedules(db, channels=[]) == []
        assert len(repository.list_schedules(db, channels=list(Channel), limit=2)) == 2
        assert [row.id for row in repository.list_schedules(db, channels=[Channel.NOTIFICATION], offset=1)] == [oldest]
    finally:
        db.close()


def test_delete_keeps_execution_log() -> None:
    schedule_id = insert_schedule(channel="chat")
    db = SessionLocal()
    try:
        repository.append_log(db, schedule_id, Channel.CHAT, LogLevel.INFO, "created", now=NOW)
        assert repository.delete(db, schedule_id) is True
        assert repository.delete(db, schedule_id) is False
        assert repository.get(db, schedule_id) is None
        assert repository.log_channel(db, schedule_id) == "chat"
        assert [entry.message for entry in repository.list_logs(db, schedule_id)] == ["created"]
    finally:
        db.close()


def test_list_logs_returns_most_recent_first() -> None:
    schedule_id = insert_schedule()
    db = SessionLocal()
    try:
        for offset in range(5):
            repository.append_log(
                db,
                schedule_id,
                Channel.NOTIFICATION,
                LogLevel.INFO,
                f"entry {offset}",
                now=NOW + timedelta(seconds=offset),
            )
        messages = [entry.message for entry in repository.list_logs(db, schedule_id, limit=3)]
    finally:
        db.close()

    assert messages == ["entry 4", "entry 3", "entry 2"]
    assert len(load_logs(schedule_id)) == 5


def test_schema_conversion_round_trips_stored_row() -> None:
    schedule_id = insert_schedule(
        schedule_mode="recurring",
        recurrence={"frequency": "weekly", "days_of_week": [0, 2], "time_of_day": "09:00"},
    )
    db = SessionLocal()
    try:
        schedule = to_schedule_schema(repository.get(db, schedule_id))
    finally:
        db.close()

    assert schedule.channel == Channel.NOTIFICATION
    assert schedule.payload.message == "Your shift starts soon"
    assert schedule.recurrence.days_of_week == [0, 2]
    assert schedule.next_execution_at == NOW


def test_storage_failures_surface_as_persistence_errors(tmp_path) -> None:
    broken_engine = create_engine(f"sqlite:///{tmp_path / 'missing' / 'nowhere.db'}")
    BrokenSession = sessionmaker(bind=broken_engine)
    db = BrokenSession()
    try:
        with pytest.raises(PersistenceError):
            repository.find_due(db, NOW)
        with pytest.raises(PersistenceError):
            repository.claim(db, 1, NOW)
    finally:
        db.close()
