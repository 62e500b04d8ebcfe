import asyncio
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from app.core.auth import Role, UserContext
from app.core.config import get_settings
from app.database.connection import SessionLocal
from app.database.models import models as db_models
from app.schemas.permissions import AuthorizationProfile, ChannelCapability
from app.schemas.scheduler import Channel
from app.services.channel_adapters import ChannelAdapter, SendOutcome

NOW = datetime(2024, 6, 3, 9, 0, tzinfo=timezone.utc)

PAYLOADS = {
    "notification": {"kind": "notification", "message": "Your shift starts soon"},
    "survey": {"kind": "survey", "survey_id": "pulse-2024"},
    "chat": {"kind": "chat", "message": "Team sync moved to 10:00"},
    "email": {"kind": "email", "subject": "Weekly digest", "body": "Here is what happened"},
}


def user(principal_id: str, role: Role = Role.USER) -> UserContext:
    return UserContext(id=principal_id, username=principal_id, role=role, auth_enabled=True)


def fast_settings(**overrides: Any):
    values = {"dispatch_send_timeout_seconds": 0.2, "dispatch_max_concurrency": 5}
    values.update(overrides)
    return get_settings().model_copy(update=values)


def static_loader(grants: Dict[str, Dict[Channel, ChannelCapability]]):
    def load(principal_id: str) -> AuthorizationProfile:
        return AuthorizationProfile(principal_id=principal_id, capabilities=dict(grants.get(principal_id, {})))

    return load


def insert_schedule(**overrides: Any) -> int:
    values: Dict[str, Any] = {
        "channel": "notification",
        "title": "Shift reminder",
        "description": None,
        "payload": {"kind": "notification", "message": "Your shift starts soon"},
        "recipients": ["r1", "r2", "r3"],
        "schedule_mode": "immediate",
        "status": "pending",
        "scheduled_for": None,
        "recurrence": None,
        "next_execution_at": NOW,
        "last_executed_at": None,
        "execution_count": 0,
        "success_count": 0,
        "error_count": 0,
        "run_count": 0,
        "max_executions": None,
        "last_error": None,
        "created_by": "tester",
        "created_at": NOW,
        "updated_at": NOW,
        "version": 1,
    }
    values.update(overrides)
    if "payload" not in overrides:
        values["payload"] = dict(PAYLOADS[values["channel"]])

    db = SessionLocal()
    try:
        row = db_models.MessageSchedule(**values)
        db.add(row)
        db.commit()
        return row.id
    finally:
        db.close()


def load_schedule(schedule_id: int) -> Optional[db_models.MessageSchedule]:
    db = SessionLocal()
    try:
        row = db.get(db_models.MessageSchedule, schedule_id)
        if row is not None:
            db.expunge(row)
        return row
    finally:
        db.close()


def load_logs(schedule_id: int) -> List[db_models.ExecutionLog]:
    db = SessionLocal()
    try:
        rows = (
            db.query(db_models.ExecutionLog)
            .filter(db_models.ExecutionLog.schedule_id == schedule_id)
            .order_by(db_models.ExecutionLog.id)
            .all()
        )
        for row in rows:
            db.expunge(row)
        return rows
    finally:
        db.close()


class FakeAdapter(ChannelAdapter):
    """Scripted adapter: recipients listed in ``rejects``, ``hangs`` or
    ``raises`` fail in the corresponding way, everyone else succeeds."""

    def __init__(
        self,
        channel: Channel = Channel.NOTIFICATION,
        rejects: Iterable[str] = (),
        hangs: Iterable[str] = (),
        raises: Iterable[str] = (),
        delay: float = 0.0,
        on_send=None,
    ) -> None:
        self.channel = channel
        self.rejects = set(rejects)
        self.hangs = set(hangs)
        self.raises = set(raises)
        self.delay = delay
        self.on_send = on_send
        self.sent: List[str] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def send(self, recipient_id: str, payload: Any) -> SendOutcome:
        self.sent.append(recipient_id)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.on_send is not None:
                self.on_send(recipient_id)
            if self.delay:
                await asyncio.sleep(self.delay)
            if recipient_id in self.hangs:
                await asyncio.sleep(60)
            if recipient_id in self.raises:
                raise RuntimeError("gateway connection reset")
            if recipient_id in self.rejects:
                return SendOutcome.failure("recipient rejected")
            return SendOutcome.ok()
        finally:
            self.in_flight -= 1
