from datetime import datetime
from enum import Enum, IntEnum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, model_validator


class Channel(str, Enum):
    NOTIFICATION = "notification"
    SURVEY = "survey"
    CHAT = "chat"
    EMAIL = "email"


class ScheduleMode(str, Enum):
    IMMEDIATE = "immediate"
    RECURRING = "recurring"
    CONDITIONAL = "conditional"


class ScheduleStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset(
    {ScheduleStatus.COMPLETED, ScheduleStatus.FAILED, ScheduleStatus.CANCELLED}
)
ACTIVE_STATUSES = frozenset({ScheduleStatus.PENDING, ScheduleStatus.PROCESSING})


class LogLevel(str, Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"
    SYSTEM_ALERT = "system_alert"


class Frequency(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    YEARLY = "yearly"


class Weekday(IntEnum):
    MONDAY = 0
    TUESDAY = 1
    WEDNESDAY = 2
    THURSDAY = 3
    FRIDAY = 4
    SATURDAY = 5
    SUNDAY = 6


class RecurrencePattern(BaseModel):
    frequency: Frequency
    time_of_day: Optional[str] = Field(None, pattern=r"^([01]\d|2[0-3]):[0-5]\d$")
    days_of_week: Optional[List[Weekday]] = None
    day_of_month: Optional[int] = Field(None, ge=1, le=31)
    ends_at: Optional[datetime] = None

    @model_validator(mode="after")
    def _check_frequency_fields(self) -> "RecurrencePattern":
        if self.days_of_week and self.frequency != Frequency.WEEKLY:
            raise ValueError("days_of_week only applies to weekly recurrence")
        if self.day_of_month is not None and self.frequency in (Frequency.DAILY, Frequency.WEEKLY):
            raise ValueError("day_of_month only applies to monthly, quarterly or yearly recurrence")
        return self


# --- Channel payload variants ---


class NotificationPayload(BaseModel):
    kind: Literal["notification"] = "notification"
    message: str = Field(..., min_length=1)


class SurveyPayload(BaseModel):
    kind: Literal["survey"] = "survey"
    survey_id: str = Field(..., min_length=1)


class ChatPayload(BaseModel):
    kind: Literal["chat"] = "chat"
    message: str = Field(..., min_length=1)


class EmailPayload(BaseModel):
    kind: Literal["email"] = "email"
    subject: str = Field(..., min_length=1)
    body: str = Field(..., min_length=1)


Payload = Annotated[
    Union[NotificationPayload, SurveyPayload, ChatPayload, EmailPayload],
    Field(discriminator="kind"),
]

payload_adapter: TypeAdapter = TypeAdapter(Payload)


def _tag_payload(payload: Any, channel: Any) -> Any:
    if isinstance(payload, dict) and "kind" not in payload and channel is not None:
        kind = channel.value if isinstance(channel, Channel) else channel
        return {**payload, "kind": kind}
    return payload


# --- Requests ---


class CreateScheduleRequest(BaseModel):
    channel: Channel
    title: str = Field(..., min_length=1)
    description: Optional[str] = None
    payload: Payload
    recipients: List[str] = Field(default_factory=list)
    schedule_mode: ScheduleMode = ScheduleMode.IMMEDIATE
    scheduled_for: Optional[datetime] = None
    recurrence: Optional[RecurrencePattern] = None
    max_executions: Optional[int] = None

    @model_validator(mode="before")
    @classmethod
    def _infer_payload_kind(cls, data: Any) -> Any:
        if isinstance(data, dict) and "payload" in data:
            data = {**data, "payload": _tag_payload(data["payload"], data.get("channel"))}
        return data


class ScheduleUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    channel: Optional[Channel] = None
    title: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    payload: Optional[Dict[str, Any]] = None
    recipients: Optional[List[str]] = None
    scheduled_for: Optional[datetime] = None
    recurrence: Optional[RecurrencePattern] = None
    max_executions: Optional[int] = None
    status: Optional[ScheduleStatus] = None
    version: Optional[int] = None


class ScheduleFilters(BaseModel):
    channel: Optional[Channel] = None
    status: Optional[ScheduleStatus] = None
    limit: Optional[int] = Field(None, ge=1)
    offset: int = Field(0, ge=0)


# --- Responses ---


class MessageSchedule(BaseModel):
    id: int
    channel: Channel
    title: str
    description: Optional[str] = None
    payload: Payload
    recipients: List[str]
    schedule_mode: ScheduleMode
    status: ScheduleStatus
    scheduled_for: Optional[datetime] = None
    recurrence: Optional[RecurrencePattern] = None
    next_execution_at: Optional[datetime] = None
    last_executed_at: Optional[datetime] = None
    execution_count: int = 0
    success_count: int = 0
    error_count: int = 0
    run_count: int = 0
    max_executions: Optional[int] = None
    last_error: Optional[str] = None
    created_by: str
    created_at: datetime
    updated_at: datetime
    version: int = 1
    # Display hints only; never consulted for authorization
    can_edit: Optional[bool] = None
    can_delete: Optional[bool] = None
    target_count: Optional[int] = None


class CreateScheduleResponse(BaseModel):
    id: int


class ExecutionLogEntry(BaseModel):
    id: int
    schedule_id: int
    channel: Channel
    level: LogLevel
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime


class ScheduleStatistics(BaseModel):
    active_schedules: int
    completed_today: int
    failures_today: int
    success_rate: float
    next_execution: Optional[datetime] = None
    total_by_channel: Dict[Channel, int]


class RunReport(BaseModel):
    schedule_id: int
    status: ScheduleStatus
    attempted: int
    succeeded: int
    failed: int
    next_execution_at: Optional[datetime] = None
    deleted: bool = False


class DispatchCycleSummary(BaseModel):
    due: int
    claimed: int
    skipped: int
    runs: List[RunReport] = Field(default_factory=list)
