from sqlalchemy import Boolean, Column, Integer, JSON, String, UniqueConstraint

from ..connection import Base, UTCDateTime


class MessageSchedule(Base):
    __tablename__ = "message_schedules"

    id = Column(Integer, primary_key=True, index=True)
    channel = Column(String, nullable=False, index=True)
    title = Column(String, nullable=False)
    description = Column(String, nullable=True)
    payload = Column(JSON, nullable=False, default=dict)
    recipients = Column(JSON, nullable=False, default=list)
    schedule_mode = Column(String, nullable=False)
    status = Column(String, nullable=False, default="pending", index=True)
    scheduled_for = Column(UTCDateTime, nullable=True)
    recurrence = Column(JSON, nullable=True)
    next_execution_at = Column(UTCDateTime, nullable=True, index=True)
    last_executed_at = Column(UTCDateTime, nullable=True)
    execution_count = Column(Integer, nullable=False, default=0)
    success_count = Column(Integer, nullable=False, default=0)
    error_count = Column(Integer, nullable=False, default=0)
    run_count = Column(Integer, nullable=False, default=0)
    max_executions = Column(Integer, nullable=True)
    last_error = Column(String, nullable=True)
    created_by = Column(String, nullable=False)
    created_at = Column(UTCDateTime, nullable=False)
    updated_at = Column(UTCDateTime, nullable=False)
    version = Column(Integer, nullable=False, default=1)


class ExecutionLog(Base):
    __tablename__ = "message_schedule_logs"

    id = Column(Integer, primary_key=True, index=True)
    # No foreign key: log rows outlive the schedule they describe
    schedule_id = Column(Integer, nullable=False, index=True)
    channel = Column(String, nullable=False)
    level = Column(String, nullable=False, default="info")
    message = Column(String, nullable=False)
    details = Column(JSON, default=dict)
    created_at = Column(UTCDateTime, nullable=False)


class ChannelPermission(Base):
    __tablename__ = "channel_permissions"
    __table_args__ = (UniqueConstraint("principal_id", "channel", name="uq_channel_permission"),)

    id = Column(Integer, primary_key=True, index=True)
    principal_id = Column(String, nullable=False, index=True)
    channel = Column(String, nullable=False)
    can_view = Column(Boolean, nullable=False, default=False)
    can_manage = Column(Boolean, nullable=False, default=False)
    updated_at = Column(UTCDateTime)


class PermissionRevision(Base):
    __tablename__ = "permission_revisions"

    # Bumped with every grant change so other processes can spot stale caches
    principal_id = Column(String, primary_key=True)
    revision = Column(Integer, nullable=False, default=0)
    updated_at = Column(UTCDateTime)
