from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.authorization import PermissionEvents, permission_events
from app.core.errors import PersistenceError
from app.database.connection import SessionLocal
from app.database.models import models as db_models
from app.schemas.permissions import AuthorizationProfile, ChannelCapability
from app.schemas.scheduler import Channel

logger = logging.getLogger(__name__)


def list_permissions(db: Session, principal_id: str) -> List[db_models.ChannelPermission]:
    return (
        db.query(db_models.ChannelPermission)
        .filter(db_models.ChannelPermission.principal_id == principal_id)
        .order_by(db_models.ChannelPermission.channel)
        .all()
    )


def get_revision(db: Session, principal_id: str) -> int:
    row = db.get(db_models.PermissionRevision, principal_id)
    return row.revision if row is not None else 0


def get_profile(db: Session, principal_id: str) -> AuthorizationProfile:
    revision = get_revision(db, principal_id)
    capabilities: Dict[Channel, ChannelCapability] = {}
    for row in list_permissions(db, principal_id):
        try:
            channel = Channel(row.channel)
        except ValueError:
            # Rows for retired channels grant nothing
            continue
        capabilities[channel] = ChannelCapability(can_view=row.can_view, can_manage=row.can_manage)
    return AuthorizationProfile(principal_id=principal_id, capabilities=capabilities, revision=revision)


def _bump_revision(db: Session, principal_id: str, now: datetime) -> None:
    Revision = db_models.PermissionRevision
    bumped = (
        db.query(Revision)
        .filter(Revision.principal_id == principal_id)
        .update({Revision.revision: Revision.revision + 1, Revision.updated_at: now}, synchronize_session=False)
    )
    if not bumped:
        db.add(Revision(principal_id=principal_id, revision=1, updated_at=now))


def replace_capabilities(
    db: Session,
    principal_id: str,
    capabilities: Dict[Channel, ChannelCapability],
    events: Optional[PermissionEvents] = None,
) -> AuthorizationProfile:
    """Replace a principal's channel grants and announce the change.

    Channels missing from ``capabilities`` lose every grant. Managing a
    channel implies viewing it.
    """
    now = datetime.now(timezone.utc)
    try:
        db.query(db_models.ChannelPermission).filter(
            db_models.ChannelPermission.principal_id == principal_id
        ).delete(synchronize_session=False)

        for channel, capability in capabilities.items():
            db.add(
                db_models.ChannelPermission(
                    principal_id=principal_id,
                    channel=Channel(channel).value,
                    can_view=capability.can_view or capability.can_manage,
                    can_manage=capability.can_manage,
                    updated_at=now,
                )
            )
        _bump_revision(db, principal_id, now)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("Failed to store channel permissions for %s", principal_id)
        raise PersistenceError("Permission storage unavailable") from exc

    logger.info("Channel permissions replaced for principal %s", principal_id)
    (events or permission_events).publish(principal_id)
    return get_profile(db, principal_id)


def session_profile_loader(session_factory: Callable[[], Session] = SessionLocal):
    def load(principal_id: str) -> AuthorizationProfile:
        db = session_factory()
        try:
            return get_profile(db, principal_id)
        except SQLAlchemyError as exc:
            logger.exception("Failed to load channel permissions for %s", principal_id)
            raise PersistenceError("Permission storage unavailable") from exc
        finally:
            db.close()

    return load


def session_revision_loader(session_factory: Callable[[], Session] = SessionLocal):
    def load(principal_id: str) -> int:
        db = session_factory()
        try:
            return get_revision(db, principal_id)
        except SQLAlchemyError as exc:
            logger.exception("Failed to read permission revision for %s", principal_id)
            raise PersistenceError("Permission storage unavailable") from exc
        finally:
            db.close()

    return load
