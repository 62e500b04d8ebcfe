import logging
import threading
from enum import Enum
from typing import Callable, Dict, List, Optional

from app.core.auth import UserContext
from app.core.config import Settings, get_settings
from app.core.errors import AuthorizationError
from app.schemas.permissions import AuthorizationProfile, ChannelCapability, PermissionsSummary
from app.schemas.scheduler import Channel

logger = logging.getLogger(__name__)

ProfileLoader = Callable[[str], AuthorizationProfile]
RevisionLoader = Callable[[str], int]


class Action(str, Enum):
    VIEW = "view"
    MANAGE = "manage"


class PermissionEvents:
    """Fan-out of "capabilities for principal X changed" notifications."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._subscribers: List[Callable[[str], None]] = []

    def subscribe(self, callback: Callable[[str], None]) -> None:
        with self._lock:
            if callback not in self._subscribers:
                self._subscribers.append(callback)

    def unsubscribe(self, callback: Callable[[str], None]) -> None:
        with self._lock:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

    def publish(self, principal_id: str) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        logger.info("Permission change published for principal %s", principal_id)
        for callback in subscribers:
            callback(principal_id)


permission_events = PermissionEvents()


class AuthorizationGate:
    """Decides whether a principal may view or manage schedules of a channel.

    Elevated roles pass unconditionally. Everyone else is looked up in their
    per-channel capability map, and a missing entry is a denial. Profiles are
    cached per principal until ``invalidate`` is called, which happens
    automatically for every event published on the subscribed
    ``PermissionEvents`` hub. Events never leave the process, so when a
    ``revision_loader`` is given every lookup also compares the cached
    profile's revision with the stored one and reloads on a mismatch.
    """

    def __init__(
        self,
        profile_loader: ProfileLoader,
        events: Optional[PermissionEvents] = None,
        settings: Optional[Settings] = None,
        revision_loader: Optional[RevisionLoader] = None,
    ) -> None:
        self._loader = profile_loader
        self._revision_loader = revision_loader
        self._settings = settings or get_settings()
        self._events = events or permission_events
        self._lock = threading.RLock()
        self._profiles: Dict[str, AuthorizationProfile] = {}
        self._generations: Dict[str, int] = {}
        self._events.subscribe(self.invalidate)

    # --- Cache management ---

    def invalidate(self, principal_id: str) -> None:
        with self._lock:
            self._profiles.pop(principal_id, None)
            self._generations[principal_id] = self._generations.get(principal_id, 0) + 1

    def invalidate_all(self) -> None:
        with self._lock:
            for principal_id in list(self._profiles):
                self._generations[principal_id] = self._generations.get(principal_id, 0) + 1
            self._profiles.clear()

    def close(self) -> None:
        self._events.unsubscribe(self.invalidate)

    def _profile_for(self, principal_id: str) -> AuthorizationProfile:
        stored_revision = self._revision_loader(principal_id) if self._revision_loader is not None else None

        with self._lock:
            cached = self._profiles.get(principal_id)
            if cached is not None:
                if stored_revision is None or cached.revision == stored_revision:
                    return cached
                logger.info(
                    "Cached permissions for %s are at revision %s, store has %s; reloading",
                    principal_id,
                    cached.revision,
                    stored_revision,
                )
                self.invalidate(principal_id)
            generation = self._generations.get(principal_id, 0)

        profile = self._loader(principal_id)

        with self._lock:
            # An invalidation raced the load; hand the result out but do not keep it
            if self._generations.get(principal_id, 0) == generation:
                self._profiles[principal_id] = profile
        return profile

    # --- Decisions ---

    def check(self, principal: UserContext, channel, action) -> bool:
        action = Action(action)
        if principal.is_elevated(self._settings):
            return True
        try:
            channel = Channel(channel)
        except ValueError:
            return False

        capability = self._profile_for(principal.id).capabilities.get(channel)
        if capability is None:
            return False
        if action == Action.MANAGE:
            return capability.can_manage
        return capability.can_view

    def require(self, principal: UserContext, channel, action) -> None:
        if not self.check(principal, channel, action):
            action = Action(action)
            channel_value = channel.value if isinstance(channel, Channel) else str(channel)
            logger.info(
                "Denied %s on %s schedules for principal %s",
                action.value,
                channel_value,
                principal.id,
            )
            raise AuthorizationError(
                f"You do not have permission to {action.value} {channel_value} schedules.",
                details={"channel": channel_value, "action": action.value},
            )

    def available_channels(self, principal: UserContext, action) -> List[Channel]:
        return [channel for channel in Channel if self.check(principal, channel, action)]

    def permissions_summary(self, principal: UserContext) -> PermissionsSummary:
        channels = {
            channel: ChannelCapability(
                can_view=self.check(principal, channel, Action.VIEW),
                can_manage=self.check(principal, channel, Action.MANAGE),
            )
            for channel in Channel
        }
        return PermissionsSummary(
            principal_id=principal.id,
            elevated=principal.is_elevated(self._settings),
            channels=channels,
            manageable_channels=[c for c, cap in channels.items() if cap.can_manage],
            viewable_channels=[c for c, cap in channels.items() if cap.can_view],
        )
