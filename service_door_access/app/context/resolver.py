"""
Decision context assembly.

Resolves the requesting user's role and membership status through the
user directory and pins the request time and business timezone used for
time-slot matching.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from shared.errors import AccessLayerException, ConfigurationError
from shared.logging import get_logger
from ..persistence.base import call_collaborator
from ..rules.models import (
    DecisionContext, Door, ProximityReading, UserContext, ensure_aware, utcnow
)


class UserDirectory(ABC):
    """User/membership service."""

    @abstractmethod
    async def get_user_context(self, tenant_id: str, user_id: str) -> Optional[UserContext]:
        """Return role and membership status, or None for an unknown user."""

    async def health_check(self) -> bool:
        return True


class UnknownUserError(AccessLayerException):
    """The user does not exist for the tenant or is deactivated."""

    status_code = 404

    def __init__(self, message: str, user_id: str):
        super().__init__("UNKNOWN_USER", message, {"user_id": user_id})


class ContextResolver:
    """Builds the ``DecisionContext`` for one evaluation."""

    def __init__(self, user_directory: UserDirectory, default_timezone: str, timeout: float):
        self.user_directory = user_directory
        self.default_timezone = default_timezone
        self.timeout = timeout
        self.logger = get_logger("door_access.context")

    def resolve_timezone(self, door: Door) -> str:
        """Door's business timezone, falling back to the deployment default."""
        name = door.timezone or self.default_timezone
        try:
            ZoneInfo(name)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ConfigurationError(
                f"Unknown timezone {name!r}",
                details={"door_id": door.door_id}
            ) from e
        return name

    async def lookup_user(self, tenant_id: str, user_id: str) -> UserContext:
        """Fetch the user's role and membership from the directory.

        Raises ``UnknownUserError`` for missing or inactive users and
        ``CollaboratorUnavailableError`` when the directory cannot answer.
        """
        user = await call_collaborator(
            "user_directory",
            self.user_directory.get_user_context(tenant_id, user_id),
            self.timeout
        )
        if user is None:
            raise UnknownUserError("user not found", user_id)
        if not user.active:
            raise UnknownUserError("user inactive", user_id)
        return user

    def build(
        self,
        door: Door,
        user: UserContext,
        timestamp: Optional[datetime] = None,
        proximity: Optional[ProximityReading] = None
    ) -> DecisionContext:
        return DecisionContext(
            tenant_id=door.tenant_id,
            door_id=door.door_id,
            user_id=user.user_id,
            role=user.role,
            membership_status=user.membership_status,
            timestamp=ensure_aware(timestamp) if timestamp else utcnow(),
            timezone=self.resolve_timezone(door),
            proximity=proximity,
        )

    async def resolve(
        self,
        door: Door,
        user_id: str,
        timestamp: Optional[datetime] = None,
        proximity: Optional[ProximityReading] = None
    ) -> DecisionContext:
        """Fetch the user's state and assemble the context for one door."""
        self.resolve_timezone(door)
        user = await self.lookup_user(door.tenant_id, user_id)
        return self.build(door, user, timestamp, proximity)
