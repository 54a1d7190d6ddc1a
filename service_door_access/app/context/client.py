"""
User/membership service client for the Door Access Service.
"""

from typing import Optional

import httpx

from shared.circuit_breaker import CircuitBreaker
from shared.errors import CollaboratorUnavailableError
from shared.logging import get_logger
from ..rules.models import UserContext
from .resolver import UserDirectory


class HttpUserDirectory(UserDirectory):
    """Reads a user's role and membership status over HTTP."""

    def __init__(self, base_url: str, timeout: float = 3.0,
                 failure_threshold: int = 5, recovery_timeout: float = 30.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport
        self.logger = get_logger("door_access.user_directory")
        self.circuit_breaker = CircuitBreaker(
            "user_directory",
            failure_threshold=failure_threshold,
            recovery_timeout=recovery_timeout,
            counted_exceptions=(httpx.HTTPError, CollaboratorUnavailableError)
        )

    async def get_user_context(self, tenant_id: str, user_id: str) -> Optional[UserContext]:
        return await self.circuit_breaker.call(self._fetch, tenant_id, user_id)

    async def _fetch(self, tenant_id: str, user_id: str) -> Optional[UserContext]:
        url = f"{self.base_url}/tenants/{tenant_id}/users/{user_id}/access-context"
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            response = await client.get(url)

        if response.status_code == 404:
            return None
        if response.status_code != 200:
            self.logger.warning(
                "User directory error",
                status_code=response.status_code,
                user_id=user_id,
                tenant_id=tenant_id
            )
            raise CollaboratorUnavailableError(
                "user_directory",
                f"unexpected status {response.status_code}",
                details={"status_code": response.status_code}
            )

        data = response.json()
        return UserContext(
            user_id=user_id,
            role=data["role"],
            membership_status=data.get("membership_status"),
            active=data.get("active", True),
        )

    async def health_check(self) -> bool:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.get(f"{self.base_url}/health")
            return response.status_code == 200
        except httpx.HTTPError:
            return False
