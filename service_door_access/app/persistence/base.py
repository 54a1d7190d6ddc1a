"""
Collaborator interfaces consumed by the access engine.

The engine only reads doors and rules and appends log entries; the write
methods on ``RuleStore`` serve the admin endpoints.
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Dict, List, Optional, Tuple, TypeVar

from shared.errors import CollaboratorUnavailableError
from ..rules.models import AccessLogEntry, AccessRule, Door

T = TypeVar("T")


@dataclass(frozen=True)
class AccessLogFilters:
    """Filters for querying access log entries."""
    door_id: Optional[str] = None
    user_id: Optional[str] = None
    granted: Optional[bool] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None


@dataclass
class AccessLogSummary:
    """Counts over a filtered slice of the access log."""
    total: int = 0
    granted: int = 0
    unique_users: int = 0
    by_result: Dict[str, int] = field(default_factory=dict)
    by_method: Dict[str, int] = field(default_factory=dict)
    top_doors: List[Tuple[str, int]] = field(default_factory=list)


# Keyset cursor: (timestamp, entry_id) of the last entry already read.
LogCursor = Tuple[datetime, str]


class RuleStore(ABC):
    """Persistent doors and access rules."""

    @abstractmethod
    async def get_door(self, tenant_id: str, door_id: str) -> Optional[Door]:
        """Return the door if it exists for the tenant."""

    @abstractmethod
    async def list_doors(self, tenant_id: str) -> List[Door]:
        """Return every door of the tenant."""

    @abstractmethod
    async def get_active_rules(self, tenant_id: str, door_id: str) -> List[AccessRule]:
        """Return the active candidate rules for a door."""

    @abstractmethod
    async def list_rules(self, tenant_id: str, door_id: str) -> List[AccessRule]:
        """Return all rules for a door, active or not."""

    @abstractmethod
    async def get_rule(self, tenant_id: str, rule_id: str) -> Optional[AccessRule]:
        """Return one rule."""

    @abstractmethod
    async def save_rule(self, rule: AccessRule) -> None:
        """Insert or update a rule."""

    @abstractmethod
    async def delete_rule(self, tenant_id: str, rule_id: str) -> bool:
        """Delete a rule, returning whether it existed."""

    @abstractmethod
    async def save_door(self, door: Door) -> None:
        """Insert or update a door."""

    async def health_check(self) -> bool:
        return True


class AccessLogSink(ABC):
    """Append-only store of access decisions."""

    @abstractmethod
    async def append_access_log(self, entry: AccessLogEntry) -> None:
        """Persist one entry; raise on failure."""

    @abstractmethod
    async def query_access_logs(
        self,
        tenant_id: str,
        filters: AccessLogFilters,
        limit: int,
        offset: int
    ) -> Tuple[List[AccessLogEntry], int]:
        """Return matching entries newest first, plus the total count."""

    @abstractmethod
    async def scan_access_logs(
        self,
        tenant_id: str,
        filters: AccessLogFilters,
        limit: int,
        after: Optional[LogCursor] = None
    ) -> List[AccessLogEntry]:
        """Return up to ``limit`` entries ordered by (timestamp, entry_id) descending,
        starting strictly below ``after``.

        Entries appended while a scan is in progress never shift the pages
        still to be read.
        """

    @abstractmethod
    async def summarize_access_logs(
        self,
        tenant_id: str,
        filters: AccessLogFilters,
        top_doors: int = 10
    ) -> AccessLogSummary:
        """Aggregate counts for matching entries in one consistent read."""

    async def health_check(self) -> bool:
        return True


async def call_collaborator(name: str, awaitable: Awaitable[T], timeout: float) -> T:
    """Await a collaborator call with a deadline.

    Any failure or timeout is raised as ``CollaboratorUnavailableError`` so
    callers have a single fail-closed path.
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except CollaboratorUnavailableError:
        raise
    except asyncio.TimeoutError as e:
        raise CollaboratorUnavailableError(name, f"timed out after {timeout}s") from e
    except Exception as e:
        raise CollaboratorUnavailableError(name, str(e) or type(e).__name__) from e
