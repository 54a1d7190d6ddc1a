"""
In-process collaborators for local runs and tests.
"""

import dataclasses
from collections import Counter
from typing import Dict, List, Optional, Tuple

from shared.logging import get_logger
from ..context.resolver import UserDirectory
from ..rules.models import (
    AccessLogEntry, AccessMethod, AccessResult, AccessRule, Door, UserContext, ensure_aware
)
from .base import AccessLogFilters, AccessLogSink, AccessLogSummary, LogCursor, RuleStore


class InMemoryRuleStore(RuleStore):
    """Doors and rules held in dictionaries."""

    def __init__(self):
        self.logger = get_logger("door_access.persistence.memory")
        self.doors: Dict[Tuple[str, str], Door] = {}
        self.rules: Dict[str, AccessRule] = {}

    async def get_door(self, tenant_id: str, door_id: str) -> Optional[Door]:
        return self.doors.get((tenant_id, door_id))

    async def list_doors(self, tenant_id: str) -> List[Door]:
        doors = [door for (tenant, _), door in self.doors.items() if tenant == tenant_id]
        doors.sort(key=lambda d: (d.name, d.door_id))
        return doors

    async def get_active_rules(self, tenant_id: str, door_id: str) -> List[AccessRule]:
        return [
            dataclasses.replace(rule) for rule in self.rules.values()
            if rule.tenant_id == tenant_id and rule.door_id == door_id and rule.active
        ]

    async def list_rules(self, tenant_id: str, door_id: str) -> List[AccessRule]:
        rules = [
            rule for rule in self.rules.values()
            if rule.tenant_id == tenant_id and rule.door_id == door_id
        ]
        rules.sort(key=lambda r: (-r.priority, ensure_aware(r.created_at)))
        return rules

    async def get_rule(self, tenant_id: str, rule_id: str) -> Optional[AccessRule]:
        rule = self.rules.get(rule_id)
        if rule is None or rule.tenant_id != tenant_id:
            return None
        return dataclasses.replace(rule)

    async def save_rule(self, rule: AccessRule) -> None:
        self.rules[rule.rule_id] = rule
        self.logger.info("Rule saved", rule_id=rule.rule_id, name=rule.name)

    async def delete_rule(self, tenant_id: str, rule_id: str) -> bool:
        if await self.get_rule(tenant_id, rule_id) is None:
            return False
        del self.rules[rule_id]
        self.logger.info("Rule deleted", rule_id=rule_id)
        return True

    async def save_door(self, door: Door) -> None:
        self.doors[(door.tenant_id, door.door_id)] = door


class InMemoryAccessLogSink(AccessLogSink):
    """Append-only list of access log entries."""

    def __init__(self):
        self.entries: List[AccessLogEntry] = []

    async def append_access_log(self, entry: AccessLogEntry) -> None:
        self.entries.append(entry)

    async def query_access_logs(
        self,
        tenant_id: str,
        filters: AccessLogFilters,
        limit: int,
        offset: int
    ) -> Tuple[List[AccessLogEntry], int]:
        matching = self._select(tenant_id, filters)
        return matching[offset:offset + limit], len(matching)

    async def scan_access_logs(
        self,
        tenant_id: str,
        filters: AccessLogFilters,
        limit: int,
        after: Optional[LogCursor] = None
    ) -> List[AccessLogEntry]:
        matching = self._select(tenant_id, filters)
        if after is not None:
            cursor = (ensure_aware(after[0]), after[1])
            matching = [e for e in matching if _sort_key(e) < cursor]
        return matching[:limit]

    async def summarize_access_logs(
        self,
        tenant_id: str,
        filters: AccessLogFilters,
        top_doors: int = 10
    ) -> AccessLogSummary:
        matching = self._select(tenant_id, filters)
        by_door = Counter(e.door_id for e in matching)
        return AccessLogSummary(
            total=len(matching),
            granted=sum(1 for e in matching if e.granted),
            unique_users=len({e.user_id for e in matching if e.user_id}),
            by_result=dict(Counter(AccessResult(e.result).value for e in matching)),
            by_method=dict(Counter(AccessMethod(e.access_method).value for e in matching)),
            top_doors=sorted(by_door.items(), key=lambda item: (-item[1], item[0]))[:top_doors],
        )

    def _select(self, tenant_id: str, filters: AccessLogFilters) -> List[AccessLogEntry]:
        matching = [e for e in self.entries if e.tenant_id == tenant_id and _matches(e, filters)]
        matching.sort(key=_sort_key, reverse=True)
        return matching


def _sort_key(entry: AccessLogEntry):
    return ensure_aware(entry.timestamp), entry.entry_id


def _matches(entry: AccessLogEntry, filters: AccessLogFilters) -> bool:
    if filters.door_id and entry.door_id != filters.door_id:
        return False
    if filters.user_id and entry.user_id != filters.user_id:
        return False
    if filters.granted is not None and entry.granted != filters.granted:
        return False
    moment = ensure_aware(entry.timestamp)
    if filters.start and moment < ensure_aware(filters.start):
        return False
    if filters.end and moment > ensure_aware(filters.end):
        return False
    return True


class InMemoryUserDirectory(UserDirectory):
    """User contexts keyed by (tenant, user)."""

    def __init__(self):
        self.users: Dict[Tuple[str, str], UserContext] = {}

    def add_user(self, tenant_id: str, user: UserContext) -> None:
        self.users[(tenant_id, user.user_id)] = user

    async def get_user_context(self, tenant_id: str, user_id: str) -> Optional[UserContext]:
        return self.users.get((tenant_id, user_id))
