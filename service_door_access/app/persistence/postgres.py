"""
PostgreSQL persistence layer for the Door Access Service.
"""

import json
from typing import Any, Dict, List, Optional, Tuple

import asyncpg

from shared.logging import get_logger
from shared.errors import AccessLayerException
from ..rules.models import (
    AccessLogEntry, AccessMethod, AccessResult, AccessRule, Door, DoorStatus,
    ProximityConfig, RuleType, TimeSlot
)
from .base import AccessLogFilters, AccessLogSink, AccessLogSummary, LogCursor, RuleStore


SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS doors (
        door_id VARCHAR(255) PRIMARY KEY,
        tenant_id VARCHAR(255) NOT NULL,
        name VARCHAR(255) NOT NULL,
        location TEXT,
        status VARCHAR(20) NOT NULL DEFAULT 'ACTIVE',
        is_online BOOLEAN NOT NULL DEFAULT TRUE,
        requires_credential BOOLEAN NOT NULL DEFAULT TRUE,
        manual_override_allowed BOOLEAN NOT NULL DEFAULT FALSE,
        unlock_duration_seconds INTEGER NOT NULL DEFAULT 5,
        proximity_enabled BOOLEAN NOT NULL DEFAULT FALSE,
        beacon_id VARCHAR(255),
        minimum_signal_strength INTEGER,
        is_main_entrance BOOLEAN NOT NULL DEFAULT FALSE,
        timezone VARCHAR(64)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS access_rules (
        rule_id VARCHAR(255) PRIMARY KEY,
        tenant_id VARCHAR(255) NOT NULL,
        door_id VARCHAR(255) NOT NULL REFERENCES doors(door_id) ON DELETE CASCADE,
        name VARCHAR(255) NOT NULL,
        description TEXT,
        type VARCHAR(20) NOT NULL,
        priority INTEGER NOT NULL DEFAULT 0,
        active BOOLEAN NOT NULL DEFAULT TRUE,
        allowed_roles TEXT[] NOT NULL DEFAULT '{}',
        allowed_membership_statuses TEXT[] NOT NULL DEFAULT '{}',
        allowed_user_ids TEXT[] NOT NULL DEFAULT '{}',
        time_slots JSONB NOT NULL DEFAULT '[]',
        valid_from TIMESTAMP WITH TIME ZONE,
        valid_until TIMESTAMP WITH TIME ZONE,
        created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW()
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS access_logs (
        entry_id VARCHAR(255) PRIMARY KEY,
        tenant_id VARCHAR(255) NOT NULL,
        door_id VARCHAR(255) NOT NULL,
        user_id VARCHAR(255),
        timestamp TIMESTAMP WITH TIME ZONE NOT NULL,
        result VARCHAR(32) NOT NULL,
        access_method VARCHAR(20) NOT NULL,
        reason TEXT,
        matched_rule_id VARCHAR(255),
        matched_rule_name VARCHAR(255),
        context JSONB NOT NULL DEFAULT '{}'
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_access_rules_door ON access_rules(tenant_id, door_id, active);",
    "CREATE INDEX IF NOT EXISTS idx_access_logs_tenant_time ON access_logs(tenant_id, timestamp DESC, entry_id DESC);",
    "CREATE INDEX IF NOT EXISTS idx_access_logs_door ON access_logs(door_id);",
    "CREATE INDEX IF NOT EXISTS idx_access_logs_user ON access_logs(user_id);",
]


async def _init_connection(conn):
    await conn.set_type_codec("jsonb", encoder=json.dumps, decoder=json.loads, schema="pg_catalog")


class PostgreSQLPersistence(RuleStore, AccessLogSink):
    """Doors, rules and the access log in PostgreSQL."""

    def __init__(self, dsn: str, command_timeout: float = 5.0):
        self.dsn = dsn
        self.command_timeout = command_timeout
        self.logger = get_logger("door_access.persistence.postgres")
        self.pool: Optional[asyncpg.Pool] = None

    async def start(self):
        """Start the persistence layer."""
        try:
            self.pool = await asyncpg.create_pool(
                self.dsn,
                min_size=2,
                max_size=10,
                command_timeout=self.command_timeout,
                init=_init_connection
            )
            async with self.pool.acquire() as conn:
                for statement in SCHEMA:
                    await conn.execute(statement)

            self.logger.info("PostgreSQL persistence started")

        except Exception as e:
            self.logger.error("Failed to start PostgreSQL persistence", error=str(e))
            raise AccessLayerException("POSTGRES_START_FAILED", str(e))

    async def stop(self):
        """Stop the persistence layer."""
        if self.pool:
            await self.pool.close()
            self.logger.info("PostgreSQL persistence stopped")

    # Doors

    async def get_door(self, tenant_id: str, door_id: str) -> Optional[Door]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM doors WHERE door_id = $1 AND tenant_id = $2",
                door_id, tenant_id
            )
        return self._row_to_door(row) if row else None

    async def list_doors(self, tenant_id: str) -> List[Door]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT * FROM doors WHERE tenant_id = $1 ORDER BY name, door_id", tenant_id
            )
        return [self._row_to_door(row) for row in rows]

    async def save_door(self, door: Door) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute("""
                INSERT INTO doors (
                    door_id, tenant_id, name, location, status, is_online,
                    requires_credential, manual_override_allowed, unlock_duration_seconds,
                    proximity_enabled, beacon_id, minimum_signal_strength,
                    is_main_entrance, timezone
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14)
                ON CONFLICT (door_id) DO UPDATE SET
                    name = EXCLUDED.name,
                    location = EXCLUDED.location,
                    status = EXCLUDED.status,
                    is_online = EXCLUDED.is_online,
                    requires_credential = EXCLUDED.requires_credential,
                    manual_override_allowed = EXCLUDED.manual_override_allowed,
                    unlock_duration_seconds = EXCLUDED.unlock_duration_seconds,
                    proximity_enabled = EXCLUDED.proximity_enabled,
                    beacon_id = EXCLUDED.beacon_id,
                    minimum_signal_strength = EXCLUDED.minimum_signal_strength,
                    is_main_entrance = EXCLUDED.is_main_entrance,
                    timezone = EXCLUDED.timezone
                WHERE doors.tenant_id = EXCLUDED.tenant_id
            """,
                door.door_id, door.tenant_id, door.name, door.location, DoorStatus(door.status).value,
                door.is_online, door.requires_credential, door.manual_override_allowed,
                door.unlock_duration_seconds, door.proximity.enabled, door.proximity.beacon_id,
                door.proximity.minimum_signal_strength, door.is_main_entrance, door.timezone
            )
        self.logger.info("Door saved", door_id=door.door_id, tenant_id=door.tenant_id)

    # Rules

    async def get_active_rules(self, tenant_id: str, door_id: str) -> List[AccessRule]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch("""
                SELECT * FROM access_rules
                WHERE tenant_id = $1 AND door_id = $2 AND active = TRUE
                ORDER BY priority DESC, created_at ASC
            """, tenant_id, door_id)
        return [self._row_to_rule(row) for row in rows]

    async def list_rules(self, tenant_id: str, door_id: str) -> List[AccessRule]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch("""
                SELECT * FROM access_rules
                WHERE tenant_id = $1 AND door_id = $2
                ORDER BY priority DESC, created_at ASC
            """, tenant_id, door_id)
        return [self._row_to_rule(row) for row in rows]

    async def get_rule(self, tenant_id: str, rule_id: str) -> Optional[AccessRule]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM access_rules WHERE rule_id = $1 AND tenant_id = $2",
                rule_id, tenant_id
            )
        return self._row_to_rule(row) if row else None

    async def save_rule(self, rule: AccessRule) -> None:
        time_slots = [
            {"day_of_week": s.day_of_week, "start_time": s.start_time, "end_time": s.end_time}
            for s in rule.time_slots
        ]
        async with self.pool.acquire() as conn:
            await conn.execute("""
                INSERT INTO access_rules (
                    rule_id, tenant_id, door_id, name, description, type, priority, active,
                    allowed_roles, allowed_membership_statuses, allowed_user_ids, time_slots,
                    valid_from, valid_until, created_at, updated_at
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15, $16)
                ON CONFLICT (rule_id) DO UPDATE SET
                    name = EXCLUDED.name,
                    description = EXCLUDED.description,
                    type = EXCLUDED.type,
                    priority = EXCLUDED.priority,
                    active = EXCLUDED.active,
                    allowed_roles = EXCLUDED.allowed_roles,
                    allowed_membership_statuses = EXCLUDED.allowed_membership_statuses,
                    allowed_user_ids = EXCLUDED.allowed_user_ids,
                    time_slots = EXCLUDED.time_slots,
                    valid_from = EXCLUDED.valid_from,
                    valid_until = EXCLUDED.valid_until,
                    updated_at = EXCLUDED.updated_at
                WHERE access_rules.tenant_id = EXCLUDED.tenant_id
            """,
                rule.rule_id, rule.tenant_id, rule.door_id, rule.name, rule.description,
                RuleType(rule.type).value, rule.priority, rule.active,
                list(rule.allowed_roles), list(rule.allowed_membership_statuses),
                list(rule.allowed_user_ids), time_slots,
                rule.valid_from, rule.valid_until, rule.created_at, rule.updated_at
            )
        self.logger.info("Rule saved", rule_id=rule.rule_id, name=rule.name)

    async def delete_rule(self, tenant_id: str, rule_id: str) -> bool:
        async with self.pool.acquire() as conn:
            result = await conn.execute(
                "DELETE FROM access_rules WHERE rule_id = $1 AND tenant_id = $2",
                rule_id, tenant_id
            )
        if result == "DELETE 1":
            self.logger.info("Rule deleted", rule_id=rule_id)
            return True
        self.logger.warning("Rule not found for deletion", rule_id=rule_id)
        return False

    # Access log

    async def append_access_log(self, entry: AccessLogEntry) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute("""
                INSERT INTO access_logs (
                    entry_id, tenant_id, door_id, user_id, timestamp, result,
                    access_method, reason, matched_rule_id, matched_rule_name, context
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
            """,
                entry.entry_id, entry.tenant_id, entry.door_id, entry.user_id, entry.timestamp,
                AccessResult(entry.result).value, AccessMethod(entry.access_method).value,
                entry.reason, entry.matched_rule_id, entry.matched_rule_name, entry.context
            )

    async def query_access_logs(
        self,
        tenant_id: str,
        filters: AccessLogFilters,
        limit: int,
        offset: int
    ) -> Tuple[List[AccessLogEntry], int]:
        where, params = _log_where(tenant_id, filters)
        async with self.pool.acquire() as conn:
            total = await conn.fetchval(f"SELECT COUNT(*) FROM access_logs WHERE {where}", *params)
            rows = await conn.fetch(
                f"SELECT * FROM access_logs WHERE {where} "
                f"ORDER BY timestamp DESC, entry_id DESC "
                f"LIMIT ${len(params) + 1} OFFSET ${len(params) + 2}",
                *params, limit, offset
            )
        return [self._row_to_entry(row) for row in rows], total or 0

    async def scan_access_logs(
        self,
        tenant_id: str,
        filters: AccessLogFilters,
        limit: int,
        after: Optional[LogCursor] = None
    ) -> List[AccessLogEntry]:
        where, params = _log_where(tenant_id, filters)
        if after is not None:
            params.extend(after)
            where += f" AND (timestamp, entry_id) < (${len(params) - 1}, ${len(params)})"
        params.append(limit)

        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                f"SELECT * FROM access_logs WHERE {where} "
                f"ORDER BY timestamp DESC, entry_id DESC LIMIT ${len(params)}",
                *params
            )
        return [self._row_to_entry(row) for row in rows]

    async def summarize_access_logs(
        self,
        tenant_id: str,
        filters: AccessLogFilters,
        top_doors: int = 10
    ) -> AccessLogSummary:
        where, params = _log_where(tenant_id, filters)
        extra = f"${len(params) + 1}"

        async with self.pool.acquire() as conn:
            async with conn.transaction(isolation="repeatable_read", readonly=True):
                totals = await conn.fetchrow(
                    f"SELECT COUNT(*) AS total, "
                    f"COUNT(*) FILTER (WHERE result = {extra}) AS granted, "
                    f"COUNT(DISTINCT user_id) AS unique_users "
                    f"FROM access_logs WHERE {where}",
                    *params, AccessResult.GRANTED.value
                )
                by_result = await conn.fetch(
                    f"SELECT result AS key, COUNT(*) AS count FROM access_logs "
                    f"WHERE {where} GROUP BY result",
                    *params
                )
                by_method = await conn.fetch(
                    f"SELECT access_method AS key, COUNT(*) AS count FROM access_logs "
                    f"WHERE {where} GROUP BY access_method",
                    *params
                )
                doors = await conn.fetch(
                    f"SELECT door_id AS key, COUNT(*) AS count FROM access_logs "
                    f"WHERE {where} GROUP BY door_id "
                    f"ORDER BY count DESC, door_id LIMIT {extra}",
                    *params, top_doors
                )

        return AccessLogSummary(
            total=totals["total"] or 0,
            granted=totals["granted"] or 0,
            unique_users=totals["unique_users"] or 0,
            by_result={row["key"]: row["count"] for row in by_result},
            by_method={row["key"]: row["count"] for row in by_method},
            top_doors=[(row["key"], row["count"]) for row in doors],
        )

    async def health_check(self) -> bool:
        """Check database health."""
        try:
            async with self.pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
                return True
        except Exception:
            return False

    # Row mapping

    def _row_to_door(self, row) -> Door:
        return Door(
            door_id=row['door_id'],
            tenant_id=row['tenant_id'],
            name=row['name'],
            location=row['location'],
            status=DoorStatus(row['status']),
            is_online=row['is_online'],
            requires_credential=row['requires_credential'],
            manual_override_allowed=row['manual_override_allowed'],
            unlock_duration_seconds=row['unlock_duration_seconds'],
            proximity=ProximityConfig(
                enabled=row['proximity_enabled'],
                beacon_id=row['beacon_id'],
                minimum_signal_strength=row['minimum_signal_strength'],
            ),
            is_main_entrance=row['is_main_entrance'],
            timezone=row['timezone'],
        )

    def _row_to_rule(self, row) -> AccessRule:
        # Unknown types are kept as raw strings; the matcher skips them.
        try:
            rule_type = RuleType(row['type'])
        except ValueError:
            rule_type = row['type']

        time_slots = []
        for slot in row['time_slots'] or []:
            time_slots.append(TimeSlot(
                day_of_week=slot.get('day_of_week'),
                start_time=slot.get('start_time', ''),
                end_time=slot.get('end_time', ''),
            ))

        return AccessRule(
            rule_id=row['rule_id'],
            tenant_id=row['tenant_id'],
            door_id=row['door_id'],
            name=row['name'],
            description=row['description'],
            type=rule_type,
            priority=row['priority'],
            active=row['active'],
            allowed_roles=list(row['allowed_roles'] or []),
            allowed_membership_statuses=list(row['allowed_membership_statuses'] or []),
            allowed_user_ids=list(row['allowed_user_ids'] or []),
            time_slots=time_slots,
            valid_from=row['valid_from'],
            valid_until=row['valid_until'],
            created_at=row['created_at'],
            updated_at=row['updated_at'],
        )

    def _row_to_entry(self, row) -> AccessLogEntry:
        context: Dict[str, Any] = row['context'] or {}
        return AccessLogEntry(
            entry_id=row['entry_id'],
            tenant_id=row['tenant_id'],
            door_id=row['door_id'],
            user_id=row['user_id'],
            timestamp=row['timestamp'],
            result=AccessResult(row['result']),
            access_method=AccessMethod(row['access_method']),
            reason=row['reason'],
            matched_rule_id=row['matched_rule_id'],
            matched_rule_name=row['matched_rule_name'],
            context=context,
        )


def _log_where(tenant_id: str, filters: AccessLogFilters) -> Tuple[str, List[Any]]:
    """WHERE clause and positional parameters for an access log filter."""
    clauses = ["tenant_id = $1"]
    params: List[Any] = [tenant_id]

    def add(clause: str, value: Any):
        params.append(value)
        clauses.append(clause.format(f"${len(params)}"))

    if filters.door_id:
        add("door_id = {}", filters.door_id)
    if filters.user_id:
        add("user_id = {}", filters.user_id)
    if filters.granted is True:
        add("result = {}", AccessResult.GRANTED.value)
    elif filters.granted is False:
        add("result <> {}", AccessResult.GRANTED.value)
    if filters.start:
        add("timestamp >= {}", filters.start)
    if filters.end:
        add("timestamp <= {}", filters.end)

    return " AND ".join(clauses), params
