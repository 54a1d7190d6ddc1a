"""
Door Access service for the Door Access Layer.
"""

import dataclasses
import uuid
from datetime import datetime
from typing import Optional

from fastapi import Query, Response

from shared.base_service import BaseService
from shared.config import ServiceConfig, get_config
from shared.errors import NotFoundError

from .audit.logger import AccessLogAnalytics
from .context.client import HttpUserDirectory
from .context.resolver import UserDirectory
from .persistence.base import AccessLogFilters, AccessLogSink, RuleStore
from .persistence.memory import InMemoryAccessLogSink, InMemoryRuleStore, InMemoryUserDirectory
from .persistence.postgres import PostgreSQLPersistence
from .rules.engine import AccessEngine
from .rules.matcher import validate_rule
from .rules.models import (
    AccessRule, ProximityReading, TimeSlot, utcnow,
    EvaluateRequest, EvaluateResponse, RuleCreateRequest, RuleUpdateRequest,
    RuleResponse, RuleListResponse, MainEntranceRequest,
    AccessLogResponse, AccessLogListResponse, AccessibleDoorResponse, AccessibleDoorListResponse
)
from .rules.provisioning import set_main_entrance

SERVICE_NAME = "door_access"
SERVICE_PORT = 8030


class DoorAccessService(BaseService):
    """Door access service implementation."""

    def __init__(
        self,
        config: Optional[ServiceConfig] = None,
        rule_store: Optional[RuleStore] = None,
        log_sink: Optional[AccessLogSink] = None,
        user_directory: Optional[UserDirectory] = None
    ):
        super().__init__(SERVICE_NAME, SERVICE_PORT, config)

        self.persistence: Optional[PostgreSQLPersistence] = None
        if rule_store is None or log_sink is None:
            if self.config.store_backend == "memory":
                rule_store = rule_store or InMemoryRuleStore()
                log_sink = log_sink or InMemoryAccessLogSink()
            else:
                self.persistence = PostgreSQLPersistence(
                    self.config.postgres_dsn,
                    command_timeout=self.config.collaborator_timeout_seconds
                )
                rule_store = rule_store or self.persistence
                log_sink = log_sink or self.persistence

        if user_directory is None:
            if self.config.store_backend == "memory":
                user_directory = InMemoryUserDirectory()
            else:
                user_directory = HttpUserDirectory(
                    self.config.user_service_url,
                    timeout=self.config.collaborator_timeout_seconds,
                    failure_threshold=self.config.user_service_failure_threshold,
                    recovery_timeout=self.config.user_service_recovery_timeout
                )

        self.rule_store = rule_store
        self.log_sink = log_sink
        self.user_directory = user_directory

        self.engine = AccessEngine(
            rule_store, log_sink, user_directory, config=self.config, metrics=self.metrics
        )
        self.analytics = AccessLogAnalytics(
            log_sink,
            timeout=self.config.collaborator_timeout_seconds,
            export_limit=self.config.log_export_limit
        )

        self._setup_door_access_routes()

    def _setup_door_access_routes(self):
        """Set up door access routes."""

        @self.app.get("/")
        async def root():
            """Root endpoint."""
            return {
                "service": SERVICE_NAME,
                "message": "Door Access Layer - Door Access Service",
                "version": "1.0.0",
                "capabilities": ["access_evaluation", "accessible_doors", "rule_management", "access_logs"]
            }

        @self.app.post("/doors/{door_id}/evaluate", response_model=EvaluateResponse)
        async def evaluate_access(door_id: str, request: EvaluateRequest, response: Response):
            """Evaluate one access attempt. Decisions are never cached."""
            reading = None
            if request.proximity is not None:
                reading = ProximityReading(
                    signal_strength=request.proximity.signal_strength,
                    beacon_id=request.proximity.beacon_id
                )

            result = await self.engine.evaluate(
                request.tenant_id,
                door_id,
                request.user_id,
                timestamp=request.timestamp,
                proximity_reading=reading
            )

            response.headers["Cache-Control"] = "no-store"
            return EvaluateResponse(
                result=result.result,
                granted=result.granted,
                reason=result.reason,
                matched_rule_id=result.matched_rule_id,
                matched_rule_name=result.matched_rule_name,
                warnings=result.warnings,
                unlock_duration_seconds=result.unlock_duration_seconds,
                log_entry_id=result.log_entry_id
            )

        @self.app.get("/users/{user_id}/accessible-doors", response_model=AccessibleDoorListResponse)
        async def accessible_doors(
            user_id: str,
            response: Response,
            tenant_id: str = Query(..., description="Tenant ID"),
            timestamp: Optional[datetime] = Query(None, description="Moment to check, defaults to now")
        ):
            """List the active doors the user's rules grant. Nothing is logged or unlocked."""
            moment = timestamp or utcnow()
            doors = await self.engine.accessible_doors(tenant_id, user_id, timestamp=moment)
            response.headers["Cache-Control"] = "no-store"
            return AccessibleDoorListResponse(
                user_id=user_id,
                timestamp=moment,
                doors=[AccessibleDoorResponse.from_accessible(d) for d in doors],
                total=len(doors)
            )

        @self.app.get("/doors/{door_id}/rules", response_model=RuleListResponse)
        async def list_rules(door_id: str, tenant_id: str = Query(..., description="Tenant ID")):
            """List all rules of a door."""
            await self._require_door(tenant_id, door_id)
            rules = await self.rule_store.list_rules(tenant_id, door_id)
            return RuleListResponse(
                rules=[RuleResponse.from_rule(rule) for rule in rules],
                total=len(rules)
            )

        @self.app.post("/doors/{door_id}/rules", response_model=RuleResponse, status_code=201)
        async def create_rule(door_id: str, request: RuleCreateRequest):
            """Create a new rule for a door."""
            await self._require_door(request.tenant_id, door_id)

            now = utcnow()
            data = request.model_dump(exclude={"time_slots"})
            rule = AccessRule(
                rule_id=str(uuid.uuid4()),
                door_id=door_id,
                time_slots=[TimeSlot(**slot.model_dump()) for slot in request.time_slots],
                created_at=now,
                updated_at=now,
                **data
            )
            validate_rule(rule)

            await self.rule_store.save_rule(rule)
            self.logger.info("Rule created", rule_id=rule.rule_id, name=rule.name, door_id=door_id)
            return RuleResponse.from_rule(rule)

        @self.app.put("/rules/{rule_id}", response_model=RuleResponse)
        async def update_rule(rule_id: str, request: RuleUpdateRequest):
            """Update an existing rule."""
            rule = await self.rule_store.get_rule(request.tenant_id, rule_id)
            if rule is None:
                raise NotFoundError("Rule not found", details={"rule_id": rule_id})

            changes = request.model_dump(exclude_unset=True, exclude={"tenant_id", "time_slots"})
            changes = {
                name: value for name, value in changes.items()
                if value is not None or name in ("description", "valid_from", "valid_until")
            }
            if request.time_slots is not None:
                changes["time_slots"] = [TimeSlot(**slot.model_dump()) for slot in request.time_slots]

            # The stored rule stays untouched until the update validates.
            rule = dataclasses.replace(rule, updated_at=utcnow(), **changes)
            validate_rule(rule)

            await self.rule_store.save_rule(rule)
            self.logger.info("Rule updated", rule_id=rule_id, name=rule.name)
            return RuleResponse.from_rule(rule)

        @self.app.delete("/rules/{rule_id}")
        async def delete_rule(rule_id: str, tenant_id: str = Query(..., description="Tenant ID")):
            """Delete a rule."""
            if not await self.rule_store.delete_rule(tenant_id, rule_id):
                raise NotFoundError("Rule not found", details={"rule_id": rule_id})
            return {"success": True, "message": "Rule deleted successfully"}

        @self.app.post("/doors/{door_id}/main-entrance")
        async def mark_main_entrance(door_id: str, request: MainEntranceRequest):
            """Mark or unmark a door as the main entrance."""
            result = await set_main_entrance(
                self.rule_store, request.tenant_id, door_id, request.is_main_entrance
            )
            return {
                "door_id": result.door_id,
                "is_main_entrance": result.is_main_entrance,
                "rule_id": result.rule_id,
                "message": result.message
            }

        @self.app.get("/access-logs", response_model=AccessLogListResponse)
        async def list_access_logs(
            tenant_id: str = Query(..., description="Tenant ID"),
            door_id: Optional[str] = Query(None, description="Filter by door"),
            user_id: Optional[str] = Query(None, description="Filter by user"),
            granted: Optional[bool] = Query(None, description="Filter by outcome"),
            start: Optional[datetime] = Query(None, description="Earliest timestamp"),
            end: Optional[datetime] = Query(None, description="Latest timestamp"),
            limit: int = Query(50, ge=1, le=500, description="Page size"),
            offset: int = Query(0, ge=0, description="Entries to skip")
        ):
            """Query the access log, newest first."""
            filters = AccessLogFilters(
                door_id=door_id, user_id=user_id, granted=granted, start=start, end=end
            )
            entries, total = await self.analytics.query(tenant_id, filters, limit, offset)
            return AccessLogListResponse(
                logs=[AccessLogResponse.from_entry(e) for e in entries],
                total=total,
                limit=limit,
                offset=offset,
                has_more=offset + len(entries) < total
            )

        @self.app.get("/access-logs/stats")
        async def access_log_stats(
            tenant_id: str = Query(..., description="Tenant ID"),
            door_id: Optional[str] = Query(None, description="Filter by door"),
            start: Optional[datetime] = Query(None, description="Earliest timestamp"),
            end: Optional[datetime] = Query(None, description="Latest timestamp")
        ):
            """Aggregate access statistics."""
            return await self.analytics.stats(tenant_id, start, end, door_id=door_id)

        @self.app.get("/doors/{door_id}/stats")
        async def door_access_stats(
            door_id: str,
            tenant_id: str = Query(..., description="Tenant ID"),
            start: Optional[datetime] = Query(None, description="Earliest timestamp"),
            end: Optional[datetime] = Query(None, description="Latest timestamp")
        ):
            """Access statistics for one door."""
            await self._require_door(tenant_id, door_id)
            return await self.analytics.stats(tenant_id, start, end, door_id=door_id)

        @self.app.get("/access-logs/suspicious")
        async def suspicious_activity(
            tenant_id: str = Query(..., description="Tenant ID"),
            window_minutes: Optional[int] = Query(None, ge=1, description="Look-back window"),
            threshold: Optional[int] = Query(None, ge=1, description="Denied attempts to flag")
        ):
            """Users with repeated denied attempts."""
            window = window_minutes or self.config.suspicious_window_minutes
            users = await self.analytics.suspicious_activity(
                tenant_id,
                window_minutes=window,
                threshold=threshold or self.config.suspicious_threshold
            )
            return {"window_minutes": window, "users": users, "total": len(users)}

        @self.app.get("/access-logs/export")
        async def export_access_logs(
            tenant_id: str = Query(..., description="Tenant ID"),
            door_id: Optional[str] = Query(None, description="Filter by door"),
            user_id: Optional[str] = Query(None, description="Filter by user"),
            granted: Optional[bool] = Query(None, description="Filter by outcome"),
            start: Optional[datetime] = Query(None, description="Earliest timestamp"),
            end: Optional[datetime] = Query(None, description="Latest timestamp")
        ):
            """Export the access log as CSV."""
            filters = AccessLogFilters(
                door_id=door_id, user_id=user_id, granted=granted, start=start, end=end
            )
            content = await self.analytics.export_csv(tenant_id, filters)
            return Response(
                content=content,
                media_type="text/csv",
                headers={"Content-Disposition": 'attachment; filename="access-logs.csv"'}
            )

    async def _require_door(self, tenant_id: str, door_id: str):
        door = await self.rule_store.get_door(tenant_id, door_id)
        if door is None:
            raise NotFoundError("Door not found", details={"door_id": door_id})
        return door

    async def _check_dependencies(self):
        """Check door access service dependencies."""
        dependencies = {}

        checks = {
            "rule_store": self.rule_store,
            "access_log": self.log_sink,
            "user_directory": self.user_directory,
        }
        for name, collaborator in checks.items():
            try:
                dependencies[name] = "ok" if await collaborator.health_check() else "error"
            except Exception:
                dependencies[name] = "error"

        return dependencies

    async def start(self):
        """Start door access service components."""
        if self.persistence:
            await self.persistence.start()
        self.logger.info("Door access service started", store_backend=self.config.store_backend)

    async def stop(self):
        """Stop door access service components."""
        if self.persistence:
            await self.persistence.stop()
        self.logger.info("Door access service stopped")


def create_app(config: Optional[ServiceConfig] = None, **collaborators):
    """Create door access service application."""
    service = DoorAccessService(config=config, **collaborators)
    return service.app


if __name__ == "__main__":
    service = DoorAccessService(get_config(SERVICE_NAME, SERVICE_PORT))
    service.run()
