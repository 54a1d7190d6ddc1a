"""
Access evaluation engine for the Door Access Service.

``AccessEngine.evaluate`` drives one request through

    PENDING -> DOOR_CHECKED -> PROXIMITY_CHECKED -> RULES_MATCHED -> DECIDED -> LOGGED

A failed door or proximity check jumps straight to DECIDED with a deny.
Every path ends in LOGGED, and every failure to reach a collaborator ends
in DENIED_SYSTEM_ERROR.
"""

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Set

from shared.config import BaseConfig
from shared.errors import AuditWriteError, CollaboratorUnavailableError, ConfigurationError
from shared.logging import get_logger, set_access_context
from shared.metrics import MetricsCollector
from ..audit.logger import AuditLogger
from ..context.resolver import ContextResolver, UnknownUserError, UserDirectory
from ..persistence.base import AccessLogSink, RuleStore, call_collaborator
from ..proximity.gate import ProximityGate
from .matcher import RuleMatcher, inspect_rule
from .models import (
    AccessMethod, AccessResult, AccessRule, AccessibleDoor, Decision, DecisionContext, Door,
    DoorStatus, EvaluationResult, EvaluationState, ProximityReading, ensure_aware, utcnow
)
from .resolver import DecisionResolver

SYSTEM_ERROR_REASON = "system error"
CONFIG_ERROR_REASON = "rule configuration error"
DOOR_NOT_FOUND_REASON = "door not found"
AUDIT_WARNING = "access log write failed"
AUDIT_UNAVAILABLE_REASON = "access log unavailable"


@dataclass
class EvaluationTrace:
    """Mutable record of one evaluation, stored as the audit snapshot."""
    timestamp: datetime
    states: List[EvaluationState] = field(default_factory=lambda: [EvaluationState.PENDING])
    door: Optional[Door] = None
    context: Optional[DecisionContext] = None
    proximity: Dict[str, Any] = field(default_factory=dict)
    candidate_rule_ids: List[str] = field(default_factory=list)
    matched_rule_ids: List[str] = field(default_factory=list)
    skipped_rules: List[Dict[str, Any]] = field(default_factory=list)
    error: Optional[Dict[str, Any]] = None

    def advance(self, state: EvaluationState):
        self.states.append(state)

    def fail(self, exc):
        self.error = {"code": exc.code, "message": exc.message, "details": exc.details}

    def snapshot(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "states": [s.value for s in self.states],
            "candidate_rule_ids": list(self.candidate_rule_ids),
            "matched_rule_ids": list(self.matched_rule_ids),
            "skipped_rules": list(self.skipped_rules),
        }
        if self.door is not None:
            data["door"] = {
                "status": DoorStatus(self.door.status).value,
                "is_online": self.door.is_online,
                "is_main_entrance": self.door.is_main_entrance,
            }
        if self.proximity:
            data["proximity"] = dict(self.proximity)
        if self.context is not None:
            data["context"] = self.context.snapshot()
        else:
            data["context"] = {"timestamp": self.timestamp.isoformat()}
        if self.error is not None:
            data["error"] = self.error
        return data


class AccessEngine:
    """Evaluates door access requests and audits every decision."""

    def __init__(
        self,
        rule_store: RuleStore,
        log_sink: AccessLogSink,
        user_directory: UserDirectory,
        config: Optional[BaseConfig] = None,
        metrics: Optional[MetricsCollector] = None
    ):
        self.config = config or BaseConfig()
        self.rule_store = rule_store
        self.metrics = metrics
        self.timeout = self.config.collaborator_timeout_seconds
        self.audit_failure_policy = self.config.audit_failure_policy
        self.logger = get_logger("door_access.engine")

        self.proximity_gate = ProximityGate(self.config.default_minimum_rssi)
        self.context_resolver = ContextResolver(
            user_directory, self.config.default_timezone, self.timeout
        )
        self.matcher = RuleMatcher()
        self.resolver = DecisionResolver()
        self.audit = AuditLogger(log_sink, self.timeout, metrics)
        # Writes outlive a cancelled caller; hold them until they settle.
        self._pending_writes: Set[asyncio.Future] = set()

    async def evaluate(
        self,
        tenant_id: str,
        door_id: str,
        user_id: str,
        timestamp: Optional[datetime] = None,
        proximity_reading: Optional[ProximityReading] = None
    ) -> EvaluationResult:
        """Decide whether ``user_id`` may open ``door_id`` right now.

        Never raises for a decision outcome; collaborator failures are
        reported through the result code.
        """
        start_time = time.perf_counter()
        set_access_context(user_id=user_id, tenant_id=tenant_id, door_id=door_id)

        trace = EvaluationTrace(timestamp=ensure_aware(timestamp) if timestamp else utcnow())
        decision = await self._decide(trace, tenant_id, door_id, user_id, proximity_reading)
        trace.advance(EvaluationState.DECIDED)

        access_method = AccessMethod.BLUETOOTH if proximity_reading else AccessMethod.API
        warnings: List[str] = []
        log_entry_id = None

        trace.advance(EvaluationState.LOGGED)
        write = asyncio.ensure_future(self.audit.record(
            tenant_id, door_id, user_id, trace.snapshot(), decision,
            access_method=access_method, timestamp=trace.timestamp
        ))
        self._pending_writes.add(write)
        write.add_done_callback(self._audit_write_done)
        try:
            entry = await asyncio.shield(write)
            log_entry_id = entry.entry_id
        except AuditWriteError:
            warnings.append(AUDIT_WARNING)
            if self.audit_failure_policy == "fail_closed":
                decision = Decision(
                    result=AccessResult.DENIED_SYSTEM_ERROR,
                    reason=AUDIT_UNAVAILABLE_REASON,
                )

        duration = time.perf_counter() - start_time
        result = EvaluationResult(
            result=decision.result,
            reason=decision.reason,
            matched_rule_id=decision.matched_rule_id,
            matched_rule_name=decision.matched_rule_name,
            warnings=warnings,
            unlock_duration_seconds=(
                trace.door.unlock_duration_seconds
                if decision.granted and trace.door is not None else None
            ),
            log_entry_id=log_entry_id,
            evaluation_time_ms=duration * 1000,
        )

        if self.metrics:
            self.metrics.record_decision(result.result.value, duration)

        self.logger.info(
            "Access decision",
            result=result.result.value,
            reason=result.reason,
            matched_rule_id=result.matched_rule_id,
            access_method=access_method.value,
            warnings=warnings,
            duration_ms=round(result.evaluation_time_ms, 2)
        )
        return result

    async def accessible_doors(
        self,
        tenant_id: str,
        user_id: str,
        timestamp: Optional[datetime] = None
    ) -> List[AccessibleDoor]:
        """Active doors whose rules would grant ``user_id`` at ``timestamp``.

        Proximity is not checked and nothing is written to the access log:
        this answers what a user could open, the actual unlock still goes
        through ``evaluate``. A door whose rules or timezone are misconfigured
        is left out. Collaborator failures are raised.
        """
        moment = ensure_aware(timestamp) if timestamp else utcnow()
        set_access_context(user_id=user_id, tenant_id=tenant_id)

        try:
            user = await self.context_resolver.lookup_user(tenant_id, user_id)
        except CollaboratorUnavailableError as e:
            self._count_collaborator_error(e)
            raise
        except UnknownUserError as e:
            self.logger.info("No accessible doors", user_id=user_id, reason=e.message)
            return []

        doors = await self._collaborator("rule_store", self.rule_store.list_doors(tenant_id))
        accessible = []
        for door in doors:
            if door.status != DoorStatus.ACTIVE:
                continue
            rules = await self._collaborator(
                "rule_store", self.rule_store.get_active_rules(tenant_id, door.door_id)
            )
            trace = EvaluationTrace(timestamp=moment)
            try:
                context = self.context_resolver.build(door, user, moment)
                matching = self._match_rules(trace, door, rules, context)
            except ConfigurationError as e:
                self.logger.error(
                    "Access configuration error", code=e.code, error=e.message, details=e.details
                )
                continue

            decision = self.resolver.resolve(matching)
            if decision.granted:
                accessible.append(AccessibleDoor(
                    door=door,
                    matched_rule_id=decision.matched_rule_id,
                    matched_rule_name=decision.matched_rule_name
                ))

        self.logger.info(
            "Accessible doors resolved",
            doors_checked=len(doors),
            accessible=len(accessible)
        )
        return accessible

    async def _decide(
        self,
        trace: EvaluationTrace,
        tenant_id: str,
        door_id: str,
        user_id: str,
        reading: Optional[ProximityReading]
    ) -> Decision:
        """Run the gates and rule matching, returning the unaudited decision."""
        try:
            door = await self._collaborator(
                "rule_store", self.rule_store.get_door(tenant_id, door_id)
            )
            if door is None or door.tenant_id != tenant_id:
                return Decision(result=AccessResult.DOOR_NOT_FOUND, reason=DOOR_NOT_FOUND_REASON)

            trace.door = door
            trace.advance(EvaluationState.DOOR_CHECKED)
            if door.status != DoorStatus.ACTIVE:
                return Decision(
                    result=AccessResult.DENIED_DOOR_INACTIVE,
                    reason=f"door status {DoorStatus(door.status).value}",
                )

            check = self.proximity_gate.check_proximity(door, reading)
            trace.proximity = {
                "required": door.proximity.enabled,
                "required_signal_strength": check.required_signal_strength,
                "signal_strength": reading.signal_strength if reading else None,
                "beacon_id": reading.beacon_id if reading else None,
                "passed": check.passed,
            }
            trace.advance(EvaluationState.PROXIMITY_CHECKED)
            if not check.passed:
                return Decision(result=AccessResult.DENIED_PROXIMITY, reason=check.reason)

            try:
                context = await self.context_resolver.resolve(door, user_id, trace.timestamp, reading)
            except CollaboratorUnavailableError as e:
                self._count_collaborator_error(e)
                raise
            except UnknownUserError as e:
                trace.fail(e)
                return Decision(result=AccessResult.DENIED_NO_PERMISSION, reason=e.message)
            trace.context = context

            rules = await self._collaborator(
                "rule_store", self.rule_store.get_active_rules(tenant_id, door_id)
            )
            matching = self._match_rules(trace, door, rules, context)
            trace.advance(EvaluationState.RULES_MATCHED)

            return self.resolver.resolve(matching)

        except CollaboratorUnavailableError as e:
            trace.fail(e)
            self.logger.error("Collaborator unavailable", collaborator=e.collaborator, error=e.message)
            return Decision(result=AccessResult.DENIED_SYSTEM_ERROR, reason=SYSTEM_ERROR_REASON)
        except ConfigurationError as e:
            trace.fail(e)
            self.logger.error("Access configuration error", code=e.code, error=e.message, details=e.details)
            return Decision(result=AccessResult.CONFIG_ERROR, reason=CONFIG_ERROR_REASON)
        except Exception as e:
            trace.error = {"code": "INTERNAL_ERROR", "message": str(e) or type(e).__name__, "details": {}}
            self.logger.error("Evaluation failed", error=str(e), exc_info=True)
            return Decision(result=AccessResult.DENIED_SYSTEM_ERROR, reason=SYSTEM_ERROR_REASON)

    def _match_rules(
        self,
        trace: EvaluationTrace,
        door: Door,
        rules: List[AccessRule],
        context: DecisionContext
    ) -> List[AccessRule]:
        matching = []
        for rule in rules:
            if rule.tenant_id != door.tenant_id or rule.door_id != door.door_id:
                raise ConfigurationError(
                    "Rule does not belong to the evaluated door",
                    details={
                        "rule_id": rule.rule_id,
                        "rule_tenant_id": rule.tenant_id,
                        "rule_door_id": rule.door_id,
                    }
                )

            trace.candidate_rule_ids.append(rule.rule_id)
            problem = inspect_rule(rule)
            if problem:
                self._skip_rule(trace, rule, problem)
                continue

            if self.matcher.match(rule, context):
                matching.append(rule)
                trace.matched_rule_ids.append(rule.rule_id)
        return matching

    def _audit_write_done(self, write: asyncio.Future):
        self._pending_writes.discard(write)
        if not write.cancelled():
            # A failure was already logged by the audit logger.
            write.exception()

    def _skip_rule(self, trace: EvaluationTrace, rule: AccessRule, problem: str):
        trace.skipped_rules.append({"rule_id": rule.rule_id, "reason": problem})
        if self.metrics:
            self.metrics.increment_counter("skipped_rules_total", reason=problem.split(":")[0])
        self.logger.warning("Rule skipped", rule_id=rule.rule_id, name=rule.name, reason=problem)

    async def _collaborator(self, name: str, awaitable):
        try:
            return await call_collaborator(name, awaitable, self.timeout)
        except CollaboratorUnavailableError as e:
            self._count_collaborator_error(e)
            raise

    def _count_collaborator_error(self, exc: CollaboratorUnavailableError):
        if self.metrics:
            self.metrics.increment_counter("collaborator_errors_total", collaborator=exc.collaborator)
