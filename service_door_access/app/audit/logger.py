"""
Audit logging and access log analytics for the Door Access Service.

Every decision becomes one immutable ``AccessLogEntry``. The logger never
decides anything itself: a failed write is raised to the engine, which
applies the deployer's audit failure policy.
"""

import csv
import io
import uuid
from dataclasses import asdict, replace
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from shared.errors import AuditWriteError, CollaboratorUnavailableError
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from ..persistence.base import AccessLogFilters, AccessLogSink, LogCursor, call_collaborator
from ..rules.models import (
    AccessLogEntry, AccessMethod, AccessResult, Decision, ensure_aware, utcnow
)

EXPORT_COLUMNS = [
    "timestamp",
    "entry_id",
    "door_id",
    "user_id",
    "result",
    "granted",
    "access_method",
    "reason",
    "matched_rule_id",
    "matched_rule_name",
]

# Page size used when analytics walk the whole log.
SCAN_PAGE_SIZE = 500


class AuditLogger:
    """Builds access log entries and appends them to the sink."""

    def __init__(self, sink: AccessLogSink, timeout: float,
                 metrics: Optional[MetricsCollector] = None):
        self.sink = sink
        self.timeout = timeout
        self.metrics = metrics
        self.logger = get_logger("door_access.audit")

    def build_entry(
        self,
        tenant_id: str,
        door_id: str,
        user_id: Optional[str],
        context: Dict[str, Any],
        decision: Decision,
        access_method: AccessMethod = AccessMethod.API,
        timestamp: Optional[datetime] = None
    ) -> AccessLogEntry:
        return AccessLogEntry(
            entry_id=str(uuid.uuid4()),
            tenant_id=tenant_id,
            door_id=door_id,
            user_id=user_id,
            timestamp=ensure_aware(timestamp) if timestamp else utcnow(),
            result=decision.result,
            access_method=access_method,
            reason=decision.reason,
            matched_rule_id=decision.matched_rule_id,
            matched_rule_name=decision.matched_rule_name,
            context=dict(context),
        )

    async def record(
        self,
        tenant_id: str,
        door_id: str,
        user_id: Optional[str],
        context: Dict[str, Any],
        decision: Decision,
        access_method: AccessMethod = AccessMethod.API,
        timestamp: Optional[datetime] = None
    ) -> AccessLogEntry:
        """Persist one decision and return the stored entry.

        Raises ``AuditWriteError`` when the sink fails or times out. The
        full entry is logged at critical level first so the decision is
        never lost silently.
        """
        entry = self.build_entry(
            tenant_id, door_id, user_id, context, decision, access_method, timestamp
        )

        try:
            await call_collaborator("audit_sink", self.sink.append_access_log(entry), self.timeout)
        except CollaboratorUnavailableError as e:
            if self.metrics:
                self.metrics.increment_counter("audit_write_failures_total")
                self.metrics.increment_counter("collaborator_errors_total", collaborator="audit_sink")
            self.logger.critical(
                "Audit write failed",
                error=e.message,
                entry=_entry_to_log(entry)
            )
            raise AuditWriteError(e.message, details={"entry_id": entry.entry_id}) from e

        self.logger.debug("Access log entry written", entry_id=entry.entry_id)
        return entry


def _entry_to_log(entry: AccessLogEntry) -> Dict[str, Any]:
    data = asdict(entry)
    data["timestamp"] = entry.timestamp.isoformat()
    data["result"] = AccessResult(entry.result).value
    data["access_method"] = AccessMethod(entry.access_method).value
    return data


class AccessLogAnalytics:
    """Read-side queries over the access log for administrators."""

    def __init__(self, sink: AccessLogSink, timeout: float, export_limit: int = 10000):
        self.sink = sink
        self.timeout = timeout
        self.export_limit = export_limit
        self.logger = get_logger("door_access.audit.analytics")

    async def query(
        self,
        tenant_id: str,
        filters: Optional[AccessLogFilters] = None,
        limit: int = 50,
        offset: int = 0
    ) -> Tuple[List[AccessLogEntry], int]:
        """Return one page of entries, newest first, and the total count."""
        return await call_collaborator(
            "audit_sink",
            self.sink.query_access_logs(tenant_id, filters or AccessLogFilters(), limit, offset),
            self.timeout
        )

    async def _collect(
        self,
        tenant_id: str,
        filters: AccessLogFilters,
        cap: Optional[int] = None
    ) -> List[AccessLogEntry]:
        # Pin the upper bound and walk by keyset so concurrent appends can
        # neither shift pages nor be read twice.
        if filters.end is None:
            filters = replace(filters, end=utcnow())

        entries: List[AccessLogEntry] = []
        cursor: Optional[LogCursor] = None
        while cap is None or len(entries) < cap:
            page_size = SCAN_PAGE_SIZE if cap is None else min(SCAN_PAGE_SIZE, cap - len(entries))
            page = await call_collaborator(
                "audit_sink",
                self.sink.scan_access_logs(tenant_id, filters, page_size, cursor),
                self.timeout
            )
            entries.extend(page)
            if len(page) < page_size:
                break
            cursor = (page[-1].timestamp, page[-1].entry_id)
        return entries

    async def stats(
        self,
        tenant_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        door_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """Aggregate counts over a time range, optionally for one door."""
        summary = await call_collaborator(
            "audit_sink",
            self.sink.summarize_access_logs(
                tenant_id, AccessLogFilters(door_id=door_id, start=start, end=end)
            ),
            self.timeout
        )

        total = summary.total
        return {
            "door_id": door_id,
            "total": total,
            "granted": summary.granted,
            "denied": total - summary.granted,
            "success_rate": round(summary.granted / total * 100, 2) if total else 0.0,
            "unique_users": summary.unique_users,
            "by_result": dict(summary.by_result),
            "by_method": dict(summary.by_method),
            "top_doors": [
                {"door_id": door, "count": count} for door, count in summary.top_doors
            ],
        }

    async def suspicious_activity(
        self,
        tenant_id: str,
        window_minutes: int = 30,
        threshold: int = 5,
        now: Optional[datetime] = None
    ) -> List[Dict[str, Any]]:
        """Users with at least ``threshold`` denied attempts inside the window."""
        end = ensure_aware(now) if now else utcnow()
        start = end - timedelta(minutes=window_minutes)
        denied = await self._collect(
            tenant_id, AccessLogFilters(granted=False, start=start, end=end)
        )

        by_user: Dict[str, List[AccessLogEntry]] = {}
        for entry in denied:
            if entry.user_id:
                by_user.setdefault(entry.user_id, []).append(entry)

        flagged = []
        for user_id, attempts in by_user.items():
            if len(attempts) < threshold:
                continue
            flagged.append({
                "user_id": user_id,
                "failed_attempts": len(attempts),
                "doors": sorted({a.door_id for a in attempts}),
                "last_attempt": max(ensure_aware(a.timestamp) for a in attempts),
            })

        flagged.sort(key=lambda item: (-item["failed_attempts"], item["user_id"]))
        if flagged:
            self.logger.warning(
                "Suspicious access activity",
                users=len(flagged),
                window_minutes=window_minutes,
                threshold=threshold
            )
        return flagged

    async def export_csv(self, tenant_id: str, filters: Optional[AccessLogFilters] = None) -> str:
        """Render matching entries as CSV, newest first."""
        entries = await self._collect(tenant_id, filters or AccessLogFilters(), cap=self.export_limit)

        buffer = io.StringIO()
        writer = csv.writer(buffer)
        writer.writerow(EXPORT_COLUMNS)
        for entry in entries:
            writer.writerow([
                ensure_aware(entry.timestamp).isoformat(),
                entry.entry_id,
                entry.door_id,
                entry.user_id or "",
                AccessResult(entry.result).value,
                "true" if entry.granted else "false",
                AccessMethod(entry.access_method).value,
                entry.reason or "",
                entry.matched_rule_id or "",
                entry.matched_rule_name or "",
            ])

        self.logger.info("Access logs exported", tenant_id=tenant_id, rows=len(entries))
        return buffer.getvalue()
