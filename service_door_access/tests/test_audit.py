"""
Unit tests for audit logging and access log analytics.
"""

import csv
import dataclasses
import io
import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from shared.errors import AuditWriteError
from shared.metrics import MetricsCollector
from service_door_access.app.audit.logger import (
    EXPORT_COLUMNS, AccessLogAnalytics, AuditLogger
)
from service_door_access.app.persistence.base import AccessLogFilters
from service_door_access.app.persistence.memory import InMemoryAccessLogSink
from service_door_access.app.rules.models import (
    AccessLogEntry, AccessMethod, AccessResult, Decision
)

NOW = datetime(2024, 6, 5, 12, 0, tzinfo=timezone.utc)


def make_entry(n, user_id="user-1", door_id="door-1", result=AccessResult.GRANTED,
               minutes_ago=0, method=AccessMethod.API, tenant_id="tenant-1"):
    return AccessLogEntry(
        entry_id=f"entry-{n}",
        tenant_id=tenant_id,
        door_id=door_id,
        user_id=user_id,
        timestamp=NOW - timedelta(minutes=minutes_ago),
        result=result,
        access_method=method,
        reason="no matching rule" if result != AccessResult.GRANTED else "Rule 'Staff' matched",
    )


class TestAuditLogger:
    """Test cases for AuditLogger."""

    @pytest.fixture
    def sink(self):
        return InMemoryAccessLogSink()

    @pytest.fixture
    def metrics(self):
        return MetricsCollector("door_access")

    @pytest.fixture
    def audit(self, sink, metrics):
        return AuditLogger(sink, timeout=0.5, metrics=metrics)

    @pytest.mark.asyncio
    async def test_record_appends_entry(self, audit, sink):
        decision = Decision(
            result=AccessResult.GRANTED,
            reason="Rule 'Staff' matched",
            matched_rule_id="rule-1",
            matched_rule_name="Staff",
        )

        entry = await audit.record(
            "tenant-1", "door-1", "user-1", {"states": ["PENDING"]}, decision,
            access_method=AccessMethod.BLUETOOTH, timestamp=NOW
        )

        assert sink.entries == [entry]
        assert entry.result == AccessResult.GRANTED
        assert entry.matched_rule_name == "Staff"
        assert entry.access_method == AccessMethod.BLUETOOTH
        assert entry.timestamp == NOW
        assert entry.context == {"states": ["PENDING"]}

    @pytest.mark.asyncio
    async def test_record_failure_raises(self, audit, sink, metrics):
        sink.append_access_log = AsyncMock(side_effect=OSError("disk full"))
        decision = Decision(result=AccessResult.DENIED_NO_PERMISSION, reason="no matching rule")

        with pytest.raises(AuditWriteError) as exc_info:
            await audit.record("tenant-1", "door-1", "user-1", {}, decision)

        assert exc_info.value.code == "AUDIT_WRITE_ERROR"
        assert "entry_id" in exc_info.value.details
        assert metrics.registry.get_sample_value("audit_write_failures_total") == 1.0

    def test_entry_is_immutable(self, audit):
        entry = audit.build_entry(
            "tenant-1", "door-1", "user-1", {},
            Decision(result=AccessResult.DENIED_PROXIMITY, reason="no signal")
        )

        with pytest.raises(dataclasses.FrozenInstanceError):
            entry.result = AccessResult.GRANTED


class TestAccessLogAnalytics:
    """Test cases for AccessLogAnalytics."""

    @pytest.fixture
    def sink(self):
        sink = InMemoryAccessLogSink()
        sink.entries.extend([
            make_entry(1, minutes_ago=50),
            make_entry(2, user_id="user-2", result=AccessResult.DENIED_NO_PERMISSION, minutes_ago=40),
            make_entry(3, user_id="user-2", door_id="door-2",
                       result=AccessResult.DENIED_PROXIMITY, minutes_ago=20,
                       method=AccessMethod.BLUETOOTH),
            make_entry(4, user_id="user-2", result=AccessResult.DENIED_NO_PERMISSION, minutes_ago=10),
            make_entry(5, user_id="user-3", result=AccessResult.DENIED_NO_PERMISSION, minutes_ago=5),
            make_entry(6, minutes_ago=1),
            make_entry(7, tenant_id="tenant-2"),
        ])
        return sink

    @pytest.fixture
    def analytics(self, sink):
        return AccessLogAnalytics(sink, timeout=0.5, export_limit=3)

    @pytest.mark.asyncio
    async def test_query_newest_first_and_paginated(self, analytics):
        entries, total = await analytics.query("tenant-1", limit=2, offset=1)

        assert total == 6
        assert [e.entry_id for e in entries] == ["entry-5", "entry-4"]

    @pytest.mark.asyncio
    async def test_query_filters(self, analytics):
        entries, total = await analytics.query(
            "tenant-1", AccessLogFilters(user_id="user-2", granted=False)
        )
        assert total == 3

        entries, total = await analytics.query("tenant-1", AccessLogFilters(door_id="door-2"))
        assert [e.entry_id for e in entries] == ["entry-3"]

        entries, total = await analytics.query(
            "tenant-1", AccessLogFilters(start=NOW - timedelta(minutes=15))
        )
        assert {e.entry_id for e in entries} == {"entry-4", "entry-5", "entry-6"}

    @pytest.mark.asyncio
    async def test_stats(self, analytics):
        stats = await analytics.stats("tenant-1")

        assert stats["total"] == 6
        assert stats["granted"] == 2
        assert stats["denied"] == 4
        assert stats["success_rate"] == 33.33
        assert stats["unique_users"] == 3
        assert stats["by_result"]["DENIED_NO_PERMISSION"] == 3
        assert stats["by_method"] == {"API": 5, "BLUETOOTH": 1}
        assert stats["top_doors"][0] == {"door_id": "door-1", "count": 5}

    @pytest.mark.asyncio
    async def test_stats_empty(self):
        analytics = AccessLogAnalytics(InMemoryAccessLogSink(), timeout=0.5)
        stats = await analytics.stats("tenant-1")

        assert stats["total"] == 0
        assert stats["success_rate"] == 0.0
        assert stats["top_doors"] == []

    @pytest.mark.asyncio
    async def test_suspicious_activity(self, analytics):
        flagged = await analytics.suspicious_activity(
            "tenant-1", window_minutes=30, threshold=2, now=NOW
        )

        assert len(flagged) == 1
        assert flagged[0]["user_id"] == "user-2"
        assert flagged[0]["failed_attempts"] == 2
        assert flagged[0]["doors"] == ["door-1", "door-2"]

    @pytest.mark.asyncio
    async def test_suspicious_activity_wider_window(self, analytics):
        flagged = await analytics.suspicious_activity(
            "tenant-1", window_minutes=60, threshold=1, now=NOW
        )

        assert [f["user_id"] for f in flagged] == ["user-2", "user-3"]
        assert flagged[0]["failed_attempts"] == 3

    @pytest.mark.asyncio
    async def test_export_csv_capped(self, analytics):
        content = await analytics.export_csv("tenant-1")
        rows = list(csv.reader(io.StringIO(content)))

        assert rows[0] == EXPORT_COLUMNS
        assert len(rows) == 4
        assert rows[1][1] == "entry-6"
        assert rows[1][5] == "true"
        assert rows[2][4] == "DENIED_NO_PERMISSION"

    @pytest.mark.asyncio
    async def test_stats_for_one_door(self, analytics):
        stats = await analytics.stats("tenant-1", door_id="door-2")

        assert stats["door_id"] == "door-2"
        assert stats["total"] == 1
        assert stats["granted"] == 0
        assert stats["by_method"] == {"BLUETOOTH": 1}
        assert stats["top_doors"] == [{"door_id": "door-2", "count": 1}]

    @pytest.mark.asyncio
    async def test_stats_aggregated_by_sink(self, sink):
        sink.scan_access_logs = AsyncMock()
        sink.query_access_logs = AsyncMock()
        analytics = AccessLogAnalytics(sink, timeout=0.5)

        stats = await analytics.stats("tenant-1", start=NOW - timedelta(minutes=30))

        assert stats["total"] == 4
        sink.scan_access_logs.assert_not_called()
        sink.query_access_logs.assert_not_called()


class TestScanUnderConcurrentAppends:
    """Analytics scans while evaluations keep appending."""

    class GrowingSink(InMemoryAccessLogSink):
        """Appends a fresh entry every time a page is read."""

        def __init__(self):
            super().__init__()
            self.pages_read = 0

        async def scan_access_logs(self, tenant_id, filters, limit, after=None):
            page = await super().scan_access_logs(tenant_id, filters, limit, after)
            self.pages_read += 1
            self.entries.append(dataclasses.replace(
                make_entry(f"live-{self.pages_read}", result=AccessResult.DENIED_NO_PERMISSION),
                timestamp=datetime.now(timezone.utc) + timedelta(seconds=1)
            ))
            return page

    @pytest.fixture
    def sink(self):
        sink = self.GrowingSink()
        sink.entries.extend(
            make_entry(n, user_id=f"user-{n % 7}", minutes_ago=n % 600,
                       result=AccessResult.GRANTED if n % 3 else AccessResult.DENIED_NO_PERMISSION)
            for n in range(1200)
        )
        return sink

    @pytest.mark.asyncio
    async def test_export_reads_each_entry_once(self, sink):
        analytics = AccessLogAnalytics(sink, timeout=0.5, export_limit=5000)

        content = await analytics.export_csv("tenant-1")
        rows = list(csv.reader(io.StringIO(content)))[1:]
        entry_ids = [row[1] for row in rows]

        assert sink.pages_read == 3
        assert len(entry_ids) == 1200
        assert len(set(entry_ids)) == 1200

    @pytest.mark.asyncio
    async def test_suspicious_activity_counts_each_attempt_once(self, sink):
        analytics = AccessLogAnalytics(sink, timeout=0.5)

        flagged = await analytics.suspicious_activity(
            "tenant-1", window_minutes=600, threshold=1, now=NOW
        )

        assert sum(f["failed_attempts"] for f in flagged) == 400

    @pytest.mark.asyncio
    async def test_scan_pages_do_not_overlap(self, sink):
        first = await sink.scan_access_logs("tenant-1", AccessLogFilters(end=NOW), 500)
        cursor = (first[-1].timestamp, first[-1].entry_id)
        second = await sink.scan_access_logs("tenant-1", AccessLogFilters(end=NOW), 500, cursor)

        assert len(first) == len(second) == 500
        assert not {e.entry_id for e in first} & {e.entry_id for e in second}
