"""
Unit tests for the rule matcher.
"""

import pytest
from datetime import datetime, timezone
from zoneinfo import ZoneInfo

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from service_door_access.app.rules.matcher import (
    RuleMatcher, day_of_week, inspect_rule, parse_clock, validate_rule
)
from service_door_access.app.rules.models import RuleType, TimeSlot
from shared.errors import ValidationError

OSLO = ZoneInfo("Europe/Oslo")


class TestParseClock:
    """Test cases for time-of-day parsing."""

    def test_hours_and_minutes(self):
        assert parse_clock("06:00") == 6 * 3600
        assert parse_clock("21:59:59") == 21 * 3600 + 59 * 60 + 59

    def test_end_of_day_only_as_end(self):
        assert parse_clock("24:00", end_of_day=True) == 24 * 3600
        with pytest.raises(ValueError):
            parse_clock("24:00")

    @pytest.mark.parametrize("value", ["6:00", "25:00", "12:60", "noon", "12-00", ""])
    def test_invalid(self, value):
        with pytest.raises(ValueError):
            parse_clock(value)


class TestInspectRule:
    """Test cases for malformed rule detection."""

    def test_well_formed_rule(self, make_rule):
        assert inspect_rule(make_rule()) is None

    def test_user_specific_without_users(self, make_rule):
        rule = make_rule(type=RuleType.USER_SPECIFIC, allowed_user_ids=[])
        assert "USER_SPECIFIC" in inspect_rule(rule)

    def test_membership_without_statuses(self, make_rule):
        rule = make_rule(type=RuleType.MEMBERSHIP, allowed_membership_statuses=[])
        assert "MEMBERSHIP" in inspect_rule(rule)

    def test_role_without_roles(self, make_rule):
        assert "ROLE" in inspect_rule(make_rule(allowed_roles=[]))

    def test_unknown_type(self, make_rule):
        assert inspect_rule(make_rule(type="DENY")).startswith("unknown rule type")

    def test_inverted_slot(self, make_rule):
        rule = make_rule(time_slots=[TimeSlot(3, "22:00", "06:00")])
        assert inspect_rule(rule).startswith("invalid time slot")

    def test_invalid_day(self, make_rule):
        rule = make_rule(time_slots=[TimeSlot(7, "06:00", "22:00")])
        assert inspect_rule(rule).startswith("invalid time slot")

    def test_inverted_validity_window(self, make_rule):
        rule = make_rule(
            valid_from=datetime(2024, 6, 1, tzinfo=timezone.utc),
            valid_until=datetime(2024, 5, 1, tzinfo=timezone.utc),
        )
        assert inspect_rule(rule) == "validity window ends before it starts"

    def test_validate_rule_raises(self, make_rule):
        with pytest.raises(ValidationError) as exc_info:
            validate_rule(make_rule(allowed_roles=[]))
        assert exc_info.value.details["rule_id"] == "rule-1"


class TestRuleMatcher:
    """Test cases for RuleMatcher."""

    @pytest.fixture
    def matcher(self):
        return RuleMatcher()

    def test_role_rule(self, matcher, make_rule, make_context):
        rule = make_rule(allowed_roles=["ADMIN", "TRAINER"])
        assert matcher.match(rule, make_context(role="ADMIN")) is True
        assert matcher.match(rule, make_context(role="CUSTOMER")) is False

    def test_membership_rule(self, matcher, make_rule, make_context):
        rule = make_rule(
            type=RuleType.MEMBERSHIP, allowed_roles=[], allowed_membership_statuses=["ACTIVE"]
        )
        assert matcher.match(rule, make_context(membership_status="ACTIVE")) is True
        assert matcher.match(rule, make_context(membership_status="CANCELLED")) is False
        assert matcher.match(rule, make_context(membership_status=None)) is False

    def test_membership_rule_narrowed_by_role(self, matcher, make_rule, make_context):
        rule = make_rule(
            type=RuleType.MEMBERSHIP,
            allowed_roles=["CUSTOMER"],
            allowed_membership_statuses=["ACTIVE"],
        )
        assert matcher.match(rule, make_context(role="CUSTOMER")) is True
        assert matcher.match(rule, make_context(role="TRAINER")) is False

    def test_user_specific_rule(self, matcher, make_rule, make_context):
        rule = make_rule(type=RuleType.USER_SPECIFIC, allowed_roles=[], allowed_user_ids=["user-1"])
        assert matcher.match(rule, make_context(user_id="user-1")) is True
        assert matcher.match(rule, make_context(user_id="user-2")) is False

    def test_inactive_rule_never_matches(self, matcher, make_rule, make_context):
        assert matcher.match(make_rule(active=False), make_context()) is False

    def test_malformed_rule_never_matches(self, matcher, make_rule, make_context):
        rule = make_rule(type=RuleType.USER_SPECIFIC, allowed_roles=["CUSTOMER"], allowed_user_ids=[])
        assert matcher.match(rule, make_context()) is False

    def test_time_window_boundary(self, matcher, make_rule, make_context):
        """A [06:00, 22:00) slot includes 21:59:59 and excludes 22:00:00."""
        rule = make_rule(time_slots=[TimeSlot(3, "06:00", "22:00")])

        inside = make_context(timestamp=datetime(2024, 6, 5, 21, 59, 59, tzinfo=OSLO))
        at_end = make_context(timestamp=datetime(2024, 6, 5, 22, 0, 0, tzinfo=OSLO))
        at_start = make_context(timestamp=datetime(2024, 6, 5, 6, 0, 0, tzinfo=OSLO))

        assert matcher.match(rule, inside) is True
        assert matcher.match(rule, at_end) is False
        assert matcher.match(rule, at_start) is True

    def test_time_slot_uses_tenant_timezone(self, matcher, make_rule, make_context):
        rule = make_rule(time_slots=[TimeSlot(3, "06:00", "22:00")])
        # 20:30 UTC is 22:30 in Oslo during summer time.
        late_utc = datetime(2024, 6, 5, 20, 30, tzinfo=timezone.utc)

        assert matcher.match(rule, make_context(timestamp=late_utc)) is False
        assert matcher.match(rule, make_context(timestamp=late_utc, timezone="UTC")) is True

    def test_time_slot_wrong_day(self, matcher, make_rule, make_context):
        rule = make_rule(time_slots=[TimeSlot(0, "00:00", "24:00")])
        assert matcher.match(rule, make_context()) is False

    def test_end_of_day_slot(self, matcher, make_rule, make_context):
        rule = make_rule(time_slots=[TimeSlot(3, "18:00", "24:00")])
        late = make_context(timestamp=datetime(2024, 6, 5, 23, 59, 59, tzinfo=OSLO))
        assert matcher.match(rule, late) is True

    def test_validity_window(self, matcher, make_rule, make_context):
        rule = make_rule(
            valid_from=datetime(2024, 6, 1, tzinfo=timezone.utc),
            valid_until=datetime(2024, 6, 30, tzinfo=timezone.utc),
        )
        assert matcher.match(rule, make_context()) is True
        assert matcher.match(
            rule, make_context(timestamp=datetime(2024, 7, 1, tzinfo=timezone.utc))
        ) is False
        assert matcher.match(
            rule, make_context(timestamp=datetime(2024, 5, 31, tzinfo=timezone.utc))
        ) is False

    def test_day_of_week_starts_on_sunday(self):
        assert day_of_week(datetime(2024, 6, 2)) == 0
        assert day_of_week(datetime(2024, 6, 5)) == 3
        assert day_of_week(datetime(2024, 6, 8)) == 6
