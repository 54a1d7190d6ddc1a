"""
Rule matching for the Door Access Service.

``RuleMatcher.match`` is a pure predicate: given one rule and one decision
context it answers whether the rule applies. Malformed rules never match;
``inspect_rule`` tells the caller why so the skip can be recorded.
"""

from typing import Optional, Tuple
from datetime import datetime
from zoneinfo import ZoneInfo

from shared.errors import ValidationError
from .models import AccessRule, DecisionContext, RuleType, TimeSlot, ensure_aware

SECONDS_PER_DAY = 24 * 3600


def parse_clock(value: str, end_of_day: bool = False) -> int:
    """Parse ``HH:MM`` or ``HH:MM:SS`` into seconds after midnight.

    ``24:00`` is only accepted when ``end_of_day`` is set.
    """
    parts = value.split(":")
    if len(parts) not in (2, 3) or not all(p.isdigit() and len(p) == 2 for p in parts):
        raise ValueError(f"invalid time of day: {value!r}")

    hours, minutes = int(parts[0]), int(parts[1])
    seconds = int(parts[2]) if len(parts) == 3 else 0

    if end_of_day and hours == 24 and minutes == 0 and seconds == 0:
        return SECONDS_PER_DAY
    if hours > 23 or minutes > 59 or seconds > 59:
        raise ValueError(f"invalid time of day: {value!r}")
    return hours * 3600 + minutes * 60 + seconds


def slot_bounds(slot: TimeSlot) -> Tuple[int, int]:
    """Return ``(start, end)`` seconds for a slot, validating it."""
    if not isinstance(slot.day_of_week, int) or not 0 <= slot.day_of_week <= 6:
        raise ValueError(f"invalid day of week: {slot.day_of_week!r}")
    start = parse_clock(slot.start_time)
    end = parse_clock(slot.end_time, end_of_day=True)
    if end <= start:
        raise ValueError(f"slot ends before it starts: {slot.start_time}-{slot.end_time}")
    return start, end


def inspect_rule(rule: AccessRule) -> Optional[str]:
    """Return a description of what makes ``rule`` unusable, or None."""
    try:
        rule_type = RuleType(rule.type)
    except ValueError:
        return f"unknown rule type: {rule.type!r}"

    if rule_type == RuleType.ROLE and not rule.allowed_roles:
        return "ROLE rule without allowed roles"
    if rule_type == RuleType.MEMBERSHIP and not rule.allowed_membership_statuses:
        return "MEMBERSHIP rule without allowed membership statuses"
    if rule_type == RuleType.USER_SPECIFIC and not rule.allowed_user_ids:
        return "USER_SPECIFIC rule without allowed user ids"

    for slot in rule.time_slots:
        try:
            slot_bounds(slot)
        except (ValueError, TypeError, AttributeError) as e:
            return f"invalid time slot: {e}"

    if rule.valid_from and rule.valid_until:
        if ensure_aware(rule.valid_until) < ensure_aware(rule.valid_from):
            return "validity window ends before it starts"

    return None


def validate_rule(rule: AccessRule) -> None:
    """Reject a rule at creation time if it could never be evaluated."""
    problem = inspect_rule(rule)
    if problem:
        raise ValidationError(problem, details={"rule_id": rule.rule_id, "name": rule.name})


def day_of_week(moment: datetime) -> int:
    """Weekday with Sunday = 0, the convention used by stored time slots."""
    return (moment.weekday() + 1) % 7


class RuleMatcher:
    """Decides whether a single rule applies to a decision context."""

    def match(self, rule: AccessRule, context: DecisionContext) -> bool:
        """Return True iff the rule is active, well formed and all predicates hold."""
        if not rule.active:
            return False
        if inspect_rule(rule) is not None:
            return False

        return (
            self.matches_type(rule, context)
            and self.within_time_slots(rule, context)
            and self.within_validity(rule, context.timestamp)
        )

    def matches_type(self, rule: AccessRule, context: DecisionContext) -> bool:
        """Evaluate the predicate selected by the rule's type."""
        rule_type = RuleType(rule.type)

        if rule_type == RuleType.ROLE:
            return context.role is not None and context.role in rule.allowed_roles

        if rule_type == RuleType.MEMBERSHIP:
            if context.membership_status is None:
                return False
            if context.membership_status not in rule.allowed_membership_statuses:
                return False
            # allowed_roles narrows a membership rule when present
            if rule.allowed_roles and context.role not in rule.allowed_roles:
                return False
            return True

        if rule_type == RuleType.USER_SPECIFIC:
            return context.user_id in rule.allowed_user_ids

        return False

    def within_time_slots(self, rule: AccessRule, context: DecisionContext) -> bool:
        """True if the rule has no slots or the local time falls in one of them."""
        if not rule.time_slots:
            return True

        local = ensure_aware(context.timestamp).astimezone(ZoneInfo(context.timezone))
        weekday = day_of_week(local)
        seconds = local.hour * 3600 + local.minute * 60 + local.second

        for slot in rule.time_slots:
            if slot.day_of_week != weekday:
                continue
            start, end = slot_bounds(slot)
            if start <= seconds < end:
                return True
        return False

    def within_validity(self, rule: AccessRule, timestamp: datetime) -> bool:
        """True if ``timestamp`` lies inside the rule's optional validity window."""
        moment = ensure_aware(timestamp)
        if rule.valid_from and moment < ensure_aware(rule.valid_from):
            return False
        if rule.valid_until and moment > ensure_aware(rule.valid_until):
            return False
        return True
