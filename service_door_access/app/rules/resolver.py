"""
Decision resolution: pick one winning rule among the matches.
"""

from typing import Iterable, List, Optional

from .models import AccessRule, AccessResult, Decision, RuleType, ensure_aware

# Among equal priorities the more specific rule type wins.
TYPE_PRECEDENCE = {
    RuleType.USER_SPECIFIC: 0,
    RuleType.MEMBERSHIP: 1,
    RuleType.ROLE: 2,
}

NO_MATCHING_RULE = "no matching rule"


def precedence_key(rule: AccessRule):
    """Sort key: priority desc, type precedence, creation time, then id."""
    return (
        -rule.priority,
        TYPE_PRECEDENCE.get(RuleType(rule.type), len(TYPE_PRECEDENCE)),
        ensure_aware(rule.created_at),
        rule.rule_id,
    )


def order_by_precedence(rules: Iterable[AccessRule]) -> List[AccessRule]:
    """Return rules ordered from winning to losing."""
    return sorted(rules, key=precedence_key)


class DecisionResolver:
    """Turns the set of matching rules into a GRANTED/DENIED decision."""

    def winner(self, matching_rules: Iterable[AccessRule]) -> Optional[AccessRule]:
        ordered = order_by_precedence(matching_rules)
        return ordered[0] if ordered else None

    def resolve(self, matching_rules: Iterable[AccessRule]) -> Decision:
        """Grant via the winning rule, or deny when nothing matched."""
        rule = self.winner(matching_rules)
        if rule is None:
            return Decision(
                result=AccessResult.DENIED_NO_PERMISSION,
                reason=NO_MATCHING_RULE,
            )

        return Decision(
            result=AccessResult.GRANTED,
            reason=f"Rule '{rule.name}' matched",
            matched_rule_id=rule.rule_id,
            matched_rule_name=rule.name,
        )
