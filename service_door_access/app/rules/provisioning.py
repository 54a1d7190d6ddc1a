"""
Main entrance provisioning.

Marking a door as the main entrance maintains a system-created MEMBERSHIP
rule that lets every member with an ACTIVE membership in.
"""

import uuid
from dataclasses import dataclass
from typing import Optional

from shared.errors import NotFoundError
from shared.logging import get_logger
from ..persistence.base import RuleStore
from .models import AccessRule, MembershipStatus, RuleType, utcnow

MAIN_ENTRANCE_RULE_NAME = "Automatic Access - Active Members"
MAIN_ENTRANCE_RULE_DESCRIPTION = (
    "Automatically grants access to all active members. "
    "This is a system-created rule for main entrance access."
)
MAIN_ENTRANCE_RULE_PRIORITY = 10

logger = get_logger("door_access.provisioning")


@dataclass(frozen=True)
class MainEntranceResult:
    door_id: str
    is_main_entrance: bool
    rule_id: Optional[str]
    message: str


def is_main_entrance_rule(rule: AccessRule) -> bool:
    return rule.type == RuleType.MEMBERSHIP and rule.name == MAIN_ENTRANCE_RULE_NAME


async def set_main_entrance(
    store: RuleStore,
    tenant_id: str,
    door_id: str,
    is_main_entrance: bool
) -> MainEntranceResult:
    """Flag or unflag a door and create, reactivate or deactivate its auto rule."""
    door = await store.get_door(tenant_id, door_id)
    if door is None:
        raise NotFoundError("Door not found", details={"door_id": door_id})

    door.is_main_entrance = is_main_entrance
    await store.save_door(door)

    existing = next(
        (r for r in await store.list_rules(tenant_id, door_id) if is_main_entrance_rule(r)),
        None
    )

    if is_main_entrance:
        if existing is None:
            now = utcnow()
            existing = AccessRule(
                rule_id=str(uuid.uuid4()),
                tenant_id=tenant_id,
                door_id=door_id,
                name=MAIN_ENTRANCE_RULE_NAME,
                description=MAIN_ENTRANCE_RULE_DESCRIPTION,
                type=RuleType.MEMBERSHIP,
                priority=MAIN_ENTRANCE_RULE_PRIORITY,
                active=True,
                allowed_membership_statuses=[MembershipStatus.ACTIVE.value],
                created_at=now,
                updated_at=now,
            )
            await store.save_rule(existing)
            logger.info("Main entrance rule created", door_id=door_id, rule_id=existing.rule_id)
        elif not existing.active:
            existing.active = True
            existing.updated_at = utcnow()
            await store.save_rule(existing)
            logger.info("Main entrance rule reactivated", door_id=door_id, rule_id=existing.rule_id)

        return MainEntranceResult(
            door_id=door_id,
            is_main_entrance=True,
            rule_id=existing.rule_id,
            message="Door marked as main entrance. All active members now have automatic access.",
        )

    if existing is not None and existing.active:
        existing.active = False
        existing.updated_at = utcnow()
        await store.save_rule(existing)
        logger.info("Main entrance rule deactivated", door_id=door_id, rule_id=existing.rule_id)

    return MainEntranceResult(
        door_id=door_id,
        is_main_entrance=False,
        rule_id=existing.rule_id if existing else None,
        message="Door unmarked as main entrance. Automatic access has been removed.",
    )
