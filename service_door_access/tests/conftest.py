"""
Shared fixtures for Door Access Service tests.
"""

import itertools
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from shared.config import BaseConfig
from shared.metrics import MetricsCollector
from service_door_access.app.persistence.memory import (
    InMemoryAccessLogSink, InMemoryRuleStore, InMemoryUserDirectory
)
from service_door_access.app.rules.engine import AccessEngine
from service_door_access.app.rules.models import (
    AccessRule, DecisionContext, Door, RuleType, UserContext
)

TENANT_ID = "tenant-1"
DOOR_ID = "door-1"
OSLO = ZoneInfo("Europe/Oslo")

# Wednesday 5 June 2024, noon in Oslo.
WEDNESDAY_NOON = datetime(2024, 6, 5, 12, 0, 0, tzinfo=OSLO)


@pytest.fixture
def door():
    """Active door without proximity requirement."""
    return Door(
        door_id=DOOR_ID,
        tenant_id=TENANT_ID,
        name="Main Door",
        location="Ground floor",
        unlock_duration_seconds=7,
        timezone="Europe/Oslo",
    )


@pytest.fixture
def make_rule():
    """Factory for rules on the default door, created one minute apart."""
    counter = itertools.count(1)

    def _make(**kwargs):
        n = next(counter)
        values = {
            "rule_id": f"rule-{n}",
            "tenant_id": TENANT_ID,
            "door_id": DOOR_ID,
            "name": f"Rule {n}",
            "type": RuleType.ROLE,
            "priority": 0,
            "allowed_roles": ["CUSTOMER"],
            "created_at": datetime(2024, 1, 1, tzinfo=timezone.utc) + timedelta(minutes=n),
        }
        values.update(kwargs)
        return AccessRule(**values)

    return _make


@pytest.fixture
def make_context():
    """Factory for decision contexts."""

    def _make(**kwargs):
        values = {
            "tenant_id": TENANT_ID,
            "door_id": DOOR_ID,
            "user_id": "user-1",
            "role": "CUSTOMER",
            "membership_status": "ACTIVE",
            "timestamp": WEDNESDAY_NOON,
            "timezone": "Europe/Oslo",
        }
        values.update(kwargs)
        return DecisionContext(**values)

    return _make


@pytest.fixture
def rule_store(door):
    """In-memory rule store holding the default door."""
    store = InMemoryRuleStore()
    store.doors[(door.tenant_id, door.door_id)] = door
    return store


@pytest.fixture
def log_sink():
    """In-memory access log."""
    return InMemoryAccessLogSink()


@pytest.fixture
def user_directory():
    """Directory with a member, an admin, a cancelled member and a deactivated user."""
    directory = InMemoryUserDirectory()
    directory.add_user(TENANT_ID, UserContext("member-1", "CUSTOMER", "ACTIVE"))
    directory.add_user(TENANT_ID, UserContext("admin-1", "ADMIN", "ACTIVE"))
    directory.add_user(TENANT_ID, UserContext("cancelled-1", "CUSTOMER", "CANCELLED"))
    directory.add_user(TENANT_ID, UserContext("gone-1", "CUSTOMER", "ACTIVE", active=False))
    return directory


@pytest.fixture
def config():
    """Configuration with a short collaborator timeout."""
    return BaseConfig(store_backend="memory", collaborator_timeout_seconds=0.2)


@pytest.fixture
def metrics():
    """Door access metrics on a private registry."""
    return MetricsCollector("door_access")


@pytest.fixture
def engine(rule_store, log_sink, user_directory, config, metrics):
    """Access engine wired to in-memory collaborators."""
    return AccessEngine(rule_store, log_sink, user_directory, config=config, metrics=metrics)
