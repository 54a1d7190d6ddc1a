"""
Access rule, door and decision data models for the Door Access Service.
"""

from typing import Dict, Any, Optional, List
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_aware(value: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class DoorStatus(str, Enum):
    """Operational status of a door."""
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    MAINTENANCE = "MAINTENANCE"
    ERROR = "ERROR"


class RuleType(str, Enum):
    """Access rule types. Every type grants access on match."""
    ROLE = "ROLE"
    MEMBERSHIP = "MEMBERSHIP"
    USER_SPECIFIC = "USER_SPECIFIC"


class MembershipStatus(str, Enum):
    """Well-known membership status values."""
    ACTIVE = "ACTIVE"
    TRIAL = "TRIAL"
    FROZEN = "FROZEN"
    SUSPENDED = "SUSPENDED"
    PAST_DUE = "PAST_DUE"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"


class AccessResult(str, Enum):
    """Closed set of result codes returned to callers."""
    GRANTED = "GRANTED"
    DENIED_NO_PERMISSION = "DENIED_NO_PERMISSION"
    DENIED_PROXIMITY = "DENIED_PROXIMITY"
    DENIED_DOOR_INACTIVE = "DENIED_DOOR_INACTIVE"
    DOOR_NOT_FOUND = "DOOR_NOT_FOUND"
    CONFIG_ERROR = "CONFIG_ERROR"
    DENIED_SYSTEM_ERROR = "DENIED_SYSTEM_ERROR"


class AccessMethod(str, Enum):
    """How the access attempt reached the engine."""
    API = "API"
    BLUETOOTH = "BLUETOOTH"


class EvaluationState(str, Enum):
    """States an evaluation passes through, in order."""
    PENDING = "PENDING"
    DOOR_CHECKED = "DOOR_CHECKED"
    PROXIMITY_CHECKED = "PROXIMITY_CHECKED"
    RULES_MATCHED = "RULES_MATCHED"
    DECIDED = "DECIDED"
    LOGGED = "LOGGED"


@dataclass(frozen=True)
class ProximityConfig:
    """Bluetooth beacon requirement for a door."""
    enabled: bool = False
    beacon_id: Optional[str] = None
    minimum_signal_strength: Optional[int] = None


@dataclass
class Door:
    """Physical access point owned by one tenant."""
    door_id: str
    tenant_id: str
    name: str
    location: Optional[str] = None
    status: DoorStatus = DoorStatus.ACTIVE
    is_online: bool = True
    requires_credential: bool = True
    manual_override_allowed: bool = False
    unlock_duration_seconds: int = 5
    proximity: ProximityConfig = field(default_factory=ProximityConfig)
    is_main_entrance: bool = False
    timezone: Optional[str] = None


@dataclass(frozen=True)
class TimeSlot:
    """Weekly window; day_of_week 0 = Sunday ... 6 = Saturday."""
    day_of_week: int
    start_time: str
    end_time: str


@dataclass
class AccessRule:
    """Prioritized grant predicate scoped to one door."""
    rule_id: str
    tenant_id: str
    door_id: str
    name: str
    type: RuleType
    description: Optional[str] = None
    priority: int = 0
    active: bool = True
    allowed_roles: List[str] = field(default_factory=list)
    allowed_membership_statuses: List[str] = field(default_factory=list)
    allowed_user_ids: List[str] = field(default_factory=list)
    time_slots: List[TimeSlot] = field(default_factory=list)
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class ProximityReading:
    """Beacon signal observed by the user's device, in dBm."""
    signal_strength: int
    beacon_id: Optional[str] = None


@dataclass(frozen=True)
class UserContext:
    """Role and membership state supplied by the user directory."""
    user_id: str
    role: str
    membership_status: Optional[str] = None
    active: bool = True


@dataclass(frozen=True)
class DecisionContext:
    """Everything a rule may be matched against for one request."""
    tenant_id: str
    door_id: str
    user_id: str
    role: Optional[str]
    membership_status: Optional[str]
    timestamp: datetime
    timezone: str
    proximity: Optional[ProximityReading] = None

    def snapshot(self) -> Dict[str, Any]:
        return {
            "role": self.role,
            "membership_status": self.membership_status,
            "timestamp": self.timestamp.isoformat(),
            "timezone": self.timezone,
            "proximity": asdict(self.proximity) if self.proximity else None,
        }


@dataclass(frozen=True)
class Decision:
    """Outcome of gates plus rule resolution, before auditing."""
    result: AccessResult
    reason: str
    matched_rule_id: Optional[str] = None
    matched_rule_name: Optional[str] = None

    @property
    def granted(self) -> bool:
        return self.result == AccessResult.GRANTED


@dataclass(frozen=True)
class AccessLogEntry:
    """Immutable audit record of one decision."""
    entry_id: str
    tenant_id: str
    door_id: str
    user_id: Optional[str]
    timestamp: datetime
    result: AccessResult
    access_method: AccessMethod
    reason: Optional[str] = None
    matched_rule_id: Optional[str] = None
    matched_rule_name: Optional[str] = None
    context: Dict[str, Any] = field(default_factory=dict)

    @property
    def granted(self) -> bool:
        return self.result == AccessResult.GRANTED


@dataclass
class EvaluationResult:
    """What ``AccessEngine.evaluate`` hands back to the caller."""
    result: AccessResult
    reason: str
    matched_rule_id: Optional[str] = None
    matched_rule_name: Optional[str] = None
    warnings: List[str] = field(default_factory=list)
    unlock_duration_seconds: Optional[int] = None
    log_entry_id: Optional[str] = None
    evaluation_time_ms: float = 0.0

    @property
    def granted(self) -> bool:
        return self.result == AccessResult.GRANTED


@dataclass(frozen=True)
class AccessibleDoor:
    """A door the user's rules currently grant, and the rule that wins."""
    door: Door
    matched_rule_id: str
    matched_rule_name: str


# API models

class ProximityReadingModel(BaseModel):
    """Proximity reading sent by the mobile trigger."""
    signal_strength: int = Field(..., le=0, description="RSSI in dBm (negative)")
    beacon_id: Optional[str] = Field(None, description="Beacon the device observed")


class EvaluateRequest(BaseModel):
    """Request model for an access evaluation."""
    tenant_id: str = Field(..., description="Tenant ID")
    user_id: str = Field(..., description="User ID")
    timestamp: Optional[datetime] = Field(None, description="Request time, defaults to now")
    proximity: Optional[ProximityReadingModel] = Field(None, description="Beacon reading")


class EvaluateResponse(BaseModel):
    """Response model for an access evaluation."""
    result: AccessResult
    granted: bool
    reason: str
    matched_rule_id: Optional[str] = None
    matched_rule_name: Optional[str] = None
    warnings: List[str] = Field(default_factory=list)
    unlock_duration_seconds: Optional[int] = None
    log_entry_id: Optional[str] = None


class TimeSlotModel(BaseModel):
    """Weekly time window."""
    day_of_week: int = Field(..., ge=0, le=6, description="0 = Sunday ... 6 = Saturday")
    start_time: str = Field(..., pattern=r"^\d{2}:\d{2}(:\d{2})?$")
    end_time: str = Field(..., pattern=r"^\d{2}:\d{2}(:\d{2})?$")


class RuleCreateRequest(BaseModel):
    """Request model for creating a rule."""
    tenant_id: str = Field(..., description="Tenant ID")
    name: str = Field(..., min_length=1, description="Rule name")
    description: Optional[str] = Field(None, description="Rule description")
    type: RuleType = Field(..., description="Rule type")
    priority: int = Field(0, description="Rule priority, higher wins")
    active: bool = Field(True, description="Whether rule is active")
    allowed_roles: List[str] = Field(default_factory=list)
    allowed_membership_statuses: List[str] = Field(default_factory=list)
    allowed_user_ids: List[str] = Field(default_factory=list)
    time_slots: List[TimeSlotModel] = Field(default_factory=list)
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None


class RuleUpdateRequest(BaseModel):
    """Request model for updating a rule."""
    tenant_id: str = Field(..., description="Tenant ID")
    name: Optional[str] = None
    description: Optional[str] = None
    type: Optional[RuleType] = None
    priority: Optional[int] = None
    active: Optional[bool] = None
    allowed_roles: Optional[List[str]] = None
    allowed_membership_statuses: Optional[List[str]] = None
    allowed_user_ids: Optional[List[str]] = None
    time_slots: Optional[List[TimeSlotModel]] = None
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None


class RuleResponse(BaseModel):
    """Response model for rule operations."""
    rule_id: str
    tenant_id: str
    door_id: str
    name: str
    description: Optional[str]
    type: RuleType
    priority: int
    active: bool
    allowed_roles: List[str]
    allowed_membership_statuses: List[str]
    allowed_user_ids: List[str]
    time_slots: List[Dict[str, Any]]
    valid_from: Optional[datetime]
    valid_until: Optional[datetime]
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_rule(cls, rule: AccessRule) -> "RuleResponse":
        return cls(**asdict(rule))


class RuleListResponse(BaseModel):
    """Response model for rule list."""
    rules: List[RuleResponse]
    total: int


class MainEntranceRequest(BaseModel):
    """Request model for marking a door as main entrance."""
    tenant_id: str = Field(..., description="Tenant ID")
    is_main_entrance: bool = Field(True)


class AccessLogResponse(BaseModel):
    """One access log entry as exposed to administrators."""
    entry_id: str
    tenant_id: str
    door_id: str
    user_id: Optional[str]
    timestamp: datetime
    result: AccessResult
    granted: bool
    access_method: AccessMethod
    reason: Optional[str]
    matched_rule_id: Optional[str]
    matched_rule_name: Optional[str]
    context: Dict[str, Any]

    @classmethod
    def from_entry(cls, entry: AccessLogEntry) -> "AccessLogResponse":
        return cls(granted=entry.granted, **asdict(entry))


class AccessLogListResponse(BaseModel):
    """Paginated access log list."""
    logs: List[AccessLogResponse]
    total: int
    limit: int
    offset: int
    has_more: bool


class AccessibleDoorResponse(BaseModel):
    """A door the user may open right now."""
    door_id: str
    name: str
    location: Optional[str]
    is_main_entrance: bool
    proximity_required: bool
    matched_rule_id: str
    matched_rule_name: str

    @classmethod
    def from_accessible(cls, accessible: AccessibleDoor) -> "AccessibleDoorResponse":
        door = accessible.door
        return cls(
            door_id=door.door_id,
            name=door.name,
            location=door.location,
            is_main_entrance=door.is_main_entrance,
            proximity_required=door.proximity.enabled,
            matched_rule_id=accessible.matched_rule_id,
            matched_rule_name=accessible.matched_rule_name
        )


class AccessibleDoorListResponse(BaseModel):
    """Doors a user may open."""
    user_id: str
    timestamp: datetime
    doors: List[AccessibleDoorResponse]
    total: int
