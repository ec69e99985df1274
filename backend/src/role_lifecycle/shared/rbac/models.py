"""Role grant data models for the role lifecycle engine."""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


class Role(str, Enum):
    """Fixed three-tier role set."""

    ADMIN = "admin"
    MODERATOR = "moderator"
    USER = "user"

    @property
    def display_name(self) -> str:
        return ROLE_DISPLAY_NAMES[self]


ROLE_DISPLAY_NAMES: Dict[Role, str] = {
    Role.ADMIN: "Administrator",
    Role.MODERATOR: "Moderator",
    Role.USER: "User",
}

SYSTEM_ACTOR = "system"

# Highest first
ROLE_PRIORITY: List[Role] = [Role.ADMIN, Role.MODERATOR, Role.USER]


class AuditAction(str, Enum):
    ASSIGNED = "assigned"
    REMOVED = "removed"
    EXTENDED = "extended"
    EXPIRED = "expired"
    EXPIRATION_BLOCKED = "expiration_blocked"


class NotificationType(str, Enum):
    ASSIGNED = "assigned"
    REMOVED = "removed"
    EXTENDED = "extended"
    REMINDER_3DAY = "reminder_3day"
    REMINDER_1DAY = "reminder_1day"
    EXPIRED = "expired"
    CRITICAL = "critical"


class SweepFilter(str, Enum):
    """Restricts a sweep to a single transition type."""

    THREE_DAY = "3day"
    ONE_DAY = "1day"
    EXPIRED = "expired"
    ALL = "all"

    def includes(self, other: "SweepFilter") -> bool:
        return self is SweepFilter.ALL or self is other


class GrantState(str, Enum):
    """Per-grant position in the expiration state machine."""

    ACTIVE = "active"
    ACTIVE_TEMPORARY = "active_temporary"
    REMINDED_3DAY = "reminded_3day"
    REMINDED_1DAY = "reminded_1day"
    EXPIRED = "expired"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    """Serialize a timestamp as a sortable UTC ISO-8601 string."""
    if value is None:
        return None
    return ensure_utc(value).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def from_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    return ensure_utc(datetime.fromisoformat(value))


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and normalise aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass
class RoleGrant:
    """
    A record binding one user to one role, optionally time-bounded.

    ``version`` increases on every write and is the compare-and-set token
    used by the store.
    """

    user_id: str
    role: Role
    is_temporary: bool = False
    expires_at: Optional[datetime] = None
    reminder_3day_sent: bool = False
    reminder_1day_sent: bool = False

    # Audit fields
    granted_at: Optional[datetime] = None
    granted_by: Optional[str] = None
    version: int = 0

    @property
    def grant_id(self) -> str:
        return f"{self.user_id}:{self.role.value}"

    @property
    def state(self) -> GrantState:
        if not self.is_temporary:
            return GrantState.ACTIVE
        if self.reminder_1day_sent:
            return GrantState.REMINDED_1DAY
        if self.reminder_3day_sent:
            return GrantState.REMINDED_3DAY
        return GrantState.ACTIVE_TEMPORARY

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and now >= self.expires_at

    def to_dict(self) -> dict:
        """Convert to dictionary for DynamoDB storage."""
        return {
            "userId": self.user_id,
            "role": self.role.value,
            "isTemporary": self.is_temporary,
            "expiresAt": to_iso(self.expires_at),
            "reminder3DaySent": self.reminder_3day_sent,
            "reminder1DaySent": self.reminder_1day_sent,
            "grantedAt": to_iso(self.granted_at),
            "grantedBy": self.granted_by,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "RoleGrant":
        """Create from dictionary (DynamoDB item)."""
        return cls(
            user_id=data.get("userId", ""),
            role=Role(data.get("role")),
            is_temporary=bool(data.get("isTemporary", False)),
            expires_at=from_iso(data.get("expiresAt")),
            reminder_3day_sent=bool(data.get("reminder3DaySent", False)),
            reminder_1day_sent=bool(data.get("reminder1DaySent", False)),
            granted_at=from_iso(data.get("grantedAt")),
            granted_by=data.get("grantedBy"),
            version=int(data.get("version", 0)),
        )


@dataclass
class GrantPage:
    """One page of a paged grant scan."""

    grants: List[RoleGrant]
    next_cursor: Optional[Any] = None


@dataclass
class AuditRecord:
    """Append-only record of one lifecycle mutation."""

    user_id: str
    role: Role
    action: AuditAction
    performed_by: str
    old_value: Optional[str] = None
    new_value: Optional[str] = None
    timestamp: datetime = field(default_factory=utc_now)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "userId": self.user_id,
            "role": self.role.value,
            "action": self.action.value,
            "performedBy": self.performed_by,
            "oldValue": self.old_value,
            "newValue": self.new_value,
            "timestamp": to_iso(self.timestamp),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "AuditRecord":
        return cls(
            id=data["id"],
            user_id=data["userId"],
            role=Role(data["role"]),
            action=AuditAction(data["action"]),
            performed_by=data.get("performedBy", ""),
            old_value=data.get("oldValue"),
            new_value=data.get("newValue"),
            timestamp=from_iso(data["timestamp"]),
        )


@dataclass
class NotificationEvent:
    """A notice handed to the NotificationDispatcher."""

    type: NotificationType
    user_id: str
    role: Role
    dedup_key: str
    expires_at: Optional[datetime] = None
    performed_by: Optional[str] = None
    correlation_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "type": self.type.value,
            "userId": self.user_id,
            "role": self.role.value,
            "roleDisplayName": self.role.display_name,
            "dedupKey": self.dedup_key,
            "expiresAt": to_iso(self.expires_at),
            "performedBy": self.performed_by,
            "correlationId": self.correlation_id,
            "details": self.details,
        }


class DeliveryStatus(str, Enum):
    DELIVERED = "delivered"
    DUPLICATE = "duplicate"
    # Another caller holds the claim and has not confirmed delivery yet
    IN_FLIGHT = "in_flight"
    FAILED = "failed"


@dataclass
class NotificationResult:
    status: DeliveryStatus
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        """Delivered now or already delivered earlier."""
        return self.status in (DeliveryStatus.DELIVERED, DeliveryStatus.DUPLICATE)


@dataclass
class BulkOperationResult:
    """Outcome of a bulk operation, returned to the caller only."""

    success_count: int = 0
    failure_count: int = 0
    per_user_errors: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    succeeded: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    cancelled: bool = False

    def to_dict(self) -> dict:
        return {
            "successCount": self.success_count,
            "failureCount": self.failure_count,
            "perUserErrors": self.per_user_errors,
            "succeeded": self.succeeded,
            "skipped": self.skipped,
            "cancelled": self.cancelled,
        }


@dataclass
class SweepResult:
    """Aggregate counts from one expiration sweep invocation."""

    three_day_reminders: int = 0
    one_day_reminders: int = 0
    expired_removed: int = 0
    expirations_blocked: int = 0
    grants_scanned: int = 0
    pages_processed: int = 0
    conflicts_skipped: int = 0
    cancelled: bool = False
    preview: bool = False
    previews: List[NotificationEvent] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "threeDayReminders": self.three_day_reminders,
            "oneDayReminders": self.one_day_reminders,
            "expiredRemoved": self.expired_removed,
            "expirationsBlocked": self.expirations_blocked,
            "grantsScanned": self.grants_scanned,
            "pagesProcessed": self.pages_processed,
            "conflictsSkipped": self.conflicts_skipped,
            "cancelled": self.cancelled,
            "preview": self.preview,
            "previews": [p.to_dict() for p in self.previews],
        }


@dataclass
class ExpiringGrant:
    """A temporary grant inside a look-ahead window."""

    grant: RoleGrant
    days_until_expiry: int


# =============================================================================
# Pydantic Models for API Request/Response
# =============================================================================


class RoleAssignRequest(BaseModel):
    """Request body for assigning a role."""

    user_id: str = Field(..., min_length=1, alias="userId")
    role: Role
    expires_at: Optional[datetime] = Field(None, alias="expiresAt")

    model_config = {"populate_by_name": True}

    @field_validator("expires_at")
    @classmethod
    def normalise_expiry(cls, v: Optional[datetime]) -> Optional[datetime]:
        """Naive timestamps are taken to be UTC."""
        return ensure_utc(v) if v is not None else None


class RoleExtendRequest(BaseModel):
    """Request body for extending a temporary role."""

    user_id: str = Field(..., min_length=1, alias="userId")
    role: Role
    new_expires_at: datetime = Field(..., alias="newExpiresAt")

    model_config = {"populate_by_name": True}

    @field_validator("new_expires_at")
    @classmethod
    def normalise_expiry(cls, v: datetime) -> datetime:
        """Naive timestamps are taken to be UTC."""
        return ensure_utc(v)


class BulkRoleRequest(BaseModel):
    """Request body for bulk assign/remove."""

    user_ids: List[str] = Field(..., alias="userIds")
    role: Role
    expires_at: Optional[datetime] = Field(None, alias="expiresAt")

    model_config = {"populate_by_name": True}

    @field_validator("expires_at")
    @classmethod
    def normalise_expiry(cls, v: Optional[datetime]) -> Optional[datetime]:
        """Naive timestamps are taken to be UTC."""
        return ensure_utc(v) if v is not None else None


class BulkExtendRequest(BaseModel):
    """Request body for bulk extend."""

    extensions: List[RoleExtendRequest]


class SweepRequest(BaseModel):
    """Request body for a manual or test sweep trigger."""

    filter: SweepFilter = SweepFilter.ALL
    preview: bool = False


class RoleGrantResponse(BaseModel):
    """Response model for a role grant."""

    user_id: str = Field(..., alias="userId")
    role: Role
    role_display_name: str = Field(..., alias="roleDisplayName")
    is_temporary: bool = Field(..., alias="isTemporary")
    expires_at: Optional[datetime] = Field(None, alias="expiresAt")
    reminder_3day_sent: bool = Field(..., alias="reminder3DaySent")
    reminder_1day_sent: bool = Field(..., alias="reminder1DaySent")
    state: GrantState
    granted_at: Optional[datetime] = Field(None, alias="grantedAt")
    granted_by: Optional[str] = Field(None, alias="grantedBy")

    model_config = {"populate_by_name": True}

    @classmethod
    def from_grant(cls, grant: RoleGrant) -> "RoleGrantResponse":
        """Create response from RoleGrant dataclass."""
        return cls(
            user_id=grant.user_id,
            role=grant.role,
            role_display_name=grant.role.display_name,
            is_temporary=grant.is_temporary,
            expires_at=grant.expires_at,
            reminder_3day_sent=grant.reminder_3day_sent,
            reminder_1day_sent=grant.reminder_1day_sent,
            state=grant.state,
            granted_at=grant.granted_at,
            granted_by=grant.granted_by,
        )


class RoleGrantListResponse(BaseModel):
    """Response model for listing grants."""

    grants: List[RoleGrantResponse]
    total: int


class ExpiringGrantResponse(BaseModel):
    grant: RoleGrantResponse
    days_until_expiry: int = Field(..., alias="daysUntilExpiry")

    model_config = {"populate_by_name": True}


class ExpiringGrantListResponse(BaseModel):
    grants: List[ExpiringGrantResponse]
    total: int
