"""Temporal RBAC lifecycle engine: role grants, audit, notifications and the expiration sweep."""

from .models import (
    AuditAction,
    AuditRecord,
    BulkOperationResult,
    ExpiringGrant,
    GrantState,
    NotificationEvent,
    NotificationResult,
    NotificationType,
    Role,
    RoleGrant,
    SweepFilter,
    SweepResult,
)
from .config import LifecycleConfig
from .repository import RoleStore, InMemoryRoleStore, DynamoDBRoleStore, create_role_store
from .audit import AuditLog, InMemoryAuditLog, DynamoDBAuditLog, create_audit_log
from .notifications import (
    NotificationDispatcher,
    InMemoryNotificationDispatcher,
    HttpNotificationDispatcher,
    create_notification_dispatcher,
)
from .engine import RoleLifecycleEngine, get_role_lifecycle_engine

__all__ = [
    "AuditAction",
    "AuditRecord",
    "BulkOperationResult",
    "ExpiringGrant",
    "GrantState",
    "NotificationEvent",
    "NotificationResult",
    "NotificationType",
    "Role",
    "RoleGrant",
    "SweepFilter",
    "SweepResult",
    "LifecycleConfig",
    "RoleStore",
    "InMemoryRoleStore",
    "DynamoDBRoleStore",
    "create_role_store",
    "AuditLog",
    "InMemoryAuditLog",
    "DynamoDBAuditLog",
    "create_audit_log",
    "NotificationDispatcher",
    "InMemoryNotificationDispatcher",
    "HttpNotificationDispatcher",
    "create_notification_dispatcher",
    "RoleLifecycleEngine",
    "get_role_lifecycle_engine",
]
