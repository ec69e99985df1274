"""RoleLifecycleEngine: assign, remove, extend and bulk operations on role grants."""

import asyncio
import logging
import math
from dataclasses import replace
from datetime import datetime, timedelta
from typing import (
    Any,
    Awaitable,
    Callable,
    Iterable,
    List,
    Optional,
    Set,
    Tuple,
    TypeVar,
    Union,
)

from role_lifecycle.shared.errors import (
    ConcurrentModificationError,
    ErrorCode,
    ErrorDetail,
    InvalidExpirationError,
    LastAdminError,
    NotFoundError,
    NotTemporaryError,
    RoleLifecycleError,
    StoreUnavailableError,
    ValidationError,
)

from .audit import AuditLog, create_audit_log
from .config import LifecycleConfig
from .models import (
    ROLE_PRIORITY,
    SYSTEM_ACTOR,
    AuditAction,
    AuditRecord,
    BulkOperationResult,
    DeliveryStatus,
    ExpiringGrant,
    NotificationEvent,
    NotificationResult,
    NotificationType,
    Role,
    RoleGrant,
    SweepFilter,
    SweepResult,
    ensure_utc,
    to_iso,
    utc_now,
)
from .notifications import NotificationDispatcher, create_notification_dispatcher
from .repository import RoleStore, create_role_store

logger = logging.getLogger(__name__)

T = TypeVar("T")

PERMANENT = "permanent"

RoleLike = Union[Role, str]
Extension = Tuple[str, RoleLike, datetime]


def parse_role(role: RoleLike) -> Role:
    """Coerce a role name into the fixed Role enum."""
    if isinstance(role, Role):
        return role
    try:
        return Role(str(role).lower())
    except ValueError:
        raise ValidationError(
            f"Invalid role '{role}'. Expected one of: "
            f"{', '.join(r.value for r in Role)}",
            field="role",
        )


def describe_expiry(grant: Optional[RoleGrant]) -> Optional[str]:
    """Audit value for a grant's expiry: ISO timestamp, 'permanent', or None."""
    if grant is None:
        return None
    return to_iso(grant.expires_at) if grant.is_temporary else PERMANENT


class RoleLifecycleEngine:
    """
    Core of the temporal RBAC system.

    Handles:
    - Single-grant mutations (assign, remove, extend)
    - Bulk mutations with per-user partial failure
    - Last-admin protection, checked atomically with the delete
    - The expiration sweep (see ExpirationSweep)

    Every mutation follows the same order: validate, atomic store write,
    audit append, then a best-effort notification that never affects the
    outcome of the mutation.
    """

    def __init__(
        self,
        store: Optional[RoleStore] = None,
        audit_log: Optional[AuditLog] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
        config: Optional[LifecycleConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """Initialize engine with store, audit log and dispatcher."""
        from .sweep import ExpirationSweep

        self.config = config or LifecycleConfig.from_env()
        self.store = store or create_role_store(self.config.grants_table_name)
        self.audit_log = audit_log or create_audit_log(self.config.audit_table_name)
        self.dispatcher = dispatcher or create_notification_dispatcher(self.config)
        self.clock = clock or utc_now
        self.sweep = ExpirationSweep(self)
        self._pending_notifications: Set["asyncio.Task[NotificationResult]"] = set()

    # =========================================================================
    # Single-grant mutations
    # =========================================================================

    async def assign(
        self,
        user_id: str,
        role: RoleLike,
        expires_at: Optional[datetime] = None,
        performed_by: Optional[str] = None,
    ) -> RoleGrant:
        """
        Assign a role, or update an existing grant of the same role.

        Re-assigning is an idempotent upsert: the expiry and temporary flag
        are replaced and both reminder flags are cleared.

        Args:
            user_id: Target user
            role: Role to grant
            expires_at: Optional expiry; must be strictly in the future
            performed_by: Acting administrator (defaults to "system")

        Returns:
            The stored RoleGrant

        Raises:
            ValidationError: For an empty user id, unknown role, or past expiry
        """
        user_id = self._validate_user_id(user_id)
        role = parse_role(role)
        expires_at = self._validate_future(expires_at, field="expiresAt")
        actor = performed_by or SYSTEM_ACTOR

        async def attempt() -> Tuple[Optional[RoleGrant], RoleGrant]:
            current = await self.store.get_grant(user_id, role)
            grant = RoleGrant(
                user_id=user_id,
                role=role,
                is_temporary=expires_at is not None,
                expires_at=expires_at,
                reminder_3day_sent=False,
                reminder_1day_sent=False,
                granted_at=current.granted_at if current else self.clock(),
                granted_by=actor,
            )
            stored = await self.store.upsert_grant(
                grant, current.version if current else None
            )
            return current, stored

        previous, stored = await self._with_retries(attempt, f"assign {user_id}:{role.value}")

        record = AuditRecord(
            user_id=user_id,
            role=role,
            action=AuditAction.ASSIGNED,
            performed_by=actor,
            old_value=describe_expiry(previous),
            new_value=describe_expiry(stored),
            timestamp=self.clock(),
        )
        await self.append_audit(record)
        self._notify_in_background(
            self._interactive_event(NotificationType.ASSIGNED, stored, actor, record)
        )

        logger.info(
            f"{actor} assigned role {role.value} to {user_id}",
            extra={
                "event": "role_assigned",
                "user_id": user_id,
                "role": role.value,
                "performed_by": actor,
                "expires_at": to_iso(expires_at),
                "updated_existing": previous is not None,
            },
        )
        return stored

    async def remove(
        self,
        user_id: str,
        role: RoleLike,
        performed_by: Optional[str] = None,
    ) -> None:
        """
        Remove a role grant.

        Removing an admin grant succeeds only if another user holds admin;
        the check and the delete commit together.

        Raises:
            ValidationError: For an empty user id or unknown role
            NotFoundError: If the user does not hold the role
            LastAdminError: If this is the last admin grant (no mutation)
        """
        user_id = self._validate_user_id(user_id)
        role = parse_role(role)
        actor = performed_by or SYSTEM_ACTOR

        async def attempt() -> RoleGrant:
            return await self.store.delete_grant(
                user_id, role, require_other_holder=role == Role.ADMIN
            )

        try:
            removed = await self._with_retries(attempt, f"remove {user_id}:{role.value}")
        except LastAdminError:
            logger.warning(
                f"{actor} was refused removal of the last admin grant ({user_id})",
                extra={
                    "event": "last_admin_removal_refused",
                    "user_id": user_id,
                    "performed_by": actor,
                },
            )
            raise

        record = AuditRecord(
            user_id=user_id,
            role=role,
            action=AuditAction.REMOVED,
            performed_by=actor,
            old_value=describe_expiry(removed),
            new_value=None,
            timestamp=self.clock(),
        )
        await self.append_audit(record)
        self._notify_in_background(
            self._interactive_event(NotificationType.REMOVED, removed, actor, record)
        )

        logger.info(
            f"{actor} removed role {role.value} from {user_id}",
            extra={
                "event": "role_removed",
                "user_id": user_id,
                "role": role.value,
                "performed_by": actor,
            },
        )

    async def extend(
        self,
        user_id: str,
        role: RoleLike,
        new_expires_at: datetime,
        performed_by: Optional[str] = None,
    ) -> RoleGrant:
        """
        Move a temporary grant's expiry later and restart its reminder schedule.

        Extension is forward-only; shortening goes through remove + assign.

        Raises:
            NotFoundError: If the grant does not exist
            NotTemporaryError: If the grant is permanent
            InvalidExpirationError: If the new expiry is not strictly later
                than the current one, or is not in the future
        """
        user_id = self._validate_user_id(user_id)
        role = parse_role(role)
        if new_expires_at is None:
            raise InvalidExpirationError("A new expiration is required", field="newExpiresAt")
        new_expires_at = ensure_utc(new_expires_at)
        actor = performed_by or SYSTEM_ACTOR

        async def attempt() -> Tuple[RoleGrant, RoleGrant]:
            current = await self.store.get_grant(user_id, role)
            if current is None:
                raise NotFoundError(f"User {user_id} does not hold role '{role.value}'")
            if not current.is_temporary:
                raise NotTemporaryError(
                    f"Role '{role.value}' for {user_id} is permanent and cannot be extended"
                )
            if new_expires_at <= current.expires_at:
                raise InvalidExpirationError(
                    "New expiration must be later than the current expiration "
                    f"({to_iso(current.expires_at)})",
                    field="newExpiresAt",
                )
            if new_expires_at <= self.clock():
                raise InvalidExpirationError(
                    "New expiration must be in the future", field="newExpiresAt"
                )

            extended = replace(
                current,
                expires_at=new_expires_at,
                reminder_3day_sent=False,
                reminder_1day_sent=False,
            )
            stored = await self.store.upsert_grant(extended, current.version)
            return current, stored

        previous, stored = await self._with_retries(attempt, f"extend {user_id}:{role.value}")

        record = AuditRecord(
            user_id=user_id,
            role=role,
            action=AuditAction.EXTENDED,
            performed_by=actor,
            old_value=to_iso(previous.expires_at),
            new_value=to_iso(stored.expires_at),
            timestamp=self.clock(),
        )
        await self.append_audit(record)
        self._notify_in_background(
            self._interactive_event(NotificationType.EXTENDED, stored, actor, record)
        )

        logger.info(
            f"{actor} extended role {role.value} for {user_id} to {to_iso(new_expires_at)}",
            extra={
                "event": "role_extended",
                "user_id": user_id,
                "role": role.value,
                "performed_by": actor,
                "old_expires_at": to_iso(previous.expires_at),
                "new_expires_at": to_iso(new_expires_at),
            },
        )
        return stored

    # =========================================================================
    # Bulk operations
    # =========================================================================

    async def bulk_assign(
        self,
        user_ids: Iterable[str],
        role: RoleLike,
        expires_at: Optional[datetime] = None,
        performed_by: Optional[str] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> BulkOperationResult:
        """
        Assign one role to many users.

        Structural errors (no users, invalid role, past expiry) raise before
        any user is touched; per-user failures are reported in the result.
        """
        ids = self._validate_bulk_ids(user_ids)
        role = parse_role(role)
        expires_at = self._validate_future(expires_at, field="expiresAt")

        return await self._run_bulk(
            "bulk_assign",
            ids,
            lambda uid: self.assign(uid, role, expires_at, performed_by),
            cancel_event,
        )

    async def bulk_remove(
        self,
        user_ids: Iterable[str],
        role: RoleLike,
        performed_by: Optional[str] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> BulkOperationResult:
        """Remove one role from many users; per-user failures are reported, not raised."""
        ids = self._validate_bulk_ids(user_ids)
        role = parse_role(role)

        return await self._run_bulk(
            "bulk_remove",
            ids,
            lambda uid: self.remove(uid, role, performed_by),
            cancel_event,
        )

    async def bulk_extend(
        self,
        extensions: Iterable[Extension],
        performed_by: Optional[str] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> BulkOperationResult:
        """
        Extend many temporary grants.

        Args:
            extensions: (user_id, role, new_expires_at) triples

        Results are keyed by "{user_id}:{role}".
        """
        items = list(extensions)
        if not items:
            raise ValidationError("At least one extension is required", field="extensions")

        by_key = {}
        for user_id, role, new_expires_at in items:
            user_id = self._validate_user_id(user_id)
            parsed = parse_role(role)
            by_key[f"{user_id}:{parsed.value}"] = (user_id, parsed, new_expires_at)

        def unit(key: str) -> Awaitable[Any]:
            user_id, parsed, new_expires_at = by_key[key]
            return self.extend(user_id, parsed, new_expires_at, performed_by)

        return await self._run_bulk("bulk_extend", list(by_key), unit, cancel_event)

    async def _run_bulk(
        self,
        operation: str,
        keys: List[str],
        unit: Callable[[str], Awaitable[Any]],
        cancel_event: Optional[asyncio.Event],
    ) -> BulkOperationResult:
        """
        Run one unit per key under a bounded concurrency limit.

        Units that have not started when cancel_event is set are skipped;
        units already running finish.
        """
        result = BulkOperationResult()
        semaphore = asyncio.Semaphore(max(1, self.config.bulk_concurrency))

        async def run_unit(key: str) -> None:
            async with semaphore:
                if cancel_event is not None and cancel_event.is_set():
                    result.skipped.append(key)
                    return
                try:
                    await unit(key)
                except RoleLifecycleError as e:
                    result.failure_count += 1
                    result.per_user_errors[key] = e.to_error_detail().model_dump(
                        exclude_none=True
                    )
                    return
                except Exception as e:
                    logger.exception(f"Unexpected error in {operation} for {key}")
                    result.failure_count += 1
                    result.per_user_errors[key] = ErrorDetail(
                        code=ErrorCode.INTERNAL_ERROR,
                        message="Unexpected error",
                        detail=str(e),
                    ).model_dump(exclude_none=True)
                    return
                result.success_count += 1
                result.succeeded.append(key)

        await asyncio.gather(*(run_unit(key) for key in keys))
        result.cancelled = cancel_event is not None and cancel_event.is_set()

        logger.info(
            f"{operation} finished: {result.success_count} succeeded, "
            f"{result.failure_count} failed, {len(result.skipped)} skipped",
            extra={
                "event": operation,
                "success_count": result.success_count,
                "failure_count": result.failure_count,
                "skipped_count": len(result.skipped),
                "cancelled": result.cancelled,
            },
        )
        return result

    # =========================================================================
    # Expiration sweep
    # =========================================================================

    async def run_expiration_sweep(
        self,
        sweep_filter: Union[SweepFilter, str] = SweepFilter.ALL,
        preview: bool = False,
        now: Optional[datetime] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> SweepResult:
        """
        Single entry point for scheduled, manual and test sweeps.

        Args:
            sweep_filter: Restrict to one transition type ("3day", "1day",
                "expired") or run them all
            preview: Compute would-be notifications without sending or mutating
            now: Evaluation time (defaults to the engine clock)
            cancel_event: Cooperative cancellation signal
        """
        if not isinstance(sweep_filter, SweepFilter):
            try:
                sweep_filter = SweepFilter(sweep_filter)
            except ValueError:
                raise ValidationError(
                    f"Invalid sweep filter '{sweep_filter}'", field="filter"
                )
        now = ensure_utc(now) if now is not None else self.clock()
        return await self.sweep.run(sweep_filter, preview, now, cancel_event)

    # =========================================================================
    # Read helpers
    # =========================================================================

    async def get_grant(self, user_id: str, role: RoleLike) -> Optional[RoleGrant]:
        return await self.store.get_grant(user_id, parse_role(role))

    async def has_role(
        self, user_id: str, role: RoleLike, now: Optional[datetime] = None
    ) -> bool:
        """True if the user holds the role and it is not past its expiry."""
        grant = await self.store.get_grant(user_id, parse_role(role))
        if grant is None:
            return False
        return not grant.is_expired(now or self.clock())

    async def list_user_grants(self, user_id: str) -> List[RoleGrant]:
        return await self.store.list_grants(self._validate_user_id(user_id))

    async def get_highest_role(
        self, user_id: str, now: Optional[datetime] = None
    ) -> Optional[Role]:
        """Highest-priority role the user currently holds (admin > moderator > user)."""
        now = now or self.clock()
        held = {g.role for g in await self.list_user_grants(user_id) if not g.is_expired(now)}
        for role in ROLE_PRIORITY:
            if role in held:
                return role
        return None

    async def get_expiring_grants(
        self, days_ahead: int = 7, now: Optional[datetime] = None
    ) -> List[ExpiringGrant]:
        """Temporary grants that expire within the next ``days_ahead`` days."""
        if days_ahead <= 0:
            raise ValidationError("days_ahead must be positive", field="days")
        now = now or self.clock()
        horizon = now + timedelta(days=days_ahead)

        expiring: List[ExpiringGrant] = []
        cursor = None
        while True:
            page = await self.store.list_grants_expiring_before(
                horizon, limit=self.config.sweep_page_size, cursor=cursor
            )
            for grant in page.grants:
                if grant.expires_at > now:
                    remaining = (grant.expires_at - now) / timedelta(days=1)
                    expiring.append(
                        ExpiringGrant(grant=grant, days_until_expiry=math.ceil(remaining))
                    )
            if page.next_cursor is None:
                break
            cursor = page.next_cursor
        return expiring

    # =========================================================================
    # Notifications
    # =========================================================================

    async def safe_notify(self, event: NotificationEvent) -> NotificationResult:
        """Deliver an event; a failure is logged and returned, never raised."""
        try:
            return await self.dispatcher.notify(event)
        except Exception as e:
            logger.error(
                f"Notification dispatcher raised for {event.dedup_key}: {e}",
                exc_info=True,
                extra={"correlation_id": event.correlation_id},
            )
            return NotificationResult(status=DeliveryStatus.FAILED, error=str(e))

    async def drain_notifications(self) -> None:
        """Wait for every fire-and-forget notification issued so far."""
        while self._pending_notifications:
            await asyncio.gather(*list(self._pending_notifications))

    def _notify_in_background(self, event: NotificationEvent) -> None:
        task = asyncio.ensure_future(self.safe_notify(event))
        self._pending_notifications.add(task)
        task.add_done_callback(self._pending_notifications.discard)

    @staticmethod
    def _interactive_event(
        ntype: NotificationType, grant: RoleGrant, actor: str, record: AuditRecord
    ) -> NotificationEvent:
        return NotificationEvent(
            type=ntype,
            user_id=grant.user_id,
            role=grant.role,
            # Each interactive mutation is its own window
            dedup_key=f"{grant.grant_id}:{ntype.value}:{record.id}",
            expires_at=grant.expires_at,
            performed_by=actor,
            correlation_id=record.id,
        )

    # =========================================================================
    # Helpers
    # =========================================================================

    async def append_audit(self, record: AuditRecord) -> None:
        """
        Append an audit record for an already-committed mutation.

        A failed append does not undo the mutation; the full record is logged
        so it can be replayed.
        """
        try:
            await self.audit_log.append(record)
        except StoreUnavailableError as e:
            logger.error(
                f"Audit append failed for {record.action.value} "
                f"{record.user_id}:{record.role.value}: {e.message}",
                extra={"event": "audit_append_failed", "audit_record": record.to_dict()},
            )

    async def _with_retries(self, operation: Callable[[], Awaitable[T]], label: str) -> T:
        """Re-run a read-validate-write unit when its compare-and-set loses a race."""
        attempts = max(1, self.config.mutation_max_retries)
        for attempt in range(1, attempts + 1):
            try:
                return await operation()
            except ConcurrentModificationError:
                if attempt == attempts:
                    logger.warning(f"Giving up on {label} after {attempts} conflicting attempts")
                    raise
                logger.debug(f"Conflict on {label} (attempt {attempt}), retrying")
        raise AssertionError("unreachable")

    def _validate_future(
        self, value: Optional[datetime], field: str
    ) -> Optional[datetime]:
        if value is None:
            return None
        value = ensure_utc(value)
        if value <= self.clock():
            raise ValidationError("Expiration date must be in the future", field=field)
        return value

    @staticmethod
    def _validate_user_id(user_id: str) -> str:
        if not user_id or not str(user_id).strip():
            raise ValidationError("User ID is required", field="userId")
        return str(user_id)

    def _validate_bulk_ids(self, user_ids: Iterable[str]) -> List[str]:
        if user_ids is None:
            raise ValidationError("At least one user is required", field="userIds")
        # Order-preserving de-duplication; the caller's collection is a set
        ids = list(dict.fromkeys(self._validate_user_id(uid) for uid in user_ids))
        if not ids:
            raise ValidationError("At least one user is required", field="userIds")
        return ids


# Global engine instance
_engine_instance: Optional[RoleLifecycleEngine] = None


def get_role_lifecycle_engine() -> RoleLifecycleEngine:
    """Get or create the global RoleLifecycleEngine instance."""
    global _engine_instance
    if _engine_instance is None:
        _engine_instance = RoleLifecycleEngine()
    return _engine_instance
