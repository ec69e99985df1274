"""
Expiration sweep: the per-grant reminder/expiry state machine.

    Active                              (permanent, never touched)
    ActiveTemporary --(<=72h left)-->   Reminded3Day
    Reminded3Day    --(<=24h left)-->   Reminded1Day
    any temporary   --(expired)----->   Expired (grant deleted)

What remains to be done is derived only from persisted grant state, so a
sweep can be interrupted at any point and the next invocation picks up the
rest. Redundant invocations are made harmless by the compare-and-set writes
and by the dispatcher's dedup keys.
"""

import asyncio
import logging
import math
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Optional

from role_lifecycle.shared.errors import (
    ConcurrentModificationError,
    LastAdminError,
    NotFoundError,
)

from .models import (
    AuditAction,
    AuditRecord,
    NotificationEvent,
    NotificationType,
    Role,
    RoleGrant,
    SYSTEM_ACTOR,
    SweepFilter,
    SweepResult,
    to_iso,
)

if TYPE_CHECKING:
    from .engine import RoleLifecycleEngine

logger = logging.getLogger(__name__)

# expires_at < horizon must include expires_at == now + window
_EPSILON = timedelta(microseconds=1)


@dataclass
class _PreviewState:
    """Admin holders left after the expiries a preview has already predicted."""

    admin_holders: Optional[int] = None


class ExpirationSweep:
    """Runs one paged pass over temporary grants for a RoleLifecycleEngine."""

    def __init__(self, engine: "RoleLifecycleEngine"):
        self.engine = engine

    @property
    def config(self):
        return self.engine.config

    async def run(
        self,
        sweep_filter: SweepFilter,
        preview: bool,
        now: datetime,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> SweepResult:
        result = SweepResult(preview=preview)
        preview_state = _PreviewState()
        horizon = self._scan_horizon(sweep_filter, now)

        logger.info(
            f"Starting expiration sweep (filter={sweep_filter.value}, preview={preview})",
            extra={"event": "sweep_started", "filter": sweep_filter.value, "preview": preview},
        )

        cursor = None
        while not self._cancelled(cancel_event):
            page = await self.engine.store.list_grants_expiring_before(
                horizon, limit=self.config.sweep_page_size, cursor=cursor
            )
            result.pages_processed += 1

            for grant in page.grants:
                if self._cancelled(cancel_event):
                    break
                result.grants_scanned += 1
                await self._process_grant(
                    grant, sweep_filter, preview, now, result, preview_state
                )

            if page.next_cursor is None:
                break
            cursor = page.next_cursor

        result.cancelled = self._cancelled(cancel_event)

        logger.info(
            f"Expiration sweep finished: {result.three_day_reminders} 3-day reminders, "
            f"{result.one_day_reminders} 1-day reminders, {result.expired_removed} expired, "
            f"{result.expirations_blocked} blocked",
            extra={"event": "sweep_finished", **result.to_dict()},
        )
        return result

    # =========================================================================
    # Transitions
    # =========================================================================

    async def _process_grant(
        self,
        grant: RoleGrant,
        sweep_filter: SweepFilter,
        preview: bool,
        now: datetime,
        result: SweepResult,
        preview_state: _PreviewState,
    ) -> None:
        if not grant.is_temporary or grant.expires_at is None:
            return

        if grant.is_expired(now):
            if sweep_filter.includes(SweepFilter.EXPIRED):
                await self._expire(grant, preview, now, result, preview_state)
            return

        remaining = grant.expires_at - now
        if remaining <= self.config.reminder_1day_window:
            # A grant that jumped straight into the 1-day window only gets the 1-day reminder
            if not grant.reminder_1day_sent and sweep_filter.includes(SweepFilter.ONE_DAY):
                await self._remind(grant, NotificationType.REMINDER_1DAY, preview, now, result)
            return

        if remaining <= self.config.reminder_3day_window:
            if not grant.reminder_3day_sent and sweep_filter.includes(SweepFilter.THREE_DAY):
                await self._remind(grant, NotificationType.REMINDER_3DAY, preview, now, result)

    async def _remind(
        self,
        grant: RoleGrant,
        ntype: NotificationType,
        preview: bool,
        now: datetime,
        result: SweepResult,
    ) -> None:
        remaining = grant.expires_at - now
        event = NotificationEvent(
            type=ntype,
            user_id=grant.user_id,
            role=grant.role,
            dedup_key=self.dedup_key(grant, ntype, now),
            expires_at=grant.expires_at,
            performed_by=None,
            details={
                "hoursUntilExpiry": round(remaining / timedelta(hours=1)),
                "daysUntilExpiry": math.ceil(remaining / timedelta(days=1)),
            },
        )

        if preview:
            result.previews.append(event)
            self._count_reminder(ntype, result)
            return

        outcome = await self.engine.safe_notify(event)
        if not outcome.ok:
            # Flag stays unset; the next sweep retries
            logger.warning(
                f"{ntype.value} reminder for {grant.grant_id} not delivered: {outcome.error}"
            )
            return

        if ntype == NotificationType.REMINDER_1DAY:
            updated = replace(grant, reminder_3day_sent=True, reminder_1day_sent=True)
        else:
            updated = replace(grant, reminder_3day_sent=True)

        try:
            await self.engine.store.upsert_grant(updated, grant.version)
        except ConcurrentModificationError:
            result.conflicts_skipped += 1
            logger.info(
                f"Grant {grant.grant_id} changed during sweep; {ntype.value} flag not set"
            )
            return

        self._count_reminder(ntype, result)

    async def _expire(
        self,
        grant: RoleGrant,
        preview: bool,
        now: datetime,
        result: SweepResult,
        preview_state: _PreviewState,
    ) -> None:
        is_admin = grant.role == Role.ADMIN

        if preview:
            if is_admin and preview_state.admin_holders is None:
                preview_state.admin_holders = await self.engine.store.count_users_with_role(
                    Role.ADMIN
                )
            if is_admin and preview_state.admin_holders <= 1:
                result.previews.append(self._blocked_event(grant, now, correlation_id=None))
                result.expirations_blocked += 1
            else:
                if is_admin:
                    preview_state.admin_holders -= 1
                result.previews.append(self._expired_event(grant, now, correlation_id=None))
                result.expired_removed += 1
            return

        try:
            await self.engine.store.delete_grant(
                grant.user_id,
                grant.role,
                expected_version=grant.version,
                require_other_holder=is_admin,
            )
        except LastAdminError:
            await self._block_expiration(grant, now, result)
            return
        except (ConcurrentModificationError, NotFoundError):
            # Extended, re-assigned or removed since the page was read
            result.conflicts_skipped += 1
            logger.info(f"Grant {grant.grant_id} changed during sweep; expiry skipped")
            return

        record = AuditRecord(
            user_id=grant.user_id,
            role=grant.role,
            action=AuditAction.EXPIRED,
            performed_by=SYSTEM_ACTOR,
            old_value=to_iso(grant.expires_at),
            new_value=None,
            timestamp=now,
        )
        await self.engine.append_audit(record)
        await self.engine.safe_notify(self._expired_event(grant, now, record.id))
        result.expired_removed += 1

        logger.info(
            f"Expired role {grant.role.value} for {grant.user_id}",
            extra={
                "event": "role_expired",
                "user_id": grant.user_id,
                "role": grant.role.value,
                "expires_at": to_iso(grant.expires_at),
            },
        )

    async def _block_expiration(
        self, grant: RoleGrant, now: datetime, result: SweepResult
    ) -> None:
        """The last admin grant reached expiry: keep it and escalate."""
        record = AuditRecord(
            user_id=grant.user_id,
            role=grant.role,
            action=AuditAction.EXPIRATION_BLOCKED,
            performed_by=SYSTEM_ACTOR,
            old_value=to_iso(grant.expires_at),
            new_value=to_iso(grant.expires_at),
            timestamp=now,
        )
        await self.engine.append_audit(record)
        await self.engine.safe_notify(self._blocked_event(grant, now, record.id))
        result.expirations_blocked += 1

        logger.warning(
            f"Expiry of the last admin grant ({grant.user_id}) was blocked",
            extra={
                "event": "role_expiration_blocked",
                "user_id": grant.user_id,
                "role": grant.role.value,
                "expires_at": to_iso(grant.expires_at),
                "correlation_id": record.id,
            },
        )

    # =========================================================================
    # Helpers
    # =========================================================================

    @staticmethod
    def dedup_key(grant: RoleGrant, ntype: NotificationType, now: datetime) -> str:
        """
        (grant id, notification type, day) for sweep-issued notifications.

        The grant id is qualified by its expiry so an extended grant starts
        a fresh reminder schedule.
        """
        return f"{grant.grant_id}@{to_iso(grant.expires_at)}:{ntype.value}:{now.date().isoformat()}"

    def _expired_event(
        self, grant: RoleGrant, now: datetime, correlation_id: Optional[str]
    ) -> NotificationEvent:
        return NotificationEvent(
            type=NotificationType.EXPIRED,
            user_id=grant.user_id,
            role=grant.role,
            dedup_key=self.dedup_key(grant, NotificationType.EXPIRED, now),
            expires_at=grant.expires_at,
            correlation_id=correlation_id,
        )

    def _blocked_event(
        self, grant: RoleGrant, now: datetime, correlation_id: Optional[str]
    ) -> NotificationEvent:
        return NotificationEvent(
            type=NotificationType.CRITICAL,
            user_id=grant.user_id,
            role=grant.role,
            dedup_key=self.dedup_key(grant, NotificationType.CRITICAL, now),
            expires_at=grant.expires_at,
            correlation_id=correlation_id,
            details={
                "severity": "critical",
                "reason": "last_admin_expiration_blocked",
                "message": (
                    "The only remaining admin grant has reached its expiry and was kept. "
                    "Assign another admin or make this grant permanent."
                ),
            },
        )

    @staticmethod
    def _count_reminder(ntype: NotificationType, result: SweepResult) -> None:
        if ntype == NotificationType.REMINDER_1DAY:
            result.one_day_reminders += 1
        else:
            result.three_day_reminders += 1

    def _scan_horizon(self, sweep_filter: SweepFilter, now: datetime) -> datetime:
        if sweep_filter.includes(SweepFilter.THREE_DAY):
            window = max(self.config.reminder_3day_window, self.config.reminder_1day_window)
        elif sweep_filter.includes(SweepFilter.ONE_DAY):
            window = self.config.reminder_1day_window
        else:
            window = timedelta(0)
        return now + window + _EPSILON

    @staticmethod
    def _cancelled(cancel_event: Optional[asyncio.Event]) -> bool:
        return cancel_event is not None and cancel_event.is_set()
