"""Tests for the expiration sweep: reminders, expiry, blocking, preview, filters and paging."""

import asyncio
from datetime import timedelta

import pytest

from conftest import FailingDispatcher
from role_lifecycle.shared.errors import ValidationError
from role_lifecycle.shared.rbac import (
    AuditAction,
    InMemoryRoleStore,
    LifecycleConfig,
    NotificationType,
    Role,
    RoleGrant,
    RoleLifecycleEngine,
    SweepFilter,
)
from role_lifecycle.shared.rbac.sweep import ExpirationSweep


def delivered_of(dispatcher, ntype):
    return [e for e in dispatcher.delivered if e.type == ntype]


# =============================================================================
# Reminders
# =============================================================================


@pytest.mark.asyncio
async def test_hourly_sweeps_send_each_reminder_once(engine, store, dispatcher, audit_log, clock) -> None:
    expiry = clock.now + timedelta(hours=100)
    await engine.assign("u1", "moderator", expiry)
    await engine.drain_notifications()

    first_3day_hour = None
    first_1day_hour = None
    for hour in range(1, 101):
        clock.advance(timedelta(hours=1))
        await engine.run_expiration_sweep()

        grant = await store.get_grant("u1", Role.MODERATOR)
        if grant is None:
            assert hour == 100
            break
        if grant.reminder_3day_sent and first_3day_hour is None:
            first_3day_hour = hour
        if grant.reminder_1day_sent and first_1day_hour is None:
            first_1day_hour = hour

    assert first_3day_hour == 28
    assert first_1day_hour == 76
    assert len(delivered_of(dispatcher, NotificationType.REMINDER_3DAY)) == 1
    assert len(delivered_of(dispatcher, NotificationType.REMINDER_1DAY)) == 1
    assert len(delivered_of(dispatcher, NotificationType.EXPIRED)) == 1
    assert audit_log.list_records(user_id="u1")[-1].action == AuditAction.EXPIRED


@pytest.mark.asyncio
async def test_grant_entering_one_day_window_directly_skips_three_day(engine, store, dispatcher, clock) -> None:
    await engine.assign("u1", "user", clock.now + timedelta(hours=10))

    result = await engine.run_expiration_sweep()

    assert result.three_day_reminders == 0
    assert result.one_day_reminders == 1
    grant = await store.get_grant("u1", Role.USER)
    assert grant.reminder_3day_sent and grant.reminder_1day_sent
    assert delivered_of(dispatcher, NotificationType.REMINDER_3DAY) == []

    event = delivered_of(dispatcher, NotificationType.REMINDER_1DAY)[0]
    assert event.details == {"hoursUntilExpiry": 10, "daysUntilExpiry": 1}


@pytest.mark.asyncio
async def test_permanent_grants_are_never_touched(engine, store, clock) -> None:
    await engine.assign("u1", "moderator")
    clock.advance(timedelta(days=365))

    result = await engine.run_expiration_sweep()

    assert result.grants_scanned == 0
    assert await store.get_grant("u1", Role.MODERATOR) is not None


@pytest.mark.asyncio
async def test_failed_reminder_leaves_flag_unset_and_is_retried(store, audit_log, clock) -> None:
    dispatcher = FailingDispatcher(failures=0)
    engine = RoleLifecycleEngine(
        store=store,
        audit_log=audit_log,
        dispatcher=dispatcher,
        config=LifecycleConfig(),
        clock=clock,
    )
    await engine.assign("u1", "user", clock.now + timedelta(hours=48))
    await engine.drain_notifications()

    # Every attempt of the next delivery fails (1 try + 2 retries)
    dispatcher.failures = 3

    first = await engine.run_expiration_sweep()
    assert first.three_day_reminders == 0
    assert not (await store.get_grant("u1", Role.USER)).reminder_3day_sent

    clock.advance(timedelta(hours=1))
    second = await engine.run_expiration_sweep()
    assert second.three_day_reminders == 1
    assert (await store.get_grant("u1", Role.USER)).reminder_3day_sent
    assert len(delivered_of(dispatcher, NotificationType.REMINDER_3DAY)) == 1


@pytest.mark.asyncio
async def test_overlapping_sweeps_deliver_one_reminder(engine, store, dispatcher, clock) -> None:
    await engine.assign("u1", "user", clock.now + timedelta(hours=60))

    results = await asyncio.gather(
        engine.run_expiration_sweep(), engine.run_expiration_sweep()
    )

    assert sum(r.three_day_reminders for r in results) == 1
    assert len(delivered_of(dispatcher, NotificationType.REMINDER_3DAY)) == 1
    assert (await store.get_grant("u1", Role.USER)).reminder_3day_sent


@pytest.mark.asyncio
async def test_overlapping_sweeps_keep_flag_unset_when_delivery_fails(store, audit_log, clock) -> None:
    class SlowFailingDispatcher(FailingDispatcher):
        async def _deliver(self, event):
            await asyncio.sleep(0.05)
            await super()._deliver(event)

    dispatcher = SlowFailingDispatcher(failures=0, max_retries=0)
    engine = RoleLifecycleEngine(
        store=store,
        audit_log=audit_log,
        dispatcher=dispatcher,
        config=LifecycleConfig(),
        clock=clock,
    )
    await engine.assign("u1", "moderator", clock.now + timedelta(hours=100))
    await engine.drain_notifications()
    clock.advance(timedelta(hours=30))
    dispatcher.failures = 1

    results = await asyncio.gather(
        engine.run_expiration_sweep(), engine.run_expiration_sweep()
    )

    assert sum(r.three_day_reminders for r in results) == 0
    assert delivered_of(dispatcher, NotificationType.REMINDER_3DAY) == []
    assert not (await store.get_grant("u1", Role.MODERATOR)).reminder_3day_sent

    retry = await engine.run_expiration_sweep()
    assert retry.three_day_reminders == 1
    assert len(delivered_of(dispatcher, NotificationType.REMINDER_3DAY)) == 1
    assert (await store.get_grant("u1", Role.MODERATOR)).reminder_3day_sent


# =============================================================================
# Expiry
# =============================================================================


@pytest.mark.asyncio
async def test_assign_extend_expire_round_trip(engine, store, audit_log, clock) -> None:
    first_expiry = clock.now + timedelta(days=2)
    second_expiry = clock.now + timedelta(days=9)
    await engine.assign("u1", "moderator", first_expiry)
    await engine.extend("u1", "moderator", second_expiry)

    clock.now = first_expiry
    early = await engine.run_expiration_sweep(SweepFilter.EXPIRED)
    assert early.expired_removed == 0

    clock.now = second_expiry
    result = await engine.run_expiration_sweep()
    assert result.expired_removed == 1
    assert await store.get_grant("u1", Role.MODERATOR) is None

    expired = [r for r in audit_log.list_records(user_id="u1") if r.action == AuditAction.EXPIRED]
    assert len(expired) == 1
    assert expired[0].performed_by == "system"

    again = await engine.run_expiration_sweep()
    assert again.expired_removed == 0
    assert again.grants_scanned == 0


@pytest.mark.asyncio
async def test_expired_admin_removed_when_another_admin_exists(engine, store, seeded_admin, clock) -> None:
    await engine.assign("u1", "admin", clock.now + timedelta(hours=1))
    clock.advance(timedelta(hours=2))

    result = await engine.run_expiration_sweep()

    assert result.expired_removed == 1
    assert result.expirations_blocked == 0
    assert await store.get_grant("u1", Role.ADMIN) is None
    assert await store.count_users_with_role(Role.ADMIN) == 1


@pytest.mark.asyncio
async def test_expiry_of_last_admin_is_blocked_and_escalated(engine, store, audit_log, dispatcher, clock) -> None:
    await engine.assign("u1", "admin", clock.now + timedelta(hours=1))
    clock.advance(timedelta(hours=2))

    result = await engine.run_expiration_sweep()

    assert result.expirations_blocked == 1
    assert result.expired_removed == 0
    assert await store.get_grant("u1", Role.ADMIN) is not None

    blocked = audit_log.list_records(user_id="u1")[-1]
    assert blocked.action == AuditAction.EXPIRATION_BLOCKED
    assert blocked.performed_by == "system"

    critical = delivered_of(dispatcher, NotificationType.CRITICAL)
    assert len(critical) == 1
    assert critical[0].details["severity"] == "critical"
    assert critical[0].correlation_id == blocked.id

    # Audited on every sweep, alerted once per day
    clock.advance(timedelta(hours=1))
    await engine.run_expiration_sweep()
    assert len(audit_log.list_records(user_id="u1")) == 3
    assert len(delivered_of(dispatcher, NotificationType.CRITICAL)) == 1

    clock.advance(timedelta(days=1))
    await engine.run_expiration_sweep()
    assert len(delivered_of(dispatcher, NotificationType.CRITICAL)) == 2


@pytest.mark.asyncio
async def test_extend_racing_expiry_wins(audit_log, dispatcher, clock) -> None:
    class RacingStore(InMemoryRoleStore):
        """Extends the grant between the sweep's page read and its delete."""

        async def list_grants_expiring_before(self, ts, limit=100, cursor=None):
            page = await super().list_grants_expiring_before(ts, limit, cursor)
            for grant in page.grants:
                current = await self.get_grant(grant.user_id, grant.role)
                current.expires_at = clock.now + timedelta(days=30)
                await self.upsert_grant(current, current.version)
            return page

    store = RacingStore()
    engine = RoleLifecycleEngine(
        store=store, audit_log=audit_log, dispatcher=dispatcher, config=LifecycleConfig(), clock=clock
    )
    await engine.assign("u1", "user", clock.now + timedelta(hours=1))
    clock.advance(timedelta(hours=2))

    result = await engine.run_expiration_sweep()
    await engine.drain_notifications()

    assert result.expired_removed == 0
    assert result.conflicts_skipped == 1
    grant = await store.get_grant("u1", Role.USER)
    assert grant.expires_at == clock.now + timedelta(days=30)


# =============================================================================
# Preview, filters, paging, cancellation
# =============================================================================


@pytest.mark.asyncio
async def test_preview_has_no_side_effects(engine, store, audit_log, dispatcher, clock) -> None:
    await engine.assign("three", "user", clock.now + timedelta(hours=50))
    await engine.assign("one", "user", clock.now + timedelta(hours=5))
    await engine.assign("gone", "moderator", clock.now + timedelta(hours=1))
    await engine.assign("last", "admin", clock.now + timedelta(hours=1))
    await engine.drain_notifications()
    clock.advance(timedelta(hours=2))

    before_grants = await store.list_grants()
    before_audit = len(audit_log.list_records())
    before_delivered = len(dispatcher.delivered)

    result = await engine.run_expiration_sweep(preview=True)

    assert result.preview
    assert result.three_day_reminders == 1
    assert result.one_day_reminders == 1
    assert result.expired_removed == 1
    assert result.expirations_blocked == 1
    assert sorted(e.type.value for e in result.previews) == [
        "critical",
        "expired",
        "reminder_1day",
        "reminder_3day",
    ]

    assert await store.list_grants() == before_grants
    assert len(audit_log.list_records()) == before_audit
    assert len(dispatcher.delivered) == before_delivered


@pytest.mark.asyncio
async def test_preview_counts_admins_already_expired_in_the_run(engine, store, clock) -> None:
    await engine.assign("a1", "admin", clock.now + timedelta(hours=1))
    await engine.assign("a2", "admin", clock.now + timedelta(hours=2))
    clock.advance(timedelta(hours=3))

    preview = await engine.run_expiration_sweep(preview=True)

    assert (preview.expired_removed, preview.expirations_blocked) == (1, 1)
    assert sorted(e.type.value for e in preview.previews) == ["critical", "expired"]
    assert await store.count_users_with_role(Role.ADMIN) == 2

    actual = await engine.run_expiration_sweep()

    assert (actual.expired_removed, actual.expirations_blocked) == (1, 1)
    assert await store.get_grant("a1", Role.ADMIN) is None
    assert await store.get_grant("a2", Role.ADMIN) is not None


@pytest.mark.asyncio
async def test_filter_restricts_transition_type(engine, store, clock) -> None:
    await engine.assign("three", "user", clock.now + timedelta(hours=50))
    await engine.assign("one", "user", clock.now + timedelta(hours=5))
    await engine.assign("gone", "user", clock.now + timedelta(minutes=30))
    clock.advance(timedelta(hours=1))

    three = await engine.run_expiration_sweep("3day")
    assert (three.three_day_reminders, three.one_day_reminders, three.expired_removed) == (1, 0, 0)
    assert not (await store.get_grant("one", Role.USER)).reminder_1day_sent

    one = await engine.run_expiration_sweep(SweepFilter.ONE_DAY)
    assert (one.three_day_reminders, one.one_day_reminders, one.expired_removed) == (0, 1, 0)
    assert await store.get_grant("gone", Role.USER) is not None

    expired = await engine.run_expiration_sweep("expired")
    assert (expired.three_day_reminders, expired.one_day_reminders, expired.expired_removed) == (0, 0, 1)
    assert await store.get_grant("gone", Role.USER) is None


@pytest.mark.asyncio
async def test_invalid_filter_is_rejected(engine) -> None:
    with pytest.raises(ValidationError):
        await engine.run_expiration_sweep("weekly")


@pytest.mark.asyncio
async def test_sweep_pages_through_grants(store, audit_log, dispatcher, clock) -> None:
    engine = RoleLifecycleEngine(
        store=store,
        audit_log=audit_log,
        dispatcher=dispatcher,
        config=LifecycleConfig(sweep_page_size=2),
        clock=clock,
    )
    for i in range(5):
        await engine.assign(f"u{i}", "user", clock.now + timedelta(hours=30 + i))
    await engine.drain_notifications()

    result = await engine.run_expiration_sweep()

    assert result.grants_scanned == 5
    assert result.pages_processed == 3
    assert result.three_day_reminders == 5


@pytest.mark.asyncio
async def test_cancelled_sweep_leaves_work_for_next_run(engine, store, clock) -> None:
    await engine.assign("u1", "user", clock.now + timedelta(hours=30))
    cancel = asyncio.Event()
    cancel.set()

    result = await engine.run_expiration_sweep(cancel_event=cancel)
    assert result.cancelled
    assert result.grants_scanned == 0
    assert not (await store.get_grant("u1", Role.USER)).reminder_3day_sent

    resumed = await engine.run_expiration_sweep()
    assert resumed.three_day_reminders == 1


def test_dedup_key_is_scoped_to_expiry_and_day(clock) -> None:
    grant = RoleGrant(
        user_id="u1", role=Role.USER, is_temporary=True, expires_at=clock.now + timedelta(days=2)
    )
    key = ExpirationSweep.dedup_key(grant, NotificationType.REMINDER_3DAY, clock.now)

    assert key == "u1:user@2026-03-04T09:00:00.000000Z:reminder_3day:2026-03-02"
    assert key != ExpirationSweep.dedup_key(
        grant, NotificationType.REMINDER_3DAY, clock.now + timedelta(days=1)
    )
