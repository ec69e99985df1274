"""Tests for single-grant mutations and read helpers on RoleLifecycleEngine."""

import logging
from datetime import timedelta

import pytest

from conftest import BrokenAuditLog, FailingDispatcher
from role_lifecycle.shared.errors import (
    ConcurrentModificationError,
    InvalidExpirationError,
    LastAdminError,
    NotFoundError,
    NotTemporaryError,
    ValidationError,
)
from role_lifecycle.shared.rbac import (
    AuditAction,
    InMemoryRoleStore,
    NotificationType,
    Role,
    RoleLifecycleEngine,
)
from role_lifecycle.shared.rbac.models import GrantState, to_iso


# =============================================================================
# assign
# =============================================================================


@pytest.mark.asyncio
async def test_assign_permanent_grant(engine, audit_log, dispatcher) -> None:
    grant = await engine.assign("u1", "moderator", performed_by="alice@example.com")
    await engine.drain_notifications()

    assert grant.role == Role.MODERATOR
    assert not grant.is_temporary
    assert grant.expires_at is None
    assert grant.state == GrantState.ACTIVE
    assert grant.granted_by == "alice@example.com"

    records = audit_log.list_records(user_id="u1")
    assert [r.action for r in records] == [AuditAction.ASSIGNED]
    assert records[0].old_value is None
    assert records[0].new_value == "permanent"

    assert [e.type for e in dispatcher.delivered] == [NotificationType.ASSIGNED]
    assert dispatcher.delivered[0].performed_by == "alice@example.com"
    assert dispatcher.delivered[0].correlation_id == records[0].id


@pytest.mark.asyncio
async def test_assign_is_idempotent_upsert(engine, store, audit_log, clock) -> None:
    await engine.assign("u1", Role.USER)
    await engine.assign("u1", Role.USER)
    await engine.assign("u1", Role.USER)

    grants = await store.list_grants("u1")
    assert len(grants) == 1
    assert len(audit_log.list_records(user_id="u1", role=Role.USER)) == 3


@pytest.mark.asyncio
async def test_reassign_replaces_expiry_and_clears_reminders(engine, store, clock) -> None:
    first_expiry = clock.now + timedelta(hours=50)
    original = await engine.assign("u1", "moderator", first_expiry)

    result = await engine.run_expiration_sweep()
    assert result.three_day_reminders == 1
    assert (await store.get_grant("u1", Role.MODERATOR)).reminder_3day_sent

    clock.advance(timedelta(hours=1))
    new_expiry = clock.now + timedelta(days=30)
    updated = await engine.assign("u1", "moderator", new_expiry)

    assert updated.expires_at == new_expiry
    assert not updated.reminder_3day_sent
    assert not updated.reminder_1day_sent
    assert updated.granted_at == original.granted_at
    assert updated.version == original.version + 2


@pytest.mark.asyncio
async def test_assign_records_previous_expiry(engine, audit_log, clock) -> None:
    expiry = clock.now + timedelta(days=10)
    await engine.assign("u1", "user", expiry)
    await engine.assign("u1", "user")

    latest = audit_log.list_records(user_id="u1")[-1]
    assert latest.old_value == to_iso(expiry)
    assert latest.new_value == "permanent"


@pytest.mark.asyncio
async def test_assign_rejects_past_expiry(engine, store, clock) -> None:
    with pytest.raises(ValidationError) as exc_info:
        await engine.assign("u1", "user", clock.now - timedelta(minutes=1))

    assert exc_info.value.field == "expiresAt"
    assert await store.get_grant("u1", Role.USER) is None


@pytest.mark.asyncio
async def test_assign_rejects_expiry_equal_to_now(engine, clock) -> None:
    with pytest.raises(ValidationError):
        await engine.assign("u1", "user", clock.now)


@pytest.mark.asyncio
async def test_assign_rejects_empty_user_and_unknown_role(engine) -> None:
    with pytest.raises(ValidationError):
        await engine.assign("  ", "user")

    with pytest.raises(ValidationError) as exc_info:
        await engine.assign("u1", "superuser")
    assert exc_info.value.field == "role"


@pytest.mark.asyncio
async def test_assign_retries_after_lost_compare_and_set(audit_log, dispatcher, config, clock) -> None:
    class RacyStore(InMemoryRoleStore):
        def __init__(self):
            super().__init__()
            self.conflicts = 1

        async def upsert_grant(self, grant, expected_version):
            if self.conflicts:
                self.conflicts -= 1
                raise ConcurrentModificationError("lost the race")
            return await super().upsert_grant(grant, expected_version)

    engine = RoleLifecycleEngine(
        store=RacyStore(), audit_log=audit_log, dispatcher=dispatcher, config=config, clock=clock
    )

    grant = await engine.assign("u1", "user")
    assert grant.version == 1
    assert len(audit_log.list_records()) == 1


# =============================================================================
# remove
# =============================================================================


@pytest.mark.asyncio
async def test_remove_grant(engine, store, audit_log, dispatcher, clock) -> None:
    expiry = clock.now + timedelta(days=5)
    await engine.assign("u1", "moderator", expiry)

    await engine.remove("u1", "moderator", performed_by="alice@example.com")
    await engine.drain_notifications()

    assert await store.get_grant("u1", Role.MODERATOR) is None
    removal = audit_log.list_records(user_id="u1")[-1]
    assert removal.action == AuditAction.REMOVED
    assert removal.old_value == to_iso(expiry)
    assert removal.new_value is None
    assert dispatcher.delivered[-1].type == NotificationType.REMOVED


@pytest.mark.asyncio
async def test_remove_missing_grant_raises_not_found(engine) -> None:
    with pytest.raises(NotFoundError):
        await engine.remove("ghost", "user")


@pytest.mark.asyncio
async def test_remove_last_admin_is_refused(engine, store, audit_log) -> None:
    before = await engine.assign("u1", "admin")

    with pytest.raises(LastAdminError) as exc_info:
        await engine.remove("u1", "admin")

    assert exc_info.value.code.value == "last_admin"
    assert await store.get_grant("u1", Role.ADMIN) == before
    assert [r.action for r in audit_log.list_records()] == [AuditAction.ASSIGNED]


@pytest.mark.asyncio
async def test_last_admin_scenario(engine, store) -> None:
    await engine.assign("u1", "admin")
    with pytest.raises(LastAdminError):
        await engine.remove("u1", "admin")

    await engine.assign("u2", "admin")
    await engine.remove("u1", "admin")

    assert not await engine.has_role("u1", "admin")
    assert await engine.has_role("u2", "admin")
    assert await store.count_users_with_role(Role.ADMIN) == 1


# =============================================================================
# extend
# =============================================================================


@pytest.mark.asyncio
async def test_extend_moves_expiry_and_resets_reminders(engine, store, audit_log, dispatcher, clock) -> None:
    expiry = clock.now + timedelta(hours=20)
    await engine.assign("u1", "moderator", expiry)
    await engine.run_expiration_sweep()
    assert (await store.get_grant("u1", Role.MODERATOR)).reminder_1day_sent

    new_expiry = expiry + timedelta(days=14)
    extended = await engine.extend("u1", "moderator", new_expiry, performed_by="alice@example.com")
    await engine.drain_notifications()

    assert extended.expires_at == new_expiry
    assert not extended.reminder_3day_sent
    assert not extended.reminder_1day_sent
    assert extended.state == GrantState.ACTIVE_TEMPORARY

    record = audit_log.list_records(user_id="u1")[-1]
    assert record.action == AuditAction.EXTENDED
    assert record.old_value == to_iso(expiry)
    assert record.new_value == to_iso(new_expiry)
    assert dispatcher.delivered[-1].type == NotificationType.EXTENDED


@pytest.mark.asyncio
async def test_extend_missing_grant(engine, clock) -> None:
    with pytest.raises(NotFoundError):
        await engine.extend("u1", "user", clock.now + timedelta(days=1))


@pytest.mark.asyncio
async def test_extend_permanent_grant(engine, clock) -> None:
    await engine.assign("u1", "user")
    with pytest.raises(NotTemporaryError):
        await engine.extend("u1", "user", clock.now + timedelta(days=1))


@pytest.mark.asyncio
async def test_extend_must_move_expiry_later(engine, store, clock) -> None:
    expiry = clock.now + timedelta(days=5)
    await engine.assign("u1", "user", expiry)

    with pytest.raises(InvalidExpirationError):
        await engine.extend("u1", "user", expiry)
    with pytest.raises(InvalidExpirationError):
        await engine.extend("u1", "user", expiry - timedelta(days=1))

    assert (await store.get_grant("u1", Role.USER)).expires_at == expiry


@pytest.mark.asyncio
async def test_extend_of_lapsed_grant_must_land_in_future(engine, clock) -> None:
    expiry = clock.now + timedelta(hours=1)
    await engine.assign("u1", "user", expiry)
    clock.advance(timedelta(hours=3))

    with pytest.raises(InvalidExpirationError):
        await engine.extend("u1", "user", expiry + timedelta(hours=1))


# =============================================================================
# Side-effect failures
# =============================================================================


@pytest.mark.asyncio
async def test_notification_failure_does_not_fail_mutation(store, audit_log, config, clock, caplog) -> None:
    engine = RoleLifecycleEngine(
        store=store,
        audit_log=audit_log,
        dispatcher=FailingDispatcher(),
        config=config,
        clock=clock,
    )

    with caplog.at_level(logging.ERROR):
        grant = await engine.assign("u1", "user")
        await engine.drain_notifications()

    assert await store.get_grant("u1", Role.USER) == grant
    assert len(audit_log.list_records()) == 1
    assert "Failed to deliver assigned notification" in caplog.text


@pytest.mark.asyncio
async def test_audit_failure_is_logged_not_raised(store, dispatcher, config, clock, caplog) -> None:
    engine = RoleLifecycleEngine(
        store=store,
        audit_log=BrokenAuditLog(),
        dispatcher=dispatcher,
        config=config,
        clock=clock,
    )

    with caplog.at_level(logging.ERROR):
        await engine.assign("u1", "user")
        await engine.drain_notifications()

    assert await store.get_grant("u1", Role.USER) is not None
    assert "Audit append failed" in caplog.text


# =============================================================================
# Read helpers
# =============================================================================


@pytest.mark.asyncio
async def test_has_role_ignores_lapsed_grants(engine, clock) -> None:
    await engine.assign("u1", "moderator", clock.now + timedelta(hours=2))
    assert await engine.has_role("u1", "moderator")

    clock.advance(timedelta(hours=2))
    assert not await engine.has_role("u1", "moderator")
    assert await engine.get_grant("u1", "moderator") is not None


@pytest.mark.asyncio
async def test_get_highest_role(engine, clock) -> None:
    await engine.assign("u1", "user")
    await engine.assign("u1", "moderator")
    assert await engine.get_highest_role("u1") == Role.MODERATOR

    await engine.assign("u1", "admin", clock.now + timedelta(hours=1))
    assert await engine.get_highest_role("u1") == Role.ADMIN

    clock.advance(timedelta(hours=1))
    assert await engine.get_highest_role("u1") == Role.MODERATOR
    assert await engine.get_highest_role("nobody") is None


@pytest.mark.asyncio
async def test_get_expiring_grants(engine, clock) -> None:
    await engine.assign("soon", "user", clock.now + timedelta(hours=30))
    await engine.assign("later", "user", clock.now + timedelta(days=6, hours=1))
    await engine.assign("far", "user", clock.now + timedelta(days=20))
    await engine.assign("forever", "user")

    expiring = await engine.get_expiring_grants(days_ahead=7)

    assert [(e.grant.user_id, e.days_until_expiry) for e in expiring] == [
        ("soon", 2),
        ("later", 7),
    ]

    with pytest.raises(ValidationError):
        await engine.get_expiring_grants(days_ahead=0)
