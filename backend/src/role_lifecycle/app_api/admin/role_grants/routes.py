"""Admin API routes for role grant lifecycle management."""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, status

from role_lifecycle.shared.auth import User, require_admin
from role_lifecycle.shared.auth.dependencies import get_engine
from role_lifecycle.shared.errors import RoleLifecycleError, error_response_for
from role_lifecycle.shared.rbac import Role, RoleLifecycleEngine
from role_lifecycle.shared.rbac.models import (
    BulkExtendRequest,
    BulkRoleRequest,
    ExpiringGrantListResponse,
    ExpiringGrantResponse,
    RoleAssignRequest,
    RoleExtendRequest,
    RoleGrantListResponse,
    RoleGrantResponse,
    SweepRequest,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/role-grants", tags=["admin-role-grants"])


def _http_error(e: RoleLifecycleError) -> HTTPException:
    """Map an engine error to an HTTPException with a structured detail."""
    return HTTPException(
        status_code=e.status_code,
        detail=error_response_for(e)["error"],
    )


@router.get("/users/{user_id}", response_model=RoleGrantListResponse)
async def list_user_grants(
    user_id: str,
    admin: User = Depends(require_admin),
    engine: RoleLifecycleEngine = Depends(get_engine),
):
    """
    List every role grant held by a user.

    Requires admin access.
    """
    logger.info(f"Admin {admin.actor} listing grants for {user_id}")

    grants = await engine.list_user_grants(user_id)
    return RoleGrantListResponse(
        grants=[RoleGrantResponse.from_grant(g) for g in grants],
        total=len(grants),
    )


@router.get("/expiring", response_model=ExpiringGrantListResponse)
async def list_expiring_grants(
    days: int = Query(7, ge=1, le=365, description="Look-ahead window in days"),
    admin: User = Depends(require_admin),
    engine: RoleLifecycleEngine = Depends(get_engine),
):
    """List temporary grants that expire within the next ``days`` days."""
    expiring = await engine.get_expiring_grants(days_ahead=days)
    return ExpiringGrantListResponse(
        grants=[
            ExpiringGrantResponse(
                grant=RoleGrantResponse.from_grant(e.grant),
                days_until_expiry=e.days_until_expiry,
            )
            for e in expiring
        ],
        total=len(expiring),
    )


@router.post("/", response_model=RoleGrantResponse, status_code=status.HTTP_201_CREATED)
async def assign_role(
    body: RoleAssignRequest,
    admin: User = Depends(require_admin),
    engine: RoleLifecycleEngine = Depends(get_engine),
):
    """
    Assign a role to a user, or update an existing grant of that role.

    Args:
        body: Target user, role and optional expiry
        admin: Authenticated admin user (injected)

    Raises:
        HTTPException: 400 for invalid input
    """
    logger.info(f"Admin {admin.actor} assigning {body.role.value} to {body.user_id}")

    try:
        grant = await engine.assign(
            body.user_id, body.role, body.expires_at, performed_by=admin.actor
        )
    except RoleLifecycleError as e:
        logger.warning(f"Role assignment failed: {e.message}")
        raise _http_error(e)

    return RoleGrantResponse.from_grant(grant)


@router.delete("/{user_id}/{role}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_role(
    user_id: str,
    role: Role,
    admin: User = Depends(require_admin),
    engine: RoleLifecycleEngine = Depends(get_engine),
):
    """
    Remove a role from a user.

    Raises:
        HTTPException: 404 if the user does not hold the role,
            409 (code ``last_admin``) if this is the last admin grant
    """
    logger.info(f"Admin {admin.actor} removing {role.value} from {user_id}")

    try:
        await engine.remove(user_id, role, performed_by=admin.actor)
    except RoleLifecycleError as e:
        logger.warning(f"Role removal failed: {e.message}")
        raise _http_error(e)


@router.post("/extend", response_model=RoleGrantResponse)
async def extend_role(
    body: RoleExtendRequest,
    admin: User = Depends(require_admin),
    engine: RoleLifecycleEngine = Depends(get_engine),
):
    """Move a temporary grant's expiry later."""
    logger.info(f"Admin {admin.actor} extending {body.role.value} for {body.user_id}")

    try:
        grant = await engine.extend(
            body.user_id, body.role, body.new_expires_at, performed_by=admin.actor
        )
    except RoleLifecycleError as e:
        logger.warning(f"Role extension failed: {e.message}")
        raise _http_error(e)

    return RoleGrantResponse.from_grant(grant)


@router.post("/bulk-assign")
async def bulk_assign_role(
    body: BulkRoleRequest,
    admin: User = Depends(require_admin),
    engine: RoleLifecycleEngine = Depends(get_engine),
):
    """Assign a role to many users; per-user failures are reported in the body."""
    try:
        result = await engine.bulk_assign(
            body.user_ids, body.role, body.expires_at, performed_by=admin.actor
        )
    except RoleLifecycleError as e:
        raise _http_error(e)
    return result.to_dict()


@router.post("/bulk-remove")
async def bulk_remove_role(
    body: BulkRoleRequest,
    admin: User = Depends(require_admin),
    engine: RoleLifecycleEngine = Depends(get_engine),
):
    """Remove a role from many users; per-user failures are reported in the body."""
    try:
        result = await engine.bulk_remove(body.user_ids, body.role, performed_by=admin.actor)
    except RoleLifecycleError as e:
        raise _http_error(e)
    return result.to_dict()


@router.post("/bulk-extend")
async def bulk_extend_role(
    body: BulkExtendRequest,
    admin: User = Depends(require_admin),
    engine: RoleLifecycleEngine = Depends(get_engine),
):
    """Extend many temporary grants; per-grant failures are reported in the body."""
    try:
        result = await engine.bulk_extend(
            [(e.user_id, e.role, e.new_expires_at) for e in body.extensions],
            performed_by=admin.actor,
        )
    except RoleLifecycleError as e:
        raise _http_error(e)
    return result.to_dict()


@router.post("/expiration-sweep")
async def trigger_expiration_sweep(
    body: SweepRequest,
    admin: User = Depends(require_admin),
    engine: RoleLifecycleEngine = Depends(get_engine),
):
    """
    Manually trigger (or preview) the expiration sweep.

    Uses the same entry point as the scheduler. With ``preview`` set nothing
    is sent or changed; the would-be notifications are returned.
    """
    logger.info(
        f"Admin {admin.actor} triggered expiration sweep "
        f"(filter={body.filter.value}, preview={body.preview})"
    )

    try:
        result = await engine.run_expiration_sweep(body.filter, preview=body.preview)
    except RoleLifecycleError as e:
        raise _http_error(e)
    return result.to_dict()
