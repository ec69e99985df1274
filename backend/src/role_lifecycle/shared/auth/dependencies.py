"""FastAPI dependencies for authentication and admin authorization."""

import logging
import os
from typing import Optional

from fastapi import Depends, Header, HTTPException, status

from role_lifecycle.shared.rbac import Role, RoleLifecycleEngine, get_role_lifecycle_engine

from .models import User

logger = logging.getLogger(__name__)


def authentication_enabled() -> bool:
    """Authentication is on unless ENABLE_AUTHENTICATION=false (development only)."""
    return os.environ.get("ENABLE_AUTHENTICATION", "true").lower() == "true"


async def get_current_user(
    x_user_id: Optional[str] = Header(None, alias="X-User-Id"),
    x_user_email: Optional[str] = Header(None, alias="X-User-Email"),
    x_user_name: Optional[str] = Header(None, alias="X-User-Name"),
) -> User:
    """
    FastAPI dependency to get the current authenticated user.

    Token validation happens at the API gateway, which forwards the verified
    identity in X-User-Id / X-User-Email headers.

    When ENABLE_AUTHENTICATION=false, bypasses authentication and returns
    an anonymous user object. This should only be used in development/testing.

    Raises:
        HTTPException: 401 if identity headers are missing (when auth enabled)
    """
    if not authentication_enabled():
        logger.warning("⚠️ Authentication is DISABLED via ENABLE_AUTHENTICATION=false - returning anonymous user")
        return User(
            email="anonymous@local.dev",
            user_id="anonymous",
            name="Anonymous User",
        )

    if not x_user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required.",
        )

    return User(
        email=(x_user_email or "").lower(),
        user_id=x_user_id,
        name=x_user_name or x_user_email or x_user_id,
    )


def get_engine() -> RoleLifecycleEngine:
    """FastAPI dependency returning the process-wide engine."""
    return get_role_lifecycle_engine()


async def require_admin(
    user: User = Depends(get_current_user),
    engine: RoleLifecycleEngine = Depends(get_engine),
) -> User:
    """
    Require a caller who currently holds the admin role.

    Raises:
        HTTPException: 403 if the caller is not an admin
    """
    if not authentication_enabled():
        return user

    if not await engine.has_role(user.user_id, Role.ADMIN):
        logger.warning(f"User {user.email or user.user_id} denied admin access")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Administrator access required",
        )

    logger.debug(f"User {user.email or user.user_id} authorized as admin")
    return user
