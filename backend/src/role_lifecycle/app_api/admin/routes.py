"""Admin router aggregating all admin sub-routers."""

from fastapi import APIRouter

from .role_grants import router as role_grants_router

router = APIRouter(prefix="/admin")
router.include_router(role_grants_router)
