"""Authentication utilities for the admin API."""

from .dependencies import get_current_user, require_admin
from .models import User

__all__ = [
    "get_current_user",
    "require_admin",
    "User",
]
