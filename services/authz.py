"""Authorization helpers for DeckLotus routes."""
from __future__ import annotations

from functools import wraps

from flask_login import current_user

from services.errors import AuthenticationError, AuthorizationError


def require_admin() -> None:
    if not current_user.is_authenticated:
        raise AuthenticationError("Authentication required")
    if not getattr(current_user, "is_admin", False):
        raise AuthorizationError("Admin access required")


def admin_required(view):
    """Route decorator; stack under ``@login_required``."""

    @wraps(view)
    def wrapper(*args, **kwargs):
        require_admin()
        return view(*args, **kwargs)

    return wrapper


def is_admin() -> bool:
    return bool(current_user.is_authenticated and getattr(current_user, "is_admin", False))
