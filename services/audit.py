"""Audit trail for account changes, restores and catalog syncs.

Entries are flushed into the caller's transaction; the caller commits.
"""
from __future__ import annotations

from typing import Any, Dict, List, Optional

from flask import current_app, has_request_context, request
from flask_login import current_user

from extensions import db
from models import AuditLog, User

AUDIT_ACTIONS = frozenset(
    {
        "user_registered",
        "user_updated",
        "user_deleted",
        "api_key_created",
        "api_key_revoked",
        "backup_restored",
        "backup_config_updated",
        "catalog_synced",
    }
)

MAX_AUDIT_PAGE = 200


def _request_user_id() -> Optional[int]:
    if not has_request_context() or not getattr(current_user, "is_authenticated", False):
        return None
    try:
        return int(current_user.get_id())
    except (TypeError, ValueError):
        return None


def record_audit_event(action: str, details: Optional[Dict[str, Any]] = None, *, user_id: Optional[int] = None) -> None:
    """Add an audit entry for the acting user (the request user unless ``user_id`` is given)."""
    if action not in AUDIT_ACTIONS:
        raise ValueError(f"Unknown audit action: {action}")
    details = dict(details or {})
    try:
        if user_id is None:
            user_id = _request_user_id()
        # A restore with overwrite can remove the acting account; keep the id in details instead.
        if user_id is not None and db.session.get(User, user_id) is None:
            details["actor_id"] = user_id
            user_id = None

        ip_address = None
        user_agent = None
        if has_request_context():
            ip_address = request.headers.get("X-Forwarded-For", request.remote_addr)
            user_agent = (request.headers.get("User-Agent") or "")[:255]

        db.session.add(
            AuditLog(
                user_id=user_id,
                action=action,
                details=details,
                ip_address=ip_address,
                user_agent=user_agent,
            )
        )
        db.session.flush()
    except Exception:
        current_app.logger.exception("Failed to record audit event: action=%s", action)


def list_audit_events(*, action: Optional[str] = None, user_id: Optional[int] = None, limit: int = 50) -> List[Dict[str, Any]]:
    """Newest entries first."""
    query = AuditLog.query
    if action:
        query = query.filter(AuditLog.action == action)
    if user_id is not None:
        query = query.filter(AuditLog.user_id == user_id)
    limit = max(1, min(limit, MAX_AUDIT_PAGE))
    rows = query.order_by(AuditLog.created_at.desc(), AuditLog.id.desc()).limit(limit).all()
    return [row.to_dict() for row in rows]


__all__ = ["AUDIT_ACTIONS", "record_audit_event", "list_audit_events"]
