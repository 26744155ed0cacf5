"""Administration routes: catalog sync, backups and user management."""

from __future__ import annotations

from datetime import datetime

from flask import Blueprint, jsonify, request
from flask_login import current_user, login_required

from extensions import db, limiter
from services import auth_service, backup as backup_service
from services.audit import AUDIT_ACTIONS, list_audit_events, record_audit_event
from services.authz import admin_required, is_admin
from services.catalog_sync import get_sync_service
from services.errors import ValidationError
from services.validation import parse_bool, parse_int, parse_optional_positive_int, require_fields

admin_bp = Blueprint("admin", __name__, url_prefix="/api/admin")

sync_limit = limiter.limit("5 per minute", methods=["POST"]) if limiter else (lambda f: f)


def _scope_user_id():
    """Admins act on everyone (or ``?userId=``); other users only on themselves."""
    if is_admin():
        return parse_optional_positive_int(request.args.get("userId"), field="userId")
    return current_user.id


def _audit_restore(actor_id: int, source: str, overwrite: bool, results) -> None:
    # The acting account may have been replaced by the restore.
    record_audit_event(
        "backup_restored",
        {"source": source, "overwrite": overwrite, "users": results["users"], "decks": results["decks"]},
        user_id=actor_id,
    )
    db.session.commit()


@admin_bp.post("/sync")
@login_required
@admin_required
@sync_limit
def sync_catalog():
    payload = request.get_json(silent=True) or {}
    result = get_sync_service().run(payload.get("source"))
    record_audit_event("catalog_synced", {"cards": result["cards"], "printings": result["printings"]})
    db.session.commit()
    return jsonify(result)


@admin_bp.get("/sync-status")
@login_required
@admin_required
def sync_status():
    return jsonify(get_sync_service().status())


@admin_bp.post("/backup")
@login_required
def download_backup():
    backup = backup_service.create_backup(_scope_user_id())
    response = jsonify(backup)
    stamp = datetime.utcnow().strftime("%Y-%m-%d")
    response.headers["Content-Disposition"] = f'attachment; filename="decklotus-backup-{stamp}.json"'
    return response


@admin_bp.post("/restore")
@login_required
def restore_backup():
    payload = request.get_json(silent=True) or {}
    backup = payload.get("backup")
    if not isinstance(backup, dict) or not backup.get("data"):
        raise ValidationError("Invalid backup data", field="backup")
    overwrite = parse_bool(payload.get("overwrite"))
    actor_id = current_user.id
    results = backup_service.restore_backup(
        backup,
        overwrite=overwrite,
        user_id=None if is_admin() else actor_id,
    )
    _audit_restore(actor_id, "upload", overwrite, results)
    return jsonify({"success": True, "message": "Backup restored successfully", "results": results})


@admin_bp.get("/backups")
@login_required
@admin_required
def list_backups():
    return jsonify({"backups": backup_service.list_backups()})


@admin_bp.get("/backups/<filename>")
@login_required
@admin_required
def get_backup(filename: str):
    response = jsonify(backup_service.load_backup_file(filename))
    response.headers["Content-Disposition"] = f'attachment; filename="{filename}"'
    return response


@admin_bp.delete("/backups/<filename>")
@login_required
@admin_required
def delete_backup(filename: str):
    backup_service.delete_backup_file(filename)
    return jsonify({"success": True, "message": "Backup deleted successfully"})


@admin_bp.post("/backup/create")
@login_required
@admin_required
def create_backup_file():
    result = backup_service.run_scheduled_backup()
    return jsonify({"success": True, **result})


@admin_bp.post("/restore-from-file")
@login_required
@admin_required
def restore_from_file():
    payload = request.get_json(silent=True) or {}
    require_fields(payload, "filename", message="Filename is required")
    backup = backup_service.load_backup_file(payload["filename"])
    overwrite = parse_bool(payload.get("overwrite"))
    actor_id = current_user.id
    results = backup_service.restore_backup(backup, overwrite=overwrite)
    _audit_restore(actor_id, payload["filename"], overwrite, results)
    return jsonify({"success": True, "message": f"Restored from {payload['filename']}", "results": results})


@admin_bp.get("/backup-config")
@login_required
def get_backup_config():
    return jsonify(backup_service.get_backup_config())


@admin_bp.post("/backup-config")
@login_required
@admin_required
def set_backup_config():
    payload = request.get_json(silent=True) or {}
    config = backup_service.set_backup_config(payload)
    record_audit_event("backup_config_updated", config)
    db.session.commit()
    return jsonify({"success": True, "message": "Backup configuration updated", "config": config})


@admin_bp.get("/users")
@login_required
@admin_required
def list_users():
    return jsonify({"users": auth_service.list_users()})


@admin_bp.put("/users/<int:user_id>")
@login_required
@admin_required
def update_user(user_id: int):
    payload = request.get_json(silent=True) or {}
    user = auth_service.update_user(current_user, user_id, payload)
    return jsonify({"message": "User updated successfully", "user": user})


@admin_bp.delete("/users/<int:user_id>")
@login_required
@admin_required
def delete_user(user_id: int):
    auth_service.delete_user(current_user, user_id)
    return jsonify({"message": "User deleted successfully"})


@admin_bp.get("/audit-log")
@login_required
@admin_required
def audit_log():
    action = (request.args.get("action") or "").strip() or None
    if action and action not in AUDIT_ACTIONS:
        raise ValidationError("Unknown audit action", field="action")
    events = list_audit_events(
        action=action,
        user_id=parse_optional_positive_int(request.args.get("userId"), field="userId"),
        limit=parse_int(request.args.get("limit"), field="limit", default=50),
    )
    return jsonify({"events": events})
