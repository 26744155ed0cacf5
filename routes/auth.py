"""Registration, login, token refresh and API key routes."""

from __future__ import annotations

from flask import Blueprint, jsonify, request
from flask_login import current_user, login_required

from extensions import limiter
from services import auth_service
from services.validation import parse_positive_int, require_fields

auth_bp = Blueprint("auth", __name__, url_prefix="/api/auth")

auth_post_limit = limiter.limit("10 per minute", methods=["POST"]) if limiter else (lambda f: f)


@auth_bp.post("/register")
@auth_post_limit
def register():
    payload = request.get_json(silent=True) or {}
    require_fields(payload, "username", "email", "password", message="Username, email, and password are required.")
    result = auth_service.register_user(payload["username"], payload["email"], payload["password"])
    return jsonify(result), 201


@auth_bp.post("/login")
@auth_post_limit
def login():
    payload = request.get_json(silent=True) or {}
    identifier = payload.get("username") or payload.get("email")
    if not identifier or not payload.get("password"):
        require_fields(payload, "username", "password", message="Username and password are required.")
    return jsonify(auth_service.login_user(identifier, payload["password"]))


@auth_bp.post("/refresh")
def refresh():
    payload = request.get_json(silent=True) or {}
    require_fields(payload, "refreshToken", message="Refresh token is required.")
    return jsonify(auth_service.refresh_tokens(payload["refreshToken"]))


@auth_bp.get("/me")
@login_required
def me():
    return jsonify({"user": current_user.to_dict()})


@auth_bp.get("/stats")
@login_required
def stats():
    return jsonify(auth_service.user_stats(current_user.id))


@auth_bp.get("/api-keys")
@login_required
def list_api_keys():
    return jsonify({"apiKeys": auth_service.list_api_keys(current_user.id)})


@auth_bp.post("/api-keys")
@login_required
def create_api_key():
    payload = request.get_json(silent=True) or {}
    raw_key = auth_service.create_api_key(current_user, payload.get("name"))
    return (
        jsonify(
            {
                "apiKey": raw_key,
                "message": "API key created. Save it securely - it won't be shown again.",
            }
        ),
        201,
    )


@auth_bp.delete("/api-keys/<key_id>")
@login_required
def revoke_api_key(key_id):
    auth_service.revoke_api_key(current_user.id, parse_positive_int(key_id, field="key id"))
    return jsonify({"message": "API key revoked"})
