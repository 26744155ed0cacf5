"""Accounts, signed bearer tokens and API keys."""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from flask import current_app
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer
from sqlalchemy import func, or_

from extensions import db
from models import ApiKey, Deck, DeckCard, OwnedPrinting, Printing, User
from services.audit import record_audit_event
from services.errors import AuthenticationError, ConflictError, NotFoundError, ValidationError
from services.validation import validate_email, validate_password, validate_username

_LOG = logging.getLogger(__name__)

ACCESS_SALT = "access-token"
REFRESH_SALT = "refresh-token"


def _serializer(salt: str) -> URLSafeTimedSerializer:
    return URLSafeTimedSerializer(current_app.config["SECRET_KEY"], salt=salt)


def generate_tokens(user: User) -> Dict[str, str]:
    payload = {"uid": user.id, "username": user.username}
    return {
        "accessToken": _serializer(ACCESS_SALT).dumps(payload),
        "refreshToken": _serializer(REFRESH_SALT).dumps(payload),
    }


def _load_token(token: str, salt: str, max_age: int) -> Optional[User]:
    if not token:
        return None
    try:
        payload = _serializer(salt).loads(token, max_age=max_age)
    except SignatureExpired:
        _LOG.info("Rejected expired %s", salt)
        return None
    except BadSignature:
        return None
    if not isinstance(payload, dict):
        return None
    try:
        user_id = int(payload.get("uid"))
    except (TypeError, ValueError):
        return None
    return db.session.get(User, user_id)


def user_from_access_token(token: str) -> Optional[User]:
    return _load_token(token, ACCESS_SALT, current_app.config["ACCESS_TOKEN_MAX_AGE"])


def user_from_api_key(raw_key: str) -> Optional[User]:
    record = ApiKey.verify(raw_key)
    if record is None:
        return None
    record.last_used = datetime.utcnow()
    db.session.commit()
    return record.user


def refresh_tokens(refresh_token: str) -> Dict[str, str]:
    user = _load_token(refresh_token, REFRESH_SALT, current_app.config["REFRESH_TOKEN_MAX_AGE"])
    if user is None:
        raise AuthenticationError("Invalid refresh token")
    return generate_tokens(user)


def register_user(username: str, email: str, password: str) -> Dict[str, Any]:
    username = validate_username(username)
    email = validate_email(email)
    validate_password(password)

    taken = User.query.filter(
        or_(func.lower(User.username) == username.lower(), func.lower(User.email) == email.lower())
    ).first()
    if taken is not None:
        raise ConflictError("Username or email already exists.")

    user = User(username=username, email=email)
    user.set_password(password)
    db.session.add(user)
    db.session.flush()
    record_audit_event("user_registered", {"username": username}, user_id=user.id)
    db.session.commit()
    _LOG.info("User registered", extra={"user_id": user.id})
    return {"user": user.to_dict(), **generate_tokens(user)}


def login_user(identifier: str, password: str) -> Dict[str, Any]:
    ident = (identifier or "").strip()
    user = User.query.filter(
        or_(func.lower(User.username) == ident.lower(), func.lower(User.email) == ident.lower())
    ).first()
    if user is None or not user.check_password(password):
        _LOG.info("Failed login attempt")
        raise AuthenticationError("Invalid credentials.")
    return {"user": user.to_dict(), **generate_tokens(user)}


# API keys ------------------------------------------------------------------

def create_api_key(user: User, name: Optional[str]) -> str:
    name = (name or "").strip()
    if not name:
        raise ValidationError("API key name is required", field="name")
    record, raw_key = ApiKey.generate(user, name)
    db.session.add(record)
    record_audit_event("api_key_created", {"name": name}, user_id=user.id)
    db.session.commit()
    return raw_key


def list_api_keys(user_id: int) -> List[Dict[str, Any]]:
    keys = ApiKey.query.filter_by(user_id=user_id).order_by(ApiKey.created_at, ApiKey.id).all()
    return [key.to_dict() for key in keys]


def revoke_api_key(user_id: int, key_id: int) -> None:
    key = ApiKey.query.filter_by(id=key_id, user_id=user_id).first()
    if key is None:
        raise NotFoundError("API key not found")
    db.session.delete(key)
    record_audit_event("api_key_revoked", {"key_id": key_id}, user_id=user_id)
    db.session.commit()


def user_stats(user_id: int) -> Dict[str, int]:
    deck_count = Deck.query.filter_by(user_id=user_id).count()
    deck_cards = (
        db.session.query(func.coalesce(func.sum(DeckCard.quantity), 0))
        .select_from(DeckCard)
        .join(Deck, Deck.id == DeckCard.deck_id)
        .filter(Deck.user_id == user_id)
        .scalar()
    )
    unique_owned = (
        db.session.query(func.count(func.distinct(Printing.card_id)))
        .select_from(OwnedPrinting)
        .join(Printing, Printing.id == OwnedPrinting.printing_id)
        .filter(OwnedPrinting.user_id == user_id)
        .scalar()
    )
    owned_copies = (
        db.session.query(func.coalesce(func.sum(OwnedPrinting.quantity), 0))
        .filter(OwnedPrinting.user_id == user_id)
        .scalar()
    )
    return {
        "decks": deck_count,
        "deckCards": int(deck_cards or 0),
        "uniqueOwnedCards": int(unique_owned or 0),
        "ownedCopies": int(owned_copies or 0),
        "apiKeys": ApiKey.query.filter_by(user_id=user_id).count(),
    }


# Administration --------------------------------------------------------------

def list_users() -> List[Dict[str, Any]]:
    deck_counts = dict(
        db.session.query(Deck.user_id, func.count(Deck.id)).group_by(Deck.user_id).all()
    )
    users = User.query.order_by(User.created_at, User.id).all()
    out = []
    for user in users:
        data = user.to_dict()
        data["deck_count"] = int(deck_counts.get(user.id, 0))
        out.append(data)
    return out


def update_user(actor: User, user_id: int, updates: Dict[str, Any]) -> Dict[str, Any]:
    user = db.session.get(User, user_id)
    if user is None:
        raise NotFoundError("User not found")

    if "is_admin" in updates:
        make_admin = bool(updates["is_admin"])
        if user.id == actor.id and not make_admin:
            raise ValidationError("Cannot remove your own admin status", field="is_admin")
        user.is_admin = make_admin
    if updates.get("email"):
        email = validate_email(updates["email"])
        clash = User.query.filter(func.lower(User.email) == email.lower(), User.id != user.id).first()
        if clash is not None:
            raise ConflictError("Username or email already exists.")
        user.email = email
    if updates.get("password"):
        user.set_password(validate_password(updates["password"]))

    record_audit_event(
        "user_updated",
        {"target_user_id": user.id, "fields": sorted(k for k in updates if k != "password")},
        user_id=actor.id,
    )
    db.session.commit()
    return user.to_dict()


def delete_user(actor: User, user_id: int) -> None:
    user = db.session.get(User, user_id)
    if user is None:
        raise NotFoundError("User not found")
    if user.id == actor.id:
        raise ValidationError("Cannot delete your own account")
    username = user.username
    db.session.delete(user)
    record_audit_event("user_deleted", {"target_user_id": user_id, "username": username}, user_id=actor.id)
    db.session.commit()
    _LOG.info("User deleted", extra={"target_user_id": user_id})


__all__ = [
    "generate_tokens",
    "user_from_access_token",
    "user_from_api_key",
    "refresh_tokens",
    "register_user",
    "login_user",
    "create_api_key",
    "list_api_keys",
    "revoke_api_key",
    "user_stats",
    "list_users",
    "update_user",
    "delete_user",
]
