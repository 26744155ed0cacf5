from __future__ import annotations

import hashlib
import hmac
import secrets
from datetime import datetime
from typing import Optional, Tuple

from flask_login import UserMixin
from werkzeug.security import check_password_hash, generate_password_hash

from extensions import db


def hash_api_key(raw_key: str) -> str:
    return hashlib.sha256(raw_key.encode("utf-8")).hexdigest()


class User(UserMixin, db.Model):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(80), unique=True, nullable=False, index=True)
    email = db.Column(db.String(255), unique=True, nullable=False, index=True)
    password_hash = db.Column(db.String(255), nullable=False)
    is_admin = db.Column(db.Boolean, nullable=False, default=False, server_default=db.text("0"))
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    api_keys = db.relationship("ApiKey", back_populates="user", cascade="all, delete-orphan", passive_deletes=True)
    decks = db.relationship("Deck", back_populates="user", cascade="all, delete-orphan", passive_deletes=True)
    owned_printings = db.relationship(
        "OwnedPrinting", back_populates="user", cascade="all, delete-orphan", passive_deletes=True
    )
    audit_logs = db.relationship("AuditLog", back_populates="user", passive_deletes=True)

    def get_id(self) -> str:
        return str(self.id)

    # Password helpers -----------------------------------------------------
    def set_password(self, raw_password: str) -> None:
        self.password_hash = generate_password_hash(raw_password)

    def check_password(self, raw_password: str | None) -> bool:
        if not raw_password or not self.password_hash:
            return False
        return check_password_hash(self.password_hash, raw_password)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "username": self.username,
            "email": self.email,
            "is_admin": bool(self.is_admin),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<User {self.username}>"


class ApiKey(db.Model):
    __tablename__ = "api_keys"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    key_hash = db.Column(db.String(64), unique=True, nullable=False)
    name = db.Column(db.String(120), nullable=False)
    last_used = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    user = db.relationship("User", back_populates="api_keys")

    @classmethod
    def generate(cls, user: User, name: str) -> Tuple["ApiKey", str]:
        """
        Create a key row for ``user`` and return it with the plaintext secret.
        Only the SHA-256 digest is persisted; the plaintext is never recoverable.
        """
        raw_key = secrets.token_hex(32)
        record = cls(user=user, name=name, key_hash=hash_api_key(raw_key))
        return record, raw_key

    @classmethod
    def verify(cls, raw_key: str | None) -> Optional["ApiKey"]:
        if not raw_key:
            return None
        digest = hash_api_key(raw_key)
        candidate = cls.query.filter_by(key_hash=digest).first()
        if candidate and hmac.compare_digest(candidate.key_hash, digest):
            return candidate
        return None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "last_used": self.last_used.isoformat() if self.last_used else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class AuditLog(db.Model):
    __tablename__ = "audit_logs"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    action = db.Column(db.String(120), nullable=False)
    details = db.Column(db.JSON, nullable=True)
    ip_address = db.Column(db.String(64), nullable=True)
    user_agent = db.Column(db.String(255), nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)

    user = db.relationship("User", back_populates="audit_logs")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "username": self.user.username if self.user else None,
            "action": self.action,
            "details": self.details or {},
            "ip_address": self.ip_address,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
