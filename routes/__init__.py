"""JSON API blueprints."""
from __future__ import annotations

from flask import Flask

from extensions import csrf

from .admin import admin_bp
from .auth import auth_bp
from .cards import cards_bp
from .decks import decks_bp
from .inventory import inventory_bp
from .sets import sets_bp
from .shopping import shopping_bp

API_BLUEPRINTS = (auth_bp, cards_bp, sets_bp, decks_bp, inventory_bp, shopping_bp, admin_bp)


def register_blueprints(app: Flask) -> None:
    # Token-authenticated JSON API; CSRF tokens only apply to cookie sessions.
    for bp in API_BLUEPRINTS:
        csrf.exempt(bp)
        app.register_blueprint(bp)


__all__ = ["register_blueprints", "API_BLUEPRINTS"]
