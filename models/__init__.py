"""SQLAlchemy models package for DeckLotus.
Re-exports the shared `db` instance to avoid import loops and provides
convenient names for the model classes.

Usage:
    from models import db, Card, Printing, Deck, DeckCard
"""
from __future__ import annotations

from extensions import db  # shared SQLAlchemy() instance

# Import models only after db exists to avoid circular imports
from .catalog import (  # noqa: F401
    Card,
    CardForeignData,
    CardSet,
    LegalityMap,
    Price,
    Printing,
    RelatedCard,
    Ruling,
)
from .collection import OwnedPrinting  # noqa: F401
from .deck import Deck, DeckCard, DeckShare  # noqa: F401
from .user import ApiKey, AuditLog, User  # noqa: F401

__all__ = [
    "db",
    "Card",
    "CardForeignData",
    "CardSet",
    "LegalityMap",
    "Price",
    "Printing",
    "RelatedCard",
    "Ruling",
    "OwnedPrinting",
    "Deck",
    "DeckCard",
    "DeckShare",
    "ApiKey",
    "AuditLog",
    "User",
]
