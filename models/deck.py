from __future__ import annotations

import secrets
from datetime import datetime

from extensions import db


class Deck(db.Model):
    __tablename__ = "decks"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    name = db.Column(db.String(255), nullable=False)
    format = db.Column(db.String(40), nullable=True)
    description = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)

    user = db.relationship("User", back_populates="decks")
    cards = db.relationship(
        "DeckCard",
        back_populates="deck",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    shares = db.relationship(
        "DeckShare",
        back_populates="deck",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    def touch(self) -> None:
        self.updated_at = datetime.utcnow()

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "name": self.name,
            "format": self.format,
            "description": self.description,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<Deck {self.id} {self.name!r}>"


class DeckCard(db.Model):
    """One printing in one zone of a deck."""

    __tablename__ = "deck_cards"
    __table_args__ = (
        db.UniqueConstraint("deck_id", "printing_id", "board_type", name="uq_deck_cards_zone"),
        db.CheckConstraint("quantity > 0", name="deck_quantity_positive"),
    )

    BOARD_MAIN = "mainboard"
    BOARD_SIDE = "sideboard"
    BOARD_MAYBE = "maybeboard"
    BOARD_TYPES = (BOARD_MAIN, BOARD_SIDE, BOARD_MAYBE)

    id = db.Column(db.Integer, primary_key=True)
    deck_id = db.Column(db.Integer, db.ForeignKey("decks.id", ondelete="CASCADE"), nullable=False, index=True)
    printing_id = db.Column(
        db.Integer,
        db.ForeignKey("printings.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    quantity = db.Column(db.Integer, nullable=False, default=1)
    is_sideboard = db.Column(db.Boolean, nullable=False, default=False)
    is_commander = db.Column(db.Boolean, nullable=False, default=False)
    board_type = db.Column(db.String(16), nullable=False, default=BOARD_MAIN, index=True)
    added_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    deck = db.relationship("Deck", back_populates="cards")
    printing = db.relationship("Printing")

    def set_board(self, board_type: str) -> None:
        self.board_type = board_type
        self.is_sideboard = board_type == self.BOARD_SIDE

    @property
    def is_mainboard(self) -> bool:
        return self.board_type == self.BOARD_MAIN

    def __repr__(self):
        return f"<DeckCard deck={self.deck_id} printing={self.printing_id} x{self.quantity} {self.board_type}>"


class DeckShare(db.Model):
    __tablename__ = "deck_shares"

    id = db.Column(db.Integer, primary_key=True)
    deck_id = db.Column(db.Integer, db.ForeignKey("decks.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    share_token = db.Column(db.String(64), unique=True, nullable=False, index=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    expires_at = db.Column(db.DateTime, nullable=True)

    deck = db.relationship("Deck", back_populates="shares")

    @staticmethod
    def new_token() -> str:
        return secrets.token_hex(16)

    def is_usable(self, now: datetime | None = None) -> bool:
        if not self.is_active:
            return False
        if self.expires_at and self.expires_at < (now or datetime.utcnow()):
            return False
        return True
