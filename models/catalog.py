"""Card catalog tables populated by the catalog sync.

Rows here are replaced wholesale on every sync, so surrogate ids are not stable.
User data must reference printings through :attr:`Printing.uuid` whenever it
has to survive a sync.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from extensions import db

_LOG = logging.getLogger(__name__)

LEGALITY_STATUSES = ("Legal", "Banned", "Restricted", "Not Legal")


def split_list(raw: Optional[str]) -> List[str]:
    """Decode a comma separated (or JSON array) column into a list of strings."""
    if not raw:
        return []
    text = raw.strip()
    if text.startswith("["):
        try:
            decoded = json.loads(text)
        except ValueError:
            decoded = None
        if isinstance(decoded, list):
            return [str(item).strip() for item in decoded if str(item).strip()]
    return [part.strip() for part in text.split(",") if part.strip()]


def join_list(values: Any) -> Optional[str]:
    if values is None:
        return None
    if isinstance(values, str):
        return values or None
    items = [str(v).strip() for v in values if str(v).strip()]
    return ",".join(items) or None


@dataclass
class LegalityMap:
    """Per-format legality, validated on the way out of storage."""

    statuses: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_storage(cls, raw: Optional[str]) -> "LegalityMap":
        if not raw:
            return cls()
        try:
            decoded = json.loads(raw)
        except (TypeError, ValueError):
            _LOG.warning("Discarding malformed legality map: %r", raw[:80])
            return cls()
        if not isinstance(decoded, dict):
            return cls()
        statuses = {
            str(fmt).lower(): str(status)
            for fmt, status in decoded.items()
            if isinstance(status, str) and status and status != "null"
        }
        return cls(statuses)

    def to_storage(self) -> Optional[str]:
        if not self.statuses:
            return None
        return json.dumps(self.statuses, sort_keys=True)

    def status_for(self, fmt: str) -> Optional[str]:
        return self.statuses.get((fmt or "").lower())


class CardSet(db.Model):
    __tablename__ = "sets"

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(16), unique=True, nullable=False, index=True)
    name = db.Column(db.String(255), nullable=False)
    set_type = db.Column("type", db.String(40), nullable=True)
    release_date = db.Column(db.String(10), nullable=True, index=True)
    block = db.Column(db.String(120), nullable=True)
    base_set_size = db.Column(db.Integer, nullable=True)
    total_set_size = db.Column(db.Integer, nullable=True)
    keyrune_code = db.Column(db.String(16), nullable=True)
    tcgplayer_group_id = db.Column(db.Integer, nullable=True)
    is_online_only = db.Column(db.Boolean, nullable=False, default=False)
    is_foil_only = db.Column(db.Boolean, nullable=False, default=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "name": self.name,
            "type": self.set_type,
            "release_date": self.release_date,
            "block": self.block,
            "base_set_size": self.base_set_size,
            "total_set_size": self.total_set_size,
            "keyrune_code": self.keyrune_code,
            "is_online_only": bool(self.is_online_only),
            "is_foil_only": bool(self.is_foil_only),
        }

    def __repr__(self):
        return f"<CardSet {self.code} {self.name!r}>"


class Card(db.Model):
    """Oracle-level card identity."""

    __tablename__ = "cards"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), unique=True, nullable=False, index=True)
    mana_cost = db.Column(db.String(120), nullable=True)
    cmc = db.Column(db.Float, nullable=True, default=0)
    colors = db.Column(db.String(32), nullable=True)
    color_identity = db.Column(db.String(32), nullable=True)
    type_line = db.Column(db.Text, nullable=True)
    oracle_text = db.Column(db.Text, nullable=True)
    power = db.Column(db.String(8), nullable=True)
    toughness = db.Column(db.String(8), nullable=True)
    loyalty = db.Column(db.String(8), nullable=True)
    keywords = db.Column(db.Text, nullable=True)
    legalities = db.Column(db.Text, nullable=True)
    is_reserved = db.Column(db.Boolean, nullable=False, default=False)
    subtypes = db.Column(db.Text, nullable=True)
    supertypes = db.Column(db.Text, nullable=True)
    types = db.Column(db.Text, nullable=True)
    leadership_skills = db.Column(db.Text, nullable=True)
    edhrec_rank = db.Column(db.Integer, nullable=True)
    edhrec_saltiness = db.Column(db.Float, nullable=True)
    first_printing = db.Column(db.String(16), nullable=True)
    layout = db.Column(db.String(32), nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    printings = db.relationship(
        "Printing",
        back_populates="card",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="Printing.id",
    )

    @property
    def legality_map(self) -> LegalityMap:
        return LegalityMap.from_storage(self.legalities)

    @property
    def keyword_list(self) -> List[str]:
        return split_list(self.keywords)

    @property
    def subtype_list(self) -> List[str]:
        return split_list(self.subtypes)

    @property
    def color_list(self) -> List[str]:
        return split_list(self.colors)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "mana_cost": self.mana_cost,
            "cmc": self.cmc,
            "colors": self.colors,
            "color_identity": self.color_identity,
            "type_line": self.type_line,
            "oracle_text": self.oracle_text,
            "power": self.power,
            "toughness": self.toughness,
            "loyalty": self.loyalty,
            "keywords": self.keyword_list,
            "legalities": self.legality_map.statuses,
            "is_reserved": bool(self.is_reserved),
            "subtypes": self.subtype_list,
            "supertypes": split_list(self.supertypes),
            "types": split_list(self.types),
            "edhrec_rank": self.edhrec_rank,
            "edhrec_saltiness": self.edhrec_saltiness,
            "first_printing": self.first_printing,
            "layout": self.layout,
        }

    def __repr__(self):
        return f"<Card {self.name!r}>"


class Printing(db.Model):
    """A set-specific appearance of a card."""

    __tablename__ = "printings"
    __table_args__ = (
        db.Index("ix_printings_set_number", "set_code", "collector_number"),
    )

    id = db.Column(db.Integer, primary_key=True)
    card_id = db.Column(
        db.Integer,
        db.ForeignKey("cards.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    uuid = db.Column(db.String(36), unique=True, nullable=False, index=True)
    set_code = db.Column(db.String(16), nullable=False, index=True)
    collector_number = db.Column(db.String(20), nullable=True)
    rarity = db.Column(db.String(16), nullable=True)
    artist = db.Column(db.String(255), nullable=True)
    flavor_text = db.Column(db.Text, nullable=True)
    image_url = db.Column(db.String(512), nullable=True)
    finishes = db.Column(db.String(64), nullable=True)
    is_promo = db.Column(db.Boolean, nullable=False, default=False)
    is_full_art = db.Column(db.Boolean, nullable=False, default=False)
    frame_version = db.Column(db.String(16), nullable=True)
    border_color = db.Column(db.String(16), nullable=True)
    watermark = db.Column(db.String(64), nullable=True)
    language = db.Column(db.String(32), nullable=True, default="English")
    released_at = db.Column(db.String(10), nullable=True)
    tcgplayer_url = db.Column(db.String(512), nullable=True)
    cardmarket_url = db.Column(db.String(512), nullable=True)
    cardkingdom_url = db.Column(db.String(512), nullable=True)
    scryfall_id = db.Column(db.String(36), nullable=True)
    multiverse_id = db.Column(db.String(16), nullable=True)
    mtgo_id = db.Column(db.String(16), nullable=True)
    mtg_arena_id = db.Column(db.String(16), nullable=True)
    tcgplayer_product_id = db.Column(db.String(16), nullable=True)
    cardkingdom_id = db.Column(db.String(16), nullable=True)

    card = db.relationship("Card", back_populates="printings")
    card_set = db.relationship(
        "CardSet",
        primaryjoin="foreign(Printing.set_code) == CardSet.code",
        viewonly=True,
        lazy="joined",
    )

    @property
    def set_name(self) -> Optional[str]:
        return self.card_set.name if self.card_set else None

    @property
    def finish_list(self) -> List[str]:
        return split_list(self.finishes)

    def image_variants(self) -> Dict[str, Optional[str]]:
        url = self.image_url
        return {
            "image_url": url,
            "large_image_url": url.replace("/normal/", "/large/") if url else None,
            "art_crop_url": url.replace("/normal/", "/art_crop/") if url else None,
        }

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "id": self.id,
            "card_id": self.card_id,
            "uuid": self.uuid,
            "set_code": self.set_code,
            "set_name": self.set_name,
            "collector_number": self.collector_number,
            "rarity": self.rarity,
            "artist": self.artist,
            "flavor_text": self.flavor_text,
            "finishes": self.finish_list,
            "is_promo": bool(self.is_promo),
            "is_full_art": bool(self.is_full_art),
            "frame_version": self.frame_version,
            "border_color": self.border_color,
            "language": self.language,
            "released_at": self.released_at,
            "purchase_urls": {
                "tcgplayer": self.tcgplayer_url,
                "cardmarket": self.cardmarket_url,
                "cardkingdom": self.cardkingdom_url,
            },
            "identifiers": {
                "scryfall_id": self.scryfall_id,
                "multiverse_id": self.multiverse_id,
                "mtgo_id": self.mtgo_id,
                "mtg_arena_id": self.mtg_arena_id,
                "tcgplayer_product_id": self.tcgplayer_product_id,
                "cardkingdom_id": self.cardkingdom_id,
            },
        }
        data.update(self.image_variants())
        return data

    def __repr__(self):
        return f"<Printing {self.uuid} [{self.set_code} #{self.collector_number}]>"


class Price(db.Model):
    __tablename__ = "prices"
    __table_args__ = (
        db.UniqueConstraint("printing_uuid", "provider", "price_type", name="uq_prices_key"),
    )

    id = db.Column(db.Integer, primary_key=True)
    printing_uuid = db.Column(db.String(36), nullable=False, index=True)
    provider = db.Column(db.String(32), nullable=False)
    price_type = db.Column(db.String(16), nullable=False)
    price = db.Column(db.Float, nullable=False)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)


class Ruling(db.Model):
    __tablename__ = "rulings"

    id = db.Column(db.Integer, primary_key=True)
    uuid = db.Column(db.String(36), nullable=False, index=True)
    date = db.Column(db.String(10), nullable=True)
    text = db.Column(db.Text, nullable=False)


class RelatedCard(db.Model):
    __tablename__ = "related_cards"

    id = db.Column(db.Integer, primary_key=True)
    card_name = db.Column(db.String(255), nullable=False, index=True)
    related_name = db.Column(db.String(255), nullable=False)
    relation_type = db.Column(db.String(32), nullable=False)


class CardForeignData(db.Model):
    __tablename__ = "card_foreign_data"

    id = db.Column(db.Integer, primary_key=True)
    card_name = db.Column(db.String(255), nullable=False, index=True)
    language = db.Column(db.String(32), nullable=False)
    foreign_name = db.Column(db.String(255), nullable=True, index=True)
    foreign_text = db.Column(db.Text, nullable=True)
    foreign_type = db.Column(db.String(255), nullable=True)
    foreign_flavor_text = db.Column(db.Text, nullable=True)
