"""Shared pricing helpers for DeckLotus services and routes.

Prices are keyed by printing UUID (not by surrogate id) so they can be
refreshed independently of the rest of the catalog. The "market price" used
for valuations everywhere is the TCGplayer normal (non-foil) price; printings
without one are valued at zero.
"""
from __future__ import annotations

from collections import defaultdict
from datetime import datetime
from typing import Any, Dict, Iterable, Optional

from sqlalchemy import and_, func

from extensions import db
from models import DeckCard, Price, Printing

__all__ = [
    "DEFAULT_PROVIDER",
    "DEFAULT_PRICE_TYPE",
    "PRICE_TYPES",
    "CURRENCY",
    "price_has_value",
    "market_price_join",
    "market_price_column",
    "get_printing_prices",
    "get_bulk_prices",
    "get_deck_price",
    "upsert_price",
]

DEFAULT_PROVIDER = "tcgplayer"
DEFAULT_PRICE_TYPE = "normal"
PRICE_TYPES: tuple[str, ...] = ("normal", "foil", "etched")
CURRENCY = "USD"


def price_has_value(value: Any) -> bool:
    """Return True when ``value`` parses as a positive price."""
    if value in (None, "", 0, "0", "0.0", "0.00"):
        return False
    try:
        return float(value) > 0
    except (TypeError, ValueError):
        return False


def market_price_join(price_alias=Price, uuid_column=Printing.uuid, *, price_type: str = DEFAULT_PRICE_TYPE):
    """ON clause for outer-joining the market price row of a printing."""
    return and_(
        price_alias.printing_uuid == uuid_column,
        price_alias.provider == DEFAULT_PROVIDER,
        price_alias.price_type == price_type,
    )


def market_price_column(price_alias=Price):
    """Market price with unpriced printings coalesced to zero."""
    return func.coalesce(price_alias.price, 0.0)


def get_printing_prices(uuid: str) -> Dict[str, Dict[str, float]]:
    """All known prices for one printing as ``{provider: {price_type: price}}``."""
    rows = (
        Price.query.filter(Price.printing_uuid == uuid)
        .order_by(Price.provider, Price.price_type)
        .all()
    )
    formatted: Dict[str, Dict[str, float]] = {}
    for row in rows:
        formatted.setdefault(row.provider, {})[row.price_type] = row.price
    return formatted


def get_bulk_prices(uuids: Iterable[str]) -> Dict[str, Dict[str, Dict[str, float]]]:
    wanted = [u for u in dict.fromkeys(uuids) if u]
    if not wanted:
        return {}
    grouped: Dict[str, Dict[str, Dict[str, float]]] = defaultdict(dict)
    for row in Price.query.filter(Price.printing_uuid.in_(wanted)).all():
        grouped[row.printing_uuid].setdefault(row.provider, {})[row.price_type] = row.price
    return dict(grouped)


def get_deck_price(deck_id: int) -> Dict[str, Any]:
    """Total market value of every card row in a deck (all zones)."""
    total = (
        db.session.query(func.coalesce(func.sum(market_price_column() * DeckCard.quantity), 0.0))
        .select_from(DeckCard)
        .join(Printing, Printing.id == DeckCard.printing_id)
        .outerjoin(Price, market_price_join())
        .filter(DeckCard.deck_id == deck_id)
        .scalar()
    )
    return {
        "total": round(float(total or 0), 2),
        "provider": DEFAULT_PROVIDER,
        "currency": CURRENCY,
    }


def upsert_price(uuid: str, provider: str, price_type: str, price: Any) -> Optional[Price]:
    """Insert or update the single price row for ``(uuid, provider, price_type)``."""
    if not price_has_value(price):
        return None
    value = float(price)
    row = Price.query.filter_by(printing_uuid=uuid, provider=provider, price_type=price_type).first()
    if row is None:
        row = Price(printing_uuid=uuid, provider=provider, price_type=price_type, price=value)
        db.session.add(row)
    else:
        row.price = value
        row.updated_at = datetime.utcnow()
    return row
