"""Collection views: owned cards, collection statistics and bulk adds."""
from __future__ import annotations

import logging
import math
import re
from typing import Any, Dict, Iterable, List, Optional, Sequence

from sqlalchemy import case, func, select
from sqlalchemy.orm import aliased

from extensions import db
from models import Card, CardSet, Deck, DeckCard, OwnedPrinting, Price, Printing
from services.card_service import color_filter_clause
from services.collection import add_owned_printing, owned_card_ids_query
from services.pricing import market_price_column, market_price_join

_LOG = logging.getLogger(__name__)

INVENTORY_SORTS = ("name", "cmc", "color", "quantity", "type")
AVAILABILITY_FILTERS = ("all", "available", "in_decks")
INVENTORY_PAGE_SIZE = 50

_BULK_LINE_RE = re.compile(r"^(?:(\d+)x?\s+)?(.+?)(?:\s*\[(\w+)\])?$", re.IGNORECASE)


def _total_owned_subquery(user_id: int):
    return (
        select(func.coalesce(func.sum(OwnedPrinting.quantity), 0))
        .select_from(OwnedPrinting)
        .join(Printing, Printing.id == OwnedPrinting.printing_id)
        .where(OwnedPrinting.user_id == user_id, Printing.card_id == Card.id)
        .correlate(Card)
        .scalar_subquery()
    )


def _total_in_decks_subquery(user_id: int):
    return (
        select(func.coalesce(func.sum(DeckCard.quantity), 0))
        .select_from(DeckCard)
        .join(Printing, Printing.id == DeckCard.printing_id)
        .join(Deck, Deck.id == DeckCard.deck_id)
        .where(Deck.user_id == user_id, Printing.card_id == Card.id)
        .correlate(Card)
        .scalar_subquery()
    )


def _cheapest_printing_subquery():
    price = aliased(Price)
    return (
        select(Printing.id)
        .outerjoin(price, market_price_join(price))
        .where(Printing.card_id == Card.id)
        .order_by(price.price.is_(None), price.price, Printing.id)
        .limit(1)
        .correlate(Card)
        .scalar_subquery()
    )


def _image_subquery():
    return (
        select(Printing.image_url)
        .where(Printing.card_id == Card.id, Printing.image_url.isnot(None))
        .order_by(Printing.id)
        .limit(1)
        .correlate(Card)
        .scalar_subquery()
    )


def owned_printing_rows(user_id: int, card_id: int) -> List[Dict[str, Any]]:
    rows = (
        db.session.query(OwnedPrinting, Printing, Price.price)
        .join(Printing, Printing.id == OwnedPrinting.printing_id)
        .outerjoin(Price, market_price_join())
        .filter(OwnedPrinting.user_id == user_id, Printing.card_id == card_id)
        .order_by(Printing.set_code, Printing.collector_number)
        .all()
    )
    return [
        {
            "owned_printing_id": owned.id,
            "quantity": owned.quantity,
            "printing_id": printing.id,
            "set_code": printing.set_code,
            "set_name": printing.set_name,
            "collector_number": printing.collector_number,
            "rarity": printing.rarity,
            "image_url": printing.image_url,
            "price": price,
        }
        for owned, printing, price in rows
    ]


def get_inventory(
    user_id: int,
    *,
    name: Optional[str] = None,
    colors: Sequence[str] = (),
    type_filter: Optional[str] = None,
    sets: Sequence[str] = (),
    sort: str = "name",
    availability: str = "all",
    page: int = 1,
    limit: int = INVENTORY_PAGE_SIZE,
) -> Dict[str, Any]:
    """Owned cards with per-card totals; ``available`` may be negative."""
    page = max(1, page)
    limit = max(1, min(limit, 200))
    total_owned = _total_owned_subquery(user_id)
    total_in_decks = _total_in_decks_subquery(user_id)

    filters = [Card.id.in_(owned_card_ids_query(user_id))]
    if name and name.strip():
        filters.append(Card.name.like(f"%{name.strip()}%"))
    color_clause = color_filter_clause(colors)
    if color_clause is not None:
        filters.append(color_clause)
    if type_filter and type_filter.strip() and type_filter != "all":
        filters.append(Card.type_line.like(f"%{type_filter.strip()}%"))
    if sets:
        codes = [code.upper() for code in sets]
        in_sets = (
            db.session.query(Printing.card_id)
            .join(OwnedPrinting, OwnedPrinting.printing_id == Printing.id)
            .filter(OwnedPrinting.user_id == user_id, Printing.set_code.in_(codes))
        )
        filters.append(Card.id.in_(in_sets))
    if availability == "available":
        filters.append(total_owned - total_in_decks > 0)
    elif availability == "in_decks":
        filters.append(total_in_decks > 0)

    total = db.session.query(func.count(Card.id)).filter(*filters).scalar() or 0

    query = db.session.query(
        Card,
        _image_subquery().label("image_url"),
        total_owned.label("total_owned"),
        total_in_decks.label("total_in_decks"),
    ).filter(*filters)
    if sort == "cmc":
        query = query.order_by(Card.cmc, Card.name)
    elif sort == "color":
        query = query.order_by(Card.colors, Card.name)
    elif sort == "quantity":
        query = query.order_by(total_owned.desc(), Card.name)
    elif sort == "type":
        query = query.order_by(Card.type_line, Card.name)
    else:
        query = query.order_by(Card.name)

    cards = []
    for card, image_url, owned, in_decks in query.offset((page - 1) * limit).limit(limit).all():
        owned = int(owned or 0)
        in_decks = int(in_decks or 0)
        cards.append(
            {
                "card_id": card.id,
                "name": card.name,
                "mana_cost": card.mana_cost,
                "cmc": card.cmc,
                "colors": card.colors,
                "type_line": card.type_line,
                "oracle_text": card.oracle_text,
                "image_url": image_url,
                "total_owned": owned,
                "total_in_decks": in_decks,
                "available": owned - in_decks,
                "printings": owned_printing_rows(user_id, card.id),
            }
        )

    return {
        "cards": cards,
        "pagination": {
            "page": page,
            "totalPages": math.ceil(total / limit) if total else 0,
            "totalCards": total,
            "limit": limit,
        },
    }


def get_inventory_stats(user_id: int) -> Dict[str, Any]:
    unique_cards = (
        db.session.query(func.count(func.distinct(Printing.card_id)))
        .select_from(Printing)
        .join(OwnedPrinting, OwnedPrinting.printing_id == Printing.id)
        .filter(OwnedPrinting.user_id == user_id)
        .scalar()
    )
    total_copies = (
        db.session.query(func.coalesce(func.sum(OwnedPrinting.quantity), 0))
        .filter(OwnedPrinting.user_id == user_id)
        .scalar()
    )
    in_decks = (
        db.session.query(func.coalesce(func.sum(DeckCard.quantity), 0))
        .select_from(DeckCard)
        .join(Deck, Deck.id == DeckCard.deck_id)
        .filter(Deck.user_id == user_id)
        .scalar()
    )
    value = (
        db.session.query(func.coalesce(func.sum(OwnedPrinting.quantity * market_price_column()), 0.0))
        .select_from(OwnedPrinting)
        .join(Printing, Printing.id == OwnedPrinting.printing_id)
        .outerjoin(Price, market_price_join())
        .filter(OwnedPrinting.user_id == user_id)
        .scalar()
    )
    total_copies = int(total_copies or 0)
    in_decks = int(in_decks or 0)
    return {
        "uniqueCards": int(unique_cards or 0),
        "totalCopies": total_copies,
        "inDecks": in_decks,
        "available": total_copies - in_decks,
        "estimatedValue": round(float(value or 0), 2),
    }


def search_for_add(user_id: int, query: str, limit: int = 10) -> List[Dict[str, Any]]:
    term = (query or "").strip()
    if len(term) < 2:
        return []
    prefix_first = case((Card.name.like(f"{term}%"), 0), else_=1)
    rows = (
        db.session.query(
            Card,
            _image_subquery(),
            _cheapest_printing_subquery(),
            _total_owned_subquery(user_id),
        )
        .filter(Card.name.like(f"%{term}%"))
        .order_by(prefix_first, Card.name)
        .limit(limit)
        .all()
    )
    return [
        {
            "card_id": card.id,
            "name": card.name,
            "mana_cost": card.mana_cost,
            "type_line": card.type_line,
            "image_url": image_url,
            "cheapest_printing_id": cheapest,
            "total_owned": int(owned or 0),
        }
        for card, image_url, cheapest, owned in rows
    ]


def find_cheapest_printing(card_id: int, set_code: Optional[str] = None) -> Optional[Printing]:
    if set_code:
        in_set = (
            Printing.query.filter(Printing.card_id == card_id, func.upper(Printing.set_code) == set_code.upper())
            .order_by(Printing.id)
            .first()
        )
        if in_set is not None:
            return in_set
    return (
        Printing.query.outerjoin(Price, market_price_join())
        .filter(Printing.card_id == card_id)
        .order_by(Price.price.is_(None), Price.price, Printing.id)
        .first()
    )


def _resolve_card(card_name: str) -> Optional[Card]:
    card = Card.query.filter_by(name=card_name).first()
    if card is None:
        card = Card.query.filter(Card.name.like(f"%{card_name}%")).order_by(Card.name).first()
    return card


def parse_bulk_text(text: str) -> List[Dict[str, Any]]:
    """Turn lines like ``4x Lightning Bolt [M11]`` into bulk-add items."""
    items = []
    for raw in (text or "").splitlines():
        line = raw.strip()
        if not line or line.startswith(("#", "//")):
            continue
        match = _BULK_LINE_RE.match(line)
        if not match:
            continue
        quantity, card_name, set_code = match.groups()
        items.append(
            {
                "cardName": card_name.strip(),
                "setCode": set_code.upper() if set_code else None,
                "quantity": int(quantity) if quantity else 1,
            }
        )
    return items


def bulk_add(user_id: int, items: Iterable[Dict[str, Any]]) -> Dict[str, Any]:
    """Add many cards; a bad line is recorded in ``errors`` and never aborts the rest."""
    results: Dict[str, Any] = {"added": 0, "failed": 0, "errors": []}
    for item in items:
        if not isinstance(item, dict):
            results["failed"] += 1
            results["errors"].append({"cardName": None, "error": "Card name is required"})
            continue
        card_name = item.get("cardName")
        set_code = item.get("setCode")
        try:
            quantity = int(item.get("quantity") or 1)
        except (TypeError, ValueError):
            quantity = 0
        if not card_name or not str(card_name).strip():
            results["failed"] += 1
            results["errors"].append({"cardName": card_name, "error": "Card name is required"})
            continue
        if quantity < 1:
            results["failed"] += 1
            results["errors"].append({"cardName": card_name, "error": "Quantity must be at least 1"})
            continue

        card = _resolve_card(str(card_name).strip())
        if card is None:
            results["failed"] += 1
            results["errors"].append({"cardName": card_name, "error": "Card not found"})
            continue
        printing = find_cheapest_printing(card.id, set_code)
        if printing is None:
            results["failed"] += 1
            results["errors"].append({"cardName": card_name, "setCode": set_code, "error": "Printing not found"})
            continue

        add_owned_printing(user_id, printing.id, quantity)
        results["added"] += quantity

    db.session.commit()
    _LOG.info(
        "Bulk inventory add finished",
        extra={"user_id": user_id, "added": results["added"], "failed": results["failed"]},
    )
    return results


def get_owned_sets(user_id: int) -> List[Dict[str, Any]]:
    owned_count = func.count(OwnedPrinting.id).label("owned_count")
    rows = (
        db.session.query(CardSet.code, CardSet.name, CardSet.release_date, owned_count)
        .join(Printing, Printing.set_code == CardSet.code)
        .join(OwnedPrinting, OwnedPrinting.printing_id == Printing.id)
        .filter(OwnedPrinting.user_id == user_id)
        .group_by(CardSet.code, CardSet.name, CardSet.release_date)
        .order_by(CardSet.release_date.desc(), CardSet.name)
        .all()
    )
    return [
        {"code": code, "name": name, "release_date": release_date, "owned_count": count}
        for code, name, release_date, count in rows
    ]


__all__ = [
    "INVENTORY_SORTS",
    "AVAILABILITY_FILTERS",
    "get_inventory",
    "get_inventory_stats",
    "search_for_add",
    "find_cheapest_printing",
    "parse_bulk_text",
    "bulk_add",
    "get_owned_sets",
    "owned_printing_rows",
]
