"""Set listing and per-set card pages."""
from __future__ import annotations

import math
from typing import Any, Dict, List

from sqlalchemy import Integer, cast, func, or_

from extensions import cache, db
from models import Card, CardSet, Printing
from services.errors import NotFoundError

SET_CARDS_PAGE_SIZE = 100


@cache.memoize(timeout=600)
def list_sets() -> List[Dict[str, Any]]:
    rows = CardSet.query.order_by(CardSet.release_date.desc(), CardSet.name).all()
    return [row.to_dict() for row in rows]


def search_sets(query: str, limit: int = 20) -> List[Dict[str, Any]]:
    term = (query or "").strip()
    if not term:
        return []
    pattern = f"%{term}%"
    rows = (
        CardSet.query.filter(or_(CardSet.name.like(pattern), CardSet.code.like(pattern)))
        .order_by(CardSet.release_date.desc(), CardSet.name)
        .limit(limit)
        .all()
    )
    return [row.to_dict() for row in rows]


def get_set_or_404(code: str) -> CardSet:
    card_set = CardSet.query.filter(func.upper(CardSet.code) == (code or "").upper()).first()
    if card_set is None:
        raise NotFoundError("Set not found")
    return card_set


def get_set_cards(code: str, page: int = 1, limit: int = SET_CARDS_PAGE_SIZE) -> Dict[str, Any]:
    """Printings of one set in numeric collector-number order."""
    card_set = get_set_or_404(code)
    page = max(1, page)
    limit = max(1, min(limit, 500))

    base = (
        db.session.query(Printing, Card)
        .join(Card, Card.id == Printing.card_id)
        .filter(Printing.set_code == card_set.code)
    )
    total = base.count()
    rows = (
        base.order_by(cast(Printing.collector_number, Integer), Printing.collector_number)
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    cards = []
    for printing, card in rows:
        entry = printing.to_dict()
        entry.update(
            {
                "printing_id": printing.id,
                "id": card.id,
                "name": card.name,
                "mana_cost": card.mana_cost,
                "cmc": card.cmc,
                "colors": card.colors,
                "type_line": card.type_line,
            }
        )
        cards.append(entry)
    return {
        "set": card_set.to_dict(),
        "cards": cards,
        "total": total,
        "page": page,
        "totalPages": math.ceil(total / limit) if total else 0,
        "limit": limit,
    }


__all__ = ["list_sets", "search_sets", "get_set_or_404", "get_set_cards", "SET_CARDS_PAGE_SIZE"]
