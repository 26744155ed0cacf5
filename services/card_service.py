"""Catalog queries: browse, autocomplete search and card detail."""
from __future__ import annotations

import math
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import and_, case, exists, func, or_, select
from sqlalchemy.orm import aliased

from extensions import cache, db
from models import (
    Card,
    CardForeignData,
    Price,
    Printing,
    RelatedCard,
    Ruling,
)
from models.catalog import split_list
from services.collection import owned_card_ids_query
from services.pricing import market_price_join

BROWSE_SORTS = ("random", "name", "cmc", "color", "price")
MAX_PAGE_SIZE = 200


def _image_subquery():
    return (
        select(Printing.image_url)
        .where(Printing.card_id == Card.id, Printing.image_url.isnot(None))
        .order_by(Printing.id)
        .limit(1)
        .correlate(Card)
        .scalar_subquery()
    )


def _sample_uuid_subquery():
    return (
        select(Printing.uuid)
        .where(Printing.card_id == Card.id)
        .order_by(Printing.id)
        .limit(1)
        .correlate(Card)
        .scalar_subquery()
    )


def with_image_variants(row: Dict[str, Any]) -> Dict[str, Any]:
    url = row.get("image_url")
    row["large_image_url"] = url.replace("/normal/", "/large/") if url else None
    row["art_crop_url"] = url.replace("/normal/", "/art_crop/") if url else None
    return row


def _card_summary(card: Card, image_url: Optional[str], **extra: Any) -> Dict[str, Any]:
    data = {
        "id": card.id,
        "name": card.name,
        "mana_cost": card.mana_cost,
        "cmc": card.cmc,
        "colors": card.colors,
        "type_line": card.type_line,
        "oracle_text": card.oracle_text,
        "image_url": image_url,
    }
    data.update(extra)
    return with_image_variants(data)


def color_filter_clause(colors: Sequence[str]):
    """Cards containing every selected color; ``C`` also admits colorless cards."""
    wanted = [c.strip().upper() for c in colors if c and c.strip()]
    if not wanted:
        return None
    colorless = or_(Card.colors.is_(None), Card.colors == "", Card.colors == "[]")
    actual = [c for c in wanted if c != "C"]
    colored = and_(*[Card.colors.like(f"%{c}%") for c in actual]) if actual else None
    if "C" in wanted:
        return colorless if colored is None else or_(colored, colorless)
    return colored


def search_cards(query: str, limit: int = 20) -> List[Dict[str, Any]]:
    """Autocomplete: English name prefix first, then foreign-name prefix."""
    query = (query or "").strip()
    if len(query) < 2:
        return []
    prefix = f"{query}%"
    foreign_match = exists().where(
        CardForeignData.card_name == Card.name,
        CardForeignData.foreign_name.like(prefix),
    )
    priority = case((Card.name.like(prefix), 0), (foreign_match, 1), else_=2)
    rows = (
        db.session.query(
            Card,
            _image_subquery().label("image_url"),
            _sample_uuid_subquery().label("sample_uuid"),
            priority.label("match_priority"),
        )
        .filter(or_(Card.name.like(prefix), foreign_match))
        .order_by(priority, Card.name)
        .limit(max(1, min(limit, MAX_PAGE_SIZE)))
        .all()
    )
    return [
        _card_summary(card, image_url, sample_uuid=sample_uuid, match_priority=match_priority)
        for card, image_url, sample_uuid, match_priority in rows
    ]


def browse_cards(
    *,
    name: Optional[str] = None,
    colors: Sequence[str] = (),
    type_filter: Optional[str] = None,
    sets: Sequence[str] = (),
    subtypes: Sequence[str] = (),
    cmc_min: Optional[float] = None,
    cmc_max: Optional[float] = None,
    only_owned: bool = False,
    user_id: Optional[int] = None,
    sort: str = "random",
    page: int = 1,
    limit: int = 50,
) -> Dict[str, Any]:
    limit = max(1, min(limit, MAX_PAGE_SIZE))
    page = max(1, page)

    filters = []
    if name and name.strip():
        filters.append(Card.name.like(f"%{name.strip()}%"))
    color_clause = color_filter_clause(colors)
    if color_clause is not None:
        filters.append(color_clause)
    if type_filter and type_filter.strip() and type_filter != "all":
        filters.append(Card.type_line.like(f"%{type_filter.strip()}%"))
    if sets:
        codes = [code.upper() for code in sets]
        filters.append(
            exists().where(Printing.card_id == Card.id, Printing.set_code.in_(codes))
        )
    if subtypes:
        filters.append(or_(*[Card.subtypes.like(f"%{sub}%") for sub in subtypes]))
    if cmc_min is not None:
        filters.append(Card.cmc >= cmc_min)
    if cmc_max is not None:
        filters.append(Card.cmc <= cmc_max)
    if only_owned and user_id:
        filters.append(Card.id.in_(owned_card_ids_query(user_id)))

    total = db.session.query(func.count(Card.id)).filter(*filters).scalar() or 0

    columns = [Card, _image_subquery().label("image_url")]
    if user_id:
        owned = Card.id.in_(owned_card_ids_query(user_id))
        columns.append(case((owned, True), else_=False).label("is_owned"))

    query = db.session.query(*columns).filter(*filters)

    if sort == "name":
        query = query.order_by(Card.name)
    elif sort == "cmc":
        query = query.order_by(Card.cmc, Card.name)
    elif sort == "color":
        query = query.order_by(Card.colors, Card.name)
    elif sort == "price":
        price_alias = aliased(Price)
        max_price = (
            select(func.max(price_alias.price))
            .select_from(Printing)
            .join(price_alias, market_price_join(price_alias))
            .where(Printing.card_id == Card.id)
            .correlate(Card)
            .scalar_subquery()
        )
        query = query.order_by(max_price.desc().nulls_last(), Card.name)
    else:
        query = query.order_by(func.random())

    rows = query.offset((page - 1) * limit).limit(limit).all()
    cards = []
    for row in rows:
        card, image_url = row[0], row[1]
        extra = {"is_owned": bool(row[2])} if user_id else {}
        cards.append(_card_summary(card, image_url, **extra))

    return {
        "cards": cards,
        "total": total,
        "page": page,
        "totalPages": math.ceil(total / limit) if total else 0,
        "limit": limit,
    }


def _printing_rows_with_prices(card_id: int) -> List[Dict[str, Any]]:
    normal = aliased(Price)
    foil = aliased(Price)
    rows = (
        db.session.query(Printing, normal.price, foil.price)
        .outerjoin(normal, market_price_join(normal))
        .outerjoin(foil, market_price_join(foil, price_type="foil"))
        .filter(Printing.card_id == card_id)
        .order_by(normal.price.is_(None), normal.price, Printing.set_code, Printing.collector_number)
        .all()
    )
    out = []
    for printing, price_normal, price_foil in rows:
        data = printing.to_dict()
        data["price_normal"] = price_normal
        data["price_foil"] = price_foil
        out.append(data)
    return out


def get_card(card_id: int) -> Optional[Dict[str, Any]]:
    """Card detail with printings (cheapest first), rulings, related cards and translations."""
    card = db.session.get(Card, card_id)
    if card is None:
        return None

    printings = _printing_rows_with_prices(card.id)
    uuids = [p["uuid"] for p in printings]
    rulings = []
    if uuids:
        seen = set()
        for ruling in (
            Ruling.query.filter(Ruling.uuid.in_(uuids)).order_by(Ruling.date.desc(), Ruling.id).all()
        ):
            key = (ruling.date, ruling.text)
            if key in seen:
                continue
            seen.add(key)
            rulings.append({"date": ruling.date, "text": ruling.text})

    related = (
        RelatedCard.query.filter_by(card_name=card.name)
        .order_by(RelatedCard.relation_type, RelatedCard.related_name)
        .all()
    )
    foreign = (
        CardForeignData.query.filter_by(card_name=card.name)
        .order_by(CardForeignData.language)
        .all()
    )

    data = card.to_dict()
    data.update(
        {
            "printings": printings,
            "rulings": rulings,
            "relatedCards": [
                {"related_name": r.related_name, "relation_type": r.relation_type} for r in related
            ],
            "foreignData": [
                {
                    "language": f.language,
                    "foreign_name": f.foreign_name,
                    "foreign_text": f.foreign_text,
                    "foreign_type": f.foreign_type,
                    "foreign_flavor_text": f.foreign_flavor_text,
                }
                for f in foreign
            ],
        }
    )
    return data


def get_card_by_name(name: str) -> Optional[Dict[str, Any]]:
    card = Card.query.filter_by(name=name).first()
    if card is None:
        return None
    data = card.to_dict()
    data["printings"] = get_card_printings(card.id)
    return data


def get_card_printings(card_id: int) -> List[Dict[str, Any]]:
    printings = (
        Printing.query.filter_by(card_id=card_id)
        .order_by(Printing.set_code, Printing.collector_number)
        .all()
    )
    return [p.to_dict() for p in printings]


def get_printing_by_uuid(uuid: str) -> Optional[Dict[str, Any]]:
    printing = Printing.query.filter_by(uuid=uuid).first()
    if printing is None:
        return None
    data = printing.to_dict()
    data["card"] = printing.card.to_dict()
    return data


def random_cards(count: int = 10) -> List[Dict[str, Any]]:
    count = max(1, min(count, 100))
    rows = (
        db.session.query(Card, _image_subquery().label("image_url"), _sample_uuid_subquery())
        .order_by(func.random())
        .limit(count)
        .all()
    )
    return [_card_summary(card, image_url, sample_uuid=sample_uuid) for card, image_url, sample_uuid in rows]


@cache.memoize(timeout=600)
def card_stats() -> Dict[str, int]:
    return {
        "total_cards": db.session.query(func.count(Card.id)).scalar() or 0,
        "total_printings": db.session.query(func.count(Printing.id)).scalar() or 0,
        "total_sets": db.session.query(func.count(func.distinct(Printing.set_code))).scalar() or 0,
    }


@cache.memoize(timeout=600)
def all_subtypes() -> List[str]:
    found = set()
    for (raw,) in db.session.query(Card.subtypes).filter(Card.subtypes.isnot(None), Card.subtypes != "").distinct():
        found.update(split_list(raw))
    return sorted(found, key=str.lower)


__all__ = [
    "BROWSE_SORTS",
    "with_image_variants",
    "color_filter_clause",
    "search_cards",
    "browse_cards",
    "get_card",
    "get_card_by_name",
    "get_card_printings",
    "get_printing_by_uuid",
    "random_cards",
    "card_stats",
    "all_subtypes",
]
