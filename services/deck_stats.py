"""Read-time deck aggregates: mana curve, color and type breakdowns, legality.

Nothing here is persisted; every figure is computed from the deck's current
mainboard rows on each call.
"""
from __future__ import annotations

from collections import OrderedDict
from typing import Any, Dict, List

from sqlalchemy import func

from extensions import db
from models import Card, DeckCard, Printing
from services.card_rules import TYPE_PRIORITY, CardType, classify_type, curve_bucket, evaluate_legality
from services.deck_service import get_owned_deck


def _mainboard_rows(deck_id: int):
    return (
        db.session.query(DeckCard.quantity, Card)
        .join(Printing, Printing.id == DeckCard.printing_id)
        .join(Card, Card.id == Printing.card_id)
        .filter(DeckCard.deck_id == deck_id, DeckCard.board_type == DeckCard.BOARD_MAIN)
        .all()
    )


def _percentage(part: int, whole: int) -> float:
    return round(part / whole * 100, 1) if whole else 0.0


def compute_mana_curve(rows) -> List[Dict[str, int]]:
    buckets: Dict[int, Dict[str, int]] = {}
    for quantity, card in rows:
        bucket = curve_bucket(card.name, card.mana_cost, card.cmc)
        entry = buckets.setdefault(bucket, {"cmc": bucket, "count": 0, "total_cards": 0})
        entry["count"] += 1
        entry["total_cards"] += quantity
    return [buckets[key] for key in sorted(buckets)]


def compute_color_distribution(rows) -> List[Dict[str, Any]]:
    """Group on the stored color string as-is ("W,U" is its own bucket)."""
    total = sum(quantity for quantity, _ in rows)
    groups: "OrderedDict[Any, Dict[str, Any]]" = OrderedDict()
    for quantity, card in sorted(rows, key=lambda r: r[1].colors or ""):
        entry = groups.setdefault(card.colors, {"colors": card.colors, "count": 0, "total_cards": 0})
        entry["count"] += 1
        entry["total_cards"] += quantity
    for entry in groups.values():
        entry["percentage"] = _percentage(entry["total_cards"], total)
    return list(groups.values())


def compute_type_distribution(rows) -> List[Dict[str, Any]]:
    counts: Dict[CardType, Dict[str, Any]] = {}
    for quantity, card in rows:
        bucket = classify_type(card.type_line)
        entry = counts.setdefault(bucket, {"type": bucket.value, "count": 0, "total_cards": 0})
        entry["count"] += 1
        entry["total_cards"] += quantity
    order = list(TYPE_PRIORITY) + [CardType.OTHER]
    return [counts[t] for t in order if t in counts]


def get_deck_stats(deck_id: int, user_id: int) -> Dict[str, Any]:
    deck = get_owned_deck(deck_id, user_id)
    rows = _mainboard_rows(deck.id)
    return {
        "deck": {"id": deck.id, "name": deck.name, "format": deck.format},
        "totalCards": sum(quantity for quantity, _ in rows),
        "manaCurve": compute_mana_curve(rows),
        "colorDistribution": compute_color_distribution(rows),
        "typeDistribution": compute_type_distribution(rows),
    }


def check_deck_legality(deck_id: int, user_id: int, fmt: str) -> Dict[str, Any]:
    """Flag every unique mainboard card that is banned, restricted or absent in ``fmt``."""
    deck = get_owned_deck(deck_id, user_id)
    rows = (
        db.session.query(Card, func.sum(DeckCard.quantity), func.min(Printing.image_url))
        .join(Printing, Printing.card_id == Card.id)
        .join(DeckCard, DeckCard.printing_id == Printing.id)
        .filter(DeckCard.deck_id == deck.id, DeckCard.board_type == DeckCard.BOARD_MAIN)
        .group_by(Card.id)
        .order_by(Card.name)
        .all()
    )

    illegal = []
    for card, quantity, image_url in rows:
        # Cards imported without any legality data are not judged.
        if not card.legalities:
            continue
        verdict = evaluate_legality(card.legality_map, fmt)
        if verdict.legal:
            continue
        illegal.append(
            {
                "id": card.id,
                "name": card.name,
                "type_line": card.type_line,
                "image_url": image_url,
                "quantity": int(quantity or 0),
                "status": verdict.status,
                "reason": verdict.reason,
            }
        )

    return {
        "format": fmt,
        "isLegal": not illegal,
        "illegalCardCount": len(illegal),
        "illegalCards": illegal,
    }


__all__ = [
    "compute_mana_curve",
    "compute_color_distribution",
    "compute_type_distribution",
    "get_deck_stats",
    "check_deck_legality",
]
