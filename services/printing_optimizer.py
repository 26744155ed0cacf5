"""Suggest a single set that most of a deck could be reprinted from.

Every deck card row that is not a basic land is a candidate. For each set we
count how many of those rows have a printing of their card in that set, and
rank sets by that count.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import aliased

from extensions import db
from models import Card, CardSet, DeckCard, Printing
from services.card_rules import BASIC_LAND_MARKER
from services.deck_service import get_owned_deck
from services.errors import NotFoundError, ValidationError

_LOG = logging.getLogger(__name__)

EXCLUDED_SET_CODES = frozenset({"SLD", "PRM", "PLST"})
DEFAULT_TOP_N = 5


def _eligible_deck_cards(deck_id: int) -> List[Dict[str, Any]]:
    rows = (
        db.session.query(DeckCard, Printing, Card)
        .join(Printing, Printing.id == DeckCard.printing_id)
        .join(Card, Card.id == Printing.card_id)
        .filter(DeckCard.deck_id == deck_id)
        .filter(func.coalesce(Card.type_line, "").notlike(f"%{BASIC_LAND_MARKER}%"))
        .order_by(DeckCard.id)
        .all()
    )
    return [
        {
            "deckCardId": deck_card.id,
            "cardId": card.id,
            "cardName": card.name,
            "currentPrintingId": printing.id,
            "currentSetCode": printing.set_code,
            "currentSetName": printing.set_name,
            "quantity": deck_card.quantity,
            "boardType": deck_card.board_type,
        }
        for deck_card, printing, card in rows
    ]


def _candidate(deck_card: Dict[str, Any], printing: Printing) -> Dict[str, Any]:
    entry = dict(deck_card)
    entry.update(
        {
            "newPrintingId": printing.id,
            "rarity": printing.rarity,
            "imageUrl": printing.image_url,
        }
    )
    return entry


def _percentage(count: int, total: int) -> int:
    return int(round(count / total * 100)) if total else 0


def rank_sets(
    deck_cards: List[Dict[str, Any]],
    printings: Iterable[Printing],
    *,
    top_n: int = DEFAULT_TOP_N,
    exclude_commander: bool = False,
) -> List[Dict[str, Any]]:
    """Rank sets by how many of ``deck_cards`` they hold a printing for.

    ``printings`` must be ordered oldest release first; the first printing seen
    per (set, card) is the one suggested.
    """
    rows_by_card: Dict[int, List[Dict[str, Any]]] = {}
    for deck_card in deck_cards:
        rows_by_card.setdefault(deck_card["cardId"], []).append(deck_card)

    by_set: Dict[str, Dict[str, Any]] = {}
    for printing in printings:
        code = printing.set_code
        if code in EXCLUDED_SET_CODES:
            continue
        set_name = printing.set_name or code
        if exclude_commander and "commander" in set_name.lower():
            continue
        entry = by_set.setdefault(
            code,
            {
                "setCode": code,
                "setName": set_name,
                "releaseDate": printing.card_set.release_date if printing.card_set else None,
                "cards": [],
                "_seen": set(),
            },
        )
        for deck_card in rows_by_card.get(printing.card_id, ()):
            if deck_card["deckCardId"] in entry["_seen"]:
                continue
            entry["_seen"].add(deck_card["deckCardId"])
            entry["cards"].append(_candidate(deck_card, printing))

    total = len(deck_cards)
    ranked = sorted(by_set.values(), key=lambda s: len(s["cards"]), reverse=True)[: max(0, top_n)]
    suggestions = []
    for index, entry in enumerate(ranked, start=1):
        count = len(entry["cards"])
        suggestions.append(
            {
                "rank": index,
                "setCode": entry["setCode"],
                "setName": entry["setName"],
                "releaseDate": entry["releaseDate"],
                "cardCount": count,
                "percentage": _percentage(count, total),
                "cards": sorted(entry["cards"], key=lambda c: c["cardName"].lower()),
            }
        )
    return suggestions


def _printings_for_cards(card_ids: Iterable[int]) -> List[Printing]:
    ids = list(set(card_ids))
    if not ids:
        return []
    return (
        Printing.query.outerjoin(CardSet, CardSet.code == Printing.set_code)
        .filter(Printing.card_id.in_(ids))
        .order_by(CardSet.release_date.is_(None), CardSet.release_date, Printing.id)
        .all()
    )


def analyze_deck_printings(
    deck_id: int,
    user_id: int,
    top_n: int = DEFAULT_TOP_N,
    exclude_commander: bool = False,
) -> Dict[str, Any]:
    deck = get_owned_deck(deck_id, user_id)
    deck_cards = _eligible_deck_cards(deck.id)
    if not deck_cards:
        return {"suggestions": [], "totalCards": 0, "deckId": deck.id}

    printings = _printings_for_cards(dc["cardId"] for dc in deck_cards)
    suggestions = rank_sets(deck_cards, printings, top_n=top_n, exclude_commander=exclude_commander)
    return {"suggestions": suggestions, "totalCards": len(deck_cards), "deckId": deck.id}


def analyze_specific_set(deck_id: int, user_id: int, set_code: str) -> Optional[Dict[str, Any]]:
    """Coverage of one chosen set; None when the deck has no eligible cards."""
    deck = get_owned_deck(deck_id, user_id)
    card_set = CardSet.query.filter(func.upper(CardSet.code) == (set_code or "").upper()).first()
    if card_set is None:
        raise NotFoundError("Set not found")

    deck_cards = _eligible_deck_cards(deck.id)
    if not deck_cards:
        return None

    first_in_set: Dict[int, Printing] = {}
    for printing in (
        Printing.query.filter(
            Printing.set_code == card_set.code,
            Printing.card_id.in_({dc["cardId"] for dc in deck_cards}),
        )
        .order_by(Printing.id)
        .all()
    ):
        first_in_set.setdefault(printing.card_id, printing)

    cards = [
        _candidate(deck_card, first_in_set[deck_card["cardId"]])
        for deck_card in deck_cards
        if deck_card["cardId"] in first_in_set
    ]
    return {
        "setCode": card_set.code,
        "setName": card_set.name,
        "releaseDate": card_set.release_date,
        "cardCount": len(cards),
        "totalCards": len(deck_cards),
        "percentage": _percentage(len(cards), len(deck_cards)),
        "cards": sorted(cards, key=lambda c: c["cardName"].lower()),
        "deckId": deck.id,
    }


def apply_printing_changes(deck_id: int, user_id: int, changes: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Repoint deck card rows at new printings, all or nothing.

    A change that would leave two rows with the same printing in one zone folds
    the moved row into the existing one.
    """
    deck = get_owned_deck(deck_id, user_id)
    if not isinstance(changes, list):
        raise ValidationError("Changes array is required", field="changes")

    updated = 0
    try:
        with db.session.no_autoflush:
            for change in changes:
                try:
                    deck_card_id = int(change["deckCardId"])
                    new_printing_id = int(change["newPrintingId"])
                except (KeyError, TypeError, ValueError):
                    raise ValidationError("Each change needs deckCardId and newPrintingId", field="changes")

                row = DeckCard.query.filter_by(id=deck_card_id, deck_id=deck.id).first()
                if row is None:
                    continue
                new_printing = db.session.get(Printing, new_printing_id)
                if new_printing is None:
                    raise NotFoundError(f"Printing {new_printing_id} not found")
                if new_printing.card_id != row.printing.card_id:
                    raise ValidationError(
                        f"Printing {new_printing_id} is not a printing of {row.printing.card.name}",
                        field="changes",
                        invalid=[new_printing_id],
                    )

                clash = DeckCard.query.filter(
                    DeckCard.deck_id == deck.id,
                    DeckCard.printing_id == new_printing_id,
                    DeckCard.board_type == row.board_type,
                    DeckCard.id != row.id,
                ).first()
                if clash is not None:
                    clash.quantity = clash.quantity + row.quantity
                    db.session.delete(row)
                else:
                    row.printing_id = new_printing_id
                db.session.flush()
                updated += 1
        deck.touch()
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    _LOG.info("Printing optimization applied", extra={"deck_id": deck.id, "updated": updated})
    return {
        "success": True,
        "updated": updated,
        "message": f"Updated {updated} card{'' if updated == 1 else 's'} to new printings",
    }


def get_available_sets(deck_id: int, user_id: int) -> List[Dict[str, Any]]:
    """Every set holding a printing of at least one eligible deck card."""
    deck = get_owned_deck(deck_id, user_id)
    current = aliased(Printing)
    card_count = func.count(func.distinct(Printing.card_id)).label("card_count")
    rows = (
        db.session.query(CardSet.code, CardSet.name, CardSet.release_date, CardSet.set_type, card_count)
        .select_from(DeckCard)
        .join(current, current.id == DeckCard.printing_id)
        .join(Card, Card.id == current.card_id)
        .join(Printing, Printing.card_id == current.card_id)
        .join(CardSet, CardSet.code == Printing.set_code)
        .filter(DeckCard.deck_id == deck.id)
        .filter(func.coalesce(Card.type_line, "").notlike(f"%{BASIC_LAND_MARKER}%"))
        .group_by(CardSet.code, CardSet.name, CardSet.release_date, CardSet.set_type)
        .order_by(card_count.desc(), CardSet.release_date.desc())
        .all()
    )
    return [
        {"code": code, "name": name, "release_date": release_date, "type": set_type, "card_count": count}
        for code, name, release_date, set_type, count in rows
    ]


__all__ = [
    "EXCLUDED_SET_CODES",
    "DEFAULT_TOP_N",
    "rank_sets",
    "analyze_deck_printings",
    "analyze_specific_set",
    "apply_printing_changes",
    "get_available_sets",
]
