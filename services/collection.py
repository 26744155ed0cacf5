"""Ownership ledger: per-user printing quantities.

``owned_printings`` is the only stored ownership record. Card-level ownership
("owns any printing of this card") is always derived with
:func:`owned_card_ids_query`.
"""
from __future__ import annotations

from typing import Any, Dict, List

from sqlalchemy import func

from extensions import db
from models import CardSet, Deck, DeckCard, OwnedPrinting, Printing
from services.errors import NotFoundError


def owned_card_ids_query(user_id: int):
    """Subquery of card ids for which ``user_id`` owns at least one printing."""
    return (
        db.session.query(Printing.card_id)
        .join(OwnedPrinting, OwnedPrinting.printing_id == Printing.id)
        .filter(OwnedPrinting.user_id == user_id)
        .distinct()
    )


def owns_card(user_id: int, card_id: int) -> bool:
    return db.session.query(
        owned_card_ids_query(user_id).filter(Printing.card_id == card_id).exists()
    ).scalar()


def _get_printing(printing_id: int) -> Printing:
    printing = db.session.get(Printing, printing_id)
    if printing is None:
        raise NotFoundError("Printing not found")
    return printing


def set_owned_printing_quantity(user_id: int, printing_id: int, quantity: int) -> Dict[str, Any]:
    """Set the owned quantity of one printing; zero or less deletes the row."""
    _get_printing(printing_id)
    existing = OwnedPrinting.query.filter_by(user_id=user_id, printing_id=printing_id).first()

    if quantity <= 0:
        if existing is not None:
            db.session.delete(existing)
        db.session.commit()
        return {"success": True, "quantity": 0, "message": "Printing removed from collection"}

    if existing is None:
        db.session.add(OwnedPrinting(user_id=user_id, printing_id=printing_id, quantity=quantity))
    else:
        existing.quantity = quantity
    db.session.commit()
    return {"success": True, "quantity": quantity}


def add_owned_printing(user_id: int, printing_id: int, delta: int) -> OwnedPrinting:
    """Increment ownership without committing; used by bulk imports."""
    existing = OwnedPrinting.query.filter_by(user_id=user_id, printing_id=printing_id).first()
    if existing is None:
        existing = OwnedPrinting(user_id=user_id, printing_id=printing_id, quantity=delta)
        db.session.add(existing)
    else:
        existing.quantity = existing.quantity + delta
    db.session.flush()
    return existing


def toggle_card_ownership(user_id: int, card_id: int) -> Dict[str, Any]:
    """Drop every owned printing of a card, or own one copy of its first printing."""
    printing_ids = [pid for (pid,) in db.session.query(Printing.id).filter(Printing.card_id == card_id)]
    if not printing_ids:
        raise NotFoundError("Card not found")

    owned = OwnedPrinting.query.filter(
        OwnedPrinting.user_id == user_id,
        OwnedPrinting.printing_id.in_(printing_ids),
    )
    if owned.count():
        owned.delete()
        db.session.commit()
        return {"owned": False, "message": "Card removed from collection"}

    first = (
        Printing.query.filter(Printing.card_id == card_id)
        .order_by(Printing.set_code, Printing.collector_number)
        .first()
    )
    db.session.add(OwnedPrinting(user_id=user_id, printing_id=first.id, quantity=1))
    db.session.commit()
    return {"owned": True, "message": "Card added to collection"}


def card_owned_printings(user_id: int, card_id: int) -> List[Dict[str, Any]]:
    rows = (
        db.session.query(OwnedPrinting, Printing, CardSet.name)
        .join(Printing, Printing.id == OwnedPrinting.printing_id)
        .outerjoin(CardSet, CardSet.code == Printing.set_code)
        .filter(OwnedPrinting.user_id == user_id, Printing.card_id == card_id)
        .order_by(Printing.set_code, Printing.collector_number)
        .all()
    )
    return [
        {
            "id": owned.id,
            "printing_id": printing.id,
            "quantity": owned.quantity,
            "set_code": printing.set_code,
            "set_name": set_name,
            "collector_number": printing.collector_number,
            "rarity": printing.rarity,
            "image_url": printing.image_url,
        }
        for owned, printing, set_name in rows
    ]


def card_deck_usage(user_id: int, card_id: int) -> List[Dict[str, Any]]:
    rows = (
        db.session.query(
            Deck.id,
            Deck.name,
            Deck.format,
            DeckCard.board_type,
            func.sum(DeckCard.quantity),
        )
        .join(DeckCard, DeckCard.deck_id == Deck.id)
        .join(Printing, Printing.id == DeckCard.printing_id)
        .filter(Deck.user_id == user_id, Printing.card_id == card_id)
        .group_by(Deck.id, Deck.name, Deck.format, DeckCard.board_type)
        .order_by(Deck.name)
        .all()
    )
    usage: Dict[int, Dict[str, Any]] = {}
    for deck_id, name, fmt, board_type, qty in rows:
        entry = usage.setdefault(
            deck_id,
            {"id": deck_id, "name": name, "format": fmt, "total_quantity": 0, "boards": {}},
        )
        entry["total_quantity"] += int(qty or 0)
        entry["boards"][board_type] = int(qty or 0)
    return list(usage.values())


def card_ownership_and_usage(user_id: int, card_id: int) -> Dict[str, Any]:
    owned = card_owned_printings(user_id, card_id)
    usage = card_deck_usage(user_id, card_id)
    total_owned = sum(row["quantity"] for row in owned)
    total_in_decks = sum(row["total_quantity"] for row in usage)
    return {
        "ownedPrintings": owned,
        "deckUsage": usage,
        "totalOwned": total_owned,
        "totalInDecks": total_in_decks,
        "available": total_owned - total_in_decks,
    }


__all__ = [
    "owned_card_ids_query",
    "owns_card",
    "set_owned_printing_quantity",
    "add_owned_printing",
    "toggle_card_ownership",
    "card_owned_printings",
    "card_deck_usage",
    "card_ownership_and_usage",
]
