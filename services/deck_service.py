"""Deck CRUD, deck card rows and public share links."""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import case, func

from extensions import db
from models import Card, Deck, DeckCard, DeckShare, Printing
from services.collection import owned_card_ids_query
from services.errors import NotFoundError, ValidationError
from services.validation import parse_positive_int

_LOG = logging.getLogger(__name__)

_ZONE_ORDER = case(
    (DeckCard.board_type == DeckCard.BOARD_MAIN, 0),
    (DeckCard.board_type == DeckCard.BOARD_SIDE, 1),
    else_=2,
)


def get_owned_deck(deck_id: int, user_id: int) -> Deck:
    """Fetch a deck scoped to its owner; other users' decks look absent."""
    deck = Deck.query.filter_by(id=deck_id, user_id=user_id).first()
    if deck is None:
        raise NotFoundError("Deck not found")
    return deck


def normalize_board(board_type: Optional[str], is_sideboard: bool = False) -> str:
    if board_type:
        board = board_type.strip().lower()
        if board not in DeckCard.BOARD_TYPES:
            raise ValidationError(
                f"Invalid board type: {board_type}",
                field="boardType",
                invalid=[board_type],
            )
        return board
    return DeckCard.BOARD_SIDE if is_sideboard else DeckCard.BOARD_MAIN


def _zone_totals(deck_ids: List[int]) -> Dict[int, Dict[str, int]]:
    if not deck_ids:
        return {}
    rows = (
        db.session.query(DeckCard.deck_id, DeckCard.board_type, func.sum(DeckCard.quantity))
        .filter(DeckCard.deck_id.in_(deck_ids))
        .group_by(DeckCard.deck_id, DeckCard.board_type)
        .all()
    )
    totals: Dict[int, Dict[str, int]] = {}
    for deck_id, board, qty in rows:
        totals.setdefault(deck_id, {})[board] = int(qty or 0)
    return totals


def _preview_image(deck_id: int) -> Optional[str]:
    creature_first = case((Card.type_line.like("%Creature%"), 0), else_=1)
    row = (
        db.session.query(Printing.image_url)
        .join(DeckCard, DeckCard.printing_id == Printing.id)
        .join(Card, Card.id == Printing.card_id)
        .filter(
            DeckCard.deck_id == deck_id,
            DeckCard.board_type == DeckCard.BOARD_MAIN,
            Printing.image_url.isnot(None),
        )
        .order_by(creature_first, func.random())
        .first()
    )
    return row[0] if row else None


def list_decks(user_id: int) -> List[Dict[str, Any]]:
    decks = Deck.query.filter_by(user_id=user_id).order_by(Deck.updated_at.desc(), Deck.id.desc()).all()
    totals = _zone_totals([deck.id for deck in decks])
    out = []
    for deck in decks:
        data = deck.to_dict()
        zones = totals.get(deck.id, {})
        data["mainboard_count"] = zones.get(DeckCard.BOARD_MAIN, 0)
        data["sideboard_count"] = zones.get(DeckCard.BOARD_SIDE, 0)
        data["maybeboard_count"] = zones.get(DeckCard.BOARD_MAYBE, 0)
        data["preview_image"] = _preview_image(deck.id)
        out.append(data)
    return out


def deck_card_rows(deck_id: int, user_id: Optional[int] = None) -> List[Dict[str, Any]]:
    """Card rows of a deck, mainboard first, then by mana value and name."""
    columns = [DeckCard, Printing, Card]
    if user_id is not None:
        owned = Card.id.in_(owned_card_ids_query(user_id))
        columns.append(case((owned, True), else_=False))
    rows = (
        db.session.query(*columns)
        .join(Printing, Printing.id == DeckCard.printing_id)
        .join(Card, Card.id == Printing.card_id)
        .filter(DeckCard.deck_id == deck_id)
        .order_by(_ZONE_ORDER, Card.cmc, Card.name)
        .all()
    )
    out = []
    for row in rows:
        deck_card, printing, card = row[0], row[1], row[2]
        entry = {
            "deck_card_id": deck_card.id,
            "quantity": deck_card.quantity,
            "is_sideboard": bool(deck_card.is_sideboard),
            "is_commander": bool(deck_card.is_commander),
            "board_type": deck_card.board_type,
            "printing_id": printing.id,
            "card_id": card.id,
            "uuid": printing.uuid,
            "set_code": printing.set_code,
            "set_name": printing.set_name,
            "collector_number": printing.collector_number,
            "rarity": printing.rarity,
            "artist": printing.artist,
            "name": card.name,
            "mana_cost": card.mana_cost,
            "cmc": card.cmc,
            "colors": card.colors,
            "color_identity": card.color_identity,
            "type_line": card.type_line,
            "oracle_text": card.oracle_text,
            "power": card.power,
            "toughness": card.toughness,
            "loyalty": card.loyalty,
        }
        entry.update(printing.image_variants())
        if user_id is not None:
            entry["is_owned"] = bool(row[3])
        out.append(entry)
    return out


def _deck_payload(deck: Deck, cards: List[Dict[str, Any]]) -> Dict[str, Any]:
    data = deck.to_dict()
    data["cards"] = cards
    data["mainboard_count"] = sum(c["quantity"] for c in cards if c["board_type"] == DeckCard.BOARD_MAIN)
    data["sideboard_count"] = sum(c["quantity"] for c in cards if c["board_type"] == DeckCard.BOARD_SIDE)
    data["maybeboard_count"] = sum(c["quantity"] for c in cards if c["board_type"] == DeckCard.BOARD_MAYBE)
    return data


def get_deck(deck_id: int, user_id: int) -> Dict[str, Any]:
    deck = get_owned_deck(deck_id, user_id)
    return _deck_payload(deck, deck_card_rows(deck.id, user_id))


def create_deck(user_id: int, name: Optional[str], fmt: Optional[str] = None, description: Optional[str] = None) -> Deck:
    if not name or not name.strip():
        raise ValidationError("Deck name is required", field="name")
    deck = Deck(user_id=user_id, name=name.strip(), format=fmt or None, description=description or None)
    db.session.add(deck)
    db.session.commit()
    _LOG.info("Deck created", extra={"deck_id": deck.id, "user_id": user_id})
    return deck


def update_deck(deck_id: int, user_id: int, updates: Dict[str, Any]) -> Dict[str, Any]:
    deck = get_owned_deck(deck_id, user_id)
    if "name" in updates:
        name = (updates.get("name") or "").strip()
        if not name:
            raise ValidationError("Deck name is required", field="name")
        deck.name = name
    if "format" in updates:
        deck.format = updates.get("format") or None
    if "description" in updates:
        deck.description = updates.get("description") or None
    deck.touch()
    db.session.commit()
    return get_deck(deck.id, user_id)


def delete_deck(deck_id: int, user_id: int) -> None:
    deck = get_owned_deck(deck_id, user_id)
    db.session.delete(deck)
    db.session.commit()


def add_card_to_deck(
    deck_id: int,
    user_id: int,
    printing_id: int,
    quantity: int = 1,
    *,
    is_sideboard: bool = False,
    is_commander: bool = False,
    board_type: Optional[str] = None,
    commit: bool = True,
) -> DeckCard:
    """Add copies of a printing to one zone; an existing row has its quantity incremented."""
    deck = get_owned_deck(deck_id, user_id)
    if db.session.get(Printing, printing_id) is None:
        raise NotFoundError("Printing not found")
    if quantity < 1:
        raise ValidationError("Quantity must be at least 1", field="quantity", invalid=[quantity])
    board = normalize_board(board_type, is_sideboard)

    row = DeckCard.query.filter_by(deck_id=deck.id, printing_id=printing_id, board_type=board).first()
    if row is None:
        row = DeckCard(deck_id=deck.id, printing_id=printing_id, quantity=quantity)
        row.set_board(board)
        db.session.add(row)
    else:
        row.quantity = row.quantity + quantity
    row.is_commander = bool(is_commander)
    deck.touch()
    if commit:
        db.session.commit()
    else:
        db.session.flush()
    return row


def _get_deck_card(deck: Deck, deck_card_id: int) -> DeckCard:
    row = DeckCard.query.filter_by(id=deck_card_id, deck_id=deck.id).first()
    if row is None:
        raise NotFoundError("Card not found in deck")
    return row


def remove_deck_card(deck_id: int, user_id: int, deck_card_id: int) -> Dict[str, Any]:
    deck = get_owned_deck(deck_id, user_id)
    row = _get_deck_card(deck, deck_card_id)
    db.session.delete(row)
    deck.touch()
    db.session.commit()
    return get_deck(deck.id, user_id)


def update_deck_card(deck_id: int, user_id: int, deck_card_id: int, updates: Dict[str, Any]) -> Dict[str, Any]:
    """Change quantity, zone, commander flag or printing of one row.

    A quantity of zero or less removes the row.
    """
    deck = get_owned_deck(deck_id, user_id)
    row = _get_deck_card(deck, deck_card_id)

    quantity = updates.get("quantity")
    if quantity is not None:
        try:
            quantity = int(quantity)
        except (TypeError, ValueError):
            raise ValidationError("Quantity must be an integer", field="quantity", invalid=[quantity])
        if quantity <= 0:
            return remove_deck_card(deck_id, user_id, deck_card_id)

    board = row.board_type
    if updates.get("boardType") is not None:
        board = normalize_board(updates["boardType"])
    elif updates.get("isSideboard") is not None:
        board = DeckCard.BOARD_SIDE if updates["isSideboard"] else DeckCard.BOARD_MAIN

    printing_id = row.printing_id
    if updates.get("printingId") is not None:
        printing_id = parse_positive_int(updates["printingId"], field="printingId")
        if db.session.get(Printing, printing_id) is None:
            raise NotFoundError("Printing not found")

    is_commander = row.is_commander
    if updates.get("isCommander") is not None:
        is_commander = bool(updates["isCommander"])

    clash = DeckCard.query.filter(
        DeckCard.deck_id == deck.id,
        DeckCard.printing_id == printing_id,
        DeckCard.board_type == board,
        DeckCard.id != row.id,
    ).first()
    if clash is not None:
        # Same printing already sits in the target zone: fold this row into it.
        clash.quantity = clash.quantity + (quantity or row.quantity)
        clash.is_commander = bool(clash.is_commander or is_commander)
        db.session.delete(row)
    else:
        if quantity is not None:
            row.quantity = quantity
        row.set_board(board)
        row.printing_id = printing_id
        row.is_commander = is_commander

    deck.touch()
    db.session.commit()
    return get_deck(deck.id, user_id)


# Sharing -----------------------------------------------------------------

def create_share(deck_id: int, user_id: int, expires_in_days: Optional[int] = None) -> str:
    """Return the deck's active share token, creating one if needed."""
    deck = get_owned_deck(deck_id, user_id)
    existing = DeckShare.query.filter_by(deck_id=deck.id, user_id=user_id, is_active=True).first()
    if existing is not None and existing.is_usable():
        return existing.share_token

    share = DeckShare(deck_id=deck.id, user_id=user_id, share_token=DeckShare.new_token())
    if expires_in_days:
        share.expires_at = datetime.utcnow() + timedelta(days=int(expires_in_days))
    db.session.add(share)
    db.session.commit()
    return share.share_token


def delete_share(deck_id: int, user_id: int) -> bool:
    deck = get_owned_deck(deck_id, user_id)
    changed = DeckShare.query.filter_by(deck_id=deck.id, user_id=user_id, is_active=True).update(
        {"is_active": False}
    )
    db.session.commit()
    return changed > 0


def get_shared_deck(token: str) -> Optional[Dict[str, Any]]:
    """Public read-only view of a shared deck, or None when the link is dead."""
    share = DeckShare.query.filter_by(share_token=token).first()
    if share is None or not share.is_usable():
        return None
    deck = share.deck
    if deck is None:
        return None
    data = _deck_payload(deck, deck_card_rows(deck.id))
    data.pop("user_id", None)
    data["is_shared"] = True
    return data


def import_shared_deck(token: str, user_id: int) -> Dict[str, Any]:
    shared = get_shared_deck(token)
    if shared is None:
        raise NotFoundError("Shared deck not found or no longer available")

    deck = Deck(
        user_id=user_id,
        name=f"{shared['name']} (imported)",
        format=shared.get("format"),
        description=shared.get("description"),
    )
    db.session.add(deck)
    db.session.flush()
    for card in shared["cards"]:
        row = DeckCard(
            deck_id=deck.id,
            printing_id=card["printing_id"],
            quantity=card["quantity"],
            is_commander=card["is_commander"],
        )
        row.set_board(card["board_type"])
        db.session.add(row)
    db.session.commit()
    _LOG.info("Shared deck imported", extra={"deck_id": deck.id, "user_id": user_id})
    return get_deck(deck.id, user_id)


__all__ = [
    "get_owned_deck",
    "normalize_board",
    "list_decks",
    "deck_card_rows",
    "get_deck",
    "create_deck",
    "update_deck",
    "delete_deck",
    "add_card_to_deck",
    "update_deck_card",
    "remove_deck_card",
    "create_share",
    "delete_share",
    "get_shared_deck",
    "import_shared_deck",
]
