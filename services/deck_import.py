"""Deck list text import (plain, Moxfield and TCGplayer style lines)."""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Dict, List, Optional

from extensions import db
from models import Card, Deck, DeckCard, Printing
from services.deck_service import add_card_to_deck
from services.errors import ValidationError

_LOG = logging.getLogger(__name__)

_SECTION_RE = re.compile(r"^(sideboard|commander|deck|companion)", re.IGNORECASE)
_QUANTITY_RE = re.compile(r"^(\d+)\s+(.+)$")
_MOXFIELD_RE = re.compile(r"^(.+?)\s*\(([A-Z0-9]+)\)\s*(\d+)?$", re.IGNORECASE)
_TCG_RE = re.compile(r"^(.+?)\s*\[([A-Z0-9]+)\]$", re.IGNORECASE)
_FOIL_MARKER = "*F*"


@dataclass
class DeckListEntry:
    quantity: int
    name: str
    set_code: Optional[str] = None
    collector_number: Optional[str] = None
    is_foil: bool = False
    is_sideboard: bool = False
    is_commander: bool = False


def parse_card_line(line: str) -> Optional[DeckListEntry]:
    """Parse ``4 Name``, ``4 Name (SET) 123 *F*`` or ``4 Name [SET]``."""
    match = _QUANTITY_RE.match(line.strip())
    if not match:
        return None
    quantity = int(match.group(1))
    if quantity < 1:
        return None
    remainder = match.group(2)
    is_foil = _FOIL_MARKER in remainder
    remainder = remainder.replace(_FOIL_MARKER, "").strip()

    name, set_code, collector_number = remainder, None, None
    moxfield = _MOXFIELD_RE.match(remainder)
    if moxfield:
        name = moxfield.group(1).strip()
        set_code = moxfield.group(2).upper()
        collector_number = moxfield.group(3)
    else:
        tcg = _TCG_RE.match(remainder)
        if tcg:
            name = tcg.group(1).strip()
            set_code = tcg.group(2).upper()
    return DeckListEntry(quantity, name, set_code, collector_number, is_foil)


def parse_deck_list(text: str) -> List[DeckListEntry]:
    entries: List[DeckListEntry] = []
    section = "mainboard"
    for raw in (text or "").strip().splitlines():
        line = raw.strip()
        if not line:
            continue
        header = _SECTION_RE.match(line)
        if header:
            word = header.group(1).lower()
            if word == "sideboard":
                section = "sideboard"
            elif word == "commander":
                section = "commander"
            elif word == "deck":
                section = "mainboard"
            continue
        entry = parse_card_line(line)
        if entry is None:
            continue
        entry.is_sideboard = section == "sideboard"
        entry.is_commander = section == "commander"
        entries.append(entry)
    return entries


def find_card(name: str, set_code: Optional[str] = None, collector_number: Optional[str] = None) -> Optional[Printing]:
    """Most specific printing match: set and number, then set, then name alone."""
    base = Printing.query.join(Card, Card.id == Printing.card_id).filter(Card.name == name)
    if set_code and collector_number:
        hit = (
            base.filter(Printing.set_code == set_code.upper(), Printing.collector_number == collector_number)
            .order_by(Printing.id)
            .first()
        )
        if hit is not None:
            return hit
    if set_code:
        hit = base.filter(Printing.set_code == set_code.upper()).order_by(Printing.id).first()
        if hit is not None:
            return hit
    return base.order_by(Printing.id).first()


def import_deck(user_id: int, name: Optional[str], fmt: Optional[str], deck_list: Optional[str]) -> Dict:
    if not name or not deck_list:
        raise ValidationError("Name and deck list are required")
    entries = parse_deck_list(deck_list)
    if not entries:
        raise ValidationError("No valid cards found in deck list", field="deckList")

    deck = Deck(user_id=user_id, name=name.strip(), format=fmt or None)
    db.session.add(deck)
    db.session.flush()

    imported = 0
    missing: List[str] = []
    for entry in entries:
        printing = find_card(entry.name, entry.set_code, entry.collector_number)
        if printing is None:
            label = entry.name
            if entry.set_code:
                label += f" ({entry.set_code})"
            if entry.collector_number:
                label += f" {entry.collector_number}"
            missing.append(label)
            _LOG.warning("Card not found during deck import: %s", label)
            continue
        add_card_to_deck(
            deck.id,
            user_id,
            printing.id,
            entry.quantity,
            board_type=DeckCard.BOARD_SIDE if entry.is_sideboard else DeckCard.BOARD_MAIN,
            is_commander=entry.is_commander,
            commit=False,
        )
        imported += 1

    db.session.commit()
    not_found = len(missing)
    message = f"Successfully imported {imported} cards"
    if not_found:
        message += f" ({not_found} not found)"
    return {
        "deckId": deck.id,
        "imported": imported,
        "notFound": not_found,
        "missing": missing,
        "message": message,
    }


__all__ = ["DeckListEntry", "parse_card_line", "parse_deck_list", "find_card", "import_deck"]
