"""Shopping list: mainboard cards of chosen decks the user does not own yet.

Need is decided at card level: owning any printing of a card covers every
deck's demand for it. Missing cards are grouped by the set of the printing the
deck uses, and a card needed by several decks is one line listing each deck.
"""
from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional

from extensions import db
from models import Card, CardSet, Deck, DeckCard, Price, Printing
from services.collection import owned_card_ids_query
from services.pricing import market_price_join

SHOPPING_SORTS = ("setName", "totalPrice", "releaseDate", "cardCount")


def get_shopping_list(user_id: int, deck_ids: Iterable[int]) -> Dict[str, Any]:
    deck_ids = list(dict.fromkeys(deck_ids))
    if not deck_ids:
        return {"sets": [], "totalCards": 0, "totalDecks": 0}

    owned_decks = [
        deck_id
        for (deck_id,) in db.session.query(Deck.id).filter(Deck.user_id == user_id, Deck.id.in_(deck_ids))
    ]
    rows = (
        db.session.query(Card, Printing, CardSet.name, CardSet.release_date, Deck.id, Deck.name, DeckCard.quantity, Price.price)
        .select_from(DeckCard)
        .join(Deck, Deck.id == DeckCard.deck_id)
        .join(Printing, Printing.id == DeckCard.printing_id)
        .join(Card, Card.id == Printing.card_id)
        .outerjoin(CardSet, CardSet.code == Printing.set_code)
        .outerjoin(Price, market_price_join())
        .filter(
            Deck.user_id == user_id,
            Deck.id.in_(owned_decks),
            DeckCard.board_type == DeckCard.BOARD_MAIN,
            Card.id.notin_(owned_card_ids_query(user_id)),
        )
        .order_by(CardSet.name, Printing.collector_number, Card.name, Deck.id)
        .all()
    )

    by_set: Dict[str, Dict[str, Any]] = {}
    for card, printing, set_name, release_date, deck_id, deck_name, quantity, price in rows:
        entry = by_set.setdefault(
            printing.set_code,
            {
                "setCode": printing.set_code,
                "setName": set_name or printing.set_code.upper(),
                "releaseDate": release_date,
                "cards": [],
                "_index": {},
            },
        )
        key = (card.id, printing.id)
        line = entry["_index"].get(key)
        if line is None:
            line = {
                "cardId": card.id,
                "printingId": printing.id,
                "name": card.name,
                "manaCost": card.mana_cost,
                "typeLine": card.type_line,
                "colorIdentity": card.color_identity,
                "setCode": printing.set_code,
                "collectorNumber": printing.collector_number,
                "rarity": printing.rarity,
                "imageUrl": printing.image_url,
                "price": price,
                "decks": [],
            }
            entry["_index"][key] = line
            entry["cards"].append(line)
        if not any(d["deckId"] == deck_id for d in line["decks"]):
            line["decks"].append({"deckId": deck_id, "deckName": deck_name, "quantity": quantity})

    sets = []
    for entry in by_set.values():
        entry.pop("_index")
        entry["cardCount"] = len(entry["cards"])
        entry["totalPrice"] = _set_total(entry["cards"])
        sets.append(entry)
    sets.sort(key=lambda s: s["setName"].lower())

    return {
        "sets": sets,
        "totalCards": sum(s["cardCount"] for s in sets),
        "totalDecks": len(owned_decks),
    }


def _line_cost(line: Dict[str, Any]) -> float:
    needed = max((d["quantity"] for d in line["decks"]), default=0)
    return float(line["price"] or 0) * needed


def _set_total(cards: List[Dict[str, Any]]) -> float:
    return round(sum(_line_cost(line) for line in cards), 2)


def apply_shopping_filters(
    shopping: Dict[str, Any],
    *,
    price_min: Optional[float] = None,
    price_max: Optional[float] = None,
    rarity: Optional[str] = None,
    color: Optional[str] = None,
    set_search: Optional[str] = None,
    budget_mode: bool = False,
    sort_by: str = "setName",
) -> Dict[str, Any]:
    """Filter and sort an already grouped list; set totals come from the surviving cards."""

    def keep(line: Dict[str, Any]) -> bool:
        price = float(line["price"] or 0)
        if price_min is not None and price < price_min:
            return False
        if price_max is not None and price > price_max:
            return False
        if rarity and rarity != "all" and (line["rarity"] or "").lower() != rarity.lower():
            return False
        # An empty identity is colorless.
        identity = (line["colorIdentity"] or "").upper() or "C"
        if color and color != "all" and color.upper() not in identity:
            return False
        return True

    search = (set_search or "").strip().lower()
    sets = []
    for entry in shopping.get("sets", []):
        if search and search not in entry["setName"].lower() and search not in entry["setCode"].lower():
            continue
        cards = [dict(line) for line in entry["cards"] if keep(line)]
        if not cards:
            continue
        if budget_mode:
            cards.sort(key=lambda line: (float(line["price"] or 0), line["name"]))
        filtered = dict(entry)
        filtered["cards"] = cards
        filtered["cardCount"] = len(cards)
        filtered["totalPrice"] = _set_total(cards)
        sets.append(filtered)

    if sort_by == "totalPrice":
        sets.sort(key=lambda s: (-s["totalPrice"], s["setName"].lower()))
    elif sort_by == "releaseDate":
        sets.sort(key=lambda s: s["releaseDate"] or "", reverse=True)
    elif sort_by == "cardCount":
        sets.sort(key=lambda s: (-s["cardCount"], s["setName"].lower()))
    else:
        sets.sort(key=lambda s: s["setName"].lower())

    return {
        "sets": sets,
        "totalCards": sum(s["cardCount"] for s in sets),
        "totalDecks": shopping.get("totalDecks", 0),
        "totalPrice": round(sum(s["totalPrice"] for s in sets), 2),
    }


__all__ = ["SHOPPING_SORTS", "get_shopping_list", "apply_shopping_filters"]
