"""Deck CRUD, deck cards, sharing, statistics and printing optimization routes."""

from __future__ import annotations

from flask import Blueprint, jsonify, request
from flask_login import current_user, login_required

from services import deck_service, deck_stats, printing_optimizer
from services.deck_import import import_deck
from services.errors import NotFoundError, ValidationError
from services.pricing import get_deck_price
from services.validation import (
    parse_bool,
    parse_int,
    parse_optional_positive_int,
    parse_positive_int,
    require_fields,
)

decks_bp = Blueprint("decks", __name__, url_prefix="/api/decks")


@decks_bp.get("")
@login_required
def list_decks():
    return jsonify({"decks": deck_service.list_decks(current_user.id)})


@decks_bp.post("")
@login_required
def create_deck():
    payload = request.get_json(silent=True) or {}
    deck = deck_service.create_deck(
        current_user.id,
        payload.get("name"),
        payload.get("format"),
        payload.get("description"),
    )
    return jsonify({"deck": deck.to_dict()}), 201


@decks_bp.get("/<int:deck_id>")
@login_required
def get_deck(deck_id: int):
    return jsonify({"deck": deck_service.get_deck(deck_id, current_user.id)})


@decks_bp.put("/<int:deck_id>")
@login_required
def update_deck(deck_id: int):
    payload = request.get_json(silent=True) or {}
    updates = {k: payload[k] for k in ("name", "format", "description") if k in payload}
    return jsonify({"deck": deck_service.update_deck(deck_id, current_user.id, updates)})


@decks_bp.delete("/<int:deck_id>")
@login_required
def delete_deck(deck_id: int):
    deck_service.delete_deck(deck_id, current_user.id)
    return jsonify({"message": "Deck deleted successfully"})


@decks_bp.get("/<int:deck_id>/stats")
@login_required
def deck_statistics(deck_id: int):
    return jsonify(deck_stats.get_deck_stats(deck_id, current_user.id))


@decks_bp.get("/<int:deck_id>/price")
@login_required
def deck_price(deck_id: int):
    deck = deck_service.get_owned_deck(deck_id, current_user.id)
    return jsonify(get_deck_price(deck.id))


@decks_bp.post("/<int:deck_id>/cards")
@login_required
def add_card(deck_id: int):
    payload = request.get_json(silent=True) or {}
    require_fields(payload, "printingId", message="printingId is required")
    deck_service.add_card_to_deck(
        deck_id,
        current_user.id,
        parse_positive_int(payload["printingId"], field="printingId"),
        parse_int(payload.get("quantity"), field="quantity", default=1),
        is_sideboard=parse_bool(payload.get("isSideboard")),
        is_commander=parse_bool(payload.get("isCommander")),
        board_type=payload.get("boardType"),
    )
    return jsonify({"deck": deck_service.get_deck(deck_id, current_user.id)})


@decks_bp.put("/<int:deck_id>/cards/<int:deck_card_id>")
@login_required
def update_card(deck_id: int, deck_card_id: int):
    payload = request.get_json(silent=True) or {}
    deck = deck_service.update_deck_card(deck_id, current_user.id, deck_card_id, payload)
    return jsonify({"deck": deck})


@decks_bp.delete("/<int:deck_id>/cards/<int:deck_card_id>")
@login_required
def remove_card(deck_id: int, deck_card_id: int):
    deck = deck_service.remove_deck_card(deck_id, current_user.id, deck_card_id)
    return jsonify({"deck": deck})


@decks_bp.post("/import")
@login_required
def import_deck_list():
    payload = request.get_json(silent=True) or {}
    result = import_deck(current_user.id, payload.get("name"), payload.get("format"), payload.get("deckList"))
    return jsonify(result), 201


@decks_bp.post("/<int:deck_id>/share")
@login_required
def share_deck(deck_id: int):
    payload = request.get_json(silent=True) or {}
    expires = parse_optional_positive_int(payload.get("expiresInDays"), field="expiresInDays")
    token = deck_service.create_share(deck_id, current_user.id, expires)
    return jsonify({"shareToken": token, "shareUrl": f"/share/{token}"})


@decks_bp.delete("/<int:deck_id>/share")
@login_required
def unshare_deck(deck_id: int):
    if not deck_service.delete_share(deck_id, current_user.id):
        raise NotFoundError("Share link not found")
    return jsonify({"message": "Share link deleted successfully"})


@decks_bp.get("/share/<token>")
def shared_deck(token: str):
    deck = deck_service.get_shared_deck(token)
    if deck is None:
        raise NotFoundError("Shared deck not found or no longer available")
    return jsonify({"deck": deck, "isAuthenticated": bool(current_user.is_authenticated)})


@decks_bp.post("/share/<token>/import")
@login_required
def import_shared(token: str):
    deck = deck_service.import_shared_deck(token, current_user.id)
    return jsonify({"deck": deck, "message": "Deck imported successfully"}), 201


@decks_bp.get("/<int:deck_id>/legality/<fmt>")
@login_required
def deck_legality(deck_id: int, fmt: str):
    return jsonify(deck_stats.check_deck_legality(deck_id, current_user.id, fmt))


@decks_bp.get("/<int:deck_id>/optimize-printings")
@login_required
def optimize_printings(deck_id: int):
    top_n = parse_int(request.args.get("topN"), field="topN", default=printing_optimizer.DEFAULT_TOP_N)
    result = printing_optimizer.analyze_deck_printings(
        deck_id,
        current_user.id,
        top_n=max(1, top_n),
        exclude_commander=parse_bool(request.args.get("excludeCommander")),
    )
    return jsonify(result)


@decks_bp.get("/<int:deck_id>/optimize-printings/sets")
@login_required
def optimize_printings_sets(deck_id: int):
    return jsonify({"sets": printing_optimizer.get_available_sets(deck_id, current_user.id)})


@decks_bp.post("/<int:deck_id>/optimize-printings/analyze-set")
@login_required
def optimize_printings_analyze_set(deck_id: int):
    payload = request.get_json(silent=True) or {}
    require_fields(payload, "setCode", message="setCode is required")
    result = printing_optimizer.analyze_specific_set(deck_id, current_user.id, payload["setCode"])
    if result is None:
        raise NotFoundError("No cards found for this set")
    return jsonify(result)


@decks_bp.post("/<int:deck_id>/optimize-printings/apply")
@login_required
def optimize_printings_apply(deck_id: int):
    payload = request.get_json(silent=True) or {}
    changes = payload.get("changes")
    if not isinstance(changes, list):
        raise ValidationError("changes array is required", field="changes")
    return jsonify(printing_optimizer.apply_printing_changes(deck_id, current_user.id, changes))
