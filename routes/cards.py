"""Card catalog and per-card ownership routes."""

from __future__ import annotations

from flask import Blueprint, jsonify, request
from flask_login import current_user, login_required

from services import card_service, collection
from services.errors import NotFoundError
from services.validation import (
    parse_bool,
    parse_int,
    parse_optional_float,
    parse_positive_int,
    split_csv_arg,
)

cards_bp = Blueprint("cards", __name__, url_prefix="/api/cards")


@cards_bp.get("/browse")
@login_required
def browse():
    args = request.args
    result = card_service.browse_cards(
        name=args.get("name"),
        colors=split_csv_arg(args.get("colors")),
        type_filter=args.get("type"),
        sets=split_csv_arg(args.get("sets")),
        subtypes=split_csv_arg(args.get("subtypes")),
        cmc_min=parse_optional_float(args.get("cmcMin"), field="cmcMin"),
        cmc_max=parse_optional_float(args.get("cmcMax"), field="cmcMax"),
        only_owned=parse_bool(args.get("onlyOwned")),
        user_id=current_user.id,
        sort=args.get("sort") or "random",
        page=parse_int(args.get("page"), field="page", default=1),
        limit=parse_int(args.get("limit"), field="limit", default=50),
    )
    return jsonify(result)


@cards_bp.get("/search")
@login_required
def search():
    query = request.args.get("q") or ""
    limit = parse_int(request.args.get("limit"), field="limit", default=20)
    return jsonify({"cards": card_service.search_cards(query, limit=limit)})


@cards_bp.get("/random")
@login_required
def random_cards():
    count = parse_int(request.args.get("count"), field="count", default=10)
    return jsonify({"cards": card_service.random_cards(max(1, min(count, 100)))})


@cards_bp.get("/stats")
@login_required
def stats():
    return jsonify(card_service.card_stats())


@cards_bp.get("/subtypes")
@login_required
def subtypes():
    return jsonify({"subtypes": card_service.all_subtypes()})


@cards_bp.get("/<int:card_id>")
@login_required
def card_detail(card_id: int):
    card = card_service.get_card(card_id)
    if card is None:
        raise NotFoundError("Card not found")
    return jsonify({"card": card})


@cards_bp.get("/<int:card_id>/printings")
@login_required
def card_printings(card_id: int):
    return jsonify({"printings": card_service.get_card_printings(card_id)})


@cards_bp.get("/name/<path:name>")
@login_required
def card_by_name(name: str):
    card = card_service.get_card_by_name(name)
    if card is None:
        raise NotFoundError("Card not found")
    return jsonify({"card": card})


@cards_bp.get("/printing/<uuid>")
@login_required
def printing_by_uuid(uuid: str):
    printing = card_service.get_printing_by_uuid(uuid)
    if printing is None:
        raise NotFoundError("Printing not found")
    return jsonify({"printing": printing})


@cards_bp.get("/<int:card_id>/ownership")
@login_required
def card_ownership(card_id: int):
    return jsonify(collection.card_ownership_and_usage(current_user.id, card_id))


@cards_bp.post("/<int:card_id>/toggle-owned")
@login_required
def toggle_owned(card_id: int):
    return jsonify(collection.toggle_card_ownership(current_user.id, card_id))


@cards_bp.put("/printings/<int:printing_id>/quantity")
@login_required
def set_printing_quantity(printing_id: int):
    payload = request.get_json(silent=True) or {}
    quantity = parse_int(payload.get("quantity"), field="quantity", default=0)
    return jsonify(collection.set_owned_printing_quantity(current_user.id, printing_id, quantity))
