"""Shopping list route."""

from __future__ import annotations

from flask import Blueprint, jsonify, request
from flask_login import current_user, login_required

from services.errors import ValidationError
from services.shopping import SHOPPING_SORTS, apply_shopping_filters, get_shopping_list
from services.validation import parse_bool, parse_optional_float, parse_positive_int_list

shopping_bp = Blueprint("shopping", __name__, url_prefix="/api/shopping")

_FILTER_ARGS = ("priceMin", "priceMax", "rarity", "color", "setSearch", "budgetMode", "sortBy")


@shopping_bp.get("")
@login_required
def shopping_list():
    args = request.args
    deck_ids = parse_positive_int_list([args.get("deckIds")], field="deckIds")
    shopping = get_shopping_list(current_user.id, deck_ids)
    if not any(args.get(name) for name in _FILTER_ARGS):
        return jsonify(shopping)

    sort_by = args.get("sortBy") or "setName"
    if sort_by not in SHOPPING_SORTS:
        raise ValidationError("Invalid sortBy.", field="sortBy", invalid=[sort_by])
    filtered = apply_shopping_filters(
        shopping,
        price_min=parse_optional_float(args.get("priceMin"), field="priceMin"),
        price_max=parse_optional_float(args.get("priceMax"), field="priceMax"),
        rarity=args.get("rarity"),
        color=args.get("color"),
        set_search=args.get("setSearch"),
        budget_mode=parse_bool(args.get("budgetMode")),
        sort_by=sort_by,
    )
    return jsonify(filtered)
