"""Collection (inventory) routes."""

from __future__ import annotations

from flask import Blueprint, jsonify, request
from flask_login import current_user, login_required

from services import inventory
from services.collection import set_owned_printing_quantity
from services.errors import ValidationError
from services.validation import parse_int, parse_positive_int, require_fields, split_csv_arg

inventory_bp = Blueprint("inventory", __name__, url_prefix="/api/inventory")


@inventory_bp.get("")
@login_required
def list_inventory():
    args = request.args
    availability = args.get("availability") or "all"
    if availability not in inventory.AVAILABILITY_FILTERS:
        raise ValidationError("Invalid availability filter.", field="availability", invalid=[availability])
    result = inventory.get_inventory(
        current_user.id,
        name=args.get("name"),
        colors=split_csv_arg(args.get("colors")),
        type_filter=args.get("type"),
        sets=split_csv_arg(args.get("sets")),
        sort=args.get("sort") or "name",
        availability=availability,
        page=parse_int(args.get("page"), field="page", default=1),
        limit=parse_int(args.get("limit"), field="limit", default=inventory.INVENTORY_PAGE_SIZE),
    )
    return jsonify(result)


@inventory_bp.get("/stats")
@login_required
def inventory_stats():
    return jsonify(inventory.get_inventory_stats(current_user.id))


@inventory_bp.get("/search")
@login_required
def inventory_search():
    limit = parse_int(request.args.get("limit"), field="limit", default=10)
    return jsonify({"cards": inventory.search_for_add(current_user.id, request.args.get("q") or "", limit=limit)})


@inventory_bp.get("/sets")
@login_required
def inventory_sets():
    return jsonify({"sets": inventory.get_owned_sets(current_user.id)})


@inventory_bp.post("/bulk-add")
@login_required
def bulk_add():
    payload = request.get_json(silent=True) or {}
    items = payload.get("items")
    if items is None and payload.get("text"):
        items = inventory.parse_bulk_text(payload["text"])
    if not isinstance(items, list) or not items:
        raise ValidationError("Items array is required", field="items")
    return jsonify(inventory.bulk_add(current_user.id, items))


@inventory_bp.post("/quick-add")
@login_required
def quick_add():
    payload = request.get_json(silent=True) or {}
    require_fields(payload, "printingId", message="printingId is required")
    printing_id = parse_positive_int(payload["printingId"], field="printingId")
    quantity = parse_int(payload.get("quantity"), field="quantity", default=1)
    return jsonify(set_owned_printing_quantity(current_user.id, printing_id, quantity))
