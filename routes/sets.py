"""Set listing, search and per-set card pages."""

from __future__ import annotations

from flask import Blueprint, jsonify, request
from flask_login import login_required

from services import set_service
from services.validation import parse_int

sets_bp = Blueprint("sets", __name__, url_prefix="/api/sets")


@sets_bp.get("")
@login_required
def list_sets():
    return jsonify({"sets": set_service.list_sets()})


@sets_bp.get("/search")
@login_required
def search_sets():
    limit = parse_int(request.args.get("limit"), field="limit", default=20)
    return jsonify({"sets": set_service.search_sets(request.args.get("q") or "", limit=limit)})


@sets_bp.get("/<code>")
@login_required
def set_detail(code: str):
    return jsonify({"set": set_service.get_set_or_404(code).to_dict()})


@sets_bp.get("/<code>/cards")
@login_required
def set_cards(code: str):
    page = parse_int(request.args.get("page"), field="page", default=1)
    limit = parse_int(request.args.get("limit"), field="limit", default=set_service.SET_CARDS_PAGE_SIZE)
    return jsonify(set_service.get_set_cards(code, page=page, limit=limit))
