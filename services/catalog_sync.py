"""Catalog refresh that keeps user data attached to the new catalog.

Catalog surrogate ids change on every sync. User rows are snapshotted by
printing UUID before the catalog is replaced and re-resolved afterwards;
references whose UUID vanished are dropped and counted.
"""
from __future__ import annotations

import json
import logging
import threading
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

import requests
from flask import current_app
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from extensions import cache, db
from models import (
    Card,
    CardForeignData,
    CardSet,
    DeckCard,
    LegalityMap,
    OwnedPrinting,
    Price,
    Printing,
    RelatedCard,
    Ruling,
)
from models.catalog import join_list
from services import backup as backup_service
from services.errors import ConflictError, ValidationError
from services.pricing import price_has_value

_LOG = logging.getLogger(__name__)

USER_AGENT = "DeckLotus/1.0 (+catalog-sync)"
IMAGE_URL_TEMPLATE = "https://cards.scryfall.io/normal/front/{a}/{b}/{sid}.jpg"

_session: Optional[requests.Session] = None


def _http_session() -> requests.Session:
    """Shared session with retry on transient upstream errors."""
    global _session
    if _session is not None:
        return _session
    retries = Retry(
        total=3,
        backoff_factor=1.0,
        status_forcelist=(429, 500, 502, 503, 504),
        allowed_methods=frozenset(["GET"]),
        raise_on_status=False,
    )
    sess = requests.Session()
    adapter = HTTPAdapter(max_retries=retries)
    sess.mount("https://", adapter)
    sess.mount("http://", adapter)
    sess.headers.update({"User-Agent": USER_AGENT, "Accept": "application/json"})
    _session = sess
    return _session


def load_catalog_document(source: str) -> Dict[str, Any]:
    """Read the catalog JSON from an http(s) URL or a local path."""
    if source.startswith(("http://", "https://")):
        _LOG.info("Downloading catalog from %s", source)
        response = _http_session().get(source, timeout=current_app.config.get("CATALOG_HTTP_TIMEOUT", 120))
        response.raise_for_status()
        document = response.json()
    else:
        with open(source, "r", encoding="utf-8") as handle:
            document = json.load(handle)
    if not isinstance(document, dict) or not isinstance(document.get("cards"), list):
        raise ValidationError("Catalog document must contain a 'cards' list")
    return document


def _latest_price(value: Any) -> Any:
    # Price history maps date -> price; the newest date wins.
    if isinstance(value, dict):
        if not value:
            return None
        return value[sorted(value)[-1]]
    return value


def _image_url(scryfall_id: Optional[str]) -> Optional[str]:
    if not scryfall_id or len(scryfall_id) < 2:
        return None
    return IMAGE_URL_TEMPLATE.format(a=scryfall_id[0], b=scryfall_id[1], sid=scryfall_id)


def _set_row(raw: Dict[str, Any]) -> CardSet:
    return CardSet(
        code=str(raw["code"]).upper(),
        name=raw.get("name") or str(raw["code"]).upper(),
        set_type=raw.get("type"),
        release_date=raw.get("releaseDate"),
        block=raw.get("block"),
        base_set_size=raw.get("baseSetSize"),
        total_set_size=raw.get("totalSetSize"),
        keyrune_code=raw.get("keyruneCode"),
        tcgplayer_group_id=raw.get("tcgplayerGroupId"),
        is_online_only=bool(raw.get("isOnlineOnly")),
        is_foil_only=bool(raw.get("isFoilOnly")),
    )


def _card_row(raw: Dict[str, Any]) -> Card:
    legalities = raw.get("legalities")
    if isinstance(legalities, dict):
        legalities = LegalityMap.from_storage(json.dumps(legalities)).to_storage()
    skills = raw.get("leadershipSkills")
    return Card(
        name=raw["name"],
        mana_cost=raw.get("manaCost"),
        cmc=raw.get("manaValue", raw.get("cmc")) or 0,
        colors=join_list(raw.get("colors")),
        color_identity=join_list(raw.get("colorIdentity")),
        type_line=raw.get("type"),
        oracle_text=raw.get("text"),
        power=raw.get("power"),
        toughness=raw.get("toughness"),
        loyalty=raw.get("loyalty"),
        keywords=join_list(raw.get("keywords")),
        legalities=legalities or None,
        is_reserved=bool(raw.get("isReserved")),
        subtypes=join_list(raw.get("subtypes")),
        supertypes=join_list(raw.get("supertypes")),
        types=join_list(raw.get("types")),
        leadership_skills=json.dumps(skills) if isinstance(skills, dict) else skills,
        edhrec_rank=raw.get("edhrecRank"),
        edhrec_saltiness=raw.get("edhrecSaltiness"),
        first_printing=raw.get("firstPrinting"),
        layout=raw.get("layout"),
    )


def _printing_row(card: Card, raw: Dict[str, Any]) -> Printing:
    identifiers = raw.get("identifiers") if isinstance(raw.get("identifiers"), dict) else {}
    urls = raw.get("purchaseUrls") if isinstance(raw.get("purchaseUrls"), dict) else {}
    scryfall_id = identifiers.get("scryfallId")
    return Printing(
        card=card,
        uuid=raw["uuid"],
        set_code=str(raw.get("setCode") or "").upper(),
        collector_number=raw.get("number"),
        rarity=raw.get("rarity"),
        artist=raw.get("artist"),
        flavor_text=raw.get("flavorText"),
        image_url=raw.get("imageUrl") or _image_url(scryfall_id),
        finishes=join_list(raw.get("finishes")),
        is_promo=bool(raw.get("isPromo")),
        is_full_art=bool(raw.get("isFullArt")),
        frame_version=raw.get("frameVersion"),
        border_color=raw.get("borderColor"),
        watermark=raw.get("watermark"),
        language=raw.get("language") or "English",
        released_at=raw.get("releaseDate"),
        tcgplayer_url=urls.get("tcgplayer"),
        cardmarket_url=urls.get("cardmarket"),
        cardkingdom_url=urls.get("cardKingdom"),
        scryfall_id=scryfall_id,
        multiverse_id=identifiers.get("multiverseId"),
        mtgo_id=identifiers.get("mtgoId"),
        mtg_arena_id=identifiers.get("mtgArenaId"),
        tcgplayer_product_id=identifiers.get("tcgplayerProductId"),
        cardkingdom_id=identifiers.get("cardKingdomId"),
    )


def _snapshot_references() -> Dict[str, List[Dict[str, Any]]]:
    deck_cards = [
        {
            "id": dc.id,
            "deck_id": dc.deck_id,
            "quantity": dc.quantity,
            "is_sideboard": dc.is_sideboard,
            "is_commander": dc.is_commander,
            "board_type": dc.board_type,
            "added_at": dc.added_at,
            "uuid": uuid,
        }
        for dc, uuid in db.session.query(DeckCard, Printing.uuid).join(Printing, Printing.id == DeckCard.printing_id)
    ]
    owned = [
        {
            "id": op.id,
            "user_id": op.user_id,
            "quantity": op.quantity,
            "created_at": op.created_at,
            "uuid": uuid,
        }
        for op, uuid in db.session.query(OwnedPrinting, Printing.uuid).join(Printing, Printing.id == OwnedPrinting.printing_id)
    ]
    return {"deck_cards": deck_cards, "owned_printings": owned}


_REPLACED_MODELS = (DeckCard, OwnedPrinting, Price, Ruling, RelatedCard, CardForeignData, Printing, CardSet, Card)


def _delete_catalog() -> None:
    # Children first so the bulk deletes never trip foreign keys.
    for model in _REPLACED_MODELS:
        model.query.delete(synchronize_session=False)
    db.session.flush()
    # Re-inserted rows keep their old primary keys; stale instances must go.
    for obj in list(db.session.identity_map.values()):
        if isinstance(obj, _REPLACED_MODELS) and obj in db.session:
            db.session.expunge(obj)


def _entries(raw: Any, counts: Dict[str, int]) -> List[Dict[str, Any]]:
    """Object entries of a catalog list; anything else is skipped and counted."""
    if not isinstance(raw, list):
        if raw:
            counts["entriesSkipped"] += 1
        return []
    entries = [entry for entry in raw if isinstance(entry, dict)]
    counts["entriesSkipped"] += len(raw) - len(entries)
    return entries


def _populate(document: Dict[str, Any]) -> Dict[str, int]:
    counts = {"sets": 0, "cards": 0, "printings": 0, "entriesSkipped": 0}
    seen_sets = set()
    for raw in _entries(document.get("sets"), counts):
        if not raw.get("code"):
            continue
        row = _set_row(raw)
        if row.code in seen_sets:
            continue
        seen_sets.add(row.code)
        db.session.add(row)
        counts["sets"] += 1

    seen_cards, seen_uuids = set(), set()
    for raw in _entries(document["cards"], counts):
        name = raw.get("name")
        if not name or name in seen_cards:
            continue
        seen_cards.add(name)
        card = _card_row(raw)
        db.session.add(card)
        counts["cards"] += 1

        printings = [
            p for p in _entries(raw.get("printings"), counts) if p.get("uuid") and p["uuid"] not in seen_uuids
        ]
        for p in printings:
            seen_uuids.add(p["uuid"])
            db.session.add(_printing_row(card, p))
            counts["printings"] += 1
            for ruling in _entries(p.get("rulings"), counts):
                if ruling.get("text"):
                    db.session.add(Ruling(uuid=p["uuid"], date=ruling.get("date"), text=ruling["text"]))
        for ruling in _entries(raw.get("rulings"), counts):
            uuid = ruling.get("uuid") or (printings[0]["uuid"] if printings else None)
            if uuid and ruling.get("text"):
                db.session.add(Ruling(uuid=uuid, date=ruling.get("date"), text=ruling["text"]))
        related_cards = raw.get("relatedCards")
        for relation_type, names in (related_cards if isinstance(related_cards, dict) else {}).items():
            if isinstance(names, list):
                for related in names:
                    db.session.add(RelatedCard(card_name=name, related_name=related, relation_type=relation_type))
        for foreign in _entries(raw.get("foreignData"), counts):
            if not foreign.get("language"):
                continue
            db.session.add(
                CardForeignData(
                    card_name=name,
                    language=foreign["language"],
                    foreign_name=foreign.get("faceName") or foreign.get("name"),
                    foreign_text=foreign.get("text"),
                    foreign_type=foreign.get("type"),
                    foreign_flavor_text=foreign.get("flavorText"),
                )
            )
    db.session.flush()
    return counts


def _load_prices(prices: Dict[str, Any]) -> Dict[str, int]:
    known = {uuid for (uuid,) in db.session.query(Printing.uuid)}
    loaded = skipped = 0
    for uuid, providers in (prices or {}).items():
        if uuid not in known:
            skipped += 1
            continue
        if not isinstance(providers, dict):
            continue
        for provider, by_type in providers.items():
            if not isinstance(by_type, dict):
                continue
            for price_type, raw_value in by_type.items():
                value = _latest_price(raw_value)
                if not price_has_value(value):
                    continue
                db.session.add(Price(printing_uuid=uuid, provider=provider, price_type=price_type, price=float(value)))
        loaded += 1
    db.session.flush()
    return {"prices": loaded, "pricesSkipped": skipped}


def _printing_ids(uuids: Iterable[str]) -> Dict[str, int]:
    return dict(db.session.query(Printing.uuid, Printing.id).filter(Printing.uuid.in_(set(uuids))).all())


def _reattach(snapshot: Dict[str, List[Dict[str, Any]]]) -> Dict[str, Dict[str, int]]:
    deck_result = {"restored": 0, "notFound": 0}
    owned_result = {"restored": 0, "notFound": 0}

    ids = _printing_ids(
        [r["uuid"] for r in snapshot["deck_cards"]] + [r["uuid"] for r in snapshot["owned_printings"]]
    )
    for record in snapshot["deck_cards"]:
        printing_id = ids.get(record["uuid"])
        if printing_id is None:
            deck_result["notFound"] += 1
            continue
        row = {k: v for k, v in record.items() if k != "uuid"}
        db.session.add(DeckCard(printing_id=printing_id, **row))
        deck_result["restored"] += 1
    for record in snapshot["owned_printings"]:
        printing_id = ids.get(record["uuid"])
        if printing_id is None:
            owned_result["notFound"] += 1
            continue
        row = {k: v for k, v in record.items() if k != "uuid"}
        db.session.add(OwnedPrinting(printing_id=printing_id, **row))
        owned_result["restored"] += 1
    db.session.flush()
    return {"deckCards": deck_result, "ownedPrintings": owned_result}


def replace_catalog(document: Dict[str, Any]) -> Dict[str, Any]:
    """Swap the catalog for ``document`` in one transaction, keeping user references."""
    snapshot = _snapshot_references()
    try:
        _delete_catalog()
        result: Dict[str, Any] = _populate(document)
        result.update(_load_prices(document.get("prices") or {}))
        result.update(_reattach(snapshot))
        db.session.commit()
    except Exception:
        db.session.rollback()
        _LOG.exception("Catalog replacement failed; transaction rolled back")
        raise
    cache.clear()
    return result


class CatalogSyncService:
    """One per app; guards against overlapping runs."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._running = False
        self.last_run: Optional[datetime] = None
        self.last_result: Optional[Dict[str, Any]] = None

    @property
    def is_running(self) -> bool:
        return self._running

    def status(self) -> Dict[str, Any]:
        return {
            "isRunning": self._running,
            "lastRun": self.last_run.isoformat() if self.last_run else None,
            "lastResult": self.last_result,
        }

    def run(self, source: Optional[str] = None) -> Dict[str, Any]:
        with self._lock:
            if self._running:
                raise ConflictError("Sync already in progress")
            self._running = True
        try:
            source = source or current_app.config.get("CATALOG_SOURCE")
            if not source:
                raise ValidationError("No catalog source configured (set CATALOG_SOURCE)")
            _LOG.info("Catalog sync started", extra={"source": source})
            document = load_catalog_document(source)
            backup_service.create_backup_file("pre-sync")
            result = replace_catalog(document)
            self.last_run = datetime.utcnow()
            result = {"success": True, "lastRun": self.last_run.isoformat(), **result}
            self.last_result = result
            _LOG.info(
                "Catalog sync finished",
                extra={
                    "cards": result["cards"],
                    "printings": result["printings"],
                    "deck_cards_not_found": result["deckCards"]["notFound"],
                    "owned_not_found": result["ownedPrintings"]["notFound"],
                },
            )
            return result
        except Exception:
            _LOG.exception("Catalog sync failed")
            raise
        finally:
            with self._lock:
                self._running = False


def get_sync_service() -> CatalogSyncService:
    service = current_app.extensions.get("catalog_sync")
    if service is None:
        service = CatalogSyncService()
        current_app.extensions["catalog_sync"] = service
    return service


__all__ = [
    "CatalogSyncService",
    "get_sync_service",
    "load_catalog_document",
    "replace_catalog",
]
