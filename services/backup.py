"""JSON snapshots of user data and their restore.

Snapshots reference the catalog only through natural keys (printing UUID and
card name), so a restore works against a catalog whose surrogate ids changed
since the snapshot was taken.
"""
from __future__ import annotations

import json
import logging
import os
import re
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from flask import current_app
from sqlalchemy import func

from extensions import db
from models import ApiKey, Card, Deck, DeckCard, DeckShare, OwnedPrinting, Printing, User
from services.errors import NotFoundError, ValidationError

_LOG = logging.getLogger(__name__)

BACKUP_VERSION = "1.0"
BACKUP_TYPES = ("scheduled", "pre-sync", "manual")
BACKUP_FREQUENCIES = ("daily", "weekly")
CONFIG_FILENAME = "backup-config.json"

_FILENAME_RE = re.compile(r"^decklotus-(scheduled|pre-sync|manual)-(\d{8}-\d{6})(?:-(\d+))?\.json$")


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_dt(value: Any) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    text = str(value).strip().replace("Z", "+00:00")
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        try:
            parsed = datetime.strptime(text, "%Y-%m-%d %H:%M:%S")
        except ValueError:
            return None
    return parsed.replace(tzinfo=None)


# Snapshot ----------------------------------------------------------------------

def create_backup(user_id: Optional[int] = None) -> Dict[str, Any]:
    """Snapshot every user (or only ``user_id``) with their keys, decks and collection."""
    user_query = User.query.order_by(User.id)
    if user_id is not None:
        user_query = user_query.filter(User.id == user_id)
    users = user_query.all()
    user_ids = [u.id for u in users]

    data: Dict[str, List[Dict[str, Any]]] = {
        "users": [
            {
                "id": u.id,
                "username": u.username,
                "email": u.email,
                "password_hash": u.password_hash,
                "is_admin": bool(u.is_admin),
                "created_at": _iso(u.created_at),
                "updated_at": _iso(u.updated_at),
            }
            for u in users
        ],
        "api_keys": [],
        "owned_cards": [],
        "owned_printings": [],
        "decks": [],
        "deck_cards": [],
        "deck_shares": [],
    }
    backup = {"version": BACKUP_VERSION, "timestamp": datetime.utcnow().isoformat() + "Z", "data": data}
    if not user_ids:
        return backup

    data["api_keys"] = [
        {
            "id": k.id,
            "user_id": k.user_id,
            "key_hash": k.key_hash,
            "name": k.name,
            "last_used": _iso(k.last_used),
            "created_at": _iso(k.created_at),
        }
        for k in ApiKey.query.filter(ApiKey.user_id.in_(user_ids)).order_by(ApiKey.id)
    ]

    owned_rows = (
        db.session.query(OwnedPrinting, Printing.uuid, Card.name)
        .join(Printing, Printing.id == OwnedPrinting.printing_id)
        .join(Card, Card.id == Printing.card_id)
        .filter(OwnedPrinting.user_id.in_(user_ids))
        .order_by(OwnedPrinting.user_id, OwnedPrinting.id)
        .all()
    )
    data["owned_printings"] = [
        {
            "user_id": owned.user_id,
            "printing_uuid": uuid,
            "quantity": owned.quantity,
            "created_at": _iso(owned.created_at),
        }
        for owned, uuid, _ in owned_rows
    ]
    owned_cards: Dict[tuple, int] = {}
    for owned, _, card_name in owned_rows:
        key = (owned.user_id, card_name)
        owned_cards[key] = owned_cards.get(key, 0) + owned.quantity
    data["owned_cards"] = [
        {"user_id": uid, "card_name": name, "quantity": qty} for (uid, name), qty in owned_cards.items()
    ]

    decks = Deck.query.filter(Deck.user_id.in_(user_ids)).order_by(Deck.id).all()
    data["decks"] = [
        {
            "id": d.id,
            "user_id": d.user_id,
            "name": d.name,
            "format": d.format,
            "description": d.description,
            "created_at": _iso(d.created_at),
            "updated_at": _iso(d.updated_at),
        }
        for d in decks
    ]
    deck_ids = [d.id for d in decks]
    if deck_ids:
        card_rows = (
            db.session.query(DeckCard, Printing.uuid)
            .join(Printing, Printing.id == DeckCard.printing_id)
            .filter(DeckCard.deck_id.in_(deck_ids))
            .order_by(DeckCard.id)
            .all()
        )
        data["deck_cards"] = [
            {
                "id": dc.id,
                "deck_id": dc.deck_id,
                "quantity": dc.quantity,
                "is_sideboard": bool(dc.is_sideboard),
                "is_commander": bool(dc.is_commander),
                "board_type": dc.board_type,
                "added_at": _iso(dc.added_at),
                "printing_uuid": uuid,
            }
            for dc, uuid in card_rows
        ]
        data["deck_shares"] = [
            {
                "id": s.id,
                "deck_id": s.deck_id,
                "user_id": s.user_id,
                "share_token": s.share_token,
                "is_active": bool(s.is_active),
                "created_at": _iso(s.created_at),
                "expires_at": _iso(s.expires_at),
            }
            for s in DeckShare.query.filter(DeckShare.deck_id.in_(deck_ids)).order_by(DeckShare.id)
        ]
    return backup


# Restore -----------------------------------------------------------------------

def _wipe(user_id: Optional[int]) -> None:
    wiped: tuple = (DeckCard, DeckShare, Deck, ApiKey, OwnedPrinting)
    if user_id is not None:
        deck_ids = db.session.query(Deck.id).filter(Deck.user_id == user_id)
        DeckCard.query.filter(DeckCard.deck_id.in_(deck_ids)).delete(synchronize_session=False)
        DeckShare.query.filter(DeckShare.deck_id.in_(deck_ids)).delete(synchronize_session=False)
        Deck.query.filter(Deck.user_id == user_id).delete(synchronize_session=False)
        ApiKey.query.filter(ApiKey.user_id == user_id).delete(synchronize_session=False)
        OwnedPrinting.query.filter(OwnedPrinting.user_id == user_id).delete(synchronize_session=False)
    else:
        for model in wiped:
            model.query.delete(synchronize_session=False)
        User.query.delete(synchronize_session=False)
        wiped += (User,)
    db.session.flush()
    # Restored rows reuse their snapshot ids; stale instances must not shadow them.
    for obj in list(db.session.identity_map.values()):
        if isinstance(obj, wiped) and obj in db.session:
            db.session.expunge(obj)


def _restore_users(records, results, scoped: bool) -> List[int]:
    restored = []
    for record in records:
        try:
            uid = int(record["id"])
            clash = User.query.filter(
                (func.lower(User.username) == str(record["username"]).lower())
                | (func.lower(User.email) == str(record["email"]).lower()),
                User.id != uid,
            ).first()
            if clash is not None:
                results["errors"].append(f"User {record['username']}: username or email belongs to another account")
                continue
            user = db.session.get(User, uid)
            if user is None:
                user = User(id=uid, is_admin=False if scoped else bool(record.get("is_admin")))
                db.session.add(user)
            elif not scoped:
                user.is_admin = bool(record.get("is_admin"))
            user.username = record["username"]
            user.email = record["email"]
            user.password_hash = record["password_hash"]
            user.created_at = _parse_dt(record.get("created_at")) or datetime.utcnow()
            user.updated_at = _parse_dt(record.get("updated_at")) or datetime.utcnow()
            db.session.flush()
            restored.append(uid)
            results["users"] += 1
        except (KeyError, TypeError, ValueError) as exc:
            results["errors"].append(f"User {record.get('username') if isinstance(record, dict) else record}: {exc}")
    return restored


def _restore_api_keys(records, user_ids, results) -> None:
    for record in records:
        if record.get("user_id") not in user_ids:
            continue
        try:
            key = db.session.get(ApiKey, int(record["id"]))
            holder = ApiKey.query.filter(ApiKey.key_hash == record["key_hash"]).first()
            if (key is not None and key.user_id != record["user_id"]) or (
                holder is not None and holder.id != int(record["id"])
            ):
                results["errors"].append(f"API key {record.get('name')}: conflicts with an existing key")
                continue
            if key is None:
                key = ApiKey(id=int(record["id"]))
                db.session.add(key)
            key.user_id = record["user_id"]
            key.key_hash = record["key_hash"]
            key.name = record.get("name") or "restored key"
            key.last_used = _parse_dt(record.get("last_used"))
            key.created_at = _parse_dt(record.get("created_at")) or datetime.utcnow()
            db.session.flush()
            results["api_keys"] += 1
        except (KeyError, TypeError, ValueError) as exc:
            results["errors"].append(f"API key {record.get('name')}: {exc}")


def _restore_decks(records, user_ids, results) -> List[int]:
    restored = []
    for record in records:
        if record.get("user_id") not in user_ids:
            continue
        try:
            deck = db.session.get(Deck, int(record["id"]))
            if deck is not None and deck.user_id != record["user_id"]:
                results["errors"].append(f"Deck {record.get('name')}: id belongs to another user")
                continue
            if deck is None:
                deck = Deck(id=int(record["id"]))
                db.session.add(deck)
            deck.user_id = record["user_id"]
            deck.name = record["name"]
            deck.format = record.get("format")
            deck.description = record.get("description")
            deck.created_at = _parse_dt(record.get("created_at")) or datetime.utcnow()
            deck.updated_at = _parse_dt(record.get("updated_at")) or datetime.utcnow()
            db.session.flush()
            restored.append(deck.id)
            results["decks"] += 1
        except (KeyError, TypeError, ValueError) as exc:
            results["errors"].append(f"Deck {record.get('name')}: {exc}")
    return restored


def _printing_ids_by_uuid(uuids: Iterable[str]) -> Dict[str, int]:
    wanted = [u for u in set(uuids) if u]
    if not wanted:
        return {}
    return dict(db.session.query(Printing.uuid, Printing.id).filter(Printing.uuid.in_(wanted)).all())


def _restore_deck_cards(records, deck_ids, results) -> None:
    records = [r for r in records if r.get("deck_id") in deck_ids]
    printing_ids = _printing_ids_by_uuid(r.get("printing_uuid") for r in records)
    # Duplicate rows for one zone are folded before writing.
    merged: Dict[tuple, Dict[str, Any]] = {}
    for record in records:
        printing_id = printing_ids.get(record.get("printing_uuid"))
        if printing_id is None:
            results["notFound"] += 1
            results["errors"].append(f"Printing UUID {record.get('printing_uuid')} not found in database")
            continue
        board = record.get("board_type") or (DeckCard.BOARD_SIDE if record.get("is_sideboard") else DeckCard.BOARD_MAIN)
        if board not in DeckCard.BOARD_TYPES:
            board = DeckCard.BOARD_MAIN
        try:
            quantity = int(record.get("quantity") or 0)
        except (TypeError, ValueError):
            quantity = 0
        if quantity < 1:
            results["errors"].append(f"Deck card {record.get('printing_uuid')}: invalid quantity")
            continue
        key = (record["deck_id"], printing_id, board)
        slot = merged.setdefault(key, {"quantity": 0, "is_commander": False, "added_at": record.get("added_at")})
        slot["quantity"] += quantity
        slot["is_commander"] = slot["is_commander"] or bool(record.get("is_commander"))

    for (deck_id, printing_id, board), slot in merged.items():
        row = DeckCard.query.filter_by(deck_id=deck_id, printing_id=printing_id, board_type=board).first()
        if row is None:
            row = DeckCard(deck_id=deck_id, printing_id=printing_id)
            row.set_board(board)
            db.session.add(row)
        row.quantity = slot["quantity"]
        row.is_commander = slot["is_commander"]
        row.added_at = _parse_dt(slot["added_at"]) or datetime.utcnow()
        results["deck_cards"] += 1
    db.session.flush()


def _restore_deck_shares(records, deck_ids, results) -> None:
    for record in records:
        if record.get("deck_id") not in deck_ids:
            continue
        try:
            token_holder = DeckShare.query.filter_by(share_token=record["share_token"]).first()
            if token_holder is not None and token_holder.id != int(record["id"]):
                results["errors"].append("Deck share: token already in use")
                continue
            share = db.session.get(DeckShare, int(record["id"]))
            if share is not None and share.deck_id != record["deck_id"]:
                results["errors"].append("Deck share: id belongs to another deck")
                continue
            if share is None:
                share = DeckShare(id=int(record["id"]))
                db.session.add(share)
            share.deck_id = record["deck_id"]
            share.user_id = record["user_id"]
            share.share_token = record["share_token"]
            share.is_active = bool(record.get("is_active", True))
            share.created_at = _parse_dt(record.get("created_at")) or datetime.utcnow()
            share.expires_at = _parse_dt(record.get("expires_at"))
            db.session.flush()
            results["deck_shares"] += 1
        except (KeyError, TypeError, ValueError) as exc:
            results["errors"].append(f"Deck share: {exc}")


def _restore_owned_printings(records, user_ids, results) -> None:
    records = [r for r in records if r.get("user_id") in user_ids]
    printing_ids = _printing_ids_by_uuid(r.get("printing_uuid") for r in records)
    totals: Dict[tuple, int] = {}
    for record in records:
        printing_id = printing_ids.get(record.get("printing_uuid"))
        if printing_id is None:
            results["notFound"] += 1
            results["errors"].append(f"Owned printing UUID {record.get('printing_uuid')} not found in database")
            continue
        try:
            quantity = int(record.get("quantity") or 0)
        except (TypeError, ValueError):
            quantity = 0
        if quantity < 1:
            continue
        key = (record["user_id"], printing_id)
        totals[key] = totals.get(key, 0) + quantity

    for (uid, printing_id), quantity in totals.items():
        row = OwnedPrinting.query.filter_by(user_id=uid, printing_id=printing_id).first()
        if row is None:
            db.session.add(OwnedPrinting(user_id=uid, printing_id=printing_id, quantity=quantity))
        else:
            row.quantity = quantity
        results["owned_printings"] += 1
    db.session.flush()


def _restore_owned_cards(records, user_ids, results) -> None:
    """Older snapshots only know card names; own one copy of the first printing."""
    for record in records:
        uid = record.get("user_id")
        if uid not in user_ids:
            continue
        name = record.get("card_name")
        card = Card.query.filter_by(name=name).first() if name else None
        if card is None:
            results["notFound"] += 1
            results["errors"].append(f"Card {name} not found in database")
            continue
        already = (
            db.session.query(OwnedPrinting.id)
            .join(Printing, Printing.id == OwnedPrinting.printing_id)
            .filter(OwnedPrinting.user_id == uid, Printing.card_id == card.id)
            .first()
        )
        if already is not None:
            continue
        first = Printing.query.filter_by(card_id=card.id).order_by(Printing.set_code, Printing.collector_number).first()
        if first is None:
            results["notFound"] += 1
            continue
        db.session.add(OwnedPrinting(user_id=uid, printing_id=first.id, quantity=1))
        db.session.flush()
        results["owned_printings"] += 1


def _section(data: Dict[str, Any], name: str, results: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Records of one snapshot section; anything that is not an object is skipped and reported."""
    raw = data.get(name) or []
    if not isinstance(raw, list):
        results["errors"].append(f"Section {name}: expected a list")
        return []
    records = []
    for index, record in enumerate(raw):
        if isinstance(record, dict):
            records.append(record)
        else:
            results["errors"].append(f"Section {name} entry {index}: not an object")
    return records


def restore_backup(backup: Any, *, overwrite: bool = False, user_id: Optional[int] = None) -> Dict[str, Any]:
    """Restore a snapshot in a single transaction.

    Item-level problems are collected in ``errors``; only a malformed snapshot
    or a missing ``user_id`` aborts. With ``user_id`` the restore is scoped to
    that account and never grants the admin flag.
    """
    if not isinstance(backup, dict) or not backup.get("version") or not isinstance(backup.get("data"), dict):
        raise ValidationError("Invalid backup format")
    data = backup["data"]

    results: Dict[str, Any] = {
        "users": 0,
        "api_keys": 0,
        "decks": 0,
        "deck_cards": 0,
        "deck_shares": 0,
        "owned_printings": 0,
        "notFound": 0,
        "errors": [],
    }

    users = _section(data, "users", results)
    if user_id is not None:
        users = [u for u in users if u.get("id") == user_id]
        if not users:
            raise ValidationError(f"User {user_id} not found in backup")

    try:
        if overwrite:
            _wipe(user_id)
        user_ids = set(_restore_users(users, results, scoped=user_id is not None))
        _restore_api_keys(_section(data, "api_keys", results), user_ids, results)
        deck_ids = set(_restore_decks(_section(data, "decks", results), user_ids, results))
        _restore_deck_cards(_section(data, "deck_cards", results), deck_ids, results)
        _restore_deck_shares(_section(data, "deck_shares", results), deck_ids, results)
        if data.get("owned_printings"):
            _restore_owned_printings(_section(data, "owned_printings", results), user_ids, results)
        elif data.get("owned_cards"):
            _restore_owned_cards(_section(data, "owned_cards", results), user_ids, results)
        db.session.commit()
    except Exception:
        db.session.rollback()
        _LOG.exception("Backup restore failed; transaction rolled back")
        raise

    _LOG.info(
        "Backup restored",
        extra={
            "users": results["users"],
            "decks": results["decks"],
            "deck_cards": results["deck_cards"],
            "not_found": results["notFound"],
        },
    )
    return results


# Files -------------------------------------------------------------------------

def backup_dir() -> Path:
    path = Path(current_app.config["BACKUP_DIR"])
    path.mkdir(parents=True, exist_ok=True)
    return path


def _safe_path(filename: str) -> Path:
    name = (filename or "").strip()
    if not name or os.path.basename(name) != name or name.startswith(".") or not name.endswith(".json"):
        raise ValidationError("Invalid backup filename", field="filename")
    if name == CONFIG_FILENAME:
        raise ValidationError("Invalid backup filename", field="filename")
    directory = backup_dir().resolve()
    path = (directory / name).resolve()
    if path.parent != directory:
        raise ValidationError("Invalid backup filename", field="filename")
    return path


def save_backup_file(backup: Dict[str, Any], backup_type: str = "manual") -> str:
    if backup_type not in BACKUP_TYPES:
        raise ValidationError(f"Invalid backup type: {backup_type}", field="type")
    stamp = datetime.utcnow().strftime("%Y%m%d-%H%M%S")
    directory = backup_dir()
    filename = f"decklotus-{backup_type}-{stamp}.json"
    counter = 1
    while (directory / filename).exists():
        filename = f"decklotus-{backup_type}-{stamp}-{counter}.json"
        counter += 1
    with open(directory / filename, "w", encoding="utf-8") as handle:
        json.dump(backup, handle, indent=2)
    _LOG.info("Backup file written", extra={"backup_file": filename})
    return filename


def create_backup_file(backup_type: str = "manual", user_id: Optional[int] = None) -> Dict[str, Any]:
    filename = save_backup_file(create_backup(user_id), backup_type)
    return describe_backup(filename)


def describe_backup(filename: str) -> Dict[str, Any]:
    path = _safe_path(filename)
    if not path.exists():
        raise NotFoundError("Backup not found")
    match = _FILENAME_RE.match(filename)
    stat = path.stat()
    if match:
        created = datetime.strptime(match.group(2), "%Y%m%d-%H%M%S").isoformat()
        backup_type = match.group(1)
    else:
        created = datetime.utcfromtimestamp(stat.st_mtime).isoformat()
        backup_type = "manual"
    return {"filename": filename, "type": backup_type, "size": stat.st_size, "created": created}


def _sequence(filename: str) -> int:
    # Files written within the same second carry a -N suffix.
    match = _FILENAME_RE.match(filename)
    return int(match.group(3)) if match and match.group(3) else 0


def list_backups() -> List[Dict[str, Any]]:
    entries = []
    for path in backup_dir().glob("*.json"):
        if path.name == CONFIG_FILENAME:
            continue
        entries.append(describe_backup(path.name))
    entries.sort(key=lambda e: (e["created"], _sequence(e["filename"]), e["filename"]), reverse=True)
    return entries


def load_backup_file(filename: str) -> Dict[str, Any]:
    path = _safe_path(filename)
    if not path.exists():
        raise NotFoundError("Backup not found")
    with open(path, "r", encoding="utf-8") as handle:
        try:
            return json.load(handle)
        except ValueError:
            raise ValidationError("Invalid backup format")


def delete_backup_file(filename: str) -> None:
    path = _safe_path(filename)
    if not path.exists():
        raise NotFoundError("Backup not found")
    path.unlink()
    _LOG.info("Backup file deleted", extra={"backup_file": filename})


def prune_backups(retain_count: int, backup_type: str = "scheduled") -> List[str]:
    """Delete the oldest ``backup_type`` files beyond ``retain_count``."""
    same_type = [b for b in list_backups() if b["type"] == backup_type]
    doomed = same_type[max(0, retain_count):]
    for entry in doomed:
        delete_backup_file(entry["filename"])
    return [entry["filename"] for entry in doomed]


# Scheduled backup config -----------------------------------------------------

def _default_config() -> Dict[str, Any]:
    cfg = current_app.config
    return {
        "enabled": bool(cfg.get("BACKUP_ENABLED", True)),
        "frequency": cfg.get("BACKUP_FREQUENCY", "daily"),
        "retainCount": int(cfg.get("BACKUP_RETAIN_COUNT", 7)),
    }


def get_backup_config() -> Dict[str, Any]:
    config = _default_config()
    path = backup_dir() / CONFIG_FILENAME
    if path.exists():
        try:
            with open(path, "r", encoding="utf-8") as handle:
                stored = json.load(handle)
        except (OSError, ValueError):
            _LOG.warning("Unreadable backup config at %s; using defaults", path)
            stored = {}
        if isinstance(stored, dict):
            config.update({k: stored[k] for k in ("enabled", "frequency", "retainCount") if k in stored})
    return config


def set_backup_config(updates: Dict[str, Any]) -> Dict[str, Any]:
    config = get_backup_config()
    if "enabled" in updates:
        config["enabled"] = bool(updates["enabled"])
    if "frequency" in updates:
        frequency = str(updates["frequency"]).lower()
        if frequency not in BACKUP_FREQUENCIES:
            raise ValidationError("Frequency must be daily or weekly", field="frequency", invalid=[updates["frequency"]])
        config["frequency"] = frequency
    if "retainCount" in updates:
        try:
            retain = int(updates["retainCount"])
        except (TypeError, ValueError):
            retain = 0
        if retain < 1:
            raise ValidationError("retainCount must be a positive integer", field="retainCount")
        config["retainCount"] = retain
    with open(backup_dir() / CONFIG_FILENAME, "w", encoding="utf-8") as handle:
        json.dump(config, handle, indent=2)
    return config


def run_scheduled_backup() -> Dict[str, Any]:
    config = get_backup_config()
    entry = create_backup_file("scheduled")
    pruned = prune_backups(config["retainCount"], "scheduled")
    _LOG.info("Scheduled backup complete", extra={"backup_file": entry["filename"], "pruned": len(pruned)})
    return {"backup": entry, "pruned": pruned}


__all__ = [
    "BACKUP_VERSION",
    "BACKUP_TYPES",
    "create_backup",
    "restore_backup",
    "save_backup_file",
    "create_backup_file",
    "describe_backup",
    "list_backups",
    "load_backup_file",
    "delete_backup_file",
    "prune_backups",
    "get_backup_config",
    "set_backup_config",
    "run_scheduled_backup",
]
