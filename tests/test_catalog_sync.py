import json

import pytest
from sqlalchemy.exc import StatementError

from extensions import db
from models import Card, CardSet, DeckCard, OwnedPrinting, Price, Printing, Ruling
from services import backup as backup_service
from services import deck_service
from services.catalog_sync import CatalogSyncService, load_catalog_document, replace_catalog
from services.errors import ConflictError, ValidationError
from factories import add_deck_card, create_card, create_deck, create_printing, create_set, own_printing

CATALOG = {
    "sets": [
        {"code": "m11", "name": "Magic 2011", "releaseDate": "2010-07-16", "type": "core"},
        {"code": "zen", "name": "Zendikar", "releaseDate": "2009-10-02", "type": "expansion"},
    ],
    "cards": [
        {
            "name": "Lightning Bolt",
            "manaCost": "{R}",
            "manaValue": 1,
            "colors": ["R"],
            "colorIdentity": ["R"],
            "type": "Instant",
            "text": "Lightning Bolt deals 3 damage to any target.",
            "legalities": {"Modern": "Legal", "commander": "Legal"},
            "printings": [
                {
                    "uuid": "uuid-bolt",
                    "setCode": "m11",
                    "number": "146",
                    "rarity": "common",
                    "identifiers": {"scryfallId": "abcdef12"},
                    "rulings": [{"date": "2010-07-16", "text": "It can target a planeswalker."}],
                },
                {"uuid": "uuid-bolt-zen", "setCode": "zen", "number": "1", "rarity": "common"},
            ],
        },
        {
            "name": "Goblin Guide",
            "manaCost": "{R}",
            "manaValue": 1,
            "colors": ["R"],
            "type": "Creature - Goblin Scout",
            "subtypes": ["Goblin", "Scout"],
            "printings": [{"uuid": "uuid-guide", "setCode": "zen", "number": "126", "rarity": "rare"}],
        },
        {"name": "Lightning Bolt", "printings": [{"uuid": "uuid-duplicate"}]},
    ],
    "prices": {
        "uuid-bolt": {"tcgplayer": {"normal": {"2024-01-01": 1.0, "2024-02-01": 1.5}, "foil": {"2024-02-01": 0}}},
        "uuid-unknown": {"tcgplayer": {"normal": {"2024-01-01": 9.0}}},
    },
}


def _seed_user_data(user):
    create_set(code="M11")
    bolt = create_printing(card=create_card(name="Lightning Bolt"), set_code="M11", uuid="uuid-bolt")
    gone = create_printing(card=create_card(name="Vanished Card"), set_code="M11", uuid="uuid-gone")
    deck = create_deck(user, name="Burn")
    add_deck_card(deck, bolt, quantity=4)
    add_deck_card(deck, gone, quantity=1, board_type=DeckCard.BOARD_SIDE)
    own_printing(user, bolt, 2)
    own_printing(user, gone, 1)
    db.session.commit()
    return deck


def _write_catalog(tmp_path, document=CATALOG):
    path = tmp_path / "catalog.json"
    path.write_text(json.dumps(document), encoding="utf-8")
    return path


def test_load_catalog_document_requires_cards(tmp_path):
    path = _write_catalog(tmp_path, {"data": []})
    with pytest.raises(ValidationError):
        load_catalog_document(str(path))
    assert load_catalog_document(str(_write_catalog(tmp_path)))["cards"][0]["name"] == "Lightning Bolt"


def test_replace_catalog_reattaches_user_rows_by_uuid(db_session, create_user):
    user, _ = create_user()
    deck = _seed_user_data(user)

    result = replace_catalog(CATALOG)
    assert result == {
        "sets": 2,
        "cards": 2,
        "printings": 3,
        "prices": 1,
        "pricesSkipped": 1,
        "entriesSkipped": 0,
        "deckCards": {"restored": 1, "notFound": 1},
        "ownedPrintings": {"restored": 1, "notFound": 1},
    }

    assert {s.code for s in CardSet.query} == {"M11", "ZEN"}
    assert Card.query.filter_by(name="Vanished Card").first() is None
    bolt = Printing.query.filter_by(uuid="uuid-bolt").one()
    assert bolt.set_code == "M11"
    assert bolt.image_url == "https://cards.scryfall.io/normal/front/a/b/abcdef12.jpg"
    assert bolt.card.colors == "R"
    assert json.loads(bolt.card.legalities) == {"commander": "Legal", "modern": "Legal"}
    assert Ruling.query.filter_by(uuid="uuid-bolt").count() == 1

    prices = {(p.price_type, p.price) for p in Price.query.filter_by(printing_uuid="uuid-bolt")}
    assert prices == {("normal", 1.5)}

    cards = deck_service.get_deck(deck.id, user.id)["cards"]
    assert [(c["name"], c["quantity"], c["printing_id"]) for c in cards] == [("Lightning Bolt", 4, bolt.id)]
    owned = OwnedPrinting.query.filter_by(user_id=user.id).one()
    assert (owned.printing_id, owned.quantity) == (bolt.id, 2)


def test_malformed_catalog_entries_are_skipped_and_counted(db_session, create_user):
    user, _ = create_user()
    deck = _seed_user_data(user)
    document = {
        "sets": ["M11", {"code": "m11", "name": "Magic 2011"}],
        "cards": [
            "Lightning Bolt",
            None,
            {
                "name": "Lightning Bolt",
                "relatedCards": ["Fireblast"],
                "foreignData": "German",
                "printings": [7, {"uuid": "uuid-bolt", "setCode": "m11", "identifiers": "abcdef12", "rulings": ["oops"]}],
            },
        ],
    }

    result = replace_catalog(document)
    assert result["sets"] == 1
    assert result["cards"] == 1
    assert result["printings"] == 1
    # One set, two cards, one printing, one ruling and the foreignData string.
    assert result["entriesSkipped"] == 6
    assert result["deckCards"] == {"restored": 1, "notFound": 1}
    cards = deck_service.get_deck(deck.id, user.id)["cards"]
    assert [c["name"] for c in cards] == ["Lightning Bolt"]


def test_sync_service_writes_pre_sync_backup(db_session, create_user, backup_dir, tmp_path):
    user, _ = create_user()
    _seed_user_data(user)
    service = CatalogSyncService()

    result = service.run(str(_write_catalog(tmp_path)))
    assert result["success"] is True
    assert result["cards"] == 2

    backups = backup_service.list_backups()
    assert [b["type"] for b in backups] == ["pre-sync"]
    snapshot = backup_service.load_backup_file(backups[0]["filename"])
    # Taken before the swap, so the vanished printing is still referenced.
    assert "uuid-gone" in {c["printing_uuid"] for c in snapshot["data"]["deck_cards"]}

    status = service.status()
    assert status["isRunning"] is False
    assert status["lastResult"] == result
    assert status["lastRun"] == result["lastRun"]


def test_sync_service_rejects_overlap_and_missing_source(db_session, backup_dir):
    service = CatalogSyncService()
    with pytest.raises(ValidationError):
        service.run()
    assert service.is_running is False

    service._running = True
    with pytest.raises(ConflictError):
        service.run("catalog.json")


def test_failed_replacement_rolls_back(db_session, create_user):
    user, _ = create_user()
    deck = _seed_user_data(user)
    # A list cannot be bound to the legalities column, so the flush fails mid-swap.
    broken = {"cards": [{"name": "Broken Card", "legalities": ["Legal"], "printings": [{"uuid": "uuid-x"}]}]}

    with pytest.raises(StatementError):
        replace_catalog(broken)

    assert Card.query.filter_by(name="Lightning Bolt").count() == 1
    assert Card.query.filter_by(name="Broken Card").count() == 0
    cards = deck_service.get_deck(deck.id, user.id)["cards"]
    assert sorted(c["name"] for c in cards) == ["Lightning Bolt", "Vanished Card"]


def test_sync_routes_are_admin_only(client, create_user, auth_headers, backup_dir, tmp_path):
    admin, _ = create_user(username="admin", email="admin@example.com", is_admin=True)
    member, _ = create_user()

    assert client.post("/api/admin/sync", json={}, headers=auth_headers(member)).status_code == 403
    assert client.get("/api/admin/sync-status", headers=auth_headers(member)).status_code == 403

    resp = client.post("/api/admin/sync", json={"source": str(_write_catalog(tmp_path))}, headers=auth_headers(admin))
    assert resp.status_code == 200
    assert resp.get_json()["printings"] == 3

    status = client.get("/api/admin/sync-status", headers=auth_headers(admin)).get_json()
    assert status["isRunning"] is False
    assert status["lastResult"]["cards"] == 2
