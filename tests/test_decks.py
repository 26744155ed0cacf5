from extensions import db
from models import DeckCard
from services import deck_service
from services.deck_import import parse_card_line, parse_deck_list
from factories import add_deck_card, create_card, create_deck, create_price, create_printing, create_set


def _seed_printing(name="Goblin Guide", set_code="ZEN", **card_kwargs):
    create_set(code=set_code, name=f"{set_code} set")
    card = create_card(name=name, **card_kwargs)
    return create_printing(card=card, set_code=set_code)


def test_deck_crud_is_scoped_to_owner(client, create_user, auth_headers):
    owner, _ = create_user()
    other, _ = create_user(username="other", email="other@example.com")

    created = client.post("/api/decks", json={"name": "Burn", "format": "modern"}, headers=auth_headers(owner))
    assert created.status_code == 201
    deck_id = created.get_json()["deck"]["id"]

    assert client.get(f"/api/decks/{deck_id}", headers=auth_headers(other)).status_code == 404
    assert client.delete(f"/api/decks/{deck_id}", headers=auth_headers(other)).status_code == 404

    updated = client.put(f"/api/decks/{deck_id}", json={"name": "Mono Red"}, headers=auth_headers(owner))
    assert updated.status_code == 200
    assert updated.get_json()["deck"]["name"] == "Mono Red"
    assert updated.get_json()["deck"]["format"] == "modern"

    listed = client.get("/api/decks", headers=auth_headers(owner)).get_json()["decks"]
    assert [d["id"] for d in listed] == [deck_id]
    assert listed[0]["mainboard_count"] == 0

    assert client.delete(f"/api/decks/{deck_id}", headers=auth_headers(owner)).status_code == 200
    assert client.get(f"/api/decks/{deck_id}", headers=auth_headers(owner)).status_code == 404


def test_create_deck_requires_name(client, create_user, auth_headers):
    user, _ = create_user()
    resp = client.post("/api/decks", json={"name": "  "}, headers=auth_headers(user))
    assert resp.status_code == 400
    assert resp.get_json()["error"] == "Deck name is required"


def test_adding_same_printing_to_a_zone_increments_quantity(client, create_user, auth_headers):
    user, _ = create_user()
    printing = _seed_printing()
    deck = create_deck(user)
    db.session.commit()
    headers = auth_headers(user)

    client.post(f"/api/decks/{deck.id}/cards", json={"printingId": printing.id, "quantity": 2}, headers=headers)
    resp = client.post(f"/api/decks/{deck.id}/cards", json={"printingId": printing.id, "quantity": 1}, headers=headers)
    assert resp.status_code == 200
    cards = resp.get_json()["deck"]["cards"]
    assert len(cards) == 1
    assert cards[0]["quantity"] == 3

    side = client.post(
        f"/api/decks/{deck.id}/cards",
        json={"printingId": printing.id, "quantity": 1, "isSideboard": True},
        headers=headers,
    ).get_json()["deck"]
    assert side["mainboard_count"] == 3
    assert side["sideboard_count"] == 1
    assert [c["board_type"] for c in side["cards"]] == ["mainboard", "sideboard"]


def test_add_card_validation(client, create_user, auth_headers):
    user, _ = create_user()
    printing = _seed_printing()
    deck = create_deck(user)
    db.session.commit()
    headers = auth_headers(user)

    missing = client.post(f"/api/decks/{deck.id}/cards", json={}, headers=headers)
    assert missing.status_code == 400
    unknown = client.post(f"/api/decks/{deck.id}/cards", json={"printingId": 9999}, headers=headers)
    assert unknown.status_code == 404
    bad_zone = client.post(
        f"/api/decks/{deck.id}/cards",
        json={"printingId": printing.id, "boardType": "graveyard"},
        headers=headers,
    )
    assert bad_zone.status_code == 400


def test_update_card_rejects_bad_printing_id(client, create_user, auth_headers):
    user, _ = create_user()
    printing = _seed_printing()
    deck = create_deck(user)
    row = add_deck_card(deck, printing, quantity=2)
    db.session.commit()
    headers = auth_headers(user)
    url = f"/api/decks/{deck.id}/cards/{row.id}"

    bad = client.put(url, json={"printingId": "abc"}, headers=headers)
    assert bad.status_code == 400
    assert bad.get_json()["field"] == "printingId"
    assert client.put(url, json={"printingId": 9999}, headers=headers).status_code == 404
    assert client.put(url, json={"printingId": printing.id, "quantity": 3}, headers=headers).status_code == 200


def test_moving_a_row_into_an_occupied_zone_merges(db_session, create_user):
    user, _ = create_user()
    printing = _seed_printing()
    deck = create_deck(user)
    main = add_deck_card(deck, printing, quantity=2)
    add_deck_card(deck, printing, quantity=1, board_type=DeckCard.BOARD_SIDE)
    db.session.commit()

    result = deck_service.update_deck_card(deck.id, user.id, main.id, {"boardType": "sideboard"})
    assert [(c["board_type"], c["quantity"]) for c in result["cards"]] == [("sideboard", 3)]


def test_zero_quantity_removes_row(db_session, create_user):
    user, _ = create_user()
    printing = _seed_printing()
    deck = create_deck(user)
    row = add_deck_card(deck, printing, quantity=2)
    db.session.commit()

    result = deck_service.update_deck_card(deck.id, user.id, row.id, {"quantity": 0})
    assert result["cards"] == []


def test_deck_stats_curve_colors_and_types(client, create_user, auth_headers):
    user, _ = create_user()
    create_set(code="DOM")
    split = create_printing(
        card=create_card(name="Fire // Ice", mana_cost="{1}{R}", cmc=4, colors="R,U", type_line="Instant"),
        set_code="DOM",
    )
    bear = create_printing(
        card=create_card(name="Grizzly Bears", mana_cost="{1}{G}", cmc=2, colors="G", type_line="Creature - Bear"),
        set_code="DOM",
    )
    forest = create_printing(
        card=create_card(name="Forest", mana_cost=None, cmc=0, colors=None, type_line="Basic Land - Forest"),
        set_code="DOM",
    )
    sided = create_printing(card=create_card(name="Naturalize", cmc=2, colors="G", type_line="Instant"), set_code="DOM")
    deck = create_deck(user)
    add_deck_card(deck, split, quantity=2)
    add_deck_card(deck, bear, quantity=4)
    add_deck_card(deck, forest, quantity=10)
    add_deck_card(deck, sided, quantity=3, board_type=DeckCard.BOARD_SIDE)
    db.session.commit()

    resp = client.get(f"/api/decks/{deck.id}/stats", headers=auth_headers(user))
    assert resp.status_code == 200
    stats = resp.get_json()
    assert stats["totalCards"] == 16
    assert stats["manaCurve"] == [
        {"cmc": 0, "count": 1, "total_cards": 10},
        {"cmc": 2, "count": 2, "total_cards": 6},
    ]
    types = {t["type"]: t["total_cards"] for t in stats["typeDistribution"]}
    assert types == {"Creature": 4, "Instant": 2, "Land": 10}
    colors = {c["colors"]: c["total_cards"] for c in stats["colorDistribution"]}
    assert colors["R,U"] == 2
    assert colors["G"] == 4


def test_legality_flags_banned_and_skips_unknown(client, create_user, auth_headers):
    user, _ = create_user()
    create_set(code="M10")
    banned = create_printing(
        card=create_card(name="Mana Crypt", legalities={"commander": "Banned", "vintage": "Restricted"}),
        set_code="M10",
    )
    legal = create_printing(card=create_card(name="Shock", legalities={"commander": "Legal"}), set_code="M10")
    unknown = create_printing(card=create_card(name="Homebrew", legalities=None), set_code="M10")
    deck = create_deck(user)
    for printing in (banned, legal, unknown):
        add_deck_card(deck, printing)
    db.session.commit()

    result = client.get(f"/api/decks/{deck.id}/legality/commander", headers=auth_headers(user)).get_json()
    assert result["isLegal"] is False
    assert result["illegalCardCount"] == 1
    assert result["illegalCards"][0]["name"] == "Mana Crypt"
    assert result["illegalCards"][0]["reason"] == "Banned"

    vintage = client.get(f"/api/decks/{deck.id}/legality/vintage", headers=auth_headers(user)).get_json()
    reasons = {c["name"]: c["reason"] for c in vintage["illegalCards"]}
    assert reasons == {"Mana Crypt": "Restricted", "Shock": "Not legal in this format"}


def test_deck_price_totals_all_zones(client, create_user, auth_headers):
    user, _ = create_user()
    printing = _seed_printing()
    create_price(printing, 2.5)
    create_price(printing, 9.0, price_type="foil")
    deck = create_deck(user)
    add_deck_card(deck, printing, quantity=2)
    add_deck_card(deck, printing, quantity=1, board_type=DeckCard.BOARD_MAYBE)
    db.session.commit()

    price = client.get(f"/api/decks/{deck.id}/price", headers=auth_headers(user)).get_json()
    assert price == {"total": 7.5, "provider": "tcgplayer", "currency": "USD"}


def test_share_links_are_public_and_revocable(client, create_user, auth_headers):
    owner, _ = create_user()
    viewer, _ = create_user(username="viewer", email="viewer@example.com")
    printing = _seed_printing()
    deck = create_deck(owner, name="Shared Deck")
    add_deck_card(deck, printing, quantity=4)
    db.session.commit()

    shared = client.post(f"/api/decks/{deck.id}/share", json={}, headers=auth_headers(owner)).get_json()
    token = shared["shareToken"]
    assert shared["shareUrl"] == f"/share/{token}"
    again = client.post(f"/api/decks/{deck.id}/share", json={}, headers=auth_headers(owner)).get_json()
    assert again["shareToken"] == token

    public = client.get(f"/api/decks/share/{token}")
    assert public.status_code == 200
    body = public.get_json()
    assert body["isAuthenticated"] is False
    assert body["deck"]["name"] == "Shared Deck"
    assert "user_id" not in body["deck"]

    imported = client.post(f"/api/decks/share/{token}/import", headers=auth_headers(viewer))
    assert imported.status_code == 201
    copy = imported.get_json()["deck"]
    assert copy["name"] == "Shared Deck (imported)"
    assert copy["mainboard_count"] == 4

    assert client.delete(f"/api/decks/{deck.id}/share", headers=auth_headers(owner)).status_code == 200
    assert client.get(f"/api/decks/share/{token}").status_code == 404
    assert client.delete(f"/api/decks/{deck.id}/share", headers=auth_headers(owner)).status_code == 404


def test_parse_deck_list_sections_and_formats():
    entries = parse_deck_list(
        """
        Commander
        1 Krenko, Mob Boss (DDT) 52
        Deck
        4 Lightning Bolt [M11]
        2 Goblin Guide *F*
        Sideboard
        3 Pyroblast
        not a card line
        """
    )
    assert [(e.quantity, e.name, e.set_code) for e in entries] == [
        (1, "Krenko, Mob Boss", "DDT"),
        (4, "Lightning Bolt", "M11"),
        (2, "Goblin Guide", None),
        (3, "Pyroblast", None),
    ]
    assert entries[0].is_commander and entries[0].collector_number == "52"
    assert entries[2].is_foil
    assert entries[3].is_sideboard
    assert parse_card_line("0 Nothing") is None


def test_import_deck_reports_missing_cards(client, create_user, auth_headers):
    user, _ = create_user()
    create_set(code="M11")
    create_printing(card=create_card(name="Lightning Bolt"), set_code="M11")
    db.session.commit()

    resp = client.post(
        "/api/decks/import",
        json={"name": "Imported", "format": "modern", "deckList": "4 Lightning Bolt (M11)\n2 Made Up Card"},
        headers=auth_headers(user),
    )
    assert resp.status_code == 201
    body = resp.get_json()
    assert body["imported"] == 1
    assert body["notFound"] == 1
    assert body["missing"] == ["Made Up Card"]
    assert body["message"] == "Successfully imported 1 cards (1 not found)"

    deck = client.get(f"/api/decks/{body['deckId']}", headers=auth_headers(user)).get_json()["deck"]
    assert deck["cards"][0]["quantity"] == 4


def test_import_requires_cards(client, create_user, auth_headers):
    user, _ = create_user()
    resp = client.post(
        "/api/decks/import",
        json={"name": "Empty", "deckList": "just words"},
        headers=auth_headers(user),
    )
    assert resp.status_code == 400
    assert resp.get_json()["error"] == "No valid cards found in deck list"
