from extensions import db
from models import DeckCard
from services.shopping import apply_shopping_filters, get_shopping_list
from factories import add_deck_card, create_card, create_deck, create_price, create_printing, create_set, own_printing


def _seed(user):
    create_set(code="M11", name="Magic 2011", release_date="2010-07-16")
    create_set(code="ZEN", name="Zendikar", release_date="2009-10-02")
    bolt_card = create_card(name="Lightning Bolt", colors="R", type_line="Instant")
    bolt = create_printing(card=bolt_card, set_code="M11", rarity="common")
    bolt_alt = create_printing(card=bolt_card, set_code="ZEN")
    guide = create_printing(card=create_card(name="Goblin Guide", colors="R"), set_code="ZEN", rarity="rare")
    scute = create_printing(card=create_card(name="Scute Swarm", colors="G"), set_code="ZEN", rarity="rare")
    owned = create_printing(card=create_card(name="Owned Elf", colors="G"), set_code="M11")
    create_price(bolt, 1.5)
    create_price(guide, 4.0)
    create_price(scute, 0.25)

    burn = create_deck(user, name="Burn")
    stompy = create_deck(user, name="Stompy")
    add_deck_card(burn, bolt, quantity=4)
    add_deck_card(stompy, bolt, quantity=2)
    add_deck_card(burn, guide, quantity=3)
    add_deck_card(burn, scute, quantity=1, board_type=DeckCard.BOARD_SIDE)
    add_deck_card(stompy, scute, quantity=1)
    add_deck_card(stompy, owned, quantity=1)
    # Owning any printing of a card covers it.
    own_printing(user, create_printing(card=owned.card, set_code="ZEN"), 1)
    db.session.commit()
    return burn, stompy, {"bolt": bolt, "bolt_alt": bolt_alt, "guide": guide, "scute": scute}


def test_shopping_list_groups_missing_cards_by_set(db_session, create_user):
    user, _ = create_user()
    burn, stompy, printings = _seed(user)

    result = get_shopping_list(user.id, [burn.id, stompy.id])
    assert result["totalDecks"] == 2
    assert result["totalCards"] == 3
    assert [s["setCode"] for s in result["sets"]] == ["M11", "ZEN"]

    m11, zen = result["sets"]
    bolt_line = m11["cards"][0]
    assert bolt_line["name"] == "Lightning Bolt"
    assert bolt_line["printingId"] == printings["bolt"].id
    assert bolt_line["decks"] == [
        {"deckId": burn.id, "deckName": "Burn", "quantity": 4},
        {"deckId": stompy.id, "deckName": "Stompy", "quantity": 2},
    ]
    # Line cost uses the largest single-deck need.
    assert m11["totalPrice"] == 6.0

    assert sorted(c["name"] for c in zen["cards"]) == ["Goblin Guide", "Scute Swarm"]
    scute_line = next(c for c in zen["cards"] if c["name"] == "Scute Swarm")
    assert [d["deckName"] for d in scute_line["decks"]] == ["Stompy"]
    assert zen["totalPrice"] == 12.25


def test_shopping_list_ignores_other_users_decks(db_session, create_user):
    user, _ = create_user()
    other, _ = create_user(username="other", email="other@example.com")
    burn, _, _ = _seed(user)

    result = get_shopping_list(other.id, [burn.id])
    assert result == {"sets": [], "totalCards": 0, "totalDecks": 0}
    assert get_shopping_list(user.id, []) == {"sets": [], "totalCards": 0, "totalDecks": 0}


def test_filters_and_sorting(db_session, create_user):
    user, _ = create_user()
    burn, stompy, _ = _seed(user)
    shopping = get_shopping_list(user.id, [burn.id, stompy.id])

    rares = apply_shopping_filters(shopping, rarity="rare")
    assert [s["setCode"] for s in rares["sets"]] == ["ZEN"]
    assert rares["totalCards"] == 2

    cheap = apply_shopping_filters(shopping, price_max=2.0, sort_by="totalPrice")
    assert [s["setCode"] for s in cheap["sets"]] == ["M11", "ZEN"]
    assert cheap["sets"][1]["totalPrice"] == 0.25
    assert cheap["totalPrice"] == 6.25

    green = apply_shopping_filters(shopping, color="g")
    assert [c["name"] for s in green["sets"] for c in s["cards"]] == ["Scute Swarm"]

    budget = apply_shopping_filters(shopping, set_search="zendik", budget_mode=True)
    assert [c["name"] for c in budget["sets"][0]["cards"]] == ["Scute Swarm", "Goblin Guide"]

    by_value = apply_shopping_filters(shopping, sort_by="totalPrice")
    assert [s["setCode"] for s in by_value["sets"]] == ["ZEN", "M11"]
    by_release = apply_shopping_filters(shopping, sort_by="releaseDate")
    assert [s["setCode"] for s in by_release["sets"]] == ["M11", "ZEN"]


def test_shopping_route(client, create_user, auth_headers):
    user, _ = create_user()
    burn, stompy, _ = _seed(user)
    headers = auth_headers(user)

    raw = client.get(f"/api/shopping?deckIds={burn.id},{stompy.id}", headers=headers).get_json()
    assert raw["totalCards"] == 3
    assert "totalPrice" not in raw

    filtered = client.get(f"/api/shopping?deckIds={burn.id}&rarity=rare", headers=headers).get_json()
    assert filtered["totalCards"] == 1
    assert filtered["totalPrice"] == 12.0

    assert client.get("/api/shopping?deckIds=abc", headers=headers).status_code == 400
    assert client.get(f"/api/shopping?deckIds={burn.id}&sortBy=nope", headers=headers).status_code == 400


def test_shopping_list_is_stable_across_calls(db_session, create_user):
    user, _ = create_user()
    burn, stompy, _ = _seed(user)

    first = get_shopping_list(user.id, [burn.id, stompy.id])
    second = get_shopping_list(user.id, [burn.id, stompy.id])
    assert first == second
    assert apply_shopping_filters(first, sort_by="cardCount") == apply_shopping_filters(second, sort_by="cardCount")


def test_colorless_filter_keeps_empty_identity(db_session, create_user):
    user, _ = create_user()
    burn, _, _ = _seed(user)
    thopter = create_card(name="Ornithopter", mana_cost="{0}", cmc=0, colors=None, type_line="Artifact Creature - Thopter")
    add_deck_card(burn, create_printing(card=thopter, set_code="M11"), quantity=1)
    db.session.commit()

    shopping = get_shopping_list(user.id, [burn.id])
    colorless = apply_shopping_filters(shopping, color="C")
    assert [c["name"] for s in colorless["sets"] for c in s["cards"]] == ["Ornithopter"]
    red = apply_shopping_filters(shopping, color="R")
    assert "Ornithopter" not in [c["name"] for s in red["sets"] for c in s["cards"]]
