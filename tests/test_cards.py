from extensions import db
from models import CardForeignData, Ruling
from factories import create_card, create_price, create_printing, create_set, own_printing


def _seed_catalog():
    create_set(code="M11", name="Magic 2011", release_date="2010-07-16", set_type="core")
    create_set(code="ZEN", name="Zendikar", release_date="2009-10-02")
    bolt = create_card(name="Lightning Bolt", mana_cost="{R}", cmc=1, colors="R", type_line="Instant")
    guide = create_card(name="Goblin Guide", mana_cost="{R}", cmc=1, colors="R", subtypes="Goblin,Scout")
    growth = create_card(name="Giant Growth", mana_cost="{G}", cmc=1, colors="G", type_line="Instant")
    ornithopter = create_card(name="Ornithopter", mana_cost="{0}", cmc=0, colors=None, type_line="Artifact Creature - Thopter")
    printings = {
        "bolt_m11": create_printing(card=bolt, set_code="M11", collector_number="146", image_url="https://img/normal/bolt.jpg"),
        "bolt_zen": create_printing(card=bolt, set_code="ZEN", collector_number="10"),
        "guide": create_printing(card=guide, set_code="ZEN", collector_number="126"),
        "growth": create_printing(card=growth, set_code="M11", collector_number="9"),
        "thopter": create_printing(card=ornithopter, set_code="M11", collector_number="210"),
    }
    create_price(printings["bolt_m11"], 2.0)
    create_price(printings["bolt_zen"], 0.5)
    create_price(printings["guide"], 4.0)
    db.session.add(Ruling(uuid=printings["bolt_m11"].uuid, date="2010-07-16", text="Deals damage."))
    db.session.add(Ruling(uuid=printings["bolt_zen"].uuid, date="2010-07-16", text="Deals damage."))
    db.session.add(CardForeignData(card_name="Lightning Bolt", language="German", foreign_name="Blitzschlag"))
    db.session.commit()
    return {"bolt": bolt, "guide": guide, "growth": growth, "thopter": ornithopter}, printings


def test_health_and_request_id(client):
    resp = client.get("/health", headers={"X-Request-ID": "abc123"})
    assert resp.status_code == 200
    assert resp.get_json() == {"status": "ok"}
    assert resp.headers["X-Request-ID"] == "abc123"
    assert client.get("/health").headers["X-Request-ID"]


def test_browse_filters(client, create_user, auth_headers):
    user, _ = create_user()
    cards, printings = _seed_catalog()
    own_printing(user, printings["guide"])
    db.session.commit()
    headers = auth_headers(user)

    def names(query):
        body = client.get(f"/api/cards/browse?sort=name&{query}", headers=headers).get_json()
        return [c["name"] for c in body["cards"]]

    assert names("") == ["Giant Growth", "Goblin Guide", "Lightning Bolt", "Ornithopter"]
    assert names("colors=R") == ["Goblin Guide", "Lightning Bolt"]
    assert names("colors=C") == ["Ornithopter"]
    assert names("type=Instant&colors=G") == ["Giant Growth"]
    assert names("sets=zen") == ["Goblin Guide", "Lightning Bolt"]
    assert names("subtypes=Scout") == ["Goblin Guide"]
    assert names("cmcMax=0") == ["Ornithopter"]
    assert names("onlyOwned=true") == ["Goblin Guide"]
    assert names("name=bolt") == ["Lightning Bolt"]

    by_price = client.get("/api/cards/browse?sort=price", headers=headers).get_json()["cards"]
    assert [c["name"] for c in by_price][:2] == ["Goblin Guide", "Lightning Bolt"]

    paged = client.get("/api/cards/browse?sort=name&limit=3&page=2", headers=headers).get_json()
    assert paged["total"] == 4
    assert paged["totalPages"] == 2
    assert [c["name"] for c in paged["cards"]] == ["Ornithopter"]
    listing = client.get("/api/cards/browse?sort=name", headers=headers).get_json()["cards"]
    owned_flags = {c["name"]: c["is_owned"] for c in listing}
    assert owned_flags["Goblin Guide"] is True
    assert owned_flags["Lightning Bolt"] is False


def test_search_autocomplete(client, create_user, auth_headers):
    user, _ = create_user()
    _seed_catalog()
    headers = auth_headers(user)

    found = client.get("/api/cards/search?q=Gi", headers=headers).get_json()["cards"]
    assert [c["name"] for c in found] == ["Giant Growth"]
    german = client.get("/api/cards/search?q=Blitz", headers=headers).get_json()["cards"]
    assert [(c["name"], c["match_priority"]) for c in german] == [("Lightning Bolt", 1)]
    assert client.get("/api/cards/search?q=G", headers=headers).get_json()["cards"] == []


def test_card_detail(client, create_user, auth_headers):
    user, _ = create_user()
    cards, printings = _seed_catalog()
    headers = auth_headers(user)

    detail = client.get(f"/api/cards/{cards['bolt'].id}", headers=headers).get_json()["card"]
    assert detail["name"] == "Lightning Bolt"
    # Cheapest printing first.
    assert [p["set_code"] for p in detail["printings"]] == ["ZEN", "M11"]
    assert detail["printings"][1]["price_normal"] == 2.0
    assert detail["printings"][1]["large_image_url"] == "https://img/large/bolt.jpg"
    assert detail["rulings"] == [{"date": "2010-07-16", "text": "Deals damage."}]
    assert detail["foreignData"][0]["foreign_name"] == "Blitzschlag"

    assert client.get("/api/cards/9999", headers=headers).status_code == 404
    assert client.get("/api/cards/name/Nope", headers=headers).status_code == 404
    by_name = client.get("/api/cards/name/Goblin%20Guide", headers=headers).get_json()["card"]
    assert by_name["subtypes"] == ["Goblin", "Scout"]

    printing = client.get(f"/api/cards/printing/{printings['guide'].uuid}", headers=headers).get_json()["printing"]
    assert printing["set_name"] == "Zendikar"
    assert printing["card"]["name"] == "Goblin Guide"

    listed = client.get(f"/api/cards/{cards['bolt'].id}/printings", headers=headers).get_json()["printings"]
    assert [p["set_code"] for p in listed] == ["M11", "ZEN"]


def test_catalog_stats_and_subtypes(client, create_user, auth_headers):
    user, _ = create_user()
    _seed_catalog()
    headers = auth_headers(user)

    assert client.get("/api/cards/stats", headers=headers).get_json() == {
        "total_cards": 4,
        "total_printings": 5,
        "total_sets": 2,
    }
    assert client.get("/api/cards/subtypes", headers=headers).get_json()["subtypes"] == ["Goblin", "Scout"]
    assert len(client.get("/api/cards/random?count=2", headers=headers).get_json()["cards"]) == 2


def test_card_ownership_routes(client, create_user, auth_headers):
    user, _ = create_user()
    cards, printings = _seed_catalog()
    headers = auth_headers(user)
    bolt_id = cards["bolt"].id

    toggled = client.post(f"/api/cards/{bolt_id}/toggle-owned", headers=headers).get_json()
    assert toggled["owned"] is True

    usage = client.get(f"/api/cards/{bolt_id}/ownership", headers=headers).get_json()
    assert usage["totalOwned"] == 1
    assert usage["available"] == 1
    # First printing by set code.
    assert [p["printing_id"] for p in usage["ownedPrintings"]] == [printings["bolt_m11"].id]

    assert client.post(f"/api/cards/{bolt_id}/toggle-owned", headers=headers).get_json()["owned"] is False
    assert client.post("/api/cards/9999/toggle-owned", headers=headers).status_code == 404


def test_sets_routes(client, create_user, auth_headers):
    user, _ = create_user()
    _seed_catalog()
    headers = auth_headers(user)

    sets = client.get("/api/sets", headers=headers).get_json()["sets"]
    assert [s["code"] for s in sets] == ["M11", "ZEN"]
    assert [s["code"] for s in client.get("/api/sets/search?q=zend", headers=headers).get_json()["sets"]] == ["ZEN"]

    detail = client.get("/api/sets/m11", headers=headers).get_json()["set"]
    assert detail["type"] == "core"
    assert client.get("/api/sets/XYZ", headers=headers).status_code == 404

    page = client.get("/api/sets/M11/cards?limit=2", headers=headers).get_json()
    assert page["total"] == 3
    assert page["totalPages"] == 2
    assert [c["collector_number"] for c in page["cards"]] == ["9", "146"]
