import pytest

from models.catalog import LegalityMap
from services.card_rules import (
    CardType,
    classify_type,
    curve_bucket,
    effective_cmc,
    evaluate_legality,
    is_basic_land,
    mana_value_from_cost,
)


@pytest.mark.parametrize(
    "cost, expected",
    [
        ("{2}{U}{U}", 4),
        ("{3}{U}{U}", 5),
        ("{X}{R}", 1),
        ("{W/U}{W/U}", 2),
        ("{10}", 10),
        ("", 0),
        (None, 0),
    ],
)
def test_mana_value_from_cost(cost, expected):
    assert mana_value_from_cost(cost) == expected


def test_split_cards_use_printed_cost_not_combined_value():
    # Stored mana value for split cards is the sum of both halves.
    assert effective_cmc("Fire // Ice", "{1}{R}", 4) == 2
    assert curve_bucket("Fire // Ice", "{1}{R}", 4) == 2
    assert effective_cmc("Shock", "{R}", 1) == 1


def test_curve_bucket_floors_fractional_values():
    assert curve_bucket("Little Girl", "{W/2}", 0.5) == 0


@pytest.mark.parametrize(
    "type_line, expected",
    [
        ("Artifact Creature - Golem", CardType.CREATURE),
        ("Legendary Planeswalker - Jace", CardType.PLANESWALKER),
        ("Tribal Instant - Elf", CardType.INSTANT),
        ("Enchantment Artifact", CardType.ENCHANTMENT),
        ("Basic Land - Island", CardType.LAND),
        ("Conspiracy", CardType.OTHER),
        (None, CardType.OTHER),
    ],
)
def test_classify_type_priority(type_line, expected):
    assert classify_type(type_line) is expected


def test_basic_land_detection():
    assert is_basic_land("Basic Land - Forest")
    assert is_basic_land("Basic Snow Land - Island") is False
    assert not is_basic_land("Land")


def test_legality_verdicts():
    legalities = LegalityMap.from_storage(
        '{"commander": "Legal", "vintage": "Restricted", "modern": "Banned", "standard": "Not Legal"}'
    )
    assert evaluate_legality(legalities, "Commander").legal
    restricted = evaluate_legality(legalities, "vintage")
    assert not restricted.legal and restricted.reason == "Restricted"
    assert evaluate_legality(legalities, "modern").reason == "Banned"
    assert evaluate_legality(legalities, "standard").reason == "Not legal in this format"
    missing = evaluate_legality(legalities, "pauper")
    assert not missing.legal and missing.status == "Not Legal"


def test_malformed_legality_storage_is_empty():
    assert LegalityMap.from_storage("{not json").statuses == {}
    assert LegalityMap.from_storage('["Legal"]').statuses == {}
