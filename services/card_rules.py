"""Rules-text helpers: mana value, type buckets and format legality."""
from __future__ import annotations

import enum
import math
import re
from dataclasses import dataclass
from typing import Optional

from models.catalog import LegalityMap

FACE_SEPARATOR = " // "
BASIC_LAND_MARKER = "Basic Land"

_MANA_SYMBOL_RE = re.compile(r"\{([^}]*)\}")


class CardType(str, enum.Enum):
    CREATURE = "Creature"
    PLANESWALKER = "Planeswalker"
    INSTANT = "Instant"
    SORCERY = "Sorcery"
    ENCHANTMENT = "Enchantment"
    ARTIFACT = "Artifact"
    LAND = "Land"
    OTHER = "Other"


# First match wins; an "Artifact Creature" is a Creature.
TYPE_PRIORITY: tuple[CardType, ...] = (
    CardType.CREATURE,
    CardType.PLANESWALKER,
    CardType.INSTANT,
    CardType.SORCERY,
    CardType.ENCHANTMENT,
    CardType.ARTIFACT,
    CardType.LAND,
)


def classify_type(type_line: Optional[str]) -> CardType:
    if not type_line:
        return CardType.OTHER
    for card_type in TYPE_PRIORITY:
        if card_type.value in type_line:
            return card_type
    return CardType.OTHER


def mana_value_from_cost(mana_cost: Optional[str]) -> int:
    """Sum a mana cost symbol by symbol: digits count their value, X counts 0, anything else 1."""
    if not mana_cost:
        return 0
    total = 0
    for symbol in _MANA_SYMBOL_RE.findall(mana_cost):
        token = symbol.strip().upper()
        if token.isdigit():
            total += int(token)
        elif token == "X":
            continue
        else:
            total += 1
    return total


def is_multi_face(name: Optional[str]) -> bool:
    return bool(name) and FACE_SEPARATOR in name


def effective_cmc(name: Optional[str], mana_cost: Optional[str], stored_cmc: Optional[float]) -> float:
    """Mana value used for curves; multi-face cards are recomputed from their printed cost."""
    if is_multi_face(name):
        return float(mana_value_from_cost(mana_cost))
    return float(stored_cmc or 0)


def curve_bucket(name: Optional[str], mana_cost: Optional[str], stored_cmc: Optional[float]) -> int:
    return int(math.floor(effective_cmc(name, mana_cost, stored_cmc)))


def is_basic_land(type_line: Optional[str]) -> bool:
    return bool(type_line) and BASIC_LAND_MARKER in type_line


@dataclass(frozen=True)
class LegalityVerdict:
    legal: bool
    status: str
    reason: Optional[str] = None


def evaluate_legality(legalities: LegalityMap, fmt: str) -> LegalityVerdict:
    status = legalities.status_for(fmt)
    if status == "Banned":
        return LegalityVerdict(False, status, "Banned")
    if status == "Restricted":
        return LegalityVerdict(False, status, "Restricted")
    if not status or status == "Not Legal":
        return LegalityVerdict(False, status or "Not Legal", "Not legal in this format")
    return LegalityVerdict(True, status)


__all__ = [
    "FACE_SEPARATOR",
    "CardType",
    "TYPE_PRIORITY",
    "classify_type",
    "mana_value_from_cost",
    "is_multi_face",
    "effective_cmc",
    "curve_bucket",
    "is_basic_land",
    "LegalityVerdict",
    "evaluate_legality",
]
