from __future__ import annotations
import re
from typing import Optional

SKILLS = (
    "acrobatics", "arcana", "athletics", "crafting", "deception", "diplomacy", "intimidation",
    "medicine", "nature", "occultism", "performance", "religion", "society", "stealth",
    "survival", "thievery",
)
SAVES = ("fortitude", "reflex", "will")
SAVE_ALIASES = {"fort": "fortitude", "fort save": "fortitude", "ref": "reflex", "reflex save": "reflex",
                "will save": "will"}
ABILITIES = ("STR", "DEX", "CON", "INT", "WIS", "CHA")
ABILITY_ALIASES = {"strength": "STR", "dexterity": "DEX", "constitution": "CON",
                   "intelligence": "INT", "wisdom": "WIS", "charisma": "CHA"}
TRADITIONS = ("arcane", "divine", "occult", "primal")

WEAPON_CATEGORIES = {"simple": "simple weapons", "martial": "martial weapons",
                     "advanced": "advanced weapons", "unarmed": "unarmed attacks"}
ARMOR_CATEGORIES = {"unarmored": "unarmored defense", "light": "light armor",
                    "medium": "medium armor", "heavy": "heavy armor"}

_LORE_RE = re.compile(r"^lore\s*(?:\((?P<paren>[^)]+)\)|:\s*(?P<colon>.+))$", re.I)
_QUANTITY_RE = re.compile(r"^\s*([+-]?\d+)\s*(?:ft\.?|feet|foot)?\s*$", re.I)


def lore(topic: str) -> str:
    return f"lore ({topic.strip().lower()})"


def normalize_skill(name: str) -> Optional[str]:
    s = " ".join(name.replace("_", " ").split()).lower()
    if s in SKILLS:
        return s
    m = _LORE_RE.match(s)
    if m:
        return lore(m.group("paren") or m.group("colon"))
    return None


def is_skill(category: str) -> bool:
    return category in SKILLS or category.startswith("lore (")


def normalize_save(name: str) -> Optional[str]:
    s = " ".join(name.replace("_", " ").split()).lower()
    s = SAVE_ALIASES.get(s, s)
    return s if s in SAVES else None


def normalize_ability(name: str) -> Optional[str]:
    s = name.strip()
    up = s.upper()
    if up in ABILITIES:
        return up
    return ABILITY_ALIASES.get(s.lower())


def weapon_category(key: str) -> str:
    return WEAPON_CATEGORIES.get(key.strip().lower(), key.strip().lower())


def armor_category(key: str) -> str:
    return ARMOR_CATEGORIES.get(key.strip().lower(), key.strip().lower())


def is_weapon_category(category: str) -> bool:
    return category in WEAPON_CATEGORIES.values() or category.endswith(" weapons")


def parse_quantity(text: str) -> Optional[int]:
    """'+10 ft' -> 10; None when the text is not a plain signed number/distance."""
    m = _QUANTITY_RE.match(text)
    return int(m.group(1)) if m else None
