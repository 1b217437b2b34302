from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from .utils import class_key


@dataclass(frozen=True)
class SpecInfo:
    class_name: str
    spec_name: str


CLASS_IDS: Dict[str, int] = {
    "warrior": 1,
    "paladin": 2,
    "hunter": 3,
    "rogue": 4,
    "priest": 5,
    "death_knight": 6,
    "shaman": 7,
    "mage": 8,
    "warlock": 9,
    "monk": 10,
    "druid": 11,
}

SPEC_BY_ID: Dict[int, SpecInfo] = {
    71: SpecInfo("Warrior", "Arms"),
    72: SpecInfo("Warrior", "Fury"),
    73: SpecInfo("Warrior", "Protection"),
    65: SpecInfo("Paladin", "Holy"),
    66: SpecInfo("Paladin", "Protection"),
    70: SpecInfo("Paladin", "Retribution"),
    253: SpecInfo("Hunter", "Beast Mastery"),
    254: SpecInfo("Hunter", "Marksmanship"),
    255: SpecInfo("Hunter", "Survival"),
    259: SpecInfo("Rogue", "Assassination"),
    260: SpecInfo("Rogue", "Outlaw"),
    261: SpecInfo("Rogue", "Subtlety"),
    256: SpecInfo("Priest", "Discipline"),
    257: SpecInfo("Priest", "Holy"),
    258: SpecInfo("Priest", "Shadow"),
    250: SpecInfo("Death Knight", "Blood"),
    251: SpecInfo("Death Knight", "Frost"),
    252: SpecInfo("Death Knight", "Unholy"),
    262: SpecInfo("Shaman", "Elemental"),
    263: SpecInfo("Shaman", "Enhancement"),
    264: SpecInfo("Shaman", "Restoration"),
    62: SpecInfo("Mage", "Arcane"),
    63: SpecInfo("Mage", "Fire"),
    64: SpecInfo("Mage", "Frost"),
    265: SpecInfo("Warlock", "Affliction"),
    266: SpecInfo("Warlock", "Demonology"),
    267: SpecInfo("Warlock", "Destruction"),
    268: SpecInfo("Monk", "Brewmaster"),
    269: SpecInfo("Monk", "Windwalker"),
    270: SpecInfo("Monk", "Mistweaver"),
    102: SpecInfo("Druid", "Balance"),
    103: SpecInfo("Druid", "Feral"),
    104: SpecInfo("Druid", "Guardian"),
    105: SpecInfo("Druid", "Restoration"),
}


def get_class_and_spec(spec_id: int) -> Optional[Tuple[str, str, int]]:
    """Return ``(class_name, spec_name, class_id)`` for a vendor spec id."""
    info = SPEC_BY_ID.get(spec_id)
    if info is None:
        return None
    return info.class_name, info.spec_name, CLASS_IDS[class_key(info.class_name)]


def fallback_class_and_spec(class_name: str, spec_name: str, spec_id: Optional[int]) -> Tuple[str, str]:
    """Fill whichever of class/spec name is missing from the spec table."""
    if spec_id is None or (class_name and spec_name):
        return class_name, spec_name
    found = get_class_and_spec(spec_id)
    if found is None:
        return class_name, spec_name
    return class_name or found[0], spec_name or found[1]


def classes_with_specs() -> List[Tuple[int, str, str, List[str]]]:
    """``(class_id, class_key, class_name, sorted spec names)`` ordered by class id."""
    by_class: Dict[str, set] = {}
    for info in SPEC_BY_ID.values():
        by_class.setdefault(info.class_name, set()).add(info.spec_name)
    out = []
    for name, specs in by_class.items():
        key = class_key(name)
        if key not in CLASS_IDS:
            continue
        out.append((CLASS_IDS[key], key, name, sorted(specs)))
    out.sort(key=lambda c: c[0])
    return out
