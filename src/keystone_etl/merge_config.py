from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Dict, List


@dataclass(frozen=True)
class CharacterKey:
    name: str
    realm: str
    region: str


@dataclass(frozen=True)
class MergeEntry:
    source: CharacterKey
    target: CharacterKey


def _character(raw: Dict[str, Any], where: str) -> CharacterKey:
    try:
        return CharacterKey(
            name=str(raw["name"]).strip(),
            realm=str(raw["realm"]).strip().lower(),
            region=str(raw["region"]).strip().lower(),
        )
    except (KeyError, TypeError) as exc:
        raise ValueError(f"invalid merge entry {where}: missing {exc}") from exc


def load_merge_config(path: str) -> List[MergeEntry]:
    """Read a ``{"merges": [{"from": {...}, "to": {...}}]}`` file used by the character merge tool."""
    with open(path, "r", encoding="utf-8") as f:
        raw = json.load(f)
    merges = raw.get("merges") if isinstance(raw, dict) else None
    if not merges:
        raise ValueError("config contains no merge entries")
    entries = []
    for i, item in enumerate(merges):
        entries.append(MergeEntry(_character(item.get("from"), f"{i}.from"), _character(item.get("to"), f"{i}.to")))
    return entries
