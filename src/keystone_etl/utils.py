from __future__ import annotations

import hashlib
import json
import re
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, TypeVar

from .constants import DUNGEON_SHORT_NAMES

T = TypeVar("T")

SQL_BATCH_SIZE = 10000

BRACKETS = ["artifact", "legendary", "epic", "rare", "uncommon", "common"]

_SLUGIFY_RE = re.compile(r"[\s'\W]+")
_DASH_RUN_RE = re.compile(r"-{2,}")


def stable_hash(payload: Dict[str, Any]) -> str:
    raw = json.dumps(payload, sort_keys=True, default=str).encode("utf-8")
    return hashlib.sha256(raw).hexdigest()


def chunked(items: Sequence[T], size: int = SQL_BATCH_SIZE) -> Iterator[Sequence[T]]:
    for i in range(0, len(items), size):
        yield items[i : i + size]


def compute_team_signature(player_ids: Iterable[int]) -> str:
    return ",".join(str(pid) for pid in sorted(player_ids))


def percentile_bracket(rank: int, total: int) -> str:
    if total <= 0 or rank < 1 or rank > total:
        return "common"
    if rank == 1:
        return "artifact"
    # integer form of (total - rank) / total * 100 >= threshold
    above = (total - rank) * 100
    if above >= 95 * total:
        return "legendary"
    if above >= 80 * total:
        return "epic"
    if above >= 60 * total:
        return "rare"
    if above >= 40 * total:
        return "uncommon"
    return "common"


def safe_slug_name(name: str) -> str:
    s = name.strip().lower()
    s = s.replace("/", "-").replace("\\", "-").replace(" ", "-")
    kept = []
    for ch in s:
        if ch in "-_" or ch.isalpha() or ch.isdecimal():
            kept.append(ch)
    s = _DASH_RUN_RE.sub("-", "".join(kept)).strip("-")
    return s or "player"


def slugify(value: str) -> str:
    return _SLUGIFY_RE.sub("-", value.lower()).strip("-")


def class_key(class_name: str) -> str:
    return class_name.strip().lower().replace(" ", "_")


def dungeon_short_name(slug: str, name: str, overrides: Optional[Dict[str, str]] = None) -> str:
    table = DUNGEON_SHORT_NAMES if overrides is None else overrides
    if table.get(slug):
        return table[slug]
    initials: List[str] = []
    for word in name.split():
        if word in ("of", "the"):
            continue
        initials.append(word[0].upper())
    return "".join(initials)[:6]
