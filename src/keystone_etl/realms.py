"""Merged-realm aliasing.

Child realms keep receiving leaderboard traffic upstream, but the emitted API
shows them under their parent's slug. The mapping is data: the compiled-in
default can be replaced from ``config.yaml``.
"""

from __future__ import annotations

from typing import Dict, List, Optional

from sqlalchemy import text
from sqlalchemy.engine import Engine

from .constants import MERGED_REALMS
from .logging_utils import log_json

MergedMap = Dict[str, Dict[str, str]]


def _norm(value: str) -> str:
    return value.strip().lower()


def effective_slug(region: str, slug: str, merged: Optional[MergedMap] = None) -> str:
    merged = MERGED_REALMS if merged is None else merged
    region, slug = _norm(region), _norm(slug)
    return merged.get(region, {}).get(slug, slug)


def realm_group_slugs(region: str, parent_slug: str, merged: Optional[MergedMap] = None) -> List[str]:
    """The parent slug followed by every child slug that folds into it."""
    merged = MERGED_REALMS if merged is None else merged
    region, parent_slug = _norm(region), _norm(parent_slug)
    children = sorted(child for child, parent in merged.get(region, {}).items() if parent == parent_slug)
    return [parent_slug] + [c for c in children if c != parent_slug]


def sync_realm_groups(engine: Engine, merged: Optional[MergedMap] = None, logger=None) -> int:
    """Replace ``realm_groups`` with (child, parent) id pairs that resolve to known realms."""
    merged = MERGED_REALMS if merged is None else merged
    with engine.begin() as conn:
        rows = conn.execute(text("SELECT id, region, slug FROM realms")).all()
        ids = {(r.region, r.slug): r.id for r in rows}
        pairs = []
        for region, mapping in merged.items():
            for child, parent in mapping.items():
                child_id = ids.get((region, _norm(child)))
                parent_id = ids.get((region, _norm(parent)))
                if child_id is None or parent_id is None or child_id == parent_id:
                    continue
                pairs.append({"child": child_id, "parent": parent_id})
        conn.execute(text("DELETE FROM realm_groups"))
        for pair in pairs:
            conn.execute(
                text("INSERT INTO realm_groups (child_realm_id, parent_realm_id) VALUES (:child, :parent)"),
                pair,
            )
    if logger:
        log_json(logger, "realm_groups_synced", pairs=len(pairs))
    return len(pairs)
