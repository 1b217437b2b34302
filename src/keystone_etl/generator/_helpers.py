"""Shared plumbing for the static API generators.

Every generator receives an ``EmitContext`` and writes documents below
``<out_dir>/api``. A failed write is logged as ``write_failed`` and counted;
the generator moves on to the next document.
"""

from __future__ import annotations

import logging
import math
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.engine import Engine

from ..constants import REGIONS
from ..loaders import load_regional_realms
from ..logging_utils import log_json
from ..realms import MergedMap, effective_slug, realm_group_slugs
from ..writer import write_json, write_json_compact

DEFAULT_PAGE_SIZE = 25
API_PREFIX = "/api"


@dataclass
class EmitContext:
    """State shared by one generation run.

    Attributes:
        engine: SQLAlchemy engine for the relational store.
        out_dir: Output root; documents land under ``<out_dir>/api``.
        logger: Optional logger for structured events.
        page_size: Rows per leaderboard page.
        regions: Regions to emit regional and realm scopes for.
        merged: Merged-realm map; ``None`` uses the compiled-in default.
        season_id: Season to emit; ``None`` lets each generator decide.
        now: Timestamp stamped on every document of the run.
    """

    engine: Engine
    out_dir: str
    logger: Any = None
    page_size: int = DEFAULT_PAGE_SIZE
    regions: List[str] = field(default_factory=lambda: list(REGIONS))
    merged: Optional[MergedMap] = None
    season_id: Optional[int] = None
    now: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    written: int = 0
    failed: int = 0

    @property
    def api_root(self) -> str:
        return os.path.join(self.out_dir, "api")


def api_path(ctx: EmitContext, *parts: Any) -> str:
    return os.path.join(ctx.api_root, *[str(p) for p in parts])


def href(*parts: Any) -> str:
    """Site-relative link, e.g. ``href("leaderboard", "season", 1, "index.json")``."""
    return "/".join([API_PREFIX] + [str(p) for p in parts])


def write_doc(ctx: EmitContext, path: str, payload: Any, compact: bool = False) -> bool:
    try:
        if compact:
            write_json_compact(path, payload)
        else:
            write_json(path, payload)
    except OSError as exc:
        ctx.failed += 1
        if ctx.logger:
            log_json(ctx.logger, "write_failed", level=logging.WARNING, path=path, error=str(exc))
        return False
    ctx.written += 1
    return True


def rfc3339(when: datetime) -> str:
    return when.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def metadata(ctx: EmitContext, total: int) -> Dict[str, Any]:
    return {"total_count": total, "last_updated": rfc3339(ctx.now)}


def epoch_ms(when: datetime) -> int:
    return int(when.timestamp() * 1000)


def page_count(total: int, page_size: int) -> int:
    """Number of pages to emit; an empty scope still gets page 1."""
    return max(1, math.ceil(total / page_size)) if page_size > 0 else 1


def pagination(current: int, page_size: int, total: int, total_key: str) -> Dict[str, Any]:
    pages = page_count(total, page_size)
    return {
        "currentPage": current,
        "pageSize": page_size,
        total_key: total,
        "totalPages": pages,
        "hasNextPage": current < pages,
        "hasPrevPage": current > 1,
    }


@dataclass
class RealmGroup:
    parent_slug: str
    name: str
    slugs: List[str]
    player_count: int = 0


def realm_groups(ctx: EmitContext, region: str) -> List[RealmGroup]:
    """Realms of a region folded under their merge parent, ordered by parent slug."""
    known = {realm.slug: realm for realm in load_regional_realms(ctx.engine, region)}
    groups: Dict[str, RealmGroup] = {}
    for slug in known:
        parent = effective_slug(region, slug, ctx.merged)
        if parent in groups:
            continue
        members = [s for s in realm_group_slugs(region, parent, ctx.merged) if s in known]
        groups[parent] = RealmGroup(
            parent_slug=parent,
            name=known[parent].name if parent in known else parent,
            slugs=members,
            player_count=sum(known[s].player_count for s in members),
        )
    return [groups[k] for k in sorted(groups)]


def split_pages(rows: List[Any], page_size: int) -> List[Tuple[int, List[Any]]]:
    pages = page_count(len(rows), page_size)
    return [(p, rows[(p - 1) * page_size : p * page_size]) for p in range(1, pages + 1)]
