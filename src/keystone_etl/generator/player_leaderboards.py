"""Paged player rankings by combined best time.

Scopes: global, per region, per realm group (children folded under their
merge parent) and the same three again for each class.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Tuple

from ..loaders import RankedPlayerRow, current_season_id, load_ranked_players
from ..logging_utils import log_json
from ..utils import class_key, percentile_bracket
from ..wow_specs import classes_with_specs, fallback_class_and_spec
from ._helpers import EmitContext, api_path, epoch_ms, pagination, realm_groups, split_pages, write_doc


def _resolved_class(row: RankedPlayerRow) -> Tuple[str, str]:
    return fallback_class_and_spec(row.class_name, row.active_spec_name, row.main_spec_id)


def _entry(row: RankedPlayerRow, rank: int, total: int) -> Dict[str, Any]:
    class_name, spec_name = _resolved_class(row)
    return {
        "player_id": row.player_id,
        "name": row.name,
        "realm_slug": row.realm_slug,
        "realm_name": row.realm_name,
        "region": row.region,
        "class_name": class_name,
        "active_spec_name": spec_name,
        "dungeons_completed": row.dungeons_completed,
        "total_runs": row.total_runs,
        "ranking": rank,
        "ranking_percentile": row.ranking_bracket or percentile_bracket(rank, total),
        "main_spec_id": row.main_spec_id,
        "combined_best_time": row.combined_best_time,
    }


def emit_player_scope(ctx: EmitContext, rows: List[RankedPlayerRow], parts: List[Any], title: str) -> int:
    """Page ``rows`` (already ranked) into ``.../players/<parts>/<page>.json``."""
    total = len(rows)
    total_runs = sum(r.total_runs for r in rows)
    written = 0
    for page, chunk in split_pages(rows, ctx.page_size):
        first_rank = (page - 1) * ctx.page_size + 1
        meta = pagination(page, ctx.page_size, total, "totalPlayers")
        meta["totalRuns"] = total_runs
        payload = {
            "leaderboard": [_entry(r, first_rank + i, total) for i, r in enumerate(chunk)],
            "title": title,
            "generated_timestamp": epoch_ms(ctx.now),
            "pagination": meta,
        }
        if write_doc(ctx, api_path(ctx, "leaderboard", *parts, f"{page}.json"), payload):
            written += 1
    return written


def _by_class(rows: List[RankedPlayerRow], key: str) -> List[RankedPlayerRow]:
    return [r for r in rows if class_key(_resolved_class(r)[0] or "") == key]


def generate_player_leaderboards(ctx: EmitContext, season_id: Optional[int] = None) -> int:
    sid = season_id or ctx.season_id or current_season_id(ctx.engine)
    base = ["season", sid, "players"]
    classes = classes_with_specs()

    scopes: List[Tuple[List[Any], str, List[RankedPlayerRow]]] = []
    global_rows = load_ranked_players(ctx.engine, sid)
    scopes.append((["global"], "Global", global_rows))
    for region in ctx.regions:
        scopes.append((["regional", region], region.upper(), load_ranked_players(ctx.engine, sid, region)))
        for group in realm_groups(ctx, region):
            rows = load_ranked_players(ctx.engine, sid, region, group.slugs)
            scopes.append((["realm", region, group.parent_slug], f"{region.upper()}/{group.parent_slug}", rows))

    written = 0
    for parts, label, rows in scopes:
        written += emit_player_scope(ctx, rows, base + parts, f"{label} Player Rankings")
        for _, key, class_name, _ in classes:
            written += emit_player_scope(
                ctx, _by_class(rows, key), base + ["class", key] + parts, f"{label} {class_name} Player Rankings"
            )
    if ctx.logger:
        log_json(ctx.logger, "player_leaderboards_done", season=sid, scopes=len(scopes), pages=written)
    return written
