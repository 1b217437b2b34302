"""Paged dungeon leaderboards: one canonical run per team, per scope."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from ..loaders import (
    DungeonRow,
    LeaderboardRow,
    count_canonical_runs,
    load_canonical_runs,
    load_dungeons,
    load_regional_realms,
    load_seasons,
)
from ..logging_utils import log_json
from ._helpers import EmitContext, api_path, page_count, pagination, write_doc


def _group_payload(row: LeaderboardRow) -> Dict[str, Any]:
    group: Dict[str, Any] = {
        "id": row.id,
        "duration": row.duration,
        "completed_timestamp": row.completed_timestamp,
        "keystone_level": row.keystone_level,
        "dungeon_name": row.dungeon_name,
        "realm_name": row.realm_name,
        "region": row.region,
    }
    if row.ranking_percentile:
        group["ranking_percentile"] = row.ranking_percentile
    members = []
    for m in row.members:
        member: Dict[str, Any] = {"name": m.name, "region": m.region, "realm_slug": m.realm_slug}
        if m.spec_id is not None:
            member["spec_id"] = m.spec_id
        members.append(member)
    group["members"] = members
    return group


def emit_scope(
    ctx: EmitContext,
    season_id: int,
    dungeon: DungeonRow,
    region: str,
    realm_slug: str,
    parts: List[Any],
    realm_name: Optional[str] = None,
) -> int:
    """Write every page of one (season, dungeon, scope) leaderboard; returns pages written."""
    total = count_canonical_runs(ctx.engine, dungeon.id, region, realm_slug, season_id)
    pages = page_count(total, ctx.page_size)
    written = 0
    for page in range(1, pages + 1):
        rows = load_canonical_runs(
            ctx.engine, dungeon.id, region, realm_slug, season_id, ctx.page_size, (page - 1) * ctx.page_size
        )
        payload: Dict[str, Any] = {
            "leading_groups": [_group_payload(r) for r in rows],
            "map": {"name": {"en_US": dungeon.name}},
            "pagination": pagination(page, ctx.page_size, total, "totalRuns"),
        }
        if realm_name is not None:
            payload["connected_realm"] = {"name": realm_name}
        if write_doc(ctx, api_path(ctx, "leaderboard", *parts, f"{page}.json"), payload):
            written += 1
    return written


def generate_dungeon_leaderboards(ctx: EmitContext) -> int:
    if ctx.season_id is not None:
        seasons = [ctx.season_id]
    else:
        seasons = [s.season_number for s in load_seasons(ctx.engine)]
    dungeons = load_dungeons(ctx.engine)
    realms = {region: load_regional_realms(ctx.engine, region) for region in ctx.regions}
    written = 0
    for sid in seasons:
        for dungeon in dungeons:
            base = ["season", sid]
            written += emit_scope(ctx, sid, dungeon, "", "", base + ["global", dungeon.slug])
            for region in ctx.regions:
                written += emit_scope(ctx, sid, dungeon, region, "", base + [region, "all", dungeon.slug])
                for realm in realms[region]:
                    written += emit_scope(
                        ctx, sid, dungeon, region, realm.slug, base + [region, realm.slug, dungeon.slug], realm.name
                    )
        if ctx.logger:
            log_json(ctx.logger, "dungeon_leaderboards_done", season=sid, dungeons=len(dungeons), pages=written)
    return written
