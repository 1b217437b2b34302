"""Per-player profile documents under ``api/player/<region>/<realm>/<name>.json``."""

from __future__ import annotations

from typing import Any, Dict, List

from ..loaders import (
    BestRunRow,
    EnchantmentRow,
    EquipmentRow,
    PlayerRow,
    PlayerSeasonRow,
    TeamMemberRow,
    load_best_runs,
    load_complete_coverage_players,
    load_equipment,
    load_player_seasons,
    load_team_members,
)
from ..logging_utils import log_json
from ..utils import safe_slug_name
from ..wow_specs import fallback_class_and_spec
from ._helpers import EmitContext, api_path, rfc3339, write_doc

PROFILE_VERSION = "1.0"


def _best_run(run: BestRunRow, members: List[TeamMemberRow]) -> Dict[str, Any]:
    return {
        "dungeon_id": run.dungeon_id,
        "dungeon_name": run.dungeon_name,
        "dungeon_slug": run.dungeon_slug,
        "run_id": run.run_id,
        "duration": run.duration,
        "completed_timestamp": run.completed_timestamp,
        "global_ranking_filtered": run.global_ranking_filtered,
        "regional_ranking_filtered": run.regional_ranking_filtered,
        "realm_ranking_filtered": run.realm_ranking_filtered,
        "global_percentile_bracket": run.global_bracket,
        "regional_percentile_bracket": run.regional_bracket,
        "realm_percentile_bracket": run.realm_bracket,
        "team_members": [
            {"name": m.name, "spec_id": m.spec_id, "region": m.region, "realm_slug": m.realm_slug} for m in members
        ],
    }


def _season(season: PlayerSeasonRow, runs: List[BestRunRow], members: Dict[int, List[TeamMemberRow]]) -> Dict[str, Any]:
    return {
        "season_id": season.season_id,
        "main_spec_id": season.main_spec_id,
        "dungeons_completed": season.dungeons_completed,
        "total_runs": season.total_runs,
        "combined_best_time": season.combined_best_time,
        "global_ranking": season.global_ranking,
        "regional_ranking": season.regional_ranking,
        "realm_ranking": season.realm_ranking,
        "global_ranking_bracket": season.global_bracket,
        "regional_ranking_bracket": season.regional_bracket,
        "realm_ranking_bracket": season.realm_bracket,
        "last_updated": season.last_updated,
        "best_runs": {
            r.dungeon_slug: _best_run(r, members.get(r.run_id, []))
            for r in runs
            if r.season_id == season.season_id
        },
    }


def _enchantment(e: EnchantmentRow) -> Dict[str, Any]:
    out: Dict[str, Any] = {
        "enchantment_id": e.enchantment_id,
        "slot_id": e.slot_id,
        "slot_type": e.slot_type,
        "display_string": e.display_string,
        "source_item_id": e.source_item_id,
        "source_item_name": e.source_item_name,
        "spell_id": e.spell_id,
    }
    if e.gem_icon_slug:
        out["gem_icon_slug"] = e.gem_icon_slug
    return out


def _equipment(rows: List[EquipmentRow], enchantments: Dict[int, List[EnchantmentRow]]) -> Dict[str, Any]:
    return {
        row.slot_type: {
            "id": row.id,
            "slot_type": row.slot_type,
            "item_id": row.item_id,
            "upgrade_id": row.upgrade_id,
            "quality": row.quality,
            "item_name": row.item_name,
            "snapshot_timestamp": row.snapshot_timestamp,
            "item_icon_slug": row.item_icon,
            "item_type": row.item_type,
            "enchantments": [_enchantment(e) for e in enchantments.get(row.id, [])],
        }
        for row in rows
    }


def build_profile(
    ctx: EmitContext,
    player: PlayerRow,
    seasons: List[PlayerSeasonRow],
    runs: List[BestRunRow],
    members: Dict[int, List[TeamMemberRow]],
    equipment: List[EquipmentRow],
    enchantments: Dict[int, List[EnchantmentRow]],
) -> Dict[str, Any]:
    spec_id = next((s.main_spec_id for s in reversed(seasons) if s.main_spec_id is not None), None)
    class_name, spec_name = fallback_class_and_spec(player.class_name or "", player.active_spec_name or "", spec_id)
    return {
        "player": {
            "id": player.id,
            "name": player.name,
            "realm_slug": player.realm_slug,
            "realm_name": player.realm_name,
            "region": player.region,
            "class_name": class_name,
            "active_spec_name": spec_name,
            "avatar_url": player.avatar_url,
            "guild_name": player.guild_name,
            "race_name": player.race_name,
            "average_item_level": player.average_item_level,
            "equipped_item_level": player.equipped_item_level,
            "seasons": {str(s.season_id): _season(s, runs, members) for s in seasons},
        },
        "equipment": _equipment(equipment, enchantments),
        "generated_at": rfc3339(ctx.now),
        "version": PROFILE_VERSION,
    }


def profile_path(ctx: EmitContext, player: PlayerRow) -> str:
    return api_path(ctx, "player", player.region, player.realm_slug, f"{safe_slug_name(player.name)}.json")


def generate_player_profiles(ctx: EmitContext) -> int:
    """Write one compact document per complete-coverage player.

    Loader failures propagate and abort the run; a failed write skips only
    that player.
    """
    players = load_complete_coverage_players(ctx.engine)
    ids = [p.id for p in players]
    seasons = load_player_seasons(ctx.engine, ids)
    best_runs, run_ids = load_best_runs(ctx.engine, ids)
    members = load_team_members(ctx.engine, run_ids)
    equipment, enchantments = load_equipment(ctx.engine, ids)
    if ctx.logger:
        log_json(ctx.logger, "player_profiles_loaded", players=len(players), runs=len(run_ids))

    written = 0
    for player in players:
        payload = build_profile(
            ctx,
            player,
            seasons.get(player.id, []),
            best_runs.get(player.id, []),
            members,
            equipment.get(player.id, []),
            enchantments,
        )
        if write_doc(ctx, profile_path(ctx, player), payload, compact=True):
            written += 1
    if ctx.logger:
        log_json(ctx.logger, "player_profiles_done", players=len(players), written=written)
    return written
