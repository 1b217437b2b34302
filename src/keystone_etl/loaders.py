"""Batched relational readers behind the static API emitters.

Every ``IN (...)`` list is chunked at ``SQL_BATCH_SIZE`` parameters. Failures
are re-raised as ``LoaderError`` naming the step and, for batched queries, the
1-based batch index.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from .db import in_clause
from .utils import SQL_BATCH_SIZE, chunked


class LoaderError(RuntimeError):
    pass


@dataclass
class PlayerRow:
    id: int
    name: str
    realm_slug: str
    realm_name: str
    region: str
    class_name: Optional[str] = None
    active_spec_name: Optional[str] = None
    avatar_url: str = ""
    guild_name: Optional[str] = None
    race_name: Optional[str] = None
    average_item_level: Optional[int] = None
    equipped_item_level: Optional[int] = None


@dataclass
class PlayerSeasonRow:
    season_id: int
    main_spec_id: Optional[int]
    dungeons_completed: int
    total_runs: int
    combined_best_time: Optional[int]
    global_ranking: Optional[int]
    regional_ranking: Optional[int]
    realm_ranking: Optional[int]
    global_bracket: Optional[str]
    regional_bracket: Optional[str]
    realm_bracket: Optional[str]
    last_updated: Optional[int]


@dataclass
class BestRunRow:
    dungeon_id: int
    dungeon_name: str
    dungeon_slug: str
    run_id: int
    duration: int
    completed_timestamp: int
    season_id: int
    global_ranking_filtered: Optional[int]
    regional_ranking_filtered: Optional[int]
    realm_ranking_filtered: Optional[int]
    global_bracket: str
    regional_bracket: str
    realm_bracket: str


@dataclass
class TeamMemberRow:
    run_id: int
    name: str
    spec_id: Optional[int]
    region: str
    realm_slug: str


@dataclass
class EquipmentRow:
    id: int
    player_id: int
    slot_type: str
    item_id: Optional[int]
    upgrade_id: Optional[int]
    quality: str
    item_name: str
    snapshot_timestamp: int
    item_icon: Optional[str]
    item_type: Optional[Any]


@dataclass
class EnchantmentRow:
    equipment_id: int
    enchantment_id: Optional[int]
    slot_id: Optional[int]
    slot_type: Optional[str]
    display_string: Optional[str]
    source_item_id: Optional[int]
    source_item_name: Optional[str]
    spell_id: Optional[int]
    gem_icon_slug: Optional[str]


@dataclass
class LeaderboardMember:
    name: str
    spec_id: Optional[int]
    region: str
    realm_slug: str


@dataclass
class LeaderboardRow:
    id: int
    duration: int
    completed_timestamp: int
    keystone_level: int
    dungeon_name: str
    realm_name: str
    region: str
    ranking_percentile: str = ""
    members: List[LeaderboardMember] = field(default_factory=list)


@dataclass
class RankedPlayerRow:
    player_id: int
    name: str
    realm_slug: str
    realm_name: str
    region: str
    class_name: str
    active_spec_name: str
    main_spec_id: Optional[int]
    combined_best_time: Optional[int]
    dungeons_completed: int
    total_runs: int
    ranking_bracket: str


@dataclass
class DungeonRow:
    id: int
    slug: str
    name: str
    map_challenge_mode_id: Optional[int] = None


@dataclass
class SeasonRow:
    season_number: int
    season_name: Optional[str]
    start_timestamp: Optional[int]
    end_timestamp: Optional[int]


@dataclass
class RealmListRow:
    slug: str
    name: str
    connected_realm_id: Optional[int]
    parent_realm_slug: Optional[str]
    player_count: int


def _run(conn: Connection, step: str, sql: str, params: Optional[Dict[str, Any]] = None, batch: Optional[int] = None):
    try:
        return conn.execute(text(sql), params or {}).all()
    except SQLAlchemyError as exc:
        where = f"{step} {batch}" if batch is not None else step
        raise LoaderError(f"{where}: {exc}") from exc


def ranking_scope(region: str, realm_slug: str) -> Tuple[str, str]:
    """Map a leaderboard scope onto ``run_rankings`` (type, scope)."""
    if not region:
        return "global", "filtered"
    if not realm_slug:
        return "regional", f"{region}_filtered"
    return "realm", "filtered"


def load_complete_coverage_players(engine: Engine) -> List[PlayerRow]:
    sql = """
        SELECT DISTINCT p.id, p.name, r.slug AS realm_slug, r.name AS realm_name, r.region,
               pd.class_name, pd.active_spec_name,
               COALESCE(pd.avatar_url, '') AS avatar_url,
               pd.guild_name, pd.race_name, pd.average_item_level, pd.equipped_item_level
        FROM players p
        JOIN realms r ON p.realm_id = r.id
        JOIN player_profiles pp ON p.id = pp.player_id
        LEFT JOIN player_details pd ON p.id = pd.player_id
        WHERE pp.has_complete_coverage = 1
        ORDER BY p.id
    """
    with engine.connect() as conn:
        rows = _run(conn, "scan player", sql)
    return [PlayerRow(**r._mapping) for r in rows]


def load_player_seasons(engine: Engine, player_ids: Sequence[int]) -> Dict[int, List[PlayerSeasonRow]]:
    out: Dict[int, List[PlayerSeasonRow]] = {}
    with engine.connect() as conn:
        for n, batch in enumerate(chunked(list(player_ids)), start=1):
            placeholders, params = in_clause("p", batch)
            sql = f"""
                SELECT player_id, season_id, main_spec_id, dungeons_completed, total_runs,
                       combined_best_time, global_ranking, regional_ranking, realm_ranking,
                       global_ranking_bracket AS global_bracket,
                       regional_ranking_bracket AS regional_bracket,
                       realm_ranking_bracket AS realm_bracket,
                       last_updated
                FROM player_profiles
                WHERE player_id IN ({placeholders})
                ORDER BY player_id, season_id
            """
            for r in _run(conn, "batch player seasons query", sql, params, n):
                m = dict(r._mapping)
                pid = m.pop("player_id")
                m["dungeons_completed"] = m["dungeons_completed"] or 0
                m["total_runs"] = m["total_runs"] or 0
                out.setdefault(pid, []).append(PlayerSeasonRow(**m))
    return out


def load_best_runs(engine: Engine, player_ids: Sequence[int]) -> Tuple[Dict[int, List[BestRunRow]], List[int]]:
    """Best run per (player, dungeon, season) with filtered rankings; also returns unique run ids."""
    out: Dict[int, List[BestRunRow]] = {}
    run_ids: List[int] = []
    seen = set()
    with engine.connect() as conn:
        for n, batch in enumerate(chunked(list(player_ids)), start=1):
            placeholders, params = in_clause("p", batch)
            sql = f"""
                SELECT pbr.player_id, pbr.dungeon_id, d.name AS dungeon_name, d.slug AS dungeon_slug,
                       pbr.run_id, pbr.duration, pbr.completed_timestamp, pbr.season_id,
                       rg.ranking AS global_ranking_filtered,
                       rr.ranking AS regional_ranking_filtered,
                       rl.ranking AS realm_ranking_filtered,
                       COALESCE(rg.percentile_bracket, '') AS global_bracket,
                       COALESCE(rr.percentile_bracket, '') AS regional_bracket,
                       COALESCE(rl.percentile_bracket, '') AS realm_bracket
                FROM player_best_runs pbr
                JOIN dungeons d ON pbr.dungeon_id = d.id
                JOIN players p ON pbr.player_id = p.id
                JOIN realms r ON p.realm_id = r.id
                LEFT JOIN run_rankings rg ON pbr.run_id = rg.run_id
                    AND rg.ranking_type = 'global' AND rg.ranking_scope = 'filtered'
                    AND rg.season_id = pbr.season_id
                LEFT JOIN run_rankings rr ON pbr.run_id = rr.run_id
                    AND rr.ranking_type = 'regional' AND rr.ranking_scope = r.region || '_filtered'
                    AND rr.season_id = pbr.season_id
                LEFT JOIN run_rankings rl ON pbr.run_id = rl.run_id
                    AND rl.ranking_type = 'realm' AND rl.ranking_scope = 'filtered'
                    AND rl.season_id = pbr.season_id
                WHERE pbr.player_id IN ({placeholders})
                ORDER BY pbr.player_id, pbr.season_id, d.name
            """
            for r in _run(conn, "batch best runs query", sql, params, n):
                m = dict(r._mapping)
                pid = m.pop("player_id")
                row = BestRunRow(**m)
                out.setdefault(pid, []).append(row)
                if row.run_id not in seen:
                    seen.add(row.run_id)
                    run_ids.append(row.run_id)
    return out, run_ids


def _load_members(conn: Connection, run_ids: Sequence[int], step: str) -> Dict[int, List[TeamMemberRow]]:
    out: Dict[int, List[TeamMemberRow]] = {}
    for n, batch in enumerate(chunked(list(run_ids)), start=1):
        placeholders, params = in_clause("r", batch)
        sql = f"""
            SELECT rm.run_id, p.name, rm.spec_id, r.region, r.slug AS realm_slug
            FROM run_members rm
            JOIN players p ON rm.player_id = p.id
            JOIN realms r ON p.realm_id = r.id
            WHERE rm.run_id IN ({placeholders})
            ORDER BY rm.run_id, p.name
        """
        for r in _run(conn, step, sql, params, n):
            row = TeamMemberRow(**r._mapping)
            out.setdefault(row.run_id, []).append(row)
    return out


def load_team_members(engine: Engine, run_ids: Sequence[int]) -> Dict[int, List[TeamMemberRow]]:
    if not run_ids:
        return {}
    with engine.connect() as conn:
        return _load_members(conn, run_ids, "batch team members query")


def load_equipment(
    engine: Engine, player_ids: Sequence[int]
) -> Tuple[Dict[int, List[EquipmentRow]], Dict[int, List[EnchantmentRow]]]:
    """Latest equipment snapshot per player plus enchantments keyed by equipment id."""
    equipment: Dict[int, List[EquipmentRow]] = {}
    enchantments: Dict[int, List[EnchantmentRow]] = {}
    if not player_ids:
        return equipment, enchantments
    with engine.connect() as conn:
        latest: List[Tuple[int, int]] = []
        for n, batch in enumerate(chunked(list(player_ids)), start=1):
            placeholders, params = in_clause("p", batch)
            sql = f"""
                SELECT player_id, MAX(snapshot_timestamp) AS ts
                FROM player_equipment
                WHERE player_id IN ({placeholders})
                GROUP BY player_id
            """
            latest.extend((r.player_id, r.ts) for r in _run(conn, "batch latest equipment query", sql, params, n))
        if not latest:
            return equipment, enchantments

        equipment_ids: List[int] = []
        # two parameters per VALUES row
        for n, batch in enumerate(chunked(latest, SQL_BATCH_SIZE // 2), start=1):
            values = []
            params: Dict[str, Any] = {}
            for i, (pid, ts) in enumerate(batch):
                values.append(f"(:p{i}, :t{i})")
                params[f"p{i}"] = pid
                params[f"t{i}"] = ts
            sql = f"""
                WITH latest(player_id, ts) AS (VALUES {", ".join(values)})
                SELECT e.id, e.player_id, e.slot_type, e.item_id, e.upgrade_id, e.quality, e.item_name,
                       e.snapshot_timestamp, i.icon AS item_icon, i.type AS item_type
                FROM player_equipment e
                JOIN latest l ON e.player_id = l.player_id AND e.snapshot_timestamp = l.ts
                LEFT JOIN items i ON e.item_id = i.id
                ORDER BY e.player_id, e.slot_type
            """
            for r in _run(conn, "batch equipment query", sql, params, n):
                row = EquipmentRow(**r._mapping)
                equipment.setdefault(row.player_id, []).append(row)
                equipment_ids.append(row.id)

        for n, batch in enumerate(chunked(equipment_ids), start=1):
            placeholders, params = in_clause("e", batch)
            sql = f"""
                SELECT pee.equipment_id, pee.enchantment_id, pee.slot_id, pee.slot_type, pee.display_string,
                       pee.source_item_id, pee.source_item_name, pee.spell_id, i.icon AS gem_icon_slug
                FROM player_equipment_enchantments pee
                LEFT JOIN items i ON pee.source_item_id = i.id
                WHERE pee.equipment_id IN ({placeholders})
                ORDER BY pee.equipment_id, pee.slot_id
            """
            for r in _run(conn, "enchantments batch", sql, params, n):
                row = EnchantmentRow(**r._mapping)
                enchantments.setdefault(row.equipment_id, []).append(row)
    return equipment, enchantments


def _scope_filter(dungeon_id: int, region: str, realm_slug: str, season_id: int) -> Tuple[str, Dict[str, Any]]:
    where = ["cr.dungeon_id = :dungeon_id"]
    params: Dict[str, Any] = {"dungeon_id": dungeon_id, "season_id": season_id}
    if region:
        where.append("r.region = :region")
        params["region"] = region
    if realm_slug:
        where.append("r.slug = :realm_slug")
        params["realm_slug"] = realm_slug
    where.append("COALESCE(ps.season_id, 1) = :season_id")
    return " AND ".join(where), params


def count_canonical_runs(engine: Engine, dungeon_id: int, region: str, realm_slug: str, season_id: int) -> int:
    where, params = _scope_filter(dungeon_id, region, realm_slug, season_id)
    sql = f"""
        SELECT COUNT(DISTINCT cr.team_signature) AS total
        FROM challenge_runs cr
        JOIN realms r ON cr.realm_id = r.id
        LEFT JOIN period_seasons ps ON cr.period_id = ps.period_id
        WHERE {where}
    """
    with engine.connect() as conn:
        rows = _run(conn, "count canonical runs", sql, params)
    return int(rows[0].total or 0)


def load_canonical_runs(
    engine: Engine,
    dungeon_id: int,
    region: str,
    realm_slug: str,
    season_id: int,
    limit: int,
    offset: int,
) -> List[LeaderboardRow]:
    """One row per team signature: its fastest run, ties broken by completion time then id.

    Empty ``region`` means global scope; empty ``realm_slug`` means regional.
    """
    where, params = _scope_filter(dungeon_id, region, realm_slug, season_id)
    params.update({"limit": limit, "offset": offset})
    ranked_sql = f"""
        WITH ranked AS (
            SELECT cr.id, cr.duration, cr.completed_timestamp,
                   ROW_NUMBER() OVER (
                       PARTITION BY cr.team_signature
                       ORDER BY cr.duration ASC, cr.completed_timestamp ASC, cr.id ASC
                   ) AS rn
            FROM challenge_runs cr
            JOIN realms r ON cr.realm_id = r.id
            LEFT JOIN period_seasons ps ON cr.period_id = ps.period_id
            WHERE {where}
        )
        SELECT id FROM ranked WHERE rn = 1
        ORDER BY duration ASC, completed_timestamp ASC, id ASC
        LIMIT :limit OFFSET :offset
    """
    with engine.connect() as conn:
        ids = [r.id for r in _run(conn, "canonical runs", ranked_sql, params)]
        if not ids:
            return []
        rtype, rscope = ranking_scope(region, realm_slug)
        placeholders, id_params = in_clause("id", ids)
        id_params.update({"rtype": rtype, "rscope": rscope, "season_id": season_id})
        rows_sql = f"""
            SELECT cr.id, cr.duration, cr.completed_timestamp, COALESCE(cr.keystone_level, 1) AS keystone_level,
                   d.name AS dungeon_name, rr.name AS realm_name, rr.region,
                   COALESCE(rk.percentile_bracket, '') AS ranking_percentile
            FROM challenge_runs cr
            JOIN dungeons d ON cr.dungeon_id = d.id
            JOIN realms rr ON cr.realm_id = rr.id
            LEFT JOIN run_rankings rk ON cr.id = rk.run_id
                AND rk.ranking_type = :rtype
                AND rk.ranking_scope = :rscope
                AND rk.season_id = :season_id
            WHERE cr.id IN ({placeholders})
        """
        by_id = {r.id: LeaderboardRow(**r._mapping) for r in _run(conn, "canonical run rows", rows_sql, id_params)}
        members = _load_members(conn, ids, "canonical run members")
    out = []
    for run_id in ids:
        row = by_id.get(run_id)
        if row is None:
            continue
        row.members = [
            LeaderboardMember(name=m.name, spec_id=m.spec_id, region=m.region, realm_slug=m.realm_slug)
            for m in members.get(run_id, [])
        ]
        out.append(row)
    return out


_BRACKET_COLUMNS = {
    "global": "pp.global_ranking_bracket",
    "regional": "pp.regional_ranking_bracket",
    "realm": "pp.realm_ranking_bracket",
}


def _player_scope(season_id: int, region: str, realm_slugs: Sequence[str]) -> Tuple[str, Dict[str, Any], str]:
    where = ["pp.season_id = :season_id", "pp.has_complete_coverage = 1", "pp.combined_best_time IS NOT NULL"]
    params: Dict[str, Any] = {"season_id": season_id}
    scope = "global"
    if region:
        where.append("r.region = :region")
        params["region"] = region
        scope = "regional"
    if realm_slugs:
        placeholders, slug_params = in_clause("s", list(realm_slugs))
        where.append(f"r.slug IN ({placeholders})")
        params.update(slug_params)
        scope = "realm"
    return " AND ".join(where), params, scope


def load_ranked_players(
    engine: Engine,
    season_id: int,
    region: str = "",
    realm_slugs: Sequence[str] = (),
    limit: Optional[int] = None,
    offset: int = 0,
) -> List[RankedPlayerRow]:
    """Complete-coverage players ordered by combined best time, then name."""
    where, params, scope = _player_scope(season_id, region, realm_slugs)
    paging = ""
    if limit is not None:
        paging = "LIMIT :limit OFFSET :offset"
        params.update({"limit": limit, "offset": offset})
    sql = f"""
        SELECT p.id AS player_id, p.name, r.slug AS realm_slug, r.name AS realm_name, r.region,
               COALESCE(pd.class_name, '') AS class_name,
               COALESCE(pd.active_spec_name, '') AS active_spec_name,
               pp.main_spec_id, pp.combined_best_time,
               COALESCE(pp.dungeons_completed, 0) AS dungeons_completed,
               COALESCE(pp.total_runs, 0) AS total_runs,
               COALESCE({_BRACKET_COLUMNS[scope]}, '') AS ranking_bracket
        FROM players p
        JOIN realms r ON p.realm_id = r.id
        JOIN player_profiles pp ON p.id = pp.player_id
        LEFT JOIN player_details pd ON p.id = pd.player_id
        WHERE {where}
        ORDER BY pp.combined_best_time ASC, p.name ASC
        {paging}
    """
    with engine.connect() as conn:
        return [RankedPlayerRow(**r._mapping) for r in _run(conn, "ranked players", sql, params)]


def load_dungeons(engine: Engine) -> List[DungeonRow]:
    with engine.connect() as conn:
        rows = _run(conn, "query dungeons", "SELECT id, slug, name, map_challenge_mode_id FROM dungeons ORDER BY name")
    return [DungeonRow(**r._mapping) for r in rows]


def load_seasons(engine: Engine) -> List[SeasonRow]:
    sql = """
        SELECT season_number, MAX(season_name) AS season_name,
               MIN(start_timestamp) AS start_timestamp,
               CASE WHEN COUNT(*) = COUNT(end_timestamp) THEN MAX(end_timestamp) END AS end_timestamp
        FROM seasons
        GROUP BY season_number
        ORDER BY season_number ASC
    """
    with engine.connect() as conn:
        return [SeasonRow(**r._mapping) for r in _run(conn, "query seasons", sql)]


def current_season_id(engine: Engine) -> int:
    """Open season (null end) with the highest number, else the highest number, else 0."""
    with engine.connect() as conn:
        rows = _run(
            conn,
            "current season",
            "SELECT MAX(season_number) AS n FROM seasons WHERE end_timestamp IS NULL",
        )
        if rows and rows[0].n is not None:
            return int(rows[0].n)
        rows = _run(conn, "current season", "SELECT MAX(season_number) AS n FROM seasons")
    if rows and rows[0].n is not None:
        return int(rows[0].n)
    return 0


def load_regional_realms(engine: Engine, region: str) -> List[RealmListRow]:
    sql = """
        SELECT r.slug, MAX(r.name) AS name, MAX(r.connected_realm_id) AS connected_realm_id,
               MAX(r.parent_realm_slug) AS parent_realm_slug, COUNT(DISTINCT p.id) AS player_count
        FROM realms r
        LEFT JOIN players p ON p.realm_id = r.id
        WHERE r.region = :region
        GROUP BY r.slug
        ORDER BY r.slug
    """
    with engine.connect() as conn:
        return [RealmListRow(**r._mapping) for r in _run(conn, f"query realms for region {region}", sql, {"region": region})]


@dataclass
class ProfileTarget:
    player_id: int
    name: str
    realm_slug: str
    region: str


def load_profile_targets(engine: Engine, limit: Optional[int] = None) -> List[ProfileTarget]:
    """Valid players that have no details row yet, ordered by id."""
    params: Dict[str, Any] = {}
    paging = ""
    if limit is not None:
        paging = "LIMIT :limit"
        params["limit"] = limit
    sql = f"""
        SELECT p.id AS player_id, p.name, r.slug AS realm_slug, r.region
        FROM players p
        JOIN realms r ON p.realm_id = r.id
        LEFT JOIN player_details pd ON p.id = pd.player_id
        WHERE pd.player_id IS NULL AND COALESCE(p.is_valid, 1) = 1
        ORDER BY p.id
        {paging}
    """
    with engine.connect() as conn:
        return [ProfileTarget(**r._mapping) for r in _run(conn, "profile targets", sql, params)]


@dataclass
class StatusCandidate:
    player_id: int
    name: str
    realm_slug: str
    region: str
    class_id: Optional[int]
    spec_id: Optional[int]


def load_status_candidates(engine: Engine, stale_before_ms: int, limit: Optional[int] = None) -> List[StatusCandidate]:
    """Valid players never status-checked or checked before ``stale_before_ms``; unchecked first."""
    params: Dict[str, Any] = {"stale": stale_before_ms}
    paging = ""
    if limit is not None:
        paging = "LIMIT :limit"
        params["limit"] = limit
    sql = f"""
        SELECT p.id AS player_id, p.name, r.slug AS realm_slug, r.region,
               pd.class_id,
               (SELECT rm.spec_id FROM run_members rm
                JOIN challenge_runs cr ON rm.run_id = cr.id
                WHERE rm.player_id = p.id AND rm.spec_id IS NOT NULL
                ORDER BY cr.completed_timestamp DESC LIMIT 1) AS spec_id
        FROM players p
        JOIN realms r ON p.realm_id = r.id
        LEFT JOIN player_details pd ON p.id = pd.player_id
        WHERE COALESCE(p.is_valid, 1) = 1
          AND (p.status_checked_at IS NULL OR p.status_checked_at < :stale)
        ORDER BY p.status_checked_at IS NOT NULL, p.status_checked_at, p.id
        {paging}
    """
    with engine.connect() as conn:
        return [StatusCandidate(**r._mapping) for r in _run(conn, "status candidates", sql, params)]
