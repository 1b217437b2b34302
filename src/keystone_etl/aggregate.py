"""Derived tables: run_rankings, player_best_runs and player_profiles.

Rebuilt from scratch on every run from challenge_runs and run_members. A
run's season comes from its period through ``period_seasons`` (season 1 when
the period is unmapped), the same resolution the emitters filter on.

Rankings are "filtered": within a (dungeon, season) partition only the
fastest run of each team signature is ranked. Realm partitions pool a merged
realm with its parent.
"""

from __future__ import annotations

import logging
import time
from collections import Counter, defaultdict
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import text
from sqlalchemy.engine import Connection, Engine

from .logging_utils import log_json
from .realms import MergedMap, effective_slug
from .utils import percentile_bracket
from .wow_specs import get_class_and_spec

RUN_SEASONS = """
    SELECT DISTINCT cr.id AS run_id, COALESCE(ps.season_id, 1) AS season_id
    FROM challenge_runs cr
    LEFT JOIN period_seasons ps ON cr.period_id = ps.period_id
"""


def _now_ms() -> int:
    return int(time.time() * 1000)


def compute_run_rankings(conn: Connection, merged: Optional[MergedMap], now_ms: int) -> int:
    conn.execute(text("DELETE FROM run_rankings"))
    rows = conn.execute(
        text(
            f"""
            SELECT cr.id, cr.dungeon_id, rs.season_id, cr.team_signature, r.region, r.slug AS realm_slug
            FROM challenge_runs cr
            JOIN ({RUN_SEASONS}) rs ON rs.run_id = cr.id
            JOIN realms r ON cr.realm_id = r.id
            ORDER BY cr.dungeon_id, rs.season_id, cr.duration, cr.completed_timestamp, cr.id
            """
        )
    ).all()

    # (dungeon, season, type, scope, pool) -> runs in leaderboard order
    partitions: Dict[Tuple[Any, ...], List[Any]] = defaultdict(list)
    for row in rows:
        base = (row.dungeon_id, row.season_id)
        pool = f"{row.region}/{effective_slug(row.region, row.realm_slug, merged)}"
        partitions[base + ("global", "filtered", "")].append(row)
        partitions[base + ("regional", f"{row.region}_filtered", "")].append(row)
        partitions[base + ("realm", "filtered", pool)].append(row)

    values: List[Dict[str, Any]] = []
    for (dungeon_id, season_id, rtype, scope, _), runs in partitions.items():
        seen = set()
        canonical = []
        for run in runs:
            key = run.team_signature or f"run:{run.id}"
            if key in seen:
                continue
            seen.add(key)
            canonical.append(run)
        total = len(canonical)
        for rank, run in enumerate(canonical, start=1):
            values.append(
                {
                    "run_id": run.id,
                    "dungeon_id": dungeon_id,
                    "rtype": rtype,
                    "scope": scope,
                    "ranking": rank,
                    "bracket": percentile_bracket(rank, total),
                    "season_id": season_id,
                    "ts": now_ms,
                }
            )
    if values:
        conn.execute(
            text(
                "INSERT INTO run_rankings (run_id, dungeon_id, ranking_type, ranking_scope, ranking, "
                "percentile_bracket, season_id, computed_at) VALUES (:run_id, :dungeon_id, :rtype, :scope, "
                ":ranking, :bracket, :season_id, :ts)"
            ),
            values,
        )
    return len(values)


def compute_player_best_runs(conn: Connection) -> int:
    """Fastest run per (player, dungeon, season) for valid players."""
    conn.execute(text("DELETE FROM player_best_runs"))
    conn.execute(
        text(
            f"""
            INSERT INTO player_best_runs (player_id, dungeon_id, run_id, duration, season_id, completed_timestamp)
            SELECT player_id, dungeon_id, run_id, duration, season_id, completed_timestamp
            FROM (
                SELECT rm.player_id, cr.dungeon_id, cr.id AS run_id, cr.duration, rs.season_id,
                       cr.completed_timestamp,
                       ROW_NUMBER() OVER (
                           PARTITION BY rm.player_id, cr.dungeon_id, rs.season_id
                           ORDER BY cr.duration ASC, cr.completed_timestamp ASC, cr.id ASC
                       ) AS rn
                FROM run_members rm
                JOIN challenge_runs cr ON rm.run_id = cr.id
                JOIN ({RUN_SEASONS}) rs ON rs.run_id = cr.id
                JOIN players p ON rm.player_id = p.id
                WHERE COALESCE(p.is_valid, 1) = 1
            )
            WHERE rn = 1
            """
        )
    )
    return int(conn.execute(text("SELECT COUNT(*) FROM player_best_runs")).scalar_one())


def _main_spec(specs: List[int]) -> Optional[int]:
    if not specs:
        return None
    counts = Counter(specs)
    return min(counts, key=lambda spec: (-counts[spec], spec))


def compute_player_profiles(conn: Connection, now_ms: int) -> int:
    conn.execute(text("DELETE FROM player_profiles"))
    total_dungeons = int(conn.execute(text("SELECT COUNT(*) FROM dungeons")).scalar_one())

    # ---- 1. Best runs with the spec played in each
    best: Dict[Tuple[int, int], Dict[int, int]] = defaultdict(dict)
    specs: Dict[Tuple[int, int], List[int]] = defaultdict(list)
    rows = conn.execute(
        text(
            "SELECT pbr.player_id, pbr.season_id, pbr.dungeon_id, pbr.duration, MIN(rm.spec_id) AS spec_id "
            "FROM player_best_runs pbr "
            "LEFT JOIN run_members rm ON rm.run_id = pbr.run_id AND rm.player_id = pbr.player_id "
            "GROUP BY pbr.player_id, pbr.season_id, pbr.dungeon_id, pbr.duration"
        )
    ).all()
    for r in rows:
        key = (r.player_id, r.season_id)
        best[key][r.dungeon_id] = r.duration
        if r.spec_id is not None:
            specs[key].append(r.spec_id)

    # ---- 2. Every run per player and season
    run_counts = {
        (r.player_id, r.season_id): r.total
        for r in conn.execute(
            text(
                f"SELECT rm.player_id, rs.season_id, COUNT(DISTINCT rm.run_id) AS total "
                f"FROM run_members rm JOIN ({RUN_SEASONS}) rs ON rs.run_id = rm.run_id "
                f"GROUP BY rm.player_id, rs.season_id"
            )
        ).all()
    }
    players = {
        r.id: r for r in conn.execute(text("SELECT id, name, realm_id FROM players WHERE COALESCE(is_valid, 1) = 1"))
    }

    # ---- 3. One profile row per (player, season)
    values: List[Dict[str, Any]] = []
    for (player_id, season_id), durations in best.items():
        player = players.get(player_id)
        if player is None:
            continue
        completed = len(durations)
        complete = total_dungeons > 0 and completed == total_dungeons
        combined = sum(durations.values()) if complete else None
        main_spec = _main_spec(specs.get((player_id, season_id), []))
        resolved = get_class_and_spec(main_spec) if main_spec is not None else None
        values.append(
            {
                "pid": player_id,
                "season_id": season_id,
                "name": player.name,
                "realm_id": player.realm_id,
                "spec": main_spec,
                "class_name": resolved[0] if resolved else None,
                "completed": completed,
                "total_runs": run_counts.get((player_id, season_id), completed),
                "combined": combined,
                "average": round(combined / completed) if combined is not None else None,
                "complete": 1 if complete else 0,
                "ts": now_ms,
            }
        )
    if values:
        conn.execute(
            text(
                "INSERT INTO player_profiles (player_id, season_id, name, realm_id, main_spec_id, class_name, "
                "dungeons_completed, total_runs, combined_best_time, average_best_time, has_complete_coverage, "
                "last_updated) VALUES (:pid, :season_id, :name, :realm_id, :spec, :class_name, :completed, "
                ":total_runs, :combined, :average, :complete, :ts)"
            ),
            values,
        )
    return len(values)


def compute_player_rankings(conn: Connection, merged: Optional[MergedMap]) -> int:
    """Rank complete-coverage profiles by combined best time, globally, per region and per realm pool."""
    rows = conn.execute(
        text(
            "SELECT pp.player_id, pp.season_id, pp.name, pp.combined_best_time, r.region, r.slug "
            "FROM player_profiles pp JOIN realms r ON pp.realm_id = r.id "
            "WHERE pp.has_complete_coverage = 1 AND pp.combined_best_time IS NOT NULL "
            "ORDER BY pp.season_id, pp.combined_best_time ASC, pp.name ASC, pp.player_id ASC"
        )
    ).all()
    scopes: Dict[str, Dict[Tuple[Any, ...], List[Any]]] = {"global": {}, "regional": {}, "realm": {}}
    for row in rows:
        scopes["global"].setdefault((row.season_id,), []).append(row)
        scopes["regional"].setdefault((row.season_id, row.region), []).append(row)
        pool = effective_slug(row.region, row.slug, merged)
        scopes["realm"].setdefault((row.season_id, row.region, pool), []).append(row)

    updates: Dict[Tuple[int, int], Dict[str, Any]] = {}
    for scope, partitions in scopes.items():
        for members in partitions.values():
            total = len(members)
            for rank, row in enumerate(members, start=1):
                entry = updates.setdefault((row.player_id, row.season_id), {"pid": row.player_id, "sid": row.season_id})
                entry[scope] = rank
                entry[f"{scope}_bracket"] = percentile_bracket(rank, total)
    if updates:
        conn.execute(
            text(
                "UPDATE player_profiles SET global_ranking = :global, global_ranking_bracket = :global_bracket, "
                "regional_ranking = :regional, regional_ranking_bracket = :regional_bracket, "
                "realm_ranking = :realm, realm_ranking_bracket = :realm_bracket "
                "WHERE player_id = :pid AND season_id = :sid"
            ),
            list(updates.values()),
        )
    return len(updates)


def run_aggregations(
    engine: Engine,
    merged: Optional[MergedMap] = None,
    logger: Optional[logging.Logger] = None,
    now_ms: Optional[int] = None,
) -> Dict[str, int]:
    """Rebuild every derived table in one transaction."""
    now_ms = now_ms if now_ms is not None else _now_ms()
    steps = [
        ("run_rankings", lambda conn: compute_run_rankings(conn, merged, now_ms)),
        ("player_best_runs", compute_player_best_runs),
        ("player_profiles", lambda conn: compute_player_profiles(conn, now_ms)),
        ("ranked_players", lambda conn: compute_player_rankings(conn, merged)),
    ]
    counts: Dict[str, int] = {}
    with engine.begin() as conn:
        for name, step in steps:
            start = time.monotonic()
            counts[name] = step(conn)
            if logger:
                log_json(logger, "aggregate_step", step=name, rows=counts[name], seconds=round(time.monotonic() - start, 3))
    return counts
