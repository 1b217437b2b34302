from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine

from .constants import DungeonInfo, RealmInfo

SCHEMA = [
    """CREATE TABLE IF NOT EXISTS dungeons (
        id INTEGER PRIMARY KEY,
        slug TEXT UNIQUE,
        name TEXT,
        map_id INTEGER,
        map_challenge_mode_id INTEGER UNIQUE
    )""",
    """CREATE TABLE IF NOT EXISTS realms (
        id INTEGER PRIMARY KEY,
        slug TEXT,
        name TEXT,
        region TEXT,
        connected_realm_id INTEGER UNIQUE,
        parent_realm_slug TEXT
    )""",
    """CREATE TABLE IF NOT EXISTS challenge_runs (
        id INTEGER PRIMARY KEY,
        duration INTEGER,
        completed_timestamp INTEGER,
        keystone_level INTEGER DEFAULT 1,
        dungeon_id INTEGER,
        realm_id INTEGER,
        period_id INTEGER,
        period_start_timestamp INTEGER,
        period_end_timestamp INTEGER,
        team_signature TEXT,
        season_id INTEGER
    )""",
    """CREATE TABLE IF NOT EXISTS players (
        id INTEGER PRIMARY KEY,
        blizzard_character_id INTEGER,
        name TEXT,
        name_lower TEXT,
        realm_id INTEGER,
        is_valid INTEGER DEFAULT 1,
        status_checked_at INTEGER
    )""",
    """CREATE TABLE IF NOT EXISTS run_members (
        run_id INTEGER,
        player_id INTEGER,
        spec_id INTEGER,
        faction TEXT
    )""",
    """CREATE TABLE IF NOT EXISTS player_profiles (
        player_id INTEGER,
        season_id INTEGER NOT NULL,
        name TEXT,
        realm_id INTEGER,
        main_spec_id INTEGER,
        class_name TEXT,
        dungeons_completed INTEGER DEFAULT 0,
        total_runs INTEGER DEFAULT 0,
        combined_best_time INTEGER,
        average_best_time INTEGER,
        global_ranking INTEGER,
        regional_ranking INTEGER,
        realm_ranking INTEGER,
        global_ranking_bracket TEXT,
        regional_ranking_bracket TEXT,
        realm_ranking_bracket TEXT,
        has_complete_coverage INTEGER DEFAULT 0,
        last_updated INTEGER,
        PRIMARY KEY (player_id, season_id)
    )""",
    """CREATE TABLE IF NOT EXISTS player_best_runs (
        player_id INTEGER,
        dungeon_id INTEGER,
        run_id INTEGER,
        duration INTEGER,
        season_id INTEGER NOT NULL,
        completed_timestamp INTEGER,
        PRIMARY KEY (player_id, dungeon_id, season_id)
    )""",
    """CREATE TABLE IF NOT EXISTS player_details (
        player_id INTEGER PRIMARY KEY,
        race_id INTEGER,
        race_name TEXT,
        gender TEXT,
        class_id INTEGER,
        class_name TEXT,
        active_spec_id INTEGER,
        active_spec_name TEXT,
        guild_name TEXT,
        level INTEGER,
        average_item_level INTEGER,
        equipped_item_level INTEGER,
        avatar_url TEXT,
        last_login_timestamp INTEGER,
        last_updated INTEGER
    )""",
    """CREATE TABLE IF NOT EXISTS player_equipment (
        id INTEGER PRIMARY KEY,
        player_id INTEGER,
        slot_type TEXT,
        item_id INTEGER,
        upgrade_id INTEGER,
        quality TEXT,
        item_name TEXT,
        snapshot_timestamp INTEGER
    )""",
    """CREATE TABLE IF NOT EXISTS player_equipment_enchantments (
        id INTEGER PRIMARY KEY,
        equipment_id INTEGER,
        enchantment_id INTEGER,
        slot_id INTEGER,
        slot_type TEXT,
        display_string TEXT,
        source_item_id INTEGER,
        source_item_name TEXT,
        spell_id INTEGER
    )""",
    """CREATE TABLE IF NOT EXISTS run_rankings (
        run_id INTEGER,
        dungeon_id INTEGER,
        ranking_type TEXT,
        ranking_scope TEXT,
        ranking INTEGER,
        percentile_bracket TEXT,
        season_id INTEGER NOT NULL,
        computed_at INTEGER,
        PRIMARY KEY (run_id, ranking_type, ranking_scope, season_id)
    )""",
    """CREATE TABLE IF NOT EXISTS items (
        id INTEGER PRIMARY KEY,
        name TEXT,
        icon TEXT,
        quality INTEGER,
        type INTEGER,
        stats TEXT
    )""",
    """CREATE TABLE IF NOT EXISTS seasons (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        season_number INTEGER NOT NULL,
        region TEXT NOT NULL,
        start_timestamp INTEGER,
        end_timestamp INTEGER,
        season_name TEXT,
        first_period_id INTEGER,
        last_period_id INTEGER,
        UNIQUE (season_number, region)
    )""",
    """CREATE TABLE IF NOT EXISTS period_seasons (
        period_id INTEGER,
        season_id INTEGER,
        PRIMARY KEY (period_id, season_id)
    )""",
    """CREATE TABLE IF NOT EXISTS realm_groups (
        child_realm_id INTEGER PRIMARY KEY,
        parent_realm_id INTEGER NOT NULL
    )""",
    """CREATE TABLE IF NOT EXISTS player_fingerprints (
        player_id INTEGER PRIMARY KEY,
        fingerprint_hash TEXT UNIQUE,
        class_id INTEGER,
        level85_timestamp INTEGER,
        level90_timestamp INTEGER,
        earliest_heroic_timestamp INTEGER,
        last_seen_name TEXT,
        last_seen_realm TEXT,
        updated_at INTEGER
    )""",
    "CREATE UNIQUE INDEX IF NOT EXISTS uq_runs_identity ON challenge_runs(dungeon_id, realm_id, completed_timestamp, team_signature)",
    "CREATE INDEX IF NOT EXISTS idx_runs_dungeon_sig ON challenge_runs(dungeon_id, team_signature)",
    "CREATE INDEX IF NOT EXISTS idx_runs_realm_dungeon_ct ON challenge_runs(realm_id, dungeon_id, completed_timestamp)",
    "CREATE INDEX IF NOT EXISTS idx_run_members_run ON run_members(run_id)",
    "CREATE INDEX IF NOT EXISTS idx_players_name_lower ON players(name_lower)",
    "CREATE INDEX IF NOT EXISTS idx_players_realm ON players(realm_id)",
    "CREATE INDEX IF NOT EXISTS idx_equipment_player_ts ON player_equipment(player_id, snapshot_timestamp)",
    "CREATE INDEX IF NOT EXISTS idx_enchant_equipment ON player_equipment_enchantments(equipment_id)",
]


def make_engine(url: str) -> Engine:
    connect_args: Dict[str, Any] = {}
    if url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    return create_engine(url, future=True, pool_pre_ping=True, connect_args=connect_args)


def ensure_schema(engine: Engine) -> None:
    with engine.begin() as conn:
        for stmt in SCHEMA:
            conn.execute(text(stmt))


def seed_reference_data(engine: Engine, realms: Iterable[RealmInfo], dungeons: Iterable[DungeonInfo]) -> None:
    with engine.begin() as conn:
        for d in dungeons:
            conn.execute(
                text(
                    "INSERT INTO dungeons (id, slug, name) VALUES (:id, :slug, :name) "
                    "ON CONFLICT(id) DO UPDATE SET slug = excluded.slug, name = excluded.name"
                ),
                {"id": d.id, "slug": d.slug, "name": d.name},
            )
        for r in realms:
            existing = conn.execute(
                text("SELECT id FROM realms WHERE region = :region AND slug = :slug"),
                {"region": r.region, "slug": r.slug},
            ).first()
            params = {
                "region": r.region,
                "slug": r.slug,
                "name": r.name,
                "crid": r.id,
                "parent": r.parent_realm_slug,
            }
            if existing is None:
                conn.execute(
                    text(
                        "INSERT INTO realms (slug, name, region, connected_realm_id, parent_realm_slug) "
                        "VALUES (:slug, :name, :region, :crid, :parent)"
                    ),
                    params,
                )
            else:
                conn.execute(
                    text(
                        "UPDATE realms SET name = :name, connected_realm_id = :crid, "
                        "parent_realm_slug = :parent WHERE region = :region AND slug = :slug"
                    ),
                    params,
                )


def in_clause(prefix: str, values: Sequence[Any]) -> Tuple[str, Dict[str, Any]]:
    """Expand ``values`` into ``:prefix0, :prefix1, ...`` plus the matching params."""
    names: List[str] = []
    params: Dict[str, Any] = {}
    for i, value in enumerate(values):
        key = f"{prefix}{i}"
        names.append(f":{key}")
        params[key] = value
    return ", ".join(names), params


TABLES = [
    "dungeons",
    "realms",
    "challenge_runs",
    "players",
    "run_members",
    "player_profiles",
    "player_best_runs",
    "player_details",
    "player_equipment",
    "player_equipment_enchantments",
    "run_rankings",
    "items",
    "seasons",
    "period_seasons",
    "realm_groups",
    "player_fingerprints",
]


def table_counts(engine: Engine) -> Dict[str, int]:
    with engine.connect() as conn:
        return {t: int(conn.execute(text(f"SELECT COUNT(*) FROM {t}")).scalar_one()) for t in TABLES}


def upsert_season(
    engine: Engine,
    region: str,
    season_number: int,
    season_name: Optional[str],
    start_timestamp: Optional[int],
    end_timestamp: Optional[int],
    period_ids: Sequence[int],
) -> None:
    """Store one regional season and map each of its periods to the season number."""
    first = min(period_ids) if period_ids else None
    last = max(period_ids) if period_ids else None
    with engine.begin() as conn:
        conn.execute(
            text(
                "INSERT INTO seasons (season_number, region, start_timestamp, end_timestamp, season_name, "
                "first_period_id, last_period_id) VALUES (:n, :region, :start, :end, :name, :first, :last) "
                "ON CONFLICT(season_number, region) DO UPDATE SET start_timestamp = excluded.start_timestamp, "
                "end_timestamp = excluded.end_timestamp, season_name = COALESCE(excluded.season_name, season_name), "
                "first_period_id = excluded.first_period_id, last_period_id = excluded.last_period_id"
            ),
            {
                "n": season_number,
                "region": region,
                "start": start_timestamp,
                "end": end_timestamp,
                "name": season_name,
                "first": first,
                "last": last,
            },
        )
        for pid in period_ids:
            conn.execute(
                text("INSERT OR IGNORE INTO period_seasons (period_id, season_id) VALUES (:p, :s)"),
                {"p": pid, "s": season_number},
            )
