"""Shared fixtures: fake AWS credentials, a seeded SQLite store and a small
leaderboard dataset shaped like what the ingest step produces.
"""

from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict

import boto3
import httpx
import pytest
from moto import mock_aws
from sqlalchemy import text

from keystone_etl.api_client import ApiClient, ApiConfig
from keystone_etl.config import Config
from keystone_etl.constants import DUNGEONS, REALMS
from keystone_etl.db import ensure_schema, make_engine, seed_reference_data
from keystone_etl.generator import EmitContext


@pytest.fixture(autouse=True, scope="session")
def aws_credentials():
    """Fake AWS credentials so moto never talks to a real account."""
    os.environ["AWS_ACCESS_KEY_ID"] = "testing"
    os.environ["AWS_SECRET_ACCESS_KEY"] = "testing"
    os.environ["AWS_SECURITY_TOKEN"] = "testing"
    os.environ["AWS_SESSION_TOKEN"] = "testing"
    os.environ["AWS_DEFAULT_REGION"] = "us-east-1"
    yield
    for key in (
        "AWS_ACCESS_KEY_ID",
        "AWS_SECRET_ACCESS_KEY",
        "AWS_SECURITY_TOKEN",
        "AWS_SESSION_TOKEN",
        "AWS_DEFAULT_REGION",
    ):
        os.environ.pop(key, None)


@pytest.fixture()
def s3_bucket():
    with mock_aws():
        client = boto3.client("s3", region_name="us-east-1")
        client.create_bucket(Bucket="keystone-raw")
        yield client


@pytest.fixture()
def sample_config(tmp_path) -> Config:
    return Config(
        {
            "database_url": f"sqlite:///{tmp_path / 'keystone.db'}",
            "output_dir": str(tmp_path / "out"),
            "regions": ["us", "eu"],
            "api": {"timeout_seconds": 5, "max_concurrency": 3, "rate_limit_per_sec": 1000},
            "periods": {"primary": "1034"},
            "archive": {"kind": "none"},
            "generate": {"page_size": 25},
        }
    )


def make_client(handler, **overrides) -> ApiClient:
    """ApiClient whose transport is ``handler`` and whose sleeps are recorded, not awaited."""
    defaults: Dict[str, Any] = {"timeout_seconds": 5, "max_concurrency": 3, "rate_limit_per_sec": 0}
    defaults.update(overrides)
    cfg = ApiConfig(**defaults)
    client = ApiClient("test-token", cfg)
    client._client = httpx.AsyncClient(
        transport=httpx.MockTransport(handler),
        headers={"Authorization": "Bearer test-token", "User-Agent": cfg.user_agent},
    )
    client.sleeps = []

    async def _record(delay: float) -> None:
        client.sleeps.append(delay)

    client._sleep = _record
    return client


@pytest.fixture()
def client_factory():
    return make_client


@pytest.fixture()
def engine(tmp_path):
    eng = make_engine(f"sqlite:///{tmp_path / 'test.db'}")
    ensure_schema(eng)
    seed_reference_data(eng, REALMS.values(), DUNGEONS)
    yield eng
    eng.dispose()


def realm_id(engine, region: str, slug: str) -> int:
    with engine.connect() as conn:
        return conn.execute(
            text("SELECT id FROM realms WHERE region = :r AND slug = :s"), {"r": region, "s": slug}
        ).scalar_one()


def insert(conn, table: str, **values: Any) -> None:
    cols = ", ".join(values)
    params = ", ".join(f":{k}" for k in values)
    conn.execute(text(f"INSERT INTO {table} ({cols}) VALUES ({params})"), values)


@pytest.fixture()
def populated_engine(engine):
    """One US season, three dungeon-2 runs (two by the same team) and four profiled players.

    Players 1-5 ran together on pagle; player 6 replaced player 1 for a run on faerlina.
    """
    pagle = realm_id(engine, "us", "pagle")
    nazgrim = realm_id(engine, "us", "nazgrim")
    faerlina = realm_id(engine, "us", "faerlina")
    with engine.begin() as conn:
        insert(conn, "seasons", season_number=1, region="us", start_timestamp=0, end_timestamp=None, season_name="Season 1")
        insert(conn, "period_seasons", period_id=1034, season_id=1)
        players = [
            (1, "Alice", pagle),
            (2, "Bob", pagle),
            (3, "Cara", nazgrim),
            (4, "Dan", pagle),
            (5, "Eve", faerlina),
            (6, "Fay", faerlina),
        ]
        for pid, name, rid in players:
            insert(conn, "players", id=pid, name=name, name_lower=name.lower(), realm_id=rid)

        runs = [
            (10, "1,2,3,4,5", 100, 1000, pagle),
            (11, "1,2,3,4,5", 90, 2000, pagle),
            (12, "2,3,4,5,6", 120, 1500, faerlina),
        ]
        for run_id, sig, duration, ct, rid in runs:
            insert(
                conn,
                "challenge_runs",
                id=run_id,
                duration=duration,
                completed_timestamp=ct,
                keystone_level=1,
                dungeon_id=2,
                realm_id=rid,
                period_id=1034,
                team_signature=sig,
            )
            for member in sig.split(","):
                insert(conn, "run_members", run_id=run_id, player_id=int(member), spec_id=71 if member == "1" else 257)

        insert(conn, "run_rankings", run_id=11, dungeon_id=2, ranking_type="global", ranking_scope="filtered",
               ranking=1, percentile_bracket="artifact", season_id=1)
        insert(conn, "run_rankings", run_id=11, dungeon_id=2, ranking_type="regional", ranking_scope="us_filtered",
               ranking=1, percentile_bracket="legendary", season_id=1)

        profiles = [
            (1, 71, 500, "artifact", 1),
            (2, 257, 600, None, 1),
            (3, 257, 700, None, 1),
            (6, 257, 800, None, 0),
        ]
        for pid, spec, combined, bracket, complete in profiles:
            insert(
                conn,
                "player_profiles",
                player_id=pid,
                season_id=1,
                main_spec_id=spec,
                dungeons_completed=1,
                total_runs=2,
                combined_best_time=combined,
                global_ranking_bracket=bracket,
                has_complete_coverage=complete,
                last_updated=5000,
            )
        insert(conn, "player_best_runs", player_id=1, dungeon_id=2, run_id=11, duration=90, season_id=1,
               completed_timestamp=2000)
        insert(conn, "player_details", player_id=1, class_name="Warrior", active_spec_name="Arms",
               avatar_url="https://render.example/alice.jpg", guild_name="Ook", race_name="Pandaren",
               average_item_level=480, equipped_item_level=478)

        insert(conn, "items", id=4000, name="Helm", icon="inv_helm", type=4)
        insert(conn, "items", id=5000, name="Gem", icon="inv_gem")
        insert(conn, "player_equipment", id=1, player_id=1, slot_type="HEAD", item_id=3999, quality="RARE",
               item_name="Old Helm", snapshot_timestamp=100)
        insert(conn, "player_equipment", id=2, player_id=1, slot_type="HEAD", item_id=4000, quality="EPIC",
               item_name="Helm", snapshot_timestamp=200)
        insert(conn, "player_equipment", id=3, player_id=1, slot_type="CHEST", item_id=4001, quality="EPIC",
               item_name="Chestguard", snapshot_timestamp=200)
        insert(conn, "player_equipment_enchantments", equipment_id=2, enchantment_id=77, slot_id=0,
               slot_type="PERMANENT", display_string="+10 Stamina", source_item_id=5000, source_item_name="Gem")
    return engine


class DbHelper:
    def __init__(self, engine) -> None:
        self.engine = engine

    def realm_id(self, region: str, slug: str) -> int:
        return realm_id(self.engine, region, slug)

    def insert(self, table: str, **values: Any) -> None:
        with self.engine.begin() as conn:
            insert(conn, table, **values)

    def scalar(self, sql: str, **params: Any) -> Any:
        with self.engine.connect() as conn:
            return conn.execute(text(sql), params).scalar()


@pytest.fixture()
def db(engine) -> DbHelper:
    return DbHelper(engine)


FIXED_NOW = datetime(2026, 1, 2, 3, 4, 5, tzinfo=timezone.utc)


@pytest.fixture()
def emit_ctx(populated_engine, tmp_path) -> EmitContext:
    return EmitContext(
        engine=populated_engine,
        out_dir=str(tmp_path / "out"),
        logger=logging.getLogger("keystone-test"),
        regions=["us"],
        now=FIXED_NOW,
    )


@pytest.fixture()
def read_doc():
    def _read(ctx: EmitContext, *parts: Any) -> Any:
        path = os.path.join(ctx.api_root, *[str(p) for p in parts])
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)

    return _read
