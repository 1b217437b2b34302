"""Sinks that consume fetch results.

``IngestSink`` is the contract the orchestrator talks to. ``CountingSink``
only tallies what it sees (dry runs, tests); ``SqlIngestSink`` writes runs,
players and profile snapshots into the relational store.
"""

from __future__ import annotations

import time
from typing import Dict, Optional, Protocol

from sqlalchemy import text
from sqlalchemy.engine import Connection, Engine

from .fetcher import FetchResult, ProfileResult
from .identity import migrate_player_runs
from .utils import compute_team_signature


class IngestSink(Protocol):
    def ingest(self, result: FetchResult) -> None:
        ...

    def ingest_profile(self, result: ProfileResult) -> None:
        ...


class CountingSink:
    def __init__(self) -> None:
        self.leaderboards = 0
        self.runs = 0
        self.profiles = 0
        self.by_region: Dict[str, int] = {}

    def ingest(self, result: FetchResult) -> None:
        self.leaderboards += 1
        count = len(result.leaderboard.leading_groups) if result.leaderboard else 0
        self.runs += count
        self.by_region[result.region] = self.by_region.get(result.region, 0) + count

    def ingest_profile(self, result: ProfileResult) -> None:
        self.profiles += 1


def _realm_id(conn: Connection, region: str, slug: str, create: bool = False) -> Optional[int]:
    row = conn.execute(
        text("SELECT id FROM realms WHERE region = :region AND slug = :slug"), {"region": region, "slug": slug}
    ).first()
    if row is not None:
        return row.id
    if not create:
        return None
    conn.execute(
        text("INSERT INTO realms (slug, name, region) VALUES (:slug, :slug, :region)"),
        {"slug": slug, "region": region},
    )
    return _realm_id(conn, region, slug)


def _season_for(conn: Connection, region: str, ts: int) -> Optional[int]:
    row = conn.execute(
        text(
            "SELECT season_number FROM seasons WHERE region = :region AND start_timestamp <= :ts "
            "AND (end_timestamp IS NULL OR end_timestamp >= :ts) ORDER BY season_number DESC LIMIT 1"
        ),
        {"region": region, "ts": ts},
    ).first()
    return row.season_number if row is not None else None


class SqlIngestSink:
    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        self.runs_inserted = 0
        self.players_written = 0
        self.profiles_written = 0

    def ingest(self, result: FetchResult) -> None:
        lb = result.leaderboard
        if lb is None or not lb.leading_groups:
            return
        with self.engine.begin() as conn:
            realm_id = _realm_id(conn, result.region, result.realm.slug, create=True)
            period = lb.period if lb.period is not None else int(result.period)
            for run in lb.leading_groups:
                ids = [m.get_player_id()[0] for m in run.members if m.get_player_id()[1]]
                if not ids:
                    continue
                inserted = conn.execute(
                    text(
                        "INSERT OR IGNORE INTO challenge_runs (duration, completed_timestamp, keystone_level, "
                        "dungeon_id, realm_id, period_id, period_start_timestamp, period_end_timestamp, "
                        "team_signature, season_id) VALUES (:duration, :ct, :level, :dungeon, :realm, :period, "
                        ":pstart, :pend, :sig, :season)"
                    ),
                    {
                        "duration": run.duration,
                        "ct": run.completed_timestamp,
                        "level": run.keystone_level,
                        "dungeon": result.dungeon.id,
                        "realm": realm_id,
                        "period": period,
                        "pstart": lb.period_start_timestamp,
                        "pend": lb.period_end_timestamp,
                        "sig": compute_team_signature(ids),
                        "season": _season_for(conn, result.region, run.completed_timestamp),
                    },
                )
                if inserted.rowcount == 0:
                    continue
                run_id = inserted.lastrowid
                self.runs_inserted += 1
                for member in run.members:
                    if not member.get_player_id()[1]:
                        continue
                    self._member(conn, result.region, realm_id, run_id, member)

    def _member(self, conn: Connection, region: str, run_realm_id: int, run_id: int, member) -> None:
        player_id, _ = member.get_player_id()
        name, _ = member.get_player_name()
        slug, has_slug = member.get_realm_slug()
        realm_id = _realm_id(conn, region, slug, create=True) if has_slug else run_realm_id

        # Same name on the same realm under a new id is a faction transfer.
        existing = conn.execute(
            text("SELECT id FROM players WHERE name_lower = lower(:name) AND realm_id = :realm AND id != :id"),
            {"name": name, "realm": realm_id, "id": player_id},
        ).first()
        if existing is not None:
            migrate_player_runs(conn, existing.id, player_id)

        written = conn.execute(
            text(
                "INSERT INTO players (id, name, name_lower, realm_id) VALUES (:id, :name, lower(:name), :realm) "
                "ON CONFLICT(id) DO UPDATE SET name = excluded.name, name_lower = lower(excluded.name), "
                "realm_id = excluded.realm_id WHERE excluded.name != name OR excluded.realm_id != realm_id"
            ),
            {"id": player_id, "name": name, "realm": realm_id},
        )
        if written.rowcount:
            self.players_written += 1
        spec_id, _ = member.get_spec_id()
        faction, _ = member.get_faction()
        conn.execute(
            text("INSERT INTO run_members (run_id, player_id, spec_id, faction) VALUES (:run, :player, :spec, :faction)"),
            {"run": run_id, "player": player_id, "spec": spec_id or None, "faction": faction or None},
        )

    def ingest_profile(self, result: ProfileResult) -> None:
        if result.summary is None and result.equipment is None and result.media is None:
            return
        now = int(time.time() * 1000)
        with self.engine.begin() as conn:
            if result.summary is not None:
                s = result.summary
                conn.execute(
                    text(
                        "INSERT INTO player_details (player_id, race_id, race_name, gender, class_id, class_name, "
                        "active_spec_id, active_spec_name, guild_name, level, average_item_level, "
                        "equipped_item_level, avatar_url, last_login_timestamp, last_updated) VALUES (:pid, "
                        ":race_id, :race, :gender, :class_id, :class_name, :spec_id, :spec, :guild, :level, "
                        ":avg, :eq, :avatar, :login, :now) ON CONFLICT(player_id) DO UPDATE SET "
                        "race_id = excluded.race_id, race_name = excluded.race_name, gender = excluded.gender, "
                        "class_id = excluded.class_id, class_name = excluded.class_name, "
                        "active_spec_id = excluded.active_spec_id, active_spec_name = excluded.active_spec_name, "
                        "guild_name = excluded.guild_name, level = excluded.level, "
                        "average_item_level = excluded.average_item_level, "
                        "equipped_item_level = excluded.equipped_item_level, "
                        "avatar_url = COALESCE(excluded.avatar_url, avatar_url), "
                        "last_login_timestamp = excluded.last_login_timestamp, last_updated = excluded.last_updated"
                    ),
                    {
                        "pid": result.player_id,
                        "race_id": s.race.id or None,
                        "race": s.race.name or None,
                        "gender": s.gender.type or None,
                        "class_id": s.character_class.id or None,
                        "class_name": s.character_class.name or None,
                        "spec_id": s.active_spec.id or None,
                        "spec": s.active_spec.name or None,
                        "guild": s.guild.name if s.guild else None,
                        "level": s.level,
                        "avg": s.average_item_level,
                        "eq": s.equipped_item_level,
                        "avatar": (result.media.avatar_url or None) if result.media else None,
                        "login": s.last_login_timestamp,
                        "now": now,
                    },
                )
            if result.equipment is not None:
                for item in result.equipment.equipped_items:
                    conn.execute(
                        text("INSERT OR IGNORE INTO items (id, name) VALUES (:id, :name)"),
                        {"id": item.item.id, "name": item.name},
                    )
                    eq = conn.execute(
                        text(
                            "INSERT INTO player_equipment (player_id, slot_type, item_id, upgrade_id, quality, "
                            "item_name, snapshot_timestamp) VALUES (:pid, :slot, :item, :upgrade, :quality, :name, :ts)"
                        ),
                        {
                            "pid": result.player_id,
                            "slot": item.slot.type,
                            "item": item.item.id,
                            "upgrade": item.upgrade_id,
                            "quality": item.quality.type,
                            "name": item.name,
                            "ts": now,
                        },
                    )
                    for ench in item.enchantments:
                        conn.execute(
                            text(
                                "INSERT INTO player_equipment_enchantments (equipment_id, enchantment_id, slot_id, "
                                "slot_type, display_string, source_item_id, source_item_name, spell_id) VALUES "
                                "(:eid, :ench, :slot_id, :slot_type, :display, :src_id, :src_name, :spell)"
                            ),
                            {
                                "eid": eq.lastrowid,
                                "ench": ench.enchantment_id,
                                "slot_id": ench.enchantment_slot.id if ench.enchantment_slot else None,
                                "slot_type": ench.enchantment_slot.type if ench.enchantment_slot else None,
                                "display": ench.display_string,
                                "src_id": ench.source_item.id if ench.source_item else None,
                                "src_name": ench.source_item.name if ench.source_item else None,
                                "spell": ench.spell.spell.id if ench.spell else None,
                            },
                        )
        self.profiles_written += 1
