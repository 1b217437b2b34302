from __future__ import annotations

import pytest
from sqlalchemy import text

from keystone_etl.loaders import (
    LoaderError,
    count_canonical_runs,
    current_season_id,
    load_best_runs,
    load_canonical_runs,
    load_complete_coverage_players,
    load_dungeons,
    load_equipment,
    load_player_seasons,
    load_profile_targets,
    load_ranked_players,
    load_regional_realms,
    load_seasons,
    load_team_members,
    ranking_scope,
)


class TestRankingScope:
    def test_scopes(self):
        assert ranking_scope("", "") == ("global", "filtered")
        assert ranking_scope("eu", "") == ("regional", "eu_filtered")
        assert ranking_scope("us", "pagle") == ("realm", "filtered")


class TestCanonicalRuns:
    def test_fastest_run_per_team(self, populated_engine):
        rows = load_canonical_runs(populated_engine, 2, "", "", 1, 10, 0)
        assert [r.id for r in rows] == [11, 12]
        assert [r.duration for r in rows] == [90, 120]
        assert count_canonical_runs(populated_engine, 2, "", "", 1) == 2

    def test_ranking_bracket_follows_scope(self, populated_engine):
        (top_global, _) = load_canonical_runs(populated_engine, 2, "", "", 1, 10, 0)
        (top_us, _) = load_canonical_runs(populated_engine, 2, "us", "", 1, 10, 0)
        assert top_global.ranking_percentile == "artifact"
        assert top_us.ranking_percentile == "legendary"

    def test_members_sorted_by_name(self, populated_engine):
        (row, _) = load_canonical_runs(populated_engine, 2, "", "", 1, 10, 0)
        assert [m.name for m in row.members] == ["Alice", "Bob", "Cara", "Dan", "Eve"]
        assert row.members[0].spec_id == 71
        assert row.members[2].realm_slug == "nazgrim"
        assert row.dungeon_name == "Temple of the Jade Serpent"
        assert row.realm_name == "Pagle"
        assert row.keystone_level == 1

    def test_realm_scope(self, populated_engine):
        rows = load_canonical_runs(populated_engine, 2, "us", "faerlina", 1, 10, 0)
        assert [r.id for r in rows] == [12]
        assert rows[0].ranking_percentile == ""
        assert count_canonical_runs(populated_engine, 2, "us", "pagle", 1) == 1

    def test_paging(self, populated_engine):
        assert [r.id for r in load_canonical_runs(populated_engine, 2, "", "", 1, 1, 1)] == [12]
        assert load_canonical_runs(populated_engine, 2, "", "", 1, 10, 5) == []

    def test_other_season_or_dungeon_is_empty(self, populated_engine):
        assert load_canonical_runs(populated_engine, 2, "", "", 2, 10, 0) == []
        assert load_canonical_runs(populated_engine, 56, "", "", 1, 10, 0) == []
        assert count_canonical_runs(populated_engine, 2, "eu", "", 1) == 0

    def test_tie_breaks_on_completion_time(self, db, populated_engine):
        pagle = db.realm_id("us", "pagle")
        db.insert("challenge_runs", id=13, duration=90, completed_timestamp=1800, dungeon_id=2, realm_id=pagle,
                  period_id=1034, team_signature="7,8,9")
        db.insert("challenge_runs", id=14, duration=90, completed_timestamp=1700, dungeon_id=2, realm_id=pagle,
                  period_id=1034, team_signature="7,8,9,10")
        rows = load_canonical_runs(populated_engine, 2, "", "", 1, 10, 0)
        assert [r.id for r in rows] == [14, 13, 11, 12]


class TestPlayerLoaders:
    def test_complete_coverage_players(self, populated_engine):
        players = load_complete_coverage_players(populated_engine)
        assert [p.id for p in players] == [1, 2, 3]
        alice = players[0]
        assert alice.class_name == "Warrior"
        assert alice.avatar_url == "https://render.example/alice.jpg"
        assert alice.realm_slug == "pagle"
        assert players[1].avatar_url == ""
        assert players[1].class_name is None

    def test_player_seasons(self, populated_engine):
        seasons = load_player_seasons(populated_engine, [1, 2, 99])
        assert set(seasons) == {1, 2}
        assert seasons[1][0].global_bracket == "artifact"
        assert seasons[1][0].combined_best_time == 500

    def test_large_id_lists_are_batched(self, populated_engine):
        seasons = load_player_seasons(populated_engine, list(range(1, 10006)))
        assert set(seasons) == {1, 2, 3, 6}

    def test_best_runs_with_brackets(self, populated_engine):
        runs, run_ids = load_best_runs(populated_engine, [1, 2])
        assert run_ids == [11]
        (best,) = runs[1]
        assert best.dungeon_slug == "temple-of-the-jade-serpent"
        assert best.global_bracket == "artifact"
        assert best.regional_bracket == "legendary"
        assert best.realm_bracket == ""
        assert best.global_ranking_filtered == 1
        assert best.realm_ranking_filtered is None

    def test_team_members(self, populated_engine):
        members = load_team_members(populated_engine, [11, 12])
        assert [m.name for m in members[12]] == ["Bob", "Cara", "Dan", "Eve", "Fay"]
        assert load_team_members(populated_engine, []) == {}

    def test_latest_equipment_snapshot_only(self, populated_engine):
        equipment, enchantments = load_equipment(populated_engine, [1, 2])
        assert list(equipment) == [1]
        slots = {e.slot_type: e for e in equipment[1]}
        assert set(slots) == {"HEAD", "CHEST"}
        assert slots["HEAD"].item_id == 4000
        assert slots["HEAD"].item_icon == "inv_helm"
        assert slots["CHEST"].item_icon is None
        (gem,) = enchantments[slots["HEAD"].id]
        assert gem.gem_icon_slug == "inv_gem"
        assert gem.display_string == "+10 Stamina"

    def test_equipment_for_nobody(self, populated_engine):
        assert load_equipment(populated_engine, []) == ({}, {})
        assert load_equipment(populated_engine, [42]) == ({}, {})


class TestRankedPlayers:
    def test_global_order(self, populated_engine):
        rows = load_ranked_players(populated_engine, 1)
        assert [r.name for r in rows] == ["Alice", "Bob", "Cara"]
        assert rows[0].ranking_bracket == "artifact"
        assert rows[1].ranking_bracket == ""
        assert rows[1].class_name == ""

    def test_realm_slugs_filter(self, populated_engine):
        rows = load_ranked_players(populated_engine, 1, "us", ["pagle", "nazgrim"])
        assert [r.name for r in rows] == ["Alice", "Bob", "Cara"]
        assert load_ranked_players(populated_engine, 1, "us", ["faerlina"]) == []

    def test_paging(self, populated_engine):
        rows = load_ranked_players(populated_engine, 1, limit=1, offset=1)
        assert [r.name for r in rows] == ["Bob"]

    def test_name_breaks_time_ties(self, db, populated_engine):
        db.insert("players", id=7, name="Abe", name_lower="abe", realm_id=db.realm_id("us", "pagle"))
        db.insert("player_profiles", player_id=7, season_id=1, combined_best_time=600, has_complete_coverage=1)
        rows = load_ranked_players(populated_engine, 1)
        assert [r.name for r in rows] == ["Alice", "Abe", "Bob", "Cara"]


class TestReferenceLoaders:
    def test_dungeons_sorted_by_name(self, engine):
        names = [d.name for d in load_dungeons(engine)]
        assert names == sorted(names)
        assert len(names) == 9

    def test_seasons_and_current(self, db, populated_engine):
        db.insert("seasons", season_number=1, region="eu", start_timestamp=0, end_timestamp=50)
        db.insert("seasons", season_number=2, region="us", start_timestamp=100, end_timestamp=200)
        seasons = load_seasons(populated_engine)
        assert [s.season_number for s in seasons] == [1, 2]
        # one region still open keeps the season open
        assert seasons[0].end_timestamp is None
        assert seasons[1].end_timestamp == 200
        assert current_season_id(populated_engine) == 1

    def test_current_season_falls_back_to_highest(self, db):
        assert current_season_id(db.engine) == 0
        db.insert("seasons", season_number=3, region="us", start_timestamp=0, end_timestamp=10)
        db.insert("seasons", season_number=4, region="us", start_timestamp=10, end_timestamp=20)
        assert current_season_id(db.engine) == 4

    def test_regional_realms_count_players(self, populated_engine):
        realms = {r.slug: r for r in load_regional_realms(populated_engine, "us")}
        assert realms["pagle"].player_count == 3
        assert realms["faerlina"].player_count == 2
        assert realms["atiesh"].player_count == 0
        assert realms["pagle"].connected_realm_id == 4385

    def test_profile_targets(self, db, populated_engine):
        db.insert("players", id=8, name="Gone", name_lower="gone", realm_id=db.realm_id("us", "pagle"), is_valid=0)
        assert [t.player_id for t in load_profile_targets(populated_engine)] == [2, 3, 4, 5, 6]
        assert [t.name for t in load_profile_targets(populated_engine, limit=2)] == ["Bob", "Cara"]


class TestLoaderErrors:
    def test_failure_names_step_and_batch(self, populated_engine):
        with populated_engine.begin() as conn:
            conn.execute(text("DROP TABLE player_profiles"))
        with pytest.raises(LoaderError, match=r"^batch player seasons query 1: "):
            load_player_seasons(populated_engine, [1])
