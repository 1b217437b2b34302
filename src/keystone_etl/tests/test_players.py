from __future__ import annotations

import os

from keystone_etl.generator import generate_player_profiles
from keystone_etl.generator.players import PROFILE_VERSION, profile_path
from keystone_etl.loaders import PlayerRow

JADE = "temple-of-the-jade-serpent"


class TestPlayerProfiles:
    def test_one_document_per_complete_player(self, emit_ctx):
        assert generate_player_profiles(emit_ctx) == 3
        root = os.path.join(emit_ctx.api_root, "player", "us")
        assert sorted(os.listdir(os.path.join(root, "pagle"))) == ["alice.json", "bob.json"]
        assert os.listdir(os.path.join(root, "nazgrim")) == ["cara.json"]
        assert not os.path.exists(os.path.join(root, "faerlina"))

    def test_profile_contents(self, emit_ctx, read_doc):
        generate_player_profiles(emit_ctx)
        doc = read_doc(emit_ctx, "player", "us", "pagle", "alice.json")
        player = doc["player"]
        assert player["class_name"] == "Warrior"
        assert player["active_spec_name"] == "Arms"
        assert player["guild_name"] == "Ook"
        assert player["avatar_url"] == "https://render.example/alice.jpg"
        assert doc["generated_at"] == "2026-01-02T03:04:05Z"
        assert doc["version"] == PROFILE_VERSION

        season = player["seasons"]["1"]
        assert season["combined_best_time"] == 500
        assert season["global_ranking_bracket"] == "artifact"
        best = season["best_runs"][JADE]
        assert best["run_id"] == 11
        assert best["global_percentile_bracket"] == "artifact"
        assert best["regional_percentile_bracket"] == "legendary"
        assert [m["name"] for m in best["team_members"]] == ["Alice", "Bob", "Cara", "Dan", "Eve"]

    def test_latest_equipment_with_icons(self, emit_ctx, read_doc):
        generate_player_profiles(emit_ctx)
        equipment = read_doc(emit_ctx, "player", "us", "pagle", "alice.json")["equipment"]
        assert set(equipment) == {"HEAD", "CHEST"}
        head = equipment["HEAD"]
        assert head["item_id"] == 4000
        assert head["item_icon_slug"] == "inv_helm"
        assert head["enchantments"][0]["gem_icon_slug"] == "inv_gem"
        assert equipment["CHEST"]["enchantments"] == []

    def test_class_falls_back_to_main_spec(self, emit_ctx, read_doc):
        generate_player_profiles(emit_ctx)
        doc = read_doc(emit_ctx, "player", "us", "pagle", "bob.json")
        assert doc["player"]["class_name"] == "Priest"
        assert doc["player"]["active_spec_name"] == "Holy"
        assert doc["player"]["seasons"]["1"]["best_runs"] == {}
        assert doc["equipment"] == {}

    def test_documents_are_compact(self, emit_ctx):
        generate_player_profiles(emit_ctx)
        with open(os.path.join(emit_ctx.api_root, "player", "us", "pagle", "alice.json"), encoding="utf-8") as f:
            raw = f.read()
        assert raw.count("\n") == 1
        assert '{"player":{' in raw

    def test_write_failure_skips_players(self, emit_ctx):
        os.makedirs(emit_ctx.api_root)
        with open(os.path.join(emit_ctx.api_root, "player"), "w") as f:
            f.write("blocked")
        assert generate_player_profiles(emit_ctx) == 0
        assert emit_ctx.failed == 3


class TestProfilePath:
    def test_name_is_slugged(self, emit_ctx):
        player = PlayerRow(id=1, name="Jön Snow", realm_slug="pagle", realm_name="Pagle", region="us")
        path = profile_path(emit_ctx, player)
        assert path == os.path.join(emit_ctx.api_root, "player", "us", "pagle", "jön-snow.json")
