from __future__ import annotations

import json
import logging
import os

import httpx
import pytest

from keystone_etl.api_client import CancelToken
from keystone_etl.constants import DUNGEONS, realms_for_region
from keystone_etl.fetcher import PlayerRef
from keystone_etl.ingest import CountingSink
from keystone_etl.orchestrate import Orchestrator

LOGGER = logging.getLogger("keystone-test")

BOARD = {
    "period": 1034,
    "leading_groups": [
        {
            "duration": 1500,
            "completed_timestamp": 1700000000000,
            "members": [
                {"id": 101, "name": "Ann", "realm_slug": "pagle", "spec_id": 71},
                {"id": 102, "name": "Ben", "realm_slug": "pagle", "spec_id": 257},
            ],
        }
    ],
}
SUMMARY = {"id": 101, "name": "Ann", "character_class": {"id": 1, "name": "Warrior"}, "active_spec": {"id": 71, "name": "Arms"}}


def vendor(request: httpx.Request) -> httpx.Response:
    """Pagle has one Temple of the Jade Serpent run in period 1033 and 1034; everything else is missing."""
    path = request.url.path
    if "/mythic-leaderboard/" in path:
        if "/connected-realm/4385/mythic-leaderboard/2/" in path and path.rsplit("/", 1)[-1] in ("1033", "1034"):
            return httpx.Response(200, json=BOARD)
        return httpx.Response(404)
    if path.endswith("/season/index"):
        return httpx.Response(200, json={"seasons": [{"id": 1}], "current_season": {"id": 1}})
    if path.endswith("/season/1"):
        return httpx.Response(
            200, json={"id": 1, "start_timestamp": 0, "season_name": "Season 1", "periods": [{"id": 1033}, {"id": 1034}]}
        )
    if path.endswith("/equipment"):
        return httpx.Response(200, json={"equipped_items": []})
    if path.endswith("/character-media"):
        return httpx.Response(200, json={"assets": []})
    if "/profile/wow/character/" in path:
        return httpx.Response(200, json=SUMMARY)
    return httpx.Response(404)


@pytest.fixture()
def orchestrator(sample_config, client_factory):
    orch = Orchestrator(sample_config, LOGGER, api=client_factory(vendor))
    orch.run_schema()
    return orch


class TestFetch:
    async def test_fetch_ingests_into_store(self, orchestrator):
        try:
            counts = await orchestrator.run_fetch(regions=["us"], periods=["1034"])
            pairs = len(realms_for_region("us")) * len(DUNGEONS)
            assert counts["results"] == pairs
            assert counts["leaderboards"] == 1
            assert counts["runs"] == 1
            assert counts["not_found"] == pairs - 1
            assert counts["errors"] == 0
            stats = orchestrator.run_stats()
            assert stats["challenge_runs"] == 1
            assert stats["players"] == 2
            assert stats["run_members"] == 2
        finally:
            await orchestrator.close()

    async def test_dry_run_sink(self, sample_config, client_factory):
        sink = CountingSink()
        orch = Orchestrator(sample_config, LOGGER, sink=sink, api=client_factory(vendor))
        orch.run_schema()
        try:
            await orch.run_fetch(regions=["us"], periods=["1034"])
            assert sink.leaderboards == 1
            assert orch.run_stats()["challenge_runs"] == 0
        finally:
            await orch.close()

    async def test_cancelled_fetch_stops_early(self, orchestrator):
        token = CancelToken()
        token.cancel()
        try:
            counts = await orchestrator.run_fetch(regions=["us", "eu"], periods=["1034"], cancel=token)
            assert counts["results"] == 0
        finally:
            await orchestrator.close()

    async def test_failing_sink_is_counted_per_result(self, sample_config, client_factory, caplog):
        class BrokenSink(CountingSink):
            def ingest(self, result):
                raise RuntimeError("disk full")

        orch = Orchestrator(sample_config, LOGGER, sink=BrokenSink(), api=client_factory(vendor))
        orch.run_schema()
        try:
            with caplog.at_level(logging.WARNING, logger=LOGGER.name):
                counts = await orch.run_fetch(regions=["us"], periods=["1034"])
        finally:
            await orch.close()
        assert counts["results"] == len(realms_for_region("us")) * len(DUNGEONS)
        assert counts["errors"] == 1
        assert counts["leaderboards"] == 0
        failed = [r for r in caplog.records if r.getMessage() == "fetch_result"]
        assert failed[0].extra["stage"] == "ingest"
        assert failed[0].extra["error"] == "disk full"

    async def test_archive_receives_leaderboards(self, sample_config, client_factory, tmp_path):
        sample_config.raw["archive"] = {"kind": "local", "path": str(tmp_path / "archive")}
        orch = Orchestrator(sample_config, LOGGER, api=client_factory(vendor))
        orch.run_schema()
        try:
            await orch.run_fetch(regions=["us"], periods=["1034"])
        finally:
            await orch.close()
        partition = tmp_path / "archive" / "raw" / "leaderboard" / "region=us" / "period=1034" / "realm=pagle" / "dungeon=2"
        assert len(os.listdir(partition)) == 1

    async def test_fallback_walks_region_periods(self, sample_config, client_factory):
        sample_config.raw["periods"] = {"primary": "1034", "fallback": {"us": ["1035", "1033"]}}
        orch = Orchestrator(sample_config, LOGGER, api=client_factory(vendor))
        orch.run_schema()
        try:
            counts = await orch.run_fetch_fallback("us")
            assert counts["leaderboards"] == 1
            assert counts["results"] == len(realms_for_region("us")) * len(DUNGEONS)
        finally:
            await orch.close()


class TestProfilesAndSeasons:
    async def test_profiles_for_players_without_details(self, orchestrator):
        try:
            await orchestrator.run_fetch(regions=["us"], periods=["1034"])
            counts = await orchestrator.run_profiles(limit=1)
            assert counts == {"profiles": 1, "errors": 0}
            assert orchestrator.run_stats()["player_details"] == 1
        finally:
            await orchestrator.close()

    async def test_explicit_players(self, orchestrator):
        try:
            counts = await orchestrator.run_profiles(players=[PlayerRef(101, "Ann", "pagle", "us")])
            assert counts["profiles"] == 1
        finally:
            await orchestrator.close()

    async def test_seasons_sync(self, orchestrator):
        try:
            assert await orchestrator.run_seasons(["us"]) == 1
            stats = orchestrator.run_stats()
            assert stats["seasons"] == 1
            assert stats["period_seasons"] == 2
        finally:
            await orchestrator.close()


class TestGenerate:
    async def test_selected_generators_only(self, orchestrator, tmp_path):
        out = tmp_path / "site"
        try:
            written = orchestrator.run_generate(out_dir=str(out), only=["indexes"], regions=["us"])
            assert list(written) == ["indexes"]
            assert written["indexes"] > 0
            assert (out / "api" / "index.json").exists()
            assert not (out / "api" / "player").exists()
        finally:
            await orchestrator.close()


class TestLazyClient:
    async def test_offline_commands_need_no_token(self, sample_config, monkeypatch):
        monkeypatch.delenv("BLIZZARD_API_TOKEN", raising=False)
        orch = Orchestrator(sample_config, LOGGER)
        orch.run_schema()
        assert orch.run_sync_realms() > 0
        with pytest.raises(RuntimeError, match="BLIZZARD_API_TOKEN"):
            orch.api
        await orch.close()


def identity_vendor(request: httpx.Request) -> httpx.Response:
    """Ann is a live character with a full set of key achievements; Ben no longer exists."""
    path = request.url.path
    if path.endswith("/ann/status"):
        return httpx.Response(200, json={"id": 9101, "is_valid": True, "character": {"id": 9101, "name": "Ann"}})
    if path.endswith("/status"):
        return httpx.Response(404)
    if path.endswith("/achievements"):
        done = {"criteria": {"is_completed": True}}
        return httpx.Response(
            200,
            json={
                "achievements": [
                    {"id": 4826, "completed_timestamp": 10, **done},
                    {"id": 6193, "completed_timestamp": 20, **done},
                    {"id": 6758, "completed_timestamp": 30, **done},
                ]
            },
        )
    return vendor(request)


class TestProcess:
    async def test_process_after_fetch(self, orchestrator, tmp_path):
        try:
            await orchestrator.run_fetch(regions=["us"], periods=["1034"])
            counts = orchestrator.run_process()
            # one run ranked in global, regional and realm scope
            assert counts == {"run_rankings": 3, "player_best_runs": 2, "player_profiles": 2, "ranked_players": 0}
            # one dungeon out of nine is not complete coverage
            written = orchestrator.run_generate(out_dir=str(tmp_path / "site"), only=["players"])
            assert written == {"players": 0}
        finally:
            await orchestrator.close()


class TestStatusAndMerge:
    async def test_status_marks_missing_characters(self, sample_config, client_factory):
        orch = Orchestrator(sample_config, LOGGER, api=client_factory(identity_vendor))
        orch.run_schema()
        try:
            await orch.run_fetch(regions=["us"], periods=["1034"])
            counts = await orch.run_status()
            assert counts == {"checked": 2, "valid": 1, "invalid": 1, "merged": 0, "errors": 0}
            assert orch.run_stats()["player_fingerprints"] == 1
            # freshly checked players are not candidates again
            assert (await orch.run_status())["checked"] == 0
        finally:
            await orch.close()
        with orch.engine.connect() as conn:
            rows = dict(conn.exec_driver_sql("SELECT id, is_valid FROM players").all())
            cid = conn.exec_driver_sql("SELECT blizzard_character_id FROM players WHERE id = 101").scalar()
        assert rows == {101: 1, 102: 0}
        assert cid == 9101

    async def test_merge_file(self, orchestrator, tmp_path):
        path = tmp_path / "merges.json"
        path.write_text(
            json.dumps(
                {
                    "merges": [
                        {
                            "from": {"name": "Ben", "realm": "pagle", "region": "us"},
                            "to": {"name": "Ann", "realm": "pagle", "region": "us"},
                        }
                    ]
                }
            ),
            encoding="utf-8",
        )
        try:
            await orchestrator.run_fetch(regions=["us"], periods=["1034"])
            assert orchestrator.run_merge(str(path), dry_run=True)["merged"] == 1
            counts = orchestrator.run_merge(str(path))
            assert counts["merged"] == 1
            # Ann already ran with Ben, so the shared membership collapses
            assert orchestrator.run_stats()["run_members"] == 1
        finally:
            await orchestrator.close()
