from __future__ import annotations

import logging

import httpx
import pytest

from keystone_etl.identity import (
    LEVEL_85_ACHIEVEMENT,
    LEVEL_90_ACHIEVEMENT,
    apply_merges,
    apply_status,
    check_identity,
    fingerprint_hash,
    key_timestamps,
)
from keystone_etl.loaders import StatusCandidate, load_status_candidates
from keystone_etl.merge_config import CharacterKey, MergeEntry
from keystone_etl.models import CharacterAchievements

LOGGER = logging.getLogger("keystone-test")

ACHIEVEMENTS = {
    "character": {"name": "Alice", "realm": {"slug": "pagle"}},
    "achievements": [
        {"id": LEVEL_85_ACHIEVEMENT, "completed_timestamp": 100, "criteria": {"is_completed": True}},
        {"id": LEVEL_90_ACHIEVEMENT, "completed_timestamp": 200, "criteria": {"is_completed": True}},
        {"id": 6760, "completed_timestamp": 350, "criteria": {"is_completed": True}},
        {"id": 6456, "completed_timestamp": 300, "criteria": {"is_completed": True}},
        {"id": 6470, "completed_timestamp": 250, "criteria": {"is_completed": False}},
    ],
}


def _identity(handler_status=200, status=None):
    def handler(request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path.endswith("/status"):
            if handler_status != 200:
                return httpx.Response(handler_status, text="gone")
            return httpx.Response(200, json=status or {"is_valid": True, "character": {"id": 77, "name": "Alice"}})
        if path.endswith("/achievements"):
            return httpx.Response(200, json=ACHIEVEMENTS)
        return httpx.Response(404)

    return handler


def _cand(**overrides) -> StatusCandidate:
    values = dict(player_id=1, name="Alice", realm_slug="nazgrim", region="us", class_id=None, spec_id=71)
    values.update(overrides)
    return StatusCandidate(**values)


def _alias(region: str, slug: str) -> str:
    return {"nazgrim": "pagle"}.get(slug, slug)


class TestFingerprint:
    def test_earliest_completed_timestamps(self):
        parsed = CharacterAchievements.model_validate(ACHIEVEMENTS)
        # incomplete criteria are ignored, so 6470 does not win
        assert key_timestamps(parsed.achievements) == (100, 200, 300)

    def test_missing_achievements_are_named(self):
        parsed = CharacterAchievements.model_validate({"achievements": ACHIEVEMENTS["achievements"][:1]})
        with pytest.raises(ValueError, match="level90, heroic"):
            key_timestamps(parsed.achievements)

    def test_hash_is_stable(self):
        assert fingerprint_hash(1, 100, 200, 300) == fingerprint_hash(1, 100, 200, 300)
        assert fingerprint_hash(1, 100, 200, 300) != fingerprint_hash(2, 100, 200, 300)
        assert len(fingerprint_hash(1, 100, 200, 300)) == 64


class TestCheckIdentity:
    async def test_valid_character_is_fingerprinted(self, client_factory):
        seen = []
        handler = _identity()

        def recording(request: httpx.Request) -> httpx.Response:
            seen.append(request.url.path)
            return handler(request)

        client = client_factory(recording)
        try:
            out = await check_identity(client, _cand(), _alias, 5000)
        finally:
            await client.close()
        assert out.valid and out.error is None
        assert out.checked_at == 5000
        assert out.character_id == 77
        # realm aliases are resolved before calling the vendor
        assert seen[0].endswith("/pagle/alice/status")
        assert out.fingerprint["hash"] == fingerprint_hash(1, 100, 200, 300)
        assert out.fingerprint["realm"] == "pagle"

    async def test_status_404_marks_invalid(self, client_factory):
        client = client_factory(_identity(404))
        try:
            out = await check_identity(client, _cand(), _alias, 5000)
        finally:
            await client.close()
        assert not out.valid
        assert out.checked_at == 5000
        assert out.reason == "status 404"

    async def test_vendor_invalid_flag(self, client_factory):
        client = client_factory(_identity(status={"is_valid": False, "reason": "transferred"}))
        try:
            out = await check_identity(client, _cand(), _alias, 5000)
        finally:
            await client.close()
        assert not out.valid
        assert out.reason == "transferred"
        assert out.fingerprint is None

    async def test_server_errors_leave_status_unchecked(self, client_factory):
        client = client_factory(_identity(503), retry={"max_attempts": 1})
        try:
            out = await check_identity(client, _cand(), _alias, 5000)
        finally:
            await client.close()
        assert out.error is not None
        assert out.checked_at is None

    async def test_no_class_data_is_invalid_without_calls(self, client_factory):
        calls = []
        client = client_factory(lambda request: calls.append(request) or httpx.Response(500))
        try:
            out = await check_identity(client, _cand(spec_id=None), _alias, 5000)
        finally:
            await client.close()
        assert calls == []
        assert not out.valid and out.checked_at == 5000


class TestApplyStatus:
    async def test_status_columns_written(self, client_factory, populated_engine, db):
        client = client_factory(_identity())
        try:
            out = await check_identity(client, _cand(), _alias, 5000)
        finally:
            await client.close()
        assert apply_status(populated_engine, out, LOGGER) is None
        assert db.scalar("SELECT status_checked_at FROM players WHERE id = 1") == 5000
        assert db.scalar("SELECT blizzard_character_id FROM players WHERE id = 1") == 77
        assert db.scalar("SELECT fingerprint_hash FROM player_fingerprints WHERE player_id = 1") == out.fingerprint["hash"]

    async def test_shared_fingerprint_moves_runs_to_newer_row(self, client_factory, populated_engine, db):
        # player 6 was fingerprinted earlier; player 1 turns out to be the same character
        db.insert("player_fingerprints", player_id=6, fingerprint_hash=fingerprint_hash(1, 100, 200, 300))
        client = client_factory(_identity())
        try:
            out = await check_identity(client, _cand(), _alias, 5000)
        finally:
            await client.close()
        assert apply_status(populated_engine, out, LOGGER) == 6
        assert db.scalar("SELECT is_valid FROM players WHERE id = 6") == 0
        assert db.scalar("SELECT COUNT(*) FROM run_members WHERE player_id = 6") == 0
        assert db.scalar("SELECT COUNT(*) FROM run_members WHERE player_id = 1") == 3
        assert db.scalar("SELECT COUNT(*) FROM player_fingerprints") == 1
        assert db.scalar("SELECT COUNT(*) FROM player_profiles WHERE player_id IN (1, 6)") == 0


class TestStatusCandidates:
    def test_unchecked_and_stale_players_first(self, populated_engine, db):
        with populated_engine.begin() as conn:
            conn.exec_driver_sql("UPDATE players SET status_checked_at = 10 WHERE id = 2")
            conn.exec_driver_sql("UPDATE players SET status_checked_at = 9999 WHERE id = 3")
            conn.exec_driver_sql("UPDATE players SET is_valid = 0 WHERE id = 4")
        ids = [c.player_id for c in load_status_candidates(populated_engine, stale_before_ms=1000)]
        assert ids == [1, 5, 6, 2]
        assert [c.player_id for c in load_status_candidates(populated_engine, 1000, limit=2)] == [1, 5]

    def test_spec_from_latest_run(self, populated_engine):
        by_id = {c.player_id: c for c in load_status_candidates(populated_engine, 1000)}
        assert by_id[1].spec_id == 71
        assert by_id[6].spec_id == 257
        assert by_id[1].class_id is None


class TestMerges:
    def _entry(self, source=("Fay", "faerlina"), target=("Alice", "pagle")) -> MergeEntry:
        return MergeEntry(CharacterKey(source[0], source[1], "us"), CharacterKey(target[0], target[1], "us"))

    def test_runs_move_to_target(self, populated_engine, db):
        counts = apply_merges(populated_engine, [self._entry()], logger=LOGGER)
        assert counts == {"merged": 1, "skipped": 0, "runs_moved": 1}
        assert db.scalar("SELECT COUNT(*) FROM run_members WHERE player_id = 1") == 3
        assert db.scalar("SELECT is_valid FROM players WHERE id = 6") == 0
        assert db.scalar("SELECT COUNT(*) FROM player_profiles WHERE player_id = 1") == 0

    def test_shared_run_keeps_one_membership(self, populated_engine, db):
        # Bob and Cara both ran 10, 11 and 12
        apply_merges(populated_engine, [self._entry(("Cara", "nazgrim"), ("Bob", "pagle"))])
        assert db.scalar("SELECT COUNT(*) FROM run_members WHERE player_id = 2") == 3
        assert db.scalar("SELECT COUNT(*) FROM run_members WHERE player_id = 3") == 0

    def test_dry_run_changes_nothing(self, populated_engine, db):
        counts = apply_merges(populated_engine, [self._entry()], dry_run=True)
        assert counts["runs_moved"] == 1
        assert db.scalar("SELECT COUNT(*) FROM run_members WHERE player_id = 6") == 1
        assert db.scalar("SELECT COALESCE(is_valid, 1) FROM players WHERE id = 6") == 1

    def test_unknown_characters_are_skipped(self, populated_engine):
        counts = apply_merges(populated_engine, [self._entry(("Nobody", "pagle")), self._entry(target=("Fay", "faerlina"))])
        assert counts == {"merged": 0, "skipped": 2, "runs_moved": 0}
