"""Character identity upkeep.

Two paths move runs from one player row to another:

* the status check asks the vendor whether each stored character still
  exists, then fingerprints it from a handful of account-independent
  achievement timestamps. A fingerprint already owned by another row means
  the character was renamed or transferred; the older row's runs move to
  the newer one.
* ``apply_merges`` does the same from a hand-written merge file.

Both leave the target's aggregates deleted; the next ``process`` run
rebuilds them.
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy import text
from sqlalchemy.engine import Connection, Engine

from .api_client import APIError, ApiClient, DecodeError, FetchCancelled, RetriesExhausted, TransportError
from .loaders import StatusCandidate
from .logging_utils import log_json
from .merge_config import CharacterKey, MergeEntry
from .models import CharacterAchievement
from .wow_specs import get_class_and_spec

LEVEL_85_ACHIEVEMENT = 4826
LEVEL_90_ACHIEVEMENT = 6193
HEROIC_DUNGEON_ACHIEVEMENTS = frozenset({6456, 6470, 6756, 6758, 6759, 6760, 6761, 6762, 6763})

STATUS_STALE_MS = 7 * 24 * 60 * 60 * 1000

FETCH_ERRORS = (APIError, TransportError, DecodeError, RetriesExhausted, FetchCancelled)


def key_timestamps(achievements: List[CharacterAchievement]) -> Tuple[int, int, int]:
    """Earliest completion of level 85, level 90 and any heroic dungeon."""
    level85 = level90 = heroic = 0
    for ach in achievements:
        ts = ach.completed_timestamp
        if not ts or not ach.criteria.is_completed:
            continue
        if ach.id == LEVEL_85_ACHIEVEMENT:
            level85 = ts if not level85 else min(level85, ts)
        elif ach.id == LEVEL_90_ACHIEVEMENT:
            level90 = ts if not level90 else min(level90, ts)
        elif ach.id in HEROIC_DUNGEON_ACHIEVEMENTS:
            heroic = ts if not heroic else min(heroic, ts)
    missing = [k for k, v in (("level85", level85), ("level90", level90), ("heroic", heroic)) if not v]
    if missing:
        raise ValueError(f"missing achievements: {', '.join(missing)}")
    return level85, level90, heroic


def fingerprint_hash(class_id: int, level85: int, level90: int, heroic: int) -> str:
    payload = f"{class_id}:{level85}:{level90}:{heroic}"
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def candidate_class_id(cand: StatusCandidate) -> Optional[int]:
    if cand.class_id:
        return cand.class_id
    if cand.spec_id:
        resolved = get_class_and_spec(cand.spec_id)
        if resolved is not None:
            return resolved[2]
    return None


@dataclass
class StatusOutcome:
    player_id: int
    name: str
    checked_at: Optional[int] = None
    valid: bool = False
    character_id: Optional[int] = None
    reason: str = ""
    fingerprint: Optional[Dict[str, Any]] = None
    error: Optional[Exception] = None


async def check_identity(
    client: ApiClient,
    cand: StatusCandidate,
    normalize: Callable[[str, str], str],
    now_ms: int,
    stagger: float = 0.0,
) -> StatusOutcome:
    out = StatusOutcome(cand.player_id, cand.name)
    class_id = candidate_class_id(cand)
    if class_id is None:
        out.checked_at, out.reason = now_ms, "no class data"
        return out

    realm = normalize(cand.region, cand.realm_slug)
    try:
        status = await client.fetch_character_status(cand.region, realm, cand.name, stagger=stagger)
    except APIError as exc:
        if exc.status != 404:
            out.error = exc
            return out
        out.checked_at, out.reason = now_ms, "status 404"
        return out
    except FETCH_ERRORS as exc:
        out.error = exc
        return out

    out.checked_at = now_ms
    out.character_id = status.character.id or None
    if not status.is_valid:
        out.reason = status.reason or "invalid"
        return out
    out.valid = True

    if status.character.realm.slug:
        realm = normalize(cand.region, status.character.realm.slug)
    name = status.character.name.strip() or cand.name
    try:
        achievements = await client.fetch_character_achievements(cand.region, realm, name)
    except APIError as exc:
        if exc.status != 404:
            out.error = exc
            return out
        out.valid, out.reason = False, "achievements 404"
        return out
    except FETCH_ERRORS as exc:
        out.error = exc
        return out

    try:
        level85, level90, heroic = key_timestamps(achievements.achievements)
    except ValueError as exc:
        out.valid, out.reason = False, str(exc)
        return out
    out.fingerprint = {
        "hash": fingerprint_hash(class_id, level85, level90, heroic),
        "class_id": class_id,
        "level85": level85,
        "level90": level90,
        "heroic": heroic,
        "name": achievements.character.name or name,
        "realm": achievements.character.realm.slug or realm,
    }
    return out


def migrate_player_runs(conn: Connection, from_id: int, to_id: int) -> int:
    """Move run memberships, drop both rows' aggregates and retire ``from_id``."""
    # a run both rows appear in keeps only the target's membership
    conn.execute(
        text(
            "DELETE FROM run_members WHERE player_id = :src "
            "AND run_id IN (SELECT run_id FROM run_members WHERE player_id = :dst)"
        ),
        {"src": from_id, "dst": to_id},
    )
    moved = conn.execute(
        text("UPDATE run_members SET player_id = :dst WHERE player_id = :src"), {"src": from_id, "dst": to_id}
    ).rowcount
    for table in ("player_profiles", "player_best_runs"):
        conn.execute(text(f"DELETE FROM {table} WHERE player_id IN (:src, :dst)"), {"src": from_id, "dst": to_id})
    conn.execute(text("UPDATE players SET is_valid = 0 WHERE id = :src"), {"src": from_id})
    return moved


def _mark_status(conn: Connection, player_id: int, valid: bool, checked_at: int, character_id: Optional[int]) -> None:
    conn.execute(
        text(
            "UPDATE players SET is_valid = :valid, status_checked_at = :ts, "
            "blizzard_character_id = COALESCE(:cid, blizzard_character_id) WHERE id = :id"
        ),
        {"valid": 1 if valid else 0, "ts": checked_at, "cid": character_id, "id": player_id},
    )


def apply_status(engine: Engine, outcome: StatusOutcome, logger: Optional[logging.Logger] = None) -> Optional[int]:
    """Persist one outcome. Returns the id of a row merged into this player, if any."""
    if outcome.checked_at is None:
        return None
    merged_from: Optional[int] = None
    with engine.begin() as conn:
        _mark_status(conn, outcome.player_id, outcome.valid, outcome.checked_at, outcome.character_id)
        fp = outcome.fingerprint
        if fp is None:
            return None
        owner = conn.execute(
            text("SELECT player_id FROM player_fingerprints WHERE fingerprint_hash = :h"), {"h": fp["hash"]}
        ).first()
        if owner is not None and owner.player_id != outcome.player_id:
            merged_from = owner.player_id
            moved = migrate_player_runs(conn, merged_from, outcome.player_id)
            _mark_status(conn, merged_from, False, outcome.checked_at, None)
            conn.execute(text("DELETE FROM player_fingerprints WHERE player_id = :id"), {"id": merged_from})
            if logger:
                log_json(
                    logger,
                    "identity_merged",
                    old_id=merged_from,
                    new_id=outcome.player_id,
                    runs_migrated=moved,
                    hash=fp["hash"][:16],
                )
        conn.execute(
            text(
                "INSERT INTO player_fingerprints (player_id, fingerprint_hash, class_id, level85_timestamp, "
                "level90_timestamp, earliest_heroic_timestamp, last_seen_name, last_seen_realm, updated_at) "
                "VALUES (:pid, :hash, :class_id, :l85, :l90, :heroic, :name, :realm, :ts) "
                "ON CONFLICT(player_id) DO UPDATE SET fingerprint_hash = excluded.fingerprint_hash, "
                "class_id = excluded.class_id, level85_timestamp = excluded.level85_timestamp, "
                "level90_timestamp = excluded.level90_timestamp, "
                "earliest_heroic_timestamp = excluded.earliest_heroic_timestamp, "
                "last_seen_name = excluded.last_seen_name, last_seen_realm = excluded.last_seen_realm, "
                "updated_at = excluded.updated_at"
            ),
            {
                "pid": outcome.player_id,
                "hash": fp["hash"],
                "class_id": fp["class_id"],
                "l85": fp["level85"],
                "l90": fp["level90"],
                "heroic": fp["heroic"],
                "name": fp["name"],
                "realm": fp["realm"],
                "ts": outcome.checked_at,
            },
        )
    return merged_from


def find_player_id(conn: Connection, key: CharacterKey) -> Optional[int]:
    row = conn.execute(
        text(
            "SELECT p.id FROM players p JOIN realms r ON p.realm_id = r.id "
            "WHERE p.name_lower = lower(:name) AND r.slug = :realm AND r.region = :region "
            "ORDER BY COALESCE(p.is_valid, 1) DESC, p.id DESC LIMIT 1"
        ),
        {"name": key.name, "realm": key.realm, "region": key.region},
    ).first()
    return row.id if row is not None else None


def apply_merges(
    engine: Engine, entries: List[MergeEntry], dry_run: bool = False, logger: Optional[logging.Logger] = None
) -> Dict[str, int]:
    counts = {"merged": 0, "skipped": 0, "runs_moved": 0}
    for entry in entries:
        with engine.begin() as conn:
            src = find_player_id(conn, entry.source)
            dst = find_player_id(conn, entry.target)
            if src is None or dst is None or src == dst:
                counts["skipped"] += 1
                if logger:
                    log_json(
                        logger,
                        "merge_skipped",
                        level=logging.WARNING,
                        source=entry.source.name,
                        target=entry.target.name,
                        source_id=src,
                        target_id=dst,
                    )
                continue
            if dry_run:
                moved = conn.execute(
                    text("SELECT COUNT(*) FROM run_members WHERE player_id = :src"), {"src": src}
                ).scalar_one()
            else:
                moved = migrate_player_runs(conn, src, dst)
        counts["merged"] += 1
        counts["runs_moved"] += moved
        if logger:
            log_json(logger, "player_merged", source_id=src, target_id=dst, runs=moved, dry_run=dry_run)
    return counts
