"""Fan-out fetchers over realms, dungeons and player profiles.

Every fan-out is an async generator. Results are yielded in arrival order, so
consumers key on the ``(realm, dungeon, period)`` carried by each record. Each
unit of work produces exactly one record, errors included, and the generator
only finishes once every producer has returned.
"""

from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass
from typing import AsyncIterator, Awaitable, Callable, Dict, Iterable, List, Optional

from .api_client import APIError, ApiClient, CancelToken, FetchCancelled
from .constants import DungeonInfo, RealmInfo
from .models import CharacterEquipment, CharacterMedia, CharacterSummary, LeaderboardResponse

STAGGER_SECONDS = 0.02
PROFILE_DEADLINE_SECONDS = 30.0


@dataclass
class FetchResult:
    region: str
    realm: RealmInfo
    dungeon: DungeonInfo
    period: str
    leaderboard: Optional[LeaderboardResponse] = None
    error: Optional[Exception] = None

    @property
    def not_found(self) -> bool:
        return isinstance(self.error, APIError) and self.error.status == 404

    @property
    def is_empty(self) -> bool:
        return self.leaderboard is None or not self.leaderboard.leading_groups


@dataclass
class PlayerRef:
    player_id: int
    name: str
    realm_slug: str
    region: str


@dataclass
class ProfileResult:
    player_id: int
    name: str
    realm_slug: str
    region: str
    summary: Optional[CharacterSummary] = None
    equipment: Optional[CharacterEquipment] = None
    media: Optional[CharacterMedia] = None
    error: Optional[Exception] = None


_DONE = object()


async def _stream(producers: List[Callable[[], Awaitable]]) -> AsyncIterator:
    queue: asyncio.Queue = asyncio.Queue(maxsize=max(1, len(producers)))

    async def _run(produce: Callable[[], Awaitable]) -> None:
        await queue.put(await produce())

    tasks = [asyncio.create_task(_run(p)) for p in producers]
    try:
        for _ in range(len(tasks)):
            yield await queue.get()
    finally:
        await asyncio.gather(*tasks, return_exceptions=True)


class Fetcher:
    def __init__(self, client: ApiClient, realm_aliases: Optional[Dict[str, Dict[str, str]]] = None, logger=None) -> None:
        self.client = client
        self.realm_aliases = realm_aliases or {}
        self.logger = logger

    def normalize_realm_slug(self, region: str, slug: str) -> str:
        return self.realm_aliases.get(region, {}).get(slug, slug)

    async def _fetch_one(
        self, region: str, realm: RealmInfo, dungeon: DungeonInfo, period: str, cancel: Optional[CancelToken]
    ) -> FetchResult:
        result = FetchResult(region=region, realm=realm, dungeon=dungeon, period=period)
        if cancel is not None and cancel.cancelled:
            result.error = FetchCancelled(cancel.cause)
            return result
        try:
            result.leaderboard = await self.client.fetch_leaderboard(
                region, realm.id, dungeon.id, period, cancel, stagger=STAGGER_SECONDS
            )
        except Exception as exc:  # noqa: BLE001
            result.error = exc
        return result

    async def fetch_leaderboards_for_realm(
        self,
        region: str,
        realm: RealmInfo,
        dungeons: List[DungeonInfo],
        period: str,
        cancel: Optional[CancelToken] = None,
    ) -> AsyncIterator[FetchResult]:
        producers = [
            (lambda d=d: self._fetch_one(region, realm, d, period, cancel))
            for d in dungeons
        ]
        async for result in _stream(producers):
            yield result

    async def fetch_all_realms(
        self,
        region: str,
        realms: Iterable[RealmInfo],
        dungeons: List[DungeonInfo],
        period: str,
        cancel: Optional[CancelToken] = None,
    ) -> AsyncIterator[FetchResult]:
        realms = list(realms)
        merged: asyncio.Queue = asyncio.Queue(maxsize=max(1, len(realms) * (len(dungeons) + 1)))

        async def _forward(realm: RealmInfo) -> None:
            try:
                async with contextlib.aclosing(
                    self.fetch_leaderboards_for_realm(region, realm, dungeons, period, cancel)
                ) as stream:
                    async for result in stream:
                        if cancel is not None and cancel.cancelled:
                            break
                        await merged.put(result)
            finally:
                await merged.put(_DONE)

        tasks = [asyncio.create_task(_forward(r)) for r in realms]
        remaining = len(tasks)
        try:
            while remaining:
                item = await merged.get()
                if item is _DONE:
                    remaining -= 1
                    continue
                yield item
        finally:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def fetch_with_period_fallback(
        self,
        region: str,
        realm: RealmInfo,
        dungeon: DungeonInfo,
        periods: List[str],
        cancel: Optional[CancelToken] = None,
    ) -> Optional[FetchResult]:
        last: Optional[FetchResult] = None
        for period in periods:
            last = await self._fetch_one(region, realm, dungeon, period, cancel)
            if last.error is None and not last.is_empty:
                return last
            if isinstance(last.error, FetchCancelled):
                break
        return last

    async def _fetch_profile(self, player: PlayerRef, cancel: Optional[CancelToken]) -> ProfileResult:
        result = ProfileResult(player.player_id, player.name, player.realm_slug, player.region)
        if cancel is not None and cancel.cancelled:
            result.error = FetchCancelled(cancel.cause)
            return result
        realm_slug = self.normalize_realm_slug(player.region, player.realm_slug)
        c = self.client
        kinds = {
            "summary": c.fetch_character_summary(player.region, realm_slug, player.name, cancel, STAGGER_SECONDS),
            "equipment": c.fetch_character_equipment(player.region, realm_slug, player.name, cancel),
            "media": c.fetch_character_media(player.region, realm_slug, player.name, cancel),
        }
        tasks = {asyncio.create_task(coro): kind for kind, coro in kinds.items()}
        errors: List[Exception] = []

        def _record(task: asyncio.Task) -> None:
            kind = tasks[task]
            if task.cancelled():
                return
            exc = task.exception()
            if exc is not None:
                errors.append(Exception(f"{kind} fetch failed: {exc}"))
            else:
                setattr(result, kind, task.result())

        for task in tasks:
            task.add_done_callback(_record)
        _, pending = await asyncio.wait(tasks, timeout=PROFILE_DEADLINE_SECONDS)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            for task in tasks:
                if task in pending:
                    errors.append(Exception(f"{tasks[task]} fetch timeout"))
        if errors:
            result.error = errors[0]
        return result

    async def fetch_player_profiles(
        self, players: Iterable[PlayerRef], cancel: Optional[CancelToken] = None
    ) -> AsyncIterator[ProfileResult]:
        producers = [(lambda p=p: self._fetch_profile(p, cancel)) for p in players]
        async for result in _stream(producers):
            yield result
