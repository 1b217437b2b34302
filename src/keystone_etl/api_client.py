from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Dict, List, Optional, Type, TypeVar
from urllib.parse import quote

import httpx
from pydantic import BaseModel, ValidationError

from .logging_utils import log_json
from .models import (
    CharacterAchievements,
    CharacterEquipment,
    CharacterMedia,
    CharacterStatus,
    CharacterSummary,
    LeaderboardResponse,
    SeasonDetailResponse,
    SeasonIndexResponse,
)

USER_AGENT = "WoWStatsDB/1.0"

T = TypeVar("T", bound=BaseModel)


@dataclass
class ApiConfig:
    timeout_seconds: float = 15
    max_concurrency: int = 20
    rate_limit_per_sec: int = 90
    retry: Dict[str, Any] = field(
        default_factory=lambda: {
            "max_attempts": 3,
            "base_delay_seconds": 1.0,
            "min_retry_after_seconds": 2.0,
        }
    )
    max_idle_connections: int = 100
    keepalive_expiry_seconds: float = 90
    log_every_requests: int = 100
    user_agent: str = USER_AGENT


class APIError(Exception):
    def __init__(self, status: int, body: str, retry_after: Optional[float] = None) -> None:
        super().__init__(f"API request failed with status {status}: {body}")
        self.status = status
        self.body = body
        self.retry_after = retry_after


class TransportError(Exception):
    def __init__(self, cause: Exception) -> None:
        super().__init__(f"HTTP request failed: {cause}")
        self.cause = cause


class RequestTimeout(Exception):
    def __init__(self, seconds: float) -> None:
        super().__init__(f"request exceeded {seconds:g}s deadline")
        self.seconds = seconds


class DecodeError(Exception):
    def __init__(self, cause: Exception) -> None:
        super().__init__(f"failed to decode response: {cause}")
        self.cause = cause


class RetriesExhausted(Exception):
    def __init__(self, attempts: int, last_error: Optional[Exception]) -> None:
        super().__init__(f"failed after {attempts} attempts: {last_error}")
        self.attempts = attempts
        self.last_error = last_error


class FetchCancelled(Exception):
    def __init__(self, cause: Optional[BaseException] = None) -> None:
        super().__init__(f"fetch cancelled: {cause or 'cancelled'}")
        self.cause = cause


class CancelToken:
    """Cooperative cancellation shared by a fan-out and its children."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.cause: Optional[BaseException] = None
        self._timer: Optional[asyncio.TimerHandle] = None

    @classmethod
    def with_timeout(cls, seconds: float) -> "CancelToken":
        token = cls()
        loop = asyncio.get_running_loop()
        token._timer = loop.call_later(seconds, token.cancel, asyncio.TimeoutError("deadline exceeded"))
        return token

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, cause: Optional[BaseException] = None) -> None:
        if self._event.is_set():
            return
        self.cause = cause or asyncio.CancelledError("cancelled")
        self._event.set()
        if self._timer is not None:
            self._timer.cancel()

    async def wait(self) -> None:
        await self._event.wait()


class RateLimiter:
    """Fixed-interval ticker. The first acquire after (re)configuration is free."""

    def __init__(self, rate_per_sec: int) -> None:
        self._lock = asyncio.Lock()
        self.configure(rate_per_sec)

    def configure(self, rate_per_sec: int) -> None:
        self.rate_per_sec = rate_per_sec
        self._interval = 1.0 / rate_per_sec if rate_per_sec >= 1 else 0.0
        self._primed = True
        self._next = 0.0

    @property
    def enabled(self) -> bool:
        return self._interval > 0

    async def acquire(self) -> None:
        if not self.enabled:
            return
        async with self._lock:
            now = time.monotonic()
            if self._primed:
                self._primed = False
                self._next = now + self._interval
                return
            slot = max(self._next, now)
            self._next = slot + self._interval
            if slot > now:
                await asyncio.sleep(slot - now)


def _namespace(kind: str, region: str) -> str:
    return f"{kind}-classic-{region}"


def leaderboard_url(region: str, connected_realm_id: int, dungeon_id: int, period: str) -> str:
    return (
        f"https://{region}.api.blizzard.com/data/wow/connected-realm/{connected_realm_id}"
        f"/mythic-leaderboard/{dungeon_id}/period/{period}?namespace={_namespace('dynamic', region)}"
    )


def season_index_url(region: str) -> str:
    return (
        f"https://{region}.api.blizzard.com/data/wow/mythic-keystone/season/index"
        f"?namespace={_namespace('dynamic', region)}&locale=en_US"
    )


def season_detail_url(region: str, season_id: int) -> str:
    return (
        f"https://{region}.api.blizzard.com/data/wow/mythic-keystone/season/{season_id}"
        f"?namespace={_namespace('dynamic', region)}&locale=en_US"
    )


def profile_url(region: str, realm_slug: str, name: str, resource: str = "") -> str:
    path = f"/profile/wow/character/{realm_slug}/{quote(name.lower(), safe='')}"
    if resource:
        path += f"/{resource}"
    return f"https://{region}.api.blizzard.com{path}?namespace={_namespace('profile', region)}&locale=en_US"


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    value = value.strip()
    if value.isdigit():
        return float(value)
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())


class ApiClient:
    def __init__(self, token: str, cfg: ApiConfig) -> None:
        self.token = token
        self.cfg = cfg
        self._semaphore = asyncio.Semaphore(cfg.max_concurrency)
        self._limiter = RateLimiter(cfg.rate_limit_per_sec)
        self._client = httpx.AsyncClient(
            timeout=cfg.timeout_seconds,
            headers={"Authorization": f"Bearer {token}", "User-Agent": cfg.user_agent},
            limits=httpx.Limits(
                max_connections=None,
                max_keepalive_connections=cfg.max_idle_connections,
                keepalive_expiry=cfg.keepalive_expiry_seconds,
            ),
        )
        self._sleep = asyncio.sleep
        self._logger = None
        self.request_count = 0
        self.not_found_count = 0
        self.total_latency_ms = 0.0

    def set_logger(self, logger) -> None:
        self._logger = logger

    def set_rate_limit(self, rate_per_sec: int) -> None:
        self._limiter.configure(rate_per_sec)

    async def close(self) -> None:
        await self._client.aclose()

    def stats(self) -> Dict[str, float]:
        avg = self.total_latency_ms / self.request_count if self.request_count else 0.0
        return {
            "request_count": self.request_count,
            "not_found_count": self.not_found_count,
            "total_latency_ms": round(self.total_latency_ms, 3),
            "avg_latency_ms": round(avg, 3),
        }

    async def acquire_slot(self, cancel: Optional[CancelToken] = None) -> None:
        if cancel is None:
            await self._semaphore.acquire()
            return
        if cancel.cancelled:
            raise FetchCancelled(cancel.cause)
        acquire = asyncio.ensure_future(self._semaphore.acquire())
        waiter = asyncio.ensure_future(cancel.wait())
        try:
            done, _ = await asyncio.wait({acquire, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            waiter.cancel()
            self._abandon(acquire)
            raise
        waiter.cancel()
        if acquire in done:
            return
        self._abandon(acquire)
        raise FetchCancelled(cancel.cause)

    def _abandon(self, acquire: asyncio.Future) -> None:
        # cancel() is a no-op on a finished acquire, which then holds a slot.
        if not acquire.cancel() and not acquire.cancelled():
            self._semaphore.release()

    def release_slot(self) -> None:
        self._semaphore.release()

    async def _pause(self, delay: float, cancel: Optional[CancelToken]) -> None:
        if cancel is None:
            await self._sleep(delay)
            return
        try:
            await asyncio.wait_for(cancel.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return
        raise FetchCancelled(cancel.cause)

    async def _execute(
        self, url: str, model: Optional[Type[T]], cancel: Optional[CancelToken], stagger: float = 0.0
    ) -> Any:
        await self.acquire_slot(cancel)
        try:
            if stagger:
                await asyncio.sleep(stagger)
            await self._limiter.acquire()
            if self._logger:
                self._logger.debug("http_request_start", extra={"extra": {"url": url}})
            start = time.monotonic()
            try:
                # wall clock bound on the whole exchange, body included
                resp = await asyncio.wait_for(self._client.get(url), timeout=self.cfg.timeout_seconds)
            except asyncio.TimeoutError as exc:
                raise TransportError(RequestTimeout(self.cfg.timeout_seconds)) from exc
            except httpx.RequestError as exc:
                raise TransportError(exc) from exc
            finally:
                self.total_latency_ms += (time.monotonic() - start) * 1000.0
        finally:
            self.release_slot()

        self.request_count += 1
        every = self.cfg.log_every_requests
        if self._logger and every and self.request_count % every == 0:
            log_json(self._logger, "http_progress", **self.stats())

        if resp.status_code != 200:
            if resp.status_code == 404:
                self.not_found_count += 1
            raise APIError(
                resp.status_code,
                resp.text.strip(),
                parse_retry_after(resp.headers.get("Retry-After")),
            )
        try:
            payload = resp.json()
            if model is None:
                return payload
            return model.model_validate(payload)
        except (ValueError, ValidationError) as exc:
            raise DecodeError(exc) from exc

    async def get_json(
        self,
        url: str,
        model: Optional[Type[T]] = None,
        cancel: Optional[CancelToken] = None,
        stagger: float = 0.0,
    ) -> Any:
        max_attempts = self.cfg.retry.get("max_attempts", 3)
        base_delay = self.cfg.retry.get("base_delay_seconds", 1.0)
        min_retry_after = self.cfg.retry.get("min_retry_after_seconds", 2.0)
        attempt = 0
        last: Optional[Exception] = None
        while attempt < max_attempts:
            try:
                return await self._execute(url, model, cancel, stagger)
            except APIError as exc:
                if exc.status == 429:
                    delay = max(exc.retry_after or 0.0, min_retry_after)
                    if self._logger:
                        log_json(self._logger, "http_rate_limited", url=url, delay=delay)
                    await self._pause(delay, cancel)
                    continue
                if exc.status == 404:
                    if self._logger:
                        self._logger.debug("http_not_found", extra={"extra": {"url": url}})
                    raise
                last = exc
            except TransportError as exc:
                last = exc
            attempt += 1
            if attempt < max_attempts:
                delay = base_delay * (2 ** (attempt - 1))
                if self._logger:
                    log_json(self._logger, "http_retry", url=url, attempt=attempt, delay=delay, error=str(last))
                await self._pause(delay, cancel)
        raise RetriesExhausted(attempt, last)

    async def fetch_leaderboard(
        self, region: str, connected_realm_id: int, dungeon_id: int, period: str,
        cancel: Optional[CancelToken] = None, stagger: float = 0.0,
    ) -> LeaderboardResponse:
        url = leaderboard_url(region, connected_realm_id, dungeon_id, period)
        return await self.get_json(url, LeaderboardResponse, cancel, stagger)

    async def fetch_season_index(self, region: str) -> SeasonIndexResponse:
        return await self.get_json(season_index_url(region), SeasonIndexResponse)

    async def fetch_season_detail(self, region: str, season_id: int) -> SeasonDetailResponse:
        return await self.get_json(season_detail_url(region, season_id), SeasonDetailResponse)

    async def fetch_character_summary(
        self, region: str, realm_slug: str, name: str, cancel: Optional[CancelToken] = None, stagger: float = 0.0
    ) -> CharacterSummary:
        return await self.get_json(profile_url(region, realm_slug, name), CharacterSummary, cancel, stagger)

    async def fetch_character_equipment(
        self, region: str, realm_slug: str, name: str, cancel: Optional[CancelToken] = None
    ) -> CharacterEquipment:
        return await self.get_json(profile_url(region, realm_slug, name, "equipment"), CharacterEquipment, cancel)

    async def fetch_character_media(
        self, region: str, realm_slug: str, name: str, cancel: Optional[CancelToken] = None
    ) -> CharacterMedia:
        return await self.get_json(profile_url(region, realm_slug, name, "character-media"), CharacterMedia, cancel)

    async def fetch_character_status(
        self, region: str, realm_slug: str, name: str, cancel: Optional[CancelToken] = None, stagger: float = 0.0
    ) -> CharacterStatus:
        return await self.get_json(profile_url(region, realm_slug, name, "status"), CharacterStatus, cancel, stagger)

    async def fetch_character_achievements(
        self, region: str, realm_slug: str, name: str, cancel: Optional[CancelToken] = None
    ) -> CharacterAchievements:
        return await self.get_json(profile_url(region, realm_slug, name, "achievements"), CharacterAchievements, cancel)

    async def dynamic_period_list(self, region: str, fallback: List[str]) -> List[str]:
        try:
            index = await self.fetch_season_index(region)
            if index.current_season is not None:
                season_id = index.current_season.id
            elif index.seasons:
                season_id = max(s.id for s in index.seasons)
            else:
                return list(fallback)
            detail = await self.fetch_season_detail(region, season_id)
        except (APIError, TransportError, DecodeError, RetriesExhausted) as exc:
            if self._logger:
                log_json(self._logger, "period_discovery_failed", region=region, error=str(exc))
            return list(fallback)
        periods = sorted({p.id for p in detail.periods}, reverse=True)
        return [str(p) for p in periods] or list(fallback)
