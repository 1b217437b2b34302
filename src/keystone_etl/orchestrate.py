from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from typing import Dict, Iterable, List, Optional

from .aggregate import run_aggregations
from .api_client import ApiClient, ApiConfig, CancelToken, FetchCancelled
from .archive import build_archive
from .config import Config, get_api_token
from .constants import DUNGEONS, GLOBAL_PERIODS, REALMS, realms_for_region
from .db import ensure_schema, make_engine, seed_reference_data, table_counts, upsert_season
from .fetcher import STAGGER_SECONDS, Fetcher, FetchResult, PlayerRef
from .generator import GENERATORS, EmitContext
from .identity import STATUS_STALE_MS, apply_merges, apply_status, check_identity
from .ingest import IngestSink, SqlIngestSink
from .loaders import load_profile_targets, load_status_candidates
from .logging_utils import log_json
from .merge_config import load_merge_config
from .realms import sync_realm_groups


class Orchestrator:
    def __init__(self, config: Config, logger, sink: Optional[IngestSink] = None, api: Optional[ApiClient] = None) -> None:
        self.config = config
        self.logger = logger
        self.engine = make_engine(config.database_url)
        self.sink: IngestSink = sink if sink is not None else SqlIngestSink(self.engine)
        self.archive = build_archive(config.archive)
        self._api = api
        self._fetcher: Optional[Fetcher] = None

    @property
    def api(self) -> ApiClient:
        if self._api is None:
            self._api = ApiClient(get_api_token(), ApiConfig(**self.config.api))
        return self._api

    @property
    def fetcher(self) -> Fetcher:
        if self._fetcher is None:
            self.api.set_logger(self.logger)
            self._fetcher = Fetcher(self.api, self.config.realm_slug_aliases(), self.logger)
        return self._fetcher

    async def close(self) -> None:
        if self._api is not None:
            await self._api.close()
        self.engine.dispose()

    def run_schema(self) -> None:
        ensure_schema(self.engine)
        seed_reference_data(self.engine, REALMS.values(), DUNGEONS)
        log_json(self.logger, "schema_ready", realms=len(REALMS), dungeons=len(DUNGEONS))

    def run_sync_realms(self) -> int:
        return sync_realm_groups(self.engine, self.config.merged_realm_map(), self.logger)

    def run_stats(self) -> Dict[str, int]:
        counts = table_counts(self.engine)
        log_json(self.logger, "db_stats", **counts)
        return counts

    def _handle(self, result: FetchResult, counts: Dict[str, int]) -> None:
        counts["results"] += 1
        if result.error is not None:
            if result.not_found:
                counts["not_found"] += 1
                return
            if isinstance(result.error, FetchCancelled):
                counts["cancelled"] += 1
                return
            counts["errors"] += 1
            log_json(
                self.logger,
                "fetch_result",
                level=logging.WARNING,
                region=result.region,
                realm=result.realm.slug,
                dungeon=result.dungeon.slug,
                period=result.period,
                error=str(result.error),
            )
            return
        if result.is_empty:
            counts["empty"] += 1
            return
        try:
            self.sink.ingest(result)
            if self.archive is not None:
                self.archive.archive_leaderboard(result)
        except Exception as exc:  # noqa: BLE001
            counts["errors"] += 1
            log_json(
                self.logger,
                "fetch_result",
                level=logging.WARNING,
                stage="ingest",
                region=result.region,
                realm=result.realm.slug,
                dungeon=result.dungeon.slug,
                period=result.period,
                error=str(exc),
            )
            return
        counts["leaderboards"] += 1
        counts["runs"] += len(result.leaderboard.leading_groups)

    async def _periods_for(self, region: str, periods: Optional[List[str]], sweep: bool) -> List[str]:
        if periods:
            return list(periods)
        if sweep:
            return list(GLOBAL_PERIODS)
        if self.config.periods.get("discover"):
            return (await self.api.dynamic_period_list(region, self.config.region_periods(region)))[:1]
        return [self.config.primary_period]

    async def run_fetch(
        self,
        regions: Optional[List[str]] = None,
        periods: Optional[List[str]] = None,
        sweep: bool = False,
        cancel: Optional[CancelToken] = None,
    ) -> Dict[str, int]:
        """Walk regions, then periods, then every realm and dungeon, feeding the sink."""
        counts = {k: 0 for k in ("results", "leaderboards", "runs", "empty", "not_found", "errors", "cancelled")}
        for region in regions or self.config.regions:
            realms = realms_for_region(region)
            for period in await self._periods_for(region, periods, sweep):
                log_json(self.logger, "fetch_period_start", region=region, period=period, realms=len(realms))
                results = self.fetcher.fetch_all_realms(region, realms, DUNGEONS, period, cancel)
                async with contextlib.aclosing(results):
                    async for result in results:
                        self._handle(result, counts)
                if cancel is not None and cancel.cancelled:
                    log_json(self.logger, "fetch_cancelled", level=logging.WARNING, region=region, period=period)
                    return counts
        log_json(self.logger, "fetch_done", **counts, **self.api.stats())
        return counts

    async def run_fetch_fallback(self, region: str, cancel: Optional[CancelToken] = None) -> Dict[str, int]:
        """Per realm and dungeon, walk the region's period list until a period has runs."""
        counts = {k: 0 for k in ("results", "leaderboards", "runs", "empty", "not_found", "errors", "cancelled")}
        periods = self.config.region_periods(region)
        pairs = [(realm, dungeon) for realm in realms_for_region(region) for dungeon in DUNGEONS]
        found = await asyncio.gather(
            *(self.fetcher.fetch_with_period_fallback(region, r, d, periods, cancel) for r, d in pairs)
        )
        for result in found:
            if result is not None:
                self._handle(result, counts)
        log_json(self.logger, "fetch_fallback_done", region=region, **counts)
        return counts

    async def run_profiles(
        self,
        players: Optional[Iterable[PlayerRef]] = None,
        limit: Optional[int] = None,
        cancel: Optional[CancelToken] = None,
    ) -> Dict[str, int]:
        if players is None:
            players = [
                PlayerRef(t.player_id, t.name, t.realm_slug, t.region) for t in load_profile_targets(self.engine, limit)
            ]
        counts = {"profiles": 0, "errors": 0}
        async for result in self.fetcher.fetch_player_profiles(players, cancel):
            counts["profiles"] += 1
            if result.error is not None:
                counts["errors"] += 1
                log_json(
                    self.logger,
                    "profile_fetch_error",
                    level=logging.WARNING,
                    player_id=result.player_id,
                    name=result.name,
                    error=str(result.error),
                )
            self.sink.ingest_profile(result)
        log_json(self.logger, "profile_fetch_done", **counts)
        return counts

    async def run_seasons(self, regions: Optional[List[str]] = None) -> int:
        """Refresh the seasons and period_seasons tables from the season endpoints."""
        stored = 0
        for region in regions or self.config.regions:
            index = await self.api.fetch_season_index(region)
            for ref in index.seasons:
                detail = await self.api.fetch_season_detail(region, ref.id)
                upsert_season(
                    self.engine,
                    region,
                    detail.id,
                    detail.season_name,
                    detail.start_timestamp,
                    detail.end_timestamp,
                    [p.id for p in detail.periods],
                )
                stored += 1
            log_json(self.logger, "seasons_synced", region=region, seasons=len(index.seasons))
        return stored

    def run_process(self) -> Dict[str, int]:
        """Rebuild rankings, best runs and player profiles from the stored runs."""
        counts = run_aggregations(self.engine, self.config.merged_realm_map(), self.logger)
        log_json(self.logger, "process_done", **counts)
        return counts

    async def run_status(self, limit: Optional[int] = None, stale_ms: int = STATUS_STALE_MS) -> Dict[str, int]:
        """Re-check characters with the vendor and fold renamed ones into their new row."""
        now = int(time.time() * 1000)
        candidates = load_status_candidates(self.engine, now - stale_ms, limit)
        counts = {"checked": 0, "valid": 0, "invalid": 0, "merged": 0, "errors": 0}
        normalize = self.fetcher.normalize_realm_slug
        checks = [check_identity(self.api, c, normalize, now, STAGGER_SECONDS) for c in candidates]
        for done in asyncio.as_completed(checks):
            outcome = await done
            counts["checked"] += 1
            if outcome.error is not None:
                counts["errors"] += 1
                log_json(
                    self.logger,
                    "status_check_error",
                    level=logging.WARNING,
                    player_id=outcome.player_id,
                    name=outcome.name,
                    error=str(outcome.error),
                )
            elif outcome.valid:
                counts["valid"] += 1
            else:
                counts["invalid"] += 1
                log_json(self.logger, "player_invalid", player_id=outcome.player_id, reason=outcome.reason)
            if apply_status(self.engine, outcome, self.logger) is not None:
                counts["merged"] += 1
        log_json(self.logger, "status_done", candidates=len(candidates), **counts)
        return counts

    def run_merge(self, path: str, dry_run: bool = False) -> Dict[str, int]:
        counts = apply_merges(self.engine, load_merge_config(path), dry_run, self.logger)
        log_json(self.logger, "merge_done", dry_run=dry_run, **counts)
        return counts

    def run_generate(
        self,
        out_dir: Optional[str] = None,
        page_size: Optional[int] = None,
        regions: Optional[List[str]] = None,
        only: Optional[List[str]] = None,
        season_id: Optional[int] = None,
    ) -> Dict[str, int]:
        settings = self.config.generate
        ctx = EmitContext(
            engine=self.engine,
            out_dir=out_dir or self.config.output_dir,
            logger=self.logger,
            page_size=page_size or int(settings.get("page_size", 25)),
            regions=regions or self.config.regions,
            merged=self.config.merged_realm_map(),
            season_id=season_id,
        )
        written: Dict[str, int] = {}
        for name, generate in GENERATORS.items():
            if only and name not in only:
                continue
            log_json(self.logger, "generate_start", generator=name, out_dir=ctx.out_dir)
            written[name] = generate(ctx)
            log_json(self.logger, "generate_done", generator=name, documents=written[name], failed=ctx.failed)
        return written