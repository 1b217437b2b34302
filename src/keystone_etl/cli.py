from __future__ import annotations

import argparse
import asyncio
import json
import sys
from typing import List, Optional

from .config import get_api_token, load_config
from .ingest import CountingSink
from .logging_utils import setup_logging
from .orchestrate import Orchestrator

NETWORK_COMMANDS = {"fetch", "profiles", "seasons", "status"}


def _parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="keystone-etl")
    parser.add_argument("--config", default="config.yaml", help="Path to config.yaml (default: config.yaml)")
    parser.add_argument("--log-level", default="INFO")
    sub = parser.add_subparsers(dest="command", required=True)

    fetch = sub.add_parser("fetch")
    fetch.add_argument("--regions", help="Comma-separated regions (default: all configured)")
    fetch.add_argument("--periods", help="Comma-separated period ids (default: primary period)")
    fetch.add_argument("--sweep", action="store_true", help="Walk the full global period list")
    fetch.add_argument("--fallback", action="store_true", help="Per realm and dungeon, stop at the newest non-empty period")
    fetch.add_argument("--dry-run", action="store_true", help="Count results without writing to the database")

    profiles = sub.add_parser("profiles")
    profiles.add_argument("--limit", type=int)
    profiles.add_argument("--dry-run", action="store_true")

    seasons = sub.add_parser("seasons")
    seasons.add_argument("--region", help="Single region (default: all configured)")

    sub.add_parser("schema")
    sub.add_parser("sync-realms")
    sub.add_parser("process", help="Rebuild rankings, best runs and player profiles")

    status = sub.add_parser("status", help="Re-check stored characters and merge renamed ones")
    status.add_argument("--limit", type=int)

    merge = sub.add_parser("merge", help="Move runs between characters listed in a merge file")
    merge.add_argument("--file", required=True, help="Merge config JSON")
    merge.add_argument("--dry-run", action="store_true")

    generate = sub.add_parser("generate")
    generate.add_argument("--out", help="Output root (default: output_dir from config)")
    generate.add_argument("--page-size", type=int)
    generate.add_argument("--regions", help="Comma-separated regions")
    generate.add_argument("--season", type=int, help="Season number (default: current)")
    generate.add_argument("--players", action="store_true", help="Player profile documents")
    generate.add_argument("--leaderboards", action="store_true", help="Dungeon and player leaderboard pages")
    generate.add_argument("--indexes", action="store_true", help="Index documents")

    sub.add_parser("stats")

    return parser.parse_args(argv)


def _split(raw: Optional[str]) -> Optional[List[str]]:
    if not raw:
        return None
    return [x.strip().lower() for x in raw.split(",") if x.strip()]


def _selected_generators(args: argparse.Namespace) -> Optional[List[str]]:
    only: List[str] = []
    if args.players:
        only.append("players")
    if args.leaderboards:
        only.extend(["leaderboards", "player_leaderboards"])
    if args.indexes:
        only.append("indexes")
    return only or None


def main(argv: Optional[List[str]] = None) -> None:
    args = _parse_args(argv)
    if args.command in NETWORK_COMMANDS:
        try:
            get_api_token()
        except RuntimeError as exc:
            print(f"error: {exc}", file=sys.stderr)
            sys.exit(1)

    logger = setup_logging(args.log_level)
    cfg = load_config(args.config)
    dry_run = getattr(args, "dry_run", False)
    orchestrator = Orchestrator(cfg, logger, sink=CountingSink() if dry_run else None)

    async def _run() -> None:
        try:
            if args.command == "fetch":
                regions = _split(args.regions)
                if args.fallback:
                    for region in regions or cfg.regions:
                        await orchestrator.run_fetch_fallback(region)
                else:
                    await orchestrator.run_fetch(regions=regions, periods=_split(args.periods), sweep=args.sweep)
            elif args.command == "profiles":
                await orchestrator.run_profiles(limit=args.limit)
            elif args.command == "seasons":
                await orchestrator.run_seasons([args.region] if args.region else None)
            elif args.command == "schema":
                orchestrator.run_schema()
            elif args.command == "sync-realms":
                orchestrator.run_sync_realms()
            elif args.command == "process":
                orchestrator.run_process()
            elif args.command == "status":
                await orchestrator.run_status(limit=args.limit)
            elif args.command == "merge":
                orchestrator.run_merge(args.file, dry_run=args.dry_run)
            elif args.command == "generate":
                orchestrator.run_generate(
                    out_dir=args.out,
                    page_size=args.page_size,
                    regions=_split(args.regions),
                    only=_selected_generators(args),
                    season_id=args.season,
                )
            elif args.command == "stats":
                print(json.dumps(orchestrator.run_stats(), indent=2))
        finally:
            await orchestrator.close()

    asyncio.run(_run())


if __name__ == "__main__":
    main()
