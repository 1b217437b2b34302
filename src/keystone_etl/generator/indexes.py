"""Navigational index documents for the static API.

The tree mirrors the leaderboard layout::

    api/index.json
    api/leaderboard/season/index.json
    api/leaderboard/season/<sid>/index.json
    api/leaderboard/season/<sid>/global/index.json
    api/leaderboard/season/<sid>/<region>/index.json
    api/leaderboard/season/<sid>/<region>/<realm>/index.json
    api/leaderboard/season/<sid>/players/...

Links are site-relative strings. Page-bearing links carry the literal
``{page}`` token, dungeon-bearing ones ``{dungeon}``. Every document ends with a
``metadata`` block of ``total_count`` and ``last_updated``.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from ..loaders import DungeonRow, current_season_id, load_dungeons, load_regional_realms, load_seasons
from ..logging_utils import log_json
from ..utils import dungeon_short_name
from ..wow_specs import classes_with_specs
from ._helpers import EmitContext, RealmGroup, api_path, href, metadata, realm_groups, write_doc

API_VERSION = "1.0"


def _season_href(sid: int, *parts: Any) -> str:
    return href("leaderboard", "season", sid, *parts)


def _doc(ctx: EmitContext, parts: List[Any], payload: Dict[str, Any], total: int) -> bool:
    payload["metadata"] = metadata(ctx, total)
    return write_doc(ctx, api_path(ctx, *parts), payload)


def write_root_index(ctx: EmitContext) -> bool:
    payload = {
        "_links": {"self": {"href": href("index.json")}},
        "indexes": {"seasons": {"href": href("leaderboard", "season", "index.json")}},
        "endpoints": {
            "dungeon_leaderboard": {"href": href("leaderboard", "season", "{season}", "{scope}", "{dungeon}", "{page}.json")},
            "player_leaderboard": {"href": href("leaderboard", "season", "{season}", "players", "{scope}", "{page}.json")},
            "player_profile": {"href": href("player", "{region}", "{realm}", "{name}.json")},
        },
        "api_version": API_VERSION,
        "last_updated": metadata(ctx, 0)["last_updated"],
    }
    return write_doc(ctx, api_path(ctx, "index.json"), payload)


def write_seasons_index(ctx: EmitContext) -> bool:
    seasons = load_seasons(ctx.engine)
    data = []
    for s in seasons:
        data.append(
            {
                "id": s.season_number,
                "name": s.season_name or f"Season {s.season_number}",
                "start_timestamp": s.start_timestamp,
                "end_timestamp": s.end_timestamp,
                "is_current": s.end_timestamp is None,
                "_links": {
                    "self": {"href": _season_href(s.season_number, "index.json")},
                    "scopes": {"href": _season_href(s.season_number, "index.json")},
                },
            }
        )
    if data and not any(d["is_current"] for d in data):
        data[-1]["is_current"] = True
    return _doc(ctx, ["leaderboard", "season", "index.json"], {"data": data}, len(data))


def write_season_scopes_index(ctx: EmitContext, sid: int) -> bool:
    scopes = [{"id": "global", "name": "Global", "_links": {"leaderboard": {"href": _season_href(sid, "global", "index.json")}}}]
    for region in ctx.regions:
        scopes.append(
            {"id": region, "name": region.upper(), "_links": {"leaderboard": {"href": _season_href(sid, region, "index.json")}}}
        )
    scopes.append(
        {"id": "players", "name": "Players", "_links": {"leaderboard": {"href": _season_href(sid, "players", "index.json")}}}
    )
    return _doc(ctx, ["leaderboard", "season", sid, "index.json"], {"season_id": sid, "data": scopes}, len(scopes))


def _dungeon_entries(dungeons: List[DungeonRow], sid: int, *scope: Any) -> List[Dict[str, Any]]:
    out = []
    for d in dungeons:
        out.append(
            {
                "id": d.id,
                "slug": d.slug,
                "name": d.name,
                "short_name": dungeon_short_name(d.slug, d.name),
                "map_challenge_mode_id": d.map_challenge_mode_id,
                "_links": {"leaderboard": {"href": _season_href(sid, *scope, d.slug, "{page}.json")}},
            }
        )
    return out


def write_global_dungeons_index(ctx: EmitContext, sid: int) -> bool:
    data = _dungeon_entries(load_dungeons(ctx.engine), sid, "global")
    return _doc(ctx, ["leaderboard", "season", sid, "global", "index.json"], {"data": data}, len(data))


def write_region_index(ctx: EmitContext, sid: int, region: str) -> bool:
    data = []
    for r in load_regional_realms(ctx.engine, region):
        data.append(
            {
                "slug": r.slug,
                "name": r.name,
                "connected_realm_id": r.connected_realm_id,
                "parent_realm": r.parent_realm_slug,
                "player_count": r.player_count,
                "_links": {"dungeons": {"href": _season_href(sid, region, r.slug, "index.json")}},
            }
        )
    payload = {
        "region": region,
        "all": {
            "href": _season_href(sid, region, "all", "{dungeon}", "{page}.json"),
            "note": f"All {region.upper()} realms combined",
        },
        "data": data,
    }
    return _doc(ctx, ["leaderboard", "season", sid, region, "index.json"], payload, len(data))


def write_realm_dungeon_indexes(ctx: EmitContext, sid: int, region: str) -> int:
    dungeons = load_dungeons(ctx.engine)
    written = 0
    for r in load_regional_realms(ctx.engine, region):
        data = _dungeon_entries(dungeons, sid, region, r.slug)
        payload = {"region": region, "realm": r.slug, "name": r.name, "data": data}
        if _doc(ctx, ["leaderboard", "season", sid, region, r.slug, "index.json"], payload, len(data)):
            written += 1
    return written


def _region_list(ctx: EmitContext, link_for) -> List[Dict[str, str]]:
    return [{"region": region, "href": link_for(region)} for region in ctx.regions]


def _realm_list(groups: List[RealmGroup], link_for) -> List[Dict[str, Any]]:
    return [
        {"slug": g.parent_slug, "name": g.name, "player_count": g.player_count, "href": link_for(g.parent_slug)}
        for g in groups
    ]


def _write_player_tree(ctx: EmitContext, sid: int, root: List[Any], groups: Dict[str, List[RealmGroup]]) -> int:
    """Regional and realm index documents below one players root (all classes or one class)."""
    written = 0
    regional = _region_list(ctx, lambda region: _season_href(sid, *root, "regional", region, "{page}.json"))
    written += _doc(ctx, ["leaderboard", "season", sid, *root, "regional", "index.json"], {"data": regional}, len(regional))
    realm = _region_list(ctx, lambda region: _season_href(sid, *root, "realm", region, "index.json"))
    written += _doc(ctx, ["leaderboard", "season", sid, *root, "realm", "index.json"], {"data": realm}, len(realm))
    for region in ctx.regions:
        data = _realm_list(
            groups.get(region, []), lambda slug, region=region: _season_href(sid, *root, "realm", region, slug, "{page}.json")
        )
        payload = {"region": region, "data": data}
        written += _doc(ctx, ["leaderboard", "season", sid, *root, "realm", region, "index.json"], payload, len(data))
    return written


def write_player_indexes(ctx: EmitContext, sid: int) -> int:
    groups = {region: realm_groups(ctx, region) for region in ctx.regions}
    scopes = [
        {"scope": "global", "href": _season_href(sid, "players", "global", "{page}.json")},
        {"scope": "regional", "href": _season_href(sid, "players", "regional", "index.json")},
        {"scope": "realm", "href": _season_href(sid, "players", "realm", "index.json")},
        {"scope": "class", "href": _season_href(sid, "players", "class", "index.json")},
    ]
    written = int(_doc(ctx, ["leaderboard", "season", sid, "players", "index.json"], {"data": scopes}, len(scopes)))
    written += _write_player_tree(ctx, sid, ["players"], groups)

    classes = []
    for class_id, key, name, specs in classes_with_specs():
        classes.append(
            {
                "id": class_id,
                "key": key,
                "name": name,
                "specs": specs,
                "_links": {"scopes": {"href": _season_href(sid, "players", "class", key, "index.json")}},
            }
        )
    written += _doc(ctx, ["leaderboard", "season", sid, "players", "class", "index.json"], {"data": classes}, len(classes))

    for c in classes:
        key = c["key"]
        root = ["players", "class", key]
        class_scopes = [
            {"scope": "global", "href": _season_href(sid, *root, "global", "{page}.json")},
            {"scope": "regional", "href": _season_href(sid, *root, "regional", "index.json")},
            {"scope": "realm", "href": _season_href(sid, *root, "realm", "index.json")},
        ]
        written += _doc(
            ctx, ["leaderboard", "season", sid, *root, "index.json"], {"class": key, "data": class_scopes}, len(class_scopes)
        )
        written += _write_player_tree(ctx, sid, root, groups)
    return written


def generate_all_indexes(ctx: EmitContext, season_id: Optional[int] = None) -> int:
    """Write every index document for one season (default: the current one).

    Returns the number of documents written.
    """
    sid = season_id or ctx.season_id or current_season_id(ctx.engine) or 1
    if ctx.logger:
        log_json(ctx.logger, "indexes_start", season=sid)
    written = int(write_root_index(ctx))
    written += int(write_seasons_index(ctx))
    written += int(write_season_scopes_index(ctx, sid))
    written += int(write_global_dungeons_index(ctx, sid))
    for region in ctx.regions:
        written += int(write_region_index(ctx, sid, region))
        written += write_realm_dungeon_indexes(ctx, sid, region)
    written += write_player_indexes(ctx, sid)
    if ctx.logger:
        log_json(ctx.logger, "indexes_done", season=sid, documents=written)
    return written
