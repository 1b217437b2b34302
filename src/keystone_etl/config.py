from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any, Dict, List

import yaml

from .constants import FALLBACK_PERIODS, MERGED_REALMS, REALM_SLUG_ALIASES, REGION_FALLBACK_PERIODS, REGIONS


@dataclass
class Config:
    raw: Dict[str, Any]

    @property
    def api(self) -> Dict[str, Any]:
        return self.raw["api"]

    @property
    def database_url(self) -> str:
        return self.raw.get("database_url", "sqlite:///keystone.db")

    @property
    def output_dir(self) -> str:
        return self.raw.get("output_dir", "web/public")

    @property
    def regions(self) -> List[str]:
        return list(self.raw.get("regions") or REGIONS)

    @property
    def periods(self) -> Dict[str, Any]:
        return self.raw.get("periods") or {}

    @property
    def archive(self) -> Dict[str, Any]:
        return self.raw.get("archive") or {"kind": "none"}

    @property
    def generate(self) -> Dict[str, Any]:
        return self.raw.get("generate") or {}

    @property
    def primary_period(self) -> str:
        return str(self.periods.get("primary", FALLBACK_PERIODS[0]))

    def region_periods(self, region: str) -> List[str]:
        by_region = self.periods.get("fallback") or {}
        if region in by_region:
            return [str(p) for p in by_region[region]]
        if "default" in self.periods:
            return [str(p) for p in self.periods["default"]]
        return list(REGION_FALLBACK_PERIODS.get(region, FALLBACK_PERIODS))

    def merged_realm_map(self) -> Dict[str, Dict[str, str]]:
        merged = self.raw.get("merged_realms")
        if merged is None:
            return {region: dict(m) for region, m in MERGED_REALMS.items()}
        return {region: {str(k): str(v) for k, v in (m or {}).items()} for region, m in merged.items()}

    def realm_slug_aliases(self) -> Dict[str, Dict[str, str]]:
        aliases = self.raw.get("realm_slug_aliases")
        if aliases is None:
            return {region: dict(m) for region, m in REALM_SLUG_ALIASES.items()}
        return {region: {str(k): str(v) for k, v in (m or {}).items()} for region, m in aliases.items()}


def load_config(path: str = "config.yaml") -> Config:
    with open(path, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f) or {}
    if "api" not in raw:
        raise ValueError("config must define an 'api' section")
    for region in raw.get("regions") or []:
        if region not in REGIONS:
            raise ValueError(f"unknown region {region!r}; expected one of {', '.join(REGIONS)}")
    return Config(raw)


def get_api_token() -> str:
    token = (os.getenv("BLIZZARD_API_TOKEN") or "").strip()
    if not token:
        raise RuntimeError("Missing API token; set BLIZZARD_API_TOKEN")
    return token
