"""Raw leaderboard archive.

Each non-empty leaderboard is stored as gzip JSON lines under a partitioned
key so a failed ingest can be replayed without hitting the vendor again.
"""

from __future__ import annotations

import gzip
import io
import json
import os
import time
from typing import Any, Dict, Iterable, List, Optional

import boto3

from .fetcher import FetchResult
from .utils import stable_hash

RAW_PREFIX = "raw/leaderboard"


def make_part_key(prefix: str, *parts: str) -> str:
    return "/".join([prefix.strip("/")] + [p.strip("/") for p in parts])


def leaderboard_key(result: FetchResult, prefix: str = RAW_PREFIX) -> str:
    records = leaderboard_records(result)
    part = stable_hash({"records": records})[:16]
    return make_part_key(
        prefix,
        f"region={result.region}",
        f"period={result.period}",
        f"realm={result.realm.slug}",
        f"dungeon={result.dungeon.id}",
        f"part-{part}.json.gz",
    )


def leaderboard_records(result: FetchResult) -> List[Dict[str, Any]]:
    if result.leaderboard is None:
        return []
    lb = result.leaderboard
    out = []
    for run in lb.leading_groups:
        rec = run.model_dump()
        rec["_region"] = result.region
        rec["_realm_slug"] = result.realm.slug
        rec["_connected_realm_id"] = result.realm.id
        rec["_dungeon_id"] = result.dungeon.id
        rec["_period"] = lb.period if lb.period is not None else result.period
        out.append(rec)
    return out


def encode_json_gz(records: Iterable[Any]) -> bytes:
    buf = io.BytesIO()
    with gzip.GzipFile(fileobj=buf, mode="wb") as gz:
        for rec in records:
            gz.write(json.dumps(rec, default=str, ensure_ascii=False).encode("utf-8") + b"\n")
    return buf.getvalue()


def decode_json_gz(body: bytes) -> List[Any]:
    with gzip.GzipFile(fileobj=io.BytesIO(body), mode="rb") as gz:
        return [json.loads(line) for line in gz.read().decode("utf-8").splitlines() if line.strip()]


class RawArchive:
    """Base archive; ``put`` stores bytes under a key."""

    def put(self, key: str, body: bytes) -> None:
        raise NotImplementedError

    def archive_leaderboard(self, result: FetchResult) -> Optional[str]:
        records = leaderboard_records(result)
        if not records:
            return None
        key = leaderboard_key(result)
        self.put(key, encode_json_gz(records))
        return key


class LocalArchive(RawArchive):
    def __init__(self, root: str) -> None:
        self.root = root

    def put(self, key: str, body: bytes) -> None:
        path = os.path.join(self.root, *key.split("/"))
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "wb") as f:
            f.write(body)


class S3Archive(RawArchive):
    def __init__(self, bucket: str, region: str, prefix: str = "", max_attempts: int = 5) -> None:
        self.bucket = bucket
        self.prefix = prefix
        self.max_attempts = max_attempts
        self._client = boto3.client("s3", region_name=region)

    def _put_with_retry(self, key: str, body: bytes) -> None:
        delay = 0.5
        for attempt in range(1, self.max_attempts + 1):
            try:
                self._client.put_object(Bucket=self.bucket, Key=key, Body=body)
                return
            except Exception:
                if attempt >= self.max_attempts:
                    raise
                time.sleep(delay)
                delay = min(8.0, delay * 2)

    def put(self, key: str, body: bytes) -> None:
        if self.prefix:
            key = make_part_key(self.prefix, key)
        self._put_with_retry(key, body)

    def get(self, key: str) -> bytes:
        obj = self._client.get_object(Bucket=self.bucket, Key=key)
        return obj["Body"].read()

    def list_keys(self, prefix: str) -> List[str]:
        keys = []
        paginator = self._client.get_paginator("list_objects_v2")
        for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
            for obj in page.get("Contents", []):
                keys.append(obj["Key"])
        return keys


def build_archive(settings: Dict[str, Any]) -> Optional[RawArchive]:
    kind = (settings.get("kind") or "none").lower()
    if kind == "none":
        return None
    if kind == "local":
        return LocalArchive(settings.get("path", "data/archive"))
    if kind == "s3":
        if not settings.get("bucket"):
            raise ValueError("archive.bucket is required for the s3 archive")
        return S3Archive(settings["bucket"], settings.get("region", "us-east-1"), settings.get("prefix", ""))
    raise ValueError(f"unknown archive kind {kind!r}")
