from __future__ import annotations

import json
import os
import tempfile
from typing import Any, Optional


def _discard(tmp: str) -> None:
    if os.path.exists(tmp):
        os.remove(tmp)


def _write_atomic(path: str, payload: Any, indent: Optional[int]) -> None:
    directory = os.path.dirname(path) or "."
    os.makedirs(directory, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=".tmp-", suffix=".json", dir=directory)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            if indent is None:
                json.dump(payload, f, ensure_ascii=False, separators=(",", ":"), default=str)
            else:
                json.dump(payload, f, ensure_ascii=False, indent=indent, default=str)
            f.write("\n")
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp, 0o644)
    except BaseException:
        _discard(tmp)
        raise

    # The rename is the commit point.
    try:
        os.replace(tmp, path)
    except OSError:
        try:
            os.makedirs(directory, exist_ok=True)
            os.replace(tmp, path)
        except OSError as exc:
            _discard(tmp)
            raise OSError(exc.errno, f"rename {path}: {exc.strerror or exc}") from exc


def write_json(path: str, payload: Any) -> None:
    _write_atomic(path, payload, indent=2)


def write_json_compact(path: str, payload: Any) -> None:
    _write_atomic(path, payload, indent=None)
