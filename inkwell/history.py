from __future__ import annotations

import json
import logging
import os
import threading
import time
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional

import redis

from inkwell.schema import coerce_output, to_record

log = logging.getLogger(__name__)

_LOCK = threading.Lock()
_HISTORY_FILE = Path(os.getenv("HISTORY_FILE", "cache/generations.json"))
try:
    HISTORY_MAX = int(os.getenv("HISTORY_MAX", "200"))
except Exception:
    HISTORY_MAX = 200

_REDIS_URL = os.getenv("REDIS_URL", "").strip()
_REDIS_HISTORY_KEY = os.getenv("REDIS_HISTORY_KEY", "inkwell:generations")
_REDIS_TIMEOUT = float(os.getenv("REDIS_HISTORY_TIMEOUT", "0.35") or 0.35)

_REDIS_CLIENT: Optional["redis.Redis[str]"] = None
if _REDIS_URL:
    try:
        _REDIS_CLIENT = redis.from_url(
            _REDIS_URL,
            decode_responses=True,
            socket_timeout=_REDIS_TIMEOUT,
            socket_connect_timeout=_REDIS_TIMEOUT,
        )
    except Exception as exc:
        log.warning("history: failed to initialize Redis client: %s", exc)
        _REDIS_CLIENT = None


def _read() -> List[Dict[str, Any]]:
    if not _HISTORY_FILE.exists():
        return []
    try:
        data = json.loads(_HISTORY_FILE.read_text(encoding="utf-8") or "[]")
    except (OSError, ValueError) as exc:
        log.warning("history: unreadable store %s: %s", _HISTORY_FILE, exc)
        return []
    return [r for r in data if isinstance(r, dict)] if isinstance(data, list) else []


def _write(records: List[Dict[str, Any]]) -> None:
    _HISTORY_FILE.parent.mkdir(parents=True, exist_ok=True)
    tmp = _HISTORY_FILE.with_suffix(".tmp")
    tmp.write_text(json.dumps(records, separators=(",", ":")), encoding="utf-8")
    tmp.replace(_HISTORY_FILE)


def _file_record(entry: Dict[str, Any]) -> None:
    with _LOCK:
        records = _read()
        records.insert(0, entry)
        _write(records[: max(1, HISTORY_MAX)])


def _file_recent(limit: int) -> List[Dict[str, Any]]:
    with _LOCK:
        return _read()[:limit]


def _redis_record(entry: Dict[str, Any]) -> bool:
    if not _REDIS_CLIENT:
        return False
    try:
        pipe = _REDIS_CLIENT.pipeline()
        pipe.lpush(_REDIS_HISTORY_KEY, json.dumps(entry, separators=(",", ":")))
        pipe.ltrim(_REDIS_HISTORY_KEY, 0, max(1, HISTORY_MAX) - 1)
        pipe.execute()
        return True
    except Exception as exc:
        log.warning("history: Redis record failed, falling back to file: %s", exc)
        return False


def _redis_recent(limit: int) -> Optional[List[Dict[str, Any]]]:
    if not _REDIS_CLIENT:
        return None
    try:
        raw = _REDIS_CLIENT.lrange(_REDIS_HISTORY_KEY, 0, limit - 1)
    except Exception as exc:
        log.warning("history: Redis read failed, falling back to file: %s", exc)
        return None
    out: List[Dict[str, Any]] = []
    for item in raw:
        try:
            record = json.loads(item)
        except ValueError:
            continue
        if isinstance(record, dict):
            out.append(record)
    return out


def record(prompt: str, output: Any) -> Optional[str]:
    """Store one generation; failures are logged and swallowed (returns None)."""
    try:
        entry = {
            "id": uuid.uuid4().hex,
            "prompt": prompt or "",
            "output": to_record(coerce_output(output)),
            "created_at": time.time(),
        }
        if not _redis_record(entry):
            _file_record(entry)
    except Exception:
        log.exception("history.record: failed to persist generation")
        return None
    log.debug("history.record: id=%s", entry["id"])
    return entry["id"]


def recent(limit: int = 2) -> List[Dict[str, Any]]:
    """Most recent records, newest first."""
    limit = max(0, int(limit))
    if limit == 0:
        return []
    records = _redis_recent(limit)
    if records is None:
        records = _file_recent(limit)
    return records


def get(record_id: str) -> Optional[Dict[str, Any]]:
    for entry in recent(max(1, HISTORY_MAX)):
        if entry.get("id") == record_id:
            return entry
    return None
