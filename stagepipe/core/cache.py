from __future__ import annotations

import copy
import hashlib
import json
import os
import tempfile
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional, Protocol

FLOAT_DIGITS = 12


@dataclass(frozen=True)
class CacheEntry:
    key: str
    value: Any
    created_at: float
    ttl_seconds: Optional[int] = None

    def is_expired(self, now: float) -> bool:
        if self.ttl_seconds is None:
            return False
        return now - self.created_at > self.ttl_seconds

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "value": self.value,
            "created_at": self.created_at,
            "ttl_seconds": self.ttl_seconds,
        }


class CacheBackend(Protocol):
    def get(self, key: str) -> Optional[CacheEntry]: ...

    def put(self, key: str, value: Any, ttl_seconds: Optional[int]) -> CacheEntry: ...


def fingerprint(value: Any) -> str:
    """sha256 of ``value`` as sorted, compact JSON; float noise below 1e-12 is ignored."""
    text = json.dumps(
        _stable(value), sort_keys=True, separators=(",", ":"), ensure_ascii=True, default=str
    )
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def stage_cache_key(stage_name: str, payload: Any) -> str:
    return f"{stage_name}:{fingerprint(payload)}"


def _stable(value: Any) -> Any:
    if isinstance(value, float):
        return round(value, FLOAT_DIGITS) + 0.0
    if isinstance(value, Mapping):
        return {str(key): _stable(val) for key, val in value.items()}
    if isinstance(value, (list, tuple)):
        return [_stable(item) for item in value]
    return value


class NullCache:
    def get(self, key: str) -> Optional[CacheEntry]:
        return None

    def put(self, key: str, value: Any, ttl_seconds: Optional[int]) -> CacheEntry:
        return CacheEntry(key=key, value=value, created_at=time.time(), ttl_seconds=ttl_seconds)


class MemoryCache:
    """Process-local cache shared by concurrent runs.

    Values are deep-copied on the way in and out. Expired entries are
    dropped when they are read; there is no sweeper.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: Dict[str, CacheEntry] = {}

    def get(self, key: str) -> Optional[CacheEntry]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.is_expired(self._clock()):
                del self._entries[key]
                return None
            return CacheEntry(
                key=entry.key,
                value=copy.deepcopy(entry.value),
                created_at=entry.created_at,
                ttl_seconds=entry.ttl_seconds,
            )

    def put(self, key: str, value: Any, ttl_seconds: Optional[int]) -> CacheEntry:
        entry = CacheEntry(
            key=key,
            value=copy.deepcopy(value),
            created_at=self._clock(),
            ttl_seconds=ttl_seconds,
        )
        with self._lock:
            self._entries[key] = entry
        return entry

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class FileCache:
    """One JSON file per key; a write is published with an atomic rename."""

    def __init__(self, root: Path, clock: Callable[[], float] = time.time) -> None:
        self.root = root
        self.root.mkdir(parents=True, exist_ok=True)
        self._clock = clock

    def _path(self, key: str) -> Path:
        return self.root / f"{hashlib.sha256(key.encode('utf-8')).hexdigest()}.json"

    def get(self, key: str) -> Optional[CacheEntry]:
        path = self._path(key)
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except ValueError:
            return None
        try:
            entry = CacheEntry(
                key=data["key"],
                value=data["value"],
                created_at=float(data["created_at"]),
                ttl_seconds=data.get("ttl_seconds"),
            )
        except (KeyError, TypeError, ValueError):
            # valid JSON with the wrong shape is a miss
            return None
        if entry.key != key:
            return None
        if entry.is_expired(self._clock()):
            try:
                path.unlink()
            except FileNotFoundError:
                pass
            return None
        return entry

    def put(self, key: str, value: Any, ttl_seconds: Optional[int]) -> CacheEntry:
        entry = CacheEntry(key=key, value=value, created_at=self._clock(), ttl_seconds=ttl_seconds)
        payload = json.dumps(entry.to_dict(), sort_keys=True, indent=2)
        fd, tmp_name = tempfile.mkstemp(dir=self.root, prefix=".tmp-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(payload)
            os.replace(tmp_name, self._path(key))
        except BaseException:
            try:
                os.unlink(tmp_name)
            except FileNotFoundError:
                pass
            raise
        return entry


def load_cache(config: Any, root: Optional[Path] = None) -> Any:
    if config is None or config is False:
        return NullCache()
    if config is True:
        return MemoryCache()
    if isinstance(config, dict):
        cache_type = config.get("type", "memory")
        if cache_type == "none":
            return NullCache()
        if cache_type == "memory":
            return MemoryCache()
        if cache_type == "file":
            path = config.get("path")
            if path is None:
                if root is None:
                    raise ValueError("file cache requires a path or a run root")
                path = root / "cache"
            return FileCache(Path(path))
        raise ValueError(f"Unknown cache type: {cache_type}")
    if hasattr(config, "get") and hasattr(config, "put"):
        return config
    raise ValueError(f"Unsupported cache config: {config!r}")
