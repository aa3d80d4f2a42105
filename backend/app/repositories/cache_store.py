from __future__ import annotations

import json
import logging
import os
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from threading import Lock
from typing import Any, Protocol, cast

from backend.app.repositories.cache_policy import CacheSettings, ResourceKind, TtlPolicy

LOGGER = logging.getLogger("subdigest.cache")


@dataclass(frozen=True)
class CacheEntry:
    value: Any
    stored_at: float


@dataclass(frozen=True)
class CacheNamespaceStats:
    namespace: str
    entry_count: int
    approximate_bytes: int
    newest_stored_at: float | None
    expired_count: int


class CacheBackend(Protocol):
    def load(self, key: str) -> CacheEntry | None:
        ...

    def save(self, key: str, entry: CacheEntry) -> None:
        ...

    def remove(self, key: str) -> None:
        ...

    def entries(self) -> dict[str, CacheEntry]:
        ...

    def clear(self) -> None:
        ...


class InMemoryCacheBackend:
    def __init__(self) -> None:
        self._entries: dict[str, CacheEntry] = {}

    def load(self, key: str) -> CacheEntry | None:
        return self._entries.get(key)

    def save(self, key: str, entry: CacheEntry) -> None:
        self._entries[key] = entry

    def remove(self, key: str) -> None:
        self._entries.pop(key, None)

    def entries(self) -> dict[str, CacheEntry]:
        return dict(self._entries)

    def clear(self) -> None:
        self._entries.clear()


class JsonFileCacheBackend:
    """One JSON object per namespace: `{key: {"value": ..., "timestamp": epoch_ms}}`."""

    def __init__(self, path: Path) -> None:
        self._path = path

    @property
    def path(self) -> Path:
        return self._path

    def load(self, key: str) -> CacheEntry | None:
        return self._read().get(key)

    def save(self, key: str, entry: CacheEntry) -> None:
        entries = self._read()
        entries[key] = entry
        self._write(entries)

    def remove(self, key: str) -> None:
        entries = self._read()
        if entries.pop(key, None) is not None:
            self._write(entries)

    def entries(self) -> dict[str, CacheEntry]:
        return self._read()

    def clear(self) -> None:
        if self._path.exists():
            self._path.unlink()

    def _read(self) -> dict[str, CacheEntry]:
        if not self._path.is_file():
            return {}
        raw_text = self._path.read_text(encoding="utf-8")
        if not raw_text.strip():
            return {}
        parsed = cast(object, json.loads(raw_text))
        return decode_namespace_document(parsed)

    def _write(self, entries: dict[str, CacheEntry]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = self._path.with_suffix(f"{self._path.suffix}.tmp")
        temp_path.write_text(
            json.dumps(encode_namespace_document(entries)),
            encoding="utf-8",
        )
        os.replace(temp_path, self._path)


class CacheStore:
    """Timestamped key/value store for one resource namespace.

    Entries past their TTL stay physically present so `get(..., ignore_expiry=True)`
    can serve them as an emergency fallback. An optional secondary backend
    mirrors every write and is read through on primary misses; secondary
    failures are logged and never fail the caller.
    """

    def __init__(
        self,
        namespace: str,
        kind: ResourceKind,
        policy: TtlPolicy,
        *,
        primary: CacheBackend | None = None,
        secondary: CacheBackend | None = None,
        settings_provider: Callable[[], CacheSettings] | None = None,
        size_limit: SharedSizeLimit | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._namespace = namespace
        self._kind = kind
        self._policy = policy
        self._primary: CacheBackend = primary if primary is not None else InMemoryCacheBackend()
        self._secondary = secondary
        self._settings_provider = settings_provider or CacheSettings
        self._size_limit = size_limit
        self._clock = clock
        self._lock = Lock()
        if size_limit is not None:
            size_limit.register(self)

    @property
    def namespace(self) -> str:
        return self._namespace

    @property
    def kind(self) -> ResourceKind:
        return self._kind

    def get(self, key: str, *, ignore_expiry: bool = False) -> Any | None:
        entry = self.get_entry(key)
        if entry is None:
            return None
        if ignore_expiry:
            return entry.value
        if not self._policy.is_valid(self._kind, entry.stored_at, self._clock()):
            return None
        return entry.value

    def get_entry(self, key: str) -> CacheEntry | None:
        with self._lock:
            entry = self._primary.load(key)
            if entry is not None:
                return entry
            entry = self._load_secondary(key)
            if entry is not None:
                self._primary.save(key, entry)
                LOGGER.debug(
                    "cache read_through namespace=%s key=%s", self._namespace, key
                )
            return entry

    def set(self, key: str, value: Any) -> CacheEntry:
        entry = CacheEntry(value=value, stored_at=self._clock())
        with self._lock:
            self._primary.save(key, entry)
            self._mirror(lambda backend: backend.save(key, entry))
        self._enforce_ceiling_after_write()
        return entry

    def delete(self, key: str) -> None:
        with self._lock:
            self._primary.remove(key)
            self._mirror(lambda backend: backend.remove(key))

    def clear(self) -> None:
        with self._lock:
            self._primary.clear()
            self._mirror(lambda backend: backend.clear())
        LOGGER.info("cache cleared namespace=%s", self._namespace)

    def entries(self) -> dict[str, CacheEntry]:
        with self._lock:
            merged = self._entries_secondary()
            merged.update(self._primary.entries())
            return merged

    def cleanup_expired(self) -> int:
        now = self._clock()
        expired_keys = [
            key
            for key, entry in self.entries().items()
            if not self._policy.is_valid(self._kind, entry.stored_at, now)
        ]
        for key in expired_keys:
            self.delete(key)
        if expired_keys:
            LOGGER.info(
                "cache cleanup_expired namespace=%s removed=%s",
                self._namespace,
                len(expired_keys),
            )
        return len(expired_keys)

    def enforce_size_limit(self, max_bytes: int | None = None) -> int:
        ceiling = (
            max_bytes
            if max_bytes is not None
            else self._settings_provider().max_cache_size_bytes
        )
        entries = self.entries()
        sizes = {key: _entry_size_bytes(entry) for key, entry in entries.items()}
        total = sum(sizes.values())
        if total <= ceiling:
            return 0

        removed = 0
        for key, _ in sorted(entries.items(), key=lambda item: item[1].stored_at):
            if total <= ceiling:
                break
            self.delete(key)
            total -= sizes[key]
            removed += 1
        LOGGER.info(
            "cache size_limit_enforced namespace=%s removed=%s remaining_bytes=%s",
            self._namespace,
            removed,
            total,
        )
        return removed

    def stats(self) -> CacheNamespaceStats:
        entries = self.entries()
        now = self._clock()
        return CacheNamespaceStats(
            namespace=self._namespace,
            entry_count=len(entries),
            approximate_bytes=sum(_entry_size_bytes(entry) for entry in entries.values()),
            newest_stored_at=max((entry.stored_at for entry in entries.values()), default=None),
            expired_count=sum(
                1
                for entry in entries.values()
                if not self._policy.is_valid(self._kind, entry.stored_at, now)
            ),
        )

    def export_document(self) -> dict[str, dict[str, Any]]:
        return encode_namespace_document(self.entries())

    def import_document(self, document: object) -> int:
        imported = decode_namespace_document(document)
        with self._lock:
            for key, entry in imported.items():
                self._primary.save(key, entry)
                self._mirror(lambda backend, k=key, e=entry: backend.save(k, e))
        LOGGER.info(
            "cache imported namespace=%s entries=%s", self._namespace, len(imported)
        )
        if imported:
            self._enforce_ceiling_after_write()
        return len(imported)

    def _enforce_ceiling_after_write(self) -> None:
        if not self._settings_provider().auto_cleanup_enabled:
            return
        if self._size_limit is not None:
            self._size_limit.enforce()
        else:
            self.enforce_size_limit()

    def _load_secondary(self, key: str) -> CacheEntry | None:
        if self._secondary is None:
            return None
        try:
            return self._secondary.load(key)
        except (OSError, ValueError):
            LOGGER.warning(
                "cache secondary_read_failed namespace=%s key=%s",
                self._namespace,
                key,
                exc_info=True,
            )
            return None

    def _entries_secondary(self) -> dict[str, CacheEntry]:
        if self._secondary is None:
            return {}
        try:
            return self._secondary.entries()
        except (OSError, ValueError):
            LOGGER.warning(
                "cache secondary_read_failed namespace=%s", self._namespace, exc_info=True
            )
            return {}

    def _mirror(self, operation: Callable[[CacheBackend], None]) -> None:
        if self._secondary is None:
            return
        try:
            operation(self._secondary)
        except (OSError, TypeError, ValueError):
            LOGGER.warning(
                "cache secondary_write_failed namespace=%s", self._namespace, exc_info=True
            )


class SharedSizeLimit:
    """One `maxCacheSize` ceiling over every registered namespace.

    Eviction is oldest-first across namespaces, so a busy feed cache can push
    out old summaries and vice versa.
    """

    def __init__(self, settings_provider: Callable[[], CacheSettings] | None = None) -> None:
        self._settings_provider = settings_provider or CacheSettings
        self._stores: list[CacheStore] = []
        self._lock = Lock()

    def register(self, store: CacheStore) -> None:
        self._stores.append(store)

    def enforce(self, max_bytes: int | None = None) -> int:
        ceiling = (
            max_bytes
            if max_bytes is not None
            else self._settings_provider().max_cache_size_bytes
        )
        with self._lock:
            candidates = [
                (entry.stored_at, store, key, _entry_size_bytes(entry))
                for store in self._stores
                for key, entry in store.entries().items()
            ]
            total = sum(size for _, _, _, size in candidates)
            if total <= ceiling:
                return 0

            removed = 0
            for _, store, key, size in sorted(candidates, key=lambda candidate: candidate[0]):
                if total <= ceiling:
                    break
                store.delete(key)
                total -= size
                removed += 1
        LOGGER.info(
            "cache shared_size_limit_enforced namespaces=%s removed=%s remaining_bytes=%s "
            "ceiling_bytes=%s",
            len(self._stores),
            removed,
            total,
            ceiling,
        )
        return removed

    def sweep(self) -> tuple[int, int]:
        """Drop expired entries everywhere, then enforce the ceiling."""
        expired = sum(store.cleanup_expired() for store in self._stores)
        return expired, self.enforce()


def encode_namespace_document(entries: dict[str, CacheEntry]) -> dict[str, dict[str, Any]]:
    return {
        key: {"value": entry.value, "timestamp": int(entry.stored_at * 1000)}
        for key, entry in entries.items()
    }


def decode_namespace_document(document: object) -> dict[str, CacheEntry]:
    if not isinstance(document, dict):
        return {}
    decoded: dict[str, CacheEntry] = {}
    for key, raw_entry in cast(dict[object, object], document).items():
        if not isinstance(key, str) or not isinstance(raw_entry, dict):
            continue
        entry_dict = cast(dict[str, object], raw_entry)
        timestamp = entry_dict.get("timestamp")
        if isinstance(timestamp, bool) or not isinstance(timestamp, (int, float)):
            continue
        if "value" not in entry_dict:
            continue
        decoded[key] = CacheEntry(value=entry_dict["value"], stored_at=float(timestamp) / 1000)
    return decoded


def _entry_size_bytes(entry: CacheEntry) -> int:
    encoded = json.dumps({"value": entry.value, "timestamp": int(entry.stored_at * 1000)})
    return len(encoded.encode("utf-8"))
