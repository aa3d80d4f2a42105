from __future__ import annotations

import json
from pathlib import Path

from backend.app.repositories.cache_policy import (
    CacheSettings,
    ResourceKind,
    TtlPolicy,
    cache_key,
    fingerprint,
)
from backend.app.repositories.cache_store import (
    CacheEntry,
    CacheStore,
    InMemoryCacheBackend,
    JsonFileCacheBackend,
    SharedSizeLimit,
)
from tests.fakes import FakeClock

HOUR = 3600.0


def _store(
    clock: FakeClock,
    *,
    kind: ResourceKind = ResourceKind.FEED,
    settings: CacheSettings | None = None,
    secondary: object | None = None,
    size_limit: SharedSizeLimit | None = None,
) -> CacheStore:
    resolved = settings or CacheSettings()
    return CacheStore(
        f"cached_{kind.value}",
        kind,
        TtlPolicy(lambda: resolved),
        secondary=secondary,  # type: ignore[arg-type]
        settings_provider=lambda: resolved,
        size_limit=size_limit,
        clock=clock,
    )


class _FailingBackend(InMemoryCacheBackend):
    def save(self, key: str, entry: CacheEntry) -> None:
        raise OSError("disk full")


def test_cache_get_respects_ttl_boundary_and_ignore_expiry() -> None:
    clock = FakeClock()
    store = _store(clock)
    store.set("feed:subscriptions", ["video-1"])

    clock.advance(24 * HOUR)
    assert store.get("feed:subscriptions") == ["video-1"]

    clock.advance(1)
    assert store.get("feed:subscriptions") is None
    assert store.get("feed:subscriptions", ignore_expiry=True) == ["video-1"]
    assert store.get("feed:missing", ignore_expiry=True) is None


def test_summary_namespace_uses_summary_age() -> None:
    clock = FakeClock()
    store = _store(
        clock,
        kind=ResourceKind.SUMMARY,
        settings=CacheSettings(max_feed_age_hours=1, max_summary_age_hours=48),
    )
    store.set("summary:abc", "text")

    clock.advance(47 * HOUR)
    assert store.get("summary:abc") == "text"
    clock.advance(2 * HOUR)
    assert store.get("summary:abc") is None


def test_set_twice_keeps_latest_value_and_timestamp() -> None:
    clock = FakeClock()
    store = _store(clock)
    store.set("k", {"v": 1})
    clock.advance(10)
    store.set("k", {"v": 2})

    entry = store.get_entry("k")
    assert entry is not None
    assert entry.value == {"v": 2}
    assert entry.stored_at == clock.now


def test_json_backend_mirrors_writes_and_reads_through(tmp_path: Path) -> None:
    clock = FakeClock()
    path = tmp_path / "cache" / "cached_feed.json"
    first = _store(clock, secondary=JsonFileCacheBackend(path))
    first.set("feed:subscriptions:abc", [{"id": "v1"}])

    document = json.loads(path.read_text(encoding="utf-8"))
    assert document == {
        "feed:subscriptions:abc": {
            "value": [{"id": "v1"}],
            "timestamp": int(clock.now * 1000),
        }
    }

    restarted = _store(clock, secondary=JsonFileCacheBackend(path))
    assert restarted.get("feed:subscriptions:abc") == [{"id": "v1"}]

    restarted.delete("feed:subscriptions:abc")
    assert json.loads(path.read_text(encoding="utf-8")) == {}


def test_secondary_failures_do_not_fail_writes() -> None:
    clock = FakeClock()
    store = _store(clock, secondary=_FailingBackend())

    store.set("k", "value")

    assert store.get("k") == "value"


def test_enforce_size_limit_removes_oldest_entries_first() -> None:
    clock = FakeClock()
    store = _store(clock)
    for key in ("a", "b", "c"):
        store.set(key, "x" * 100)
        clock.advance(1)

    total = store.stats().approximate_bytes
    per_entry = total // 3

    removed = store.enforce_size_limit(max_bytes=2 * per_entry)

    assert removed == 1
    assert sorted(store.entries()) == ["b", "c"]


def test_shared_size_limit_evicts_oldest_across_namespaces() -> None:
    clock = FakeClock()
    size_limit = SharedSizeLimit()
    stores = {kind: _store(clock, kind=kind, size_limit=size_limit) for kind in ResourceKind}
    for kind in ResourceKind:
        stores[kind].set("entry", "x" * 100)
        clock.advance(1)

    per_entry = stores[ResourceKind.FEED].stats().approximate_bytes
    removed = size_limit.enforce(max_bytes=2 * per_entry)

    assert removed == 2
    remaining = {kind for kind, store in stores.items() if store.entries()}
    assert remaining == {ResourceKind.DESCRIPTION, ResourceKind.SUMMARY}


def test_writes_keep_all_namespaces_together_under_the_ceiling() -> None:
    clock = FakeClock()
    settings = CacheSettings(auto_cleanup_enabled=True, max_cache_size_mb=1)
    size_limit = SharedSizeLimit(lambda: settings)
    stores = [
        _store(clock, kind=kind, settings=settings, size_limit=size_limit)
        for kind in ResourceKind
    ]
    for store in stores:
        # Each namespace alone stays well under 1 MiB.
        store.set("entry", "x" * 400_000)
        clock.advance(1)

    total = sum(store.stats().approximate_bytes for store in stores)
    assert total <= settings.max_cache_size_bytes
    assert [bool(store.entries()) for store in stores] == [False, False, True, True]


def test_sweep_drops_expired_entries_before_enforcing() -> None:
    clock = FakeClock()
    settings = CacheSettings(max_feed_age_hours=1)
    size_limit = SharedSizeLimit(lambda: settings)
    feed = _store(clock, settings=settings, size_limit=size_limit)
    summaries = _store(clock, kind=ResourceKind.SUMMARY, settings=settings, size_limit=size_limit)
    feed.set("old", 1)
    clock.advance(2 * HOUR)
    summaries.set("fresh", "Text.")

    assert size_limit.sweep() == (1, 0)
    assert feed.entries() == {}
    assert list(summaries.entries()) == ["fresh"]


def test_cleanup_expired_keeps_fresh_entries() -> None:
    clock = FakeClock()
    store = _store(clock, settings=CacheSettings(max_feed_age_hours=1))
    store.set("old", 1)
    clock.advance(2 * HOUR)
    store.set("new", 2)

    assert store.stats().expired_count == 1
    assert store.cleanup_expired() == 1
    assert list(store.entries()) == ["new"]


def test_export_document_imports_into_another_store() -> None:
    clock = FakeClock()
    source = _store(clock, kind=ResourceKind.SUMMARY)
    source.set("summary:v1", "short summary")

    target = _store(FakeClock(clock.now + 10), kind=ResourceKind.SUMMARY)
    imported = target.import_document(source.export_document())

    assert imported == 1
    entry = target.get_entry("summary:v1")
    assert entry is not None
    assert entry.value == "short summary"
    assert entry.stored_at == clock.now


def test_import_skips_malformed_entries() -> None:
    store = _store(FakeClock())

    imported = store.import_document(
        {
            "ok": {"value": 1, "timestamp": 1_000},
            "no-timestamp": {"value": 1},
            "bad-timestamp": {"value": 1, "timestamp": True},
            "not-a-dict": "value",
        }
    )

    assert imported == 1
    assert list(store.entries()) == ["ok"]


def test_cache_key_scopes_feed_to_principal_without_leaking_it() -> None:
    key = cache_key(ResourceKind.FEED, "subscriptions", "user@example.com")

    assert key.startswith("feed:subscriptions:")
    assert "user@example.com" not in key
    assert key != cache_key(ResourceKind.FEED, "subscriptions", "other@example.com")
    assert cache_key(ResourceKind.CAPTION, "abc") == "caption:abc"
    assert fingerprint("ab", "c") != fingerprint("a", "bc")
