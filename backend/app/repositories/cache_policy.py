from __future__ import annotations

import hashlib
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

MAX_AGE_CEILING_HOURS = 30 * 24
SECONDS_PER_HOUR = 3600


class ResourceKind(str, Enum):
    FEED = "feed"
    CAPTION = "caption"
    DESCRIPTION = "description"
    SUMMARY = "summary"


@dataclass(frozen=True)
class CacheSettings:
    max_feed_age_hours: int = 24
    max_summary_age_hours: int = 168
    prefer_cache: bool = True
    auto_cleanup_enabled: bool = False
    max_cache_size_mb: int = 5

    @property
    def max_cache_size_bytes(self) -> int:
        return self.max_cache_size_mb * 1024 * 1024


def clamp_age_hours(raw_hours: int) -> int:
    return max(1, min(MAX_AGE_CEILING_HOURS, raw_hours))


def fingerprint(*parts: str) -> str:
    """Stable digest of identity parts; used where raw identities must not leak."""
    digest = hashlib.sha256()
    for part in parts:
        encoded = part.encode("utf-8")
        # Length-prefixing keeps ("ab", "c") and ("a", "bc") apart.
        digest.update(len(encoded).to_bytes(4, "big"))
        digest.update(encoded)
    return digest.hexdigest()[:32]


def cache_key(kind: ResourceKind, resource_id: str, principal: str | None = None) -> str:
    """Derive the cache key for one logical request.

    Principal-scoped resources (the subscription feed) include a fingerprint of
    the principal; public resources (captions, descriptions, summaries) are
    keyed by resource ID alone so every user shares one entry.
    """
    if principal is None:
        return f"{kind.value}:{resource_id}"
    return f"{kind.value}:{resource_id}:{fingerprint(principal)}"


class TtlPolicy:
    def __init__(self, settings_provider: Callable[[], CacheSettings]) -> None:
        self._settings_provider = settings_provider

    def ttl_seconds(self, kind: ResourceKind) -> float:
        settings = self._settings_provider()
        if kind is ResourceKind.FEED:
            hours = settings.max_feed_age_hours
        else:
            hours = settings.max_summary_age_hours
        return float(clamp_age_hours(hours) * SECONDS_PER_HOUR)

    def is_valid(self, kind: ResourceKind, stored_at: float, now: float) -> bool:
        return (now - stored_at) <= self.ttl_seconds(kind)
