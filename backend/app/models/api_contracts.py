from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from backend.app.repositories.cache_policy import MAX_AGE_CEILING_HOURS, CacheSettings


class CacheSettingsPayload(BaseModel):
    """Wire shape of the user-adjustable cache settings (camelCase, hours and MB)."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    max_feed_age: int = Field(default=24, ge=1, le=MAX_AGE_CEILING_HOURS, alias="maxFeedAge")
    max_summary_age: int = Field(
        default=168, ge=1, le=MAX_AGE_CEILING_HOURS, alias="maxSummaryAge"
    )
    prefer_cache: bool = Field(default=True, alias="preferCache")
    auto_cleanup_enabled: bool = Field(default=False, alias="autoCleanupEnabled")
    max_cache_size: int = Field(default=5, ge=1, le=100, alias="maxCacheSize")

    @classmethod
    def from_settings(cls, settings: CacheSettings) -> CacheSettingsPayload:
        return cls(
            maxFeedAge=settings.max_feed_age_hours,
            maxSummaryAge=settings.max_summary_age_hours,
            preferCache=settings.prefer_cache,
            autoCleanupEnabled=settings.auto_cleanup_enabled,
            maxCacheSize=settings.max_cache_size_mb,
        )

    def to_settings(self) -> CacheSettings:
        return CacheSettings(
            max_feed_age_hours=self.max_feed_age,
            max_summary_age_hours=self.max_summary_age,
            prefer_cache=self.prefer_cache,
            auto_cleanup_enabled=self.auto_cleanup_enabled,
            max_cache_size_mb=self.max_cache_size,
        )


class ErrorResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    kind: str
    message: str
    remedy: str
    detail: str | None = None


class FeedItemResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str
    title: str
    thumbnail: str | None = None
    published_at: str
    channel_id: str | None = None
    channel_title: str | None = None
    video_url: str


class FeedResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    items: list[FeedItemResponse]
    cache_hit: bool
    degraded: bool
    note: str | None = None


class TranscriptResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    video_id: str
    transcript: str
    source: str
    cache_hit: bool
    degraded: bool
    note: str | None = None


class SummaryResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    video_id: str
    summary: str
    cache_hit: bool
    stale: bool
    note: str | None = None


class QuotaResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    date: str
    units_consumed: int
    daily_limit: int
    warning_threshold: int
    warning: bool
    units_by_operation: dict[str, int]
    throttle_requests_last_minute: int
    throttle_queue_depth: int


class CacheNamespaceStatsResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    namespace: str
    entry_count: int
    approximate_bytes: int
    newest_stored_at: float | None
    expired_count: int


class CacheStatsResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    namespaces: list[CacheNamespaceStatsResponse]
    total_bytes: int


class CacheImportResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    imported: dict[str, int]


class AuthUrlResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    url: str


class AuthCodeRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    code: str = Field(min_length=1)


class AuthTokenResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    access_token: str
    expires_in: int | None = None
    refresh_token: str | None = None
    scope: str | None = None
    token_type: str | None = None
    caption_scope_granted: bool


def _empty_document() -> dict[str, Any]:
    return {}


class CacheExportDocument(BaseModel):
    model_config = ConfigDict(extra="ignore")

    namespaces: dict[str, dict[str, Any]] = Field(default_factory=_empty_document)
