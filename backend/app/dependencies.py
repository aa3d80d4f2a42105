from __future__ import annotations

from collections.abc import Callable
from functools import lru_cache, partial

from backend.app.config import AppSettings, load_settings
from backend.app.repositories.cache_policy import CacheSettings, ResourceKind, TtlPolicy
from backend.app.repositories.cache_store import (
    CacheStore,
    JsonFileCacheBackend,
    SharedSizeLimit,
)
from backend.app.repositories.quota_repository import QuotaTracker
from backend.app.repositories.settings_repository import CacheSettingsRepository
from backend.app.services.auth_service import GoogleAuthService
from backend.app.services.request_throttler import RequestThrottler
from backend.app.services.resource_fetchers import (
    CaptionFetcher,
    DescriptionFetcher,
    FeedFetcher,
    PlatformGateway,
)
from backend.app.services.summarization import ChatCompletionsSummarizer, SummaryOrchestrator
from backend.app.services.youtube_client import VideoPlatformClient, build_youtube_client
from backend.app.telemetry import TelemetryClient, build_telemetry_client

# Namespace names match the persisted document keys (`cached_feed`, ...).
CACHE_NAMESPACES: dict[str, ResourceKind] = {
    "cached_feed": ResourceKind.FEED,
    "cached_captions": ResourceKind.CAPTION,
    "cached_descriptions": ResourceKind.DESCRIPTION,
    "cached_summaries": ResourceKind.SUMMARY,
}
QUOTA_USAGE_FILENAME = "youtube_api_usage.json"


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    return load_settings()


@lru_cache(maxsize=1)
def get_telemetry() -> TelemetryClient:
    settings = get_settings()
    return build_telemetry_client(
        enabled=settings.telemetry_enabled,
        sink=settings.telemetry_sink,
    )


@lru_cache(maxsize=1)
def get_cache_settings_repository() -> CacheSettingsRepository:
    settings = get_settings()
    return CacheSettingsRepository(
        settings.cache_settings_path if settings.cache_persistence_enabled else None,
        defaults=CacheSettings(
            max_feed_age_hours=settings.default_max_feed_age_hours,
            max_summary_age_hours=settings.default_max_summary_age_hours,
            prefer_cache=settings.default_prefer_cache,
            auto_cleanup_enabled=settings.default_auto_cleanup_enabled,
            max_cache_size_mb=settings.default_max_cache_size_mb,
        ),
    )


def get_cache_settings() -> CacheSettings:
    return get_cache_settings_repository().get()


@lru_cache(maxsize=1)
def _cache_namespaces() -> tuple[dict[str, CacheStore], SharedSizeLimit]:
    settings = get_settings()
    policy = TtlPolicy(get_cache_settings)
    size_limit = SharedSizeLimit(get_cache_settings)
    stores: dict[str, CacheStore] = {}
    for namespace, kind in CACHE_NAMESPACES.items():
        secondary = (
            JsonFileCacheBackend(settings.cache_dir / f"{namespace}.json")
            if settings.cache_persistence_enabled
            else None
        )
        stores[namespace] = CacheStore(
            namespace,
            kind,
            policy,
            secondary=secondary,
            settings_provider=get_cache_settings,
            size_limit=size_limit,
        )
    return stores, size_limit


def get_cache_stores() -> dict[str, CacheStore]:
    return _cache_namespaces()[0]


def get_cache_size_limit() -> SharedSizeLimit:
    return _cache_namespaces()[1]


@lru_cache(maxsize=1)
def get_quota_tracker() -> QuotaTracker:
    settings = get_settings()
    return QuotaTracker(
        daily_limit=settings.youtube_daily_quota_limit,
        warning_fraction=settings.youtube_quota_warning_percent,
        persist_path=(
            settings.cache_dir / QUOTA_USAGE_FILENAME
            if settings.cache_persistence_enabled
            else None
        ),
    )


@lru_cache(maxsize=1)
def get_throttler() -> RequestThrottler:
    settings = get_settings()
    return RequestThrottler(
        max_requests_per_minute=settings.throttle_max_requests_per_minute,
        min_delay_seconds=settings.throttle_min_delay_seconds,
        backoff_seconds=settings.throttle_backoff_seconds,
        cycle_pause_seconds=settings.throttle_cycle_pause_seconds,
        telemetry=get_telemetry(),
    )


@lru_cache(maxsize=1)
def get_platform_gateway() -> PlatformGateway:
    # The transport times out first; this is only the outer guard.
    return PlatformGateway(
        throttler=get_throttler(),
        quota=get_quota_tracker(),
        timeout_seconds=get_settings().http_timeout_seconds * 2,
    )


def get_youtube_client_factory() -> Callable[[str], VideoPlatformClient]:
    return partial(build_youtube_client, timeout_seconds=get_settings().http_timeout_seconds)


@lru_cache(maxsize=1)
def get_feed_fetcher() -> FeedFetcher:
    settings = get_settings()
    return FeedFetcher(
        max_channels=settings.feed_max_channels,
        videos_per_channel=settings.feed_videos_per_channel,
        store=get_cache_stores()["cached_feed"],
        quota=get_quota_tracker(),
        gateway=get_platform_gateway(),
        client_factory=get_youtube_client_factory(),
        settings_provider=get_cache_settings,
        telemetry=get_telemetry(),
    )


@lru_cache(maxsize=1)
def get_description_fetcher() -> DescriptionFetcher:
    return DescriptionFetcher(
        store=get_cache_stores()["cached_descriptions"],
        quota=get_quota_tracker(),
        gateway=get_platform_gateway(),
        client_factory=get_youtube_client_factory(),
        settings_provider=get_cache_settings,
        telemetry=get_telemetry(),
    )


@lru_cache(maxsize=1)
def get_caption_fetcher() -> CaptionFetcher:
    settings = get_settings()
    return CaptionFetcher(
        caption_formats=settings.caption_format_preference,
        preferred_language=settings.caption_preferred_language,
        description_fetcher=get_description_fetcher(),
        description_fallback_enabled=settings.description_fallback_enabled,
        store=get_cache_stores()["cached_captions"],
        quota=get_quota_tracker(),
        gateway=get_platform_gateway(),
        client_factory=get_youtube_client_factory(),
        settings_provider=get_cache_settings,
        telemetry=get_telemetry(),
    )


@lru_cache(maxsize=1)
def get_summary_orchestrator() -> SummaryOrchestrator:
    settings = get_settings()
    return SummaryOrchestrator(
        summarizer=ChatCompletionsSummarizer(
            api_key=settings.openai_api_key,
            base_url=settings.openai_base_url,
            model=settings.openai_model,
            timeout_seconds=settings.http_timeout_seconds,
        ),
        store=get_cache_stores()["cached_summaries"],
        caption_fetcher=get_caption_fetcher(),
        max_tokens_per_summarization=settings.max_tokens_per_summarization,
        chars_per_token_estimate=settings.chars_per_token_estimate,
        batch_size=settings.summary_batch_size,
        timeout_seconds=settings.http_timeout_seconds,
        telemetry=get_telemetry(),
    )


@lru_cache(maxsize=1)
def get_auth_service() -> GoogleAuthService:
    settings = get_settings()
    return GoogleAuthService(
        client_id=settings.google_client_id,
        client_secret=settings.google_client_secret,
        redirect_uri=settings.google_redirect_uri,
        timeout_seconds=settings.http_timeout_seconds,
    )


def reset_cached_dependencies() -> None:
    get_auth_service.cache_clear()
    get_summary_orchestrator.cache_clear()
    get_caption_fetcher.cache_clear()
    get_description_fetcher.cache_clear()
    get_feed_fetcher.cache_clear()
    get_platform_gateway.cache_clear()
    get_throttler.cache_clear()
    get_quota_tracker.cache_clear()
    _cache_namespaces.cache_clear()
    get_cache_settings_repository.cache_clear()
    get_telemetry.cache_clear()
    get_settings.cache_clear()
