from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Sequence
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from typing import Any, Generic, TypeVar, cast
from uuid import uuid4

from backend.app.repositories.cache_policy import CacheSettings, ResourceKind, cache_key
from backend.app.repositories.cache_store import CacheStore
from backend.app.repositories.quota_repository import QuotaTracker
from backend.app.services.errors import (
    ErrorKind,
    FetchError,
    classify_platform_error,
    summarize_exception_message,
)
from backend.app.services.fallback_chain import (
    DEGRADED_NOTE,
    FetchStrategy,
    execute_with_fallback,
)
from backend.app.services.request_throttler import DEFAULT_PRIORITY, RequestThrottler
from backend.app.services.youtube_client import (
    UNIT_COSTS,
    CaptionTrack,
    ChannelVideo,
    VideoPlatformClient,
    build_youtube_client,
    caption_to_plain_text,
)
from backend.app.telemetry import TelemetryClient

LOGGER = logging.getLogger("subdigest.fetchers")

T = TypeVar("T")
R = TypeVar("R")

FEED_PRIORITY = 5
QUOTA_GUARD_NOTE = (
    "Daily API quota is nearly used up; showing cached data that may be outdated."
)
_ALL_RECOVERABLE: frozenset[ErrorKind] = frozenset(
    {ErrorKind.PERMISSION_DENIED, ErrorKind.UNKNOWN, ErrorKind.NOT_AVAILABLE}
)


@dataclass(frozen=True)
class FeedItem:
    id: str
    title: str
    thumbnail: str | None
    published_at: str
    channel_id: str | None
    channel_title: str | None
    video_url: str

    @classmethod
    def from_video(cls, video: ChannelVideo) -> FeedItem:
        return cls(
            id=video.video_id,
            title=video.title,
            thumbnail=video.thumbnail,
            published_at=video.published_at,
            channel_id=video.channel_id,
            channel_title=video.channel_title,
            video_url=video.video_url,
        )


@dataclass(frozen=True)
class Transcript:
    video_id: str
    text: str
    source: str


@dataclass(frozen=True)
class VideoDescription:
    video_id: str
    title: str
    description: str | None
    published_at: str | None


@dataclass(frozen=True)
class FetchOutcome(Generic[T]):
    value: T
    cache_hit: bool
    degraded: bool
    source: str
    note: str | None = None


class PlatformGateway:
    """Runs a single platform call through the throttler and counts its quota.

    The client's transport enforces the socket timeout. `timeout_seconds` here
    is an outer guard; a call that trips it still holds the dispatch slot until
    its worker thread returns, so at most one platform call is ever in flight.
    """

    def __init__(
        self,
        *,
        throttler: RequestThrottler,
        quota: QuotaTracker,
        timeout_seconds: float = 15.0,
    ) -> None:
        self._throttler = throttler
        self._quota = quota
        self._timeout_seconds = timeout_seconds

    async def call(
        self,
        operation: str,
        fn: Callable[[], R],
        *,
        priority: int = DEFAULT_PRIORITY,
    ) -> R:
        async def _run() -> R:
            worker = asyncio.ensure_future(asyncio.to_thread(fn))
            done, _ = await asyncio.wait({worker}, timeout=self._timeout_seconds)
            if worker in done:
                return worker.result()
            LOGGER.warning(
                "gateway call_timed_out operation=%s timeout_seconds=%s",
                operation,
                self._timeout_seconds,
            )
            await asyncio.wait({worker})
            if not worker.cancelled() and worker.exception() is not None:
                LOGGER.info(
                    "gateway late_failure operation=%s error=%s",
                    operation,
                    type(worker.exception()).__name__,
                )
            raise TimeoutError(f"{operation} exceeded {self._timeout_seconds}s")

        request_id = f"{operation}:{uuid4().hex[:8]}"
        result = await self._throttler.enqueue(request_id, _run, priority)
        self._quota.increment(UNIT_COSTS.get(operation, 1), operation=operation)
        return result


class _CachedResourceFetcher:
    def __init__(
        self,
        *,
        store: CacheStore,
        quota: QuotaTracker,
        gateway: PlatformGateway,
        settings_provider: Callable[[], CacheSettings],
        client_factory: Callable[[str], VideoPlatformClient] = build_youtube_client,
        telemetry: TelemetryClient | None = None,
    ) -> None:
        self._store = store
        self._quota = quota
        self._gateway = gateway
        self._settings_provider = settings_provider
        self._client_factory = client_factory
        self._telemetry = (telemetry or TelemetryClient.disabled()).bind(resource=store.kind)

    async def _fetch(
        self,
        *,
        key: str,
        resource: ResourceKind,
        primary: FetchStrategy[Any],
        alternatives: Sequence[FetchStrategy[Any]] = (),
        force_refresh: bool = False,
    ) -> FetchOutcome[Any]:
        if not force_refresh:
            cached = self._store.get(key)
            if cached is not None:
                LOGGER.info("fetch cache_hit resource=%s key=%s", resource.value, key)
                self._telemetry.emit("fetch.cache_hit")
                return FetchOutcome(value=cached, cache_hit=True, degraded=False, source="cache")

        if self._settings_provider().prefer_cache and self._quota.is_approaching_limit():
            stale = self._store.get(key, ignore_expiry=True)
            if stale is not None:
                LOGGER.warning(
                    "fetch quota_guard_cache resource=%s key=%s units_today=%s",
                    resource.value,
                    key,
                    self._quota.current_usage().units_consumed,
                )
                self._telemetry.emit("fetch.degraded", reason="quota_guard")
                return FetchOutcome(
                    value=stale,
                    cache_hit=True,
                    degraded=True,
                    source="cache",
                    note=QUOTA_GUARD_NOTE,
                )

        try:
            result = await execute_with_fallback(
                primary,
                alternatives,
                classify_platform_error,
                lambda: self._store.get(key, ignore_expiry=True),
            )
        except FetchError as exc:
            self._telemetry.emit("fetch.failed", kind=exc.kind)
            raise

        if result.degraded:
            self._telemetry.emit("fetch.degraded", reason=result.failure_kind)
            return FetchOutcome(
                value=result.value,
                cache_hit=True,
                degraded=True,
                source=result.source,
                note=DEGRADED_NOTE,
            )

        self._store.set(key, result.value)
        self._telemetry.emit("fetch.live", strategy=result.source)
        return FetchOutcome(
            value=result.value, cache_hit=False, degraded=False, source=result.source
        )


class FeedFetcher(_CachedResourceFetcher):
    def __init__(
        self,
        *,
        max_channels: int = 3,
        videos_per_channel: int = 3,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self._max_channels = max(1, max_channels)
        self._videos_per_channel = max(1, videos_per_channel)

    async def fetch_feed(
        self,
        access_token: str,
        principal_id: str,
        *,
        force_refresh: bool = False,
    ) -> FetchOutcome[list[FeedItem]]:
        client = _LazyClient(self._client_factory, access_token)
        outcome = await self._fetch(
            key=cache_key(ResourceKind.FEED, "subscriptions", principal_id),
            resource=ResourceKind.FEED,
            primary=FetchStrategy(
                "uploads_playlist", lambda: self._scan(client, use_search=False)
            ),
            alternatives=[
                FetchStrategy("channel_search", lambda: self._scan(client, use_search=True))
            ],
            force_refresh=force_refresh,
        )
        items = [_feed_item_from_cache(raw) for raw in cast(list[Any], outcome.value)]
        return _with_value(outcome, [item for item in items if item is not None])

    async def _scan(self, client: _LazyClient, *, use_search: bool) -> list[dict[str, Any]]:
        platform = await client.get()
        channels = await self._gateway.call(
            "subscriptions.list",
            lambda: platform.list_subscriptions(max_results=self._max_channels),
            priority=FEED_PRIORITY,
        )

        collected: list[FeedItem] = []
        skipped = 0
        for channel in channels[: self._max_channels]:
            try:
                videos = await self._channel_videos(platform, channel.channel_id, use_search)
            except Exception as exc:
                # A channel without uploads has no uploads playlist; the feed itself is fine.
                if classify_platform_error(exc) is not ErrorKind.NOT_AVAILABLE:
                    raise
                skipped += 1
                LOGGER.info(
                    "feed channel_skipped channel_id=%s reason=not_available detail=%s",
                    channel.channel_id,
                    summarize_exception_message(exc),
                )
                continue
            collected.extend(
                FeedItem.from_video(video) for video in videos[: self._videos_per_channel]
            )

        LOGGER.info(
            "feed scanned channels=%s skipped=%s videos=%s strategy=%s",
            min(len(channels), self._max_channels),
            skipped,
            len(collected),
            "search" if use_search else "uploads",
        )
        return [asdict(item) for item in sort_feed_items(collected)]

    async def _channel_videos(
        self, platform: VideoPlatformClient, channel_id: str, use_search: bool
    ) -> list[ChannelVideo]:
        if use_search:
            return await self._gateway.call(
                "search.list",
                lambda: platform.search_channel_videos(
                    channel_id, max_results=self._videos_per_channel
                ),
                priority=FEED_PRIORITY,
            )
        return await self._gateway.call(
            "playlistItems.list",
            lambda: platform.list_channel_uploads(
                channel_id, max_results=self._videos_per_channel
            ),
            priority=FEED_PRIORITY,
        )


class DescriptionFetcher(_CachedResourceFetcher):
    async def fetch_description(
        self,
        video_id: str,
        access_token: str,
        *,
        force_refresh: bool = False,
    ) -> FetchOutcome[VideoDescription]:
        client = _LazyClient(self._client_factory, access_token)

        async def _load() -> dict[str, Any]:
            platform = await client.get()
            metadata = await self._gateway.call(
                "videos.list", lambda: platform.fetch_video_metadata(video_id)
            )
            return asdict(
                VideoDescription(
                    video_id=metadata.video_id,
                    title=metadata.title,
                    description=metadata.description,
                    published_at=metadata.published_at,
                )
            )

        outcome = await self._fetch(
            key=cache_key(ResourceKind.DESCRIPTION, video_id),
            resource=ResourceKind.DESCRIPTION,
            primary=FetchStrategy("videos_list", _load),
            force_refresh=force_refresh,
        )
        raw = cast(dict[str, Any], outcome.value)
        return _with_value(
            outcome,
            VideoDescription(
                video_id=str(raw.get("video_id") or video_id),
                title=str(raw.get("title") or video_id),
                description=_optional_str(raw.get("description")),
                published_at=_optional_str(raw.get("published_at")),
            ),
        )


class CaptionFetcher(_CachedResourceFetcher):
    def __init__(
        self,
        *,
        caption_formats: Sequence[str] = ("srt", "vtt"),
        preferred_language: str = "en",
        description_fetcher: DescriptionFetcher | None = None,
        description_fallback_enabled: bool = False,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self._caption_formats = tuple(caption_formats) or ("srt",)
        self._preferred_language = preferred_language
        self._description_fetcher = description_fetcher
        self._description_fallback_enabled = description_fallback_enabled

    async def fetch_transcript(
        self,
        video_id: str,
        access_token: str,
        *,
        force_refresh: bool = False,
    ) -> FetchOutcome[Transcript]:
        client = _LazyClient(self._client_factory, access_token)
        tracks = _TrackListing(self._gateway, client, video_id)
        primary_format, *other_formats = self._caption_formats

        async def _download(*, caption_format: str, preferred: bool) -> dict[str, Any]:
            ordered = order_caption_tracks(await tracks.get(), self._preferred_language)
            candidates = ordered[:1] if preferred else ordered[1:]
            if not candidates:
                raise FetchError(
                    ErrorKind.UNKNOWN, "No alternative caption track to try.", detail=video_id
                )
            last_error: Exception | None = None
            for track in candidates:
                try:
                    return await self._download_track(
                        client, video_id, track, caption_format=caption_format
                    )
                except FetchError as exc:
                    last_error = exc
                    if exc.kind is not ErrorKind.UNKNOWN:
                        raise
            assert last_error is not None
            raise last_error

        primary: FetchStrategy[Any] = FetchStrategy(
            f"caption_{primary_format}",
            lambda: _download(caption_format=primary_format, preferred=True),
        )
        alternatives: list[FetchStrategy[Any]] = [
            FetchStrategy(
                f"caption_{caption_format}",
                lambda caption_format=caption_format: _download(
                    caption_format=caption_format, preferred=True
                ),
            )
            for caption_format in other_formats
        ]
        alternatives.append(
            FetchStrategy(
                "caption_other_tracks",
                lambda: _download(caption_format=primary_format, preferred=False),
            )
        )
        if self._description_fallback_enabled and self._description_fetcher is not None:
            alternatives.append(
                FetchStrategy(
                    "video_description",
                    lambda: self._description_as_transcript(video_id, access_token),
                    recovers=_ALL_RECOVERABLE,
                )
            )

        outcome = await self._fetch(
            key=cache_key(ResourceKind.CAPTION, video_id),
            resource=ResourceKind.CAPTION,
            primary=primary,
            alternatives=alternatives,
            force_refresh=force_refresh,
        )
        raw = cast(dict[str, Any], outcome.value)
        return _with_value(
            outcome,
            Transcript(
                video_id=str(raw.get("video_id") or video_id),
                text=str(raw.get("text") or ""),
                source=str(raw.get("source") or "captions"),
            ),
        )

    async def _download_track(
        self,
        client: _LazyClient,
        video_id: str,
        track: CaptionTrack,
        *,
        caption_format: str,
    ) -> dict[str, Any]:
        platform = await client.get()
        raw_caption = await self._gateway.call(
            "captions.download",
            lambda: platform.download_caption(track.caption_id, caption_format=caption_format),
        )
        text = caption_to_plain_text(raw_caption)
        if not text:
            raise FetchError(
                ErrorKind.UNKNOWN,
                "Caption track was empty.",
                detail=f"video_id={video_id} caption_id={track.caption_id}",
            )
        return asdict(
            Transcript(video_id=video_id, text=text, source=f"captions_{caption_format}")
        )

    async def _description_as_transcript(self, video_id: str, access_token: str) -> dict[str, Any]:
        assert self._description_fetcher is not None
        outcome = await self._description_fetcher.fetch_description(video_id, access_token)
        description = outcome.value.description
        if not description:
            raise FetchError(
                ErrorKind.NOT_AVAILABLE,
                "No captions or description are available for this video.",
            )
        LOGGER.info("caption description_fallback_used video_id=%s", video_id)
        return asdict(
            Transcript(
                video_id=video_id,
                text=f"{outcome.value.title}\n\n{description}",
                source="description",
            )
        )


class _LazyClient:
    """Builds the platform client on first use, off the event loop."""

    def __init__(self, factory: Callable[[str], VideoPlatformClient], access_token: str) -> None:
        self._factory = factory
        self._access_token = access_token
        self._client: VideoPlatformClient | None = None

    async def get(self) -> VideoPlatformClient:
        if self._client is None:
            self._client = await asyncio.to_thread(self._factory, self._access_token)
        return self._client


class _TrackListing:
    """Lists caption tracks once per fetch; the outcome (tracks or error) is reused."""

    def __init__(self, gateway: PlatformGateway, client: _LazyClient, video_id: str) -> None:
        self._gateway = gateway
        self._client = client
        self._video_id = video_id
        self._tracks: list[CaptionTrack] | None = None
        self._error: Exception | None = None

    async def get(self) -> list[CaptionTrack]:
        if self._error is not None:
            raise self._error
        if self._tracks is not None:
            return self._tracks
        try:
            platform = await self._client.get()
            tracks = await self._gateway.call(
                "captions.list", lambda: platform.list_caption_tracks(self._video_id)
            )
        except Exception as exc:
            self._error = exc
            raise
        if not tracks:
            self._error = FetchError(
                ErrorKind.NOT_AVAILABLE, "No captions found for this video."
            )
            raise self._error
        self._tracks = tracks
        return tracks


def order_caption_tracks(tracks: Sequence[CaptionTrack], language: str) -> list[CaptionTrack]:
    """Preferred-language tracks first (manual before auto-generated), rest in listing order."""
    normalized = language.lower()

    def _rank(track: CaptionTrack) -> tuple[int, int]:
        track_language = (track.language or "").lower()
        language_rank = 0 if track_language.split("-")[0] == normalized else 1
        kind_rank = 1 if (track.track_kind or "").lower() == "asr" else 0
        return (language_rank, kind_rank)

    return sorted(tracks, key=_rank)


def sort_feed_items(items: Sequence[FeedItem]) -> list[FeedItem]:
    """Newest first; equal timestamps keep discovery order."""
    return sorted(items, key=lambda item: _parse_datetime_utc(item.published_at), reverse=True)


def _parse_datetime_utc(raw_value: str | None) -> datetime:
    if raw_value is None:
        return datetime.min.replace(tzinfo=UTC)
    try:
        parsed = datetime.fromisoformat(raw_value.replace("Z", "+00:00"))
    except ValueError:
        return datetime.min.replace(tzinfo=UTC)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def _feed_item_from_cache(raw: object) -> FeedItem | None:
    if not isinstance(raw, dict):
        return None
    item = cast(dict[str, Any], raw)
    video_id = item.get("id")
    title = item.get("title")
    published_at = item.get("published_at")
    if not isinstance(video_id, str) or not isinstance(title, str):
        return None
    if not isinstance(published_at, str):
        return None
    return FeedItem(
        id=video_id,
        title=title,
        thumbnail=_optional_str(item.get("thumbnail")),
        published_at=published_at,
        channel_id=_optional_str(item.get("channel_id")),
        channel_title=_optional_str(item.get("channel_title")),
        video_url=_optional_str(item.get("video_url"))
        or f"https://www.youtube.com/watch?v={video_id}",
    )


def _optional_str(value: object) -> str | None:
    if isinstance(value, str) and value:
        return value
    return None


def _with_value(outcome: FetchOutcome[Any], value: T) -> FetchOutcome[T]:
    return FetchOutcome(
        value=value,
        cache_hit=outcome.cache_hit,
        degraded=outcome.degraded,
        source=outcome.source,
        note=outcome.note,
    )


