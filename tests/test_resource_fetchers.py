from __future__ import annotations

import asyncio
import threading
import time
from dataclasses import asdict, dataclass, field

import pytest

from backend.app.repositories.cache_policy import (
    CacheSettings,
    ResourceKind,
    TtlPolicy,
    cache_key,
)
from backend.app.repositories.cache_store import CacheStore
from backend.app.repositories.quota_repository import QuotaTracker
from backend.app.services.errors import ErrorKind, FetchError
from backend.app.services.request_throttler import RequestThrottler
from backend.app.services.resource_fetchers import (
    QUOTA_GUARD_NOTE,
    CaptionFetcher,
    DescriptionFetcher,
    FeedFetcher,
    FeedItem,
    PlatformGateway,
    order_caption_tracks,
    sort_feed_items,
)
from backend.app.services.youtube_client import (
    CaptionTrack,
    ChannelVideo,
    SubscribedChannel,
    VideoMetadata,
    caption_to_plain_text,
    uploads_playlist_id,
)
from tests.fakes import FakeClock

HOUR = 3600.0

SRT_PAYLOAD = """1
00:00:00,000 --> 00:00:02,000
Hello and welcome.

2
00:00:02,000 --> 00:00:04,000
Today we talk about <i>caching</i>.
"""

VTT_PAYLOAD = """WEBVTT
Kind: captions
Language: en

00:00:00.000 --> 00:00:02.000
Hello from the vtt track.

00:00:02.000 --> 00:00:04.000
Hello from the vtt track.
"""


@dataclass
class _FakePlatform:
    subscriptions: list[SubscribedChannel] = field(default_factory=list)
    uploads: dict[str, list[ChannelVideo]] = field(default_factory=dict)
    search_results: dict[str, list[ChannelVideo]] = field(default_factory=dict)
    upload_error: Exception | None = None
    upload_errors: dict[str, Exception] = field(default_factory=dict)
    search_error: Exception | None = None
    tracks: list[CaptionTrack] = field(default_factory=list)
    captions: dict[tuple[str, str], str] = field(default_factory=dict)
    caption_errors: dict[tuple[str, str], Exception] = field(default_factory=dict)
    metadata: VideoMetadata | None = None
    calls: list[str] = field(default_factory=list)

    def list_subscriptions(self, *, max_results: int) -> list[SubscribedChannel]:
        self.calls.append("subscriptions.list")
        return list(self.subscriptions)

    def list_channel_uploads(self, channel_id: str, *, max_results: int) -> list[ChannelVideo]:
        self.calls.append("playlistItems.list")
        if self.upload_error is not None:
            raise self.upload_error
        if channel_id in self.upload_errors:
            raise self.upload_errors[channel_id]
        return list(self.uploads.get(channel_id, []))

    def search_channel_videos(self, channel_id: str, *, max_results: int) -> list[ChannelVideo]:
        self.calls.append("search.list")
        if self.search_error is not None:
            raise self.search_error
        return list(self.search_results.get(channel_id, []))

    def list_caption_tracks(self, video_id: str) -> list[CaptionTrack]:
        self.calls.append("captions.list")
        return list(self.tracks)

    def download_caption(self, caption_id: str, *, caption_format: str) -> str:
        self.calls.append(f"captions.download:{caption_id}:{caption_format}")
        error = self.caption_errors.get((caption_id, caption_format))
        if error is not None:
            raise error
        return self.captions[(caption_id, caption_format)]

    def fetch_video_metadata(self, video_id: str) -> VideoMetadata:
        self.calls.append("videos.list")
        if self.metadata is None:
            raise FetchError(ErrorKind.NOT_AVAILABLE, f"Video {video_id} was not found.")
        return self.metadata


class _Harness:
    def __init__(
        self,
        platform: _FakePlatform,
        *,
        settings: CacheSettings | None = None,
        quota: QuotaTracker | None = None,
    ) -> None:
        self.platform = platform
        self.settings = settings or CacheSettings()
        self.clock = FakeClock()
        self.quota = quota or QuotaTracker()
        self.throttler = RequestThrottler(min_delay_seconds=0.0, cycle_pause_seconds=0.0)
        self.gateway = PlatformGateway(
            throttler=self.throttler, quota=self.quota, timeout_seconds=5.0
        )
        self.factory_calls: list[str] = []

    def store(self, kind: ResourceKind) -> CacheStore:
        return CacheStore(
            f"cached_{kind.value}",
            kind,
            TtlPolicy(lambda: self.settings),
            settings_provider=lambda: self.settings,
            clock=self.clock,
        )

    def client_factory(self, access_token: str) -> _FakePlatform:
        self.factory_calls.append(access_token)
        return self.platform

    def common(self, store: CacheStore) -> dict[str, object]:
        return {
            "store": store,
            "quota": self.quota,
            "gateway": self.gateway,
            "settings_provider": lambda: self.settings,
            "client_factory": self.client_factory,
        }


def _video(video_id: str, published_at: str, channel_id: str = "UC1") -> ChannelVideo:
    return ChannelVideo(
        video_id=video_id,
        title=f"Video {video_id}",
        published_at=published_at,
        thumbnail=None,
        channel_id=channel_id,
        channel_title="Channel",
    )


def _feed_platform() -> _FakePlatform:
    return _FakePlatform(
        subscriptions=[
            SubscribedChannel(f"UC{index}", f"Channel {index}") for index in range(1, 5)
        ],
        uploads={
            "UC1": [
                _video(f"a{index}", f"2024-05-0{index}T10:00:00Z", "UC1") for index in range(1, 5)
            ],
            "UC2": [_video("b1", "2024-05-09T10:00:00Z", "UC2")],
            "UC3": [_video("c1", "2024-05-03T10:00:00Z", "UC3")],
            "UC4": [_video("d1", "2024-06-01T10:00:00Z", "UC4")],
        },
        search_results={
            "UC1": [_video("s1", "2024-05-05T10:00:00Z", "UC1")],
            "UC2": [],
            "UC3": [],
        },
    )


@pytest.mark.asyncio
async def test_fresh_feed_cache_issues_zero_live_calls() -> None:
    harness = _Harness(_feed_platform())
    store = harness.store(ResourceKind.FEED)
    cached_item = FeedItem(
        id="cached",
        title="Cached video",
        thumbnail=None,
        published_at="2024-05-01T00:00:00Z",
        channel_id="UC1",
        channel_title="Channel",
        video_url="https://www.youtube.com/watch?v=cached",
    )
    store.set(cache_key(ResourceKind.FEED, "subscriptions", "user-1"), [asdict(cached_item)])
    harness.clock.advance(23 * HOUR)
    fetcher = FeedFetcher(**harness.common(store))  # type: ignore[arg-type]

    outcome = await fetcher.fetch_feed("token", "user-1")

    assert outcome.cache_hit is True
    assert outcome.degraded is False
    assert outcome.value == [cached_item]
    assert harness.platform.calls == []
    assert harness.factory_calls == []
    assert harness.quota.current_usage().units_consumed == 0


@pytest.mark.asyncio
async def test_live_feed_is_bounded_sorted_cached_and_counted() -> None:
    harness = _Harness(_feed_platform())
    store = harness.store(ResourceKind.FEED)
    fetcher = FeedFetcher(**harness.common(store))  # type: ignore[arg-type]

    outcome = await fetcher.fetch_feed("token", "user-1")

    assert outcome.cache_hit is False
    assert [item.id for item in outcome.value] == ["b1", "a3", "c1", "a2", "a1"]
    assert harness.platform.calls.count("playlistItems.list") == 3
    usage = harness.quota.current_usage()
    assert usage.units_consumed == 4
    assert usage.units_by_operation == {"subscriptions.list": 1, "playlistItems.list": 3}

    again = await fetcher.fetch_feed("token", "user-1")
    assert again.cache_hit is True
    assert [item.id for item in again.value] == [item.id for item in outcome.value]
    assert harness.quota.current_usage().units_consumed == 4
    await harness.throttler.aclose()


@pytest.mark.asyncio
async def test_feed_falls_back_to_search_on_permission_error() -> None:
    platform = _feed_platform()
    platform.upload_error = FetchError(ErrorKind.PERMISSION_DENIED)
    harness = _Harness(platform)
    store = harness.store(ResourceKind.FEED)
    fetcher = FeedFetcher(**harness.common(store))  # type: ignore[arg-type]

    outcome = await fetcher.fetch_feed("token", "user-1")

    assert outcome.degraded is False
    assert outcome.source == "channel_search"
    assert [item.id for item in outcome.value] == ["s1"]
    assert harness.platform.calls.count("search.list") == 3
    assert harness.quota.current_usage().units_by_operation["search.list"] == 300
    await harness.throttler.aclose()


@pytest.mark.asyncio
async def test_feed_quota_error_serves_expired_cache_without_search() -> None:
    platform = _feed_platform()
    platform.upload_error = FetchError(ErrorKind.QUOTA_EXCEEDED)
    harness = _Harness(platform)
    store = harness.store(ResourceKind.FEED)
    key = cache_key(ResourceKind.FEED, "subscriptions", "user-1")
    store.set(key, [asdict(FeedItem.from_video(_video("old", "2024-01-01T00:00:00Z")))])
    harness.clock.advance(48 * HOUR)
    fetcher = FeedFetcher(**harness.common(store))  # type: ignore[arg-type]

    outcome = await fetcher.fetch_feed("token", "user-1")

    assert outcome.degraded is True
    assert outcome.note is not None
    assert [item.id for item in outcome.value] == ["old"]
    assert "search.list" not in harness.platform.calls
    await harness.throttler.aclose()


@pytest.mark.asyncio
async def test_near_quota_limit_prefers_expired_cache_over_live_calls() -> None:
    quota = QuotaTracker(daily_limit=10_000)
    quota.increment(8_001)
    harness = _Harness(_feed_platform(), quota=quota)
    store = harness.store(ResourceKind.FEED)
    key = cache_key(ResourceKind.FEED, "subscriptions", "user-1")
    store.set(key, [asdict(FeedItem.from_video(_video("old", "2024-01-01T00:00:00Z")))])
    harness.clock.advance(48 * HOUR)
    fetcher = FeedFetcher(**harness.common(store))  # type: ignore[arg-type]

    outcome = await fetcher.fetch_feed("token", "user-1")

    assert outcome.degraded is True
    assert outcome.note == QUOTA_GUARD_NOTE
    assert harness.platform.calls == []


@pytest.mark.asyncio
async def test_near_quota_limit_goes_live_when_cache_is_not_preferred() -> None:
    quota = QuotaTracker(daily_limit=10_000)
    quota.increment(8_001)
    harness = _Harness(
        _feed_platform(), settings=CacheSettings(prefer_cache=False), quota=quota
    )
    store = harness.store(ResourceKind.FEED)
    key = cache_key(ResourceKind.FEED, "subscriptions", "user-1")
    store.set(key, [asdict(FeedItem.from_video(_video("old", "2024-01-01T00:00:00Z")))])
    harness.clock.advance(48 * HOUR)
    fetcher = FeedFetcher(**harness.common(store))  # type: ignore[arg-type]

    outcome = await fetcher.fetch_feed("token", "user-1")

    assert outcome.degraded is False
    assert outcome.note is None
    assert "subscriptions.list" in harness.platform.calls
    assert "old" not in [item.id for item in outcome.value]
    await harness.throttler.aclose()


@pytest.mark.asyncio
async def test_channel_without_uploads_playlist_is_skipped() -> None:
    platform = _feed_platform()
    platform.upload_errors["UC2"] = FetchError(
        ErrorKind.NOT_AVAILABLE, "Playlist UU2 was not found."
    )
    harness = _Harness(platform)
    store = harness.store(ResourceKind.FEED)
    fetcher = FeedFetcher(**harness.common(store))  # type: ignore[arg-type]

    outcome = await fetcher.fetch_feed("token", "user-1")

    assert outcome.degraded is False
    assert outcome.source == "uploads_playlist"
    assert [item.id for item in outcome.value] == ["a3", "c1", "a2", "a1"]
    assert harness.platform.calls.count("playlistItems.list") == 3
    assert "search.list" not in harness.platform.calls
    await harness.throttler.aclose()


@pytest.mark.asyncio
async def test_timed_out_call_keeps_the_dispatch_slot_until_it_returns() -> None:
    throttler = RequestThrottler(min_delay_seconds=0.0, cycle_pause_seconds=0.0)
    gateway = PlatformGateway(throttler=throttler, quota=QuotaTracker(), timeout_seconds=0.05)
    lock = threading.Lock()
    running = 0
    peak = 0

    def slow_call() -> str:
        nonlocal running, peak
        with lock:
            running += 1
            peak = max(peak, running)
        time.sleep(0.2)
        with lock:
            running -= 1
        return "late"

    results = await asyncio.gather(
        gateway.call("videos.list", slow_call),
        gateway.call("videos.list", slow_call),
        return_exceptions=True,
    )

    assert all(isinstance(result, TimeoutError) for result in results)
    assert peak == 1
    await throttler.aclose()


@pytest.mark.asyncio
async def test_caption_permission_error_recovers_with_alternative_format() -> None:
    platform = _FakePlatform(
        tracks=[CaptionTrack("cap-en", "en", "standard", "English")],
        captions={("cap-en", "vtt"): VTT_PAYLOAD},
        caption_errors={("cap-en", "srt"): FetchError(ErrorKind.PERMISSION_DENIED)},
    )
    harness = _Harness(platform)
    fetcher = CaptionFetcher(
        caption_formats=("srt", "vtt"),
        **harness.common(harness.store(ResourceKind.CAPTION)),  # type: ignore[arg-type]
    )

    outcome = await fetcher.fetch_transcript("video-1", "token")

    assert outcome.degraded is False
    assert outcome.cache_hit is False
    assert outcome.value.text == "Hello from the vtt track."
    assert outcome.value.source == "captions_vtt"
    assert platform.calls.count("captions.list") == 1
    assert harness.quota.current_usage().units_consumed == 50 + 200
    await harness.throttler.aclose()


@pytest.mark.asyncio
async def test_caption_not_available_is_raised_even_with_cached_entry() -> None:
    harness = _Harness(_FakePlatform(tracks=[]))
    store = harness.store(ResourceKind.CAPTION)
    store.set(
        cache_key(ResourceKind.CAPTION, "video-1"),
        {"video_id": "video-1", "text": "old transcript", "source": "captions_srt"},
    )
    harness.clock.advance(30 * 24 * HOUR)
    fetcher = CaptionFetcher(**harness.common(store))  # type: ignore[arg-type]

    with pytest.raises(FetchError) as raised:
        await fetcher.fetch_transcript("video-1", "token")

    assert raised.value.kind is ErrorKind.NOT_AVAILABLE
    await harness.throttler.aclose()


@pytest.mark.asyncio
async def test_caption_uses_description_only_when_enabled() -> None:
    platform = _FakePlatform(
        tracks=[],
        metadata=VideoMetadata(
            video_id="video-1",
            title="A talk",
            description="In this talk we cover caching.",
            published_at="2024-05-01T00:00:00Z",
            channel_title="Channel",
        ),
    )
    harness = _Harness(platform)
    description_fetcher = DescriptionFetcher(
        **harness.common(harness.store(ResourceKind.DESCRIPTION))  # type: ignore[arg-type]
    )
    fetcher = CaptionFetcher(
        description_fetcher=description_fetcher,
        description_fallback_enabled=True,
        **harness.common(harness.store(ResourceKind.CAPTION)),  # type: ignore[arg-type]
    )

    outcome = await fetcher.fetch_transcript("video-1", "token")

    assert outcome.value.source == "description"
    assert outcome.value.text == "A talk\n\nIn this talk we cover caching."
    assert outcome.source == "video_description"
    await harness.throttler.aclose()


@pytest.mark.asyncio
async def test_caption_falls_back_to_other_tracks() -> None:
    platform = _FakePlatform(
        tracks=[
            CaptionTrack("cap-de", "de", "standard", "Deutsch"),
            CaptionTrack("cap-en", "en", "standard", "English"),
        ],
        captions={("cap-de", "srt"): SRT_PAYLOAD},
        caption_errors={
            ("cap-en", "srt"): RuntimeError("connection reset"),
            ("cap-en", "vtt"): RuntimeError("connection reset"),
        },
    )
    harness = _Harness(platform)
    fetcher = CaptionFetcher(
        **harness.common(harness.store(ResourceKind.CAPTION))  # type: ignore[arg-type]
    )

    outcome = await fetcher.fetch_transcript("video-1", "token")

    assert outcome.source == "caption_other_tracks"
    assert outcome.value.text == "Hello and welcome. Today we talk about caching."
    await harness.throttler.aclose()


def test_caption_tracks_prefer_language_then_manual_tracks() -> None:
    tracks = [
        CaptionTrack("asr-en", "en", "asr", None),
        CaptionTrack("fr", "fr", "standard", None),
        CaptionTrack("en-gb", "en-GB", "standard", None),
    ]

    ordered = order_caption_tracks(tracks, "en")

    assert [track.caption_id for track in ordered] == ["en-gb", "asr-en", "fr"]


def test_feed_sort_is_newest_first_and_stable() -> None:
    items = [
        FeedItem.from_video(_video("first", "2024-05-01T10:00:00Z")),
        FeedItem.from_video(_video("tie-a", "2024-05-02T10:00:00Z")),
        FeedItem.from_video(_video("tie-b", "2024-05-02T10:00:00+00:00")),
        FeedItem.from_video(_video("broken", "not-a-date")),
    ]

    assert [item.id for item in sort_feed_items(items)] == ["tie-a", "tie-b", "first", "broken"]


def test_caption_payloads_convert_to_plain_text() -> None:
    assert caption_to_plain_text(SRT_PAYLOAD) == "Hello and welcome. Today we talk about caching."
    assert caption_to_plain_text(VTT_PAYLOAD) == "Hello from the vtt track."


def test_uploads_playlist_is_derived_from_channel_id() -> None:
    assert uploads_playlist_id("UCabc123") == "UUabc123"
    assert uploads_playlist_id("custom") == "custom"
