from __future__ import annotations

import html
import logging
import re
from dataclasses import dataclass
from importlib import import_module
from typing import Any, Protocol, cast

from backend.app.services.errors import ErrorKind, FetchError

LOGGER = logging.getLogger("subdigest.youtube")

# Documented YouTube Data API v3 quota costs per call.
UNIT_COSTS: dict[str, int] = {
    "subscriptions.list": 1,
    "playlistItems.list": 1,
    "search.list": 100,
    "videos.list": 1,
    "captions.list": 50,
    "captions.download": 200,
}


@dataclass(frozen=True)
class SubscribedChannel:
    channel_id: str
    title: str | None


@dataclass(frozen=True)
class ChannelVideo:
    video_id: str
    title: str
    published_at: str
    thumbnail: str | None
    channel_id: str | None
    channel_title: str | None

    @property
    def video_url(self) -> str:
        return f"https://www.youtube.com/watch?v={self.video_id}"


@dataclass(frozen=True)
class CaptionTrack:
    caption_id: str
    language: str | None
    track_kind: str | None
    name: str | None


@dataclass(frozen=True)
class VideoMetadata:
    video_id: str
    title: str
    description: str | None
    published_at: str | None
    channel_title: str | None


class VideoPlatformClient(Protocol):
    """Blocking platform calls; fetchers run them off the event loop."""

    def list_subscriptions(self, *, max_results: int) -> list[SubscribedChannel]:
        ...

    def list_channel_uploads(self, channel_id: str, *, max_results: int) -> list[ChannelVideo]:
        ...

    def search_channel_videos(self, channel_id: str, *, max_results: int) -> list[ChannelVideo]:
        ...

    def list_caption_tracks(self, video_id: str) -> list[CaptionTrack]:
        ...

    def download_caption(self, caption_id: str, *, caption_format: str) -> str:
        ...

    def fetch_video_metadata(self, video_id: str) -> VideoMetadata:
        ...


class YouTubeDataClient:
    def __init__(self, service: Any) -> None:
        self._service = service

    def list_subscriptions(self, *, max_results: int) -> list[SubscribedChannel]:
        response = cast(
            dict[str, Any],
            self._service.subscriptions()
            .list(
                part="snippet",
                mine=True,
                maxResults=max(1, min(50, max_results)),
                order="relevance",
            )
            .execute(),
        )
        channels: list[SubscribedChannel] = []
        for item in _as_list(response.get("items")):
            snippet = _as_dict(_as_dict(item).get("snippet"))
            resource = _as_dict(snippet.get("resourceId"))
            channel_id = _coerce_nonempty_string(resource.get("channelId"))
            if channel_id is None:
                continue
            channels.append(
                SubscribedChannel(
                    channel_id=channel_id,
                    title=_coerce_nonempty_string(snippet.get("title")),
                )
            )
        return channels

    def list_channel_uploads(self, channel_id: str, *, max_results: int) -> list[ChannelVideo]:
        response = cast(
            dict[str, Any],
            self._service.playlistItems()
            .list(
                part="snippet,contentDetails",
                playlistId=uploads_playlist_id(channel_id),
                maxResults=max(1, min(50, max_results)),
            )
            .execute(),
        )
        videos: list[ChannelVideo] = []
        for item in _as_list(response.get("items")):
            item_dict = _as_dict(item)
            snippet = _as_dict(item_dict.get("snippet"))
            content_details = _as_dict(item_dict.get("contentDetails"))
            video_id = _coerce_nonempty_string(
                content_details.get("videoId")
            ) or _coerce_nonempty_string(_as_dict(snippet.get("resourceId")).get("videoId"))
            title = _coerce_nonempty_string(snippet.get("title"))
            published_at = _coerce_nonempty_string(
                content_details.get("videoPublishedAt")
            ) or _coerce_nonempty_string(snippet.get("publishedAt"))
            if video_id is None or title is None or published_at is None:
                continue
            videos.append(
                ChannelVideo(
                    video_id=video_id,
                    title=title,
                    published_at=published_at,
                    thumbnail=_best_thumbnail(snippet),
                    channel_id=_coerce_nonempty_string(snippet.get("channelId")) or channel_id,
                    channel_title=_coerce_nonempty_string(snippet.get("channelTitle")),
                )
            )
        return videos

    def search_channel_videos(self, channel_id: str, *, max_results: int) -> list[ChannelVideo]:
        response = cast(
            dict[str, Any],
            self._service.search()
            .list(
                part="snippet",
                channelId=channel_id,
                maxResults=max(1, min(50, max_results)),
                order="date",
                type="video",
            )
            .execute(),
        )
        videos: list[ChannelVideo] = []
        for item in _as_list(response.get("items")):
            item_dict = _as_dict(item)
            snippet = _as_dict(item_dict.get("snippet"))
            video_id = _coerce_nonempty_string(_as_dict(item_dict.get("id")).get("videoId"))
            # search.list returns HTML-escaped snippet text, unlike playlistItems.list.
            title = _coerce_nonempty_string(snippet.get("title"))
            published_at = _coerce_nonempty_string(snippet.get("publishedAt"))
            if video_id is None or title is None or published_at is None:
                continue
            channel_title = _coerce_nonempty_string(snippet.get("channelTitle"))
            videos.append(
                ChannelVideo(
                    video_id=video_id,
                    title=html.unescape(title),
                    published_at=published_at,
                    thumbnail=_best_thumbnail(snippet),
                    channel_id=channel_id,
                    channel_title=html.unescape(channel_title) if channel_title else None,
                )
            )
        return videos

    def list_caption_tracks(self, video_id: str) -> list[CaptionTrack]:
        response = cast(
            dict[str, Any],
            self._service.captions().list(part="snippet", videoId=video_id).execute(),
        )
        tracks: list[CaptionTrack] = []
        for item in _as_list(response.get("items")):
            item_dict = _as_dict(item)
            caption_id = _coerce_nonempty_string(item_dict.get("id"))
            if caption_id is None:
                continue
            snippet = _as_dict(item_dict.get("snippet"))
            tracks.append(
                CaptionTrack(
                    caption_id=caption_id,
                    language=_coerce_nonempty_string(snippet.get("language")),
                    track_kind=_coerce_nonempty_string(snippet.get("trackKind")),
                    name=_coerce_nonempty_string(snippet.get("name")),
                )
            )
        return tracks

    def download_caption(self, caption_id: str, *, caption_format: str) -> str:
        payload = self._service.captions().download(id=caption_id, tfmt=caption_format).execute()
        if isinstance(payload, bytes):
            return payload.decode("utf-8", errors="replace")
        if isinstance(payload, str):
            return payload
        raise FetchError(
            ErrorKind.UNKNOWN,
            "Caption download returned an unexpected payload.",
            detail=type(payload).__name__,
        )

    def fetch_video_metadata(self, video_id: str) -> VideoMetadata:
        response = cast(
            dict[str, Any],
            self._service.videos().list(part="snippet", id=video_id, maxResults=1).execute(),
        )
        items = _as_list(response.get("items"))
        if not items:
            raise FetchError(ErrorKind.NOT_AVAILABLE, f"Video {video_id} was not found.")

        snippet = _as_dict(_as_dict(items[0]).get("snippet"))
        return VideoMetadata(
            video_id=video_id,
            title=_coerce_nonempty_string(snippet.get("title")) or video_id,
            description=_coerce_nonempty_string(snippet.get("description")),
            published_at=_coerce_nonempty_string(snippet.get("publishedAt")),
            channel_title=_coerce_nonempty_string(snippet.get("channelTitle")),
        )


def build_youtube_client(
    access_token: str, *, timeout_seconds: float = 15.0
) -> YouTubeDataClient:
    """Build a Data API client whose socket reads give up after `timeout_seconds`."""
    try:
        credentials_module = import_module("google.oauth2.credentials")
        transport_module = import_module("google_auth_httplib2")
        httplib2_module = import_module("httplib2")
        discovery_module = import_module("googleapiclient.discovery")
    except ImportError as exc:  # pragma: no cover - dependency controlled at runtime
        raise FetchError(
            ErrorKind.UNKNOWN,
            "YouTube access requires the google-api-python-client and google-auth packages.",
        ) from exc

    credentials_cls: Any = credentials_module.Credentials
    authorized_http_cls: Any = transport_module.AuthorizedHttp
    http_cls: Any = httplib2_module.Http
    build_fn: Any = discovery_module.build
    credentials = credentials_cls(token=access_token)
    http = authorized_http_cls(credentials, http=http_cls(timeout=timeout_seconds))
    service = build_fn("youtube", "v3", http=http, cache_discovery=False)
    return YouTubeDataClient(service)


def uploads_playlist_id(channel_id: str) -> str:
    # Every channel's uploads playlist is its ID with the "UC" prefix swapped for "UU".
    if channel_id.startswith("UC"):
        return f"UU{channel_id[2:]}"
    return channel_id


_SRT_INDEX_LINE = re.compile(r"^\d+$")
_TIMING_LINE = re.compile(
    r"^\s*\d{1,2}:\d{2}(?::\d{2})?[.,]\d{3}\s*(?:-->|,)\s*\d{1,2}:\d{2}(?::\d{2})?[.,]\d{3}.*$"
)
_MARKUP_TAG = re.compile(r"<[^>]+>")


def caption_to_plain_text(raw_caption: str) -> str:
    """Strip cue numbers, timing lines and inline markup from SRT/VTT/SBV text."""
    lines: list[str] = []
    previous: str | None = None
    for raw_line in raw_caption.splitlines():
        line = raw_line.strip()
        if not line or line == "WEBVTT" or line.startswith(("NOTE", "Kind:", "Language:")):
            continue
        if _SRT_INDEX_LINE.match(line) or _TIMING_LINE.match(line):
            continue
        text = _MARKUP_TAG.sub("", line).strip()
        # Rolling auto-captions repeat the previous cue line verbatim.
        if not text or text == previous:
            continue
        lines.append(text)
        previous = text
    return " ".join(lines)


def _best_thumbnail(snippet: dict[str, Any]) -> str | None:
    thumbnails = _as_dict(snippet.get("thumbnails"))
    for size in ("high", "medium", "default"):
        url = _coerce_nonempty_string(_as_dict(thumbnails.get(size)).get("url"))
        if url is not None:
            return url
    return None


def _coerce_nonempty_string(raw_value: object) -> str | None:
    if isinstance(raw_value, str) and raw_value.strip():
        return raw_value.strip()
    return None


def _as_dict(value: Any) -> dict[str, Any]:
    if isinstance(value, dict):
        raw_dict = cast(dict[object, object], value)
        converted: dict[str, Any] = {}
        for key, item in raw_dict.items():
            if isinstance(key, str):
                converted[key] = item
        return converted
    return {}


def _as_list(value: Any) -> list[Any]:
    if isinstance(value, list):
        raw_list = cast(list[Any], value)
        return list(raw_list)
    return []
