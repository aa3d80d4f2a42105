from __future__ import annotations

import asyncio
import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Protocol, cast
from urllib.request import Request, urlopen

from backend.app.repositories.cache_policy import ResourceKind, cache_key
from backend.app.repositories.cache_store import CacheStore
from backend.app.services.errors import ErrorKind, FetchError, classify_summarizer_error
from backend.app.services.fallback_chain import FetchStrategy, execute_with_fallback
from backend.app.services.resource_fetchers import CaptionFetcher
from backend.app.telemetry import TelemetryClient

LOGGER = logging.getLogger("subdigest.summary")

SYSTEM_PROMPT = (
    "You are an expert at summarizing video transcripts. "
    "Extract key points and main ideas concisely. "
    'Respond with a JSON object of the form {"summary": "..."}.'
)
USER_PROMPT_PREFIX = (
    "Summarize the following transcript in a clear, concise manner. "
    "Focus on the main points and key takeaways:\n\n"
)
STALE_SUMMARY_NOTE = (
    "This summary was generated earlier and could not be refreshed; it may be outdated."
)

# A missing transcript or a rejected sign-in is reported even when an old summary exists.
_NO_STALE_SUMMARY_KINDS: frozenset[ErrorKind] = frozenset(
    {ErrorKind.NOT_AVAILABLE, ErrorKind.AUTH_INVALID}
)
_PARAGRAPH_BREAK = re.compile(r"\n\s*\n")
_SENTENCE_BREAK = re.compile(r"(?<=[.!?])\s+")


class TextSummarizer(Protocol):
    """Blocking single-shot summarization call."""

    def summarize_text(self, text: str) -> str:
        ...


class ChatCompletionsSummarizer:
    """Chat-completions client asking for a JSON object with a `summary` field.

    HTTP failures propagate unchanged so `classify_summarizer_error` can read
    the status and error body.
    """

    def __init__(
        self,
        *,
        api_key: str | None,
        base_url: str = "https://api.openai.com/v1",
        model: str = "gpt-4",
        timeout_seconds: float = 15.0,
    ) -> None:
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._model = model
        self._timeout_seconds = timeout_seconds

    def summarize_text(self, text: str) -> str:
        if not self._api_key:
            raise FetchError(
                ErrorKind.UNKNOWN,
                "Summarization backend is not configured.",
                detail="SUBDIGEST_OPENAI_API_KEY is not set",
            )

        payload = {
            "model": self._model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": f"{USER_PROMPT_PREFIX}{text}"},
            ],
            "response_format": {"type": "json_object"},
        }
        request = Request(
            url=f"{self._base_url}/chat/completions",
            data=json.dumps(payload, ensure_ascii=True).encode("utf-8"),
            headers={
                "Accept": "application/json",
                "Content-Type": "application/json",
                "Authorization": f"Bearer {self._api_key}",
            },
            method="POST",
        )
        with urlopen(request, timeout=self._timeout_seconds) as response:
            raw_body = response.read().decode("utf-8", errors="replace")
        return parse_summary_response(raw_body)


def parse_summary_response(raw_body: str) -> str:
    try:
        completion = cast(object, json.loads(raw_body))
        choices = cast(list[Any], cast(dict[str, Any], completion)["choices"])
        content = cast(dict[str, Any], choices[0]["message"])["content"]
        parsed = cast(object, json.loads(content))
    except (json.JSONDecodeError, KeyError, IndexError, TypeError) as exc:
        raise FetchError(
            ErrorKind.UNKNOWN,
            "Summarization backend returned an unreadable response.",
            detail=f"{type(exc).__name__}: {raw_body[:200]}",
        ) from exc

    summary = cast(dict[str, Any], parsed).get("summary") if isinstance(parsed, dict) else None
    if not isinstance(summary, str) or not summary.strip():
        raise FetchError(
            ErrorKind.UNKNOWN,
            "Summarization backend response had no summary.",
            detail=raw_body[:200],
        )
    return summary.strip()


def split_text(text: str, max_chunk_chars: int) -> list[str]:
    """Split into chunks of at most `max_chunk_chars`.

    Paragraph boundaries are preferred, then sentence boundaries, then the
    last whitespace inside the budget; a word longer than the budget is cut
    at the budget.
    """
    if max_chunk_chars < 1:
        raise ValueError("max_chunk_chars must be positive")

    chunks: list[str] = []
    current = ""
    for raw_paragraph in _PARAGRAPH_BREAK.split(text):
        paragraph = raw_paragraph.strip()
        if not paragraph:
            continue
        candidate = f"{current}\n\n{paragraph}" if current else paragraph
        if len(candidate) <= max_chunk_chars:
            current = candidate
            continue
        if current:
            chunks.append(current)
            current = ""
        if len(paragraph) <= max_chunk_chars:
            current = paragraph
            continue
        pieces = _split_paragraph(paragraph, max_chunk_chars)
        chunks.extend(pieces[:-1])
        current = pieces[-1]

    if current:
        chunks.append(current)
    return chunks


def _split_paragraph(paragraph: str, max_chunk_chars: int) -> list[str]:
    pieces: list[str] = []
    current = ""
    for sentence in _SENTENCE_BREAK.split(paragraph):
        if not sentence:
            continue
        candidate = f"{current} {sentence}" if current else sentence
        if len(candidate) <= max_chunk_chars:
            current = candidate
            continue
        if current:
            pieces.append(current)
            current = ""
        if len(sentence) <= max_chunk_chars:
            current = sentence
            continue
        cuts = _hard_split(sentence, max_chunk_chars)
        pieces.extend(cuts[:-1])
        current = cuts[-1]
    if current:
        pieces.append(current)
    return pieces


def _hard_split(text: str, max_chunk_chars: int) -> list[str]:
    pieces: list[str] = []
    remaining = text
    while len(remaining) > max_chunk_chars:
        cut = remaining.rfind(" ", 0, max_chunk_chars + 1)
        if cut <= 0:
            cut = max_chunk_chars
        pieces.append(remaining[:cut].rstrip())
        remaining = remaining[cut:].lstrip()
    if remaining:
        pieces.append(remaining)
    return pieces


@dataclass(frozen=True)
class SummaryOutcome:
    video_id: str
    summary: str
    cache_hit: bool
    stale: bool
    note: str | None = None


class SummaryOrchestrator:
    def __init__(
        self,
        *,
        summarizer: TextSummarizer,
        store: CacheStore,
        caption_fetcher: CaptionFetcher | None = None,
        max_tokens_per_summarization: int = 2000,
        chars_per_token_estimate: int = 4,
        batch_size: int = 3,
        timeout_seconds: float = 15.0,
        telemetry: TelemetryClient | None = None,
    ) -> None:
        self._summarizer = summarizer
        self._store = store
        self._caption_fetcher = caption_fetcher
        self._max_chunk_chars = max(1, max_tokens_per_summarization * chars_per_token_estimate)
        # A batch of one would never shrink the partial list.
        self._batch_size = max(2, batch_size)
        self._timeout_seconds = timeout_seconds
        self._telemetry = (telemetry or TelemetryClient.disabled()).bind(
            resource=ResourceKind.SUMMARY
        )

    @property
    def max_chunk_chars(self) -> int:
        return self._max_chunk_chars

    async def summarize_text(self, text: str) -> str:
        if len(text) < self._max_chunk_chars:
            return await self._summarize_once(text)

        chunks = split_text(text, self._max_chunk_chars)
        LOGGER.info(
            "summary map_started chunks=%s chars=%s max_chunk_chars=%s",
            len(chunks),
            len(text),
            self._max_chunk_chars,
        )
        partials: list[str] = []
        for chunk in chunks:
            partials.append(await self._summarize_once(chunk))

        rounds = 0
        while len(partials) > 1:
            combined = "\n\n".join(partials)
            if len(combined) < self._max_chunk_chars:
                return await self._summarize_once(combined)
            rounds += 1
            reduced: list[str] = []
            for start in range(0, len(partials), self._batch_size):
                batch = partials[start : start + self._batch_size]
                reduced.append(await self._summarize_once("\n\n".join(batch)))
            LOGGER.debug(
                "summary reduce_round round=%s before=%s after=%s",
                rounds,
                len(partials),
                len(reduced),
            )
            partials = reduced

        return partials[0]

    async def summarize_video(
        self,
        video_id: str,
        access_token: str,
        *,
        force_refresh: bool = False,
    ) -> SummaryOutcome:
        key = cache_key(ResourceKind.SUMMARY, video_id)
        if not force_refresh:
            cached = self._store.get(key)
            if isinstance(cached, str):
                self._telemetry.emit("fetch.cache_hit")
                return SummaryOutcome(video_id=video_id, summary=cached, cache_hit=True, stale=False)

        async def _generate() -> str:
            if self._caption_fetcher is None:
                raise FetchError(ErrorKind.UNKNOWN, "Caption source is not configured.")
            transcript = await self._caption_fetcher.fetch_transcript(video_id, access_token)
            if not transcript.value.text.strip():
                raise FetchError(
                    ErrorKind.NOT_AVAILABLE, "No transcript available for this video."
                )
            return await self.summarize_text(transcript.value.text)

        def _stale_lookup() -> str | None:
            stale = self._store.get(key, ignore_expiry=True)
            return stale if isinstance(stale, str) else None

        try:
            result = await execute_with_fallback(
                FetchStrategy("map_reduce", _generate),
                (),
                classify_summarizer_error,
                _stale_lookup,
            )
        except FetchError as exc:
            stale = None if exc.kind in _NO_STALE_SUMMARY_KINDS else _stale_lookup()
            if stale is not None:
                LOGGER.warning(
                    "summary stale_served video_id=%s kind=%s detail=%s",
                    video_id,
                    exc.kind.value,
                    exc.detail or exc.message,
                )
                return self._stale_outcome(video_id, stale, exc.kind)
            LOGGER.warning(
                "summary failed video_id=%s kind=%s detail=%s",
                video_id,
                exc.kind.value,
                exc.detail or exc.message,
            )
            self._telemetry.emit("fetch.failed", kind=exc.kind)
            raise

        if result.degraded:
            return self._stale_outcome(video_id, result.value, result.failure_kind)

        self._store.set(key, result.value)
        self._telemetry.emit("fetch.live")
        return SummaryOutcome(video_id=video_id, summary=result.value, cache_hit=False, stale=False)

    def _stale_outcome(
        self, video_id: str, summary: str, failure_kind: ErrorKind | None
    ) -> SummaryOutcome:
        self._telemetry.emit("fetch.degraded", reason=failure_kind)
        return SummaryOutcome(
            video_id=video_id,
            summary=summary,
            cache_hit=True,
            stale=True,
            note=STALE_SUMMARY_NOTE,
        )

    async def _summarize_once(self, text: str) -> str:
        return await asyncio.wait_for(
            asyncio.to_thread(self._summarizer.summarize_text, text),
            self._timeout_seconds,
        )
