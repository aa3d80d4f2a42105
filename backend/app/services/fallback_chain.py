from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Generic, TypeVar

from backend.app.services.errors import (
    ErrorKind,
    FetchError,
    summarize_exception_message,
)

LOGGER = logging.getLogger("subdigest.fallback")

T = TypeVar("T")

# Kinds an ordinary alternative strategy is allowed to recover from.
_DEFAULT_RECOVERABLE: frozenset[ErrorKind] = frozenset(
    {ErrorKind.PERMISSION_DENIED, ErrorKind.UNKNOWN}
)
# Kinds for which an expired cache entry may stand in for the live result.
_EMERGENCY_KINDS: frozenset[ErrorKind] = frozenset(
    {ErrorKind.QUOTA_EXCEEDED, ErrorKind.PERMISSION_DENIED}
)

DEGRADED_NOTE = "Served from cache after a live request failed; it may be outdated."


@dataclass(frozen=True)
class FetchStrategy(Generic[T]):
    name: str
    run: Callable[[], Awaitable[T]]
    recovers: frozenset[ErrorKind] = field(default=_DEFAULT_RECOVERABLE)


@dataclass(frozen=True)
class FallbackResult(Generic[T]):
    value: T
    degraded: bool
    source: str
    failure_kind: ErrorKind | None = None

    @property
    def note(self) -> str | None:
        return DEGRADED_NOTE if self.degraded else None


async def execute_with_fallback(
    primary: FetchStrategy[T],
    alternatives: Sequence[FetchStrategy[T]],
    classify: Callable[[BaseException], ErrorKind],
    emergency_lookup: Callable[[], T | None],
) -> FallbackResult[T]:
    """Run `primary`, then alternatives, under error-kind specific policy.

    - QUOTA_EXCEEDED stops immediately: the emergency cache value if one
      exists, otherwise the error. No further network strategy is tried.
    - PERMISSION_DENIED and UNKNOWN move on to the next alternative whose
      `recovers` set admits the kind.
    - NOT_AVAILABLE is terminal unless a remaining alternative explicitly
      recovers it (a substitute resource); the cache never masks it.
    - AUTH_INVALID is terminal; the credentials must be refreshed first.

    When every strategy fails, an emergency value is served only if a
    PERMISSION_DENIED was seen; otherwise the most specific error is raised.
    """
    strategies: list[FetchStrategy[T]] = [primary, *alternatives]
    first_error: FetchError | None = None
    seen_kinds: set[ErrorKind] = set()
    pending_kind: ErrorKind | None = None

    for index, strategy in enumerate(strategies):
        if pending_kind is not None and pending_kind not in strategy.recovers:
            LOGGER.debug(
                "fallback strategy_skipped name=%s kind=%s", strategy.name, pending_kind.value
            )
            continue
        try:
            value = await strategy.run()
        except Exception as exc:
            kind = classify(exc)
            error = _normalize(exc, kind)
            seen_kinds.add(kind)
            if first_error is None or _is_more_specific(kind, first_error.kind):
                first_error = error
            LOGGER.warning(
                "fallback strategy_failed name=%s position=%s kind=%s detail=%s",
                strategy.name,
                index,
                kind.value,
                error.detail or error.message,
            )

            if kind is ErrorKind.QUOTA_EXCEEDED:
                return _emergency_or_raise(emergency_lookup, error, kind)
            if kind is ErrorKind.AUTH_INVALID:
                raise error from exc
            if kind is ErrorKind.NOT_AVAILABLE and not _any_recovers(
                strategies[index + 1 :], kind
            ):
                raise error from exc
            pending_kind = kind
            continue

        if index > 0:
            LOGGER.info(
                "fallback recovered name=%s position=%s after_kinds=%s",
                strategy.name,
                index,
                ",".join(sorted(kind.value for kind in seen_kinds)),
            )
        return FallbackResult(value=value, degraded=False, source=strategy.name)

    assert first_error is not None
    if ErrorKind.PERMISSION_DENIED in seen_kinds and ErrorKind.NOT_AVAILABLE not in seen_kinds:
        return _emergency_or_raise(emergency_lookup, first_error, ErrorKind.PERMISSION_DENIED)
    raise first_error


def _emergency_or_raise(
    emergency_lookup: Callable[[], T | None],
    error: FetchError,
    kind: ErrorKind,
) -> FallbackResult[T]:
    if kind in _EMERGENCY_KINDS:
        cached = emergency_lookup()
        if cached is not None:
            LOGGER.info("fallback emergency_cache_served kind=%s", kind.value)
            return FallbackResult(
                value=cached,
                degraded=True,
                source="emergency_cache",
                failure_kind=kind,
            )
    raise error


def _normalize(exc: BaseException, kind: ErrorKind) -> FetchError:
    if isinstance(exc, FetchError):
        if exc.kind is kind:
            return exc
        return FetchError(kind, exc.message, detail=exc.detail)
    return FetchError(kind, detail=summarize_exception_message(exc))


def _any_recovers(strategies: Sequence[FetchStrategy[T]], kind: ErrorKind) -> bool:
    return any(kind in strategy.recovers for strategy in strategies)


_SPECIFICITY: dict[ErrorKind, int] = {
    ErrorKind.UNKNOWN: 0,
    ErrorKind.PERMISSION_DENIED: 1,
    ErrorKind.NOT_AVAILABLE: 2,
    ErrorKind.QUOTA_EXCEEDED: 3,
    ErrorKind.AUTH_INVALID: 3,
}


def _is_more_specific(candidate: ErrorKind, current: ErrorKind) -> bool:
    return _SPECIFICITY[candidate] > _SPECIFICITY[current]
