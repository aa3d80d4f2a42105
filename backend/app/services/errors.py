from __future__ import annotations

import json
import socket
from enum import Enum
from typing import Any, cast
from urllib.error import HTTPError, URLError


class ErrorKind(str, Enum):
    QUOTA_EXCEEDED = "quota_exceeded"
    PERMISSION_DENIED = "permission_denied"
    NOT_AVAILABLE = "not_available"
    AUTH_INVALID = "auth_invalid"
    UNKNOWN = "unknown"


# What the UI should offer for each kind.
REMEDIES: dict[ErrorKind, str] = {
    ErrorKind.QUOTA_EXCEEDED: "try_later",
    ErrorKind.PERMISSION_DENIED: "reauthorize",
    ErrorKind.NOT_AVAILABLE: "none",
    ErrorKind.AUTH_INVALID: "sign_in",
    ErrorKind.UNKNOWN: "retry",
}

DEFAULT_MESSAGES: dict[ErrorKind, str] = {
    ErrorKind.QUOTA_EXCEEDED: (
        "YouTube API quota has been exceeded. Please try again later "
        "(quotas typically reset at midnight Pacific Time)."
    ),
    ErrorKind.PERMISSION_DENIED: (
        "Insufficient YouTube API permissions for this resource. "
        "Reauthorize your account with expanded permissions."
    ),
    ErrorKind.NOT_AVAILABLE: "The requested resource is not available.",
    ErrorKind.AUTH_INVALID: "Your session is no longer valid. Please sign in again.",
    ErrorKind.UNKNOWN: "An unexpected error occurred while contacting an upstream service.",
}

_QUOTA_REASONS: frozenset[str] = frozenset(
    {
        "quotaexceeded",
        "dailylimitexceeded",
        "ratelimitexceeded",
        "userratelimitexceeded",
        "rate_limit_exceeded",
        "insufficient_quota",
        "resource_exhausted",
    }
)
_PERMISSION_REASONS: frozenset[str] = frozenset(
    {
        "insufficientpermissions",
        "forbidden",
        "access_token_scope_insufficient",
        "permission_denied",
        "captionsdisabled",
    }
)
_NOT_AVAILABLE_REASONS: frozenset[str] = frozenset(
    {
        "captionnotfound",
        "videonotfound",
        "channelnotfound",
        "playlistnotfound",
        "subscriptionnotfound",
        "notfound",
    }
)
_AUTH_REASONS: frozenset[str] = frozenset(
    {
        "autherror",
        "unauthorized",
        "invalidcredentials",
        "invalid_token",
        "invalid_api_key",
    }
)
# Last-resort heuristics, consulted only when no status or reason is present.
_QUOTA_MARKERS: tuple[str, ...] = (
    "quota exceeded",
    "quotaexceeded",
    "rate limit exceeded",
    "too many requests",
)
_PERMISSION_MARKERS: tuple[str, ...] = (
    "insufficient permissions",
    "insufficient authentication scopes",
    "permission",
)
_NOT_AVAILABLE_MARKERS: tuple[str, ...] = (
    "no captions",
    "not publicly accessible",
    "not have enabled third-party",
    "captions are not available",
)


class FetchError(Exception):
    """Normalized failure surfaced to callers; never carries transport-specific shapes."""

    def __init__(
        self,
        kind: ErrorKind,
        message: str | None = None,
        *,
        detail: str | None = None,
    ) -> None:
        resolved_message = message or DEFAULT_MESSAGES[kind]
        super().__init__(resolved_message)
        self.kind = kind
        self.message = resolved_message
        self.detail = detail

    @property
    def remedy(self) -> str:
        return REMEDIES[self.kind]

    def as_payload(self) -> dict[str, str | None]:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "remedy": self.remedy,
            "detail": self.detail,
        }


def classify_platform_error(exc: BaseException) -> ErrorKind:
    """Map a video platform failure to an ErrorKind.

    Structured data wins: the HTTP status and the `error.errors[].reason`
    codes in the response body. Message text is only inspected when neither
    is available.
    """
    if isinstance(exc, FetchError):
        return exc.kind
    if _is_timeout(exc):
        return ErrorKind.UNKNOWN

    status = _extract_status(exc)
    reasons = _extract_platform_reasons(exc)

    if reasons & _QUOTA_REASONS:
        return ErrorKind.QUOTA_EXCEEDED
    if reasons & _AUTH_REASONS:
        return ErrorKind.AUTH_INVALID
    if reasons & _PERMISSION_REASONS:
        return ErrorKind.PERMISSION_DENIED
    if reasons & _NOT_AVAILABLE_REASONS:
        return ErrorKind.NOT_AVAILABLE

    if status == 429:
        return ErrorKind.QUOTA_EXCEEDED
    if status == 401:
        return ErrorKind.AUTH_INVALID
    if status == 403:
        return _classify_by_message(exc, default=ErrorKind.PERMISSION_DENIED)
    if status in {404, 410}:
        return ErrorKind.NOT_AVAILABLE
    if status is not None:
        return ErrorKind.UNKNOWN

    return _classify_by_message(exc, default=ErrorKind.UNKNOWN)


def classify_summarizer_error(exc: BaseException) -> ErrorKind:
    """Map a summarization backend failure to an ErrorKind.

    A rejected backend credential is a service-side permission problem, not
    the end user's session, so 401/403 map to PERMISSION_DENIED here.
    """
    if isinstance(exc, FetchError):
        return exc.kind
    if _is_timeout(exc):
        return ErrorKind.UNKNOWN

    status = _extract_status(exc)
    reasons = _extract_summarizer_codes(exc)
    if status == 429 or reasons & _QUOTA_REASONS:
        return ErrorKind.QUOTA_EXCEEDED
    if status in {401, 403} or reasons & (_AUTH_REASONS | _PERMISSION_REASONS):
        return ErrorKind.PERMISSION_DENIED
    return ErrorKind.UNKNOWN


def to_fetch_error(
    exc: BaseException,
    kind: ErrorKind,
    *,
    message: str | None = None,
) -> FetchError:
    if isinstance(exc, FetchError) and exc.kind == kind:
        return exc
    return FetchError(kind, message, detail=summarize_exception_message(exc))


def summarize_exception_message(exc: BaseException, *, max_length: int = 400) -> str:
    raw = str(exc).strip()
    if not raw:
        raw = repr(exc)
    if len(raw) <= max_length:
        return raw
    return f"{raw[: max_length - 3]}..."


def _is_timeout(exc: BaseException) -> bool:
    if isinstance(exc, (TimeoutError, socket.timeout)):
        return True
    if isinstance(exc, URLError) and not isinstance(exc, HTTPError):
        return isinstance(exc.reason, (TimeoutError, socket.timeout))
    return False


def _extract_status(exc: BaseException) -> int | None:
    if isinstance(exc, HTTPError):
        return int(exc.code)
    # googleapiclient.errors.HttpError exposes `resp.status` and `status_code`.
    status_code = getattr(exc, "status_code", None)
    if isinstance(status_code, int):
        return status_code
    response = getattr(exc, "resp", None)
    raw_status = getattr(response, "status", None)
    if isinstance(raw_status, int):
        return raw_status
    if isinstance(raw_status, str) and raw_status.isdigit():
        return int(raw_status)
    return None


def _extract_platform_reasons(exc: BaseException) -> set[str]:
    reasons: set[str] = set()
    error_details = getattr(exc, "error_details", None)
    if isinstance(error_details, list):
        for detail in cast(list[object], error_details):
            if isinstance(detail, dict):
                reason = cast(dict[str, object], detail).get("reason")
                if isinstance(reason, str):
                    reasons.add(reason.lower())

    payload = _decode_error_body(getattr(exc, "content", None))
    error = _as_dict(payload.get("error"))
    for item in _as_list(error.get("errors")):
        reason = _as_dict(item).get("reason")
        if isinstance(reason, str):
            reasons.add(reason.lower())
    status_text = error.get("status")
    if isinstance(status_text, str):
        reasons.add(status_text.lower())
    for item in _as_list(error.get("details")):
        reason = _as_dict(item).get("reason")
        if isinstance(reason, str):
            reasons.add(reason.lower())
    return reasons


def _extract_summarizer_codes(exc: BaseException) -> set[str]:
    body: object = None
    if isinstance(exc, HTTPError):
        try:
            body = exc.read()
        except OSError:
            body = None
    else:
        body = getattr(exc, "content", None)
    payload = _decode_error_body(body)
    error = _as_dict(payload.get("error"))
    codes: set[str] = set()
    for field in ("code", "type"):
        value = error.get(field)
        if isinstance(value, str):
            codes.add(value.lower())
    return codes


def _classify_by_message(exc: BaseException, *, default: ErrorKind) -> ErrorKind:
    message = str(exc).lower()
    if any(marker in message for marker in _QUOTA_MARKERS):
        return ErrorKind.QUOTA_EXCEEDED
    if any(marker in message for marker in _NOT_AVAILABLE_MARKERS):
        return ErrorKind.NOT_AVAILABLE
    if any(marker in message for marker in _PERMISSION_MARKERS):
        return ErrorKind.PERMISSION_DENIED
    return default


def _decode_error_body(raw_body: object) -> dict[str, Any]:
    if isinstance(raw_body, bytes):
        raw_body = raw_body.decode("utf-8", errors="replace")
    if not isinstance(raw_body, str) or not raw_body.strip():
        return {}
    try:
        parsed = cast(object, json.loads(raw_body))
    except json.JSONDecodeError:
        return {}
    return _as_dict(parsed)


def _as_dict(value: Any) -> dict[str, Any]:
    if isinstance(value, dict):
        raw_dict = cast(dict[object, object], value)
        return {key: item for key, item in raw_dict.items() if isinstance(key, str)}
    return {}


def _as_list(value: Any) -> list[Any]:
    if isinstance(value, list):
        return list(cast(list[Any], value))
    return []
