from __future__ import annotations

import logging
from collections.abc import Collection, Mapping
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Literal, Protocol

import structlog

TelemetryValue = bool | int | float | str | None

# Substring match on lower-cased attribute names.
_REDACTED_NAME_PARTS: frozenset[str] = frozenset(
    {
        "access_token",
        "api_key",
        "authorization",
        "bearer",
        "caption_text",
        "auth_code",
        "secret",
        "summary",
        "token",
        "transcript",
    }
)
_REDACTED = "[redacted]"
_MAX_STRING_LENGTH = 160


class TelemetrySink(Protocol):
    def emit(self, *, event_name: str, attributes: Mapping[str, Any]) -> None:
        ...


class NoOpTelemetrySink:
    def emit(self, *, event_name: str, attributes: Mapping[str, Any]) -> None:
        _ = (event_name, attributes)


class StructuredLogTelemetrySink:
    """Writes events through the `subdigest.telemetry` logger (its own log file)."""

    def __init__(self) -> None:
        self._logger = structlog.get_logger("subdigest.telemetry")

    def emit(self, *, event_name: str, attributes: Mapping[str, Any]) -> None:
        self._logger.info("telemetry", telemetry_event=event_name, **dict(attributes))


@dataclass(frozen=True)
class TelemetryClient:
    """Fire-and-forget structured events for cache, quota and throttle decisions.

    `bind` returns a client that stamps the given attributes on every event,
    e.g. the resource kind a fetcher serves. Per-call attributes win on clashes.
    """

    enabled: bool
    sink: TelemetrySink
    context: Mapping[str, Any] = field(default_factory=dict, hash=False)

    @classmethod
    def disabled(cls) -> TelemetryClient:
        return cls(enabled=False, sink=NoOpTelemetrySink())

    def bind(self, **attributes: Any) -> TelemetryClient:
        return replace(self, context={**self.context, **attributes})

    def emit(self, event_name: str, **attributes: Any) -> None:
        if not self.enabled:
            return
        merged = {**self.context, **attributes}
        self.sink.emit(event_name=event_name, attributes=sanitize_attributes(merged))


def build_telemetry_client(*, enabled: bool, sink: Literal["none", "log"]) -> TelemetryClient:
    if not enabled or sink == "none":
        return TelemetryClient.disabled()
    if sink == "log":
        return TelemetryClient(enabled=True, sink=StructuredLogTelemetrySink())

    logging.getLogger("subdigest.telemetry").warning(
        "telemetry unsupported_sink sink=%s; telemetry disabled", sink
    )
    return TelemetryClient.disabled()


def sanitize_attributes(attributes: Mapping[str, Any]) -> dict[str, TelemetryValue]:
    sanitized: dict[str, TelemetryValue] = {}
    for raw_key, raw_value in attributes.items():
        key = str(raw_key).strip().lower()
        if not key:
            continue
        if any(part in key for part in _REDACTED_NAME_PARTS):
            sanitized[key] = _REDACTED
        else:
            sanitized[key] = _sanitize_value(raw_value)
    return sanitized


def _sanitize_value(value: Any) -> TelemetryValue:
    if value is None or isinstance(value, bool | int | float):
        return value
    if isinstance(value, Enum):
        # ErrorKind / ResourceKind render as their wire value.
        return _sanitize_value(value.value)
    if isinstance(value, str):
        compact = " ".join(value.split())
        if len(compact) <= _MAX_STRING_LENGTH:
            return compact
        return f"{compact[:_MAX_STRING_LENGTH]}..."
    if isinstance(value, Collection):
        return len(value)
    return type(value).__name__
