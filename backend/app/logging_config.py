from __future__ import annotations

import logging
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import TextIO

import structlog
from structlog.typing import EventDict, Processor

from backend.app.config import AppSettings

ROOT_LOGGER_NAME = "subdigest"
LOG_FILE_NAME = "subdigest.log"
TELEMETRY_LOG_FILE_NAME = "subdigest-telemetry.log"
# googleapiclient logs every discovery/cache miss at INFO.
_NOISY_LIBRARY_LOGGERS: tuple[str, ...] = (
    "googleapiclient.discovery",
    "googleapiclient.discovery_cache",
    "google_auth_httplib2",
)


@dataclass(frozen=True)
class LogPaths:
    application: Path
    telemetry: Path | None


def configure_application_logging(settings: AppSettings) -> LogPaths:
    """Route every `subdigest.*` logger to stdout and a JSON lines file.

    Telemetry events get their own file, and only when the `log` sink is active.
    Safe to call again; handlers are replaced, not stacked.
    """
    log_dir = settings.log_dir
    log_dir.mkdir(parents=True, exist_ok=True)
    _configure_structlog()

    paths = LogPaths(
        application=log_dir / LOG_FILE_NAME,
        telemetry=(
            log_dir / TELEMETRY_LOG_FILE_NAME
            if settings.telemetry_enabled and settings.telemetry_sink == "log"
            else None
        ),
    )

    root = _claim_logger(ROOT_LOGGER_NAME, logging.DEBUG)
    root.addHandler(_console_handler(sys.stdout, _resolve_log_level(settings.log_level)))
    root.addHandler(_json_file_handler(paths.application, logging.DEBUG))

    telemetry = _claim_logger(f"{ROOT_LOGGER_NAME}.telemetry", logging.INFO)
    if paths.telemetry is not None:
        telemetry.addHandler(_json_file_handler(paths.telemetry, logging.INFO))
    else:
        telemetry.addHandler(logging.NullHandler())

    for library_logger in _NOISY_LIBRARY_LOGGERS:
        logging.getLogger(library_logger).setLevel(logging.WARNING)

    root.info(
        "logging configured console_level=%s path=%s telemetry_path=%s",
        settings.log_level.upper(),
        paths.application,
        paths.telemetry,
    )
    return paths


def _resolve_log_level(raw_level: str) -> int:
    resolved = logging.getLevelName(raw_level.strip().upper())
    if isinstance(resolved, int):
        return resolved
    return logging.INFO


def _configure_structlog() -> None:
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def _claim_logger(name: str, level: int) -> logging.Logger:
    logger = logging.getLogger(name)
    logger.setLevel(level)
    logger.propagate = False
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    return logger


def _console_handler(stream: TextIO, level: int) -> logging.Handler:
    handler = logging.StreamHandler(stream=stream)
    handler.setLevel(level)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=_shared_pre_chain(),
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                structlog.dev.ConsoleRenderer(colors=_stream_supports_color(stream)),
            ],
        )
    )
    return handler


def _json_file_handler(path: Path, level: int) -> logging.Handler:
    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setLevel(level)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=_shared_pre_chain(),
            processors=[
                _add_record_metadata,
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                structlog.processors.format_exc_info,
                structlog.processors.JSONRenderer(sort_keys=True),
            ],
        )
    )
    return handler


def _shared_pre_chain() -> list[Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True, key="timestamp"),
    ]


def _add_record_metadata(
    _logger: logging.Logger,
    _method_name: str,
    event_dict: EventDict,
) -> EventDict:
    record = event_dict.get("_record")
    if isinstance(record, logging.LogRecord):
        event_dict["module"] = record.module
        event_dict["lineno"] = record.lineno
        event_dict["func_name"] = record.funcName
        # Set by logging for records emitted inside an asyncio task (3.12+).
        event_dict["task_name"] = getattr(record, "taskName", None)
    return event_dict


def _stream_supports_color(stream: object) -> bool:
    isatty = getattr(stream, "isatty", None)
    if callable(isatty):
        try:
            return bool(isatty())
        except (OSError, ValueError):
            return False
    return False
