from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest

from backend.app.config import load_settings
from backend.app.logging_config import configure_application_logging


def _flush(name: str) -> None:
    for handler in logging.getLogger(name).handlers:
        handler.flush()


def test_logging_writes_json_lines_to_data_dir(_isolated_runtime: Path) -> None:
    paths = configure_application_logging(load_settings())

    logging.getLogger("subdigest.cache").warning("cache evicted namespace=%s", "cached_feed")
    _flush("subdigest")

    assert paths.application == (_isolated_runtime / "logs" / "subdigest.log").resolve()
    assert paths.telemetry is None
    records = [
        json.loads(line)
        for line in paths.application.read_text(encoding="utf-8").splitlines()
        if line.strip()
    ]
    evicted = [record for record in records if record["event"].startswith("cache evicted")]
    assert evicted[0]["event"] == "cache evicted namespace=cached_feed"
    assert evicted[0]["level"] == "warning"
    assert evicted[0]["logger"] == "subdigest.cache"


def test_logging_reconfiguration_replaces_handlers() -> None:
    settings = load_settings()
    configure_application_logging(settings)
    configure_application_logging(settings)

    assert len(logging.getLogger("subdigest").handlers) == 2
    assert len(logging.getLogger("subdigest.telemetry").handlers) == 1


def test_telemetry_log_file_only_with_log_sink(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SUBDIGEST_TELEMETRY_SINK", "log")

    paths = configure_application_logging(load_settings())

    assert paths.telemetry is not None
    assert paths.telemetry.name == "subdigest-telemetry.log"
