from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest

from backend.app.dependencies import reset_cached_dependencies


@pytest.fixture(autouse=True)
def _isolated_runtime(  # pyright: ignore[reportUnusedFunction]
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> Iterator[Path]:
    data_dir = tmp_path / "runtime-data"
    data_dir.mkdir(parents=True, exist_ok=True)
    monkeypatch.setenv("SUBDIGEST_DATA_DIR", str(data_dir))
    monkeypatch.setenv("SUBDIGEST_TELEMETRY_SINK", "none")
    monkeypatch.delenv("SUBDIGEST_OPENAI_API_KEY", raising=False)
    monkeypatch.delenv("SUBDIGEST_GOOGLE_CLIENT_ID", raising=False)
    monkeypatch.delenv("SUBDIGEST_GOOGLE_CLIENT_SECRET", raising=False)
    reset_cached_dependencies()
    yield data_dir
    reset_cached_dependencies()

