from __future__ import annotations

import json
from pathlib import Path

import pytest

from backend.app.config import load_settings
from backend.app.repositories.cache_policy import CacheSettings, ResourceKind, TtlPolicy
from backend.app.repositories.settings_repository import CacheSettingsRepository


def test_load_settings_defaults_derive_paths_from_data_dir(_isolated_runtime: Path) -> None:
    settings = load_settings()

    assert settings.data_dir == _isolated_runtime.resolve()
    assert settings.cache_dir == (_isolated_runtime / "cache").resolve()
    assert settings.cache_settings_path == (_isolated_runtime / "cache_settings.json").resolve()
    assert settings.log_dir == (_isolated_runtime / "logs").resolve()
    assert settings.youtube_daily_quota_limit == 10_000
    assert settings.throttle_max_requests_per_minute == 60
    assert settings.caption_format_preference == ("srt", "vtt")
    assert settings.description_fallback_enabled is False
    assert settings.openai_api_key is None


def test_load_settings_parses_env_overrides(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("SUBDIGEST_CACHE_DIR", str(tmp_path / "elsewhere"))
    monkeypatch.setenv("SUBDIGEST_CAPTION_FORMATS", " VTT, srt ,")
    monkeypatch.setenv("SUBDIGEST_DESCRIPTION_FALLBACK_ENABLED", "yes")
    monkeypatch.setenv("SUBDIGEST_CACHE_PERSISTENCE_ENABLED", "off")
    monkeypatch.setenv("SUBDIGEST_DEFAULT_PREFER_CACHE", "not-a-bool")
    monkeypatch.setenv("SUBDIGEST_OPENAI_BASE_URL", " https://llm.example.test/v1/ ")
    monkeypatch.setenv("SUBDIGEST_OPENAI_API_KEY", "   ")
    monkeypatch.setenv("SUBDIGEST_YOUTUBE_DAILY_QUOTA_LIMIT", "12000")
    monkeypatch.setenv("SUBDIGEST_YOUTUBE_QUOTA_WARNING_PERCENT", "0.75")

    settings = load_settings()

    assert settings.cache_dir == (tmp_path / "elsewhere").resolve()
    assert settings.caption_format_preference == ("vtt", "srt")
    assert settings.description_fallback_enabled is True
    assert settings.cache_persistence_enabled is False
    assert settings.default_prefer_cache is True
    assert settings.openai_base_url == "https://llm.example.test/v1"
    assert settings.openai_api_key is None
    assert settings.youtube_daily_quota_limit == 12_000
    assert settings.youtube_quota_warning_percent == 0.75


def test_load_settings_rejects_unknown_telemetry_sink(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SUBDIGEST_TELEMETRY_SINK", "datadog")

    with pytest.raises(ValueError, match="SUBDIGEST_TELEMETRY_SINK"):
        load_settings()


def test_load_settings_rejects_empty_caption_formats(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SUBDIGEST_CAPTION_FORMATS", " , ")

    with pytest.raises(ValueError, match="SUBDIGEST_CAPTION_FORMATS"):
        load_settings()


def test_settings_repository_persists_and_reloads(tmp_path: Path) -> None:
    path = tmp_path / "cache_settings.json"
    repository = CacheSettingsRepository(path, defaults=CacheSettings())

    repository.update(CacheSettings(max_feed_age_hours=6, prefer_cache=False))

    stored = json.loads(path.read_text(encoding="utf-8"))
    assert stored["maxFeedAge"] == 6
    assert stored["preferCache"] is False
    reloaded = CacheSettingsRepository(path, defaults=CacheSettings())
    assert reloaded.get().max_feed_age_hours == 6
    assert reloaded.get().prefer_cache is False
    assert reloaded.get().max_summary_age_hours == 168


def test_settings_repository_merges_partial_documents(tmp_path: Path) -> None:
    path = tmp_path / "cache_settings.json"
    path.write_text(json.dumps({"maxSummaryAge": 48}), encoding="utf-8")
    defaults = CacheSettings(max_feed_age_hours=12)

    settings = CacheSettingsRepository(path, defaults=defaults).get()

    assert settings.max_summary_age_hours == 48
    assert settings.max_feed_age_hours == 12


@pytest.mark.parametrize(
    "content",
    ["{broken", json.dumps(["not", "an", "object"]), json.dumps({"maxFeedAge": 0})],
)
def test_settings_repository_falls_back_to_defaults(tmp_path: Path, content: str) -> None:
    path = tmp_path / "cache_settings.json"
    path.write_text(content, encoding="utf-8")
    defaults = CacheSettings(max_feed_age_hours=10)

    assert CacheSettingsRepository(path, defaults=defaults).get() == defaults


def test_settings_repository_without_path_keeps_updates_in_memory() -> None:
    repository = CacheSettingsRepository(None, defaults=CacheSettings())

    repository.update(CacheSettings(max_cache_size_mb=20))

    assert repository.get().max_cache_size_mb == 20


def test_ttl_policy_clamps_ages_to_thirty_days() -> None:
    settings = CacheSettings(max_feed_age_hours=0, max_summary_age_hours=10_000)
    policy = TtlPolicy(lambda: settings)

    assert policy.ttl_seconds(ResourceKind.FEED) == 3600.0
    assert policy.ttl_seconds(ResourceKind.SUMMARY) == 30 * 24 * 3600.0
    assert policy.ttl_seconds(ResourceKind.CAPTION) == 30 * 24 * 3600.0
