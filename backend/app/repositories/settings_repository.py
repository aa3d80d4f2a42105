from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from threading import Lock
from typing import cast

from pydantic import ValidationError

from backend.app.models.api_contracts import CacheSettingsPayload
from backend.app.repositories.cache_policy import CacheSettings

LOGGER = logging.getLogger("subdigest.settings")


class CacheSettingsRepository:
    """User-adjustable cache settings, persisted as one JSON object.

    Stored values are merged over the defaults; an unreadable or invalid file
    falls back to the defaults rather than failing requests.
    """

    def __init__(self, path: Path | None, *, defaults: CacheSettings) -> None:
        self._path = path
        self._defaults = defaults
        self._lock = Lock()
        self._current = self._load()

    def get(self) -> CacheSettings:
        with self._lock:
            return self._current

    def update(self, settings: CacheSettings) -> CacheSettings:
        with self._lock:
            self._current = settings
            self._save(settings)
        LOGGER.info(
            "cache settings_updated max_feed_age=%s max_summary_age=%s prefer_cache=%s "
            "auto_cleanup=%s max_cache_size_mb=%s",
            settings.max_feed_age_hours,
            settings.max_summary_age_hours,
            settings.prefer_cache,
            settings.auto_cleanup_enabled,
            settings.max_cache_size_mb,
        )
        return settings

    def _load(self) -> CacheSettings:
        if self._path is None or not self._path.is_file():
            return self._defaults
        try:
            stored = cast(object, json.loads(self._path.read_text(encoding="utf-8")))
        except (OSError, json.JSONDecodeError):
            LOGGER.warning("cache settings_unreadable path=%s", self._path, exc_info=True)
            return self._defaults
        if not isinstance(stored, dict):
            return self._defaults

        merged = CacheSettingsPayload.from_settings(self._defaults).model_dump(by_alias=True)
        merged.update(cast(dict[str, object], stored))
        try:
            return CacheSettingsPayload.model_validate(merged).to_settings()
        except ValidationError:
            LOGGER.warning("cache settings_invalid path=%s", self._path, exc_info=True)
            return self._defaults

    def _save(self, settings: CacheSettings) -> None:
        if self._path is None:
            return
        document = CacheSettingsPayload.from_settings(settings).model_dump(by_alias=True)
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            temp_path = self._path.with_suffix(".tmp")
            temp_path.write_text(json.dumps(document), encoding="utf-8")
            os.replace(temp_path, self._path)
        except OSError:
            LOGGER.warning("cache settings_persist_failed path=%s", self._path, exc_info=True)
