from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

from pydantic import Field, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_DATA_DIR = ".subdigest"
_DATA_DIR_RELATIVE_DEFAULTS: tuple[tuple[str, Path], ...] = (
    ("cache_dir", Path("cache")),
    ("cache_settings_path", Path("cache_settings.json")),
    ("log_dir", Path("logs")),
)
_PATH_FIELDS: tuple[str, ...] = (
    "data_dir",
    *(field_name for field_name, _ in _DATA_DIR_RELATIVE_DEFAULTS),
)
_BOOLEAN_COERCION_FIELDS: tuple[str, ...] = (
    "cache_persistence_enabled",
    "description_fallback_enabled",
    "default_prefer_cache",
    "default_auto_cleanup_enabled",
    "telemetry_enabled",
)


def _default_in_data_dir(relative_path: Path) -> Path:
    return Path(DEFAULT_DATA_DIR) / relative_path


def _data_dir_default_note(relative_path: Path) -> str:
    return f"Defaults to `${{SUBDIGEST_DATA_DIR}}/{relative_path}` when not explicitly set."


def _resolve_path(value: str | Path) -> Path:
    return Path(value).expanduser().resolve()


def _parse_bool_with_default(value: Any, *, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        if value == 1:
            return True
        if value == 0:
            return False
        return default
    if not isinstance(value, str):
        return default

    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _normalize_optional_text(value: Any) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    if normalized:
        return normalized
    return None


class AppSettings(BaseSettings):
    """
    Canonical runtime configuration.

    This class is the single source of truth for config options:
    - what each option controls,
    - where it comes from (`SUBDIGEST_*`),
    - and what its default is.

    Cache ages here are only the initial values; users adjust them at runtime
    through the persisted cache settings object.
    """

    model_config = SettingsConfigDict(
        env_prefix="SUBDIGEST_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
    )

    # Core paths.
    data_dir: Path = Field(
        default=Path(DEFAULT_DATA_DIR),
        description="Root runtime directory for cache mirrors, settings, and logs.",
    )
    cache_dir: Path = Field(
        default=_default_in_data_dir(Path("cache")),
        description=f"Directory for persisted cache namespaces. {_data_dir_default_note(Path('cache'))}",
    )
    cache_settings_path: Path = Field(
        default=_default_in_data_dir(Path("cache_settings.json")),
        description=(
            "JSON file holding user-adjustable cache settings. "
            f"{_data_dir_default_note(Path('cache_settings.json'))}"
        ),
    )
    cache_persistence_enabled: bool = Field(
        default=True,
        description="Mirror cache writes and quota usage to JSON files under cache_dir.",
    )

    # Quota guardrails.
    youtube_daily_quota_limit: int = Field(
        default=10_000,
        ge=1,
        description="Expected daily YouTube Data API quota budget used for warnings.",
    )
    youtube_quota_warning_percent: float = Field(
        default=0.8,
        gt=0.0,
        le=1.0,
        description="Warn when estimated daily usage exceeds this fraction of quota limit.",
    )

    # Outbound request throttling.
    throttle_max_requests_per_minute: int = Field(
        default=60,
        ge=1,
        description="Ceiling on platform API dispatches inside any rolling 60-second window.",
    )
    throttle_min_delay_seconds: float = Field(
        default=1.0,
        ge=0.0,
        description="Minimum spacing between two consecutive throttled dispatches.",
    )
    throttle_backoff_seconds: float = Field(
        default=2.0,
        gt=0.0,
        description="Wait before re-checking the window when the ceiling is met.",
    )
    throttle_cycle_pause_seconds: float = Field(
        default=0.1,
        ge=0.0,
        description="Cooperative pause between two processing cycles of the throttler.",
    )
    http_timeout_seconds: float = Field(
        default=15.0,
        gt=0.0,
        description="Timeout budget for each live platform or summarization call.",
    )

    # Resource fetching.
    feed_max_channels: int = Field(
        default=3,
        ge=1,
        le=50,
        description="Number of subscription channels scanned per feed fetch.",
    )
    feed_videos_per_channel: int = Field(
        default=3,
        ge=1,
        le=50,
        description="Number of recent uploads requested per scanned channel.",
    )
    caption_formats: str = Field(
        default="srt,vtt",
        description="Comma-separated caption download formats, in order of preference.",
    )
    caption_preferred_language: str = Field(
        default="en",
        description="Caption track language tried first.",
    )
    description_fallback_enabled: bool = Field(
        default=False,
        description=(
            "Substitute the video description when no caption track can be read. "
            "Off by default; descriptions are not transcripts."
        ),
    )

    # Summarization backend.
    openai_api_key: str | None = Field(
        default=None,
        description="API key for the chat-completions summarization backend.",
    )
    openai_base_url: str = Field(
        default="https://api.openai.com/v1",
        description="Base URL of the chat-completions summarization backend.",
    )
    openai_model: str = Field(
        default="gpt-4",
        description="Model name sent to the summarization backend.",
    )
    max_tokens_per_summarization: int = Field(
        default=2000,
        ge=100,
        description="Token budget for a single summarization call input.",
    )
    chars_per_token_estimate: int = Field(
        default=4,
        ge=1,
        description="Characters-per-token multiplier used to size summarization chunks.",
    )
    summary_batch_size: int = Field(
        default=3,
        ge=2,
        description="Number of partial summaries combined per reduction call.",
    )

    # Cache settings defaults (hours / megabytes).
    default_max_feed_age_hours: int = Field(
        default=24,
        ge=1,
        le=720,
        description="Initial maxFeedAge before the user adjusts it.",
    )
    default_max_summary_age_hours: int = Field(
        default=168,
        ge=1,
        le=720,
        description="Initial maxSummaryAge before the user adjusts it.",
    )
    default_prefer_cache: bool = Field(
        default=True,
        description="Initial preferCache before the user adjusts it.",
    )
    default_auto_cleanup_enabled: bool = Field(
        default=False,
        description="Initial autoCleanupEnabled before the user adjusts it.",
    )
    default_max_cache_size_mb: int = Field(
        default=5,
        ge=1,
        le=100,
        description="Initial maxCacheSize before the user adjusts it.",
    )

    # OAuth collaborator.
    google_client_id: str | None = Field(
        default=None,
        description="OAuth client ID used for the consent URL and code exchange.",
    )
    google_client_secret: str | None = Field(
        default=None,
        description="OAuth client secret used for the code exchange.",
    )
    google_redirect_uri: str = Field(
        default="http://localhost:3000/auth-callback",
        description="Redirect URI registered for the OAuth client.",
    )

    # Logging.
    log_dir: Path = Field(
        default=_default_in_data_dir(Path("logs")),
        description=f"Directory for backend log files. {_data_dir_default_note(Path('logs'))}",
    )
    log_level: str = Field(
        default="INFO",
        description="Console log level (stdout).",
    )

    # Telemetry.
    telemetry_enabled: bool = Field(
        default=True,
        description="Enable lightweight internal telemetry events.",
    )
    telemetry_sink: Literal["none", "log"] = Field(
        default="log",
        description=(
            "Telemetry sink backend. `log` emits structured telemetry locally; "
            "`none` disables sink output."
        ),
    )

    @field_validator("telemetry_sink", mode="before")
    @classmethod
    def _normalize_telemetry_sink(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("SUBDIGEST_TELEMETRY_SINK must be a string.")
        normalized = value.strip().lower()
        if normalized in {"none", "log"}:
            return normalized
        raise ValueError("SUBDIGEST_TELEMETRY_SINK must be set to: none, log.")

    @field_validator("openai_base_url", mode="before")
    @classmethod
    def _normalize_openai_base_url(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("SUBDIGEST_OPENAI_BASE_URL must be a string.")
        normalized = value.strip().rstrip("/")
        if not normalized:
            raise ValueError("SUBDIGEST_OPENAI_BASE_URL must not be empty.")
        return normalized

    @field_validator("caption_formats", mode="before")
    @classmethod
    def _normalize_caption_formats(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("SUBDIGEST_CAPTION_FORMATS must be a comma-separated string.")
        formats = [item.strip().lower() for item in value.split(",") if item.strip()]
        if not formats:
            raise ValueError("SUBDIGEST_CAPTION_FORMATS must name at least one format.")
        return ",".join(formats)

    @property
    def caption_format_preference(self) -> tuple[str, ...]:
        return tuple(self.caption_formats.split(","))

    @field_validator(*_PATH_FIELDS, mode="before")
    @classmethod
    def _normalize_paths(cls, value: Any) -> Any:
        if value is None:
            return None
        return _resolve_path(value)

    @field_validator(*_BOOLEAN_COERCION_FIELDS, mode="before")
    @classmethod
    def _normalize_booleans(cls, value: Any, info: ValidationInfo) -> bool:
        field_name = info.field_name
        assert field_name is not None
        default_value = cls.model_fields[field_name].default
        assert isinstance(default_value, bool)
        return _parse_bool_with_default(value, default=default_value)

    @field_validator(
        "openai_api_key",
        "google_client_id",
        "google_client_secret",
        mode="before",
    )
    @classmethod
    def _normalize_optional_strings(cls, value: Any) -> str | None:
        return _normalize_optional_text(value)


def _apply_path_defaults(settings: AppSettings) -> AppSettings:
    updates: dict[str, Path] = {}
    for field_name, relative_default in _DATA_DIR_RELATIVE_DEFAULTS:
        if field_name in settings.model_fields_set:
            continue
        updates[field_name] = settings.data_dir / relative_default
    if not updates:
        return settings
    return settings.model_copy(update=updates)


def _resolve_path_fields(settings: AppSettings) -> AppSettings:
    resolved_updates = {
        field_name: _resolve_path(getattr(settings, field_name))
        for field_name in _PATH_FIELDS
    }
    return settings.model_copy(update=resolved_updates)


def load_settings() -> AppSettings:
    settings = AppSettings()
    settings = _apply_path_defaults(settings)
    return _resolve_path_fields(settings)
