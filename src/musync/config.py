"""Configuration management for musync."""

from __future__ import annotations

import os
import tomllib
from pathlib import Path

from pydantic import BaseModel, Field, SecretStr

from musync.sync.differ import MATCH_THRESHOLD, REMOVAL_GUARD_RATIO
from musync.sync.quota import DEFAULT_DAILY_BUDGET, DEFAULT_SAFETY_THRESHOLD

# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------

_BASE_DIR_NAME = ".musync"
_CONFIG_FILE = "config.toml"
_DB_FILE = "musync.db"
_LOG_DIR = "logs"


def get_base_dir() -> Path:
    """Return the base directory for all musync runtime files (~/.musync/)."""
    return Path.home() / _BASE_DIR_NAME


# ---------------------------------------------------------------------------
# Config models
# ---------------------------------------------------------------------------


class ServerConfig(BaseModel):
    """Settings for the HTTP API process."""

    host: str = Field(default="127.0.0.1", description="Bind address for the API server")
    port: int = Field(default=9847, description="Port for the API server")
    log_level: str = Field(default="info", description="Logging level")


class SyncConfig(BaseModel):
    """Settings that control reconciliation behaviour."""

    match_threshold: float = Field(
        default=MATCH_THRESHOLD,
        ge=0.0,
        le=1.0,
        description="Minimum fuzzy score for two tracks to be considered the same",
    )
    removal_guard_ratio: float = Field(
        default=REMOVAL_GUARD_RATIO,
        gt=0.0,
        le=1.0,
        description="Skip removals larger than this share of the remote playlist",
    )
    propagate_deletions: bool = Field(
        default=False,
        description="Remove remote tracks that were deleted from the local playlist",
    )
    inter_call_delay: float = Field(default=0.2, ge=0.0, description="Seconds between consecutive searches")
    run_timeout_seconds: int = Field(default=600, gt=0, description="Wall-clock budget for one platform sync")


class ClientConfig(BaseModel):
    """Retry and caching behaviour of the remote API client."""

    max_retries: int = Field(default=3, ge=1, description="Attempts per remote call")
    min_backoff: float = Field(default=1.0, gt=0.0, description="Base backoff delay in seconds")
    cache_ttl_seconds: float = Field(default=300.0, ge=0.0, description="Lifetime of cached GET responses")


class QuotaConfig(BaseModel):
    """Daily API budget for one platform."""

    daily_budget: int = Field(default=DEFAULT_DAILY_BUDGET, gt=0, description="Units available per 24 hours")
    safety_threshold: float = Field(
        default=DEFAULT_SAFETY_THRESHOLD,
        gt=0.0,
        le=1.0,
        description="Share of the budget that may be spent",
    )


class SpotifyConfig(BaseModel):
    """Spotify API credentials and OAuth tokens."""

    client_id: str = Field(default="", description="Spotify Developer App client ID")
    client_secret: SecretStr = Field(default=SecretStr(""), description="Spotify Developer App client secret")
    refresh_token: SecretStr = Field(default=SecretStr(""), description="Spotify OAuth refresh token")
    quota: QuotaConfig = Field(default_factory=lambda: QuotaConfig(daily_budget=1_000_000))


class YouTubeConfig(BaseModel):
    """YouTube Data API credentials."""

    client_id: str = Field(default="", description="Google OAuth client ID")
    client_secret: SecretStr = Field(default=SecretStr(""), description="Google OAuth client secret")
    refresh_token: SecretStr = Field(default=SecretStr(""), description="Google OAuth refresh token")
    api_key: SecretStr = Field(default=SecretStr(""), description="Fallback API key for read-only calls")
    quota: QuotaConfig = Field(default_factory=QuotaConfig)


class AppConfig(BaseModel):
    """Top-level application configuration."""

    server: ServerConfig = Field(default_factory=ServerConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    client: ClientConfig = Field(default_factory=ClientConfig)
    spotify: SpotifyConfig = Field(default_factory=SpotifyConfig)
    youtube: YouTubeConfig = Field(default_factory=YouTubeConfig)

    # -- derived paths (not stored in TOML) --------------------------------

    @property
    def base_dir(self) -> Path:
        return get_base_dir()

    @property
    def db_path(self) -> Path:
        return self.base_dir / _DB_FILE

    @property
    def log_dir(self) -> Path:
        return self.base_dir / _LOG_DIR

    def is_spotify_configured(self) -> bool:
        """Return True if Spotify credentials are fully set."""
        return bool(
            self.spotify.client_id
            and self.spotify.client_secret.get_secret_value()
            and self.spotify.refresh_token.get_secret_value()
        )

    def is_youtube_configured(self) -> bool:
        """Return True if YouTube can be reached with OAuth or the fallback key."""
        oauth = bool(
            self.youtube.client_id
            and self.youtube.client_secret.get_secret_value()
            and self.youtube.refresh_token.get_secret_value()
        )
        return oauth or bool(self.youtube.api_key.get_secret_value())


# ---------------------------------------------------------------------------
# Filesystem helpers
# ---------------------------------------------------------------------------


def ensure_dirs() -> None:
    """Create the base directory and log directory if they don't already exist."""
    base = get_base_dir()
    base.mkdir(mode=0o700, parents=True, exist_ok=True)
    (base / _LOG_DIR).mkdir(mode=0o700, parents=True, exist_ok=True)


def config_exists() -> bool:
    """Return True if a config file is present on disk."""
    return (get_base_dir() / _CONFIG_FILE).is_file()


# ---------------------------------------------------------------------------
# Load / save
# ---------------------------------------------------------------------------


def load_config() -> AppConfig:
    """Load configuration from TOML, falling back to defaults if the file is missing."""
    path = get_base_dir() / _CONFIG_FILE
    if not path.is_file():
        return AppConfig()

    with open(path, "rb") as f:
        raw = tomllib.load(f)

    return AppConfig.model_validate(raw)


def _format_toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return repr(value)
    if isinstance(value, SecretStr):
        value = value.get_secret_value()
    if isinstance(value, str):
        escaped = value.replace("\\", "\\\\").replace('"', '\\"')
        return f'"{escaped}"'
    msg = f"Unsupported TOML value type: {type(value)}"
    raise TypeError(msg)


def _dump_section(lines: list[str], name: str, model: BaseModel) -> None:
    nested: list[tuple[str, BaseModel]] = []
    lines.append(f"[{name}]")
    for key in type(model).model_fields:
        value = getattr(model, key)
        if isinstance(value, BaseModel):
            nested.append((f"{name}.{key}", value))
        else:
            lines.append(f"{key} = {_format_toml_value(value)}")
    lines.append("")
    for sub_name, sub_model in nested:
        _dump_section(lines, sub_name, sub_model)


def dump_toml(config: AppConfig, *, redact: bool = False) -> str:
    """Serialize an AppConfig to TOML.

    Handles tables of scalars plus one level of nested tables
    (``[youtube.quota]``). With *redact*, secret values are masked.
    """
    if redact:
        config = config.model_copy(deep=True)
        for section in (config.spotify, config.youtube):
            for key in type(section).model_fields:
                value = getattr(section, key)
                if isinstance(value, SecretStr) and value.get_secret_value():
                    setattr(section, key, SecretStr("********"))

    lines: list[str] = []
    for name in type(config).model_fields:
        _dump_section(lines, name, getattr(config, name))
    return "\n".join(lines)


def save_config(config: AppConfig) -> None:
    """Save configuration to TOML and restrict file permissions to owner-only."""
    ensure_dirs()
    path = get_base_dir() / _CONFIG_FILE
    path.write_text(dump_toml(config), encoding="utf-8")
    os.chmod(path, 0o600)
