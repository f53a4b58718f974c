"""Tests for musync.config module."""

from __future__ import annotations

import os
import stat
import tomllib
from pathlib import Path

import pytest
from pydantic import SecretStr, ValidationError

from musync.config import (
    AppConfig,
    ClientConfig,
    QuotaConfig,
    SpotifyConfig,
    SyncConfig,
    YouTubeConfig,
    _format_toml_value,
    config_exists,
    dump_toml,
    ensure_dirs,
    load_config,
    save_config,
)

# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------


def test_sync_config_defaults():
    cfg = SyncConfig()
    assert cfg.match_threshold == 0.8
    assert cfg.removal_guard_ratio == 0.9
    assert cfg.propagate_deletions is False
    assert cfg.inter_call_delay == 0.2
    assert cfg.run_timeout_seconds == 600


def test_client_config_defaults():
    cfg = ClientConfig()
    assert cfg.max_retries == 3
    assert cfg.min_backoff == 1.0
    assert cfg.cache_ttl_seconds == 300.0


def test_quota_defaults_per_platform():
    cfg = AppConfig()
    assert cfg.youtube.quota.daily_budget == 10_000
    assert cfg.youtube.quota.safety_threshold == 0.9
    assert cfg.spotify.quota.daily_budget == 1_000_000
    assert cfg.server.port == 9847


def test_invalid_values_rejected():
    with pytest.raises(ValidationError):
        SyncConfig(match_threshold=1.5)
    with pytest.raises(ValidationError):
        ClientConfig(max_retries=0)
    with pytest.raises(ValidationError):
        QuotaConfig(daily_budget=0)


# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------


def test_derived_paths(base_dir: Path):
    cfg = AppConfig()
    assert cfg.base_dir == base_dir
    assert cfg.db_path == base_dir / "musync.db"
    assert cfg.log_dir == base_dir / "logs"


def test_ensure_dirs_creates_directories(base_dir: Path):
    (base_dir / "logs").rmdir()
    base_dir.rmdir()

    ensure_dirs()

    assert base_dir.is_dir()
    assert (base_dir / "logs").is_dir()


def test_config_exists(base_dir: Path):
    assert not config_exists()
    (base_dir / "config.toml").write_text("", encoding="utf-8")
    assert config_exists()


# ---------------------------------------------------------------------------
# Load / save
# ---------------------------------------------------------------------------


def test_load_config_no_file_returns_defaults(base_dir: Path):
    assert load_config() == AppConfig()


def test_load_config_partial_file(base_dir: Path):
    (base_dir / "config.toml").write_text(
        "[sync]\npropagate_deletions = true\n\n[youtube.quota]\ndaily_budget = 5000\n",
        encoding="utf-8",
    )
    cfg = load_config()
    assert cfg.sync.propagate_deletions is True
    assert cfg.sync.match_threshold == 0.8
    assert cfg.youtube.quota.daily_budget == 5000


def test_save_load_round_trip(base_dir: Path):
    cfg = AppConfig(
        sync=SyncConfig(propagate_deletions=True, inter_call_delay=0.5),
        spotify=SpotifyConfig(
            client_id="sp-id",
            client_secret=SecretStr("sp-secret"),
            refresh_token=SecretStr("sp-refresh"),
        ),
        youtube=YouTubeConfig(api_key=SecretStr("AIza-key"), quota=QuotaConfig(daily_budget=20_000)),
    )
    save_config(cfg)

    loaded = load_config()
    assert loaded.sync.propagate_deletions is True
    assert loaded.sync.inter_call_delay == 0.5
    assert loaded.spotify.client_secret.get_secret_value() == "sp-secret"
    assert loaded.youtube.api_key.get_secret_value() == "AIza-key"
    assert loaded.youtube.quota.daily_budget == 20_000


def test_save_config_sets_permissions(base_dir: Path):
    save_config(AppConfig())
    mode = stat.S_IMODE(os.stat(base_dir / "config.toml").st_mode)
    assert mode == 0o600


# ---------------------------------------------------------------------------
# TOML serialisation
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        ("hello", '"hello"'),
        ('say "hi"', '"say \\"hi\\""'),
        ("C:\\path", '"C:\\\\path"'),
        (42, "42"),
        (0.25, "0.25"),
        (True, "true"),
        (False, "false"),
        (SecretStr("s3cret"), '"s3cret"'),
    ],
)
def test_format_toml_value(value, expected):
    assert _format_toml_value(value) == expected


def test_format_toml_value_unsupported_type():
    with pytest.raises(TypeError):
        _format_toml_value([1, 2])


def test_dump_toml_nested_sections_parse():
    data = tomllib.loads(dump_toml(AppConfig()))
    assert set(data) == {"server", "sync", "client", "spotify", "youtube"}
    assert data["youtube"]["quota"]["daily_budget"] == 10_000
    assert AppConfig.model_validate(data) == AppConfig()


def test_dump_toml_redacts_secrets():
    cfg = AppConfig(spotify=SpotifyConfig(client_id="id", client_secret=SecretStr("top-secret")))
    text = dump_toml(cfg, redact=True)
    assert "top-secret" not in text
    assert "********" in text
    # empty secrets stay empty
    assert 'refresh_token = ""' in text
    # the original config is untouched
    assert cfg.spotify.client_secret.get_secret_value() == "top-secret"


def test_secret_not_in_repr():
    cfg = SpotifyConfig(client_secret=SecretStr("hidden"))
    assert "hidden" not in repr(cfg)


# ---------------------------------------------------------------------------
# Platform readiness
# ---------------------------------------------------------------------------


def test_is_spotify_configured():
    assert not AppConfig().is_spotify_configured()
    cfg = AppConfig(
        spotify=SpotifyConfig(
            client_id="id",
            client_secret=SecretStr("secret"),
            refresh_token=SecretStr("refresh"),
        )
    )
    assert cfg.is_spotify_configured()


def test_is_youtube_configured_with_api_key_only():
    assert not AppConfig().is_youtube_configured()
    assert AppConfig(youtube=YouTubeConfig(api_key=SecretStr("AIza"))).is_youtube_configured()
