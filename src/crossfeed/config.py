"""Configuration loading and validation."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv
from rich.color import Color, ColorParseError

from crossfeed.models import SourceKind

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SourceSettings:
    """Per-backend settings handed to an adapter and the poll scheduler."""

    kind: SourceKind
    poll_interval: float = 60.0
    credentials: dict = field(default_factory=dict)
    channels: frozenset[str] = frozenset()
    enabled: bool = True
    options: dict = field(default_factory=dict)


@dataclass(frozen=True)
class Config:
    """Application configuration. All values sourced from environment variables."""

    # Optional: Persistence (empty path keeps everything in memory)
    database_path: str = ""

    # Optional: Ingestion
    sources_config_path: str = "./config/sources.json"
    fetch_timeout_seconds: float = 30.0
    backoff_base_seconds: float = 5.0
    backoff_max_seconds: float = 900.0
    backoff_jitter: float = 0.2
    default_poll_interval_seconds: float = 60.0
    max_workers: int = 8

    # Optional: Presentation
    feed_limit: int = 100
    ui_mode: str = "tui"
    web_host: str = "127.0.0.1"
    web_port: int = 8080
    selected_fg_color: str = ""
    selected_bg_color: str = ""

    # Optional: Application
    log_level: str = "INFO"
    log_format: str = "text"
    log_file: str = ""


_UI_MODES = frozenset({"tui", "web"})
_LOG_FORMATS = frozenset({"json", "text"})


def _env_float(name: str, default: str) -> float:
    raw = os.environ.get(name, default)
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got '{raw}'") from None


def _env_int(name: str, default: str) -> int:
    raw = os.environ.get(name, default)
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got '{raw}'") from None


def load_config(env_path: str | Path | None = None) -> Config:
    """Load configuration from environment variables.

    Loads a .env file if present (for local development), then validates
    numeric ranges and enumerated values. Raises ValueError listing every
    problem found.
    """
    load_dotenv(dotenv_path=env_path)

    config = Config(
        database_path=os.environ.get("DATABASE_PATH", ""),
        sources_config_path=os.environ.get("SOURCES_CONFIG_PATH", "./config/sources.json"),
        fetch_timeout_seconds=_env_float("FETCH_TIMEOUT_SECONDS", "30"),
        backoff_base_seconds=_env_float("BACKOFF_BASE_SECONDS", "5"),
        backoff_max_seconds=_env_float("BACKOFF_MAX_SECONDS", "900"),
        backoff_jitter=_env_float("BACKOFF_JITTER", "0.2"),
        default_poll_interval_seconds=_env_float("DEFAULT_POLL_INTERVAL_SECONDS", "60"),
        max_workers=_env_int("MAX_WORKERS", "8"),
        feed_limit=_env_int("FEED_LIMIT", "100"),
        ui_mode=os.environ.get("UI_MODE", "tui").lower(),
        web_host=os.environ.get("WEB_HOST", "127.0.0.1"),
        web_port=_env_int("WEB_PORT", "8080"),
        selected_fg_color=os.environ.get("SELECTED_FG_COLOR", "").strip(),
        selected_bg_color=os.environ.get("SELECTED_BG_COLOR", "").strip(),
        log_level=os.environ.get("LOG_LEVEL", "INFO"),
        log_format=os.environ.get("LOG_FORMAT", "text").lower(),
        log_file=os.environ.get("LOG_FILE", ""),
    )

    errors: list[str] = []
    if config.fetch_timeout_seconds <= 0:
        errors.append("FETCH_TIMEOUT_SECONDS must be positive")
    if config.backoff_base_seconds <= 0:
        errors.append("BACKOFF_BASE_SECONDS must be positive")
    if config.backoff_max_seconds < config.backoff_base_seconds:
        errors.append("BACKOFF_MAX_SECONDS must be >= BACKOFF_BASE_SECONDS")
    if not 0.0 <= config.backoff_jitter < 1.0:
        errors.append("BACKOFF_JITTER must be in [0, 1)")
    if config.default_poll_interval_seconds <= 0:
        errors.append("DEFAULT_POLL_INTERVAL_SECONDS must be positive")
    if config.max_workers < 1:
        errors.append("MAX_WORKERS must be at least 1")
    if config.feed_limit < 1:
        errors.append("FEED_LIMIT must be at least 1")
    if config.ui_mode not in _UI_MODES:
        errors.append(f"UI_MODE must be one of: {', '.join(sorted(_UI_MODES))}")
    for name, value in (
        ("SELECTED_FG_COLOR", config.selected_fg_color),
        ("SELECTED_BG_COLOR", config.selected_bg_color),
    ):
        if value:
            try:
                Color.parse(value)
            except ColorParseError:
                errors.append(f"{name} is not a color: '{value}'")
    if config.log_format not in _LOG_FORMATS:
        errors.append(f"LOG_FORMAT must be one of: {', '.join(sorted(_LOG_FORMATS))}")
    if errors:
        raise ValueError(f"Invalid configuration: {'; '.join(errors)}")

    return config


def _split_list(raw: str | None) -> frozenset[str]:
    if not raw:
        return frozenset()
    return frozenset(part.strip() for part in raw.split(",") if part.strip())


def _expand_credentials(credentials: dict) -> dict:
    """Expand ``${VAR}`` references in string credential values."""
    return {
        key: os.path.expandvars(value) if isinstance(value, str) else value
        for key, value in credentials.items()
    }


def _parse_source(entry: dict, default_interval: float) -> SourceSettings:
    source_type = entry.get("type", "")
    try:
        kind = SourceKind(source_type)
    except ValueError:
        raise ValueError(
            f"Unknown source type '{source_type}'; "
            f"must be one of: {', '.join(k.value for k in SourceKind)}"
        ) from None

    interval = float(entry.get("poll_interval_seconds", default_interval))
    if interval <= 0:
        raise ValueError(f"poll_interval_seconds for '{source_type}' must be positive")

    channels = entry.get("channels", [])
    if not isinstance(channels, list):
        raise ValueError(f"channels for '{source_type}' must be a list")

    reserved = {"type", "enabled", "poll_interval_seconds", "channels", "credentials"}
    return SourceSettings(
        kind=kind,
        poll_interval=interval,
        credentials=_expand_credentials(entry.get("credentials", {})),
        channels=frozenset(str(c) for c in channels),
        enabled=bool(entry.get("enabled", True)),
        options={k: v for k, v in entry.items() if k not in reserved},
    )


def sources_from_env(default_interval: float = 60.0) -> list[SourceSettings]:
    """Build source settings from per-backend environment variables.

    A backend is configured only when all of its variables are present.
    """
    sources: list[SourceSettings] = []

    token = os.environ.get("TELEGRAM_BOT_TOKEN")
    if token:
        sources.append(SourceSettings(
            kind=SourceKind.TELEGRAM,
            poll_interval=default_interval,
            credentials={"bot_token": token},
            channels=_split_list(os.environ.get("TELEGRAM_CHAT_IDS")),
        ))

    token = os.environ.get("DISCORD_TOKEN")
    channels = _split_list(os.environ.get("DISCORD_CHANNEL_IDS"))
    if token and channels:
        sources.append(SourceSettings(
            kind=SourceKind.DISCORD,
            poll_interval=default_interval,
            credentials={"token": token},
            channels=channels,
        ))

    repos = _split_list(os.environ.get("GITHUB_REPOS"))
    if repos:
        sources.append(SourceSettings(
            kind=SourceKind.GITHUB,
            poll_interval=default_interval,
            credentials={"token": os.environ.get("GITHUB_TOKEN", "")},
            channels=repos,
        ))

    base_url = os.environ.get("JIRA_BASE_URL")
    email = os.environ.get("JIRA_EMAIL")
    api_token = os.environ.get("JIRA_API_TOKEN")
    projects = _split_list(os.environ.get("JIRA_PROJECT_KEYS"))
    if base_url and email and api_token and projects:
        sources.append(SourceSettings(
            kind=SourceKind.JIRA,
            poll_interval=default_interval,
            credentials={"email": email, "api_token": api_token},
            channels=projects,
            options={"base_url": base_url},
        ))

    return sources


def load_sources(config: Config) -> list[SourceSettings]:
    """Load enabled source settings.

    Reads the JSON sources file when it exists; otherwise falls back to
    per-backend environment variables. Raises ValueError on invalid entries.
    """
    path = Path(config.sources_config_path)
    if path.is_file():
        with open(path) as f:
            data = json.load(f)
        entries = data.get("sources", [])
        sources = [_parse_source(e, config.default_poll_interval_seconds) for e in entries]
        logger.info("Loaded %d source(s) from %s", len(sources), path)
    else:
        sources = sources_from_env(config.default_poll_interval_seconds)
        logger.info("Sources file %s not found; %d source(s) from environment", path, len(sources))

    return [s for s in sources if s.enabled]
