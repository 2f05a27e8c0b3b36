"""Typed runtime settings for chatsync.

``configs/config.json`` is read once per process and turned into frozen
dataclasses. Any string value written as an environment variable name
(``"TELEGRAM_BOT_TOKEN"``, ``"GROQ_API_KEY"``) is swapped for that
variable's value, after ``.env`` has been merged into the environment.

The file is found through ``$CHATSYNC_CONFIG`` when that is set, and
otherwise through the nearest ancestor directory holding ``configs/``.
"""

from __future__ import annotations

import json
import os
import re
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from loguru import logger

from chatsync.constants import (
    COMPLETION_TIMEOUT,
    CONFIG_ENV_VAR,
    CONFIG_FILENAME,
    DEFAULT_CONTEXT_WINDOW,
    DEFAULT_DATABASE_PATH,
    DEFAULT_FETCH_WINDOW,
    DEFAULT_LOG_LEVEL,
    DEFAULT_MAX_TOKENS,
    DEFAULT_MEDIA_DIR,
    DEFAULT_MEDIA_URL_PREFIX,
    DEFAULT_MODEL,
    DEFAULT_PROVIDER,
    DEFAULT_RECONCILE_CONCURRENCY,
    DEFAULT_TEMPERATURE,
    DEFAULT_TRIGGERS,
    GROUP_CONTEXT_WINDOW,
)

# e.g. GROQ_API_KEY; lowercase or short strings are taken literally
_SECRET_NAME = re.compile(r"^[A-Z][A-Z0-9_]{2,}$")

_CHANNEL_RESERVED_KEYS = frozenset({"type", "enabled", "env_token"})


# ──────────────────────────────────────────────────────────────────────
# Secrets
# ──────────────────────────────────────────────────────────────────────


def resolve_secret(value: str) -> str | None:
    """Look ``value`` up in the environment when it names a variable.

    Anything that is not shaped like ``UPPER_SNAKE_CASE`` is returned
    unchanged. A variable name that is not set yields ``None``.
    """
    if not isinstance(value, str) or not _SECRET_NAME.match(value):
        return value

    secret = os.environ.get(value)
    if secret is None:
        logger.warning("Environment variable {} is not set (add it to .env)", value)
    return secret


# ──────────────────────────────────────────────────────────────────────
# Sections
# ──────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class AgentDefaults:
    """Which model answers auto-replies, and how."""

    provider: str = DEFAULT_PROVIDER
    model: str = DEFAULT_MODEL
    temperature: float = DEFAULT_TEMPERATURE
    max_tokens: int = DEFAULT_MAX_TOKENS


@dataclass(frozen=True)
class AgentConfig:
    defaults: AgentDefaults = field(default_factory=AgentDefaults)
    completion_timeout: float = COMPLETION_TIMEOUT


@dataclass(frozen=True)
class ProviderConfig:
    """One completion backend. ``api_key`` holds the resolved secret."""

    name: str
    slug: str
    api_key: str | None = None
    api_base: str = ""
    enabled: bool = False
    adapters: str = "litellm"


@dataclass(frozen=True)
class ChannelConfig:
    """One platform connection. Unrecognised keys are kept in ``extra``."""

    name: str
    type: str
    enabled: bool = False
    token: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class StorageConfig:
    """Where the message database and attachment blobs live."""

    database_path: str = DEFAULT_DATABASE_PATH
    media_dir: str = DEFAULT_MEDIA_DIR
    media_url_prefix: str = DEFAULT_MEDIA_URL_PREFIX

    @property
    def resolved_database(self) -> Path:
        return Path(self.database_path).expanduser().resolve()

    @property
    def resolved_media_dir(self) -> Path:
        return Path(self.media_dir).expanduser().resolve()


@dataclass(frozen=True)
class AutoReplyConfig:
    enabled: bool = True
    triggers: tuple[str, ...] = tuple(DEFAULT_TRIGGERS)
    window_size: int = DEFAULT_CONTEXT_WINDOW
    group_window_size: int = GROUP_CONTEXT_WINDOW
    matcher: str = "substring"


@dataclass(frozen=True)
class ReconcileConfig:
    fetch_window: int = DEFAULT_FETCH_WINDOW
    on_startup: bool = True
    concurrency: int = DEFAULT_RECONCILE_CONCURRENCY


@dataclass(frozen=True)
class LoggingConfig:
    level: str = DEFAULT_LOG_LEVEL


@dataclass
class AppConfig:
    """Everything ``config.json`` describes, with secrets already filled in."""

    agent: AgentConfig
    providers: dict[str, ProviderConfig]
    channels: dict[str, ChannelConfig]
    storage: StorageConfig = field(default_factory=StorageConfig)
    auto_reply: AutoReplyConfig = field(default_factory=AutoReplyConfig)
    reconcile: ReconcileConfig = field(default_factory=ReconcileConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    def get_provider(self, slug: str) -> ProviderConfig | None:
        return self.providers.get(slug)

    def get_enabled_providers(self) -> dict[str, ProviderConfig]:
        return {slug: prov for slug, prov in self.providers.items() if prov.enabled}

    def get_channel(self, name: str) -> ChannelConfig | None:
        return self.channels.get(name)

    def get_enabled_channels(self) -> dict[str, ChannelConfig]:
        """Channels switched on in the file, keyed by their section name."""
        return {name: chan for name, chan in self.channels.items() if chan.enabled}


# ──────────────────────────────────────────────────────────────────────
# Parsing
# ──────────────────────────────────────────────────────────────────────


def _parse_agent(section: dict[str, Any]) -> AgentConfig:
    model = section.get("default", {})
    return AgentConfig(
        defaults=AgentDefaults(
            provider=model.get("provider", DEFAULT_PROVIDER),
            model=model.get("model", DEFAULT_MODEL),
            temperature=model.get("temperature", DEFAULT_TEMPERATURE),
            max_tokens=model.get("max_tokens", DEFAULT_MAX_TOKENS),
        ),
        completion_timeout=section.get("completion_timeout", COMPLETION_TIMEOUT),
    )


def _parse_providers(section: dict[str, Any]) -> dict[str, ProviderConfig]:
    return {
        slug: ProviderConfig(
            name=entry.get("name", slug),
            slug=slug,
            api_key=resolve_secret(entry.get("api_key", "")),
            api_base=entry.get("api_base", ""),
            enabled=entry.get("enabled", False),
            adapters=entry.get("adapters", "litellm"),
        )
        for slug, entry in section.items()
    }


def _parse_channels(section: dict[str, Any]) -> dict[str, ChannelConfig]:
    channels = {}
    for name, entry in section.items():
        token_ref = entry.get("env_token")
        channels[name] = ChannelConfig(
            name=name,
            type=entry.get("type", name),
            enabled=entry.get("enabled", False),
            token=resolve_secret(token_ref) if token_ref else None,
            extra={k: v for k, v in entry.items() if k not in _CHANNEL_RESERVED_KEYS},
        )
    return channels


def _parse_config(raw: dict[str, Any]) -> AppConfig:
    """Build an ``AppConfig`` from the decoded JSON; absent sections get defaults."""
    storage = raw.get("storage", {})
    reply = raw.get("auto_reply", {})
    reconcile = raw.get("reconcile", {})

    return AppConfig(
        agent=_parse_agent(raw.get("agent", {})),
        providers=_parse_providers(raw.get("providers", {})),
        channels=_parse_channels(raw.get("channels", {})),
        storage=StorageConfig(
            database_path=storage.get("database_path", DEFAULT_DATABASE_PATH),
            media_dir=storage.get("media_dir", DEFAULT_MEDIA_DIR),
            media_url_prefix=storage.get("media_url_prefix", DEFAULT_MEDIA_URL_PREFIX),
        ),
        auto_reply=AutoReplyConfig(
            enabled=reply.get("enabled", True),
            triggers=tuple(reply.get("triggers", DEFAULT_TRIGGERS)),
            window_size=reply.get("window_size", DEFAULT_CONTEXT_WINDOW),
            group_window_size=reply.get("group_window_size", GROUP_CONTEXT_WINDOW),
            matcher=reply.get("matcher", "substring"),
        ),
        reconcile=ReconcileConfig(
            fetch_window=reconcile.get("fetch_window", DEFAULT_FETCH_WINDOW),
            on_startup=reconcile.get("on_startup", True),
            concurrency=reconcile.get("concurrency", DEFAULT_RECONCILE_CONCURRENCY),
        ),
        logging=LoggingConfig(level=raw.get("logging", {}).get("level", DEFAULT_LOG_LEVEL)),
    )


# ──────────────────────────────────────────────────────────────────────
# Loading
# ──────────────────────────────────────────────────────────────────────

_config: AppConfig | None = None


def _config_path() -> Path:
    override = os.environ.get(CONFIG_ENV_VAR)
    if override:
        return Path(override).expanduser()

    start = Path(__file__).resolve().parent
    for directory in (start, *start.parents):
        if (directory / "configs").is_dir():
            return directory / CONFIG_FILENAME
    raise FileNotFoundError(f"No configs/ directory above {start}; set ${CONFIG_ENV_VAR}")


def _read_config_file(path: Path) -> dict[str, Any]:
    if not path.is_file():
        raise FileNotFoundError(f"Config file not found: {path}")
    data = json.loads(path.read_text(encoding="utf-8"))
    logger.info("Read settings from {}", path)
    return data


def get_config(*, reload: bool = False) -> AppConfig:
    """Return the process-wide ``AppConfig``, reading it on first use.

    Pass ``reload=True`` to read the file again, e.g. after a test
    points ``$CHATSYNC_CONFIG`` somewhere else.
    """
    global _config

    if _config is not None and not reload:
        return _config

    from dotenv import load_dotenv

    load_dotenv()
    _config = _parse_config(_read_config_file(_config_path()))
    logger.debug(
        "Settings ready: providers={} channels={}",
        sorted(_config.providers),
        sorted(_config.channels),
    )
    return _config


def configure_logging(level: str = DEFAULT_LOG_LEVEL) -> None:
    """Replace loguru's default sink with one at the configured level."""
    logger.remove()
    logger.add(
        sys.stderr,
        level=level.upper(),
        format=(
            "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>"
        ),
    )
