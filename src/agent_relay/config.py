"""Config I/O for relay.yaml, with keys.yaml and environment overrides.

Priority order (highest wins):
1. Environment variables (SLACK_BOT_TOKEN, AGENT_RELAY_AGENT_URL, etc.)
2. keys.yaml for secrets
3. relay.yaml
4. Schema defaults
"""

from __future__ import annotations

import logging
import os
import re
from collections.abc import Callable
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from .conventions import (
    DATA_DIR,
    DEFAULT_IDENTITY_ID,
    ENV_IDENTITY_ID,
    KEYS_FILENAME,
    RELAY_CONFIG_FILENAME,
    RELAY_HOME,
)
from .schema import RelayConfig, SlackAppConfig, TelegramBotConfig

logger = logging.getLogger(__name__)

_IDENTITY_UNSAFE = re.compile(r"[^a-zA-Z0-9_.-]+")
_IDENTITY_MAX_LENGTH = 48


def relay_home() -> Path:
    return Path(RELAY_HOME).expanduser()


def config_path(home: Path | None = None) -> Path:
    """Return the path to relay.yaml, expanded."""
    return (home or relay_home()) / RELAY_CONFIG_FILENAME


def data_dir(config: RelayConfig, home: Path | None = None) -> Path:
    """Directory holding bindings.json and sessions.json."""
    if config.data_dir:
        return Path(config.data_dir).expanduser()
    return (home or relay_home()) / DATA_DIR


def normalize_identity_id(value: str | None) -> str:
    """Trim an identity id and replace anything outside ``[A-Za-z0-9_.-]``.

    Empty input maps to the default identity.
    """
    cleaned = _IDENTITY_UNSAFE.sub("-", (value or "").strip()).strip("-")
    cleaned = cleaned[:_IDENTITY_MAX_LENGTH]
    return cleaned or DEFAULT_IDENTITY_ID


def _load_keys(home: Path) -> dict[str, Any]:
    """Load keys.yaml if it exists."""
    path = home / KEYS_FILENAME
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text())
        return data if isinstance(data, dict) else {}
    except (OSError, yaml.YAMLError):
        logger.warning("Failed to read keys.yaml", exc_info=True)
        return {}


def _str(env_key: str, keys: dict[str, Any], current: str) -> str:
    """Get string: env > keys.yaml > relay.yaml value."""
    env = os.environ.get(env_key, "")
    if env:
        return env
    k = keys.get(env_key, "")
    if k:
        return str(k)
    return current


def _bool(env_key: str, current: bool) -> bool:
    """Get bool: env > relay.yaml value."""
    env = os.environ.get(env_key, "")
    if env:
        return env.lower() in ("1", "true", "yes")
    return current


def _read_file(path: Path) -> RelayConfig:
    """Parse relay.yaml alone, with no keys.yaml or environment values.

    If the file contains invalid values, logs a warning and continues
    with defaults so the relay can still start.
    """
    config = RelayConfig()
    if path.exists():
        try:
            data = yaml.safe_load(path.read_text())
        except yaml.YAMLError as exc:
            logger.warning("Unreadable %s: %s. Using defaults.", path, exc)
            data = None
        if data:
            try:
                config = RelayConfig(**data)
            except ValidationError as exc:
                logger.warning("Invalid %s: %s. Using defaults.", path, exc)
    return config


def load_config(home: Path | None = None) -> RelayConfig:
    """Load relay.yaml and apply keys.yaml + environment overrides."""
    home = home or relay_home()
    return apply_overrides(_read_file(config_path(home)), _load_keys(home))


def apply_overrides(config: RelayConfig, keys: dict[str, Any]) -> RelayConfig:
    """Layer keys.yaml and environment values on top of *config*."""
    config = config.model_copy(deep=True)

    config.workspace_root = _str(
        "AGENT_RELAY_WORKSPACE_ROOT", {}, config.workspace_root
    )
    config.groups_enabled = _bool("AGENT_RELAY_GROUPS_ENABLED", config.groups_enabled)
    config.agent.url = _str("AGENT_RELAY_AGENT_URL", {}, config.agent.url)
    config.agent.username = _str(
        "AGENT_RELAY_AGENT_USERNAME", keys, config.agent.username
    )
    config.agent.password = _str(
        "AGENT_RELAY_AGENT_PASSWORD", keys, config.agent.password
    )
    config.agent.model = _str("AGENT_RELAY_MODEL", {}, config.agent.model)
    mode = os.environ.get("AGENT_RELAY_PERMISSION_MODE", "").strip().lower()
    if mode:
        config.agent.permission_mode = "deny" if mode == "deny" else "allow"
    config.agent.tool_updates_enabled = _bool(
        "AGENT_RELAY_TOOL_UPDATES", config.agent.tool_updates_enabled
    )
    limit = os.environ.get("AGENT_RELAY_TOOL_OUTPUT_LIMIT", "")
    if limit:
        try:
            config.agent.tool_output_limit = max(0, int(limit))
        except ValueError:
            logger.warning("Ignoring AGENT_RELAY_TOOL_OUTPUT_LIMIT=%r", limit)
    config.admin.api_key = _str("AGENT_RELAY_API_KEY", keys, config.admin.api_key)

    slack_bot = _str("SLACK_BOT_TOKEN", keys, "")
    slack_app = _str("SLACK_APP_TOKEN", keys, "")
    if slack_bot and slack_app:
        config.slack.apps.append(
            SlackAppConfig(id=ENV_IDENTITY_ID, bot_token=slack_bot, app_token=slack_app)
        )

    telegram_token = _str("TELEGRAM_BOT_TOKEN", keys, "")
    if telegram_token:
        config.telegram.bots.append(
            TelegramBotConfig(id=ENV_IDENTITY_ID, token=telegram_token)
        )

    for app in config.slack.apps:
        app.id = normalize_identity_id(app.id)
    for bot in config.telegram.bots:
        bot.id = normalize_identity_id(bot.id)
    return config


def save_config(config: RelayConfig, home: Path | None = None) -> Path:
    """Write config to relay.yaml and return the path written."""
    path = config_path(home)
    path.parent.mkdir(parents=True, exist_ok=True)

    data = config.model_dump()
    text = yaml.dump(data, default_flow_style=False, sort_keys=False)
    path.write_text(text)
    return path


IdentityConfig = SlackAppConfig | TelegramBotConfig


def identity_list(config: RelayConfig, channel: str) -> list[Any]:
    """The mutable list of identities configured for *channel*."""
    if channel == "slack":
        return config.slack.apps
    if channel == "telegram":
        return config.telegram.bots
    raise ValueError(f"Unknown channel: {channel!r}")


def upsert_identity(
    config: RelayConfig, channel: str, identity: IdentityConfig
) -> IdentityConfig:
    """Add *identity* to *config*, replacing one with the same id.

    A replacement with no directory keeps the directory already configured.
    Returns the stored identity.
    """
    identity = identity.model_copy()
    identity.id = normalize_identity_id(identity.id)
    if identity.id == ENV_IDENTITY_ID:
        raise ValueError(f"identity id '{ENV_IDENTITY_ID}' is reserved")
    entries = identity_list(config, channel)
    for index, existing in enumerate(entries):
        if existing.id == identity.id:
            if not identity.directory:
                identity.directory = existing.directory
            entries[index] = identity
            return identity
    entries.append(identity)
    return identity


def remove_identity(config: RelayConfig, channel: str, identity_id: str) -> bool:
    """Drop an identity from *config*. Returns whether one was removed."""
    identity_id = normalize_identity_id(identity_id)
    if identity_id == ENV_IDENTITY_ID:
        raise ValueError(f"identity '{ENV_IDENTITY_ID}' cannot be deleted")
    entries = identity_list(config, channel)
    kept = [e for e in entries if e.id != identity_id]
    removed = len(kept) != len(entries)
    entries[:] = kept
    return removed


def update_config_file(
    mutate: Callable[[RelayConfig], Any], home: Path | None = None
) -> Path:
    """Apply *mutate* to relay.yaml as stored and write it back.

    Works on the file alone so secrets from keys.yaml or the environment
    are never copied into relay.yaml.
    """
    config = _read_file(config_path(home))
    mutate(config)
    return save_config(config, home)
