"""Pydantic schema for ~/.agent-relay/relay.yaml

Default values here MUST match the canonical constants in conventions.py.
Secrets (bot tokens, agent password, admin api key) may live in keys.yaml
or the environment instead; see config.py for the priority order.
"""

from typing import Literal

from pydantic import BaseModel, Field


class AgentConfig(BaseModel):
    """Connection settings for the agent runtime HTTP server."""

    # Source of truth: conventions.AGENT_DEFAULT_URL
    url: str = "http://127.0.0.1:4096"
    username: str = ""
    password: str = ""
    # Source of truth: conventions.PROMPT_TIMEOUT_SECONDS
    prompt_timeout_seconds: float = 300.0
    model: str = ""  # "provider/model"; empty uses the runtime default
    # "allow" answers tool permission requests with always, "deny" rejects them
    permission_mode: Literal["allow", "deny"] = "allow"
    # Post "[tool] ..." progress lines to the chat while a prompt runs
    tool_updates_enabled: bool = False
    # Source of truth: conventions.TOOL_OUTPUT_LIMIT
    tool_output_limit: int = 1200


class SlackAppConfig(BaseModel):
    """One Slack app (Socket Mode) the relay connects as."""

    id: str = "default"
    bot_token: str = ""  # xoxb-...
    app_token: str = ""  # xapp-...
    enabled: bool = True
    directory: str = ""  # default directory for this app's peers


class SlackSettings(BaseModel):
    apps: list[SlackAppConfig] = Field(default_factory=list)
    # Source of truth: conventions.SLACK_MAX_TEXT_LENGTH
    max_text_length: int = 39_000


class TelegramBotConfig(BaseModel):
    """One Telegram bot the relay long-polls for."""

    id: str = "default"
    token: str = ""
    enabled: bool = True
    directory: str = ""  # default directory for this bot's peers


class TelegramSettings(BaseModel):
    bots: list[TelegramBotConfig] = Field(default_factory=list)
    # Source of truth: conventions.TELEGRAM_MAX_TEXT_LENGTH
    max_text_length: int = 4096


class AdminConfig(BaseModel):
    """Admin/health HTTP surface.

    If api_key is set, every admin route except /health requires an
    Authorization: Bearer <key> header.
    """

    # Source of truth: conventions.SERVER_DEFAULT_HOST / SERVER_DEFAULT_PORT
    host: str = "127.0.0.1"
    port: int = 8410
    api_key: str = ""


class RelayConfig(BaseModel):
    workspace_root: str = "~/dev"
    data_dir: str = ""  # empty means conventions.RELAY_HOME / conventions.DATA_DIR
    groups_enabled: bool = False
    log_level: str = "INFO"
    agent: AgentConfig = Field(default_factory=AgentConfig)
    slack: SlackSettings = Field(default_factory=SlackSettings)
    telegram: TelegramSettings = Field(default_factory=TelegramSettings)
    admin: AdminConfig = Field(default_factory=AdminConfig)
