"""Conventions tests: pinned values and agreement with schema defaults."""

import inspect

from agent_relay import conventions
from agent_relay.schema import AdminConfig, AgentConfig, SlackSettings, TelegramSettings


class TestCanonicalValues:
    def test_relay_home(self):
        assert conventions.RELAY_HOME == "~/.agent-relay"

    def test_store_filenames(self):
        assert conventions.BINDINGS_FILENAME == "bindings.json"
        assert conventions.SESSIONS_FILENAME == "sessions.json"

    def test_platform_limits(self):
        assert conventions.SLACK_MAX_TEXT_LENGTH == 39_000
        assert conventions.TELEGRAM_MAX_TEXT_LENGTH == 4096

    def test_model_presets(self):
        assert conventions.MODEL_PRESETS["opus"].startswith("anthropic/")
        assert conventions.MODEL_PRESETS["codex"].startswith("openai/")

    def test_notices(self):
        assert conventions.SESSION_STARTED_NOTICE == "Session started."
        assert conventions.STALE_SESSION_NOTICE == (
            "No visible response was generated. I reset this chat session "
            "in case stale state was blocking replies."
        )
        assert conventions.PERMISSION_DENIED_NOTICE == (
            "Permission denied. Update configuration to allow tools."
        )

    def test_module_is_pure_constants(self):
        members = inspect.getmembers(conventions)
        callables = [
            name
            for name, value in members
            if inspect.isfunction(value) or inspect.isclass(value)
        ]
        assert callables == []


class TestSchemaDefaultsMatchConventions:
    def test_agent_defaults(self):
        agent = AgentConfig()
        assert agent.url == conventions.AGENT_DEFAULT_URL
        assert agent.prompt_timeout_seconds == conventions.PROMPT_TIMEOUT_SECONDS
        assert agent.tool_output_limit == conventions.TOOL_OUTPUT_LIMIT
        assert agent.tool_updates_enabled is False
        assert agent.permission_mode == "allow"

    def test_admin_defaults(self):
        admin = AdminConfig()
        assert admin.host == conventions.SERVER_DEFAULT_HOST
        assert admin.port == conventions.SERVER_DEFAULT_PORT

    def test_text_limits(self):
        assert SlackSettings().max_text_length == conventions.SLACK_MAX_TEXT_LENGTH
        telegram = TelegramSettings()
        assert telegram.max_text_length == conventions.TELEGRAM_MAX_TEXT_LENGTH
