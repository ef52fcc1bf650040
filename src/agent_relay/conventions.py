"""Agent Relay Conventions - IMMUTABLE

Canonical names and paths every relay component agrees on. These values
are NOT configurable.

Things that CAN be configured (via relay.yaml):
- workspace_root (the only directory tree chat peers may bind to)
- agent runtime URL and credentials
- Slack apps and Telegram bots

Things that CANNOT be configured (defined HERE):
- filenames (relay.yaml, keys.yaml, bindings.json, sessions.json)
- directory structure within ~/.agent-relay/
- platform text limits and fixed user-facing notices
"""

# --- The Root ---
RELAY_HOME = "~/.agent-relay"

# --- Configuration ---
RELAY_CONFIG_FILENAME = "relay.yaml"
KEYS_FILENAME = "keys.yaml"
ENV_FILENAME = ".env"

# --- Persisted peer state ---
DATA_DIR = "data"  # relative to RELAY_HOME
BINDINGS_FILENAME = "bindings.json"
SESSIONS_FILENAME = "sessions.json"

# --- Server ---
SERVER_DIR = "server"  # relative to RELAY_HOME
SERVER_LOG_FILE = "relay.log"
SERVER_DEFAULT_HOST = "127.0.0.1"
SERVER_DEFAULT_PORT = 8410

# --- Agent runtime ---
AGENT_DEFAULT_URL = "http://127.0.0.1:4096"
PROMPT_TIMEOUT_SECONDS = 300.0

# --- Channels ---
SLACK_MAX_TEXT_LENGTH = 39_000
TELEGRAM_MAX_TEXT_LENGTH = 4096
DEFAULT_IDENTITY_ID = "default"
ADAPTER_START_TIMEOUT_SECONDS = 8.0

# --- Fixed notices ---
SESSION_STARTED_NOTICE = "Session started."
STALE_SESSION_NOTICE = (
    "No visible response was generated. "
    "I reset this chat session in case stale state was blocking replies."
)
GENERIC_FAILURE_MESSAGE = "Error: failed to reach the agent runtime."

# --- Chat feedback while a prompt runs ---
TYPING_INTERVAL_SECONDS = 6.0
TOOL_OUTPUT_LIMIT = 1200
TOOL_TITLE_LIMIT = 120
PERMISSION_DENIED_NOTICE = "Permission denied. Update configuration to allow tools."

# --- Model presets (chat command -> "provider/model") ---
MODEL_PRESETS = {
    "opus": "anthropic/claude-opus-4-5-20251101",
    "codex": "openai/gpt-5.2-codex",
}

# --- Workspace agent file ---
AGENT_FILE_RELATIVE_PATH = ".opencode/agents/agent-relay.md"  # relative to root
AGENT_FILE_MAX_CHARS = 16_000

# --- Reserved identity id for credentials taken from the environment ---
ENV_IDENTITY_ID = "env"
