"""Compile-time constants for the chatsync package.

These are values baked into code that change only on code updates,
NOT between environments. For runtime settings, see config.py.
"""

# ──────────────────────────────────────────────────────────────────────
# Storage
# ──────────────────────────────────────────────────────────────────────
DEFAULT_DATABASE_PATH = "~/.chatsync/chatsync.db"
DEFAULT_MEDIA_DIR = "~/.chatsync/media"
DEFAULT_MEDIA_URL_PREFIX = "/api/media/download"
SQLITE_TIMEOUT = 10.0
SQLITE_MAX_PARAMS = 900  # stay under SQLITE_MAX_VARIABLE_NUMBER on old builds

# ──────────────────────────────────────────────────────────────────────
# Attachments
# ──────────────────────────────────────────────────────────────────────
ATTACHMENT_FETCH_TIMEOUT = 60.0
DEFAULT_ATTACHMENT_EXTENSION = "bin"

# ──────────────────────────────────────────────────────────────────────
# Auto-reply
# ──────────────────────────────────────────────────────────────────────
DEFAULT_TRIGGERS = ["bot hablame"]
DEFAULT_CONTEXT_WINDOW = 10
GROUP_CONTEXT_WINDOW = 5
COMPLETION_TIMEOUT = 30.0
FALLBACK_REPLY = "Sorry, I couldn't generate a response right now."
CLASSIFICATION_GROUP = "group_triggered"
CLASSIFICATION_INDIVIDUAL = "individual_auto"

# ──────────────────────────────────────────────────────────────────────
# Reconciliation
# ──────────────────────────────────────────────────────────────────────
DEFAULT_FETCH_WINDOW = 30
DEFAULT_RECONCILE_CONCURRENCY = 1
DEFAULT_REPLAY_WINDOW = 200

# ──────────────────────────────────────────────────────────────────────
# Lifecycle
# ──────────────────────────────────────────────────────────────────────
SHUTDOWN_DRAIN_TIMEOUT = 15.0

# ──────────────────────────────────────────────────────────────────────
# Agent Defaults (fallbacks if config.json is missing values)
# ──────────────────────────────────────────────────────────────────────
DEFAULT_PROVIDER = "litellm"
DEFAULT_MODEL = "gpt-4o-mini"
DEFAULT_TEMPERATURE = 0.7
DEFAULT_MAX_TOKENS = 150

# ──────────────────────────────────────────────────────────────────────
# Config
# ──────────────────────────────────────────────────────────────────────
CONFIG_FILENAME = "configs/config.json"
CONFIG_ENV_VAR = "CHATSYNC_CONFIG"
DEFAULT_LOG_LEVEL = "INFO"
