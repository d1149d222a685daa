"""Shared defaults."""

# Telegram inline button callback_data limit (bytes)
TELEGRAM_CALLBACK_DATA_MAX_BYTES = 64

DEFAULT_CALLBACK_TTL_SECONDS = 15 * 60
DEFAULT_CALLBACK_ALIAS_CAPACITY = 5000
DEFAULT_CALLBACK_ALIAS_TTL_SECONDS = 15 * 60
DEFAULT_ACTION_DEDUPE_TTL_SECONDS = 8.0
DEFAULT_FLOW_TTL_SECONDS = 10 * 60
DEFAULT_CONVERSATION_TIMEOUT_SECONDS = 30 * 60
DEFAULT_MENU_METRICS_LOG_INTERVAL = 25

# Stale/expired notices are shown once per cause within this window
STALE_NOTICE_TTL_SECONDS = 60 * 60

FALLBACK_CALLBACK_SECRET = "callback-secret"
