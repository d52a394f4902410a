# Constants.py
# Description: Constants shared by the history cache, sync worker and remote client
#
# Imports
#
# 3rd-Party Imports
#
# Local Imports
#
########################################################################################################################
#
# Functions:

# --- Application identity ---
APP_NAME = "termchat_history"

# --- Logical history tables (shared by the local cache and the remote store) ---
TABLE_HISTORY_GLOBAL = "history_global"
TABLE_HISTORY_USER = "history_user"
TABLE_HISTORY_MACHINE = "history_machine"
TABLE_HISTORY_LOCAL = "history_local"  # never leaves this machine

SYNCED_HISTORY_TABLES = (TABLE_HISTORY_GLOBAL, TABLE_HISTORY_USER, TABLE_HISTORY_MACHINE)
ALL_HISTORY_TABLES = SYNCED_HISTORY_TABLES + (TABLE_HISTORY_LOCAL,)

TABLE_USERS = "users"
TABLE_MACHINES = "machines"

# --- Input limits (characters) ---
MAX_COMMAND_SIZE = 10_000
MAX_RESPONSE_SIZE = 100_000
TRUNCATION_MARKER = "...[truncated]"
MAX_ERROR_TEXT = 500

# --- Sync defaults ---
DEFAULT_CONNECT_TIMEOUT_MS = 5_000
DEFAULT_REQUEST_TIMEOUT_MS = 3_000
DEFAULT_SYNC_INTERVAL_MS = 30_000
DEFAULT_MAX_RETRIES = 5
DEFAULT_RETRY_BACKOFF_BASE_MS = 1_000
DEFAULT_BATCH_SIZE = 50
DEFAULT_MAX_DRAIN_BATCHES = 4
DEFAULT_SYNC_CONCURRENCY = 4
DEFAULT_PULL_PAGE_SIZE = 100
DEFAULT_SHUTDOWN_DRAIN_TIMEOUT_MS = 3_000

# --- Sync metadata keys ---
META_LAST_SYNC_AT = "last_sync_at"
META_LAST_ERROR = "last_error"
META_PULL_CURSOR_PREFIX = "pull_cursor"

#
# End of Constants.py
########################################################################################################################
