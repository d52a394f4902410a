# termchat_history/config.py
# Description: Configuration management for the history sync layer.
#
# Imports
import copy
import os
import tomllib
from pathlib import Path
from typing import Dict, Any, Optional
#
# Third-Party Imports
from loguru import logger
from pydantic import BaseModel, Field
#
# Local Imports
from .Constants import (
    APP_NAME,
    DEFAULT_BATCH_SIZE,
    DEFAULT_CONNECT_TIMEOUT_MS,
    DEFAULT_MAX_DRAIN_BATCHES,
    DEFAULT_MAX_RETRIES,
    DEFAULT_PULL_PAGE_SIZE,
    DEFAULT_REQUEST_TIMEOUT_MS,
    DEFAULT_RETRY_BACKOFF_BASE_MS,
    DEFAULT_SHUTDOWN_DRAIN_TIMEOUT_MS,
    DEFAULT_SYNC_CONCURRENCY,
    DEFAULT_SYNC_INTERVAL_MS,
)
#
#######################################################################################################################
#
# Functions:

# --- Path to the configuration file ---
DEFAULT_CONFIG_PATH = Path.home() / ".config" / APP_NAME / "config.toml"
BASE_DATA_DIR = Path.home() / ".local" / "share" / APP_NAME

# Environment variables checked for the remote store, in priority order.
REMOTE_URL_ENV_VARS = ("TERMCHAT_REMOTE_URL", "TURSO_DATABASE_URL")
REMOTE_TOKEN_ENV_VARS = ("TERMCHAT_REMOTE_TOKEN", "TURSO_AUTH_TOKEN")


class SyncConfig(BaseModel):
    """Settings consumed by the authenticator and the background sync worker."""
    remote_url: Optional[str] = None
    remote_token: Optional[str] = None
    connect_timeout_ms: int = Field(default=DEFAULT_CONNECT_TIMEOUT_MS, gt=0)
    request_timeout_ms: int = Field(default=DEFAULT_REQUEST_TIMEOUT_MS, gt=0)
    sync_interval_ms: int = Field(default=DEFAULT_SYNC_INTERVAL_MS, gt=0)
    max_retries: int = Field(default=DEFAULT_MAX_RETRIES, ge=0)
    retry_backoff_base_ms: int = Field(default=DEFAULT_RETRY_BACKOFF_BASE_MS, ge=0)
    batch_size: int = Field(default=DEFAULT_BATCH_SIZE, ge=1)
    max_drain_batches: int = Field(default=DEFAULT_MAX_DRAIN_BATCHES, ge=1)
    sync_concurrency: int = Field(default=DEFAULT_SYNC_CONCURRENCY, ge=1)
    pull_page_size: int = Field(default=DEFAULT_PULL_PAGE_SIZE, ge=1)
    shutdown_drain_timeout_ms: int = Field(default=DEFAULT_SHUTDOWN_DRAIN_TIMEOUT_MS, ge=0)
    ensure_remote_schema: bool = True

    @property
    def offline_only(self) -> bool:
        """Missing url or token is a valid setup: history stays on this machine."""
        return not (self.remote_url and self.remote_token)


CONFIG_TOML_CONTENT = """
# Configuration for termchat_history
# This file is created with default values on first run; edit it to connect a remote store.

[general]
log_level = "INFO"

[logging]
log_filename = "termchat_history.log"
metrics_filename = "termchat_history_metrics.json"

[database]
# Local cache; always available, also while offline.
cache_db_path = "~/.local/share/termchat_history/history_cache.db"

[remote]
# libSQL / Turso database. Leave url or token empty to keep history offline-only.
# TERMCHAT_REMOTE_URL / TURSO_DATABASE_URL and TERMCHAT_REMOTE_TOKEN / TURSO_AUTH_TOKEN override these.
url = ""
token = ""
ensure_schema = true

[sync]
connect_timeout_ms = 5000
request_timeout_ms = 3000
sync_interval_ms = 30000
max_retries = 5
retry_backoff_base_ms = 1000
batch_size = 50
max_drain_batches = 4
sync_concurrency = 4
pull_page_size = 100
shutdown_drain_timeout_ms = 3000
"""

try:
    DEFAULT_CONFIG_FROM_TOML: Dict[str, Any] = tomllib.loads(CONFIG_TOML_CONTENT)
except tomllib.TOMLDecodeError as e:
    logger.critical(f"FATAL: Could not parse internal CONFIG_TOML_CONTENT: {e}.")
    DEFAULT_CONFIG_FROM_TOML = {}


# --- Helper for deep merging dictionaries ---
def deep_merge_dicts(base: Dict, update: Dict) -> Dict:
    """Recursively merges update into a copy of base."""
    merged = copy.deepcopy(base)
    for key, value in update.items():
        if isinstance(value, dict) and key in merged and isinstance(merged[key], dict):
            merged[key] = deep_merge_dicts(merged[key], value)
        else:
            merged[key] = value
    return merged


# --- Primary Configuration Loading Logic ---
_CONFIG_CACHE: Optional[Dict[str, Any]] = None

def load_settings(force_reload: bool = False) -> Dict[str, Any]:
    """
    Loads settings from ~/.config/termchat_history/config.toml.
    If the file doesn't exist, it's created with default values.
    """
    global _CONFIG_CACHE
    if _CONFIG_CACHE is not None and not force_reload:
        return _CONFIG_CACHE

    loaded_config = copy.deepcopy(DEFAULT_CONFIG_FROM_TOML)
    config_path = DEFAULT_CONFIG_PATH

    if not config_path.exists():
        logger.info(f"Config file not found at {config_path}. Creating with default values.")
        try:
            config_path.parent.mkdir(parents=True, exist_ok=True)
            with open(config_path, "w", encoding="utf-8") as f:
                f.write(CONFIG_TOML_CONTENT)
            logger.info(f"Created default config file at {config_path}")
        except OSError as e:
            logger.error(f"Could not create default config file {config_path}: {e}. Using internal defaults.")
    else:
        logger.debug(f"Loading config from: {config_path}")
        try:
            with open(config_path, "rb") as f:
                user_config_from_file = tomllib.load(f)
            loaded_config = deep_merge_dicts(loaded_config, user_config_from_file)
        except tomllib.TOMLDecodeError as e:
            logger.error(f"Error decoding TOML config file {config_path}: {e}. Using internal defaults.")
        except OSError as e:
            logger.error(f"Could not read config file {config_path}: {e}. Using internal defaults.")

    _CONFIG_CACHE = loaded_config
    return _CONFIG_CACHE


def get_cli_setting(section: str, key: str, default: Any = None) -> Any:
    """Helper to get a specific setting from the loaded configuration."""
    section_data = load_settings().get(section)
    if isinstance(section_data, dict):
        return section_data.get(key, default)
    return default


def _first_env(names) -> Optional[str]:
    for name in names:
        value = os.environ.get(name)
        if value:
            return value
    return None


def load_sync_config() -> SyncConfig:
    """Builds the SyncConfig from the [remote] and [sync] sections plus environment overrides."""
    remote = load_settings().get("remote", {}) or {}
    sync_section = load_settings().get("sync", {}) or {}
    known = {k: v for k, v in sync_section.items() if k in SyncConfig.model_fields}
    unknown = sorted(set(sync_section) - set(known))
    if unknown:
        logger.warning(f"Ignoring unknown [sync] settings: {unknown}")
    return SyncConfig(
        remote_url=_first_env(REMOTE_URL_ENV_VARS) or remote.get("url") or None,
        remote_token=_first_env(REMOTE_TOKEN_ENV_VARS) or remote.get("token") or None,
        ensure_remote_schema=bool(remote.get("ensure_schema", True)),
        **known,
    )


# --- Database and Log File Path Getters ---
def get_cache_db_path() -> Path:
    default_db_path_str = str(BASE_DATA_DIR / "history_cache.db")
    db_path_str = get_cli_setting("database", "cache_db_path", default_db_path_str)
    return Path(db_path_str).expanduser().resolve()


def get_log_file_path() -> Path:
    log_filename = get_cli_setting("logging", "log_filename", "termchat_history.log")
    return get_cache_db_path().parent / log_filename


def get_metrics_file_path() -> Path:
    metrics_filename = get_cli_setting("logging", "metrics_filename", "termchat_history_metrics.json")
    return get_cache_db_path().parent / metrics_filename


def get_machine_id_path() -> Path:
    return get_cache_db_path().parent / "machine-id"

#
# End of termchat_history/config.py
#######################################################################################################################
