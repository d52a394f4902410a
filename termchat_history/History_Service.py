# History_Service.py
# Description: Entry point used by the terminal chat layer to record and query command history.
#
"""
History_Service.py
------------------

`HistoryService` wires the local cache, sync queue, authenticator, scope router, remote client and
background worker together, and exposes the operations the chat front end needs:

    service = HistoryService.from_settings()
    service.authenticate("alice")
    record = service.submit_command("ls -la", ScopeSelector.HYBRID)
    service.attach_response(record.uuid, "...")
    service.query_history(ScopeSelector.HYBRID)
    service.sync_status()
    service.shutdown()

Every foreground call completes against the local cache only; the remote store is reached by the
background worker, which is nudged through its inbox after each write.
"""
# Imports
import threading
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from pathlib import Path
from typing import List, Optional, Union
#
# 3rd-Party Imports
from loguru import logger
#
# Local Imports
from .Auth.Machine_Identity import MachineIdentity
from .Auth.Session_Authenticator import AuthMode, AuthResult, SessionAuthenticator
from .config import (
    SyncConfig,
    get_cache_db_path,
    get_cli_setting,
    get_log_file_path,
    get_machine_id_path,
    get_metrics_file_path,
    load_sync_config,
)
from .Constants import META_LAST_ERROR, META_LAST_SYNC_AT
from .DB.History_Cache_DB import HistoryCacheDB, InputError
from .DB.Sync_Queue import SyncQueue
from .Logging_Config import configure_logging
from .models import (
    HistoryFilter,
    HistoryRecord,
    RecordStatus,
    ScopeSelector,
    SyncStatusReport,
    parse_timestamp,
    utc_now,
)
from .remote_api.client import RemoteStoreClient
from .Scope_Router import ScopeRouter
from .Sync.Sync_Worker import BackgroundSyncWorker
#
########################################################################################################################
#
# Functions:


class HistoryService:
    def __init__(self, config: SyncConfig, cache: HistoryCacheDB, machine_identity: MachineIdentity,
                 client: Optional[RemoteStoreClient] = None):
        self.config = config
        self.cache = cache
        self.machine_identity = machine_identity
        self.machine_id = machine_identity.get_machine_id()
        if client is None and not config.offline_only:
            client = RemoteStoreClient(config.remote_url, config.remote_token,
                                       timeout=config.request_timeout_ms / 1000.0)
        self.client = client if not config.offline_only else None

        self.queue = SyncQueue(cache, max_retries=config.max_retries,
                               retry_backoff_base_ms=config.retry_backoff_base_ms)
        self.authenticator = SessionAuthenticator(config, cache, machine_identity, client=self.client)
        self.router = ScopeRouter(self.machine_id, lambda: self.authenticator.result)
        self.worker = BackgroundSyncWorker(config, cache, self.queue, self.client, self.router)

    @classmethod
    def from_settings(cls, db_path: Optional[Union[str, Path]] = None,
                      config: Optional[SyncConfig] = None, setup_logging: bool = True) -> "HistoryService":
        """
        Builds a service from the user's config file, environment and default paths. Unless
        `setup_logging` is False, logging is configured from `[general]`/`[logging]` first.
        """
        if setup_logging:
            configure_logging(get_cli_setting("general", "log_level", "INFO"),
                              log_file=get_log_file_path(), metrics_file=get_metrics_file_path())
        config = config or load_sync_config()
        cache = HistoryCacheDB(db_path or get_cache_db_path())
        return cls(config, cache, MachineIdentity(get_machine_id_path()))

    # --- Session ---
    @property
    def auth_result(self) -> Optional[AuthResult]:
        return self.authenticator.result

    def authenticate(self, identity: Optional[str] = None) -> AuthResult:
        """
        Starts the session, bounded by `connect_timeout_ms`. Returns the result (including
        USER_NOT_FOUND and OFFLINE) instead of raising; a connected session triggers a sync.

        After USER_NOT_FOUND the session is unusable: every history operation raises the
        `UserNotFoundError` until `authenticate` succeeds with another identity (or none).
        """
        result = self.authenticator.authenticate(identity)
        if result.is_connected and self.worker.is_running:
            self.worker.request_sync("reconnect")
        return result

    def _ensure_session_usable(self):
        result = self.authenticator.result
        if result is not None and result.mode is AuthMode.USER_NOT_FOUND:
            raise result.error

    def start(self):
        """
        Starts background sync. A no-op while offline-only.

        Raises:
            UserNotFoundError: The session's requested identity was rejected.
        """
        self._ensure_session_usable()
        if self.client is None:
            logger.info("Remote store not configured; history stays on this machine")
            return
        self.worker.start()
        self.worker.request_sync("startup")

    def sync_now(self):
        self._ensure_session_usable()
        self.worker.request_sync("manual")

    # --- Writes ---
    def submit_command(self, text: str, scope: ScopeSelector) -> HistoryRecord:
        """
        Records a new command under the requested scope and returns it. Durable on return.

        Raises:
            UserNotFoundError: The session's requested identity was rejected.
            ScopeCapabilityError: `user`/`hybrid` requested without a validated user.
            InputError: Empty command text.
        """
        self._ensure_session_usable()
        if not text or not text.strip():
            raise InputError("Command must be a non-empty string")
        target = self.router.route_write(ScopeSelector(scope))
        now = utc_now()
        record = HistoryRecord(
            command=text,
            created_at=now,
            updated_at=now,
            user_id=target.user_id,
            machine_id=target.machine_id,
            scope=target.scope,
            status=RecordStatus.PENDING,
        )
        stored = self.cache.put(record)
        self._nudge_worker(stored)
        return stored

    def attach_response(self, record_uuid: str, response: str) -> HistoryRecord:
        return self._update_record(record_uuid, response=response, status=RecordStatus.ANSWERED)

    def cancel_command(self, record_uuid: str) -> HistoryRecord:
        """Marks a command cancelled. Its already-queued sync entries are kept."""
        return self._update_record(record_uuid, status=RecordStatus.CANCELLED)

    def _update_record(self, record_uuid: str, **changes) -> HistoryRecord:
        """Applies a local mutation; the record is stamped with this machine as its last writer."""
        self._ensure_session_usable()
        current = self.cache.get(record_uuid)
        if current is None:
            raise InputError(f"No history record with uuid {record_uuid}")
        updated_at = max(utc_now(), current.updated_at)
        stored = self.cache.put(current.with_changes(updated_at=updated_at, machine_id=self.machine_id, **changes))
        self._nudge_worker(stored)
        return stored

    def _nudge_worker(self, record: HistoryRecord):
        if record.scope.is_synced and self.worker.is_running:
            self.worker.request_sync("local-write")

    # --- Reads ---
    def query_history(self, scope: ScopeSelector, filters: Optional[HistoryFilter] = None,
                      refresh: bool = False) -> List[HistoryRecord]:
        """
        Returns history visible under `scope`, oldest first. With `refresh`, a sync cycle is run
        first, bounded by `connect_timeout_ms`; the read itself is always served from the cache.

        Raises:
            UserNotFoundError: The session's requested identity was rejected.
            ScopeCapabilityError: `user`/`hybrid` requested without a validated user.
        """
        self._ensure_session_usable()
        plan = self.router.route_read(ScopeSelector(scope))
        if refresh and self.client is not None and self.auth_result is not None and self.auth_result.is_connected:
            self._bounded_refresh()
        return self.cache.get_by_scope(list(plan.targets), filters)

    def _bounded_refresh(self):
        timeout_s = self.config.connect_timeout_ms / 1000.0
        if self.worker.is_running:
            done = threading.Event()
            self.worker.request_sync("refresh", done=done)
            if not done.wait(timeout_s):
                logger.debug(f"Refresh did not finish within {timeout_s:.1f}s; serving cached history")
            return

        # No worker thread: the cycle runs on a helper thread and the caller waits at most timeout_s.
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="history-refresh")
        try:
            future = executor.submit(self.worker.run_cycle, reason="refresh",
                                     deadline=time.monotonic() + timeout_s)
            try:
                future.result(timeout=timeout_s)
            except FutureTimeoutError:
                logger.debug(f"Refresh did not finish within {timeout_s:.1f}s; serving cached history")
        finally:
            executor.shutdown(wait=False)

    # --- Status ---
    def sync_status(self) -> SyncStatusReport:
        last_sync_at = self.cache.get_sync_metadata(META_LAST_SYNC_AT)
        last_error = self.cache.get_sync_metadata(META_LAST_ERROR) or self.queue.latest_failure()
        if self.worker.fatal_error is not None:
            last_error = f"Sync stopped: {self.worker.fatal_error}"
        return SyncStatusReport(
            pending_count=self.queue.count_pending(),
            failed_count=self.queue.count_failed(),
            last_sync_at=parse_timestamp(last_sync_at) if last_sync_at else None,
            last_error=last_error,
            is_syncing=self.worker.is_syncing,
        )

    def requeue_failed(self) -> int:
        """Gives dead-lettered entries a fresh retry budget and asks for a sync."""
        self._ensure_session_usable()
        count = self.queue.requeue_failed()
        if count and self.worker.is_running:
            self.worker.request_sync("requeue")
        return count

    def shutdown(self, drain_timeout_s: Optional[float] = None):
        """Final best-effort push, then releases the remote client and this thread's connection."""
        if self.client is not None:
            self.worker.stop(drain_timeout_s)
            self.client.close()
        self.cache.close_connection()

#
# End of History_Service.py
########################################################################################################################
