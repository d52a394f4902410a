# Sync_Worker.py
# Description: Background worker that pushes queued history mutations and pulls remote changes.
#
"""
Sync_Worker.py
--------------

`BackgroundSyncWorker` owns one daemon thread. Foreground code never calls into it directly; it
posts typed messages to the worker's inbox (`SyncRequest`, `Shutdown`). Without messages, a sync
cycle runs every `sync_interval_ms`.

A cycle:
  1. Push: drains up to `max_drain_batches` batches of due queue entries. Entries are grouped by
     record uuid; groups run in parallel on a small thread pool, entries within a group strictly in
     sequence order. A transient failure backs off (the backoff lives in the queue row) and, if the
     wait fits in the cycle, is retried inline. A permanent failure dead-letters the entry.
  2. Pull: for each remote table the router allows, fetches pages of records written after the
     stored `(synced_at, uuid)` cursor and applies them through the conflict resolver. The cursor
     of a table is advanced only after all of its pages were applied.

A connectivity failure or a rejected token aborts the cycle without touching any entry; the next
cycle starts over. Local storage failures stop the worker.
"""
# Imports
import json
import queue
import threading
import time
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple, Union
#
# 3rd-Party Imports
from loguru import logger
from pydantic import ValidationError
#
# Local Imports
from ..config import SyncConfig
from ..Constants import META_LAST_ERROR, META_LAST_SYNC_AT, META_PULL_CURSOR_PREFIX
from ..DB.History_Cache_DB import ApplyOutcome, HistoryCacheDB, LocalStorageFailure, RecordConflictError
from ..DB.Sync_Queue import SyncQueue
from ..Metrics.metrics_logger import MetricsLogger
from ..models import QueueEntryState, QueueOperation, ScopeTarget, SyncQueueEntry, format_timestamp, utc_now
from ..remote_api.client import RemoteStoreClient
from ..remote_api.exceptions import (
    ConnectivityTimeout, PermanentRemoteError, RemoteAuthenticationError, RemoteStoreError, TransientRemoteError,
)
from ..remote_api.schemas import UpsertOutcome
from ..Scope_Router import ScopeRouter
#
########################################################################################################################
#
# Functions:


# --- Inbox messages ---
@dataclass(frozen=True)
class SyncRequest:
    reason: str = "manual"
    done: Optional[threading.Event] = field(default=None, compare=False)  # set once a cycle has covered it


@dataclass(frozen=True)
class Shutdown:
    drain_timeout_s: float = 0.0


WorkerMessage = Union[SyncRequest, Shutdown]

_CYCLE_ABORTING_ERRORS = (ConnectivityTimeout, RemoteAuthenticationError)


@dataclass
class CycleReport:
    reason: str = "manual"
    pushed: int = 0
    already_present: int = 0
    rejected_stale: int = 0
    retried: int = 0
    dead_lettered: int = 0
    pulled: int = 0
    kept_local: int = 0
    aborted: Optional[str] = None
    errors: List[str] = field(default_factory=list)

    @property
    def last_error(self) -> Optional[str]:
        if self.aborted:
            return self.aborted
        return self.errors[-1] if self.errors else None

    def merge(self, other: "CycleReport"):
        for name in ("pushed", "already_present", "rejected_stale", "retried", "dead_lettered"):
            setattr(self, name, getattr(self, name) + getattr(other, name))
        self.errors.extend(other.errors)


def pull_cursor_key(endpoint: str, target: ScopeTarget) -> str:
    key = f"{META_PULL_CURSOR_PREFIX}:{endpoint}:{target.scope.table}"
    return f"{key}:{target.user_id}" if target.user_id else key


class BackgroundSyncWorker:
    def __init__(self, config: SyncConfig, cache: HistoryCacheDB, sync_queue: SyncQueue,
                 client: Optional[RemoteStoreClient], router: ScopeRouter,
                 metrics: Optional[MetricsLogger] = None):
        self.config = config
        self.cache = cache
        self.queue = sync_queue
        self.client = client
        self.router = router
        self.metrics = metrics or MetricsLogger(base_labels={"component": "sync_worker"})
        self.inbox: "queue.Queue[WorkerMessage]" = queue.Queue()

        self._thread: Optional[threading.Thread] = None
        self._executor: Optional[ThreadPoolExecutor] = None
        self._stop_event = threading.Event()
        self._cycle_lock = threading.Lock()
        self._syncing = threading.Event()
        self._fatal_error: Optional[BaseException] = None
        self.last_report: Optional[CycleReport] = None

    # --- Lifecycle ---
    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def is_syncing(self) -> bool:
        return self._syncing.is_set()

    @property
    def fatal_error(self) -> Optional[BaseException]:
        return self._fatal_error

    def start(self):
        if self.is_running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="history-sync-worker", daemon=True)
        self._thread.start()
        logger.info(f"Background sync worker started (interval {self.config.sync_interval_ms} ms)")

    def post(self, message: WorkerMessage):
        self.inbox.put(message)

    def request_sync(self, reason: str = "manual", done: Optional[threading.Event] = None):
        self.post(SyncRequest(reason=reason, done=done))

    def stop(self, drain_timeout_s: Optional[float] = None) -> bool:
        """
        Stops the worker after a best-effort final push bounded by `drain_timeout_s` (default:
        `shutdown_drain_timeout_ms`). Entries left over stay queued for the next start.
        Returns True if the worker thread finished in time.
        """
        if drain_timeout_s is None:
            drain_timeout_s = self.config.shutdown_drain_timeout_ms / 1000.0
        self._stop_event.set()
        finished = True
        if self.is_running:
            self.post(Shutdown(drain_timeout_s=drain_timeout_s))
            join_timeout = drain_timeout_s + self.config.request_timeout_ms / 1000.0 + 1.0
            self._thread.join(timeout=join_timeout)
            finished = not self._thread.is_alive()
            if not finished:
                logger.warning(f"Sync worker did not stop within {join_timeout:.1f}s; leaving it to exit")
        elif self._fatal_error is None:
            self._final_drain(drain_timeout_s)
        if self._executor is not None:
            self._executor.shutdown(wait=finished)
            self._executor = None
        self.metrics.log_resource_usage()
        logger.info(f"Background sync worker stopped ({self.queue.count_pending()} entries still pending)")
        return finished

    def _run(self):
        interval_s = self.config.sync_interval_ms / 1000.0
        while True:
            try:
                message = self.inbox.get(timeout=interval_s)
            except queue.Empty:
                message = SyncRequest(reason="interval")

            shutdown = message if isinstance(message, Shutdown) else None
            reason = message.reason if isinstance(message, SyncRequest) else "shutdown"
            waiters = [message.done] if isinstance(message, SyncRequest) and message.done else []
            # Coalesce requests that piled up while the last cycle ran.
            while shutdown is None:
                try:
                    extra = self.inbox.get_nowait()
                except queue.Empty:
                    break
                if isinstance(extra, Shutdown):
                    shutdown = extra
                elif extra.done:
                    waiters.append(extra.done)

            try:
                if shutdown is not None:
                    self._final_drain(shutdown.drain_timeout_s)
                    return
                try:
                    self.run_cycle(reason=reason)
                except LocalStorageFailure as e:
                    self._fatal_error = e
                    logger.critical(f"Local cache failure, stopping sync worker: {e}")
                    return
                except Exception as e:
                    logger.exception(f"Unexpected error during sync cycle ({reason}): {e}")
            finally:
                for waiter in waiters:
                    waiter.set()

    def _final_drain(self, drain_timeout_s: float):
        if drain_timeout_s <= 0 or self.client is None:
            return
        try:
            report = self.run_cycle(reason="shutdown", push_only=True,
                                    deadline=time.monotonic() + drain_timeout_s)
            logger.info(f"Final drain pushed {report.pushed} entries")
        except LocalStorageFailure as e:
            self._fatal_error = e
            logger.critical(f"Local cache failure during final drain: {e}")

    def _get_executor(self) -> ThreadPoolExecutor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=self.config.sync_concurrency,
                                                thread_name_prefix="history-sync-push")
        return self._executor

    # --- Cycle ---
    def run_cycle(self, reason: str = "manual", push_only: bool = False,
                  deadline: Optional[float] = None) -> CycleReport:
        """
        Runs one push (and pull) cycle on the calling thread. Concurrent calls are serialized.

        Raises:
            LocalStorageFailure: If the local cache cannot be read or written.
        """
        report = CycleReport(reason=reason)
        if self.client is None:
            report.aborted = "remote store not configured"
            return report
        if deadline is None:
            deadline = time.monotonic() + self.config.sync_interval_ms / 1000.0

        with self._cycle_lock:
            self._syncing.set()
            try:
                logger.debug(f"Starting sync cycle ({reason})")
                with self.metrics.timed("sync_cycle_duration_seconds", {"reason": reason}) as labels:
                    try:
                        self._push(report, deadline)
                        if not push_only:
                            self._pull(report, deadline)
                        labels["outcome"] = "completed"
                    except _CYCLE_ABORTING_ERRORS as e:
                        report.aborted = f"{type(e).__name__}: {e}"
                        labels["outcome"] = "aborted"
                        logger.warning(f"Sync cycle aborted, state left untouched: {report.aborted}")

                self.cache.set_sync_metadata(META_LAST_ERROR, report.last_error)
                if report.aborted is None:
                    self.cache.set_sync_metadata(META_LAST_SYNC_AT, format_timestamp(utc_now()))
                self._log_report_metrics(report)
            finally:
                self._syncing.clear()

        self.last_report = report
        logger.info(f"Sync cycle finished ({reason}): pushed={report.pushed} pulled={report.pulled} "
                    f"stale={report.rejected_stale} dead_lettered={report.dead_lettered}"
                    + (f" aborted={report.aborted}" if report.aborted else ""))
        return report

    def _log_report_metrics(self, report: CycleReport):
        self.metrics.log_counter("sync_entries_pushed_total", report.pushed)
        self.metrics.log_counter("sync_entries_rejected_stale_total", report.rejected_stale)
        self.metrics.log_counter("sync_entries_dead_lettered_total", report.dead_lettered)
        self.metrics.log_counter("sync_records_pulled_total", report.pulled)
        self.metrics.log_counter("sync_conflicts_kept_local_total", report.kept_local)
        if report.aborted:
            self.metrics.log_counter("sync_cycles_aborted_total")
        self.metrics.log_gauge("sync_queue_pending", self.queue.count_pending())

    # --- Push ---
    def _push(self, report: CycleReport, deadline: float):
        executor = self._get_executor()
        for _ in range(self.config.max_drain_batches):
            if time.monotonic() >= deadline:
                break
            batch = self.queue.peek_batch(self.config.batch_size)
            if not batch:
                break
            groups: "OrderedDict[str, List[SyncQueueEntry]]" = OrderedDict()
            for entry in batch:
                groups.setdefault(entry.record_uuid, []).append(entry)

            futures = [executor.submit(self._push_group, entries, deadline) for entries in groups.values()]
            abort_error: Optional[BaseException] = None
            storage_error: Optional[BaseException] = None
            progressed = 0
            for future in futures:
                try:
                    group_report = future.result()
                except _CYCLE_ABORTING_ERRORS as e:
                    abort_error = abort_error or e
                    continue
                except LocalStorageFailure as e:
                    storage_error = storage_error or e
                    continue
                report.merge(group_report)
                progressed += group_report.pushed + group_report.already_present + group_report.rejected_stale \
                    + group_report.dead_lettered
            if storage_error is not None:
                raise storage_error
            if abort_error is not None:
                raise abort_error
            if progressed == 0:
                break

    def _push_group(self, entries: List[SyncQueueEntry], deadline: float) -> CycleReport:
        """Sends one record's entries in order; stops at the first entry that is not done."""
        group_report = CycleReport()
        for entry in entries:
            if not self._push_entry(entry, deadline, group_report):
                break
        return group_report

    def _push_entry(self, entry: SyncQueueEntry, deadline: float, group_report: CycleReport) -> bool:
        while True:
            if time.monotonic() >= deadline:
                return False
            try:
                outcome = self._dispatch(entry)
            except _CYCLE_ABORTING_ERRORS:
                raise
            except (PermanentRemoteError, ValidationError) as e:
                self.queue.dead_letter(entry.sequence_id, str(e))
                group_report.dead_lettered += 1
                group_report.errors.append(f"Entry #{entry.sequence_id} rejected: {e}")
                # Later entries carry a full snapshot of the record and may still succeed.
                return True
            except TransientRemoteError as e:
                updated = self.queue.fail(entry.sequence_id, str(e))
                group_report.errors.append(f"Entry #{entry.sequence_id} failed: {e}")
                if updated is None:
                    return False
                if updated.state is QueueEntryState.FAILED:
                    group_report.dead_lettered += 1
                    return True
                group_report.retried += 1
                delay_s = max(0.0, (updated.next_attempt_at - utc_now()).total_seconds())
                if time.monotonic() + delay_s >= deadline or self._stop_event.wait(delay_s):
                    return False
                entry = updated
                continue

            rejected = outcome is UpsertOutcome.REJECTED_STALE
            self.queue.ack(entry.sequence_id, rejected_as_stale=rejected)
            if outcome is UpsertOutcome.APPLIED:
                group_report.pushed += 1
            elif outcome is UpsertOutcome.ALREADY_PRESENT:
                group_report.already_present += 1
            else:
                group_report.rejected_stale += 1
                logger.info(f"Remote holds a newer version of {entry.record_uuid}; marked as conflict")
            return True

    def _dispatch(self, entry: SyncQueueEntry) -> UpsertOutcome:
        if entry.operation is QueueOperation.DELETE:
            self.client.delete_record(entry.target_table, entry.record_uuid)
            return UpsertOutcome.APPLIED
        record = entry.record()
        if record.scope.table != entry.target_table:
            raise PermanentRemoteError(
                f"Entry targets {entry.target_table} but record scope is {record.scope.value}")
        return self.client.upsert_record(record)

    # --- Pull ---
    def _pull(self, report: CycleReport, deadline: float):
        for target in self.router.pull_targets():
            if time.monotonic() >= deadline:
                logger.debug(f"Cycle deadline reached; pull of {target.scope.table} left for the next cycle")
                break
            try:
                self._pull_table(target, report, deadline)
            except _CYCLE_ABORTING_ERRORS:
                raise
            except RemoteStoreError as e:
                report.errors.append(f"Pull of {target.scope.table} failed: {e}")
                logger.error(f"Pull of {target.scope.table} failed, cursor not advanced: {e}")

    def _pull_table(self, target: ScopeTarget, report: CycleReport, deadline: float):
        """
        Pages through one table after its stored cursor. The cursor is only written once the last
        page was applied; a table cut short by the deadline is pulled again from the old cursor.
        """
        key = pull_cursor_key(self.client.base_url, target)
        stored = self.cache.get_sync_metadata(key)
        start_cursor: Optional[Tuple[str, str]] = tuple(json.loads(stored)) if stored else None
        cursor = start_cursor
        applied: Dict[ApplyOutcome, int] = {outcome: 0 for outcome in ApplyOutcome}
        completed = False
        while time.monotonic() < deadline:
            page = self.client.fetch_changes(target.scope.table, after=cursor, limit=self.config.pull_page_size,
                                             user_id=target.user_id, machine_id=target.machine_id)
            for pulled in page.records:
                try:
                    outcome = self.cache.apply_remote(pulled.record)
                except RecordConflictError as e:
                    logger.warning(f"Skipping pulled record: {e}")
                    continue
                applied[outcome] += 1
            if page.next_cursor:
                cursor = page.next_cursor
            if not page.has_more:
                completed = True
                break

        if not completed:
            logger.debug(f"Cycle deadline reached while pulling {target.scope.table}; cursor not advanced")
        elif cursor != start_cursor:
            self.cache.set_sync_metadata(key, json.dumps(list(cursor)))
        changed = applied[ApplyOutcome.INSERTED] + applied[ApplyOutcome.UPDATED]
        report.pulled += changed
        report.kept_local += applied[ApplyOutcome.KEPT_LOCAL]
        if changed or applied[ApplyOutcome.KEPT_LOCAL]:
            logger.info(f"Pulled {target.scope.table}: inserted={applied[ApplyOutcome.INSERTED]} "
                        f"updated={applied[ApplyOutcome.UPDATED]} kept_local={applied[ApplyOutcome.KEPT_LOCAL]}")

#
# End of Sync_Worker.py
########################################################################################################################
