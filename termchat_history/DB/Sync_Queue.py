# Sync_Queue.py
# Description: Durable queue of local history mutations awaiting propagation to the remote store.
#
"""
Sync_Queue.py
-------------

Operations over the `sync_queue` table owned by `HistoryCacheDB`.

Entries are appended by `HistoryCacheDB.put()` inside the same transaction as the record write.
The sync worker peeks due entries in sequence order, and then either acknowledges (deletes),
fails (retry with exponential backoff) or dead-letters each one. An entry that exhausted its
retries stays in the table with state `failed` until a manual `requeue_failed()`.
"""
# Imports
import json
import logging
import sqlite3
from datetime import timedelta
from typing import Any, Dict, List, Optional
#
# Local Imports
from ..Constants import DEFAULT_MAX_RETRIES, DEFAULT_RETRY_BACKOFF_BASE_MS, MAX_ERROR_TEXT
from ..models import (
    QueueEntryState,
    QueueOperation,
    SyncQueueEntry,
    SyncStatus,
    format_timestamp,
    parse_timestamp,
    utc_now,
)
from .History_Cache_DB import HistoryCacheDB, LocalStorageFailure
#
########################################################################################################################
#
# Functions:

logger = logging.getLogger(__name__)


def compute_backoff_ms(retry_count: int, base_ms: int) -> int:
    """Delay before the next attempt after `retry_count` failures: base * 2^(retry_count - 1)."""
    if retry_count <= 0 or base_ms <= 0:
        return 0
    return base_ms * (2 ** (retry_count - 1))


class SyncQueue:
    """Queue view over a `HistoryCacheDB`; shares its connections and transactions."""

    def __init__(self, db: HistoryCacheDB, max_retries: int = DEFAULT_MAX_RETRIES,
                 retry_backoff_base_ms: int = DEFAULT_RETRY_BACKOFF_BASE_MS):
        self.db = db
        self.max_retries = max_retries
        self.retry_backoff_base_ms = retry_backoff_base_ms

    @staticmethod
    def _row_to_entry(row: sqlite3.Row) -> SyncQueueEntry:
        return SyncQueueEntry(
            sequence_id=row['sequence_id'],
            operation=QueueOperation(row['operation']),
            target_table=row['target_table'],
            record_uuid=row['record_uuid'],
            payload=json.loads(row['payload']),
            created_at=parse_timestamp(row['created_at']),
            retry_count=row['retry_count'],
            last_error=row['last_error'],
            state=QueueEntryState(row['state']),
            next_attempt_at=parse_timestamp(row['next_attempt_at']),
        )

    def enqueue(self, operation: QueueOperation, target_table: str, record_uuid: str,
                payload: Dict[str, Any]) -> int:
        """Appends an entry in its own transaction. Record writes go through `HistoryCacheDB.put()` instead."""
        with self.db.transaction() as conn:
            return self.db._insert_queue_entry(conn, operation, target_table, record_uuid, payload)

    def peek_batch(self, limit: int) -> List[SyncQueueEntry]:
        """
        Returns up to `limit` due pending entries ordered by sequence id.

        An entry is skipped while an earlier entry for the same record is still pending (backing
        off), so mutations of a record are never attempted out of order.
        """
        now = format_timestamp(utc_now())
        cursor = self.db.execute_query(
            """
            SELECT q.* FROM sync_queue q
             WHERE q.state = 'pending'
               AND q.next_attempt_at <= ?
               AND NOT EXISTS (
                   SELECT 1 FROM sync_queue e
                    WHERE e.record_uuid = q.record_uuid
                      AND e.state = 'pending'
                      AND e.sequence_id < q.sequence_id
                      AND e.next_attempt_at > ?)
             ORDER BY q.sequence_id ASC
             LIMIT ?
            """,
            (now, now, limit),
        )
        return [self._row_to_entry(row) for row in cursor.fetchall()]

    def get_entry(self, sequence_id: int) -> Optional[SyncQueueEntry]:
        row = self.db.execute_query("SELECT * FROM sync_queue WHERE sequence_id = ?", (sequence_id,)).fetchone()
        return self._row_to_entry(row) if row else None

    def ack(self, sequence_id: int, rejected_as_stale: bool = False) -> bool:
        """
        Removes an entry the remote store acknowledged and, in the same transaction, settles its
        record (`synced`, or `conflict` when the remote kept a newer version) if nothing else is
        queued for it.
        """
        entry = self.get_entry(sequence_id)
        if entry is None:
            return False
        with self.db.locks.hold(entry.record_uuid):
            try:
                with self.db.transaction() as conn:
                    deleted = conn.execute("DELETE FROM sync_queue WHERE sequence_id = ?", (sequence_id,)).rowcount
                    if deleted:
                        self.db._settle_record(conn, entry.record_uuid, rejected_as_stale)
            except sqlite3.Error as e:
                raise LocalStorageFailure(f"Failed to acknowledge queue entry #{sequence_id}: {e}") from e
        return deleted > 0

    def fail(self, sequence_id: int, error: str) -> Optional[SyncQueueEntry]:
        """
        Records a failed attempt. The entry is retried after an exponential backoff, or is moved to
        the dead-letter state once its retry count exceeds `max_retries`.

        Returns the updated entry, or None if it no longer exists.
        """
        error_text = (error or "")[:MAX_ERROR_TEXT]
        try:
            with self.db.transaction() as conn:
                row = conn.execute("SELECT * FROM sync_queue WHERE sequence_id = ?", (sequence_id,)).fetchone()
                if row is None:
                    return None
                retry_count = row['retry_count'] + 1
                delay_ms = compute_backoff_ms(retry_count, self.retry_backoff_base_ms)
                next_attempt = format_timestamp(utc_now() + timedelta(milliseconds=delay_ms))
                state = QueueEntryState.FAILED if retry_count > self.max_retries else QueueEntryState.PENDING
                conn.execute(
                    "UPDATE sync_queue SET retry_count = ?, last_error = ?, next_attempt_at = ?, state = ? "
                    "WHERE sequence_id = ?",
                    (retry_count, error_text, next_attempt, state.value, sequence_id),
                )
                if state is QueueEntryState.FAILED:
                    self._mark_record_failed(conn, row['target_table'], row['record_uuid'], error_text)
                updated = conn.execute("SELECT * FROM sync_queue WHERE sequence_id = ?", (sequence_id,)).fetchone()
        except sqlite3.Error as e:
            raise LocalStorageFailure(f"Failed to record failure of queue entry #{sequence_id}: {e}") from e
        if state is QueueEntryState.FAILED:
            logger.error(f"Queue entry #{sequence_id} for record {row['record_uuid']} dead-lettered "
                         f"after {retry_count} attempts: {error_text}")
        else:
            logger.info(f"Queue entry #{sequence_id} failed (attempt {retry_count}), retry in {delay_ms} ms")
        return self._row_to_entry(updated)

    def dead_letter(self, sequence_id: int, error: str) -> bool:
        """Moves an entry straight to the dead-letter state (permanent remote rejection)."""
        error_text = (error or "")[:MAX_ERROR_TEXT]
        try:
            with self.db.transaction() as conn:
                row = conn.execute("SELECT * FROM sync_queue WHERE sequence_id = ?", (sequence_id,)).fetchone()
                if row is None:
                    return False
                conn.execute(
                    "UPDATE sync_queue SET retry_count = retry_count + 1, last_error = ?, state = 'failed' "
                    "WHERE sequence_id = ?",
                    (error_text, sequence_id),
                )
                self._mark_record_failed(conn, row['target_table'], row['record_uuid'], error_text)
        except sqlite3.Error as e:
            raise LocalStorageFailure(f"Failed to dead-letter queue entry #{sequence_id}: {e}") from e
        logger.error(f"Queue entry #{sequence_id} for record {row['record_uuid']} rejected permanently: {error_text}")
        return True

    def _mark_record_failed(self, conn: sqlite3.Connection, table: str, record_uuid: str, error: str):
        conn.execute(
            f"UPDATE {table} SET sync_status = ?, sync_error = ? WHERE uuid = ? AND sync_status = ?",
            (SyncStatus.FAILED.value, error, record_uuid, SyncStatus.PENDING.value),
        )

    def count_pending(self) -> int:
        row = self.db.execute_query("SELECT COUNT(*) AS n FROM sync_queue WHERE state = 'pending'").fetchone()
        return row['n']

    def count_failed(self) -> int:
        row = self.db.execute_query("SELECT COUNT(*) AS n FROM sync_queue WHERE state = 'failed'").fetchone()
        return row['n']

    def list_failed(self, limit: int = 100) -> List[SyncQueueEntry]:
        cursor = self.db.execute_query(
            "SELECT * FROM sync_queue WHERE state = 'failed' ORDER BY sequence_id ASC LIMIT ?", (limit,))
        return [self._row_to_entry(row) for row in cursor.fetchall()]

    def latest_failure(self) -> Optional[str]:
        row = self.db.execute_query(
            "SELECT last_error FROM sync_queue WHERE state = 'failed' ORDER BY sequence_id DESC LIMIT 1").fetchone()
        return row['last_error'] if row else None

    def pending_for_record(self, record_uuid: str) -> List[SyncQueueEntry]:
        cursor = self.db.execute_query(
            "SELECT * FROM sync_queue WHERE record_uuid = ? ORDER BY sequence_id ASC", (record_uuid,))
        return [self._row_to_entry(row) for row in cursor.fetchall()]

    def requeue_failed(self) -> int:
        """
        Resets every dead-lettered entry to pending with a fresh retry budget, and moves the
        corresponding records from `failed` back to `pending`. Returns the number of entries reset.
        """
        now = format_timestamp(utc_now())
        try:
            with self.db.transaction() as conn:
                rows = conn.execute(
                    "SELECT DISTINCT target_table, record_uuid FROM sync_queue WHERE state = 'failed'").fetchall()
                cursor = conn.execute(
                    "UPDATE sync_queue SET state = 'pending', retry_count = 0, next_attempt_at = ? "
                    "WHERE state = 'failed'", (now,))
                for row in rows:
                    conn.execute(
                        f"UPDATE {row['target_table']} SET sync_status = ?, sync_error = NULL "
                        f"WHERE uuid = ? AND sync_status = ?",
                        (SyncStatus.PENDING.value, row['record_uuid'], SyncStatus.FAILED.value),
                    )
                count = cursor.rowcount
        except sqlite3.Error as e:
            raise LocalStorageFailure(f"Failed to requeue dead-lettered entries: {e}") from e
        if count:
            logger.info(f"Requeued {count} dead-lettered sync entries")
        return count

#
# End of Sync_Queue.py
########################################################################################################################
