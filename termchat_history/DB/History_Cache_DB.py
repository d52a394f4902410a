# History_Cache_DB.py
# Description: Local-first SQLite cache for command/response history.
#
"""
History_Cache_DB.py
-------------------

SQLite library backing the local history cache. The cache mirrors the remote store's history
tables and is the only source of truth for reads while the machine is offline.

This library provides:
- Schema management with versioning (`db_schema_version`).
- Thread-safe database connections using `threading.local`, WAL mode on file databases.
- A transaction context manager (`with db.transaction():`) using `BEGIN IMMEDIATE`.
- Upserts keyed by the record uuid; every local mutation of a synced scope appends a row to
  `sync_queue` inside the same transaction, so a record and its pending mutation are durable
  together or not at all.
- A remote-origin write path (`apply_remote`) that runs the conflict resolver and never queues.
- Sync metadata, conflict audit log and reference entity (users/machines) caches.

Every SQLite failure is surfaced as `LocalStorageFailure`; there is no lower layer to fall back
to, so callers treat it as fatal.

Note: ':memory:' databases are per-thread (each thread opens its own connection). Use a file
database whenever the background sync worker runs.
"""
# Imports
import json
import logging
import sqlite3
import threading
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union
#
# Third-Party Libraries
#
# Local Imports
from ..Constants import (
    ALL_HISTORY_TABLES,
    MAX_COMMAND_SIZE,
    MAX_ERROR_TEXT,
    MAX_RESPONSE_SIZE,
    TABLE_HISTORY_GLOBAL,
    TABLE_HISTORY_LOCAL,
    TABLE_HISTORY_MACHINE,
    TABLE_HISTORY_USER,
    TRUNCATION_MARKER,
)
from ..models import (
    SYNC_STATUS_TRANSITIONS,
    ConflictRecord,
    HistoryFilter,
    HistoryRecord,
    Machine,
    QueueOperation,
    ScopeTarget,
    SyncStatus,
    User,
    WriteOrigin,
    format_timestamp,
    parse_timestamp,
    utc_now,
)
from ..Sync.Conflict_Resolver import ConflictResolution, resolve_conflict
from .Record_Locks import RecordLockRegistry
#
########################################################################################################################
#
# Functions:

logger = logging.getLogger(__name__)


# --- Custom Exceptions ---
class LocalStorageFailure(Exception):
    """Base exception for local cache errors. Fatal to the calling operation."""
    pass


class SchemaError(LocalStorageFailure):
    """Exception for schema version mismatches or migration failures."""
    pass


class InputError(ValueError):
    """Custom exception for input validation errors."""
    pass


class RecordConflictError(LocalStorageFailure):
    """
    Raised when a write would break a record invariant, e.g. moving an existing uuid to another scope.

    Attributes:
        record_uuid: The uuid of the record involved.
    """

    def __init__(self, message: str = "Record conflict detected.", record_uuid: Optional[str] = None):
        super().__init__(message)
        self.record_uuid = record_uuid

    def __str__(self):
        base = super().__str__()
        return f"{base} (uuid: {self.record_uuid})" if self.record_uuid else base


class ApplyOutcome(str, Enum):
    """What `apply_remote` did with a pulled record."""
    INSERTED = "inserted"
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    KEPT_LOCAL = "kept_local"


_HISTORY_COLUMNS = (
    "uuid", "command", "response", "created_at", "updated_at",
    "user_id", "machine_id", "scope", "status", "sync_status",
)


def _escape_like(text: str) -> str:
    """Makes `%`, `_` and `\\` match literally in a LIKE pattern using ESCAPE '\\'."""
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _history_table_sql(table: str, scope: str, extra_check: str = "") -> str:
    return f"""
CREATE TABLE IF NOT EXISTS {table}(
  uuid           TEXT PRIMARY KEY NOT NULL,
  command        TEXT NOT NULL,
  response       TEXT,
  created_at     TEXT NOT NULL,
  updated_at     TEXT NOT NULL,
  user_id        TEXT,
  machine_id     TEXT NOT NULL,
  scope          TEXT NOT NULL CHECK(scope = '{scope}'),
  status         TEXT NOT NULL CHECK(status IN ('pending','answered','cancelled')),
  sync_status    TEXT NOT NULL DEFAULT 'pending'
                 CHECK(sync_status IN ('pending','synced','conflict','failed')),
  sync_error     TEXT,
  last_synced_at TEXT{extra_check}
);
CREATE INDEX IF NOT EXISTS idx_{table}_created ON {table}(created_at, uuid);
CREATE INDEX IF NOT EXISTS idx_{table}_sync ON {table}(sync_status);
"""


# --- Database Class ---
class HistoryCacheDB:
    """
    Manages SQLite connections and operations for the local history cache.

    Attributes:
        db_path (Path): The absolute path to the SQLite database file, or Path(":memory:").
        is_memory_db (bool): True if the database is in-memory.
        db_path_str (str): String representation of the database path for SQLite connection.
        locks (RecordLockRegistry): Per-record locks shared with anything else writing this cache.
    """
    _CURRENT_SCHEMA_VERSION = 1
    _SCHEMA_NAME = "termchat_history_cache"

    _FULL_SCHEMA_SQL_V1 = (
        """
/*----------------------------------------------------------------
  0. Schema-version registry
----------------------------------------------------------------*/
CREATE TABLE IF NOT EXISTS db_schema_version(
  schema_name TEXT PRIMARY KEY NOT NULL,
  version     INTEGER NOT NULL
);
INSERT OR IGNORE INTO db_schema_version(schema_name,version)
VALUES('termchat_history_cache',0);
"""
        + _history_table_sql(TABLE_HISTORY_GLOBAL, "global")
        + _history_table_sql(TABLE_HISTORY_USER, "user", ",\n  CHECK(user_id IS NOT NULL)")
        + _history_table_sql(TABLE_HISTORY_MACHINE, "machine")
        + _history_table_sql(TABLE_HISTORY_LOCAL, "local")
        + """
/*----------------------------------------------------------------
  Pending mutations, oldest first per record
----------------------------------------------------------------*/
CREATE TABLE IF NOT EXISTS sync_queue(
  sequence_id     INTEGER PRIMARY KEY AUTOINCREMENT,
  operation       TEXT NOT NULL CHECK(operation IN ('insert','update','delete')),
  target_table    TEXT NOT NULL,
  record_uuid     TEXT NOT NULL,
  payload         TEXT NOT NULL,
  created_at      TEXT NOT NULL,
  retry_count     INTEGER NOT NULL DEFAULT 0,
  last_error      TEXT,
  state           TEXT NOT NULL DEFAULT 'pending' CHECK(state IN ('pending','failed')),
  next_attempt_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_sync_queue_due    ON sync_queue(state, next_attempt_at, sequence_id);
CREATE INDEX IF NOT EXISTS idx_sync_queue_record ON sync_queue(record_uuid, sequence_id);

CREATE TABLE IF NOT EXISTS sync_metadata(
  key        TEXT PRIMARY KEY NOT NULL,
  value      TEXT,
  updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS conflict_log(
  id          INTEGER PRIMARY KEY AUTOINCREMENT,
  record_uuid TEXT NOT NULL,
  winner      TEXT NOT NULL,
  loser       TEXT NOT NULL,
  resolution  TEXT NOT NULL,
  resolved_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_conflict_log_record ON conflict_log(record_uuid);

/*----------------------------------------------------------------
  Reference entities fetched from the remote store
----------------------------------------------------------------*/
CREATE TABLE IF NOT EXISTS users(
  user_id   TEXT PRIMARY KEY NOT NULL,
  username  TEXT UNIQUE NOT NULL,
  email     TEXT,
  is_active INTEGER NOT NULL DEFAULT 1,
  cached_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS machines(
  machine_id TEXT PRIMARY KEY NOT NULL,
  hostname   TEXT NOT NULL,
  first_seen TEXT NOT NULL,
  last_seen  TEXT NOT NULL
);

UPDATE db_schema_version
   SET version = 1
 WHERE schema_name = 'termchat_history_cache'
   AND version < 1;
"""
    )

    def __init__(self, db_path: Union[str, Path], lock_registry: Optional[RecordLockRegistry] = None):
        """
        Opens (creating if needed) the cache database and brings its schema to the current version.

        Args:
            db_path: Path to the SQLite database file, or ":memory:".
            lock_registry: Per-record lock registry; a private one is created when omitted.

        Raises:
            LocalStorageFailure: If the directory cannot be created or initialization fails.
            SchemaError: If the on-disk schema is newer than this code or cannot be migrated.
        """
        if isinstance(db_path, Path):
            self.is_memory_db = False
            self.db_path = db_path.expanduser().resolve()
        else:
            self.is_memory_db = (db_path == ':memory:')
            self.db_path = Path(db_path).expanduser().resolve() if not self.is_memory_db else Path(":memory:")
        self.db_path_str = str(self.db_path) if not self.is_memory_db else ':memory:'
        self.locks = lock_registry or RecordLockRegistry()

        if not self.is_memory_db:
            try:
                self.db_path.parent.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise LocalStorageFailure(f"Failed to create database directory {self.db_path.parent}: {e}") from e

        logger.info(f"Initializing HistoryCacheDB for path: {self.db_path_str}")
        self._local = threading.local()
        try:
            self._initialize_schema()
        except LocalStorageFailure:
            self.close_connection()
            raise
        except Exception as e:
            logger.critical(f"FATAL: Unexpected error during cache initialization for {self.db_path_str}: {e}",
                            exc_info=True)
            self.close_connection()
            raise LocalStorageFailure(f"Unexpected cache initialization error: {e}") from e

    # --- Connection Management ---
    def _get_thread_connection(self) -> sqlite3.Connection:
        """
        Retrieves or creates the calling thread's SQLite connection.

        Connections run in autocommit mode (`isolation_level=None`); explicit transactions are
        opened by `transaction()`.
        """
        conn = getattr(self._local, 'conn', None)
        if conn:
            try:
                conn.execute("SELECT 1")
            except (sqlite3.ProgrammingError, sqlite3.OperationalError):
                logger.warning(f"Thread-local connection for {self.db_path_str} became unusable. Reopening.")
                try:
                    conn.close()
                except sqlite3.Error:
                    pass
                conn = None

        if not conn:
            try:
                conn = sqlite3.connect(
                    self.db_path_str,
                    check_same_thread=False,
                    timeout=15,
                    isolation_level=None,
                )
                conn.row_factory = sqlite3.Row
                if not self.is_memory_db:
                    conn.execute("PRAGMA journal_mode=WAL;")
                conn.execute("PRAGMA foreign_keys = ON;")
                self._local.conn = conn
                logger.debug(f"Opened SQLite connection to {self.db_path_str} for thread {threading.get_ident()}")
            except sqlite3.Error as e:
                logger.error(f"Failed to connect to database {self.db_path_str}: {e}", exc_info=True)
                self._local.conn = None
                raise LocalStorageFailure(f"Failed to connect to database '{self.db_path_str}': {e}") from e
        return self._local.conn

    def get_connection(self) -> sqlite3.Connection:
        return self._get_thread_connection()

    def close_connection(self):
        """
        Closes the current thread's connection, rolling back an open transaction and
        checkpointing the WAL file first.
        """
        conn = getattr(self._local, 'conn', None)
        if conn is None:
            return
        try:
            if conn.in_transaction:
                logger.warning(f"Connection to {self.db_path_str} closed inside a transaction. Rolling back.")
                conn.rollback()
            if not self.is_memory_db:
                mode_row = conn.execute("PRAGMA journal_mode;").fetchone()
                if mode_row and mode_row[0].lower() == 'wal':
                    conn.execute("PRAGMA wal_checkpoint(TRUNCATE);")
            conn.close()
            logger.debug(f"Closed connection for thread {threading.get_ident()} to {self.db_path_str}.")
        except sqlite3.Error as e:
            logger.warning(f"Error during SQLite close/checkpoint for {self.db_path_str}: {e}")
        finally:
            self._local.conn = None

    # --- Query Execution ---
    def execute_query(self, query: str, params: Optional[Union[tuple, Dict[str, Any]]] = None) -> sqlite3.Cursor:
        """
        Executes a single SQL statement on the current thread's connection.

        Raises:
            LocalStorageFailure: For any SQLite error.
        """
        conn = self.get_connection()
        try:
            if logger.isEnabledFor(logging.DEBUG):
                logger.debug(f"Executing SQL: {query[:300]}... Params: {str(params)[:200]}...")
            return conn.execute(query, params or ())
        except sqlite3.Error as e:
            logger.error(f"Query execution failed: {query[:300]}... Error: {e}", exc_info=True)
            raise LocalStorageFailure(f"Query execution failed: {e}") from e

    def transaction(self) -> 'TransactionContextManager':
        """
        Returns a context manager for a write transaction.

        Usage:
            with db.transaction() as conn:
                conn.execute(...)
        """
        return TransactionContextManager(self)

    # --- Schema Initialization and Migration ---
    def _get_db_version(self, conn: sqlite3.Connection) -> int:
        try:
            cursor = conn.execute("SELECT version FROM db_schema_version WHERE schema_name = ? LIMIT 1",
                                  (self._SCHEMA_NAME,))
            result = cursor.fetchone()
            return result['version'] if result else 0
        except sqlite3.Error as e:
            if "no such table" in str(e).lower():
                return 0
            raise SchemaError(f"Could not determine schema version for '{self._SCHEMA_NAME}': {e}") from e

    def _apply_schema_v1(self, conn: sqlite3.Connection):
        logger.info(f"Applying schema Version {self._CURRENT_SCHEMA_VERSION} for '{self._SCHEMA_NAME}' "
                    f"to DB: {self.db_path_str}...")
        try:
            conn.executescript(self._FULL_SCHEMA_SQL_V1)
        except sqlite3.Error as e:
            raise SchemaError(f"DB schema V{self._CURRENT_SCHEMA_VERSION} setup failed: {e}") from e
        final_version = self._get_db_version(conn)
        if final_version != self._CURRENT_SCHEMA_VERSION:
            raise SchemaError(f"Schema version update check failed. Expected {self._CURRENT_SCHEMA_VERSION}, "
                              f"got: {final_version}")

    def _initialize_schema(self):
        """
        Initializes the schema on a fresh database, or verifies an existing one.

        Raises:
            SchemaError: If the database is newer than this code, or an older version has no
                         migration path.
        """
        with self.transaction() as conn:
            current_db_version = self._get_db_version(conn)
            target_version = self._CURRENT_SCHEMA_VERSION
            logger.info(f"Checking DB schema '{self._SCHEMA_NAME}'. Current version: {current_db_version}. "
                        f"Code supports: {target_version}")
            if current_db_version == target_version:
                return
            if current_db_version > target_version:
                raise SchemaError(f"Database schema '{self._SCHEMA_NAME}' version ({current_db_version}) is newer "
                                  f"than supported by code ({target_version}). Aborting.")
            if current_db_version == 0:
                self._apply_schema_v1(conn)
            else:
                raise SchemaError(f"Migration path undefined for '{self._SCHEMA_NAME}' from version "
                                  f"{current_db_version} to {target_version}.")
        logger.info(f"Database schema '{self._SCHEMA_NAME}' initialized to version {target_version}.")

    # --- Internal Helpers ---
    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> HistoryRecord:
        return HistoryRecord.model_validate({col: row[col] for col in _HISTORY_COLUMNS})

    def _fetch_record(self, conn: sqlite3.Connection, record_uuid: str) -> Optional[HistoryRecord]:
        for table in ALL_HISTORY_TABLES:
            row = conn.execute(f"SELECT * FROM {table} WHERE uuid = ?", (record_uuid,)).fetchone()
            if row:
                return self._row_to_record(row)
        return None

    def _upsert_row(self, conn: sqlite3.Connection, record: HistoryRecord, sync_error: Optional[str] = None):
        data = record.model_dump(mode="json")
        columns = ", ".join(_HISTORY_COLUMNS)
        placeholders = ", ".join(f":{col}" for col in _HISTORY_COLUMNS)
        updates = ", ".join(f"{col} = excluded.{col}" for col in _HISTORY_COLUMNS if col not in ("uuid", "created_at"))
        params = {col: data[col] for col in _HISTORY_COLUMNS}
        params["sync_error"] = sync_error
        params["last_synced_at"] = format_timestamp(utc_now()) if record.sync_status is SyncStatus.SYNCED else None
        conn.execute(
            f"INSERT INTO {record.scope.table} ({columns}, sync_error, last_synced_at) "
            f"VALUES ({placeholders}, :sync_error, :last_synced_at) "
            f"ON CONFLICT(uuid) DO UPDATE SET {updates}, sync_error = excluded.sync_error, "
            f"last_synced_at = COALESCE(excluded.last_synced_at, last_synced_at)",
            params,
        )

    def _set_sync_status_row(self, conn: sqlite3.Connection, table: str, record_uuid: str,
                             status: SyncStatus, error: Optional[str] = None):
        synced_at = format_timestamp(utc_now()) if status is SyncStatus.SYNCED else None
        conn.execute(
            f"UPDATE {table} SET sync_status = ?, sync_error = ?, "
            f"last_synced_at = COALESCE(?, last_synced_at) WHERE uuid = ?",
            (status.value, error[:MAX_ERROR_TEXT] if error else None, synced_at, record_uuid),
        )

    def _insert_queue_entry(self, conn: sqlite3.Connection, operation: QueueOperation, target_table: str,
                            record_uuid: str, payload: Dict[str, Any]) -> int:
        """Appends a mutation to `sync_queue` on the caller's connection/transaction."""
        now = format_timestamp(utc_now())
        cursor = conn.execute(
            "INSERT INTO sync_queue(operation, target_table, record_uuid, payload, created_at, next_attempt_at) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (operation.value, target_table, record_uuid, json.dumps(payload), now, now),
        )
        return cursor.lastrowid

    def _pending_queue_count(self, conn: sqlite3.Connection, record_uuid: str) -> int:
        row = conn.execute("SELECT COUNT(*) AS n FROM sync_queue WHERE record_uuid = ? AND state = 'pending'",
                           (record_uuid,)).fetchone()
        return row['n']

    def _log_conflict(self, conn: sqlite3.Connection, resolution: ConflictResolution, label: str):
        conn.execute(
            "INSERT INTO conflict_log(record_uuid, winner, loser, resolution, resolved_at) VALUES (?, ?, ?, ?, ?)",
            (resolution.winner.uuid, json.dumps(resolution.winner.to_payload()),
             json.dumps(resolution.loser.to_payload()), label, format_timestamp(utc_now())),
        )
        logger.warning(f"Conflict on record {resolution.winner.uuid} resolved: {label} "
                       f"(winner updated_at={format_timestamp(resolution.winner.updated_at)}, "
                       f"loser updated_at={format_timestamp(resolution.loser.updated_at)})")

    @staticmethod
    def _enforce_size_limits(record: HistoryRecord) -> HistoryRecord:
        changes = {}
        if len(record.command) > MAX_COMMAND_SIZE:
            logger.warning(f"Command too large ({len(record.command)} chars), truncating")
            changes["command"] = record.command[:MAX_COMMAND_SIZE] + TRUNCATION_MARKER
        if record.response and len(record.response) > MAX_RESPONSE_SIZE:
            logger.warning(f"Response too large ({len(record.response)} chars), truncating")
            changes["response"] = record.response[:MAX_RESPONSE_SIZE] + TRUNCATION_MARKER
        return record.with_changes(**changes) if changes else record

    # --- History Records ---
    def put(self, record: HistoryRecord, origin: WriteOrigin = WriteOrigin.LOCAL) -> HistoryRecord:
        """
        Upserts a record by uuid and returns the stored version. Durable before returning.

        A local write that changes observable fields (command, response, status, updated_at) of a
        record in a synced scope appends a sync queue entry in the same transaction. A remote-origin
        write is stored as `synced` and is never queued.

        Raises:
            InputError: If a local write carries an empty command.
            RecordConflictError: If the uuid already exists under a different scope.
            LocalStorageFailure: If the write cannot be made durable.
        """
        if origin is WriteOrigin.LOCAL and not record.command.strip():
            raise InputError("Command must be a non-empty string")
        record = self._enforce_size_limits(record)

        with self.locks.hold(record.uuid):
            try:
                with self.transaction() as conn:
                    existing = self._fetch_record(conn, record.uuid)
                    if existing is not None and existing.scope is not record.scope:
                        raise RecordConflictError(
                            f"Record already stored under scope '{existing.scope.value}', "
                            f"cannot move to '{record.scope.value}'", record_uuid=record.uuid)

                    if origin is WriteOrigin.REMOTE:
                        stored = record.with_changes(sync_status=SyncStatus.SYNCED)
                        self._upsert_row(conn, stored)
                        return stored

                    if existing is not None and not record.differs_from(existing):
                        return existing

                    stored = record.with_changes(sync_status=SyncStatus.PENDING)
                    self._upsert_row(conn, stored)
                    if stored.scope.is_synced:
                        operation = QueueOperation.UPDATE if existing is not None else QueueOperation.INSERT
                        seq = self._insert_queue_entry(conn, operation, stored.scope.table, stored.uuid,
                                                       stored.to_payload())
                        logger.debug(f"Queued {operation.value} #{seq} for record {stored.uuid}")
                    return stored
            except sqlite3.Error as e:
                logger.error(f"Failed to store record {record.uuid}: {e}", exc_info=True)
                raise LocalStorageFailure(f"Failed to store record {record.uuid}: {e}") from e

    def apply_remote(self, remote: HistoryRecord) -> ApplyOutcome:
        """
        Applies a record pulled from the remote store through the conflict resolver.

        - Unknown uuid: stored as synced.
        - Same observable content: nothing to write; the record is settled as synced once nothing
          is queued for it.
        - Remote wins: the remote version replaces the local one and is marked synced. If the local
          copy had unsynced changes, the loser is recorded in `conflict_log`.
        - Local wins: the local version is kept (and logged). If nothing is queued for it, it is
          re-queued so the stale remote copy gets repaired. Its sync_status is left as it is, since
          the local content did not change; dead-lettered records are left alone.
        """
        with self.locks.hold(remote.uuid):
            try:
                with self.transaction() as conn:
                    local = self._fetch_record(conn, remote.uuid)
                    if local is None:
                        self._upsert_row(conn, remote.with_changes(sync_status=SyncStatus.SYNCED))
                        return ApplyOutcome.INSERTED
                    if local.scope is not remote.scope:
                        raise RecordConflictError(
                            f"Pulled record has scope '{remote.scope.value}' but is stored as "
                            f"'{local.scope.value}'", record_uuid=remote.uuid)

                    if not local.differs_from(remote):
                        self._settle_record(conn, local.uuid)
                        return ApplyOutcome.UNCHANGED

                    resolution = resolve_conflict(local, remote)
                    if resolution.local_won:
                        self._log_conflict(conn, resolution, "kept_local")
                        if (local.sync_status in (SyncStatus.SYNCED, SyncStatus.CONFLICT)
                                and self._pending_queue_count(conn, local.uuid) == 0):
                            self._insert_queue_entry(conn, QueueOperation.UPDATE, local.scope.table,
                                                     local.uuid, local.to_payload())
                        return ApplyOutcome.KEPT_LOCAL

                    if local.sync_status is not SyncStatus.SYNCED:
                        self._log_conflict(conn, resolution, "kept_remote")
                    self._upsert_row(conn, remote.with_changes(sync_status=SyncStatus.SYNCED))
                    return ApplyOutcome.UPDATED
            except sqlite3.Error as e:
                logger.error(f"Failed to apply remote record {remote.uuid}: {e}", exc_info=True)
                raise LocalStorageFailure(f"Failed to apply remote record {remote.uuid}: {e}") from e

    def get(self, record_uuid: str) -> Optional[HistoryRecord]:
        try:
            return self._fetch_record(self.get_connection(), record_uuid)
        except sqlite3.Error as e:
            raise LocalStorageFailure(f"Failed to read record {record_uuid}: {e}") from e

    def get_by_scope(self, targets: Union[ScopeTarget, Sequence[ScopeTarget]],
                     filters: Optional[HistoryFilter] = None) -> List[HistoryRecord]:
        """
        Returns the records visible under the given scope targets, ordered by `created_at`
        (ties broken by uuid), with optional filters applied across all targets.
        """
        if isinstance(targets, ScopeTarget):
            targets = [targets]
        filters = filters or HistoryFilter()
        if not targets:
            return []

        selects: List[str] = []
        params: List[Any] = []
        for target in targets:
            clauses: List[str] = []
            if target.user_id:
                clauses.append("user_id = ?")
                params.append(target.user_id)
            if target.machine_id:
                clauses.append("machine_id = ?")
                params.append(target.machine_id)
            if filters.user_id:
                clauses.append("user_id = ?")
                params.append(filters.user_id)
            if filters.machine_id:
                clauses.append("machine_id = ?")
                params.append(filters.machine_id)
            if filters.status:
                clauses.append("status = ?")
                params.append(filters.status.value)
            if filters.since:
                clauses.append("created_at >= ?")
                params.append(format_timestamp(filters.since))
            if filters.search:
                clauses.append("(command LIKE ? ESCAPE '\\' OR response LIKE ? ESCAPE '\\')")
                like = f"%{_escape_like(filters.search)}%"
                params.extend([like, like])
            where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
            selects.append(f"SELECT {', '.join(_HISTORY_COLUMNS)} FROM {target.scope.table}{where}")

        query = " UNION ALL ".join(selects) + " ORDER BY created_at ASC, uuid ASC LIMIT ? OFFSET ?"
        params.extend([filters.limit, filters.offset])
        cursor = self.execute_query(query, tuple(params))
        return [self._row_to_record(row) for row in cursor.fetchall()]

    def mark_sync_status(self, record_uuid: str, status: SyncStatus, error: Optional[str] = None) -> bool:
        """
        Moves a record's sync_status forward. Regressions are refused (logged, returns False);
        only a new local mutation or `SyncQueue.requeue_failed` sends a record back to pending.
        """
        with self.locks.hold(record_uuid):
            try:
                with self.transaction() as conn:
                    current = self._fetch_record(conn, record_uuid)
                    if current is None:
                        logger.warning(f"mark_sync_status: record {record_uuid} not found")
                        return False
                    if current.sync_status is status:
                        return True
                    if status not in SYNC_STATUS_TRANSITIONS[current.sync_status]:
                        logger.warning(f"Refusing sync_status change {current.sync_status.value} -> "
                                       f"{status.value} for record {record_uuid}")
                        return False
                    self._set_sync_status_row(conn, current.scope.table, record_uuid, status, error)
                    return True
            except sqlite3.Error as e:
                raise LocalStorageFailure(f"Failed to update sync status of {record_uuid}: {e}") from e

    def _settle_record(self, conn: sqlite3.Connection, record_uuid: str,
                       rejected_as_stale: bool = False) -> Optional[SyncStatus]:
        """Marks a record synced (or conflict) once no queue entry is pending for it; failed stays failed."""
        current = self._fetch_record(conn, record_uuid)
        if current is None or self._pending_queue_count(conn, record_uuid) > 0:
            return None
        target = SyncStatus.CONFLICT if rejected_as_stale else SyncStatus.SYNCED
        if current.sync_status is target:
            return target
        if target not in SYNC_STATUS_TRANSITIONS[current.sync_status]:
            return current.sync_status
        self._set_sync_status_row(conn, current.scope.table, record_uuid, target)
        return target

    def stats(self) -> Dict[str, int]:
        """Record counts per sync status across the synced tables, plus the queue size."""
        counts = {status.value: 0 for status in SyncStatus}
        for table in ALL_HISTORY_TABLES:
            if table == TABLE_HISTORY_LOCAL:
                continue
            cursor = self.execute_query(f"SELECT sync_status, COUNT(*) AS n FROM {table} GROUP BY sync_status")
            for row in cursor.fetchall():
                counts[row['sync_status']] += row['n']
        counts["total"] = sum(counts[status.value] for status in SyncStatus)
        row = self.execute_query("SELECT COUNT(*) AS n FROM sync_queue WHERE state = 'pending'").fetchone()
        counts["queue_size"] = row['n']
        return counts

    # --- Conflict Audit Log ---
    def get_conflicts(self, record_uuid: Optional[str] = None, limit: int = 100) -> List[ConflictRecord]:
        if record_uuid:
            cursor = self.execute_query(
                "SELECT * FROM conflict_log WHERE record_uuid = ? ORDER BY id DESC LIMIT ?", (record_uuid, limit))
        else:
            cursor = self.execute_query("SELECT * FROM conflict_log ORDER BY id DESC LIMIT ?", (limit,))
        return [
            ConflictRecord(
                record_uuid=row['record_uuid'],
                winner=json.loads(row['winner']),
                loser=json.loads(row['loser']),
                resolution=row['resolution'],
                resolved_at=parse_timestamp(row['resolved_at']),
            )
            for row in cursor.fetchall()
        ]

    # --- Sync Metadata ---
    def get_sync_metadata(self, key: str) -> Optional[str]:
        row = self.execute_query("SELECT value FROM sync_metadata WHERE key = ?", (key,)).fetchone()
        return row['value'] if row else None

    def get_sync_metadata_prefix(self, prefix: str) -> Dict[str, Optional[str]]:
        cursor = self.execute_query("SELECT key, value FROM sync_metadata WHERE key LIKE ?", (f"{prefix}%",))
        return {row['key']: row['value'] for row in cursor.fetchall()}

    def set_sync_metadata(self, key: str, value: Optional[str]):
        self.execute_query(
            "INSERT INTO sync_metadata(key, value, updated_at) VALUES (?, ?, ?) "
            "ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at",
            (key, value, format_timestamp(utc_now())),
        )

    # --- Reference Entities ---
    def cache_user(self, user: User):
        """Stores a user returned by the remote store. Users never originate locally."""
        with self.transaction() as conn:
            conn.execute("DELETE FROM users WHERE username = ? AND user_id != ?", (user.username, user.user_id))
            conn.execute(
                "INSERT INTO users(user_id, username, email, is_active, cached_at) VALUES (?, ?, ?, ?, ?) "
                "ON CONFLICT(user_id) DO UPDATE SET username = excluded.username, email = excluded.email, "
                "is_active = excluded.is_active, cached_at = excluded.cached_at",
                (user.user_id, user.username, user.email, 1 if user.is_active else 0, format_timestamp(utc_now())),
            )

    def get_cached_user(self, username: str) -> Optional[User]:
        row = self.execute_query("SELECT * FROM users WHERE username = ?", (username,)).fetchone()
        if not row:
            return None
        return User(user_id=row['user_id'], username=row['username'], email=row['email'],
                    is_active=bool(row['is_active']))

    def cache_machine(self, machine: Machine):
        self.execute_query(
            "INSERT INTO machines(machine_id, hostname, first_seen, last_seen) VALUES (?, ?, ?, ?) "
            "ON CONFLICT(machine_id) DO UPDATE SET hostname = excluded.hostname, last_seen = excluded.last_seen",
            (machine.machine_id, machine.hostname, format_timestamp(machine.first_seen),
             format_timestamp(machine.last_seen)),
        )

    def get_machine(self, machine_id: str) -> Optional[Machine]:
        row = self.execute_query("SELECT * FROM machines WHERE machine_id = ?", (machine_id,)).fetchone()
        if not row:
            return None
        return Machine(machine_id=row['machine_id'], hostname=row['hostname'],
                       first_seen=parse_timestamp(row['first_seen']), last_seen=parse_timestamp(row['last_seen']))


# --- Transaction Context Manager Class (Helper for `with db.transaction():`) ---
class TransactionContextManager:
    def __init__(self, db_instance: HistoryCacheDB):
        self.db = db_instance
        self.conn: Optional[sqlite3.Connection] = None
        self.is_outermost_transaction = False

    def __enter__(self) -> sqlite3.Connection:
        self.conn = self.db.get_connection()
        if not self.conn.in_transaction:
            try:
                self.conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as e:
                raise LocalStorageFailure(f"Could not begin transaction: {e}") from e
            self.is_outermost_transaction = True
        return self.conn

    def __exit__(self, exc_type, exc_val, exc_tb):
        if not self.is_outermost_transaction:
            return False
        if exc_type:
            logger.debug(f"Transaction failed, rolling back on thread {threading.get_ident()}: "
                         f"{exc_type.__name__} - {exc_val}")
            try:
                self.conn.rollback()
            except sqlite3.Error as rb_err:
                logger.critical(f"Rollback FAILED on thread {threading.get_ident()}: {rb_err}", exc_info=True)
            return False
        try:
            self.conn.commit()
        except sqlite3.Error as commit_err:
            logger.error(f"Commit FAILED on thread {threading.get_ident()}, attempting rollback: {commit_err}",
                         exc_info=True)
            try:
                self.conn.rollback()
            except sqlite3.Error:
                logger.critical("Rollback after failed commit also FAILED.", exc_info=True)
            raise LocalStorageFailure(f"Commit failed: {commit_err}") from commit_err
        return False

#
# End of History_Cache_DB.py
#######################################################################################################################
