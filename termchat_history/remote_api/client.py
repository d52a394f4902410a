# termchat_history/remote_api/client.py
#
#
# Imports
import json
import threading
from typing import Optional, Dict, Any, List, Sequence, Tuple
#
# 3rd-party Libraries
import httpx
from loguru import logger
from pydantic import ValidationError
#
# Local Imports
from ..Constants import DEFAULT_REQUEST_TIMEOUT_MS, SYNCED_HISTORY_TABLES
from ..models import HistoryRecord, Machine, SyncStatus, User, format_timestamp
from .exceptions import (
    ConnectivityTimeout, PermanentRemoteError, RemoteAuthenticationError, TransientRemoteError,
)
from .schemas import ChangePage, PipelineResponse, PipelineResult, PulledRecord, StatementResult, UpsertOutcome
from .utils import build_execute, normalize_remote_url, rows_as_dicts
#
########################################################################################################################
#
# Functions:

TRANSIENT_STATEMENT_CODES = ("SQLITE_BUSY", "SQLITE_LOCKED")
TRANSIENT_HTTP_STATUSES = (408, 429)

_HISTORY_FIELDS = ("uuid", "command", "response", "created_at", "updated_at",
                   "user_id", "machine_id", "scope", "status")

REMOTE_SCHEMA_STATEMENTS = [
    """CREATE TABLE IF NOT EXISTS users (
        id TEXT PRIMARY KEY,
        username TEXT UNIQUE NOT NULL,
        email TEXT,
        is_active INTEGER NOT NULL DEFAULT 1
    )""",
    """CREATE TABLE IF NOT EXISTS machines (
        id TEXT PRIMARY KEY,
        hostname TEXT NOT NULL,
        first_seen TEXT NOT NULL,
        last_seen TEXT NOT NULL
    )""",
] + [
    f"""CREATE TABLE IF NOT EXISTS {table} (
        uuid TEXT PRIMARY KEY,
        command TEXT NOT NULL,
        response TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        user_id TEXT,
        machine_id TEXT NOT NULL,
        scope TEXT NOT NULL,
        status TEXT NOT NULL,
        synced_at TEXT NOT NULL
    )"""
    for table in SYNCED_HISTORY_TABLES
] + [
    f"CREATE INDEX IF NOT EXISTS idx_{table}_synced ON {table}(synced_at, uuid)"
    for table in SYNCED_HISTORY_TABLES
]


def _check_table(table: str) -> str:
    if table not in SYNCED_HISTORY_TABLES:
        raise ValueError(f"Unknown remote history table: {table}")
    return table


def _raise_for_statement_error(result: PipelineResult):
    error = result.error
    message = error.message if error else "unknown pipeline error"
    code = (error.code if error else None) or ""
    if code.startswith(TRANSIENT_STATEMENT_CODES):
        raise TransientRemoteError(f"Remote statement failed: {message}", code=code)
    raise PermanentRemoteError(f"Remote statement failed: {message}", code=code or None)


class RemoteStoreClient:
    """
    Synchronous client for a libSQL database reached through its HTTP pipeline endpoint.

    Thread-safe: one `httpx.Client` is shared by all callers. Every failure is mapped onto the
    `RemoteStoreError` family; see `_pipeline` for the mapping.
    """

    def __init__(self, base_url: str, token: Optional[str] = None,
                 timeout: float = DEFAULT_REQUEST_TIMEOUT_MS / 1000.0,
                 transport: Optional[httpx.BaseTransport] = None):
        self.base_url = normalize_remote_url(base_url)
        self.token = token
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.Client] = None
        self._client_lock = threading.Lock()

    def _get_client(self) -> httpx.Client:
        with self._client_lock:
            if self._client is None or self._client.is_closed:
                headers = {"Content-Type": "application/json"}
                if self.token:
                    headers["Authorization"] = f"Bearer {self.token}"
                self._client = httpx.Client(
                    base_url=self.base_url,
                    headers=headers,
                    timeout=self.timeout,
                    transport=self._transport,
                )
            return self._client

    def close(self):
        with self._client_lock:
            if self._client and not self._client.is_closed:
                self._client.close()
            self._client = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    # --- Transport ---
    def _pipeline(self, requests: List[Dict[str, Any]]) -> List[PipelineResult]:
        client = self._get_client()
        body = {"requests": list(requests) + [{"type": "close"}]}
        try:
            response = client.post("/v2/pipeline", json=body)
            response.raise_for_status()
            parsed = PipelineResponse.model_validate(response.json())
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            error_detail = e.response.text[:300]
            try:
                response_data = e.response.json()
                if isinstance(response_data, dict) and "error" in response_data:
                    error_detail = str(response_data["error"])
            except ValueError:
                pass  # body is not JSON
            if status in (401, 403):
                raise RemoteAuthenticationError(f"Remote store rejected credentials ({status}): {error_detail}") from e
            if status in TRANSIENT_HTTP_STATUSES or status >= 500:
                raise TransientRemoteError(f"Remote store error {status}: {error_detail}", status_code=status) from e
            raise PermanentRemoteError(f"Remote store rejected request {status}: {error_detail}",
                                       status_code=status) from e
        except httpx.TransportError as e:  # Covers ConnectError, TimeoutException, etc.
            raise ConnectivityTimeout(f"Cannot reach remote store at {self.base_url}: {e!r}") from e
        except (json.JSONDecodeError, ValidationError) as e:
            raise TransientRemoteError(f"Malformed pipeline response from {self.base_url}: {e}") from e
        # Drop the trailing close result.
        return parsed.results[:len(requests)]

    def execute(self, sql: str, args: Optional[Sequence[Any]] = None) -> StatementResult:
        return self.execute_many([(sql, args)])[0]

    def execute_many(self, statements: Sequence[Tuple[str, Optional[Sequence[Any]]]]) -> List[StatementResult]:
        """Runs statements in one pipeline request; raises on the first statement that failed."""
        results = self._pipeline([build_execute(sql, args) for sql, args in statements])
        if len(results) < len(statements):
            raise TransientRemoteError(f"Pipeline returned {len(results)} results for {len(statements)} statements")
        out: List[StatementResult] = []
        for result in results:
            if result.type != "ok":
                _raise_for_statement_error(result)
            out.append(result.response.result if result.response and result.response.result else StatementResult())
        return out

    # --- Store operations ---
    def ping(self) -> bool:
        self.execute("SELECT 1")
        return True

    def ensure_schema(self):
        """Creates the remote tables if they do not exist yet."""
        script = ";\n".join(REMOTE_SCHEMA_STATEMENTS) + ";"
        results = self._pipeline([{"type": "sequence", "sql": script}])
        for result in results:
            if result.type != "ok":
                _raise_for_statement_error(result)
        logger.info(f"Remote schema ensured at {self.base_url}")

    def lookup_user(self, username: str) -> Optional[User]:
        """Returns the active user with this username, or None."""
        result = self.execute(
            "SELECT id, username, email, is_active FROM users WHERE username = ? AND is_active = 1 LIMIT 1",
            [username],
        )
        rows = rows_as_dicts(result)
        if not rows:
            return None
        row = rows[0]
        return User(user_id=str(row["id"]), username=row["username"], email=row.get("email"),
                    is_active=bool(row["is_active"]))

    def register_machine(self, machine: Machine) -> Machine:
        self.execute(
            "INSERT INTO machines (id, hostname, first_seen, last_seen) VALUES (?, ?, ?, ?) "
            "ON CONFLICT(id) DO UPDATE SET hostname = excluded.hostname, last_seen = excluded.last_seen",
            [machine.machine_id, machine.hostname, format_timestamp(machine.first_seen),
             format_timestamp(machine.last_seen)],
        )
        logger.debug(f"Registered machine {machine.machine_id} ({machine.hostname})")
        return machine

    def upsert_record(self, record: HistoryRecord) -> UpsertOutcome:
        """
        Inserts or replaces a record by uuid, unless the remote holds a newer version.

        The update only applies when (updated_at, machine_id) is newer than the stored row, or equal
        with different content; re-sending the same version changes nothing.
        """
        table = _check_table(record.scope.table)
        payload = record.to_payload()
        columns = ", ".join(_HISTORY_FIELDS)
        placeholders = ", ".join("?" for _ in _HISTORY_FIELDS)
        upsert_sql = (
            f"INSERT INTO {table} ({columns}, synced_at) "
            f"VALUES ({placeholders}, strftime('%Y-%m-%dT%H:%M:%fZ', 'now')) "
            f"ON CONFLICT(uuid) DO UPDATE SET command = excluded.command, response = excluded.response, "
            f"updated_at = excluded.updated_at, user_id = excluded.user_id, machine_id = excluded.machine_id, "
            f"status = excluded.status, synced_at = excluded.synced_at "
            f"WHERE (excluded.updated_at, excluded.machine_id) > ({table}.updated_at, {table}.machine_id) "
            f"OR ((excluded.updated_at, excluded.machine_id) = ({table}.updated_at, {table}.machine_id) "
            f"AND (excluded.command IS NOT {table}.command OR excluded.response IS NOT {table}.response "
            f"OR excluded.status IS NOT {table}.status))"
        )
        upsert_result, current = self.execute_many([
            (upsert_sql, [payload[field] for field in _HISTORY_FIELDS]),
            (f"SELECT command, response, status, updated_at FROM {table} WHERE uuid = ?", [record.uuid]),
        ])
        if upsert_result.affected_row_count > 0:
            return UpsertOutcome.APPLIED
        rows = rows_as_dicts(current)
        if rows and (rows[0]["command"], rows[0]["response"], rows[0]["status"], rows[0]["updated_at"]) == (
                payload["command"], payload["response"], payload["status"], payload["updated_at"]):
            return UpsertOutcome.ALREADY_PRESENT
        return UpsertOutcome.REJECTED_STALE

    def delete_record(self, table: str, record_uuid: str) -> bool:
        result = self.execute(f"DELETE FROM {_check_table(table)} WHERE uuid = ?", [record_uuid])
        return result.affected_row_count > 0

    def get_record(self, table: str, record_uuid: str) -> Optional[HistoryRecord]:
        result = self.execute(f"SELECT {', '.join(_HISTORY_FIELDS)} FROM {_check_table(table)} WHERE uuid = ?",
                              [record_uuid])
        rows = rows_as_dicts(result)
        return HistoryRecord.from_payload(rows[0], SyncStatus.SYNCED) if rows else None

    def fetch_changes(self, table: str, after: Optional[Tuple[str, str]] = None, limit: int = 100,
                      user_id: Optional[str] = None, machine_id: Optional[str] = None) -> ChangePage:
        """
        Returns the records of `table` written after the `(synced_at, uuid)` cursor, oldest first.
        Rows that fail validation are logged and skipped; the page cursor still moves past them.
        """
        synced_after, uuid_after = after or ("", "")
        clauses = ["(synced_at > ? OR (synced_at = ? AND uuid > ?))"]
        args: List[Any] = [synced_after, synced_after, uuid_after]
        if user_id:
            clauses.append("user_id = ?")
            args.append(user_id)
        if machine_id:
            clauses.append("machine_id = ?")
            args.append(machine_id)
        args.append(limit + 1)
        result = self.execute(
            f"SELECT {', '.join(_HISTORY_FIELDS)}, synced_at FROM {_check_table(table)} "
            f"WHERE {' AND '.join(clauses)} ORDER BY synced_at ASC, uuid ASC LIMIT ?",
            args,
        )
        rows = rows_as_dicts(result)
        has_more = len(rows) > limit
        rows = rows[:limit]
        records: List[PulledRecord] = []
        for row in rows:
            try:
                record = HistoryRecord.from_payload(row, SyncStatus.SYNCED)
            except ValidationError as e:
                logger.warning(f"Skipping invalid remote row {row.get('uuid')} in {table}: {e}")
                continue
            records.append(PulledRecord(record=record, synced_at=row["synced_at"]))
        next_cursor = (rows[-1]["synced_at"], rows[-1]["uuid"]) if rows else None
        return ChangePage(records=records, has_more=has_more, next_cursor=next_cursor)

#
# End of termchat_history/remote_api/client.py
########################################################################################################################
