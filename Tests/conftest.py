# Tests/conftest.py
#
# Shared fixtures: a fake libSQL remote served through httpx.MockTransport, and factories for the
# local cache, machine identities and fully wired history services.
#
# Imports
import json
import sqlite3
import threading
import time
from typing import Any, Dict, List, Optional
#
# Third-Party Imports
import httpx
import pytest
#
# Local Imports
from termchat_history.Auth.Machine_Identity import MachineIdentity
from termchat_history.config import SyncConfig
from termchat_history.DB.History_Cache_DB import HistoryCacheDB
from termchat_history.History_Service import HistoryService
from termchat_history.remote_api.client import REMOTE_SCHEMA_STATEMENTS, RemoteStoreClient
from termchat_history.remote_api.utils import decode_value, encode_value
#
########################################################################################################################
#
# Functions:

REMOTE_URL = "libsql://history-test.turso.io"
REMOTE_TOKEN = "test-token"


class FakeLibsqlRemote:
    """
    In-memory SQLite database answering the libSQL `/v2/pipeline` protocol.

    Faults are injected with `inject()`: an int answers with that HTTP status, "unreachable" raises
    `httpx.ConnectError`, and a dict (`{"code": ..., "message": ...}`) fails every statement of the
    request with that pipeline error. `when` restricts a fault to requests whose SQL contains it.
    """

    def __init__(self, token: str = REMOTE_TOKEN):
        self.token = token
        self.conn = sqlite3.connect(":memory:", check_same_thread=False, isolation_level=None)
        self.lock = threading.Lock()
        self.request_count = 0
        self.executed_sql: List[str] = []
        self.unreachable = False
        self.delay_s = 0.0
        self._faults: List[Dict[str, Any]] = []
        self.conn.executescript(";\n".join(REMOTE_SCHEMA_STATEMENTS) + ";")

    # --- Test helpers ---
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def inject(self, action, times: int = 1, when: Optional[str] = None):
        self._faults.append({"action": action, "remaining": times, "when": when})

    def clear_faults(self):
        self._faults.clear()

    def add_user(self, username: str, is_active: bool = True, email: Optional[str] = None) -> str:
        user_id = f"user-{username}"
        with self.lock:
            self.conn.execute("INSERT INTO users (id, username, email, is_active) VALUES (?, ?, ?, ?)",
                              (user_id, username, email, 1 if is_active else 0))
        return user_id

    def execute(self, sql: str, params=()) -> int:
        with self.lock:
            return self.conn.execute(sql, params).rowcount

    def rows(self, table: str) -> List[Dict[str, Any]]:
        with self.lock:
            cursor = self.conn.execute(f"SELECT * FROM {table} ORDER BY rowid")
            names = [d[0] for d in cursor.description]
            return [dict(zip(names, row)) for row in cursor.fetchall()]

    def row(self, table: str, record_uuid: str) -> Optional[Dict[str, Any]]:
        matches = [r for r in self.rows(table) if r.get("uuid") == record_uuid]
        return matches[0] if matches else None

    # --- Protocol ---
    def _take_fault(self, sql_text: str):
        for fault in self._faults:
            if fault["remaining"] <= 0:
                continue
            if fault["when"] and fault["when"] not in sql_text:
                continue
            fault["remaining"] -= 1
            return fault["action"]
        return None

    def handle(self, request: httpx.Request) -> httpx.Response:
        with self.lock:
            self.request_count += 1
        if self.delay_s:
            time.sleep(self.delay_s)
        if self.unreachable:
            raise httpx.ConnectError("Connection refused", request=request)
        if request.method != "POST" or request.url.path != "/v2/pipeline":
            return httpx.Response(404, json={"error": "not found"})
        if request.headers.get("Authorization") != f"Bearer {self.token}":
            return httpx.Response(401, json={"error": "Unauthorized: invalid token"})

        body = json.loads(request.content)
        sql_text = " ".join(
            req.get("stmt", {}).get("sql", "") or req.get("sql", "") for req in body.get("requests", []))
        fault = self._take_fault(sql_text)
        if fault == "unreachable":
            raise httpx.ConnectError("Connection reset by peer", request=request)
        if isinstance(fault, int):
            return httpx.Response(fault, json={"error": f"injected status {fault}"})

        results = []
        for req in body["requests"]:
            if isinstance(fault, dict) and req["type"] != "close":
                results.append({"type": "error", "error": {"message": fault.get("message", "injected"),
                                                           "code": fault.get("code")}})
                continue
            results.append(self._run(req))
        return httpx.Response(200, json={"baton": None, "base_url": None, "results": results})

    def _run(self, req: Dict[str, Any]) -> Dict[str, Any]:
        if req["type"] == "close":
            return {"type": "ok", "response": {"type": "close"}}
        if req["type"] == "sequence":
            try:
                with self.lock:
                    self.executed_sql.append(req["sql"])
                    self.conn.executescript(req["sql"])
            except sqlite3.Error as e:
                return self._error(e)
            return {"type": "ok", "response": {"type": "sequence"}}

        stmt = req["stmt"]
        args = [decode_value(arg) for arg in stmt.get("args", [])]
        try:
            with self.lock:
                self.executed_sql.append(stmt["sql"])
                cursor = self.conn.execute(stmt["sql"], args)
                rows = cursor.fetchall()
                cols = [{"name": d[0], "decltype": None} for d in (cursor.description or [])]
                affected = cursor.rowcount if cursor.rowcount > 0 else 0
                last_rowid = cursor.lastrowid
        except sqlite3.Error as e:
            return self._error(e)
        return {
            "type": "ok",
            "response": {
                "type": "execute",
                "result": {
                    "cols": cols,
                    "rows": [[encode_value(value) for value in row] for row in rows],
                    "affected_row_count": affected,
                    "last_insert_rowid": str(last_rowid) if last_rowid else None,
                },
            },
        }

    @staticmethod
    def _error(e: sqlite3.Error) -> Dict[str, Any]:
        return {"type": "error", "error": {"message": str(e), "code": getattr(e, "sqlite_errorname", "SQLITE_ERROR")}}


# --- Remote Fixtures ---

@pytest.fixture
def remote():
    fake = FakeLibsqlRemote()
    yield fake
    fake.conn.close()


@pytest.fixture
def remote_client(remote):
    client = RemoteStoreClient(REMOTE_URL, REMOTE_TOKEN, timeout=2.0, transport=remote.transport())
    yield client
    client.close()


@pytest.fixture
def sync_config():
    return SyncConfig(
        remote_url=REMOTE_URL,
        remote_token=REMOTE_TOKEN,
        connect_timeout_ms=2000,
        request_timeout_ms=1000,
        retry_backoff_base_ms=0,
        sync_interval_ms=60_000,
        shutdown_drain_timeout_ms=1000,
        pull_page_size=3,
    )


# --- Local Fixtures ---

@pytest.fixture
def cache_db_path(tmp_path):
    return tmp_path / "history_cache.db"


@pytest.fixture
def cache(cache_db_path):
    db = HistoryCacheDB(cache_db_path)
    yield db
    db.close_connection()


@pytest.fixture
def make_identity(tmp_path):
    def _make(name: str) -> MachineIdentity:
        id_file = tmp_path / name / "machine-id"
        id_file.parent.mkdir(parents=True, exist_ok=True)
        id_file.write_text(f"machine-{name}", encoding="utf-8")
        return MachineIdentity(id_file)
    return _make


@pytest.fixture
def machine_identity(make_identity):
    return make_identity("alpha")


@pytest.fixture
def make_service(tmp_path, remote, sync_config, make_identity):
    """
    Builds a HistoryService for a named machine: its own cache file and machine id, sharing the
    fake remote. `online=False` builds an offline-only service.
    """
    services: List[HistoryService] = []

    def _make(name: str = "alpha", online: bool = True, config: Optional[SyncConfig] = None) -> HistoryService:
        if config is None:
            config = sync_config if online else SyncConfig()
        cache_db = HistoryCacheDB(tmp_path / name / "history_cache.db")
        client = None
        if online:
            client = RemoteStoreClient(config.remote_url, config.remote_token, timeout=2.0,
                                       transport=remote.transport())
        service = HistoryService(config, cache_db, make_identity(name), client=client)
        services.append(service)
        return service

    yield _make
    for service in services:
        service.shutdown(drain_timeout_s=0)

#
# End of conftest.py
########################################################################################################################
