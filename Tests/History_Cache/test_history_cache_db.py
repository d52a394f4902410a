# test_history_cache_db.py
#
# Imports
import sqlite3
import threading
from datetime import timedelta
#
# Third-Party Imports
import pytest
from pydantic import ValidationError
#
# Local Imports
from termchat_history.Constants import MAX_COMMAND_SIZE, TRUNCATION_MARKER
from termchat_history.DB.History_Cache_DB import (
    ApplyOutcome,
    HistoryCacheDB,
    InputError,
    LocalStorageFailure,
    RecordConflictError,
    SchemaError,
)
from termchat_history.DB.Sync_Queue import SyncQueue
from termchat_history.models import (
    HistoryFilter,
    HistoryRecord,
    Machine,
    QueueOperation,
    RecordScope,
    RecordStatus,
    ScopeTarget,
    SyncStatus,
    User,
    WriteOrigin,
    utc_now,
)
#
########################################################################################################################
#
# Functions:

MACHINE_A = "machine-alpha"
MACHINE_B = "machine-beta"


def make_record(command="ls -la", scope=RecordScope.GLOBAL, machine_id=MACHINE_A, **kwargs) -> HistoryRecord:
    if scope is RecordScope.USER:
        kwargs.setdefault("user_id", "user-alice")
    return HistoryRecord(command=command, scope=scope, machine_id=machine_id, **kwargs)


# --- Schema ---

class TestSchema:
    def test_fresh_database_is_at_current_version(self, cache):
        row = cache.execute_query("SELECT version FROM db_schema_version WHERE schema_name = ?",
                                  (HistoryCacheDB._SCHEMA_NAME,)).fetchone()
        assert row['version'] == HistoryCacheDB._CURRENT_SCHEMA_VERSION

    def test_reopening_keeps_data(self, cache_db_path):
        db = HistoryCacheDB(cache_db_path)
        stored = db.put(make_record("echo persisted"))
        db.close_connection()

        reopened = HistoryCacheDB(cache_db_path)
        assert reopened.get(stored.uuid).command == "echo persisted"
        reopened.close_connection()

    def test_newer_schema_is_refused(self, cache_db_path):
        db = HistoryCacheDB(cache_db_path)
        db.execute_query("UPDATE db_schema_version SET version = 99")
        db.close_connection()

        with pytest.raises(SchemaError):
            HistoryCacheDB(cache_db_path)

    def test_wal_mode_on_file_database(self, cache):
        mode = cache.execute_query("PRAGMA journal_mode;").fetchone()[0]
        assert mode.lower() == "wal"


# --- Local writes ---

class TestPut:
    def test_local_insert_is_pending_and_queued(self, cache):
        stored = cache.put(make_record())

        assert stored.sync_status is SyncStatus.PENDING
        entries = SyncQueue(cache).pending_for_record(stored.uuid)
        assert len(entries) == 1
        assert entries[0].operation is QueueOperation.INSERT
        assert entries[0].target_table == "history_global"
        assert entries[0].payload["command"] == "ls -la"

    def test_update_appends_a_second_entry(self, cache):
        stored = cache.put(make_record())
        cache.put(stored.with_changes(response="total 0", status=RecordStatus.ANSWERED,
                                      updated_at=stored.updated_at + timedelta(seconds=1)))

        entries = SyncQueue(cache).pending_for_record(stored.uuid)
        assert [e.operation for e in entries] == [QueueOperation.INSERT, QueueOperation.UPDATE]
        assert entries[1].payload["response"] == "total 0"

    def test_unchanged_rewrite_queues_nothing(self, cache):
        stored = cache.put(make_record())
        cache.put(stored)
        assert len(SyncQueue(cache).pending_for_record(stored.uuid)) == 1

    def test_local_scope_is_never_queued(self, cache):
        stored = cache.put(make_record(scope=RecordScope.LOCAL))

        assert stored.sync_status is SyncStatus.PENDING
        assert SyncQueue(cache).pending_for_record(stored.uuid) == []
        assert cache.stats()["queue_size"] == 0

    def test_remote_origin_is_synced_and_not_queued(self, cache):
        stored = cache.put(make_record(), origin=WriteOrigin.REMOTE)

        assert stored.sync_status is SyncStatus.SYNCED
        assert SyncQueue(cache).count_pending() == 0

    def test_empty_command_is_rejected(self, cache):
        with pytest.raises(InputError):
            cache.put(make_record(command="   "))

    def test_scope_cannot_change(self, cache):
        stored = cache.put(make_record())
        moved = HistoryRecord(uuid=stored.uuid, command=stored.command, scope=RecordScope.MACHINE,
                              machine_id=MACHINE_A)
        with pytest.raises(RecordConflictError) as exc_info:
            cache.put(moved)
        assert exc_info.value.record_uuid == stored.uuid
        assert cache.get(stored.uuid).scope is RecordScope.GLOBAL

    def test_oversized_command_is_truncated(self, cache):
        stored = cache.put(make_record(command="x" * (MAX_COMMAND_SIZE + 50)))
        assert stored.command.endswith(TRUNCATION_MARKER)
        assert len(stored.command) == MAX_COMMAND_SIZE + len(TRUNCATION_MARKER)

    def test_user_record_requires_user_id(self):
        with pytest.raises(ValidationError):
            HistoryRecord(command="whoami", scope=RecordScope.USER, machine_id=MACHINE_A)

    def test_uuid_cannot_change(self):
        record = make_record()
        with pytest.raises(ValueError):
            record.with_changes(uuid="another")

    def test_concurrent_updates_of_one_record_all_land(self, cache):
        stored = cache.put(make_record())
        errors = []

        def writer(i):
            try:
                cache.put(stored.with_changes(response=f"r{i}", updated_at=stored.updated_at + timedelta(seconds=i + 1)))
            except Exception as e:  # collected for the assertion below
                errors.append(e)
            finally:
                cache.close_connection()

        threads = [threading.Thread(target=writer, args=(i,)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert len(SyncQueue(cache).pending_for_record(stored.uuid)) == 9


# --- Remote-origin writes ---

class TestApplyRemote:
    def test_unknown_record_is_inserted_as_synced(self, cache):
        remote = make_record(machine_id=MACHINE_B)
        assert cache.apply_remote(remote) is ApplyOutcome.INSERTED
        assert cache.get(remote.uuid).sync_status is SyncStatus.SYNCED
        assert SyncQueue(cache).count_pending() == 0

    def test_same_content_is_unchanged(self, cache):
        remote = make_record(machine_id=MACHINE_B)
        cache.apply_remote(remote)
        assert cache.apply_remote(remote) is ApplyOutcome.UNCHANGED

    def test_newer_remote_replaces_pending_local_and_logs_conflict(self, cache):
        local = cache.put(make_record())
        remote = local.with_changes(machine_id=MACHINE_B, response="from beta",
                                    updated_at=local.updated_at + timedelta(seconds=5))

        assert cache.apply_remote(remote) is ApplyOutcome.UPDATED
        assert cache.get(local.uuid).response == "from beta"
        conflicts = cache.get_conflicts(local.uuid)
        assert len(conflicts) == 1
        assert conflicts[0].resolution == "kept_remote"
        assert conflicts[0].loser["response"] is None

    def test_older_remote_keeps_synced_local_and_requeues(self, cache):
        local = cache.put(make_record(response="newest"), origin=WriteOrigin.REMOTE)
        stale = local.with_changes(response="older", updated_at=local.updated_at - timedelta(seconds=5))

        assert cache.apply_remote(stale) is ApplyOutcome.KEPT_LOCAL
        assert cache.get(local.uuid).response == "newest"
        assert cache.get(local.uuid).sync_status is SyncStatus.SYNCED
        entries = SyncQueue(cache).pending_for_record(local.uuid)
        assert [e.operation for e in entries] == [QueueOperation.UPDATE]

    def test_repair_of_conflict_record_does_not_regress_status(self, cache):
        local = cache.put(make_record(response="newest"))
        sync_queue = SyncQueue(cache)
        sync_queue.ack(sync_queue.pending_for_record(local.uuid)[0].sequence_id, rejected_as_stale=True)
        assert cache.get(local.uuid).sync_status is SyncStatus.CONFLICT
        stale = local.with_changes(response="older", updated_at=local.updated_at - timedelta(seconds=5))

        assert cache.apply_remote(stale) is ApplyOutcome.KEPT_LOCAL
        assert cache.get(local.uuid).sync_status is SyncStatus.CONFLICT

        repair = sync_queue.pending_for_record(local.uuid)
        assert len(repair) == 1
        sync_queue.ack(repair[0].sequence_id)
        assert cache.get(local.uuid).sync_status is SyncStatus.SYNCED

    def test_scope_mismatch_is_refused(self, cache):
        local = cache.put(make_record())
        remote = HistoryRecord(uuid=local.uuid, command="ls", scope=RecordScope.MACHINE, machine_id=MACHINE_B)
        with pytest.raises(RecordConflictError):
            cache.apply_remote(remote)


# --- Reads ---

class TestGetByScope:
    def test_union_across_targets_in_creation_order(self, cache):
        now = utc_now()
        first = cache.put(make_record("first", created_at=now - timedelta(minutes=3)))
        second = cache.put(make_record("second", scope=RecordScope.USER, created_at=now - timedelta(minutes=2)))
        third = cache.put(make_record("third", scope=RecordScope.MACHINE, created_at=now - timedelta(minutes=1)))
        cache.put(make_record("other machine", scope=RecordScope.MACHINE, machine_id=MACHINE_B))
        cache.put(make_record("private", scope=RecordScope.LOCAL))

        records = cache.get_by_scope([
            ScopeTarget(scope=RecordScope.GLOBAL),
            ScopeTarget(scope=RecordScope.USER, user_id="user-alice"),
            ScopeTarget(scope=RecordScope.MACHINE, machine_id=MACHINE_A),
        ])

        assert [r.uuid for r in records] == [first.uuid, second.uuid, third.uuid]

    def test_user_target_only_returns_that_user(self, cache):
        cache.put(make_record("mine", scope=RecordScope.USER))
        cache.put(make_record("theirs", scope=RecordScope.USER, user_id="user-bob"))

        records = cache.get_by_scope(ScopeTarget(scope=RecordScope.USER, user_id="user-alice"))
        assert [r.command for r in records] == ["mine"]

    def test_filters(self, cache):
        cache.put(make_record("git status"))
        cache.put(make_record("git log", response="commit abc", status=RecordStatus.ANSWERED))
        cache.put(make_record("ls"))
        target = ScopeTarget(scope=RecordScope.GLOBAL)

        assert len(cache.get_by_scope(target, HistoryFilter(search="git"))) == 2
        assert [r.command for r in cache.get_by_scope(target, HistoryFilter(status=RecordStatus.ANSWERED))] == \
            ["git log"]
        assert len(cache.get_by_scope(target, HistoryFilter(limit=1))) == 1

    def test_search_matches_wildcard_characters_literally(self, cache):
        cache.put(make_record("df -h | grep 100%"))
        cache.put(make_record("echo 100 percent"))
        cache.put(make_record("cat my_notes.txt"))
        cache.put(make_record("cat my-notes.txt"))
        cache.put(make_record(r"dir C:\temp"))
        target = ScopeTarget(scope=RecordScope.GLOBAL)

        def search(text):
            return [r.command for r in cache.get_by_scope(target, HistoryFilter(search=text))]

        assert search("100%") == ["df -h | grep 100%"]
        assert search("my_notes") == ["cat my_notes.txt"]
        assert search("%") == ["df -h | grep 100%"]
        assert search("C:\\temp") == [r"dir C:\temp"]

    def test_empty_target_list(self, cache):
        assert cache.get_by_scope([]) == []


# --- Status, metadata and reference entities ---

class TestBookkeeping:
    def test_sync_status_cannot_regress(self, cache):
        stored = cache.put(make_record(), origin=WriteOrigin.REMOTE)
        assert cache.mark_sync_status(stored.uuid, SyncStatus.PENDING) is False
        assert cache.get(stored.uuid).sync_status is SyncStatus.SYNCED

    def test_pending_can_move_to_failed(self, cache):
        stored = cache.put(make_record())
        assert cache.mark_sync_status(stored.uuid, SyncStatus.FAILED, "boom") is True
        assert cache.get(stored.uuid).sync_status is SyncStatus.FAILED

    def test_metadata_roundtrip_and_prefix(self, cache):
        cache.set_sync_metadata("pull_cursor:a:history_global", "[\"t\", \"u\"]")
        cache.set_sync_metadata("pull_cursor:a:history_machine", None)
        cache.set_sync_metadata("last_error", "x")

        assert cache.get_sync_metadata("last_error") == "x"
        assert set(cache.get_sync_metadata_prefix("pull_cursor:")) == {
            "pull_cursor:a:history_global", "pull_cursor:a:history_machine"}
        assert cache.get_sync_metadata("missing") is None

    def test_user_and_machine_cache(self, cache):
        cache.cache_user(User(user_id="user-alice", username="alice", email="a@example.com"))
        cache.cache_machine(Machine(machine_id=MACHINE_A, hostname="laptop"))

        assert cache.get_cached_user("alice").user_id == "user-alice"
        assert cache.get_cached_user("nobody") is None
        assert cache.get_machine(MACHINE_A).hostname == "laptop"

    def test_stats(self, cache):
        cache.put(make_record())
        cache.put(make_record(), origin=WriteOrigin.REMOTE)
        stats = cache.stats()
        assert stats["pending"] == 1
        assert stats["synced"] == 1
        assert stats["total"] == 2
        assert stats["queue_size"] == 1

    def test_failed_write_leaves_no_partial_state(self, cache, mocker):
        mocker.patch.object(cache, "_insert_queue_entry", side_effect=sqlite3.OperationalError("disk I/O error"))
        record = make_record()
        with pytest.raises(LocalStorageFailure):
            cache.put(record)

        assert cache.get(record.uuid) is None
        assert SyncQueue(cache).count_pending() == 0

#
# End of test_history_cache_db.py
########################################################################################################################
