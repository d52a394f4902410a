# test_history_service_scenarios.py
#
# End-to-end scenarios: one or more machines, each with its own cache and machine id, sharing a fake
# remote store.
#
# Imports
import time
from datetime import timedelta
#
# Third-Party Imports
import pytest
#
# Local Imports
from termchat_history.Auth.Session_Authenticator import AuthMode, UserNotFoundError
from termchat_history.Constants import SYNCED_HISTORY_TABLES
from termchat_history.DB.History_Cache_DB import InputError
from termchat_history.models import HistoryFilter, RecordScope, RecordStatus, ScopeSelector, SyncStatus
from termchat_history.Scope_Router import ScopeCapabilityError
#
########################################################################################################################
#
# Functions:


def sync(*services):
    for service in services:
        time.sleep(0.01)
        service.worker.run_cycle(reason="test")


@pytest.fixture
def alice_remote(remote):
    remote.add_user("alice")
    return remote


class TestOffline:
    def test_local_history_without_any_remote(self, make_service, remote):
        service = make_service("alpha", online=False)

        result = service.authenticate("alice")
        record = service.submit_command("vim notes.md", ScopeSelector.LOCAL)

        assert result.mode is AuthMode.OFFLINE
        assert service.queue.count_pending() == 0
        assert [r.uuid for r in service.query_history(ScopeSelector.LOCAL)] == [record.uuid]
        assert remote.request_count == 0

    def test_user_scope_is_refused_without_network_calls(self, make_service, remote):
        service = make_service("alpha", online=False)
        service.authenticate("alice")

        with pytest.raises(ScopeCapabilityError):
            service.submit_command("whoami", ScopeSelector.USER)
        with pytest.raises(ScopeCapabilityError):
            service.query_history(ScopeSelector.HYBRID)

        assert remote.request_count == 0
        assert service.cache.stats()["total"] == 0

    def test_offline_writes_are_queued_for_later(self, make_service, remote):
        service = make_service("alpha")
        remote.unreachable = True
        assert service.authenticate("alice").mode is AuthMode.OFFLINE

        record = service.submit_command("cargo build", ScopeSelector.GLOBAL)
        assert service.sync_status().pending_count == 1

        remote.unreachable = False
        service.worker.run_cycle()
        assert remote.row("history_global", record.uuid) is not None
        assert service.sync_status().pending_count == 0

    def test_start_is_a_noop_when_offline_only(self, make_service):
        service = make_service("alpha", online=False)
        service.start()
        assert not service.worker.is_running


class TestAuthentication:
    def test_ghost_user_ends_the_session(self, make_service, remote):
        service = make_service("alpha")

        result = service.authenticate("ghost")

        assert result.mode is AuthMode.USER_NOT_FOUND
        assert result.error.username == "ghost"
        for call in (lambda: service.submit_command("ls", ScopeSelector.GLOBAL),
                     lambda: service.submit_command("ls", ScopeSelector.USER),
                     lambda: service.query_history(ScopeSelector.GLOBAL),
                     service.start,
                     service.sync_now):
            with pytest.raises(UserNotFoundError) as excinfo:
                call()
            assert excinfo.value.username == "ghost"
        assert not service.worker.is_running
        assert service.cache.stats()["total"] == 0
        assert service.cache.get_cached_user("ghost") is None
        assert remote.rows("users") == []

    def test_session_recovers_after_authenticating_again(self, make_service, alice_remote):
        service = make_service("alpha")
        service.authenticate("ghost")

        assert service.authenticate("alice").mode is AuthMode.VALIDATED
        assert service.submit_command("ls", ScopeSelector.USER).user_id == "user-alice"

    def test_validated_user_writes_hybrid_to_user_table(self, make_service, alice_remote):
        service = make_service("alpha")
        service.authenticate("alice")

        record = service.submit_command("git push", ScopeSelector.HYBRID)
        service.worker.run_cycle()

        assert record.scope is RecordScope.USER
        assert record.user_id == "user-alice"
        assert record.machine_id == "machine-alpha"
        assert alice_remote.row("history_user", record.uuid)["user_id"] == "user-alice"


class TestCommandLifecycle:
    def test_submit_attach_and_cancel(self, make_service):
        service = make_service("alpha", online=False)
        service.authenticate()

        record = service.submit_command("make deploy", ScopeSelector.MACHINE)
        answered = service.attach_response(record.uuid, "deployed")
        cancelled = service.cancel_command(record.uuid)

        assert answered.status is RecordStatus.ANSWERED
        assert answered.response == "deployed"
        assert cancelled.status is RecordStatus.CANCELLED
        assert cancelled.updated_at >= answered.updated_at >= record.updated_at
        assert cancelled.machine_id == record.machine_id
        assert len(service.queue.pending_for_record(record.uuid)) == 3

    def test_invalid_input(self, make_service):
        service = make_service("alpha", online=False)
        service.authenticate()
        with pytest.raises(InputError):
            service.submit_command("   ", ScopeSelector.GLOBAL)
        with pytest.raises(InputError):
            service.attach_response("no-such-uuid", "text")

    def test_query_filters(self, make_service):
        service = make_service("alpha", online=False)
        service.authenticate()
        service.submit_command("git status", ScopeSelector.GLOBAL)
        service.submit_command("ls", ScopeSelector.GLOBAL)

        found = service.query_history(ScopeSelector.GLOBAL, HistoryFilter(search="git"))
        assert [r.command for r in found] == ["git status"]

    def test_local_scope_never_reaches_remote(self, make_service, remote):
        service = make_service("alpha")
        service.authenticate()

        record = service.submit_command("export SECRET=1", ScopeSelector.LOCAL)
        service.worker.run_cycle()

        for table in SYNCED_HISTORY_TABLES:
            assert remote.row(table, record.uuid) is None
        assert service.cache.get(record.uuid).sync_status is SyncStatus.PENDING


class TestMultiMachine:
    def test_two_machines_converge(self, make_service, alice_remote):
        alpha = make_service("alpha")
        beta = make_service("beta")
        alpha.authenticate("alice")
        beta.authenticate("alice")

        from_alpha = alpha.submit_command("git push", ScopeSelector.HYBRID)
        from_beta = beta.submit_command("make", ScopeSelector.GLOBAL)
        alpha_machine_only = alpha.submit_command("htop", ScopeSelector.MACHINE)
        sync(alpha, beta, alpha)

        alpha_view = [r.uuid for r in alpha.query_history(ScopeSelector.HYBRID)]
        beta_view = [r.uuid for r in beta.query_history(ScopeSelector.HYBRID)]
        assert set(alpha_view) == {from_alpha.uuid, from_beta.uuid, alpha_machine_only.uuid}
        assert set(beta_view) == {from_alpha.uuid, from_beta.uuid}
        # Each uuid appears once on every machine.
        assert len(alpha_view) == len(set(alpha_view))
        assert len(beta_view) == len(set(beta_view))

    def test_concurrent_updates_converge_on_last_writer(self, make_service, alice_remote):
        alpha = make_service("alpha")
        beta = make_service("beta")
        alpha.authenticate("alice")
        beta.authenticate("alice")
        record = alpha.submit_command("pytest", ScopeSelector.GLOBAL)
        sync(alpha, beta)

        alpha.attach_response(record.uuid, "answer from alpha")
        time.sleep(0.01)
        beta.attach_response(record.uuid, "answer from beta")
        sync(alpha, beta, alpha, beta)

        on_alpha = alpha.cache.get(record.uuid)
        on_beta = beta.cache.get(record.uuid)
        assert on_alpha.response == on_beta.response == "answer from beta"
        assert on_alpha.updated_at == on_beta.updated_at
        assert on_alpha.machine_id == on_beta.machine_id == "machine-beta"
        assert alice_remote.row("history_global", record.uuid)["response"] == "answer from beta"
        assert alpha.sync_status().pending_count == 0
        assert beta.sync_status().pending_count == 0

    def test_refresh_pulls_before_reading(self, make_service, alice_remote):
        alpha = make_service("alpha")
        beta = make_service("beta")
        alpha.authenticate("alice")
        beta.authenticate("alice")
        record = beta.submit_command("docker ps", ScopeSelector.GLOBAL)
        sync(beta)

        assert alpha.query_history(ScopeSelector.GLOBAL) == []
        refreshed = alpha.query_history(ScopeSelector.GLOBAL, refresh=True)

        assert [r.uuid for r in refreshed] == [record.uuid]

    def test_equal_timestamps_are_won_by_the_higher_machine_id(self, make_service, alice_remote, mocker):
        alpha = make_service("alpha")
        beta = make_service("beta")
        alpha.authenticate("alice")
        beta.authenticate("alice")
        record = alpha.submit_command("pytest", ScopeSelector.GLOBAL)
        sync(alpha, beta)
        mocker.patch("termchat_history.History_Service.utc_now",
                     return_value=record.updated_at + timedelta(seconds=5))

        from_alpha = alpha.attach_response(record.uuid, "A2")
        from_beta = beta.attach_response(record.uuid, "B2")
        sync(alpha, beta, alpha, beta)

        assert from_alpha.updated_at == from_beta.updated_at
        assert (from_alpha.machine_id, from_beta.machine_id) == ("machine-alpha", "machine-beta")
        for service in (alpha, beta):
            stored = service.cache.get(record.uuid)
            assert (stored.response, stored.machine_id) == ("B2", "machine-beta")
        assert alice_remote.row("history_global", record.uuid)["response"] == "B2"

    def test_refresh_against_a_slow_remote_is_bounded(self, make_service, alice_remote, sync_config):
        alpha = make_service("alpha", config=sync_config.model_copy(update={"connect_timeout_ms": 500}))
        beta = make_service("beta")
        alpha.authenticate("alice")
        beta.authenticate("alice")
        record = beta.submit_command("docker ps", ScopeSelector.GLOBAL)
        sync(beta)
        alice_remote.delay_s = 1.0

        started = time.monotonic()
        refreshed = alpha.query_history(ScopeSelector.HYBRID, refresh=True)
        elapsed = time.monotonic() - started

        assert elapsed < 0.9
        assert refreshed == []
        # The cut-short cycle ends on its own; the next one completes the pull.
        alice_remote.delay_s = 0
        alpha.worker.run_cycle()
        assert [r.uuid for r in alpha.query_history(ScopeSelector.GLOBAL)] == [record.uuid]


class TestFailures:
    def test_six_failures_surface_in_sync_status(self, make_service, remote):
        service = make_service("alpha")
        service.authenticate()
        remote.inject(503, times=6, when="INSERT INTO history_global")

        record = service.submit_command("terraform apply", ScopeSelector.GLOBAL)
        service.worker.run_cycle()
        status = service.sync_status()

        assert status.failed_count == 1
        assert status.pending_count == 0
        assert "503" in status.last_error
        assert status.last_sync_at is not None
        assert service.cache.get(record.uuid).sync_status is SyncStatus.FAILED

        assert service.requeue_failed() == 1
        service.worker.run_cycle()
        assert service.sync_status().failed_count == 0
        assert service.cache.get(record.uuid).sync_status is SyncStatus.SYNCED

    def test_background_worker_and_shutdown_drain(self, make_service, remote):
        service = make_service("alpha")
        service.authenticate()
        service.start()

        record = service.submit_command("uptime", ScopeSelector.GLOBAL)
        service.shutdown(drain_timeout_s=1.0)

        assert not service.worker.is_running
        assert remote.row("history_global", record.uuid) is not None

#
# End of test_history_service_scenarios.py
########################################################################################################################
