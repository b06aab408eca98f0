import threading
from datetime import datetime, timezone

import pytest

from snipsync.core.errors import AlreadySyncing, SyncNotApproved
from snipsync.sync.adapters import build_adapters
from snipsync.sync.approval import ApprovalGate
from snipsync.sync.models import EntityKind, PhaseResult, SnippetPayload, SyncResult
from snipsync.sync.orchestrator import SyncOrchestrator, SyncState, describe_result

USER = "u@example.com"
FIXED_NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def _orchestrator(store, remote, log_func, adapters=None) -> SyncOrchestrator:
    gate = ApprovalGate(remote, log_func=log_func)
    adapters = adapters if adapters is not None else build_adapters(store, remote, log_func=log_func)
    return SyncOrchestrator(gate, adapters, local=store, log_func=log_func, clock=lambda: FIXED_NOW)


def test_unapproved_user_makes_no_entity_calls(store, remote, quiet_log):
    store.insert(EntityKind.SNIPPETS, SnippetPayload(title="t", content="c"))
    orch = _orchestrator(store, remote, quiet_log)

    with pytest.raises(SyncNotApproved) as exc:
        orch.sync_all(USER)

    assert str(exc.value) == "SYNC_NOT_APPROVED"
    assert [c[0] for c in remote.calls] == ["get_approval"]
    assert orch.state == SyncState.IDLE
    assert orch.last_sync_time is None


def test_requested_but_not_approved_is_still_rejected(store, remote, quiet_log):
    orch = _orchestrator(store, remote, quiet_log)
    orch.request_approval(USER)

    with pytest.raises(SyncNotApproved):
        orch.sync_all(USER)
    assert remote.count("list") == 0


def test_first_sync_pushes_local_records(store, remote, quiet_log):
    remote.approve(USER)
    store.insert(EntityKind.SNIPPETS, SnippetPayload(title="a", content="1"))
    store.insert(EntityKind.SNIPPETS, SnippetPayload(title="b", content="2"))
    orch = _orchestrator(store, remote, quiet_log)

    result = orch.sync_all(USER)

    assert (result.pushed, result.pulled, result.errors) == (2, 0, 0)
    assert result.entities["snippets"].pushed == 2
    assert result.sync_time == FIXED_NOW
    assert orch.last_sync_time == FIXED_NOW
    assert store.get_setting("last_sync_time") == "2024-06-01T12:00:00.000Z"
    assert describe_result(result, "snippet") == "Pushed 2 snippets to cloud"


def test_repeated_sync_is_up_to_date(store, remote, quiet_log):
    remote.approve(USER)
    store.insert(EntityKind.SNIPPETS, SnippetPayload(title="a", content="1"))
    remote.seed(EntityKind.SNIPPETS, USER, 40, "2024-01-01T00:00:00Z", title="r", content="remote", language="text")
    orch = _orchestrator(store, remote, quiet_log)

    first = orch.sync_all(USER)
    second = orch.sync_all(USER)

    assert (first.pushed, first.pulled) == (1, 1)
    assert (second.pushed, second.pulled, second.errors) == (0, 0, 0)
    assert second.up_to_date is True
    assert describe_result(second) == "Everything is up to date"


def test_adapters_run_in_fixed_order(store, remote, quiet_log):
    remote.approve(USER)
    orch = _orchestrator(store, remote, quiet_log)

    orch.sync_all(USER)

    listed = [c[1] for c in remote.calls if c[0] == "list"]
    assert listed == ["snippets", "clipboard", "files"]


def test_failed_phase_is_counted_and_remaining_adapters_run(store, remote, quiet_log):
    remote.approve(USER)
    remote.list_errors["snippets"] = RuntimeError("listing failed")
    remote.seed(EntityKind.CLIPBOARD, USER, 3, "2024-01-01T00:00:00Z", content="clip", source="system", category="general")
    orch = _orchestrator(store, remote, quiet_log)

    result = orch.sync_all(USER)

    assert result.errors == 1
    assert result.pulled == 1
    assert result.partial is True
    assert describe_result(result).startswith("Partially synced")
    runs = store.recent_sync_runs(1)
    assert runs[0]["status"] == "partial"


class _BlockingAdapter:
    kind = EntityKind.SNIPPETS

    def __init__(self):
        self.entered = threading.Event()
        self.release = threading.Event()

    def push_phase(self, user_identity):
        self.entered.set()
        self.release.wait(timeout=5)
        return PhaseResult()

    def pull_phase(self, user_identity):
        return PhaseResult()


def test_concurrent_sync_is_rejected_while_running(store, remote, quiet_log):
    remote.approve(USER)
    adapter = _BlockingAdapter()
    orch = _orchestrator(store, remote, quiet_log, adapters=[adapter])
    outcome = {}

    def run():
        outcome["result"] = orch.sync_all(USER)

    t = threading.Thread(target=run)
    t.start()
    assert adapter.entered.wait(timeout=5)
    assert orch.is_syncing is True
    assert orch.state == SyncState.SYNCING

    with pytest.raises(AlreadySyncing) as exc:
        orch.sync_all(USER)
    assert str(exc.value) == "ALREADY_SYNCING"

    adapter.release.set()
    t.join(timeout=5)
    assert outcome["result"].errors == 0
    assert orch.is_syncing is False


def test_last_sync_time_is_loaded_from_checkpoint(store, remote, quiet_log):
    store.set_setting("last_sync_time", "2024-03-01T00:00:00.000Z")
    orch = _orchestrator(store, remote, quiet_log)
    assert orch.last_sync_time == datetime(2024, 3, 1, tzinfo=timezone.utc)


@pytest.mark.parametrize(
    "counts,expected",
    [
        ((0, 0, 0), "Everything is up to date"),
        ((1, 0, 0), "Pushed 1 record to cloud"),
        ((0, 3, 0), "Pulled 3 records from cloud"),
        ((2, 3, 0), "2 up, 3 down"),
        ((2, 3, 1), "Partially synced: 2 up, 3 down, 1 failed. Please try again later."),
    ],
)
def test_describe_result(counts, expected):
    pushed, pulled, errors = counts
    assert describe_result(SyncResult(pushed=pushed, pulled=pulled, errors=errors)) == expected


def test_run_row_is_finished_when_checkpoint_write_fails(monkeypatch, store, remote, quiet_log):
    remote.approve(USER)
    orch = _orchestrator(store, remote, quiet_log)

    def _raise(*_a):
        raise RuntimeError("disk full")

    monkeypatch.setattr(store, "set_setting", _raise)

    with pytest.raises(RuntimeError):
        orch.sync_all(USER)

    [run] = store.recent_sync_runs(1)
    assert run["status"] == "failed"
    assert run["finished_at"]
    assert run["summary"] == {"error": "disk full"}
    assert orch.state == SyncState.IDLE
    assert orch.last_sync_time is None
