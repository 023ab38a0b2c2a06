from datetime import datetime, timezone

import pytest

from engine.planner.context import RunContext
from engine.scheduler.exceptions import GateAlreadyResolved, UnknownGate
from engine.scheduler.types import FailureKind, GateState, PipelineStatus, StageState
from engine.services.run_store import GateRecord, RunActive, RunNotFound, RunSnapshot, RunStore, StageRecord


def awaiting(run_id="run-1"):
    return RunSnapshot(
        run_id=run_id,
        pipeline="convoy-release",
        context=RunContext(run_id=run_id, version="v1.0.0", branch="main"),
        status=PipelineStatus.AWAITING_APPROVAL,
        stages={
            "build": StageRecord(state=StageState.SUCCEEDED),
            "deploy": StageRecord(state=StageState.AWAITING_APPROVAL),
        },
        gates=[GateRecord(stage="deploy", requested_at=datetime.now(timezone.utc))],
    )


@pytest.fixture
def store(tmp_path):
    return RunStore(tmp_path / "runs")


def test_save_and_load(store):
    store.save(awaiting())

    loaded = store.load("run-1")
    assert loaded.status == PipelineStatus.AWAITING_APPROVAL
    assert [g.stage for g in loaded.pending_gates()] == ["deploy"]
    assert store.exists("run-1")
    assert not store.exists("run-2")


def test_unknown_run(store):
    with pytest.raises(RunNotFound):
        store.load("run-404")


@pytest.mark.parametrize("run_id", ["../etc/passwd", "a/b", ".hidden", ""])
def test_run_ids_cannot_escape_the_store(store, run_id):
    with pytest.raises(RunNotFound):
        store.path_for(run_id)


def test_list_is_newest_first(store):
    older = awaiting("run-old")
    older.updated_at = datetime(2020, 1, 1, tzinfo=timezone.utc)
    store.save(older)
    store.save(awaiting("run-new"))

    assert [s.run_id for s in store.list()] == ["run-new", "run-old"]


def test_approve_detached_gate(store):
    store.save(awaiting())

    snapshot = store.resolve_gate("run-1", "deploy", actor="alice", approve=True)

    gate = snapshot.gates[0]
    assert gate.state == GateState.APPROVED
    assert gate.actor == "alice"
    assert gate.resolved_at is not None
    assert store.load("run-1").stages["deploy"].state == StageState.APPROVED


def test_decline_detached_gate(store):
    store.save(awaiting())

    store.resolve_gate("run-1", "deploy", actor="bob", approve=False, reason="freeze week")

    record = store.load("run-1").stages["deploy"]
    assert record.state == StageState.ABORTED
    assert record.failure_kind == FailureKind.APPROVAL_ABORTED
    assert record.error == "freeze week"


def test_gate_errors(store):
    store.save(awaiting())

    with pytest.raises(UnknownGate):
        store.resolve_gate("run-1", "build", actor="alice", approve=True)

    store.resolve_gate("run-1", "deploy", actor="alice", approve=True)
    with pytest.raises(GateAlreadyResolved):
        store.resolve_gate("run-1", "deploy", actor="bob", approve=False)


def test_mark_cancelled_aborts_open_gates(store):
    store.save(awaiting())

    snapshot = store.mark_cancelled("run-1", actor="carol")

    assert snapshot.status == PipelineStatus.CANCELLED
    assert snapshot.gates[0].state == GateState.ABORTED
    assert snapshot.stages["deploy"].failure_kind == FailureKind.CANCELLED
    assert snapshot.stages["build"].state == StageState.SUCCEEDED


def test_mark_cancelled_leaves_finished_runs_alone(store):
    done = awaiting()
    done.status = PipelineStatus.SUCCEEDED
    store.save(done)

    assert store.mark_cancelled("run-1", actor="carol").status == PipelineStatus.SUCCEEDED


def test_mark_cancelled_refuses_an_executing_run(store):
    running = awaiting()
    running.status = PipelineStatus.RUNNING
    store.save(running)

    with pytest.raises(RunActive):
        store.mark_cancelled("run-1", actor="carol")

    assert store.load("run-1").status == PipelineStatus.RUNNING
