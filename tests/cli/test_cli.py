import asyncio
from unittest.mock import patch

import pytest
import yaml

from app.core.security import get_current_operator
from cli.cli import main
from engine.scheduler.types import GateState, PipelineStatus
from engine.services.run_submitter import RunSubmitter
from tests.helpers import PY

CONTEXT = ["--version", "v1.0.0", "--branch", "main", "--revision", "abc"]


@pytest.fixture
def definition(tmp_path):
    workdir = tmp_path / "src"
    workdir.mkdir()
    data = {
        "name": "convoy",
        "defaults": {"timeout": 30, "working_dir": str(workdir)},
        "stages": [
            {"name": "build", "tasks": [{"name": "compile", "command": [PY, "-c", "print('built')"]}]},
            {
                "name": "deploy",
                "needs": ["build"],
                "approval": True,
                "tasks": [{"name": "ship", "command": [PY, "-c", "open('shipped', 'w').write('1')"]}],
            },
        ],
    }
    path = tmp_path / "convoy.yml"
    path.write_text(yaml.safe_dump(data))
    return str(path)


@pytest.fixture
def submitter(settings):
    with patch("cli.cli.RunSubmitter", side_effect=lambda: RunSubmitter(settings=settings)):
        yield RunSubmitter(settings=settings)


def only_run(submitter):
    (snapshot,) = submitter.store.list()
    return snapshot.run_id


def test_plan_does_not_record_a_run(submitter, definition):
    assert main(["plan", definition, *CONTEXT]) == 0
    assert submitter.store.list() == []


def test_run_detaches_then_approve_resumes(submitter, definition, tmp_path):
    assert main(["--actor", "alice", "run", definition, *CONTEXT]) == 0

    run_id = only_run(submitter)
    assert submitter.store.load(run_id).status == PipelineStatus.AWAITING_APPROVAL
    assert main(["approvals", run_id]) == 0

    assert main(["--actor", "alice", "approve", run_id, "deploy", "--resume"]) == 0

    snapshot = submitter.store.load(run_id)
    assert snapshot.status == PipelineStatus.SUCCEEDED
    assert snapshot.gates[0].actor == "alice"
    assert (tmp_path / "src" / "shipped").exists()


def test_decline_then_resume_fails(submitter, definition):
    main(["run", definition, *CONTEXT])
    run_id = only_run(submitter)

    assert main(["--actor", "bob", "decline", run_id, "deploy", "--reason", "freeze", "--resume"]) == 1
    assert submitter.store.load(run_id).gates[0].state == GateState.ABORTED


def test_cancel_detached_run(submitter, definition):
    main(["run", definition, *CONTEXT])
    run_id = only_run(submitter)

    assert main(["cancel", run_id]) == 0
    assert submitter.store.load(run_id).status == PipelineStatus.CANCELLED
    assert main(["cancel", run_id]) == 1


def test_cancel_refuses_a_run_executing_elsewhere(submitter, definition):
    main(["run", definition, *CONTEXT])
    run_id = only_run(submitter)
    snapshot = submitter.store.load(run_id)
    snapshot.status = PipelineStatus.RUNNING
    submitter.store.save(snapshot)

    assert main(["cancel", run_id]) == 1
    assert submitter.store.load(run_id).status == PipelineStatus.RUNNING


def test_unknown_run(submitter):
    assert main(["status", "run-missing"]) == 1


def test_token_is_accepted_by_the_api(capsys):
    assert main(["token", "carol"]) == 0
    token = capsys.readouterr().out.strip()

    assert asyncio.run(get_current_operator(token)).name == "carol"
