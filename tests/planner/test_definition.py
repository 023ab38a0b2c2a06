import json

import pytest
import yaml

from engine.planner.definition import BranchFilter, load_definition, parse_definition
from engine.planner.exceptions import InvalidPipelineDefinition

PIPELINE = {
    "name": "shuttle",
    "stages": [
        {"name": "build", "tasks": [{"name": "compile", "command": ["cargo", "build"], "timeout": 60}]},
    ],
    "release": {"name": "cargo-shuttle", "command": ["ghr", "-draft", "{version}", "{release_dir}"]},
}


@pytest.mark.parametrize("suffix,dump", [(".yml", yaml.safe_dump), (".json", json.dumps)])
def test_load_yaml_and_json(tmp_path, suffix, dump):
    path = tmp_path / f"pipeline{suffix}"
    path.write_text(dump(PIPELINE))

    definition = load_definition(path)

    assert definition.name == "shuttle"
    assert definition.stage("build").tasks[0].timeout == 60
    assert definition.release.draft is True


def test_missing_file(tmp_path):
    with pytest.raises(InvalidPipelineDefinition):
        load_definition(tmp_path / "nope.yml")


def test_unknown_keys_are_rejected():
    data = dict(PIPELINE, stages=[dict(PIPELINE["stages"][0], parallelism=3)])
    with pytest.raises(InvalidPipelineDefinition):
        parse_definition(data)


def test_duplicate_stage_names():
    data = dict(PIPELINE, stages=PIPELINE["stages"] * 2)
    with pytest.raises(InvalidPipelineDefinition):
        parse_definition(data)


def test_empty_command_and_empty_matrix_are_rejected():
    task = {"name": "t", "command": []}
    with pytest.raises(InvalidPipelineDefinition):
        parse_definition(dict(PIPELINE, stages=[{"name": "s", "tasks": [task]}]))

    task = {"name": "t", "command": ["x"], "matrix": {"target": []}}
    with pytest.raises(InvalidPipelineDefinition):
        parse_definition(dict(PIPELINE, stages=[{"name": "s", "tasks": [task]}]))


def test_non_mapping_document():
    with pytest.raises(InvalidPipelineDefinition):
        parse_definition(["not", "a", "pipeline"])


def test_branch_filter_patterns():
    f = BranchFilter(only=["main", "/release-[0-9.]+/"], ignore=["release-0.0"])

    assert f.allows("main")
    assert f.allows("release-1.2")
    assert not f.allows("release-0.0")
    assert not f.allows("feature/x")
    # patterns must match the whole branch name
    assert not f.allows("my-release-1.2")


def test_bundled_cargo_shuttle_pipeline_plans():
    from pathlib import Path

    from engine.planner.context import RunContext
    from engine.planner.dag_builder import build_pipeline_plan

    path = Path(__file__).resolve().parents[2] / "pipelines" / "cargo-shuttle.yml"
    context = RunContext(run_id="run-x", version="v0.9.0", branch="main", environment="production")

    plan = build_pipeline_plan(load_definition(path), context)

    assert [s.name for s in plan.stages] == ["lint", "build", "publish-crates", "deploy"]
    assert len(plan.stage("build").tasks) == 4
    assert plan.stage("deploy").approval
    assert "GITHUB_TOKEN" in plan.secret_sources
