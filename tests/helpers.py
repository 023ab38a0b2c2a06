import os
import sys
import time
from types import MappingProxyType

from engine.dispatch.coordinator import FanOutCoordinator, FanOutResult
from engine.planner.context import RunContext
from engine.planner.dag_builder import PipelinePlan
from engine.scheduler.dag import ArtifactDeclaration, StageSpec, TaskSpec
from engine.scheduler.pipeline import StagePipeline
from engine.scheduler.resources import ResourceBudget
from engine.scheduler.types import TaskStatus
from release.artifacts import ArtifactAggregator
from release.executor import Executor
from release.storage import LocalArtifactStore
from release.types import ExecutionConfig, SecretTable, TaskResult

PY = sys.executable


def py_task(name, code, *, stage="build", timeout=30, cost_units=1, working_dir=None,
            env=None, secrets=None, tolerate=(), artifact=None):
    return TaskSpec(
        task_id=f"{stage}:{name}",
        name=name,
        stage=stage,
        command=(PY, "-c", code),
        timeout=timeout,
        working_dir=str(working_dir) if working_dir else None,
        cost_units=cost_units,
        env=env or {},
        secrets=secrets or {},
        tolerate=tuple(tolerate),
        artifact=artifact,
    )


def build_task(target, workdir, *, stage="build", fail=False, counter=None):
    """A task that 'compiles' out/<target>/convoy, or fails like a broken linker."""
    lines = ["import os, sys"]
    if counter:
        lines.append(f"open(r'{counter}', 'a').write('{target}\\n')")
    if fail:
        lines += ["print('error: linking failed for " + target + "')", "sys.exit(2)"]
    else:
        lines += [
            f"os.makedirs('out/{target}', exist_ok=True)",
            f"open('out/{target}/convoy', 'w').write('binary for {target}')",
            f"print('built {target}')",
        ]
    return py_task(
        f"build-{target}",
        "; ".join(lines),
        stage=stage,
        working_dir=workdir,
        artifact=ArtifactDeclaration(
            target=target,
            output_path=f"out/{target}/convoy",
            binary_name="convoy",
        ),
    )


def make_plan(*stages, version="v1.2.3", run_id="run-test", release=None):
    return PipelinePlan(
        name="convoy-release",
        context=RunContext(run_id=run_id, version=version, branch="main"),
        stages=tuple(stages),
        release=release,
    )


def make_config(secrets=None):
    return ExecutionConfig(
        base_env=MappingProxyType(dict(os.environ)),
        secrets=SecretTable(secrets or {}),
        cancel_grace=2,
    )


def make_pipeline(plan, bundles_dir, *, publisher=None, notifier=None, max_parallelism=4, config=None):
    coordinator = FanOutCoordinator(
        max_parallelism=max_parallelism,
        budget=ResourceBudget(16),
        executor=Executor(),
    )
    return StagePipeline(
        plan,
        coordinator=coordinator,
        aggregator=ArtifactAggregator(LocalArtifactStore(bundles_dir), plan.context.version),
        config=config or make_config(),
        publisher=publisher,
        notifier=notifier,
    )


def release_scenario(workdir, *, linux_fails=False, deploy_marker=None):
    """linux/windows/mac builds, then an approval-gated deploy."""
    build = StageSpec(
        name="build",
        tasks=tuple(
            build_task(target, workdir, fail=(linux_fails and target == "linux"))
            for target in ("linux", "windows", "mac")
        ),
    )
    marker = deploy_marker or os.path.join(str(workdir), "deployed")
    deploy = StageSpec(
        name="deploy",
        tasks=(py_task("deploy-prod", f"open(r'{marker}', 'w').write('ok')", stage="deploy"),),
        dependencies=frozenset({"build"}),
        approval=True,
    )
    return build, deploy


def wait_until(predicate, timeout=10.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.05)
    return predicate()


def built_fanout(workdir, *targets):
    """A successful fan-out whose binaries are already on disk."""
    workdir.mkdir(parents=True, exist_ok=True)
    specs, results = {}, {}
    for target in targets:
        binary = workdir / "out" / target / "convoy"
        binary.parent.mkdir(parents=True, exist_ok=True)
        binary.write_text(f"binary for {target}")
        spec = build_task(target, workdir)
        specs[spec.task_id] = spec
        results[spec.task_id] = TaskResult(
            spec.task_id, TaskStatus.SUCCESS, "ok", 0, artifact_paths=(str(binary),)
        )
    return FanOutResult(specs, results)
