import threading
import time

import pytest

from engine.dispatch.coordinator import FanOutCoordinator
from engine.scheduler.registry import InFlightRegistry
from engine.scheduler.resources import ResourceBudget
from engine.scheduler.types import FailureKind, TaskStatus
from release.types import TaskResult
from tests.helpers import make_config, py_task


class RecordingExecutor:
    """Stands in for Executor; tracks how many tasks run at once."""

    def __init__(self, delay=0.05, fail=(), explode=()):
        self.registry = InFlightRegistry()
        self.delay = delay
        self.fail = set(fail)
        self.explode = set(explode)
        self.running = 0
        self.peak = 0
        self.cancelled = 0
        self._lock = threading.Lock()

    def run(self, spec, config):
        with self._lock:
            self.running += 1
            self.peak = max(self.peak, self.running)
        try:
            time.sleep(self.delay)
            if spec.name in self.explode:
                raise RuntimeError("executor bug")
            if spec.name in self.fail:
                return TaskResult(spec.task_id, TaskStatus.FAILURE, "boom", 1, FailureKind.COMMAND_FAILURE)
            return TaskResult(spec.task_id, TaskStatus.SUCCESS, "ok", 0)
        finally:
            with self._lock:
                self.running -= 1

    def cancel_all(self, grace=10.0):
        self.cancelled += 1
        return 0


def tasks(*names, cost_units=1):
    return [py_task(name, "", cost_units=cost_units) for name in names]


def test_one_result_per_task_in_input_order():
    coordinator = FanOutCoordinator(max_parallelism=3, executor=RecordingExecutor())
    specs = tasks("linux", "windows", "mac")

    try:
        fanout = coordinator.run_all(specs, make_config())
    finally:
        coordinator.shutdown()

    assert len(fanout) == 3
    assert list(fanout.results) == [s.task_id for s in specs]
    assert fanout.succeeded


def test_failure_fails_fanout_without_cancelling_siblings():
    executor = RecordingExecutor(fail={"linux"})
    coordinator = FanOutCoordinator(max_parallelism=3, executor=executor)
    seen = []

    try:
        fanout = coordinator.run_all(
            tasks("linux", "windows", "mac"),
            make_config(),
            on_result=lambda spec, result: seen.append(spec.name),
        )
    finally:
        coordinator.shutdown()

    assert not fanout.succeeded
    assert sorted(seen) == ["linux", "mac", "windows"]
    assert fanout.summary() == {
        "succeeded": ["windows", "mac"],
        "failed": [{"task": "linux", "status": "FAILURE", "failure_kind": "COMMAND_FAILURE"}],
    }
    assert coordinator.metrics.counters["tasks_succeeded_total"] == 2
    assert coordinator.metrics.counters["tasks_failure_total"] == 1


def test_worker_pool_bounds_parallelism():
    executor = RecordingExecutor(delay=0.1)
    coordinator = FanOutCoordinator(max_parallelism=2, budget=ResourceBudget(100), executor=executor)

    try:
        coordinator.run_all(tasks("a", "b", "c", "d", "e"), make_config())
    finally:
        coordinator.shutdown()

    assert executor.peak <= 2


def test_resource_budget_bounds_parallelism():
    executor = RecordingExecutor(delay=0.1)
    coordinator = FanOutCoordinator(max_parallelism=8, budget=ResourceBudget(4), executor=executor)

    try:
        coordinator.run_all(tasks("a", "b", "c", "d", cost_units=2), make_config())
    finally:
        coordinator.shutdown()

    assert executor.peak <= 2
    assert coordinator.budget.available == 4


def test_oversized_task_still_runs():
    coordinator = FanOutCoordinator(max_parallelism=2, budget=ResourceBudget(2), executor=RecordingExecutor())

    try:
        fanout = coordinator.run_all(tasks("huge", cost_units=16), make_config())
    finally:
        coordinator.shutdown()

    assert fanout.succeeded


def test_unexpected_executor_error_becomes_result():
    coordinator = FanOutCoordinator(max_parallelism=2, executor=RecordingExecutor(explode={"mac"}))

    try:
        fanout = coordinator.run_all(tasks("linux", "mac"), make_config())
    finally:
        coordinator.shutdown()

    mac = fanout.failed()[0]
    assert mac.status == TaskStatus.ERROR
    assert mac.failure_kind == FailureKind.EXECUTION_FAULT
    assert "executor bug" in mac.log


def test_duplicate_task_ids_are_rejected():
    coordinator = FanOutCoordinator(max_parallelism=1, executor=RecordingExecutor())
    spec = tasks("linux")[0]

    try:
        with pytest.raises(ValueError):
            coordinator.run_all([spec, spec], make_config())
    finally:
        coordinator.shutdown()


def test_cancel_releases_tasks_waiting_for_budget():
    executor = RecordingExecutor(delay=0.3)
    coordinator = FanOutCoordinator(max_parallelism=4, budget=ResourceBudget(1), executor=executor)
    config = make_config()

    timer = threading.Timer(0.1, coordinator.cancel, args=(config,))
    timer.start()
    try:
        fanout = coordinator.run_all(tasks("a", "b", "c"), config)
    finally:
        timer.cancel()
        coordinator.shutdown()

    kinds = [r.failure_kind for r in fanout.results.values()]
    assert kinds.count(FailureKind.CANCELLED) == 2
    assert executor.cancelled == 1


def test_zero_parallelism_is_invalid():
    with pytest.raises(ValueError):
        FanOutCoordinator(max_parallelism=0)
