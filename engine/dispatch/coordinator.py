# engine/dispatch/coordinator.py

"""
Fan-out coordinator for Convoy.

Responsibilities:
- Run a set of independent tasks concurrently
- Respect the worker pool size and the resource budget
- Collect exactly one TaskResult per input task
- Never cancel siblings because one task failed

Does NOT:
- decide stage transitions
- touch artifacts
"""

from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from typing import Callable, Dict, Iterable, List, Optional

from engine.scheduler.dag import TaskSpec
from engine.scheduler.metrics import SchedulerMetrics
from engine.scheduler.resources import ResourceBudget
from engine.scheduler.types import FailureKind, TaskStatus
from release.executor import Executor
from release.tools.utils import get_logger
from release.types import ExecutionConfig, TaskResult

log = get_logger("coordinator")

ResultCallback = Callable[[TaskSpec, TaskResult], None]


class FanOutResult:
    """
    Results of one fan-out, keyed by task id in input order.
    """

    __slots__ = ("specs", "results")

    def __init__(self, specs: Dict[str, TaskSpec], results: Dict[str, TaskResult]):
        self.specs = specs
        self.results = results

    @property
    def succeeded(self) -> bool:
        return all(r.succeeded for r in self.results.values())

    def failed(self) -> List[TaskResult]:
        return [r for r in self.results.values() if not r.succeeded]

    def summary(self) -> Dict[str, list]:
        """
        Diagnostic summary listing every task; failures carry their kind.
        """
        succeeded, failed = [], []
        for task_id, result in self.results.items():
            name = self.specs[task_id].name
            if result.succeeded:
                succeeded.append(name)
            else:
                failed.append({
                    "task": name,
                    "status": result.status.value,
                    "failure_kind": result.failure_kind.value if result.failure_kind else None,
                })
        return {"succeeded": succeeded, "failed": failed}

    def __len__(self) -> int:
        return len(self.results)


class FanOutCoordinator:
    """
    Owns the bounded worker pool of one pipeline run.

    Several stages may call `run_all` at the same time; they share
    the pool and the budget.
    """

    def __init__(
        self,
        *,
        max_parallelism: int,
        budget: Optional[ResourceBudget] = None,
        executor: Optional[Executor] = None,
        metrics: Optional[SchedulerMetrics] = None,
    ):
        if max_parallelism < 1:
            raise ValueError("max_parallelism must be >= 1")

        self.max_parallelism = max_parallelism
        self.budget = budget or ResourceBudget(max_parallelism * 4)
        self.executor = executor or Executor()
        self.metrics = metrics or SchedulerMetrics()
        self._pool = ThreadPoolExecutor(
            max_workers=max_parallelism,
            thread_name_prefix="convoy-task",
        )

    # -------------------------
    # PUBLIC ENTRYPOINT
    # -------------------------

    def run_all(
        self,
        tasks: Iterable[TaskSpec],
        config: ExecutionConfig,
        on_result: Optional[ResultCallback] = None,
    ) -> FanOutResult:
        specs: Dict[str, TaskSpec] = {}
        for spec in tasks:
            if spec.task_id in specs:
                raise ValueError(f"Duplicate task_id in fan-out: {spec.task_id}")
            specs[spec.task_id] = spec

        collected: Dict[str, TaskResult] = {}
        futures: Dict[Future, TaskSpec] = {
            self._pool.submit(self._run_one, spec, config): spec
            for spec in specs.values()
        }

        for future in as_completed(futures):
            spec = futures[future]
            try:
                result = future.result()
            except Exception as exc:
                log.exception(f"Unexpected error while running {spec.name}")
                result = TaskResult(
                    task_id=spec.task_id,
                    status=TaskStatus.ERROR,
                    log=f"Internal error: {exc}",
                    failure_kind=FailureKind.EXECUTION_FAULT,
                )

            collected[spec.task_id] = result
            self._record(spec, result)
            if on_result is not None:
                on_result(spec, result)

        # input order, every task present
        return FanOutResult(specs, {task_id: collected[task_id] for task_id in specs})

    def cancel(self, config: ExecutionConfig) -> None:
        """
        Propagate cancellation to queued and running tasks.
        """
        config.token.cancel()
        self.budget.wake_all()
        self.executor.cancel_all(grace=config.cancel_grace)

    def shutdown(self) -> None:
        self._pool.shutdown(wait=True)

    # -------------------------
    # INTERNAL
    # -------------------------

    def _run_one(self, spec: TaskSpec, config: ExecutionConfig) -> TaskResult:
        units = self.budget.clamp(spec.cost_units)

        if not self.budget.acquire(units, config.token):
            return TaskResult(
                task_id=spec.task_id,
                status=TaskStatus.ERROR,
                log="Cancelled while waiting for resources.",
                failure_kind=FailureKind.CANCELLED,
            )

        self.metrics.inc("tasks_started_total")
        self.metrics.set_gauge("in_flight_tasks", len(self.executor.registry) + 1)
        try:
            return self.executor.run(spec, config)
        finally:
            self.budget.release(units)

    def _record(self, spec: TaskSpec, result: TaskResult) -> None:
        self.metrics.observe("task_duration_seconds", result.duration)
        if result.succeeded:
            self.metrics.inc("tasks_succeeded_total")
        else:
            self.metrics.inc(f"tasks_{result.status.value.lower()}_total")
            log.warning(
                f"[{spec.name}] finished {result.status.value}"
                f" ({result.failure_kind.value if result.failure_kind else '-'})"
            )
