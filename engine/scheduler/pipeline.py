# engine/scheduler/pipeline.py

import threading
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Set

from engine.dispatch.coordinator import FanOutCoordinator, FanOutResult
from engine.planner.dag_builder import PipelinePlan
from engine.scheduler.dag import StageSpec
from engine.scheduler.exceptions import UnknownGate
from engine.scheduler.report import PipelineReport, StageReport, tail
from engine.scheduler.state import ApprovalGate, StageRuntimeState
from engine.scheduler.types import FailureKind, GateState, PipelineStatus, StageState
from release.artifacts import ArtifactAggregator, ArtifactSet, DuplicateArtifact
from release.publisher import PublishError
from release.storage import ArtifactStorageError
from release.tools.utils import get_logger
from release.types import Artifact, ExecutionConfig

log = get_logger("pipeline")

ChangeCallback = Callable[["StagePipeline"], None]
Notifier = Callable[[PipelineReport], None]


class StagePipeline:
    """
    Authoritative stage state machine of one run.

    Owns:
    - stage FSM
    - DAG dependency resolution between stages
    - approval gates
    - the run's ArtifactSet
    - release publication and notification at the end

    Does NOT:
    - execute processes (FanOutCoordinator)
    - write bundles (ArtifactAggregator)
    - persist itself (on_change callback)
    """

    def __init__(
        self,
        plan: PipelinePlan,
        *,
        coordinator: FanOutCoordinator,
        aggregator: ArtifactAggregator,
        config: ExecutionConfig,
        publisher=None,
        notifier: Optional[Notifier] = None,
        on_change: Optional[ChangeCallback] = None,
    ):
        self.plan = plan
        self.coordinator = coordinator
        self.aggregator = aggregator
        self.config = config
        self.publisher = publisher
        self.notifier = notifier
        self.on_change = on_change
        self.metrics = coordinator.metrics

        # execution graph, topological order
        self.stages: Dict[str, StageSpec] = {s.name: s for s in plan.stages}
        self.runtime: Dict[str, StageRuntimeState] = {
            name: StageRuntimeState(name) for name in self.stages
        }
        self.gates: Dict[str, ApprovalGate] = {}
        self.artifacts = ArtifactSet()

        # DAG edges
        self.parents: Dict[str, Set[str]] = {}
        self.children: Dict[str, Set[str]] = {}
        for name, spec in self.stages.items():
            self.parents[name] = set(spec.dependencies)
            for parent in spec.dependencies:
                self.children.setdefault(parent, set()).add(name)

        self.release_record: Optional[dict] = None
        self.release_error: Optional[str] = None
        self.started_at: Optional[datetime] = None
        self.finished_at: Optional[datetime] = None

        self._cond = threading.Condition(threading.RLock())
        self._aggregate_lock = threading.Lock()
        self._threads: Dict[str, threading.Thread] = {}
        self._cancelled = False
        self._finalizing = False
        self._final_status: Optional[PipelineStatus] = None
        self._done = False

    @property
    def run_id(self) -> str:
        return self.plan.context.run_id

    # -------------------------
    # DRIVING
    # -------------------------

    def advance(self) -> PipelineStatus:
        """
        One non-blocking transition pass: promote stages whose
        dependencies are satisfied, open gates, start fan-outs.
        """
        with self._cond:
            if self.started_at is None:
                self.started_at = _utcnow()
                self.metrics.mark_time("pipeline_started")
                log.info(f"Run {self.run_id}: pipeline '{self.plan.name}' started")
            self._advance_locked()

        self._changed()
        self._maybe_finalize()
        return self.status

    def run(self, detach_on_approval: bool = False) -> PipelineStatus:
        """
        Drive the pipeline until it reaches a terminal status.

        With `detach_on_approval`, return AWAITING_APPROVAL as soon as
        nothing can progress without a human decision.
        """
        self.advance()
        with self._cond:
            while not self._done:
                if detach_on_approval and self._compute_status() == PipelineStatus.AWAITING_APPROVAL:
                    break
                self._cond.wait()
            else:
                return self._final_status

        # the caller may exit right away; record the open gates first
        self._changed()
        log.info(f"Run {self.run_id}: detaching, waiting for approval")
        return PipelineStatus.AWAITING_APPROVAL

    def wait(self, timeout: Optional[float] = None) -> bool:
        with self._cond:
            return self._cond.wait_for(lambda: self._done, timeout=timeout)

    @property
    def done(self) -> bool:
        with self._cond:
            return self._done

    @property
    def status(self) -> PipelineStatus:
        with self._cond:
            if self._final_status is not None:
                return self._final_status
            return self._compute_status()

    # -------------------------
    # APPROVALS
    # -------------------------

    def pending_approvals(self) -> List[ApprovalGate]:
        with self._cond:
            gates = [g for g in self.gates.values() if g.pending]
        return sorted(gates, key=lambda g: g.requested_at)

    def approve(self, stage: str, actor: str) -> ApprovalGate:
        """
        Raises:
            UnknownGate
            GateAlreadyResolved
        """
        with self._cond:
            gate = self._gate(stage)
            gate.approve(actor)
            self.runtime[stage].state = StageState.APPROVED
            self.metrics.inc("approvals_granted_total")
            log.info(f"Run {self.run_id}: stage '{stage}' approved by {actor}")
            self._advance_locked()

        self._changed()
        return gate

    def decline(self, stage: str, actor: str, reason: Optional[str] = None) -> ApprovalGate:
        """
        Raises:
            UnknownGate
            GateAlreadyResolved
        """
        with self._cond:
            gate = self._gate(stage)
            gate.abort(actor, reason)
            self.runtime[stage].finish(
                StageState.ABORTED,
                FailureKind.APPROVAL_ABORTED,
                reason or f"Declined by {actor}",
            )
            self.metrics.inc("approvals_declined_total")
            log.warning(f"Run {self.run_id}: stage '{stage}' declined by {actor}")
            self._block_descendants(stage)
            self._advance_locked()

        self._changed()
        self._maybe_finalize()
        return gate

    # -------------------------
    # CANCELLATION
    # -------------------------

    def cancel(self, reason: Optional[str] = None) -> PipelineStatus:
        """
        Stop the run: running stages end CANCELLED, open gates are
        aborted, succeeded stages and their artifacts are kept.
        """
        with self._cond:
            if self._cancelled or self._final_status is not None:
                return self.status
            self._cancelled = True
            log.warning(f"Run {self.run_id}: cancellation requested")

            for name, gate in self.gates.items():
                if gate.pending:
                    gate.abort("system", reason or "Run cancelled")
                    self.runtime[name].finish(
                        StageState.ABORTED,
                        FailureKind.CANCELLED,
                        "Run cancelled while awaiting approval",
                    )
            self._cond.notify_all()

        self.coordinator.cancel(self.config)
        self._changed()
        self._maybe_finalize()
        return self.status

    # -------------------------
    # RESUME
    # -------------------------

    def restore(
        self,
        stages: Mapping[str, Mapping],
        gates: Iterable[Mapping] = (),
        artifacts: Iterable[Artifact] = (),
    ) -> None:
        """
        Seed state from an earlier attempt of the same pipeline.

        SUCCEEDED stages, open or resolved gates and declined stages keep
        their outcome; every other stage runs again.
        """
        with self._cond:
            if self.started_at is not None:
                raise RuntimeError("Cannot restore a pipeline that already started")

            recorded_gates = {g["stage"]: ApprovalGate.from_dict(dict(g)) for g in gates}
            declined = []

            for name, record in stages.items():
                if name not in self.runtime:
                    log.warning(f"Run {self.run_id}: stage '{name}' no longer in the pipeline")
                    continue

                rt = self.runtime[name]
                state = StageState(record["state"])
                kind = FailureKind(record["failure_kind"]) if record.get("failure_kind") else None
                gate = recorded_gates.get(name)

                if state == StageState.SUCCEEDED:
                    rt.state = state
                    if gate is not None:
                        self.gates[name] = gate
                elif state == StageState.ABORTED and kind == FailureKind.APPROVAL_ABORTED:
                    rt.finish(state, kind, record.get("error"))
                    if gate is not None:
                        self.gates[name] = gate
                    declined.append(name)
                elif gate is not None and gate.state == GateState.PENDING:
                    rt.state = StageState.AWAITING_APPROVAL
                    self.gates[name] = gate
                elif gate is not None and gate.state == GateState.APPROVED:
                    rt.state = StageState.APPROVED
                    self.gates[name] = gate

            self.artifacts.add_all(list(artifacts))
            for name in declined:
                self._block_descendants(name)

    # -------------------------
    # REPORTING
    # -------------------------

    def snapshot(self) -> dict:
        """JSON-safe view of the current state, used by the run store."""
        with self._cond:
            return {
                "status": self.status.value,
                "stages": {
                    name: {
                        "state": rt.state.value,
                        "failure_kind": rt.failure_kind.value if rt.failure_kind else None,
                        "error": rt.error,
                        "started_at": _iso(rt.started_at),
                        "finished_at": _iso(rt.finished_at),
                        "tasks": self._task_summaries(rt.fanout),
                    }
                    for name, rt in self.runtime.items()
                },
                "gates": [g.to_dict() for g in self.gates.values()],
                "artifacts": [a.to_dict() for a in self.artifacts],
                "release": self.release_record,
                "release_error": self.release_error,
            }

    def report(self) -> PipelineReport:
        with self._cond:
            stages = []
            failed_logs: Dict[str, str] = {}
            for name, rt in self.runtime.items():
                stages.append(StageReport(
                    name=name,
                    state=rt.state.value,
                    failure_kind=rt.failure_kind.value if rt.failure_kind else None,
                    error=rt.error,
                    best_effort=self.stages[name].best_effort,
                    tasks=self._task_summaries(rt.fanout),
                    started_at=_iso(rt.started_at),
                    finished_at=_iso(rt.finished_at),
                ))
                if rt.fanout is not None:
                    for result in rt.fanout.failed():
                        task_name = rt.fanout.specs[result.task_id].name
                        failed_logs[f"{name}/{task_name}"] = tail(result.log)

            return PipelineReport(
                run_id=self.run_id,
                pipeline=self.plan.name,
                version=self.plan.context.version,
                status=self.status.value,
                stages=stages,
                failed_task_logs=failed_logs,
                artifacts=[a.to_dict() for a in self.artifacts],
                skipped_stages=list(self.plan.skipped_stages),
                release=self.release_record,
                release_error=self.release_error,
                metrics=self.metrics.snapshot(),
            )

    # -------------------------
    # FSM INTERNALS (hold self._cond)
    # -------------------------

    def _advance_locked(self) -> None:
        if self._cancelled or self._final_status is not None or self.started_at is None:
            return

        for name, rt in self.runtime.items():
            if rt.state == StageState.PENDING and self._dependencies_satisfied(name):
                rt.state = StageState.READY
                self.metrics.inc("stages_ready_total")

            if rt.state == StageState.READY:
                if self.stages[name].approval:
                    rt.state = StageState.AWAITING_APPROVAL
                    self.gates[name] = ApprovalGate(name)
                    self.metrics.inc("approvals_requested_total")
                    log.info(f"Run {self.run_id}: stage '{name}' awaiting approval")
                else:
                    self._start(name)
            elif rt.state == StageState.APPROVED:
                self._start(name)

        self._cond.notify_all()

    def _dependencies_satisfied(self, name: str) -> bool:
        for parent in self.parents[name]:
            state = self.runtime[parent].state
            if state == StageState.SUCCEEDED:
                continue
            if state == StageState.FAILED and self.stages[parent].best_effort:
                continue
            return False
        return True

    def _block_descendants(self, name: str) -> None:
        for child in sorted(self.children.get(name, ())):
            rt = self.runtime[child]
            if rt.state in (StageState.PENDING, StageState.READY):
                rt.finish(
                    StageState.BLOCKED,
                    FailureKind.DEPENDENCY_UNMET,
                    f"Dependency '{name}' did not succeed",
                )
                self.metrics.inc("stages_blocked_total")
                self._block_descendants(child)

    def _start(self, name: str) -> None:
        rt = self.runtime[name]
        rt.state = StageState.RUNNING
        rt.started_at = _utcnow()
        self.metrics.inc("stages_started_total")

        thread = threading.Thread(
            target=self._execute_stage,
            args=(name,),
            name=f"convoy-stage-{name}",
            daemon=True,
        )
        self._threads[name] = thread
        thread.start()

    def _compute_status(self) -> PipelineStatus:
        states = [rt.state for rt in self.runtime.values()]

        if self._finalizing or StageState.RUNNING in states:
            return PipelineStatus.RUNNING
        if self._cancelled:
            return PipelineStatus.CANCELLED
        if self.started_at is None:
            return PipelineStatus.PENDING
        if StageState.AWAITING_APPROVAL in states and not (
            StageState.READY in states or StageState.APPROVED in states
        ):
            return PipelineStatus.AWAITING_APPROVAL
        return PipelineStatus.RUNNING

    def _outcome(self) -> PipelineStatus:
        if self._cancelled:
            return PipelineStatus.CANCELLED
        for name, rt in self.runtime.items():
            if rt.state != StageState.SUCCEEDED and not self.stages[name].best_effort:
                return PipelineStatus.FAILED
        return PipelineStatus.SUCCEEDED

    def _gate(self, stage: str) -> ApprovalGate:
        gate = self.gates.get(stage)
        if gate is None:
            raise UnknownGate(f"No approval gate for stage '{stage}' in run {self.run_id}")
        return gate

    @staticmethod
    def _task_summaries(fanout: Optional[FanOutResult]) -> List[dict]:
        if fanout is None:
            return []
        return [
            {"name": fanout.specs[task_id].name, **result.summary()}
            for task_id, result in fanout.results.items()
        ]

    # -------------------------
    # STAGE WORKER
    # -------------------------

    def _execute_stage(self, name: str) -> None:
        spec = self.stages[name]
        log.info(f"Run {self.run_id}: stage '{name}' running {len(spec.tasks)} task(s)")

        try:
            fanout = self.coordinator.run_all(spec.tasks, self.config)
        except Exception as exc:
            log.exception(f"Stage '{name}' could not be dispatched")
            self._finish_stage(name, StageState.FAILED, FailureKind.EXECUTION_FAULT, str(exc))
            return

        with self._cond:
            self.runtime[name].fanout = fanout

        if not fanout.succeeded:
            if self.config.token.cancelled:
                self._finish_stage(name, StageState.CANCELLED, FailureKind.CANCELLED, "Run cancelled")
                return
            failed = fanout.failed()
            kind = next(
                (r.failure_kind for r in failed if r.failure_kind != FailureKind.CANCELLED),
                failed[0].failure_kind,
            )
            names = ", ".join(fanout.specs[r.task_id].name for r in failed)
            self._finish_stage(name, StageState.FAILED, kind, f"Failed task(s): {names}")
            return

        try:
            with self._aggregate_lock:
                produced = self.aggregator.aggregate(fanout, existing=self.artifacts)
                self.artifacts.add_all(produced.to_list())
        except DuplicateArtifact as exc:
            self._finish_stage(name, StageState.FAILED, FailureKind.DUPLICATE_ARTIFACT, str(exc))
        except ArtifactStorageError as exc:
            log.error(f"Stage '{name}' artifact storage failed: {exc}")
            self._finish_stage(name, StageState.FAILED, FailureKind.EXECUTION_FAULT, str(exc))
        else:
            self._finish_stage(name, StageState.SUCCEEDED)

    def _finish_stage(
        self,
        name: str,
        state: StageState,
        kind: Optional[FailureKind] = None,
        error: Optional[str] = None,
    ) -> None:
        with self._cond:
            rt = self.runtime[name]
            rt.finish(state, kind, error)
            self.metrics.inc(f"stages_{state.value.lower()}_total")

            if state == StageState.SUCCEEDED:
                log.info(f"Run {self.run_id}: stage '{name}' succeeded")
            elif state == StageState.FAILED and self.stages[name].best_effort:
                log.warning(f"Run {self.run_id}: best-effort stage '{name}' failed ({kind.value})")
            else:
                log.error(f"Run {self.run_id}: stage '{name}' {state.value} ({kind.value})")
                if state == StageState.FAILED:
                    self._block_descendants(name)

            self._advance_locked()

        self._changed()
        self._maybe_finalize()

    # -------------------------
    # FINALISATION
    # -------------------------

    def _maybe_finalize(self) -> None:
        with self._cond:
            if self._finalizing or self._final_status is not None:
                return
            states = [rt.state for rt in self.runtime.values()]
            if StageState.RUNNING in states:
                return
            if not self._cancelled and not all(s.is_terminal for s in states):
                return
            self._finalizing = True
            outcome = self._outcome()
            self.artifacts.freeze()

        if outcome == PipelineStatus.SUCCEEDED and self.publisher is not None:
            try:
                self.release_record = self.publisher.publish(
                    self.artifacts, self.plan.context, self.config
                )
            except PublishError as exc:
                log.error(f"Run {self.run_id}: release failed: {exc}")
                self.release_error = str(exc)
                outcome = PipelineStatus.FAILED

        with self._cond:
            # cancel() landed while the release command was running
            if self._cancelled and outcome == PipelineStatus.FAILED and self.release_error:
                outcome = PipelineStatus.CANCELLED
            self._final_status = outcome
            self._finalizing = False
            self.finished_at = _utcnow()
            self.metrics.observe(
                "pipeline_duration_seconds", self.metrics.elapsed_since("pipeline_started")
            )
            log.info(f"Run {self.run_id}: pipeline finished {outcome.value}")

        if self.notifier is not None:
            self.notifier(self.report())
        self._changed()

        with self._cond:
            self._done = True
            self._cond.notify_all()

    def _changed(self) -> None:
        if self.on_change is None:
            return
        try:
            self.on_change(self)
        except Exception:
            log.exception(f"Run {self.run_id}: failed to record state change")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None
