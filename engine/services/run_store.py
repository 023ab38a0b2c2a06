# engine/services/run_store.py

"""
On-disk run snapshots.

One JSON document per run under STATE_DIR. Snapshots are the only
persisted form of a run: runtime state objects are rebuilt from them on
resume and never serialized directly. Secret values never appear here.
"""

import os
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import pydantic

from engine.planner.context import RunContext
from engine.scheduler.exceptions import GateAlreadyResolved, UnknownGate
from engine.scheduler.types import FailureKind, GateState, PipelineStatus, StageState
from release.tools.utils import ensure_dir, get_logger

log = get_logger("run_store")


class RunNotFound(Exception):
    pass


class RunActive(Exception):
    """The run is executing in some process; its record cannot be cancelled from outside."""


class StageRecord(pydantic.BaseModel):
    state: StageState
    failure_kind: Optional[FailureKind] = None
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    tasks: List[Dict[str, Any]] = []


class GateRecord(pydantic.BaseModel):
    stage: str
    state: GateState = GateState.PENDING
    actor: Optional[str] = None
    reason: Optional[str] = None
    requested_at: datetime
    resolved_at: Optional[datetime] = None


class RunSnapshot(pydantic.BaseModel):
    run_id: str
    pipeline: str
    definition_path: Optional[str] = None
    context: RunContext
    status: PipelineStatus
    stages: Dict[str, StageRecord] = {}
    gates: List[GateRecord] = []
    artifacts: List[Dict[str, Any]] = []
    skipped_stages: List[str] = []
    release: Optional[Dict[str, Any]] = None
    release_error: Optional[str] = None
    updated_at: datetime = pydantic.Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def terminal(self) -> bool:
        return self.status in (
            PipelineStatus.SUCCEEDED,
            PipelineStatus.FAILED,
            PipelineStatus.CANCELLED,
        )

    def pending_gates(self) -> List[GateRecord]:
        return [g for g in self.gates if g.state == GateState.PENDING]


def snapshot_pipeline(pipeline) -> RunSnapshot:
    plan = pipeline.plan
    return RunSnapshot(
        run_id=plan.context.run_id,
        pipeline=plan.name,
        definition_path=plan.definition_path,
        context=plan.context,
        skipped_stages=list(plan.skipped_stages),
        **pipeline.snapshot(),
    )


class RunStore:
    def __init__(self, root: Path):
        self.root = Path(root)
        self._lock = threading.Lock()

    def path_for(self, run_id: str) -> Path:
        if not run_id or "/" in run_id or "\\" in run_id or run_id.startswith("."):
            raise RunNotFound(run_id)
        return self.root / f"{run_id}.json"

    def save(self, snapshot: RunSnapshot) -> Path:
        path = self.path_for(snapshot.run_id)
        data = snapshot.model_dump_json(indent=2)
        with self._lock:
            ensure_dir(self.root)
            tmp = path.with_suffix(".json.tmp")
            with tmp.open("w", encoding="utf-8") as f:
                f.write(data)
            os.replace(tmp, path)
        return path

    def load(self, run_id: str) -> RunSnapshot:
        path = self.path_for(run_id)
        try:
            with path.open("r", encoding="utf-8") as f:
                return RunSnapshot.model_validate_json(f.read())
        except FileNotFoundError:
            raise RunNotFound(run_id) from None

    def exists(self, run_id: str) -> bool:
        try:
            return self.path_for(run_id).is_file()
        except RunNotFound:
            return False

    def list(self) -> List[RunSnapshot]:
        if not self.root.is_dir():
            return []
        snapshots = []
        for path in self.root.glob("*.json"):
            try:
                snapshots.append(self.load(path.stem))
            except (RunNotFound, pydantic.ValidationError) as exc:
                log.warning(f"Skipping unreadable run snapshot {path.name}: {exc}")
        return sorted(snapshots, key=lambda s: s.updated_at, reverse=True)

    def resolve_gate(
        self,
        run_id: str,
        stage: str,
        *,
        actor: str,
        approve: bool,
        reason: Optional[str] = None,
    ) -> RunSnapshot:
        """
        Record an approval decision for a detached run.

        The decision takes effect when the run is resumed.

        Raises:
            RunNotFound
            UnknownGate
            GateAlreadyResolved
        """
        snapshot = self.load(run_id)

        gate = next((g for g in snapshot.gates if g.stage == stage), None)
        if gate is None:
            raise UnknownGate(f"No approval gate for stage '{stage}' in run {run_id}")
        if gate.state != GateState.PENDING:
            raise GateAlreadyResolved(
                f"Gate for '{stage}' already {gate.state.value.lower()} by {gate.actor}"
            )

        now = datetime.now(timezone.utc)
        gate.actor = actor
        gate.reason = reason
        gate.resolved_at = now

        record = snapshot.stages.get(stage)
        if approve:
            gate.state = GateState.APPROVED
            if record is not None:
                record.state = StageState.APPROVED
        else:
            gate.state = GateState.ABORTED
            if record is not None:
                record.state = StageState.ABORTED
                record.failure_kind = FailureKind.APPROVAL_ABORTED
                record.error = reason or f"Declined by {actor}"
                record.finished_at = now

        snapshot.updated_at = now
        self.save(snapshot)
        log.info(f"Run {run_id}: gate '{stage}' {gate.state.value.lower()} by {actor}")
        return snapshot

    def mark_cancelled(self, run_id: str, *, actor: str) -> RunSnapshot:
        """
        Cancel a detached run: open gates are aborted, finished stages
        and their artifacts are kept.

        Raises:
            RunNotFound
            RunActive: the run is executing, not parked at a gate
        """
        snapshot = self.load(run_id)
        if snapshot.terminal:
            return snapshot
        if snapshot.status != PipelineStatus.AWAITING_APPROVAL:
            raise RunActive(
                f"Run {run_id} is {snapshot.status.value}; cancel it in the process running it"
            )

        now = datetime.now(timezone.utc)
        for gate in snapshot.pending_gates():
            gate.state = GateState.ABORTED
            gate.actor = actor
            gate.reason = "Run cancelled"
            gate.resolved_at = now
            record = snapshot.stages.get(gate.stage)
            if record is not None:
                record.state = StageState.ABORTED
                record.failure_kind = FailureKind.CANCELLED
                record.error = "Run cancelled while awaiting approval"
                record.finished_at = now

        snapshot.status = PipelineStatus.CANCELLED
        snapshot.updated_at = now
        self.save(snapshot)
        log.warning(f"Run {run_id}: cancelled by {actor}")
        return snapshot
