from fastapi import APIRouter, Depends, HTTPException, status
from typing import List

from app.core.security import get_current_operator
from app.models.run import (
    ApprovalDecision,
    Operator,
    RunCreate,
    RunStarted,
    RunSummary,
)
from engine.scheduler.exceptions import GateAlreadyResolved, UnknownGate
from engine.services.run_store import GateRecord, RunActive, RunNotFound, RunSnapshot, snapshot_pipeline
from engine.services.run_submitter import RunSubmissionError
from engine.services.runtime import RunRegistry, get_runtime
from release.tools.utils import get_logger

log = get_logger("api.runs")

router = APIRouter()


def _load(registry: RunRegistry, run_id: str) -> RunSnapshot:
    pipeline = registry.get(run_id)
    if pipeline is not None:
        return snapshot_pipeline(pipeline)
    try:
        return registry.store.load(run_id)
    except RunNotFound:
        raise HTTPException(status_code=404, detail="Run not found")


@router.post("/", response_model=RunStarted, status_code=status.HTTP_202_ACCEPTED)
def start_a_run(
    run_in: RunCreate,
    operator: Operator = Depends(get_current_operator),
    registry: RunRegistry = Depends(get_runtime),
):
    log.info(f"Operator '{operator.name}' requested a run of {run_in.definition_path}")
    try:
        pipeline = registry.start(
            run_in.definition_path,
            version=run_in.version,
            branch=run_in.branch,
            environment=run_in.environment,
            revision=run_in.revision,
        )
    except RunSubmissionError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return RunStarted(run_id=pipeline.run_id, status=pipeline.status)


@router.get("/", response_model=List[RunSummary])
def get_run_history(
    operator: Operator = Depends(get_current_operator),
    registry: RunRegistry = Depends(get_runtime),
    limit: int = 100,
):
    return [
        RunSummary(
            run_id=snap.run_id,
            pipeline=snap.pipeline,
            version=snap.context.version,
            branch=snap.context.branch,
            status=snap.status,
            updated_at=snap.updated_at,
        )
        for snap in registry.store.list()[:limit]
    ]


@router.get("/{run_id}", response_model=RunSnapshot)
def get_run(
    run_id: str,
    operator: Operator = Depends(get_current_operator),
    registry: RunRegistry = Depends(get_runtime),
):
    return _load(registry, run_id)


@router.get("/{run_id}/approvals", response_model=List[GateRecord])
def get_pending_approvals(
    run_id: str,
    operator: Operator = Depends(get_current_operator),
    registry: RunRegistry = Depends(get_runtime),
):
    return _load(registry, run_id).pending_gates()


@router.post("/{run_id}/approvals/{stage}", response_model=GateRecord)
def resolve_approval(
    run_id: str,
    stage: str,
    decision: ApprovalDecision,
    operator: Operator = Depends(get_current_operator),
    registry: RunRegistry = Depends(get_runtime),
):
    """
    Approve or decline the gate in front of `stage`.

    A detached run records the decision and is resumed in this process.
    """
    pipeline = registry.get(run_id)
    try:
        if pipeline is not None and not pipeline.done:
            if decision.approve:
                gate = pipeline.approve(stage, operator.name)
            else:
                gate = pipeline.decline(stage, operator.name, decision.reason)
            return GateRecord.model_validate(gate.to_dict())

        snapshot = registry.store.resolve_gate(
            run_id, stage, actor=operator.name, approve=decision.approve, reason=decision.reason
        )
    except RunNotFound:
        raise HTTPException(status_code=404, detail="Run not found")
    except UnknownGate as e:
        raise HTTPException(status_code=404, detail=str(e))
    except GateAlreadyResolved as e:
        raise HTTPException(status_code=409, detail=str(e))

    try:
        registry.resume(run_id)
    except RunSubmissionError as e:
        raise HTTPException(status_code=409, detail=f"Decision recorded but resume failed: {e}")

    return next(g for g in snapshot.gates if g.stage == stage)


@router.post("/{run_id}/resume", response_model=RunStarted, status_code=status.HTTP_202_ACCEPTED)
def resume_run(
    run_id: str,
    operator: Operator = Depends(get_current_operator),
    registry: RunRegistry = Depends(get_runtime),
):
    try:
        pipeline = registry.resume(run_id)
    except RunNotFound:
        raise HTTPException(status_code=404, detail="Run not found")
    except RunSubmissionError as e:
        raise HTTPException(status_code=409, detail=str(e))

    log.info(f"Operator '{operator.name}' resumed run {run_id}")
    return RunStarted(run_id=run_id, status=pipeline.status, message="Run resumed.")


@router.post("/{run_id}/cancel", response_model=RunSnapshot)
def cancel_run(
    run_id: str,
    operator: Operator = Depends(get_current_operator),
    registry: RunRegistry = Depends(get_runtime),
):
    pipeline = registry.get(run_id)
    if pipeline is not None and not pipeline.done:
        log.warning(f"Operator '{operator.name}' cancelled run {run_id}")
        pipeline.cancel(f"Cancelled by {operator.name}")
        return snapshot_pipeline(pipeline)

    # detached: nothing runs in this process, only the record changes
    snapshot = _load(registry, run_id)
    if snapshot.terminal:
        raise HTTPException(status_code=409, detail="Run is not active")
    try:
        return registry.store.mark_cancelled(run_id, actor=operator.name)
    except RunActive as e:
        raise HTTPException(status_code=409, detail=str(e))
