from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

LOG_TAIL_LINES = 200


@dataclass
class StageReport:
    name: str
    state: str
    failure_kind: Optional[str] = None
    error: Optional[str] = None
    best_effort: bool = False
    tasks: List[Dict[str, Any]] = field(default_factory=list)
    started_at: Optional[str] = None
    finished_at: Optional[str] = None


@dataclass
class PipelineReport:
    """
    Final (or current) picture of one run.

    Lists every stage with its state and failure kind, the logs of
    failed tasks, the artifacts and the run metrics.
    """

    run_id: str
    pipeline: str
    version: str
    status: str
    stages: List[StageReport]
    failed_task_logs: Dict[str, str] = field(default_factory=dict)
    artifacts: List[Dict[str, Any]] = field(default_factory=list)
    skipped_stages: List[str] = field(default_factory=list)
    release: Optional[Dict[str, Any]] = None
    release_error: Optional[str] = None
    metrics: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def counts(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for stage in self.stages:
            counts[stage.state] = counts.get(stage.state, 0) + 1
        return counts


def tail(log: str, lines: int = LOG_TAIL_LINES) -> str:
    parts = log.splitlines()
    if len(parts) <= lines:
        return log
    return "\n".join([f"... ({len(parts) - lines} earlier lines omitted)"] + parts[-lines:])
