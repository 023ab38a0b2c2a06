from enum import Enum


class StageState(str, Enum):
    """
    Finite-state machine for stage execution.

    PENDING -> READY -> RUNNING -> SUCCEEDED | FAILED
    READY -> AWAITING_APPROVAL -> APPROVED | ABORTED
    APPROVED -> RUNNING
    """

    PENDING = "PENDING"
    READY = "READY"
    AWAITING_APPROVAL = "AWAITING_APPROVAL"
    APPROVED = "APPROVED"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    ABORTED = "ABORTED"
    BLOCKED = "BLOCKED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STAGE_STATES


TERMINAL_STAGE_STATES = frozenset({
    StageState.SUCCEEDED,
    StageState.FAILED,
    StageState.ABORTED,
    StageState.BLOCKED,
    StageState.CANCELLED,
})


class TaskStatus(str, Enum):
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"
    TIMEOUT = "TIMEOUT"
    ERROR = "ERROR"


class FailureKind(str, Enum):
    """Error taxonomy surfaced in every report."""

    COMMAND_FAILURE = "COMMAND_FAILURE"
    EXECUTION_FAULT = "EXECUTION_FAULT"
    TIMEOUT = "TIMEOUT"
    DUPLICATE_ARTIFACT = "DUPLICATE_ARTIFACT"
    DEPENDENCY_UNMET = "DEPENDENCY_UNMET"
    APPROVAL_ABORTED = "APPROVAL_ABORTED"
    CANCELLED = "CANCELLED"


class GateState(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    ABORTED = "ABORTED"


class PipelineStatus(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    AWAITING_APPROVAL = "AWAITING_APPROVAL"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
