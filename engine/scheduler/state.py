from datetime import datetime, timezone
from typing import Optional

from engine.dispatch.coordinator import FanOutResult
from engine.scheduler.exceptions import GateAlreadyResolved
from engine.scheduler.types import FailureKind, GateState, StageState


class NonPersistent:
    """
    Marker mixin.
    Any subclass must NEVER be persisted or serialized.
    """
    __persistent__ = False


class StageRuntimeState(NonPersistent):
    """
    Pipeline-owned runtime state of one stage.

    Represents HOW a stage is progressing.
    Exists only in memory; the run store keeps its own snapshot.
    """

    __slots__ = (
        "name",
        "state",
        "failure_kind",
        "error",
        "fanout",
        "started_at",
        "finished_at",
    )

    def __init__(self, name: str):
        self.name: str = name
        self.state: StageState = StageState.PENDING
        self.failure_kind: Optional[FailureKind] = None
        self.error: Optional[str] = None
        self.fanout: Optional[FanOutResult] = None
        self.started_at: Optional[datetime] = None
        self.finished_at: Optional[datetime] = None

    def finish(
        self,
        state: StageState,
        kind: Optional[FailureKind] = None,
        error: Optional[str] = None,
    ) -> None:
        self.state = state
        self.failure_kind = kind
        self.error = error
        self.finished_at = _utcnow()


class ApprovalGate(NonPersistent):
    """
    Human decision point in front of a stage.

    Resolves exactly once, to APPROVED or ABORTED.
    """

    __slots__ = (
        "stage",
        "state",
        "actor",
        "reason",
        "requested_at",
        "resolved_at",
    )

    def __init__(self, stage: str, requested_at: Optional[datetime] = None):
        self.stage: str = stage
        self.state: GateState = GateState.PENDING
        self.actor: Optional[str] = None
        self.reason: Optional[str] = None
        self.requested_at: datetime = requested_at or _utcnow()
        self.resolved_at: Optional[datetime] = None

    @property
    def pending(self) -> bool:
        return self.state == GateState.PENDING

    def approve(self, actor: str) -> None:
        self._resolve(GateState.APPROVED, actor, None)

    def abort(self, actor: str, reason: Optional[str] = None) -> None:
        self._resolve(GateState.ABORTED, actor, reason)

    def _resolve(self, state: GateState, actor: str, reason: Optional[str]) -> None:
        if not self.pending:
            raise GateAlreadyResolved(
                f"Gate for '{self.stage}' already {self.state.value.lower()} by {self.actor}"
            )
        self.state = state
        self.actor = actor
        self.reason = reason
        self.resolved_at = _utcnow()

    @classmethod
    def from_dict(cls, data: dict) -> "ApprovalGate":
        gate = cls(data["stage"], requested_at=_parse(data.get("requested_at")))
        gate.state = GateState(data.get("state", GateState.PENDING.value))
        gate.actor = data.get("actor")
        gate.reason = data.get("reason")
        gate.resolved_at = _parse(data.get("resolved_at"))
        return gate

    def to_dict(self) -> dict:
        return {
            "stage": self.stage,
            "state": self.state.value,
            "actor": self.actor,
            "reason": self.reason,
            "requested_at": self.requested_at.isoformat(),
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
        }


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None
