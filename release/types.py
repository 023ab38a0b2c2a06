import threading
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple

from engine.scheduler.types import FailureKind, TaskStatus


# -------------------------------------------------
# Task execution result (canonical, in-memory)
# -------------------------------------------------

@dataclass(frozen=True)
class TaskResult:
    """
    Canonical outcome of a single task execution.

    `log` is always populated with whatever the command printed,
    including on success.
    """

    task_id: str
    status: TaskStatus
    log: str = ""
    exit_code: Optional[int] = None
    failure_kind: Optional[FailureKind] = None
    artifact_paths: Tuple[str, ...] = ()
    duration: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.status == TaskStatus.SUCCESS

    def summary(self) -> Dict[str, Any]:
        """JSON-safe view without the log."""
        return {
            "task_id": self.task_id,
            "status": self.status.value,
            "exit_code": self.exit_code,
            "failure_kind": self.failure_kind.value if self.failure_kind else None,
            "artifact_paths": list(self.artifact_paths),
            "duration": round(self.duration, 3),
        }


# -------------------------------------------------
# Artifact (one per target per run)
# -------------------------------------------------

@dataclass(frozen=True)
class Artifact:
    target: str
    version: str
    binary_path: str
    source_task: str
    location: Optional[str] = None
    archive_path: Optional[str] = None
    checksum: Optional[str] = None
    metadata_path: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "target": self.target,
            "version": self.version,
            "binary_path": self.binary_path,
            "source_task": self.source_task,
            "location": self.location,
            "archive_path": self.archive_path,
            "checksum": self.checksum,
            "metadata_path": self.metadata_path,
        }


# -------------------------------------------------
# Secrets & execution configuration
# -------------------------------------------------

class SecretTable(Mapping[str, str]):
    """
    Read-only table of named secrets.

    Values are never shown by repr/str and never serialized.
    """

    __slots__ = ("_values",)

    def __init__(self, values: Optional[Mapping[str, str]] = None):
        self._values: Mapping[str, str] = MappingProxyType(dict(values or {}))

    @classmethod
    def from_environment(
        cls,
        source_names: List[str],
        environ: Mapping[str, str],
    ) -> "SecretTable":
        """Pick the named source variables that are present in `environ`."""
        return cls({name: environ[name] for name in source_names if name in environ})

    def __getitem__(self, key: str) -> str:
        return self._values[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        return f"SecretTable(names={sorted(self._values)})"

    __str__ = __repr__


class CancellationToken:
    """One-shot cancellation signal shared by every executor of a run."""

    __slots__ = ("_event",)

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


@dataclass(frozen=True)
class ExecutionConfig:
    """
    Everything an executor may read besides the TaskSpec.

    Passed explicitly to each invocation; the executor never consults
    os.environ on its own.
    """

    base_env: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    secrets: SecretTable = field(default_factory=SecretTable)
    token: CancellationToken = field(default_factory=CancellationToken)
    cancel_grace: float = 10.0
