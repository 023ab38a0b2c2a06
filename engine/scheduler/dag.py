from dataclasses import dataclass, field
from typing import FrozenSet, Mapping, Optional, Tuple


@dataclass(frozen=True, slots=True)
class ArtifactDeclaration:
    """
    What a build task promises to leave behind.

    `output_path` is relative to the task's working directory.
    """

    target: str
    output_path: str
    binary_name: str
    companions: Tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class TaskSpec:
    """
    Immutable execution descriptor.

    Describes WHAT the task is.
    Does NOT describe HOW it runs.
    Must NEVER be mutated.
    """

    task_id: str
    name: str
    stage: str
    command: Tuple[str, ...]
    timeout: float
    platform: Optional[str] = None
    working_dir: Optional[str] = None
    resource_class: str = "medium"
    cost_units: int = 2
    env: Mapping[str, str] = field(default_factory=dict, hash=False, compare=False)
    # execution env name -> source env name
    secrets: Mapping[str, str] = field(default_factory=dict, hash=False, compare=False)
    tolerate: Tuple[str, ...] = ()
    artifact: Optional[ArtifactDeclaration] = None


@dataclass(frozen=True, slots=True)
class StageSpec:
    """
    A named phase of the pipeline.

    Tasks inside a stage are independent; stages depend on stages.
    """

    name: str
    tasks: Tuple[TaskSpec, ...]
    dependencies: FrozenSet[str] = frozenset()
    approval: bool = False
    best_effort: bool = False
    description: Optional[str] = None
