# engine/planner/definition.py

"""
Pipeline definition file models.

Definitions are YAML or JSON documents validated with pydantic.
They describe stages and task templates; `dag_builder` turns them
into immutable StageSpecs for one run.
"""

import json
import re
from pathlib import Path
from typing import Dict, List, Optional, Union

import pydantic
import yaml

from engine.planner.exceptions import InvalidPipelineDefinition


class BranchFilter(pydantic.BaseModel):
    """
    `only` / `ignore` lists of branch names or `/regex/` patterns.
    """

    only: List[str] = []
    ignore: List[str] = []

    model_config = pydantic.ConfigDict(extra="forbid")

    @staticmethod
    def _match(pattern: str, branch: str) -> bool:
        if len(pattern) > 1 and pattern.startswith("/") and pattern.endswith("/"):
            return re.fullmatch(pattern[1:-1], branch) is not None
        return pattern == branch

    def allows(self, branch: str) -> bool:
        if self.only and not any(self._match(p, branch) for p in self.only):
            return False
        return not any(self._match(p, branch) for p in self.ignore)


class ArtifactConfig(pydantic.BaseModel):
    target: str
    path: str
    binary: str
    companions: List[str] = []

    model_config = pydantic.ConfigDict(extra="forbid")


class TaskConfig(pydantic.BaseModel):
    name: str
    command: List[str] = pydantic.Field(min_length=1)
    platform: Optional[str] = None
    working_dir: Optional[str] = None
    resource_class: Optional[str] = None
    timeout: Optional[float] = pydantic.Field(default=None, gt=0)
    env: Dict[str, str] = {}
    # execution env name -> source env var name
    secrets: Dict[str, str] = {}
    params: Dict[str, str] = {}
    matrix: Dict[str, List[str]] = {}
    tolerate: List[str] = []
    when: Dict[str, Union[str, List[str]]] = {}
    artifact: Optional[ArtifactConfig] = None

    model_config = pydantic.ConfigDict(extra="forbid")

    @pydantic.field_validator("matrix")
    @classmethod
    def matrix_values_not_empty(cls, value: Dict[str, List[str]]) -> Dict[str, List[str]]:
        for key, values in value.items():
            if not values:
                raise ValueError(f"matrix parameter '{key}' has no values")
        return value


class StageConfig(pydantic.BaseModel):
    name: str
    description: Optional[str] = None
    needs: List[str] = []
    approval: bool = False
    best_effort: bool = False
    branches: Optional[BranchFilter] = None
    tasks: List[TaskConfig] = pydantic.Field(min_length=1)

    model_config = pydantic.ConfigDict(extra="forbid")


class Defaults(pydantic.BaseModel):
    timeout: Optional[float] = pydantic.Field(default=None, gt=0)
    working_dir: Optional[str] = None
    resource_class: Optional[str] = None
    env: Dict[str, str] = {}

    model_config = pydantic.ConfigDict(extra="forbid")


class ReleaseConfig(pydantic.BaseModel):
    """
    What to do once every stage succeeded.

    `command` may use `{version}`, `{release_dir}`, `{name}` and the
    run context fields.
    """

    name: str
    command: Optional[List[str]] = None
    draft: bool = True
    timeout: float = pydantic.Field(default=600, gt=0)
    secrets: Dict[str, str] = {}

    model_config = pydantic.ConfigDict(extra="forbid")


class PipelineDefinition(pydantic.BaseModel):
    name: str
    defaults: Defaults = Defaults()
    stages: List[StageConfig] = pydantic.Field(min_length=1)
    release: Optional[ReleaseConfig] = None

    model_config = pydantic.ConfigDict(extra="forbid")

    @pydantic.model_validator(mode="after")
    def stage_names_unique(self) -> "PipelineDefinition":
        seen = set()
        for stage in self.stages:
            if stage.name in seen:
                raise ValueError(f"Duplicate stage name: {stage.name}")
            seen.add(stage.name)
        return self

    def stage(self, name: str) -> StageConfig:
        for stage in self.stages:
            if stage.name == name:
                return stage
        raise KeyError(name)


def load_definition(path: Union[str, Path]) -> PipelineDefinition:
    """
    Read a pipeline definition from a .yaml/.yml or .json file.

    Raises:
        InvalidPipelineDefinition
    """
    file_path = Path(path)
    try:
        with open(file_path, "r", encoding="utf-8") as f:
            if file_path.suffix in [".yaml", ".yml"]:
                data = yaml.safe_load(f)
            else:
                data = json.load(f)
    except (OSError, yaml.YAMLError, json.JSONDecodeError) as exc:
        raise InvalidPipelineDefinition(f"Cannot read {file_path}: {exc}") from exc

    return parse_definition(data, source=str(file_path))


def parse_definition(data, source: str = "<memory>") -> PipelineDefinition:
    if not isinstance(data, dict):
        raise InvalidPipelineDefinition(f"{source}: top level must be a mapping")
    try:
        return PipelineDefinition.model_validate(data)
    except pydantic.ValidationError as exc:
        raise InvalidPipelineDefinition(f"{source}: {exc}") from exc
