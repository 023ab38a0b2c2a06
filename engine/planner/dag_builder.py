import itertools
import string
from dataclasses import dataclass, field
from graphlib import CycleError, TopologicalSorter
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional, Tuple
from uuid import uuid4

from engine.planner.context import RunContext
from engine.planner.cost_model import resolve_task_cost
from engine.planner.definition import (
    PipelineDefinition,
    ReleaseConfig,
    StageConfig,
    TaskConfig,
)
from engine.planner.exceptions import (
    CyclicStageDependency,
    InvalidPipelineDefinition,
    TemplateError,
    UnknownDependency,
)
from engine.scheduler.dag import ArtifactDeclaration, StageSpec, TaskSpec
from release.tools.utils import get_logger

log = get_logger("planner")


@dataclass(frozen=True)
class PipelinePlan:
    """
    Everything needed to run one pipeline: immutable stages in
    topological order plus the release step.
    """

    name: str
    context: RunContext
    stages: Tuple[StageSpec, ...]
    release: Optional[ReleaseConfig] = None
    skipped_stages: Tuple[str, ...] = ()
    definition_path: Optional[str] = None
    secret_sources: Tuple[str, ...] = field(default=())

    def stage(self, name: str) -> StageSpec:
        for stage in self.stages:
            if stage.name == name:
                return stage
        raise KeyError(name)

    def tasks(self) -> List[TaskSpec]:
        return [task for stage in self.stages for task in stage.tasks]


# -------------------------
# PUBLIC ENTRYPOINT
# -------------------------

def build_pipeline_plan(
    definition: PipelineDefinition,
    context: RunContext,
    *,
    default_timeout: Optional[float] = None,
    definition_path: Optional[str] = None,
) -> PipelinePlan:
    """
    Build the stage DAG of one run.

    Raises:
        UnknownDependency
        CyclicStageDependency
        TemplateError
        InvalidPipelineDefinition
    """

    _validate_dependencies(definition)
    order = _topological_order(definition)

    included = _apply_branch_filters(definition, context, order)
    skipped = tuple(name for name in order if name not in included)

    stages = tuple(
        create_stage(definition, definition.stage(name), context, default_timeout)
        for name in order
        if name in included
    )

    secret_sources = sorted({
        source
        for stage in stages
        for task in stage.tasks
        for source in task.secrets.values()
    } | set(definition.release.secrets.values() if definition.release else ()))

    return PipelinePlan(
        name=definition.name,
        context=context,
        stages=stages,
        release=definition.release,
        skipped_stages=skipped,
        definition_path=definition_path,
        secret_sources=tuple(secret_sources),
    )


def _validate_dependencies(definition: PipelineDefinition) -> None:
    names = {stage.name for stage in definition.stages}
    for stage in definition.stages:
        for dep in stage.needs:
            if dep not in names:
                raise UnknownDependency(f"Stage '{stage.name}' needs unknown stage '{dep}'")
            if dep == stage.name:
                raise CyclicStageDependency(f"Stage '{stage.name}' depends on itself")


def _topological_order(definition: PipelineDefinition) -> List[str]:
    sorter = TopologicalSorter({stage.name: set(stage.needs) for stage in definition.stages})
    try:
        return list(sorter.static_order())
    except CycleError as exc:
        cycle = " -> ".join(exc.args[1]) if len(exc.args) > 1 else "?"
        raise CyclicStageDependency(f"Stage dependency cycle: {cycle}") from exc


def _apply_branch_filters(
    definition: PipelineDefinition,
    context: RunContext,
    order: List[str],
) -> set:
    """
    Drop stages filtered out for this branch, and everything that needs them.
    """
    if context.branch is None:
        return set(order)

    included = set()
    for name in order:
        stage = definition.stage(name)
        if stage.branches is not None and not stage.branches.allows(context.branch):
            log.warning(f"Stage '{name}' skipped on branch '{context.branch}'")
            continue
        missing = [dep for dep in stage.needs if dep not in included]
        if missing:
            log.warning(f"Stage '{name}' skipped: needs filtered stage(s) {missing}")
            continue
        included.add(name)
    return included


def create_stage(
    definition: PipelineDefinition,
    stage: StageConfig,
    context: RunContext,
    default_timeout: Optional[float],
) -> StageSpec:
    tasks: List[TaskSpec] = []
    names = set()

    for task in stage.tasks:
        if not _when_matches(task, context):
            log.info(f"Task '{task.name}' in '{stage.name}' skipped by 'when'")
            continue

        for spec in create_tasks(definition, stage.name, task, context, default_timeout):
            if spec.name in names:
                raise InvalidPipelineDefinition(
                    f"Stage '{stage.name}' expands to duplicate task name '{spec.name}'"
                )
            names.add(spec.name)
            tasks.append(spec)

    return StageSpec(
        name=stage.name,
        tasks=tuple(tasks),
        dependencies=frozenset(stage.needs),
        approval=stage.approval,
        best_effort=stage.best_effort,
        description=stage.description,
    )


def create_tasks(
    definition: PipelineDefinition,
    stage_name: str,
    task: TaskConfig,
    context: RunContext,
    default_timeout: Optional[float],
) -> List[TaskSpec]:
    """
    Expand one task template into a TaskSpec per matrix combination.
    """
    defaults = definition.defaults

    timeout = task.timeout or defaults.timeout or default_timeout
    if timeout is None:
        raise InvalidPipelineDefinition(
            f"Task '{task.name}' in stage '{stage_name}' has no timeout "
            f"and no default timeout is configured"
        )

    resource_class, units = resolve_task_cost(task.resource_class or defaults.resource_class)

    reserved = set(context.template_values())
    clash = reserved & (set(task.params) | set(task.matrix))
    if clash:
        raise InvalidPipelineDefinition(
            f"Task '{task.name}' redefines reserved parameter(s): {sorted(clash)}"
        )

    keys = list(task.matrix)
    combos = itertools.product(*(task.matrix[k] for k in keys)) if keys else [()]

    specs = []
    for combo in combos:
        values = {**context.template_values(), **dict(zip(keys, combo))}
        # params may refer to the run context and the matrix, not to each other
        values.update({k: render(v, values) for k, v in task.params.items()})

        name = render(task.name, values)
        if keys and name == task.name:
            # un-templated matrix name
            name = f"{task.name}-{'-'.join(combo)}"

        artifact = None
        if task.artifact is not None:
            artifact = ArtifactDeclaration(
                target=render(task.artifact.target, values),
                output_path=render(task.artifact.path, values),
                binary_name=render(task.artifact.binary, values),
                companions=tuple(render(c, values) for c in task.artifact.companions),
            )

        working_dir = task.working_dir or defaults.working_dir
        specs.append(
            TaskSpec(
                task_id=_new_task_id(stage_name, name),
                name=name,
                stage=stage_name,
                command=tuple(render(arg, values) for arg in task.command),
                timeout=float(timeout),
                platform=render(task.platform, values) if task.platform else None,
                working_dir=render(working_dir, values) if working_dir else None,
                resource_class=resource_class,
                cost_units=units,
                env=_frozen({
                    k: render(v, values)
                    for k, v in {**defaults.env, **task.env}.items()
                }),
                secrets=_frozen(task.secrets),
                tolerate=tuple(task.tolerate),
                artifact=artifact,
            )
        )
    return specs


# -------------------------
# TEMPLATES
# -------------------------

class _StrictValues(dict):
    def __missing__(self, key):
        raise TemplateError(f"Unknown placeholder '{{{key}}}'")


def render(template: str, values: Mapping[str, str]) -> str:
    """
    Substitute `{name}` placeholders; `{{` and `}}` are literal braces.

    Only plain names are allowed: no attribute access, indexing or
    format specs.
    """
    for _, field_name, format_spec, conversion in string.Formatter().parse(template):
        if field_name is None:
            continue
        if not field_name.isidentifier() or format_spec or conversion:
            raise TemplateError(f"Unsupported placeholder '{{{field_name}}}' in '{template}'")
    try:
        return template.format_map(_StrictValues(values))
    except TemplateError as exc:
        raise TemplateError(f"{exc} in '{template}'") from None
    except (ValueError, IndexError) as exc:
        raise TemplateError(f"Malformed template '{template}': {exc}") from exc


def placeholders(template: str) -> List[str]:
    return [
        field_name
        for _, field_name, _, _ in string.Formatter().parse(template)
        if field_name
    ]


def _when_matches(task: TaskConfig, context: RunContext) -> bool:
    values = context.template_values()
    for key, expected in task.when.items():
        if key not in values:
            raise TemplateError(f"Task '{task.name}' has 'when' on unknown field '{key}'")
        allowed = expected if isinstance(expected, list) else [expected]
        if values[key] not in allowed:
            return False
    return True


def _frozen(mapping: Dict[str, str]) -> Mapping[str, str]:
    return MappingProxyType(dict(mapping))


def _new_task_id(stage: str, name: str) -> str:
    return f"{stage}:{name}:{uuid4().hex[:8]}"
