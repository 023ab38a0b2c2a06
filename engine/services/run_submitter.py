# engine/services/run_submitter.py

"""
Run submission service.

This module is the ONLY entry point for starting or resuming runs
from API or CLI.

Responsibilities:
- Load and validate the pipeline definition
- Resolve the run context (version tag, branch, revision)
- Build the stage DAG
- Resolve secrets into an immutable execution config
- Wire coordinator, aggregator, publisher and persistence into a StagePipeline
"""

import os
from pathlib import Path
from types import MappingProxyType
from typing import Callable, Mapping, Optional

from config.settings import Settings, get_settings
from engine.dispatch.coordinator import FanOutCoordinator
from engine.planner.context import RunContext, new_run_id
from engine.planner.dag_builder import PipelinePlan, build_pipeline_plan
from engine.planner.definition import load_definition
from engine.planner.exceptions import PlannerError
from engine.scheduler.metrics import SchedulerMetrics
from engine.scheduler.pipeline import StagePipeline
from engine.scheduler.registry import InFlightRegistry
from engine.scheduler.resources import ResourceBudget
from engine.scheduler.types import PipelineStatus
from engine.services.run_store import RunStore, snapshot_pipeline
from release.artifacts import ArtifactAggregator
from release.executor import Executor
from release.publisher import ReleasePublisher
from release.reporting.exceptions import ReportIOError
from release.reporting.json_writer import write_json_report
from release.storage import ArtifactStore, LocalArtifactStore, S3ArtifactStore
from release.tools.utils import get_logger, is_tool_installed, register_secret_values, run_subprocess
from release.types import Artifact, CancellationToken, ExecutionConfig, SecretTable

log = get_logger("submitter")

REPORT_FILE = "report.json"
GIT_TIMEOUT = 10.0


class RunSubmissionError(Exception):
    """Raised when a run cannot be planned, started or resumed."""


class RunSubmitter:
    """
    Stateless service object.

    Safe to reuse across API and CLI.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        store: Optional[RunStore] = None,
        notifier: Optional[Callable] = None,
        environ: Optional[Mapping[str, str]] = None,
    ):
        self.settings = settings or get_settings()
        self.store = store or RunStore(self.settings.STATE_DIR)
        self.notifier = notifier
        self._environ = environ if environ is not None else os.environ

    # ------------------------------------------------------------------
    # PUBLIC API
    # ------------------------------------------------------------------

    def plan(
        self,
        definition_path: str,
        *,
        version: Optional[str] = None,
        branch: Optional[str] = None,
        environment: Optional[str] = None,
        revision: Optional[str] = None,
        run_id: Optional[str] = None,
    ) -> PipelinePlan:
        """
        Raises:
            RunSubmissionError
        """
        context = RunContext(
            run_id=run_id or new_run_id(),
            version=version or self._git_version(),
            branch=branch if branch is not None else self._git("rev-parse", "--abbrev-ref", "HEAD"),
            environment=environment or self.settings.ENVIRONMENT,
            revision=revision or self._git("rev-parse", "HEAD"),
        )
        return self._plan(definition_path, context)

    def submit(self, definition_path: str, **context_fields) -> StagePipeline:
        """
        Plan a run and wire its pipeline. The pipeline is not started.

        Raises:
            RunSubmissionError
        """
        plan = self.plan(definition_path, **context_fields)
        if self.store.exists(plan.context.run_id):
            raise RunSubmissionError(f"Run {plan.context.run_id} already exists")

        pipeline = self.build_pipeline(plan)
        self.store.save(snapshot_pipeline(pipeline))
        log.info(
            f"Submitted run {plan.context.run_id}: {plan.name} {plan.context.version} "
            f"({len(plan.stages)} stage(s), {len(plan.tasks())} task(s))"
        )
        return pipeline

    def resume(self, run_id: str) -> StagePipeline:
        """
        Rebuild a detached or failed run from its snapshot.

        Raises:
            RunNotFound
            RunSubmissionError
        """
        snapshot = self.store.load(run_id)
        if snapshot.status == PipelineStatus.SUCCEEDED:
            raise RunSubmissionError(f"Run {run_id} already succeeded")
        if not snapshot.definition_path:
            raise RunSubmissionError(f"Run {run_id} has no pipeline definition on record")

        plan = self._plan(snapshot.definition_path, snapshot.context)
        pipeline = self.build_pipeline(plan)
        pipeline.restore(
            stages={name: record.model_dump(mode="json") for name, record in snapshot.stages.items()},
            gates=[gate.model_dump(mode="json") for gate in snapshot.gates],
            artifacts=[Artifact(**a) for a in snapshot.artifacts],
        )
        log.info(f"Resuming run {run_id}")
        return pipeline

    def build_pipeline(self, plan: PipelinePlan) -> StagePipeline:
        settings = self.settings
        run_id = plan.context.run_id

        environ = dict(self._environ)
        missing = [name for name in plan.secret_sources if name not in environ]
        if missing:
            log.warning(f"Run {run_id}: secret source(s) not set: {', '.join(missing)}")

        secrets = SecretTable.from_environment(list(plan.secret_sources), environ)
        register_secret_values(secrets.values())

        config = ExecutionConfig(
            base_env=MappingProxyType({
                k: v for k, v in environ.items() if k not in plan.secret_sources
            }),
            secrets=secrets,
            token=CancellationToken(),
            cancel_grace=settings.CANCEL_GRACE_SECONDS,
        )

        executor = Executor(InFlightRegistry())
        coordinator = FanOutCoordinator(
            max_parallelism=settings.MAX_PARALLELISM,
            budget=ResourceBudget(settings.RESOURCE_UNITS),
            executor=executor,
            metrics=SchedulerMetrics(),
        )

        run_dir = self.run_dir(run_id)
        publisher = None
        if plan.release is not None:
            publisher = ReleasePublisher(plan.release, run_dir, executor=executor)

        return StagePipeline(
            plan,
            coordinator=coordinator,
            aggregator=ArtifactAggregator(self._artifact_store(run_dir / "bundles"), plan.context.version),
            config=config,
            publisher=publisher,
            notifier=self.notifier,
            on_change=self._persist,
        )

    def run_dir(self, run_id: str) -> Path:
        return Path(self.settings.ARTIFACTS_DIR) / run_id

    # ------------------------------------------------------------------
    # INTERNAL HELPERS
    # ------------------------------------------------------------------

    def _plan(self, definition_path: str, context: RunContext) -> PipelinePlan:
        path = Path(definition_path).resolve()
        try:
            definition = load_definition(path)
            return build_pipeline_plan(
                definition,
                context,
                default_timeout=self.settings.DEFAULT_TASK_TIMEOUT,
                definition_path=str(path),
            )
        except PlannerError as exc:
            raise RunSubmissionError(str(exc)) from exc

    def _artifact_store(self, root: Path) -> ArtifactStore:
        settings = self.settings
        if settings.USE_S3_STORAGE:
            return S3ArtifactStore(
                bucket=settings.ARTIFACT_BUCKET,
                staging_root=root,
                prefix=root.parent.name,
                endpoint_url=settings.AWS_ENDPOINT_URL,
                access_key_id=settings.AWS_ACCESS_KEY_ID,
                secret_access_key=settings.AWS_SECRET_ACCESS_KEY,
                region_name=settings.AWS_REGION,
            )
        return LocalArtifactStore(root)

    def _persist(self, pipeline: StagePipeline) -> None:
        self.store.save(snapshot_pipeline(pipeline))

        if pipeline.status in (PipelineStatus.SUCCEEDED, PipelineStatus.FAILED, PipelineStatus.CANCELLED):
            path = self.run_dir(pipeline.run_id) / REPORT_FILE
            try:
                write_json_report(pipeline.report(), str(path))
            except ReportIOError as exc:
                log.error(f"Run {pipeline.run_id}: cannot write report: {exc}")

    def _git_version(self) -> str:
        version = self._git("describe", "--tags", "--abbrev=0")
        if not version:
            raise RunSubmissionError(
                "Cannot determine the release version from git tags; pass a version explicitly"
            )
        return version

    def _git(self, *args: str) -> Optional[str]:
        if not is_tool_installed("git"):
            return None
        outcome = run_subprocess(["git", *args], timeout=GIT_TIMEOUT)
        if outcome.fault or outcome.timed_out or outcome.returncode != 0:
            return None
        return outcome.output.strip() or None
