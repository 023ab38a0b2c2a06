# release/publisher.py

"""
Release publication.

Runs only after every required stage succeeded. Collects the archives of
the frozen ArtifactSet into one flat release directory, optionally hands
that directory to a release command (e.g. `ghr -draft {version} {release_dir}`)
and records what was published in `release.json`.
"""

import json
import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from engine.planner.context import RunContext
from engine.planner.dag_builder import render
from engine.planner.definition import ReleaseConfig
from engine.planner.exceptions import TemplateError
from engine.scheduler.dag import TaskSpec
from release.artifacts import ArtifactSet
from release.executor import Executor
from release.tools.utils import ensure_dir, get_logger
from release.types import ExecutionConfig

log = get_logger("publisher")

RELEASE_RECORD = "release.json"


class PublishError(Exception):
    """Release directory could not be assembled or the release command failed."""


class ReleasePublisher:
    def __init__(
        self,
        release: ReleaseConfig,
        output_dir: Path,
        executor: Optional[Executor] = None,
    ):
        self.release = release
        self.output_dir = Path(output_dir)
        self.executor = executor or Executor()

    # -------------------------
    # PUBLIC ENTRYPOINT
    # -------------------------

    def publish(
        self,
        artifacts: ArtifactSet,
        context: RunContext,
        config: ExecutionConfig,
    ) -> Dict[str, Any]:
        """
        Raises:
            PublishError
        """
        if not artifacts.frozen:
            raise PublishError("Artifact set must be frozen before publication")

        release_dir = self.output_dir / "release"
        files = self._collect(artifacts, release_dir)

        record: Dict[str, Any] = {
            "name": self.release.name,
            "tag": context.version,
            "draft": self.release.draft,
            "run_id": context.run_id,
            "revision": context.revision,
            "release_dir": str(release_dir),
            "artifacts": files,
            "command": None,
            "published_at": None,
        }

        if self.release.command:
            record["command"] = self._run_command(release_dir, context, config)

        record["published_at"] = datetime.now(timezone.utc).isoformat()
        self._write_record(record)
        log.info(f"Release {self.release.name} {context.version}: {len(files)} file(s)")
        return record

    # -------------------------
    # INTERNAL HELPERS
    # -------------------------

    def _collect(self, artifacts: ArtifactSet, release_dir: Path) -> List[Dict[str, Any]]:
        if release_dir.exists():
            shutil.rmtree(release_dir)
        ensure_dir(release_dir)

        files = []
        for artifact in artifacts:
            if not artifact.archive_path:
                raise PublishError(f"Artifact for {artifact.target} has no archive")
            source = Path(artifact.archive_path)
            destination = release_dir / source.name
            if destination.exists():
                raise PublishError(f"Two artifacts share the archive name {source.name}")
            try:
                shutil.copy2(source, destination)
            except OSError as exc:
                raise PublishError(f"Cannot copy {source}: {exc}") from exc

            files.append({
                "target": artifact.target,
                "file": destination.name,
                "sha256": artifact.checksum,
                "source_task": artifact.source_task,
            })
        return files

    def _run_command(
        self,
        release_dir: Path,
        context: RunContext,
        config: ExecutionConfig,
    ) -> Dict[str, Any]:
        values = {
            **context.template_values(),
            "name": self.release.name,
            "release_dir": str(release_dir),
        }
        try:
            command = tuple(render(arg, values) for arg in self.release.command)
        except TemplateError as exc:
            raise PublishError(f"Release command: {exc}") from exc

        spec = TaskSpec(
            task_id=f"release:{context.run_id}",
            name=f"release-{self.release.name}",
            stage="release",
            command=command,
            timeout=self.release.timeout,
            working_dir=str(self.output_dir),
            secrets=dict(self.release.secrets),
        )
        result = self.executor.run(spec, config)
        if not result.succeeded:
            raise PublishError(
                f"Release command failed ({result.failure_kind.value}):\n{result.log}"
            )
        return {
            "argv": list(command),
            "exit_code": result.exit_code,
            "output": result.log,
        }

    def _write_record(self, record: Dict[str, Any]) -> None:
        path = self.output_dir / RELEASE_RECORD
        try:
            with path.open("w", encoding="utf-8") as f:
                json.dump(record, f, indent=2)
        except OSError as exc:
            raise PublishError(f"Cannot write {path}: {exc}") from exc
