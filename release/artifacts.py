# release/artifacts.py

"""
Artifact aggregation.

Turns the successful results of a fan-out into target-keyed artifacts.
Validation always completes before anything is written, so a
configuration error never leaves a partial artifact set behind.
"""

import os
import threading
from typing import Dict, Iterator, List, Optional

from engine.dispatch.coordinator import FanOutResult
from engine.scheduler.dag import TaskSpec
from release.storage import ArtifactStorageError, ArtifactStore
from release.tools.utils import get_logger
from release.types import Artifact

log = get_logger("artifacts")


class DuplicateArtifact(Exception):
    """Two successful results claim the same target identifier."""

    def __init__(self, target: str, sources: List[str]):
        self.target = target
        self.sources = sources
        super().__init__(
            f"Duplicate artifact for target '{target}' from: {', '.join(sources)}"
        )


class ArtifactSet:
    """
    Append-only collection of the run's artifacts, at most one per target.

    After `freeze()` it is read-only and may be handed to the publisher.
    """

    def __init__(self):
        self._artifacts: Dict[str, Artifact] = {}
        self._lock = threading.Lock()
        self._frozen = False

    def add_all(self, artifacts: List[Artifact]) -> None:
        """
        Add every artifact or none of them.
        """
        with self._lock:
            if self._frozen:
                raise RuntimeError("ArtifactSet is frozen")

            seen: Dict[str, Artifact] = {}
            for artifact in artifacts:
                existing = self._artifacts.get(artifact.target) or seen.get(artifact.target)
                if existing is not None:
                    raise DuplicateArtifact(
                        artifact.target, [existing.source_task, artifact.source_task]
                    )
                seen[artifact.target] = artifact

            self._artifacts.update(seen)

    def freeze(self) -> "ArtifactSet":
        with self._lock:
            self._frozen = True
        return self

    @property
    def frozen(self) -> bool:
        return self._frozen

    def get(self, target: str) -> Optional[Artifact]:
        with self._lock:
            return self._artifacts.get(target)

    def targets(self) -> List[str]:
        with self._lock:
            return sorted(self._artifacts)

    def to_list(self) -> List[Artifact]:
        with self._lock:
            return [self._artifacts[t] for t in sorted(self._artifacts)]

    def __iter__(self) -> Iterator[Artifact]:
        return iter(self.to_list())

    def __len__(self) -> int:
        with self._lock:
            return len(self._artifacts)

    def __contains__(self, target: str) -> bool:
        with self._lock:
            return target in self._artifacts


class ArtifactAggregator:
    """
    Registers one artifact per successful build result and writes bundles
    through the configured store.
    """

    def __init__(self, store: ArtifactStore, version: str):
        self.store = store
        self.version = version

    def aggregate(
        self,
        fanout: FanOutResult,
        existing: Optional[ArtifactSet] = None,
    ) -> ArtifactSet:
        """
        `existing` holds artifacts already produced earlier in the run;
        claiming one of their targets is a duplicate too.

        Raises:
            RuntimeError if the fan-out did not pass its gate
            DuplicateArtifact
            ArtifactStorageError
        """
        if not fanout.succeeded:
            raise RuntimeError("Refusing to aggregate a failed fan-out")

        claims = self.collect_claims(fanout)
        if existing is not None:
            for target, spec in claims.items():
                earlier = existing.get(target)
                if earlier is not None:
                    raise DuplicateArtifact(target, [earlier.source_task, spec.name])

        written = []
        try:
            for spec in claims.values():
                written.append(self.store.write_bundle(
                    target=spec.artifact.target,
                    version=self.version,
                    binary_path=fanout.results[spec.task_id].artifact_paths[0],
                    binary_name=spec.artifact.binary_name,
                    companions=self._companion_paths(spec),
                    source_task=spec.name,
                ))
        except ArtifactStorageError:
            for artifact in written:
                self.store.discard(artifact.target)
            raise

        artifacts = ArtifactSet()
        artifacts.add_all(written)
        log.info(f"Aggregated {len(artifacts)} artifact(s): {', '.join(artifacts.targets())}")
        return artifacts

    @staticmethod
    def collect_claims(fanout: FanOutResult) -> Dict[str, TaskSpec]:
        """
        Map target -> producing task, rejecting duplicates before any I/O.
        """
        claims: Dict[str, TaskSpec] = {}
        for task_id, result in fanout.results.items():
            spec = fanout.specs[task_id]
            if not result.succeeded or spec.artifact is None:
                continue
            target = spec.artifact.target
            if target in claims:
                raise DuplicateArtifact(target, [claims[target].name, spec.name])
            claims[target] = spec
        return claims

    @staticmethod
    def _companion_paths(spec: TaskSpec) -> List[str]:
        base = spec.working_dir or os.getcwd()
        return [os.path.join(base, c) for c in spec.artifact.companions]
