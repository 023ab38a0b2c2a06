# engine/services/runtime.py

"""
Run registry lifecycle management.

This module owns the singleton RunRegistry used by the API process:
live pipelines keyed by run id, each driven by its own thread.
"""

import threading
from typing import Dict, List, Optional

from engine.scheduler.pipeline import StagePipeline
from engine.services.run_submitter import RunSubmitter
from release.tools.utils import get_logger, unregister_secret_values

log = get_logger("runtime")


class RunRegistry:
    def __init__(self, submitter: RunSubmitter):
        self.submitter = submitter
        self._runs: Dict[str, StagePipeline] = {}
        self._lock = threading.Lock()

    @property
    def store(self):
        return self.submitter.store

    def start(self, definition_path: str, **context_fields) -> StagePipeline:
        pipeline = self.submitter.submit(definition_path, **context_fields)
        return self._launch(pipeline)

    def resume(self, run_id: str) -> StagePipeline:
        with self._lock:
            live = self._runs.get(run_id)
        if live is not None and not live.done:
            return live
        return self._launch(self.submitter.resume(run_id))

    def get(self, run_id: str) -> Optional[StagePipeline]:
        with self._lock:
            return self._runs.get(run_id)

    def list(self) -> List[StagePipeline]:
        with self._lock:
            return list(self._runs.values())

    def cancel_all(self) -> None:
        for pipeline in self.list():
            if not pipeline.done:
                pipeline.cancel("Server shutting down")

    def _launch(self, pipeline: StagePipeline) -> StagePipeline:
        with self._lock:
            self._runs[pipeline.run_id] = pipeline

        thread = threading.Thread(
            target=self._drive,
            args=(pipeline,),
            name=f"convoy-run-{pipeline.run_id}",
            daemon=True,
        )
        thread.start()
        return pipeline

    def _drive(self, pipeline: StagePipeline) -> None:
        try:
            status = pipeline.run()
            log.info(f"Run {pipeline.run_id} finished {status.value}")
        except Exception:
            log.exception(f"Run {pipeline.run_id} crashed")
        finally:
            pipeline.coordinator.shutdown()
            unregister_secret_values(pipeline.config.secrets.values())
            # the store holds the final record; a resume may already have replaced this entry
            with self._lock:
                if self._runs.get(pipeline.run_id) is pipeline:
                    del self._runs[pipeline.run_id]


# Internal singleton
_REGISTRY: Optional[RunRegistry] = None


def init_runtime(submitter: Optional[RunSubmitter] = None) -> RunRegistry:
    """
    Initialize the global run registry.

    Must be called exactly once at application startup.
    """

    global _REGISTRY

    if _REGISTRY is not None:
        raise RuntimeError("Run registry already initialized")

    _REGISTRY = RunRegistry(submitter or RunSubmitter())
    return _REGISTRY


def get_runtime() -> RunRegistry:
    """
    Retrieve the initialized run registry.

    Raises:
        RuntimeError if the registry was not initialized.
    """
    if _REGISTRY is None:
        raise RuntimeError(
            "Run registry not initialized. "
            "Call init_runtime() at application startup."
        )

    return _REGISTRY


def shutdown_runtime() -> None:
    global _REGISTRY

    if _REGISTRY is not None:
        _REGISTRY.cancel_all()
    _REGISTRY = None
