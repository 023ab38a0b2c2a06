# release/executor.py

"""
Single-task executor.

Runs exactly one TaskSpec as an external process and turns whatever
happens into a TaskResult. Ordinary command failure is data, not an
exception.
"""

import os
import subprocess
import time
from typing import Dict, Optional

from engine.scheduler.dag import TaskSpec
from engine.scheduler.registry import InFlightRegistry
from engine.scheduler.types import FailureKind, TaskStatus
from release.tools.utils import (
    get_logger,
    mask_secret_values,
    process_group_alive,
    run_subprocess,
    signal_process_group,
)
from release.types import ExecutionConfig, TaskResult

log = get_logger("executor")


class Executor:
    """
    Stateless apart from the in-flight registry it reports processes to.
    """

    def __init__(self, registry: Optional[InFlightRegistry] = None):
        self.registry = registry or InFlightRegistry()

    # -------------------------
    # PUBLIC ENTRYPOINT
    # -------------------------

    def run(self, spec: TaskSpec, config: ExecutionConfig) -> TaskResult:
        started = time.monotonic()

        if config.token.cancelled:
            return self._result(spec, TaskStatus.ERROR, FailureKind.CANCELLED,
                                "Cancelled before start.", started)

        try:
            env = self._build_env(spec, config)
        except KeyError as exc:
            log.error(f"[{spec.name}] {exc.args[0]}")
            return self._result(spec, TaskStatus.ERROR, FailureKind.EXECUTION_FAULT,
                                str(exc.args[0]), started)

        cwd = spec.working_dir
        if cwd is not None and not os.path.isdir(cwd):
            return self._result(spec, TaskStatus.ERROR, FailureKind.EXECUTION_FAULT,
                                f"Working directory does not exist: {cwd}", started)

        log.info(f"[{spec.name}] starting ({spec.platform or 'any platform'})")

        self.registry.add(spec.task_id, spec.cost_units)
        try:
            outcome = run_subprocess(
                list(spec.command),
                timeout=spec.timeout,
                cwd=cwd,
                env=env,
                on_start=lambda proc: self._on_start(spec, proc, config),
            )
        finally:
            self.registry.remove(spec.task_id)

        output = mask_secret_values(outcome.output)

        if outcome.fault is not None:
            return self._result(spec, TaskStatus.ERROR, FailureKind.EXECUTION_FAULT,
                                _join(output, outcome.fault), started)

        if config.token.cancelled and outcome.returncode != 0:
            return self._result(spec, TaskStatus.ERROR, FailureKind.CANCELLED,
                                _join(output, "Cancelled."), started, outcome.returncode)

        if outcome.timed_out:
            return self._result(spec, TaskStatus.TIMEOUT, FailureKind.TIMEOUT,
                                _join(output, f"Timed out after {spec.timeout}s."),
                                started, outcome.returncode)

        if outcome.returncode != 0:
            matched = next((p for p in spec.tolerate if p in output), None)
            if matched is None:
                return self._result(spec, TaskStatus.FAILURE, FailureKind.COMMAND_FAILURE,
                                    output, started, outcome.returncode)
            log.warning(f"[{spec.name}] exit {outcome.returncode} tolerated ('{matched}')")
            output = _join(output, f"Exit code {outcome.returncode} tolerated: matched '{matched}'.")

        artifact_paths = ()
        if spec.artifact is not None:
            produced = os.path.abspath(os.path.join(cwd or os.getcwd(), spec.artifact.output_path))
            if not os.path.isfile(produced):
                return self._result(spec, TaskStatus.FAILURE, FailureKind.COMMAND_FAILURE,
                                    _join(output, f"Declared output missing: {produced}"),
                                    started, outcome.returncode)
            artifact_paths = (produced,)

        log.info(f"[{spec.name}] succeeded")
        return TaskResult(
            task_id=spec.task_id,
            status=TaskStatus.SUCCESS,
            log=output,
            exit_code=outcome.returncode,
            artifact_paths=artifact_paths,
            duration=time.monotonic() - started,
        )

    def cancel_all(self, grace: float = 10.0) -> int:
        """
        Terminate every process group currently registered.

        SIGTERM first; groups still alive after `grace` seconds get SIGKILL.
        Returns the number of processes signalled.
        """
        procs = self.registry.processes()
        for proc in procs:
            signal_process_group(proc)

        deadline = time.monotonic() + grace
        while time.monotonic() < deadline and any(process_group_alive(p) for p in procs):
            time.sleep(0.05)

        for proc in procs:
            if process_group_alive(proc):
                log.warning(f"pid {proc.pid} ignored SIGTERM; killing its group")
                signal_process_group(proc, force=True)
        if procs:
            log.warning(f"Terminated {len(procs)} running process(es)")
        return len(procs)

    # -------------------------
    # INTERNAL HELPERS
    # -------------------------

    def _build_env(self, spec: TaskSpec, config: ExecutionConfig) -> Dict[str, str]:
        env = dict(config.base_env)
        env.update(spec.env)
        for env_name, source_name in spec.secrets.items():
            if source_name not in config.secrets:
                raise KeyError(f"Secret '{source_name}' required by {spec.name} is not set")
            env[env_name] = config.secrets[source_name]
        return env

    def _on_start(self, spec: TaskSpec, proc: subprocess.Popen, config: ExecutionConfig) -> None:
        self.registry.attach_process(spec.task_id, proc)
        # cancel() may have run between Popen and registration
        if config.token.cancelled:
            signal_process_group(proc)

    @staticmethod
    def _result(
        spec: TaskSpec,
        status: TaskStatus,
        kind: FailureKind,
        message: str,
        started: float,
        exit_code: Optional[int] = None,
    ) -> TaskResult:
        if kind != FailureKind.CANCELLED:
            log.error(f"[{spec.name}] {status.value} ({kind.value})")
        return TaskResult(
            task_id=spec.task_id,
            status=status,
            log=message,
            exit_code=exit_code,
            failure_kind=kind,
            duration=time.monotonic() - started,
        )


def _join(output: str, line: str) -> str:
    if not output:
        return line
    return output.rstrip("\n") + "\n" + line
