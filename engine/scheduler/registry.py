import subprocess
import threading
from typing import Dict, List


class InFlightRegistry:
    """
    Tracks currently running external processes and their resource usage.

    Single source of truth for:
    - what is running
    - how many resources are consumed
    - what must be terminated on cancellation
    """

    __slots__ = ("_tasks", "_processes", "_lock")

    def __init__(self):
        self._tasks: Dict[str, int] = {}  # task_id -> cost_units
        self._processes: Dict[str, subprocess.Popen] = {}
        self._lock = threading.Lock()

    def add(self, task_id: str, cost_units: int) -> None:
        with self._lock:
            if task_id in self._tasks:
                raise RuntimeError(f"Task already in flight: {task_id}")
            self._tasks[task_id] = cost_units

    def attach_process(self, task_id: str, proc: subprocess.Popen) -> None:
        with self._lock:
            if task_id not in self._tasks:
                raise RuntimeError(f"Task not found in flight: {task_id}")
            self._processes[task_id] = proc

    def remove(self, task_id: str) -> int:
        with self._lock:
            if task_id not in self._tasks:
                raise RuntimeError(f"Task not found in flight: {task_id}")
            self._processes.pop(task_id, None)
            return self._tasks.pop(task_id)

    def processes(self) -> List[subprocess.Popen]:
        with self._lock:
            return list(self._processes.values())

    def __contains__(self, task_id: str) -> bool:
        with self._lock:
            return task_id in self._tasks

    def __len__(self) -> int:
        with self._lock:
            return len(self._tasks)

    def total_consumed_units(self) -> int:
        with self._lock:
            return sum(self._tasks.values())
