import threading

from release.types import CancellationToken


class ResourceBudget:
    """
    Bounded execution resource controller.

    Represents abstract execution pressure of the build machines
    (resource classes map to units). Callers block in `acquire` until
    enough units are free or the run is cancelled.
    """

    __slots__ = ("_total", "_available", "_cond")

    def __init__(self, total_units: int):
        if total_units <= 0:
            raise ValueError("total_units must be positive")
        self._total: int = total_units
        self._available: int = total_units
        self._cond = threading.Condition()

    @property
    def total(self) -> int:
        return self._total

    @property
    def available(self) -> int:
        with self._cond:
            return self._available

    def clamp(self, units: int) -> int:
        """A task larger than the whole budget runs alone instead of never."""
        return max(1, min(units, self._total))

    def can_allocate(self, units: int) -> bool:
        with self._cond:
            return units <= self._available

    def allocate(self, units: int) -> None:
        with self._cond:
            if units > self._available:
                raise RuntimeError("Resource budget exceeded")
            self._available -= units

    def acquire(self, units: int, token: CancellationToken) -> bool:
        """
        Block until `units` are allocated. Returns False if cancelled first.
        """
        with self._cond:
            while units > self._available:
                if token.cancelled:
                    return False
                self._cond.wait()
            if token.cancelled:
                return False
            self._available -= units
            return True

    def release(self, units: int) -> None:
        with self._cond:
            self._available += units
            if self._available > self._total:
                raise RuntimeError("Resource budget over-release")
            self._cond.notify_all()

    def wake_all(self) -> None:
        """Wake blocked acquirers so they can observe cancellation."""
        with self._cond:
            self._cond.notify_all()
