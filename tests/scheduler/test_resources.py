import threading

import pytest

from engine.scheduler.registry import InFlightRegistry
from engine.scheduler.resources import ResourceBudget
from release.types import CancellationToken


def test_clamp():
    budget = ResourceBudget(8)
    assert budget.clamp(16) == 8
    assert budget.clamp(0) == 1
    assert budget.clamp(4) == 4


def test_acquire_and_release():
    budget = ResourceBudget(4)
    token = CancellationToken()

    assert budget.acquire(3, token)
    assert budget.available == 1
    assert not budget.can_allocate(2)

    budget.release(3)
    assert budget.available == 4


def test_over_release_is_an_error():
    budget = ResourceBudget(2)
    with pytest.raises(RuntimeError):
        budget.release(1)


def test_blocked_acquire_returns_false_on_cancel():
    budget = ResourceBudget(2)
    token = CancellationToken()
    budget.allocate(2)
    outcome = []

    waiter = threading.Thread(target=lambda: outcome.append(budget.acquire(1, token)))
    waiter.start()
    token.cancel()
    budget.wake_all()
    waiter.join(timeout=5)

    assert outcome == [False]
    assert budget.available == 0


def test_blocked_acquire_proceeds_after_release():
    budget = ResourceBudget(2)
    token = CancellationToken()
    budget.allocate(2)
    outcome = []

    waiter = threading.Thread(target=lambda: outcome.append(budget.acquire(2, token)))
    waiter.start()
    budget.release(2)
    waiter.join(timeout=5)

    assert outcome == [True]


def test_registry_tracks_units():
    registry = InFlightRegistry()
    registry.add("build:linux", 4)
    registry.add("build:mac", 2)

    assert "build:linux" in registry
    assert registry.total_consumed_units() == 6
    with pytest.raises(RuntimeError):
        registry.add("build:linux", 4)

    assert registry.remove("build:linux") == 4
    assert len(registry) == 1
