# engine/planner/cost_model.py

"""
Cost & resource model for Convoy.

Cost is declared by tasks through their resource class.
Planner only resolves it into budget units.
"""

from typing import Dict

from release.tools.utils import get_logger

log = get_logger("planner.cost")

# -------------------------
# RESOURCE CLASSES (GLOBAL POLICY)
# -------------------------

RESOURCE_CLASSES: Dict[str, int] = {
    "small": 1,
    "medium": 2,
    "large": 4,
    "xlarge": 8,
    "2xlarge": 16,
    "arm.medium": 2,
    "arm.large": 4,
    "arm.xlarge": 8,
}

DEFAULT_CLASS = "medium"


def resolve_task_cost(resource_class: str | None) -> tuple[str, int]:
    """
    Resolve (resource_class, units) for a task.

    Order:
    1. Declared resource class
    2. Safe default
    """

    if not resource_class:
        return DEFAULT_CLASS, RESOURCE_CLASSES[DEFAULT_CLASS]

    normalized = resource_class.strip().lower()
    if normalized not in RESOURCE_CLASSES:
        log.warning(f"Unknown resource class '{resource_class}', using '{DEFAULT_CLASS}'")
        return DEFAULT_CLASS, RESOURCE_CLASSES[DEFAULT_CLASS]

    return normalized, RESOURCE_CLASSES[normalized]


def get_cost_units(resource_class: str | None) -> int:
    _, units = resolve_task_cost(resource_class)
    return units
