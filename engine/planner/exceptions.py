# engine/planner/exceptions.py

class PlannerError(Exception):
    """Base class for planning errors"""


class InvalidPipelineDefinition(PlannerError):
    pass


class UnknownDependency(PlannerError):
    pass


class CyclicStageDependency(PlannerError):
    pass


class TemplateError(PlannerError):
    """A command template used a placeholder nobody declared."""
