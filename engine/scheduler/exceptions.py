# engine/scheduler/exceptions.py

class SchedulerError(Exception):
    """Base class for pipeline state machine errors"""


class UnknownGate(SchedulerError):
    """No approval gate is waiting for the named stage."""


class GateAlreadyResolved(SchedulerError):
    pass
