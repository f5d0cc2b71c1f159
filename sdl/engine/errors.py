"""Exceptions raised by the simulation engine."""


class SimulationError(Exception):
    """Base class for engine failures."""


class PreconditionError(SimulationError):
    """The engine was handed a scenario that did not validate."""


class EvaluationError(SimulationError):
    """An expression could not be evaluated (unknown name, function or operand)."""
