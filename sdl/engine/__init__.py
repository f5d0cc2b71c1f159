"""Simulation engine: expression evaluation, Monte Carlo runs and sensitivity analysis."""

from sdl.engine.errors import EvaluationError, PreconditionError, SimulationError
from sdl.engine.monte_carlo import Distribution, SimulationResult, TimeseriesPoint, simulate
from sdl.engine.sensitivity import (
    InteractiveParameter,
    ObservableSwing,
    SensitivityResult,
    extract_interactive_parameters,
    run_sensitivity_analysis,
)

__all__ = [
    "EvaluationError",
    "PreconditionError",
    "SimulationError",
    "Distribution",
    "SimulationResult",
    "TimeseriesPoint",
    "simulate",
    "InteractiveParameter",
    "ObservableSwing",
    "SensitivityResult",
    "extract_interactive_parameters",
    "run_sensitivity_analysis",
]
