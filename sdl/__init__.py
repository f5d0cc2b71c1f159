"""Scenario Description Language: parser, validator and Monte Carlo engine.

Typical use::

    from sdl import parse, validate, simulate

    parsed = parse(source)
    validation = validate(parsed.ast)
    result = simulate(parsed.ast, runs=2000, seed=42)
"""

from sdl.core.parser import parse, ParseResult
from sdl.core.validator import validate, ValidationResult, CausalGraph
from sdl.engine.monte_carlo import simulate, SimulationResult
from sdl.engine.sensitivity import run_sensitivity_analysis, SensitivityResult

__version__ = "0.1.0"

__all__ = [
    "parse",
    "ParseResult",
    "validate",
    "ValidationResult",
    "CausalGraph",
    "simulate",
    "SimulationResult",
    "run_sensitivity_analysis",
    "SensitivityResult",
]
