"""
Monte Carlo Simulation Engine
=============================

Samples every uncertain input of a validated scenario, propagates the
samples through interpolation models and the causal order, and aggregates
per-timestep distributions for every variable and impact.

Each run draws only from streams derived from ``(seed, run_index, name)``
and writes only its own row of the preallocated sample arrays, so runs can
be split across threads without changing the result. Aggregation happens
once every run has finished.

Usage:
    from sdl import parse, simulate

    result = simulate(parse(source).ast, runs=2000, seed=42)
    print(result.to_dict()["variables"]["co2_price"][-1])
"""

import calendar
import datetime as dt
import logging
import math
import time
import warnings
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np

from sdl.config import get_engine_defaults
from sdl.core.types import (
    Assumption,
    Branch,
    DateValue,
    Declaration,
    Identifier,
    Impact,
    Parameter,
    Scenario,
    Timeframe,
    Variable,
    year_fraction,
)
from sdl.core.validator import ValidationResult, validate
from sdl.engine.errors import PreconditionError
from sdl.engine.evaluator import (
    build_interpolator,
    evaluate,
    evaluate_model,
    literal_value,
    sample_distribution,
)
from sdl.engine.rng import stream

logger = logging.getLogger(__name__)

DEFAULT_TIMEFRAME = Timeframe(DateValue(2025), DateValue(2050))
DEFAULT_BRANCH_PROBABILITY = 0.5
MIN_CONVERGENCE_SAMPLES = 200

_MONTH_STEPS = {"yearly": 12, "quarterly": 3, "monthly": 1}
_DAY_STEPS = {"weekly": 7, "daily": 1}


# ============================================================================
# RESULT TYPES
# ============================================================================

def _percentile_key(p: float) -> str:
    return f"p{p:g}"


@dataclass
class Distribution:
    mean: float
    median: float
    std: float
    min: float
    max: float
    percentiles: Dict[float, float] = field(default_factory=dict)
    undefined: int = 0  # runs whose value was NaN, excluded from the statistics

    def percentile(self, p: float) -> float:
        return self.percentiles[float(p)]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mean": self.mean,
            "median": self.median,
            "std": self.std,
            "min": self.min,
            "max": self.max,
            "percentiles": {_percentile_key(p): v for p, v in self.percentiles.items()},
            "undefined": self.undefined,
        }


@dataclass
class TimeseriesPoint:
    date: dt.date
    distribution: Distribution

    def to_dict(self) -> Dict[str, Any]:
        return {"date": self.date.isoformat(), **self.distribution.to_dict()}


TimeSeries = List[TimeseriesPoint]


@dataclass
class SimulationResult:
    scenario: str
    runs: int
    seed: int
    elapsed_ms: float
    timesteps: List[dt.date]
    variables: Dict[str, TimeSeries]
    impacts: Dict[str, TimeSeries]
    branches: Dict[str, float]  # activation rate per branch
    convergence_reached: bool
    percentiles: List[float] = field(default_factory=list)

    def series(self, name: str) -> TimeSeries:
        if name in self.variables:
            return self.variables[name]
        if name in self.impacts:
            return self.impacts[name]
        raise KeyError(f"No variable or impact named '{name}'")

    def final(self, name: str) -> Distribution:
        return self.series(name)[-1].distribution

    def to_dict(self) -> Dict[str, Any]:
        return {
            "scenario": self.scenario,
            "runs": self.runs,
            "seed": self.seed,
            "elapsed_ms": self.elapsed_ms,
            "timesteps": [d.isoformat() for d in self.timesteps],
            "variables": {k: [p.to_dict() for p in v] for k, v in self.variables.items()},
            "impacts": {k: [p.to_dict() for p in v] for k, v in self.impacts.items()},
            "branches": dict(self.branches),
            "convergence_reached": self.convergence_reached,
        }


# ============================================================================
# TIME AXIS
# ============================================================================

def _add_months(date: dt.date, months: int) -> dt.date:
    year, month = divmod(date.month - 1 + months, 12)
    year += date.year
    month += 1
    return dt.date(year, month, min(date.day, calendar.monthrange(year, month)[1]))


def generate_timesteps(timeframe: Optional[Timeframe], resolution: Optional[str]) -> List[dt.date]:
    """Dates from timeframe start to end (inclusive) at the given resolution."""
    timeframe = timeframe or DEFAULT_TIMEFRAME
    resolution = resolution or "yearly"
    start = timeframe.start.to_date()
    end = timeframe.end.to_date()

    dates = []
    current, i = start, 0
    while current <= end:
        dates.append(current)
        i += 1
        if resolution in _DAY_STEPS:
            current = start + dt.timedelta(days=_DAY_STEPS[resolution] * i)
        else:
            current = _add_months(start, _MONTH_STEPS.get(resolution, 12) * i)
    return dates


# ============================================================================
# ENGINE
# ============================================================================

class MonteCarloEngine:
    """Runs one scenario; holds the immutable plan shared by every run."""

    def __init__(self, ast: Scenario, topological_order: Sequence[str], runs: int, seed: int,
                 percentiles: Sequence[float], convergence: float,
                 parameter_defaults: Optional[Mapping[str, float]] = None):
        self.ast = ast
        self.runs = runs
        self.seed = seed
        self.percentiles = [float(p) for p in percentiles]
        self.convergence = convergence
        self.parameter_defaults = dict(parameter_defaults or {})

        self.declarations: Dict[str, Declaration] = {}
        for decl in ast.declarations:
            if isinstance(decl, (Assumption, Parameter, Variable, Impact)):
                self.declarations.setdefault(decl.name, decl)

        # assumptions and parameters only read constants declared before them
        self.constants = [d for d in ast.declarations
                          if isinstance(d, (Assumption, Parameter)) and self.declarations.get(d.name) is d]
        self.dynamic = [n for n in topological_order
                        if isinstance(self.declarations.get(n), (Variable, Impact))]
        self.branches: List[Branch] = list(ast.of_type(Branch))

        self.timesteps = generate_timesteps(ast.metadata.timeframe, ast.metadata.resolution)
        self.times = [year_fraction(d) for d in self.timesteps]

        shape = (runs, len(self.timesteps))
        self.samples: Dict[str, np.ndarray] = {name: np.empty(shape) for name in self.dynamic}
        self.activations: Dict[str, np.ndarray] = {b.name: np.zeros(runs, dtype=bool) for b in self.branches}

    # ------------------------------------------------------------------
    # Sampling
    # ------------------------------------------------------------------

    def _sample_constant(self, decl: Declaration, rng: np.random.Generator, env: Dict[str, float]) -> float:
        if isinstance(decl, Parameter):
            if decl.name in self.parameter_defaults:
                return float(self.parameter_defaults[decl.name])
            if decl.value is None:
                if decl.range is not None:
                    low, high = (literal_value(b, env) for b in decl.range)
                    return float(rng.uniform(low, high))
                if decl.uncertainty is not None:
                    return sample_distribution(decl.uncertainty, 0.0, rng, env)
                return 0.0

        base = literal_value(decl.value, env) if decl.value is not None else 0.0
        if decl.uncertainty is not None:
            return sample_distribution(decl.uncertainty, base, rng, env)
        return base

    def _variable_interpolator(self, decl: Variable, constants: Dict[str, float]) -> Callable[[float], float]:
        times = [entry.date.to_year() for entry in decl.timeseries]
        values = [literal_value(entry.value, constants) for entry in decl.timeseries]
        method = decl.interpolation or "linear"
        if decl.model is not None and decl.model.kind == "spline":
            method = "spline"
        return build_interpolator(times, values, method)

    # ------------------------------------------------------------------
    # One run
    # ------------------------------------------------------------------

    def run_one(self, run_index: int) -> None:
        rngs: Dict[str, np.random.Generator] = {}

        def rng(key: str) -> np.random.Generator:
            if key not in rngs:
                rngs[key] = stream(self.seed, run_index, key)
            return rngs[key]

        current = dict(self.declarations)
        stream_of = {name: name for name in current}

        constants: Dict[str, float] = {}
        for decl in self.constants:
            constants[decl.name] = self._sample_constant(decl, rng(decl.name), constants)

        interpolators: Dict[str, Callable[[float], float]] = {}
        decided = set()
        t0 = self.times[0]

        for ti, t in enumerate(self.times):
            env: Dict[str, float] = dict(constants)

            for name in self.dynamic:
                decl = current[name]
                if isinstance(decl, Variable):
                    if decl.timeseries:
                        if name not in interpolators:
                            interpolators[name] = self._variable_interpolator(decl, constants)
                        base = interpolators[name](t)
                    elif decl.model is not None:
                        base = evaluate_model(decl.model, t, t0, env)
                    else:
                        base = 0.0
                    value = base
                    if decl.uncertainty is not None:
                        value = sample_distribution(decl.uncertainty, base, rng(stream_of[name]), env)
                elif decl.formula is not None:
                    value = evaluate(decl.formula, env)
                else:
                    value = sum(evaluate(Identifier(ref), env) for ref in decl.derives_from)

                env[name] = value
                self.samples[name][run_index, ti] = value

            for branch in self.branches:
                if branch.name in decided or not evaluate(branch.condition, env):
                    continue
                decided.add(branch.name)
                probability = DEFAULT_BRANCH_PROBABILITY if branch.probability is None else branch.probability
                if rng(f"branch:{branch.name}").random() >= probability:
                    continue

                # takes effect from the next timestep
                self.activations[branch.name][run_index] = True
                for nested in branch.declarations:
                    name = nested.name
                    if not isinstance(current.get(name), type(nested)):
                        continue
                    current[name] = nested
                    stream_of[name] = f"{branch.name}/{name}"
                    if isinstance(nested, (Assumption, Parameter)):
                        constants[name] = self._sample_constant(nested, rng(stream_of[name]), constants)
                        interpolators.clear()
                    else:
                        interpolators.pop(name, None)

    def run_range(self, start: int, stop: int) -> None:
        for run_index in range(start, stop):
            self.run_one(run_index)

    # ------------------------------------------------------------------
    # Aggregation
    # ------------------------------------------------------------------

    def _aggregate(self, name: str, samples: np.ndarray) -> TimeSeries:
        """Per-timestep statistics over the defined samples.

        NaN samples (e.g. ``sqrt`` of a negative draw) are counted in
        ``undefined`` and left out; a timestep with no defined sample gets
        NaN statistics.
        """
        undefined = np.isnan(samples).sum(axis=0)
        if undefined.any():
            logger.warning(
                f"'{name}' is undefined in {int(undefined.max())} of {self.runs} runs at some timestep; "
                f"those samples are excluded from its statistics"
            )
        with warnings.catch_warnings():
            # all-NaN columns
            warnings.simplefilter("ignore", RuntimeWarning)
            means = np.nanmean(samples, axis=0)
            medians = np.nanmedian(samples, axis=0)
            stds = np.nanstd(samples, axis=0)
            mins = np.nanmin(samples, axis=0)
            maxs = np.nanmax(samples, axis=0)
            if self.percentiles:
                bands = np.nanpercentile(samples, self.percentiles, axis=0, method="inverted_cdf")
            else:
                bands = np.empty((0, samples.shape[1]))

        series = []
        for ti, date in enumerate(self.timesteps):
            series.append(TimeseriesPoint(date, Distribution(
                mean=float(means[ti]),
                median=float(medians[ti]),
                std=float(stds[ti]),
                min=float(mins[ti]),
                max=float(maxs[ti]),
                percentiles={p: float(bands[i, ti]) for i, p in enumerate(self.percentiles)},
                undefined=int(undefined[ti]),
            )))
        return series

    def _converged(self) -> bool:
        """Compare first-half and second-half means of every final-timestep sample."""
        if self.runs < MIN_CONVERGENCE_SAMPLES:
            return False
        half = self.runs // 2
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", RuntimeWarning)
            for samples in self.samples.values():
                final = samples[:, -1]
                first, second = np.nanmean(final[:half]), np.nanmean(final[half:])
                scale = max(abs(np.nanmean(final)), 1e-12)
                if not (math.isfinite(first) and math.isfinite(second)) or abs(first - second) / scale > self.convergence:
                    return False
        return True

    def run(self, workers: int = 1) -> SimulationResult:
        started = time.perf_counter()
        logger.info(
            f"Simulating '{self.ast.name}': {self.runs} runs, seed {self.seed}, "
            f"{len(self.timesteps)} timesteps, {workers} worker(s)"
        )

        if workers > 1 and self.runs > 1:
            bounds = np.linspace(0, self.runs, min(workers, self.runs) + 1).astype(int)
            with ThreadPoolExecutor(max_workers=workers) as executor:
                futures = [executor.submit(self.run_range, int(a), int(b))
                           for a, b in zip(bounds[:-1], bounds[1:])]
                for future in futures:
                    future.result()
        else:
            self.run_range(0, self.runs)

        variables, impacts = {}, {}
        for name in self.dynamic:
            target = variables if isinstance(self.declarations[name], Variable) else impacts
            target[name] = self._aggregate(name, self.samples[name])

        elapsed_ms = (time.perf_counter() - started) * 1000.0
        result = SimulationResult(
            scenario=self.ast.name,
            runs=self.runs,
            seed=self.seed,
            elapsed_ms=elapsed_ms,
            timesteps=list(self.timesteps),
            variables=variables,
            impacts=impacts,
            branches={name: float(hits.mean()) for name, hits in self.activations.items()},
            convergence_reached=self._converged(),
            percentiles=list(self.percentiles),
        )
        logger.info(f"Simulation of '{self.ast.name}' finished in {elapsed_ms:.0f} ms")
        return result


def _resolve_options(ast: Scenario, runs: Optional[int], seed: Optional[int],
                     percentiles: Optional[Sequence[float]], workers: Optional[int]) -> Tuple[int, int, List[float], float, int]:
    defaults = get_engine_defaults()
    block = ast.simulate_block

    def pick(explicit: Any, key: str) -> Any:
        if explicit is not None:
            return explicit
        from_block = getattr(block, key, None) if block is not None else None
        return from_block if from_block is not None else defaults[key]

    return (
        int(pick(runs, "runs")),
        int(pick(seed, "seed")),
        [float(p) for p in pick(percentiles, "percentiles")],
        float(pick(None, "convergence")),
        int(workers if workers is not None else defaults["workers"]),
    )


def simulate(ast: Optional[Scenario], runs: Optional[int] = None, seed: Optional[int] = None,
             percentiles: Optional[Sequence[float]] = None,
             parameter_defaults: Optional[Mapping[str, float]] = None,
             workers: Optional[int] = None,
             validation: Optional[ValidationResult] = None) -> SimulationResult:
    """Run a Monte Carlo simulation of a validated scenario.

    Args:
        ast: parsed scenario
        runs: number of runs (overrides the simulate block and config)
        seed: base seed for every random stream
        percentiles: percentiles to report for every timestep
        parameter_defaults: parameter name -> value pinned for every run
        workers: threads used to execute runs
        validation: result of a previous ``validate(ast)`` call, reused
            instead of validating again

    Returns:
        SimulationResult with per-timestep distributions

    Raises:
        PreconditionError: the scenario is missing, invalid or cyclic
    """
    if ast is None:
        raise PreconditionError("Cannot simulate: no scenario (the source did not parse)")

    validation = validation or validate(ast)
    if validation.errors:
        first = validation.errors[0]
        raise PreconditionError(
            f"Cannot simulate '{ast.name}': {len(validation.errors)} validation error(s), "
            f"first: [{first.code}] {first.message}"
        )
    if validation.causal_graph is None:
        raise PreconditionError(f"Cannot simulate '{ast.name}': no causal graph")

    runs, seed, percentiles, convergence, workers = _resolve_options(ast, runs, seed, percentiles, workers)
    if runs < 1:
        raise PreconditionError(f"Cannot simulate '{ast.name}': runs must be at least 1, got {runs}")

    engine = MonteCarloEngine(
        ast,
        validation.causal_graph.topological_order,
        runs=runs,
        seed=seed,
        percentiles=percentiles,
        convergence=convergence,
        parameter_defaults=parameter_defaults,
    )
    return engine.run(workers=max(1, workers))
