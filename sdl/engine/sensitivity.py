"""
One-at-a-time Sensitivity Analysis
==================================

Pins each interactive parameter to its minimum and maximum while holding
every other parameter at its default, and measures how far the final-step
median of each observable moves. Results rank the parameters by the sum of
their relative swings (tornado ordering).

Interaction effects between parameters are not captured: each parameter
is varied alone.
"""

import logging
import math
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from sdl.config import get_engine_defaults
from sdl.core.types import Assumption, Impact, Parameter, Scenario, Variable
from sdl.core.validator import ValidationResult, validate
from sdl.engine.evaluator import literal_value
from sdl.engine.monte_carlo import SimulationResult, simulate

logger = logging.getLogger(__name__)

LOW_FACTOR = 0.1
HIGH_FACTOR = 3.0


@dataclass
class InteractiveParameter:
    name: str
    label: str
    default: float
    min: float
    max: float

    def to_dict(self) -> dict:
        return {"name": self.name, "label": self.label, "default": self.default,
                "min": self.min, "max": self.max}


@dataclass
class ObservableSwing:
    observable: str
    baseline_value: float
    low_value: float
    high_value: float
    swing: float
    swing_pct: float

    def to_dict(self) -> dict:
        return {
            "observable": self.observable,
            "baseline_value": self.baseline_value,
            "low_value": self.low_value,
            "high_value": self.high_value,
            "swing": self.swing,
            "swing_pct": self.swing_pct,
        }


@dataclass
class SensitivityResult:
    parameter: str
    label: str
    outputs: List[ObservableSwing] = field(default_factory=list)
    total_swing: float = 0.0

    def output(self, observable: str) -> ObservableSwing:
        for swing in self.outputs:
            if swing.observable == observable:
                return swing
        raise KeyError(observable)

    def to_dict(self) -> dict:
        return {
            "parameter": self.parameter,
            "label": self.label,
            "outputs": [o.to_dict() for o in self.outputs],
            "total_swing": self.total_swing,
        }


def extract_interactive_parameters(ast: Scenario) -> List[InteractiveParameter]:
    """Parameters exposed as controls: ``control: slider`` or a declared range.

    A slider without a range spans 0.1x to 3x its default.
    """
    params: List[InteractiveParameter] = []
    env: Dict[str, float] = {}

    for decl in ast.declarations:
        if isinstance(decl, Assumption):
            env[decl.name] = literal_value(decl.value, env) if decl.value is not None else 0.0
            continue
        if not isinstance(decl, Parameter):
            continue

        low = high = None
        if decl.range is not None:
            low, high = (literal_value(b, env) for b in decl.range)

        if decl.value is not None:
            default = literal_value(decl.value, env)
        elif low is not None:
            default = (low + high) / 2
        else:
            default = 0.0
        env[decl.name] = default

        if decl.control != "slider" and decl.range is None:
            continue
        if low is None:
            low, high = sorted((default * LOW_FACTOR, default * HIGH_FACTOR))

        params.append(InteractiveParameter(
            name=decl.name,
            label=decl.label or decl.name,
            default=default,
            min=low,
            max=high,
        ))
    return params


def final_medians(result: SimulationResult, observables: Sequence[str]) -> Dict[str, float]:
    """Final-timestep P50 (or median when P50 was not requested) per observable."""
    medians: Dict[str, float] = {}
    for name in observables:
        try:
            last = result.final(name)
        except KeyError:
            continue
        medians[name] = last.percentiles.get(50.0, last.median)
    return medians


def run_sensitivity_analysis(ast: Scenario,
                             parameters: Optional[Sequence[InteractiveParameter]] = None,
                             observables: Optional[Sequence[str]] = None,
                             runs: Optional[int] = None,
                             seed: Optional[int] = None,
                             workers: int = 1,
                             validation: Optional[ValidationResult] = None) -> List[SensitivityResult]:
    """Rank interactive parameters by their influence on the observables.

    Args:
        ast: validated scenario
        parameters: parameters to vary (default: extract_interactive_parameters)
        observables: variable/impact names (default: every variable and impact)
        runs: runs per simulation
        seed: seed shared by every simulation so only the pinned parameter
            differs (default: the simulate block, then config/sdl.yaml)
        workers: simulations executed concurrently

    Returns:
        One SensitivityResult per parameter, sorted by descending total_swing
    """
    if parameters is None:
        parameters = extract_interactive_parameters(ast)
    if not parameters:
        return []
    if observables is None:
        observables = [d.name for d in ast.declarations if isinstance(d, (Variable, Impact))]

    validation = validation or validate(ast)
    if seed is None:
        block = ast.simulate_block
        seed = block.seed if block is not None and block.seed is not None else get_engine_defaults()["seed"]
    baseline = {p.name: p.default for p in parameters}

    def run(pins: Dict[str, float]) -> SimulationResult:
        return simulate(ast, runs=runs, seed=seed, parameter_defaults=pins,
                        workers=1, validation=validation)

    jobs = [baseline]
    for p in parameters:
        jobs.append({**baseline, p.name: p.min})
        jobs.append({**baseline, p.name: p.max})

    logger.info(f"Sensitivity analysis: {len(parameters)} parameter(s), {len(jobs)} simulations")
    if workers > 1:
        with ThreadPoolExecutor(max_workers=workers) as executor:
            results = list(executor.map(run, jobs))
    else:
        results = [run(pins) for pins in jobs]

    base = final_medians(results[0], observables)
    ranked: List[SensitivityResult] = []
    for i, p in enumerate(parameters):
        low = final_medians(results[1 + 2 * i], observables)
        high = final_medians(results[2 + 2 * i], observables)

        outputs = []
        for name in observables:
            if name not in base or name not in low or name not in high:
                continue
            if not all(math.isfinite(v) for v in (base[name], low[name], high[name])):
                continue
            swing = abs(high[name] - low[name])
            swing_pct = swing / abs(base[name]) * 100.0 if base[name] != 0 else 0.0
            outputs.append(ObservableSwing(name, base[name], low[name], high[name], swing, swing_pct))

        ranked.append(SensitivityResult(
            parameter=p.name,
            label=p.label,
            outputs=outputs,
            total_swing=sum(o.swing_pct for o in outputs),
        ))

    ranked.sort(key=lambda r: r.total_swing, reverse=True)
    return ranked
