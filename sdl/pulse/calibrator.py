"""
Bayesian calibration of declared uncertainty against observed data.

Reads ``calibrate`` declarations, restricts each target's observations to
the configured window, and combines the prior with the observed sample:

- bayesian_update: conjugate normal-normal update (default); lognormal
  priors are updated in log space
- maximum_likelihood: sample mean and sample standard deviation
- ensemble: prior and observed mean blended with weight min(0.7, n/20)

The result is a NEW scenario built with ``dataclasses.replace``; the input
AST is never mutated. The window ends at the latest observation rather
than today's date, and the calibrated scenario remembers the original
prior, so calibrating again with the same data gives the same posterior.
"""

import logging
import math
from dataclasses import dataclass, replace
from typing import Dict, List, Mapping, Optional, Tuple

import numpy as np

from sdl.config import get_pulse_defaults
from sdl.core.types import (
    Assumption,
    Calibrate,
    DistributionExpression,
    Expression,
    NumberLiteral,
    Parameter,
    PercentageLiteral,
    Scenario,
    UnaryExpression,
    Variable,
    year_fraction,
)
from sdl.engine.errors import EvaluationError
from sdl.engine.evaluator import distribution_moments, literal_value
from sdl.pulse.types import CalibrationResult, ObservedSeries

logger = logging.getLogger(__name__)

ENSEMBLE_MAX_WEIGHT = 0.7
ENSEMBLE_FULL_WEIGHT_POINTS = 20


@dataclass
class Prior:
    mean: float
    std: float
    relative: bool = False
    log_space: bool = False


# ============================================================================
# UPDATE RULES
# ============================================================================

def bayesian_normal_update(prior_mean: float, prior_std: float, values: List[float]) -> Tuple[float, float]:
    """Conjugate normal-normal update with the sample variance as likelihood noise.

    Returns:
        (posterior_mean, posterior_std); the prior unchanged when there is
        no data or the prior has no spread
    """
    if not values or prior_std <= 0:
        return prior_mean, prior_std

    n = len(values)
    sample = np.asarray(values, dtype=float)
    obs_mean = float(sample.mean())
    obs_var = float(sample.var(ddof=1)) if n > 1 else prior_std ** 2
    if obs_var <= 0:
        obs_var = prior_std ** 2

    prior_precision = 1.0 / prior_std ** 2
    likelihood_precision = n / obs_var
    posterior_precision = prior_precision + likelihood_precision

    mean = (prior_precision * prior_mean + likelihood_precision * obs_mean) / posterior_precision
    return mean, math.sqrt(1.0 / posterior_precision)


def maximum_likelihood(prior_std: float, values: List[float]) -> Tuple[float, float]:
    sample = np.asarray(values, dtype=float)
    std = float(sample.std(ddof=1)) if len(values) > 1 else prior_std
    return float(sample.mean()), std


def ensemble(prior_mean: float, prior_std: float, values: List[float]) -> Tuple[float, float]:
    weight = min(ENSEMBLE_MAX_WEIGHT, len(values) / ENSEMBLE_FULL_WEIGHT_POINTS)
    obs_mean = float(np.mean(values))
    return prior_mean * (1 - weight) + obs_mean * weight, prior_std * (1 - weight * 0.5)


# ============================================================================
# PRIORS AND POSTERIORS
# ============================================================================

def _base_value(target, observed_values: List[float]) -> float:
    expr: Optional[Expression] = None
    if isinstance(target, (Assumption, Parameter)):
        expr = target.value
    elif isinstance(target, Variable) and target.timeseries:
        expr = target.timeseries[-1].value

    base = 0.0
    if expr is not None:
        try:
            base = literal_value(expr)
        except EvaluationError:
            base = 0.0
    if base == 0.0 and observed_values:
        base = float(np.mean(observed_values))
    return base


def _prior(dist: DistributionExpression, base: float) -> Optional[Prior]:
    if dist.kind == "lognormal":
        args = dist.arguments()
        if len(args) < 2 or any(a is None for a in args):
            return None
        return Prior(literal_value(args[0]), abs(literal_value(args[1])), log_space=True)

    moments = distribution_moments(dist, base)
    if moments is None:
        return None
    return Prior(moments[0], moments[1], relative=dist.relative)


def _like(value: float, template: Optional[Expression]) -> Expression:
    """Number literal keeping the percentage form of the prior's parameter."""
    while isinstance(template, UnaryExpression) and template.operator in ("+", "±"):
        template = template.operand
    if isinstance(template, PercentageLiteral):
        return PercentageLiteral(value)
    return NumberLiteral(value)


def _posterior(dist: DistributionExpression, prior: Prior, mean: float, std: float) -> DistributionExpression:
    if prior.log_space:
        return DistributionExpression("lognormal", (NumberLiteral(mean), NumberLiteral(std)), span=dist.span)
    if prior.relative:
        pct = std / (abs(mean) or 1.0) * 100.0
        return DistributionExpression("normal", (UnaryExpression("±", PercentageLiteral(pct)),), span=dist.span)

    args = dist.arguments() if dist.kind == "normal" else ()
    mean_template = args[0] if len(args) >= 2 else None
    std_template = args[-1] if args else None
    return DistributionExpression("normal", (_like(mean, mean_template), _like(std, std_template)), span=dist.span)


# ============================================================================
# SCENARIO CALIBRATION
# ============================================================================

def _window_values(series: ObservedSeries, window_years: float) -> List[float]:
    latest = year_fraction(series.points[-1].date)
    return [p.value for p in series.points if year_fraction(p.date) >= latest - window_years - 1e-9]


def calibrate_scenario(ast: Scenario, observed: Mapping[str, ObservedSeries],
                       window_years: Optional[float] = None) -> Tuple[Scenario, Dict[str, CalibrationResult]]:
    """Calibrate every ``calibrate`` target that has observations.

    Args:
        ast: scenario to calibrate (not modified)
        observed: target name -> observed series
        window_years: window used when a calibrate block declares none

    Returns:
        (calibrated_ast, results); ``ast`` itself when nothing was calibrated
    """
    if window_years is None:
        window_years = get_pulse_defaults()["calibration_window_years"]

    declarations = list(ast.declarations)
    index_of = {getattr(d, "name", None): i for i, d in reversed(list(enumerate(declarations)))
                if isinstance(d, (Assumption, Parameter, Variable))}
    results: Dict[str, CalibrationResult] = {}

    for cal_index, cal in enumerate(ast.declarations):
        if not isinstance(cal, Calibrate):
            continue
        series = observed.get(cal.target)
        if series is None or not series.points:
            continue
        target_index = index_of.get(cal.target)
        if target_index is None:
            logger.warning(f"Calibration target '{cal.target}' has no uncertainty to calibrate")
            continue

        target = declarations[target_index]
        dist = cal.prior or target.uncertainty
        if dist is None:
            logger.warning(f"Calibration target '{cal.target}' declares no prior or uncertainty")
            continue

        window = cal.window.years if cal.window is not None else window_years
        values = _window_values(series, window)
        if not values:
            continue

        try:
            prior = _prior(dist, _base_value(target, values))
        except EvaluationError as e:
            logger.warning(f"Prior of '{cal.target}' cannot be evaluated: {e}")
            continue
        if prior is None:
            continue

        if prior.log_space:
            positives = [math.log(v) for v in values if v > 0]
            if not positives:
                logger.warning(f"No positive observations for lognormal prior of '{cal.target}'")
                continue
            values = positives

        method = cal.method or "bayesian_update"
        if method == "maximum_likelihood":
            mean, std = maximum_likelihood(prior.std, values)
        elif method == "ensemble":
            mean, std = ensemble(prior.mean, prior.std, values)
        else:
            mean, std = bayesian_normal_update(prior.mean, prior.std, values)

        posterior = _posterior(dist, prior, mean, std)
        declarations[target_index] = replace(target, uncertainty=posterior)
        if cal.prior is None:
            declarations[cal_index] = replace(cal, prior=dist)

        results[cal.target] = CalibrationResult(
            target=cal.target,
            original=dist,
            calibrated=posterior,
            data_points_used=len(values),
            posterior_mean=mean,
            posterior_std=std,
            method=method,
        )
        logger.info(
            f"Calibrated '{cal.target}' ({method}, {len(values)} points): "
            f"mean {prior.mean:.4g} -> {mean:.4g}, std {prior.std:.4g} -> {std:.4g}"
        )

    if not results:
        return ast, results
    return replace(ast, declarations=tuple(declarations)), results
