"""
Expression, distribution and model evaluation.

Pure functions shared by the Monte Carlo engine, the sensitivity analyzer
and the watchdog. Randomness only enters through an explicit
``numpy.random.Generator`` argument.

Two numeric views of an expression exist:

- ``evaluate()`` is arithmetic: ``10%`` is the fraction 0.1.
- ``literal_value()`` is the declared magnitude: ``10%`` stays 10, so an
  assumption declared as ``value: 35%`` is carried around as 35 and its
  ``±X%`` / ``normal(35%, 5%)`` uncertainty lives on the same scale.
"""

import math
from typing import Callable, Dict, List, Mapping, Optional, Sequence

import numpy as np
from scipy.interpolate import CubicSpline

from sdl.core.types import (
    BinaryExpression,
    BooleanLiteral,
    CurrencyLiteral,
    DistributionExpression,
    Expression,
    FunctionCall,
    Identifier,
    ModelExpression,
    NumberLiteral,
    PercentageLiteral,
    StringLiteral,
    UnaryExpression,
)
from sdl.engine.errors import EvaluationError

Env = Mapping[str, float]

# exp() arguments beyond this overflow a float64
_MAX_EXPONENT = 700.0


# ============================================================================
# EXPRESSIONS
# ============================================================================

def _builtin_round(x: float, digits: float = 0) -> float:
    return float(round(x, int(digits)))


def _builtin_clamp(x: float, low: float, high: float) -> float:
    return min(max(x, low), high)


def _builtin_lerp(a: float, b: float, t: float) -> float:
    return a + (b - a) * t


def _builtin_avg(*values: float) -> float:
    return sum(values) / len(values) if values else 0.0


# Out-of-domain inputs give NaN; a sampled operand may stray below zero.
def _builtin_log(x: float, base: Optional[float] = None) -> float:
    if not x > 0 or (base is not None and (not base > 0 or base == 1)):
        return math.nan
    return math.log(x) if base is None else math.log(x, base)


def _builtin_sqrt(x: float) -> float:
    return math.sqrt(x) if x >= 0 else math.nan


BUILTINS: Dict[str, Callable[..., float]] = {
    "min": lambda *xs: min(xs),
    "max": lambda *xs: max(xs),
    "abs": abs,
    "sqrt": _builtin_sqrt,
    "log": _builtin_log,
    "exp": lambda x: math.exp(min(x, _MAX_EXPONENT)),
    "pow": lambda x, y: _power(x, y),
    "round": _builtin_round,
    "clamp": _builtin_clamp,
    "lerp": _builtin_lerp,
    "sum": lambda *xs: float(sum(xs)),
    "avg": _builtin_avg,
}


def _power(base: float, exponent: float) -> float:
    try:
        result = base ** exponent
    except OverflowError:
        return math.inf
    except ZeroDivisionError:
        return 0.0
    if isinstance(result, complex):
        return math.nan
    return float(result)


def evaluate(expr: Expression, env: Env) -> float:
    """Evaluate an expression to a float.

    Comparisons and logical operators produce 1.0 or 0.0; division or modulo
    by zero produces 0.0. ``sqrt``/``log`` outside their domain and a negative
    base raised to a fractional power produce NaN. A dotted identifier such
    as ``energy.demand`` reads the value of its first segment.

    Raises:
        EvaluationError: unknown identifier or function, or a string used as
            a number.
    """
    if isinstance(expr, NumberLiteral):
        return float(expr.value)
    if isinstance(expr, PercentageLiteral):
        return expr.value / 100.0
    if isinstance(expr, CurrencyLiteral):
        return float(expr.value)
    if isinstance(expr, BooleanLiteral):
        return 1.0 if expr.value else 0.0
    if isinstance(expr, StringLiteral):
        raise EvaluationError(f"String \"{expr.value}\" used as a number")

    if isinstance(expr, Identifier):
        try:
            return float(env[expr.root])
        except KeyError:
            raise EvaluationError(f"Unknown identifier '{expr.name}'") from None

    if isinstance(expr, UnaryExpression):
        operand = evaluate(expr.operand, env)
        if expr.operator == "-":
            return -operand
        if expr.operator == "not":
            return 0.0 if operand else 1.0
        return operand

    if isinstance(expr, BinaryExpression):
        op = expr.operator
        left = evaluate(expr.left, env)
        if op == "and":
            return 1.0 if left and evaluate(expr.right, env) else 0.0
        if op == "or":
            return 1.0 if left or evaluate(expr.right, env) else 0.0

        right = evaluate(expr.right, env)
        if op == "+":
            return left + right
        if op == "-":
            return left - right
        if op == "*":
            return left * right
        if op == "/":
            return left / right if right != 0 else 0.0
        if op == "%":
            return math.fmod(left, right) if right != 0 else 0.0
        if op == "^":
            return _power(left, right)
        if op == "==":
            return 1.0 if left == right else 0.0
        if op == "!=":
            return 1.0 if left != right else 0.0
        if op == "<":
            return 1.0 if left < right else 0.0
        if op == "<=":
            return 1.0 if left <= right else 0.0
        if op == ">":
            return 1.0 if left > right else 0.0
        if op == ">=":
            return 1.0 if left >= right else 0.0
        raise EvaluationError(f"Unknown operator '{op}'")

    if isinstance(expr, FunctionCall):
        fn = BUILTINS.get(expr.name)
        if fn is None:
            raise EvaluationError(f"Unknown function '{expr.name}'")
        args = [evaluate(a, env) for a in expr.args]
        kwargs = {k: evaluate(v, env) for k, v in expr.named_args}
        try:
            return float(fn(*args, **kwargs))
        except (TypeError, ValueError) as e:
            raise EvaluationError(f"Bad arguments to {expr.name}(): {e}") from e

    raise EvaluationError(f"Cannot evaluate {type(expr).__name__}")


def literal_value(expr: Expression, env: Optional[Env] = None) -> float:
    """Declared magnitude of a value: percentages keep their 0-100 scale."""
    while isinstance(expr, UnaryExpression) and expr.operator in ("+", "±"):
        expr = expr.operand
    if isinstance(expr, PercentageLiteral):
        return float(expr.value)
    if isinstance(expr, UnaryExpression) and expr.operator == "-":
        return -literal_value(expr.operand, env)
    return evaluate(expr, env or {})


# ============================================================================
# DISTRIBUTIONS
# ============================================================================

def _triangular(rng: np.random.Generator, low: float, mode: float, high: float) -> float:
    if high <= low:
        return low
    u = rng.random()
    cut = (mode - low) / (high - low)
    if u < cut:
        return low + math.sqrt(u * (high - low) * (mode - low))
    return high - math.sqrt((1 - u) * (high - low) * (high - mode))


def sample_distribution(dist: DistributionExpression, base: float,
                        rng: np.random.Generator, env: Optional[Env] = None) -> float:
    """Draw one value of ``dist`` around the declared ``base`` value.

    Args:
        dist: distribution node; parameters are read with ``literal_value``
        base: declared (or interpolated) value the distribution perturbs
        rng: stream owned by the quantity being sampled
        env: names available to parameter expressions

    Returns:
        The sampled value, or ``base`` when parameters are missing.
    """
    args = dist.arguments()
    if any(a is None for a in args):
        return base
    params = [literal_value(a, env) for a in args]

    if dist.kind == "normal":
        if dist.relative:
            return float(rng.normal(base, abs(base) * abs(params[0]) / 100.0))
        if len(params) == 1:
            return float(rng.normal(base, abs(params[0])))
        if len(params) >= 2:
            return float(rng.normal(params[0], abs(params[1])))
        return base

    if dist.kind == "uniform" and len(params) >= 2:
        low, high = params[0], params[1]
        if base != 0:
            low, high = low * base, high * base
        return float(rng.uniform(min(low, high), max(low, high)))

    if dist.kind == "triangular" and len(params) >= 3:
        return _triangular(rng, *params[:3])

    if dist.kind == "beta" and len(params) >= 2:
        return float(rng.beta(params[0], params[1]))

    if dist.kind == "lognormal" and len(params) >= 2:
        return float(math.exp(min(rng.normal(params[0], abs(params[1])), _MAX_EXPONENT)))

    return base


def distribution_moments(dist: DistributionExpression, base: float,
                         env: Optional[Env] = None) -> Optional[tuple]:
    """(mean, std) of ``dist`` around ``base``; None when parameters are missing."""
    args = dist.arguments()
    if not args or any(a is None for a in args):
        return None
    p = [literal_value(a, env) for a in args]

    if dist.kind == "normal":
        if dist.relative:
            return base, abs(base) * abs(p[0]) / 100.0
        if len(p) == 1:
            return base, abs(p[0])
        return p[0], abs(p[1])
    if dist.kind == "uniform" and len(p) >= 2:
        low, high = (p[0] * base, p[1] * base) if base != 0 else (p[0], p[1])
        return (low + high) / 2, abs(high - low) / math.sqrt(12)
    if dist.kind == "triangular" and len(p) >= 3:
        a, c, b = p[:3]
        var = (a * a + b * b + c * c - a * b - a * c - b * c) / 18
        return (a + b + c) / 3, math.sqrt(max(var, 0.0))
    if dist.kind == "beta" and len(p) >= 2:
        a, b = p[:2]
        total = a + b
        return a / total, math.sqrt(a * b / (total * total * (total + 1)))
    if dist.kind == "lognormal" and len(p) >= 2:
        mu, sigma = p[:2]
        mean = math.exp(mu + sigma * sigma / 2)
        return mean, mean * math.sqrt(math.expm1(sigma * sigma))
    return None


# ============================================================================
# MODELS
# ============================================================================

def _logistic(x: float) -> float:
    return 1.0 / (1.0 + math.exp(max(-_MAX_EXPONENT, min(-x, _MAX_EXPONENT))))


def evaluate_model(model: ModelExpression, t: float, t0: float, env: Optional[Env] = None) -> float:
    """Value of a parametric growth model at time ``t`` (years), starting at ``t0``."""
    env = env or {}

    def param(default: Optional[float], *names: str) -> Optional[float]:
        expr = model.param(*names)
        return literal_value(expr, env) if expr is not None else default

    dt = t - t0

    if model.kind == "linear":
        return param(0.0, "intercept") + param(0.0, "slope") * dt

    if model.kind == "exponential":
        rate = param(0.05, "rate")
        return param(1.0, "base") * math.exp(max(-_MAX_EXPONENT, min(rate * dt, _MAX_EXPONENT)))

    if model.kind == "logistic":
        k = param(0.1, "k", "rate")
        midpoint = param(t0 + 10, "midpoint")
        ceiling = param(1.0, "max", "ceiling")
        return ceiling * _logistic(k * (t - midpoint))

    if model.kind == "sigmoid":
        return _logistic(param(0.5, "k") * (t - param(t0 + 10, "midpoint")))

    if model.kind == "polynomial":
        result, i = 0.0, 0
        while model.param(f"c{i}") is not None:
            result += param(0.0, f"c{i}") * dt ** i
            i += 1
        return result

    # spline only shapes interpolation between anchors
    return 0.0


# ============================================================================
# INTERPOLATION
# ============================================================================

def build_interpolator(times: Sequence[float], values: Sequence[float],
                       method: str = "linear") -> Callable[[float], float]:
    """Interpolating function through anchors, held flat outside their range."""
    xs = np.asarray(times, dtype=float)
    ys = np.asarray(values, dtype=float)

    if len(xs) == 0:
        raise ValueError("At least one anchor is required")
    if len(xs) == 1:
        only = float(ys[0])
        return lambda t: only

    first, last = xs[0], xs[-1]

    if method == "step":
        def step(t: float) -> float:
            index = int(np.searchsorted(xs, t, side="right")) - 1
            return float(ys[max(0, min(index, len(ys) - 1))])
        return step

    if method == "spline" and len(xs) >= 3:
        spline = CubicSpline(xs, ys, bc_type="natural")

        def smooth(t: float) -> float:
            if t <= first:
                return float(ys[0])
            if t >= last:
                return float(ys[-1])
            return float(spline(t))
        return smooth

    return lambda t: float(np.interp(t, xs, ys))


def interpolate(anchors: Sequence[tuple], t: float, method: str = "linear") -> float:
    """Interpolate ``[(time, value), ...]`` anchors at time ``t``."""
    times: List[float] = [a[0] for a in anchors]
    values: List[float] = [a[1] for a in anchors]
    return build_interpolator(times, values, method)(t)
