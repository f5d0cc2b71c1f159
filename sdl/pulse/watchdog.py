"""
Watch rule evaluation.

Rules such as::

    warn  when: actual < assumed * 0.8
    error when: actual < assumed * 0.5

are evaluated with ``actual`` bound to the latest observed value of the
watched target and ``assumed`` to its declared value: the assumption's or
parameter's value, or for a variable its anchor interpolation at the date
of that observation. Each satisfied rule yields one ``WatchAlert``.
"""

import logging
from typing import List, Mapping, Optional

from sdl.core.types import (
    Assumption,
    Parameter,
    Scenario,
    Variable,
    Watch,
    expression_to_text,
    year_fraction,
)
from sdl.engine.errors import EvaluationError
from sdl.engine.evaluator import build_interpolator, evaluate, literal_value
from sdl.pulse.types import AlertSeverity, ObservedSeries, WatchAlert

logger = logging.getLogger(__name__)


def _constants(ast: Scenario) -> dict:
    env = {}
    for decl in ast.declarations:
        if isinstance(decl, (Assumption, Parameter)) and decl.value is not None:
            try:
                env[decl.name] = literal_value(decl.value, env)
            except EvaluationError:
                continue
    return env


def assumed_value(ast: Scenario, target: str, at_year: float, env: Optional[dict] = None) -> Optional[float]:
    """Declared value of ``target`` at time ``at_year``; None when it has none."""
    decl = ast.find(target.split(".", 1)[0])
    env = env if env is not None else _constants(ast)

    if isinstance(decl, (Assumption, Parameter)):
        return env.get(decl.name)
    if isinstance(decl, Variable) and decl.timeseries:
        try:
            values = [literal_value(e.value, env) for e in decl.timeseries]
        except EvaluationError:
            return None
        method = "spline" if decl.model is not None and decl.model.kind == "spline" else decl.interpolation
        interpolator = build_interpolator([e.date.to_year() for e in decl.timeseries], values, method or "linear")
        return interpolator(at_year)
    return None


def _watch_blocks(ast: Scenario):
    for decl in ast.declarations:
        if isinstance(decl, Assumption) and decl.watch is not None:
            yield decl.name, decl.watch
    for decl in ast.of_type(Watch):
        if decl.target:
            yield decl.target, decl


def evaluate_watch_rules(ast: Scenario, observed: Mapping[str, ObservedSeries]) -> List[WatchAlert]:
    """Alerts for every satisfied watch rule with observations available."""
    alerts: List[WatchAlert] = []
    env = _constants(ast)

    for target, watch in _watch_blocks(ast):
        series = observed.get(target)
        if series is None or series.latest is None:
            continue
        latest = series.latest
        assumed = assumed_value(ast, target, year_fraction(latest.date), env)
        if assumed is None:
            logger.debug(f"Watch on '{target}' skipped: no declared value to compare against")
            continue

        for rule in watch.rules:
            try:
                triggered = evaluate(rule.condition, {"actual": latest.value, "assumed": assumed})
            except EvaluationError as e:
                logger.warning(f"Watch rule on '{target}' could not be evaluated: {e}")
                continue
            if not triggered:
                continue

            severity = AlertSeverity(rule.severity)
            rule_text = f"{severity.value} when: {expression_to_text(rule.condition)}"
            alerts.append(WatchAlert(
                target=target,
                severity=severity.value,
                message=(
                    f"{target}: observed value {latest.value:.2f} ({latest.date.isoformat()}) "
                    f"triggered '{rule_text}' against assumed value {assumed:.2f}"
                ),
                actual=latest.value,
                assumed=assumed,
                rule=rule_text,
                observed_at=latest.date.isoformat(),
            ))

    if alerts:
        logger.info(f"{len(alerts)} watch alert(s) for '{ast.name}'")
    return alerts
