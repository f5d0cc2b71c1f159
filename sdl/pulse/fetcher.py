"""
Observed-data fetching for bind and calibrate targets.

Scans the AST for ``bind`` blocks (inside assumptions) and ``calibrate``
declarations and fetches every target concurrently. For each target the
adapters that can handle its locator are tried in order; a failing or empty
adapter falls through to the next one. Targets that end up with no data
are recorded as errors and skipped; nothing here raises into the caller.
"""

import datetime as dt
import logging
import math
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from sdl.config import get_pulse_defaults
from sdl.core.types import Assumption, Calibrate, Expression, Scenario
from sdl.engine.errors import EvaluationError
from sdl.engine.evaluator import evaluate, literal_value
from sdl.pulse.adapters.base import DataAdapter
from sdl.pulse.types import AdapterConfig, FetchFailure, ObservedPoint, ObservedSeries

logger = logging.getLogger(__name__)

MAX_FETCH_WORKERS = 8


@dataclass(frozen=True)
class FetchTarget:
    target: str
    source_url: str
    field: Optional[str] = None
    transform: Optional[Expression] = None
    fallback: Optional[Expression] = None


@dataclass
class FetchResult:
    observed: Dict[str, ObservedSeries] = field(default_factory=dict)
    errors: List[FetchFailure] = field(default_factory=list)


def extract_bind_targets(ast: Scenario) -> List[FetchTarget]:
    targets = []
    for decl in ast.of_type(Assumption):
        if decl.bind is None or not decl.bind.source:
            continue
        targets.append(FetchTarget(
            target=decl.name,
            source_url=decl.bind.source,
            field=decl.bind.field,
            transform=decl.bind.transform,
            fallback=decl.bind.fallback,
        ))
    return targets


def extract_calibrate_targets(ast: Scenario) -> List[FetchTarget]:
    return [FetchTarget(target=decl.target, source_url=decl.historical)
            for decl in ast.of_type(Calibrate) if decl.historical]


def _apply_transform(points: List[ObservedPoint], transform: Optional[Expression]) -> List[ObservedPoint]:
    if transform is None:
        return points
    transformed = []
    for p in points:
        value = evaluate(transform, {"value": p.value})
        # out-of-domain transforms yield NaN; such points carry no information
        if math.isfinite(value):
            transformed.append(ObservedPoint(p.date, value, p.source, p.provisional))
    return transformed


def fetch_target(target: FetchTarget, adapters: Sequence[DataAdapter]) -> Tuple[Optional[ObservedSeries], Optional[str]]:
    """Fetch one target through the first adapter that yields data.

    Returns:
        (series, None) on success, (None, error_message) otherwise
    """
    config = AdapterConfig(source_url=target.source_url, target=target.target, field=target.field)
    matching = [a for a in adapters if a.can_handle(target.source_url)]
    problems = []

    for adapter in matching:
        points, error = adapter.fetch(config)
        if error:
            logger.warning(f"{adapter.name} failed for '{target.target}': {error}")
            problems.append(f"{adapter.name}: {error}")
            continue
        if not points:
            continue
        try:
            points = _apply_transform(points, target.transform)
        except EvaluationError as e:
            return None, f"transform of '{target.target}' failed: {e}"
        if not points:
            problems.append(f"{adapter.name}: transform left no finite values")
            continue
        return ObservedSeries(target.target, points, target.source_url, adapter=adapter.name), None

    if target.fallback is not None:
        try:
            value = literal_value(target.fallback)
        except EvaluationError as e:
            return None, f"fallback of '{target.target}' is not a number: {e}"
        logger.info(f"Using declared fallback {value:g} for '{target.target}'")
        point = ObservedPoint(dt.date.today(), value, "declared fallback", provisional=True)
        return ObservedSeries(target.target, [point], target.source_url, adapter="declared-fallback"), None

    if not matching:
        return None, f"No adapter found for {target.source_url}"
    detail = "; ".join(problems) if problems else "all adapters returned no data"
    return None, f"No data for {target.source_url} ({detail})"


def fetch_observed_data(ast: Scenario, adapters: Sequence[DataAdapter],
                        timeout_seconds: Optional[float] = None) -> FetchResult:
    """Fetch every bind and calibrate target of ``ast``.

    Bind targets take precedence over a calibrate target of the same name.
    Targets still running after ``timeout_seconds`` are recorded as errors.
    """
    if timeout_seconds is None:
        timeout_seconds = get_pulse_defaults()["timeout_seconds"]

    targets: Dict[str, FetchTarget] = {}
    for target in extract_bind_targets(ast) + extract_calibrate_targets(ast):
        targets.setdefault(target.target, target)

    result = FetchResult()
    if not targets:
        return result

    executor = ThreadPoolExecutor(max_workers=min(MAX_FETCH_WORKERS, len(targets)))
    try:
        futures = {executor.submit(fetch_target, t, adapters): t for t in targets.values()}
        done, not_done = wait(futures, timeout=timeout_seconds)
    finally:
        executor.shutdown(wait=False, cancel_futures=True)

    for future, target in futures.items():
        if future in not_done:
            message = f"Timed out after {timeout_seconds:g}s"
            logger.warning(f"Fetch of '{target.target}' from {target.source_url}: {message}")
            result.errors.append(FetchFailure(target.target, target.source_url, message))
            continue
        series, error = future.result()
        if series is not None:
            result.observed[target.target] = series
        else:
            result.errors.append(FetchFailure(target.target, target.source_url, error))

    # keep declaration order regardless of completion order
    order = list(targets)
    result.observed = dict(sorted(result.observed.items(), key=lambda kv: order.index(kv[0])))
    result.errors.sort(key=lambda e: order.index(e.target))
    logger.info(f"Fetched {len(result.observed)}/{len(targets)} target(s), {len(result.errors)} error(s)")
    return result
