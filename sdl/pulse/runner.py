"""
Pulse orchestration: fetch, calibrate, watch.

Usage:
    from sdl.pulse import pulse, pulse_two_phase

    result = pulse(ast)
    sim = simulate(result.calibrated_ast or ast)

    two_phase = pulse_two_phase(ast)
    show(two_phase.initial)                      # bundled data, available now
    two_phase.refined.add_done_callback(update)  # live data, supersedes initial
"""

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional, Sequence

from sdl.core.types import Scenario
from sdl.pulse.adapters import EurostatAdapter, FallbackAdapter, WorldBankAdapter
from sdl.pulse.adapters.base import DataAdapter
from sdl.pulse.adapters.fallback import FallbackRegistry
from sdl.pulse.calibrator import calibrate_scenario
from sdl.pulse.fetcher import FetchResult, fetch_observed_data
from sdl.pulse.types import PulseResult
from sdl.pulse.watchdog import evaluate_watch_rules

logger = logging.getLogger(__name__)

OFFLINE_ADAPTERS = frozenset(["fallback", "declared-fallback"])


def default_adapters(custom: Optional[Sequence[DataAdapter]] = None) -> List[DataAdapter]:
    """Custom adapters first, then the live sources, bundled data last."""
    return [*(custom or []), EurostatAdapter(), WorldBankAdapter(), FallbackAdapter()]


def _run(ast: Scenario, adapters: Sequence[DataAdapter], timeout_seconds: Optional[float],
         skip_fetch: bool, skip_calibration: bool, skip_watch: bool, phase: str) -> PulseResult:
    fetched = FetchResult() if skip_fetch else fetch_observed_data(ast, adapters, timeout_seconds)

    calibrated_ast, calibrations = None, {}
    if not skip_calibration:
        calibrated_ast, calibrations = calibrate_scenario(ast, fetched.observed)

    alerts = [] if skip_watch else evaluate_watch_rules(ast, fetched.observed)

    is_live = (
        phase == "live"
        and bool(fetched.observed)
        and not fetched.errors
        and any(s.adapter not in OFFLINE_ADAPTERS for s in fetched.observed.values())
    )
    return PulseResult(
        scenario=ast.name,
        observed=fetched.observed,
        alerts=alerts,
        calibrations=calibrations,
        calibrated_ast=calibrated_ast,
        fetched_at=datetime.now(timezone.utc),
        is_live=is_live,
        errors=fetched.errors,
        phase=phase,
    )


def pulse(ast: Scenario, adapters: Optional[Sequence[DataAdapter]] = None,
          timeout_seconds: Optional[float] = None, skip_fetch: bool = False,
          skip_calibration: bool = False, skip_watch: bool = False) -> PulseResult:
    """Run the full Pulse pipeline with live sources.

    Args:
        ast: parsed scenario
        adapters: custom adapters tried before the built-in ones
        timeout_seconds: bound on the whole fetch phase
    """
    return _run(ast, default_adapters(adapters), timeout_seconds,
                skip_fetch, skip_calibration, skip_watch, phase="live")


def pulse_fast(ast: Scenario, registry: Optional[FallbackRegistry] = None,
               skip_calibration: bool = False, skip_watch: bool = False) -> PulseResult:
    """Pulse over bundled datasets only; performs no network I/O."""
    adapters = [FallbackAdapter(registry, max_retries=1)]
    return _run(ast, adapters, None, False, skip_calibration, skip_watch, phase="fast")


@dataclass
class TwoPhasePulse:
    """A fast result available immediately and a live result that supersedes it."""
    initial: PulseResult
    refined: "Future[PulseResult]"

    def latest(self) -> PulseResult:
        """The refined result once it has completed successfully, else the initial one."""
        if self.refined.done() and not self.refined.cancelled() and self.refined.exception() is None:
            return self.refined.result()
        return self.initial

    def wait(self, timeout: Optional[float] = None) -> PulseResult:
        return self.refined.result(timeout=timeout)


def pulse_two_phase(ast: Scenario, adapters: Optional[Sequence[DataAdapter]] = None,
                    timeout_seconds: Optional[float] = None,
                    registry: Optional[FallbackRegistry] = None) -> TwoPhasePulse:
    """Compute the fast phase synchronously and start the live phase in the background."""
    initial = pulse_fast(ast, registry=registry)

    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="sdl-pulse")
    try:
        refined = executor.submit(pulse, ast, adapters, timeout_seconds)
    finally:
        executor.shutdown(wait=False)

    logger.info(f"Pulse fast phase for '{ast.name}': {len(initial.observed)} bundled series; live phase started")
    return TwoPhasePulse(initial=initial, refined=refined)
