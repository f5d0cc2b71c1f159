"""
Pulse: live data binding, calibration and watch alerts.

Reads ``bind``, ``calibrate`` and ``watch`` declarations, fetches observed
series through pluggable adapters, calibrates declared uncertainty and
evaluates watch rules. Data-source failures are logged and recorded in the
result; they never propagate to the caller.
"""

from sdl.pulse.adapters import (
    CallableAdapter,
    DataAdapter,
    DataSourceError,
    EurostatAdapter,
    FallbackAdapter,
    FallbackRegistry,
    WorldBankAdapter,
    register_fallback_data,
)
from sdl.pulse.calibrator import calibrate_scenario
from sdl.pulse.fetcher import (
    FetchResult,
    FetchTarget,
    extract_bind_targets,
    extract_calibrate_targets,
    fetch_observed_data,
)
from sdl.pulse.runner import TwoPhasePulse, default_adapters, pulse, pulse_fast, pulse_two_phase
from sdl.pulse.types import (
    AdapterConfig,
    AlertSeverity,
    CalibrationResult,
    FetchFailure,
    ObservedPoint,
    ObservedSeries,
    PulseResult,
    WatchAlert,
)
from sdl.pulse.watchdog import evaluate_watch_rules

__all__ = [
    "AdapterConfig",
    "AlertSeverity",
    "CalibrationResult",
    "CallableAdapter",
    "DataAdapter",
    "DataSourceError",
    "EurostatAdapter",
    "FallbackAdapter",
    "FallbackRegistry",
    "FetchFailure",
    "FetchResult",
    "FetchTarget",
    "ObservedPoint",
    "ObservedSeries",
    "PulseResult",
    "TwoPhasePulse",
    "WatchAlert",
    "WorldBankAdapter",
    "calibrate_scenario",
    "default_adapters",
    "evaluate_watch_rules",
    "extract_bind_targets",
    "extract_calibrate_targets",
    "fetch_observed_data",
    "pulse",
    "pulse_fast",
    "pulse_two_phase",
    "register_fallback_data",
]
