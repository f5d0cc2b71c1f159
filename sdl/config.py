"""Runtime defaults for the engine and the Pulse data layer.

Values come from ``config/sdl.yaml`` when present and fall back to the
module-level defaults below.
"""

import logging
import os
from typing import Any, Dict, List

import yaml

logger = logging.getLogger(__name__)

DEFAULT_RUNS = 2000
DEFAULT_SEED = 42
DEFAULT_PERCENTILES: List[float] = [5, 25, 50, 75, 95]
DEFAULT_CONVERGENCE = 0.01
DEFAULT_WORKERS = 1

DEFAULT_FETCH_TIMEOUT_SECONDS = 10.0
DEFAULT_CALIBRATION_WINDOW_YEARS = 5.0

DEFAULT_MAX_RETRIES = 2
DEFAULT_INITIAL_BACKOFF_SECONDS = 0.5
DEFAULT_BACKOFF_MULTIPLIER = 2


def load_config() -> Dict[str, Any]:
    """
    Load configuration from config/sdl.yaml.

    Returns:
        Config dict or empty dict if file not found
    """
    config_paths = [
        "config/sdl.yaml",
        os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "config/sdl.yaml"),
    ]

    for path in config_paths:
        if os.path.exists(path):
            try:
                with open(path, "r") as f:
                    return yaml.safe_load(f) or {}
            except (OSError, yaml.YAMLError) as e:
                logger.warning(f"Failed to load config from {path}: {e}")

    return {}


def get_engine_defaults() -> Dict[str, Any]:
    """Engine options used when neither the caller nor the simulate block sets them."""
    engine = load_config().get("engine", {}) or {}
    return {
        "runs": int(engine.get("runs", DEFAULT_RUNS)),
        "seed": int(engine.get("seed", DEFAULT_SEED)),
        "percentiles": list(engine.get("percentiles", DEFAULT_PERCENTILES)),
        "convergence": float(engine.get("convergence", DEFAULT_CONVERGENCE)),
        "workers": int(engine.get("workers", DEFAULT_WORKERS)),
    }


def get_pulse_defaults() -> Dict[str, Any]:
    pulse = load_config().get("pulse", {}) or {}
    return {
        "timeout_seconds": float(pulse.get("timeout_seconds", DEFAULT_FETCH_TIMEOUT_SECONDS)),
        "calibration_window_years": float(
            pulse.get("calibration_window_years", DEFAULT_CALIBRATION_WINDOW_YEARS)
        ),
    }


def get_retry_config() -> Dict[str, Any]:
    """
    Get adapter retry configuration, preferring config/sdl.yaml over defaults.

    Returns:
        Dict with max_retries, initial_backoff_seconds, backoff_multiplier
    """
    retry_config = (load_config().get("pulse", {}) or {}).get("retry", {}) or {}

    return {
        "max_retries": retry_config.get("max_retries", DEFAULT_MAX_RETRIES),
        "initial_backoff_seconds": retry_config.get("initial_backoff_seconds", DEFAULT_INITIAL_BACKOFF_SECONDS),
        "backoff_multiplier": retry_config.get("backoff_multiplier", DEFAULT_BACKOFF_MULTIPLIER),
    }
