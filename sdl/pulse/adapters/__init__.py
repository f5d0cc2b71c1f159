"""Data-source adapters for Pulse."""

from sdl.pulse.adapters.base import CallableAdapter, DataAdapter, DataSourceError
from sdl.pulse.adapters.eurostat import EurostatAdapter
from sdl.pulse.adapters.fallback import (
    FallbackAdapter,
    FallbackRegistry,
    default_registry,
    register_fallback_data,
)
from sdl.pulse.adapters.worldbank import WorldBankAdapter

__all__ = [
    "CallableAdapter",
    "DataAdapter",
    "DataSourceError",
    "EurostatAdapter",
    "FallbackAdapter",
    "FallbackRegistry",
    "WorldBankAdapter",
    "default_registry",
    "register_fallback_data",
]
