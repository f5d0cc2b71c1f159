"""Bundled historical datasets matched against source locators.

Used when live sources are unreachable or no dedicated adapter exists. The
default registry is loaded from ``sdl/pulse/data/fallback.yaml``;
``register_fallback_data`` adds datasets at runtime.
"""

import datetime as dt
import logging
import os
import re
import threading
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Pattern, Union

import yaml

from sdl.pulse.adapters.base import DataAdapter
from sdl.pulse.types import AdapterConfig, ObservedPoint

logger = logging.getLogger(__name__)

FALLBACK_DATA_PATH = os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))),
                                  "data", "fallback.yaml")


@dataclass
class FallbackDataset:
    pattern: Pattern[str]
    source: str
    data: List[Dict[str, Any]]

    def points(self) -> List[ObservedPoint]:
        points = [
            ObservedPoint(dt.date(int(d["year"]), 1, 1), float(d["value"]), self.source,
                          bool(d.get("provisional", False)))
            for d in self.data
        ]
        return sorted(points, key=lambda p: p.date)


class FallbackRegistry:
    """Ordered datasets; the first pattern matching a locator wins."""

    def __init__(self, datasets: Optional[Iterable[FallbackDataset]] = None):
        self._datasets: List[FallbackDataset] = list(datasets or [])
        self._lock = threading.Lock()

    @classmethod
    def from_yaml(cls, path: str = FALLBACK_DATA_PATH) -> "FallbackRegistry":
        try:
            with open(path, "r") as f:
                raw = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            logger.warning(f"Failed to load fallback datasets from {path}: {e}")
            return cls()

        registry = cls()
        for entry in raw.get("datasets", []):
            registry.register(entry["pattern"], entry["source"], entry.get("data", []))
        return registry

    def register(self, pattern: Union[str, Pattern[str]], source: str, data: List[Dict[str, Any]]) -> None:
        compiled = re.compile(pattern, re.IGNORECASE) if isinstance(pattern, str) else pattern
        with self._lock:
            self._datasets.append(FallbackDataset(compiled, source, list(data)))

    def find(self, source_url: str) -> Optional[FallbackDataset]:
        with self._lock:
            datasets = list(self._datasets)
        for dataset in datasets:
            if dataset.pattern.search(source_url):
                return dataset
        return None

    def __len__(self) -> int:
        return len(self._datasets)


_default_registry: Optional[FallbackRegistry] = None
_default_lock = threading.Lock()


def default_registry() -> FallbackRegistry:
    global _default_registry
    with _default_lock:
        if _default_registry is None:
            _default_registry = FallbackRegistry.from_yaml()
        return _default_registry


def register_fallback_data(pattern: Union[str, Pattern[str]], source: str, data: List[Dict[str, Any]]) -> None:
    """Add a dataset to the default registry.

    Args:
        pattern: regex matched against source locators
        source: attribution stored on every point
        data: ``[{"year": 2020, "value": 1.2, "provisional": False}, ...]``
    """
    default_registry().register(pattern, source, data)


class FallbackAdapter(DataAdapter):
    name = "fallback"

    def __init__(self, registry: Optional[FallbackRegistry] = None, **retry):
        super().__init__(**retry)
        self._registry = registry

    @property
    def registry(self) -> FallbackRegistry:
        return self._registry if self._registry is not None else default_registry()

    def can_handle(self, source_url: str) -> bool:
        return self.registry.find(source_url) is not None

    def _fetch_impl(self, config: AdapterConfig) -> List[ObservedPoint]:
        dataset = self.registry.find(config.source_url)
        return dataset.points() if dataset else []
