"""Data-source port: abstract adapter with retry logic."""

import logging
import time
from abc import ABC, abstractmethod
from typing import Callable, List, Optional, Tuple

from sdl.config import get_retry_config
from sdl.pulse.types import AdapterConfig, ObservedPoint

logger = logging.getLogger(__name__)


class DataSourceError(Exception):
    """Raised when a data source cannot deliver observations."""
    def __init__(self, source: str, message: str, original_error: Optional[Exception] = None):
        self.source = source
        self.message = message
        self.original_error = original_error
        super().__init__(f"{source}: {message}")


class DataAdapter(ABC):
    """Fetches an ordered observed series for a source locator.

    Subclasses implement ``can_handle`` and ``_fetch_impl``; ``fetch`` adds
    retries with exponential backoff and never raises.
    """

    name = "adapter"

    def __init__(self, max_retries: Optional[int] = None,
                 initial_backoff_seconds: Optional[float] = None,
                 backoff_multiplier: Optional[float] = None):
        retry = get_retry_config()
        self.max_retries = max(1, int(retry["max_retries"] if max_retries is None else max_retries))
        self.initial_backoff_seconds = float(
            retry["initial_backoff_seconds"] if initial_backoff_seconds is None else initial_backoff_seconds)
        self.backoff_multiplier = float(
            retry["backoff_multiplier"] if backoff_multiplier is None else backoff_multiplier)

    @abstractmethod
    def can_handle(self, source_url: str) -> bool:
        """Whether this adapter understands the locator."""

    @abstractmethod
    def _fetch_impl(self, config: AdapterConfig) -> List[ObservedPoint]:
        """
        Internal fetch implementation - to be overridden by subclasses.

        Returns:
            Observations sorted by date (empty when the source has none)

        Raises:
            DataSourceError on fetch failure
        """

    def fetch(self, config: AdapterConfig) -> Tuple[List[ObservedPoint], Optional[str]]:
        """
        Fetch with automatic retries and exponential backoff.

        Returns:
            Tuple of (points, error_message)
            - On success: (points, None)
            - On failure: ([], error_message)
        """
        last_error = None
        backoff = self.initial_backoff_seconds

        for attempt in range(1, self.max_retries + 1):
            try:
                return self._fetch_impl(config), None
            except DataSourceError as e:
                last_error = str(e)
                if attempt < self.max_retries:
                    logger.warning(f"Retry {attempt}/{self.max_retries} for {self.name} in {backoff}s: {e}")
                    time.sleep(backoff)
                    backoff *= self.backoff_multiplier
                else:
                    logger.error(f"Failed after {self.max_retries} attempts for {self.name}: {e}")

        return [], last_error


class CallableAdapter(DataAdapter):
    """Wraps a plain ``locator -> points`` function as an adapter."""

    def __init__(self, fn: Callable[[str], List[ObservedPoint]], name: str = "custom",
                 pattern: Optional[Callable[[str], bool]] = None, **retry):
        super().__init__(**retry)
        self.fn = fn
        self.name = name
        self.pattern = pattern

    def can_handle(self, source_url: str) -> bool:
        return self.pattern(source_url) if self.pattern is not None else True

    def _fetch_impl(self, config: AdapterConfig) -> List[ObservedPoint]:
        try:
            points = self.fn(config.source_url)
        except DataSourceError:
            raise
        except (OSError, ValueError, KeyError) as e:
            raise DataSourceError(self.name, f"fetch of {config.source_url} failed: {e}", e) from e
        return sorted(points or [], key=lambda p: p.date)
