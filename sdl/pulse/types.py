"""Data types for live data binding, calibration and watch alerts."""

from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from sdl.core.types import DistributionExpression, Scenario, distribution_to_text


@dataclass(frozen=True)
class ObservedPoint:
    date: date
    value: float
    source: str
    provisional: bool = False

    def to_dict(self) -> Dict[str, Any]:
        d = {"date": self.date.isoformat(), "value": self.value, "source": self.source}
        if self.provisional:
            d["provisional"] = True
        return d


@dataclass
class ObservedSeries:
    """Observations for one bind or calibrate target, oldest first."""
    target: str
    points: List[ObservedPoint]
    source_url: str
    fetched_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    adapter: Optional[str] = None

    @property
    def latest(self) -> Optional[ObservedPoint]:
        return self.points[-1] if self.points else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "target": self.target,
            "source_url": self.source_url,
            "adapter": self.adapter,
            "fetched_at": self.fetched_at.isoformat(),
            "points": [p.to_dict() for p in self.points],
        }


@dataclass(frozen=True)
class AdapterConfig:
    """What an adapter needs to fetch one target."""
    source_url: str
    target: str
    field: Optional[str] = None


class AlertSeverity(Enum):
    WARN = "warn"
    ERROR = "error"


@dataclass
class WatchAlert:
    target: str
    severity: str
    message: str
    actual: float
    assumed: float
    rule: str
    observed_at: Optional[str] = None
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        return {k: v for k, v in d.items() if v is not None}


@dataclass
class CalibrationResult:
    target: str
    original: DistributionExpression
    calibrated: DistributionExpression
    data_points_used: int
    posterior_mean: float
    posterior_std: float
    method: str = "bayesian_update"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "target": self.target,
            "method": self.method,
            "original": distribution_to_text(self.original),
            "calibrated": distribution_to_text(self.calibrated),
            "data_points_used": self.data_points_used,
            "posterior_mean": self.posterior_mean,
            "posterior_std": self.posterior_std,
        }


@dataclass
class FetchFailure:
    target: str
    url: str
    error: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class PulseResult:
    scenario: str
    observed: Dict[str, ObservedSeries] = field(default_factory=dict)
    alerts: List[WatchAlert] = field(default_factory=list)
    calibrations: Dict[str, CalibrationResult] = field(default_factory=dict)
    calibrated_ast: Optional[Scenario] = None
    fetched_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    is_live: bool = False
    errors: List[FetchFailure] = field(default_factory=list)
    phase: str = "live"  # "fast" (bundled data only) or "live"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "scenario": self.scenario,
            "phase": self.phase,
            "is_live": self.is_live,
            "fetched_at": self.fetched_at.isoformat(),
            "observed": {k: v.to_dict() for k, v in self.observed.items()},
            "alerts": [a.to_dict() for a in self.alerts],
            "calibrations": {k: v.to_dict() for k, v in self.calibrations.items()},
            "errors": [e.to_dict() for e in self.errors],
        }
