"""Drift Detector: stable / watch / drifting state machine.

Consumes the time-ordered stream of SimilarityResults (inconclusive results
are skipped) through a rolling window of overall scores.

Per evaluation (window holds k >= min_samples results):
    magnitude = |mean(overall[:k//2]) - mean(overall[k//2:])|, clamped to [0, 1]
    severity  = none < mild (0.10) <= moderate (0.20) <= severe (0.35)
    rate      = (magnitude - previous magnitude) / elapsed days
                (elapsed floored at min_rate_interval_s)

Transitions (at most one upward step per update):
    stable   → watch     severity >= mild
    watch    → drifting  severity >= moderate, or rate >= abrupt_rate
    drifting → watch     recovery_samples evaluations in a row below moderate
    watch    → stable    recovery_samples evaluations in a row below mild

An event is emitted on every upward transition and whenever severity rises
above the level of the last event while in watch/drifting.

Each event also names what moved: features whose mean |deviation| grew by
more than 0.05 between the window halves (ranked by growth, top 5), the
modalities they belong to, and variance/volatility/trend of the window scores.
"""

import logging
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Mapping, Optional

import numpy as np

from cadence.engine.similarity import SimilarityResult
from cadence.history import BoundedHistory

logger = logging.getLogger(__name__)


class DriftState(Enum):
    STABLE = "stable"
    WATCH = "watch"
    DRIFTING = "drifting"


class DriftSeverity(Enum):
    NONE = "none"
    MILD = "mild"
    MODERATE = "moderate"
    SEVERE = "severe"

    @property
    def level(self) -> int:
        return _SEVERITY_ORDER.index(self)


_SEVERITY_ORDER = [
    DriftSeverity.NONE,
    DriftSeverity.MILD,
    DriftSeverity.MODERATE,
    DriftSeverity.SEVERE,
]


class DriftType(Enum):
    GRADUAL = "gradual"
    ABRUPT = "abrupt"


class DriftDirection(Enum):
    IMPROVING = "improving"
    WORSENING = "worsening"
    MIXED = "mixed"


# Keyed "severity:type" first, then "severity". Content is configuration.
DEFAULT_ACTIONS: dict[str, tuple[str, ...]] = {
    "mild": ("continue monitoring",),
    "moderate": ("continue monitoring", "increase sampling"),
    "moderate:abrupt": ("increase sampling", "review recent sessions"),
    "severe": ("increase sampling", "recommend professional follow-up"),
}

SECONDS_PER_DAY = 86400.0

# Per-feature |deviation| change between window halves that counts as movement
DEVIATION_DELTA = 0.05
MAX_PRIMARY_FEATURES = 5


@dataclass(frozen=True)
class StabilityMetrics:
    """Variability of the overall scores in the drift window.

    Attributes:
        variance: Population variance of the scores
        volatility: Mean absolute step between consecutive scores
        trend: Least-squares slope per result (negative when declining)
    """

    variance: float
    volatility: float
    trend: float

    def to_dict(self) -> dict:
        return {
            "variance": self.variance,
            "volatility": self.volatility,
            "trend": self.trend,
        }


@dataclass(frozen=True)
class DriftEvent:
    """One drift classification. Never mutated after emission.

    Attributes:
        drift_type: GRADUAL or ABRUPT
        drift_severity: Severity of the current magnitude
        drift_magnitude: Distance between leading and trailing window means
        drift_direction: Aggregate direction of per-feature deviation change
        drift_rate: Magnitude per day over the window span
        confidence: Sample-count and result-confidence blend in [0, 1]
        detected_at: Timestamp of the result that triggered the event
        recommended_actions: Ordered configured actions
        state: Detector state after the event
        sample_count: Results in the window at detection
        affected_modalities: Modalities with growing deviations, most grown first
        primary_features: Features with the largest deviation growth
        stability_metrics: Variability of the window scores
    """

    drift_type: DriftType
    drift_severity: DriftSeverity
    drift_magnitude: float
    drift_direction: DriftDirection
    drift_rate: float
    confidence: float
    detected_at: datetime
    recommended_actions: tuple[str, ...]
    state: DriftState
    sample_count: int
    affected_modalities: tuple[str, ...] = ()
    primary_features: tuple[str, ...] = ()
    stability_metrics: StabilityMetrics = StabilityMetrics(0.0, 0.0, 0.0)

    def to_dict(self) -> dict:
        return {
            "drift_type": self.drift_type.value,
            "drift_severity": self.drift_severity.value,
            "drift_magnitude": self.drift_magnitude,
            "drift_direction": self.drift_direction.value,
            "drift_rate": self.drift_rate,
            "confidence": self.confidence,
            "detected_at": self.detected_at.isoformat(),
            "recommended_actions": list(self.recommended_actions),
            "state": self.state.value,
            "sample_count": self.sample_count,
            "affected_modalities": list(self.affected_modalities),
            "primary_features": list(self.primary_features),
            "stability_metrics": self.stability_metrics.to_dict(),
        }


class DriftDetector:
    """Rolling-window drift classification over similarity results.

    Args:
        window: Results kept in the rolling window (default: 10)
        min_samples: Results needed before the first evaluation (default: 4)
        mild: Magnitude threshold for MILD (default: 0.10)
        moderate: Magnitude threshold for MODERATE (default: 0.20)
        severe: Magnitude threshold for SEVERE (default: 0.35)
        abrupt_rate: Magnitude increase per day forcing watch → drifting
        recovery_samples: Consecutive calm evaluations before stepping down
        abrupt_concentration: Share of step change marking ABRUPT drift
        abrupt_span: Consecutive steps that may hold the concentrated change
        min_rate_interval_s: Floor on elapsed time in rate computations
        history_limit: Retained events
        actions: Recommended-action lookup (default: DEFAULT_ACTIONS)

    Example:
        >>> detector = DriftDetector()
        >>> for result in results:
        ...     event = detector.update(result)
        >>> detector.state
        <DriftState.DRIFTING: 'drifting'>
    """

    def __init__(
        self,
        window: int = 10,
        min_samples: int = 4,
        mild: float = 0.10,
        moderate: float = 0.20,
        severe: float = 0.35,
        abrupt_rate: float = 2.0,
        recovery_samples: int = 3,
        abrupt_concentration: float = 0.6,
        abrupt_span: int = 2,
        min_rate_interval_s: float = 3600.0,
        history_limit: int = 100,
        actions: Optional[Mapping[str, tuple[str, ...]]] = None,
    ) -> None:
        if min_samples < 2:
            raise ValueError(f"min_samples ({min_samples}) must be >= 2")
        if window < min_samples:
            raise ValueError(f"Window ({window}) must be >= min_samples ({min_samples})")
        if not 0 < mild < moderate < severe <= 1:
            raise ValueError(
                f"Thresholds must satisfy 0 < mild ({mild}) < moderate ({moderate}) "
                f"< severe ({severe}) <= 1"
            )
        if recovery_samples < 1:
            raise ValueError(f"recovery_samples ({recovery_samples}) must be >= 1")
        if min_rate_interval_s <= 0:
            raise ValueError(f"min_rate_interval_s ({min_rate_interval_s}) must be > 0")

        self.window = window
        self.min_samples = min_samples
        self.mild = mild
        self.moderate = moderate
        self.severe = severe
        self.abrupt_rate = abrupt_rate
        self.recovery_samples = recovery_samples
        self.abrupt_concentration = abrupt_concentration
        self.abrupt_span = abrupt_span
        self.min_rate_interval_s = min_rate_interval_s
        self.actions = dict(actions) if actions is not None else dict(DEFAULT_ACTIONS)

        self._history: BoundedHistory[DriftEvent] = BoundedHistory(history_limit)
        self.reset()

    @property
    def state(self) -> DriftState:
        return self._state

    @property
    def history(self) -> tuple[DriftEvent, ...]:
        return self._history.snapshot()

    @property
    def sample_count(self) -> int:
        return len(self._overall)

    def reset(self) -> None:
        """Forget the window and return to STABLE. Event history is kept."""
        self._overall: deque[float] = deque(maxlen=self.window)
        self._times: deque[datetime] = deque(maxlen=self.window)
        self._confidences: deque[float] = deque(maxlen=self.window)
        self._deviations: deque[Mapping[str, float]] = deque(maxlen=self.window)
        self._state = DriftState.STABLE
        self._event_level = 0
        self._calm = 0
        self._last_magnitude: Optional[float] = None
        self._last_time: Optional[datetime] = None

    def classify(self, magnitude: float) -> DriftSeverity:
        if magnitude >= self.severe:
            return DriftSeverity.SEVERE
        if magnitude >= self.moderate:
            return DriftSeverity.MODERATE
        if magnitude >= self.mild:
            return DriftSeverity.MILD
        return DriftSeverity.NONE

    def update(self, result: SimilarityResult) -> Optional[DriftEvent]:
        """Feed one result; return an event if one fired.

        Inconclusive results are ignored and leave the window untouched.
        """
        if result.inconclusive:
            return None

        self._overall.append(result.overall)
        self._times.append(result.timestamp)
        self._confidences.append(result.confidence)
        self._deviations.append({k: abs(v) for k, v in result.deviations.items()})

        if len(self._overall) < self.min_samples:
            return None

        magnitude = self._magnitude()
        severity = self.classify(magnitude)
        rate = self._rate(magnitude, result.timestamp)
        self._last_magnitude = magnitude
        self._last_time = result.timestamp

        emit = self._transition(severity, rate)
        if not emit:
            return None

        event = self._build_event(magnitude, severity, result.timestamp)
        self._event_level = severity.level
        self._history.append(event)
        logger.info(
            "Drift %s: severity=%s magnitude=%.3f type=%s direction=%s",
            event.state.value,
            severity.value,
            magnitude,
            event.drift_type.value,
            event.drift_direction.value,
        )
        return event

    def _transition(self, severity: DriftSeverity, rate: float) -> bool:
        level = severity.level

        if self._state is DriftState.STABLE:
            if level >= DriftSeverity.MILD.level:
                self._state = DriftState.WATCH
                self._calm = 0
                return True
            return False

        if self._state is DriftState.WATCH:
            if level >= DriftSeverity.MODERATE.level or rate >= self.abrupt_rate:
                self._state = DriftState.DRIFTING
                self._calm = 0
                return True
            if level >= DriftSeverity.MILD.level:
                self._calm = 0
                return level > self._event_level
            self._calm += 1
            if self._calm >= self.recovery_samples:
                logger.info("Drift state watch → stable")
                self._state = DriftState.STABLE
                self._calm = 0
                self._event_level = level
            return False

        # DRIFTING
        if level >= DriftSeverity.MODERATE.level:
            self._calm = 0
            return level > self._event_level
        self._calm += 1
        if self._calm >= self.recovery_samples:
            logger.info("Drift state drifting → watch")
            self._state = DriftState.WATCH
            self._calm = 0
            self._event_level = level
        return False

    def _split(self) -> int:
        return len(self._overall) // 2

    def _magnitude(self) -> float:
        values = np.asarray(self._overall)
        half = self._split()
        magnitude = abs(float(np.mean(values[:half]) - np.mean(values[half:])))
        return float(np.clip(magnitude, 0.0, 1.0))

    def _rate(self, magnitude: float, now: datetime) -> float:
        """Magnitude increase per day since the previous evaluation."""
        if self._last_magnitude is None or self._last_time is None:
            return 0.0
        elapsed = max((now - self._last_time).total_seconds(), self.min_rate_interval_s)
        return (magnitude - self._last_magnitude) / (elapsed / SECONDS_PER_DAY)

    def _drift_type(self) -> DriftType:
        steps = np.abs(np.diff(np.asarray(self._overall)))
        total = float(steps.sum())
        if len(steps) <= 2 * self.abrupt_span or total <= 0:
            return DriftType.GRADUAL
        spans = np.convolve(steps, np.ones(self.abrupt_span), mode="valid")
        if float(spans.max()) / total >= self.abrupt_concentration:
            return DriftType.ABRUPT
        return DriftType.GRADUAL

    def _feature_growth(self) -> dict[str, float]:
        """Feature → mean |deviation| of the trailing half minus the leading half."""
        half = self._split()
        leading = list(self._deviations)[:half]
        trailing = list(self._deviations)[half:]
        if not leading or not trailing:
            return {}

        growth = {}
        for key in set().union(*leading) & set().union(*trailing):
            before = [d[key] for d in leading if key in d]
            after = [d[key] for d in trailing if key in d]
            growth[key] = float(np.mean(after) - np.mean(before))
        return growth

    def _direction(self, growth: Mapping[str, float]) -> DriftDirection:
        growing = sum(1 for delta in growth.values() if delta > DEVIATION_DELTA)
        shrinking = sum(1 for delta in growth.values() if delta < -DEVIATION_DELTA)

        moved = growing + shrinking
        if moved:
            if growing / moved >= 0.7:
                return DriftDirection.WORSENING
            if shrinking / moved >= 0.7:
                return DriftDirection.IMPROVING
            return DriftDirection.MIXED

        values = np.asarray(self._overall)
        half = self._split()
        change = float(np.mean(values[half:]) - np.mean(values[:half]))
        if change < 0:
            return DriftDirection.WORSENING
        if change > 0:
            return DriftDirection.IMPROVING
        return DriftDirection.MIXED

    @staticmethod
    def _drifting(growth: Mapping[str, float]) -> tuple[tuple[str, ...], tuple[str, ...]]:
        """(affected modalities, primary features), most grown first."""
        grown = sorted(
            ((key, delta) for key, delta in growth.items() if delta > DEVIATION_DELTA),
            key=lambda item: (-item[1], item[0]),
        )
        modalities: list[str] = []
        for key, _ in grown:
            modality = key.split(".", 1)[0]
            if modality not in modalities:
                modalities.append(modality)
        features = tuple(key for key, _ in grown[:MAX_PRIMARY_FEATURES])
        return tuple(modalities), features

    def _stability_metrics(self) -> StabilityMetrics:
        values = np.asarray(self._overall)
        volatility = float(np.mean(np.abs(np.diff(values)))) if len(values) > 1 else 0.0
        trend = float(np.polyfit(np.arange(len(values)), values, 1)[0]) if len(values) > 1 else 0.0
        return StabilityMetrics(
            variance=float(np.var(values)),
            volatility=volatility,
            trend=trend,
        )

    def _build_event(
        self,
        magnitude: float,
        severity: DriftSeverity,
        detected_at: datetime,
    ) -> DriftEvent:
        span_s = (self._times[-1] - self._times[0]).total_seconds()
        span_days = max(span_s, self.min_rate_interval_s) / SECONDS_PER_DAY
        n = len(self._overall)
        confidence = 0.5 * min(1.0, n / self.window) + 0.5 * float(np.mean(self._confidences))
        drift_type = self._drift_type()
        growth = self._feature_growth()
        affected, primary = self._drifting(growth)

        actions = self.actions.get(
            f"{severity.value}:{drift_type.value}",
            self.actions.get(severity.value, ()),
        )
        return DriftEvent(
            drift_type=drift_type,
            drift_severity=severity,
            drift_magnitude=magnitude,
            drift_direction=self._direction(growth),
            drift_rate=magnitude / span_days,
            confidence=float(np.clip(confidence, 0.0, 1.0)),
            detected_at=detected_at,
            recommended_actions=tuple(actions),
            state=self._state,
            sample_count=n,
            affected_modalities=affected,
            primary_features=primary,
            stability_metrics=self._stability_metrics(),
        )
