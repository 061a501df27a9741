"""Similarity Scorer: how closely one vector matches the baseline.

For every feature present in both the vector and the baseline (with enough
baseline samples):
    z = normalize(x, stats)                  signed, z-score by default
    d = 1 - exp(-|z| / 2)                    rescaled deviation in [0, 1)
    reliability = 1 / (1 + std / |mean|)     stable, large features weigh more
    w = modality_weight / modality_size * reliability

Aggregates:
    overall      = Σ w(1 - d) / Σ w
    contribution = (w / Σ w) * (1 - 2d)      Σ contributions = 2·overall - 1
    coverage     = covered features / 95
    confidence   = 0.4·baseline confidence + 0.35·coverage
                   + 0.25·mean reliability·freshness

A feature is anomalous when d > anomaly_threshold, or when its per-feature
outlier score reaches outlier_threshold and d >= outlier_min_deviation.

Below the inconclusive coverage threshold the result is neutral (overall 0.5)
and its confidence never exceeds its coverage.
"""

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Mapping, Optional

import numpy as np

from cadence.engine.anomaly import AnomalyScorer
from cadence.engine.baseline import BaselineProfile
from cadence.errors import InsufficientData, ModelUnavailable
from cadence.features.normalizer import Normalizer
from cadence.features.schema import (
    FEATURE_COUNTS,
    MODALITIES,
    TOTAL_FEATURES,
    FeatureVector,
    feature_key,
    modality_slices,
)

logger = logging.getLogger(__name__)

DEFAULT_MODALITY_WEIGHTS = {
    "typing": 0.35,
    "voice": 0.20,
    "motor": 0.30,
    "temporal": 0.15,
}


class Severity(Enum):
    """Per-feature anomaly severity."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass(frozen=True)
class FeatureAnomaly:
    """A feature that deviates beyond the anomaly threshold.

    Attributes:
        feature: Qualified feature name
        deviation: sign(z) · rescaled deviation, in [-1, 1]
        severity: LOW / MEDIUM / HIGH
        outlier_score: Per-feature isolation score (None without ensemble)
    """

    feature: str
    deviation: float
    severity: Severity
    outlier_score: Optional[float] = None


@dataclass(frozen=True)
class FeatureContribution:
    feature: str
    contribution: float


@dataclass(frozen=True)
class ModalityResult:
    """Per-modality breakdown of a similarity result."""

    similarity: float
    anomalies: tuple[FeatureAnomaly, ...] = ()
    contributions: tuple[FeatureContribution, ...] = ()
    deviations: Mapping[str, float] = field(default_factory=lambda: MappingProxyType({}))


@dataclass(frozen=True)
class SimilarityResult:
    """Similarity of one vector to a baseline profile.

    Attributes:
        overall: Similarity in [0, 1] (0.5 when inconclusive)
        confidence: Trust in ``overall``, in [0, 1]
        coverage: Fraction of the 95 features that were compared
        inconclusive: Coverage below the inconclusive threshold
        ensemble_available: Isolation ensemble was consulted
        baseline_version: Version of the profile compared against
        timestamp: Timestamp of the scored vector
        vector_outlier_score: Vector-level isolation score, if available
        modalities: Modality → ModalityResult (covered modalities only)
        covered_features: Number of features compared
        mean_reliability: Mean reliability of the compared features
    """

    overall: float
    confidence: float
    coverage: float
    inconclusive: bool
    ensemble_available: bool
    baseline_version: int
    timestamp: datetime
    vector_outlier_score: Optional[float]
    modalities: Mapping[str, ModalityResult]
    covered_features: int = 0
    mean_reliability: float = 0.0

    @property
    def anomalies(self) -> list[FeatureAnomaly]:
        """All anomalies across modalities, most deviant first."""
        found = [a for m in self.modalities.values() for a in m.anomalies]
        return sorted(found, key=lambda a: abs(a.deviation), reverse=True)

    @property
    def deviations(self) -> dict[str, float]:
        """Flat feature → signed rescaled deviation."""
        flat = {}
        for m in self.modalities.values():
            flat.update(m.deviations)
        return flat

    def to_dict(self) -> dict:
        return {
            "overall": self.overall,
            "confidence": self.confidence,
            "coverage": self.coverage,
            "inconclusive": self.inconclusive,
            "ensemble_available": self.ensemble_available,
            "baseline_version": self.baseline_version,
            "timestamp": self.timestamp.isoformat(),
            "vector_outlier_score": self.vector_outlier_score,
            "anomaly_count": sum(len(m.anomalies) for m in self.modalities.values()),
            "modalities": {
                name: {
                    "similarity": m.similarity,
                    "anomalies": [
                        {
                            "feature": a.feature,
                            "deviation": a.deviation,
                            "severity": a.severity.value,
                            "outlier_score": a.outlier_score,
                        }
                        for a in m.anomalies
                    ],
                }
                for name, m in self.modalities.items()
            },
        }


@dataclass
class _Compared:
    modality: str
    key: str
    z: float
    d: float
    weight: float
    reliability: float
    outlier: Optional[float]


class SimilarityScorer:
    """Scores vectors against a baseline profile.

    Args:
        normalizer: Normalizer supplying the deviation method and floor
        anomaly_scorer: Optional isolation ensemble for outlier scores
        weights: Modality weights (default: typing .35, voice .20,
            motor .30, temporal .15)
        min_feature_samples: Baseline samples a feature needs to be compared
        anomaly_threshold: Rescaled deviation above which a feature is anomalous
        outlier_threshold: Per-feature isolation score marking an anomaly
        outlier_min_deviation: Rescaled deviation an outlier-only flag still needs
        severity_medium: Deviation cutoff for MEDIUM severity
        severity_high: Deviation cutoff for HIGH severity
        inconclusive_threshold: Coverage below which the result is neutral
        staleness_horizon_s: Time constant of the freshness decay

    Example:
        >>> scorer = SimilarityScorer()
        >>> result = scorer.score(vector, profile)
        >>> result.overall, result.coverage
        (0.97, 1.0)
    """

    def __init__(
        self,
        normalizer: Optional[Normalizer] = None,
        anomaly_scorer: Optional[AnomalyScorer] = None,
        weights: Optional[dict[str, float]] = None,
        min_feature_samples: int = 20,
        anomaly_threshold: float = 0.65,
        outlier_threshold: float = 0.7,
        outlier_min_deviation: float = 0.5,
        severity_medium: float = 0.75,
        severity_high: float = 0.9,
        inconclusive_threshold: float = 0.3,
        staleness_horizon_s: float = 60.0,
    ) -> None:
        if not 0 < anomaly_threshold < 1:
            raise ValueError(f"anomaly_threshold ({anomaly_threshold}) must be in (0, 1)")
        if not 0 <= outlier_min_deviation < 1:
            raise ValueError(f"outlier_min_deviation ({outlier_min_deviation}) must be in [0, 1)")
        if not severity_medium < severity_high:
            raise ValueError(
                f"severity_medium ({severity_medium}) must be < severity_high ({severity_high})"
            )
        if min_feature_samples < 1:
            raise ValueError(f"min_feature_samples ({min_feature_samples}) must be >= 1")
        if staleness_horizon_s <= 0:
            raise ValueError(f"staleness_horizon_s ({staleness_horizon_s}) must be > 0")

        self.normalizer = normalizer or Normalizer()
        self.anomaly_scorer = anomaly_scorer
        self.weights = weights if weights is not None else DEFAULT_MODALITY_WEIGHTS.copy()
        unknown = set(self.weights) - set(MODALITIES)
        if unknown:
            raise ValueError(f"Unknown modalities in weights: {sorted(unknown)}")
        self.min_feature_samples = min_feature_samples
        self.anomaly_threshold = anomaly_threshold
        self.outlier_threshold = outlier_threshold
        self.outlier_min_deviation = outlier_min_deviation
        self.severity_medium = severity_medium
        self.severity_high = severity_high
        self.inconclusive_threshold = inconclusive_threshold
        self.staleness_horizon_s = staleness_horizon_s

    def severity(self, d: float) -> Severity:
        """Severity band for a rescaled deviation."""
        if d >= self.severity_high:
            return Severity.HIGH
        if d >= self.severity_medium:
            return Severity.MEDIUM
        return Severity.LOW

    def score(
        self,
        vector: FeatureVector,
        baseline: Optional[BaselineProfile],
        now: Optional[datetime] = None,
        use_ensemble: bool = True,
    ) -> SimilarityResult:
        """Compare a vector with a baseline profile.

        Args:
            vector: Validated feature vector
            baseline: Profile to compare against
            now: Current time for freshness (default: vector is fresh)
            use_ensemble: Consult the isolation ensemble if available

        Returns:
            SimilarityResult

        Raises:
            InsufficientData: No baseline profile
        """
        if baseline is None:
            raise InsufficientData("no baseline profile")

        vector_outlier, feature_outliers = None, None
        ensemble_available = False
        if use_ensemble and self.anomaly_scorer is not None:
            try:
                vector_outlier = self.anomaly_scorer.score(vector).score
                feature_outliers = self.anomaly_scorer.score_features(vector)
                ensemble_available = True
            except ModelUnavailable as e:
                logger.debug("Scoring without ensemble: %s", e)

        compared = self._compare(vector, baseline, feature_outliers)
        return self._aggregate(
            compared, vector, baseline, now, ensemble_available, vector_outlier
        )

    def overall(self, vector: FeatureVector, baseline: BaselineProfile) -> float:
        """Baseline-deviation similarity only (no ensemble, no breakdown)."""
        compared = self._compare(vector, baseline, None)
        total = sum(c.weight for c in compared)
        if total <= 0:
            return 0.5
        value = sum(c.weight * (1.0 - c.d) for c in compared) / total
        return float(np.clip(value, 0.0, 1.0))

    def _compare(
        self,
        vector: FeatureVector,
        baseline: BaselineProfile,
        feature_outliers: Optional[np.ndarray],
    ) -> list[_Compared]:
        floor = self.normalizer.variance_floor
        slices = modality_slices()
        compared = []

        for modality in MODALITIES:
            if modality not in vector or modality not in baseline.features:
                continue
            modality_weight = self.weights.get(modality, 0.0) / FEATURE_COUNTS[modality]
            values = vector[modality]
            for i, stats in enumerate(baseline.features[modality]):
                x = values[i]
                if math.isnan(x) or stats.sample_count < self.min_feature_samples:
                    continue
                z = self.normalizer.normalize(x, stats)
                if math.isnan(z):
                    continue

                variance = stats.variance if not math.isnan(stats.variance) else floor
                std = math.sqrt(max(variance, floor))
                reliability = 1.0 / (1.0 + std / max(abs(stats.mean), math.sqrt(floor)))

                outlier = None
                if feature_outliers is not None:
                    value = feature_outliers[slices[modality].start + i]
                    outlier = None if np.isnan(value) else float(value)

                compared.append(
                    _Compared(
                        modality=modality,
                        key=feature_key(modality, i),
                        z=z,
                        d=Normalizer.rescale(z),
                        weight=modality_weight * reliability,
                        reliability=reliability,
                        outlier=outlier,
                    )
                )
        return compared

    def _aggregate(
        self,
        compared: list[_Compared],
        vector: FeatureVector,
        baseline: BaselineProfile,
        now: Optional[datetime],
        ensemble_available: bool,
        vector_outlier: Optional[float],
    ) -> SimilarityResult:
        coverage = len(compared) / TOTAL_FEATURES
        total_weight = sum(c.weight for c in compared)

        if total_weight > 0:
            overall = sum(c.weight * (1.0 - c.d) for c in compared) / total_weight
            overall = float(np.clip(overall, 0.0, 1.0))
        else:
            overall = 0.5

        mean_reliability = float(np.mean([c.reliability for c in compared])) if compared else 0.0
        age = (now - vector.timestamp).total_seconds() if now is not None else 0.0
        freshness = math.exp(-max(0.0, age) / self.staleness_horizon_s)
        confidence = (
            0.4 * baseline.statistics.confidence
            + 0.35 * coverage
            + 0.25 * mean_reliability * freshness
        )
        confidence = float(np.clip(confidence, 0.0, 1.0))

        inconclusive = coverage < self.inconclusive_threshold or total_weight <= 0
        if inconclusive:
            overall = 0.5
            confidence = min(confidence, coverage)

        grouped: dict[str, list[_Compared]] = {}
        for c in compared:
            grouped.setdefault(c.modality, []).append(c)

        modalities = {}
        for modality, items in grouped.items():
            anomalies = []
            contributions = []
            deviations = {}
            for c in items:
                signed = math.copysign(c.d, c.z)
                deviations[c.key] = signed
                contribution = (c.weight / total_weight) * (1.0 - 2.0 * c.d) if total_weight > 0 else 0.0
                contributions.append(FeatureContribution(c.key, contribution))
                flagged = c.d > self.anomaly_threshold or (
                    c.outlier is not None
                    and c.outlier >= self.outlier_threshold
                    and c.d >= self.outlier_min_deviation
                )
                if flagged:
                    anomalies.append(
                        FeatureAnomaly(
                            feature=c.key,
                            deviation=signed,
                            severity=self.severity(c.d),
                            outlier_score=c.outlier,
                        )
                    )
            weight = sum(c.weight for c in items)
            similarity = (
                sum(c.weight * (1.0 - c.d) for c in items) / weight if weight > 0 else 0.5
            )
            modalities[modality] = ModalityResult(
                similarity=float(np.clip(similarity, 0.0, 1.0)),
                anomalies=tuple(sorted(anomalies, key=lambda a: abs(a.deviation), reverse=True)),
                contributions=tuple(contributions),
                deviations=MappingProxyType(deviations),
            )

        if inconclusive:
            logger.debug("Inconclusive result: coverage %.2f", coverage)

        return SimilarityResult(
            overall=overall,
            confidence=confidence,
            coverage=coverage,
            inconclusive=inconclusive,
            ensemble_available=ensemble_available,
            baseline_version=baseline.version,
            timestamp=vector.timestamp,
            vector_outlier_score=vector_outlier,
            modalities=MappingProxyType(modalities),
            covered_features=len(compared),
            mean_reliability=mean_reliability,
        )
