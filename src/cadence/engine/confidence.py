"""Confidence Estimator: how much a similarity result can be trusted.

Four components, each the mean of its factors in [0, 1]:
    data_quality          completeness, signal, artifact level
    baseline_reliability  sample size, timespan, stability, baseline confidence
    feature_coverage      modality coverage, feature density
    temporal_consistency  mean and spread of recent result confidences

overall = 0.3·data_quality + 0.3·baseline_reliability
        + 0.2·feature_coverage + 0.2·temporal_consistency
"""

from dataclasses import dataclass
from types import MappingProxyType
from typing import Mapping, Optional, Sequence

import numpy as np

from cadence.engine.baseline import BaselineProfile
from cadence.engine.similarity import SimilarityResult
from cadence.features.schema import FEATURE_COUNTS, MODALITIES

COMPONENT_WEIGHTS = {
    "data_quality": 0.3,
    "baseline_reliability": 0.3,
    "feature_coverage": 0.2,
    "temporal_consistency": 0.2,
}

# Factor below which an issue is reported
ISSUE_THRESHOLD = 0.6

_ISSUE_TEXT = {
    "completeness": "Incomplete feature coverage",
    "signal": "Low confidence in the current comparison",
    "artifact_level": "Many features deviate at once (possible measurement artifacts)",
    "sample_size": "Baseline built from few samples",
    "timespan": "Baseline collected over a short period",
    "stability": "Baseline behavior was unstable",
    "baseline_confidence": "Low baseline confidence",
    "modality_coverage": "Some modalities are not being collected",
    "feature_density": "Sparse features within collected modalities",
    "mean_confidence": "Recent results had low confidence",
    "consistency": "Recent result confidence fluctuates",
    "history": "Too few recent results to judge consistency",
}


@dataclass(frozen=True)
class ConfidenceComponent:
    """One named component of a confidence assessment."""

    name: str
    score: float
    factors: Mapping[str, float]
    issues: tuple[str, ...] = ()


@dataclass(frozen=True)
class ConfidenceAssessment:
    """Overall confidence plus its named components."""

    overall: float
    components: Mapping[str, ConfidenceComponent]

    @property
    def issues(self) -> list[str]:
        return [issue for c in self.components.values() for issue in c.issues]

    def to_dict(self) -> dict:
        return {
            "overall": self.overall,
            "components": {
                name: {
                    "score": c.score,
                    "factors": dict(c.factors),
                    "issues": list(c.issues),
                }
                for name, c in self.components.items()
            },
        }


def _component(name: str, factors: dict[str, float]) -> ConfidenceComponent:
    clipped = {k: float(np.clip(v, 0.0, 1.0)) for k, v in factors.items()}
    score = float(np.mean(list(clipped.values()))) if clipped else 0.0
    issues = tuple(_ISSUE_TEXT[k] for k, v in clipped.items() if v < ISSUE_THRESHOLD)
    return ConfidenceComponent(
        name=name,
        score=score,
        factors=MappingProxyType(clipped),
        issues=issues,
    )


class ConfidenceEstimator:
    """Derives a ConfidenceAssessment from a result, its baseline and history.

    Args:
        min_samples: Baseline sample count treated as minimum adequate
        min_duration_s: Baseline duration treated as minimum adequate
        min_history: Recent results needed to judge temporal consistency

    Example:
        >>> estimator = ConfidenceEstimator()
        >>> assessment = estimator.assess(result, profile, recent=history)
        >>> assessment.components["data_quality"].score
        0.91
    """

    def __init__(
        self,
        min_samples: int = 200,
        min_duration_s: float = 120.0,
        min_history: int = 3,
    ) -> None:
        if min_samples < 1:
            raise ValueError(f"min_samples ({min_samples}) must be >= 1")
        if min_history < 2:
            raise ValueError(f"min_history ({min_history}) must be >= 2")
        self.min_samples = min_samples
        self.min_duration_s = min_duration_s
        self.min_history = min_history

    def assess(
        self,
        result: SimilarityResult,
        baseline: BaselineProfile,
        recent: Sequence[SimilarityResult] = (),
    ) -> ConfidenceAssessment:
        """Assess one result.

        Args:
            result: The similarity result to assess
            baseline: Profile the result was computed against
            recent: Recent results, oldest first (the current one excluded)

        Returns:
            ConfidenceAssessment with overall in [0, 1]
        """
        components = {
            "data_quality": self._data_quality(result),
            "baseline_reliability": self._baseline_reliability(baseline),
            "feature_coverage": self._feature_coverage(result),
            "temporal_consistency": self._temporal_consistency(result, recent),
        }
        overall = sum(COMPONENT_WEIGHTS[name] * c.score for name, c in components.items())
        return ConfidenceAssessment(
            overall=float(np.clip(overall, 0.0, 1.0)),
            components=MappingProxyType(components),
        )

    def _data_quality(self, result: SimilarityResult) -> ConfidenceComponent:
        anomalies = sum(len(m.anomalies) for m in result.modalities.values())
        if result.covered_features:
            artifact_level = 1.0 - anomalies / result.covered_features
        else:
            artifact_level = 0.0
        return _component("data_quality", {
            "completeness": result.coverage,
            "signal": result.confidence,
            "artifact_level": artifact_level,
        })

    def _baseline_reliability(self, baseline: BaselineProfile) -> ConfidenceComponent:
        stats = baseline.statistics
        if self.min_duration_s > 0:
            timespan = stats.duration_s / (2 * self.min_duration_s)
        else:
            timespan = 1.0
        return _component("baseline_reliability", {
            "sample_size": stats.sample_count / (2 * self.min_samples),
            "timespan": timespan,
            "stability": stats.stability,
            "baseline_confidence": stats.confidence,
        })

    def _feature_coverage(self, result: SimilarityResult) -> ConfidenceComponent:
        covered = [m for m in MODALITIES if m in result.modalities]
        if covered:
            density = np.mean([
                len(result.modalities[m].deviations) / FEATURE_COUNTS[m] for m in covered
            ])
        else:
            density = 0.0
        return _component("feature_coverage", {
            "modality_coverage": len(covered) / len(MODALITIES),
            "feature_density": float(density),
        })

    def _temporal_consistency(
        self,
        result: SimilarityResult,
        recent: Sequence[SimilarityResult],
    ) -> ConfidenceComponent:
        confidences = [r.confidence for r in recent if not r.inconclusive]
        confidences.append(result.confidence)
        if len(confidences) < self.min_history:
            return _component("temporal_consistency", {
                "mean_confidence": float(np.mean(confidences)),
                "history": len(confidences) / self.min_history,
            })
        spread = float(np.std(confidences))
        return _component("temporal_consistency", {
            "mean_confidence": float(np.mean(confidences)),
            "consistency": 1.0 - min(1.0, 2.0 * spread),
        })
