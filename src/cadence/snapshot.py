"""Sanitized snapshot: the boundary schema for external summarization.

Only aggregated numbers cross this boundary: similarity summaries, anomaly
counts per modality, drift classifications and group attributions. Raw
feature values and per-feature deviations never do. The schema is versioned
and rejects unknown fields, so adding a field is an explicit schema change.
"""

from datetime import datetime, timezone
from typing import Literal, Optional, Sequence

import numpy as np
from pydantic import BaseModel, ConfigDict, Field

from cadence.engine.attribution import GroupAttribution
from cadence.engine.baseline import BaselineProfile
from cadence.engine.drift import DriftEvent, DriftState
from cadence.engine.similarity import SimilarityResult

SCHEMA_VERSION = "1"


class DriftSummary(BaseModel):
    """One drift event, reduced to its classification."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    drift_type: Literal["gradual", "abrupt"]
    drift_severity: Literal["none", "mild", "moderate", "severe"]
    drift_direction: Literal["improving", "worsening", "mixed"]
    drift_magnitude: float = Field(..., ge=0.0, le=1.0)
    drift_rate: float = Field(..., ge=0.0)
    confidence: float = Field(..., ge=0.0, le=1.0)
    detected_at: datetime
    affected_modalities: list[str] = Field(default_factory=list)
    score_variance: float = Field(default=0.0, ge=0.0)
    score_volatility: float = Field(default=0.0, ge=0.0)
    score_trend: float = 0.0

    @classmethod
    def from_event(cls, event: DriftEvent) -> "DriftSummary":
        """Classification, modalities and window variability; feature names stay out."""
        metrics = event.stability_metrics
        return cls(
            affected_modalities=list(event.affected_modalities),
            score_variance=max(0.0, metrics.variance),
            score_volatility=max(0.0, metrics.volatility),
            score_trend=metrics.trend,
            drift_type=event.drift_type.value,
            drift_severity=event.drift_severity.value,
            drift_direction=event.drift_direction.value,
            drift_magnitude=event.drift_magnitude,
            drift_rate=max(0.0, event.drift_rate),
            confidence=event.confidence,
            detected_at=event.detected_at,
        )


class SanitizedSnapshot(BaseModel):
    """Aggregated, versioned view of recent engine outputs.

    Attributes:
        schema_version: Always "1" for this schema
        generated_at: When the snapshot was produced
        baseline_version: Version of the adopted baseline (None before one exists)
        baseline_confidence: Confidence of the adopted baseline
        result_count: Conclusive results summarized
        similarity_latest: Overall similarity of the latest conclusive result
        similarity_mean: Mean overall similarity over the summarized results
        confidence_latest: Confidence of the latest conclusive result
        coverage_latest: Coverage of the latest conclusive result
        anomaly_counts: Modality → anomalies in the latest conclusive result
        drift_state: Current drift detector state
        drift_events: Most recent drift events, oldest first
        attribution: Group → normalized contribution
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    schema_version: Literal["1"] = SCHEMA_VERSION
    generated_at: datetime
    baseline_version: Optional[int] = Field(default=None, ge=1)
    baseline_confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    result_count: int = Field(default=0, ge=0)
    similarity_latest: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    similarity_mean: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    confidence_latest: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    coverage_latest: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    anomaly_counts: dict[str, int] = Field(default_factory=dict)
    drift_state: Literal["stable", "watch", "drifting"] = "stable"
    drift_events: list[DriftSummary] = Field(default_factory=list)
    attribution: dict[str, float] = Field(default_factory=dict)

    @classmethod
    def from_outputs(
        cls,
        results: Sequence[SimilarityResult],
        events: Sequence[DriftEvent],
        drift_state: DriftState,
        baseline: Optional[BaselineProfile] = None,
        attributions: Sequence[GroupAttribution] = (),
        generated_at: Optional[datetime] = None,
        max_events: int = 5,
    ) -> "SanitizedSnapshot":
        """Aggregate engine outputs into a snapshot.

        Args:
            results: Recent similarity results, oldest first
            events: Drift event history, oldest first
            drift_state: Current detector state
            baseline: Adopted baseline profile
            attributions: Latest group attribution, if any
            generated_at: Snapshot time (default: now, UTC)
            max_events: Most recent events to include
        """
        conclusive = [r for r in results if not r.inconclusive]
        recent_events = list(events)[-max_events:] if max_events > 0 else []
        latest = conclusive[-1] if conclusive else None

        return cls(
            generated_at=generated_at or datetime.now(timezone.utc),
            baseline_version=baseline.version if baseline is not None else None,
            baseline_confidence=baseline.statistics.confidence if baseline is not None else None,
            result_count=len(conclusive),
            similarity_latest=latest.overall if latest is not None else None,
            similarity_mean=(
                float(np.mean([r.overall for r in conclusive])) if conclusive else None
            ),
            confidence_latest=latest.confidence if latest is not None else None,
            coverage_latest=latest.coverage if latest is not None else None,
            anomaly_counts=(
                {m: len(r.anomalies) for m, r in latest.modalities.items()}
                if latest is not None
                else {}
            ),
            drift_state=drift_state.value,
            drift_events=[DriftSummary.from_event(e) for e in recent_events],
            attribution={a.group: a.contribution for a in attributions},
        )
