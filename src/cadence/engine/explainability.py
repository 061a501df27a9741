"""Explainability report for CADENCE.

Renders one tick's outputs in human-readable form:
1. Similarity to baseline, its confidence and coverage
2. The most deviant features
3. Drift state and the latest drift event
4. Group attribution (when requested)
5. Modalities that were not compared

Numbers describe deviation from the subject's own baseline. They are not a
diagnosis and carry no causal claim.
"""

from dataclasses import dataclass, field
from typing import Optional

from cadence.engine.attribution import GroupAttribution
from cadence.engine.confidence import ConfidenceAssessment
from cadence.engine.drift import DriftEvent, DriftState
from cadence.engine.similarity import SimilarityResult
from cadence.features.schema import MODALITIES

# Anomalies listed in the text report
TOP_ANOMALIES = 3


@dataclass
class DiagnosticReport:
    """Complete report for a single tick.

    Attributes:
        similarity: Similarity result of the tick (None before a baseline exists)
        drift_state: Drift detector state after the tick
        drift_event: Event emitted on this tick, if any
        confidence: Confidence assessment, if computed
        attributions: Group attribution, if requested
        baseline_summary: Aggregate baseline statistics
        label: Session or subject label for the header
    """

    similarity: Optional[SimilarityResult]
    drift_state: DriftState
    drift_event: Optional[DriftEvent] = None
    confidence: Optional[ConfidenceAssessment] = None
    attributions: list[GroupAttribution] = field(default_factory=list)
    baseline_summary: Optional[dict] = None
    label: str = "session"

    def format_similarity(self) -> str:
        """Format the similarity section.

        Returns:
            Multi-line string, e.g.
                Similarity: 0.82 (confidence 0.77, coverage 1.00)
                Ensemble: available (vector outlier 0.48)
        """
        if self.similarity is None:
            return "Similarity: N/A (no baseline)"

        r = self.similarity
        if r.inconclusive:
            head = f"Similarity: inconclusive (coverage {r.coverage:.2f})"
        else:
            head = (
                f"Similarity: {r.overall:.2f} "
                f"(confidence {r.confidence:.2f}, coverage {r.coverage:.2f})"
            )
        if r.ensemble_available and r.vector_outlier_score is not None:
            ensemble = f"Ensemble: available (vector outlier {r.vector_outlier_score:.2f})"
        else:
            ensemble = "Ensemble: unavailable"
        return "\n".join([head, ensemble])

    def format_anomalies(self) -> str:
        """Format the top anomalies, e.g. 'Anomalies: typing.mean_dwell_ms +1.00 (high)'."""
        if self.similarity is None:
            return "Anomalies: N/A"
        anomalies = self.similarity.anomalies
        if not anomalies:
            return "Anomalies: none"
        parts = [
            f"{a.feature} {a.deviation:+.2f} ({a.severity.value})"
            for a in anomalies[:TOP_ANOMALIES]
        ]
        more = len(anomalies) - TOP_ANOMALIES
        if more > 0:
            parts.append(f"+{more} more")
        return f"Anomalies: {'; '.join(parts)}"

    def format_drift(self) -> str:
        lines = [f"Drift: {self.drift_state.value}"]
        e = self.drift_event
        if e is not None:
            lines.append(
                f"  {e.drift_severity.value} {e.drift_type.value} drift, "
                f"magnitude {e.drift_magnitude:.2f}, {e.drift_direction.value}, "
                f"rate {e.drift_rate:.2f}/day"
            )
            if e.affected_modalities:
                lines.append(f"  Affected: {', '.join(e.affected_modalities)}")
            if e.recommended_actions:
                lines.append(f"  Actions: {', '.join(e.recommended_actions)}")
        return "\n".join(lines)

    def format_attribution(self) -> str:
        if not self.attributions:
            return "Attribution: not requested"
        parts = [f"{a.group} {a.contribution:+.2f}" for a in self.attributions]
        return f"Attribution: {'; '.join(parts)}"

    def format_confidence(self) -> str:
        if self.confidence is None:
            return "Confidence: N/A"
        issues = self.confidence.issues
        line = f"Confidence: {self.confidence.overall:.2f}"
        if issues:
            line += f" ({'; '.join(issues)})"
        return line

    def format_excluded(self) -> str:
        """Modalities without any compared feature."""
        if self.similarity is None:
            return "Not compared: all"
        missing = [m for m in MODALITIES if m not in self.similarity.modalities]
        if not missing:
            return "Not compared: none"
        return f"Not compared: {', '.join(missing)}"

    def format_full(self) -> str:
        """Format the complete report.

        Returns:
            Multi-line string, e.g.
                === CADENCE Report: session-1 @ 2026-01-05T10:00:00+00:00 ===

                Similarity: 0.82 (confidence 0.77, coverage 1.00)
                Ensemble: available (vector outlier 0.48)
                Anomalies: typing.mean_dwell_ms +1.00 (high)

                Drift: watch
                Confidence: 0.81
                Not compared: none
        """
        when = self.similarity.timestamp.isoformat() if self.similarity is not None else "n/a"
        lines = [f"=== CADENCE Report: {self.label} @ {when} ===", ""]
        lines.append(self.format_similarity())
        lines.append(self.format_anomalies())
        lines.append("")
        lines.append(self.format_drift())
        if self.attributions:
            lines.append(self.format_attribution())
        lines.append(self.format_confidence())
        lines.append(self.format_excluded())
        return "\n".join(lines)

    def to_dict(self) -> dict:
        """Convert the report to a structured dictionary."""
        return {
            "label": self.label,
            "similarity": self.similarity.to_dict() if self.similarity is not None else None,
            "drift": {
                "state": self.drift_state.value,
                "event": self.drift_event.to_dict() if self.drift_event is not None else None,
            },
            "confidence": self.confidence.to_dict() if self.confidence is not None else None,
            "attribution": [
                {"group": a.group, "contribution": a.contribution, "raw": a.raw}
                for a in self.attributions
            ],
            "baseline": self.baseline_summary,
        }
