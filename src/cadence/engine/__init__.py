"""Core analytic engine for CADENCE.

Modules:
    - baseline: Streaming moments → immutable, versioned BaselineProfile
    - anomaly: Isolation ensemble with background rebuilds
    - similarity: Baseline-relative similarity, anomalies, contributions
    - confidence: Component-wise confidence assessment
    - attribution: Shapley attribution over modality groups
    - drift: stable / watch / drifting state machine
    - explainability: Human-readable per-tick report
"""

from cadence.engine.baseline import (
    BaselineBuilder,
    BaselineChange,
    BaselineProfile,
    BaselineStatistics,
    FeatureStats,
    compare_profiles,
)
from cadence.engine.anomaly import (
    AnomalyScore,
    AnomalyScorer,
    EnsembleSnapshot,
)
from cadence.engine.similarity import (
    DEFAULT_MODALITY_WEIGHTS,
    FeatureAnomaly,
    FeatureContribution,
    ModalityResult,
    Severity,
    SimilarityResult,
    SimilarityScorer,
)
from cadence.engine.confidence import (
    ConfidenceAssessment,
    ConfidenceComponent,
    ConfidenceEstimator,
)
from cadence.engine.attribution import (
    AttributionEngine,
    GroupAttribution,
)
from cadence.engine.drift import (
    DEFAULT_ACTIONS,
    DriftDetector,
    DriftDirection,
    DriftEvent,
    DriftSeverity,
    DriftState,
    DriftType,
    StabilityMetrics,
)
from cadence.engine.explainability import DiagnosticReport

__all__ = [
    "BaselineBuilder",
    "BaselineChange",
    "BaselineProfile",
    "BaselineStatistics",
    "FeatureStats",
    "compare_profiles",
    "AnomalyScore",
    "AnomalyScorer",
    "EnsembleSnapshot",
    "DEFAULT_MODALITY_WEIGHTS",
    "FeatureAnomaly",
    "FeatureContribution",
    "ModalityResult",
    "Severity",
    "SimilarityResult",
    "SimilarityScorer",
    "ConfidenceAssessment",
    "ConfidenceComponent",
    "ConfidenceEstimator",
    "AttributionEngine",
    "GroupAttribution",
    "DEFAULT_ACTIONS",
    "DriftDetector",
    "DriftDirection",
    "DriftEvent",
    "DriftSeverity",
    "DriftState",
    "DriftType",
    "StabilityMetrics",
    "DiagnosticReport",
]
