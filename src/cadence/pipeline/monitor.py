"""Monitor: tick-driven coordinator.

Per tick:
  1. Adopt a finished background ensemble build, if any
  2. Validate the vector (invalid vectors are rejected, never clamped)
  3. Baseline phase: accumulate into the builder
  4. Live phase: score → assess confidence → update drift → record histories

Baseline publication is a single assignment. ``ingest`` captures the profile
at entry, so a tick always completes against the profile it started with.

Usage:
    monitor = Monitor.from_settings(Settings())
    monitor.start_baseline()
    for vector in baseline_stream:
        monitor.ingest(vector)
    monitor.finalize_baseline()
    for vector in live_stream:
        outcome = monitor.ingest(vector)
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from cadence.config import Settings
from cadence.engine import (
    AnomalyScorer,
    AttributionEngine,
    BaselineBuilder,
    BaselineChange,
    BaselineProfile,
    ConfidenceAssessment,
    ConfidenceEstimator,
    DiagnosticReport,
    DriftDetector,
    DriftEvent,
    DriftState,
    GroupAttribution,
    SimilarityResult,
    SimilarityScorer,
    compare_profiles,
)
from cadence.errors import InsufficientData, InvalidFeatureVector, ModelUnavailable
from cadence.features import FeatureVector, Normalizer
from cadence.history import BoundedHistory
from cadence.snapshot import SanitizedSnapshot

logger = logging.getLogger(__name__)

# Recent results the confidence estimator looks at
CONFIDENCE_LOOKBACK = 10


@dataclass
class TickOutcome:
    """What one ``ingest`` call did.

    Attributes:
        timestamp: Vector timestamp
        accepted: False if the vector was rejected
        collecting: The vector went into the baseline builder (False when
            skipped for low quality)
        similarity: Similarity result (live phase only)
        confidence: Confidence assessment of the result
        drift_event: Event emitted on this tick, if any
        error: Rejection reason
    """

    timestamp: datetime
    accepted: bool = True
    collecting: bool = False
    similarity: Optional[SimilarityResult] = None
    confidence: Optional[ConfidenceAssessment] = None
    drift_event: Optional[DriftEvent] = None
    error: Optional[str] = None


class Monitor:
    """Coordinates baseline collection, live scoring and drift tracking.

    Args:
        settings: Engine configuration (default: ``Settings.defaults()``, which
            never reads the environment)
        background_rebuild: Build ensembles on the worker thread instead of inline

    Example:
        >>> monitor = Monitor.from_settings(Settings())
        >>> monitor.start_baseline()
        >>> outcome = monitor.ingest(vector)
        >>> outcome.collecting
        True
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        background_rebuild: bool = False,
    ) -> None:
        self.settings = settings if settings is not None else Settings.defaults()
        self.background_rebuild = background_rebuild
        s = self.settings

        self.normalizer = Normalizer(
            variance_floor=s.variance_floor,
            method=s.normalization_method,
        )
        self.anomaly = AnomalyScorer(
            n_trees=s.ensemble_trees,
            subsample=s.ensemble_subsample,
            feature_trees=s.feature_trees,
            min_reference=s.ensemble_min_reference,
            seed=s.random_seed,
        )
        self.similarity = SimilarityScorer(
            normalizer=self.normalizer,
            anomaly_scorer=self.anomaly,
            weights=s.modality_weights,
            min_feature_samples=s.min_feature_samples,
            anomaly_threshold=s.anomaly_threshold,
            outlier_threshold=s.outlier_threshold,
            outlier_min_deviation=s.outlier_min_deviation,
            severity_medium=s.severity_medium,
            severity_high=s.severity_high,
            inconclusive_threshold=s.inconclusive_threshold,
            staleness_horizon_s=s.staleness_horizon_s,
        )
        self.confidence = ConfidenceEstimator(
            min_samples=s.baseline_min_samples,
            min_duration_s=s.baseline_min_duration_s,
        )
        self.attribution = AttributionEngine(
            scorer=SimilarityScorer(
                normalizer=self.normalizer,
                weights=s.modality_weights,
                min_feature_samples=s.min_feature_samples,
            ),
            seed=s.random_seed,
        )
        self.drift = DriftDetector(
            window=s.drift_window,
            min_samples=s.drift_min_samples,
            mild=s.drift_mild,
            moderate=s.drift_moderate,
            severe=s.drift_severe,
            abrupt_rate=s.drift_abrupt_rate,
            recovery_samples=s.drift_recovery_samples,
            abrupt_concentration=s.drift_abrupt_concentration,
            abrupt_span=s.drift_abrupt_span,
            min_rate_interval_s=s.drift_min_rate_interval_s,
            history_limit=s.drift_history_limit,
            actions=s.drift_actions,
        )

        self._similarity_history: BoundedHistory[SimilarityResult] = BoundedHistory(
            s.similarity_history_limit
        )
        self._confidence_history: BoundedHistory[ConfidenceAssessment] = BoundedHistory(
            s.confidence_history_limit
        )
        self._baseline: Optional[BaselineProfile] = None
        self._builder: Optional[BaselineBuilder] = None
        self._baseline_changes: tuple[BaselineChange, ...] = ()
        self._rejected = 0

    @classmethod
    def from_settings(cls, settings: Settings, background_rebuild: bool = False) -> "Monitor":
        return cls(settings=settings, background_rebuild=background_rebuild)

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def baseline(self) -> Optional[BaselineProfile]:
        return self._baseline

    @property
    def collecting(self) -> bool:
        return self._builder is not None

    @property
    def drift_state(self) -> DriftState:
        return self.drift.state

    @property
    def rejected_count(self) -> int:
        return self._rejected

    @property
    def baseline_changes(self) -> tuple[BaselineChange, ...]:
        """Mean changes reported when the current baseline was adopted."""
        return self._baseline_changes

    def similarity_history(self) -> tuple[SimilarityResult, ...]:
        return self._similarity_history.snapshot()

    def confidence_history(self) -> tuple[ConfidenceAssessment, ...]:
        return self._confidence_history.snapshot()

    def drift_history(self) -> tuple[DriftEvent, ...]:
        return self.drift.history

    # ------------------------------------------------------------------
    # Baseline lifecycle
    # ------------------------------------------------------------------

    def start_baseline(self) -> BaselineBuilder:
        """Begin collecting a new baseline (replacing any in-progress one).

        The current profile, if any, stays in use until the new one is adopted.
        """
        s = self.settings
        version = self._baseline.version + 1 if self._baseline is not None else 1
        self._builder = BaselineBuilder(
            min_samples=s.baseline_min_samples,
            min_duration_s=s.baseline_min_duration_s,
            min_active_ratio=s.baseline_min_active_ratio,
            max_idle_gap_s=s.baseline_max_idle_gap_s,
            reference_size=s.baseline_reference_size,
            stability_window=s.baseline_stability_window,
            variance_floor=s.variance_floor,
            min_quality=s.baseline_min_quality,
            version=version,
            normalizer=self.normalizer,
        )
        logger.info("Baseline v%d collection started", version)
        return self._builder

    def baseline_shortfalls(self) -> list[str]:
        """Why the in-progress baseline cannot be finalized yet."""
        if self._builder is None:
            return ["no baseline collection in progress"]
        return self._builder.shortfalls()

    def finalize_baseline(self, created_at: Optional[datetime] = None) -> Optional[BaselineProfile]:
        """Finalize and adopt the in-progress baseline.

        Returns:
            The adopted profile, or None if the builder is not ready (collection
            continues) or no collection is in progress.
        """
        if self._builder is None:
            logger.warning("finalize_baseline called with no collection in progress")
            return None
        try:
            profile = self._builder.finalize(created_at=created_at)
        except InsufficientData as e:
            logger.warning("Baseline not ready: %s", e)
            return None
        self._builder = None
        self.adopt_baseline(profile)
        return profile

    def adopt_baseline(self, profile: BaselineProfile) -> tuple[BaselineChange, ...]:
        """Publish a new profile and rebuild the isolation ensemble from it.

        Returns:
            Features whose mean moved by at least ``baseline_change_threshold``
            relative to the replaced profile (empty for the first baseline)

        Raises:
            ValueError: Profile version is not newer than the current one
        """
        current = self._baseline
        if current is not None and profile.version <= current.version:
            raise ValueError(
                f"Baseline version ({profile.version}) must be > current ({current.version})"
            )

        changes: tuple[BaselineChange, ...] = ()
        if current is not None:
            changes = tuple(
                compare_profiles(current, profile, threshold=self.settings.baseline_change_threshold)
            )
            if changes:
                logger.info(
                    "Baseline v%d → v%d: %d feature means moved (largest: %s %+.0f%%)",
                    current.version,
                    profile.version,
                    len(changes),
                    changes[0].feature,
                    100.0 * changes[0].relative_change,
                )
            else:
                logger.info(
                    "Baseline v%d → v%d: no significant changes", current.version, profile.version
                )

        self._baseline = profile
        self._baseline_changes = changes
        self.drift.reset()
        self.anomaly.clear()

        if self.background_rebuild:
            self.anomaly.submit_rebuild(profile.reference, version=profile.version)
        else:
            try:
                self.anomaly.rebuild(profile.reference, version=profile.version)
            except ModelUnavailable as e:
                logger.warning("Scoring without ensemble for baseline v%d: %s", profile.version, e)
        logger.info("Baseline v%d adopted", profile.version)
        return changes

    # ------------------------------------------------------------------
    # Ticks
    # ------------------------------------------------------------------

    def ingest(self, vector: FeatureVector, now: Optional[datetime] = None) -> TickOutcome:
        """Process one vector.

        Args:
            vector: Incoming feature vector
            now: Current time for freshness (default: vector timestamp)

        Returns:
            TickOutcome; rejected vectors come back with ``accepted=False``
        """
        self.anomaly.poll()
        baseline = self._baseline
        builder = self._builder
        outcome = TickOutcome(timestamp=vector.timestamp)

        try:
            self.normalizer.validate(vector)
            if builder is not None:
                outcome.collecting = builder.accumulate(vector)
        except InvalidFeatureVector as e:
            self._rejected += 1
            logger.warning("Rejected vector at %s: %s", vector.timestamp.isoformat(), e)
            outcome.accepted = False
            outcome.error = str(e)
            return outcome

        if baseline is None:
            return outcome

        result = self.similarity.score(vector, baseline, now=now)
        recent = self._similarity_history.latest(CONFIDENCE_LOOKBACK)
        assessment = self.confidence.assess(result, baseline, recent=recent)

        self._similarity_history.append(result)
        self._confidence_history.append(assessment)

        outcome.similarity = result
        outcome.confidence = assessment
        outcome.drift_event = self.drift.update(result)
        return outcome

    # ------------------------------------------------------------------
    # On-demand outputs
    # ------------------------------------------------------------------

    def attribute(self, vector: FeatureVector) -> list[GroupAttribution]:
        """Group attribution of a vector against the current baseline.

        Returns:
            Attributions, or an empty list when no baseline exists or the
            vector is invalid
        """
        baseline = self._baseline
        if baseline is None:
            logger.warning("Attribution requested before a baseline exists")
            return []
        try:
            self.normalizer.validate(vector)
        except InvalidFeatureVector as e:
            logger.warning("Attribution skipped: %s", e)
            return []
        return self.attribution.attribute(vector, baseline)

    def report(
        self,
        outcome: TickOutcome,
        attributions: Optional[list[GroupAttribution]] = None,
        label: str = "session",
    ) -> DiagnosticReport:
        """Explainability report for one tick."""
        baseline = self._baseline
        return DiagnosticReport(
            similarity=outcome.similarity,
            drift_state=self.drift.state,
            drift_event=outcome.drift_event,
            confidence=outcome.confidence,
            attributions=attributions or [],
            baseline_summary=baseline.summary() if baseline is not None else None,
            label=label,
        )

    def snapshot(
        self,
        attributions: Optional[list[GroupAttribution]] = None,
        generated_at: Optional[datetime] = None,
    ) -> SanitizedSnapshot:
        """Sanitized aggregate of recent outputs for external consumers."""
        return SanitizedSnapshot.from_outputs(
            results=self._similarity_history.latest(CONFIDENCE_LOOKBACK),
            events=self.drift.history,
            drift_state=self.drift.state,
            baseline=self._baseline,
            attributions=attributions or [],
            generated_at=generated_at,
        )

    def close(self) -> None:
        """Stop the ensemble worker."""
        self.anomaly.shutdown()
