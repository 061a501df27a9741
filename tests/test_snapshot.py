"""Tests for the sanitized snapshot boundary schema."""

from datetime import timedelta

import pytest
from pydantic import ValidationError

from cadence.engine.attribution import GroupAttribution
from cadence.engine.drift import DriftDetector, DriftState
from cadence.engine.similarity import SimilarityScorer
from cadence.snapshot import SCHEMA_VERSION, DriftSummary, SanitizedSnapshot


@pytest.fixture
def events(series_factory):
    detector = DriftDetector()
    for r in series_factory([1.0, 0.9, 0.8, 0.7, 0.6, 0.5, 0.4, 0.3, 0.2, 0.1]):
        detector.update(r)
    return detector.history


class TestFromOutputs:
    """Test aggregation of engine outputs."""

    def test_empty(self, t0) -> None:
        """Before any result, only the state is known."""
        snapshot = SanitizedSnapshot.from_outputs([], [], DriftState.STABLE, generated_at=t0)
        assert snapshot.schema_version == SCHEMA_VERSION == "1"
        assert snapshot.result_count == 0
        assert snapshot.similarity_latest is None
        assert snapshot.baseline_version is None
        assert snapshot.drift_events == []

    def test_aggregates(self, series_factory, noisy_profile, t0) -> None:
        results = series_factory([0.9, 0.7, 0.5])
        snapshot = SanitizedSnapshot.from_outputs(
            results,
            [],
            DriftState.WATCH,
            baseline=noisy_profile,
            generated_at=t0,
        )
        assert snapshot.result_count == 3
        assert snapshot.similarity_latest == 0.5
        assert snapshot.similarity_mean == pytest.approx(0.7)
        assert snapshot.baseline_version == 1
        assert snapshot.baseline_confidence == noisy_profile.statistics.confidence
        assert snapshot.drift_state == "watch"

    def test_inconclusive_results_skipped(self, series_factory, result_factory, t0) -> None:
        results = series_factory([0.9, 0.8]) + [
            result_factory(0.5, t0 + timedelta(minutes=5), inconclusive=True)
        ]
        snapshot = SanitizedSnapshot.from_outputs(results, [], DriftState.STABLE, generated_at=t0)
        assert snapshot.result_count == 2
        assert snapshot.similarity_latest == 0.8

    def test_recent_events_only(self, events, t0) -> None:
        snapshot = SanitizedSnapshot.from_outputs(
            [], events, DriftState.DRIFTING, generated_at=t0, max_events=2
        )
        assert len(snapshot.drift_events) == 2
        assert snapshot.drift_events[-1] == DriftSummary.from_event(events[-1])

    def test_no_events_when_max_is_zero(self, events, t0) -> None:
        snapshot = SanitizedSnapshot.from_outputs(
            [], events, DriftState.DRIFTING, generated_at=t0, max_events=0
        )
        assert snapshot.drift_events == []

    def test_attribution(self, t0) -> None:
        attributions = [GroupAttribution("typing", -0.8, -0.2), GroupAttribution("voice", 0.2, 0.05)]
        snapshot = SanitizedSnapshot.from_outputs(
            [], [], DriftState.STABLE, attributions=attributions, generated_at=t0
        )
        assert snapshot.attribution == {"typing": -0.8, "voice": 0.2}


class TestBoundary:
    """Only aggregates cross the boundary."""

    def test_no_feature_values_or_deviations(self, noisy_profile, at_means, t0) -> None:
        typing = list(at_means["typing"])
        typing[0] = 400.0
        result = SimilarityScorer().score(at_means.with_modalities(typing=typing), noisy_profile)
        snapshot = SanitizedSnapshot.from_outputs(
            [result], [], DriftState.STABLE, baseline=noisy_profile, generated_at=t0
        )
        dumped = snapshot.model_dump_json()
        assert "mean_dwell_ms" not in dumped
        assert snapshot.anomaly_counts["typing"] >= 1

    def test_drift_summary_keeps_modalities_not_features(self, result_factory, t0) -> None:
        detector = DriftDetector(window=4)
        for k, overall in enumerate([1.0, 0.9, 0.8, 0.7]):
            grown = 0.0 if k < 2 else 0.6
            detector.update(
                result_factory(
                    overall,
                    t0 + timedelta(minutes=k),
                    deviations={"typing.mean_dwell_ms": grown},
                )
            )
        event = detector.history[-1]
        assert event.primary_features == ("typing.mean_dwell_ms",)

        summary = DriftSummary.from_event(event)
        assert summary.affected_modalities == ["typing"]
        assert summary.score_trend == pytest.approx(-0.1)
        assert "mean_dwell_ms" not in summary.model_dump_json()

    def test_unknown_fields_rejected(self, t0) -> None:
        with pytest.raises(ValidationError):
            SanitizedSnapshot(generated_at=t0, raw_features=[1.0])

    def test_schema_version_is_fixed(self, t0) -> None:
        with pytest.raises(ValidationError):
            SanitizedSnapshot(generated_at=t0, schema_version="2")

    def test_frozen(self, t0) -> None:
        snapshot = SanitizedSnapshot(generated_at=t0)
        with pytest.raises(ValidationError):
            snapshot.result_count = 5

    def test_json_round_trip(self, events, t0) -> None:
        snapshot = SanitizedSnapshot.from_outputs([], events, DriftState.DRIFTING, generated_at=t0)
        restored = SanitizedSnapshot.model_validate_json(snapshot.model_dump_json())
        assert restored == snapshot
