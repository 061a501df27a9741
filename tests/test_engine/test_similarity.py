"""Tests for the Similarity Scorer."""

from datetime import timedelta

import numpy as np
import pytest

from cadence.engine.anomaly import AnomalyScorer
from cadence.engine.baseline import BaselineProfile
from cadence.engine.similarity import Severity, SimilarityResult, SimilarityScorer
from cadence.errors import InsufficientData
from cadence.features.schema import FeatureVector, physical_ranges


def far_values(base: dict[str, np.ndarray]) -> dict[str, np.ndarray]:
    """Every feature pushed far from its typical value, still in range."""
    ranges = physical_ranges((-1.0e4, 1.0e4))
    far = {}
    for m, v in base.items():
        low, high = ranges[m]
        generic = np.isclose(low, -1.0e4)
        target = low + 0.95 * (high - low)
        target[generic] = v[generic] * 3.0
        far[m] = target
    return far


def blend(base, far, k: float, timestamp) -> FeatureVector:
    values = {m: tuple(base[m] + k * (far[m] - base[m])) for m in base}
    return FeatureVector(values=values, timestamp=timestamp)


@pytest.fixture
def dwell_profile(stream_factory, profile_factory) -> BaselineProfile:
    """Baseline with mean dwell 80 ± 5 ms, everything else constant."""
    rng = np.random.default_rng(42)
    dwell = 80.0 + 5.0 * rng.standard_normal(240)
    return profile_factory(stream_factory(240, overrides={("typing", 0): dwell}))


class TestScorerInit:
    """Test SimilarityScorer initialization."""

    def test_defaults(self) -> None:
        scorer = SimilarityScorer()
        assert scorer.anomaly_threshold == 0.65
        assert scorer.inconclusive_threshold == 0.3
        assert scorer.min_feature_samples == 20
        assert scorer.weights == {"typing": 0.35, "voice": 0.20, "motor": 0.30, "temporal": 0.15}

    def test_severity_cutoffs_validated(self) -> None:
        with pytest.raises(ValueError, match="severity_medium.*must be <"):
            SimilarityScorer(severity_medium=0.9, severity_high=0.8)

    def test_outlier_min_deviation_validated(self) -> None:
        with pytest.raises(ValueError, match="outlier_min_deviation"):
            SimilarityScorer(outlier_min_deviation=1.0)

    def test_unknown_weight_modality(self) -> None:
        with pytest.raises(ValueError, match="Unknown modalities"):
            SimilarityScorer(weights={"gaze": 1.0})

    def test_severity_bands(self) -> None:
        scorer = SimilarityScorer()
        assert scorer.severity(0.95) is Severity.HIGH
        assert scorer.severity(0.9) is Severity.HIGH
        assert scorer.severity(0.8) is Severity.MEDIUM
        assert scorer.severity(0.7) is Severity.LOW


class TestIdenticalBaseline:
    """Scenario: 200 identical vectors, then the same vector scored."""

    def test_identical_vector_matches(self, constant_profile, at_means) -> None:
        ensemble = AnomalyScorer()
        ensemble.rebuild(constant_profile.reference, version=constant_profile.version)
        result = SimilarityScorer(anomaly_scorer=ensemble).score(at_means, constant_profile)

        assert isinstance(result, SimilarityResult)
        assert result.overall >= 0.95
        assert result.coverage == pytest.approx(1.0)
        assert result.anomalies == []
        assert not result.inconclusive
        assert result.ensemble_available
        assert result.baseline_version == 1
        ensemble.shutdown()


class TestDwellScenario:
    """Scenario: dwell 80 ± 5 ms baseline, scored at 160 ms."""

    def test_dwell_anomaly(self, dwell_profile, at_means) -> None:
        typing = list(at_means["typing"])
        typing[0] = 160.0
        vector = at_means.with_modalities(typing=typing)

        result = SimilarityScorer().score(vector, dwell_profile)

        anomalies = {a.feature: a for a in result.anomalies}
        dwell = anomalies["typing.mean_dwell_ms"]
        assert dwell.severity in (Severity.MEDIUM, Severity.HIGH)
        assert dwell.deviation > 0

        contributions = {c.feature: c.contribution for c in result.modalities["typing"].contributions}
        assert contributions["typing.mean_dwell_ms"] < 0

    def test_short_dwell_has_negative_deviation(self, dwell_profile, at_means) -> None:
        typing = list(at_means["typing"])
        typing[0] = 10.0
        result = SimilarityScorer().score(at_means.with_modalities(typing=typing), dwell_profile)
        assert result.deviations["typing.mean_dwell_ms"] < -0.65


class TestSimilarityProperties:
    """Test bounds, monotonicity and aggregation identities."""

    def test_near_means_is_similar(self, noisy_profile, at_means) -> None:
        result = SimilarityScorer().score(at_means, noisy_profile)
        assert result.overall >= 0.9
        assert result.coverage == pytest.approx(1.0)

    def test_far_from_means_is_dissimilar(self, noisy_profile, base, at_means) -> None:
        far = blend(base, far_values(base), 1.0, at_means.timestamp)
        result = SimilarityScorer().score(far, noisy_profile)
        assert result.overall <= 0.1
        assert len(result.anomalies) > 80

    def test_similarity_decreases_with_distance(self, noisy_profile, base, at_means) -> None:
        far = far_values(base)
        scorer = SimilarityScorer()
        scores = [
            scorer.score(blend(base, far, k, at_means.timestamp), noisy_profile).overall
            for k in np.linspace(0.0, 1.0, 6)
        ]
        assert all(a >= b for a, b in zip(scores, scores[1:]))
        assert scores[0] > scores[-1]

    def test_scores_are_bounded(self, noisy_profile, base, at_means) -> None:
        far = far_values(base)
        scorer = SimilarityScorer()
        for k in (-0.5, 0.0, 0.3, 1.0):
            result = scorer.score(blend(base, far, k, at_means.timestamp), noisy_profile)
            for value in (result.overall, result.confidence, result.coverage):
                assert 0.0 <= value <= 1.0
            for deviation in result.deviations.values():
                assert -1.0 <= deviation <= 1.0

    def test_contributions_sum_to_two_overall_minus_one(self, noisy_profile, base, at_means) -> None:
        vector = blend(base, far_values(base), 0.1, at_means.timestamp)
        result = SimilarityScorer().score(vector, noisy_profile)
        total = sum(c.contribution for m in result.modalities.values() for c in m.contributions)
        assert total == pytest.approx(2 * result.overall - 1)


class TestCoverage:
    """Test coverage, inconclusive results and missing data."""

    def test_partial_modalities_reduce_coverage(self, noisy_profile, at_means) -> None:
        vector = FeatureVector(values={"typing": at_means["typing"]}, timestamp=at_means.timestamp)
        result = SimilarityScorer().score(vector, noisy_profile)
        assert result.coverage == pytest.approx(47 / 95)
        assert not result.inconclusive
        assert set(result.modalities) == {"typing"}

    def test_low_coverage_is_inconclusive(self, noisy_profile, at_means) -> None:
        """Voice only (13 of 95 features) is below the 0.3 coverage threshold."""
        vector = FeatureVector(values={"voice": at_means["voice"]}, timestamp=at_means.timestamp)
        result = SimilarityScorer().score(vector, noisy_profile)
        assert result.inconclusive
        assert result.overall == 0.5
        assert result.confidence <= result.coverage

    def test_nan_values_not_counted(self, noisy_profile, at_means) -> None:
        typing = list(at_means["typing"])
        typing[0] = float("nan")
        result = SimilarityScorer().score(at_means.with_modalities(typing=typing), noisy_profile)
        assert result.coverage == pytest.approx(94 / 95)
        assert "typing.mean_dwell_ms" not in result.deviations

    def test_min_feature_samples(self, stream_factory, profile_factory, at_means) -> None:
        overrides = {("voice", 2): np.array([np.nan if k % 2 else 6.0 for k in range(200)])}
        profile = profile_factory(stream_factory(200, overrides=overrides))
        result = SimilarityScorer(min_feature_samples=150).score(at_means, profile)
        assert result.coverage == pytest.approx(94 / 95)

    def test_no_baseline_raises(self, at_means) -> None:
        with pytest.raises(InsufficientData):
            SimilarityScorer().score(at_means, None)


class TestConfidenceAndEnsemble:
    """Test confidence blending and ensemble degradation."""

    def test_stale_vector_lowers_confidence(self, noisy_profile, at_means) -> None:
        scorer = SimilarityScorer()
        fresh = scorer.score(at_means, noisy_profile)
        stale = scorer.score(at_means, noisy_profile, now=at_means.timestamp + timedelta(minutes=10))
        assert stale.confidence < fresh.confidence

    def test_confidence_formula(self, constant_profile, at_means) -> None:
        result = SimilarityScorer().score(at_means, constant_profile)
        expected = (
            0.4 * constant_profile.statistics.confidence
            + 0.35 * 1.0
            + 0.25 * result.mean_reliability
        )
        assert result.confidence == pytest.approx(expected)

    def test_without_ensemble(self, noisy_profile, at_means) -> None:
        """No ensemble built yet: scoring degrades, it does not fail."""
        result = SimilarityScorer(anomaly_scorer=AnomalyScorer()).score(at_means, noisy_profile)
        assert not result.ensemble_available
        assert result.vector_outlier_score is None

    def test_ensemble_can_be_skipped(self, noisy_profile, at_means) -> None:
        ensemble = AnomalyScorer()
        ensemble.rebuild(noisy_profile.reference)
        scorer = SimilarityScorer(anomaly_scorer=ensemble)
        assert scorer.score(at_means, noisy_profile).ensemble_available
        assert not scorer.score(at_means, noisy_profile, use_ensemble=False).ensemble_available

    def test_overall_matches_score(self, noisy_profile, base, at_means) -> None:
        vector = blend(base, far_values(base), 0.2, at_means.timestamp)
        scorer = SimilarityScorer()
        assert scorer.overall(vector, noisy_profile) == pytest.approx(
            scorer.score(vector, noisy_profile).overall
        )

    def test_to_dict(self, noisy_profile, at_means) -> None:
        data = SimilarityScorer().score(at_means, noisy_profile).to_dict()
        assert data["baseline_version"] == 1
        assert set(data["modalities"]) == {"typing", "voice", "motor", "temporal"}


class TestInDistributionFlags:
    """Fresh vectors from the baseline distribution rarely raise anomalies."""

    @pytest.fixture
    def ensemble_scorer(self, noisy_profile):
        ensemble = AnomalyScorer()
        ensemble.rebuild(noisy_profile.reference, version=noisy_profile.version)
        yield SimilarityScorer(anomaly_scorer=ensemble)
        ensemble.shutdown()

    @pytest.fixture
    def fresh_results(self, ensemble_scorer, noisy_profile, stream_factory, t0):
        stream = stream_factory(50, start=t0 + timedelta(seconds=1000), noise=0.02, seed=5)
        return [ensemble_scorer.score(v, noisy_profile) for v in stream]

    def test_outlier_flags_need_deviation(self, ensemble_scorer, fresh_results) -> None:
        """An isolation score alone never flags a feature sitting near its mean."""
        assert all(r.ensemble_available for r in fresh_results)
        for r in fresh_results:
            for a in r.anomalies:
                assert abs(a.deviation) >= ensemble_scorer.outlier_min_deviation

    def test_false_positive_rate_is_bounded(self, fresh_results) -> None:
        flagged = sum(len(r.anomalies) for r in fresh_results)
        compared = sum(r.covered_features for r in fresh_results)
        assert flagged / compared < 0.08
