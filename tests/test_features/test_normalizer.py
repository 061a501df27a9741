"""Tests for the Feature Normalizer: validation, scaling, normalization."""

import math
from dataclasses import dataclass
from datetime import datetime, timezone

import numpy as np
import pytest

from cadence.errors import InvalidFeatureVector
from cadence.features.normalizer import Normalizer
from cadence.features.schema import TOTAL_FEATURES, FeatureVector

TS = datetime(2026, 1, 5, 10, 0, tzinfo=timezone.utc)


@dataclass
class Stats:
    mean: float = 80.0
    variance: float = 25.0
    minimum: float = 70.0
    maximum: float = 90.0
    median: float = 80.0
    mad: float = 3.0


def typing_vector(**changes: float) -> FeatureVector:
    values = [0.5] * 47
    values[0] = 80.0
    for index, value in changes.items():
        values[int(index.lstrip("i"))] = value
    return FeatureVector(values={"typing": values}, timestamp=TS)


class TestNormalizerInit:
    """Test Normalizer initialization."""

    def test_defaults(self) -> None:
        normalizer = Normalizer()
        assert normalizer.variance_floor == 0.01
        assert normalizer.method == "zscore"

    def test_unknown_method_rejected(self) -> None:
        with pytest.raises(ValueError, match="method.*must be one of"):
            Normalizer(method="quantile")

    def test_variance_floor_must_be_positive(self) -> None:
        with pytest.raises(ValueError, match="variance_floor.*must be > 0"):
            Normalizer(variance_floor=0)


class TestValidation:
    """Test rejection of malformed vectors."""

    def test_valid_vector_passes(self) -> None:
        v = typing_vector()
        assert Normalizer().validate(v) is v

    def test_nan_is_allowed(self) -> None:
        Normalizer().validate(typing_vector(i3=float("nan")))

    def test_out_of_range_rejected(self) -> None:
        """Dwell time above 1000 ms is outside its physical range."""
        with pytest.raises(InvalidFeatureVector, match="mean_dwell_ms"):
            Normalizer().validate(typing_vector(i0=1500.0))

    def test_infinity_rejected(self) -> None:
        with pytest.raises(InvalidFeatureVector, match="infinite"):
            Normalizer().validate(typing_vector(i5=float("inf")))

    def test_wrong_length_rejected(self) -> None:
        v = FeatureVector(values={"voice": [1.0] * 12}, timestamp=TS)
        with pytest.raises(InvalidFeatureVector, match="expected 13 values"):
            Normalizer().validate(v)

    def test_unknown_modality_rejected(self) -> None:
        v = FeatureVector(values={"gaze": [1.0] * 5}, timestamp=TS)
        with pytest.raises(InvalidFeatureVector, match="unknown modality"):
            Normalizer().validate(v)

    def test_empty_vector_rejected(self) -> None:
        with pytest.raises(InvalidFeatureVector, match="no modalities"):
            Normalizer().validate(FeatureVector(values={}, timestamp=TS))

    def test_naive_timestamp_rejected(self) -> None:
        v = FeatureVector(values={"voice": [100.0] + [1.0] * 12}, timestamp=datetime(2026, 1, 5))
        with pytest.raises(InvalidFeatureVector, match="timezone-aware"):
            Normalizer().validate(v)

    @pytest.mark.parametrize("quality", [-0.1, 1.5])
    def test_quality_out_of_range_rejected(self, quality: float) -> None:
        v = FeatureVector(values=typing_vector().values, timestamp=TS, quality=quality)
        with pytest.raises(InvalidFeatureVector, match="quality"):
            Normalizer().validate(v)

    def test_generic_range_applies_to_unnamed_slots(self) -> None:
        normalizer = Normalizer(generic_range=(-10.0, 10.0))
        with pytest.raises(InvalidFeatureVector, match="typing.f30"):
            normalizer.validate(typing_vector(i30=11.0))


class TestScaling:
    """Test bounded [0, 1] scaling."""

    def test_scale_bounds(self) -> None:
        scaled = Normalizer().scale(typing_vector())
        assert scaled.shape == (TOTAL_FEATURES,)
        observed = scaled[~np.isnan(scaled)]
        assert np.all((observed >= 0.0) & (observed <= 1.0))
        assert scaled[0] == pytest.approx(0.08)  # 80 ms of 0..1000 ms

    def test_absent_modalities_stay_nan(self) -> None:
        scaled = Normalizer().scale(typing_vector())
        assert np.all(np.isnan(scaled[47:]))


class TestNormalize:
    """Test baseline-relative normalization methods."""

    def test_zscore(self) -> None:
        assert Normalizer().normalize(160.0, Stats()) == pytest.approx(16.0)
        assert Normalizer().normalize(75.0, Stats()) == pytest.approx(-1.0)

    def test_zscore_uses_variance_floor(self) -> None:
        """Zero variance is floored instead of dividing by zero."""
        z = Normalizer().normalize(80.5, Stats(variance=0.0))
        assert z == pytest.approx(5.0)  # 0.5 / sqrt(0.01)

    def test_minmax(self) -> None:
        z = Normalizer(method="minmax").normalize(90.0, Stats())
        assert z == pytest.approx(1.0)  # 2 * 10 / 20

    def test_robust(self) -> None:
        z = Normalizer(method="robust").normalize(80.0 + 1.4826 * 3.0, Stats())
        assert z == pytest.approx(1.0)

    def test_method_override(self) -> None:
        z = Normalizer().normalize(90.0, Stats(), method="minmax")
        assert z == pytest.approx(1.0)

    def test_nan_propagates(self) -> None:
        assert math.isnan(Normalizer().normalize(float("nan"), Stats()))


class TestRescale:
    """Test the [0, 1) rescaling of deviations."""

    def test_zero_at_mean(self) -> None:
        assert Normalizer.rescale(0.0) == 0.0

    def test_symmetric_and_bounded(self) -> None:
        assert Normalizer.rescale(-3.0) == Normalizer.rescale(3.0)
        assert 0.0 < Normalizer.rescale(3.0) < 1.0
        assert Normalizer.rescale(50.0) == pytest.approx(1.0)

    def test_monotone(self) -> None:
        values = [Normalizer.rescale(z) for z in np.linspace(0, 10, 21)]
        assert values == sorted(values)
