"""Shared fixtures: synthetic feature streams and baseline profiles."""

from datetime import datetime, timedelta, timezone
from types import MappingProxyType
from typing import Callable, Optional, Sequence

import numpy as np
import pytest

from cadence.engine.baseline import BaselineBuilder, BaselineProfile
from cadence.engine.similarity import ModalityResult, SimilarityResult
from cadence.features.schema import FEATURE_COUNTS, MODALITIES, FeatureVector, physical_ranges

T0 = datetime(2026, 1, 5, 10, 0, tzinfo=timezone.utc)


def base_values() -> dict[str, np.ndarray]:
    """Typical in-range value for every slot (30% into named ranges, 50+i elsewhere)."""
    ranges = physical_ranges((-1.0e4, 1.0e4))
    values = {}
    for modality in MODALITIES:
        low, high = ranges[modality]
        generic = np.isclose(low, -1.0e4) & np.isclose(high, 1.0e4)
        v = low + 0.3 * (high - low)
        v[generic] = 50.0 + np.arange(FEATURE_COUNTS[modality])[generic]
        values[modality] = v
    values["typing"][0] = 80.0  # mean dwell (ms)
    return values


def make_stream(
    n: int,
    start: datetime = T0,
    step_s: float = 1.0,
    noise: float = 0.0,
    seed: int = 0,
    modalities: Sequence[str] = MODALITIES,
    overrides: Optional[dict[tuple[str, int], np.ndarray]] = None,
) -> list[FeatureVector]:
    """Synthetic stream around ``base_values``.

    Args:
        n: Number of vectors
        start: First timestamp
        step_s: Seconds between vectors
        noise: Relative Gaussian noise (e.g. 0.02 = 2%)
        seed: Noise seed
        modalities: Modalities to include
        overrides: (modality, index) → per-vector values
    """
    rng = np.random.default_rng(seed)
    base = base_values()
    ranges = physical_ranges((-1.0e4, 1.0e4))
    vectors = []
    for k in range(n):
        values = {}
        for m in modalities:
            v = base[m] * (1.0 + noise * rng.standard_normal(base[m].shape))
            low, high = ranges[m]
            v = np.clip(v, low, high)
            values[m] = v
        for (m, i), series in (overrides or {}).items():
            if m in values:
                values[m][i] = series[k]
        vectors.append(
            FeatureVector(
                values={m: tuple(v) for m, v in values.items()},
                timestamp=start + timedelta(seconds=k * step_s),
            )
        )
    return vectors


def make_result(
    overall: float,
    timestamp: datetime,
    confidence: float = 0.8,
    inconclusive: bool = False,
    deviations: Optional[dict[str, float]] = None,
) -> SimilarityResult:
    """Hand-built SimilarityResult with optional deviations keyed "modality.feature"."""
    grouped: dict[str, dict[str, float]] = {}
    for key, value in (deviations or {}).items():
        grouped.setdefault(key.split(".", 1)[0], {})[key] = value
    modalities = {
        m: ModalityResult(similarity=overall, deviations=MappingProxyType(d))
        for m, d in grouped.items()
    }
    return SimilarityResult(
        overall=overall,
        confidence=confidence,
        coverage=0.1 if inconclusive else 1.0,
        inconclusive=inconclusive,
        ensemble_available=False,
        baseline_version=1,
        timestamp=timestamp,
        vector_outlier_score=None,
        modalities=MappingProxyType(modalities),
        covered_features=95,
        mean_reliability=1.0,
    )


def results_series(overalls: Sequence[float], step_s: float = 60.0, **kwargs) -> list[SimilarityResult]:
    """One result per value, ``step_s`` seconds apart starting at T0."""
    return [
        make_result(o, T0 + timedelta(seconds=k * step_s), **kwargs)
        for k, o in enumerate(overalls)
    ]


def build_profile(vectors: Sequence[FeatureVector], **kwargs) -> BaselineProfile:
    builder = BaselineBuilder(**kwargs)
    for v in vectors:
        builder.accumulate(v)
    return builder.finalize(created_at=vectors[-1].timestamp)


@pytest.fixture
def t0() -> datetime:
    return T0


@pytest.fixture
def stream_factory() -> Callable[..., list[FeatureVector]]:
    return make_stream


@pytest.fixture
def profile_factory() -> Callable[..., BaselineProfile]:
    return build_profile


@pytest.fixture
def result_factory() -> Callable[..., SimilarityResult]:
    return make_result


@pytest.fixture
def series_factory() -> Callable[..., list[SimilarityResult]]:
    return results_series


@pytest.fixture
def base() -> dict[str, np.ndarray]:
    return base_values()


@pytest.fixture
def noisy_stream() -> list[FeatureVector]:
    """240 vectors, one per second, 2% noise."""
    return make_stream(240, noise=0.02, seed=1)


@pytest.fixture
def noisy_profile(noisy_stream: list[FeatureVector]) -> BaselineProfile:
    return build_profile(noisy_stream)


@pytest.fixture
def constant_profile() -> BaselineProfile:
    """Baseline from 200 identical vectors."""
    return build_profile(make_stream(200))


@pytest.fixture
def at_means(base: dict[str, np.ndarray]) -> FeatureVector:
    """A vector exactly at the typical values, one tick after the baseline."""
    return FeatureVector(
        values={m: tuple(v) for m, v in base.items()},
        timestamp=T0 + timedelta(seconds=600),
    )
