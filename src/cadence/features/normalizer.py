"""Feature Normalizer: validation, bounded scaling, baseline-relative normalization.

Three responsibilities:
1. Reject malformed or out-of-range vectors (never clamp into the model)
2. Map raw measurements into [0, 1] by their physical range
3. Express an observed value as a signed deviation from baseline statistics

Normalization methods:
    zscore: (x - mean) / sqrt(max(variance, floor))
    minmax: 2 * (x - mean) / max(maximum - minimum, sqrt(floor))
    robust: (x - median) / max(1.4826 * MAD, sqrt(floor))

Rescaled deviation:
    d = 1 - exp(-|z| / 2)      (0 at the mean, → 1 far away)
"""

import math
from typing import Protocol

import numpy as np

from cadence.errors import InvalidFeatureVector
from cadence.features.schema import (
    FEATURE_COUNTS,
    FEATURE_NAMES,
    MODALITIES,
    FeatureVector,
    physical_ranges,
)

NORMALIZATION_METHODS = ("zscore", "minmax", "robust")

# Scale factor turning MAD into a normal-consistent std estimate
MAD_SCALE = 1.4826


class _Stats(Protocol):
    mean: float
    variance: float
    minimum: float
    maximum: float
    median: float
    mad: float


class Normalizer:
    """Validates and normalizes feature vectors.

    Args:
        generic_range: Physical range for slots without a named range
        variance_floor: Minimum variance used when dividing (default: 0.01)
        method: Default normalization method (default: 'zscore')

    Example:
        >>> normalizer = Normalizer()
        >>> normalizer.validate(vector)
        >>> scaled = normalizer.scale(vector)   # 95 values in [0, 1]
    """

    def __init__(
        self,
        generic_range: tuple[float, float] = (-1.0e4, 1.0e4),
        variance_floor: float = 0.01,
        method: str = "zscore",
    ) -> None:
        if generic_range[0] >= generic_range[1]:
            raise ValueError(f"generic_range ({generic_range}) must be increasing")
        if variance_floor <= 0:
            raise ValueError(f"variance_floor ({variance_floor}) must be > 0")
        if method not in NORMALIZATION_METHODS:
            raise ValueError(
                f"method ({method}) must be one of {NORMALIZATION_METHODS}"
            )

        self.generic_range = generic_range
        self.variance_floor = variance_floor
        self.method = method
        self._ranges = physical_ranges(generic_range)
        self._low = np.concatenate([self._ranges[m][0] for m in MODALITIES])
        self._span = np.concatenate([self._ranges[m][1] - self._ranges[m][0] for m in MODALITIES])

    def validate(self, vector: FeatureVector) -> FeatureVector:
        """Check a vector against the schema and physical ranges.

        NaN values are accepted (feature not measured). Everything else that
        is malformed raises.

        Returns:
            The same vector, for chaining

        Raises:
            InvalidFeatureVector: Unknown modality, wrong length, infinite
                value, value outside its physical range, or quality outside [0, 1]
        """
        if not vector.values:
            raise InvalidFeatureVector("vector has no modalities")
        if vector.timestamp.tzinfo is None:
            raise InvalidFeatureVector("vector timestamp must be timezone-aware")
        if not 0.0 <= vector.quality <= 1.0:
            raise InvalidFeatureVector(f"quality {vector.quality} outside [0, 1]")

        for modality, values in vector.values.items():
            if modality not in FEATURE_COUNTS:
                raise InvalidFeatureVector(f"unknown modality '{modality}'")
            expected = FEATURE_COUNTS[modality]
            if len(values) != expected:
                raise InvalidFeatureVector(
                    f"{modality}: expected {expected} values, got {len(values)}"
                )

            arr = np.asarray(values, dtype=float)
            if np.isinf(arr).any():
                raise InvalidFeatureVector(f"{modality}: infinite value")

            low, high = self._ranges[modality]
            with np.errstate(invalid="ignore"):
                bad = (arr < low) | (arr > high)
            if bad.any():
                i = int(np.flatnonzero(bad)[0])
                raise InvalidFeatureVector(
                    f"{modality}.{FEATURE_NAMES[modality][i]} = {arr[i]} "
                    f"outside [{low[i]}, {high[i]}]"
                )
        return vector

    def scale(self, vector: FeatureVector) -> np.ndarray:
        """Flatten and map into [0, 1] by physical range (NaN preserved)."""
        return self.scale_flat(vector.flatten())

    def scale_flat(self, flat: np.ndarray) -> np.ndarray:
        """Scale a flat array (or an (n, 95) matrix) into [0, 1]."""
        scaled = (np.asarray(flat, dtype=float) - self._low) / self._span
        return np.clip(scaled, 0.0, 1.0)

    def normalize(
        self,
        value: float,
        stats: _Stats,
        method: str | None = None,
    ) -> float:
        """Signed deviation of ``value`` from baseline statistics.

        Args:
            value: Observed raw value
            stats: Baseline statistics for the feature
            method: Override the default method

        Returns:
            Signed normalized deviation (NaN if value or stats are NaN)

        Example:
            >>> normalizer.normalize(160.0, stats)  # mean 80, variance 25
            16.0
        """
        method = method or self.method
        floor_std = math.sqrt(self.variance_floor)

        if method == "zscore":
            scale = math.sqrt(max(stats.variance, self.variance_floor))
            center = stats.mean
        elif method == "minmax":
            scale = max(stats.maximum - stats.minimum, floor_std) / 2.0
            center = stats.mean
        elif method == "robust":
            scale = max(MAD_SCALE * stats.mad, floor_std)
            center = stats.median
        else:
            raise ValueError(f"Unknown normalization method: {method}")

        return (value - center) / scale

    @staticmethod
    def rescale(z: float) -> float:
        """Map |z| into [0, 1): 0 at the baseline, approaching 1 far away."""
        if math.isnan(z):
            return float("nan")
        return 1.0 - math.exp(-abs(z) / 2.0)
