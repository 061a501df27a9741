"""Baseline system: streaming moments, finalization, versioned profiles.

Implements the baseline-collection phase:
- Welford streaming mean/variance per modality+feature (NaN-masked)
- Bounded trailing buffer of recent samples (reference + stability window)
- Active-time tracking (gaps above max_idle_gap_s count as idle)
- Finalization gates: sample count, duration, active-time ratio
- Immutable, versioned BaselineProfile output
"""

import logging
import math
import warnings
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Mapping, Optional

import numpy as np
import pandas as pd

from cadence.errors import InsufficientData, InvalidFeatureVector
from cadence.features.normalizer import Normalizer
from cadence.features.schema import (
    FEATURE_COUNTS,
    MODALITIES,
    TOTAL_FEATURES,
    FeatureVector,
    feature_keys,
    modality_slices,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FeatureStats:
    """Baseline statistics for a single feature.

    Attributes:
        mean: Streaming mean over all baseline samples
        variance: Sample variance (ddof=1); NaN when fewer than 2 samples
        sample_count: Non-NaN samples seen for this feature
        minimum: Smallest observed value
        maximum: Largest observed value
        median: Median over the retained reference samples
        mad: Median absolute deviation over the retained reference samples
    """

    mean: float
    variance: float
    sample_count: int
    minimum: float
    maximum: float
    median: float
    mad: float

    @property
    def std(self) -> float:
        return math.sqrt(self.variance) if not math.isnan(self.variance) else float("nan")


@dataclass(frozen=True)
class BaselineStatistics:
    """Aggregate statistics of a baseline profile."""

    confidence: float
    stability: float
    sample_count: int
    duration_s: float
    active_ratio: float


@dataclass(frozen=True)
class BaselineProfile:
    """Immutable, versioned reference profile of one subject's behavior.

    A rebuild never mutates an existing profile: it produces a new value with
    a higher version that callers adopt explicitly.

    Attributes:
        version: Monotonic profile version (1 for the first baseline)
        created_at: Finalization time
        features: Modality → tuple of FeatureStats (one per slot)
        statistics: Aggregate confidence/stability/sample count
        reference: Read-only (n, 95) matrix of retained recent samples
    """

    version: int
    created_at: datetime
    features: Mapping[str, tuple[FeatureStats, ...]]
    statistics: BaselineStatistics
    reference: np.ndarray

    def stats(self, modality: str, index: int) -> Optional[FeatureStats]:
        """Statistics for one feature, or None if the modality is absent."""
        per_modality = self.features.get(modality)
        if per_modality is None:
            return None
        return per_modality[index]

    def means_flat(self) -> np.ndarray:
        """Flat 95-slot array of feature means (NaN where unknown)."""
        flat = np.full(TOTAL_FEATURES, np.nan)
        for modality, sl in modality_slices().items():
            if modality in self.features:
                flat[sl] = [s.mean for s in self.features[modality]]
        return flat

    def to_frame(self) -> pd.DataFrame:
        """One row per feature with its statistics (for export)."""
        rows = []
        keys = iter(feature_keys())
        for modality in MODALITIES:
            for i in range(FEATURE_COUNTS[modality]):
                key = next(keys)
                s = self.stats(modality, i)
                if s is None:
                    continue
                rows.append({
                    "feature": key,
                    "modality": modality,
                    "mean": s.mean,
                    "variance": s.variance,
                    "sample_count": s.sample_count,
                    "minimum": s.minimum,
                    "maximum": s.maximum,
                    "median": s.median,
                    "mad": s.mad,
                })
        frame = pd.DataFrame(rows)
        frame["version"] = self.version
        return frame

    def summary(self) -> dict:
        """Aggregate-only view (no per-feature values)."""
        return {
            "version": self.version,
            "created_at": self.created_at.isoformat(),
            "confidence": self.statistics.confidence,
            "stability": self.statistics.stability,
            "sample_count": self.statistics.sample_count,
            "duration_s": self.statistics.duration_s,
            "active_ratio": self.statistics.active_ratio,
        }


@dataclass(frozen=True)
class BaselineChange:
    """A feature whose mean moved between two baseline versions."""

    feature: str
    old_mean: float
    new_mean: float
    relative_change: float


def compare_profiles(
    old: BaselineProfile,
    new: BaselineProfile,
    threshold: float = 0.2,
) -> list[BaselineChange]:
    """Features whose mean moved by at least ``threshold`` relative to the old mean.

    Features missing from either profile, or with a zero or NaN old mean, are
    not compared.

    Returns:
        Changes sorted by relative change, largest first
    """
    if threshold <= 0:
        raise ValueError(f"threshold ({threshold}) must be > 0")

    old_means = old.means_flat()
    new_means = new.means_flat()
    changes = []
    for key, before, after in zip(feature_keys(), old_means, new_means):
        if np.isnan(before) or np.isnan(after) or before == 0:
            continue
        relative = abs(after - before) / abs(before)
        if relative >= threshold:
            changes.append(BaselineChange(key, float(before), float(after), float(relative)))
    return sorted(changes, key=lambda c: c.relative_change, reverse=True)


class BaselineBuilder:
    """Accumulates validated vectors and finalizes them into a profile.

    Args:
        min_samples: Minimum accumulated vectors (default: 200)
        min_duration_s: Minimum span between first and last sample (default: 120)
        min_active_ratio: Minimum fraction of the span with activity (default: 0.7)
        max_idle_gap_s: Largest inter-sample gap still counted as active (default: 15)
        reference_size: Trailing samples retained for the reference matrix (default: 256)
        stability_window: Trailing samples used for stability (default: 50)
        variance_floor: Floor for near-constant features (default: 0.01)
        min_quality: Vectors below this quality are skipped (default: 0.6)
        version: Version the finalized profile will carry (default: 1)
        normalizer: Validator applied before any state change

    Example:
        >>> builder = BaselineBuilder(version=2)
        >>> for v in vectors:
        ...     builder.accumulate(v)
        >>> profile = builder.finalize()
        >>> profile.statistics.sample_count
        240
    """

    def __init__(
        self,
        min_samples: int = 200,
        min_duration_s: float = 120.0,
        min_active_ratio: float = 0.7,
        max_idle_gap_s: float = 15.0,
        reference_size: int = 256,
        stability_window: int = 50,
        variance_floor: float = 0.01,
        min_quality: float = 0.6,
        version: int = 1,
        normalizer: Optional[Normalizer] = None,
    ) -> None:
        if min_samples < 2:
            raise ValueError(f"min_samples ({min_samples}) must be >= 2 for variance")
        if not 0 <= min_active_ratio <= 1:
            raise ValueError(f"min_active_ratio ({min_active_ratio}) must be in [0, 1]")
        if max_idle_gap_s <= 0:
            raise ValueError(f"max_idle_gap_s ({max_idle_gap_s}) must be > 0")
        if reference_size < 1:
            raise ValueError(f"reference_size ({reference_size}) must be >= 1")
        if stability_window < 2:
            raise ValueError(f"stability_window ({stability_window}) must be >= 2")
        if not 0 <= min_quality <= 1:
            raise ValueError(f"min_quality ({min_quality}) must be in [0, 1]")
        if version < 1:
            raise ValueError(f"version ({version}) must be >= 1")

        self.min_samples = min_samples
        self.min_duration_s = min_duration_s
        self.min_active_ratio = min_active_ratio
        self.max_idle_gap_s = max_idle_gap_s
        self.reference_size = reference_size
        self.stability_window = stability_window
        self.variance_floor = variance_floor
        self.min_quality = min_quality
        self.version = version
        self.normalizer = normalizer or Normalizer(variance_floor=variance_floor)

        self._count = np.zeros(TOTAL_FEATURES, dtype=np.int64)
        self._mean = np.zeros(TOTAL_FEATURES)
        self._m2 = np.zeros(TOTAL_FEATURES)
        self._min = np.full(TOTAL_FEATURES, np.nan)
        self._max = np.full(TOTAL_FEATURES, np.nan)
        self._seen = set()
        self._recent: deque[np.ndarray] = deque(maxlen=max(reference_size, stability_window))
        self._samples = 0
        self._skipped = 0
        self._first_ts: Optional[datetime] = None
        self._last_ts: Optional[datetime] = None
        self._active_s = 0.0

    @property
    def sample_count(self) -> int:
        return self._samples

    @property
    def duration_s(self) -> float:
        if self._first_ts is None or self._last_ts is None:
            return 0.0
        return (self._last_ts - self._first_ts).total_seconds()

    @property
    def active_ratio(self) -> float:
        """Fraction of the collection span during which samples arrived."""
        duration = self.duration_s
        if duration <= 0:
            return 1.0 if self._samples > 0 else 0.0
        return min(1.0, self._active_s / duration)

    @property
    def skipped_count(self) -> int:
        """Valid vectors left out for quality below ``min_quality``."""
        return self._skipped

    def accumulate(self, vector: FeatureVector) -> bool:
        """Ingest one sample into the running estimators.

        Returns:
            False if the vector was skipped for low quality

        Raises:
            InvalidFeatureVector: If the vector fails validation or arrives
                out of order. State is untouched in that case.
        """
        self.normalizer.validate(vector)
        if self._last_ts is not None and vector.timestamp < self._last_ts:
            raise InvalidFeatureVector(
                f"sample at {vector.timestamp.isoformat()} precedes "
                f"{self._last_ts.isoformat()}"
            )
        if vector.quality < self.min_quality:
            self._skipped += 1
            logger.debug(
                "Skipped sample at %s: quality %.2f", vector.timestamp.isoformat(), vector.quality
            )
            return False

        x = vector.flatten()
        mask = ~np.isnan(x)

        # Welford update, vectorized over observed slots
        self._count[mask] += 1
        delta = x[mask] - self._mean[mask]
        self._mean[mask] += delta / self._count[mask]
        self._m2[mask] += delta * (x[mask] - self._mean[mask])
        self._min[mask] = np.fmin(self._min[mask], x[mask])
        self._max[mask] = np.fmax(self._max[mask], x[mask])
        self._seen.update(vector.modalities)

        if self._last_ts is not None:
            gap = (vector.timestamp - self._last_ts).total_seconds()
            if gap <= self.max_idle_gap_s:
                self._active_s += gap
        else:
            self._first_ts = vector.timestamp

        self._last_ts = vector.timestamp
        self._recent.append(np.array(x))
        self._samples += 1
        return True

    def shortfalls(self) -> list[str]:
        """Reasons the current accumulation cannot be finalized (empty if ready)."""
        reasons = []
        if self._samples < self.min_samples:
            reasons.append(f"samples {self._samples} < {self.min_samples}")
        if self.duration_s < self.min_duration_s:
            reasons.append(f"duration {self.duration_s:.1f}s < {self.min_duration_s:.1f}s")
        if self._samples > 0 and self.active_ratio < self.min_active_ratio:
            reasons.append(
                f"active ratio {self.active_ratio:.2f} < {self.min_active_ratio:.2f}"
            )
        return reasons

    def finalize(self, created_at: Optional[datetime] = None) -> BaselineProfile:
        """Produce an immutable profile from everything accumulated so far.

        Returns:
            BaselineProfile carrying ``self.version``

        Raises:
            InsufficientData: Sample count, duration or active ratio below minimum
        """
        reasons = self.shortfalls()
        if reasons:
            raise InsufficientData(reasons)

        with np.errstate(invalid="ignore", divide="ignore"):
            variance = np.where(self._count >= 2, self._m2 / (self._count - 1), np.nan)
        variance = np.maximum(variance, 0.0)

        reference = np.vstack(list(self._recent)[-self.reference_size:])
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", RuntimeWarning)
            median = np.nanmedian(reference, axis=0)
            mad = np.nanmedian(np.abs(reference - median), axis=0)
        reference.setflags(write=False)

        features = {}
        for modality, sl in modality_slices().items():
            if modality not in self._seen:
                continue
            features[modality] = tuple(
                FeatureStats(
                    mean=float(self._mean[i]) if self._count[i] else float("nan"),
                    variance=float(variance[i]),
                    sample_count=int(self._count[i]),
                    minimum=float(self._min[i]),
                    maximum=float(self._max[i]),
                    median=float(median[i]),
                    mad=float(mad[i]),
                )
                for i in range(sl.start, sl.stop)
            )

        statistics = BaselineStatistics(
            confidence=self._confidence(),
            stability=self._stability(),
            sample_count=self._samples,
            duration_s=self.duration_s,
            active_ratio=self.active_ratio,
        )

        profile = BaselineProfile(
            version=self.version,
            created_at=created_at or datetime.now(timezone.utc),
            features=MappingProxyType(features),
            statistics=statistics,
            reference=reference,
        )
        logger.info(
            "Baseline v%d finalized: samples=%d confidence=%.3f stability=%.3f",
            profile.version,
            statistics.sample_count,
            statistics.confidence,
            statistics.stability,
        )
        return profile

    def _confidence(self) -> float:
        """Blend of sample adequacy, duration adequacy and active ratio."""
        sample_score = min(1.0, self._samples / (2 * self.min_samples))
        if self.min_duration_s > 0:
            duration_score = min(1.0, self.duration_s / (2 * self.min_duration_s))
        else:
            duration_score = 1.0
        confidence = 0.4 * sample_score + 0.3 * duration_score + 0.3 * self.active_ratio
        return float(np.clip(confidence, 0.0, 1.0))

    def _stability(self) -> float:
        """Mean of 1 / (1 + cv) over the trailing sub-window."""
        trailing = np.vstack(list(self._recent)[-self.stability_window:])
        counts = np.sum(~np.isnan(trailing), axis=0)
        usable = counts >= 2
        if not usable.any():
            return 0.5

        with warnings.catch_warnings():
            warnings.simplefilter("ignore", RuntimeWarning)
            mean = np.nanmean(trailing[:, usable], axis=0)
            std = np.nanstd(trailing[:, usable], axis=0, ddof=1)
        floor = math.sqrt(self.variance_floor)
        cv = std / np.maximum(np.abs(mean), floor)
        return float(np.clip(np.mean(1.0 / (1.0 + cv)), 0.0, 1.0))
