"""Modality schema and the FeatureVector value type.

Four modalities with fixed lengths:
- typing: 47 keystroke cadence features
- voice: 13 acoustic descriptors
- motor: 23 pointer/motor dynamics
- temporal: 12 derived temporal features

Slots with a known physical meaning carry a name and a sane physical range;
the remaining slots are named ``f{index}`` and validated against a generic
range supplied by the Normalizer.
"""

from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import Mapping, Optional, Sequence

import numpy as np

MODALITIES: tuple[str, ...] = ("typing", "voice", "motor", "temporal")

FEATURE_COUNTS: dict[str, int] = {
    "typing": 47,
    "voice": 13,
    "motor": 23,
    "temporal": 12,
}

TOTAL_FEATURES = sum(FEATURE_COUNTS.values())

# Named leading slots per modality: (name, low, high)
_NAMED_FEATURES: dict[str, list[tuple[str, float, float]]] = {
    "typing": [
        ("mean_dwell_ms", 0.0, 1000.0),
        ("dwell_std_ms", 0.0, 500.0),
        ("mean_flight_ms", 0.0, 3000.0),
        ("flight_std_ms", 0.0, 2000.0),
        ("typing_speed_cpm", 0.0, 1500.0),
        ("rhythm_regularity", 0.0, 1.0),
        ("dwell_entropy", 0.0, 8.0),
        ("backspace_rate", 0.0, 1.0),
        ("pause_rate", 0.0, 1.0),
        ("tremor_4_6hz", 0.0, 1.0),
        ("hand_asymmetry_ms", -500.0, 500.0),
        ("fatigue_drift_ms", -500.0, 500.0),
    ],
    "voice": [
        ("f0_hz", 50.0, 500.0),
        ("jitter_pct", 0.0, 10.0),
        ("shimmer_pct", 0.0, 20.0),
        ("hnr_db", 0.0, 40.0),
        ("energy", 0.0, 1.0),
        ("pause_ratio", 0.0, 1.0),
        ("speech_rate_sps", 0.0, 12.0),
        ("formant_f1_hz", 100.0, 1500.0),
        ("formant_f2_hz", 500.0, 3500.0),
        ("mfcc_1", -100.0, 100.0),
        ("mfcc_2", -100.0, 100.0),
        ("mfcc_3", -100.0, 100.0),
        ("mfcc_4", -100.0, 100.0),
    ],
    "motor": [
        ("mean_velocity_px_s", 0.0, 10000.0),
        ("velocity_std_px_s", 0.0, 10000.0),
        ("path_efficiency", 0.0, 1.0),
        ("tremor_amplitude_px", 0.0, 100.0),
        ("tremor_frequency_hz", 0.0, 20.0),
        ("click_dwell_ms", 0.0, 1000.0),
        ("overshoot_rate", 0.0, 1.0),
    ],
    "temporal": [
        ("session_length_s", 0.0, 86400.0),
        ("active_ratio", 0.0, 1.0),
        ("timing_entropy", 0.0, 8.0),
        ("circadian_phase_h", 0.0, 24.0),
        ("inter_event_cv", 0.0, 10.0),
    ],
}


def _build_names() -> dict[str, tuple[str, ...]]:
    names = {}
    for modality in MODALITIES:
        named = [n for n, _, _ in _NAMED_FEATURES[modality]]
        generic = [f"f{i:02d}" for i in range(len(named), FEATURE_COUNTS[modality])]
        names[modality] = tuple(named + generic)
    return names


FEATURE_NAMES: dict[str, tuple[str, ...]] = _build_names()


def feature_key(modality: str, index: int) -> str:
    """Qualified feature name, e.g. 'typing.mean_dwell_ms'."""
    return f"{modality}.{FEATURE_NAMES[modality][index]}"


def feature_keys() -> list[str]:
    """All 95 qualified feature names in flat (modality-major) order."""
    return [feature_key(m, i) for m in MODALITIES for i in range(FEATURE_COUNTS[m])]


def feature_index(name: str) -> int:
    """Index of a named feature within its modality.

    Example:
        >>> feature_index("typing.mean_dwell_ms")
        0
    """
    modality, _, short = name.partition(".")
    if modality not in FEATURE_NAMES or short not in FEATURE_NAMES[modality]:
        raise KeyError(f"Unknown feature: {name}")
    return FEATURE_NAMES[modality].index(short)


def physical_ranges(
    generic_range: tuple[float, float],
) -> dict[str, tuple[np.ndarray, np.ndarray]]:
    """Per-modality (low, high) arrays; unnamed slots get ``generic_range``."""
    ranges = {}
    for modality in MODALITIES:
        n = FEATURE_COUNTS[modality]
        low = np.full(n, generic_range[0], dtype=float)
        high = np.full(n, generic_range[1], dtype=float)
        for i, (_, lo, hi) in enumerate(_NAMED_FEATURES[modality]):
            low[i] = lo
            high[i] = hi
        ranges[modality] = (low, high)
    return ranges


def modality_slices() -> dict[str, slice]:
    """Slices of each modality inside a flattened 95-slot array."""
    slices = {}
    start = 0
    for modality in MODALITIES:
        stop = start + FEATURE_COUNTS[modality]
        slices[modality] = slice(start, stop)
        start = stop
    return slices


@dataclass(frozen=True)
class FeatureVector:
    """One tick of multi-modal features.

    Modalities may be absent (collector disabled) and individual values may be
    NaN (not measured). Values are stored as tuples behind a read-only mapping,
    so a vector cannot change once produced.

    Attributes:
        values: Modality name → tuple of floats
        timestamp: When the sample was produced (timezone-aware)
        quality: Collector-reported signal quality in [0, 1]
    """

    values: Mapping[str, tuple[float, ...]]
    timestamp: datetime
    quality: float = 1.0
    _flat: Optional[np.ndarray] = field(default=None, repr=False, compare=False)

    def __post_init__(self) -> None:
        ordered = {}
        for modality in MODALITIES:
            if modality in self.values:
                ordered[modality] = tuple(float(v) for v in self.values[modality])
        extra = set(self.values) - set(MODALITIES)
        for modality in sorted(extra):
            ordered[modality] = tuple(float(v) for v in self.values[modality])
        object.__setattr__(self, "values", MappingProxyType(ordered))

    def __getitem__(self, modality: str) -> tuple[float, ...]:
        return self.values[modality]

    def __contains__(self, modality: object) -> bool:
        return modality in self.values

    @property
    def modalities(self) -> tuple[str, ...]:
        return tuple(self.values)

    def flatten(self) -> np.ndarray:
        """Flat 95-slot array (absent modalities → NaN). Read-only."""
        if self._flat is None:
            flat = np.full(TOTAL_FEATURES, np.nan)
            for modality, sl in modality_slices().items():
                if modality in self.values and len(self.values[modality]) == FEATURE_COUNTS[modality]:
                    flat[sl] = self.values[modality]
            flat.setflags(write=False)
            object.__setattr__(self, "_flat", flat)
        return self._flat

    def with_modalities(self, **replacements: Sequence[float]) -> "FeatureVector":
        """Return a new vector with some modalities replaced."""
        merged = dict(self.values)
        merged.update({k: tuple(v) for k, v in replacements.items()})
        return FeatureVector(values=merged, timestamp=self.timestamp, quality=self.quality)

    @classmethod
    def from_flat(
        cls,
        flat: Sequence[float],
        timestamp: datetime,
        modalities: Optional[Sequence[str]] = None,
    ) -> "FeatureVector":
        """Build a vector from a flat 95-slot array.

        Args:
            flat: Values in modality-major order
            timestamp: Sample time
            modalities: Modalities to keep (default: those with any non-NaN value)
        """
        arr = np.asarray(flat, dtype=float)
        if arr.shape != (TOTAL_FEATURES,):
            raise ValueError(f"Expected {TOTAL_FEATURES} values, got {arr.shape}")
        values = {}
        for modality, sl in modality_slices().items():
            part = arr[sl]
            keep = modality in modalities if modalities is not None else not np.all(np.isnan(part))
            if keep:
                values[modality] = tuple(part.tolist())
        return cls(values=values, timestamp=timestamp)
