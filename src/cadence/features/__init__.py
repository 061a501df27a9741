"""Feature schema and normalization for CADENCE.

Modules:
    - schema: Modalities, feature names/ranges, FeatureVector
    - normalizer: Range validation, bounded scaling, baseline-relative deviation
"""

from cadence.features.normalizer import NORMALIZATION_METHODS, Normalizer
from cadence.features.schema import (
    FEATURE_COUNTS,
    FEATURE_NAMES,
    MODALITIES,
    TOTAL_FEATURES,
    FeatureVector,
    feature_index,
    feature_key,
    feature_keys,
    modality_slices,
)

__all__ = [
    "NORMALIZATION_METHODS",
    "Normalizer",
    "FEATURE_COUNTS",
    "FEATURE_NAMES",
    "MODALITIES",
    "TOTAL_FEATURES",
    "FeatureVector",
    "feature_index",
    "feature_key",
    "feature_keys",
    "modality_slices",
]
