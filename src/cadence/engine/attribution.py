"""Attribution Engine: Shapley values over feature groups.

The value function f(S) is the baseline-deviation similarity of a vector in
which every group outside coalition S is held at its baseline means. With
four groups there are only 2^4 = 16 coalitions, so each is evaluated once
and cached.

    φ_g = E_π[ f(pre_π(g) ∪ {g}) - f(pre_π(g)) ]

Exact mode enumerates all 4! = 24 permutations; sampled mode draws
permutations from a seeded generator. Contributions are φ normalized by
Σ|φ| so that Σ|contribution| = 1.
"""

import itertools
import logging
from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np

from cadence.engine.baseline import BaselineProfile
from cadence.engine.similarity import SimilarityScorer
from cadence.features.schema import MODALITIES, FeatureVector

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GroupAttribution:
    """Share of the observed change attributed to one feature group.

    Attributes:
        group: Modality name
        contribution: Normalized Shapley value in [-1, 1]
        raw: Unnormalized Shapley value (similarity units)
    """

    group: str
    contribution: float
    raw: float


class AttributionEngine:
    """Shapley attribution of similarity change to modality groups.

    Args:
        scorer: Similarity scorer used as the value function
        samples: Sampled permutations (None: enumerate all exactly)
        seed: Seed for sampled permutations

    Example:
        >>> engine = AttributionEngine(SimilarityScorer())
        >>> for a in engine.attribute(vector, profile):
        ...     print(a.group, round(a.contribution, 2))
        typing -0.81
        motor -0.12
        voice 0.04
        temporal 0.03
    """

    def __init__(
        self,
        scorer: Optional[SimilarityScorer] = None,
        samples: Optional[int] = None,
        seed: int = 7,
    ) -> None:
        if samples is not None and samples < 1:
            raise ValueError(f"samples ({samples}) must be >= 1")
        self.scorer = scorer or SimilarityScorer()
        self.samples = samples
        self.seed = seed

    def attribute(
        self,
        vector: FeatureVector,
        baseline: BaselineProfile,
        groups: Sequence[str] = MODALITIES,
    ) -> list[GroupAttribution]:
        """Attribute the vector's deviation from baseline to groups.

        Returns:
            One GroupAttribution per group, sorted by |contribution| descending
        """
        groups = tuple(groups)
        if not groups:
            raise ValueError("groups must not be empty")
        unknown = set(groups) - set(MODALITIES)
        if unknown:
            raise ValueError(f"Unknown groups: {sorted(unknown)}")

        means = {
            g: tuple(s.mean for s in baseline.features[g])
            for g in groups
            if g in baseline.features
        }
        cache: dict[frozenset, float] = {}

        def value(coalition: frozenset) -> float:
            if coalition not in cache:
                masked = {
                    g: means[g]
                    for g in groups
                    if g not in coalition and g in means and g in vector
                }
                candidate = vector.with_modalities(**masked) if masked else vector
                cache[coalition] = self.scorer.overall(candidate, baseline)
            return cache[coalition]

        phi = dict.fromkeys(groups, 0.0)
        permutations = self._permutations(groups)
        for order in permutations:
            coalition = frozenset()
            before = value(coalition)
            for g in order:
                coalition = coalition | {g}
                after = value(coalition)
                phi[g] += after - before
                before = after
        for g in groups:
            phi[g] /= len(permutations)

        total = sum(abs(v) for v in phi.values())
        if total > 0:
            contributions = {g: phi[g] / total for g in groups}
        else:
            contributions = {g: 1.0 / len(groups) for g in groups}

        logger.debug("Attribution over %d permutations, %d coalitions", len(permutations), len(cache))
        result = [GroupAttribution(g, float(contributions[g]), float(phi[g])) for g in groups]
        return sorted(result, key=lambda a: abs(a.contribution), reverse=True)

    def _permutations(self, groups: tuple[str, ...]) -> list[tuple[str, ...]]:
        if self.samples is None:
            return list(itertools.permutations(groups))
        rng = np.random.default_rng(self.seed)
        return [tuple(groups[i] for i in rng.permutation(len(groups))) for _ in range(self.samples)]
