"""Anomaly Scorer: isolation ensemble over the baseline reference.

Two kinds of forest are fitted on the reference matrix of a BaselineProfile:
- One vector-level forest (default 50 trees, subsample 64) over all 95 slots
- One small per-feature forest (default 16 trees) per column, fitted on that
  column's observed (non-NaN) reference values

Score = 2^(-E[h(x)] / c(ψ)) in [0, 1], higher = more isolated. scikit-learn's
``IsolationForest.score_samples`` returns the negated value, so it is flipped.

Rebuilds are never incremental. A rebuild produces a new EnsembleSnapshot,
either synchronously or on a single background worker; the scorer adopts it
with one assignment and queries only ever read the current snapshot.
"""

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import wait as wait_futures
from dataclasses import dataclass
from typing import Optional

import numpy as np
from sklearn.ensemble import IsolationForest

from cadence.errors import ModelUnavailable
from cadence.features.schema import TOTAL_FEATURES, FeatureVector

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AnomalyScore:
    """Vector-level outlier score in [0, 1]."""

    score: float


@dataclass(frozen=True)
class EnsembleSnapshot:
    """Fitted forests handed from the worker to the scorer.

    Attributes:
        version: Baseline version the forests were fitted for
        forest: Vector-level forest
        feature_forests: One forest per slot, None where too few observations
        fill_values: Per-slot values substituted for NaN before vector scoring
        reference_rows: Rows in the reference the forests were fitted on
    """

    version: int
    forest: IsolationForest
    feature_forests: tuple[Optional[IsolationForest], ...]
    fill_values: np.ndarray
    reference_rows: int


class AnomalyScorer:
    """Isolation-ensemble outlier scoring with background rebuilds.

    Args:
        n_trees: Trees in the vector-level forest (default: 50)
        subsample: Rows drawn per tree (default: 64)
        feature_trees: Trees in each per-feature forest (default: 16)
        min_reference: Minimum reference rows for a usable ensemble (default: 16)
        seed: Random seed; identical reference + seed → identical forests

    Example:
        >>> scorer = AnomalyScorer()
        >>> scorer.rebuild(profile.reference, version=profile.version)
        >>> scorer.score(vector).score
        0.47
    """

    def __init__(
        self,
        n_trees: int = 50,
        subsample: int = 64,
        feature_trees: int = 16,
        min_reference: int = 16,
        seed: int = 7,
    ) -> None:
        if n_trees < 1:
            raise ValueError(f"n_trees ({n_trees}) must be >= 1")
        if subsample < 2:
            raise ValueError(f"subsample ({subsample}) must be >= 2")
        if feature_trees < 1:
            raise ValueError(f"feature_trees ({feature_trees}) must be >= 1")
        if min_reference < 2:
            raise ValueError(f"min_reference ({min_reference}) must be >= 2")

        self.n_trees = n_trees
        self.subsample = subsample
        self.feature_trees = feature_trees
        self.min_reference = min_reference
        self.seed = seed

        self._snapshot: Optional[EnsembleSnapshot] = None
        self._executor: Optional[ThreadPoolExecutor] = None
        self._pending: Optional[Future] = None

    @property
    def available(self) -> bool:
        return self._snapshot is not None

    @property
    def version(self) -> Optional[int]:
        """Baseline version of the current ensemble (None if none built)."""
        snapshot = self._snapshot
        return snapshot.version if snapshot is not None else None

    @property
    def rebuilding(self) -> bool:
        return self._pending is not None

    def build(self, reference: np.ndarray, version: int = 0) -> EnsembleSnapshot:
        """Fit a fresh snapshot from a reference matrix without adopting it.

        Raises:
            ModelUnavailable: Fewer than ``min_reference`` rows
        """
        reference = np.asarray(reference, dtype=float)
        if reference.ndim != 2 or reference.shape[1] != TOTAL_FEATURES:
            raise ValueError(
                f"reference must have shape (n, {TOTAL_FEATURES}), got {reference.shape}"
            )
        rows = reference.shape[0]
        if rows < self.min_reference:
            raise ModelUnavailable(
                f"reference has {rows} rows, need >= {self.min_reference}"
            )

        observed = ~np.isnan(reference)
        fill = np.zeros(TOTAL_FEATURES)
        for j in range(TOTAL_FEATURES):
            if observed[:, j].any():
                fill[j] = float(np.median(reference[observed[:, j], j]))
        filled = np.where(observed, reference, fill)

        forest = IsolationForest(
            n_estimators=self.n_trees,
            max_samples=min(self.subsample, rows),
            random_state=self.seed,
        ).fit(filled)

        feature_forests = []
        for j in range(TOTAL_FEATURES):
            column = reference[observed[:, j], j]
            if column.size < self.min_reference:
                feature_forests.append(None)
                continue
            feature_forests.append(
                IsolationForest(
                    n_estimators=self.feature_trees,
                    max_samples=min(self.subsample, column.size),
                    random_state=self.seed + j + 1,
                ).fit(column.reshape(-1, 1))
            )

        logger.debug(
            "Ensemble v%d built: rows=%d feature_forests=%d",
            version,
            rows,
            sum(f is not None for f in feature_forests),
        )
        return EnsembleSnapshot(
            version=version,
            forest=forest,
            feature_forests=tuple(feature_forests),
            fill_values=fill,
            reference_rows=rows,
        )

    def rebuild(self, reference: np.ndarray, version: int = 0) -> EnsembleSnapshot:
        """Build synchronously and adopt the result."""
        snapshot = self.build(reference, version)
        self._snapshot = snapshot
        logger.info("Ensemble v%d adopted (%d reference rows)", version, snapshot.reference_rows)
        return snapshot

    def submit_rebuild(self, reference: np.ndarray, version: int = 0) -> Future:
        """Schedule a rebuild on the background worker.

        The current snapshot stays in use until ``poll()`` observes the
        finished build. A newer submission supersedes an unfinished one.
        """
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=1, thread_name_prefix="cadence-ensemble"
            )
        if self._pending is not None and not self._pending.done():
            self._pending.cancel()
        self._pending = self._executor.submit(self.build, np.array(reference, dtype=float), version)
        return self._pending

    def poll(self) -> bool:
        """Adopt a finished background build, if any.

        Returns:
            True if a new snapshot was adopted
        """
        pending = self._pending
        if pending is None or not pending.done():
            return False
        self._pending = None
        if pending.cancelled():
            return False
        try:
            snapshot = pending.result()
        except ModelUnavailable as e:
            logger.warning("Ensemble rebuild skipped: %s", e)
            return False
        self._snapshot = snapshot
        logger.info("Ensemble v%d adopted (%d reference rows)", snapshot.version, snapshot.reference_rows)
        return True

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the pending build finishes, then ``poll()``."""
        pending = self._pending
        if pending is None:
            return False
        done, _ = wait_futures([pending], timeout=timeout)
        if not done:
            return False
        return self.poll()

    def score(self, vector: FeatureVector) -> AnomalyScore:
        """Vector-level outlier score.

        Raises:
            ModelUnavailable: No ensemble has been built yet
        """
        snapshot = self._current()
        x = vector.flatten()
        filled = np.where(np.isnan(x), snapshot.fill_values, x).reshape(1, -1)
        value = -float(snapshot.forest.score_samples(filled)[0])
        return AnomalyScore(score=float(np.clip(value, 0.0, 1.0)))

    def score_features(self, vector: FeatureVector) -> np.ndarray:
        """Per-slot outlier scores (NaN where missing or no forest exists).

        Raises:
            ModelUnavailable: No ensemble has been built yet
        """
        snapshot = self._current()
        x = vector.flatten()
        scores = np.full(TOTAL_FEATURES, np.nan)
        for j, forest in enumerate(snapshot.feature_forests):
            if forest is None or np.isnan(x[j]):
                continue
            scores[j] = -forest.score_samples(np.array([[x[j]]]))[0]
        return np.clip(scores, 0.0, 1.0)

    def clear(self) -> None:
        """Drop the current snapshot (scoring raises until the next rebuild)."""
        self._snapshot = None

    def shutdown(self) -> None:
        """Stop the background worker, waiting for a running build."""
        if self._executor is not None:
            self._executor.shutdown(wait=True, cancel_futures=True)
            self._executor = None
        self._pending = None

    def _current(self) -> EnsembleSnapshot:
        snapshot = self._snapshot
        if snapshot is None:
            raise ModelUnavailable("isolation ensemble not built")
        return snapshot
