"""Best split search for one feature family.

A :class:`ScoreHelper` shards its family's features across the devices of a
:class:`~symboost._context.ComputeContext`. Each shard builds partition
histograms, scores every candidate and keeps its best one on its device
stream; the host only reduces the per-shard winners.

Usage:
    >>> helper = ScoreHelper(dataset.features, fold_count=1, config=config, context=ctx)
    >>> helper.submit_compute(subsets, observation_indices)
    >>> helper.compute_optimal_split(subsets.compute_partition_stats(), 0.0, seed=42)
    >>> ctx.wait_complete()
    >>> best = helper.read_and_remap_optimal_split()
"""

from __future__ import annotations

from concurrent.futures import Future
from typing import TYPE_CHECKING, Sequence

import numpy as np

from .._backends._cpu import build_partition_histograms_cpu, score_splits_cpu
from .._errors import TreeSearchError
from ._split import BestSplitProperties
from ._subsets import int_log2

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from .._context import ComputeContext
    from .._dataset import BinarizedFeatureSet
    from ._searcher import TreeSearchConfig
    from ._subsets import OptimizationSubsets


def add_score_noise(
    scores: NDArray[np.float64],
    feature_ids: NDArray[np.int64],
    score_std_dev: float,
    seed: int,
) -> None:
    """Add ``N(0, score_std_dev)`` noise in place to finite scores.

    The stream of each feature is seeded by ``(seed, feature_id)`` so the
    noise does not depend on how features are sharded.
    """
    if score_std_dev <= 0.0:
        return
    for row, fid in enumerate(feature_ids):
        rng = np.random.default_rng([int(seed), int(fid)])
        noise = rng.normal(0.0, score_std_dev, size=scores.shape[1])
        finite = np.isfinite(scores[row])
        scores[row, finite] += noise[finite]


def best_candidate(scores: NDArray[np.float64]) -> tuple[int, int, float]:
    """Lowest (row, bin, score); ties go to the first in row-major order.

    Returns ``(-1, -1, inf)`` if there is no finite score.
    """
    if scores.size == 0:
        return -1, -1, np.inf
    flat = int(np.argmin(scores))
    score = float(scores.flat[flat])
    if not np.isfinite(score):
        return -1, -1, np.inf
    row, bin_idx = divmod(flat, scores.shape[1])
    return row, bin_idx, score


class ScoreHelper:
    """Computes the best split of one feature family.

    Args:
        feature_set: Family to score.
        fold_count: Fold ids packed into the subsets' bins.
        config: Scoring options (``l2_reg``, ``normalize``).
        context: Compute context whose streams run the work.
        devices: Devices to shard over (default: every device).
    """

    def __init__(
        self,
        feature_set: BinarizedFeatureSet,
        fold_count: int,
        config: TreeSearchConfig,
        context: ComputeContext,
        devices: Sequence[int] | None = None,
    ):
        self.feature_set = feature_set
        self.fold_count = fold_count
        self.fold_bits = int_log2(fold_count)
        self.config = config
        self.context = context

        self._shards = context.device_slices(feature_set.n_features, devices)
        self._histograms: list[Future] = []
        self._best: list[Future] = []

    @property
    def n_shards(self) -> int:
        return len(self._shards)

    def submit_compute(self, subsets: OptimizationSubsets, observation_indices: NDArray) -> None:
        """Enqueue histogram construction on every shard's stream.

        Args:
            subsets: Current partitions; slot ``k`` of ``subsets.indices``
                holds target position ``subsets.indices[k]``.
            observation_indices: Feature row of each slot.
        """
        rows = np.asarray(observation_indices, dtype=np.int64)
        positions = subsets.indices
        offsets, sizes = subsets.current_partitions()
        weighted_target = subsets.weighted_target
        weights = subsets.weights

        self._best = []
        self._histograms = [
            self.context.submit(
                device, self._build_histograms, shard, rows, positions,
                weighted_target, weights, offsets, sizes,
            )
            for device, shard in self._shards
        ]

    def compute_optimal_split(
        self,
        partition_stats: NDArray[np.float64],
        score_std_dev: float,
        seed: int,
    ) -> None:
        """Enqueue scoring and the per-shard best split search.

        Must follow :meth:`submit_compute`; each shard's job runs on the same
        stream after its histograms.
        """
        if len(self._histograms) != len(self._shards):
            raise TreeSearchError("submit_compute must be called before compute_optimal_split")
        stats = np.ascontiguousarray(partition_stats, dtype=np.float64)
        self._best = [
            self.context.submit(device, self._find_best, shard, histograms, stats, score_std_dev, seed)
            for (device, shard), histograms in zip(self._shards, self._histograms)
        ]

    def read_and_remap_optimal_split(self) -> BestSplitProperties:
        """Best candidate of the family, with a global feature id.

        Only valid after the context's ``wait_complete()`` barrier. Families
        without features report an invalid candidate.
        """
        if len(self._best) != len(self._shards):
            raise TreeSearchError("compute_optimal_split must be called before reading the split")
        best = BestSplitProperties.invalid()
        for future in self._best:
            candidate = future.result()
            if candidate.is_valid and (not best.is_valid or candidate.score < best.score):
                best = candidate
        return best

    # -------------------------------------------------------------------------
    # Stream jobs
    # -------------------------------------------------------------------------

    def _build_histograms(self, shard, rows, positions, weighted_target, weights, offsets, sizes):
        fs = self.feature_set
        with self.context.profiler.profile("Build histograms"):
            return build_partition_histograms_cpu(
                fs.data[shard], rows, positions, weighted_target, weights,
                offsets, sizes, max(int(fs.bin_counts[shard].max()), 1),
            )

    def _find_best(self, shard, histograms: Future, partition_stats, score_std_dev, seed):
        fs = self.feature_set
        hist = histograms.result()
        with self.context.profiler.profile("Score splits"):
            scores = score_splits_cpu(
                hist, partition_stats, fs.bin_counts[shard], fs.take_bin[shard],
                l2_reg=self.config.l2_reg, normalize=self.config.normalize,
                fold_bits=self.fold_bits,
            )
            feature_ids = fs.feature_ids[shard]
            add_score_noise(scores, feature_ids, score_std_dev, seed)
            row, bin_idx, score = best_candidate(scores)
        if row < 0:
            return BestSplitProperties.invalid()
        return BestSplitProperties(int(feature_ids[row]), bin_idx, score)

    def __repr__(self) -> str:
        return f"ScoreHelper(n_features={self.feature_set.n_features}, n_shards={self.n_shards})"
