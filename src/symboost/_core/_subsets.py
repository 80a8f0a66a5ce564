"""Partition bookkeeping for one tree build.

Every target position carries a bin id ``(tree_path << fold_bits) | fold_id``.
``indices`` lists positions grouped by bin, and ``partitions[bin]`` gives the
``(offset, size)`` of that group inside ``indices``. Fold ids live in the low
bits and never change; every split appends one bit to the tree path.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Sequence

import numpy as np

if TYPE_CHECKING:
    from numpy.typing import NDArray

PARTITION_DTYPE = np.dtype([("offset", np.int64), ("size", np.int64)])


def int_log2(value: int) -> int:
    """Bits needed to store ``value`` distinct ids."""
    return max(int(value) - 1, 0).bit_length()


class OptimizationSubsets:
    """Document partitions and the search target they aggregate.

    Args:
        bins: Initial bin id per target position (fold id only).
        weighted_target: Weighted first-order statistic per position.
        weights: Weight per position.
        fold_count: Number of fold ids used by ``bins``.
        max_depth: Deepest tree the partition table must hold.
    """

    def __init__(
        self,
        bins: NDArray,
        weighted_target: NDArray,
        weights: NDArray,
        fold_count: int,
        max_depth: int,
    ):
        self.bins = np.asarray(bins, dtype=np.uint32).copy()
        self.weighted_target = np.asarray(weighted_target, dtype=np.float64)
        self.weights = np.asarray(weights, dtype=np.float64)
        if not (self.bins.shape == self.weighted_target.shape == self.weights.shape):
            raise ValueError(
                f"bins, weighted_target and weights must have the same shape, got "
                f"{self.bins.shape}, {self.weighted_target.shape}, {self.weights.shape}"
            )
        self.fold_count = int(fold_count)
        self.fold_bits = int_log2(self.fold_count)
        self.max_depth = int(max_depth)
        if self.fold_bits + self.max_depth > 32:
            raise ValueError(
                f"fold bits ({self.fold_bits}) plus max_depth ({self.max_depth}) exceed the 32 bin bits"
            )
        self.current_depth = 0
        self.indices = np.arange(self.bins.shape[0], dtype=np.int64)
        self.partitions = np.zeros(1 << (self.fold_bits + self.max_depth), dtype=PARTITION_DTYPE)
        self.update()

    @classmethod
    def from_part_sizes(
        cls,
        part_sizes: Sequence[int],
        weighted_target: NDArray,
        weights: NDArray,
        max_depth: int,
    ) -> OptimizationSubsets:
        """Subsets whose ``i``-th contiguous slice of positions is fold ``i``."""
        bins = np.repeat(np.arange(len(part_sizes), dtype=np.uint32), part_sizes)
        return cls(bins, weighted_target, weights, len(part_sizes), max_depth)

    @property
    def n_positions(self) -> int:
        return int(self.bins.shape[0])

    @property
    def partition_count(self) -> int:
        return 1 << (self.fold_bits + self.current_depth)

    def update(self) -> None:
        """Regroup ``indices`` by bin and recompute partition boundaries.

        The sort is stable, so positions keep their relative order within a
        partition.
        """
        order = np.argsort(self.bins[self.indices], kind="stable")
        self.indices = self.indices[order]
        counts = np.bincount(self.bins, minlength=self.partitions.shape[0])
        if counts.shape[0] > self.partitions.shape[0]:
            raise ValueError("Bin id beyond the partition table; depth exceeds max_depth")
        self.partitions["size"] = counts
        self.partitions["offset"] = np.cumsum(counts) - counts

    def current_partitions(self) -> tuple[NDArray[np.int64], NDArray[np.int64]]:
        """(offsets, sizes) of the partitions of the current depth."""
        parts = self.partitions[: self.partition_count]
        return np.ascontiguousarray(parts["offset"]), np.ascontiguousarray(parts["size"])

    def compute_partition_stats(self) -> NDArray[np.float64]:
        """Per partition: (sum weighted target, sum weight, count).

        Returns:
            stats: Shape (partition_count, 3), float64
        """
        n_parts = self.partition_count
        stats = np.empty((n_parts, 3), dtype=np.float64)
        stats[:, 0] = np.bincount(self.bins, weights=self.weighted_target, minlength=n_parts)
        stats[:, 1] = np.bincount(self.bins, weights=self.weights, minlength=n_parts)
        stats[:, 2] = np.bincount(self.bins, minlength=n_parts)
        return stats

    def split(self, leaf_bins: NDArray, observation_indices: NDArray) -> None:
        """Apply the split of the current depth and double the partitions.

        Args:
            leaf_bins: Leaf bin per document; bit ``current_depth`` holds the
                decision of the split being applied.
            observation_indices: Document of each slot of ``indices``.
        """
        if self.current_depth >= self.max_depth:
            raise ValueError(f"Subsets already split to max_depth={self.max_depth}")
        observation_indices = np.asarray(observation_indices, dtype=np.int64)
        if observation_indices.shape != self.indices.shape:
            raise ValueError(
                f"observation_indices has shape {observation_indices.shape}, "
                f"expected {self.indices.shape}"
            )
        decisions = (np.asarray(leaf_bins)[observation_indices] >> self.current_depth) & 1
        shift = self.fold_bits + self.current_depth
        self.bins[self.indices] |= (decisions.astype(np.uint32) << np.uint32(shift))
        self.current_depth += 1
        self.update()

    def __repr__(self) -> str:
        return (
            f"OptimizationSubsets(n_positions={self.n_positions}, fold_count={self.fold_count}, "
            f"current_depth={self.current_depth})"
        )
