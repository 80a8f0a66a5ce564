"""CPU backend implementations using Numba JIT.

Kernels are compiled with ``nogil=True``: every logical device of a
:class:`~symboost._context.ComputeContext` runs its stream on its own thread,
so kernels from different devices overlap.
"""

from __future__ import annotations

import numpy as np
from numba import jit

# Weights at or below this are treated as empty.
WEIGHT_EPS = 1e-20


# =============================================================================
# Histogram Functions
# =============================================================================

@jit(nopython=True, nogil=True, cache=True)
def _build_partition_histograms_cpu(
    binned: np.ndarray,           # (n_features, n_rows) uint8
    rows: np.ndarray,             # (n_slots,) int64 - feature row of each slot
    positions: np.ndarray,        # (n_slots,) int64 - target position of each slot
    weighted_target: np.ndarray,  # (n_positions,) float64
    weights: np.ndarray,          # (n_positions,) float64
    part_offsets: np.ndarray,     # (n_parts,) int64
    part_sizes: np.ndarray,       # (n_parts,) int64
    hist: np.ndarray,             # (n_features, n_parts, n_bins, 3) float64
):
    """Accumulate (weighted target, weight, count) per feature, partition and bin."""
    n_features = binned.shape[0]
    n_parts = part_offsets.shape[0]

    for f in range(n_features):
        for p in range(n_parts):
            start = part_offsets[p]
            end = start + part_sizes[p]
            for k in range(start, end):
                bin_idx = binned[f, rows[k]]
                pos = positions[k]
                hist[f, p, bin_idx, 0] += weighted_target[pos]
                hist[f, p, bin_idx, 1] += weights[pos]
                hist[f, p, bin_idx, 2] += 1.0


def build_partition_histograms_cpu(
    binned: np.ndarray,
    rows: np.ndarray,
    positions: np.ndarray,
    weighted_target: np.ndarray,
    weights: np.ndarray,
    part_offsets: np.ndarray,
    part_sizes: np.ndarray,
    n_bins: int,
) -> np.ndarray:
    """Build per-partition histograms on CPU.

    Args:
        binned: Binned feature matrix, shape (n_features, n_rows), uint8
        rows: Feature row for each slot of the partitioned order
        positions: Target position for each slot of the partitioned order
        weighted_target: Weighted first-order statistic per target position
        weights: Weight per target position
        part_offsets: Partition offsets into the slot order
        part_sizes: Partition sizes
        n_bins: Histogram width (max bin count over the features)

    Returns:
        hist: Shape (n_features, n_parts, n_bins, 3), float64. The last axis
            holds (sum weighted target, sum weight, count).
    """
    n_features = binned.shape[0]
    n_parts = part_offsets.shape[0]
    hist = np.zeros((n_features, n_parts, n_bins, 3), dtype=np.float64)
    if n_features == 0 or n_parts == 0:
        return hist

    _build_partition_histograms_cpu(
        np.ascontiguousarray(binned, dtype=np.uint8),
        rows.astype(np.int64, copy=False),
        positions.astype(np.int64, copy=False),
        weighted_target.astype(np.float64, copy=False),
        weights.astype(np.float64, copy=False),
        part_offsets.astype(np.int64, copy=False),
        part_sizes.astype(np.int64, copy=False),
        hist,
    )
    return hist


# =============================================================================
# Split Scoring
# =============================================================================

@jit(nopython=True, nogil=True, cache=True)
def _leaf_score(sum_target: float, sum_weight: float, l2_reg: float) -> float:
    if sum_weight <= WEIGHT_EPS:
        return 0.0
    return sum_target * sum_target / (sum_weight + l2_reg)


@jit(nopython=True, nogil=True, cache=True)
def _score_splits_cpu(
    hist: np.ndarray,         # (n_features, n_parts, n_bins, 3) float64
    part_stats: np.ndarray,   # (n_parts, 3) float64
    bin_counts: np.ndarray,   # (n_features,) int64
    take_bin: np.ndarray,     # (n_features,) bool
    fold_bits: int,
    l2_reg: float,
    normalize: bool,
    scores: np.ndarray,       # (n_features, n_bins) float64, prefilled with inf
):
    """Score every (feature, bin) candidate; lower is better.

    The folds of a tree leaf are summed before scoring, so a leaf's score
    depends only on its total statistics.
    """
    n_features = hist.shape[0]
    n_parts = hist.shape[1]
    n_bins = hist.shape[2]
    n_folds = 1 << fold_bits
    n_leaves = n_parts >> fold_bits

    leaf_sum = np.empty(n_bins, dtype=np.float64)
    leaf_weight = np.empty(n_bins, dtype=np.float64)

    for f in range(n_features):
        n_candidates = bin_counts[f] if take_bin[f] else bin_counts[f] - 1
        if n_candidates <= 0:
            continue

        gains = np.zeros(n_bins, dtype=np.float64)

        for leaf in range(n_leaves):
            parent_sum = 0.0
            parent_weight = 0.0
            parent_count = 0.0
            leaf_sum[:] = 0.0
            leaf_weight[:] = 0.0
            for p in range(leaf * n_folds, (leaf + 1) * n_folds):
                parent_sum += part_stats[p, 0]
                parent_weight += part_stats[p, 1]
                parent_count += part_stats[p, 2]
                for b in range(n_candidates):
                    leaf_sum[b] += hist[f, p, b, 0]
                    leaf_weight[b] += hist[f, p, b, 1]

            if parent_weight <= WEIGHT_EPS:
                continue
            parent_score = _leaf_score(parent_sum, parent_weight, l2_reg)

            cum_sum = 0.0
            cum_weight = 0.0
            for b in range(n_candidates):
                if take_bin[f]:
                    left_sum = leaf_sum[b]
                    left_weight = leaf_weight[b]
                else:
                    cum_sum += leaf_sum[b]
                    cum_weight += leaf_weight[b]
                    left_sum = cum_sum
                    left_weight = cum_weight

                right_sum = parent_sum - left_sum
                right_weight = parent_weight - left_weight

                gain = (
                    _leaf_score(left_sum, left_weight, l2_reg)
                    + _leaf_score(right_sum, right_weight, l2_reg)
                    - parent_score
                )
                if normalize:
                    gain /= parent_count
                gains[b] += gain

        for b in range(n_candidates):
            scores[f, b] = -gains[b]


def score_splits_cpu(
    hist: np.ndarray,
    part_stats: np.ndarray,
    bin_counts: np.ndarray,
    take_bin: np.ndarray,
    l2_reg: float = 3.0,
    normalize: bool = False,
    fold_bits: int = 0,
) -> np.ndarray:
    """Score all split candidates of a feature family (CPU).

    Args:
        hist: Partition histograms from :func:`build_partition_histograms_cpu`
        part_stats: Per partition (sum weighted target, sum weight, count)
        bin_counts: Bin count per feature
        take_bin: Whether each feature splits by bin equality
        l2_reg: L2 regularization added to leaf weights
        normalize: Divide each leaf's gain by its document count
        fold_bits: Low partition-id bits holding the fold id; partitions
            that differ only in these bits are scored as one leaf

    Returns:
        scores: Shape (n_features, n_bins), float64. Entries that are not
            valid candidates hold ``inf``.
    """
    n_features = hist.shape[0]
    n_bins = hist.shape[2]
    scores = np.full((n_features, n_bins), np.inf, dtype=np.float64)
    if n_features == 0:
        return scores
    if hist.shape[1] % (1 << fold_bits) != 0:
        raise ValueError(
            f"Partition count {hist.shape[1]} is not a multiple of the fold count {1 << fold_bits}"
        )

    _score_splits_cpu(
        hist,
        np.ascontiguousarray(part_stats, dtype=np.float64),
        bin_counts.astype(np.int64, copy=False),
        take_bin.astype(np.bool_, copy=False),
        int(fold_bits),
        float(l2_reg),
        bool(normalize),
        scores,
    )
    return scores


# =============================================================================
# Ordered Target Statistics
# =============================================================================

@jit(nopython=True, nogil=True, cache=True)
def _ordered_class_counts_cpu(
    keys: np.ndarray,          # (n_rows,) int64, rows in permutation order
    classes: np.ndarray,       # (n_rows,) int64
    n_keys: int,
    n_classes: int,
    before_class: np.ndarray,  # (n_rows, n_classes) float64
    before_total: np.ndarray,  # (n_rows,) float64
):
    """Per row, counts of its key among strictly earlier rows."""
    class_counts = np.zeros((n_keys, n_classes), dtype=np.float64)
    totals = np.zeros(n_keys, dtype=np.float64)

    for i in range(keys.shape[0]):
        k = keys[i]
        before_total[i] = totals[k]
        for c in range(n_classes):
            before_class[i, c] = class_counts[k, c]
        totals[k] += 1.0
        class_counts[k, classes[i]] += 1.0


def ordered_class_counts_cpu(
    keys: np.ndarray,
    classes: np.ndarray,
    n_keys: int,
    n_classes: int,
) -> tuple[np.ndarray, np.ndarray]:
    """Ordered (prefix) class counts for target statistics.

    Args:
        keys: Dense category key per row, rows in permutation order
        classes: Target class per row
        n_keys: Number of distinct keys
        n_classes: Number of target classes

    Returns:
        before_class: Shape (n_rows, n_classes), class counts seen before the row
        before_total: Shape (n_rows,), total count seen before the row
    """
    n_rows = keys.shape[0]
    before_class = np.zeros((n_rows, n_classes), dtype=np.float64)
    before_total = np.zeros(n_rows, dtype=np.float64)
    if n_rows == 0:
        return before_class, before_total

    _ordered_class_counts_cpu(
        keys.astype(np.int64, copy=False),
        classes.astype(np.int64, copy=False),
        int(n_keys),
        int(n_classes),
        before_class,
        before_total,
    )
    return before_class, before_total
