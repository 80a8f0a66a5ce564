"""Incremental leaf assignment of documents during a tree build."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Iterator

import numpy as np

from .._array import quantize
from .._ctr import FeatureTensor
from .._errors import TreeSearchError
from ._split import BinarySplit, ObliviousTreeStructure, SplitType

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from .._cache import ScopedCache
    from .._dataset import DataSet
    from .._features import FeaturesManager

logger = logging.getLogger(__name__)

LEAF_BINS_KEY = "leaf_bins"


class TensorTracker:
    """Feature tensor implied by the splits of the current tree.

    Tree CTR candidates are this tensor extended by one base categorical
    feature.
    """

    def __init__(self, features_manager: FeaturesManager, n_cat_features: int):
        self.features_manager = features_manager
        self.n_cat_features = n_cat_features
        self.current = FeatureTensor()

    def add_split(self, split: BinarySplit) -> None:
        fm = self.features_manager
        if fm.is_ctr(split.feature_id):
            self.current = self.current.add_tensor(fm.get_ctr(split.feature_id).tensor)
        else:
            self.current = self.current.add_split(split)

    def candidate_tensors(self, max_complexity: int) -> Iterator[FeatureTensor]:
        """Distinct candidate tensors in base categorical feature order.

        Single-feature tensors are skipped: their CTRs are precomputed.
        """
        seen: set[FeatureTensor] = set()
        for cat_feature in range(self.n_cat_features):
            tensor = self.current.add_cat_feature(cat_feature)
            if tensor.is_simple or tensor.complexity > max_complexity or tensor in seen:
                continue
            seen.add(tensor)
            yield tensor

    def copy(self) -> TensorTracker:
        tracker = TensorTracker(self.features_manager, self.n_cat_features)
        tracker.current = self.current
        return tracker


class TreeUpdater:
    """Maintains the leaf bin of every document as splits are appended.

    The split at depth ``d`` sets bit ``d`` of a document's leaf bin when the
    document goes right.

    Args:
        scoped_cache: Run-wide cache.
        features_manager: Feature registry.
        dataset: Documents being assigned.
        leaf_bins: Leaf bin per document, updated in place.
    """

    def __init__(
        self,
        scoped_cache: ScopedCache,
        features_manager: FeaturesManager,
        dataset: DataSet,
        leaf_bins: NDArray[np.uint32],
    ):
        self.scoped_cache = scoped_cache
        self.features_manager = features_manager
        self.dataset = dataset
        self.leaf_bins = leaf_bins
        self.structure = ObliviousTreeStructure()

    @property
    def depth(self) -> int:
        return self.structure.depth

    def add_split(self, split: BinarySplit, split_bits: NDArray[np.uint8] | None = None) -> None:
        """Append ``split`` and update every document's leaf bin.

        Args:
            split: Split of the next depth.
            split_bits: Decision bits packed little-endian per document, for
                splits on tree CTRs that are not stored in the data set.
        """
        if split_bits is not None:
            bits = np.unpackbits(
                np.asarray(split_bits, dtype=np.uint8), count=self.dataset.n_docs, bitorder="little",
            ).astype(bool)
        else:
            bits = self.compute_split_bits(split)
        self.leaf_bins |= bits.astype(np.uint32) << np.uint32(self.depth)
        self.structure.splits.append(split)

    def compute_split_bits(self, split: BinarySplit) -> NDArray[np.bool_]:
        fm = self.features_manager
        n_bins = fm.get_bin_count(split.feature_id)
        n_candidates = n_bins if split.split_type is SplitType.TAKE_BIN else n_bins - 1
        if not 0 <= split.bin_idx < n_candidates:
            raise TreeSearchError(
                f"Split bin {split.bin_idx} beyond the borders of feature {split.feature_id} "
                f"({n_bins} bins)"
            )
        if self.dataset.has_feature(split.feature_id):
            return self.dataset.compute_split_bits(split)
        if not fm.is_ctr(split.feature_id):
            raise TreeSearchError(f"Feature {split.feature_id} is not stored in the data set")

        # Tree ctr without decision bits: recompute on the main permutation
        ctr = fm.get_ctr(split.feature_id)
        logger.debug("Recomputing ctr %s for split bits", ctr)
        values = self.dataset.compute_ctr(ctr)
        bins = quantize(values, np.asarray(fm.get_borders(split.feature_id)))
        return split.decide(bins)[self.dataset.inverse_indices]

    def create_empty_tensor_tracker(self) -> TensorTracker:
        return TensorTracker(self.features_manager, self.dataset.n_cat_features)


def cache_bins_for_model(
    scoped_cache: ScopedCache,
    dataset: DataSet,
    structure: ObliviousTreeStructure,
    leaf_bins: NDArray[np.uint32],
) -> None:
    """Publish the final leaf bin of every document for leaf value estimation."""
    scoped_cache.put(dataset, LEAF_BINS_KEY, (tuple(structure.splits), leaf_bins))


def get_cached_leaf_bins(
    scoped_cache: ScopedCache,
    dataset: DataSet,
    structure: ObliviousTreeStructure,
) -> NDArray[np.uint32]:
    """Leaf bins cached for ``structure`` on ``dataset``.

    Raises:
        KeyError: If the cached bins belong to another tree or none exist.
    """
    entry = scoped_cache.get(dataset, LEAF_BINS_KEY)
    if entry is None or entry[0] != tuple(structure.splits):
        raise KeyError("No leaf bins cached for this tree structure")
    return entry[1]
