"""Tree CTRs: target statistics over feature combinations found while searching.

After each split the feature tensor of the current tree grows (see
:class:`~symboost._core._updater.TensorTracker`). For every permutation,
:class:`TreeCtrDataSetsHelper` materializes CTRs of that tensor crossed with
each base categorical feature, one :class:`TreeCtrDataSet` per candidate
tensor, and hands them to a callback. :class:`TreeCtrDataSetVisitor` is that
callback: it scores each batch and keeps the best split that beats the
candidate of the precomputed feature families.

Tensors are assigned to devices round robin. Each device is driven by its
own host thread, so visits from different devices run concurrently; the
feature registry lock serializes border registration and best split updates.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable, Sequence

import numpy as np
from joblib import Parallel, delayed

from .._array import quantize
from .._cache import ScopedCache
from .._ctr import Ctr, FeatureTensor, compute_ctr_borders, compute_ctr_values
from .._dataset import BinarizedFeatureSet
from .._errors import TreeSearchError
from ._score import ScoreHelper
from ._split import BestSplitProperties, BinarySplit

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from .._context import ComputeContext
    from .._dataset import DataSet
    from .._features import FeaturesManager
    from ._searcher import TreeSearchConfig
    from ._subsets import OptimizationSubsets
    from ._updater import TensorTracker

logger = logging.getLogger(__name__)

# Device seed offsets (linear congruential constants)
SEED_MULTIPLIER = 664525
SEED_INCREMENT = 1013904223

SCORE_HELPER_KEY = "score_helper"


@dataclass(eq=False)
class TreeCtrDataSet:
    """CTRs of one candidate tensor on one permutation and device.

    ``feature_set`` rows follow the permutation's document order; its local
    feature ``i`` is ``ctrs[i]``.
    """
    device: int
    permutation: int
    index: int                      # Discovery order of the tensor within its depth
    base_tensor: FeatureTensor
    ctrs: list[Ctr]
    borders: list[NDArray[np.float64]]
    feature_set: BinarizedFeatureSet
    cache_holder: ScopedCache = field(default_factory=ScopedCache, repr=False)

    def read_borders(self, ids: Sequence[int]) -> dict[Ctr, NDArray[np.float64]]:
        return {self.ctrs[i]: self.borders[i] for i in ids}

    @property
    def n_ctrs(self) -> int:
        return len(self.ctrs)


class TreeCtrDataSetsHelper:
    """Builds tree CTR data sets for the current tree.

    Args:
        dataset: Training data.
        features_manager: Feature registry; supplies tree CTR configs and
            cached borders.
        max_depth: Tree depth limit.
        fold_count: Fold ids packed into the subsets' bins.
        tensor_tracker: Tracker of the current tree's tensor.
        context: Compute context; CTRs of a tensor are computed on its
            device's stream.
    """

    def __init__(
        self,
        dataset: DataSet,
        features_manager: FeaturesManager,
        max_depth: int,
        fold_count: int,
        tensor_tracker: TensorTracker,
        context: ComputeContext,
    ):
        self.dataset = dataset
        self.features_manager = features_manager
        self.max_depth = max_depth
        self.fold_count = fold_count
        self.tensor_tracker = tensor_tracker
        self.context = context
        self.depth = 0
        self._split_bits: dict[BinarySplit, NDArray[np.bool_]] = {}
        self._datasets: dict[tuple[int, FeatureTensor], TreeCtrDataSet] = {}
        self._lock = threading.Lock()

        if dataset.n_cat_features == 0:
            self.used_permutations: list[int] = []
        elif dataset.n_permutations > 1 and dataset.n_cat_features < 2:
            logger.warning(
                "%d permutations requested for tree ctrs, but only %d categorical feature; "
                "using a single permutation",
                dataset.n_permutations, dataset.n_cat_features,
            )
            self.used_permutations = [0]
        else:
            self.used_permutations = list(range(dataset.n_permutations))

    def get_permutation_indices(self, permutation: int) -> NDArray[np.int64]:
        """Row ``r`` of the permutation holds document ``indices[r]``."""
        return self.dataset.get_permutation(permutation)

    def add_split(self, split: BinarySplit, leaf_bins: NDArray) -> None:
        """Extend the tree tensor by ``split``; drops this depth's data sets."""
        self._split_bits[split] = ((np.asarray(leaf_bins) >> self.depth) & 1).astype(bool)
        self.tensor_tracker.add_split(split)
        self.depth += 1
        with self._lock:
            self._datasets.clear()

    def candidate_tensors(self) -> list[FeatureTensor]:
        return list(self.tensor_tracker.candidate_tensors(
            self.features_manager.options.max_tensor_complexity
        ))

    def visit_permutation_datasets(
        self,
        permutation: int,
        callback: Callable[[TreeCtrDataSet], None],
    ) -> None:
        """Call ``callback`` on the data set of every candidate tensor.

        Data sets of one device are visited in discovery order on that
        device's host thread.
        """
        tensors = self.candidate_tensors()
        if not tensors:
            return
        n_devices = self.context.n_devices
        jobs = [
            [(index, tensor) for index, tensor in enumerate(tensors) if index % n_devices == device]
            for device in self.context.devices
        ]
        Parallel(n_jobs=n_devices, prefer="threads")(
            delayed(self._visit_device)(device, permutation, job, callback)
            for device, job in zip(self.context.devices, jobs)
            if job
        )

    def _visit_device(self, device, permutation, job, callback) -> None:
        for index, tensor in job:
            dataset = self._get_dataset(device, permutation, index, tensor)
            if dataset.n_ctrs:
                callback(dataset)

    def _get_dataset(self, device: int, permutation: int, index: int, tensor: FeatureTensor) -> TreeCtrDataSet:
        key = (permutation, tensor)
        with self._lock:
            dataset = self._datasets.get(key)
        if dataset is None:
            dataset = self.context.submit(
                device, self._build_dataset, device, permutation, index, tensor
            ).result()
            with self._lock:
                dataset = self._datasets.setdefault(key, dataset)
        return dataset

    def _build_dataset(self, device: int, permutation: int, index: int, tensor: FeatureTensor) -> TreeCtrDataSet:
        fm = self.features_manager
        ds = self.dataset
        keys, n_keys = self._tensor_keys(tensor)
        perm = ds.get_permutation(permutation)
        keys_perm = keys[perm]
        classes_perm = ds.ctr_targets.classes[perm]

        ctrs, borders, columns, bin_counts = [], [], [], []
        with self.context.profiler.profile("Compute tree ctrs"):
            for config in fm.tree_ctr_configs:
                ctr = Ctr(tensor, config)
                values = compute_ctr_values(
                    keys_perm, classes_perm, config, n_keys, ds.ctr_targets.n_classes,
                )
                if fm.is_known(ctr):
                    ctr_borders = np.asarray(fm.get_borders(fm.get_id(ctr)), dtype=np.float64)
                else:
                    ctr_borders = compute_ctr_borders(values, fm.options.ctr_border_count)
                if ctr_borders.size == 0:
                    continue
                ctrs.append(ctr)
                borders.append(ctr_borders)
                columns.append(quantize(values, ctr_borders))
                bin_counts.append(ctr_borders.size + 1)

        feature_set = BinarizedFeatureSet.from_columns(
            columns, np.arange(len(ctrs)), bin_counts, [False] * len(ctrs), ds.n_docs, permuted=True,
        )
        return TreeCtrDataSet(
            device=device,
            permutation=permutation,
            index=index,
            base_tensor=tensor,
            ctrs=ctrs,
            borders=borders,
            feature_set=feature_set,
        )

    def _tensor_keys(self, tensor: FeatureTensor) -> tuple[NDArray[np.int64], int]:
        ds = self.dataset
        columns = [ds.cat_features[c].astype(np.int64) for c in tensor.cat_features]
        for split in tensor.splits:
            bits = self._split_bits.get(split)
            if bits is None:
                bits = ds.compute_split_bits(split)
            columns.append(bits.astype(np.int64))
        if len(columns) == 1:
            uniques, keys = np.unique(columns[0], return_inverse=True)
        else:
            uniques, keys = np.unique(np.stack(columns, axis=1), axis=0, return_inverse=True)
        return keys.reshape(-1).astype(np.int64), int(uniques.shape[0])


class TreeCtrDataSetVisitor:
    """Scores tree CTR data sets and keeps the best split across all of them.

    Args:
        features_manager: Feature registry; its lock guards the best split.
        fold_count: Fold ids packed into the subsets' bins.
        config: Scoring options and border caching threshold.
        subsets: Current partitions.
        context: Compute context.
    """

    def __init__(
        self,
        features_manager: FeaturesManager,
        fold_count: int,
        config: TreeSearchConfig,
        subsets: OptimizationSubsets,
        context: ComputeContext,
    ):
        self.features_manager = features_manager
        self.fold_count = fold_count
        self.config = config
        self.subsets = subsets
        self.context = context
        self.lock = features_manager.lock

        self.best_score = np.inf
        self.best_bin = -1
        self.best_device = -1
        self.best_ctr: Ctr | None = None
        # Candidates are ordered by (score, key); the driver's candidate has the lowest key
        self._best_key: tuple = (-1,)
        self.score_std_dev = 0.0
        n_devices = context.n_devices
        self.seeds = [0] * n_devices
        self._best_borders: list[NDArray[np.float64] | None] = [None] * n_devices
        self._best_splits: list[NDArray[np.uint8] | None] = [None] * n_devices

    def set_best_score(self, score: float) -> TreeCtrDataSetVisitor:
        self.best_score = float(score)
        return self

    def set_score_std_dev_and_seed(self, score_std_dev: float, seed: int) -> TreeCtrDataSetVisitor:
        self.score_std_dev = score_std_dev
        self.seeds = [
            int(seed) + SEED_MULTIPLIER * device + SEED_INCREMENT
            for device in range(len(self.seeds))
        ]
        return self

    def has_split(self) -> bool:
        return self.best_device >= 0

    def accept(
        self,
        dataset: TreeCtrDataSet,
        partition_stats: NDArray[np.float64],
        inverse_indices: NDArray[np.int64],
        subset_docs: NDArray[np.int64],
    ) -> None:
        """Score ``dataset`` and fold its best split into the running best.

        Args:
            dataset: Tree CTR batch.
            partition_stats: Statistics of the current partitions.
            inverse_indices: Row of each document in the permutation.
            subset_docs: Permutation row of each slot of ``subsets.indices``.
        """
        cache_ids = [i for i, ctr in enumerate(dataset.ctrs) if self._need_to_cache_borders(ctr)]
        if cache_ids:
            self._cache_ctr_borders(dataset.read_borders(cache_ids))

        helper = dataset.cache_holder.cache(
            dataset, SCORE_HELPER_KEY,
            lambda: ScoreHelper(
                dataset.feature_set, self.fold_count, self.config, self.context,
                devices=(dataset.device,),
            ),
        )
        task_seed = self.seeds[dataset.device] + dataset.base_tensor.stable_hash()
        helper.submit_compute(self.subsets, subset_docs)
        helper.compute_optimal_split(partition_stats, self.score_std_dev, task_seed)
        self._update_best_split(dataset, inverse_indices, helper.read_and_remap_optimal_split())

    def create_best_split_properties(self) -> BestSplitProperties:
        """Best split with its CTR registered in the feature registry."""
        self._ensure_has_best_props()
        fm = self.features_manager
        with self.lock:
            if not fm.is_known(self.best_ctr):
                fm.add_ctr(self.best_ctr, self._best_borders[self.best_device])
            feature_id = fm.get_id(self.best_ctr)
        n_borders = len(fm.get_borders(feature_id))
        if self.best_bin >= n_borders:
            raise TreeSearchError(
                f"Best bin {self.best_bin} beyond the {n_borders} borders of ctr {self.best_ctr}"
            )
        return BestSplitProperties(feature_id, self.best_bin, float(self.best_score))

    def get_best_split_bits(self) -> NDArray[np.uint8]:
        """Decision bit per document of the best split, packed little-endian."""
        self._ensure_has_best_props()
        return self._best_splits[self.best_device]

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _ensure_has_best_props(self) -> None:
        if self.best_device < 0:
            raise TreeSearchError("No tree ctr split found by the visitor")
        if self.best_bin > 255:
            raise TreeSearchError(f"Best bin {self.best_bin} exceeds uint8 bin storage")

    def _need_to_cache_borders(self, ctr: Ctr) -> bool:
        tensor = ctr.tensor
        return (
            not tensor.splits
            and len(tensor.cat_features) < self.config.max_ctr_complexity_for_borders_caching
        )

    def _cache_ctr_borders(self, borders_map: dict[Ctr, NDArray[np.float64]]) -> None:
        fm = self.features_manager
        for ctr, borders in borders_map.items():
            if fm.is_known(ctr):
                continue
            with self.lock:
                if not fm.is_known(ctr):
                    fm.add_ctr(ctr, borders)

    def _update_best_split(
        self,
        dataset: TreeCtrDataSet,
        inverse_indices: NDArray[np.int64],
        best: BestSplitProperties,
    ) -> None:
        if not best.is_valid:
            return
        device = dataset.device
        key = (dataset.permutation, dataset.index, best.feature_id)
        with self.lock:
            if (best.score, key) >= (self.best_score, self._best_key):
                return
            self.best_score = best.score
            self.best_bin = best.bin_id
            self.best_device = device
            self.best_ctr = dataset.ctrs[best.feature_id]
            self._best_key = key

        split = BinarySplit(best.feature_id, best.bin_id)
        bins = dataset.feature_set.data[best.feature_id]
        self._best_splits[device] = np.packbits(
            split.decide(bins)[inverse_indices], bitorder="little",
        )
        borders = dataset.borders[best.feature_id]
        if best.bin_id >= borders.size:
            raise TreeSearchError(
                f"Bin {best.bin_id} beyond the {borders.size} borders of ctr {dataset.ctrs[best.feature_id]}"
            )
        self._best_borders[device] = borders
