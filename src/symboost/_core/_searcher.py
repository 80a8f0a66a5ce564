"""Oblivious tree structure search.

The searcher grows one symmetric tree depth by depth. At every depth the
three precomputed feature families are scored concurrently on the compute
context, the best candidate is taken, tree CTRs get a chance to beat it, and
the winning split is applied to every leaf:

    stats -> gather -> submit -> wait -> reduce -> tree ctrs -> apply

The search stops at ``max_depth`` or as soon as the best split repeats a
split already in the tree.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol, runtime_checkable

import numpy as np

from .._bootstrap import Bootstrap
from .._cache import ScopedCache
from .._context import ComputeContext
from .._dataset import inverse_permutation
from .._errors import TreeSearchError
from ._score import ScoreHelper
from ._split import BinarySplit, ObliviousTreeStructure, SplitType, take_best
from ._subsets import OptimizationSubsets
from ._tree_ctrs import TreeCtrDataSet, TreeCtrDataSetsHelper, TreeCtrDataSetVisitor
from ._updater import TreeUpdater, cache_bins_for_model, get_cached_leaf_bins

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from .._dataset import DataSet
    from .._features import FeaturesManager
    from ._split import BestSplitProperties

logger = logging.getLogger(__name__)

# Deepest supported tree; leaf ids and fold ids share uint32 bins.
MAX_DEPTH = 16


# =============================================================================
# Configuration
# =============================================================================

@dataclass
class TreeSearchConfig:
    """Configuration for tree structure search.

    Args:
        max_depth: Number of splits of a full tree, at most ``MAX_DEPTH``
        l2_reg: L2 regularization added to leaf weights when scoring
        normalize: Divide each leaf's gain by its document count (not its
            bootstrap weight), summed over the leaf's folds
        bootstrap_test_only: With fold tasks, keep learn parts unsampled
        max_ctr_complexity_for_borders_caching: Tree CTRs of tensors with no
            splits and fewer categorical features than this register their
            borders as soon as they are computed
    """
    max_depth: int = 6
    l2_reg: float = 3.0
    normalize: bool = False
    bootstrap_test_only: bool = False
    max_ctr_complexity_for_borders_caching: int = 3

    def __post_init__(self):
        if not 1 <= self.max_depth <= MAX_DEPTH:
            raise ValueError(f"max_depth must be in [1, {MAX_DEPTH}], got {self.max_depth}")
        if self.l2_reg < 0:
            raise ValueError(f"l2_reg must be >= 0, got {self.l2_reg}")


# =============================================================================
# Targets
# =============================================================================

@runtime_checkable
class SearchTarget(Protocol):
    """What the searcher needs from a target.

    Position ``i`` of the target refers to document ``indices[i]``.
    """

    indices: NDArray
    weights: NDArray
    random: np.random.Generator

    def gradient_at_zero(self) -> NDArray:
        """First-order statistic per position."""
        ...


@dataclass
class TargetStatistics:
    """First-order statistics of a subset of documents.

    Args:
        indices: Document of each position.
        values: First-order statistic (pseudo-residual) per position.
        weights: Weight per position (default: ones).
        random_state: Seed of :attr:`random`, the source of split noise
            and tree CTR seeds.

    Example:
        >>> target = TargetStatistics(np.arange(4), np.array([1.0, 1.0, -1.0, -1.0]))
    """
    indices: NDArray
    values: NDArray
    weights: NDArray | None = None
    random_state: int | None = None
    random: np.random.Generator = field(init=False, repr=False)

    def __post_init__(self):
        self.indices = np.asarray(self.indices, dtype=np.int64)
        self.values = np.asarray(self.values, dtype=np.float64)
        if self.weights is None:
            self.weights = np.ones_like(self.values)
        else:
            self.weights = np.asarray(self.weights, dtype=np.float64)
        if not (self.indices.shape == self.values.shape == self.weights.shape):
            raise ValueError(
                f"indices, values and weights must have the same shape, got "
                f"{self.indices.shape}, {self.values.shape}, {self.weights.shape}"
            )
        self.random = np.random.default_rng(self.random_state)

    def gradient_at_zero(self) -> NDArray[np.float64]:
        return self.values

    def __len__(self) -> int:
        return int(self.indices.shape[0])


# =============================================================================
# Searcher
# =============================================================================

class ObliviousTreeStructureSearcher:
    """Searches the structure of one oblivious tree.

    Targets are given either as one full target (:meth:`set_target`) or as
    learn/test fold tasks (:meth:`add_task`), never both.

    Args:
        scoped_cache: Run-wide cache; receives the final leaf bins.
        features_manager: Feature registry; tree CTRs are registered here.
        dataset: Training data.
        bootstrap: Sampler of per-position weights.
        config: Search options.
        context: Compute context the score helpers run on.
    """

    def __init__(
        self,
        scoped_cache: ScopedCache,
        features_manager: FeaturesManager,
        dataset: DataSet,
        bootstrap: Bootstrap,
        config: TreeSearchConfig,
        context: ComputeContext,
    ):
        self.scoped_cache = scoped_cache
        self.features_manager = features_manager
        self.dataset = dataset
        self.bootstrap = bootstrap
        self.config = config
        self.context = context
        self.random_strength = 0.0
        self.score_std_dev = 0.0
        self._fold_based_tasks: list[tuple[SearchTarget, SearchTarget]] = []
        self._single_task_target: SearchTarget | None = None

    def add_task(self, learn_target: SearchTarget, test_target: SearchTarget) -> ObliviousTreeStructureSearcher:
        if self._single_task_target is not None:
            raise TreeSearchError("Can't mix learn/test fold tasks with a single target")
        self._check_target(learn_target)
        self._check_target(test_target)
        self._fold_based_tasks.append((learn_target, test_target))
        return self

    def set_target(self, target: SearchTarget) -> ObliviousTreeStructureSearcher:
        if self._single_task_target is not None:
            raise TreeSearchError("Target is already set")
        if self._fold_based_tasks:
            raise TreeSearchError("Can't mix learn/test fold tasks with a single target")
        self._check_target(target)
        self._single_task_target = target
        return self

    def set_random_strength(self, strength: float) -> ObliviousTreeStructureSearcher:
        self.random_strength = float(strength)
        return self

    def fit(self) -> ObliviousTreeStructure:
        """Run the search.

        Returns:
            Tree structure with at most ``max_depth`` splits. The leaf bin of
            every document is cached in ``scoped_cache`` under the data set.

        Raises:
            TreeSearchError: If no target is set or a depth has no valid
                split candidate.
        """
        if not self._fold_based_tasks and self._single_task_target is None:
            raise TreeSearchError("Set a target or add fold tasks before fit()")

        ctx = self.context
        profiler = ctx.profiler
        fm = self.features_manager
        dataset = self.dataset
        config = self.config

        leaf_bins = np.zeros(dataset.n_docs, dtype=np.uint32)
        tree_updater = TreeUpdater(self.scoped_cache, fm, dataset, leaf_bins)

        subsets = self._create_subsets()
        doc_indices = self._make_doc_indices()
        has_target_ctrs = dataset.target_ctrs.n_features > 0
        fold_count = subsets.fold_count

        # Each helper runs its jobs on the device streams; sync before reading
        features_helper = ScoreHelper(dataset.features, fold_count, config, ctx)
        binary_features_helper = ScoreHelper(dataset.binary_features, fold_count, config, ctx)
        ctr_helper = ScoreHelper(dataset.target_ctrs, fold_count, config, ctx)

        result = ObliviousTreeStructure()
        ctr_datasets_helper: TreeCtrDataSetsHelper | None = None
        random = self._get_random()

        for depth in range(config.max_depth):
            partition_stats = subsets.compute_partition_stats()
            with profiler.profile("Make and gather observation indices"):
                observation_indices = doc_indices[subsets.indices]
            direct_observation_indices = observation_indices
            if has_target_ctrs:
                with profiler.profile("Make and gather direct observation indices"):
                    direct_observation_indices = dataset.inverse_indices[observation_indices]

            ctx.wait_complete()
            with profiler.profile(f"Compute best splits {depth}"):
                binary_features_helper.submit_compute(subsets, observation_indices)
                features_helper.submit_compute(subsets, observation_indices)
                ctr_helper.submit_compute(subsets, direct_observation_indices)

                binary_features_helper.compute_optimal_split(partition_stats, self.score_std_dev, _next_seed(random))
                features_helper.compute_optimal_split(partition_stats, self.score_std_dev, _next_seed(random))
                ctr_helper.compute_optimal_split(partition_stats, self.score_std_dev, _next_seed(random))

                ctx.wait_complete()

            best = take_best(
                features_helper.read_and_remap_optimal_split(),
                binary_features_helper.read_and_remap_optimal_split(),
                ctr_helper.read_and_remap_optimal_split(),
            )

            tree_ctr_split_bits = None
            if fm.is_tree_ctrs_enabled():
                if ctr_datasets_helper is None:
                    ctr_datasets_helper = TreeCtrDataSetsHelper(
                        dataset, fm, config.max_depth, fold_count,
                        tree_updater.create_empty_tensor_tracker(), ctx,
                    )
                if ctr_datasets_helper.used_permutations:
                    best, tree_ctr_split_bits = self._visit_tree_ctrs(
                        ctr_datasets_helper, subsets, partition_stats,
                        observation_indices, best, random,
                    )

            if not best.is_valid:
                raise TreeSearchError(
                    f"No valid split candidate at depth {depth} (best score {best.score})"
                )

            if fm.is_cat(best.feature_id):
                split = BinarySplit(best.feature_id, best.bin_id, SplitType.TAKE_BIN)
                split_message = "TakeBin"
            else:
                split = BinarySplit(best.feature_id, best.bin_id, SplitType.TAKE_GREATER)
                split_message = f">{fm.get_borders(best.feature_id)[best.bin_id]}"

            logger.info(
                "Best split for depth %d: %d / %d (%s) with score %s",
                depth, split.feature_id, split.bin_idx, split_message, best.score,
            )
            if fm.is_ctr(split.feature_id):
                ctr = fm.get_ctr(split.feature_id)
                logger.info("  tensor: %s (ctr type %s)", ctr.tensor, ctr.config.ctr_type.value)

            if result.has_split(split):
                break

            with profiler.profile("Compute new bins"):
                tree_updater.add_split(split, tree_ctr_split_bits)

            if depth + 1 != config.max_depth:
                with profiler.profile("Update subsets"):
                    subsets.split(leaf_bins, observation_indices)
                if ctr_datasets_helper is not None:
                    ctr_datasets_helper.add_split(split, leaf_bins)

            result.splits.append(split)

        cache_bins_for_model(self.scoped_cache, dataset, result, leaf_bins)
        return result

    # -------------------------------------------------------------------------
    # Tree ctrs
    # -------------------------------------------------------------------------

    def _visit_tree_ctrs(
        self,
        ctr_datasets_helper: TreeCtrDataSetsHelper,
        subsets: OptimizationSubsets,
        partition_stats: NDArray[np.float64],
        observation_indices: NDArray[np.int64],
        best: BestSplitProperties,
        random: np.random.Generator,
    ) -> tuple[BestSplitProperties, NDArray[np.uint8] | None]:
        visitor = TreeCtrDataSetVisitor(
            self.features_manager, subsets.fold_count, self.config, subsets, self.context,
        )
        visitor.set_best_score(best.score).set_score_std_dev_and_seed(
            self.score_std_dev, _next_seed(random)
        )

        for permutation in ctr_datasets_helper.used_permutations:
            inverse_indices = inverse_permutation(ctr_datasets_helper.get_permutation_indices(permutation))
            direct_observation_indices = inverse_indices[observation_indices]

            def tree_ctr_dataset_score_calcer(ctr_dataset: TreeCtrDataSet) -> None:
                visitor.accept(ctr_dataset, partition_stats, inverse_indices, direct_observation_indices)

            ctr_datasets_helper.visit_permutation_datasets(permutation, tree_ctr_dataset_score_calcer)

        if visitor.has_split():
            return visitor.create_best_split_properties(), visitor.get_best_split_bits()
        return best, None

    # -------------------------------------------------------------------------
    # Target
    # -------------------------------------------------------------------------

    def _check_target(self, target: SearchTarget) -> None:
        if not isinstance(target, SearchTarget):
            raise TypeError(f"Target must implement SearchTarget, got {type(target).__name__}")
        indices = np.asarray(target.indices)
        if indices.size and (indices.min() < 0 or indices.max() >= self.dataset.n_docs):
            raise ValueError(f"Target indices out of range [0, {self.dataset.n_docs})")

    def _task_parts(self) -> list[SearchTarget]:
        """Targets in position order: learn and test part of every task."""
        if self._single_task_target is not None:
            return [self._single_task_target]
        return [part for task in self._fold_based_tasks for part in task]

    def _make_doc_indices(self) -> NDArray[np.int64]:
        return np.concatenate(
            [np.asarray(part.indices, dtype=np.int64) for part in self._task_parts()]
        )

    def _get_random(self) -> np.random.Generator:
        if self._single_task_target is not None:
            return self._single_task_target.random
        return self._fold_based_tasks[0][0].random

    def _build_tree_search_target(self) -> tuple[NDArray[np.float64], NDArray[np.float64], list[int]]:
        """Weighted target, weights and part sizes in position order.

        Also sets the score noise deviation from the random strength.
        """
        parts = self._task_parts()
        sizes = [int(np.asarray(part.indices).shape[0]) for part in parts]
        gradient = np.concatenate([np.asarray(p.gradient_at_zero(), dtype=np.float64) for p in parts])
        weights = np.concatenate([np.asarray(p.weights, dtype=np.float64) for p in parts])

        self.score_std_dev = 0.0
        if self.random_strength:
            if self._fold_based_tasks:
                # Odd parts are test parts
                test_gradient = np.concatenate(
                    [np.asarray(p.gradient_at_zero(), dtype=np.float64) for p in parts[1::2]]
                )
            else:
                test_gradient = gradient
            sum2 = float(np.dot(test_gradient, test_gradient))
            self.score_std_dev = self.random_strength * np.sqrt(sum2 / (test_gradient.shape[0] + 1e-100))

        bootstrap_weights = self.bootstrap.bootstrapped_weights(gradient.shape[0])
        if self.config.bootstrap_test_only and self._fold_based_tasks:
            offsets = np.cumsum([0] + sizes)
            for learn in range(0, len(parts), 2):
                bootstrap_weights[offsets[learn]:offsets[learn + 1]] = 1.0
        weights = weights * bootstrap_weights
        return gradient * weights, weights, sizes

    def _create_subsets(self) -> OptimizationSubsets:
        with self.context.profiler.profile("Build tree search target (gradient)"):
            weighted_target, weights, sizes = self._build_tree_search_target()
        return OptimizationSubsets.from_part_sizes(sizes, weighted_target, weights, self.config.max_depth)

    def __repr__(self) -> str:
        return (
            f"ObliviousTreeStructureSearcher(dataset={self.dataset!r}, "
            f"fold_tasks={len(self._fold_based_tasks)}, "
            f"single_task={self._single_task_target is not None})"
        )


def _next_seed(random: np.random.Generator) -> int:
    return int(random.integers(0, np.iinfo(np.int64).max))


# =============================================================================
# Convenience
# =============================================================================

def search_tree_structure(
    dataset: DataSet,
    target: SearchTarget,
    *,
    config: TreeSearchConfig | None = None,
    bootstrap: Bootstrap | None = None,
    random_strength: float = 0.0,
    n_devices: int | None = None,
    scoped_cache: ScopedCache | None = None,
) -> tuple[ObliviousTreeStructure, NDArray[np.uint32]]:
    """Search one tree structure on a single full target.

    Args:
        dataset: Training data, e.g. from :func:`~symboost.build_dataset`.
        target: First-order statistics and weights.
        config: Search options (defaults to ``TreeSearchConfig()``).
        bootstrap: Sample weight source (default: no bootstrap).
        random_strength: Scale of the score noise.
        n_devices: Logical devices; read from ``SYMBOOST_DEVICES`` if None.
        scoped_cache: Cache receiving the leaf bins (a new one if None).

    Returns:
        structure: The searched tree.
        leaf_bins: Leaf bin of every document of ``dataset``.

    Example:
        >>> ds = sb.build_dataset(X, y, cat_features=[0])
        >>> target = sb.TargetStatistics(np.arange(len(y)), y - y.mean())
        >>> tree, leaf_bins = sb.search_tree_structure(ds, target, config=sb.TreeSearchConfig(max_depth=4))
    """
    config = config or TreeSearchConfig()
    bootstrap = bootstrap or Bootstrap("No")
    scoped_cache = scoped_cache if scoped_cache is not None else ScopedCache()
    context = ComputeContext.from_env() if n_devices is None else ComputeContext(n_devices)

    with context:
        searcher = ObliviousTreeStructureSearcher(
            scoped_cache, dataset.features_manager, dataset, bootstrap, config, context,
        )
        searcher.set_target(target).set_random_strength(random_strength)
        structure = searcher.fit()

    return structure, get_cached_leaf_bins(scoped_cache, dataset, structure)
