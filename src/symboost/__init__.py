"""SymBoost: oblivious tree structure search for gradient boosting.

Searches the split sequence of one symmetric (oblivious) tree given
first-order target statistics, over quantized float features, one-hot
categorical features and categorical target statistics (CTRs), including
CTRs of feature combinations discovered while the tree grows.

Quick Start:
    >>> import symboost as sb
    >>>
    >>> ds = sb.build_dataset(X, y, cat_features=[2], random_state=0)
    >>> target = sb.TargetStatistics(np.arange(len(y)), y - y.mean())
    >>> tree, leaf_bins = sb.search_tree_structure(ds, target)
    >>> tree.splits
    [BinarySplit(feature_id=3, bin_idx=7, split_type=<SplitType.TAKE_GREATER: 'TakeGreater'>), ...]

Low-Level API (Full Control):
    >>> fm = ds.features_manager
    >>> with sb.ComputeContext(n_devices=2) as ctx:
    ...     searcher = sb.ObliviousTreeStructureSearcher(
    ...         sb.ScopedCache(), fm, ds, sb.Bootstrap("Bayesian", random_state=0),
    ...         sb.TreeSearchConfig(max_depth=6), ctx,
    ...     )
    ...     searcher.add_task(learn_target, test_target).set_random_strength(1.0)
    ...     tree = searcher.fit()
"""

__version__ = "0.1.0"

# Data
from ._array import quantile_borders, quantize
from ._dataset import BinarizedFeatureSet, DataSet, build_dataset
from ._features import FeatureManagerOptions, FeaturesManager

# CTRs
from ._ctr import Ctr, CtrConfig, CtrTargets, CtrType, FeatureTensor, TargetClassifier

# Runtime
from ._bootstrap import Bootstrap, BootstrapType
from ._cache import ScopedCache
from ._context import ComputeContext, Profiler
from ._errors import TreeSearchError

# Structure search
from ._core._split import (
    BestSplitProperties,
    BinarySplit,
    ObliviousTreeStructure,
    SplitType,
    take_best,
)
from ._core._score import ScoreHelper
from ._core._subsets import OptimizationSubsets
from ._core._updater import TensorTracker, TreeUpdater, cache_bins_for_model, get_cached_leaf_bins
from ._core._tree_ctrs import TreeCtrDataSet, TreeCtrDataSetsHelper, TreeCtrDataSetVisitor
from ._core._searcher import (
    MAX_DEPTH,
    ObliviousTreeStructureSearcher,
    SearchTarget,
    TargetStatistics,
    TreeSearchConfig,
    search_tree_structure,
)

__all__ = [
    # Version
    "__version__",
    # Data
    "build_dataset",
    "DataSet",
    "BinarizedFeatureSet",
    "FeaturesManager",
    "FeatureManagerOptions",
    "quantile_borders",
    "quantize",
    # CTRs
    "Ctr",
    "CtrConfig",
    "CtrTargets",
    "CtrType",
    "FeatureTensor",
    "TargetClassifier",
    # Runtime
    "Bootstrap",
    "BootstrapType",
    "ComputeContext",
    "Profiler",
    "ScopedCache",
    "TreeSearchError",
    # Structure search (high level)
    "search_tree_structure",
    "ObliviousTreeStructureSearcher",
    "TreeSearchConfig",
    "MAX_DEPTH",
    "TargetStatistics",
    "SearchTarget",
    # Structure search (components)
    "BinarySplit",
    "SplitType",
    "BestSplitProperties",
    "ObliviousTreeStructure",
    "take_best",
    "ScoreHelper",
    "OptimizationSubsets",
    "TreeUpdater",
    "TensorTracker",
    "cache_bins_for_model",
    "get_cached_leaf_bins",
    "TreeCtrDataSet",
    "TreeCtrDataSetsHelper",
    "TreeCtrDataSetVisitor",
]
