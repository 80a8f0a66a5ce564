"""Binarized training data for structure search.

A :class:`DataSet` groups splittable features into three families, each
scored by its own score helper:

- ``features``: quantized float features and one-hot categorical features
- ``binary_features``: features with exactly two bins
- ``target_ctrs``: CTRs of single categorical features, precomputed on the
  main permutation and stored in that permutation's row order

Categorical features with more values than ``one_hot_max_size`` are kept as
dense codes so that CTRs over feature combinations can be generated during
structure search.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Sequence

import numpy as np

from ._array import MAX_BINS, _to_numpy, encode_categories, quantize, quantize_float_features
from ._core._split import BinarySplit
from ._ctr import (
    Ctr,
    CtrTargets,
    FeatureTensor,
    TargetClassifier,
    compute_ctr_borders,
    compute_ctr_values,
)
from ._features import FeatureManagerOptions, FeaturesManager

if TYPE_CHECKING:
    from numpy.typing import ArrayLike, NDArray


@dataclass(eq=False)
class BinarizedFeatureSet:
    """Bins of one feature family.

    Attributes:
        data: Bins, shape (n_features, n_rows), uint8
        feature_ids: Feature id per row of ``data``
        bin_counts: Number of bins per feature
        take_bin: Whether a feature is split by equality (``TakeBin``)
        permuted: Rows follow the main permutation rather than document order
    """
    data: NDArray[np.uint8]
    feature_ids: NDArray[np.int64]
    bin_counts: NDArray[np.int64]
    take_bin: NDArray[np.bool_]
    permuted: bool = False

    @property
    def n_features(self) -> int:
        return int(self.data.shape[0])

    @property
    def n_rows(self) -> int:
        return int(self.data.shape[1])

    @property
    def max_bins(self) -> int:
        return int(self.bin_counts.max()) if self.n_features else 0

    @classmethod
    def from_columns(
        cls,
        columns: Sequence[NDArray[np.uint8]],
        feature_ids: Sequence[int],
        bin_counts: Sequence[int],
        take_bin: Sequence[bool],
        n_rows: int,
        *,
        permuted: bool = False,
    ) -> BinarizedFeatureSet:
        data = (
            np.ascontiguousarray(np.vstack(columns), dtype=np.uint8)
            if len(columns)
            else np.empty((0, n_rows), dtype=np.uint8)
        )
        return cls(
            data=data,
            feature_ids=np.asarray(feature_ids, dtype=np.int64),
            bin_counts=np.asarray(bin_counts, dtype=np.int64),
            take_bin=np.asarray(take_bin, dtype=np.bool_),
            permuted=permuted,
        )

    def __repr__(self) -> str:
        return (
            f"BinarizedFeatureSet(n_features={self.n_features}, n_rows={self.n_rows}, "
            f"permuted={self.permuted})"
        )


@dataclass(eq=False)
class DataSet:
    """Binarized features, CTR inputs and permutations of one training set."""
    features_manager: FeaturesManager
    features: BinarizedFeatureSet
    binary_features: BinarizedFeatureSet
    target_ctrs: BinarizedFeatureSet
    cat_features: NDArray[np.int32]       # (n_cat_features, n_docs) dense codes
    ctr_targets: CtrTargets
    permutations: list[NDArray[np.int64]]  # [0] is the main permutation
    n_docs: int
    _locations: dict[int, tuple[BinarizedFeatureSet, int]] = field(
        default_factory=dict, init=False, repr=False
    )
    _inverse: list[NDArray[np.int64]] = field(default_factory=list, init=False, repr=False)

    def __post_init__(self):
        for family in (self.features, self.binary_features, self.target_ctrs):
            for local, fid in enumerate(family.feature_ids):
                self._locations[int(fid)] = (family, local)
        self._inverse = [inverse_permutation(p) for p in self.permutations]

    @property
    def indices(self) -> NDArray[np.int64]:
        """Main permutation: row ``r`` of permuted storage holds document ``indices[r]``."""
        return self.permutations[0]

    @property
    def inverse_indices(self) -> NDArray[np.int64]:
        """Row of each document in permuted storage."""
        return self._inverse[0]

    @property
    def n_cat_features(self) -> int:
        return int(self.cat_features.shape[0])

    @property
    def n_permutations(self) -> int:
        return len(self.permutations)

    def get_permutation(self, permutation: int) -> NDArray[np.int64]:
        return self.permutations[permutation]

    def get_inverse_permutation(self, permutation: int) -> NDArray[np.int64]:
        return self._inverse[permutation]

    def has_feature(self, feature_id: int) -> bool:
        return feature_id in self._locations

    def compute_split_bits(self, split: BinarySplit) -> NDArray[np.bool_]:
        """Decision bit per document for a split on a stored feature."""
        if split.feature_id not in self._locations:
            raise KeyError(f"Feature {split.feature_id} is not stored in this data set")
        family, local = self._locations[split.feature_id]
        bits = split.decide(family.data[local])
        if family.permuted:
            bits = bits[self.inverse_indices]
        return bits

    def tensor_keys(self, tensor: FeatureTensor) -> tuple[NDArray[np.int64], int]:
        """Dense key per document for the value combination of ``tensor``.

        Returns:
            keys: Shape (n_docs,), int64
            n_keys: Number of distinct keys
        """
        columns = [self.cat_features[c].astype(np.int64) for c in tensor.cat_features]
        columns += [self.compute_split_bits(s).astype(np.int64) for s in tensor.splits]
        if not columns:
            return np.zeros(self.n_docs, dtype=np.int64), 1
        if len(columns) == 1:
            uniques, keys = np.unique(columns[0], return_inverse=True)
        else:
            uniques, keys = np.unique(np.stack(columns, axis=1), axis=0, return_inverse=True)
        return keys.reshape(-1).astype(np.int64), int(uniques.shape[0])

    def compute_ctr(self, ctr: Ctr, permutation: int = 0) -> NDArray[np.float64]:
        """CTR values with rows in the order of ``permutation``."""
        keys, n_keys = self.tensor_keys(ctr.tensor)
        perm = self.permutations[permutation]
        return compute_ctr_values(
            keys[perm], self.ctr_targets.classes[perm], ctr.config, n_keys, self.ctr_targets.n_classes,
        )

    def __repr__(self) -> str:
        return (
            f"DataSet(n_docs={self.n_docs}, features={self.features.n_features}, "
            f"binary_features={self.binary_features.n_features}, "
            f"target_ctrs={self.target_ctrs.n_features}, cat_features={self.n_cat_features})"
        )


def inverse_permutation(permutation: NDArray) -> NDArray[np.int64]:
    """Position of each document within ``permutation``."""
    inverse = np.empty_like(permutation, dtype=np.int64)
    inverse[permutation] = np.arange(permutation.shape[0], dtype=np.int64)
    return inverse


def build_dataset(
    X: ArrayLike,
    y: ArrayLike | None = None,
    *,
    cat_features: Sequence[int] = (),
    options: FeatureManagerOptions | None = None,
    features_manager: FeaturesManager | None = None,
    random_state: int | None = None,
) -> DataSet:
    """Quantize raw features and register them for structure search.

    Args:
        X: Input features, shape (n_samples, n_features).
        y: Target used for CTR statistics. Without it, CTRs fall back to
           target-free feature frequencies.
        cat_features: Column indices of categorical features.
        options: Feature quantization and CTR options.
        features_manager: Registry to extend. A new one is created if None.
        random_state: Seed for the CTR permutations.

    Returns:
        DataSet with every feature registered in ``features_manager``.

    Example:
        >>> ds = build_dataset(X, y, cat_features=[3], random_state=0)
        >>> ds.features_manager.is_cat(0)
        False
    """
    if features_manager is None:
        features_manager = FeaturesManager(options)
    options = features_manager.options

    X_np = _to_numpy(X)
    if X_np.ndim != 2:
        raise ValueError(f"X must be 2D (n_samples, n_features), got shape {X_np.shape}")
    n_docs, n_columns = X_np.shape
    if n_docs == 0:
        raise ValueError("X has no samples")

    cat_set = set(int(c) for c in cat_features)
    for c in cat_set:
        if not 0 <= c < n_columns:
            raise ValueError(f"Categorical feature index {c} out of range [0, {n_columns})")
    if options.one_hot_max_size >= MAX_BINS:
        raise ValueError(f"one_hot_max_size must be < {MAX_BINS}, got {options.one_hot_max_size}")

    float_columns = [c for c in range(n_columns) if c not in cat_set]
    X_float = X_np[:, float_columns].astype(np.float64)
    if np.isnan(X_float).any():
        raise ValueError("X contains NaN in float features")

    families: dict[str, dict[str, list]] = {
        name: {"columns": [], "ids": [], "bins": [], "take_bin": []}
        for name in ("features", "binary_features")
    }

    def add(name: str, column: NDArray, fid: int, bin_count: int, take_bin: bool) -> None:
        family = families[name]
        family["columns"].append(column)
        family["ids"].append(fid)
        family["bins"].append(bin_count)
        family["take_bin"].append(take_bin)

    binned, borders = quantize_float_features(X_float, options.border_count)
    float_binned = dict(zip(float_columns, binned))
    float_borders = dict(zip(float_columns, borders))

    ctr_base: list[NDArray[np.int32]] = []

    for column in range(n_columns):
        if column in cat_set:
            codes, categories = encode_categories(X_np[:, column])
            n_values = len(categories)
            if n_values < 2:
                continue
            if n_values <= options.one_hot_max_size:
                fid = features_manager.register_one_hot_feature(n_values, source=column)
                name = "binary_features" if n_values == 2 else "features"
                add(name, codes.astype(np.uint8), fid, n_values, True)
            else:
                ctr_base.append(codes)
        else:
            column_borders = float_borders[column]
            if column_borders.size == 0:
                continue
            fid = features_manager.register_float_feature(column_borders, source=column)
            name = "binary_features" if column_borders.size == 1 else "features"
            add(name, float_binned[column], fid, column_borders.size + 1, False)

    rng = np.random.default_rng(random_state)
    permutations = [
        rng.permutation(n_docs).astype(np.int64)
        for _ in range(max(1, options.permutation_count))
    ]

    if y is not None:
        y_np = np.asarray(_to_numpy(y), dtype=np.float64).ravel()
        if y_np.shape[0] != n_docs:
            raise ValueError(f"y has {y_np.shape[0]} samples, X has {n_docs}")
        classifier = TargetClassifier.from_target(y_np, options.target_border_count)
        classes = classifier.get_target_classes(y_np)
    else:
        classifier = TargetClassifier()
        classes = np.zeros(n_docs, dtype=np.int64)
    ctr_targets = CtrTargets(classes=classes, classifier=classifier)

    if ctr_base:
        features_manager.set_ctr_configs(features_manager.create_ctr_configs(classifier))

    # Simple ctrs on the main permutation
    ctr_columns, ctr_ids, ctr_bins = [], [], []
    perm = permutations[0]
    classes_perm = classes[perm]
    for cat_index, codes in enumerate(ctr_base):
        tensor = FeatureTensor(cat_features=(cat_index,))
        keys_perm = codes[perm].astype(np.int64)
        n_keys = int(codes.max()) + 1
        for config in features_manager.simple_ctr_configs:
            values = compute_ctr_values(keys_perm, classes_perm, config, n_keys, ctr_targets.n_classes)
            ctr = Ctr(tensor, config)
            if features_manager.is_known(ctr):
                ctr_borders = np.asarray(features_manager.get_borders(features_manager.get_id(ctr)))
            else:
                ctr_borders = compute_ctr_borders(values, options.ctr_border_count)
                if ctr_borders.size == 0:
                    continue
            fid = features_manager.add_ctr(ctr, ctr_borders)
            ctr_columns.append(quantize(values, ctr_borders))
            ctr_ids.append(fid)
            ctr_bins.append(ctr_borders.size + 1)

    return DataSet(
        features_manager=features_manager,
        features=BinarizedFeatureSet.from_columns(
            families["features"]["columns"],
            families["features"]["ids"],
            families["features"]["bins"],
            families["features"]["take_bin"],
            n_docs,
        ),
        binary_features=BinarizedFeatureSet.from_columns(
            families["binary_features"]["columns"],
            families["binary_features"]["ids"],
            families["binary_features"]["bins"],
            families["binary_features"]["take_bin"],
            n_docs,
        ),
        target_ctrs=BinarizedFeatureSet.from_columns(
            ctr_columns, ctr_ids, ctr_bins, [False] * len(ctr_ids), n_docs, permuted=True,
        ),
        cat_features=(
            np.vstack(ctr_base).astype(np.int32)
            if ctr_base
            else np.empty((0, n_docs), dtype=np.int32)
        ),
        ctr_targets=ctr_targets,
        permutations=permutations,
        n_docs=n_docs,
    )
