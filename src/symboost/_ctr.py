"""Categorical target statistics (CTRs).

A CTR turns a combination of categorical features (a *feature tensor*) into
a numeric feature by aggregating target classes over documents sharing the
same combination. Values are computed in a fixed document permutation and
each document only sees documents placed before it, so no document's own
target leaks into its encoding.
"""

from __future__ import annotations

import enum
import zlib
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Sequence

import numpy as np

from ._array import quantile_borders
from ._backends._cpu import ordered_class_counts_cpu
from ._core._split import BinarySplit

if TYPE_CHECKING:
    from numpy.typing import NDArray


class CtrType(enum.Enum):
    """Statistic computed by a CTR.

    - BORDERS: share of documents whose target class is above ``param_id``
    - BUCKETS: share of documents whose target class equals ``param_id``
    - FEATURE_FREQ: share of documents with the same category (target-free)
    """
    BORDERS = "Borders"
    BUCKETS = "Buckets"
    FEATURE_FREQ = "FeatureFreq"


@dataclass(frozen=True)
class CtrConfig:
    """Statistic type plus prior parameters."""
    ctr_type: CtrType
    prior_num: float = 0.5
    prior_denom: float = 1.0
    param_id: int = 0

    def __str__(self) -> str:
        return f"{self.ctr_type.value}(prior={self.prior_num}/{self.prior_denom}, param={self.param_id})"


@dataclass(frozen=True)
class FeatureTensor:
    """Base categorical features plus binary split history forming a CTR key.

    Both parts are kept sorted so equal sets compare and hash equal.
    """
    cat_features: tuple[int, ...] = ()
    splits: tuple[BinarySplit, ...] = ()

    def add_cat_feature(self, cat_feature: int) -> FeatureTensor:
        if cat_feature in self.cat_features:
            return self
        return FeatureTensor(tuple(sorted(self.cat_features + (cat_feature,))), self.splits)

    def add_split(self, split: BinarySplit) -> FeatureTensor:
        if split in self.splits:
            return self
        return FeatureTensor(self.cat_features, tuple(sorted(self.splits + (split,))))

    def add_tensor(self, other: FeatureTensor) -> FeatureTensor:
        result = self
        for cat_feature in other.cat_features:
            result = result.add_cat_feature(cat_feature)
        for split in other.splits:
            result = result.add_split(split)
        return result

    @property
    def complexity(self) -> int:
        return len(self.cat_features) + len(self.splits)

    @property
    def is_empty(self) -> bool:
        return self.complexity == 0

    @property
    def is_simple(self) -> bool:
        """A single categorical feature without splits."""
        return len(self.cat_features) == 1 and not self.splits

    def stable_hash(self) -> int:
        """Hash that does not change between interpreter runs."""
        text = ";".join(
            [",".join(str(c) for c in self.cat_features)]
            + [f"{s.feature_id}:{s.bin_idx}:{s.split_type.value}" for s in self.splits]
        )
        return zlib.crc32(text.encode("ascii"))

    def __str__(self) -> str:
        cats = ",".join(str(c) for c in self.cat_features)
        splits = ",".join(f"{s.feature_id}/{s.bin_idx}" for s in self.splits)
        return f"cat=[{cats}] splits=[{splits}]"


@dataclass(frozen=True)
class Ctr:
    """A CTR feature: tensor plus configuration."""
    tensor: FeatureTensor
    config: CtrConfig

    def __str__(self) -> str:
        return f"{self.tensor} ({self.config})"


# =============================================================================
# Target binarization
# =============================================================================

class TargetClassifier:
    """Maps a continuous target onto classes by borders.

    Class ``k`` holds targets in ``(borders[k-1], borders[k]]``.
    """

    def __init__(self, borders: Sequence[float] = ()):
        self.borders = np.asarray(borders, dtype=np.float64)

    @classmethod
    def from_target(cls, target: NDArray, border_count: int) -> TargetClassifier:
        """Build borders from target quantiles."""
        target = np.asarray(target, dtype=np.float64)
        if border_count <= 0 or target.size == 0:
            return cls()
        return cls(quantile_borders(target, border_count))

    def get_target_class(self, target: float) -> int:
        return int(np.searchsorted(self.borders, target, side="left"))

    def get_target_classes(self, target: NDArray) -> NDArray[np.int64]:
        return np.searchsorted(self.borders, np.asarray(target, dtype=np.float64), side="left").astype(np.int64)

    @property
    def classes_count(self) -> int:
        return len(self.borders) + 1

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, TargetClassifier):
            return NotImplemented
        return np.array_equal(self.borders, other.borders)

    def __repr__(self) -> str:
        return f"TargetClassifier(borders={self.borders.tolist()})"


@dataclass
class CtrTargets:
    """Per-document target classes used by every CTR."""
    classes: NDArray[np.int64]
    classifier: TargetClassifier = field(default_factory=TargetClassifier)

    @property
    def n_classes(self) -> int:
        return self.classifier.classes_count


# =============================================================================
# CTR values
# =============================================================================

def compute_ctr_values(
    keys: NDArray,
    classes: NDArray,
    config: CtrConfig,
    n_keys: int,
    n_classes: int,
) -> NDArray[np.float64]:
    """Compute a CTR for rows given in permutation order.

    Args:
        keys: Dense tensor key per row, shape (n_rows,)
        classes: Target class per row, shape (n_rows,)
        config: CTR configuration
        n_keys: Number of distinct keys
        n_classes: Number of target classes

    Returns:
        values: Shape (n_rows,), float64
    """
    keys = np.asarray(keys, dtype=np.int64)

    if config.ctr_type is CtrType.FEATURE_FREQ:
        counts = np.bincount(keys, minlength=n_keys).astype(np.float64)
        return (counts[keys] + config.prior_num) / (keys.shape[0] + config.prior_denom)

    before_class, before_total = ordered_class_counts_cpu(
        keys, np.asarray(classes, dtype=np.int64), n_keys, n_classes
    )
    if config.ctr_type is CtrType.BORDERS:
        numerator = before_class[:, config.param_id + 1:].sum(axis=1)
    else:
        numerator = before_class[:, config.param_id]
    return (numerator + config.prior_num) / (before_total + config.prior_denom)


def compute_ctr_borders(values: NDArray, border_count: int) -> NDArray[np.float64]:
    """Quantization borders for CTR values."""
    return quantile_borders(np.asarray(values, dtype=np.float64), border_count)
