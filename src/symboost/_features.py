"""Feature store: global feature ids, borders and the CTR registry.

Every splittable feature, whether a quantized float column, a one-hot
categorical column or a CTR, gets one global id. CTR features are registered
lazily while trees are searched, so the registry is the only shared state
written during structure search; writers hold :attr:`FeaturesManager.lock`.
"""

from __future__ import annotations

import enum
import logging
import threading
from dataclasses import dataclass
from typing import Sequence

from ._ctr import Ctr, CtrConfig, CtrType, TargetClassifier

logger = logging.getLogger(__name__)


@dataclass
class FeatureManagerOptions:
    """Configuration of feature quantization and CTR generation.

    Args:
        border_count: Maximum borders per float feature.
        one_hot_max_size: Categorical features with at most this many values
            are split one-hot (``TakeBin``); larger ones feed CTRs.
        ctr_border_count: Maximum borders per CTR feature.
        ctr_types: CTR statistics to generate.
        priors: Prior numerators; each CTR type is generated once per prior.
        prior_denom: Prior denominator shared by all CTRs.
        target_border_count: Borders used to binarize the target for CTRs.
        max_tensor_complexity: Maximum categorical features plus splits in a
            tree CTR tensor.
        enable_tree_ctrs: Generate CTRs over feature combinations during
            structure search.
        permutation_count: Permutations used for tree CTRs.
    """
    border_count: int = 32
    one_hot_max_size: int = 2
    ctr_border_count: int = 15
    ctr_types: tuple[str, ...] = ("Borders",)
    priors: tuple[float, ...] = (0.5,)
    prior_denom: float = 1.0
    target_border_count: int = 1
    max_tensor_complexity: int = 4
    enable_tree_ctrs: bool = True
    permutation_count: int = 1


class FeatureKind(enum.Enum):
    FLOAT = "float"
    ONE_HOT = "one_hot"
    CTR = "ctr"


@dataclass(frozen=True)
class _FeatureInfo:
    kind: FeatureKind
    bin_count: int
    borders: tuple[float, ...] = ()
    ctr: Ctr | None = None
    source: int = -1  # Column index for float and one-hot features


class FeaturesManager:
    """Registry of every splittable feature.

    Example:
        >>> fm = FeaturesManager(FeatureManagerOptions())
        >>> fid = fm.register_float_feature([0.5, 1.5])
        >>> fm.get_borders(fid)
        [0.5, 1.5]
    """

    def __init__(self, options: FeatureManagerOptions | None = None):
        self.options = options or FeatureManagerOptions()
        self.lock = threading.RLock()
        self._features: list[_FeatureInfo] = []
        self._ctr_ids: dict[Ctr, int] = {}
        self.simple_ctr_configs: list[CtrConfig] = []
        self.tree_ctr_configs: list[CtrConfig] = []

    # -------------------------------------------------------------------------
    # Registration
    # -------------------------------------------------------------------------

    def register_float_feature(self, borders: Sequence[float], source: int = -1) -> int:
        borders = tuple(float(b) for b in borders)
        return self._append(_FeatureInfo(FeatureKind.FLOAT, len(borders) + 1, borders, source=source))

    def register_one_hot_feature(self, n_values: int, source: int = -1) -> int:
        return self._append(_FeatureInfo(FeatureKind.ONE_HOT, int(n_values), source=source))

    def add_ctr(self, ctr: Ctr, borders: Sequence[float]) -> int:
        """Register ``ctr`` with its borders; a known CTR keeps its first id."""
        with self.lock:
            if ctr in self._ctr_ids:
                return self._ctr_ids[ctr]
            borders = tuple(float(b) for b in borders)
            fid = self._append(_FeatureInfo(FeatureKind.CTR, len(borders) + 1, borders, ctr=ctr))
            self._ctr_ids[ctr] = fid
            return fid

    def _append(self, info: _FeatureInfo) -> int:
        with self.lock:
            self._features.append(info)
            return len(self._features) - 1

    # -------------------------------------------------------------------------
    # Lookup
    # -------------------------------------------------------------------------

    @property
    def n_features(self) -> int:
        return len(self._features)

    def is_known(self, ctr: Ctr) -> bool:
        return ctr in self._ctr_ids

    def get_id(self, ctr: Ctr) -> int:
        try:
            return self._ctr_ids[ctr]
        except KeyError:
            raise KeyError(f"Unknown ctr {ctr}") from None

    def get_ctr(self, feature_id: int) -> Ctr:
        info = self._info(feature_id)
        if info.ctr is None:
            raise ValueError(f"Feature {feature_id} is not a ctr")
        return info.ctr

    def get_borders(self, feature_id: int) -> list[float]:
        return list(self._info(feature_id).borders)

    def get_bin_count(self, feature_id: int) -> int:
        return self._info(feature_id).bin_count

    def get_source(self, feature_id: int) -> int:
        return self._info(feature_id).source

    def is_cat(self, feature_id: int) -> bool:
        return self._info(feature_id).kind is FeatureKind.ONE_HOT

    def is_ctr(self, feature_id: int) -> bool:
        return self._info(feature_id).kind is FeatureKind.CTR

    def is_float(self, feature_id: int) -> bool:
        return self._info(feature_id).kind is FeatureKind.FLOAT

    def is_tree_ctrs_enabled(self) -> bool:
        return self.options.enable_tree_ctrs and bool(self.tree_ctr_configs)

    def _info(self, feature_id: int) -> _FeatureInfo:
        if not 0 <= feature_id < len(self._features):
            raise IndexError(f"Feature id {feature_id} out of range [0, {len(self._features)})")
        return self._features[feature_id]

    # -------------------------------------------------------------------------
    # CTR configuration
    # -------------------------------------------------------------------------

    def create_ctr_configs(self, classifier: TargetClassifier) -> list[CtrConfig]:
        """Resolve the configured CTR types against the binarized target.

        Types the target cannot support are replaced with a fallback and
        logged.
        """
        n_classes = classifier.classes_count
        configs: list[CtrConfig] = []

        for name in self.options.ctr_types:
            ctr_type = CtrType(name)
            if ctr_type in (CtrType.BORDERS, CtrType.BUCKETS) and n_classes < 2:
                logger.warning(
                    "Ctr type %s needs a binarized target, but the target has a single class; "
                    "using %s instead", ctr_type.value, CtrType.FEATURE_FREQ.value,
                )
                ctr_type = CtrType.FEATURE_FREQ
            elif ctr_type is CtrType.BUCKETS and n_classes == 2:
                logger.warning(
                    "Ctr type %s on a two-class target duplicates %s; using %s instead",
                    ctr_type.value, CtrType.BORDERS.value, CtrType.BORDERS.value,
                )
                ctr_type = CtrType.BORDERS

            if ctr_type is CtrType.BORDERS:
                params = range(n_classes - 1)
            elif ctr_type is CtrType.BUCKETS:
                params = range(n_classes)
            else:
                params = range(1)

            for prior in self.options.priors:
                for param in params:
                    config = CtrConfig(ctr_type, float(prior), float(self.options.prior_denom), param)
                    if config not in configs:
                        configs.append(config)
        return configs

    def set_ctr_configs(self, configs: Sequence[CtrConfig]) -> None:
        self.simple_ctr_configs = list(configs)
        self.tree_ctr_configs = list(configs)

    def __repr__(self) -> str:
        return f"FeaturesManager(n_features={self.n_features}, n_ctrs={len(self._ctr_ids)})"
