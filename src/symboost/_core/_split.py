"""Split records for oblivious tree structure search."""

from __future__ import annotations

import enum
import math
from dataclasses import dataclass, field
from typing import NamedTuple

import numpy as np

INVALID_FEATURE_ID = -1


class SplitType(enum.Enum):
    """How a binary split tests a document's bin.

    ``TAKE_BIN`` is an equality test (categorical / one-hot features),
    ``TAKE_GREATER`` a threshold test (ordered bins).
    """
    TAKE_BIN = "TakeBin"
    TAKE_GREATER = "TakeGreater"


@dataclass(frozen=True, order=True)
class BinarySplit:
    """One level of an oblivious tree."""
    feature_id: int
    bin_idx: int
    split_type: SplitType = field(default=SplitType.TAKE_GREATER, compare=False)

    def decide(self, bins: np.ndarray) -> np.ndarray:
        """Decision bit per document for the given bin column."""
        if self.split_type is SplitType.TAKE_BIN:
            return bins == self.bin_idx
        return bins > self.bin_idx


class BestSplitProperties(NamedTuple):
    """A split candidate. Lower score is better."""
    feature_id: int   # Global feature id (-1 if no valid candidate)
    bin_id: int       # Bin index of the split
    score: float      # Split score (negated gain)

    @property
    def is_valid(self) -> bool:
        """Check if this is a usable candidate."""
        return self.feature_id != INVALID_FEATURE_ID and not math.isnan(self.score)

    @classmethod
    def invalid(cls) -> BestSplitProperties:
        return cls(feature_id=INVALID_FEATURE_ID, bin_id=-1, score=math.inf)


def take_best(*candidates: BestSplitProperties) -> BestSplitProperties:
    """Return the lowest-scoring valid candidate.

    Exact ties go to the candidate passed first.
    """
    best = BestSplitProperties.invalid()
    for candidate in candidates:
        if not candidate.is_valid:
            continue
        if not best.is_valid or candidate.score < best.score:
            best = candidate
    return best


@dataclass
class ObliviousTreeStructure:
    """Ordered split list of an oblivious (symmetric) tree.

    Every node at depth ``d`` applies ``splits[d]``, so a tree of depth ``D``
    has exactly ``D`` splits and ``2**D`` leaves.
    """
    splits: list[BinarySplit] = field(default_factory=list)

    @property
    def depth(self) -> int:
        return len(self.splits)

    @property
    def n_leaves(self) -> int:
        return 1 << len(self.splits)

    def has_split(self, split: BinarySplit) -> bool:
        """Check whether ``split`` (feature id and bin) is already used."""
        return any(
            s.feature_id == split.feature_id and s.bin_idx == split.bin_idx
            for s in self.splits
        )

    def __len__(self) -> int:
        return len(self.splits)

    def __iter__(self):
        return iter(self.splits)
