"""Exceptions raised by SymBoost."""

from __future__ import annotations


class TreeSearchError(RuntimeError):
    """A tree structure search hit corrupted state or a usage error.

    Raised for conditions that indicate a programming or upstream data
    defect: reading a visitor's best split before one was found, a split bin
    beyond the registered borders, mixing fold tasks with a single target,
    or a depth with no valid split candidate. These are never retried.
    """
