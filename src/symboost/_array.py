"""Quantization of raw feature columns.

Float columns are quantized by quantile borders, categorical columns are
mapped to dense codes. Bin ``b`` of a value is the number of borders strictly
below it, so the threshold test ``bin > b`` is ``value > borders[b]``.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import numpy as np

if TYPE_CHECKING:
    from numpy.typing import ArrayLike, NDArray

# uint8 bin storage
MAX_BINS = 256


def quantile_borders(values: NDArray, border_count: int) -> NDArray[np.float64]:
    """Compute at most ``border_count`` borders for a column.

    Columns with few distinct values get midpoints between consecutive
    values; other columns get unique quantiles.
    """
    if border_count >= MAX_BINS:
        raise ValueError(f"border_count must be < {MAX_BINS} (uint8 storage), got {border_count}")
    values = np.asarray(values, dtype=np.float64)
    if values.size == 0 or border_count <= 0:
        return np.empty(0, dtype=np.float64)

    uniques = np.unique(values)
    if uniques.size <= border_count + 1:
        return (uniques[:-1] + uniques[1:]) / 2.0

    percentiles = np.linspace(0, 100, border_count + 2)[1:-1]
    borders = np.unique(np.percentile(values, percentiles))
    # A border at the maximum separates nothing
    return borders[borders < uniques[-1]]


def quantize(values: NDArray, borders: NDArray) -> NDArray[np.uint8]:
    """Bin index per value: number of borders strictly below it."""
    return np.digitize(np.asarray(values, dtype=np.float64), borders, right=True).astype(np.uint8)


def quantize_float_features(
    X: NDArray[np.floating],
    border_count: int,
) -> tuple[NDArray[np.uint8], list[NDArray[np.float64]]]:
    """Quantize float columns (parallelized across features).

    Args:
        X: Input data, shape (n_samples, n_features)
        border_count: Maximum number of borders per feature

    Returns:
        binned: Binned data in feature-major layout, shape (n_features, n_samples), uint8
        borders: List of borders per feature
    """
    from joblib import Parallel, delayed

    n_samples, n_features = X.shape
    if n_features == 0:
        return np.empty((0, n_samples), dtype=np.uint8), []

    def bin_single_feature(f: int) -> tuple[NDArray[np.uint8], NDArray[np.float64]]:
        """Bin a single feature column."""
        col = X[:, f].astype(np.float64)
        borders = quantile_borders(col, border_count)
        return quantize(col, borders), borders

    # Threads share X
    results = Parallel(n_jobs=-1, prefer="threads")(
        delayed(bin_single_feature)(f) for f in range(n_features)
    )

    binned = np.ascontiguousarray(np.vstack([r[0] for r in results]))
    borders = [r[1] for r in results]
    return binned, borders


def encode_categories(col: ArrayLike) -> tuple[NDArray[np.int32], NDArray]:
    """Map categorical values onto dense codes ``0..n_categories-1``.

    Returns:
        codes: Code per sample, int32
        categories: Sorted distinct values; ``categories[code]`` is the value
    """
    categories, codes = np.unique(np.asarray(col), return_inverse=True)
    return codes.reshape(-1).astype(np.int32), categories


def _to_numpy(arr: ArrayLike) -> NDArray:
    """Convert various array types to numpy.

    Handles: numpy, PyTorch, JAX, CuPy
    """
    # Already numpy
    if isinstance(arr, np.ndarray):
        return arr

    # PyTorch
    if hasattr(arr, 'cpu') and hasattr(arr, 'numpy'):
        return arr.cpu().numpy()

    # JAX (has __array__ protocol)
    if hasattr(arr, '__array__'):
        return np.asarray(arr)

    # CuPy
    if hasattr(arr, 'get'):
        return arr.get()

    # Fallback
    return np.asarray(arr)
