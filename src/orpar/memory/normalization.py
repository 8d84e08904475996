"""Score normalization schemes shared by Q-value and utility scoring.

All schemes return an array the same length as the input and never
produce NaN or infinity for finite input, including constant arrays.
"""

from __future__ import annotations

from enum import Enum

import numpy as np

ZSCORE_EPSILON = 1e-10


class NormalizationMethod(str, Enum):
    """How raw scores are rescaled before blending."""

    ZSCORE = "z-score"
    MINMAX = "min-max"
    SOFTMAX = "softmax"


def zscore(values: list[float] | np.ndarray) -> np.ndarray:
    """Standardize to zero mean and unit variance.

    Uses population standard deviation. A zero-variance input maps to
    all zeros.
    """
    arr = np.asarray(values, dtype=float)
    if arr.size == 0:
        return arr
    std = float(np.std(arr))
    if std < ZSCORE_EPSILON:
        return np.zeros_like(arr)
    return (arr - np.mean(arr)) / std


def minmax(values: list[float] | np.ndarray) -> np.ndarray:
    """Rescale to [0, 1]. Identical values map to 0.5."""
    arr = np.asarray(values, dtype=float)
    if arr.size == 0:
        return arr
    lo = float(np.min(arr))
    hi = float(np.max(arr))
    if hi == lo:
        return np.full_like(arr, 0.5)
    return (arr - lo) / (hi - lo)


def softmax(values: list[float] | np.ndarray) -> np.ndarray:
    """Softmax with max-subtraction for numerical stability."""
    arr = np.asarray(values, dtype=float)
    if arr.size == 0:
        return arr
    exps = np.exp(arr - np.max(arr))
    return exps / np.sum(exps)


def normalize(
    values: list[float] | np.ndarray,
    method: NormalizationMethod | str = NormalizationMethod.ZSCORE,
) -> np.ndarray:
    """Normalize values with the given method.

    Args:
        values: Raw scores
        method: Normalization scheme

    Returns:
        Normalized scores as a float array

    Raises:
        ValueError: If the method is unknown
    """
    method = NormalizationMethod(method)
    if method == NormalizationMethod.ZSCORE:
        return zscore(values)
    elif method == NormalizationMethod.MINMAX:
        return minmax(values)
    else:
        return softmax(values)
