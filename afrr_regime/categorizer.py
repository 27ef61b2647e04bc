"""
Contracting Signal Categorizer
==============================

Converts a real-valued contracting signal (system contracting forecast,
MW) into discrete regime labels:

    0 = UNDERCONTRACTED    low values
    1 = BALANCED           values inside the band
    2 = OVERCONTRACTED     high values

Six interchangeable strategies are available, selected through the closed
CategorizationMethod enumeration. Each strategy carries its own typed
options record (see config.py):

    quantile    Order statistics of the whole sequence (33rd / 67th)
    kmeans      1-D k-means (k=3) with k-means++ seeding
    volatility  Rolling coefficient of variation picks local or global bands
    adaptive    Rolling mean +/- sensitivity * std with a minimum spread
    zscore      Global z-score thresholds
    threshold   Fixed absolute cut points

Degenerate inputs (zero variance for zscore/kmeans) are recovered by
labelling every point BALANCED; NaN never reaches the output.

References:
    Arthur, D. & Vassilvitskii, S. (2007). "k-means++: The Advantages of
    Careful Seeding." SODA '07.

Version: 1.0.0
"""

from __future__ import annotations

import logging
from typing import Callable, Dict, Optional, Sequence, Union

import numpy as np
import pandas as pd

from afrr_regime.config import (
    AdaptiveOptions,
    CategorizationMethod,
    CategorizationOptions,
    Config,
    ContractingRegime,
    KMeansOptions,
    QuantileOptions,
    ThresholdOptions,
    VolatilityOptions,
    ZScoreOptions,
    build_options,
    coerce_method,
)
from afrr_regime.errors import InputError, NumericalError

logger = logging.getLogger(__name__)

UNDER = int(ContractingRegime.UNDERCONTRACTED)
BALANCED = int(ContractingRegime.BALANCED)
OVER = int(ContractingRegime.OVERCONTRACTED)

# Half-width used to force open a zero-width adaptive band
_SPREAD_EPSILON = 1e-9
# Relative spread below which a sequence is treated as constant
_DEGENERATE_SPREAD = 1e-12


# =============================================================================
# SECTION 1: INPUT VALIDATION
# =============================================================================

def validate_values(values: Union[Sequence[float], np.ndarray, pd.Series]) -> np.ndarray:
    """
    Convert an observation sequence to a finite 1-D float array.

    Raises:
        InputError: empty, non-numeric, multi-dimensional or non-finite input
    """
    try:
        arr = np.asarray(values, dtype=float)
    except (TypeError, ValueError) as exc:
        raise InputError(f"Observations must be numeric: {exc}") from None

    if arr.ndim != 1:
        raise InputError(f"Observations must be one-dimensional, got shape {arr.shape}")
    if arr.size == 0:
        raise InputError("Cannot categorize an empty observation sequence")
    if not np.all(np.isfinite(arr)):
        n_bad = int((~np.isfinite(arr)).sum())
        raise InputError(f"Observations contain {n_bad} NaN/Inf value(s)")
    return arr


def _label_by_band(values: np.ndarray, low: np.ndarray, high: np.ndarray) -> np.ndarray:
    """Strictly below ``low`` -> UNDER, strictly above ``high`` -> OVER."""
    labels = np.full(values.shape, BALANCED, dtype=int)
    labels[values < low] = UNDER
    labels[values > high] = OVER
    return labels


def _is_degenerate(values: np.ndarray) -> bool:
    """True for sequences that are constant up to floating-point round-off."""
    if np.ptp(values) == 0:
        return True
    std = float(values.std())
    return not np.isfinite(std) or std <= _DEGENERATE_SPREAD * max(1.0, abs(float(values.mean())))


def _rolling_moments(values: np.ndarray, window: int):
    """Trailing mean and population std; the window is clipped at the start."""
    rolling = pd.Series(values).rolling(window=window, min_periods=1)
    local_mean = rolling.mean().to_numpy()
    local_std = rolling.std(ddof=0).fillna(0.0).to_numpy()
    return local_mean, np.clip(local_std, 0.0, None)


# =============================================================================
# SECTION 2: STRATEGIES
# =============================================================================

def _categorize_quantile(values: np.ndarray, options: QuantileOptions) -> np.ndarray:
    n = values.size
    ordered = np.sort(values)
    low_idx = min(int(np.floor(n * options.low_percentile / 100.0)), n - 1)
    high_idx = min(int(np.floor(n * options.high_percentile / 100.0)), n - 1)
    q_low, q_high = ordered[low_idx], ordered[high_idx]

    labels = np.full(n, BALANCED, dtype=int)
    labels[values <= q_low] = UNDER
    labels[values > q_high] = OVER
    return labels


def _kmeans_plus_plus(values: np.ndarray, k: int, rng: np.random.Generator) -> np.ndarray:
    """Distance-proportional seeding; duplicates are allowed once D^2 is exhausted."""
    n = values.size
    centroids = [values[rng.integers(n)]]
    for _ in range(1, k):
        d2 = np.min((values[:, None] - np.asarray(centroids)[None, :]) ** 2, axis=1)
        total = d2.sum()
        if total > 0:
            idx = rng.choice(n, p=d2 / total)
        else:
            idx = rng.integers(n)
        centroids.append(values[idx])
    return np.asarray(centroids, dtype=float)


def _categorize_kmeans(values: np.ndarray, options: KMeansOptions) -> np.ndarray:
    if _is_degenerate(values):
        raise NumericalError("k-means on a zero-variance sequence")

    k = Config.N_STATES
    rng = np.random.default_rng(options.seed)
    centroids = _kmeans_plus_plus(values, k, rng)

    for iteration in range(options.max_iterations):
        assignments = np.argmin(np.abs(values[:, None] - centroids[None, :]), axis=1)
        updated = centroids.copy()
        for c in range(k):
            members = values[assignments == c]
            if members.size:
                updated[c] = members.mean()
        shift = np.max(np.abs(updated - centroids))
        centroids = updated
        if shift < options.tolerance:
            logger.debug(f"k-means converged after {iteration + 1} iterations")
            break

    assignments = np.argmin(np.abs(values[:, None] - centroids[None, :]), axis=1)
    # Rank of each centroid value: lowest -> UNDER, highest -> OVER
    rank = np.argsort(np.argsort(centroids, kind='stable'), kind='stable')
    return rank[assignments].astype(int)


def _categorize_volatility(values: np.ndarray, options: VolatilityOptions) -> np.ndarray:
    local_mean, local_std = _rolling_moments(values, options.window)
    abs_mean = np.abs(local_mean)

    with np.errstate(divide='ignore', invalid='ignore'):
        cv = np.where(
            abs_mean > 0,
            local_std / np.where(abs_mean > 0, abs_mean, 1.0),
            np.where(local_std > 0, np.inf, 0.0)
        )
    use_local = cv > options.cv_threshold

    global_mean = float(values.mean())
    center = np.where(use_local, local_mean, global_mean)
    band = np.where(use_local, options.local_band * abs_mean,
                    options.global_band * abs(global_mean))
    return _label_by_band(values, center - band, center + band)


def _categorize_adaptive(values: np.ndarray, options: AdaptiveOptions) -> np.ndarray:
    window = max(1, min(options.max_window, values.size // 4))
    local_mean, local_std = _rolling_moments(values, window)

    low = local_mean - options.sensitivity * local_std
    high = local_mean + options.sensitivity * local_std

    min_spread = options.min_spread * np.abs(local_mean)
    narrow = (high - low) < min_spread
    low = np.where(narrow, local_mean - min_spread / 2.0, low)
    high = np.where(narrow, local_mean + min_spread / 2.0, high)

    closed = (high - low) <= 0
    eps = _SPREAD_EPSILON * np.maximum(1.0, np.abs(local_mean))
    low = np.where(closed, local_mean - eps, low)
    high = np.where(closed, local_mean + eps, high)

    return _label_by_band(values, low, high)


def _categorize_zscore(values: np.ndarray, options: ZScoreOptions) -> np.ndarray:
    if _is_degenerate(values):
        raise NumericalError("z-score of a zero-variance sequence")
    mean = values.mean()
    std = values.std()

    z = (values - mean) / std
    return _label_by_band(z, np.float64(options.low_threshold), np.float64(options.high_threshold))


def _categorize_threshold(values: np.ndarray, options: ThresholdOptions) -> np.ndarray:
    return _label_by_band(values, np.float64(options.low_value), np.float64(options.high_value))


_STRATEGIES: Dict[CategorizationMethod, Callable[[np.ndarray, CategorizationOptions], np.ndarray]] = {
    CategorizationMethod.QUANTILE: _categorize_quantile,
    CategorizationMethod.KMEANS: _categorize_kmeans,
    CategorizationMethod.VOLATILITY: _categorize_volatility,
    CategorizationMethod.ADAPTIVE: _categorize_adaptive,
    CategorizationMethod.ZSCORE: _categorize_zscore,
    CategorizationMethod.THRESHOLD: _categorize_threshold,
}


# =============================================================================
# SECTION 3: PUBLIC API
# =============================================================================

def categorize(
    values: Union[Sequence[float], np.ndarray, pd.Series],
    method: Union[str, CategorizationMethod] = CategorizationMethod.QUANTILE,
    options: Optional[object] = None
) -> np.ndarray:
    """
    Discretize a contracting signal into regime labels.

    Args:
        values: Observation sequence (MW)
        method: Categorization strategy
        options: Typed options record, mapping of overrides, or None

    Returns:
        Integer labels in {0, 1, 2}, same length as ``values``

    Raises:
        InputError: empty or non-finite input
        ConfigurationError: unknown method or invalid options
    """
    method = coerce_method(method)
    resolved = build_options(method, options)
    arr = validate_values(values)

    try:
        labels = _STRATEGIES[method](arr, resolved)
    except NumericalError as exc:
        logger.warning(f"{method.value} categorization degenerate ({exc}); "
                       f"labelling all {arr.size} points BALANCED")
        labels = np.full(arr.size, BALANCED, dtype=int)

    return labels.astype(int)


def count_states(labels: Sequence[int], n_states: int = Config.N_STATES) -> Dict[int, int]:
    """Occurrences of every state label, including states never visited."""
    arr = np.asarray(labels, dtype=int)
    counts = np.bincount(arr, minlength=n_states) if arr.size else np.zeros(n_states, dtype=int)
    return {state: int(counts[state]) for state in range(n_states)}


__all__ = [
    'categorize',
    'count_states',
    'validate_values',
]
