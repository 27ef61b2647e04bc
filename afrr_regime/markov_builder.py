"""
Markov Model Builder
====================

Estimates the parameters of the 3-state contracting-regime HMM directly
from a labeled sequence, without iterative re-estimation.

Transition matrix (Laplace smoothing):
    A[i, j] = (count(i -> j) + 0.1) / (sum_j count(i -> j) + 0.1 * N)
    A state with no outgoing transitions gets a uniform row.

Emission matrix (value-relative bidding heuristic):
    Each observation implies an action relative to the global mean m:
        bid-up    value < 0.8 * m
        bid-down  value > 1.2 * m
        no-bid    otherwise
    B[s, k] = (count(state s, action k) + 1) / (total(s) + K)

For a negative global mean the two cut points swap, so they are ordered
before use and the action bands never overlap.

The builder also provides the fixed persistent prior model used as an
alternative starting point for Baum-Welch.

Version: 1.0.0
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Sequence

import numpy as np

from afrr_regime.categorizer import validate_values
from afrr_regime.config import Config
from afrr_regime.errors import InputError

logger = logging.getLogger(__name__)

# Persistent prior model (diagonal-dominant regimes)
PRIOR_TRANSITION = np.array([
    [0.70, 0.20, 0.10],
    [0.20, 0.60, 0.20],
    [0.10, 0.20, 0.70],
])
PRIOR_EMISSION = np.array([
    [0.80, 0.15, 0.05],
    [0.20, 0.60, 0.20],
    [0.05, 0.15, 0.80],
])
PRIOR_INITIAL = np.array([0.33, 0.34, 0.33])

# Emission symbols implied by the bidding heuristic
BID_UP, NO_BID, BID_DOWN = 0, 1, 2


# =============================================================================
# SECTION 1: MATRIX HELPERS
# =============================================================================

def normalize_rows(matrix: np.ndarray, floor: float = Config.PROBABILITY_FLOOR) -> np.ndarray:
    """Floor every entry, then rescale rows to sum to one."""
    floored = np.maximum(np.asarray(matrix, dtype=float), floor)
    return floored / floored.sum(axis=-1, keepdims=True)


def _frozen(arr: np.ndarray) -> np.ndarray:
    out = np.array(arr, dtype=float, copy=True)
    out.setflags(write=False)
    return out


def validate_labels(labels: Sequence[int], n_states: int = Config.N_STATES) -> np.ndarray:
    """
    Convert a label sequence to a non-empty int array in [0, n_states).

    Raises:
        InputError: empty, non-integer or out-of-range labels
    """
    try:
        arr = np.asarray(labels)
    except (TypeError, ValueError) as exc:
        raise InputError(f"Labels must be integers: {exc}") from None

    if arr.ndim != 1 or arr.size == 0:
        raise InputError("Labels must be a non-empty one-dimensional sequence")
    if arr.dtype.kind == 'f':
        if not np.all(np.isfinite(arr)) or not np.all(arr == np.round(arr)):
            raise InputError("Labels must be integer-valued")
    elif arr.dtype.kind not in 'iub':
        raise InputError(f"Labels must be integers, got dtype {arr.dtype}")

    arr = arr.astype(int)
    if arr.min() < 0 or arr.max() >= n_states:
        raise InputError(f"Labels must lie in [0, {n_states - 1}], "
                         f"got range [{arr.min()}, {arr.max()}]")
    return arr


# =============================================================================
# SECTION 2: MODEL PARAMETERS
# =============================================================================

@dataclass(frozen=True)
class HMMParameters:
    """
    Immutable (initial, transition, emission) triple.

    Arrays are validated on construction (shape, finiteness, row sums within
    1e-6 of one), floored so no entry is exactly zero, renormalized, and
    stored read-only.
    """
    initial: np.ndarray
    transition: np.ndarray
    emission: np.ndarray

    def __post_init__(self):
        initial = self._check(self.initial, 'initial', ndim=1)
        transition = self._check(self.transition, 'transition', ndim=2)
        emission = self._check(self.emission, 'emission', ndim=2)

        n_states = transition.shape[0]
        if transition.shape != (n_states, n_states):
            raise InputError(f"Transition matrix must be square, got {transition.shape}")
        if initial.shape != (n_states,):
            raise InputError(f"Initial distribution must have length {n_states}, "
                             f"got {initial.shape[0]}")
        if emission.shape[0] != n_states:
            raise InputError(f"Emission matrix must have {n_states} rows, "
                             f"got {emission.shape[0]}")

        object.__setattr__(self, 'initial', _frozen(normalize_rows(initial)))
        object.__setattr__(self, 'transition', _frozen(normalize_rows(transition)))
        object.__setattr__(self, 'emission', _frozen(normalize_rows(emission)))

    @staticmethod
    def _check(values: Any, name: str, ndim: int) -> np.ndarray:
        try:
            arr = np.asarray(values, dtype=float)
        except (TypeError, ValueError) as exc:
            raise InputError(f"{name} probabilities must be numeric: {exc}") from None
        if arr.ndim != ndim or arr.size == 0:
            raise InputError(f"{name} must be a non-empty {ndim}-D array, got shape {arr.shape}")
        if not np.all(np.isfinite(arr)) or np.any(arr < 0):
            raise InputError(f"{name} probabilities must be finite and non-negative")
        sums = arr.sum(axis=-1)
        if not np.allclose(sums, 1.0, atol=1e-6):
            raise InputError(f"{name} rows must sum to 1, got {np.round(sums, 6).tolist()}")
        return arr

    @property
    def n_states(self) -> int:
        return self.transition.shape[0]

    @property
    def n_symbols(self) -> int:
        return self.emission.shape[1]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'initialProbabilities': self.initial.tolist(),
            'transitionMatrix': self.transition.tolist(),
            'emissionMatrix': self.emission.tolist(),
        }


# =============================================================================
# SECTION 3: BUILDERS
# =============================================================================

def build_transition(labels: Sequence[int], n_states: int = Config.N_STATES) -> np.ndarray:
    """
    Laplace-smoothed first-order transition matrix from consecutive labels.

    Args:
        labels: State label sequence in [0, n_states)
        n_states: Number of hidden states

    Returns:
        (n_states, n_states) row-stochastic matrix with no zero entries
    """
    labels = validate_labels(labels, n_states)

    counts = np.zeros((n_states, n_states))
    if labels.size > 1:
        np.add.at(counts, (labels[:-1], labels[1:]), 1.0)

    row_sums = counts.sum(axis=1, keepdims=True)
    pseudo = Config.TRANSITION_PSEUDOCOUNT
    matrix = (counts + pseudo) / (row_sums + pseudo * n_states)

    empty_rows = row_sums[:, 0] == 0
    if np.any(empty_rows):
        logger.debug(f"States {np.flatnonzero(empty_rows).tolist()} have no outgoing "
                     f"transitions; using uniform rows")
        matrix[empty_rows] = 1.0 / n_states

    return matrix


def implied_actions(values: Sequence[float]) -> np.ndarray:
    """Bid-up / no-bid / bid-down symbol for each observation."""
    values = validate_values(values)
    mean = float(values.mean())
    lower, upper = sorted((Config.BID_UP_RATIO * mean, Config.BID_DOWN_RATIO * mean))

    actions = np.full(values.size, NO_BID, dtype=int)
    actions[values < lower] = BID_UP
    actions[values > upper] = BID_DOWN
    return actions


def build_emission_heuristic(
    values: Sequence[float],
    labels: Sequence[int],
    n_states: int = Config.N_STATES
) -> np.ndarray:
    """
    Emission matrix from value-relative implied bidding actions.

    Args:
        values: Raw observations (MW)
        labels: State label per observation
        n_states: Number of hidden states

    Returns:
        (n_states, 3) row-stochastic matrix, (count + 1) / (total + 3)
    """
    actions = implied_actions(values)
    labels = validate_labels(labels, n_states)
    if labels.size != actions.size:
        raise InputError(f"values and labels differ in length "
                         f"({actions.size} vs {labels.size})")

    n_symbols = Config.N_SYMBOLS
    counts = np.zeros((n_states, n_symbols))
    np.add.at(counts, (labels, actions), 1.0)

    pseudo = Config.EMISSION_PSEUDOCOUNT
    return (counts + pseudo) / (counts.sum(axis=1, keepdims=True) + pseudo * n_symbols)


def default_parameters() -> HMMParameters:
    """The fixed persistent prior model."""
    return HMMParameters(
        initial=PRIOR_INITIAL,
        transition=PRIOR_TRANSITION,
        emission=PRIOR_EMISSION,
    )


def heuristic_parameters(values: Sequence[float], labels: Sequence[int]) -> HMMParameters:
    """Smoothed empirical transitions, heuristic emissions, uniform start."""
    n_states = Config.N_STATES
    return HMMParameters(
        initial=np.full(n_states, 1.0 / n_states),
        transition=build_transition(labels, n_states),
        emission=build_emission_heuristic(values, labels, n_states),
    )


__all__ = [
    'HMMParameters',
    'PRIOR_TRANSITION',
    'PRIOR_EMISSION',
    'PRIOR_INITIAL',
    'normalize_rows',
    'validate_labels',
    'build_transition',
    'implied_actions',
    'build_emission_heuristic',
    'default_parameters',
    'heuristic_parameters',
]
