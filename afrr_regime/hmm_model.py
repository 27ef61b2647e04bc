"""
Discrete Hidden Markov Model: Decoding and Re-estimation
========================================================

Inference and training for the 3-state contracting-regime HMM with a
3-symbol observation alphabet (Low / Medium / High).

Mathematical Framework:
-----------------------
Let X_t be the hidden regime at time t and O_t the observed symbol.

    Transition Model: P(X_t = j | X_{t-1} = i) = A[i, j]
    Emission Model:   P(O_t = k | X_t = i)     = B[i, k]
    Initial Model:    P(X_0 = i)               = pi[i]

Viterbi (log domain):
    delta_0[s] = log pi[s] + log B[s, o_0]
    delta_t[s] = max_i (delta_{t-1}[i] + log A[i, s]) + log B[s, o_t]
    psi_t[s]   = argmax_i (...)   (first index on ties)
    Zero probabilities and symbols outside the alphabet use a 0.001 floor.

Baum-Welch (Rabiner scaling):
    alpha_t normalized by c_t,  log L = sum_t log c_t
    beta_{T-1} = 1,  beta_t = A (B[:, o_{t+1}] * beta_{t+1}) / c_{t+1}
    gamma_t = alpha_t * beta_t (renormalized)
    xi_t[i, j] = alpha_t[i] A[i, j] B[j, o_{t+1}] beta_{t+1}[j] / c_{t+1}

    M-step:
        pi      = gamma_0
        A[i, j] = sum_t xi_t[i, j] / sum_{t<T-1} gamma_t[i]
        B[i, k] = sum_t gamma_t[i] 1[o_t = k] / sum_t gamma_t[i]
    States with no posterior mass keep their rows; every row is floored
    at 1e-6 and renormalized.

Continuous or multi-dimensional observations are mapped onto the alphabet
by a ThresholdDiscretizer (component mean, clipped to [0, 1], binned at
0.33 / 0.67).

References:
    Rabiner, L.R. (1989). "A Tutorial on Hidden Markov Models and Selected
    Applications in Speech Recognition." Proceedings of the IEEE 77(2).
    Viterbi, A.J. (1967). "Error Bounds for Convolutional Codes."

Version: 1.0.0
"""

from __future__ import annotations

import logging
import time
import warnings
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Optional, Sequence, Tuple

import numpy as np

from afrr_regime.config import Config
from afrr_regime.errors import ConfigurationError, ConvergenceWarning, InputError
from afrr_regime.markov_builder import HMMParameters, normalize_rows

logger = logging.getLogger(__name__)


# =============================================================================
# SECTION 1: DATA STRUCTURES
# =============================================================================

class TrainingStatus(Enum):
    """Terminal state of a Baum-Welch run."""
    CONVERGED = "converged"
    MAX_ITERATIONS = "max_iterations"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class ViterbiResult:
    """Most likely hidden-state path and its joint log-probability."""
    path: np.ndarray
    log_probability: float

    def __len__(self) -> int:
        return len(self.path)


@dataclass(frozen=True)
class ForwardBackwardResult:
    """Scaled forward/backward variables of one observation sequence."""
    alpha: np.ndarray       # (T, N), rows sum to 1
    beta: np.ndarray        # (T, N), scaled by c_{t+1}
    scale: np.ndarray       # (T,), c_t
    log_likelihood: float


@dataclass(frozen=True)
class TrainingResult:
    """Outcome of Baum-Welch re-estimation."""
    parameters: HMMParameters
    status: TrainingStatus
    iterations: int
    final_log_likelihood: float
    history: Tuple[float, ...] = field(default_factory=tuple)

    @property
    def converged(self) -> bool:
        return self.status is TrainingStatus.CONVERGED

    def to_dict(self) -> Dict[str, Any]:
        return {
            'status': self.status.value,
            'converged': self.converged,
            'iterations': self.iterations,
            'finalLogLikelihood': self.final_log_likelihood,
            'history': list(self.history),
        }


# =============================================================================
# SECTION 2: OBSERVATION ALPHABET
# =============================================================================

@dataclass(frozen=True)
class ThresholdDiscretizer:
    """
    Map continuous (optionally multi-dimensional) observations to symbols.

    Each time step is averaged across its components, clipped to [0, 1]
    and binned by ``edges``; with the default edges (0, 0.33, 0.67, 1)
    the result is 0 (Low), 1 (Medium) or 2 (High).
    """
    edges: Tuple[float, ...] = Config.DISCRETIZER_EDGES

    def __post_init__(self):
        edges = tuple(float(e) for e in self.edges)
        if len(edges) < 2 or any(b <= a for a, b in zip(edges, edges[1:])):
            raise InputError(f"Discretizer edges must be strictly increasing, got {edges}")
        object.__setattr__(self, 'edges', edges)

    @property
    def n_symbols(self) -> int:
        return len(self.edges) - 1

    def __call__(self, observations: Any) -> np.ndarray:
        try:
            arr = np.asarray(observations, dtype=float)
        except (TypeError, ValueError) as exc:
            raise InputError(f"Observations must be numeric: {exc}") from None
        if arr.ndim == 2:
            arr = arr.mean(axis=1)
        elif arr.ndim != 1:
            raise InputError(f"Observations must be 1-D or 2-D, got shape {arr.shape}")
        if not np.all(np.isfinite(arr)):
            raise InputError("Observations contain NaN/Inf values")

        clipped = np.clip(arr, 0.0, 1.0)
        return np.digitize(clipped, self.edges[1:-1]).astype(int)


def to_symbols(observations: Any, discretizer: Optional[ThresholdDiscretizer] = None) -> np.ndarray:
    """
    Integer 1-D observations are symbols already; float or 2-D
    observations go through the discretizer.
    """
    try:
        arr = np.asarray(observations)
    except (TypeError, ValueError) as exc:
        raise InputError(f"Observations must be numeric: {exc}") from None

    if arr.ndim == 1 and arr.dtype.kind in 'iub':
        return arr.astype(int)
    if arr.size == 0:
        return np.zeros(0, dtype=int)
    if arr.dtype.kind in 'fiub' and arr.ndim in (1, 2):
        return (discretizer or ThresholdDiscretizer())(arr)
    raise InputError(f"Unsupported observation array: dtype {arr.dtype}, shape {arr.shape}")


def _floored_log(probabilities: np.ndarray) -> np.ndarray:
    p = np.asarray(probabilities, dtype=float)
    return np.log(np.where(p > 0, p, Config.EMISSION_FLOOR))


def _check_model(transition: Any, emission: Any, initial: Any) -> Tuple[np.ndarray, ...]:
    A = np.asarray(transition, dtype=float)
    B = np.asarray(emission, dtype=float)
    n_states = A.shape[0] if A.ndim == 2 else -1
    if A.ndim != 2 or A.shape != (n_states, n_states):
        raise InputError(f"Transition matrix must be square, got shape {A.shape}")
    if B.ndim != 2 or B.shape[0] != n_states:
        raise InputError(f"Emission matrix must have {n_states} rows, got shape {B.shape}")

    pi = np.full(n_states, 1.0 / n_states) if initial is None else np.asarray(initial, dtype=float)
    if pi.shape != (n_states,):
        raise InputError(f"Initial distribution must have length {n_states}, got {pi.shape}")
    for name, arr in (('transition', A), ('emission', B), ('initial', pi)):
        if not np.all(np.isfinite(arr)) or np.any(arr < 0):
            raise InputError(f"{name} probabilities must be finite and non-negative")
    return A, B, pi


# =============================================================================
# SECTION 3: VITERBI DECODER
# =============================================================================

def viterbi(
    observations: Any,
    transition: Any,
    emission: Any,
    initial: Any = None,
    discretizer: Optional[ThresholdDiscretizer] = None
) -> ViterbiResult:
    """
    Most likely hidden-state path (log-domain Viterbi).

    Args:
        observations: Symbol sequence (int) or continuous observations
        transition: (N, N) transition matrix
        emission: (N, K) emission matrix
        initial: Initial distribution (default: uniform 1/N)
        discretizer: Mapping for continuous observations

    Returns:
        ViterbiResult with a path of the same length as ``observations``
    """
    A, B, pi = _check_model(transition, emission, initial)
    symbols = to_symbols(observations, discretizer)
    T = symbols.size
    n_states, n_symbols = B.shape

    if T == 0:
        return ViterbiResult(path=np.zeros(0, dtype=int), log_probability=0.0)

    log_A = _floored_log(A)
    log_pi = _floored_log(pi)
    log_B = _floored_log(B)
    floor_column = np.full(n_states, np.log(Config.EMISSION_FLOOR))

    def emission_column(symbol: int) -> np.ndarray:
        if 0 <= symbol < n_symbols:
            return log_B[:, symbol]
        return floor_column

    delta = np.zeros((T, n_states))
    psi = np.zeros((T, n_states), dtype=int)
    delta[0] = log_pi + emission_column(symbols[0])

    states = np.arange(n_states)
    for t in range(1, T):
        scores = delta[t - 1][:, None] + log_A          # scores[i, s]
        psi[t] = np.argmax(scores, axis=0)
        delta[t] = scores[psi[t], states] + emission_column(symbols[t])

    path = np.zeros(T, dtype=int)
    path[-1] = int(np.argmax(delta[-1]))
    for t in range(T - 2, -1, -1):
        path[t] = psi[t + 1, path[t + 1]]

    path.setflags(write=False)
    return ViterbiResult(path=path, log_probability=float(delta[-1, path[-1]]))


def decode(
    observations: Any,
    transition: Any,
    emission: Any,
    initial: Any = None,
    discretizer: Optional[ThresholdDiscretizer] = None
) -> np.ndarray:
    """Viterbi path only."""
    return viterbi(observations, transition, emission, initial, discretizer).path


# =============================================================================
# SECTION 4: FORWARD-BACKWARD
# =============================================================================

def _training_symbols(observations: Any, n_symbols: int,
                      discretizer: Optional[ThresholdDiscretizer]) -> np.ndarray:
    symbols = to_symbols(observations, discretizer)
    if symbols.size == 0:
        raise InputError("Cannot evaluate an empty observation sequence")
    if symbols.min() < 0 or symbols.max() >= n_symbols:
        raise InputError(f"Observation symbols must lie in [0, {n_symbols - 1}]")
    return symbols


def _forward(params: HMMParameters, B_obs: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """
    Scaled forward recursion.

    Args:
        B_obs: Emission probability of each observed symbol (T x N)

    Returns:
        alpha: Normalized forward variables (T x N)
        scale: Scaling factors c_t
    """
    T, n_states = B_obs.shape
    alpha = np.zeros((T, n_states))
    scale = np.zeros(T)

    alpha[0] = params.initial * B_obs[0]
    scale[0] = alpha[0].sum()
    if scale[0] > 0:
        alpha[0] /= scale[0]

    for t in range(1, T):
        alpha[t] = B_obs[t] * (alpha[t - 1] @ params.transition)
        scale[t] = alpha[t].sum()
        if scale[t] > 0:
            alpha[t] /= scale[t]

    return alpha, scale


def _backward(params: HMMParameters, B_obs: np.ndarray, scale: np.ndarray) -> np.ndarray:
    """Scaled backward recursion using the forward scaling factors."""
    T, n_states = B_obs.shape
    beta = np.zeros((T, n_states))
    beta[-1] = 1.0

    for t in range(T - 2, -1, -1):
        beta[t] = params.transition @ (B_obs[t + 1] * beta[t + 1])
        if scale[t + 1] > 0:
            beta[t] /= scale[t + 1]

    return beta


def _log_likelihood_from_scale(scale: np.ndarray) -> float:
    return float(np.sum(np.log(np.maximum(scale, 1e-300))))


def forward_backward(
    observations: Any,
    parameters: HMMParameters,
    discretizer: Optional[ThresholdDiscretizer] = None
) -> ForwardBackwardResult:
    """Scaled forward and backward variables for diagnostics."""
    symbols = _training_symbols(observations, parameters.n_symbols, discretizer)
    B_obs = parameters.emission[:, symbols].T
    alpha, scale = _forward(parameters, B_obs)
    beta = _backward(parameters, B_obs, scale)
    return ForwardBackwardResult(
        alpha=alpha,
        beta=beta,
        scale=scale,
        log_likelihood=_log_likelihood_from_scale(scale),
    )


def log_likelihood(
    observations: Any,
    parameters: HMMParameters,
    discretizer: Optional[ThresholdDiscretizer] = None
) -> float:
    """log P(O | model) from the forward scaling factors."""
    symbols = _training_symbols(observations, parameters.n_symbols, discretizer)
    _, scale = _forward(parameters, parameters.emission[:, symbols].T)
    return _log_likelihood_from_scale(scale)


def posterior_probabilities(
    observations: Any,
    parameters: HMMParameters,
    discretizer: Optional[ThresholdDiscretizer] = None
) -> np.ndarray:
    """Posterior state marginals gamma (T x N)."""
    result = forward_backward(observations, parameters, discretizer)
    return _normalize_posterior(result.alpha * result.beta)


def _normalize_posterior(gamma: np.ndarray) -> np.ndarray:
    totals = gamma.sum(axis=1, keepdims=True)
    return gamma / np.where(totals == 0, 1.0, totals)


# =============================================================================
# SECTION 5: BAUM-WELCH TRAINER
# =============================================================================

class BaumWelchTrainer:
    """
    Expectation-maximization re-estimation of a discrete HMM.

    The trainer only holds configuration; ``fit`` returns a new immutable
    TrainingResult and never mutates its inputs.

    Lifecycle of one run:
        Initialized -> Training(iteration) -> Converged
                                           -> MaxIterations
                                           -> Cancelled
    """

    def __init__(
        self,
        max_iterations: int = Config.EM_MAX_ITERATIONS,
        tolerance: float = Config.EM_TOLERANCE,
        discretizer: Optional[ThresholdDiscretizer] = None
    ):
        """
        Args:
            max_iterations: Upper bound on EM iterations
            tolerance: Convergence threshold on |delta log-likelihood|
            discretizer: Mapping for continuous observations
        """
        if max_iterations < 1:
            raise ConfigurationError("max_iterations must be >= 1")
        if tolerance <= 0:
            raise ConfigurationError("tolerance must be positive")
        self.max_iterations = max_iterations
        self.tolerance = tolerance
        self.discretizer = discretizer or ThresholdDiscretizer()

    def _e_step(
        self,
        symbols: np.ndarray,
        params: HMMParameters
    ) -> Tuple[np.ndarray, np.ndarray, float]:
        """
        E-step: posterior state and transition marginals.

        Returns:
            gamma: P(X_t = i | O) (T x N)
            xi: P(X_t = i, X_{t+1} = j | O) (T-1 x N x N)
            log_likelihood: log P(O | params)
        """
        B_obs = params.emission[:, symbols].T
        alpha, scale = _forward(params, B_obs)
        beta = _backward(params, B_obs, scale)

        gamma = _normalize_posterior(alpha * beta)

        T = symbols.size
        n_states = params.n_states
        xi = np.zeros((max(T - 1, 0), n_states, n_states))
        for t in range(T - 1):
            xi[t] = (alpha[t][:, None] * params.transition
                     * (B_obs[t + 1] * beta[t + 1])[None, :])
            if scale[t + 1] > 0:
                xi[t] /= scale[t + 1]
            total = xi[t].sum()
            if total > 0:
                xi[t] /= total

        return gamma, xi, _log_likelihood_from_scale(scale)

    def _m_step(
        self,
        symbols: np.ndarray,
        params: HMMParameters,
        gamma: np.ndarray,
        xi: np.ndarray
    ) -> HMMParameters:
        """M-step: re-estimate (pi, A, B); unvisited states keep their rows."""
        n_states, n_symbols = params.emission.shape

        initial = gamma[0]

        transition = params.transition.copy()
        trans_denom = gamma[:-1].sum(axis=0)
        visited = trans_denom > 0
        if xi.shape[0] > 0 and np.any(visited):
            transition[visited] = xi.sum(axis=0)[visited] / trans_denom[visited, None]

        emission = params.emission.copy()
        emis_denom = gamma.sum(axis=0)
        weighted = np.zeros((n_states, n_symbols))
        for k in range(n_symbols):
            weighted[:, k] = gamma[symbols == k].sum(axis=0)
        occupied = emis_denom > 0
        emission[occupied] = weighted[occupied] / emis_denom[occupied, None]

        return HMMParameters(
            initial=normalize_rows(initial),
            transition=normalize_rows(transition),
            emission=normalize_rows(emission),
        )

    def fit(
        self,
        observations: Any,
        initial_parameters: HMMParameters,
        should_stop: Optional[Callable[[], bool]] = None,
        timeout_seconds: Optional[float] = None
    ) -> TrainingResult:
        """
        Re-estimate model parameters from one observation sequence.

        Args:
            observations: Symbol sequence (int) or continuous observations
            initial_parameters: Starting model
            should_stop: Polled before every iteration; True cancels the run
            timeout_seconds: Wall-clock budget; exceeding it cancels the run

        Returns:
            TrainingResult with the last re-estimated parameters
        """
        symbols = _training_symbols(observations, initial_parameters.n_symbols, self.discretizer)
        started = time.monotonic()

        params = initial_parameters
        history = []
        prev_ll = None
        iterations = 0
        status = TrainingStatus.MAX_ITERATIONS

        for iteration in range(self.max_iterations):
            if should_stop is not None and should_stop():
                logger.info(f"Baum-Welch cancelled before iteration {iteration + 1}")
                status = TrainingStatus.CANCELLED
                break
            if timeout_seconds is not None and time.monotonic() - started > timeout_seconds:
                logger.info(f"Baum-Welch timed out after {iteration} iterations")
                status = TrainingStatus.CANCELLED
                break

            gamma, xi, ll = self._e_step(symbols, params)
            params = self._m_step(symbols, params, gamma, xi)
            history.append(ll)
            iterations = iteration + 1
            logger.debug(f"EM iteration {iterations}: log-likelihood={ll:.6f}")

            if prev_ll is not None and abs(ll - prev_ll) < self.tolerance:
                status = TrainingStatus.CONVERGED
                break
            prev_ll = ll

        # Likelihood of the returned model; history holds the pre-M-step values
        final_ll = log_likelihood(symbols, params)

        if status is TrainingStatus.MAX_ITERATIONS:
            message = (f"Baum-Welch did not converge within {self.max_iterations} iterations "
                       f"(tolerance {self.tolerance:g})")
            logger.warning(message)
            warnings.warn(message, ConvergenceWarning, stacklevel=2)
        elif status is TrainingStatus.CONVERGED:
            logger.info(f"Baum-Welch converged after {iterations} iterations "
                        f"(log-likelihood {final_ll:.4f})")

        return TrainingResult(
            parameters=params,
            status=status,
            iterations=iterations,
            final_log_likelihood=float(final_ll),
            history=tuple(float(v) for v in history),
        )


__all__ = [
    'TrainingStatus',
    'ViterbiResult',
    'ForwardBackwardResult',
    'TrainingResult',
    'ThresholdDiscretizer',
    'to_symbols',
    'viterbi',
    'decode',
    'forward_backward',
    'log_likelihood',
    'posterior_probabilities',
    'BaumWelchTrainer',
]
