"""
Capacity Revenue Backtesting Engine
===================================

Evaluates regime-conditioned aFRR capacity bidding by decoding the hidden
contracting regime of each settlement period and crediting the clearing
price of the capacity product that regime clears.

Revenue Model:
    UNDERCONTRACTED  -> up-capacity cleared,   + up price   (EUR/MW)
    OVERCONTRACTED   -> down-capacity cleared, + down price (EUR/MW)
    BALANCED         -> nothing cleared
    total = up + down

Backtest Modes:
    1. Full window      Decode and value the whole series
    2. Sliding windows  Fixed-size windows, step = max(1, floor(w * (1 - overlap)))
    3. Monte Carlo      Windows at randomly drawn start indices, run on a
                        thread pool and ordered by trial index

Statistics:
    - Confidence summary per metric (total/up/down revenue, revenue per
      period): mean, population std, min, max and order-statistic
      percentiles sorted[floor(level * (n - 1))]
    - Daily risk metrics of the full window (see risk_analytics.py)
    - State-transition and market-condition breakdowns per window

Version: 1.0.0
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeoutError
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd

from afrr_regime.config import (
    DEFAULT_BACKTEST,
    DEFAULT_STATE_ACTIONS,
    BacktestConfig,
    ClearingAction,
    Config,
    ContractingRegime,
    to_camel_dict,
)
from afrr_regime.errors import ConfigurationError, InputError
from afrr_regime.hmm_model import ThresholdDiscretizer, TrainingResult, to_symbols, viterbi
from afrr_regime.markov_builder import HMMParameters
from afrr_regime.risk_analytics import RiskMetrics, risk_metrics

logger = logging.getLogger(__name__)

STATUS_COLUMN = 'system_forecast_status'


# =============================================================================
# SECTION 1: DATA STRUCTURES
# =============================================================================

@dataclass(frozen=True)
class RevenueBreakdown:
    """Capacity revenue earned over one window."""
    up_revenue: float
    down_revenue: float
    total_revenue: float
    up_cleared_count: int
    down_cleared_count: int
    total_cleared_count: int
    average_revenue_per_period: float
    period_revenue: np.ndarray = field(repr=False)

    def to_dict(self) -> Dict[str, Any]:
        return to_camel_dict(self, exclude=('period_revenue',))


@dataclass(frozen=True)
class StateTransitionStats:
    """Empirical regime occupancy and switching within a decoded path."""
    state_counts: Dict[int, int]
    transition_counts: Dict[Tuple[int, int], int]
    transition_probabilities: Dict[Tuple[int, int], float]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'stateCounts': {str(k): v for k, v in self.state_counts.items()},
            'transitions': {f"{i}->{j}": v for (i, j), v in self.transition_counts.items()},
            'transitionProbabilities': {
                f"{i}->{j}": v for (i, j), v in self.transition_probabilities.items()
            },
        }


@dataclass(frozen=True)
class ConditionStats:
    """Clearing outcome for the periods sharing one forecast status."""
    total: int
    cleared: int
    revenue: float
    clearing_rate: float
    average_revenue: float

    def to_dict(self) -> Dict[str, Any]:
        return to_camel_dict(self)


@dataclass(frozen=True)
class WindowResult:
    """Decode + revenue evaluation of observations[start:end]."""
    start: int
    end: int
    periods: int
    path: np.ndarray = field(repr=False)
    log_probability: float
    revenue: RevenueBreakdown
    transitions: StateTransitionStats
    market_conditions: Optional[Dict[str, ConditionStats]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'startIndex': self.start,
            'endIndex': self.end,
            'periods': self.periods,
            'viterbiPath': self.path.tolist(),
            'logProbability': self.log_probability,
            'revenue': self.revenue.to_dict(),
            'stateTransitions': self.transitions.to_dict(),
            'marketConditions': (
                {k: v.to_dict() for k, v in self.market_conditions.items()}
                if self.market_conditions is not None else None
            ),
        }


@dataclass(frozen=True)
class MonteCarloEnsemble:
    """Randomized window results, ordered by trial index."""
    results: Tuple[WindowResult, ...]
    start_indices: Tuple[int, ...]
    requested: int
    window_size: int
    cancelled: bool = False

    @property
    def completed(self) -> int:
        return len(self.results)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'requested': self.requested,
            'completed': self.completed,
            'windowSize': self.window_size,
            'cancelled': self.cancelled,
            'startIndices': list(self.start_indices),
            'results': [r.to_dict() for r in self.results],
        }


@dataclass(frozen=True)
class MetricSummary:
    """Distribution of one revenue metric across an ensemble."""
    mean: float
    std: float
    min: float
    max: float
    percentiles: Dict[float, float]
    values: Tuple[float, ...] = field(default_factory=tuple, repr=False)

    def quantile(self, level: float) -> float:
        """Order statistic at ``level``, whether or not it was configured."""
        if level in self.percentiles:
            return self.percentiles[level]
        return order_statistic(np.asarray(self.values), level)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'mean': self.mean,
            'std': self.std,
            'min': self.min,
            'max': self.max,
            'percentiles': {percentile_key(k): v for k, v in self.percentiles.items()},
        }


@dataclass(frozen=True)
class ConfidenceSummary:
    """Per-metric confidence intervals of an ensemble."""
    total_revenue: MetricSummary
    up_revenue: MetricSummary
    down_revenue: MetricSummary
    average_revenue_per_period: MetricSummary
    levels: Tuple[float, ...]
    n_samples: int

    def metrics(self) -> Dict[str, MetricSummary]:
        return {
            'totalRevenue': self.total_revenue,
            'upRevenue': self.up_revenue,
            'downRevenue': self.down_revenue,
            'averageRevenuePerPeriod': self.average_revenue_per_period,
        }

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {k: v.to_dict() for k, v in self.metrics().items()}
        out['levels'] = list(self.levels)
        out['nSamples'] = self.n_samples
        return out


@dataclass(frozen=True)
class BacktestSummary:
    """Rounded headline figures for reporting."""
    expected_total_revenue: float
    total_revenue_band: Tuple[float, float]          # p5 .. p95
    total_revenue_range: Tuple[float, float]
    total_revenue_volatility: float
    expected_revenue_per_period: float
    revenue_per_period_band: Tuple[float, float]
    total_periods: int
    cleared_periods: int
    clearing_rate: float                             # percent
    log_likelihood: float
    converged: Optional[bool]
    n_simulations: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            'totalRevenue': {
                'expected': self.expected_total_revenue,
                'confidence90': list(self.total_revenue_band),
                'range': list(self.total_revenue_range),
                'volatility': self.total_revenue_volatility,
            },
            'averageRevenuePerPeriod': {
                'expected': self.expected_revenue_per_period,
                'confidence90': list(self.revenue_per_period_band),
            },
            'capacityClearing': {
                'totalPeriods': self.total_periods,
                'clearedPeriods': self.cleared_periods,
                'clearingRate': self.clearing_rate,
            },
            'modelPerformance': {
                'logLikelihood': self.log_likelihood,
                'converged': self.converged,
            },
            'nSimulations': self.n_simulations,
        }


@dataclass(frozen=True)
class BacktestReport:
    """Complete output of a comprehensive backtest."""
    full_window: WindowResult
    sliding_windows: Tuple[WindowResult, ...]
    monte_carlo: MonteCarloEnsemble
    confidence: ConfidenceSummary
    risk: RiskMetrics
    summary: BacktestSummary
    success: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            'success': self.success,
            'fullWindow': self.full_window.to_dict(),
            'slidingWindows': [w.to_dict() for w in self.sliding_windows],
            'monteCarloEnsemble': self.monte_carlo.to_dict(),
            'confidenceSummary': self.confidence.to_dict(),
            'riskMetrics': self.risk.to_dict(),
            'summary': self.summary.to_dict(),
        }


# =============================================================================
# SECTION 2: HELPER FUNCTIONS
# =============================================================================

def percentile_key(level: float) -> str:
    """0.05 -> 'p5', 0.025 -> 'p2.5'."""
    return f"p{round(level * 100, 6):g}"


def order_statistic(values: np.ndarray, level: float) -> float:
    """sorted(values)[floor(level * (n - 1))]."""
    ordered = np.sort(values)
    return float(ordered[int(np.floor(level * (ordered.size - 1)))])


def coerce_prices(prices: Any, expected_length: Optional[int] = None) -> np.ndarray:
    """
    Normalize a price table to a read-only (T, 2) [up, down] array.

    Accepts an array-like of shape (T, 2) or a DataFrame with
    up_price/down_price (or the aFRR marginal-price column names).
    """
    if isinstance(prices, pd.DataFrame):
        up_col = next((c for c in Config.UP_PRICE_COLUMNS if c in prices.columns), None)
        down_col = next((c for c in Config.DOWN_PRICE_COLUMNS if c in prices.columns), None)
        if up_col is None or down_col is None:
            raise InputError(f"Price table needs columns {Config.UP_PRICE_COLUMNS[0]!r} and "
                             f"{Config.DOWN_PRICE_COLUMNS[0]!r}, got {list(prices.columns)}")
        arr = prices[[up_col, down_col]].to_numpy(dtype=float)
    else:
        try:
            arr = np.asarray(prices, dtype=float)
        except (TypeError, ValueError) as exc:
            raise InputError(f"Prices must be numeric: {exc}") from None

    if arr.ndim != 2 or arr.shape[1] != 2:
        raise InputError(f"Prices must have shape (T, 2) [up, down], got {arr.shape}")
    if not np.all(np.isfinite(arr)):
        raise InputError("Prices contain NaN/Inf values")
    if expected_length is not None and arr.shape[0] != expected_length:
        raise InputError(f"Prices and observations differ in length "
                         f"({arr.shape[0]} vs {expected_length})")

    arr = np.array(arr, copy=True)
    arr.setflags(write=False)
    return arr


def coerce_statuses(statuses: Any, expected_length: int) -> Optional[Tuple[str, ...]]:
    """Per-period forecast status names (lowercase regime names)."""
    if statuses is None:
        return None

    normalized = []
    for status in list(statuses):
        if isinstance(status, (int, np.integer)) and not isinstance(status, bool):
            try:
                normalized.append(ContractingRegime(int(status)).name.lower())
            except ValueError:
                raise InputError(f"Unknown forecast status: {status!r}") from None
        else:
            normalized.append(str(status).lower())

    if len(normalized) != expected_length:
        raise InputError(f"Statuses and observations differ in length "
                         f"({len(normalized)} vs {expected_length})")
    return tuple(normalized)


def coerce_state_actions(
    state_actions: Optional[Mapping[int, Union[str, ClearingAction]]]
) -> Dict[int, ClearingAction]:
    """Validate a regime -> cleared product mapping."""
    if state_actions is None:
        return dict(DEFAULT_STATE_ACTIONS)

    resolved = {}
    for state, action in state_actions.items():
        try:
            resolved[int(state)] = action if isinstance(action, ClearingAction) else ClearingAction(str(action).lower())
        except ValueError:
            raise ConfigurationError(f"Unknown clearing action for state {state}: {action!r}") from None
    return resolved


def _validate_window(start: int, end: int, length: int) -> None:
    if not 0 <= start < end <= length:
        raise InputError(f"Invalid window [{start}, {end}) for a series of length {length}")


# =============================================================================
# SECTION 3: WINDOW EVALUATION
# =============================================================================

def compute_revenue(
    path: np.ndarray,
    prices: np.ndarray,
    state_actions: Mapping[int, ClearingAction]
) -> RevenueBreakdown:
    """Credit the cleared product's price for every decoded period."""
    up_states = [s for s, a in state_actions.items() if a is ClearingAction.UP_CAPACITY]
    down_states = [s for s, a in state_actions.items() if a is ClearingAction.DOWN_CAPACITY]
    up_mask = np.isin(path, up_states)
    down_mask = np.isin(path, down_states)

    period_revenue = np.where(up_mask, prices[:, 0], 0.0) + np.where(down_mask, prices[:, 1], 0.0)
    period_revenue.setflags(write=False)

    up_revenue = float(prices[up_mask, 0].sum())
    down_revenue = float(prices[down_mask, 1].sum())
    total = up_revenue + down_revenue
    periods = len(path)

    return RevenueBreakdown(
        up_revenue=up_revenue,
        down_revenue=down_revenue,
        total_revenue=total,
        up_cleared_count=int(up_mask.sum()),
        down_cleared_count=int(down_mask.sum()),
        total_cleared_count=int(up_mask.sum() + down_mask.sum()),
        average_revenue_per_period=total / periods if periods > 0 else 0.0,
        period_revenue=period_revenue,
    )


def analyze_state_transitions(path: Sequence[int], n_states: int = Config.N_STATES) -> StateTransitionStats:
    """State counts, i->j counts and count(i->j) / count(i) along a path."""
    arr = np.asarray(path, dtype=int)
    counts = np.bincount(arr, minlength=n_states) if arr.size else np.zeros(n_states, dtype=int)
    state_counts = {s: int(counts[s]) for s in range(len(counts))}

    transition_counts: Dict[Tuple[int, int], int] = {}
    for i, j in zip(arr[:-1], arr[1:]):
        key = (int(i), int(j))
        transition_counts[key] = transition_counts.get(key, 0) + 1

    probabilities = {
        (i, j): (count / state_counts[i] if state_counts.get(i, 0) > 0 else 0.0)
        for (i, j), count in sorted(transition_counts.items())
    }
    return StateTransitionStats(
        state_counts=state_counts,
        transition_counts=dict(sorted(transition_counts.items())),
        transition_probabilities=probabilities,
    )


def analyze_market_conditions(
    statuses: Sequence[str],
    path: np.ndarray,
    period_revenue: np.ndarray,
    state_actions: Mapping[int, ClearingAction]
) -> Dict[str, ConditionStats]:
    """Clearing rate and revenue per forecast status."""
    cleared_states = [s for s, a in state_actions.items() if a is not ClearingAction.NONE]
    cleared = np.isin(path, cleared_states)
    status_arr = np.asarray(statuses, dtype=object)

    names = [r.name.lower() for r in ContractingRegime]
    names += sorted(set(statuses) - set(names))

    conditions = {}
    for name in names:
        mask = status_arr == name
        total = int(mask.sum())
        n_cleared = int((mask & cleared).sum())
        revenue = float(period_revenue[mask & cleared].sum())
        conditions[name] = ConditionStats(
            total=total,
            cleared=n_cleared,
            revenue=revenue,
            clearing_rate=n_cleared / total if total > 0 else 0.0,
            average_revenue=revenue / n_cleared if n_cleared > 0 else 0.0,
        )
    return conditions


def _evaluate_window(
    model: HMMParameters,
    symbols: np.ndarray,
    prices: np.ndarray,
    start: int,
    end: int,
    state_actions: Mapping[int, ClearingAction],
    statuses: Optional[Tuple[str, ...]]
) -> WindowResult:
    decoded = viterbi(symbols[start:end], model.transition, model.emission, model.initial)
    revenue = compute_revenue(decoded.path, prices[start:end], state_actions)

    conditions = None
    if statuses is not None:
        conditions = analyze_market_conditions(
            statuses[start:end], decoded.path, revenue.period_revenue, state_actions
        )

    return WindowResult(
        start=start,
        end=end,
        periods=end - start,
        path=decoded.path,
        log_probability=decoded.log_probability,
        revenue=revenue,
        transitions=analyze_state_transitions(decoded.path, model.n_states),
        market_conditions=conditions,
    )


def _prepare_inputs(
    observations: Any,
    prices: Any,
    statuses: Any,
    discretizer: Optional[ThresholdDiscretizer]
) -> Tuple[np.ndarray, np.ndarray, Optional[Tuple[str, ...]]]:
    symbols = to_symbols(observations, discretizer)
    if symbols.size == 0:
        raise InputError("Cannot backtest an empty observation sequence")
    price_arr = coerce_prices(prices, symbols.size)
    if statuses is None and isinstance(prices, pd.DataFrame) and STATUS_COLUMN in prices.columns:
        statuses = prices[STATUS_COLUMN]
    return symbols, price_arr, coerce_statuses(statuses, symbols.size)


def run_window(
    model: HMMParameters,
    observations: Any,
    prices: Any,
    start: int = 0,
    end: Optional[int] = None,
    state_actions: Optional[Mapping[int, Union[str, ClearingAction]]] = None,
    statuses: Any = None,
    discretizer: Optional[ThresholdDiscretizer] = None
) -> WindowResult:
    """
    Decode observations[start:end] and value the decoded regimes.

    Args:
        model: HMM parameters used for decoding
        observations: Full observation series (symbols or continuous)
        prices: (T, 2) [up, down] prices or a price DataFrame
        start: First period (inclusive)
        end: Last period (exclusive), default: series end
        state_actions: Regime -> cleared product override
        statuses: Optional per-period forecast statuses

    Returns:
        WindowResult
    """
    symbols, price_arr, status_tuple = _prepare_inputs(observations, prices, statuses, discretizer)
    end = symbols.size if end is None else end
    _validate_window(start, end, symbols.size)
    return _evaluate_window(model, symbols, price_arr, start, end,
                            coerce_state_actions(state_actions), status_tuple)


def window_starts(length: int, window_size: int, overlap_fraction: float) -> List[int]:
    """Start indices of full windows: step = max(1, floor(w * (1 - overlap)))."""
    if window_size < 1:
        raise InputError("window_size must be >= 1")
    if not 0.0 <= overlap_fraction < 1.0:
        raise ConfigurationError(f"overlap_fraction must be in [0, 1), got {overlap_fraction}")
    step = max(1, int(np.floor(window_size * (1.0 - overlap_fraction))))
    return list(range(0, length - window_size + 1, step))


def run_sliding_windows(
    model: HMMParameters,
    observations: Any,
    prices: Any,
    window_size: int = Config.WINDOW_SIZE,
    overlap_fraction: float = Config.OVERLAP_FRACTION,
    state_actions: Optional[Mapping[int, Union[str, ClearingAction]]] = None,
    statuses: Any = None,
    discretizer: Optional[ThresholdDiscretizer] = None
) -> Tuple[WindowResult, ...]:
    """Evaluate every full window [s, s + window_size) of the series."""
    symbols, price_arr, status_tuple = _prepare_inputs(observations, prices, statuses, discretizer)
    if window_size > symbols.size:
        raise InputError(f"Window size {window_size} exceeds series length {symbols.size}")

    actions = coerce_state_actions(state_actions)
    results = tuple(
        _evaluate_window(model, symbols, price_arr, s, s + window_size, actions, status_tuple)
        for s in window_starts(symbols.size, window_size, overlap_fraction)
    )
    logger.info(f"Completed {len(results)} sliding backtest windows "
                f"(window={window_size}, overlap={overlap_fraction})")
    return results


# =============================================================================
# SECTION 4: MONTE CARLO
# =============================================================================

def run_monte_carlo(
    model: HMMParameters,
    observations: Any,
    prices: Any,
    num_simulations: int = Config.N_SIMULATIONS,
    window_size: int = Config.WINDOW_SIZE,
    rng: Optional[np.random.Generator] = None,
    max_workers: Optional[int] = None,
    should_stop: Optional[Callable[[], bool]] = None,
    timeout_seconds: Optional[float] = None,
    state_actions: Optional[Mapping[int, Union[str, ClearingAction]]] = None,
    statuses: Any = None,
    discretizer: Optional[ThresholdDiscretizer] = None
) -> MonteCarloEnsemble:
    """
    Backtest randomly placed windows.

    All start indices are drawn up front from ``rng`` (uniform on
    [0, T - window_size]); trials then run concurrently and are stored by
    trial index, so equal seeds give equal ensembles.

    Args:
        model: HMM parameters used for decoding
        observations: Full observation series
        prices: (T, 2) [up, down] prices or a price DataFrame
        num_simulations: Number of random windows
        window_size: Periods per window
        rng: Seeded generator (default: default_rng(42))
        max_workers: Thread pool size (default: executor default)
        should_stop: Polled before the first trial and after each collected
            trial; True cancels the rest
        timeout_seconds: Wall-clock budget for the whole ensemble

    Returns:
        MonteCarloEnsemble; on cancellation only the completed prefix of
        trials is kept and ``cancelled`` is set
    """
    if num_simulations < 1:
        raise InputError("num_simulations must be >= 1")
    symbols, price_arr, status_tuple = _prepare_inputs(observations, prices, statuses, discretizer)
    if window_size < 1 or window_size > symbols.size:
        raise InputError(f"Window size {window_size} invalid for series length {symbols.size}")

    rng = rng if rng is not None else np.random.default_rng(Config.SEED)
    starts = rng.integers(0, symbols.size - window_size + 1, size=num_simulations)
    actions = coerce_state_actions(state_actions)

    results: List[WindowResult] = []
    cancelled = should_stop is not None and bool(should_stop())
    deadline = None if timeout_seconds is None else time.monotonic() + timeout_seconds

    logger.info(f"Running {num_simulations} Monte Carlo backtest windows")
    if not cancelled:
        with ThreadPoolExecutor(max_workers=max_workers) as executor:
            futures = [
                executor.submit(_evaluate_window, model, symbols, price_arr,
                                int(s), int(s) + window_size, actions, status_tuple)
                for s in starts
            ]
            try:
                # Trial order; a cancelled run keeps the collected prefix
                for index, future in enumerate(futures):
                    remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
                    results.append(future.result(timeout=remaining))
                    if should_stop is not None and should_stop():
                        cancelled = index + 1 < num_simulations
                        break
                    if (index + 1) % 20 == 0:
                        logger.debug(f"Completed {index + 1}/{num_simulations} simulations")
            except FuturesTimeoutError:
                logger.warning(f"Monte Carlo timed out after {timeout_seconds}s")
                cancelled = True

            if cancelled:
                for future in futures:
                    future.cancel()

    if cancelled:
        logger.warning(f"Monte Carlo cancelled: keeping {len(results)}/{num_simulations} trials")

    return MonteCarloEnsemble(
        results=tuple(results),
        start_indices=tuple(int(s) for s in starts),
        requested=num_simulations,
        window_size=window_size,
        cancelled=cancelled,
    )


# =============================================================================
# SECTION 5: CONFIDENCE INTERVALS
# =============================================================================

def _summarize(values: np.ndarray, levels: Sequence[float]) -> MetricSummary:
    ordered = np.sort(values)
    return MetricSummary(
        mean=float(ordered.mean()),
        std=float(ordered.std()),
        min=float(ordered[0]),
        max=float(ordered[-1]),
        percentiles={level: order_statistic(ordered, level) for level in levels},
        values=tuple(float(v) for v in ordered),
    )


def confidence_intervals(
    ensemble: Union[MonteCarloEnsemble, Sequence[WindowResult]],
    levels: Sequence[float] = Config.CONFIDENCE_LEVELS
) -> ConfidenceSummary:
    """
    Percentile confidence intervals of the revenue metrics.

    Args:
        ensemble: Monte Carlo ensemble or any sequence of window results
        levels: Percentile levels in (0, 1)

    Returns:
        ConfidenceSummary
    """
    results = ensemble.results if isinstance(ensemble, MonteCarloEnsemble) else tuple(ensemble)
    if not results:
        raise InputError("Cannot summarize an empty ensemble")

    levels = tuple(sorted({float(level) for level in levels}))
    if not levels or not all(0.0 < level < 1.0 for level in levels):
        raise ConfigurationError(f"Confidence levels must lie in (0, 1), got {levels}")

    def metric(attr: str) -> MetricSummary:
        return _summarize(np.array([getattr(r.revenue, attr) for r in results]), levels)

    return ConfidenceSummary(
        total_revenue=metric('total_revenue'),
        up_revenue=metric('up_revenue'),
        down_revenue=metric('down_revenue'),
        average_revenue_per_period=metric('average_revenue_per_period'),
        levels=levels,
        n_samples=len(results),
    )


# =============================================================================
# SECTION 6: COMPREHENSIVE BACKTEST
# =============================================================================

def summarize_backtest(
    full_window: WindowResult,
    confidence: ConfidenceSummary,
    training: Optional[TrainingResult] = None
) -> BacktestSummary:
    """Headline figures rounded to cents (log-likelihood to 1e-6)."""
    total = confidence.total_revenue
    per_period = confidence.average_revenue_per_period
    cleared = full_window.revenue.total_cleared_count
    log_lik = training.final_log_likelihood if training is not None else full_window.log_probability

    return BacktestSummary(
        expected_total_revenue=round(total.mean, 2),
        total_revenue_band=(round(total.quantile(0.05), 2), round(total.quantile(0.95), 2)),
        total_revenue_range=(round(total.min, 2), round(total.max, 2)),
        total_revenue_volatility=round(total.std, 2),
        expected_revenue_per_period=round(per_period.mean, 2),
        revenue_per_period_band=(round(per_period.quantile(0.05), 2),
                                 round(per_period.quantile(0.95), 2)),
        total_periods=full_window.periods,
        cleared_periods=cleared,
        clearing_rate=round(100.0 * cleared / full_window.periods, 2),
        log_likelihood=round(log_lik, 6),
        converged=training.converged if training is not None else None,
        n_simulations=confidence.n_samples,
    )


def run_comprehensive_backtest(
    model: HMMParameters,
    observations: Any,
    prices: Any,
    config: BacktestConfig = DEFAULT_BACKTEST,
    state_actions: Optional[Mapping[int, Union[str, ClearingAction]]] = None,
    statuses: Any = None,
    training: Optional[TrainingResult] = None,
    should_stop: Optional[Callable[[], bool]] = None,
    discretizer: Optional[ThresholdDiscretizer] = None
) -> BacktestReport:
    """
    Full-window, sliding-window and Monte Carlo backtests with statistics.

    Args:
        model: HMM parameters used for decoding
        observations: Full observation series
        prices: (T, 2) [up, down] prices or a price DataFrame
        config: Window, overlap, simulation and calendar settings
        state_actions: Regime -> cleared product override
        statuses: Per-period forecast statuses (default: the DataFrame's
            system_forecast_status column when present)
        training: Training outcome reported in the summary
        should_stop: Cooperative cancellation of the Monte Carlo stage

    Returns:
        BacktestReport
    """
    symbols, price_arr, status_tuple = _prepare_inputs(observations, prices, statuses, discretizer)
    if config.window_size > symbols.size:
        raise InputError(f"Window size {config.window_size} exceeds series length {symbols.size}")
    actions = coerce_state_actions(state_actions)

    logger.info(f"Comprehensive backtest: {symbols.size} periods, "
                f"window={config.window_size}, simulations={config.num_simulations}")

    # 1. Full period
    full_window = _evaluate_window(model, symbols, price_arr, 0, symbols.size, actions, status_tuple)

    # 2. Sliding windows
    sliding = run_sliding_windows(model, symbols, price_arr, config.window_size,
                                  config.overlap_fraction, actions, status_tuple)

    # 3. Monte Carlo
    ensemble = run_monte_carlo(
        model, symbols, price_arr,
        num_simulations=config.num_simulations,
        window_size=config.window_size,
        rng=np.random.default_rng(config.seed),
        max_workers=config.max_workers,
        should_stop=should_stop,
        timeout_seconds=config.timeout_seconds,
        state_actions=actions,
        statuses=status_tuple,
    )

    # 4. Statistics
    if ensemble.completed > 0:
        confidence = confidence_intervals(ensemble, config.confidence_levels)
    else:
        logger.warning("No Monte Carlo trial completed; summarizing sliding windows instead")
        confidence = confidence_intervals(sliding, config.confidence_levels)

    # Evenly spread total by default; actual per-day sums on request
    if config.daily_risk_from_periods:
        risk_revenue = full_window.revenue.period_revenue
    else:
        risk_revenue = full_window.revenue.total_revenue
    risk = risk_metrics(risk_revenue, full_window.periods, config.periods_per_day)

    return BacktestReport(
        full_window=full_window,
        sliding_windows=sliding,
        monte_carlo=ensemble,
        confidence=confidence,
        risk=risk,
        summary=summarize_backtest(full_window, confidence, training),
    )


# =============================================================================
# SECTION 7: REPORTING
# =============================================================================

def format_backtest_report(report: BacktestReport) -> str:
    """
    Format a backtest report as human-readable text.

    Args:
        report: BacktestReport from run_comprehensive_backtest

    Returns:
        Formatted string report
    """
    summary = report.summary
    full = report.full_window.revenue
    risk = report.risk
    mc = report.monte_carlo

    if summary.converged is None:
        convergence = "not trained"
    else:
        convergence = "converged" if summary.converged else "not converged"

    lines = [
        "=" * 70,
        "aFRR CAPACITY BACKTEST REPORT",
        "=" * 70,
        f"Periods:             {summary.total_periods:,}",
        f"Sliding Windows:     {len(report.sliding_windows)}",
        f"Monte Carlo Trials:  {mc.completed}/{mc.requested}"
        + (" (cancelled)" if mc.cancelled else ""),
        "",
        "-" * 70,
        "FULL PERIOD REVENUE",
        "-" * 70,
        f"Up Capacity:         EUR {full.up_revenue:,.2f} ({full.up_cleared_count} periods)",
        f"Down Capacity:       EUR {full.down_revenue:,.2f} ({full.down_cleared_count} periods)",
        f"Total:               EUR {full.total_revenue:,.2f}",
        f"Per Period:          EUR {full.average_revenue_per_period:,.2f}",
        f"Clearing Rate:       {summary.clearing_rate:.2f}%",
        "",
        "-" * 70,
        "MONTE CARLO DISTRIBUTION (WINDOW TOTAL REVENUE)",
        "-" * 70,
        f"Expected:            EUR {summary.expected_total_revenue:,.2f}",
        f"90% Band:            EUR {summary.total_revenue_band[0]:,.2f} .. "
        f"{summary.total_revenue_band[1]:,.2f}",
        f"Range:               EUR {summary.total_revenue_range[0]:,.2f} .. "
        f"{summary.total_revenue_range[1]:,.2f}",
        f"Volatility:          EUR {summary.total_revenue_volatility:,.2f}",
    ]

    for level, value in report.confidence.total_revenue.percentiles.items():
        lines.append(f"  {percentile_key(level):<18} EUR {value:,.2f}")

    lines.extend([
        "",
        "-" * 70,
        "RISK ANALYSIS (DAILY REVENUE)",
        "-" * 70,
        f"Days:                {risk.num_days}",
        f"Mean:                EUR {risk.mean_daily_revenue:,.2f}",
        f"Std:                 EUR {risk.std_daily_revenue:,.2f}",
        f"Sharpe-like Ratio:   {risk.sharpe_ratio:.3f}",
        f"VaR (95%):           EUR {risk.var_95:,.2f}",
        f"CVaR (95%):          EUR {risk.cvar_95:,.2f}",
        f"Max Drawdown:        {risk.max_drawdown:.2%}",
        f"Skewness:            {risk.skewness:+.3f}",
        f"Kurtosis:            {risk.kurtosis:.3f}",
        "",
        "-" * 70,
        "MODEL",
        "-" * 70,
        f"Log-Likelihood:      {summary.log_likelihood:.6f}",
        f"Training:            {convergence}",
    ])

    if report.full_window.market_conditions:
        lines.extend(["", "-" * 70, "MARKET CONDITIONS", "-" * 70])
        for status, stats in report.full_window.market_conditions.items():
            lines.append(
                f"{status.capitalize():<20} {stats.cleared:>5}/{stats.total:<5} cleared "
                f"({stats.clearing_rate:.1%}), avg EUR {stats.average_revenue:,.2f}"
            )

    lines.append("=" * 70)
    return "\n".join(lines)


__all__ = [
    'RevenueBreakdown',
    'StateTransitionStats',
    'ConditionStats',
    'WindowResult',
    'MonteCarloEnsemble',
    'MetricSummary',
    'ConfidenceSummary',
    'BacktestSummary',
    'BacktestReport',
    'percentile_key',
    'order_statistic',
    'coerce_prices',
    'coerce_statuses',
    'coerce_state_actions',
    'compute_revenue',
    'analyze_state_transitions',
    'analyze_market_conditions',
    'run_window',
    'window_starts',
    'run_sliding_windows',
    'run_monte_carlo',
    'confidence_intervals',
    'summarize_backtest',
    'run_comprehensive_backtest',
    'format_backtest_report',
]
