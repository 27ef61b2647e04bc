"""
Revenue Risk Analytics
======================

Risk statistics of a backtested capacity-revenue stream, computed over
daily slices of the settlement calendar (96 quarter-hour periods per day).

Daily Slicing:
    - Per-period revenue: each complete day sums its own periods.
    - Total revenue only: each complete day receives its period share
      of the total.
    - A stream shorter than one day forms a single partial slice.

Metrics:
    Mean / Std          Population moments of daily revenue
    Sharpe-like ratio   mean / std  (0 when std = 0)
    VaR 95%             sorted[floor(0.05 * n)] of daily revenue
    CVaR 95%            Mean of daily revenue at or below VaR
    Max Drawdown        max over days of (running peak - value) / running peak,
                        chronological; non-positive peaks contribute nothing
    Skewness/Kurtosis   scipy.stats moments (0 for degenerate samples)

Version: 1.0.0
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Sequence, Tuple, Union

import numpy as np
from scipy import stats

from afrr_regime.config import Config, to_camel_dict
from afrr_regime.errors import InputError

logger = logging.getLogger(__name__)


# =============================================================================
# SECTION 1: DATA STRUCTURES
# =============================================================================

@dataclass(frozen=True)
class RiskMetrics:
    """Daily-revenue risk profile of one backtest."""
    mean_daily_revenue: float
    std_daily_revenue: float
    sharpe_ratio: float
    var_95: float
    cvar_95: float
    max_drawdown: float
    skewness: float
    kurtosis: float
    num_days: int
    daily_revenues: Tuple[float, ...] = field(default_factory=tuple)

    def to_dict(self) -> Dict[str, Any]:
        return to_camel_dict(self)


# =============================================================================
# SECTION 2: RISK CALCULATOR
# =============================================================================

class RiskCalculator:
    """
    Daily slicing, tail risk and drawdown of a revenue stream.

    Maximum Drawdown Formula:
        DD_t = (Peak_t - Value_t) / Peak_t,  Peak_t = max(Value_0..t)
        Max DD = max(DD_t) over days with Peak_t > 0
    """

    @staticmethod
    def daily_slices(
        revenue: Union[float, Sequence[float], np.ndarray],
        period_count: int,
        periods_per_day: int = Config.PERIODS_PER_DAY
    ) -> np.ndarray:
        """
        Split a revenue stream into daily revenues.

        Args:
            revenue: Total revenue (scalar) or per-period revenue series
            period_count: Number of settlement periods covered
            periods_per_day: Settlement periods per day

        Returns:
            Daily revenue array (at least one slice)
        """
        if period_count < 1:
            raise InputError("period_count must be >= 1")
        if periods_per_day < 1:
            raise InputError("periods_per_day must be >= 1")

        arr = np.asarray(revenue, dtype=float)
        if not np.all(np.isfinite(arr)):
            raise InputError("Revenue contains NaN/Inf values")

        n_days = period_count // periods_per_day

        if arr.ndim == 0:
            total = float(arr)
            if n_days == 0:
                return np.array([total])
            return np.full(n_days, total * periods_per_day / period_count)

        if arr.ndim != 1 or arr.size != period_count:
            raise InputError(f"Per-period revenue must have length {period_count}, "
                             f"got shape {arr.shape}")
        if n_days == 0:
            return np.array([arr.sum()])
        return arr[:n_days * periods_per_day].reshape(n_days, periods_per_day).sum(axis=1)

    @staticmethod
    def max_drawdown(daily_revenues: np.ndarray) -> float:
        """Largest chronological relative shortfall from a positive running peak."""
        if daily_revenues.size == 0:
            return 0.0
        peaks = np.maximum.accumulate(daily_revenues)
        positive = peaks > 0
        if not np.any(positive):
            return 0.0
        drawdowns = (peaks[positive] - daily_revenues[positive]) / peaks[positive]
        return float(max(drawdowns.max(), 0.0))

    @staticmethod
    def value_at_risk(daily_revenues: np.ndarray, level: float = Config.VAR_PERCENTILE) -> Tuple[float, float]:
        """Return (VaR, CVaR) read from the sorted daily revenues."""
        ordered = np.sort(daily_revenues)
        var = float(ordered[int(np.floor(level * ordered.size))])
        tail = ordered[ordered <= var]
        cvar = float(tail.mean()) if tail.size > 0 else var
        return var, cvar

    @staticmethod
    def calculate(
        revenue: Union[float, Sequence[float], np.ndarray],
        period_count: int,
        periods_per_day: int = Config.PERIODS_PER_DAY
    ) -> RiskMetrics:
        """
        Calculate all risk metrics.

        Args:
            revenue: Total revenue (scalar) or per-period revenue series
            period_count: Number of settlement periods covered
            periods_per_day: Settlement periods per day

        Returns:
            RiskMetrics
        """
        daily = RiskCalculator.daily_slices(revenue, period_count, periods_per_day)

        mean = float(daily.mean())
        std = float(daily.std())
        sharpe = mean / std if std > 0 else 0.0
        var_95, cvar_95 = RiskCalculator.value_at_risk(daily)

        # Moments are undefined for constant or tiny samples
        if daily.size > 2 and std > 0:
            skewness = float(stats.skew(daily))
            kurtosis = float(stats.kurtosis(daily))
        else:
            skewness = kurtosis = 0.0

        logger.debug(f"Risk metrics over {daily.size} daily slice(s): "
                     f"mean={mean:.2f}, std={std:.2f}")

        return RiskMetrics(
            mean_daily_revenue=mean,
            std_daily_revenue=std,
            sharpe_ratio=sharpe,
            var_95=var_95,
            cvar_95=cvar_95,
            max_drawdown=RiskCalculator.max_drawdown(daily),
            skewness=skewness,
            kurtosis=kurtosis,
            num_days=int(daily.size),
            daily_revenues=tuple(float(v) for v in daily),
        )


def risk_metrics(
    revenue: Union[float, Sequence[float], np.ndarray],
    period_count: int,
    periods_per_day: int = Config.PERIODS_PER_DAY
) -> RiskMetrics:
    """Convenience wrapper around RiskCalculator.calculate."""
    return RiskCalculator.calculate(revenue, period_count, periods_per_day)


__all__ = [
    'RiskMetrics',
    'RiskCalculator',
    'risk_metrics',
]
