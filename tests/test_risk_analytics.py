"""
Tests for daily revenue risk metrics.
"""
import numpy as np
import pytest
from scipy import stats

from afrr_regime.errors import InputError
from afrr_regime.risk_analytics import RiskCalculator, risk_metrics


class TestDailySlices:

    def test_per_period_series_summed_per_day(self):
        daily = RiskCalculator.daily_slices([25, 25, 25, 25, 10, 10, 10, 20], 8, periods_per_day=4)
        assert daily.tolist() == [100.0, 50.0]

    def test_trailing_partial_day_dropped(self):
        daily = RiskCalculator.daily_slices(np.ones(9), 9, periods_per_day=4)
        assert daily.tolist() == [4.0, 4.0]

    def test_scalar_total_spread_over_days(self):
        daily = RiskCalculator.daily_slices(300.0, 8, periods_per_day=4)
        assert daily.tolist() == [150.0, 150.0]

    def test_less_than_one_day_is_single_slice(self):
        assert RiskCalculator.daily_slices([1.0, 2.0, 3.0], 3, periods_per_day=4).tolist() == [6.0]
        assert RiskCalculator.daily_slices(42.0, 3, periods_per_day=96).tolist() == [42.0]

    def test_length_mismatch_raises(self):
        with pytest.raises(InputError):
            RiskCalculator.daily_slices([1.0, 2.0], 3)

    def test_invalid_period_count_raises(self):
        with pytest.raises(InputError):
            RiskCalculator.daily_slices(10.0, 0)


class TestMaxDrawdown:

    def test_chronological_peak(self):
        assert RiskCalculator.max_drawdown(np.array([100.0, 50.0, 120.0, 90.0])) == pytest.approx(0.5)

    def test_monotone_increase_has_no_drawdown(self):
        assert RiskCalculator.max_drawdown(np.array([1.0, 2.0, 3.0])) == 0.0

    def test_non_positive_peaks_ignored(self):
        assert RiskCalculator.max_drawdown(np.array([-5.0, -3.0, -10.0])) == 0.0
        assert RiskCalculator.max_drawdown(np.array([-5.0, 10.0, 5.0])) == pytest.approx(0.5)


class TestRiskMetrics:

    def test_two_day_example(self):
        metrics = risk_metrics([25, 25, 25, 25, 10, 10, 10, 20], 8, periods_per_day=4)
        assert metrics.num_days == 2
        assert metrics.mean_daily_revenue == pytest.approx(75.0)
        assert metrics.std_daily_revenue == pytest.approx(25.0)
        assert metrics.sharpe_ratio == pytest.approx(3.0)
        assert metrics.var_95 == 50.0
        assert metrics.cvar_95 == 50.0
        assert metrics.max_drawdown == pytest.approx(0.5)
        assert metrics.skewness == 0.0
        assert metrics.kurtosis == 0.0

    def test_constant_days_have_zero_sharpe(self):
        metrics = risk_metrics(300.0, 8, periods_per_day=4)
        assert metrics.std_daily_revenue == 0.0
        assert metrics.sharpe_ratio == 0.0
        assert metrics.max_drawdown == 0.0

    def test_var_and_cvar_read_lower_tail(self):
        daily = np.arange(1.0, 41.0)        # 40 days
        metrics = risk_metrics(daily, 40, periods_per_day=1)
        # sorted[floor(0.05 * 40)] = sorted[2]
        assert metrics.var_95 == 3.0
        assert metrics.cvar_95 == pytest.approx(2.0)
        assert metrics.cvar_95 <= metrics.var_95

    def test_higher_moments_from_scipy(self):
        daily = np.array([1.0, 2.0, 3.0, 10.0])
        metrics = risk_metrics(daily, 4, periods_per_day=1)
        assert metrics.skewness == pytest.approx(stats.skew(daily))
        assert metrics.kurtosis == pytest.approx(stats.kurtosis(daily))
        assert metrics.skewness > 0

    def test_to_dict(self):
        out = risk_metrics(10.0, 5).to_dict()
        assert out['numDays'] == 1
        assert out['dailyRevenues'] == [10.0]
        assert {'var95', 'cvar95', 'sharpeRatio', 'maxDrawdown'} <= set(out)
