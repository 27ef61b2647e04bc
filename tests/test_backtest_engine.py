"""
Tests for the windowed and Monte Carlo capacity backtests.
"""
import json
import time

import numpy as np
import pandas as pd
import pytest

from afrr_regime import backtest_engine
from afrr_regime.backtest_engine import (
    MonteCarloEnsemble,
    analyze_market_conditions,
    analyze_state_transitions,
    coerce_prices,
    coerce_state_actions,
    compute_revenue,
    confidence_intervals,
    format_backtest_report,
    order_statistic,
    percentile_key,
    run_comprehensive_backtest,
    run_monte_carlo,
    run_sliding_windows,
    run_window,
    window_starts,
)
from afrr_regime.config import DEFAULT_STATE_ACTIONS, BacktestConfig, ClearingAction
from afrr_regime.errors import ConfigurationError, InputError
from afrr_regime.synthetic_data import create_observation_vectors


# Runs of four: each block decodes to its own regime under the persistent model
BLOCK_SYMBOLS = np.array([0] * 4 + [1] * 4 + [2] * 4)


class TestRevenue:

    def test_up_and_down_credited_by_regime(self):
        prices = np.array([[10.0, 1.0], [20.0, 2.0], [30.0, 3.0], [40.0, 4.0]])
        revenue = compute_revenue(np.array([0, 1, 2, 0]), prices, DEFAULT_STATE_ACTIONS)
        assert revenue.up_revenue == 50.0
        assert revenue.down_revenue == 3.0
        assert revenue.total_revenue == revenue.up_revenue + revenue.down_revenue
        assert revenue.up_cleared_count == 2
        assert revenue.down_cleared_count == 1
        assert revenue.total_cleared_count == 3
        assert revenue.average_revenue_per_period == pytest.approx(53.0 / 4)
        assert revenue.period_revenue.tolist() == [10.0, 0.0, 3.0, 40.0]

    def test_no_cleared_states_earn_nothing(self, small_prices):
        actions = coerce_state_actions({0: "none", 1: "none", 2: "none"})
        revenue = compute_revenue(np.array([0, 1, 2] * 4), small_prices, actions)
        assert revenue.total_revenue == 0.0
        assert revenue.total_cleared_count == 0

    def test_full_window(self, persistent_model, small_prices):
        result = run_window(persistent_model, BLOCK_SYMBOLS, small_prices)
        np.testing.assert_array_equal(result.path, BLOCK_SYMBOLS)
        assert result.revenue.up_revenue == 100.0            # 10 + 20 + 30 + 40
        assert result.revenue.down_revenue == 42.0           # 9 + 10 + 11 + 12
        assert result.revenue.total_revenue == 142.0
        assert result.periods == 12

    def test_sub_window(self, persistent_model, small_prices):
        result = run_window(persistent_model, BLOCK_SYMBOLS, small_prices, start=8, end=12)
        assert result.path.tolist() == [2, 2, 2, 2]
        assert result.revenue.total_revenue == 42.0
        assert (result.start, result.end) == (8, 12)

    def test_invalid_window_raises(self, persistent_model, small_prices):
        with pytest.raises(InputError):
            run_window(persistent_model, BLOCK_SYMBOLS, small_prices, start=5, end=5)
        with pytest.raises(InputError):
            run_window(persistent_model, BLOCK_SYMBOLS, small_prices, start=0, end=13)

    def test_price_length_mismatch_raises(self, persistent_model, small_prices):
        with pytest.raises(InputError):
            run_window(persistent_model, BLOCK_SYMBOLS[:10], small_prices)

    def test_unknown_action_raises(self):
        with pytest.raises(ConfigurationError):
            coerce_state_actions({0: "sideways"})


class TestPriceCoercion:

    def test_dataframe_marginal_price_columns(self, market_data):
        prices = coerce_prices(market_data)
        assert prices.shape == (len(market_data), 2)
        np.testing.assert_allclose(
            prices[:, 0], market_data['afrr_up_capacity_marginal_price_eur_per_mw'])
        assert not prices.flags.writeable

    def test_short_column_names(self):
        df = pd.DataFrame({'down_price': [1.0, 2.0], 'up_price': [3.0, 4.0]})
        assert coerce_prices(df).tolist() == [[3.0, 1.0], [4.0, 2.0]]

    def test_missing_columns_raise(self):
        with pytest.raises(InputError):
            coerce_prices(pd.DataFrame({'price': [1.0]}))

    def test_wrong_shape_raises(self):
        with pytest.raises(InputError):
            coerce_prices(np.ones((5, 3)))


class TestStatistics:

    def test_state_transitions(self):
        stats = analyze_state_transitions([0, 0, 1, 1, 1, 2])
        assert stats.state_counts == {0: 2, 1: 3, 2: 1}
        assert stats.transition_counts[(0, 1)] == 1
        assert stats.transition_counts[(1, 1)] == 2
        assert stats.transition_probabilities[(1, 2)] == pytest.approx(1 / 3)
        assert stats.to_dict()['transitions']['0->0'] == 1

    def test_market_conditions(self):
        path = np.array([0, 1, 2, 0])
        period_revenue = np.array([10.0, 0.0, 3.0, 40.0])
        statuses = ['undercontracted', 'undercontracted', 'overcontracted', 'balanced']
        conditions = analyze_market_conditions(statuses, path, period_revenue,
                                               DEFAULT_STATE_ACTIONS)
        under = conditions['undercontracted']
        assert (under.total, under.cleared) == (2, 1)
        assert under.clearing_rate == 0.5
        assert under.revenue == 10.0
        assert conditions['balanced'].average_revenue == 40.0
        assert set(conditions) == {'undercontracted', 'balanced', 'overcontracted'}

    def test_order_statistic_and_keys(self):
        values = np.arange(10.0)
        assert order_statistic(values, 0.5) == 4.0          # floor(0.5 * 9)
        assert order_statistic(values, 0.95) == 8.0
        assert percentile_key(0.05) == 'p5'
        assert percentile_key(0.025) == 'p2.5'


class TestSlidingWindows:

    @pytest.mark.parametrize("overlap,expected", [(0.5, [0, 2, 4, 6]), (0.9, list(range(7))),
                                                  (0.0, [0, 4])])
    def test_window_starts(self, overlap, expected):
        assert window_starts(10, 4, overlap) == expected

    def test_invalid_overlap_raises(self):
        with pytest.raises(ConfigurationError):
            window_starts(10, 4, 1.0)

    def test_windows_cover_expected_ranges(self, persistent_model, small_prices):
        windows = run_sliding_windows(persistent_model, BLOCK_SYMBOLS, small_prices,
                                      window_size=4, overlap_fraction=0.5)
        assert [(w.start, w.end) for w in windows] == [(0, 4), (2, 6), (4, 8), (6, 10), (8, 12)]
        assert all(w.periods == 4 for w in windows)

    def test_revenue_totals_add_up(self, persistent_model, market_data):
        windows = run_sliding_windows(persistent_model, create_observation_vectors(market_data),
                                      market_data, window_size=96, overlap_fraction=0.25)
        assert len(windows) == 6                       # starts 0, 72, ..., 360
        for window in windows:
            revenue = window.revenue
            assert revenue.total_revenue == pytest.approx(
                revenue.up_revenue + revenue.down_revenue)
            assert revenue.period_revenue.sum() == pytest.approx(revenue.total_revenue)

    def test_window_larger_than_series_raises(self, persistent_model, small_prices):
        with pytest.raises(InputError):
            run_sliding_windows(persistent_model, BLOCK_SYMBOLS, small_prices, window_size=13)


class TestMonteCarlo:

    def test_seeded_runs_are_identical(self, persistent_model, market_data):
        observations = create_observation_vectors(market_data)
        first = run_monte_carlo(persistent_model, observations, market_data, num_simulations=12,
                                window_size=96, rng=np.random.default_rng(5), max_workers=4)
        second = run_monte_carlo(persistent_model, observations, market_data, num_simulations=12,
                                 window_size=96, rng=np.random.default_rng(5), max_workers=2)
        assert first.start_indices == second.start_indices
        assert [r.revenue.total_revenue for r in first.results] == \
            [r.revenue.total_revenue for r in second.results]

    def test_results_ordered_by_trial(self, persistent_model, market_data):
        observations = create_observation_vectors(market_data)
        ensemble = run_monte_carlo(persistent_model, observations, market_data,
                                   num_simulations=20, window_size=48)
        assert ensemble.completed == 20
        assert not ensemble.cancelled
        assert [r.start for r in ensemble.results] == list(ensemble.start_indices)
        assert all(0 <= s <= len(market_data) - 48 for s in ensemble.start_indices)

    def test_window_equal_to_series(self, persistent_model, small_prices):
        ensemble = run_monte_carlo(persistent_model, BLOCK_SYMBOLS, small_prices,
                                   num_simulations=3, window_size=12)
        assert ensemble.start_indices == (0, 0, 0)

    def test_cancellation_keeps_completed_prefix(self, persistent_model, small_prices):
        calls = {'n': 0}

        def stop():
            # Once before the first trial, then after each collected trial
            calls['n'] += 1
            return calls['n'] > 3

        ensemble = run_monte_carlo(persistent_model, BLOCK_SYMBOLS, small_prices,
                                   num_simulations=50, window_size=4, max_workers=2,
                                   should_stop=stop)
        assert ensemble.cancelled
        assert ensemble.completed == 3
        assert ensemble.requested == 50
        assert len(ensemble.start_indices) == 50
        assert [r.start for r in ensemble.results] == list(ensemble.start_indices[:3])

    def test_stop_before_start_runs_nothing(self, persistent_model, small_prices):
        ensemble = run_monte_carlo(persistent_model, BLOCK_SYMBOLS, small_prices,
                                   num_simulations=10, window_size=4,
                                   should_stop=lambda: True)
        assert ensemble.cancelled
        assert ensemble.completed == 0

    def test_stop_after_last_trial_is_not_a_cancellation(self, persistent_model, small_prices):
        calls = {'n': 0}

        def stop():
            calls['n'] += 1
            return calls['n'] > 4

        ensemble = run_monte_carlo(persistent_model, BLOCK_SYMBOLS, small_prices,
                                   num_simulations=4, window_size=4, should_stop=stop)
        assert not ensemble.cancelled
        assert ensemble.completed == 4

    def test_timeout_cancels_outstanding_trials(self, persistent_model, small_prices, monkeypatch):
        evaluate = backtest_engine._evaluate_window

        def slow_evaluate(*args):
            time.sleep(0.2)
            return evaluate(*args)

        monkeypatch.setattr(backtest_engine, "_evaluate_window", slow_evaluate)
        ensemble = run_monte_carlo(persistent_model, BLOCK_SYMBOLS, small_prices,
                                   num_simulations=5, window_size=4, max_workers=1,
                                   timeout_seconds=0.01)
        assert ensemble.cancelled
        assert ensemble.completed == 0
        assert ensemble.requested == 5

    def test_revenue_totals_add_up(self, persistent_model, market_data):
        ensemble = run_monte_carlo(persistent_model, create_observation_vectors(market_data),
                                   market_data, num_simulations=25, window_size=96)
        for result in ensemble.results:
            revenue = result.revenue
            assert revenue.total_revenue == pytest.approx(
                revenue.up_revenue + revenue.down_revenue)
            assert revenue.total_cleared_count == \
                revenue.up_cleared_count + revenue.down_cleared_count

    def test_invalid_simulation_count(self, persistent_model, small_prices):
        with pytest.raises(InputError):
            run_monte_carlo(persistent_model, BLOCK_SYMBOLS, small_prices, num_simulations=0)


class TestConfidenceIntervals:

    def test_percentiles_are_ordered(self, persistent_model, market_data):
        ensemble = run_monte_carlo(persistent_model, create_observation_vectors(market_data),
                                   market_data, num_simulations=30, window_size=96)
        summary = confidence_intervals(ensemble)
        total = summary.total_revenue
        values = [total.percentiles[level] for level in summary.levels]
        assert values == sorted(values)
        assert total.min <= values[0] and values[-1] <= total.max
        assert total.min <= total.mean <= total.max
        assert summary.n_samples == 30
        assert set(summary.to_dict()['totalRevenue']['percentiles']) == \
            {'p5', 'p25', 'p50', 'p75', 'p95'}

    def test_quantile_outside_configured_levels(self, persistent_model, small_prices):
        windows = run_sliding_windows(persistent_model, BLOCK_SYMBOLS, small_prices,
                                      window_size=4, overlap_fraction=0.0)
        summary = confidence_intervals(windows, levels=(0.5,))
        totals = sorted(w.revenue.total_revenue for w in windows)
        assert summary.total_revenue.quantile(0.0) == totals[0]
        assert summary.total_revenue.quantile(0.5) == totals[1]

    def test_empty_ensemble_raises(self):
        empty = MonteCarloEnsemble(results=(), start_indices=(), requested=5,
                                   window_size=4, cancelled=True)
        with pytest.raises(InputError):
            confidence_intervals(empty)


class TestComprehensiveBacktest:

    @pytest.fixture
    def report(self, persistent_model, market_data):
        config = BacktestConfig(window_size=96, num_simulations=15, periods_per_day=96)
        return run_comprehensive_backtest(persistent_model, create_observation_vectors(market_data),
                                          market_data, config)

    def test_full_window_matches_run_window(self, report, persistent_model, market_data):
        full = run_window(persistent_model, create_observation_vectors(market_data), market_data)
        assert report.full_window.revenue.total_revenue == full.revenue.total_revenue
        assert report.summary.total_periods == len(market_data)

    def test_sliding_and_monte_carlo_counts(self, report):
        assert len(report.sliding_windows) == 9        # starts 0, 48, ..., 384
        assert report.monte_carlo.completed == 15

    def test_risk_uses_full_days(self, report):
        assert report.risk.num_days == 5
        assert sum(report.risk.daily_revenues) == pytest.approx(
            report.full_window.revenue.total_revenue)

    def test_default_risk_spreads_total_evenly(self, report):
        expected = report.full_window.revenue.total_revenue / 5
        np.testing.assert_allclose(report.risk.daily_revenues, expected)
        assert report.risk.std_daily_revenue == pytest.approx(0.0, abs=1e-9)
        assert report.risk.sharpe_ratio == 0.0
        assert report.risk.max_drawdown == pytest.approx(0.0, abs=1e-12)

    def test_risk_from_period_revenue(self, persistent_model, market_data):
        config = BacktestConfig(window_size=96, num_simulations=5, periods_per_day=96,
                                daily_risk_from_periods=True)
        report = run_comprehensive_backtest(persistent_model,
                                            create_observation_vectors(market_data),
                                            market_data, config)
        per_period = report.full_window.revenue.period_revenue
        expected = per_period.reshape(5, 96).sum(axis=1)
        np.testing.assert_allclose(report.risk.daily_revenues, expected)
        assert report.risk.std_daily_revenue == pytest.approx(expected.std())

    def test_no_completed_trial_falls_back_to_sliding_windows(self, persistent_model,
                                                              market_data):
        config = BacktestConfig(window_size=96, num_simulations=15, periods_per_day=96)
        report = run_comprehensive_backtest(persistent_model,
                                            create_observation_vectors(market_data),
                                            market_data, config, should_stop=lambda: True)
        assert report.monte_carlo.cancelled
        assert report.monte_carlo.completed == 0
        assert report.confidence.n_samples == len(report.sliding_windows) == 9
        sliding_totals = sorted(w.revenue.total_revenue for w in report.sliding_windows)
        assert report.confidence.total_revenue.min == sliding_totals[0]
        assert report.summary.n_simulations == 9

    def test_statuses_from_dataframe(self, report):
        conditions = report.full_window.market_conditions
        assert conditions is not None
        assert sum(c.total for c in conditions.values()) == 480

    def test_summary_without_training(self, report):
        assert report.summary.converged is None
        assert 0.0 <= report.summary.clearing_rate <= 100.0
        low, high = report.summary.total_revenue_band
        assert low <= high
        assert report.summary.n_simulations == 15

    def test_serializable(self, report):
        payload = json.loads(json.dumps(report.to_dict()))
        assert payload['success'] is True
        assert set(payload) >= {'fullWindow', 'slidingWindows', 'monteCarloEnsemble',
                                'confidenceSummary', 'riskMetrics', 'summary'}
        assert 'confidence90' in payload['summary']['totalRevenue']

    def test_format_report(self, report):
        text = format_backtest_report(report)
        assert "aFRR CAPACITY BACKTEST REPORT" in text
        assert "not trained" in text
        assert "MARKET CONDITIONS" in text

    def test_custom_state_actions(self, persistent_model, small_prices):
        config = BacktestConfig(window_size=4, num_simulations=5, periods_per_day=4)
        report = run_comprehensive_backtest(
            persistent_model, BLOCK_SYMBOLS, small_prices, config,
            state_actions={0: ClearingAction.NONE, 1: "up", 2: "none"},
        )
        # Only the balanced block clears up-capacity: 50 + 60 + 70 + 80
        assert report.full_window.revenue.total_revenue == 260.0
        assert report.full_window.revenue.down_cleared_count == 0
