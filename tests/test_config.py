"""
Tests for configuration records and option resolution.
"""
import numpy as np
import pytest

from afrr_regime.config import (
    AnalysisConfig,
    BacktestConfig,
    CategorizationMethod,
    InitializationMethod,
    QuantileOptions,
    TrainingConfig,
    VolatilityOptions,
    build_options,
    to_camel_case,
    to_snake_case,
)
from afrr_regime.errors import ConfigurationError


class TestAnalysisConfig:

    def test_defaults(self):
        config = AnalysisConfig()
        assert config.categorization_method is CategorizationMethod.QUANTILE
        assert config.categorization_options == QuantileOptions()
        assert config.training.enabled
        assert config.training.initializer is InitializationMethod.HEURISTIC
        assert config.backtest.window_size == 96
        assert config.min_data_points == 100

    def test_from_camel_case_record(self):
        config = AnalysisConfig.from_dict({
            'categorizationMethod': 'volatility',
            'categorizationOptions': {'cvThreshold': 0.3, 'window': 48},
            'backtest': {'windowSize': 48, 'overlapFraction': 0.25, 'numSimulations': 20},
            'training': {'maxIterations': 10, 'initializer': 'PRIOR'},
            'minDataPoints': 50,
        })
        assert config.categorization_method is CategorizationMethod.VOLATILITY
        assert config.categorization_options == VolatilityOptions(window=48, cv_threshold=0.3)
        assert config.backtest.window_size == 48
        assert config.backtest.overlap_fraction == 0.25
        assert config.training.max_iterations == 10
        assert config.training.initializer is InitializationMethod.PRIOR
        assert config.min_data_points == 50

    def test_unknown_key_rejected(self):
        with pytest.raises(ConfigurationError):
            AnalysisConfig.from_dict({'method': 'quantile'})

    def test_unknown_nested_key_rejected(self):
        with pytest.raises(ConfigurationError):
            AnalysisConfig.from_dict({'backtest': {'simulations': 5}})

    def test_invalid_method(self):
        with pytest.raises(ConfigurationError):
            AnalysisConfig(categorization_method='median')

    def test_with_method_resets_options(self):
        config = AnalysisConfig(categorization_options={'lowPercentile': 10})
        switched = config.with_method('zscore')
        assert switched.categorization_method is CategorizationMethod.ZSCORE
        assert switched.categorization_options.low_threshold == -0.5

    def test_min_data_points_positive(self):
        with pytest.raises(ConfigurationError):
            AnalysisConfig(min_data_points=0)


class TestBacktestConfig:

    @pytest.mark.parametrize("overlap", [1.0, -0.1])
    def test_overlap_bounds(self, overlap):
        with pytest.raises(ConfigurationError):
            BacktestConfig(overlap_fraction=overlap)

    def test_levels_sorted_and_deduplicated(self):
        config = BacktestConfig(confidence_levels=[0.95, 0.05, 0.5, 0.05])
        assert config.confidence_levels == (0.05, 0.5, 0.95)

    def test_levels_in_open_interval(self):
        with pytest.raises(ConfigurationError):
            BacktestConfig(confidence_levels=(0.0, 0.5))

    def test_simulation_count(self):
        with pytest.raises(ConfigurationError):
            BacktestConfig(num_simulations=0)


class TestTrainingConfig:

    def test_string_initializer(self):
        assert TrainingConfig(initializer='prior').initializer is InitializationMethod.PRIOR

    def test_unknown_initializer(self):
        with pytest.raises(ConfigurationError):
            TrainingConfig(initializer='random')

    def test_tolerance_positive(self):
        with pytest.raises(ConfigurationError):
            TrainingConfig(tolerance=0.0)


class TestOptions:

    def test_method_to_record(self):
        assert isinstance(build_options('quantile'), QuantileOptions)
        assert isinstance(build_options(CategorizationMethod.VOLATILITY), VolatilityOptions)

    def test_snake_and_camel_keys(self):
        assert build_options('quantile', {'low_percentile': 20}).low_percentile == 20
        assert build_options('quantile', {'lowPercentile': 20}).low_percentile == 20

    def test_out_of_range_values(self):
        with pytest.raises(ConfigurationError):
            build_options('quantile', {'lowPercentile': 70, 'highPercentile': 30})
        with pytest.raises(ConfigurationError):
            build_options('threshold', {'lowValue': 5, 'highValue': 5})

    def test_to_snake_case(self):
        assert to_snake_case('cvThreshold') == 'cv_threshold'
        assert to_snake_case('max_window') == 'max_window'

    def test_to_camel_case(self):
        assert to_camel_case('average_revenue_per_period') == 'averageRevenuePerPeriod'
        assert to_camel_case('var_95') == 'var95'
        assert to_camel_case('total') == 'total'


# Malformed external records: each must surface as a ConfigurationError
MALFORMED_RECORDS = [
    {'backtest': {'confidenceLevels': ['x']}},
    {'backtest': {'numSimulations': 2.5}},
    {'backtest': {'windowSize': 96.5}},
    {'backtest': {'seed': -1}},
    {'categorizationMethod': 'volatility', 'categorizationOptions': {'window': 2.5}},
    {'categorizationMethod': 'kmeans', 'categorizationOptions': {'maxIterations': 2.5}},
    {'backtest': {'periodsPerDay': True}},
    {'backtest': {'maxWorkers': 0}},
    {'training': {'maxIterations': 1.5}},
    {'minDataPoints': 10.0},
    {'backtest': 'fast'},
]


class TestMalformedRecords:

    @pytest.mark.parametrize("record", MALFORMED_RECORDS)
    def test_rejected_as_configuration_error(self, record):
        with pytest.raises(ConfigurationError):
            AnalysisConfig.from_dict(record)

    def test_numpy_integers_accepted(self):
        config = BacktestConfig(window_size=np.int64(48), seed=np.int32(0))
        assert config.window_size == 48
        assert config.seed == 0

    def test_daily_risk_option(self):
        config = AnalysisConfig.from_dict({'backtest': {'dailyRiskFromPeriods': True}})
        assert config.backtest.daily_risk_from_periods is True
        assert not BacktestConfig().daily_risk_from_periods
        with pytest.raises(ConfigurationError):
            BacktestConfig(daily_risk_from_periods='yes')
