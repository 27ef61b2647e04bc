"""
Configuration Module for the aFRR Regime Inference Engine

This module centralizes all configuration constants, enumerations,
per-strategy categorization options, and the training/backtest settings
used throughout the analysis pipeline.

All "magic numbers" are defined here to ensure:
1. Single source of truth for all constants
2. Easy modification without touching analysis code
3. Transparency in assumptions and thresholds
4. Validation of every option before any computation starts

Configuration records accept the camelCase keys of the external
configuration surface as well as Python snake_case names.
"""

from __future__ import annotations

import numbers
import re
from dataclasses import dataclass, field, fields, replace
from enum import Enum, IntEnum
from typing import Any, Dict, Mapping, Optional, Tuple, Type, Union

from afrr_regime.errors import ConfigurationError


# =============================================================================
# ENUMERATIONS
# =============================================================================

class CategorizationMethod(Enum):
    """Strategies for discretizing the contracting signal into regimes."""
    QUANTILE = "quantile"
    KMEANS = "kmeans"
    VOLATILITY = "volatility"
    ADAPTIVE = "adaptive"
    ZSCORE = "zscore"
    THRESHOLD = "threshold"


class ContractingRegime(IntEnum):
    """
    Hidden contracting regimes (0-indexed state labels).

    The same indexing is used by the categorizer, the model builder,
    the Baum-Welch trainer and the Viterbi decoder.
    """
    UNDERCONTRACTED = 0
    BALANCED = 1
    OVERCONTRACTED = 2

    @property
    def display_name(self) -> str:
        return self.name.capitalize()


class ClearingAction(Enum):
    """Capacity product cleared in a period given the decoded regime."""
    UP_CAPACITY = "up"
    DOWN_CAPACITY = "down"
    NONE = "none"


class InitializationMethod(Enum):
    """Starting point for Baum-Welch re-estimation."""
    HEURISTIC = "heuristic"   # Empirical transitions + value-relative emissions
    PRIOR = "prior"           # Fixed persistent prior model


# =============================================================================
# CONSTANTS
# =============================================================================

class Config:
    """Engine-wide constants."""

    # -------------------------------------------------------------------------
    # Model dimensions
    # -------------------------------------------------------------------------
    N_STATES: int = 3                 # Under / Balanced / Over
    N_SYMBOLS: int = 3                # Observation alphabet (Low / Medium / High)

    # -------------------------------------------------------------------------
    # Smoothing
    # -------------------------------------------------------------------------
    TRANSITION_PSEUDOCOUNT: float = 0.1   # (count + 0.1) / (rowSum + 0.1 * N)
    EMISSION_PSEUDOCOUNT: float = 1.0     # (count + 1) / (total + K)
    EMISSION_FLOOR: float = 0.001         # Decoder substitute for zero probabilities
    PROBABILITY_FLOOR: float = 1e-6       # Minimum entry after EM re-estimation

    # -------------------------------------------------------------------------
    # Emission heuristic (value relative to global mean)
    # -------------------------------------------------------------------------
    BID_UP_RATIO: float = 0.8
    BID_DOWN_RATIO: float = 1.2

    # -------------------------------------------------------------------------
    # EM training
    # -------------------------------------------------------------------------
    EM_MAX_ITERATIONS: int = 100
    EM_TOLERANCE: float = 1e-6
    DISCRETIZER_EDGES: Tuple[float, ...] = (0.0, 0.33, 0.67, 1.0)

    # -------------------------------------------------------------------------
    # Market calendar (15-minute settlement periods)
    # -------------------------------------------------------------------------
    PERIODS_PER_DAY: int = 96

    # -------------------------------------------------------------------------
    # Backtesting
    # -------------------------------------------------------------------------
    WINDOW_SIZE: int = 96             # 24 hours at 15-minute resolution
    OVERLAP_FRACTION: float = 0.5
    N_SIMULATIONS: int = 100
    CONFIDENCE_LEVELS: Tuple[float, ...] = (0.05, 0.25, 0.50, 0.75, 0.95)
    SEED: int = 42
    VAR_PERCENTILE: float = 0.05      # 95% VaR

    # -------------------------------------------------------------------------
    # Data requirements
    # -------------------------------------------------------------------------
    MIN_DATA_POINTS: int = 100

    # -------------------------------------------------------------------------
    # Price table columns
    # -------------------------------------------------------------------------
    UP_PRICE_COLUMNS: Tuple[str, ...] = (
        'up_price', 'afrr_up_capacity_marginal_price_eur_per_mw'
    )
    DOWN_PRICE_COLUMNS: Tuple[str, ...] = (
        'down_price', 'afrr_down_capacity_marginal_price_eur_per_mw'
    )


# Default regime -> cleared product mapping.
# Undercontracted systems procure up-capacity, overcontracted down-capacity.
DEFAULT_STATE_ACTIONS: Dict[int, ClearingAction] = {
    ContractingRegime.UNDERCONTRACTED: ClearingAction.UP_CAPACITY,
    ContractingRegime.BALANCED: ClearingAction.NONE,
    ContractingRegime.OVERCONTRACTED: ClearingAction.DOWN_CAPACITY,
}


def _require(condition: bool, message: str) -> None:
    if not condition:
        raise ConfigurationError(message)


def _require_int(value: Any, name: str, minimum: int = 1) -> None:
    """Integral (bool excluded) and at least ``minimum``."""
    _require(isinstance(value, numbers.Integral) and not isinstance(value, bool)
             and value >= minimum,
             f"{name} must be an integer >= {minimum}, got {value!r}")


# =============================================================================
# CATEGORIZATION OPTIONS
# =============================================================================

@dataclass(frozen=True)
class QuantileOptions:
    """Order-statistic cut points, in percent of the sorted sequence."""
    low_percentile: float = 33.0
    high_percentile: float = 67.0

    def __post_init__(self):
        _require(
            0.0 <= self.low_percentile < self.high_percentile <= 100.0,
            f"quantile percentiles must satisfy 0 <= low < high <= 100, "
            f"got {self.low_percentile}/{self.high_percentile}"
        )


@dataclass(frozen=True)
class KMeansOptions:
    """1-D k-means (k=3) with k-means++ seeding."""
    max_iterations: int = 100
    tolerance: float = 1e-4
    seed: int = Config.SEED

    def __post_init__(self):
        _require_int(self.max_iterations, "kmeans max_iterations")
        _require(self.tolerance > 0, "kmeans tolerance must be positive")
        _require_int(self.seed, "kmeans seed", minimum=0)


@dataclass(frozen=True)
class VolatilityOptions:
    """Rolling coefficient-of-variation switch between local and global bands."""
    window: int = Config.PERIODS_PER_DAY
    cv_threshold: float = 0.5
    local_band: float = 0.05          # +/- 5% of |local mean|
    global_band: float = 0.10         # +/- 10% of |global mean|

    def __post_init__(self):
        _require_int(self.window, "volatility window")
        _require(self.cv_threshold >= 0, "volatility cv_threshold must be >= 0")
        _require(self.local_band >= 0 and self.global_band >= 0,
                 "volatility bands must be >= 0")


@dataclass(frozen=True)
class AdaptiveOptions:
    """Rolling mean +/- sensitivity * std with a minimum relative spread."""
    max_window: int = Config.PERIODS_PER_DAY
    sensitivity: float = 0.5
    min_spread: float = 0.1

    def __post_init__(self):
        _require_int(self.max_window, "adaptive max_window")
        _require(self.sensitivity >= 0, "adaptive sensitivity must be >= 0")
        _require(self.min_spread >= 0, "adaptive min_spread must be >= 0")


@dataclass(frozen=True)
class ZScoreOptions:
    """Global z-score thresholds."""
    low_threshold: float = -0.5
    high_threshold: float = 0.5

    def __post_init__(self):
        _require(self.low_threshold < self.high_threshold,
                 "zscore low_threshold must be below high_threshold")


@dataclass(frozen=True)
class ThresholdOptions:
    """Fixed absolute cut points (MW)."""
    low_value: float = -50.0
    high_value: float = 50.0

    def __post_init__(self):
        _require(self.low_value < self.high_value,
                 "threshold low_value must be below high_value")


CategorizationOptions = Union[
    QuantileOptions, KMeansOptions, VolatilityOptions,
    AdaptiveOptions, ZScoreOptions, ThresholdOptions,
]

OPTIONS_BY_METHOD: Dict[CategorizationMethod, Type] = {
    CategorizationMethod.QUANTILE: QuantileOptions,
    CategorizationMethod.KMEANS: KMeansOptions,
    CategorizationMethod.VOLATILITY: VolatilityOptions,
    CategorizationMethod.ADAPTIVE: AdaptiveOptions,
    CategorizationMethod.ZSCORE: ZScoreOptions,
    CategorizationMethod.THRESHOLD: ThresholdOptions,
}


# =============================================================================
# TRAINING AND BACKTEST CONFIGURATION
# =============================================================================

@dataclass(frozen=True)
class TrainingConfig:
    """Baum-Welch settings. ``enabled=False`` decodes with the heuristic model."""
    enabled: bool = True
    initializer: InitializationMethod = InitializationMethod.HEURISTIC
    max_iterations: int = Config.EM_MAX_ITERATIONS
    tolerance: float = Config.EM_TOLERANCE
    timeout_seconds: Optional[float] = None

    def __post_init__(self):
        if isinstance(self.initializer, str):
            object.__setattr__(self, 'initializer',
                               _coerce_enum(InitializationMethod, self.initializer, 'initializer'))
        _require_int(self.max_iterations, "training max_iterations")
        _require(self.tolerance > 0, "training tolerance must be positive")
        _require(self.timeout_seconds is None or self.timeout_seconds > 0,
                 "training timeout_seconds must be positive")


@dataclass(frozen=True)
class BacktestConfig:
    """Windowed and Monte Carlo backtest settings."""
    window_size: int = Config.WINDOW_SIZE
    overlap_fraction: float = Config.OVERLAP_FRACTION
    num_simulations: int = Config.N_SIMULATIONS
    confidence_levels: Tuple[float, ...] = Config.CONFIDENCE_LEVELS
    seed: int = Config.SEED
    periods_per_day: int = Config.PERIODS_PER_DAY
    max_workers: Optional[int] = None
    timeout_seconds: Optional[float] = None
    # Risk slices: False spreads the total revenue evenly over the days,
    # True sums the per-period revenue of each day
    daily_risk_from_periods: bool = False

    def __post_init__(self):
        _require_int(self.window_size, "backtest window_size")
        _require(0.0 <= self.overlap_fraction < 1.0,
                 f"backtest overlap_fraction must be in [0, 1), got {self.overlap_fraction}")
        _require_int(self.num_simulations, "backtest num_simulations")
        _require_int(self.periods_per_day, "backtest periods_per_day")
        _require_int(self.seed, "backtest seed", minimum=0)
        if self.max_workers is not None:
            _require_int(self.max_workers, "backtest max_workers")
        _require(self.timeout_seconds is None or self.timeout_seconds > 0,
                 "backtest timeout_seconds must be positive")
        _require(isinstance(self.daily_risk_from_periods, bool),
                 "backtest daily_risk_from_periods must be a bool")
        try:
            levels = tuple(float(level) for level in self.confidence_levels)
        except (TypeError, ValueError):
            raise ConfigurationError(f"backtest confidence_levels must be numbers, "
                                     f"got {self.confidence_levels!r}") from None
        _require(len(levels) > 0, "backtest confidence_levels must not be empty")
        _require(all(0.0 < level < 1.0 for level in levels),
                 f"backtest confidence_levels must lie in (0, 1), got {levels}")
        object.__setattr__(self, 'confidence_levels', tuple(sorted(set(levels))))


@dataclass(frozen=True)
class AnalysisConfig:
    """
    Complete configuration surface of the engine.

    ``categorization_options`` may be given as a mapping of overrides; it is
    resolved into the typed options record of ``categorization_method``.
    """
    categorization_method: CategorizationMethod = CategorizationMethod.QUANTILE
    categorization_options: Optional[Any] = None
    backtest: BacktestConfig = field(default_factory=BacktestConfig)
    training: TrainingConfig = field(default_factory=TrainingConfig)
    min_data_points: int = Config.MIN_DATA_POINTS

    def __post_init__(self):
        method = coerce_method(self.categorization_method)
        object.__setattr__(self, 'categorization_method', method)
        object.__setattr__(self, 'categorization_options',
                           build_options(method, self.categorization_options))
        _require(isinstance(self.backtest, BacktestConfig),
                 f"backtest must be a BacktestConfig or mapping, got {type(self.backtest).__name__}")
        _require(isinstance(self.training, TrainingConfig),
                 f"training must be a TrainingConfig or mapping, got {type(self.training).__name__}")
        _require_int(self.min_data_points, "min_data_points")

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "AnalysisConfig":
        """Build a configuration from the external (camelCase) record."""
        values = _normalize_keys(data, {
            'categorization_method', 'categorization_options',
            'backtest', 'training', 'min_data_points',
        }, 'configuration')
        if 'backtest' in values and isinstance(values['backtest'], Mapping):
            values['backtest'] = _build_record(BacktestConfig, values['backtest'], 'backtest')
        if 'training' in values and isinstance(values['training'], Mapping):
            values['training'] = _build_record(TrainingConfig, values['training'], 'training')
        try:
            return cls(**values)
        except ConfigurationError:
            raise
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(f"Invalid configuration: {exc}") from None

    def with_method(self, method: Union[str, CategorizationMethod],
                    options: Optional[Any] = None) -> "AnalysisConfig":
        return replace(self, categorization_method=coerce_method(method),
                       categorization_options=options)


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

_CAMEL_BOUNDARY = re.compile(r'(?<!^)(?=[A-Z])')


def to_snake_case(key: str) -> str:
    """Convert ``lowPercentile`` to ``low_percentile``; snake_case passes through."""
    return _CAMEL_BOUNDARY.sub('_', key).lower()


def to_camel_case(key: str) -> str:
    """Convert ``average_revenue_per_period`` to ``averageRevenuePerPeriod``."""
    head, *rest = key.split("_")
    return head + "".join(part[:1].upper() + part[1:] for part in rest)


def to_camel_dict(record: Any, exclude: Tuple[str, ...] = ()) -> Dict[str, Any]:
    """Flat dataclass as a camelCase dict; tuples become lists."""
    out = {}
    for f in fields(record):
        if f.name in exclude:
            continue
        value = getattr(record, f.name)
        out[to_camel_case(f.name)] = list(value) if isinstance(value, tuple) else value
    return out


def _coerce_enum(enum_cls: Type[Enum], value: Any, name: str) -> Enum:
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).lower())
    except ValueError:
        valid = ", ".join(member.value for member in enum_cls)
        raise ConfigurationError(f"Unknown {name}: {value!r} (expected one of {valid})") from None


def coerce_method(method: Union[str, CategorizationMethod]) -> CategorizationMethod:
    """Resolve a method name to the closed set of categorization strategies."""
    return _coerce_enum(CategorizationMethod, method, 'categorization method')


def _normalize_keys(data: Mapping[str, Any], allowed: set, context: str) -> Dict[str, Any]:
    if not isinstance(data, Mapping):
        raise ConfigurationError(f"{context} must be a mapping, got {type(data).__name__}")
    normalized = {to_snake_case(str(key)): value for key, value in data.items()}
    unknown = sorted(set(normalized) - allowed)
    if unknown:
        raise ConfigurationError(f"Unknown {context} option(s): {', '.join(unknown)}")
    return normalized


def _build_record(record_cls: Type, data: Mapping[str, Any], context: str):
    allowed = {f.name for f in fields(record_cls)}
    values = _normalize_keys(data, allowed, context)
    try:
        return record_cls(**values)
    except ConfigurationError:
        raise
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"Invalid {context} options: {exc}") from None


def build_options(
    method: Union[str, CategorizationMethod],
    options: Optional[Any] = None
) -> CategorizationOptions:
    """
    Resolve categorization options for a method.

    Args:
        method: Categorization strategy
        options: None (defaults), the typed options record, or a mapping
            of overrides with camelCase or snake_case keys

    Returns:
        Typed, validated options record for ``method``
    """
    method = coerce_method(method)
    options_cls = OPTIONS_BY_METHOD[method]

    if options is None:
        return options_cls()
    if isinstance(options, options_cls):
        return options
    if isinstance(options, Mapping):
        return _build_record(options_cls, options, f"{method.value} categorization")

    raise ConfigurationError(
        f"Options for {method.value} must be {options_cls.__name__} or a mapping, "
        f"got {type(options).__name__}"
    )


# =============================================================================
# GLOBAL CONFIGURATION INSTANCES
# =============================================================================

DEFAULT_BACKTEST = BacktestConfig()
DEFAULT_TRAINING = TrainingConfig()


__all__ = [
    'CategorizationMethod',
    'ContractingRegime',
    'ClearingAction',
    'InitializationMethod',
    'Config',
    'DEFAULT_STATE_ACTIONS',
    'QuantileOptions',
    'KMeansOptions',
    'VolatilityOptions',
    'AdaptiveOptions',
    'ZScoreOptions',
    'ThresholdOptions',
    'CategorizationOptions',
    'OPTIONS_BY_METHOD',
    'TrainingConfig',
    'BacktestConfig',
    'AnalysisConfig',
    'DEFAULT_BACKTEST',
    'DEFAULT_TRAINING',
    'to_snake_case',
    'to_camel_case',
    'to_camel_dict',
    'coerce_method',
    'build_options',
]
