"""
Contracting Regime Analysis Pipeline
====================================

Public entry points of the engine. A run flows through:

    raw observations
        -> Categorizer           (regime labels)
        -> Model initializer     (heuristic builder or persistent prior)
        -> Baum-Welch trainer    (optional re-estimation on the labels)
        -> Viterbi decoder       (most likely regime path)
        -> Backtest engine       (windowed / Monte Carlo revenue statistics)

Every entry point validates its inputs first. Engine errors are returned
as an EngineFailure record and logged, never raised, so callers branch on
``result.success``.

Usage:
    pipeline = RegimeAnalysisPipeline(AnalysisConfig(categorization_method='kmeans'))
    analysis = pipeline.analyze(df['sk_d1_fcst'])
    report = pipeline.backtest(df, analysis=analysis)

Version: 1.0.0
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional, Union

import numpy as np
import pandas as pd

from afrr_regime.backtest_engine import BacktestReport, run_comprehensive_backtest
from afrr_regime.categorizer import categorize, count_states, validate_values
from afrr_regime.config import (
    AnalysisConfig,
    CategorizationMethod,
    ClearingAction,
    ContractingRegime,
    InitializationMethod,
    to_camel_dict,
)
from afrr_regime.errors import EngineFailure, InputError, RegimeEngineError
from afrr_regime.hmm_model import BaumWelchTrainer, TrainingResult, viterbi
from afrr_regime.markov_builder import HMMParameters, default_parameters, heuristic_parameters

logger = logging.getLogger(__name__)

# Contracting forecast column of the aFRR market dataset
CONTRACTING_COLUMN = 'sk_d1_fcst'


# =============================================================================
# SECTION 1: DATA STRUCTURES
# =============================================================================

@dataclass(frozen=True)
class ContractingStats:
    """Descriptive statistics of the raw contracting signal (MW)."""
    min: float
    max: float
    avg: float
    count: int

    def to_dict(self) -> Dict[str, Any]:
        return to_camel_dict(self)


@dataclass(frozen=True)
class AnalysisResult:
    """Labels, fitted model and decoded regime path of one series."""
    method: CategorizationMethod
    labels: np.ndarray
    parameters: HMMParameters
    viterbi_path: np.ndarray
    log_probability: float
    state_counts: Dict[int, int]
    viterbi_state_counts: Dict[int, int]
    training: Optional[TrainingResult]
    contracting_stats: ContractingStats
    success: bool = True

    @property
    def transition_matrix(self) -> np.ndarray:
        return self.parameters.transition

    @property
    def emission_matrix(self) -> np.ndarray:
        return self.parameters.emission

    @property
    def initial_probabilities(self) -> np.ndarray:
        return self.parameters.initial

    def to_dict(self) -> Dict[str, Any]:
        out = {
            'success': self.success,
            'categorizationMethod': self.method.value,
            'labels': self.labels.tolist(),
            'viterbiPath': self.viterbi_path.tolist(),
            'logProbability': self.log_probability,
            'stateCounts': {str(k): v for k, v in self.state_counts.items()},
            'viterbiStateCounts': {str(k): v for k, v in self.viterbi_state_counts.items()},
            'training': self.training.to_dict() if self.training is not None else None,
            'contractingStats': self.contracting_stats.to_dict(),
        }
        out.update(self.parameters.to_dict())
        return out


# =============================================================================
# SECTION 2: PIPELINE
# =============================================================================

def extract_signal(data: Any) -> np.ndarray:
    """Contracting signal from a DataFrame (``sk_d1_fcst``), Series or sequence."""
    if isinstance(data, pd.DataFrame):
        if CONTRACTING_COLUMN not in data.columns:
            raise InputError(f"DataFrame must have a {CONTRACTING_COLUMN!r} column")
        data = data[CONTRACTING_COLUMN]
    if isinstance(data, pd.Series):
        data = data.to_numpy()
    return validate_values(data)


class RegimeAnalysisPipeline:
    """
    Categorize, fit and decode a contracting series, then backtest it.

    The pipeline holds configuration only; each call returns a new
    immutable result.
    """

    def __init__(self, config: Optional[AnalysisConfig] = None):
        """
        Args:
            config: Engine configuration (default: AnalysisConfig())
        """
        self.config = config or AnalysisConfig()

    def _initial_parameters(self, values: np.ndarray, labels: np.ndarray) -> HMMParameters:
        if self.config.training.initializer is InitializationMethod.PRIOR:
            return default_parameters()
        return heuristic_parameters(values, labels)

    def _run_analysis(
        self,
        data: Any,
        should_stop: Optional[Callable[[], bool]] = None
    ) -> AnalysisResult:
        values = extract_signal(data)
        if values.size < self.config.min_data_points:
            raise InputError(f"Insufficient data: {values.size} observations, "
                             f"need at least {self.config.min_data_points}")

        method = self.config.categorization_method
        logger.info(f"Analyzing {values.size} periods with {method.value} categorization")

        labels = categorize(values, method, self.config.categorization_options)
        parameters = self._initial_parameters(values, labels)

        training = None
        if self.config.training.enabled:
            trainer = BaumWelchTrainer(
                max_iterations=self.config.training.max_iterations,
                tolerance=self.config.training.tolerance,
            )
            training = trainer.fit(labels, parameters, should_stop=should_stop,
                                   timeout_seconds=self.config.training.timeout_seconds)
            parameters = training.parameters

        decoded = viterbi(labels, parameters.transition, parameters.emission, parameters.initial)
        labels.setflags(write=False)

        return AnalysisResult(
            method=method,
            labels=labels,
            parameters=parameters,
            viterbi_path=decoded.path,
            log_probability=decoded.log_probability,
            state_counts=count_states(labels),
            viterbi_state_counts=count_states(decoded.path),
            training=training,
            contracting_stats=ContractingStats(
                min=float(values.min()),
                max=float(values.max()),
                avg=float(values.mean()),
                count=int(values.size),
            ),
        )

    def analyze(
        self,
        data: Any,
        should_stop: Optional[Callable[[], bool]] = None
    ) -> Union[AnalysisResult, EngineFailure]:
        """
        Run categorization, training and decoding.

        Args:
            data: Contracting signal (sequence, Series, or DataFrame with
                an ``sk_d1_fcst`` column)
            should_stop: Cooperative cancellation of training

        Returns:
            AnalysisResult, or EngineFailure on invalid input/configuration
        """
        try:
            return self._run_analysis(data, should_stop)
        except RegimeEngineError as exc:
            return self._error_result(exc)

    def backtest(
        self,
        data: Any,
        prices: Any = None,
        statuses: Any = None,
        state_actions: Optional[Mapping[int, Union[str, ClearingAction]]] = None,
        analysis: Optional[AnalysisResult] = None,
        should_stop: Optional[Callable[[], bool]] = None
    ) -> Union[BacktestReport, EngineFailure]:
        """
        Run the comprehensive backtest on the decoded regimes.

        Args:
            data: Contracting signal or aFRR market DataFrame
            prices: (T, 2) [up, down] prices or price DataFrame
                (default: ``data`` when it is a DataFrame)
            statuses: Optional per-period forecast statuses
            state_actions: Regime -> cleared product override
            analysis: Reuse a previous AnalysisResult of the same data
            should_stop: Cooperative cancellation of training and Monte Carlo

        Returns:
            BacktestReport, or EngineFailure on invalid input/configuration
        """
        try:
            if analysis is None:
                analysis = self._run_analysis(data, should_stop)
            if prices is None:
                if not isinstance(data, pd.DataFrame):
                    raise InputError("Prices are required unless data is a market DataFrame")
                prices = data

            logger.info("Running comprehensive backtest...")
            return run_comprehensive_backtest(
                analysis.parameters,
                analysis.labels,
                prices,
                config=self.config.backtest,
                state_actions=state_actions,
                statuses=statuses,
                training=analysis.training,
                should_stop=should_stop,
            )
        except RegimeEngineError as exc:
            return self._error_result(exc)

    def _error_result(self, exc: RegimeEngineError) -> EngineFailure:
        """Structured failure record for a rejected run."""
        logger.warning(f"Regime analysis failed: {exc}")
        return EngineFailure.from_exception(exc)


# =============================================================================
# SECTION 3: CONVENIENCE FUNCTIONS
# =============================================================================

def _resolve_config(
    config: Union[AnalysisConfig, Mapping[str, Any], None],
    method: Union[str, CategorizationMethod, None]
) -> AnalysisConfig:
    if config is None:
        resolved = AnalysisConfig()
    elif isinstance(config, AnalysisConfig):
        resolved = config
    else:
        resolved = AnalysisConfig.from_dict(config)
    if method is not None:
        resolved = resolved.with_method(method)
    return resolved


def analyze_contracting(
    data: Any,
    method: Union[str, CategorizationMethod, None] = None,
    config: Union[AnalysisConfig, Mapping[str, Any], None] = None
) -> Union[AnalysisResult, EngineFailure]:
    """
    Convenience function for regime analysis.

    Args:
        data: Contracting signal or aFRR market DataFrame
        method: Categorization method override
        config: AnalysisConfig or external configuration record

    Returns:
        AnalysisResult or EngineFailure

    Example:
        >>> result = analyze_contracting(df, method='zscore')
        >>> if result.success:
        ...     print(result.viterbi_state_counts)
    """
    try:
        pipeline = RegimeAnalysisPipeline(_resolve_config(config, method))
    except RegimeEngineError as exc:
        logger.warning(f"Regime analysis failed: {exc}")
        return EngineFailure.from_exception(exc)
    return pipeline.analyze(data)


def run_backtest(
    data: Any,
    prices: Any = None,
    method: Union[str, CategorizationMethod, None] = None,
    config: Union[AnalysisConfig, Mapping[str, Any], None] = None,
    statuses: Any = None,
    state_actions: Optional[Mapping[int, Union[str, ClearingAction]]] = None,
    should_stop: Optional[Callable[[], bool]] = None
) -> Union[BacktestReport, EngineFailure]:
    """
    Convenience function for analysis plus comprehensive backtest.

    Args:
        data: Contracting signal or aFRR market DataFrame
        prices: Price table (default: ``data`` when it is a DataFrame)
        method: Categorization method override
        config: AnalysisConfig or external configuration record
        statuses: Optional per-period forecast statuses
        state_actions: Regime -> cleared product override
        should_stop: Cooperative cancellation

    Returns:
        BacktestReport or EngineFailure

    Example:
        >>> report = run_backtest(generate_mock_data(2880))
        >>> print(format_backtest_report(report))
    """
    try:
        pipeline = RegimeAnalysisPipeline(_resolve_config(config, method))
    except RegimeEngineError as exc:
        logger.warning(f"Backtest failed: {exc}")
        return EngineFailure.from_exception(exc)
    return pipeline.backtest(data, prices, statuses=statuses,
                             state_actions=state_actions, should_stop=should_stop)


def format_analysis_report(result: AnalysisResult) -> str:
    """
    Format an analysis result as human-readable text.

    Args:
        result: AnalysisResult from the pipeline

    Returns:
        Formatted string report
    """
    stats = result.contracting_stats
    n = max(stats.count, 1)
    regimes = list(ContractingRegime)

    lines = [
        "=" * 70,
        "CONTRACTING REGIME ANALYSIS",
        "=" * 70,
        f"Categorization:      {result.method.value}",
        f"Periods:             {stats.count:,}",
        f"Contracting (MW):    min {stats.min:,.2f} / avg {stats.avg:,.2f} / max {stats.max:,.2f}",
        "",
        "-" * 70,
        "REGIME OCCUPANCY           LABELS          VITERBI",
        "-" * 70,
    ]
    for regime in regimes:
        labelled = result.state_counts.get(int(regime), 0)
        decoded = result.viterbi_state_counts.get(int(regime), 0)
        lines.append(f"{regime.display_name:<20} {labelled:>7} ({labelled / n:>5.1%})  "
                     f"{decoded:>7} ({decoded / n:>5.1%})")

    lines.extend(["", "-" * 70, "TRANSITION MATRIX", "-" * 70])
    header = " " * 20 + "".join(f"{r.display_name[:12]:>16}" for r in regimes)
    lines.append(header)
    for regime, row in zip(regimes, result.transition_matrix):
        lines.append(f"{regime.display_name:<20}" + "".join(f"{p:>16.4f}" for p in row))

    lines.extend(["", "-" * 70, "MODEL", "-" * 70])
    if result.training is not None:
        lines.extend([
            f"Training Status:     {result.training.status.value}",
            f"EM Iterations:       {result.training.iterations}",
            f"Log-Likelihood:      {result.training.final_log_likelihood:.6f}",
        ])
    else:
        lines.append("Training Status:     disabled (heuristic model)")
    lines.append(f"Path Log-Prob:       {result.log_probability:.6f}")
    lines.append("=" * 70)
    return "\n".join(lines)


__all__ = [
    'CONTRACTING_COLUMN',
    'ContractingStats',
    'AnalysisResult',
    'RegimeAnalysisPipeline',
    'extract_signal',
    'analyze_contracting',
    'run_backtest',
    'format_analysis_report',
]
