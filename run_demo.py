#!/usr/bin/env python3
"""
aFRR Contracting Regime Engine - Demo Runner

Runs the complete regime inference and backtesting pipeline on a seeded
synthetic aFRR capacity market:
    Phase 1: Synthetic market data generation
    Phase 2: Regime categorization, Baum-Welch training, Viterbi decoding
    Phase 3: Full-window, sliding-window and Monte Carlo backtests

EXECUTION
    python run_demo.py
    python run_demo.py --method kmeans --periods 2880
    python run_demo.py --simulations 500 --window 192 --json outputs/backtest.json

Version: 1.0.0
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

import numpy as np


# =============================================================================
# CONSTANTS
# =============================================================================

VERSION: str = "1.0.0"
DEFAULT_PERIODS: int = 2880          # 30 days of 15-minute periods
DEFAULT_METHOD: str = "quantile"
METHODS = ("quantile", "kmeans", "volatility", "adaptive", "zscore", "threshold")


# =============================================================================
# DISPLAY COMPONENTS
# =============================================================================

def print_section_header(title: str, char: str = "═") -> None:
    """Print a formatted section header."""
    width = 79
    print()
    print(char * width)
    print(f"  {title}")
    print(char * width)
    print()


# =============================================================================
# PHASES
# =============================================================================

def run_phase1(periods: int, seed: int, logger: logging.Logger) -> Optional[Any]:
    """Generate the synthetic market dataset."""
    print_section_header("PHASE 1: SYNTHETIC MARKET DATA")

    try:
        from afrr_regime.synthetic_data import generate_mock_data

        df = generate_mock_data(periods, rng=np.random.default_rng(seed))
        counts = df['system_forecast_status'].value_counts()
        logger.info(f"Periods: {len(df):,} ({len(df) / 96:.1f} days)")
        for status, count in counts.items():
            logger.info(f"  {status:<16} {count:>6} ({count / len(df):.1%})")
        return df

    except Exception as e:
        logger.error(f"Phase 1 failed: {e}")
        return None


def run_phase2(df: Any, config: Any, logger: logging.Logger) -> Optional[Any]:
    """Categorize, train and decode the contracting signal."""
    print_section_header("PHASE 2: REGIME INFERENCE")

    from afrr_regime.analysis import RegimeAnalysisPipeline, format_analysis_report

    result = RegimeAnalysisPipeline(config).analyze(df)
    if not result.success:
        logger.error(f"Phase 2 failed: [{result.error_kind.value}] {result.message}")
        return None

    print(format_analysis_report(result))
    return result


def run_phase3(df: Any, config: Any, analysis: Any, logger: logging.Logger) -> Optional[Any]:
    """Run the comprehensive backtest on the decoded regimes."""
    print_section_header("PHASE 3: CAPACITY BACKTEST")

    from afrr_regime.analysis import RegimeAnalysisPipeline
    from afrr_regime.backtest_engine import format_backtest_report

    report = RegimeAnalysisPipeline(config).backtest(df, analysis=analysis)
    if not report.success:
        logger.error(f"Phase 3 failed: [{report.error_kind.value}] {report.message}")
        return None

    print(format_backtest_report(report))
    return report


def save_json(path: Path, analysis: Any, report: Any, logger: logging.Logger) -> None:
    """Write analysis and backtest results as JSON."""
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = {
        'generatedAt': datetime.now().isoformat(),
        'version': VERSION,
        'analysis': analysis.to_dict(),
        'backtest': report.to_dict() if report is not None else None,
    }
    with open(path, 'w') as f:
        json.dump(payload, f, indent=2)
    logger.info(f"Saved results to {path}")


# =============================================================================
# MAIN
# =============================================================================

def main() -> int:
    """
    Main entry point for the demo runner.

    Returns
    -------
    int
        Exit code (0 for success, 1 for failure)
    """
    start_time = time.time()

    parser = argparse.ArgumentParser(
        description="aFRR Contracting Regime Engine - Demo Runner",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python run_demo.py                              # quantile, 30 days
  python run_demo.py --method zscore --no-train   # heuristic model only
  python run_demo.py --simulations 500 --json outputs/backtest.json
        """
    )
    parser.add_argument("--periods", "-n", type=int, default=DEFAULT_PERIODS,
                        help=f"Number of 15-minute periods (default: {DEFAULT_PERIODS})")
    parser.add_argument("--method", "-m", choices=METHODS, default=DEFAULT_METHOD,
                        help=f"Categorization method (default: {DEFAULT_METHOD})")
    parser.add_argument("--seed", type=int, default=42,
                        help="Random seed for data and Monte Carlo (default: 42)")
    parser.add_argument("--simulations", type=int, default=100,
                        help="Monte Carlo windows (default: 100)")
    parser.add_argument("--window", type=int, default=96,
                        help="Backtest window size in periods (default: 96)")
    parser.add_argument("--overlap", type=float, default=0.5,
                        help="Sliding-window overlap fraction (default: 0.5)")
    parser.add_argument("--initializer", choices=("heuristic", "prior"), default="heuristic",
                        help="Baum-Welch starting model (default: heuristic)")
    parser.add_argument("--no-train", action="store_true",
                        help="Decode with the initial model, skip Baum-Welch")
    parser.add_argument("--daily-risk-from-periods", action="store_true",
                        help="Risk metrics from actual per-day revenue instead of the evenly spread total")
    parser.add_argument("--json", type=Path, default=None,
                        help="Write results to this JSON file")
    parser.add_argument("--verbose", "-v", action="store_true",
                        help="Enable verbose logging")
    parser.add_argument("--version", action="version", version=f"%(prog)s {VERSION}")

    args = parser.parse_args()

    log_level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=log_level,
        format="  %(asctime)s │ %(levelname)s │ %(message)s",
        datefmt="%H:%M:%S"
    )
    logger = logging.getLogger(__name__)

    from afrr_regime.config import AnalysisConfig
    from afrr_regime.errors import ConfigurationError

    try:
        config = AnalysisConfig.from_dict({
            'categorizationMethod': args.method,
            'backtest': {
                'windowSize': args.window,
                'overlapFraction': args.overlap,
                'numSimulations': args.simulations,
                'seed': args.seed,
                'dailyRiskFromPeriods': args.daily_risk_from_periods,
            },
            'training': {
                'enabled': not args.no_train,
                'initializer': args.initializer,
            },
        })
    except ConfigurationError as e:
        logger.error(f"Invalid configuration: {e}")
        return 1

    print(f"  Execution Started: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    print(f"  Method:            {args.method}")
    print(f"  Periods:           {args.periods:,}")
    print(f"  Version:           {VERSION}")

    df = run_phase1(args.periods, args.seed, logger)
    if df is None:
        return 1

    analysis = run_phase2(df, config, logger)
    if analysis is None:
        return 1

    report = run_phase3(df, config, analysis, logger)

    if args.json is not None:
        save_json(args.json, analysis, report, logger)

    print()
    print("=" * 79)
    print(f"  Completed in {time.time() - start_time:.1f}s")
    print("=" * 79)

    return 0 if report is not None else 1


if __name__ == "__main__":
    sys.exit(main())
