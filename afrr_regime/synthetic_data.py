"""
Synthetic aFRR Market Data
==========================

Seedable generator for a quarter-hourly aFRR capacity market dataset,
used by the demo runner and the test suite.

Columns:
    timestamp                                      15-minute UTC periods
    sk_d1_fcst                                     Contracting forecast (MW)
    system_forecast_status                         under/balanced/overcontracted
    afrr_up_capacity_mw / afrr_down_capacity_mw    Procured capacity (MW)
    afrr_up_capacity_marginal_price_eur_per_mw     Up clearing price
    afrr_down_capacity_marginal_price_eur_per_mw   Down clearing price

Contracting follows a noisy cycle; the forecast status switches at
+/-50 MW, and procured volumes and prices lean towards the product the
status calls for.

Version: 1.0.0
"""

from __future__ import annotations

import logging
from typing import Optional

import numpy as np
import pandas as pd

from afrr_regime.config import Config
from afrr_regime.errors import InputError

logger = logging.getLogger(__name__)

STATUS_THRESHOLD_MW = 50.0
START_TIME = '2024-01-01T00:00:00Z'


def _status_factor(status: np.ndarray, rng: np.random.Generator,
                   under: tuple, balanced: tuple, over: tuple) -> np.ndarray:
    """Uniform multiplier in [low, low + width) chosen by forecast status."""
    low = np.select([status == 'undercontracted', status == 'overcontracted'],
                    [under[0], over[0]], balanced[0])
    width = np.select([status == 'undercontracted', status == 'overcontracted'],
                      [under[1], over[1]], balanced[1])
    return low + rng.random(status.size) * width


def generate_mock_data(
    num_periods: int = 1000,
    rng: Optional[np.random.Generator] = None
) -> pd.DataFrame:
    """
    Generate a mock aFRR market dataset.

    Args:
        num_periods: Number of 15-minute settlement periods
        rng: Seeded generator (default: default_rng(42))

    Returns:
        DataFrame with one row per period
    """
    if num_periods < 1:
        raise InputError("num_periods must be >= 1")
    rng = rng if rng is not None else np.random.default_rng(Config.SEED)

    t = np.arange(num_periods)
    contracting = -50.0 + (rng.random(num_periods) - 0.5) * 200.0 + np.sin(t * 0.1) * 100.0

    status = np.where(
        contracting < -STATUS_THRESHOLD_MW, 'undercontracted',
        np.where(contracting > STATUS_THRESHOLD_MW, 'overcontracted', 'balanced')
    )

    base_up = 200.0 + rng.random(num_periods) * 100.0
    base_down = 150.0 + rng.random(num_periods) * 100.0
    up_mw = base_up * _status_factor(status, rng, (0.8, 0.4), (0.5, 0.3), (0.3, 0.4))
    down_mw = base_down * _status_factor(status, rng, (0.3, 0.4), (0.5, 0.3), (0.8, 0.4))

    base_up_price = 50.0 + rng.random(num_periods) * 100.0
    base_down_price = 30.0 + rng.random(num_periods) * 80.0
    up_price = base_up_price * (1.0 + (up_mw - 250.0) / 500.0)
    down_price = base_down_price * (1.0 + (down_mw - 200.0) / 400.0)

    df = pd.DataFrame({
        'timestamp': pd.date_range(START_TIME, periods=num_periods, freq='15min'),
        'sk_d1_fcst': np.round(contracting, 2),
        'system_forecast_status': status,
        'afrr_up_capacity_mw': np.round(up_mw, 2),
        'afrr_down_capacity_mw': np.round(down_mw, 2),
        'afrr_up_capacity_marginal_price_eur_per_mw': np.round(up_price, 2),
        'afrr_down_capacity_marginal_price_eur_per_mw': np.round(down_price, 2),
    })

    logger.info(f"Generated {num_periods} periods of mock aFRR data")
    return df


def create_observation_vectors(df: pd.DataFrame) -> np.ndarray:
    """
    Normalized [contracting, up volume, down volume] per period.

    (sk_d1_fcst + 200) / 400, up_mw / 500 and down_mw / 500, which the
    ThresholdDiscretizer averages into the Low/Medium/High alphabet.
    """
    required = ['sk_d1_fcst', 'afrr_up_capacity_mw', 'afrr_down_capacity_mw']
    missing = [c for c in required if c not in df.columns]
    if missing:
        raise InputError(f"DataFrame is missing column(s): {', '.join(missing)}")

    return np.column_stack([
        (df['sk_d1_fcst'].to_numpy(dtype=float) + 200.0) / 400.0,
        df['afrr_up_capacity_mw'].to_numpy(dtype=float) / 500.0,
        df['afrr_down_capacity_mw'].to_numpy(dtype=float) / 500.0,
    ])


__all__ = [
    'generate_mock_data',
    'create_observation_vectors',
]
