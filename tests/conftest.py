"""
Pytest fixtures for the aFRR regime engine tests.

Provides seeded synthetic market data and small hand-checkable models.
"""
import os
import sys

import numpy as np
import pytest

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from afrr_regime.markov_builder import HMMParameters
from afrr_regime.synthetic_data import generate_mock_data


# ============================================================================
# Sample Data Fixtures
# ============================================================================

@pytest.fixture
def rng():
    """Seeded generator."""
    return np.random.default_rng(42)


@pytest.fixture(scope="session")
def market_data():
    """Five days of quarter-hourly mock aFRR data."""
    return generate_mock_data(480, rng=np.random.default_rng(7))


@pytest.fixture(scope="session")
def block_series():
    """32-point series: a low block, a rise, a high block and a decline."""
    return np.array(
        list(range(-200, -40, 20))      # -200 .. -60
        + list(range(-40, 120, 20))     # -40 .. 100
        + list(range(120, 280, 20))     # 120 .. 260
        + list(range(200, 40, -20)),    # 200 .. 60
        dtype=float
    )


@pytest.fixture
def persistent_model():
    """Strongly self-persistent regimes with diagonal-dominant emissions."""
    return HMMParameters(
        initial=np.full(3, 1.0 / 3.0),
        transition=np.array([
            [0.90, 0.05, 0.05],
            [0.05, 0.90, 0.05],
            [0.05, 0.05, 0.90],
        ]),
        emission=np.array([
            [0.80, 0.10, 0.10],
            [0.10, 0.80, 0.10],
            [0.10, 0.10, 0.80],
        ]),
    )


@pytest.fixture
def small_prices():
    """Price table [up, down] for 12 periods."""
    up = np.arange(1, 13, dtype=float) * 10.0
    down = np.arange(1, 13, dtype=float)
    return np.column_stack([up, down])


# ============================================================================
# Assertion Helpers
# ============================================================================

def assert_row_stochastic(matrix, atol=1e-9):
    """Rows sum to one and no entry is exactly zero."""
    matrix = np.asarray(matrix)
    np.testing.assert_allclose(matrix.sum(axis=-1), 1.0, atol=atol)
    assert np.all(matrix > 0)
