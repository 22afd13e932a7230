"""Pytest configuration and shared fixtures."""

import logging

import numpy as np
import pytest

from eventprob.config import Settings
from eventprob.engine.sim_models import ModelType, OUParams
from eventprob.schemas import EventVariable


@pytest.fixture
def rng():
    return np.random.default_rng(12345)


@pytest.fixture
def settings():
    """Small batches so multi-batch code paths run in every simulation test."""
    return Settings(simulation_batch_size=1000, simulation_max_workers=2)


@pytest.fixture
def gbm_prices():
    """~2 years of daily prices with 20% annual vol and 8% drift."""
    rng = np.random.default_rng(42)
    daily_vol = 0.20 / np.sqrt(252)
    daily_mu = 0.08 / 252
    returns = rng.normal(daily_mu, daily_vol, 500)
    return 100.0 * np.exp(np.concatenate([[0.0], np.cumsum(returns)]))


@pytest.fixture
def cpi_variable():
    """OU-calibrated CPI inflation currently running above its long-run mean."""
    return EventVariable(
        name="cpi_inflation",
        label="CPI inflation",
        sde_model=ModelType.OU,
        parameters=OUParams(theta=0.5, mu=0.025, sigma=0.01),
        initial_value=0.05,
    )


@pytest.fixture
def reset_logging():
    """Drop handlers installed by setup_logging so later tests log normally."""
    yield
    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()
