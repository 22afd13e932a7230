"""Geometric Brownian Motion: estimation and step simulation."""

import logging

import numpy as np

from eventprob.exceptions import InsufficientData

from . import ESTIMATION_DT, VALUE_FLOOR, Discretization, GBMParams, ModelFit

logger = logging.getLogger(__name__)

MIN_RETURNS = 2
VARIANCE_FLOOR = 1e-12


def log_returns(values: np.ndarray) -> np.ndarray:
    """Log returns over consecutive pairs where both observations are positive."""
    values = np.asarray(values, dtype=float)
    prev, curr = values[:-1], values[1:]
    usable = (prev > 0) & (curr > 0)
    if not np.all(usable):
        logger.debug("Dropping %d non-positive return pairs", int(np.sum(~usable)))
    return np.log(curr[usable] / prev[usable])


def estimate_gbm(values: np.ndarray) -> ModelFit:
    """Fit GBM by maximum likelihood on log returns.

    Observations are treated as daily-equivalent (dt = 1/252):
    σ = sqrt(Var(r)/dt), μ = Mean(r)/dt + ½σ².

    Raises:
        InsufficientData: Fewer than two usable log returns.
    """
    returns = log_returns(values)
    n = len(returns)
    if n < MIN_RETURNS:
        raise InsufficientData("gbm", MIN_RETURNS, n)

    mean = float(np.mean(returns))
    variance = float(np.var(returns, ddof=1))

    sigma = float(np.sqrt(variance / ESTIMATION_DT))
    mu = mean / ESTIMATION_DT + 0.5 * sigma**2

    safe_var = max(variance, VARIANCE_FLOOR)
    residuals = (returns - mean) / np.sqrt(safe_var)
    log_likelihood = float(
        -n / 2 * np.log(2 * np.pi * safe_var)
        - np.sum((returns - mean) ** 2) / (2 * safe_var)
    )

    return ModelFit(
        parameters=GBMParams(mu=mu, sigma=sigma),
        log_likelihood=log_likelihood,
        residuals=residuals,
        warnings=[],
    )


def step_gbm(
    current: np.ndarray | float,
    dt: float,
    params: GBMParams,
    shock: np.ndarray | float,
    scheme: Discretization = Discretization.EXACT,
) -> np.ndarray | float:
    """Advance GBM by one step given a standard normal shock.

    EXACT uses the lognormal solution; MILSTEIN adds ½σ²X(dW² − dt) to the
    Euler update.
    """
    mu, sigma = params.mu, params.sigma
    if scheme == Discretization.EXACT:
        nxt = current * np.exp((mu - 0.5 * sigma**2) * dt + sigma * np.sqrt(dt) * shock)
    else:
        dw = np.sqrt(dt) * shock
        nxt = current + mu * current * dt + sigma * current * dw
        if scheme == Discretization.MILSTEIN:
            nxt = nxt + 0.5 * sigma**2 * current * (dw * dw - dt)
    return np.maximum(nxt, VALUE_FLOOR)
