"""Merton jump-diffusion model.

GBM + compound Poisson jumps:
  dS/S = μ dt + σ dW + (J − 1) dN
  N ~ Poisson(λ·dt), ln J ~ N(μ_J, σ_J²)
"""

import logging

import numpy as np

from . import (
    TRADING_DAYS_PER_YEAR,
    VALUE_FLOOR,
    Discretization,
    MertonParams,
    ModelFit,
)
from .gbm import estimate_gbm, log_returns

logger = logging.getLogger(__name__)

JUMP_THRESHOLD_STD = 3.0
DIFFUSION_VARIANCE_FLOOR = 0.01


def estimate_merton(values: np.ndarray) -> ModelFit:
    """Fit Merton parameters by jump classification on top of a GBM fit.

    Returns with |r − mean(r)| > 3·std(r) are jumps. λ counts jumps per
    observed year; the diffusion variance is the GBM variance net of the
    jump contribution, floored at 0.01.

    Raises:
        InsufficientData: Fewer than two usable log returns.
    """
    gbm_fit = estimate_gbm(values)
    gbm = gbm_fit["parameters"]

    returns = log_returns(values)
    mean = float(np.mean(returns))
    std = float(np.std(returns, ddof=1))
    jumps = returns[np.abs(returns - mean) > JUMP_THRESHOLD_STD * std]

    years_observed = len(values) / TRADING_DAYS_PER_YEAR
    lam = len(jumps) / years_observed
    mu_jump = float(np.mean(jumps)) if len(jumps) > 0 else 0.0
    sigma_jump = float(np.std(jumps, ddof=1)) if len(jumps) > 1 else std

    diffusion_var = gbm.sigma**2 - lam * sigma_jump**2
    warnings: list[str] = []
    if diffusion_var < DIFFUSION_VARIANCE_FLOOR:
        logger.debug(
            "Merton: diffusion variance %.6f floored at %.2f",
            diffusion_var, DIFFUSION_VARIANCE_FLOOR,
        )
        warnings.append(
            f"Diffusion variance {diffusion_var:.6f} floored at {DIFFUSION_VARIANCE_FLOOR}"
        )

    params = MertonParams(
        mu=gbm.mu,
        sigma=float(np.sqrt(max(DIFFUSION_VARIANCE_FLOOR, diffusion_var))),
        lam=lam,
        mu_jump=mu_jump,
        sigma_jump=sigma_jump,
    )

    return ModelFit(
        parameters=params,
        log_likelihood=gbm_fit["log_likelihood"],
        residuals=gbm_fit["residuals"],
        warnings=warnings,
    )


def step_merton(
    current: np.ndarray | float,
    dt: float,
    params: MertonParams,
    shock: np.ndarray | float,
    n_jumps: np.ndarray | int,
    jump_shock: np.ndarray | float,
    scheme: Discretization = Discretization.EXACT,
) -> np.ndarray | float:
    """Advance by one step given the diffusion shock and the jump draws.

    The sum of `n_jumps` normal jump sizes is N·μ_J + σ_J·√N·Z, so one
    standard normal `jump_shock` per scenario is enough.
    """
    mu, sigma = params.mu, params.sigma
    jump = n_jumps * params.mu_jump + params.sigma_jump * np.sqrt(n_jumps) * jump_shock

    if scheme == Discretization.EXACT:
        diffused = current * np.exp((mu - 0.5 * sigma**2) * dt + sigma * np.sqrt(dt) * shock)
    else:
        dw = np.sqrt(dt) * shock
        diffused = current + mu * current * dt + sigma * current * dw
        if scheme == Discretization.MILSTEIN:
            diffused = diffused + 0.5 * sigma**2 * current * (dw * dw - dt)
        diffused = np.maximum(diffused, VALUE_FLOOR)

    return np.maximum(diffused * np.exp(jump), VALUE_FLOOR)
