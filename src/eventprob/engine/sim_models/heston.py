"""Heston stochastic volatility model.

Two coupled SDEs:
  dS = μ·S·dt + √V·S·dW₁
  dV = κ(θ − V)dt + ξ√V·dW₂
  corr(W₁, W₂) = ρ

Calibration here is a moment-based approximation, not a full Heston MLE or
Kalman filter: the variance parameters come from an OU fit on squared
returns and ρ is a fixed leverage-effect constant.
"""

import logging

import numpy as np

from eventprob.exceptions import InsufficientData

from . import (
    TRADING_DAYS_PER_YEAR,
    VALUE_FLOOR,
    Discretization,
    HestonParams,
    ModelFit,
)
from .gbm import log_returns
from .ou import MIN_TRANSITIONS, estimate_ou

logger = logging.getLogger(__name__)

LEVERAGE_RHO = -0.7
DEFAULT_KAPPA = 2.0


def estimate_heston(values: np.ndarray) -> ModelFit:
    """Approximate Heston calibration.

    κ and ξ are the OU mean-reversion speed and volatility of the squared
    return series; θ is the annualised mean squared return; v0 is the most
    recent annualised squared return; ρ is fixed at -0.7.

    Raises:
        InsufficientData: Too few usable returns for the squared-return OU fit.
        DegenerateFit: Squared returns are constant.
    """
    returns = log_returns(values)
    # squared-return OU fit needs MIN_TRANSITIONS + 1 points
    if len(returns) < MIN_TRANSITIONS + 1:
        raise InsufficientData("heston", MIN_TRANSITIONS + 1, len(returns))

    squared = returns**2
    mu = float(np.mean(returns)) * TRADING_DAYS_PER_YEAR
    avg_var = float(np.mean(squared)) * TRADING_DAYS_PER_YEAR

    variance_fit = estimate_ou(squared)
    ou_params = variance_fit["parameters"]

    kappa = ou_params.theta or DEFAULT_KAPPA
    xi = ou_params.sigma or float(np.sqrt(avg_var)) * 0.5

    params = HestonParams(
        mu=mu,
        kappa=kappa,
        theta=avg_var,
        xi=xi,
        rho=LEVERAGE_RHO,
        v0=float(squared[-1]) * TRADING_DAYS_PER_YEAR,
    )

    satisfied, ratio = feller_condition(params)
    warnings = [
        "Moment-based approximation: variance dynamics from an OU fit on squared "
        f"returns, rho fixed at {LEVERAGE_RHO}",
        *variance_fit["warnings"],
    ]
    if not satisfied:
        warnings.append(f"Feller condition violated (2κθ/ξ² = {ratio:.4f})")

    return ModelFit(
        parameters=params,
        log_likelihood=variance_fit["log_likelihood"],
        residuals=variance_fit["residuals"],
        warnings=warnings,
    )


def step_heston(
    current: np.ndarray | float,
    variance: np.ndarray | float,
    dt: float,
    params: HestonParams,
    shock: np.ndarray | float,
    variance_shock: np.ndarray | float,
    scheme: Discretization = Discretization.MILSTEIN,
) -> tuple[np.ndarray | float, np.ndarray | float]:
    """Advance price and variance by one step with full truncation.

    `shock` drives the price; `variance_shock` is an independent normal that
    is correlated with `shock` through ρ. MILSTEIN adds ¼ξ²(dW₂² − dt) to the
    variance update; the price is always advanced in log form.

    Returns:
        (next_price, next_variance). Variance may go negative; it is truncated
        at the next step.
    """
    kappa, theta, xi, rho = params.kappa, params.theta, params.xi, params.rho
    sqrt_dt = np.sqrt(dt)

    v_pos = np.maximum(variance, 0.0)
    sqrt_v = np.sqrt(v_pos)

    dw_s = sqrt_dt * shock
    dw_v = sqrt_dt * (rho * shock + np.sqrt(1 - rho**2) * variance_shock)

    price = current * np.exp((params.mu - 0.5 * v_pos) * dt + sqrt_v * dw_s)

    next_variance = variance + kappa * (theta - v_pos) * dt + xi * sqrt_v * dw_v
    if scheme == Discretization.MILSTEIN:
        next_variance = next_variance + 0.25 * xi**2 * (dw_v * dw_v - dt)

    return np.maximum(price, VALUE_FLOOR), next_variance


def feller_condition(params: HestonParams) -> tuple[bool, float]:
    """Check 2κθ > ξ². When it holds the variance stays strictly positive.

    Returns:
        (satisfied, 2κθ / ξ²)
    """
    feller = 2 * params.kappa * params.theta
    xi_sq = params.xi**2
    if xi_sq == 0.0:
        return True, float("inf")
    return feller > xi_sq, feller / xi_sq
