"""Ornstein-Uhlenbeck / Vasicek mean-reverting process.

  dX = θ(μ − X)dt + σ dW

Estimated through the AR(1) representation X_t = α + βX_{t−1} + ε with
β = e^{−θdt}.
"""

import logging

import numpy as np

from eventprob.exceptions import DegenerateFit, InsufficientData

from . import ESTIMATION_DT, Discretization, ModelFit, OUParams

logger = logging.getLogger(__name__)

MIN_TRANSITIONS = 3
BETA_MIN = 0.01
BETA_MAX = 0.99
SSR_FLOOR = 1e-12


def fit_ar1(values: np.ndarray) -> tuple[float, float, np.ndarray]:
    """OLS regression of X_t on X_{t−1}.

    Returns:
        (alpha, beta, residuals)

    Raises:
        DegenerateFit: Lagged series has zero variance.
    """
    values = np.asarray(values, dtype=float)
    x, y = values[:-1], values[1:]
    x_mean, y_mean = float(np.mean(x)), float(np.mean(y))

    denominator = float(np.sum((x - x_mean) ** 2))
    if denominator == 0.0:
        raise DegenerateFit("degenerate_fit: AR(1) regressor has zero variance")

    beta = float(np.sum((x - x_mean) * (y - y_mean))) / denominator
    alpha = y_mean - beta * x_mean
    if not (np.isfinite(alpha) and np.isfinite(beta)):
        raise DegenerateFit(f"degenerate_fit: non-finite AR(1) coefficients ({alpha}, {beta})")

    residuals = y - alpha - beta * x
    return alpha, beta, residuals


def estimate_ou(values: np.ndarray, dt: float = ESTIMATION_DT) -> ModelFit:
    """Fit OU parameters from the AR(1) regression.

    β is clamped to [0.01, 0.99] before taking logs so θ stays finite and
    positive. σ solves σ_resid² = σ²(1 − e^{−2θdt})/(2θ).

    Raises:
        InsufficientData: Fewer than three transitions.
        DegenerateFit: Zero-variance regressor or unit slope.
    """
    values = np.asarray(values, dtype=float)
    values = values[np.isfinite(values)]
    n = len(values) - 1
    if n < MIN_TRANSITIONS:
        raise InsufficientData("ornstein_uhlenbeck", MIN_TRANSITIONS + 1, len(values))

    alpha, beta, residuals = fit_ar1(values)
    warnings: list[str] = []

    beta_clamped = min(BETA_MAX, max(BETA_MIN, beta))
    if beta_clamped != beta:
        logger.debug("OU: clamping AR(1) slope %.6f to %.2f", beta, beta_clamped)
        if beta >= BETA_MAX:
            warnings.append(
                f"AR(1) slope {beta:.4f} clamped to {BETA_MAX}: weak or no mean reversion"
            )
        else:
            warnings.append(
                f"AR(1) slope {beta:.4f} clamped to {BETA_MIN}: very fast mean reversion"
            )

    theta = -np.log(beta_clamped) / dt

    mu = alpha / (1.0 - beta) if beta != 1.0 else float("inf")
    if not np.isfinite(mu):
        raise DegenerateFit(f"degenerate_fit: unit AR(1) slope gives no long-run mean (beta={beta})")

    ssr = float(np.sum(residuals**2))
    sigma_resid = np.sqrt(ssr / (n - 2))
    sigma = float(sigma_resid * np.sqrt(2 * theta / (1 - np.exp(-2 * theta * dt))))

    log_likelihood = float(
        -n / 2 * np.log(2 * np.pi) - n / 2 * np.log(max(ssr, SSR_FLOOR) / n) - n / 2
    )

    return ModelFit(
        parameters=OUParams(theta=float(theta), mu=float(mu), sigma=sigma),
        log_likelihood=log_likelihood,
        residuals=residuals,
        warnings=warnings,
    )


def step_ou(
    current: np.ndarray | float,
    dt: float,
    params: OUParams,
    shock: np.ndarray | float,
    scheme: Discretization = Discretization.EXACT,
) -> np.ndarray | float:
    """Advance OU by one step given a standard normal shock.

    The diffusion coefficient is constant, so the Milstein correction vanishes
    and MILSTEIN coincides with EULER.
    """
    theta, mu, sigma = params.theta, params.mu, params.sigma
    if scheme == Discretization.EXACT:
        decay = np.exp(-theta * dt)
        scale = sigma * np.sqrt((1 - np.exp(-2 * theta * dt)) / (2 * theta))
        return mu + (current - mu) * decay + scale * shock
    return current + theta * (mu - current) * dt + sigma * np.sqrt(dt) * shock


def half_life(theta: float) -> float:
    """Time (in years) for a deviation from μ to halve."""
    return float(np.log(2) / theta)
