"""Copula sampling for dependent shocks across simulated variables.

Families:
- Gaussian: no tail dependence
- Student-t: symmetric tail dependence driven by ν and ρ
- Clayton: lower-tail dependence (joint crashes)
- Gumbel: upper-tail dependence (joint booms)

All samplers return an (n, dim) array of uniforms in the open unit cube.
"""

import logging

import numpy as np
from scipy import stats

from eventprob.exceptions import InvalidCopulaParameters
from eventprob.schemas import CopulaConfig, CopulaFamily, TailDependence

from .random_streams import UNIFORM_EPS, open_uniform

logger = logging.getLogger(__name__)

MIN_STUDENT_T_DOF = 2.0
MAX_KENDALL_TAU = 0.99

# Reference parameterisations for side-by-side family comparison
REFERENCE_COPULAS: dict[CopulaFamily, CopulaConfig] = {
    CopulaFamily.GAUSSIAN: CopulaConfig(family=CopulaFamily.GAUSSIAN, rho=0.5),
    CopulaFamily.CLAYTON: CopulaConfig(family=CopulaFamily.CLAYTON, theta=2.0),
    CopulaFamily.GUMBEL: CopulaConfig(family=CopulaFamily.GUMBEL, theta=2.0),
    CopulaFamily.STUDENT_T: CopulaConfig(family=CopulaFamily.STUDENT_T, rho=0.5, nu=4.0),
}


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def correlation_matrix(config: CopulaConfig, dim: int) -> np.ndarray:
    """Explicit correlation matrix, or the equicorrelation matrix built from ρ."""
    if config.correlation is not None:
        matrix = np.asarray(config.correlation, dtype=float)
        if matrix.shape != (dim, dim):
            raise InvalidCopulaParameters(
                config.family.value,
                f"correlation matrix shape {matrix.shape} does not match {dim} variables",
            )
        return matrix
    matrix = np.full((dim, dim), config.rho, dtype=float)
    np.fill_diagonal(matrix, 1.0)
    return matrix


def _cholesky(config: CopulaConfig, dim: int) -> np.ndarray:
    matrix = correlation_matrix(config, dim)
    family = config.family.value
    if not np.all(np.isfinite(matrix)):
        raise InvalidCopulaParameters(family, "correlation matrix has non-finite entries")
    if not np.allclose(matrix, matrix.T):
        raise InvalidCopulaParameters(family, "correlation matrix is not symmetric")
    if not np.allclose(np.diag(matrix), 1.0):
        raise InvalidCopulaParameters(family, "correlation matrix diagonal must be 1")
    try:
        return np.linalg.cholesky(matrix)
    except np.linalg.LinAlgError:
        raise InvalidCopulaParameters(
            family, "correlation matrix is not positive definite"
        ) from None


def validate_copula(config: CopulaConfig, dim: int) -> None:
    """Check the copula parameters for a `dim`-variable draw.

    Raises:
        InvalidCopulaParameters: θ ≤ 0 for Clayton, θ < 1 for Gumbel, ν ≤ 2
            for Student-t, or a bad correlation matrix for Gaussian/Student-t.
    """
    family = config.family
    if dim < 1:
        raise InvalidCopulaParameters(family.value, f"dimension must be positive, got {dim}")

    if family == CopulaFamily.CLAYTON:
        if config.theta is None or not np.isfinite(config.theta) or config.theta <= 0:
            raise InvalidCopulaParameters(family.value, f"theta must be > 0, got {config.theta}")
    elif family == CopulaFamily.GUMBEL:
        if config.theta is None or not np.isfinite(config.theta) or config.theta < 1:
            raise InvalidCopulaParameters(family.value, f"theta must be >= 1, got {config.theta}")
    elif family == CopulaFamily.STUDENT_T:
        if not config.nu > MIN_STUDENT_T_DOF:
            raise InvalidCopulaParameters(family.value, f"nu must be > 2, got {config.nu}")
        _cholesky(config, dim)
    else:
        _cholesky(config, dim)


# ---------------------------------------------------------------------------
# Sampling
# ---------------------------------------------------------------------------


def sample(config: CopulaConfig, n: int, dim: int, rng: np.random.Generator) -> np.ndarray:
    """Draw `n` dependent uniform vectors of dimension `dim`.

    Assumes `validate_copula(config, dim)` has passed.
    """
    family = config.family
    if family == CopulaFamily.GAUSSIAN:
        u = _sample_gaussian(_cholesky(config, dim), n, rng)
    elif family == CopulaFamily.STUDENT_T:
        u = _sample_student_t(_cholesky(config, dim), config.nu, n, rng)
    elif family == CopulaFamily.CLAYTON:
        u = _sample_clayton(config.theta, n, dim, rng)
    elif family == CopulaFamily.GUMBEL:
        u = _sample_gumbel(config.theta, n, dim, rng)
    else:
        raise InvalidCopulaParameters(str(family), "unknown copula family")
    return np.clip(u, UNIFORM_EPS, 1.0 - UNIFORM_EPS)


def _sample_gaussian(chol: np.ndarray, n: int, rng: np.random.Generator) -> np.ndarray:
    z = rng.standard_normal((n, chol.shape[0])) @ chol.T
    return stats.norm.cdf(z)


def _sample_student_t(
    chol: np.ndarray, nu: float, n: int, rng: np.random.Generator
) -> np.ndarray:
    z = rng.standard_normal((n, chol.shape[0])) @ chol.T
    # one chi-square mixing variable shared across the vector
    w = rng.chisquare(nu, size=n)
    x = z * np.sqrt(nu / w)[:, None]
    return stats.t.cdf(x, df=nu)


def _sample_clayton(theta: float, n: int, dim: int, rng: np.random.Generator) -> np.ndarray:
    """Sequential conditional inverse.

    u_k = [A_k·(w_k^{−θ/(1+θ(k−1))} − 1) + 1]^{−1/θ},  A_k = Σ_{j<k} u_j^{−θ} − k + 2
    """
    w = open_uniform(rng, (n, dim))
    u = np.empty((n, dim))
    u[:, 0] = w[:, 0]
    with np.errstate(over="ignore"):
        acc = u[:, 0] ** -theta
        for k in range(1, dim):
            a_k = acc - k + 1
            exponent = -theta / (1 + theta * k)
            u[:, k] = (a_k * (w[:, k] ** exponent - 1) + 1) ** (-1.0 / theta)
            acc = acc + u[:, k] ** -theta
    return u


def _sample_gumbel(theta: float, n: int, dim: int, rng: np.random.Generator) -> np.ndarray:
    """Marshall-Olkin: u_i = exp(−(E_i/S)^{1/θ}) with S positive stable, index 1/θ."""
    if theta == 1.0:
        return open_uniform(rng, (n, dim))
    alpha = 1.0 / theta
    s = _positive_stable(alpha, n, rng)
    e = rng.standard_exponential((n, dim))
    return np.exp(-((e / s[:, None]) ** alpha))


def _positive_stable(alpha: float, n: int, rng: np.random.Generator) -> np.ndarray:
    """Kanter's representation of S with Laplace transform exp(−t^α), 0 < α < 1."""
    v = np.pi * open_uniform(rng, n)
    w = rng.standard_exponential(n)
    return (
        np.sin(alpha * v) / np.sin(v) ** (1.0 / alpha)
        * (np.sin((1.0 - alpha) * v) / w) ** ((1.0 - alpha) / alpha)
    )


# ---------------------------------------------------------------------------
# Derived diagnostics
# ---------------------------------------------------------------------------


def tail_dependence(config: CopulaConfig) -> TailDependence:
    """Theoretical tail-dependence coefficients implied by the parameters.

    Clayton λ_L = 2^{−1/θ}; Gumbel λ_U = 2 − 2^{1/θ};
    Student-t λ = 2·t_{ν+1}(−√((ν+1)(1−ρ)/(1+ρ))); Gaussian has none.
    """
    family = config.family
    if family == CopulaFamily.CLAYTON:
        return TailDependence(lower=float(2.0 ** (-1.0 / config.theta)), upper=0.0)
    if family == CopulaFamily.GUMBEL:
        return TailDependence(lower=0.0, upper=float(2.0 - 2.0 ** (1.0 / config.theta)))
    if family == CopulaFamily.STUDENT_T:
        rho = config.correlation[0][1] if config.correlation else config.rho
        if rho >= 1.0:
            lam = 1.0
        else:
            x = np.sqrt((config.nu + 1) * (1 - rho) / (1 + rho))
            lam = float(2 * stats.t.cdf(-x, df=config.nu + 1))
        return TailDependence(lower=lam, upper=lam)
    return TailDependence(lower=0.0, upper=0.0)


def fit_copula(
    series_a, series_b, family: CopulaFamily | str, nu: float = 4.0
) -> CopulaConfig:
    """Calibrate a bivariate copula from Kendall's τ by moment inversion.

    Gaussian/Student-t ρ = sin(πτ/2); Clayton θ = 2τ/(1−τ) floored at 0.01;
    Gumbel θ = 1/(1−τ) floored at 1.
    """
    family = CopulaFamily(family)
    tau, _ = stats.kendalltau(np.asarray(series_a, float), np.asarray(series_b, float))
    if not np.isfinite(tau):
        raise InvalidCopulaParameters(family.value, "Kendall's tau is undefined for these series")
    tau = min(float(tau), MAX_KENDALL_TAU)
    logger.debug("Kendall tau %.4f -> fitting %s copula", tau, family.value)

    if family in (CopulaFamily.GAUSSIAN, CopulaFamily.STUDENT_T):
        rho = float(np.sin(np.pi * tau / 2))
        return CopulaConfig(family=family, rho=rho, nu=nu)
    if family == CopulaFamily.CLAYTON:
        return CopulaConfig(family=family, theta=max(0.01, 2 * tau / (1 - tau)))
    return CopulaConfig(family=family, theta=max(1.0, 1 / (1 - tau)))
