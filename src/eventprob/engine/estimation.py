"""Parameter estimation for the SDE model family.

The estimator dispatches to the per-model fit in `sim_models` and wraps the
result with standard errors, confidence intervals and residual diagnostics.
Those statistics sit behind `InferenceStrategy`; the shipped
`ApproximateInference` uses deliberately crude rules (SE = |p|/√n) rather
than Fisher-information errors.
"""

import logging
from abc import ABC, abstractmethod
from collections.abc import Iterable, Sequence

import numpy as np
import pandas as pd

from eventprob.exceptions import EstimationError, InsufficientData
from eventprob.schemas import (
    DataFrequency,
    EstimationDiagnostics,
    EventVariable,
    ModelRanking,
    ModelSelection,
    ParameterEstimate,
    TimeSeries,
)

from .sim_models import ModelFit, ModelType
from .sim_models.gbm import estimate_gbm
from .sim_models.heston import estimate_heston
from .sim_models.merton import estimate_merton
from .sim_models.ou import estimate_ou, half_life

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

Z_95 = 1.96
JB_CRITICAL_95 = 5.99  # chi-square(2) at 95%
HETEROSKEDASTICITY_ACF = 0.2


# ---------------------------------------------------------------------------
# Inference strategies
# ---------------------------------------------------------------------------


class InferenceStrategy(ABC):
    """Statistics computed on top of a point estimate."""

    @abstractmethod
    def standard_errors(self, parameters: dict[str, float], n: int) -> dict[str, float]:
        ...

    @abstractmethod
    def confidence_intervals(
        self, parameters: dict[str, float], standard_errors: dict[str, float]
    ) -> dict[str, tuple[float, float]]:
        ...

    @abstractmethod
    def diagnostics(self, fit: ModelFit, n: int) -> EstimationDiagnostics:
        ...


class ApproximateInference(InferenceStrategy):
    """Heuristic inference.

    - SE[p] = |p| / √n
    - CI = p ± 1.96·SE[p]
    - Jarque-Bera normality at 5.99, heteroskedasticity when the lag-1
      autocorrelation of squared residuals exceeds 0.2 in magnitude
    """

    def standard_errors(self, parameters: dict[str, float], n: int) -> dict[str, float]:
        root_n = np.sqrt(n)
        return {name: abs(value) / root_n for name, value in parameters.items()}

    def confidence_intervals(
        self, parameters: dict[str, float], standard_errors: dict[str, float]
    ) -> dict[str, tuple[float, float]]:
        return {
            name: (value - Z_95 * standard_errors[name], value + Z_95 * standard_errors[name])
            for name, value in parameters.items()
        }

    def diagnostics(self, fit: ModelFit, n: int) -> EstimationDiagnostics:
        parameters = fit["parameters"].as_dict()
        log_likelihood = fit["log_likelihood"]
        k = len(parameters)

        aic = 2 * k - 2 * log_likelihood
        bic = k * np.log(n) - 2 * log_likelihood

        residuals = np.asarray(fit["residuals"], dtype=float)
        skew, kurt = _moments(residuals)
        jb = n / 6 * (skew**2 + (kurt - 3) ** 2 / 4)
        acf_sq = _autocorrelation(residuals**2, lag=1)

        convergence = bool(
            np.isfinite(log_likelihood)
            and all(np.isfinite(v) for v in parameters.values())
        )

        return EstimationDiagnostics(
            log_likelihood=log_likelihood,
            aic=float(aic),
            bic=float(bic),
            convergence=convergence,
            residual_normality=bool(jb < JB_CRITICAL_95),
            heteroskedasticity=bool(abs(acf_sq) > HETEROSKEDASTICITY_ACF),
            jarque_bera=float(jb),
            residual_acf_sq=float(acf_sq),
        )


def _moments(data: np.ndarray) -> tuple[float, float]:
    """Skewness and (non-excess) kurtosis standardised by the sample
    standard deviation (ddof=1); (0, 3) for constant or single-point data."""
    if len(data) < 2:
        return 0.0, 3.0
    std = float(np.std(data, ddof=1))
    if std == 0.0:
        return 0.0, 3.0
    z = (data - np.mean(data)) / std
    return float(np.mean(z**3)), float(np.mean(z**4))


def _autocorrelation(data: np.ndarray, lag: int) -> float:
    n = len(data)
    if n <= lag:
        return 0.0
    centered = data - np.mean(data)
    denominator = float(np.sum(centered**2))
    if denominator == 0.0:
        return 0.0
    return float(np.sum(centered[lag:] * centered[:-lag])) / denominator


# ---------------------------------------------------------------------------
# Estimator
# ---------------------------------------------------------------------------


def _as_array(series: TimeSeries | pd.Series | Sequence[float]) -> np.ndarray:
    if isinstance(series, TimeSeries):
        values = np.asarray(series.values, dtype=float)
    elif isinstance(series, pd.Series):
        values = series.to_numpy(dtype=float)
    else:
        values = np.asarray(list(series), dtype=float)
    finite = np.isfinite(values)
    if not np.all(finite):
        logger.debug("Dropping %d non-finite observations", int(np.sum(~finite)))
    return values[finite]


class ParameterEstimator:
    """Fit an SDE model to a historical series."""

    def __init__(self, inference: InferenceStrategy | None = None):
        self.inference = inference or ApproximateInference()

    def estimate(
        self,
        series: TimeSeries | pd.Series | Sequence[float],
        model: ModelType | str,
    ) -> ParameterEstimate:
        """Estimate parameters for `model`.

        Raises:
            InsufficientData: Too few usable observations for the model.
            DegenerateFit: The underlying regression is degenerate.
        """
        model = ModelType(model)
        values = _as_array(series)
        n = len(values)
        if n == 0:
            raise InsufficientData(model.value, 1, 0)

        if model == ModelType.GBM:
            fit = estimate_gbm(values)
        elif model == ModelType.OU:
            fit = estimate_ou(values)
        elif model == ModelType.HESTON:
            fit = estimate_heston(values)
        elif model == ModelType.MERTON:
            fit = estimate_merton(values)
        else:
            raise ValueError(f"Unsupported model: {model}")

        for warning in fit["warnings"]:
            logger.warning("%s fit: %s", model.value, warning)

        parameters = fit["parameters"].as_dict()
        standard_errors = self.inference.standard_errors(parameters, n)
        confidence_intervals = self.inference.confidence_intervals(parameters, standard_errors)
        diagnostics = self.inference.diagnostics(fit, n)

        logger.info(
            "Estimated %s on %d observations (logL=%.2f, AIC=%.2f)",
            model.value, n, diagnostics.log_likelihood, diagnostics.aic,
        )

        return ParameterEstimate(
            model=model,
            parameters=fit["parameters"],
            standard_errors=standard_errors,
            confidence_intervals=confidence_intervals,
            diagnostics=diagnostics,
            n_observations=n,
            interpretation=interpret(model, fit["parameters"]),
            warnings=fit["warnings"],
        )


def interpret(model: ModelType, parameters) -> str:
    """One-line plain-text summary of the fitted dynamics."""
    if model == ModelType.GBM:
        return (
            f"GBM: drift {parameters.mu * 100:.2f}% per year, "
            f"volatility {parameters.sigma * 100:.2f}%."
        )
    if model == ModelType.OU:
        return (
            f"Ornstein-Uhlenbeck: mean reversion θ={parameters.theta:.2f} "
            f"(half-life {half_life(parameters.theta):.2f} years), "
            f"long-run mean μ={parameters.mu:.4f}."
        )
    if model == ModelType.HESTON:
        return (
            f"Heston: long-run variance θ={parameters.theta:.4f}, "
            f"vol-of-vol ξ={parameters.xi:.2f}, correlation ρ={parameters.rho:.2f}."
        )
    return (
        f"Merton: {parameters.lam:.2f} jumps per year with mean size "
        f"{parameters.mu_jump * 100:.2f}%, diffusion volatility {parameters.sigma * 100:.2f}%."
    )


def estimate_parameters(
    series: TimeSeries | pd.Series | Sequence[float],
    model: ModelType | str,
) -> ParameterEstimate:
    """Estimate with the default approximate inference."""
    return ParameterEstimator().estimate(series, model)


def select_model(
    series: TimeSeries | pd.Series | Sequence[float],
    models: Iterable[ModelType | str] | None = None,
    estimator: ParameterEstimator | None = None,
) -> ModelSelection:
    """Fit every candidate model and rank the successful fits by AIC.

    Ties on AIC fall back to BIC. Candidates whose estimation fails are
    recorded in `failures` with their error message.

    Raises:
        EstimationError: No candidate could be fitted.
    """
    estimator = estimator or ParameterEstimator()
    candidates = list(dict.fromkeys(ModelType(m) for m in models)) if models else list(ModelType)
    values = _as_array(series)

    estimates: list[ParameterEstimate] = []
    failures: dict[str, str] = {}
    for model in candidates:
        try:
            estimates.append(estimator.estimate(values, model))
        except EstimationError as e:
            logger.warning("Model selection: %s failed: %s", model.value, e)
            failures[model.value] = str(e)

    if not estimates:
        raise EstimationError(
            f"no candidate model could be fitted ({', '.join(failures)})",
            details={"failures": failures},
        )

    estimates.sort(key=lambda e: (e.diagnostics.aic, e.diagnostics.bic))
    ranking = [
        ModelRanking(
            rank=i + 1,
            model=e.model,
            aic=e.diagnostics.aic,
            bic=e.diagnostics.bic,
            estimate=e,
        )
        for i, e in enumerate(estimates)
    ]

    logger.info(
        "Selected %s by AIC among %d fitted model(s)",
        ranking[0].model.value, len(ranking),
    )
    return ModelSelection(
        recommended_model=ranking[0].model,
        ranking=ranking,
        failures=failures,
    )


def calibrate_variable(
    name: str,
    series: TimeSeries | pd.Series | Sequence[float],
    model: ModelType | str,
    label: str | None = None,
    sampling_frequency: DataFrequency | str = DataFrequency.DAILY,
) -> EventVariable:
    """Estimate `model` on `series` and build an event variable starting
    from the last observation."""
    values = _as_array(series)
    estimate = estimate_parameters(values, model)
    return EventVariable(
        name=name,
        label=label,
        sde_model=estimate.model,
        parameters=estimate.parameters,
        initial_value=float(values[-1]),
        sampling_frequency=sampling_frequency,
    )
