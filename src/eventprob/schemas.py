"""Pydantic data model for the event engine."""

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Union

import pandas as pd
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from eventprob.engine.sim_models import (
    Discretization,
    ModelType,
    SDEParameters,
)


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True)


# --- Historical data ---


class TimeSeries(_Frozen):
    values: list[float] = Field(description="Observations in chronological order")
    index: list[float] | list[datetime] | None = Field(
        None, description="Optional strictly increasing timestamps or positions"
    )

    @model_validator(mode="after")
    def _check_index(self) -> "TimeSeries":
        if self.index is None:
            return self
        if len(self.index) != len(self.values):
            raise ValueError(
                f"index length {len(self.index)} != values length {len(self.values)}"
            )
        for prev, curr in zip(self.index, self.index[1:]):
            if not curr > prev:
                raise ValueError("index must be strictly increasing")
        return self

    @classmethod
    def from_pandas(cls, series: pd.Series) -> "TimeSeries":
        series = series.dropna()
        index = series.index
        if isinstance(index, pd.DatetimeIndex):
            idx: list[Any] | None = [ts.to_pydatetime() for ts in index]
        elif pd.api.types.is_numeric_dtype(index) and not isinstance(index, pd.RangeIndex):
            idx = [float(i) for i in index]
        else:
            idx = None
        return cls(values=[float(v) for v in series.to_numpy()], index=idx)

    def __len__(self) -> int:
        return len(self.values)


# --- Estimation ---


class EstimationDiagnostics(_Frozen):
    log_likelihood: float
    aic: float
    bic: float
    convergence: bool
    residual_normality: bool
    heteroskedasticity: bool
    jarque_bera: float = Field(description="Jarque-Bera statistic of the residuals")
    residual_acf_sq: float = Field(description="Lag-1 autocorrelation of squared residuals")


class ParameterEstimate(_Frozen):
    model: ModelType
    parameters: SDEParameters
    standard_errors: dict[str, float]
    confidence_intervals: dict[str, tuple[float, float]]
    diagnostics: EstimationDiagnostics
    n_observations: int
    interpretation: str = ""
    warnings: list[str] = Field(default_factory=list)


class ModelRanking(_Frozen):
    rank: int = Field(ge=1)
    model: ModelType
    aic: float
    bic: float
    estimate: ParameterEstimate


class ModelSelection(_Frozen):
    recommended_model: ModelType
    ranking: list[ModelRanking] = Field(description="Successful fits, lowest AIC first")
    failures: dict[str, str] = Field(
        default_factory=dict, description="Model name -> estimation error"
    )


# --- Variables ---


class DataFrequency(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    YEARLY = "yearly"


class EventVariable(_Frozen):
    name: str = Field(min_length=1)
    label: str | None = None
    sde_model: ModelType
    parameters: SDEParameters
    initial_value: float
    sampling_frequency: DataFrequency = DataFrequency.MONTHLY

    @field_validator("sde_model", mode="before")
    @classmethod
    def _parse_model(cls, value: Any) -> Any:
        return ModelType(value) if isinstance(value, str) else value

    @field_validator("parameters", mode="before")
    @classmethod
    def _tag_parameters(cls, value: Any, info) -> Any:
        # bare parameter dicts take their variant from sde_model
        if isinstance(value, dict) and "model" not in value and "sde_model" in info.data:
            value = {**value, "model": ModelType(info.data["sde_model"]).value}
        return value

    @model_validator(mode="after")
    def _check_variant(self) -> "EventVariable":
        if self.parameters.model != self.sde_model.value:
            raise ValueError(
                f"parameters for {self.parameters.model} do not match sde_model "
                f"{self.sde_model.value}"
            )
        return self


# --- Events ---


class ComparisonOperator(str, Enum):
    GT = ">"
    LT = "<"
    GE = ">="
    LE = "<="
    EQ = "=="


class LogicalOperator(str, Enum):
    AND = "AND"
    OR = "OR"


class BreachWindow(str, Enum):
    AT_HORIZON = "at_horizon"
    ANY_TIME = "any_time"


class ThresholdBreach(_Frozen):
    type: Literal["threshold_breach"] = "threshold_breach"
    variable: str
    operator: ComparisonOperator
    threshold: float
    horizon_months: int = Field(ge=1)
    window: BreachWindow = BreachWindow.AT_HORIZON
    label: str | None = None

    def variables(self) -> list[str]:
        return [self.variable]

    def max_horizon(self) -> int:
        return self.horizon_months


class CompoundEvent(_Frozen):
    type: Literal["compound"] = "compound"
    operator: LogicalOperator
    conditions: list[ThresholdBreach] = Field(min_length=1)
    horizon_months: int = Field(ge=1)
    label: str | None = None

    def variables(self) -> list[str]:
        return list(dict.fromkeys(c.variable for c in self.conditions))

    def max_horizon(self) -> int:
        return self.horizon_months


EventDefinition = Annotated[
    Union[ThresholdBreach, CompoundEvent],
    Field(discriminator="type"),
]


# --- Copula ---


class CopulaFamily(str, Enum):
    GAUSSIAN = "gaussian"
    CLAYTON = "clayton"
    GUMBEL = "gumbel"
    STUDENT_T = "student_t"


class CopulaConfig(_Frozen):
    family: CopulaFamily
    rho: float = Field(0.0, description="Pairwise correlation (Gaussian, Student-t)")
    nu: float = Field(4.0, description="Degrees of freedom (Student-t)")
    theta: float | None = Field(None, description="Dependence parameter (Clayton, Gumbel)")
    correlation: list[list[float]] | None = Field(
        None, description="Full correlation matrix overriding rho"
    )


class TailDependence(_Frozen):
    lower: float
    upper: float


# --- Simulation ---


class SimulationConfig(_Frozen):
    n_scenarios: int = Field(10000, gt=0)
    horizon_months: int = Field(12, ge=1)
    step_months: Literal[1] = 1
    discretization: Discretization = Discretization.MILSTEIN
    seed: int | None = Field(None, ge=0)

    @classmethod
    def from_settings(cls, settings, **overrides: Any) -> "SimulationConfig":
        values = {
            "n_scenarios": settings.simulation_num_scenarios,
            "horizon_months": settings.simulation_horizon_months,
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


class ProbabilityEstimate(_Frozen):
    mean: float = Field(ge=0, le=1)
    ci_90: tuple[float, float]
    ci_95: tuple[float, float]


class Decomposition(_Frozen):
    per_variable: dict[str, float]
    joint_independent: float
    joint_copula: float
    copula_risk_multiplier: float | None = Field(
        description="joint_copula / joint_independent; None when joint_independent is 0"
    )


class Percentiles(_Frozen):
    p5: float
    p25: float
    p50: float
    p75: float
    p95: float


class EventProbabilityResult(_Frozen):
    probability: ProbabilityEstimate
    decomposition: Decomposition
    percentiles: dict[str, Percentiles]
    var_99: float | None = None
    es_99: float | None = None
    tail_dependence: TailDependence | None = None
    copula_family: CopulaFamily | None = None
    n_scenarios: int
    seed: int
    computation_time_ms: int


class SimulationRequest(BaseModel):
    """Bundle of run inputs, as read by the command line."""
    event: EventDefinition
    variables: list[EventVariable]
    copula: CopulaConfig | None = None
    config: SimulationConfig = Field(default_factory=SimulationConfig)
