"""Stochastic differential equation models.

Provides the closed family of models used by the event engine:
- GBM: Geometric Brownian Motion
- OU: Ornstein-Uhlenbeck mean reversion (Vasicek is an alias)
- HESTON: Heston stochastic volatility (two-factor)
- MERTON: Merton jump-diffusion

Each model module exposes a vectorised step function and an estimator.
Parameters are a tagged union with one variant per model type.
"""

from enum import Enum
from typing import Annotated, Literal, TypedDict, Union

import numpy as np
from pydantic import BaseModel, ConfigDict, Field

TRADING_DAYS_PER_YEAR = 252
MONTHS_PER_YEAR = 12
ESTIMATION_DT = 1.0 / TRADING_DAYS_PER_YEAR
VALUE_FLOOR = 1e-10  # keeps multiplicative processes strictly positive


class ModelType(str, Enum):
    GBM = "gbm"
    OU = "ornstein_uhlenbeck"
    VASICEK = "ornstein_uhlenbeck"
    HESTON = "heston"
    MERTON = "merton_jump"

    @classmethod
    def _missing_(cls, value):
        if isinstance(value, str):
            key = value.strip().lower()
            if key in ("vasicek", "ou"):
                return cls.OU
            if key in ("merton", "jump_diffusion"):
                return cls.MERTON
            for member in cls:
                if member.value == key:
                    return member
        return None


class Discretization(str, Enum):
    MILSTEIN = "milstein"
    EULER = "euler"
    EXACT = "exact"


class _Params(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="forbid")

    def as_dict(self) -> dict[str, float]:
        """Parameter name -> value, using the model's fixed parameter names."""
        return self.model_dump(by_alias=True, exclude={"model"})


class GBMParams(_Params):
    """dX = μX dt + σX dW"""
    model: Literal["gbm"] = "gbm"
    mu: float
    sigma: float = Field(ge=0)


class OUParams(_Params):
    """dX = θ(μ − X) dt + σ dW"""
    model: Literal["ornstein_uhlenbeck"] = "ornstein_uhlenbeck"
    theta: float = Field(gt=0)
    mu: float
    sigma: float = Field(ge=0)


class HestonParams(_Params):
    """dS = μS dt + √v S dW₁, dv = κ(θ − v) dt + ξ√v dW₂, corr(W₁, W₂) = ρ"""
    model: Literal["heston"] = "heston"
    mu: float
    kappa: float = Field(ge=0)
    theta: float = Field(ge=0)
    xi: float = Field(ge=0)
    rho: float = Field(ge=-1, le=1)
    v0: float = Field(ge=0)


class MertonParams(_Params):
    """dS/S = μ dt + σ dW + (J − 1) dN, N ~ Poisson(λ), ln J ~ N(μ_J, σ_J²)"""
    model: Literal["merton_jump"] = "merton_jump"
    mu: float
    sigma: float = Field(ge=0)
    lam: float = Field(ge=0, alias="lambda")
    mu_jump: float
    sigma_jump: float = Field(ge=0)


SDEParameters = Annotated[
    Union[GBMParams, OUParams, HestonParams, MertonParams],
    Field(discriminator="model"),
]


class ModelFit(TypedDict):
    """Standard return type for all model estimators."""
    parameters: GBMParams | OUParams | HestonParams | MertonParams
    log_likelihood: float
    residuals: np.ndarray
    warnings: list[str]


__all__ = [
    "ModelType",
    "Discretization",
    "GBMParams",
    "OUParams",
    "HestonParams",
    "MertonParams",
    "SDEParameters",
    "ModelFit",
    "TRADING_DAYS_PER_YEAR",
    "MONTHS_PER_YEAR",
    "ESTIMATION_DT",
    "VALUE_FLOOR",
]
