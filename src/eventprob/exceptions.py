"""Exceptions raised by the event engine.

Hierarchy::

    EventProbError
    ├── EstimationError
    │   ├── InsufficientData         too few observations to estimate
    │   └── DegenerateFit            regression produced unusable coefficients
    ├── InvalidEventReference        event names a variable that was not supplied
    ├── InvalidCopulaParameters      copula parameters outside their domain
    └── SimulationAborted            run cancelled cooperatively

Every error is raised before caller-visible state changes, so callers can fix
the input and retry.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from eventprob.schemas import EventProbabilityResult


class EventProbError(Exception):
    """Base exception for all event engine errors."""

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.details: dict[str, Any] = details or {}


class EstimationError(EventProbError):
    """Parameter estimation failed."""


class InsufficientData(EstimationError):
    """Series has too few usable observations for the requested model.

    Attributes:
        required: Minimum number of usable observations.
        available: Number actually available.
    """

    def __init__(self, model: str, required: int, available: int) -> None:
        super().__init__(
            f"insufficient_data: {model} needs at least {required} usable "
            f"observations, got {available}",
            details={"model": model, "required": required, "available": available},
        )
        self.required = required
        self.available = available


class DegenerateFit(EstimationError):
    """Regression produced a zero denominator or non-finite coefficients."""


class InvalidEventReference(EventProbError):
    """Event definition references variables absent from the variable set.

    Attributes:
        missing: Names referenced by the event but not supplied.
        available: Names that were supplied.
    """

    def __init__(self, missing: list[str], available: list[str]) -> None:
        super().__init__(
            f"invalid_event_reference: unknown variable(s) {', '.join(missing)}. "
            f"Available: {', '.join(sorted(available)) or '(none)'}",
            details={"missing": missing},
        )
        self.missing = missing
        self.available = available


class InvalidCopulaParameters(EventProbError):
    """Copula parameters outside the family's domain."""

    def __init__(self, family: str, reason: str) -> None:
        super().__init__(
            f"invalid_copula_parameters: {family}: {reason}",
            details={"family": family},
        )
        self.family = family


class SimulationAborted(EventProbError):
    """Simulation was cancelled before all scenario batches completed.

    Attributes:
        partial_result: Statistics over the batches that finished, or None
            when no batch completed.
    """

    def __init__(
        self,
        completed_scenarios: int,
        requested_scenarios: int,
        partial_result: EventProbabilityResult | None = None,
    ) -> None:
        super().__init__(
            f"simulation_aborted: {completed_scenarios}/{requested_scenarios} "
            "scenarios completed",
            details={
                "completed_scenarios": completed_scenarios,
                "requested_scenarios": requested_scenarios,
            },
        )
        self.completed_scenarios = completed_scenarios
        self.requested_scenarios = requested_scenarios
        self.partial_result = partial_result
