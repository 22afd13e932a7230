"""Boolean event predicates over simulated paths.

Paths are arrays of shape (n_scenarios, n_steps + 1) indexed by month,
with column 0 holding the initial value. All evaluators are vectorised and
return one boolean per scenario.
"""

import logging
import operator
from collections.abc import Iterable, Mapping

import numpy as np

from eventprob.exceptions import InvalidEventReference
from eventprob.schemas import (
    BreachWindow,
    ComparisonOperator,
    CompoundEvent,
    LogicalOperator,
    ThresholdBreach,
)

logger = logging.getLogger(__name__)

_COMPARATORS = {
    ComparisonOperator.GT: operator.gt,
    ComparisonOperator.LT: operator.lt,
    ComparisonOperator.GE: operator.ge,
    ComparisonOperator.LE: operator.le,
    # exact float equality; continuous paths almost never satisfy it
    ComparisonOperator.EQ: operator.eq,
}


def compare(values, op: ComparisonOperator | str, threshold: float):
    """Apply a comparison operator element-wise."""
    return _COMPARATORS[ComparisonOperator(op)](values, threshold)


def evaluate_threshold(
    event: ThresholdBreach,
    path: np.ndarray,
    step_months: int = 1,
) -> np.ndarray:
    """Evaluate a threshold breach on one variable's paths.

    AT_HORIZON compares the value at month `horizon_months`; ANY_TIME fires
    when any value from month 0 through the horizon satisfies the comparison.
    Horizons beyond the simulated path are capped at its last step.
    """
    path = np.asarray(path)
    last = path.shape[-1] - 1
    idx = min(event.horizon_months // step_months, last)

    if event.window == BreachWindow.ANY_TIME:
        return np.any(compare(path[..., : idx + 1], event.operator, event.threshold), axis=-1)
    return compare(path[..., idx], event.operator, event.threshold)


def _combine(results: list[np.ndarray], op: LogicalOperator) -> np.ndarray:
    if op == LogicalOperator.AND:
        return np.logical_and.reduce(results)
    return np.logical_or.reduce(results)


def _bounded(condition: ThresholdBreach, horizon: int) -> ThresholdBreach:
    if condition.horizon_months <= horizon:
        return condition
    return condition.model_copy(update={"horizon_months": horizon})


def evaluate_event(
    event: ThresholdBreach | CompoundEvent,
    paths: Mapping[str, np.ndarray],
    step_months: int = 1,
) -> np.ndarray:
    """Evaluate an event against the simulated paths of every variable.

    Children of a compound event are evaluated at the earlier of their own
    horizon and the compound horizon.
    """
    if isinstance(event, ThresholdBreach):
        return evaluate_threshold(event, paths[event.variable], step_months)

    results = [
        evaluate_threshold(
            _bounded(c, event.horizon_months), paths[c.variable], step_months
        )
        for c in event.conditions
    ]
    return _combine(results, event.operator)


def evaluate_marginal(
    event: ThresholdBreach | CompoundEvent,
    variable: str,
    paths: Mapping[str, np.ndarray],
    step_months: int = 1,
) -> np.ndarray:
    """Evaluate only the conditions that reference `variable`.

    For a compound event the matching conditions are combined with the
    compound's own operator.

    Raises:
        InvalidEventReference: The event does not reference `variable`.
    """
    if isinstance(event, ThresholdBreach):
        if event.variable != variable:
            raise InvalidEventReference([variable], event.variables())
        return evaluate_threshold(event, paths[variable], step_months)

    matching = [c for c in event.conditions if c.variable == variable]
    if not matching:
        raise InvalidEventReference([variable], event.variables())
    results = [
        evaluate_threshold(_bounded(c, event.horizon_months), paths[variable], step_months)
        for c in matching
    ]
    return _combine(results, event.operator)


def validate_references(
    event: ThresholdBreach | CompoundEvent,
    variables: Iterable[str],
) -> None:
    """Raise InvalidEventReference if the event names an unsupplied variable."""
    available = list(variables)
    missing = [name for name in event.variables() if name not in available]
    if missing:
        logger.debug("Event references unknown variables: %s", missing)
        raise InvalidEventReference(missing, available)
