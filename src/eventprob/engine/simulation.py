"""Monte Carlo event-probability orchestrator.

Simulates the event's variables jointly under a copula, evaluates the event
on every scenario and reports the probability with Wilson confidence
intervals. Each variable is also re-simulated on its own, without the
copula, to measure how much of the joint probability is due to dependence.

Scenarios are split into fixed-size batches that run on a thread pool. Every
batch draws from its own random streams keyed by (channel, batch_index), so
results depend only on the seed and never on the worker count.
"""

import logging
import math
import threading
import time
from collections.abc import Iterable, Sequence
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import TypedDict

import numpy as np
from scipy import stats

from eventprob.config import Settings
from eventprob.exceptions import SimulationAborted
from eventprob.schemas import (
    CompoundEvent,
    CopulaConfig,
    CopulaFamily,
    Decomposition,
    EventProbabilityResult,
    EventVariable,
    LogicalOperator,
    Percentiles,
    ProbabilityEstimate,
    SimulationConfig,
    ThresholdBreach,
)

from . import copulas
from .events import evaluate_event, evaluate_marginal, validate_references
from .random_streams import RandomStreams, to_normal
from .sim_models import MONTHS_PER_YEAR, Discretization, ModelType
from .sim_models.gbm import step_gbm
from .sim_models.heston import feller_condition, step_heston
from .sim_models.merton import step_merton
from .sim_models.ou import step_ou

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

Z_90 = float(stats.norm.ppf(0.95))
Z_95 = float(stats.norm.ppf(0.975))
PERCENTILE_LEVELS = (5, 25, 50, 75, 95)
VAR_PERCENTILE = 1  # 99% VaR is the 1st percentile of relative change

JOINT_CHANNEL = 0


class CancellationToken:
    """Cooperative cancellation flag shared with the worker batches."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


class BatchOutcome(TypedDict):
    batch_index: int
    size: int
    fired: int
    marginal_fired: list[int]
    terminal: np.ndarray  # (size, k) values at the simulated horizon


# ---------------------------------------------------------------------------
# Confidence intervals
# ---------------------------------------------------------------------------


def wilson_interval(successes: int, n: int, z: float) -> tuple[float, float]:
    """Wilson score interval for a binomial proportion.

    Returns (0, 1) when there are no trials.
    """
    if n <= 0:
        return 0.0, 1.0
    p = successes / n
    z2 = z * z
    denom = 1 + z2 / n
    center = (p + z2 / (2 * n)) / denom
    half = z * math.sqrt(p * (1 - p) / n + z2 / (4 * n * n)) / denom
    lower = max(0.0, min(center - half, p))
    upper = min(1.0, max(center + half, p))
    return lower, upper


# ---------------------------------------------------------------------------
# Path simulation
# ---------------------------------------------------------------------------


def _advance(
    variable: EventVariable,
    current: np.ndarray,
    variance: np.ndarray | None,
    dt: float,
    scheme: Discretization,
    shock: np.ndarray,
    rng: np.random.Generator,
) -> tuple[np.ndarray, np.ndarray | None]:
    params = variable.parameters
    model = variable.sde_model
    n = len(current)

    if model == ModelType.GBM:
        return step_gbm(current, dt, params, shock, scheme), variance
    elif model == ModelType.OU:
        return step_ou(current, dt, params, shock, scheme), variance
    elif model == ModelType.HESTON:
        variance_shock = rng.standard_normal(n)
        return step_heston(current, variance, dt, params, shock, variance_shock, scheme)
    elif model == ModelType.MERTON:
        n_jumps = rng.poisson(params.lam * dt, size=n)
        jump_shock = rng.standard_normal(n)
        return step_merton(current, dt, params, shock, n_jumps, jump_shock, scheme), variance
    raise ValueError(f"Unsupported model: {model}")


def simulate_paths(
    variables: Sequence[EventVariable],
    n: int,
    n_steps: int,
    dt: float,
    rng: np.random.Generator,
    copula: CopulaConfig | None = None,
    scheme: Discretization = Discretization.MILSTEIN,
) -> dict[str, np.ndarray]:
    """Simulate `n` scenarios of every variable over `n_steps` steps.

    Shocks are coupled through `copula` when one is given and there is more
    than one variable; otherwise they are independent standard normals.

    Returns:
        name -> (n, n_steps + 1) array, column 0 holding the initial value.
    """
    k = len(variables)
    coupled = copula is not None and k > 1

    paths = {v.name: np.empty((n, n_steps + 1)) for v in variables}
    current = [np.full(n, v.initial_value, dtype=float) for v in variables]
    variance = [
        np.full(n, v.parameters.v0) if v.sde_model == ModelType.HESTON else None
        for v in variables
    ]
    for i, v in enumerate(variables):
        paths[v.name][:, 0] = current[i]

    for step in range(1, n_steps + 1):
        if coupled:
            shocks = to_normal(copulas.sample(copula, n, k, rng))
        else:
            shocks = rng.standard_normal((n, k))
        for i, v in enumerate(variables):
            current[i], variance[i] = _advance(
                v, current[i], variance[i], dt, scheme, shocks[:, i], rng
            )
            paths[v.name][:, step] = current[i]

    return paths


def _run_batch(
    batch_index: int,
    size: int,
    event: ThresholdBreach | CompoundEvent,
    variables: Sequence[EventVariable],
    copula: CopulaConfig | None,
    streams: RandomStreams,
    n_steps: int,
    dt: float,
    scheme: Discretization,
    cancel_token: CancellationToken,
) -> BatchOutcome | None:
    """Simulate one batch; returns None when cancelled before starting."""
    if cancel_token.cancelled:
        return None

    rng = streams.generator(JOINT_CHANNEL, batch_index)
    paths = simulate_paths(variables, size, n_steps, dt, rng, copula, scheme)
    fired = evaluate_event(event, paths)

    if len(variables) == 1:
        marginal_fired = [int(np.sum(fired))]
    else:
        marginal_fired = []
        for i, v in enumerate(variables):
            marginal_rng = streams.generator(JOINT_CHANNEL + 1 + i, batch_index)
            own_paths = simulate_paths([v], size, n_steps, dt, marginal_rng, None, scheme)
            marginal_fired.append(int(np.sum(evaluate_marginal(event, v.name, own_paths))))

    return BatchOutcome(
        batch_index=batch_index,
        size=size,
        fired=int(np.sum(fired)),
        marginal_fired=marginal_fired,
        terminal=np.column_stack([paths[v.name][:, -1] for v in variables]),
    )


# ---------------------------------------------------------------------------
# Reduction
# ---------------------------------------------------------------------------


def _joint_independent(marginals: list[float], op: LogicalOperator) -> float:
    if op == LogicalOperator.OR:
        return 1.0 - float(np.prod([1.0 - p for p in marginals]))
    return float(np.prod(marginals))


def _summarise(
    event: ThresholdBreach | CompoundEvent,
    variables: Sequence[EventVariable],
    copula: CopulaConfig | None,
    outcomes: list[BatchOutcome],
    seed: int,
    started: float,
) -> EventProbabilityResult:
    outcomes = sorted(outcomes, key=lambda o: o["batch_index"])
    n = sum(o["size"] for o in outcomes)
    fired = sum(o["fired"] for o in outcomes)
    mean = fired / n

    per_variable = {
        v.name: sum(o["marginal_fired"][i] for o in outcomes) / n
        for i, v in enumerate(variables)
    }

    if len(variables) == 1:
        joint_independent = mean
        multiplier: float | None = 1.0
    else:
        op = event.operator if isinstance(event, CompoundEvent) else LogicalOperator.AND
        joint_independent = _joint_independent(list(per_variable.values()), op)
        multiplier = mean / joint_independent if joint_independent > 0 else None

    terminal = np.concatenate([o["terminal"] for o in outcomes], axis=0)
    percentiles = {}
    for i, v in enumerate(variables):
        p5, p25, p50, p75, p95 = np.percentile(terminal[:, i], PERCENTILE_LEVELS)
        percentiles[v.name] = Percentiles(
            p5=float(p5), p25=float(p25), p50=float(p50), p75=float(p75), p95=float(p95)
        )

    var_99, es_99 = _risk_metrics(terminal[:, 0], variables[0].initial_value)

    return EventProbabilityResult(
        probability=ProbabilityEstimate(
            mean=mean,
            ci_90=wilson_interval(fired, n, Z_90),
            ci_95=wilson_interval(fired, n, Z_95),
        ),
        decomposition=Decomposition(
            per_variable=per_variable,
            joint_independent=joint_independent,
            joint_copula=mean,
            copula_risk_multiplier=multiplier,
        ),
        percentiles=percentiles,
        var_99=var_99,
        es_99=es_99,
        tail_dependence=copulas.tail_dependence(copula) if copula is not None else None,
        copula_family=copula.family if copula is not None else None,
        n_scenarios=n,
        seed=seed,
        computation_time_ms=int((time.perf_counter() - started) * 1000),
    )


def _risk_metrics(terminal: np.ndarray, initial: float) -> tuple[float | None, float | None]:
    """99% VaR and expected shortfall of the relative change from `initial`."""
    if initial == 0:
        return None, None
    change = (terminal - initial) / initial
    var_99 = float(np.percentile(change, VAR_PERCENTILE))
    tail = change[change <= var_99]
    es_99 = float(np.mean(tail)) if len(tail) > 0 else var_99
    return var_99, es_99


# ---------------------------------------------------------------------------
# Main entry points
# ---------------------------------------------------------------------------


def run_event_simulation(
    event: ThresholdBreach | CompoundEvent,
    variables: Sequence[EventVariable],
    copula: CopulaConfig | None = None,
    config: SimulationConfig | None = None,
    *,
    settings: Settings | None = None,
    cancel_token: CancellationToken | None = None,
) -> EventProbabilityResult:
    """Estimate the probability of `event` by Monte Carlo.

    Only the variables the event references are simulated, in the order they
    are supplied. With a single referenced variable the copula plays no role.

    Raises:
        InvalidEventReference: The event names a variable not supplied.
        InvalidCopulaParameters: The copula is invalid for the event's dimension.
        SimulationAborted: `cancel_token` was set before every batch finished.
    """
    settings = settings or Settings()
    config = config or SimulationConfig.from_settings(settings)
    cancel_token = cancel_token or CancellationToken()

    by_name = {v.name: v for v in variables}
    validate_references(event, by_name)
    referenced = set(event.variables())
    active = [v for v in by_name.values() if v.name in referenced]
    k = len(active)

    if k > 1 and copula is not None:
        copulas.validate_copula(copula, k)
    effective_copula = copula if k > 1 else None

    for v in active:
        if v.sde_model == ModelType.HESTON:
            satisfied, ratio = feller_condition(v.parameters)
            if not satisfied:
                logger.debug("Heston variable %s violates Feller condition (%.4f)", v.name, ratio)

    n_steps = max(config.horizon_months, event.max_horizon()) // config.step_months
    dt = config.step_months / MONTHS_PER_YEAR
    streams = RandomStreams(config.seed)

    batch_size = max(1, settings.simulation_batch_size)
    n_batches = math.ceil(config.n_scenarios / batch_size)
    sizes = [
        min(batch_size, config.n_scenarios - b * batch_size) for b in range(n_batches)
    ]
    max_workers = max(1, min(settings.simulation_max_workers, n_batches))

    logger.info(
        "Simulating %d scenarios x %d months for %d variable(s) "
        "(copula=%s, %d batches, %d workers, seed=%d)",
        config.n_scenarios, n_steps, k,
        effective_copula.family.value if effective_copula else "independent",
        n_batches, max_workers, streams.seed,
    )
    started = time.perf_counter()

    outcomes: list[BatchOutcome] = []
    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        futures = {
            executor.submit(
                _run_batch, b, size, event, active, effective_copula, streams,
                n_steps, dt, config.discretization, cancel_token,
            ): b
            for b, size in enumerate(sizes)
        }
        for future in as_completed(futures):
            if future.cancelled():
                continue
            outcome = future.result()
            if outcome is not None:
                outcomes.append(outcome)
            if cancel_token.cancelled:
                for pending in futures:
                    pending.cancel()

    completed = sum(o["size"] for o in outcomes)
    if completed < config.n_scenarios:
        partial = (
            _summarise(event, active, effective_copula, outcomes, streams.seed, started)
            if outcomes else None
        )
        logger.warning(
            "Simulation cancelled after %d/%d scenarios", completed, config.n_scenarios
        )
        raise SimulationAborted(completed, config.n_scenarios, partial)

    result = _summarise(event, active, effective_copula, outcomes, streams.seed, started)
    logger.info(
        "Event probability %.4f (95%% CI %.4f-%.4f) in %d ms",
        result.probability.mean, *result.probability.ci_95, result.computation_time_ms,
    )
    return result


def compare_copulas(
    event: ThresholdBreach | CompoundEvent,
    variables: Sequence[EventVariable],
    config: SimulationConfig | None = None,
    families: Iterable[CopulaFamily | str] | None = None,
    *,
    settings: Settings | None = None,
) -> dict[str, float]:
    """Event probability under each reference copula, sharing one seed.

    Reference parameters: Gaussian ρ=0.5, Clayton θ=2, Gumbel θ=2,
    Student-t ρ=0.5 ν=4.

    Returns:
        family name -> probability mean
    """
    settings = settings or Settings()
    config = config or SimulationConfig.from_settings(settings)
    if config.seed is None:
        config = config.model_copy(update={"seed": RandomStreams(None).seed})

    families = [CopulaFamily(f) for f in families] if families else list(CopulaFamily)
    results: dict[str, float] = {}
    for family in families:
        result = run_event_simulation(
            event, variables, copulas.REFERENCE_COPULAS[family], config, settings=settings
        )
        results[family.value] = result.probability.mean
    return results
