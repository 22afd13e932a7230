"""Tests for the Monte Carlo event orchestrator."""

import threading

import numpy as np
import pytest
from scipy import stats

from eventprob.config import Settings
from eventprob.engine.copulas import REFERENCE_COPULAS
from eventprob.engine.sim_models import (
    GBMParams,
    HestonParams,
    MertonParams,
    ModelType,
    OUParams,
)
from eventprob.engine.simulation import (
    CancellationToken,
    compare_copulas,
    run_event_simulation,
    simulate_paths,
    wilson_interval,
)
from eventprob.exceptions import (
    InvalidCopulaParameters,
    InvalidEventReference,
    SimulationAborted,
)
from eventprob.schemas import (
    BreachWindow,
    CompoundEvent,
    CopulaConfig,
    CopulaFamily,
    EventVariable,
    LogicalOperator,
    SimulationConfig,
    ThresholdBreach,
)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

# one monthly step of a unit OU started at its mean is N(0, 1/12)
ONE_MONTH_SD = np.sqrt(1 / 12)
LOWER_10 = float(stats.norm.ppf(0.1)) * ONE_MONTH_SD


def _ou(name, theta=1.0, mu=0.0, sigma=1.0, initial_value=0.0):
    return EventVariable(
        name=name,
        sde_model=ModelType.OU,
        parameters=OUParams(theta=theta, mu=mu, sigma=sigma),
        initial_value=initial_value,
    )


def _flat_gbm(name, mu, initial_value=100.0):
    """Zero volatility: every scenario follows the same path."""
    return EventVariable(
        name=name,
        sde_model=ModelType.GBM,
        parameters=GBMParams(mu=mu, sigma=0.0),
        initial_value=initial_value,
    )


def _breach(variable, op, threshold, horizon=12, window=BreachWindow.AT_HORIZON):
    return ThresholdBreach(
        variable=variable, operator=op, threshold=threshold,
        horizon_months=horizon, window=window,
    )


def _both(op, threshold, horizon=12, logical=LogicalOperator.AND):
    return CompoundEvent(
        operator=logical,
        conditions=[_breach("x", op, threshold, horizon), _breach("y", op, threshold, horizon)],
        horizon_months=horizon,
    )


def _stable_fields(result):
    return result.model_dump(exclude={"computation_time_ms"})


# ---------------------------------------------------------------------------
# Wilson interval
# ---------------------------------------------------------------------------

class TestWilsonInterval:
    def test_known_value(self):
        lo, hi = wilson_interval(50, 100, 1.96)
        assert lo == pytest.approx(0.40383, abs=1e-4)
        assert hi == pytest.approx(0.59617, abs=1e-4)

    def test_no_trials(self):
        assert wilson_interval(0, 0, 1.96) == (0.0, 1.0)

    def test_extremes(self):
        lo, hi = wilson_interval(0, 1000, 1.96)
        assert lo == 0.0 and 0.0 < hi < 0.01
        lo, hi = wilson_interval(1000, 1000, 1.96)
        assert 0.99 < lo < 1.0 and hi == 1.0

    def test_contains_estimate(self):
        for k in range(0, 101):
            lo, hi = wilson_interval(k, 100, 1.6448536269514722)
            assert 0.0 <= lo <= k / 100 <= hi <= 1.0


# ---------------------------------------------------------------------------
# Path simulation
# ---------------------------------------------------------------------------

class TestSimulatePaths:
    def test_shape_and_initial_column(self, rng):
        variables = [_ou("x", initial_value=0.5), _flat_gbm("y", 0.12)]
        paths = simulate_paths(
            variables, 200, 12, 1 / 12, rng, REFERENCE_COPULAS[CopulaFamily.CLAYTON]
        )
        assert set(paths) == {"x", "y"}
        assert paths["x"].shape == (200, 13)
        np.testing.assert_array_equal(paths["x"][:, 0], 0.5)
        np.testing.assert_allclose(paths["y"][:, -1], 100 * 1.01**12)

    def test_heston_variance_carried(self, rng):
        variable = EventVariable(
            name="s", sde_model=ModelType.HESTON,
            parameters=HestonParams(mu=0.05, kappa=2.0, theta=0.04, xi=0.3, rho=-0.7, v0=0.04),
            initial_value=100.0,
        )
        paths = simulate_paths([variable], 5000, 12, 1 / 12, rng)
        terminal = paths["s"][:, -1]
        assert np.all(terminal > 0)
        # annual log-return sd should sit near √θ = 0.2
        assert np.std(np.log(terminal / 100.0)) == pytest.approx(0.2, abs=0.03)


# ---------------------------------------------------------------------------
# Reproducibility
# ---------------------------------------------------------------------------

class TestReproducibility:
    def test_same_seed_same_result(self, settings):
        event = _both("<", -0.1)
        variables = [_ou("x"), _ou("y")]
        copula = REFERENCE_COPULAS[CopulaFamily.STUDENT_T]
        config = SimulationConfig(n_scenarios=3000, seed=7)

        a = run_event_simulation(event, variables, copula, config, settings=settings)
        b = run_event_simulation(event, variables, copula, config, settings=settings)
        assert _stable_fields(a) == _stable_fields(b)

    def test_independent_of_worker_count(self):
        event = _both(">", 0.2)
        variables = [_ou("x"), _ou("y")]
        copula = REFERENCE_COPULAS[CopulaFamily.GUMBEL]
        config = SimulationConfig(n_scenarios=4000, seed=11)

        serial = run_event_simulation(
            event, variables, copula, config,
            settings=Settings(simulation_batch_size=500, simulation_max_workers=1),
        )
        parallel = run_event_simulation(
            event, variables, copula, config,
            settings=Settings(simulation_batch_size=500, simulation_max_workers=4),
        )
        assert _stable_fields(serial) == _stable_fields(parallel)

    def test_generated_seed_is_recorded(self, settings):
        event = _breach("x", ">", 0.0)
        config = SimulationConfig(n_scenarios=1000)
        first = run_event_simulation(event, [_ou("x")], config=config, settings=settings)
        replay = run_event_simulation(
            event, [_ou("x")],
            config=config.model_copy(update={"seed": first.seed}),
            settings=settings,
        )
        assert replay.probability == first.probability


# ---------------------------------------------------------------------------
# Probability estimates
# ---------------------------------------------------------------------------

class TestProbability:
    def test_cpi_example(self, cpi_variable, settings):
        event = _breach("cpi_inflation", ">", 0.08)
        config = SimulationConfig(n_scenarios=10000, seed=42)
        result = run_event_simulation(event, [cpi_variable], config=config, settings=settings)

        # terminal sd ~0.008 puts 0.08 about five sd out, so the estimate is
        # 0 and the interval can only contain it at its lower bound
        p = result.probability
        assert 0.0 <= p.mean < 0.05
        assert p.ci_90[0] <= p.mean <= p.ci_90[1] < 1.0
        assert p.ci_95[0] <= p.ci_90[0] and p.ci_90[1] <= p.ci_95[1]
        assert result.n_scenarios == 10000
        assert result.seed == 42

    def test_cpi_closer_threshold(self, cpi_variable, settings):
        # terminal mean ~0.040 with sd ~0.008, so P(X > 0.055) is about 3%
        event = _breach("cpi_inflation", ">", 0.055)
        config = SimulationConfig(n_scenarios=10000, seed=42)
        p = run_event_simulation(event, [cpi_variable], config=config, settings=settings).probability
        assert 0.01 < p.mean < 0.06
        assert p.ci_90[0] < p.mean < p.ci_90[1]

    def test_ci_narrows_with_more_scenarios(self, settings):
        event = _breach("x", ">", 0.0)
        widths = []
        for n in (1000, 4000, 16000):
            config = SimulationConfig(n_scenarios=n, seed=3)
            p = run_event_simulation(event, [_ou("x")], config=config, settings=settings).probability
            widths.append(p.ci_95[1] - p.ci_95[0])
        assert widths[0] > widths[1] > widths[2]

    def test_event_horizon_extends_simulation(self, settings):
        # 100·1.01^12 = 112.68 is only reached at month 12
        event = _breach("x", ">", 112.0, horizon=12)
        config = SimulationConfig(n_scenarios=500, horizon_months=1, seed=1)
        result = run_event_simulation(event, [_flat_gbm("x", 0.12)], config=config, settings=settings)
        assert result.probability.mean == 1.0
        assert result.percentiles["x"].p50 == pytest.approx(100 * 1.01**12)

    def test_any_time_includes_initial_value(self, settings):
        config = SimulationConfig(n_scenarios=500, seed=1)
        variables = [_flat_gbm("x", -0.12)]
        any_time = _breach("x", ">", 99.5, window=BreachWindow.ANY_TIME)
        at_horizon = _breach("x", ">", 99.5)
        assert run_event_simulation(any_time, variables, config=config, settings=settings).probability.mean == 1.0
        assert run_event_simulation(at_horizon, variables, config=config, settings=settings).probability.mean == 0.0

    def test_mixed_models_summary(self, settings):
        variables = [
            EventVariable(
                name="equity", sde_model=ModelType.HESTON,
                parameters=HestonParams(mu=0.07, kappa=2.0, theta=0.04, xi=0.3, rho=-0.7, v0=0.04),
                initial_value=100.0,
            ),
            EventVariable(
                name="commodity", sde_model=ModelType.MERTON,
                parameters=MertonParams(mu=0.03, sigma=0.25, lam=0.5, mu_jump=-0.1, sigma_jump=0.1),
                initial_value=50.0,
            ),
            _ou("rate", theta=0.5, mu=0.03, sigma=0.01, initial_value=0.04),
        ]
        event = CompoundEvent(
            operator=LogicalOperator.OR,
            conditions=[
                _breach("equity", "<", 80.0),
                _breach("commodity", "<", 40.0),
                _breach("rate", ">", 0.05, window=BreachWindow.ANY_TIME),
            ],
            horizon_months=12,
        )
        config = SimulationConfig(n_scenarios=4000, seed=5)
        result = run_event_simulation(
            event, variables, REFERENCE_COPULAS[CopulaFamily.STUDENT_T], config, settings=settings
        )

        assert 0.0 < result.probability.mean < 1.0
        assert set(result.percentiles) == {"equity", "commodity", "rate"}
        for pct in result.percentiles.values():
            assert pct.p5 <= pct.p25 <= pct.p50 <= pct.p75 <= pct.p95
        assert result.es_99 <= result.var_99 < 0.0
        assert result.copula_family is CopulaFamily.STUDENT_T
        assert result.tail_dependence.lower == result.tail_dependence.upper > 0.0

    def test_unreferenced_variables_not_simulated(self, settings):
        config = SimulationConfig(n_scenarios=500, seed=1)
        result = run_event_simulation(
            _breach("x", ">", 0.0), [_ou("x"), _ou("unused")], config=config, settings=settings
        )
        assert set(result.percentiles) == {"x"}
        assert set(result.decomposition.per_variable) == {"x"}

    def test_var_omitted_for_zero_initial_value(self, settings):
        config = SimulationConfig(n_scenarios=500, seed=1)
        result = run_event_simulation(_breach("x", ">", 0.0), [_ou("x")], config=config, settings=settings)
        assert result.var_99 is None
        assert result.es_99 is None


# ---------------------------------------------------------------------------
# Decomposition
# ---------------------------------------------------------------------------

class TestDecomposition:
    @pytest.mark.parametrize(
        "copula",
        [None, *REFERENCE_COPULAS.values(), CopulaConfig(family=CopulaFamily.CLAYTON)],
    )
    def test_single_variable_degenerate(self, copula, settings):
        event = _breach("x", ">", 0.1)
        config = SimulationConfig(n_scenarios=2000, seed=21)
        result = run_event_simulation(event, [_ou("x")], copula, config, settings=settings)
        baseline = run_event_simulation(event, [_ou("x")], None, config, settings=settings)

        d = result.decomposition
        assert d.joint_copula == d.joint_independent == d.per_variable["x"]
        assert d.joint_copula == result.probability.mean
        assert d.copula_risk_multiplier == 1.0
        assert result.copula_family is None
        assert result.tail_dependence is None
        assert result.probability == baseline.probability

    def test_gaussian_zero_correlation_is_independent(self, settings):
        config = SimulationConfig(n_scenarios=50000, seed=99)
        copula = CopulaConfig(family=CopulaFamily.GAUSSIAN, rho=0.0)
        result = run_event_simulation(
            _both(">", 0.0), [_ou("x"), _ou("y")], copula, config, settings=settings
        )

        d = result.decomposition
        assert result.probability.mean == pytest.approx(0.25, abs=0.01)
        assert d.per_variable["x"] == pytest.approx(0.5, abs=0.01)
        assert d.per_variable["y"] == pytest.approx(0.5, abs=0.01)
        assert d.joint_independent == pytest.approx(0.25, abs=0.01)
        assert d.copula_risk_multiplier == pytest.approx(1.0, abs=0.06)

    def test_clayton_lower_tail_asymmetry(self, settings):
        copula = CopulaConfig(family=CopulaFamily.CLAYTON, theta=2.0)
        config = SimulationConfig(n_scenarios=20000, horizon_months=1, seed=17)
        variables = [_ou("x"), _ou("y")]

        lower = run_event_simulation(
            _both("<", LOWER_10, horizon=1), variables, copula, config, settings=settings
        )
        upper = run_event_simulation(
            _both(">", -LOWER_10, horizon=1), variables, copula, config, settings=settings
        )

        # C(0.1, 0.1) ≈ 0.071 in the lower tail against ≈ 0.025 in the upper
        assert lower.probability.mean > upper.probability.mean + 0.02
        assert lower.decomposition.joint_independent == pytest.approx(0.01, abs=0.005)
        assert lower.probability.mean > 3 * lower.decomposition.joint_independent
        assert lower.decomposition.copula_risk_multiplier > 3.0
        assert lower.tail_dependence.lower == pytest.approx(2**-0.5)
        assert lower.copula_family is CopulaFamily.CLAYTON

    def test_and_uses_product(self, settings):
        config = SimulationConfig(n_scenarios=3000, seed=4)
        result = run_event_simulation(
            _both(">", 0.2), [_ou("x"), _ou("y")],
            REFERENCE_COPULAS[CopulaFamily.GAUSSIAN], config, settings=settings,
        )
        d = result.decomposition
        assert d.joint_independent == pytest.approx(d.per_variable["x"] * d.per_variable["y"])
        assert d.copula_risk_multiplier == pytest.approx(d.joint_copula / d.joint_independent)

    def test_or_uses_complement_product(self, settings):
        config = SimulationConfig(n_scenarios=3000, seed=4)
        result = run_event_simulation(
            _both(">", 0.2, logical=LogicalOperator.OR), [_ou("x"), _ou("y")],
            REFERENCE_COPULAS[CopulaFamily.GAUSSIAN], config, settings=settings,
        )
        d = result.decomposition
        px, py = d.per_variable["x"], d.per_variable["y"]
        assert d.joint_independent == pytest.approx(1 - (1 - px) * (1 - py))

    def test_multiplier_unavailable_when_independent_is_zero(self, settings):
        config = SimulationConfig(n_scenarios=1000, seed=4)
        result = run_event_simulation(
            _both(">", 1000.0), [_flat_gbm("x", 0.05), _flat_gbm("y", 0.05)],
            REFERENCE_COPULAS[CopulaFamily.GAUSSIAN], config, settings=settings,
        )
        assert result.probability.mean == 0.0
        assert result.decomposition.joint_independent == 0.0
        assert result.decomposition.copula_risk_multiplier is None


# ---------------------------------------------------------------------------
# Errors and cancellation
# ---------------------------------------------------------------------------

class _CancelAfterFirstBatch(CancellationToken):
    """Reports cancellation from the second check onwards."""

    def __init__(self):
        super().__init__()
        self._lock = threading.Lock()
        self._checks = 0

    @property
    def cancelled(self) -> bool:
        with self._lock:
            self._checks += 1
            if self._checks > 1:
                self.cancel()
        return super().cancelled


class TestErrors:
    def test_unknown_variable(self, settings):
        with pytest.raises(InvalidEventReference) as exc:
            run_event_simulation(_both(">", 0.0), [_ou("x")], settings=settings)
        assert exc.value.missing == ["y"]

    def test_invalid_copula_for_joint_event(self, settings):
        with pytest.raises(InvalidCopulaParameters):
            run_event_simulation(
                _both(">", 0.0), [_ou("x"), _ou("y")],
                CopulaConfig(family=CopulaFamily.GUMBEL, theta=0.5), settings=settings,
            )

    def test_cancelled_before_start(self, settings):
        token = CancellationToken()
        token.cancel()
        with pytest.raises(SimulationAborted) as exc:
            run_event_simulation(
                _breach("x", ">", 0.0), [_ou("x")],
                config=SimulationConfig(n_scenarios=3000, seed=1),
                settings=settings, cancel_token=token,
            )
        assert exc.value.completed_scenarios == 0
        assert exc.value.partial_result is None

    def test_partial_result_on_cancel(self):
        settings = Settings(simulation_batch_size=1000, simulation_max_workers=1)
        with pytest.raises(SimulationAborted) as exc:
            run_event_simulation(
                _breach("x", ">", 0.0), [_ou("x")],
                config=SimulationConfig(n_scenarios=3000, seed=1),
                settings=settings, cancel_token=_CancelAfterFirstBatch(),
            )
        partial = exc.value.partial_result
        assert exc.value.completed_scenarios == 1000
        assert exc.value.requested_scenarios == 3000
        assert partial.n_scenarios == 1000
        assert 0.0 <= partial.probability.mean <= 1.0


# ---------------------------------------------------------------------------
# Copula comparison
# ---------------------------------------------------------------------------

class TestCompareCopulas:
    def test_lower_tail_event_ranks_clayton_first(self, settings):
        config = SimulationConfig(n_scenarios=10000, horizon_months=1)
        results = compare_copulas(
            _both("<", LOWER_10, horizon=1), [_ou("x"), _ou("y")], config, settings=settings
        )
        assert set(results) == {"gaussian", "clayton", "gumbel", "student_t"}
        assert results["clayton"] > results["gumbel"]
        assert results["clayton"] > results["gaussian"]

    def test_family_subset(self, settings):
        config = SimulationConfig(n_scenarios=1000, seed=2)
        results = compare_copulas(
            _both(">", 0.0), [_ou("x"), _ou("y")], config,
            families=["clayton", CopulaFamily.GUMBEL], settings=settings,
        )
        assert set(results) == {"clayton", "gumbel"}
