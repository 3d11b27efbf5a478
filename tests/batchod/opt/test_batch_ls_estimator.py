########################################################################################
##
##                                  TESTS FOR
##                           'opt/batch_ls_estimator.py'
##
########################################################################################

# IMPORTS ==============================================================================

import numpy as np
import pytest

from batchod._constants import EARTH_MU
from batchod.errors import ConfigurationError, NumericalFailure
from batchod.orbits import Orbit, OrbitType, PositionAngle
from batchod.propagation import NumericalPropagatorBuilder, J2Perturbation
from batchod.measurements import (
    GroundStation,
    Range,
    Bias,
    OutlierFilter,
    MeasurementStatus,
    generate_measurements,
)
from batchod.opt import (
    BatchLSEstimator,
    BatchLSObserver,
    GaussNewtonOptimizer,
    LevenbergMarquardtOptimizer,
    EstimationCovariance,
    Optimum,
)


# HELPERS ==============================================================================

TRUTH = Orbit.from_keplerian(7.0e6, 0.001, 0.9, 0.2, 0.0, 0.0)
OFFSET = np.array([1000.0, -500.0, 300.0, 1.0, -0.5, 0.3])


def _stations():
    return [
        GroundStation.from_spherical("north", 0.8, 0.1),
        GroundStation.from_spherical("equator", 0.0, 1.5),
        GroundStation.from_spherical("south", -0.6, -2.0),
    ]


def _make_measurements(truth=TRUTH, n=20, modifier=None, builder=None):
    """Noise-free ranges every 300 s, cycling over three stations."""
    stations = _stations()
    builder = builder or NumericalPropagatorBuilder()
    counter = iter(range(n))

    def create(date):
        measurement = Range(stations[next(counter) % 3], date, 0.0, 1.0)
        if modifier is not None:
            measurement.add_modifier(modifier)
        return measurement

    return generate_measurements(builder.build_propagator(truth),
                                 300.0 * np.arange(1, n + 1), create)


def _make_estimator(measurements, optimizer=None, builder=None):
    estimator = BatchLSEstimator(builder or NumericalPropagatorBuilder(), optimizer)
    for measurement in measurements:
        estimator.add_measurement(measurement)
    estimator.set_convergence_threshold(1e-3, 1e-3)
    estimator.set_max_iterations(10)
    estimator.set_max_evaluations(40)
    return estimator


def _initial_guess():
    return Orbit(TRUTH.position + OFFSET[:3], TRUTH.velocity + OFFSET[3:], TRUTH.date)


class _RecordingObserver(BatchLSObserver):

    def __init__(self):
        self.calls = []

    def iteration_performed(self, iterations_count, evaluations_count, orbit,
                            evaluations, lsp_evaluation):
        self.calls.append((iterations_count, evaluations_count, orbit,
                           len(evaluations), lsp_evaluation))


class _BacktrackingOptimizer:
    """Accepts the start point after evaluating worse trial points in later iterations."""

    def __init__(self, trials=3):
        self.trials = trials

    def optimize(self, problem):
        problem.iteration_counter.increment()
        start = problem.evaluate(problem.start).evaluation
        problem.checker.converged(1, None, start)
        for _ in range(self.trials):
            problem.iteration_counter.increment()
            problem.evaluate(problem.start + OFFSET)
        return Optimum(start, 1, problem.evaluation_counter.count)


# CONFIGURATION ========================================================================

class TestConfiguration:

    def test_default_optimizer(self):
        estimator = BatchLSEstimator(NumericalPropagatorBuilder())
        assert isinstance(estimator.optimizer, LevenbergMarquardtOptimizer)
        assert estimator.get_iterations_count() == 0
        assert estimator.get_last_lsp_evaluation() is None

    def test_estimated_parameters_count(self):
        builder = NumericalPropagatorBuilder(force_models=[J2Perturbation()])
        for name in ("central attraction coefficient", "J2"):
            builder.get_parameters_drivers().find_by_name(name).selected = True

        stations = _stations()
        biases = {s.name: Bias(f"{s.name} bias", 0.0) for s in stations}
        for bias in biases.values():
            bias.driver.selected = True

        measurements = _make_measurements(builder=builder)
        for measurement in measurements:
            measurement.add_modifier(biases[measurement.station.name])

        names = [d.name for d in _make_estimator(measurements).get_measurements_parameters_drivers()]
        assert names == ["north-offset", "north bias", "equator-offset", "equator bias",
                         "south-offset", "south bias"]

        # a single iteration is enough to build the problem
        for size in (11, 10):
            estimator = _make_estimator(measurements, builder=builder)
            estimator.set_max_iterations(1)
            with pytest.raises(NumericalFailure, match="iterations") as info:
                estimator.estimate(TRUTH)

            assert estimator._problem.start.size == size
            assert info.value.last_lsp_evaluation.point.size == size
            assert info.value.last_lsp_evaluation.jacobian.shape == (20, size)
            assert len(estimator.get_propagator_parameters_drivers()) == 2

            biases["equator"].driver.selected = False

    def test_same_name_parameters_are_linked(self):
        station = _stations()[0]
        first = Range(station, 60.0, 1.0e6, 1.0)
        second = Range(station, 120.0, 1.0e6, 1.0)
        first.add_modifier(Bias("range bias", 1.0))
        second_bias = Bias("range bias", 0.0)
        second.add_modifier(second_bias)

        estimator = BatchLSEstimator(NumericalPropagatorBuilder())
        estimator.add_measurement(first)
        estimator.add_measurement(second)

        supported = {d.name: d for d in estimator.get_supported_parameters()}
        assert set(supported) == {"north-offset", "range bias"}

        supported["range bias"].value = 2.5
        supported["range bias"].selected = True
        for modifier in (first.modifiers[0], second_bias):
            np.testing.assert_array_equal(modifier.driver.value, [2.5])
            assert modifier.driver.selected

    def test_dimension_conflict_rejected(self):
        station = _stations()[0]
        first = Range(station, 60.0, 1.0e6, 1.0)
        first.add_modifier(Bias("shared", 0.0))
        second = Range(station, 120.0, 1.0e6, 1.0)
        second.add_modifier(Bias("shared", [0.0, 0.0]))

        estimator = BatchLSEstimator(NumericalPropagatorBuilder())
        estimator.add_measurement(first)
        with pytest.raises(ConfigurationError, match="duplicated parameter name"):
            estimator.add_measurement(second)
        assert estimator.measurements == (first,)

    def test_no_enabled_measurement(self):
        measurements = _make_measurements(n=3)
        for m in measurements:
            m.enabled = False
        estimator = _make_estimator(measurements)
        with pytest.raises(ConfigurationError, match="no enabled measurement"):
            estimator.estimate(TRUTH)

    def test_covariance_before_estimation(self):
        with pytest.raises(ConfigurationError):
            BatchLSEstimator(NumericalPropagatorBuilder()).get_physical_covariances()


# ESTIMATION ===========================================================================

class TestEstimation:

    def test_start_at_truth(self):
        estimator = _make_estimator(_make_measurements(), GaussNewtonOptimizer())
        orbit = estimator.estimate(TRUTH)

        assert estimator.get_iterations_count() <= 3
        np.testing.assert_allclose(orbit.position, TRUTH.position, atol=1e-3)
        residuals = [e.residuals[0] for e in estimator.get_last_evaluations().values()]
        np.testing.assert_allclose(residuals, 0.0, atol=1e-6)

    @pytest.mark.parametrize("optimizer", [GaussNewtonOptimizer(), LevenbergMarquardtOptimizer()])
    def test_recovers_orbit(self, optimizer):
        estimator = _make_estimator(_make_measurements(), optimizer)
        orbit = estimator.estimate(_initial_guess())

        assert estimator.get_iterations_count() < 10
        assert estimator.get_last_lsp_evaluation().rms < 1e-3
        assert np.linalg.norm(estimator.get_last_lsp_evaluation().residuals) < 1e-6
        assert np.linalg.norm(orbit.position - TRUTH.position) < 1.0
        assert np.linalg.norm(orbit.velocity - TRUTH.velocity) < 1e-3
        assert orbit.date == TRUTH.date

    def test_orbit_matches_optimum(self):
        estimator = _make_estimator(_make_measurements(), LevenbergMarquardtOptimizer())
        orbit = estimator.estimate(_initial_guess())
        np.testing.assert_array_equal(orbit.pv, estimator.get_last_lsp_evaluation().point)
        assert len(estimator.get_last_evaluations()) == 20

    def test_observer_called_once_per_iteration(self):
        observer = _RecordingObserver()
        estimator = _make_estimator(_make_measurements(), GaussNewtonOptimizer())
        estimator.set_observer(observer)
        estimator.estimate(_initial_guess())

        assert len(observer.calls) == estimator.get_iterations_count()
        assert [c[0] for c in observer.calls] == list(range(1, len(observer.calls) + 1))
        for _, evaluations_count, orbit, n_evaluations, lsp in observer.calls:
            assert evaluations_count >= 1
            assert isinstance(orbit, Orbit)
            assert n_evaluations == 20
            assert lsp.point.size == 6

    def test_plain_callable_observer(self):
        counts = []
        estimator = _make_estimator(_make_measurements(n=6), GaussNewtonOptimizer())
        estimator.set_observer(lambda iterations, *args: counts.append(iterations))
        estimator.estimate(TRUTH)
        assert counts[0] == 1

    def test_disabled_measurements_ignored(self):
        measurements = _make_measurements()
        measurements[4].set_observed_value(measurements[4].observed_value + 1.0e4)
        measurements[4].enabled = False

        estimator = _make_estimator(measurements, GaussNewtonOptimizer())
        orbit = estimator.estimate(_initial_guess())

        assert np.linalg.norm(orbit.position - TRUTH.position) < 1.0
        assert measurements[4] not in estimator.get_last_evaluations()
        assert estimator.get_last_lsp_evaluation().residuals.size == 19

    def test_failure_carries_last_state(self):
        estimator = _make_estimator(_make_measurements(), GaussNewtonOptimizer())
        estimator.set_max_iterations(1)

        with pytest.raises(NumericalFailure, match="iterations") as info:
            estimator.estimate(_initial_guess())

        failure = info.value
        assert isinstance(failure.last_orbit, Orbit)
        assert len(failure.last_evaluations) == 20
        assert failure.last_lsp_evaluation.point.size == 6


# PARAMETERS ===========================================================================

class TestParametersEstimation:

    def test_bias(self):
        measurements = _make_measurements(modifier=Bias("range bias", 5.0))
        bias = measurements[0].modifiers[0]
        bias.driver.value = 0.0
        bias.driver.selected = True

        estimator = _make_estimator(measurements, GaussNewtonOptimizer())
        orbit = estimator.estimate(_initial_guess())

        np.testing.assert_allclose(bias.driver.value, [5.0], atol=1e-2)
        assert np.linalg.norm(orbit.position - TRUTH.position) < 1.0

        covariance = estimator.get_physical_covariances()
        assert isinstance(covariance, EstimationCovariance)
        assert covariance.param_names == ["x", "y", "z", "vx", "vy", "vz", "range bias"]
        assert covariance.sigma.shape == (7,)
        assert np.all(np.isfinite(covariance.sigma))

    def test_central_attraction(self):
        measurements = _make_measurements()

        builder = NumericalPropagatorBuilder()
        mu = builder.get_parameters_drivers().find_by_name("central attraction coefficient")
        mu.value = EARTH_MU * (1.0 + 1e-6)
        mu.selected = True

        estimator = _make_estimator(measurements, GaussNewtonOptimizer(), builder)
        estimator.estimate(_initial_guess())

        assert mu.value[0] == pytest.approx(EARTH_MU, rel=1e-7)
        assert builder.mu == mu.value[0]
        names = estimator.get_physical_covariances().param_names
        assert names[-1] == "central attraction coefficient"

    def test_keplerian_parameters(self):
        truth = Orbit.from_keplerian(7.0e6, 0.01, 0.9, 0.2, 1.0, 0.5)
        measurements = _make_measurements(truth=truth)
        builder = NumericalPropagatorBuilder(OrbitType.KEPLERIAN, PositionAngle.MEAN)

        a, e, i, raan, omega, anomaly = truth.keplerian(PositionAngle.MEAN)
        guess = Orbit.from_keplerian(a + 1000.0, e + 0.001, i + 1e-4, raan - 1e-4,
                                     omega + 1e-3, anomaly - 1e-3, angle=PositionAngle.MEAN)

        estimator = _make_estimator(measurements, LevenbergMarquardtOptimizer(), builder)
        orbit = estimator.estimate(guess)

        assert np.linalg.norm(orbit.position - truth.position) < 1.0
        names = estimator.get_physical_covariances().param_names
        assert names == ["a", "e", "i", "raan", "omega", "anomaly"]


# DIAGNOSTICS ==========================================================================

class TestDiagnostics:

    def test_plot_residuals(self):
        import matplotlib
        matplotlib.use("Agg")
        import matplotlib.pyplot as plt

        estimator = _make_estimator(_make_measurements(n=6), GaussNewtonOptimizer())
        with pytest.raises(ConfigurationError):
            estimator.plot_residuals()

        estimator.estimate(TRUTH)
        fig, ax = estimator.plot_residuals()
        labels = {line.get_label() for line in ax.get_lines()}
        assert "Range north" in labels
        plt.close(fig)


# OPTIMUM RE-EVALUATION ================================================================

class TestOptimumReevaluation:

    def _outlier_measurements(self):
        measurements = _make_measurements()
        measurements[4].set_observed_value(measurements[4].observed_value + 1.0e4)
        outliers = OutlierFilter(warmup=2, max_sigma=3.0)
        for measurement in measurements:
            measurement.add_modifier(outliers)
        return measurements

    def test_optimum_evaluated_at_its_iteration(self):
        measurements = self._outlier_measurements()
        estimator = _make_estimator(measurements, _BacktrackingOptimizer())
        orbit = estimator.estimate(TRUTH)

        np.testing.assert_array_equal(orbit.pv, TRUTH.pv)
        assert estimator.get_iterations_count() == 4
        # start, three trials and the optimum again
        assert estimator.get_evaluations_count() == 5

        evaluations = estimator.get_last_evaluations()
        assert all(e.iteration == 1 for e in evaluations.values())
        assert evaluations[measurements[4]].status is MeasurementStatus.PROCESSED
        assert estimator.get_last_lsp_evaluation().iteration == 1

    def test_optimum_evaluation_failure_carries_last_state(self):
        estimator = _make_estimator(_make_measurements(), _BacktrackingOptimizer())
        estimator.set_max_evaluations(4)

        with pytest.raises(NumericalFailure, match="evaluations") as info:
            estimator.estimate(TRUTH)

        failure = info.value
        assert isinstance(failure.last_orbit, Orbit)
        assert len(failure.last_evaluations) == 20
        np.testing.assert_array_equal(failure.last_lsp_evaluation.point, TRUTH.pv)
