#########################################################################################
##
##                          BATCH LEAST-SQUARES ORBIT DETERMINATION
##                              (opt/batch_ls_estimator.py)
##
#########################################################################################

# IMPORTS ===============================================================================

from __future__ import annotations

from types import MappingProxyType

import numpy as np

from .._constants import (
    DEFAULT_MAX_ITERATIONS,
    DEFAULT_MAX_EVALUATIONS,
    DEFAULT_CONVERGENCE_REL,
    DEFAULT_CONVERGENCE_ABS,
)
from ..errors import ConfigurationError, NumericalFailure
from ..measurements.measurement import MeasurementStatus
from ..orbits import Orbit, get_validator
from ..utils.logger import LoggerManager
from ..utils.parameter_drivers_list import ParameterDriversList
from .covariance import EstimationCovariance
from .least_squares import (
    EvaluationRmsChecker,
    LeastSquaresProblem,
    LevenbergMarquardtOptimizer,
)
from .model import Model, NB_ORBITAL_PARAMETERS


__all__ = ["BatchLSObserver", "BatchLSEstimator"]


# OBSERVER ==============================================================================

class BatchLSObserver:
    """Iteration progress callback of :class:`BatchLSEstimator`.

    Plain callables with the same signature as :meth:`iteration_performed`
    are accepted as well.
    """

    def iteration_performed(self, iterations_count, evaluations_count, orbit,
                            evaluations, lsp_evaluation) -> None:
        pass


class _TappedChecker(EvaluationRmsChecker):
    """RMS checker that records each iteration and notifies the estimator observer."""

    def __init__(self, estimator: "BatchLSEstimator", rel_tol: float, abs_tol: float):
        super().__init__(rel_tol, abs_tol)
        self.estimator = estimator


    def converged(self, iteration, previous, current) -> bool:
        self.estimator._iteration_performed(current)
        return super().converged(iteration, previous, current)


# ESTIMATOR =============================================================================

class BatchLSEstimator:
    """Batch least-squares estimator of an orbit and of selected parameters.

    The estimated vector holds the six orbital parameters of the builder's
    orbit type, then the selected propagation parameters, then the selected
    measurement parameters (including modifiers). Measurement parameters
    sharing a name are linked: they are one parameter of the estimation.

    Parameters
    ----------
    propagator_builder : NumericalPropagatorBuilder
    optimizer : GaussNewtonOptimizer or LevenbergMarquardtOptimizer, optional
        Defaults to a :class:`LevenbergMarquardtOptimizer`.

    Example
    -------
    .. code-block:: python

        estimator = BatchLSEstimator(builder, GaussNewtonOptimizer())
        for measurement in measurements:
            estimator.add_measurement(measurement)
        estimator.set_convergence_threshold(1e-3, 1e-3)
        estimator.set_max_iterations(10)

        orbit = estimator.estimate(initial_guess)
        print(estimator.get_last_lsp_evaluation().rms)
    """

    def __init__(self, propagator_builder, optimizer=None):
        self.propagator_builder = propagator_builder
        self.optimizer = optimizer if optimizer is not None else LevenbergMarquardtOptimizer()

        self._measurements = []
        self._measurements_parameters = ParameterDriversList()
        self._observer = None

        self._max_iterations = DEFAULT_MAX_ITERATIONS
        self._max_evaluations = DEFAULT_MAX_EVALUATIONS
        self._checker = _TappedChecker(self, DEFAULT_CONVERGENCE_REL, DEFAULT_CONVERGENCE_ABS)

        # diagnostics of the last estimation
        self._orbit: Orbit | None = None
        self._evaluations: dict = {}
        self._lsp_evaluation = None
        self._problem: LeastSquaresProblem | None = None
        self._parameter_names: list[str] = []

        self._logger = LoggerManager().get_logger("opt.batch_ls_estimator")


    # CONFIGURATION ---------------------------------------------------------------------

    def set_observer(self, observer) -> None:
        """Register the iteration observer (``None`` removes it)."""
        self._observer = observer


    def get_supported_parameters(self) -> tuple:
        """All measurement parameters known to the estimator (including modifiers)."""
        return self._measurements_parameters.get_drivers()


    def get_propagator_parameters_drivers(self, estimated_only: bool = False) -> tuple:
        """Propagation parameters of the builder, in declaration order."""
        drivers = self.propagator_builder.get_parameters_drivers().get_drivers()
        if estimated_only:
            return tuple(d for d in drivers if d.selected)
        return drivers


    def get_measurements_parameters_drivers(self, estimated_only: bool = False) -> tuple:
        """Measurement parameters, in order of first appearance."""
        drivers = self._measurements_parameters.get_drivers()
        if estimated_only:
            return tuple(d for d in drivers if d.selected)
        return drivers


    @property
    def measurements(self) -> tuple:
        return tuple(self._measurements)


    def add_measurement(self, measurement) -> None:
        """Add a measurement and link its parameters with the known ones by name.

        Raises
        ------
        ConfigurationError
            If one of its parameters cannot be linked to an existing parameter
            with the same name.
        """
        drivers = measurement.get_parameters_drivers()
        for driver in drivers:
            known = self._measurements_parameters.find_by_name(driver.name)
            if known is not None and known.dimension != driver.dimension:
                raise ConfigurationError(
                    f"duplicated parameter name '{driver.name}' with dimensions "
                    f"{known.dimension} and {driver.dimension}"
                )

        self._measurements.append(measurement)
        for driver in drivers:
            self._measurements_parameters.add(driver)


    def set_max_iterations(self, max_iterations: int) -> None:
        self._max_iterations = int(max_iterations)


    def set_max_evaluations(self, max_evaluations: int) -> None:
        self._max_evaluations = int(max_evaluations)


    def set_convergence_threshold(self, rel_tol: float, abs_tol: float) -> None:
        """RMS convergence thresholds, see :class:`EvaluationRmsChecker`.

        The observer is notified at each convergence check, that is once per
        iteration.
        """
        self._checker = _TappedChecker(self, rel_tol, abs_tol)


    # ESTIMATION ------------------------------------------------------------------------

    def _estimated_drivers(self):
        propagation = self.get_propagator_parameters_drivers(estimated_only=True)
        measurement = self.get_measurements_parameters_drivers(estimated_only=True)
        return propagation, measurement


    def _build_start_point(self, initial_guess: Orbit, propagation, measurement) -> np.ndarray:
        """Orbital parameters, then estimated propagation and measurement parameter values."""
        segments = [self.propagator_builder.map_orbit_to_array(initial_guess)]
        segments.extend(d.value for d in propagation)
        segments.extend(d.value for d in measurement)
        return np.concatenate(segments)


    def _model_called(self, orbit, evaluations) -> None:
        self._orbit = orbit
        self._evaluations = evaluations


    def _iteration_performed(self, lsp_evaluation) -> None:
        self._lsp_evaluation = lsp_evaluation
        self._logger.debug(
            "iteration %d (%d evaluations): rms %.6g",
            self.get_iterations_count(), self.get_evaluations_count(), lsp_evaluation.rms,
        )
        if self._observer is None:
            return
        notify = getattr(self._observer, "iteration_performed", self._observer)
        notify(
            self.get_iterations_count(),
            self.get_evaluations_count(),
            self._orbit,
            self.get_last_evaluations(),
            lsp_evaluation,
        )


    def _reevaluate(self, problem, optimum) -> None:
        """Evaluate the optimum again, at the iteration that produced it."""
        result = problem.evaluate(optimum.point, iteration=optimum.evaluation.iteration)
        if not result.ok:
            raise NumericalFailure(
                f"unable to evaluate the optimum: {result.failure}", cause=result.failure
            ) from result.failure


    def estimate(self, initial_guess: Orbit) -> Orbit:
        """Estimate the orbit at the date of *initial_guess*, and the selected parameters.

        The estimated parameters values are left in their drivers.

        Raises
        ------
        ConfigurationError
            If no measurement is enabled.
        NumericalFailure
            If the estimation fails; the last orbit, evaluations and
            least-squares evaluation are attached to the exception.
        """
        propagation, measurement = self._estimated_drivers()

        start = self._build_start_point(initial_guess, propagation, measurement)
        n_observations = sum(m.dimension for m in self._measurements if m.enabled)
        if n_observations == 0:
            raise ConfigurationError("no enabled measurement to estimate from")

        # weighted residuals are computed by the model, the target is null
        target = np.zeros(n_observations)

        self._orbit = None
        self._evaluations = {}
        self._lsp_evaluation = None
        self._parameter_names = (
            list(self.propagator_builder.orbit_type.parameter_names)
            + [d.name for d in propagation for _ in range(d.dimension)]
            + [d.name for d in measurement for _ in range(d.dimension)]
        )

        model = Model(
            self.propagator_builder,
            propagation,
            self._measurements,
            measurement,
            initial_guess.date,
            self._model_called,
        )

        problem = LeastSquaresProblem(
            start,
            target,
            model,
            self._checker,
            get_validator(self.propagator_builder.orbit_type),
            max_evaluations=self._max_evaluations,
            max_iterations=self._max_iterations,
        )
        model.set_evaluations_counter(problem.evaluation_counter)
        model.set_iterations_counter(problem.iteration_counter)
        self._problem = problem

        self._logger.info(
            "estimating %d parameters (%d orbital, %d propagation, %d measurement) "
            "from %d observations",
            start.size, NB_ORBITAL_PARAMETERS, model.nb_propagation_parameters,
            model.nb_measurement_parameters, n_observations,
        )

        try:
            optimum = self.optimizer.optimize(problem)
            # the drivers and the orbit must reflect the optimum, not the last trial
            if model.last_point is None or not np.array_equal(model.last_point, optimum.point):
                self._reevaluate(problem, optimum)
        except NumericalFailure as err:
            err.last_orbit = self._orbit
            err.last_evaluations = self.get_last_evaluations()
            err.last_lsp_evaluation = self._lsp_evaluation
            self._logger.warning("estimation failed: %s", err)
            raise
        self._lsp_evaluation = optimum.evaluation

        self._logger.info(
            "estimation converged in %d iterations (%d evaluations), rms %.6g",
            optimum.iterations, optimum.evaluations, optimum.evaluation.rms,
        )
        return self._orbit


    # DIAGNOSTICS -----------------------------------------------------------------------

    def get_last_evaluations(self):
        """Read-only view of the last estimated measurements, keyed by measurement."""
        return MappingProxyType(self._evaluations)


    def get_last_lsp_evaluation(self):
        return self._lsp_evaluation


    def get_iterations_count(self) -> int:
        return self._problem.iteration_counter.count if self._problem else 0


    def get_evaluations_count(self) -> int:
        return self._problem.evaluation_counter.count if self._problem else 0


    def get_physical_covariances(self) -> EstimationCovariance:
        """Covariance analysis of the estimated parameters at the last evaluation."""
        if self._lsp_evaluation is None:
            raise ConfigurationError("no estimation performed yet")
        return EstimationCovariance(
            self._lsp_evaluation.jacobian,
            self._parameter_names,
            self._lsp_evaluation.point,
        )


    def plot_residuals(self, *, figsize: tuple = (9, 5)):
        """Plot normalized residuals of the last evaluations against their date.

        Returns
        -------
        fig : matplotlib.figure.Figure
        ax : matplotlib.axes.Axes
        """
        import matplotlib.pyplot as plt  # lazy import

        if not self._evaluations:
            raise ConfigurationError("no evaluations to plot")

        groups: dict[str, tuple[list, list]] = {}
        rejected_dates, rejected_values = [], []
        for estimated in self._evaluations.values():
            label = type(estimated.measurement).__name__
            station = getattr(estimated.measurement, "station", None)
            if station is not None:
                label = f"{label} {station.name}"
            for value in estimated.normalized_residuals:
                if estimated.status is MeasurementStatus.REJECTED:
                    rejected_dates.append(estimated.date)
                    rejected_values.append(value)
                else:
                    dates, values = groups.setdefault(label, ([], []))
                    dates.append(estimated.date)
                    values.append(value)

        fig, ax = plt.subplots(figsize=figsize)
        for label, (dates, values) in groups.items():
            ax.plot(dates, values, "o", ms=4, alpha=0.7, label=label)
        if rejected_dates:
            ax.plot(rejected_dates, rejected_values, "x", color="red", label="rejected")

        ax.axhline(0.0, color="black", lw=0.8)
        ax.set_xlabel("Date (s)")
        ax.set_ylabel("Normalized residual")
        ax.set_title("Measurement residuals")
        ax.grid(True, alpha=0.3)
        ax.legend(fontsize=8)
        return fig, ax
