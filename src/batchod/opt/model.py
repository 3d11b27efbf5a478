#########################################################################################
##
##                       ORBIT DETERMINATION LEAST-SQUARES MODEL
##                                   (opt/model.py)
##
##          Maps an estimation vector to weighted measurement residuals and
##          their Jacobian by propagating the orbit and evaluating every
##          enabled measurement.
##
#########################################################################################

# IMPORTS ===============================================================================

from __future__ import annotations

from typing import Callable

import numpy as np
from scipy.linalg import LinAlgError

from ..errors import EstimationError
from ..measurements.measurement import MeasurementStatus
from ..utils.logger import LoggerManager
from .least_squares import Incrementor, ModelResult


__all__ = ["Model"]

_logger = LoggerManager().get_logger("opt.model")

NB_ORBITAL_PARAMETERS = 6


# CLASS =================================================================================

class Model:
    """Bridge between the least-squares solver and the propagation/measurements.

    The estimation vector holds the six orbital parameters, then the
    estimated propagation parameters, then the estimated measurement
    parameters. Each call:

    1. writes the parameter values into their drivers,
    2. maps the orbital parameters to an orbit at ``orbit_date``,
    3. propagates to the dates of the enabled measurements,
    4. stacks ``weight * (estimated - observed)`` and its Jacobian, one row
       block per enabled measurement in insertion order.

    With a zero target the solver residuals are then the weighted observed
    minus estimated values. Rejected measurements keep their rows with zero
    weight.

    Parameters
    ----------
    builder : NumericalPropagatorBuilder
    propagation_drivers : iterable of ParameterDriver
        Estimated propagation parameters, in vector order.
    measurements : list[ObservedMeasurement]
    measurement_drivers : iterable of ParameterDriver
        Estimated measurement parameters, in vector order.
    orbit_date : float
        Date of the estimated orbit.
    observer : callable, optional
        ``observer(orbit, evaluations)`` called after every successful
        evaluation.
    """

    def __init__(
        self,
        builder,
        propagation_drivers,
        measurements,
        measurement_drivers,
        orbit_date: float,
        observer: Callable | None = None,
    ):
        self.builder = builder
        self.propagation_drivers = list(propagation_drivers)
        self.measurements = list(measurements)
        self.measurement_drivers = list(measurement_drivers)
        self.orbit_date = float(orbit_date)
        self.observer = observer

        self._evaluations_counter: Incrementor | None = None
        self._iterations_counter: Incrementor | None = None
        self.last_point: np.ndarray | None = None

        self.nb_propagation_parameters = sum(d.dimension for d in self.propagation_drivers)
        self.nb_measurement_parameters = sum(d.dimension for d in self.measurement_drivers)


    @property
    def parameter_size(self) -> int:
        return (NB_ORBITAL_PARAMETERS
                + self.nb_propagation_parameters
                + self.nb_measurement_parameters)


    def set_evaluations_counter(self, counter: Incrementor) -> None:
        self._evaluations_counter = counter


    def set_iterations_counter(self, counter: Incrementor) -> None:
        self._iterations_counter = counter


    def __call__(self, point, iteration: int | None = None) -> ModelResult:
        try:
            value, jacobian = self.value(point, iteration)
        except (EstimationError, ArithmeticError, LinAlgError) as err:
            _logger.debug("model evaluation failed: %s", err)
            return ModelResult.error(err)
        return ModelResult.success(value, jacobian)


    def _write_drivers(self, point: np.ndarray) -> None:
        index = NB_ORBITAL_PARAMETERS
        for driver in self.propagation_drivers + self.measurement_drivers:
            driver.set_value(point[index:index + driver.dimension])
            index += driver.dimension


    def value(self, point, iteration: int | None = None):
        """Weighted model value and Jacobian at *point*, raising on failure.

        Measurements are estimated at *iteration*, by default the current
        count of the iterations counter.
        """
        point = np.asarray(point, dtype=float).reshape(-1)
        if point.size != self.parameter_size:
            raise EstimationError(
                f"expected {self.parameter_size} parameters, got {point.size}"
            )

        self._write_drivers(point)

        orbit = self.builder.map_array_to_orbit(point[:NB_ORBITAL_PARAMETERS], self.orbit_date)
        orbital_jacobian = self.builder.orbit_type.cartesian_jacobian(
            point[:NB_ORBITAL_PARAMETERS], self.builder.position_angle,
            self.orbit_date, self.builder.mu,
        )
        propagator = self.builder.build_propagator(orbit, self.propagation_drivers)

        enabled = [m for m in self.measurements if m.enabled]
        states = propagator.propagate([m.date for m in enabled])

        if iteration is None:
            iteration = self._iterations_counter.count if self._iterations_counter else 0
        evaluation = self._evaluations_counter.count if self._evaluations_counter else 0

        n_rows = sum(m.dimension for m in enabled)
        n_prop = self.nb_propagation_parameters
        value = np.zeros(n_rows)
        jacobian = np.zeros((n_rows, self.parameter_size))
        evaluations = {}

        row = 0
        for measurement, state in zip(enabled, states):
            estimated = measurement.estimate(iteration, evaluation, state)
            evaluations[measurement] = estimated

            rows = slice(row, row + measurement.dimension)
            row += measurement.dimension

            if estimated.status is MeasurementStatus.REJECTED:
                weight = np.zeros(measurement.dimension)
            else:
                weight = measurement.base_weight / measurement.sigma

            value[rows] = weight * (estimated.estimated_value - estimated.observed_value)

            d_state = estimated.state_derivatives
            jacobian[rows, :NB_ORBITAL_PARAMETERS] = weight[:, None] * (
                d_state @ state.state_transition @ orbital_jacobian
            )
            if n_prop:
                jacobian[rows, NB_ORBITAL_PARAMETERS:NB_ORBITAL_PARAMETERS + n_prop] = (
                    weight[:, None] * (d_state @ state.parameters_jacobian)
                )

            column = NB_ORBITAL_PARAMETERS + n_prop
            for driver in self.measurement_drivers:
                jacobian[rows, column:column + driver.dimension] = (
                    weight[:, None] * estimated.get_parameter_derivatives(driver)
                )
                column += driver.dimension

        self.last_point = point
        if self.observer is not None:
            self.observer(orbit, evaluations)

        return value, jacobian
