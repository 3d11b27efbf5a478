#########################################################################################
##
##                          OBSERVED AND ESTIMATED MEASUREMENTS
##                             (measurements/measurement.py)
##
#########################################################################################

# IMPORTS ===============================================================================

from __future__ import annotations

from enum import Enum

import numpy as np

from ..errors import ConfigurationError
from ..utils.parameter_driver import ParameterDriver


__all__ = [
    "MeasurementStatus",
    "EstimatedMeasurement",
    "ObservedMeasurement",
    "EstimationModifier",
]


# ESTIMATED =============================================================================

class MeasurementStatus(Enum):
    PROCESSED = "processed"
    REJECTED = "rejected"


class EstimatedMeasurement:
    """Theoretical value of one measurement at one state, with its partials.

    Parameters
    ----------
    measurement : ObservedMeasurement
    iteration : int
        Estimator iteration that produced this evaluation.
    count : int
        Model evaluation number.
    state : SpacecraftState
        State at the measurement date.

    Attributes
    ----------
    estimated_value : np.ndarray
    state_derivatives : np.ndarray, shape (dimension, 6)
        Derivatives with respect to the Cartesian state at the measurement date.
    status : MeasurementStatus
    """

    def __init__(self, measurement, iteration: int, count: int, state):
        self.measurement = measurement
        self.iteration = iteration
        self.count = count
        self.state = state
        self.estimated_value = np.zeros(measurement.dimension)
        self.state_derivatives = np.zeros((measurement.dimension, 6))
        self.status = MeasurementStatus.PROCESSED
        self._parameters_derivatives: dict[str, np.ndarray] = {}


    @property
    def date(self) -> float:
        return self.measurement.date


    @property
    def observed_value(self) -> np.ndarray:
        return self.measurement.observed_value


    @property
    def residuals(self) -> np.ndarray:
        """Observed minus estimated value."""
        return self.observed_value - self.estimated_value


    @property
    def normalized_residuals(self) -> np.ndarray:
        return self.residuals / self.measurement.sigma


    def set_parameter_derivatives(self, driver: ParameterDriver, derivatives) -> None:
        """Set ``d(value) / d(driver)``, shape ``(dimension, driver.dimension)``."""
        jac = np.asarray(derivatives, dtype=float).reshape(
            self.measurement.dimension, driver.dimension
        )
        self._parameters_derivatives[driver.name] = jac


    def get_parameter_derivatives(self, driver: ParameterDriver) -> np.ndarray:
        """Derivatives with respect to *driver*, zero if the value does not depend on it."""
        jac = self._parameters_derivatives.get(driver.name)
        if jac is None:
            return np.zeros((self.measurement.dimension, driver.dimension))
        return jac


    @property
    def derivatives_names(self) -> tuple[str, ...]:
        return tuple(self._parameters_derivatives)


    def __repr__(self) -> str:
        return (
            f"EstimatedMeasurement({type(self.measurement).__name__} at "
            f"{self.date}, value={self.estimated_value}, status={self.status.name})"
        )


# OBSERVED ==============================================================================

class ObservedMeasurement:
    """Base class of measurements.

    Subclasses implement :meth:`theoretical_evaluation`, everything else
    (weighting, enabling, modifiers, drivers) lives here.

    Parameters
    ----------
    date : float
    observed : float or array_like
        Observed value, sets the dimension.
    sigma : float or array_like
        Theoretical standard deviation, per component.
    base_weight : float or array_like
        Base weight, per component.
    """

    def __init__(self, date: float, observed, sigma, base_weight=1.0):
        self._date = float(date)
        self._observed = np.atleast_1d(np.asarray(observed, dtype=float)).reshape(-1)
        dim = self._observed.size
        self._sigma = self._per_component("sigma", sigma, dim)
        self._base_weight = self._per_component("base_weight", base_weight, dim)

        if np.any(self._sigma <= 0.0):
            raise ConfigurationError(f"sigma must be positive, got {self._sigma}")

        self._enabled = True
        self._drivers: list[ParameterDriver] = []
        self._modifiers: list[EstimationModifier] = []


    @staticmethod
    def _per_component(label, value, dim) -> np.ndarray:
        arr = np.atleast_1d(np.asarray(value, dtype=float)).reshape(-1)
        if arr.size == 1:
            return np.full(dim, arr[0])
        if arr.size != dim:
            raise ConfigurationError(f"{label} has dimension {arr.size}, expected {dim}")
        return arr


    # PROPERTIES ------------------------------------------------------------------------

    @property
    def date(self) -> float:
        return self._date


    @property
    def dimension(self) -> int:
        return self._observed.size


    @property
    def observed_value(self) -> np.ndarray:
        return self._observed.copy()


    def set_observed_value(self, value) -> None:
        arr = np.atleast_1d(np.asarray(value, dtype=float)).reshape(-1)
        if arr.size != self.dimension:
            raise ConfigurationError(
                f"observed value has dimension {arr.size}, expected {self.dimension}"
            )
        self._observed = arr


    @property
    def sigma(self) -> np.ndarray:
        return self._sigma.copy()


    @property
    def base_weight(self) -> np.ndarray:
        return self._base_weight.copy()


    @property
    def enabled(self) -> bool:
        return self._enabled


    @enabled.setter
    def enabled(self, flag: bool) -> None:
        self.set_enabled(flag)


    def set_enabled(self, flag: bool) -> None:
        self._enabled = bool(flag)


    # DRIVERS AND MODIFIERS -------------------------------------------------------------

    def _add_parameter_driver(self, driver: ParameterDriver) -> None:
        self._drivers.append(driver)


    def add_modifier(self, modifier: "EstimationModifier") -> None:
        self._modifiers.append(modifier)


    @property
    def modifiers(self) -> tuple["EstimationModifier", ...]:
        return tuple(self._modifiers)


    def get_parameters_drivers(self) -> list[ParameterDriver]:
        """Own drivers followed by the modifiers drivers, each object once."""
        drivers: list[ParameterDriver] = []
        for driver in self._drivers + [d for m in self._modifiers for d in m.get_parameters_drivers()]:
            if not any(driver is known for known in drivers):
                drivers.append(driver)
        return drivers


    # EVALUATION ------------------------------------------------------------------------

    def theoretical_evaluation(self, iteration: int, evaluation: int, state) -> EstimatedMeasurement:
        raise NotImplementedError


    def estimate(self, iteration: int, evaluation: int, state) -> EstimatedMeasurement:
        """Theoretical evaluation followed by every modifier, in insertion order."""
        estimated = self.theoretical_evaluation(iteration, evaluation, state)
        for modifier in self._modifiers:
            modifier.modify(estimated)
        return estimated


    def __repr__(self) -> str:
        return f"{type(self).__name__}(date={self._date}, observed={self._observed})"


# MODIFIERS =============================================================================

class EstimationModifier:
    """Hook changing an :class:`EstimatedMeasurement` after its theoretical evaluation."""

    def get_parameters_drivers(self) -> list[ParameterDriver]:
        return []


    def modify(self, estimated: EstimatedMeasurement) -> None:
        raise NotImplementedError
