#########################################################################################
##
##                                MEASUREMENT MODIFIERS
##                              (measurements/modifiers.py)
##
#########################################################################################

# IMPORTS ===============================================================================

from __future__ import annotations

import numpy as np

from .._constants import BIAS_SCALE
from ..errors import ConfigurationError
from ..utils.logger import LoggerManager
from ..utils.parameter_driver import ParameterDriver
from .measurement import EstimationModifier, EstimatedMeasurement, MeasurementStatus


__all__ = ["Bias", "OutlierFilter"]

_logger = LoggerManager().get_logger("measurements.modifiers")


# BIAS ==================================================================================

class Bias(EstimationModifier):
    """Additive measurement bias with its own (estimable) driver.

    Attaching the same :class:`Bias` instance to several measurements, or
    several instances with the same *name*, makes them share one parameter
    once the measurements are added to an estimator.

    Parameters
    ----------
    name : str
        Driver name.
    value : float or array_like
        Initial bias, one component per measurement component.
    scale : float or array_like
    min_value, max_value : float or array_like
    """

    def __init__(self, name: str, value, scale=BIAS_SCALE, min_value=-np.inf, max_value=np.inf):
        self.driver = ParameterDriver(name, value, scale, min_value, max_value)


    def get_parameters_drivers(self):
        return [self.driver]


    def modify(self, estimated: EstimatedMeasurement) -> None:
        if estimated.measurement.dimension != self.driver.dimension:
            raise ConfigurationError(
                f"bias '{self.driver.name}' has dimension {self.driver.dimension}, "
                f"measurement has dimension {estimated.measurement.dimension}"
            )
        estimated.estimated_value = estimated.estimated_value + self.driver.value
        estimated.set_parameter_derivatives(self.driver, np.eye(self.driver.dimension))


# OUTLIERS ==============================================================================

class OutlierFilter(EstimationModifier):
    """Rejects measurements far from their estimated value.

    The rule is applied at every evaluation once the estimator is past
    *warmup* iterations, so a measurement rejected at one iteration can be
    accepted again later. Rejected measurements keep their rows in the
    least-squares problem with zero weight.

    Parameters
    ----------
    warmup : int
        Number of iterations during which nothing is rejected.
    max_sigma : float
        Rejection threshold on ``|observed - estimated| / sigma``.
    """

    def __init__(self, warmup: int, max_sigma: float):
        if max_sigma <= 0.0:
            raise ConfigurationError(f"max_sigma must be positive, got {max_sigma}")
        self.warmup = int(warmup)
        self.max_sigma = float(max_sigma)


    def modify(self, estimated: EstimatedMeasurement) -> None:
        if estimated.iteration <= self.warmup:
            return

        normalized = np.abs(estimated.normalized_residuals)
        if np.any(normalized > self.max_sigma):
            estimated.status = MeasurementStatus.REJECTED
            _logger.debug(
                "rejected %s at date %.3f (%.2f sigma)",
                type(estimated.measurement).__name__, estimated.date, normalized.max(),
            )
