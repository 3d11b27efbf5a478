#########################################################################################
##
##                           SYNTHETIC MEASUREMENTS GENERATION
##                             (measurements/generation.py)
##
#########################################################################################

# IMPORTS ===============================================================================

from __future__ import annotations

from typing import Callable

import numpy as np

from .measurement import ObservedMeasurement


__all__ = ["generate_measurements"]


# FUNCTION ==============================================================================

def generate_measurements(
    propagator,
    dates,
    create: Callable[[float], ObservedMeasurement],
    noise: np.random.Generator | None = None,
) -> list[ObservedMeasurement]:
    """Build measurements whose observed values come from a reference trajectory.

    Parameters
    ----------
    propagator : NumericalPropagator
        Reference trajectory.
    dates : array_like
    create : callable
        ``create(date)`` returns a measurement at *date*; its observed value
        is overwritten.
    noise : numpy.random.Generator, optional
        When given, Gaussian noise with the measurement sigma is added.

    Returns
    -------
    list[ObservedMeasurement]
        In the order of *dates*.

    Example
    -------
    .. code-block:: python

        ranges = generate_measurements(
            propagator, np.arange(0.0, 3600.0, 60.0),
            lambda date: Range(station, date, 0.0, sigma=1.0),
        )
    """
    states = propagator.propagate(dates)

    measurements = []
    for state in states:
        measurement = create(state.date)
        value = measurement.estimate(0, 0, state).estimated_value
        if noise is not None:
            value = value + noise.normal(0.0, measurement.sigma)
        measurement.set_observed_value(value)
        measurements.append(measurement)

    return measurements
