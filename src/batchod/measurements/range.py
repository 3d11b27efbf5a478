#########################################################################################
##
##                                 GROUND STATION RANGE
##                                (measurements/range.py)
##
#########################################################################################

# IMPORTS ===============================================================================

import numpy as np

from .measurement import ObservedMeasurement, EstimatedMeasurement


# CLASS =================================================================================

class Range(ObservedMeasurement):
    """Instantaneous geometric distance between a ground station and the spacecraft.

    Parameters
    ----------
    station : GroundStation
    date : float
    range_value : float
        Observed range (m).
    sigma : float
        Theoretical standard deviation (m).
    base_weight : float
    """

    def __init__(self, station, date, range_value, sigma, base_weight=1.0):
        super().__init__(date, range_value, sigma, base_weight)
        self.station = station
        self._add_parameter_driver(station.offset_driver)


    def theoretical_evaluation(self, iteration, evaluation, state):
        station_position, _, R = self.station.position_velocity(state.date)
        rho = state.position - station_position
        distance = np.linalg.norm(rho)
        u = rho / distance

        estimated = EstimatedMeasurement(self, iteration, evaluation, state)
        estimated.estimated_value = np.array([distance])

        state_derivatives = np.zeros((1, 6))
        state_derivatives[0, 0:3] = u
        estimated.state_derivatives = state_derivatives

        # offset is Earth-fixed, station position is R @ (base + offset)
        estimated.set_parameter_derivatives(self.station.offset_driver, -(u @ R))

        return estimated
