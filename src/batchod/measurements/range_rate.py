#########################################################################################
##
##                              GROUND STATION RANGE RATE
##                             (measurements/range_rate.py)
##
#########################################################################################

# IMPORTS ===============================================================================

import numpy as np

from .measurement import ObservedMeasurement, EstimatedMeasurement


# CLASS =================================================================================

class RangeRate(ObservedMeasurement):
    """Instantaneous line-of-sight relative velocity, positive when receding.

    Parameters
    ----------
    station : GroundStation
    date : float
    range_rate : float
        Observed range rate (m/s).
    sigma : float
    base_weight : float
    """

    def __init__(self, station, date, range_rate, sigma, base_weight=1.0):
        super().__init__(date, range_rate, sigma, base_weight)
        self.station = station
        self._add_parameter_driver(station.offset_driver)


    def theoretical_evaluation(self, iteration, evaluation, state):
        station_position, station_velocity, R = self.station.position_velocity(state.date)
        rho = state.position - station_position
        rho_dot = state.velocity - station_velocity
        distance = np.linalg.norm(rho)
        u = rho / distance
        range_rate = float(u @ rho_dot)

        # d(range rate)/d(rho)
        d_rho = (rho_dot - range_rate * u) / distance

        estimated = EstimatedMeasurement(self, iteration, evaluation, state)
        estimated.estimated_value = np.array([range_rate])

        state_derivatives = np.zeros((1, 6))
        state_derivatives[0, 0:3] = d_rho
        state_derivatives[0, 3:6] = u
        estimated.state_derivatives = state_derivatives

        W = self.station.rotation_rate()
        estimated.set_parameter_derivatives(
            self.station.offset_driver, -(d_rho @ R) - (u @ W @ R)
        )

        return estimated
