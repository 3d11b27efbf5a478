#########################################################################################
##
##                             POSITION-VELOCITY MEASUREMENT
##                                  (measurements/pv.py)
##
#########################################################################################

# IMPORTS ===============================================================================

import numpy as np

from .measurement import ObservedMeasurement, EstimatedMeasurement


# CLASS =================================================================================

class PV(ObservedMeasurement):
    """Direct observation of the inertial position and velocity.

    Parameters
    ----------
    date : float
    position, velocity : array_like
    sigma_position, sigma_velocity : float
    base_weight : float
    """

    def __init__(self, date, position, velocity, sigma_position, sigma_velocity,
                 base_weight=1.0):
        observed = np.concatenate([
            np.asarray(position, dtype=float).reshape(3),
            np.asarray(velocity, dtype=float).reshape(3),
        ])
        sigma = np.array([sigma_position] * 3 + [sigma_velocity] * 3, dtype=float)
        super().__init__(date, observed, sigma, base_weight)


    def theoretical_evaluation(self, iteration, evaluation, state):
        estimated = EstimatedMeasurement(self, iteration, evaluation, state)
        estimated.estimated_value = state.pv
        estimated.state_derivatives = np.eye(6)
        return estimated
