#########################################################################################
##
##                                    FORCE MODELS
##                              (propagation/forces.py)
##
##          Accelerations acting on the spacecraft, with their partial
##          derivatives for the variational equations.
##
#########################################################################################

# IMPORTS ===============================================================================

from __future__ import annotations

import numpy as np

from .._constants import (
    EARTH_MU,
    EARTH_J2,
    EARTH_EQUATORIAL_RADIUS,
    MU_SCALE,
    J2_SCALE,
    ACCELERATION_SCALE,
    FD_RELATIVE_STEP,
)
from ..utils.parameter_driver import ParameterDriver


__all__ = ["ForceModel", "NewtonianAttraction", "J2Perturbation", "ConstantAcceleration"]


# BASE CLASS ============================================================================

class ForceModel:
    """Base class for force models.

    Subclasses implement :meth:`acceleration`. Parameter values are passed in
    explicitly as a list of arrays, one per driver and in the order of
    :meth:`get_parameters_drivers`, so derivatives can be taken without
    writing to the drivers.

    The default :meth:`acceleration_derivatives` uses central finite
    differences; override it when analytical partials are cheap.
    """

    def get_parameters_drivers(self) -> list[ParameterDriver]:
        return []


    def parameters_values(self) -> list[np.ndarray]:
        """Snapshot of the current driver values."""
        return [d.value for d in self.get_parameters_drivers()]


    def acceleration(self, t, position, velocity, parameters) -> np.ndarray:
        raise NotImplementedError


    def acceleration_derivatives(self, t, position, velocity, parameters):
        """Partial derivatives of the acceleration.

        Returns
        -------
        da_dr : np.ndarray, shape (3, 3)
        da_dv : np.ndarray, shape (3, 3)
        da_dp : dict[str, np.ndarray]
            Per driver name, shape ``(3, dimension)``.
        """
        da_dr = np.empty((3, 3))
        da_dv = np.empty((3, 3))

        for j in range(3):
            h = FD_RELATIVE_STEP * max(1.0, abs(position[j]))
            rp, rm = position.copy(), position.copy()
            rp[j] += h
            rm[j] -= h
            da_dr[:, j] = (
                self.acceleration(t, rp, velocity, parameters)
                - self.acceleration(t, rm, velocity, parameters)
            ) / (2.0 * h)

            h = FD_RELATIVE_STEP * max(1.0, abs(velocity[j]))
            vp, vm = velocity.copy(), velocity.copy()
            vp[j] += h
            vm[j] -= h
            da_dv[:, j] = (
                self.acceleration(t, position, vp, parameters)
                - self.acceleration(t, position, vm, parameters)
            ) / (2.0 * h)

        da_dp = {}
        for k, driver in enumerate(self.get_parameters_drivers()):
            jac = np.empty((3, driver.dimension))
            for j in range(driver.dimension):
                h = FD_RELATIVE_STEP * max(abs(parameters[k][j]), abs(driver.scale[j]))
                pp = [p.copy() for p in parameters]
                pm = [p.copy() for p in parameters]
                pp[k][j] += h
                pm[k][j] -= h
                jac[:, j] = (
                    self.acceleration(t, position, velocity, pp)
                    - self.acceleration(t, position, velocity, pm)
                ) / (2.0 * h)
            da_dp[driver.name] = jac

        return da_dr, da_dv, da_dp


# CENTRAL BODY ==========================================================================

class NewtonianAttraction(ForceModel):
    """Point-mass attraction of the central body.

    Parameters
    ----------
    mu : float
        Central attraction coefficient (m^3/s^2).
    """

    MU_NAME = "central attraction coefficient"

    def __init__(self, mu: float = EARTH_MU):
        self.mu_driver = ParameterDriver(self.MU_NAME, mu, MU_SCALE, 0.0, np.inf)


    def get_parameters_drivers(self):
        return [self.mu_driver]


    def acceleration(self, t, position, velocity, parameters):
        mu = parameters[0][0]
        r = np.linalg.norm(position)
        return -mu * position / r ** 3


    def acceleration_derivatives(self, t, position, velocity, parameters):
        mu = parameters[0][0]
        r = np.linalg.norm(position)
        r3 = r ** 3
        da_dr = -mu / r3 * (np.eye(3) - 3.0 * np.outer(position, position) / (r * r))
        da_dv = np.zeros((3, 3))
        da_dp = {self.mu_driver.name: (-position / r3).reshape(3, 1)}
        return da_dr, da_dv, da_dp


class J2Perturbation(ForceModel):
    """Second zonal harmonic of the central body, in the inertial frame.

    The body polar axis is the inertial z axis. Partials use the base class
    finite differences.
    """

    J2_NAME = "J2"

    def __init__(self, j2: float = EARTH_J2, mu: float = EARTH_MU,
                 equatorial_radius: float = EARTH_EQUATORIAL_RADIUS):
        self.mu = float(mu)
        self.equatorial_radius = float(equatorial_radius)
        self.j2_driver = ParameterDriver(self.J2_NAME, j2, J2_SCALE)


    def get_parameters_drivers(self):
        return [self.j2_driver]


    def acceleration(self, t, position, velocity, parameters):
        j2 = parameters[0][0]
        x, y, z = position
        r = np.linalg.norm(position)
        z2_r2 = (z / r) ** 2
        factor = 1.5 * j2 * self.mu * self.equatorial_radius ** 2 / r ** 5
        return -factor * np.array([
            x * (1.0 - 5.0 * z2_r2),
            y * (1.0 - 5.0 * z2_r2),
            z * (3.0 - 5.0 * z2_r2),
        ])


# EMPIRICAL =============================================================================

class ConstantAcceleration(ForceModel):
    """Constant inertial acceleration, e.g. an empirical unmodelled force.

    Parameters
    ----------
    prefix : str
        Driver name prefix, so several instances can coexist.
    acceleration : array_like
        Initial acceleration (m/s^2).
    """

    def __init__(self, prefix: str = "", acceleration=(0.0, 0.0, 0.0)):
        self.acceleration_driver = ParameterDriver(
            f"{prefix}constant acceleration", acceleration, ACCELERATION_SCALE
        )


    def get_parameters_drivers(self):
        return [self.acceleration_driver]


    def acceleration(self, t, position, velocity, parameters):
        return np.array(parameters[0], dtype=float)


    def acceleration_derivatives(self, t, position, velocity, parameters):
        return (
            np.zeros((3, 3)),
            np.zeros((3, 3)),
            {self.acceleration_driver.name: np.eye(3)},
        )
