#########################################################################################
##
##                                   GROUND STATION
##                           (measurements/ground_station.py)
##
#########################################################################################

# IMPORTS ===============================================================================

from __future__ import annotations

import numpy as np

from .._constants import (
    EARTH_ANGULAR_VELOCITY,
    EARTH_EQUATORIAL_RADIUS,
    STATION_OFFSET_SCALE,
)
from ..utils.parameter_driver import ParameterDriver


__all__ = ["GroundStation"]


# CLASS =================================================================================

class GroundStation:
    """Earth-fixed site rotating with the Earth around the inertial z axis.

    The Earth-fixed frame is aligned with the inertial frame at the angle
    ``theta0`` at date zero. The station position carries an offset driver
    named ``"<name>-offset"`` (dimension 3, Earth-fixed, meters) that can be
    estimated.

    Parameters
    ----------
    name : str
    position : array_like
        Earth-fixed position (m).
    theta0 : float
        Earth rotation angle at date zero (rad).
    angular_velocity : float
        Earth rotation rate (rad/s).
    """

    def __init__(self, name: str, position, theta0: float = 0.0,
                 angular_velocity: float = EARTH_ANGULAR_VELOCITY):
        self.name = name
        self.base_position = np.asarray(position, dtype=float).reshape(3)
        self.theta0 = float(theta0)
        self.angular_velocity = float(angular_velocity)
        self.offset_driver = ParameterDriver(f"{name}-offset", np.zeros(3), STATION_OFFSET_SCALE)


    @classmethod
    def from_spherical(cls, name: str, latitude: float, longitude: float,
                       altitude: float = 0.0, **kwargs) -> "GroundStation":
        """Station on a spherical Earth, angles in radians."""
        r = EARTH_EQUATORIAL_RADIUS + altitude
        position = r * np.array([
            np.cos(latitude) * np.cos(longitude),
            np.cos(latitude) * np.sin(longitude),
            np.sin(latitude),
        ])
        return cls(name, position, **kwargs)


    def rotation(self, date: float) -> np.ndarray:
        """Earth-fixed to inertial rotation matrix at *date*."""
        theta = self.theta0 + self.angular_velocity * date
        c, s = np.cos(theta), np.sin(theta)
        return np.array([
            [c, -s, 0.0],
            [s,  c, 0.0],
            [0.0, 0.0, 1.0],
        ])


    def rotation_rate(self) -> np.ndarray:
        """Skew matrix ``W`` such that ``dR/dt = W R``."""
        w = self.angular_velocity
        return np.array([
            [0.0, -w, 0.0],
            [w,  0.0, 0.0],
            [0.0, 0.0, 0.0],
        ])


    def position_velocity(self, date: float):
        """Inertial position, velocity and Earth-fixed to inertial rotation.

        Returns
        -------
        position, velocity : np.ndarray
        rotation : np.ndarray, shape (3, 3)
        """
        fixed = self.base_position + self.offset_driver.value
        R = self.rotation(date)
        position = R @ fixed
        velocity = self.rotation_rate() @ position
        return position, velocity, R


    def __repr__(self) -> str:
        return f"GroundStation({self.name!r}, {self.base_position})"
