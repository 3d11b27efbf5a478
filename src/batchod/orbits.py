#########################################################################################
##
##                          ORBIT REPRESENTATIONS AND MAPPINGS
##                                    (orbits.py)
##
##          Cartesian orbit container plus the orbit-type conventions used to
##          flatten an orbit into the six leading estimation parameters.
##
#########################################################################################

# IMPORTS ===============================================================================

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Callable

import numpy as np

from ._constants import EARTH_MU, FD_RELATIVE_STEP
from .errors import ValidationFailure


__all__ = [
    "Orbit",
    "PositionAngle",
    "OrbitType",
    "keplerian_to_cartesian",
    "cartesian_to_keplerian",
    "get_validator",
]

TWO_PI = 2.0 * np.pi


# ANOMALIES =============================================================================

class PositionAngle(Enum):
    """Type of anomaly used as the sixth Keplerian parameter."""

    MEAN = "mean"
    ECCENTRIC = "eccentric"
    TRUE = "true"


def _eccentric_to_true(E, e):
    beta = e / (1.0 + np.sqrt(1.0 - e * e))
    return E + 2.0 * np.arctan(beta * np.sin(E) / (1.0 - beta * np.cos(E)))


def _true_to_eccentric(nu, e):
    beta = e / (1.0 + np.sqrt(1.0 - e * e))
    return nu - 2.0 * np.arctan(beta * np.sin(nu) / (1.0 + beta * np.cos(nu)))


def _mean_to_eccentric(M, e, tol=1.0e-14, max_iter=50):
    """Solve Kepler's equation ``M = E - e sin E`` by Newton iterations."""
    M = np.mod(M + np.pi, TWO_PI) - np.pi
    E = M + e * np.sin(M) if e < 0.8 else np.copysign(np.pi, M)
    for _ in range(max_iter):
        f = E - e * np.sin(E) - M
        dE = f / (1.0 - e * np.cos(E))
        E -= dE
        if abs(dE) <= tol * max(1.0, abs(E)):
            break
    return E


def _anomaly_to_true(anomaly, e, angle: PositionAngle):
    if angle is PositionAngle.TRUE:
        return anomaly
    if angle is PositionAngle.ECCENTRIC:
        return _eccentric_to_true(anomaly, e)
    return _eccentric_to_true(_mean_to_eccentric(anomaly, e), e)


def _true_to_anomaly(nu, e, angle: PositionAngle):
    if angle is PositionAngle.TRUE:
        return nu
    E = _true_to_eccentric(nu, e)
    if angle is PositionAngle.ECCENTRIC:
        return E
    return E - e * np.sin(E)


# CONVERSIONS ===========================================================================

def keplerian_to_cartesian(a, e, i, raan, omega, anomaly, mu=EARTH_MU,
                           angle: PositionAngle = PositionAngle.TRUE):
    """Convert elliptic Keplerian elements to position and velocity.

    Parameters
    ----------
    a : float
        Semi-major axis (m), must be positive.
    e : float
        Eccentricity in ``[0, 1)``.
    i, raan, omega : float
        Inclination, right ascension of ascending node, argument of perigee (rad).
    anomaly : float
        Anomaly of type *angle* (rad).
    mu : float
        Gravitational parameter (m^3/s^2).
    angle : PositionAngle
        Type of *anomaly*.

    Returns
    -------
    position, velocity : np.ndarray
    """
    if a <= 0.0 or not 0.0 <= e < 1.0:
        raise ValidationFailure(
            f"Keplerian elements a={a}, e={e} do not describe an elliptic orbit"
        )

    nu = _anomaly_to_true(anomaly, e, angle)
    p = a * (1.0 - e * e)
    r = p / (1.0 + e * np.cos(nu))

    r_pqw = r * np.array([np.cos(nu), np.sin(nu), 0.0])
    v_pqw = np.sqrt(mu / p) * np.array([-np.sin(nu), e + np.cos(nu), 0.0])

    cO, sO = np.cos(raan), np.sin(raan)
    ci, si = np.cos(i), np.sin(i)
    cw, sw = np.cos(omega), np.sin(omega)

    R = np.array([
        [cO * cw - sO * sw * ci, -cO * sw - sO * cw * ci,  sO * si],
        [sO * cw + cO * sw * ci, -sO * sw + cO * cw * ci, -cO * si],
        [sw * si,                 cw * si,                 ci     ],
    ])

    return R @ r_pqw, R @ v_pqw


def cartesian_to_keplerian(position, velocity, mu=EARTH_MU,
                           angle: PositionAngle = PositionAngle.TRUE) -> np.ndarray:
    """Convert position and velocity to ``[a, e, i, raan, omega, anomaly]``.

    Circular and equatorial orbits get the conventional zero angles for the
    undefined elements, so the mapping is not smooth there.
    """
    r = np.asarray(position, dtype=float)
    v = np.asarray(velocity, dtype=float)
    r_mag = np.linalg.norm(r)
    v_mag = np.linalg.norm(v)

    h = np.cross(r, v)
    h_mag = np.linalg.norm(h)
    n = np.cross([0.0, 0.0, 1.0], h)
    n_mag = np.linalg.norm(n)

    e_vec = np.cross(v, h) / mu - r / r_mag
    e = np.linalg.norm(e_vec)

    energy = 0.5 * v_mag * v_mag - mu / r_mag
    if energy >= 0.0:
        raise ValidationFailure("non-elliptic state cannot be mapped to Keplerian elements")
    a = -mu / (2.0 * energy)

    inc = np.arccos(np.clip(h[2] / h_mag, -1.0, 1.0))
    raan = np.arctan2(n[1], n[0]) % TWO_PI if n_mag > 1e-12 else 0.0

    if e > 1e-12 and n_mag > 1e-12:
        omega = np.arccos(np.clip(np.dot(n, e_vec) / (n_mag * e), -1.0, 1.0))
        if e_vec[2] < 0.0:
            omega = TWO_PI - omega
    elif e > 1e-12:
        omega = np.arctan2(e_vec[1], e_vec[0]) % TWO_PI
    else:
        omega = 0.0

    if e > 1e-12:
        nu = np.arccos(np.clip(np.dot(e_vec, r) / (e * r_mag), -1.0, 1.0))
        if np.dot(r, v) < 0.0:
            nu = TWO_PI - nu
    elif n_mag > 1e-12:
        nu = np.arccos(np.clip(np.dot(n, r) / (n_mag * r_mag), -1.0, 1.0))
        if r[2] < 0.0:
            nu = TWO_PI - nu
    else:
        nu = np.arctan2(r[1], r[0]) % TWO_PI

    return np.array([a, e, inc, raan, omega, _true_to_anomaly(nu, e, angle)])


# ORBIT =================================================================================

@dataclass(frozen=True, eq=False)
class Orbit:
    """Cartesian orbit at a date.

    Parameters
    ----------
    position : array_like
        Inertial position (m).
    velocity : array_like
        Inertial velocity (m/s).
    date : float
        Epoch in seconds past the reference epoch.
    mu : float
        Central body gravitational parameter (m^3/s^2).
    """

    position: np.ndarray
    velocity: np.ndarray
    date: float = 0.0
    mu: float = EARTH_MU

    def __post_init__(self):
        object.__setattr__(self, "position", np.array(self.position, dtype=float).reshape(3))
        object.__setattr__(self, "velocity", np.array(self.velocity, dtype=float).reshape(3))
        object.__setattr__(self, "date", float(self.date))
        object.__setattr__(self, "mu", float(self.mu))


    @classmethod
    def from_keplerian(cls, a, e, i, raan, omega, anomaly, date=0.0, mu=EARTH_MU,
                       angle: PositionAngle = PositionAngle.TRUE) -> "Orbit":
        position, velocity = keplerian_to_cartesian(a, e, i, raan, omega, anomaly, mu, angle)
        return cls(position, velocity, date, mu)


    @property
    def pv(self) -> np.ndarray:
        """Stacked ``[position, velocity]``."""
        return np.concatenate([self.position, self.velocity])


    def keplerian(self, angle: PositionAngle = PositionAngle.TRUE) -> np.ndarray:
        """``[a, e, i, raan, omega, anomaly]`` with the anomaly of type *angle*."""
        return cartesian_to_keplerian(self.position, self.velocity, self.mu, angle)


    @property
    def a(self) -> float:
        """Semi-major axis (m)."""
        return float(self.keplerian()[0])


    @property
    def e(self) -> float:
        return float(self.keplerian()[1])


    @property
    def period(self) -> float:
        """Keplerian period (s)."""
        return TWO_PI * np.sqrt(self.a ** 3 / self.mu)


# ORBIT TYPES ===========================================================================

class OrbitType(Enum):
    """Convention for the six orbital estimation parameters."""

    CARTESIAN = "cartesian"
    KEPLERIAN = "keplerian"


    @property
    def parameter_names(self) -> tuple[str, ...]:
        if self is OrbitType.CARTESIAN:
            return ("x", "y", "z", "vx", "vy", "vz")
        return ("a", "e", "i", "raan", "omega", "anomaly")


    def map_orbit_to_array(self, orbit: Orbit,
                           angle: PositionAngle = PositionAngle.TRUE) -> np.ndarray:
        """Flatten *orbit* into six parameters."""
        if self is OrbitType.CARTESIAN:
            return orbit.pv
        return orbit.keplerian(angle)


    def map_array_to_orbit(self, array, angle: PositionAngle = PositionAngle.TRUE,
                           date: float = 0.0, mu: float = EARTH_MU) -> Orbit:
        """Build an orbit from six parameters."""
        arr = np.asarray(array, dtype=float).reshape(-1)[:6]
        if not np.all(np.isfinite(arr)):
            raise ValidationFailure(f"non-finite orbital parameters {arr}")
        if self is OrbitType.CARTESIAN:
            return Orbit(arr[:3], arr[3:], date, mu)
        return Orbit.from_keplerian(*arr, date=date, mu=mu, angle=angle)


    def cartesian_jacobian(self, array, angle: PositionAngle = PositionAngle.TRUE,
                           date: float = 0.0, mu: float = EARTH_MU) -> np.ndarray:
        """Jacobian ``d(position, velocity) / d(array)``, shape ``(6, 6)``."""
        if self is OrbitType.CARTESIAN:
            return np.eye(6)

        arr = np.asarray(array, dtype=float).reshape(-1)[:6]
        jac = np.empty((6, 6))
        for j in range(6):
            # semi-major axis gets a relative step, the other elements an absolute one
            h = FD_RELATIVE_STEP * (max(abs(arr[0]), 1.0) if j == 0 else 1.0)
            xp, xm = arr.copy(), arr.copy()
            xp[j] += h
            if j == 1 and arr[1] < h:
                # one-sided at near-circular orbits, e must stay >= 0
                denominator = h
            else:
                xm[j] -= h
                denominator = 2.0 * h
            jac[:, j] = (
                self.map_array_to_orbit(xp, angle, date, mu).pv
                - self.map_array_to_orbit(xm, angle, date, mu).pv
            ) / denominator
        return jac


# VALIDATORS ============================================================================

def _validate_cartesian(point: np.ndarray) -> np.ndarray:
    if not np.all(np.isfinite(point)):
        raise ValidationFailure(f"non-finite parameters {point}")
    if np.linalg.norm(point[:3]) <= 0.0:
        raise ValidationFailure("null position vector")
    return point


def _validate_keplerian(point: np.ndarray) -> np.ndarray:
    if not np.all(np.isfinite(point)):
        raise ValidationFailure(f"non-finite parameters {point}")
    if point[0] <= 0.0:
        raise ValidationFailure(f"non-positive semi-major axis {point[0]}")
    validated = point.copy()
    validated[1] = min(max(point[1], 0.0), np.nextafter(1.0, 0.0))
    return validated


def get_validator(orbit_type: OrbitType) -> Callable[[np.ndarray], np.ndarray]:
    """Parameter validator for the orbital part of an estimation vector.

    The returned callable receives the full parameter vector, repairs what can
    be repaired (eccentricity clamped into ``[0, 1)``) and raises
    :class:`~batchod.errors.ValidationFailure` otherwise. Non-orbital entries
    are left untouched.
    """
    check = _validate_cartesian if orbit_type is OrbitType.CARTESIAN else _validate_keplerian

    def validator(point: np.ndarray) -> np.ndarray:
        arr = np.array(point, dtype=float).reshape(-1)
        arr[:6] = check(arr[:6])
        return arr

    return validator
