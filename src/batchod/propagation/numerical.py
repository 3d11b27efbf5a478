#########################################################################################
##
##                         NUMERICAL PROPAGATOR WITH PARTIALS
##                              (propagation/numerical.py)
##
##          Integrates the orbit together with its variational equations, so
##          every propagated state carries the state transition matrix and the
##          Jacobian with respect to the estimated force model parameters.
##
#########################################################################################

# IMPORTS ===============================================================================

from __future__ import annotations

from dataclasses import dataclass

import numpy as np
from scipy.integrate import solve_ivp

from .._constants import (
    EARTH_MU,
    INTEGRATOR_METHOD,
    INTEGRATOR_RTOL,
    INTEGRATOR_ATOL,
)
from ..errors import PropagationError
from ..orbits import Orbit, OrbitType, PositionAngle
from ..utils.logger import LoggerManager
from ..utils.parameter_driver import ParameterDriver
from ..utils.parameter_drivers_list import ParameterDriversList
from .forces import ForceModel, NewtonianAttraction


__all__ = ["SpacecraftState", "NumericalPropagator", "NumericalPropagatorBuilder"]

_logger = LoggerManager().get_logger("propagation.numerical")


# STATE =================================================================================

@dataclass(frozen=True, eq=False)
class SpacecraftState:
    """Propagated state with its partial derivatives.

    Attributes
    ----------
    date : float
    position, velocity : np.ndarray
        Inertial position (m) and velocity (m/s).
    mu : float
    state_transition : np.ndarray, shape (6, 6)
        ``d(pv(date)) / d(pv(epoch))``.
    parameters_jacobian : np.ndarray, shape (6, n)
        ``d(pv(date)) / d(p)`` for the estimated propagation parameters, in
        the order they were given to the propagator.
    """

    date: float
    position: np.ndarray
    velocity: np.ndarray
    mu: float
    state_transition: np.ndarray
    parameters_jacobian: np.ndarray

    @property
    def pv(self) -> np.ndarray:
        return np.concatenate([self.position, self.velocity])


    @property
    def orbit(self) -> Orbit:
        return Orbit(self.position, self.velocity, self.date, self.mu)


# PROPAGATOR ============================================================================

class NumericalPropagator:
    """Cowell propagator integrating the orbit and its variational equations.

    The integrated vector is ``[r, v, vec(Phi), vec(Psi)]`` where ``Phi`` is
    the 6x6 state transition matrix and ``Psi`` the 6xn Jacobian with respect
    to the estimated parameters::

        dPhi/dt = A Phi
        dPsi/dt = A Psi + [0; da/dp]

    with ``A = [[0, I], [da/dr, da/dv]]``.

    Parameters
    ----------
    initial_orbit : Orbit
        Initial state, its date is the propagation epoch.
    force_models : list[ForceModel]
    estimated_drivers : list[ParameterDriver], optional
        Estimated propagation parameters, matched to the force model drivers
        by name. Contributions of several force models to the same name are
        summed.
    rtol, atol : float
        Integrator tolerances.
    method : str
        Any explicit ``scipy.integrate.solve_ivp`` method.
    """

    def __init__(
        self,
        initial_orbit: Orbit,
        force_models: list[ForceModel],
        estimated_drivers: list[ParameterDriver] | None = None,
        *,
        rtol: float = INTEGRATOR_RTOL,
        atol: float = INTEGRATOR_ATOL,
        method: str = INTEGRATOR_METHOD,
    ):
        self.initial_orbit = initial_orbit
        self.force_models = list(force_models)
        self.rtol = rtol
        self.atol = atol
        self.method = method

        # column layout of Psi
        self._columns: dict[str, slice] = {}
        offset = 0
        for driver in estimated_drivers or []:
            self._columns[driver.name] = slice(offset, offset + driver.dimension)
            offset += driver.dimension
        self.nb_parameters = offset

        # frozen parameter values for this propagation
        self._parameters = [fm.parameters_values() for fm in self.force_models]


    @property
    def epoch(self) -> float:
        return self.initial_orbit.date


    def _acceleration(self, t, position, velocity):
        acc = np.zeros(3)
        for fm, params in zip(self.force_models, self._parameters):
            acc += fm.acceleration(t, position, velocity, params)
        return acc


    def _derivatives(self, t, y):
        n_p = self.nb_parameters
        position, velocity = y[0:3], y[3:6]
        phi = y[6:42].reshape(6, 6)
        psi = y[42:].reshape(6, n_p)

        acc = np.zeros(3)
        da_dr = np.zeros((3, 3))
        da_dv = np.zeros((3, 3))
        da_dp = np.zeros((3, n_p))

        for fm, params in zip(self.force_models, self._parameters):
            acc += fm.acceleration(t, position, velocity, params)
            dr, dv, dp = fm.acceleration_derivatives(t, position, velocity, params)
            da_dr += dr
            da_dv += dv
            for name, jac in dp.items():
                cols = self._columns.get(name)
                if cols is not None:
                    da_dp[:, cols] += jac

        A = np.zeros((6, 6))
        A[0:3, 3:6] = np.eye(3)
        A[3:6, 0:3] = da_dr
        A[3:6, 3:6] = da_dv

        d_phi = A @ phi
        d_psi = A @ psi
        d_psi[3:6, :] += da_dp

        return np.concatenate([velocity, acc, d_phi.ravel(), d_psi.ravel()])


    def _integrate(self, y0, targets):
        """Integrate from the epoch to each of *targets* (sorted away from the epoch)."""
        t0 = self.epoch
        if targets[-1] == t0:
            return [y0.copy() for _ in targets]

        try:
            sol = solve_ivp(
                self._derivatives,
                (t0, targets[-1]),
                y0,
                method=self.method,
                t_eval=targets,
                rtol=self.rtol,
                atol=self.atol,
            )
        except (ArithmeticError, ValueError) as err:
            raise PropagationError(f"integration failed: {err}", cause=err) from err

        if sol.status < 0:
            raise PropagationError(f"integration failed: {sol.message}")
        if not np.all(np.isfinite(sol.y)):
            raise PropagationError("integration produced non-finite state")

        return [sol.y[:, k] for k in range(sol.y.shape[1])]


    def propagate(self, dates) -> list[SpacecraftState]:
        """Propagate to every date, returning the states in the order of *dates*."""
        dates = np.asarray(dates, dtype=float).reshape(-1)
        t0 = self.epoch

        y0 = np.concatenate([
            self.initial_orbit.position,
            self.initial_orbit.velocity,
            np.eye(6).ravel(),
            np.zeros(6 * self.nb_parameters),
        ])

        unique = np.unique(dates)
        forward = unique[unique >= t0]
        backward = unique[unique < t0][::-1]

        solutions = {}
        if forward.size:
            solutions.update(zip(forward, self._integrate(y0, forward)))
        if backward.size:
            solutions.update(zip(backward, self._integrate(y0, backward)))

        _logger.debug(
            "propagated %d dates from epoch %.3f (%d estimated parameters)",
            unique.size, t0, self.nb_parameters,
        )

        states = []
        for date in dates:
            y = solutions[date]
            if np.linalg.norm(y[0:3]) <= 0.0:
                raise PropagationError(f"null position vector at date {date}")
            states.append(SpacecraftState(
                date=float(date),
                position=y[0:3].copy(),
                velocity=y[3:6].copy(),
                mu=self.initial_orbit.mu,
                state_transition=y[6:42].reshape(6, 6).copy(),
                parameters_jacobian=y[42:].reshape(6, self.nb_parameters).copy(),
            ))
        return states


    def propagate_orbit(self, date: float) -> Orbit:
        """Orbit at a single *date*."""
        return self.propagate([date])[0].orbit


# BUILDER ===============================================================================

class NumericalPropagatorBuilder:
    """Factory of :class:`NumericalPropagator` for orbit determination.

    Owns the orbit parameterization used by the estimator (orbit type and
    position angle) and the force models. The central attraction is always
    present, its driver is named ``"central attraction coefficient"``.

    Parameters
    ----------
    orbit_type : OrbitType
    position_angle : PositionAngle
    force_models : list[ForceModel], optional
        Additional force models.
    mu : float
        Initial central attraction coefficient.

    Example
    -------
    .. code-block:: python

        builder = NumericalPropagatorBuilder(OrbitType.CARTESIAN)
        builder.add_force_model(J2Perturbation())
        builder.get_parameters_drivers().find_by_name("J2").selected = True
    """

    def __init__(
        self,
        orbit_type: OrbitType = OrbitType.CARTESIAN,
        position_angle: PositionAngle = PositionAngle.TRUE,
        force_models: list[ForceModel] | None = None,
        *,
        mu: float = EARTH_MU,
        rtol: float = INTEGRATOR_RTOL,
        atol: float = INTEGRATOR_ATOL,
        method: str = INTEGRATOR_METHOD,
    ):
        self._orbit_type = orbit_type
        self._position_angle = position_angle
        self.rtol = rtol
        self.atol = atol
        self.method = method

        self.newtonian = NewtonianAttraction(mu)
        self._force_models: list[ForceModel] = []
        self._drivers = ParameterDriversList()

        self.add_force_model(self.newtonian)
        for fm in force_models or []:
            self.add_force_model(fm)


    # PROPERTIES ------------------------------------------------------------------------

    @property
    def orbit_type(self) -> OrbitType:
        return self._orbit_type


    @property
    def position_angle(self) -> PositionAngle:
        return self._position_angle


    @property
    def mu(self) -> float:
        """Current value of the central attraction coefficient."""
        return float(self.newtonian.mu_driver.value[0])


    @property
    def force_models(self) -> tuple[ForceModel, ...]:
        return tuple(self._force_models)


    # CONFIGURATION ---------------------------------------------------------------------

    def add_force_model(self, force_model: ForceModel) -> None:
        self._force_models.append(force_model)
        for driver in force_model.get_parameters_drivers():
            self._drivers.add(driver)


    def get_parameters_drivers(self) -> ParameterDriversList:
        """All propagation parameters, estimated or not, in declaration order."""
        return self._drivers


    def map_orbit_to_array(self, orbit: Orbit) -> np.ndarray:
        return self._orbit_type.map_orbit_to_array(orbit, self._position_angle)


    def map_array_to_orbit(self, array, date: float) -> Orbit:
        return self._orbit_type.map_array_to_orbit(array, self._position_angle, date, self.mu)


    # BUILD -----------------------------------------------------------------------------

    def build_propagator(self, orbit: Orbit, estimated_drivers=None) -> NumericalPropagator:
        """Propagator starting at *orbit*.

        Parameters
        ----------
        orbit : Orbit
        estimated_drivers : list[ParameterDriver], optional
            Parameters whose partials are integrated; defaults to the selected
            propagation drivers in declaration order.
        """
        if estimated_drivers is None:
            estimated_drivers = self._drivers.selected_drivers()

        # the orbit carries the current central attraction
        initial = Orbit(orbit.position, orbit.velocity, orbit.date, self.mu)

        return NumericalPropagator(
            initial,
            self._force_models,
            list(estimated_drivers),
            rtol=self.rtol,
            atol=self.atol,
            method=self.method,
        )
