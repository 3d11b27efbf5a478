#########################################################################################
##
##                            NON-LINEAR LEAST SQUARES SOLVERS
##                                (opt/least_squares.py)
##
##          Problem definition, evaluations, RMS convergence checking and the
##          Gauss-Newton / Levenberg-Marquardt optimizers used by the batch
##          estimator. Models return a ModelResult instead of raising, the
##          optimizers decide what a failure means.
##
#########################################################################################

# IMPORTS ===============================================================================

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

import numpy as np
import scipy.linalg as sla

from .._constants import (
    DEFAULT_MAX_ITERATIONS,
    DEFAULT_MAX_EVALUATIONS,
    SINGULARITY_THRESHOLD,
    LM_INITIAL_DAMPING,
)
from ..errors import EstimationError, NumericalFailure, ValidationFailure
from ..utils.logger import LoggerManager


__all__ = [
    "Incrementor",
    "ModelResult",
    "LeastSquaresEvaluation",
    "EvaluationRmsChecker",
    "EvaluationResult",
    "LeastSquaresProblem",
    "Optimum",
    "GaussNewtonOptimizer",
    "LevenbergMarquardtOptimizer",
]

_logger = LoggerManager().get_logger("opt.least_squares")


# COUNTERS ==============================================================================

class Incrementor:
    """Counter with an upper limit.

    Parameters
    ----------
    maximal_count : int
    label : str
        Name used in the error message.
    """

    def __init__(self, maximal_count: int, label: str = "count"):
        self.maximal_count = int(maximal_count)
        self.label = label
        self.count = 0


    def increment(self, n: int = 1) -> None:
        """Increment, raising :class:`NumericalFailure` past the limit."""
        self.count += n
        if self.count > self.maximal_count:
            raise NumericalFailure(
                f"maximal number of {self.label} ({self.maximal_count}) exceeded"
            )


    def can_increment(self, n: int = 1) -> bool:
        return self.count + n <= self.maximal_count


    def reset(self) -> None:
        self.count = 0


    def __repr__(self) -> str:
        return f"Incrementor({self.label}: {self.count}/{self.maximal_count})"


# MODEL RESULT ==========================================================================

@dataclass
class ModelResult:
    """Outcome of one model call: value and Jacobian, or the failure."""

    value: np.ndarray | None = None
    jacobian: np.ndarray | None = None
    failure: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.failure is None


    @classmethod
    def success(cls, value, jacobian) -> "ModelResult":
        return cls(np.asarray(value, dtype=float), np.asarray(jacobian, dtype=float))


    @classmethod
    def error(cls, failure: BaseException) -> "ModelResult":
        return cls(failure=failure)


# EVALUATION ============================================================================

class LeastSquaresEvaluation:
    """Model value and Jacobian at one point.

    Parameters
    ----------
    point : np.ndarray
    value : np.ndarray
        Model value (already weighted).
    jacobian : np.ndarray
        ``d(value)/d(point)``.
    target : np.ndarray

    Attributes
    ----------
    residuals : np.ndarray
        ``target - value``.
    iteration : int
        Iteration during which the point was evaluated.
    """

    def __init__(self, point, value, jacobian, target, iteration: int = 0):
        self.point = np.asarray(point, dtype=float)
        self.value = np.asarray(value, dtype=float)
        self.jacobian = np.asarray(jacobian, dtype=float)
        self.residuals = np.asarray(target, dtype=float) - self.value
        self.iteration = int(iteration)


    @property
    def chi_square(self) -> float:
        return float(self.residuals @ self.residuals)


    @property
    def cost(self) -> float:
        """Euclidean norm of the residuals."""
        return float(np.sqrt(self.chi_square))


    @property
    def rms(self) -> float:
        n = self.residuals.size
        return float(np.sqrt(self.chi_square / n)) if n else 0.0


    def reduced_chi_square(self, nb_parameters: int) -> float:
        dof = self.residuals.size - nb_parameters
        return self.chi_square / dof if dof > 0 else np.inf


    def get_covariances(self, threshold: float = SINGULARITY_THRESHOLD) -> np.ndarray:
        """Covariance ``(J^T J)^-1`` of the parameters.

        Raises
        ------
        NumericalFailure
            If the Jacobian is singular at the relative *threshold*.
        """
        _, s, vt = sla.svd(self.jacobian, full_matrices=False)
        if s.size < self.point.size or s[-1] <= threshold * s[0]:
            raise NumericalFailure("unable to compute covariances: singular problem")
        return (vt.T / s ** 2) @ vt


    def get_sigma(self, threshold: float = SINGULARITY_THRESHOLD) -> np.ndarray:
        """Standard deviations of the parameters."""
        return np.sqrt(np.diag(self.get_covariances(threshold)))


    def __repr__(self) -> str:
        return f"LeastSquaresEvaluation(rms={self.rms:.6g}, n={self.residuals.size})"


# CONVERGENCE ===========================================================================

class EvaluationRmsChecker:
    """Converged when the RMS stops changing between two evaluations.

    ``|rms(current) - rms(previous)| <= max(rel_tol * rms(previous), abs_tol)``
    """

    def __init__(self, rel_tol: float, abs_tol: float = 0.0):
        self.rel_tol = float(rel_tol)
        self.abs_tol = float(abs_tol)


    def converged(self, iteration: int, previous: LeastSquaresEvaluation | None,
                  current: LeastSquaresEvaluation) -> bool:
        if previous is None:
            return False
        prev_rms = previous.rms
        return abs(current.rms - prev_rms) <= max(self.rel_tol * prev_rms, self.abs_tol)


# PROBLEM ===============================================================================

@dataclass
class EvaluationResult:
    """Either an evaluation or the failure that prevented it."""

    evaluation: LeastSquaresEvaluation | None = None
    failure: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.failure is None


    @property
    def rejectable(self) -> bool:
        """True if the failure only invalidates the candidate point."""
        return isinstance(self.failure, ValidationFailure)


    def raise_failure(self) -> None:
        if isinstance(self.failure, EstimationError):
            raise self.failure
        raise NumericalFailure(f"model evaluation failed: {self.failure}",
                               cause=self.failure) from self.failure


class LeastSquaresProblem:
    """Weighted non-linear least-squares problem ``min |target - model(x)|``.

    Parameters
    ----------
    start : array_like
    target : array_like
    model : callable
        ``model(point) -> ModelResult``.
    checker : EvaluationRmsChecker
        Consulted once per iteration.
    validator : callable, optional
        ``validator(point) -> point``, may raise :class:`ValidationFailure`.
    max_evaluations, max_iterations : int
    """

    def __init__(
        self,
        start,
        target,
        model: Callable[[np.ndarray], ModelResult],
        checker: EvaluationRmsChecker,
        validator: Callable[[np.ndarray], np.ndarray] | None = None,
        *,
        max_evaluations: int = DEFAULT_MAX_EVALUATIONS,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
    ):
        self.start = np.asarray(start, dtype=float).reshape(-1)
        self.target = np.asarray(target, dtype=float).reshape(-1)
        self.model = model
        self.checker = checker
        self.validator = validator
        self.evaluation_counter = Incrementor(max_evaluations, "evaluations")
        self.iteration_counter = Incrementor(max_iterations, "iterations")


    @property
    def parameter_size(self) -> int:
        return self.start.size


    @property
    def observation_size(self) -> int:
        return self.target.size


    def evaluate(self, point, iteration: int | None = None) -> EvaluationResult:
        """Validate and evaluate *point*; only the counters may raise.

        *iteration* replaces the current iteration count, for models that
        depend on it; it is forwarded as a keyword to the model.
        """
        self.evaluation_counter.increment()

        point = np.asarray(point, dtype=float).reshape(-1)
        if self.validator is not None:
            try:
                point = self.validator(point)
            except ValidationFailure as err:
                return EvaluationResult(failure=err)

        if iteration is None:
            iteration = self.iteration_counter.count
            result = self.model(point)
        else:
            result = self.model(point, iteration=iteration)
        if not result.ok:
            return EvaluationResult(failure=result.failure)

        if result.value.shape != self.target.shape:
            return EvaluationResult(failure=NumericalFailure(
                f"model returned {result.value.size} values, expected {self.target.size}"
            ))

        return EvaluationResult(
            LeastSquaresEvaluation(point, result.value, result.jacobian, self.target, iteration)
        )


@dataclass
class Optimum:
    """Final evaluation and the counters at the end of the optimization."""

    evaluation: LeastSquaresEvaluation
    iterations: int
    evaluations: int

    @property
    def point(self) -> np.ndarray:
        return self.evaluation.point


# HELPERS ===============================================================================

def _column_scale(jacobian: np.ndarray) -> np.ndarray:
    """Column norms, with 1 for null columns."""
    norms = np.linalg.norm(jacobian, axis=0)
    norms[norms == 0.0] = 1.0
    return norms


def _evaluate_start(problem: LeastSquaresProblem) -> LeastSquaresEvaluation:
    problem.iteration_counter.increment()
    result = problem.evaluate(problem.start)
    if not result.ok:
        result.raise_failure()
    return result.evaluation


# GAUSS-NEWTON ==========================================================================

class GaussNewtonOptimizer:
    """Gauss-Newton with column scaling and step halving.

    A step leading to an invalid point (:class:`ValidationFailure`) is halved
    until the point is valid.

    Parameters
    ----------
    singularity_threshold : float
        Relative singular value threshold of the scaled Jacobian.
    min_step_factor : float
        Smallest step fraction tried before giving up.
    """

    def __init__(self, singularity_threshold: float = SINGULARITY_THRESHOLD,
                 min_step_factor: float = 1.0e-3):
        self.singularity_threshold = singularity_threshold
        self.min_step_factor = min_step_factor


    def _step(self, evaluation: LeastSquaresEvaluation) -> np.ndarray:
        scale = _column_scale(evaluation.jacobian)
        scaled = evaluation.jacobian / scale
        step, _, rank, _ = sla.lstsq(scaled, evaluation.residuals,
                                     cond=self.singularity_threshold)
        if rank < scaled.shape[1]:
            raise NumericalFailure(
                f"singular Jacobian (rank {rank} for {scaled.shape[1]} parameters)"
            )
        return step / scale


    def optimize(self, problem: LeastSquaresProblem) -> Optimum:
        checker = problem.checker
        previous = None
        current = _evaluate_start(problem)

        while True:
            iteration = problem.iteration_counter.count
            _logger.debug("iteration %d: rms %.6g", iteration, current.rms)
            if checker.converged(iteration, previous, current):
                return Optimum(current, iteration, problem.evaluation_counter.count)

            step = self._step(current)
            problem.iteration_counter.increment()

            factor = 1.0
            while True:
                result = problem.evaluate(current.point + factor * step)
                if result.ok:
                    break
                if not result.rejectable:
                    result.raise_failure()
                factor *= 0.5
                _logger.debug("invalid point (%s), step halved to %g", result.failure, factor)
                if factor < self.min_step_factor:
                    raise NumericalFailure("unable to find a valid step",
                                           cause=result.failure) from result.failure

            previous, current = current, result.evaluation


# LEVENBERG-MARQUARDT ===================================================================

class LevenbergMarquardtOptimizer:
    """Levenberg-Marquardt with Marquardt diagonal damping.

    A trial point is accepted when its cost does not exceed the current one,
    and the damping is then divided by ``damping_factor``; otherwise (or if the
    point is invalid) the damping is multiplied by it and the step recomputed.
    The optimization also stops when the step becomes negligible.

    Parameters
    ----------
    initial_damping : float
    damping_factor : float
    step_tolerance : float
        Relative size of a negligible step, in scaled variables.
    max_damping : float
    """

    def __init__(
        self,
        initial_damping: float = LM_INITIAL_DAMPING,
        damping_factor: float = 10.0,
        step_tolerance: float = 1.0e-14,
        max_damping: float = 1.0e16,
    ):
        self.initial_damping = initial_damping
        self.damping_factor = damping_factor
        self.step_tolerance = step_tolerance
        self.max_damping = max_damping


    def optimize(self, problem: LeastSquaresProblem) -> Optimum:
        checker = problem.checker
        damping = self.initial_damping
        previous = None
        current = _evaluate_start(problem)

        while True:
            iteration = problem.iteration_counter.count
            _logger.debug("iteration %d: rms %.6g, damping %.3g", iteration, current.rms, damping)
            if checker.converged(iteration, previous, current):
                return Optimum(current, iteration, problem.evaluation_counter.count)

            scale = _column_scale(current.jacobian)
            scaled = current.jacobian / scale
            normal = scaled.T @ scaled
            gradient = scaled.T @ current.residuals
            diagonal = np.diag(normal).copy()
            diagonal[diagonal == 0.0] = 1.0
            x_norm = np.linalg.norm(current.point * scale)

            problem.iteration_counter.increment()

            while True:
                try:
                    scaled_step = sla.solve(normal + damping * np.diag(diagonal), gradient,
                                            assume_a="pos")
                except sla.LinAlgError:
                    scaled_step = None

                if scaled_step is not None:
                    if np.linalg.norm(scaled_step) <= self.step_tolerance * (x_norm + self.step_tolerance):
                        _logger.debug("negligible step, stopping at iteration %d", iteration)
                        return Optimum(current, problem.iteration_counter.count,
                                       problem.evaluation_counter.count)

                    result = problem.evaluate(current.point + scaled_step / scale)
                    if result.ok and result.evaluation.cost <= current.cost:
                        damping /= self.damping_factor
                        break
                    if not result.ok and not result.rejectable:
                        result.raise_failure()
                    _logger.debug("step rejected, damping %.3g", damping * self.damping_factor)

                damping *= self.damping_factor
                if damping > self.max_damping:
                    raise NumericalFailure("unable to decrease the cost, damping too large")

            previous, current = current, result.evaluation
