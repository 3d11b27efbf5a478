########################################################################################
##
##                                  TESTS FOR
##                              'opt/least_squares.py'
##
########################################################################################

# IMPORTS ==============================================================================

import numpy as np
import pytest

from batchod.errors import NumericalFailure, ValidationFailure, PropagationError
from batchod.opt import (
    Incrementor,
    ModelResult,
    LeastSquaresEvaluation,
    EvaluationRmsChecker,
    EvaluationResult,
    LeastSquaresProblem,
    GaussNewtonOptimizer,
    LevenbergMarquardtOptimizer,
)


# HELPERS ==============================================================================

def _linear_problem(start=(0.0, 0.0), checker=None, **kwargs):
    """Overdetermined y = A x with a small misfit; returns (problem, least-squares solution)."""
    rng = np.random.default_rng(3)
    A = rng.normal(size=(8, 2))
    b = A @ np.array([2.0, -1.0]) + 0.01 * rng.normal(size=8)

    model = lambda x: ModelResult.success(A @ x, A)
    checker = checker or EvaluationRmsChecker(1e-10, 1e-12)
    problem = LeastSquaresProblem(start, b, model, checker, **kwargs)
    return problem, np.linalg.lstsq(A, b, rcond=None)[0]


def _exponential_problem(start=(1.0, 0.0), checker=None, **kwargs):
    """Noise-free y = a exp(b t) with a = 2, b = -0.5."""
    t = np.linspace(0.0, 4.0, 15)
    data = 2.0 * np.exp(-0.5 * t)

    def model(x):
        a, b = x
        e = np.exp(b * t)
        return ModelResult.success(a * e, np.column_stack([e, a * t * e]))

    checker = checker or EvaluationRmsChecker(1e-10, 1e-12)
    return LeastSquaresProblem(start, data, model, checker, **kwargs)


class _RecordingChecker(EvaluationRmsChecker):

    def __init__(self, rel_tol, abs_tol=0.0):
        super().__init__(rel_tol, abs_tol)
        self.calls = []

    def converged(self, iteration, previous, current):
        self.calls.append((iteration, previous is None))
        return super().converged(iteration, previous, current)


# COUNTERS AND EVALUATIONS =============================================================

class TestIncrementor:

    def test_limit(self):
        counter = Incrementor(2, "iterations")
        counter.increment()
        assert counter.can_increment()
        counter.increment()
        assert not counter.can_increment()
        with pytest.raises(NumericalFailure, match=r"maximal number of iterations \(2\) exceeded"):
            counter.increment()

    def test_reset(self):
        counter = Incrementor(1)
        counter.increment()
        counter.reset()
        assert counter.count == 0
        assert "0/1" in repr(counter)


class TestLeastSquaresEvaluation:

    def test_statistics(self):
        evaluation = LeastSquaresEvaluation(
            point=[0.0, 0.0],
            value=[1.0, 1.0, 1.0, 1.0],
            jacobian=np.vstack([2.0 * np.eye(2), np.zeros((2, 2))]),
            target=[3.0, 1.0, 1.0, 1.0],
        )
        np.testing.assert_array_equal(evaluation.residuals, [2.0, 0.0, 0.0, 0.0])
        assert evaluation.chi_square == 4.0
        assert evaluation.cost == 2.0
        assert evaluation.rms == 1.0
        assert evaluation.reduced_chi_square(2) == 2.0
        assert evaluation.reduced_chi_square(4) == np.inf

    def test_covariances(self):
        evaluation = LeastSquaresEvaluation([1.0, 1.0], np.zeros(3),
                                            np.vstack([2.0 * np.eye(2), np.zeros((1, 2))]),
                                            np.zeros(3))
        np.testing.assert_allclose(evaluation.get_covariances(), 0.25 * np.eye(2), atol=1e-15)
        np.testing.assert_allclose(evaluation.get_sigma(), [0.5, 0.5])

    def test_singular_covariances_raise(self):
        jacobian = np.array([[1.0, 2.0], [2.0, 4.0], [3.0, 6.0]])
        evaluation = LeastSquaresEvaluation([0.0, 0.0], np.zeros(3), jacobian, np.zeros(3))
        with pytest.raises(NumericalFailure, match="singular"):
            evaluation.get_covariances()


class TestEvaluationRmsChecker:

    def _evaluation(self, rms):
        return LeastSquaresEvaluation([0.0], [rms], [[1.0]], [0.0])

    def test_first_iteration_never_converges(self):
        assert not EvaluationRmsChecker(1.0, 1.0).converged(1, None, self._evaluation(1.0))

    def test_relative_threshold(self):
        checker = EvaluationRmsChecker(0.1)
        assert checker.converged(2, self._evaluation(10.0), self._evaluation(9.5))
        assert not checker.converged(2, self._evaluation(10.0), self._evaluation(8.0))

    def test_absolute_threshold(self):
        checker = EvaluationRmsChecker(0.0, 1e-3)
        assert checker.converged(2, self._evaluation(1e-3), self._evaluation(1e-4))


class TestEvaluationResult:

    def test_validation_failure_is_rejectable(self):
        assert EvaluationResult(failure=ValidationFailure("bad")).rejectable
        assert not EvaluationResult(failure=ZeroDivisionError()).rejectable

    def test_estimation_errors_reraised_unchanged(self):
        failure = PropagationError("diverged")
        with pytest.raises(PropagationError) as info:
            EvaluationResult(failure=failure).raise_failure()
        assert info.value is failure

    def test_other_errors_wrapped(self):
        failure = ZeroDivisionError("division")
        with pytest.raises(NumericalFailure, match="division") as info:
            EvaluationResult(failure=failure).raise_failure()
        assert info.value.cause is failure


class TestLeastSquaresProblem:

    def test_sizes_and_counter(self):
        problem, _ = _linear_problem()
        assert problem.parameter_size == 2
        assert problem.observation_size == 8
        result = problem.evaluate([1.0, 1.0])
        assert result.ok
        assert problem.evaluation_counter.count == 1

    def test_wrong_model_size_is_a_failure(self):
        model = lambda x: ModelResult.success(np.zeros(3), np.zeros((3, 1)))
        problem = LeastSquaresProblem([0.0], np.zeros(4), model, EvaluationRmsChecker(1e-3))
        result = problem.evaluate([0.0])
        assert isinstance(result.failure, NumericalFailure)

    def test_validator_failure_skips_model(self):
        calls = []

        def model(x):
            calls.append(x)
            return ModelResult.success(x, np.eye(1))

        def validator(x):
            raise ValidationFailure("never valid")

        problem = LeastSquaresProblem([0.0], [0.0], model, EvaluationRmsChecker(1e-3), validator)
        assert problem.evaluate([1.0]).rejectable
        assert calls == []

    def test_evaluation_records_iteration(self):
        seen = []

        def model(x, iteration=None):
            seen.append(iteration)
            return ModelResult.success(x, np.eye(1))

        problem = LeastSquaresProblem([0.0], [0.0], model, EvaluationRmsChecker(1e-3))
        problem.iteration_counter.increment(3)

        assert problem.evaluate([1.0]).evaluation.iteration == 3
        assert problem.evaluate([1.0], iteration=1).evaluation.iteration == 1
        assert seen == [None, 1]
        assert problem.evaluation_counter.count == 2


# GAUSS-NEWTON =========================================================================

class TestGaussNewton:

    def test_linear_problem(self):
        problem, solution = _linear_problem()
        optimum = GaussNewtonOptimizer().optimize(problem)
        np.testing.assert_allclose(optimum.point, solution, rtol=1e-10)
        assert optimum.iterations <= 3

    def test_exponential_fit(self):
        optimum = GaussNewtonOptimizer().optimize(_exponential_problem(start=(1.5, -0.3)))
        np.testing.assert_allclose(optimum.point, [2.0, -0.5], rtol=1e-8)
        assert optimum.evaluation.rms < 1e-8

    def test_checker_called_each_iteration(self):
        checker = _RecordingChecker(1e-10, 1e-12)
        problem, _ = _linear_problem(checker=checker)
        optimum = GaussNewtonOptimizer().optimize(problem)

        assert checker.calls[0] == (1, True)
        assert [c[0] for c in checker.calls] == list(range(1, len(checker.calls) + 1))
        assert not any(first for _, first in checker.calls[1:])
        assert optimum.iterations == len(checker.calls)

    def test_step_halving_then_giving_up(self):
        points = []

        def model(x):
            points.append(float(x[0]))
            return ModelResult.success(x, np.eye(1))

        def validator(x):
            if x[0] < 0.0:
                raise ValidationFailure("negative")
            return x

        problem = LeastSquaresProblem([1.0], [-1.0], model, EvaluationRmsChecker(1e-6),
                                      validator)
        with pytest.raises(NumericalFailure, match="valid step") as info:
            GaussNewtonOptimizer().optimize(problem)

        # full step to -1 rejected, half step to 0 accepted, then stuck at the bound
        assert points == [1.0, 0.0]
        assert isinstance(info.value.cause, ValidationFailure)

    def test_model_failure_propagates(self):
        calls = []

        def model(x):
            calls.append(x)
            if len(calls) > 1:
                return ModelResult.error(ZeroDivisionError("bad model"))
            return ModelResult.success(x, np.eye(1))

        problem = LeastSquaresProblem([1.0], [0.0], model, EvaluationRmsChecker(1e-6))
        with pytest.raises(NumericalFailure, match="bad model"):
            GaussNewtonOptimizer().optimize(problem)

    def test_singular_jacobian(self):
        model = lambda x: ModelResult.success(np.array([x[0] + x[1], x[0] + x[1]]),
                                              np.ones((2, 2)))
        problem = LeastSquaresProblem([0.0, 0.0], [1.0, 1.0], model, EvaluationRmsChecker(1e-6))
        with pytest.raises(NumericalFailure, match="singular"):
            GaussNewtonOptimizer().optimize(problem)

    def test_max_iterations(self):
        problem = _exponential_problem(checker=EvaluationRmsChecker(0.0, 0.0), max_iterations=2)
        with pytest.raises(NumericalFailure, match="iterations"):
            GaussNewtonOptimizer().optimize(problem)

    def test_max_evaluations(self):
        problem = _exponential_problem(checker=EvaluationRmsChecker(0.0, 0.0), max_evaluations=2)
        with pytest.raises(NumericalFailure, match="evaluations"):
            GaussNewtonOptimizer().optimize(problem)


# LEVENBERG-MARQUARDT ==================================================================

class TestLevenbergMarquardt:

    def test_linear_problem(self):
        problem, solution = _linear_problem(checker=EvaluationRmsChecker(1e-14))
        optimum = LevenbergMarquardtOptimizer().optimize(problem)
        np.testing.assert_allclose(optimum.point, solution, rtol=1e-6)

    def test_exponential_fit(self):
        optimum = LevenbergMarquardtOptimizer().optimize(_exponential_problem())
        np.testing.assert_allclose(optimum.point, [2.0, -0.5], rtol=1e-6)

    def test_negligible_step_at_solution(self):
        A = np.array([[1.0, 0.0], [0.0, 2.0], [1.0, 1.0]])
        x = np.array([1.0, -1.0])
        model = lambda p: ModelResult.success(A @ p, A)
        problem = LeastSquaresProblem(x, A @ x, model, EvaluationRmsChecker(1e-6))

        optimum = LevenbergMarquardtOptimizer().optimize(problem)
        np.testing.assert_array_equal(optimum.point, x)
        assert optimum.evaluations == 1

    def test_rejected_points_increase_damping_until_failure(self):
        start = np.array([1.0])

        def validator(x):
            if not np.array_equal(x, start):
                raise ValidationFailure("only the start is valid")
            return x

        model = lambda x: ModelResult.success(x, np.eye(1))
        # far target, so the shrinking step stays above the negligible step size
        problem = LeastSquaresProblem(start, [-1.0e4], model, EvaluationRmsChecker(1e-6),
                                      validator)
        with pytest.raises(NumericalFailure, match="damping"):
            LevenbergMarquardtOptimizer().optimize(problem)

    def test_model_failure_propagates(self):
        calls = []

        def model(x):
            calls.append(x)
            if len(calls) > 1:
                return ModelResult.error(PropagationError("diverged"))
            return ModelResult.success(x, np.eye(1))

        problem = LeastSquaresProblem([1.0], [0.0], model, EvaluationRmsChecker(1e-6))
        with pytest.raises(PropagationError, match="diverged"):
            LevenbergMarquardtOptimizer().optimize(problem)
