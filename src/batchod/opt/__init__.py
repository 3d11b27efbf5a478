#########################################################################################
##
##                    BATCH LEAST-SQUARES ESTIMATION PUBLIC API
##                               (opt/__init__.py)
##
#########################################################################################

from .least_squares import (
    Incrementor,
    ModelResult,
    LeastSquaresEvaluation,
    EvaluationRmsChecker,
    EvaluationResult,
    LeastSquaresProblem,
    Optimum,
    GaussNewtonOptimizer,
    LevenbergMarquardtOptimizer,
)
from .model import Model
from .batch_ls_estimator import BatchLSEstimator, BatchLSObserver
from .covariance import EstimationCovariance
