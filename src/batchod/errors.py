#########################################################################################
##
##                                 ESTIMATION ERRORS
##                                    (errors.py)
##
#########################################################################################


class EstimationError(RuntimeError):
    """Base class for all errors raised by the estimation layer."""


class ConfigurationError(EstimationError, ValueError):
    """Invalid driver construction values or conflicting parameter declarations."""


class ValidationFailure(EstimationError, ValueError):
    """A candidate parameter vector maps to an invalid orbit.

    Optimizers treat this as a rejected step rather than a fatal failure.
    """


class NumericalFailure(EstimationError):
    """Estimation aborted by a numerical problem.

    Parameters
    ----------
    message : str
        Human-readable description.
    cause : BaseException, optional
        Originating error (propagator failure, singular matrix, ...).

    Attributes
    ----------
    last_orbit : Orbit or None
        Orbit of the last successful model evaluation, if any.
    last_evaluations : Mapping or None
        Estimated measurements of the last successful model evaluation.
    last_lsp_evaluation : LeastSquaresEvaluation or None
        Last least-squares evaluation seen by the convergence checker.
    """

    def __init__(self, message, cause=None):
        super().__init__(message)
        self.cause = cause
        self.last_orbit = None
        self.last_evaluations = None
        self.last_lsp_evaluation = None


class PropagationError(NumericalFailure):
    """Integrator failure or unphysical spacecraft state."""
