from importlib import metadata

try:
    __version__ = metadata.version("batchod")
except Exception:
    __version__ = "unknown"

from .errors import (
    EstimationError,
    ConfigurationError,
    ValidationFailure,
    NumericalFailure,
    PropagationError,
)
from .orbits import Orbit, OrbitType, PositionAngle
from .utils.logger import LoggerManager
from .utils.parameter_driver import ParameterDriver, ParameterObserver
from .utils.parameter_drivers_list import ParameterDriversList, DelegatingDriver
from .propagation import (
    NewtonianAttraction,
    J2Perturbation,
    ConstantAcceleration,
    NumericalPropagatorBuilder,
)
from .measurements import GroundStation, Range, RangeRate, PV, Bias, OutlierFilter
from .opt import (
    BatchLSEstimator,
    BatchLSObserver,
    GaussNewtonOptimizer,
    LevenbergMarquardtOptimizer,
)
