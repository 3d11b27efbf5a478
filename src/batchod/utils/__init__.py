from .logger import LoggerManager
from .parameter_driver import ParameterDriver, ParameterObserver
from .parameter_drivers_list import ParameterDriversList, DelegatingDriver
