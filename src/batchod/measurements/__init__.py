from .measurement import (
    MeasurementStatus,
    EstimatedMeasurement,
    ObservedMeasurement,
    EstimationModifier,
)
from .ground_station import GroundStation
from .range import Range
from .range_rate import RangeRate
from .pv import PV
from .modifiers import Bias, OutlierFilter
from .generation import generate_measurements
