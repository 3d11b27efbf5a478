from .forces import ForceModel, NewtonianAttraction, J2Perturbation, ConstantAcceleration
from .numerical import SpacecraftState, NumericalPropagator, NumericalPropagatorBuilder
