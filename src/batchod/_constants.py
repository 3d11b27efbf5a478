#########################################################################################
##
##                             DEFAULT VALUES AND CONSTANTS
##                                   (_constants.py)
##
#########################################################################################

# PHYSICAL CONSTANTS ====================================================================

EARTH_MU = 3.986004415e14                   # m^3/s^2
EARTH_EQUATORIAL_RADIUS = 6378136.3         # m
EARTH_J2 = 1.08262668355e-3
EARTH_ANGULAR_VELOCITY = 7.292115146706979e-5   # rad/s


# PARAMETER DRIVERS =====================================================================

MU_SCALE = 2.0 ** 32
J2_SCALE = 1.0e-6
ACCELERATION_SCALE = 1.0e-9
STATION_OFFSET_SCALE = 1.0
BIAS_SCALE = 1.0


# PROPAGATION ===========================================================================

INTEGRATOR_METHOD = "DOP853"
INTEGRATOR_RTOL = 1.0e-13
INTEGRATOR_ATOL = 1.0e-10

# relative step for finite-difference derivatives of force models and orbit mappings
FD_RELATIVE_STEP = 1.0e-6


# ESTIMATION ============================================================================

DEFAULT_MAX_ITERATIONS = 20
DEFAULT_MAX_EVALUATIONS = 60
DEFAULT_CONVERGENCE_REL = 1.0e-3
DEFAULT_CONVERGENCE_ABS = 1.0e-3

# relative singular value threshold for least-squares steps and covariances
SINGULARITY_THRESHOLD = 1.0e-11

# Levenberg-Marquardt initial damping, relative to the scaled normal matrix diagonal
LM_INITIAL_DAMPING = 1.0e-3
