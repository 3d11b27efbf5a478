#########################################################################################
##
##          batchod example: orbit determination from ground station ranges
##
##  Truth:   low Earth orbit with J2, observed by three ground stations
##  Data:    range (1 m noise) and range rate (1 mm/s noise) every 2 minutes,
##           one range station carrying a 12 m bias
##  Fit:     orbit at the first date, J2 coefficient and the range bias
##
##  The initial guess is off by a few kilometers and meters per second.
##  The range bias is shared by every range of the biased station, the
##  estimator links the per-measurement bias drivers into one parameter.
##
#########################################################################################

# IMPORTS ===============================================================================

import logging

import numpy as np
import matplotlib.pyplot as plt

from batchod import (
    LoggerManager,
    Orbit,
    OrbitType,
    NumericalPropagatorBuilder,
    J2Perturbation,
    GroundStation,
    Range,
    RangeRate,
    Bias,
    OutlierFilter,
    BatchLSEstimator,
    GaussNewtonOptimizer,
)
from batchod.measurements import generate_measurements


# TRUE SCENARIO =========================================================================

TRUE_ORBIT = Orbit.from_keplerian(
    7.05e6,     # a [m]
    0.0015,     # e
    1.7,        # i [rad], sun-synchronous like
    0.4,        # raan [rad]
    1.2,        # omega [rad]
    0.0,        # true anomaly [rad]
)
TRUE_BIAS = 12.0        # [m]
TRUE_J2   = 1.0826e-3

STATIONS = [
    GroundStation.from_spherical("kiruna",    np.radians(67.9), np.radians(21.1), 400.0),
    GroundStation.from_spherical("kourou",    np.radians(5.2),  np.radians(-52.8), 10.0),
    GroundStation.from_spherical("perth",     np.radians(-31.8), np.radians(115.9), 20.0),
]

DATES = np.arange(120.0, 3 * 5900.0, 120.0)


# SYNTHETIC MEASUREMENTS ================================================================

def simulate(rng):
    """Noisy ranges and range rates from the reference trajectory."""
    builder = NumericalPropagatorBuilder(force_models=[J2Perturbation(TRUE_J2)])
    propagator = builder.build_propagator(TRUE_ORBIT)
    bias = Bias("kiruna range bias", TRUE_BIAS)

    def create_range(date):
        station = STATIONS[int(date // 120.0) % len(STATIONS)]
        measurement = Range(station, date, 0.0, sigma=1.0)
        if station.name == "kiruna":
            measurement.add_modifier(bias)
        return measurement

    def create_range_rate(date):
        station = STATIONS[int(date // 120.0 + 1) % len(STATIONS)]
        return RangeRate(station, date, 0.0, sigma=1.0e-3)

    ranges = generate_measurements(propagator, DATES, create_range, rng)
    range_rates = generate_measurements(propagator, DATES, create_range_rate, rng)
    return ranges, range_rates


# Run Example ===========================================================================

if __name__ == '__main__':

    LoggerManager().configure(enabled=True, level=logging.INFO)

    rng = np.random.default_rng(42)
    ranges, range_rates = simulate(rng)

    # one gross outlier, removed by the filter after two iterations
    ranges[10].set_observed_value(ranges[10].observed_value + 5.0e3)

    # estimation model: J2 starts at zero and is estimated
    builder = NumericalPropagatorBuilder(OrbitType.CARTESIAN, force_models=[J2Perturbation(0.0)])
    builder.get_parameters_drivers().find_by_name("J2").selected = True

    outliers = OutlierFilter(warmup=2, max_sigma=5.0)
    estimator = BatchLSEstimator(builder, GaussNewtonOptimizer())
    for measurement in ranges + range_rates:
        measurement.add_modifier(outliers)
        estimator.add_measurement(measurement)

    # the bias driver exists on every kiruna range, the estimator sees one parameter
    bias = next(d for d in estimator.get_supported_parameters() if d.name == "kiruna range bias")
    bias.value = 0.0
    bias.selected = True

    estimator.set_convergence_threshold(1.0e-3, 1.0e-3)
    estimator.set_max_iterations(15)
    estimator.set_max_evaluations(30)
    estimator.set_observer(
        lambda iterations, evaluations, orbit, estimated, lsp:
            print(f"  iteration {iterations:2d}   evaluations {evaluations:2d}   rms {lsp.rms:.4f}")
    )

    guess = Orbit(
        TRUE_ORBIT.position + [2.0e3, -1.5e3, 1.0e3],
        TRUE_ORBIT.velocity + [-1.0, 2.0, 0.5],
        TRUE_ORBIT.date,
    )
    orbit = estimator.estimate(guess)

    print(f"\nposition error : {np.linalg.norm(orbit.position - TRUE_ORBIT.position):.3f} m")
    print(f"velocity error : {np.linalg.norm(orbit.velocity - TRUE_ORBIT.velocity):.2e} m/s")
    print(f"range bias     : {bias.value[0]:.3f} m (true {TRUE_BIAS})")
    j2 = builder.get_parameters_drivers().find_by_name("J2").value[0]
    print(f"J2             : {j2:.6e} (true {TRUE_J2:.6e})\n")

    covariance = estimator.get_physical_covariances()
    covariance.display()

    estimator.plot_residuals()
    covariance.plot()
    plt.show()
