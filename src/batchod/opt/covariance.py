#########################################################################################
##
##                       ESTIMATED PARAMETERS COVARIANCE ANALYSIS
##                                 (opt/covariance.py)
##
#########################################################################################

# IMPORTS ===============================================================================

import numpy as np
import scipy.linalg as sla

from .._constants import SINGULARITY_THRESHOLD


# HELPERS ===============================================================================

def _covariance_stats(jacobian: np.ndarray, threshold: float) -> dict:
    """Information matrix and the quantities derived from it.

    Directions with singular values below ``threshold * s_max`` are dropped
    from the covariance (pseudo-inverse) and flagged through an infinite
    condition number.
    """
    n_p = jacobian.shape[1]
    information = jacobian.T @ jacobian

    _, s, vt = sla.svd(jacobian, full_matrices=False)
    keep = s > threshold * (s[0] if s.size else 0.0)
    inv_s2 = np.zeros_like(s)
    inv_s2[keep] = 1.0 / s[keep] ** 2
    covariance = (vt.T * inv_s2) @ vt

    sigma = np.sqrt(np.maximum(np.diag(covariance), 0.0))
    denominator = np.outer(sigma, sigma)
    correlation = np.divide(covariance, denominator,
                            out=np.zeros((n_p, n_p)), where=denominator > 0.0)
    np.fill_diagonal(correlation, 1.0)

    eigenvalues, eigenvectors = np.linalg.eigh(information)
    order = np.argsort(eigenvalues)[::-1]
    eigenvalues = eigenvalues[order]
    eigenvectors = eigenvectors[:, order]

    if np.count_nonzero(keep) == n_p and n_p > 0:
        condition_number = float(s[0] / s[-1]) ** 2
    else:
        condition_number = np.inf

    return dict(
        information=information,
        covariance=covariance,
        sigma=sigma,
        correlation=correlation,
        eigenvalues=eigenvalues,
        eigenvectors=eigenvectors,
        condition_number=condition_number,
    )


# CLASS =================================================================================

class EstimationCovariance:
    """Covariance of the estimated parameters, linearized at the solution.

    The Jacobian is the weighted one of the least-squares problem, so the
    covariance is in physical units of the parameters.

    Parameters
    ----------
    jacobian : np.ndarray, shape (n_observations, n_params)
        Weighted Jacobian at the solution.
    param_names : list of str
        One name per column; vector parameters repeat their name.
    param_values : np.ndarray, shape (n_params,)
    threshold : float
        Relative singular value threshold.

    Attributes
    ----------
    information : np.ndarray
        ``J^T J``.
    covariance : np.ndarray
        Pseudo-inverse of the information matrix.
    sigma : np.ndarray
        Standard deviations.
    correlation : np.ndarray
    eigenvalues, eigenvectors : np.ndarray
        Spectrum of the information matrix, descending.
    condition_number : float
        Infinite when some direction is not observable.
    """

    def __init__(self, jacobian, param_names, param_values,
                 threshold: float = SINGULARITY_THRESHOLD):
        self.jacobian = np.asarray(jacobian, dtype=float)
        self.param_names = list(param_names)
        self.param_values = np.asarray(param_values, dtype=float)

        stats = _covariance_stats(self.jacobian, threshold)
        self.information = stats["information"]
        self.covariance = stats["covariance"]
        self.sigma = stats["sigma"]
        self.correlation = stats["correlation"]
        self.eigenvalues = stats["eigenvalues"]
        self.eigenvectors = stats["eigenvectors"]
        self.condition_number = stats["condition_number"]


    def correlated_pairs(self, limit: float = 0.9) -> list[tuple[str, str, float]]:
        """Parameter pairs with ``|correlation| > limit``."""
        n_p = len(self.param_names)
        return [
            (self.param_names[i], self.param_names[j], float(self.correlation[i, j]))
            for i in range(n_p)
            for j in range(i + 1, n_p)
            if abs(self.correlation[i, j]) > limit
        ]


    # DISPLAY ===========================================================================

    def display(self) -> None:
        """Print the parameters with their standard deviation and the correlated pairs."""
        W = 72
        line = "=" * W
        dash = "-" * W

        print(line)
        print("  Estimated Parameters Covariance")
        print(line)
        print(f"  {'Parameter':<32} {'Value':>16} {'Sigma':>16}")
        print(dash)
        for name, value, sigma in zip(self.param_names, self.param_values, self.sigma):
            print(f"  {name:<32} {value:>16.8g} {sigma:>16.4g}")
        print(dash)

        print(f"\n  Condition number : {self.condition_number:.3g}")
        pairs = self.correlated_pairs()
        if pairs:
            print("  Highly correlated pairs (|r| > 0.90):")
            for a, b, r in pairs:
                print(f"    {a} / {b}  :  r = {r:+.3f}")
        else:
            print("  No highly correlated parameter pairs")
        print(line)


    # PLOT ==============================================================================

    def plot(self, *, figsize: tuple = (11, 4.5)):
        """Correlation heatmap and information matrix spectrum.

        Returns
        -------
        fig : matplotlib.figure.Figure
        axes : np.ndarray of matplotlib.axes.Axes, shape (2,)
        """
        import matplotlib.pyplot as plt
        import matplotlib.colors as mcolors

        n_p = len(self.param_names)
        fig, axes = plt.subplots(1, 2, figsize=figsize)

        ax = axes[0]
        norm = mcolors.TwoSlopeNorm(vmin=-1.0, vcenter=0.0, vmax=1.0)
        im = ax.imshow(self.correlation, cmap="RdBu_r", norm=norm, aspect="auto")
        fig.colorbar(im, ax=ax, label="Correlation")
        ax.set_xticks(range(n_p))
        ax.set_yticks(range(n_p))
        ax.set_xticklabels(self.param_names, rotation=45, ha="right", fontsize=8)
        ax.set_yticklabels(self.param_names, fontsize=8)
        ax.set_title("Parameter Correlation")

        ax = axes[1]
        positive = self.eigenvalues > 0.0
        ax.bar(range(n_p), np.abs(self.eigenvalues),
               color=["steelblue" if p else "salmon" for p in positive])
        ax.set_yscale("log")
        ax.set_xlabel("Eigendirection")
        ax.set_ylabel("Eigenvalue magnitude")
        ax.set_title("Information Matrix Spectrum")
        ax.grid(True, axis="y", alpha=0.3)

        fig.suptitle("Estimation Covariance Analysis", fontweight="bold")
        plt.tight_layout()
        return fig, axes
