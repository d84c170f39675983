"""
Covariance functions and their Cholesky factors.

These are intermediate objects that depend on the parameters only, so they
are typically computed once per parameter refresh and stored alongside
`theta` in a ParameterConfigurations subclass.
"""

from typing import Union

import numpy as np
from scipy import linalg
from scipy.special import gamma, kv

ArrayLike = Union[float, np.ndarray]


def matern(h: ArrayLike, rho: float, nu: float, sigma2: float = 1.0) -> ArrayLike:
    """
    Matérn covariance for points separated by distance h.

    Uses the parametrisation of the R package fields:

        C(h) = sigma2 * 2^(1 - nu) / Gamma(nu) * (h / rho)^nu * K_nu(h / rho)

    where K_nu is the modified Bessel function of the second kind.

    Parameters
    ----------
    h : float or array
        Distance(s), h >= 0
    rho : float
        Range parameter, rho > 0
    nu : float
        Smoothness parameter, nu > 0
    sigma2 : float
        Marginal variance

    Returns
    -------
    C : float or array
        Covariance, equal to sigma2 at h = 0
    """
    if rho <= 0 or nu <= 0:
        raise ValueError(f"rho and nu must be positive, got rho={rho}, nu={nu}")

    h = np.asarray(h, dtype=np.float64)
    d = h / rho

    with np.errstate(invalid="ignore", divide="ignore"):
        C = sigma2 * 2.0 ** (1 - nu) / gamma(nu) * d ** nu * kv(nu, d)

    # The limit at zero distance is the marginal variance
    C = np.where(h == 0, sigma2, C)
    return C if C.ndim else float(C)


def _matern_chol(D: np.ndarray, rho: float, nu: float) -> np.ndarray:
    C = matern(D, rho, nu)
    return linalg.cholesky(C, lower=True)


def maternchols(D: np.ndarray, rho: ArrayLike, nu: ArrayLike) -> np.ndarray:
    """
    Cholesky factors of Matérn covariance matrices.

    Parameters
    ----------
    D : ndarray of shape (n, n)
        Distance matrix
    rho, nu : float or array of shape (K,)
        Range and smoothness; arrays give one factor per configuration

    Returns
    -------
    L : ndarray of shape (n, n), or (n, n, K) when rho or nu is an array
        Lower-triangular factors, configurations along the last axis
    """
    D = np.asarray(D, dtype=np.float64)
    if D.ndim != 2 or D.shape[0] != D.shape[1]:
        raise ValueError(f"D must be a square matrix, got shape {D.shape}")

    if np.ndim(rho) == 0 and np.ndim(nu) == 0:
        return _matern_chol(D, float(rho), float(nu))

    rho, nu = np.broadcast_arrays(np.atleast_1d(rho), np.atleast_1d(nu))
    return np.stack([_matern_chol(D, r, v) for r, v in zip(rho, nu)], axis=-1)
