"""
Subbotin (delta-Laplace) distribution and the lower incomplete gamma function.

The Subbotin distribution with location mu, scale tau and shape delta has
density

    f_S(y; mu, tau, delta) = delta / (2 tau Gamma(1/delta)) exp(-|(y - mu)/tau|^delta)

It contains the Gaussian (delta = 2, tau = sqrt(2)) and the Laplace
(delta = 1) distributions as special cases.
"""

from typing import Union

import numpy as np
from scipy.special import gamma, gammainc, gammaincinv

ArrayLike = Union[float, np.ndarray]


def incgammalower(a: ArrayLike, x: ArrayLike) -> ArrayLike:
    """Unnormalised lower incomplete gamma function, int_0^x t^(a-1) e^(-t) dt."""
    return gammainc(a, x) * gamma(a)


def _check(tau, delta):
    if np.any(np.asarray(tau) <= 0) or np.any(np.asarray(delta) <= 0):
        raise ValueError("tau and delta must be positive")


def f_s(x: ArrayLike, mu: float, tau: float, delta: float) -> ArrayLike:
    """Subbotin density."""
    _check(tau, delta)
    x = np.asarray(x, dtype=np.float64)
    return delta / (2 * tau * gamma(1 / delta)) * np.exp(-np.abs((x - mu) / tau) ** delta)


def F_s(q: ArrayLike, mu: float, tau: float, delta: float) -> ArrayLike:
    """Subbotin distribution function."""
    _check(tau, delta)
    q = np.asarray(q, dtype=np.float64)
    z = np.abs((q - mu) / tau) ** delta
    return 0.5 + 0.5 * np.sign(q - mu) * gammainc(1 / delta, z)


def F_s_inv(p: ArrayLike, mu: float, tau: float, delta: float) -> ArrayLike:
    """Subbotin quantile function.

    Examples
    --------
    Standard Gaussian:

    >>> F_s_inv(0.975, 0.0, np.sqrt(2), 2.0)   # approximately 1.96

    Standard Laplace:

    >>> F_s_inv(0.975, 0.0, 1.0, 1.0)          # approximately 2.996
    """
    _check(tau, delta)
    p = np.asarray(p, dtype=np.float64)
    if np.any((p < 0) | (p > 1)):
        raise ValueError("Probabilities must lie in [0, 1]")
    return mu + np.sign(p - 0.5) * tau * gammaincinv(1 / delta, np.abs(2 * p - 1)) ** (1 / delta)
