"""
Model simulators for spatial data.

Each function simulates from a model given the lower Cholesky factor L of
a covariance matrix. With a sample size m, the result has the replicates
along axis 0 (shape (m, n)), ready to be returned as one realization by a
user simulator.
"""

from typing import Optional

import numpy as np


def simulategaussianprocess(
    L: np.ndarray,
    sigma: Optional[float] = None,
    m: Optional[int] = None,
    rng: Optional[np.random.Generator] = None,
) -> np.ndarray:
    """Simulate from a Gau(0, LL' + sigma^2 I) distribution.

    Args:
        L: Lower Cholesky factor of shape (n, n)
        sigma: Standard deviation of the nugget (measurement error); None for none
        m: Number of independent replicates; None returns a single field
        rng: Random generator

    Returns:
        Array of shape (n,) when m is None, otherwise (m, n)
    """
    rng = np.random.default_rng() if rng is None else rng
    L = np.asarray(L)
    n = L.shape[0]

    size = 1 if m is None else m
    Y = rng.standard_normal((size, n)) @ L.T
    if sigma is not None:
        Y = Y + sigma * rng.standard_normal((size, n))

    return Y[0] if m is None else Y


def _schlather_field(L: np.ndarray, C: float, rng: np.random.Generator) -> np.ndarray:
    n = L.shape[0]
    Z = np.full(n, -np.inf)
    scale = np.sqrt(2 * np.pi)

    # Poisson points zeta_1 > zeta_2 > ... of intensity zeta^-2
    inv_zeta = rng.exponential()
    zeta = 1 / inv_zeta
    while zeta * C > Z.min():
        X = simulategaussianprocess(L, rng=rng)
        Z = np.maximum(Z, zeta * scale * np.maximum(X, 0))
        inv_zeta += rng.exponential()
        zeta = 1 / inv_zeta

    return Z


def simulateschlather(
    L: np.ndarray,
    m: Optional[int] = None,
    C: float = 3.5,
    rng: Optional[np.random.Generator] = None,
) -> np.ndarray:
    """Simulate from Schlather's max-stable model with unit Fréchet margins.

    Based on Algorithm 1.2.2 of Dey DK, Yan J (2016). Extreme value modeling
    and risk analysis: methods and applications. CRC Press, Boca Raton,
    Florida. C bounds sqrt(2 pi) max(0, W) for the Gaussian process W and
    controls when the spectral construction stops.

    Args:
        L: Lower Cholesky factor of the correlation matrix, shape (n, n)
        m: Number of independent replicates; None returns a single field
        C: Truncation constant
        rng: Random generator

    Returns:
        Array of shape (n,) when m is None, otherwise (m, n)
    """
    rng = np.random.default_rng() if rng is None else rng
    L = np.asarray(L)
    if m is None:
        return _schlather_field(L, C, rng)
    return np.stack([_schlather_field(L, C, rng) for _ in range(m)], axis=0)
