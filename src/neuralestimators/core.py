"""
Core definitions shared by the neural estimator framework.

This module provides:
- The error taxonomy (configuration, simulation contract, degenerate input)
- Symmetric aggregation functions used to pool replicates in a Deep Set
- Loss functions averaging over parameters and configurations
- Host/device helpers
"""

from enum import Enum
from typing import Union

import numpy as np
import torch

# Type alias for host or device arrays
ArrayLike = Union[np.ndarray, torch.Tensor]


# ==============================================================================
# Errors
# ==============================================================================

class ConfigurationError(ValueError):
    """Invalid configuration, detected before any simulation or training."""


class SimulationContractError(ValueError):
    """A user-supplied simulator returned data the architecture cannot use."""


class DegenerateInputError(ValueError):
    """Empty input (no replicates, no configurations, no bootstrap samples)."""


# ==============================================================================
# Aggregation
# ==============================================================================

class Aggregation(Enum):
    """Symmetric functions available for pooling over the replicate axis."""
    SUM = "sum"
    MEAN = "mean"
    LOGSUMEXP = "logsumexp"


def _sum(x: torch.Tensor) -> torch.Tensor:
    return torch.sum(x, dim=0)


def _mean(x: torch.Tensor) -> torch.Tensor:
    return torch.mean(x, dim=0)


def _logsumexp(x: torch.Tensor) -> torch.Tensor:
    return torch.logsumexp(x, dim=0)


_REDUCERS = {
    Aggregation.SUM: _sum,
    Aggregation.MEAN: _mean,
    Aggregation.LOGSUMEXP: _logsumexp,
}


def get_aggregation(how: Union[str, Aggregation]) -> Aggregation:
    """Resolve an aggregation name ("sum", "mean", "logsumexp") to its enum member.

    Raises
    ------
    ConfigurationError
        If the name is not one of the supported aggregations.
    """
    if isinstance(how, Aggregation):
        return how
    try:
        return Aggregation(str(how).lower())
    except ValueError:
        valid = ", ".join(a.value for a in Aggregation)
        raise ConfigurationError(
            f"Unknown aggregation '{how}' (expected one of: {valid})"
        ) from None


def aggregate(x: torch.Tensor, how: Union[str, Aggregation] = Aggregation.MEAN) -> torch.Tensor:
    """
    Pool a tensor over its first (replicate) axis.

    Parameters
    ----------
    x : Tensor of shape (m, q)
        Transformed replicates psi(Z_1), ..., psi(Z_m)
    how : str or Aggregation
        Symmetric function to apply

    Returns
    -------
    T : Tensor of shape (q,)
        Pooled summary, invariant to the order of the replicates
    """
    return _REDUCERS[get_aggregation(how)](x)


def samplesize(Z: ArrayLike) -> float:
    """Number of replicates in a realization (length of the replicate axis).

    Useful as an expert summary statistic in DeepSetExpert.
    """
    return float(Z.shape[0])


# ==============================================================================
# Loss functions
# ==============================================================================

def mae(theta_hat: torch.Tensor, theta: torch.Tensor) -> torch.Tensor:
    """Mean absolute error averaged over parameters and configurations."""
    return torch.mean(torch.abs(theta_hat - theta))


def mse(theta_hat: torch.Tensor, theta: torch.Tensor) -> torch.Tensor:
    """Mean squared error averaged over parameters and configurations."""
    return torch.mean((theta_hat - theta) ** 2)


# ==============================================================================
# Device helpers
# ==============================================================================

def get_device(use_gpu: bool = True) -> torch.device:
    """CUDA device if requested and available, CPU otherwise."""
    if use_gpu and torch.cuda.is_available():
        return torch.device('cuda')
    return torch.device('cpu')


def as_tensor(x: ArrayLike, device: torch.device = None) -> torch.Tensor:
    """Convert a host array (or tensor) to a float32 tensor on `device`."""
    if isinstance(x, torch.Tensor):
        t = x.float()
    else:
        t = torch.as_tensor(np.asarray(x), dtype=torch.float32)
    if device is not None:
        t = t.to(device)
    return t


def to_numpy(x: ArrayLike) -> np.ndarray:
    """Detach a tensor and copy it to host memory as a numpy array."""
    if isinstance(x, torch.Tensor):
        return x.detach().cpu().numpy()
    return np.asarray(x)
