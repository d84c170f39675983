"""
Bootstrap Uncertainty Quantification

Bootstrap samples of a trained estimator for a single parameter
configuration, returned as a p x B matrix:

- parametric: B data sets simulated from the configuration;
- non-parametric: B data sets resampled with replacement from one observed
  data set, optionally by blocks of replicates.

Every bootstrap data set is independent, so all B data sets are evaluated
by the frozen estimator in one batched call.
"""

from typing import Any, Optional, Sequence

import numpy as np
import pandas as pd
import torch
import torch.nn as nn

from .core import (
    ArrayLike,
    ConfigurationError,
    DegenerateInputError,
    get_device,
    to_numpy,
)
from .parameters import ParameterConfigurations
from .simulate import Simulator, simulate


def _apply(estimator: nn.Module, Z: Sequence[ArrayLike], use_gpu: bool) -> np.ndarray:
    """Apply a frozen estimator to B data sets and return a p x B matrix."""
    estimator = estimator.to(get_device(use_gpu))
    estimator.eval()
    with torch.no_grad():
        theta_hat = estimator(list(Z))
    return to_numpy(theta_hat).reshape(len(Z), -1).T


def parametricbootstrap(
    estimator: nn.Module,
    simulator: Optional[Simulator],
    parameters: ParameterConfigurations,
    xi: Any,
    m: int,
    B: int = 100,
    use_gpu: bool = True,
    n_jobs: int = 1,
) -> np.ndarray:
    """Parametric bootstrap samples of an estimator.

    Parameters
    ----------
    estimator : nn.Module
        Trained estimator
    simulator : callable
        simulator(parameters, xi, m) -> list of realizations
    parameters : ParameterConfigurations
        A single parameter configuration (e.g. the estimate from observed data)
    xi : any
        Invariant model information
    m : int
        Sample size of each simulated data set
    B : int
        Number of bootstrap samples
    use_gpu : bool
        Run the estimator on CUDA when available
    n_jobs : int
        Worker threads used for simulation

    Returns
    -------
    samples : ndarray of shape (p, B)
    """
    if simulator is None:
        raise ConfigurationError(
            f"No simulator bound to {type(parameters).__name__}; "
            f"parametric bootstrap requires one"
        )
    if B < 1:
        raise DegenerateInputError(f"Number of bootstrap samples must be positive, got B={B}")
    if parameters.num_configurations != 1:
        raise ConfigurationError(
            f"Bootstrap is defined for a single configuration, got "
            f"{parameters.num_configurations}"
        )

    # Repeating the configuration keeps its intermediate objects aligned
    repeated = parameters.subset(np.zeros(B, dtype=np.int64))
    Z = simulate(simulator, repeated, xi, m, n_jobs=n_jobs)
    return _apply(estimator, Z, use_gpu)


def resample_indices(
    N: int,
    blocks: Optional[Sequence] = None,
    rng: Optional[np.random.Generator] = None,
) -> np.ndarray:
    """Replicate indices of one bootstrap data set.

    Args:
        N: Number of replicates in the observed data set
        blocks: Block label of each replicate (length N), or None for the
            ordinary bootstrap. Blocks need not be contiguous.
        rng: Random generator

    Returns:
        Integer indices into the replicate axis. Without blocks there are
        exactly N. With blocks, whole blocks are drawn with replacement until
        the size reaches N; the last block is kept only if that brings the
        size at least as close to N. The size equals N exactly when all
        blocks have the same length.
    """
    rng = np.random.default_rng() if rng is None else rng
    if N < 1:
        raise DegenerateInputError("Cannot resample an empty data set")

    if blocks is None:
        return rng.integers(0, N, size=N)

    blocks = np.asarray(blocks)
    if blocks.shape != (N,):
        raise ConfigurationError(
            f"blocks must have one label per replicate: {blocks.size} labels for {N} replicates"
        )

    labels = np.unique(blocks)
    members = [np.flatnonzero(blocks == label) for label in labels]

    chosen, size = [], 0
    while size < N:
        idx = members[rng.integers(len(members))]
        if size > 0 and abs(size + idx.size - N) > abs(size - N):
            break
        chosen.append(idx)
        size += idx.size

    return np.concatenate(chosen)


def nonparametricbootstrap(
    estimator: nn.Module,
    Z: ArrayLike,
    blocks: Optional[Sequence] = None,
    B: int = 100,
    use_gpu: bool = True,
    seed: Optional[int] = None,
) -> np.ndarray:
    """Non-parametric bootstrap samples of an estimator.

    Parameters
    ----------
    estimator : nn.Module
        Trained estimator
    Z : array of shape (N, *event_shape)
        Observed data set with the replicates along axis 0 (a one-element
        list is also accepted)
    blocks : sequence, optional
        Block label of each replicate for the block bootstrap, e.g.
        [1, 1, 2, 2, 2] for two blocks of sizes 2 and 3
    B : int
        Number of bootstrap samples
    use_gpu : bool
        Run the estimator on CUDA when available
    seed : int, optional
        Random seed

    Returns
    -------
    samples : ndarray of shape (p, B)
    """
    if isinstance(Z, (list, tuple)):
        if len(Z) != 1:
            raise ConfigurationError(
                f"Bootstrap is defined for a single data set, got {len(Z)}"
            )
        Z = Z[0]
    if B < 1:
        raise DegenerateInputError(f"Number of bootstrap samples must be positive, got B={B}")

    N = Z.shape[0]
    if blocks is not None and len(blocks) != N:
        raise ConfigurationError(
            f"blocks has {len(blocks)} labels but the data set has {N} replicates"
        )

    rng = np.random.default_rng(seed)
    Z_boot = []
    for _ in range(B):
        idx = resample_indices(N, blocks, rng)
        if isinstance(Z, torch.Tensor):
            Z_boot.append(Z[torch.as_tensor(idx, device=Z.device)])
        else:
            Z_boot.append(Z[idx])

    return _apply(estimator, Z_boot, use_gpu)


def interval(
    samples: np.ndarray,
    probs: Sequence[float] = (0.025, 0.975),
    parameter_names: Optional[Sequence[str]] = None,
) -> pd.DataFrame:
    """Percentile intervals from bootstrap samples.

    Args:
        samples: p x B matrix of bootstrap samples
        probs: Lower and upper probability levels
        parameter_names: Row labels (default: theta1, theta2, ...)

    Returns:
        DataFrame with one row per parameter and columns lower, upper
    """
    samples = np.atleast_2d(np.asarray(samples))
    if samples.shape[1] == 0:
        raise DegenerateInputError("No bootstrap samples")
    lower, upper = probs
    if not 0 <= lower < upper <= 1:
        raise ValueError(f"Invalid probability levels: {probs}")

    p = samples.shape[0]
    if parameter_names is None:
        parameter_names = [f"theta{i + 1}" for i in range(p)]

    return pd.DataFrame(
        {
            "lower": np.quantile(samples, lower, axis=1),
            "upper": np.quantile(samples, upper, axis=1),
        },
        index=pd.Index(list(parameter_names), name="parameter"),
    )
