"""
Data simulation.

The statistical model is defined implicitly by a user-supplied simulator:

    simulator(parameters, xi, m) -> list of K arrays

where array k holds the realizations for configuration k with the
replicates along axis 0, shape (m_k, *event_shape). `m` is either an
integer (same sample size for every configuration) or a length-K integer
array. Simulators must not share mutable state between configurations,
since chunks of configurations may be simulated concurrently.
"""

import os
from typing import Any, Callable, List, Optional, Sequence, Union

import numpy as np
import torch

from .core import ArrayLike, DegenerateInputError, SimulationContractError
from .parameters import ParameterConfigurations

SampleSize = Union[int, np.ndarray]
Simulator = Callable[[ParameterConfigurations, Any, SampleSize], Sequence]


def draw_sample_sizes(
    m: Union[int, Sequence[int]],
    K: int,
    rng: Optional[np.random.Generator] = None,
) -> SampleSize:
    """Sample sizes to pass to the simulator for K configurations.

    Args:
        m: An integer, or a collection of candidate sample sizes (list, tuple,
            range or array) from which each configuration draws its own size
        K: Number of configurations
        rng: Random generator used when drawing from a collection

    Returns:
        The integer unchanged, or a length-K integer array
    """
    if isinstance(m, (int, np.integer)):
        if m < 1:
            raise DegenerateInputError(f"Sample size must be positive, got m={m}")
        return int(m)

    candidates = np.asarray(list(m), dtype=np.int64)
    if candidates.size == 0:
        raise DegenerateInputError("Empty collection of sample sizes")
    if candidates.min() < 1:
        raise DegenerateInputError(f"Sample sizes must be positive, got {candidates.min()}")

    rng = np.random.default_rng() if rng is None else rng
    return rng.choice(candidates, size=K, replace=True)


def _as_realization(z, k: int) -> ArrayLike:
    """Validate one configuration's realizations and return a single array."""
    if isinstance(z, (list, tuple)):
        # Per-replicate arrays: must share a shape before stacking
        if len(z) == 0:
            raise DegenerateInputError(f"Configuration {k} has no replicates")
        shapes = {tuple(np.shape(r)) for r in z}
        if len(shapes) > 1:
            raise SimulationContractError(
                f"Replicates of configuration {k} have mismatched shapes: {sorted(shapes)}"
            )
        if isinstance(z[0], torch.Tensor):
            return torch.stack(list(z), dim=0)
        return np.stack([np.asarray(r) for r in z], axis=0)

    if not isinstance(z, (np.ndarray, torch.Tensor)):
        raise SimulationContractError(
            f"Realization {k} must be an array, got {type(z).__name__}"
        )
    if z.ndim == 0:
        raise SimulationContractError(
            f"Realization {k} is a scalar; the replicate axis (axis 0) is missing"
        )
    if z.shape[0] == 0:
        raise DegenerateInputError(f"Configuration {k} has no replicates")
    return z


def check_realizations(
    Z: Sequence,
    K: Optional[int] = None,
    m: Optional[SampleSize] = None,
) -> List[ArrayLike]:
    """Check simulator output against the architecture's assumptions.

    Args:
        Z: Simulator output, one entry per configuration
        K: Expected number of configurations
        m: Sample sizes requested from the simulator (checked when given)

    Returns:
        List of arrays with the replicate axis first

    Raises:
        SimulationContractError: Wrong number of realizations, non-array
            entries, or inconsistent per-replicate shapes
        DegenerateInputError: Empty output or a configuration without replicates
    """
    if isinstance(Z, (np.ndarray, torch.Tensor)):
        raise SimulationContractError(
            "Simulator must return a sequence with one array per configuration, "
            "not a single array"
        )
    Z = list(Z)
    if len(Z) == 0:
        raise DegenerateInputError("Simulator returned no realizations")
    if K is not None and len(Z) != K:
        raise SimulationContractError(
            f"Simulator returned {len(Z)} realizations for {K} configurations"
        )

    Z = [_as_realization(z, k) for k, z in enumerate(Z)]

    event_shape = tuple(Z[0].shape[1:])
    for k, z in enumerate(Z):
        if tuple(z.shape[1:]) != event_shape:
            raise SimulationContractError(
                f"Realization {k} has per-replicate shape {tuple(z.shape[1:])}, "
                f"expected {event_shape}"
            )

    if m is not None:
        expected = np.broadcast_to(np.asarray(m), (len(Z),))
        for k, z in enumerate(Z):
            if z.shape[0] != expected[k]:
                raise SimulationContractError(
                    f"Realization {k} has {z.shape[0]} replicates, requested {expected[k]}"
                )

    return Z


def _chunks(K: int, n_chunks: int) -> List[np.ndarray]:
    return [c for c in np.array_split(np.arange(K), n_chunks) if c.size]


def _simulate_once(
    simulator: Simulator,
    parameters: ParameterConfigurations,
    xi: Any,
    m: SampleSize,
    n_jobs: int,
) -> List[ArrayLike]:
    K = parameters.num_configurations
    if n_jobs == 1 or K == 1:
        return check_realizations(simulator(parameters, xi, m), K)

    from joblib import Parallel, delayed

    n_workers = os.cpu_count() if n_jobs < 0 else n_jobs
    chunks = _chunks(K, min(n_workers, K))

    def run(idx):
        m_chunk = m if np.ndim(m) == 0 else np.asarray(m)[idx]
        return check_realizations(simulator(parameters.subset(idx), xi, m_chunk), len(idx))

    results = Parallel(n_jobs=len(chunks), prefer="threads")(
        delayed(run)(idx) for idx in chunks
    )
    return check_realizations([z for chunk in results for z in chunk], K)


def simulate(
    simulator: Simulator,
    parameters: ParameterConfigurations,
    xi: Any,
    m: SampleSize,
    num_rep: int = 1,
    n_jobs: int = 1,
) -> List[ArrayLike]:
    """Simulate realizations for every configuration.

    Parameters
    ----------
    simulator : callable
        simulator(parameters, xi, m) -> sequence of K arrays
    parameters : ParameterConfigurations
        K parameter configurations
    xi : any
        Invariant model information
    m : int or ndarray of shape (K,)
        Sample size(s)
    num_rep : int
        Number of independent data sets per configuration. Output is ordered
        repetition-major: all K configurations of repetition 0 first.
    n_jobs : int
        Number of worker threads (-1 for all CPUs). Configurations are split
        into contiguous chunks that are simulated concurrently.

    Returns
    -------
    Z : list of K * num_rep arrays with the replicate axis first
    """
    if num_rep < 1:
        raise DegenerateInputError(f"num_rep must be positive, got {num_rep}")
    if parameters.num_configurations == 0:
        raise DegenerateInputError("No parameter configurations to simulate from")
    if np.ndim(m) == 0:
        m = int(m)

    Z = []
    for _ in range(num_rep):
        Z.extend(_simulate_once(simulator, parameters, xi, m, n_jobs))
    return Z
