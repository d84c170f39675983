"""
Parameter configurations.

A set of parameter configurations stores K parameter vectors as a p x K
matrix `theta`, together with any intermediate objects needed for data
simulation (e.g. Cholesky factors of covariance matrices). Subclasses add
those objects as extra dataclass fields:

    @dataclass
    class Parameters(ParameterConfigurations):
        chols: np.ndarray  # (n, n, K)

        @classmethod
        def sample(cls, xi, K):
            theta = xi["prior"](K)
            return cls(theta, maternchols(xi["D"], theta[0], theta[1]))

The default subsetting slices every field along its last axis, so auxiliary
objects stay aligned with the columns of `theta`. Subclasses whose
configuration axis is not the last one override `subset`.
"""

import dataclasses
from dataclasses import dataclass
from typing import Any, Callable, Optional, Sequence

import numpy as np
import torch

from .core import ConfigurationError, DegenerateInputError

# sampler(xi, K) -> ParameterConfigurations
Sampler = Callable[[Any, int], "ParameterConfigurations"]


@dataclass
class ParameterConfigurations:
    """Container for K parameter vectors and their simulation-side objects."""
    theta: np.ndarray  # (p, K)

    def __post_init__(self):
        if isinstance(self.theta, torch.Tensor):
            self.theta = self.theta.detach().cpu().numpy()
        self.theta = np.asarray(self.theta)
        if self.theta.ndim == 1:
            # A single parameter per configuration
            self.theta = self.theta[np.newaxis, :]
        if self.theta.ndim != 2:
            raise ConfigurationError(
                f"theta must be a p x K matrix, got shape {self.theta.shape}"
            )

    @property
    def num_parameters(self) -> int:
        return self.theta.shape[0]

    @property
    def num_configurations(self) -> int:
        return self.theta.shape[1]

    def __len__(self) -> int:
        return self.num_configurations

    def subset(self, indices: Sequence[int]) -> "ParameterConfigurations":
        """Subset the configurations using a collection of indices.

        Every array field is sliced along its last axis, list and tuple
        fields of length K are indexed, and None fields pass through.
        Indices may repeat.

        Args:
            indices: Integer indices into the configuration axis

        Returns:
            New instance of the same class holding the selected configurations

        Raises:
            ConfigurationError: If a field cannot be subset along the
                configuration axis (wrong type or misaligned length)
        """
        indices = np.asarray(indices, dtype=np.int64).ravel()
        K = self.num_configurations

        if indices.size and (indices.min() < -K or indices.max() >= K):
            raise IndexError(f"Configuration index out of range for K={K}")

        updates = {}
        for field in dataclasses.fields(self):
            if not field.init:
                continue
            value = getattr(self, field.name)
            updates[field.name] = _subset_field(field.name, value, indices, K)

        return dataclasses.replace(self, **updates)

    def shuffle(self, rng: Optional[np.random.Generator] = None) -> "ParameterConfigurations":
        """Return the configurations in a random order."""
        rng = np.random.default_rng() if rng is None else rng
        return self.subset(rng.permutation(self.num_configurations))


def _subset_field(name: str, value, indices: np.ndarray, K: int):
    """Slice one field along its configuration (last) axis."""
    if value is None:
        return None

    if isinstance(value, (np.ndarray, torch.Tensor)):
        if value.ndim == 0 or value.shape[-1] != K:
            raise ConfigurationError(
                f"Field '{name}' with shape {tuple(value.shape)} does not store "
                f"{K} configurations along its last axis; override subset() "
                f"for this parameter type"
            )
        if isinstance(value, torch.Tensor):
            return value[..., torch.as_tensor(indices, device=value.device)]
        return value[..., indices]

    if isinstance(value, (list, tuple)):
        if len(value) != K:
            raise ConfigurationError(
                f"Field '{name}' has {len(value)} entries but there are {K} configurations"
            )
        return type(value)(value[i] for i in indices)

    raise ConfigurationError(
        f"Field '{name}' of type {type(value).__name__} cannot be subset; "
        f"store invariant objects in the model context instead"
    )


def subsetparameters(parameters: ParameterConfigurations, indices: Sequence[int]) -> ParameterConfigurations:
    """Subset parameters using a collection of indices (calls `parameters.subset`)."""
    return parameters.subset(indices)


def sample_parameters(sampler: Sampler, xi: Any, K: int) -> ParameterConfigurations:
    """Draw K configurations with a user-supplied sampler and check the result."""
    if K < 1:
        raise DegenerateInputError(f"Number of configurations must be positive, got K={K}")

    parameters = sampler(xi, K)
    if not isinstance(parameters, ParameterConfigurations):
        raise ConfigurationError(
            f"Sampler must return ParameterConfigurations, got {type(parameters).__name__}"
        )
    if parameters.num_configurations != K:
        raise ConfigurationError(
            f"Sampler returned {parameters.num_configurations} configurations, expected {K}"
        )
    return parameters
