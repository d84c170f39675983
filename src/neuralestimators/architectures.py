"""
Permutation-invariant neural estimators.

A Deep Set (Zaheer et al., 2017) represents an estimator as

    theta_hat(Z) = phi(T(Z)),    T(Z) = AGG({psi(Z_i) : i = 1, ..., m})

where AGG is a symmetric function (sum, mean or log-sum-exp) applied over
the replicates. Estimators are applied to lists of arrays, one array per
parameter configuration with the replicates along axis 0; different
configurations may have different numbers of replicates. Output has shape
(K, p).
"""

from bisect import bisect_left
from typing import Callable, List, Optional, Sequence, Union

import numpy as np
import torch
import torch.nn as nn

from .core import (
    Aggregation,
    ArrayLike,
    ConfigurationError,
    DegenerateInputError,
    aggregate,
    as_tensor,
    get_aggregation,
)

Realizations = Union[ArrayLike, Sequence[ArrayLike]]


# ==============================================================================
# Helpers
# ==============================================================================

def _linear_layers(module: nn.Module) -> List[nn.Linear]:
    """Materialized linear layers of a module, in registration order."""
    return [
        layer for layer in module.modules()
        if isinstance(layer, nn.Linear) and layer.in_features > 0
    ]


def input_width(module: nn.Module) -> Optional[int]:
    """Declared input width (first linear layer), or None if unknown."""
    layers = _linear_layers(module)
    return layers[0].in_features if layers else None


def output_width(module: nn.Module) -> Optional[int]:
    """Declared output width (last linear layer), or None if unknown."""
    layers = _linear_layers(module)
    return layers[-1].out_features if layers else None


def _module_device(module: nn.Module) -> torch.device:
    for p in module.parameters():
        return p.device
    return torch.device('cpu')


def prepare_realizations(Z: Realizations, device: torch.device) -> List[torch.Tensor]:
    """Move a collection of realizations to `device` as float32 tensors."""
    if isinstance(Z, (np.ndarray, torch.Tensor)):
        Z = [Z]
    Z = [as_tensor(z, device) for z in Z]
    if len(Z) == 0:
        raise DegenerateInputError("No realizations to estimate from")
    for k, z in enumerate(Z):
        if z.ndim == 0 or z.shape[0] == 0:
            raise DegenerateInputError(f"Realization {k} has no replicates")
    return Z


# ==============================================================================
# DeepSet
# ==============================================================================

class DeepSet(nn.Module):
    """Deep Set estimator with inner network psi and outer network phi.

    Parameters
    ----------
    psi : nn.Module
        Applied to each replicate independently, (N, *event_shape) -> (N, q_t)
    phi : nn.Module
        Applied to the pooled summary, (K, q_t) -> (K, p)
    aggregation : str or Aggregation
        "mean" (default), "sum" or "logsumexp"

    Examples
    --------
    >>> n, w, p = 10, 32, 5
    >>> psi = nn.Sequential(nn.Linear(n, w), nn.ReLU(), nn.Linear(w, w), nn.ReLU())
    >>> phi = nn.Sequential(nn.Linear(w, w), nn.ReLU(), nn.Linear(w, p))
    >>> estimator = DeepSet(psi, phi)
    >>> Z = [np.random.rand(m, n) for m in (3, 4)]  # two sets, m = 3 and m = 4
    >>> estimator(Z).shape
    torch.Size([2, 5])
    """

    def __init__(
        self,
        psi: nn.Module,
        phi: nn.Module,
        aggregation: Union[str, Aggregation] = "mean",
    ):
        super().__init__()
        self.psi = psi
        self.phi = phi
        self.aggregation = get_aggregation(aggregation)
        self._check_widths()

    def _check_widths(self):
        q_t = output_width(self.psi)
        q_phi = input_width(self.phi)
        if q_t is not None and q_phi is not None and q_t != q_phi:
            raise ConfigurationError(
                f"psi output width ({q_t}) does not match phi input width ({q_phi})"
            )

    @property
    def device(self) -> torch.device:
        return _module_device(self)

    def summary(self, Z: Realizations) -> torch.Tensor:
        """Pooled statistics T(Z), one row per configuration."""
        Z = prepare_realizations(Z, self.device)
        counts = [z.shape[0] for z in Z]

        # psi sees every replicate of every configuration in one pass
        H = self.psi(torch.cat(Z, dim=0))
        segments = torch.split(H, counts, dim=0)
        return torch.stack([aggregate(h, self.aggregation) for h in segments], dim=0)

    def forward(self, Z: Realizations) -> torch.Tensor:
        return self.phi(self.summary(Z))


# ==============================================================================
# DeepSetExpert
# ==============================================================================

class DeepSetExpert(DeepSet):
    """Deep Set augmented with expert summary statistics.

    The outer network phi consumes the concatenation of the pooled summary
    T(Z) and the expert statistics S(Z) = (S_1(Z), ..., S_qs(Z)), where each
    S_j is a real-valued function of one realization (e.g. `samplesize`).
    The input width of phi must therefore be q_t + q_s.
    """

    def __init__(
        self,
        psi: nn.Module,
        phi: nn.Module,
        S: Sequence[Callable],
        aggregation: Union[str, Aggregation] = "mean",
    ):
        if callable(S):
            S = [S]
        self.S = list(S)
        if len(self.S) == 0:
            raise ConfigurationError("DeepSetExpert requires at least one expert statistic")
        super().__init__(psi, phi, aggregation)

    @classmethod
    def from_deepset(cls, deepset: DeepSet, phi: nn.Module, S: Sequence[Callable]) -> "DeepSetExpert":
        """Expert estimator inheriting psi and the aggregation of `deepset`.

        The outer network cannot be inherited, since its input width must
        grow by the number of expert statistics.
        """
        return cls(deepset.psi, phi, S, deepset.aggregation)

    def _check_widths(self):
        q_t = output_width(self.psi)
        q_phi = input_width(self.phi)
        q_s = len(self.S)
        if q_t is not None and q_phi is not None and q_phi != q_t + q_s:
            raise ConfigurationError(
                f"phi input width ({q_phi}) must equal psi output width ({q_t}) "
                f"plus the number of expert statistics ({q_s})"
            )

    def expert_statistics(self, Z: Realizations) -> torch.Tensor:
        """Expert statistics S(Z), one row per configuration."""
        Z = prepare_realizations(Z, self.device)
        rows = []
        for z in Z:
            values = [as_tensor(s(z), z.device).reshape(-1) for s in self.S]
            rows.append(torch.cat(values))
        S = torch.stack(rows, dim=0)
        if S.shape[1] != len(self.S):
            raise ConfigurationError(
                f"Expert statistics must be scalar-valued: got {S.shape[1]} values "
                f"from {len(self.S)} functions"
            )
        return S

    def forward(self, Z: Realizations) -> torch.Tensor:
        Z = prepare_realizations(Z, self.device)
        T = self.summary(Z)
        S = self.expert_statistics(Z)
        return self.phi(torch.cat([T, S], dim=1))


# ==============================================================================
# DeepSetPiecewise
# ==============================================================================

class DeepSetPiecewise(nn.Module):
    """Piecewise estimator dispatching on the sample size.

    Given n estimators and n-1 increasing cut-offs c_1 < ... < c_{n-1},
    realizations with m <= c_1 go to the first estimator,
    c_{i-1} < m <= c_i to the i-th, and m > c_{n-1} to the last.

    Examples
    --------
    Dispatch estimator_1 if m <= 30 and estimator_2 if m > 30:

    >>> estimator = DeepSetPiecewise([estimator_1, estimator_2], [30])
    """

    def __init__(self, estimators: Sequence[nn.Module], m_cutoffs: Sequence[int]):
        super().__init__()
        m_cutoffs = [int(c) for c in m_cutoffs]
        if len(estimators) != len(m_cutoffs) + 1:
            raise ConfigurationError(
                f"{len(estimators)} estimators require {len(estimators) - 1} cut-offs, "
                f"got {len(m_cutoffs)}"
            )
        if any(a >= b for a, b in zip(m_cutoffs[:-1], m_cutoffs[1:])):
            raise ConfigurationError(f"Cut-offs must be strictly increasing, got {m_cutoffs}")

        self.estimators = nn.ModuleList(estimators)
        self.m_cutoffs = m_cutoffs

    def route(self, m: int) -> int:
        """Index of the estimator responsible for sample size m."""
        return bisect_left(self.m_cutoffs, m)

    def forward(self, Z: Realizations) -> torch.Tensor:
        if isinstance(Z, (np.ndarray, torch.Tensor)):
            Z = [Z]
        Z = list(Z)
        if len(Z) == 0:
            raise DegenerateInputError("No realizations to estimate from")

        routes = np.array([self.route(z.shape[0]) for z in Z])

        order, parts = [], []
        for i, estimator in enumerate(self.estimators):
            idx = np.flatnonzero(routes == i)
            if idx.size == 0:
                continue
            parts.append(estimator([Z[j] for j in idx]))
            order.extend(idx.tolist())

        device = parts[0].device
        theta_hat = torch.cat([part.to(device) for part in parts], dim=0)
        inverse = torch.as_tensor(np.argsort(order), device=device)
        return theta_hat[inverse]
