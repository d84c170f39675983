"""
Pytest fixtures and configuration for neural estimator tests.

The test model is univariate Gaussian with unknown mean and standard
deviation, theta = (mu, sigma), so every realization has shape (m, 1).
"""

from dataclasses import dataclass

import numpy as np
import pytest
import torch
import torch.nn as nn

from neuralestimators import DeepSet, ParameterConfigurations

# Set random seed for reproducibility
RANDOM_SEED = 42


@dataclass
class GaussianParameters(ParameterConfigurations):
    """Configurations of (mu, sigma) with the variance as intermediate object."""
    variance: np.ndarray  # (K,)

    @classmethod
    def from_theta(cls, theta: np.ndarray) -> "GaussianParameters":
        theta = np.asarray(theta, dtype=np.float64)
        return cls(theta, theta[1] ** 2)


@dataclass
class GaussianModel:
    """Invariant model information (xi) for the Gaussian test model."""
    mu_range: tuple = (-1.0, 1.0)
    sigma_range: tuple = (0.5, 1.5)
    seed: int = RANDOM_SEED

    def __post_init__(self):
        self.rng = np.random.default_rng(self.seed)


def gaussian_sampler(xi: GaussianModel, K: int) -> GaussianParameters:
    """Draw K configurations uniformly over the prior box."""
    mu = xi.rng.uniform(*xi.mu_range, size=K)
    sigma = xi.rng.uniform(*xi.sigma_range, size=K)
    return GaussianParameters.from_theta(np.vstack([mu, sigma]))


def gaussian_simulator(parameters: GaussianParameters, xi: GaussianModel, m):
    """One (m_k, 1) array per configuration."""
    K = parameters.num_configurations
    m = np.broadcast_to(np.asarray(m), (K,))
    mu = parameters.theta[0]
    sd = np.sqrt(parameters.variance)
    return [
        xi.rng.normal(mu[k], sd[k], size=(int(m[k]), 1)).astype(np.float32)
        for k in range(K)
    ]


def make_psi(width: int = 16, n_in: int = 1) -> nn.Module:
    return nn.Sequential(nn.Linear(n_in, width), nn.ReLU(), nn.Linear(width, width), nn.ReLU())


def make_phi(width: int = 16, p: int = 2, n_in: int = None) -> nn.Module:
    n_in = width if n_in is None else n_in
    return nn.Sequential(nn.Linear(n_in, width), nn.ReLU(), nn.Linear(width, p))


def make_deepset(width: int = 16, p: int = 2, aggregation: str = "mean", seed: int = RANDOM_SEED):
    torch.manual_seed(seed)
    return DeepSet(make_psi(width), make_phi(width, p), aggregation)


@dataclass
class TestConfig:
    """Sizes used by the training and inference tests."""
    K: int = 50
    m: int = 10
    batch_size: int = 16
    epochs: int = 3
    B: int = 20
    atol: float = 1e-5


@pytest.fixture
def config():
    """Standard test configuration."""
    return TestConfig()


@pytest.fixture
def seed():
    """Random seed for reproducibility."""
    return RANDOM_SEED


@pytest.fixture
def rng(seed):
    """Numpy random generator."""
    return np.random.default_rng(seed)


@pytest.fixture
def xi(seed):
    """Gaussian model information with its own generator."""
    return GaussianModel(seed=seed)


@pytest.fixture
def parameters(xi):
    """Ten configurations of the Gaussian model."""
    return gaussian_sampler(xi, 10)


@pytest.fixture(params=["sum", "mean", "logsumexp"])
def aggregation(request):
    """Parametrized aggregation function."""
    return request.param


@pytest.fixture
def deepset():
    """Small untrained Deep Set for (mu, sigma)."""
    return make_deepset()


# Pytest configuration
def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "slow: marks tests as slow")
    config.addinivalue_line("markers", "tier1: Tier 1 foundational tests")
    config.addinivalue_line("markers", "tier2: Tier 2 architecture tests")
    config.addinivalue_line("markers", "tier3: Tier 3 training tests")
    config.addinivalue_line("markers", "tier4: Tier 4 estimation and bootstrap tests")
    config.addinivalue_line("markers", "tier5: Tier 5 integration tests")
