"""
Tier 5 Integration Tests.

Tests for:
- Full pipeline: train -> estimate -> bootstrap -> interval
- Expert and piecewise estimators trained on the same model
- Spatial model with intermediate objects (Cholesky factors)
"""

from dataclasses import dataclass

import pytest
import numpy as np
import torch

from neuralestimators import (
    DeepSet,
    DeepSetExpert,
    DeepSetPiecewise,
    ParameterConfigurations,
    estimate,
    interval,
    loadbestweights,
    nonparametricbootstrap,
    parametricbootstrap,
    risk_table,
    samplesize,
    train,
)
from neuralestimators.simulations import maternchols, simulategaussianprocess

from conftest import (
    GaussianModel,
    GaussianParameters,
    gaussian_sampler,
    gaussian_simulator,
    make_deepset,
    make_phi,
    make_psi,
)


@pytest.mark.tier5
@pytest.mark.slow
class TestFullPipeline:
    """Training, assessment and uncertainty quantification end to end."""

    def test_gaussian_pipeline(self, tmp_path):
        xi = GaussianModel(seed=7)
        estimator, state = train(
            make_deepset(width=32), gaussian_simulator, xi, sampler=gaussian_sampler,
            K=500, m=range(10, 31), epochs=15, batch_size=32, lr=5e-3,
            epochs_per_theta_refresh=3, epochs_per_Z_refresh=1,
            savepath=str(tmp_path), use_gpu=False, seed=7, verbose=False,
        )
        assert state.best_risk < state.val_risks[0]

        reloaded = make_deepset(width=32)
        reloaded.load_state_dict(loadbestweights(tmp_path))

        test_params = gaussian_sampler(xi, 50)
        estimates = estimate(
            [estimator, reloaded], gaussian_simulator, test_params, xi, m=[10, 30],
            estimator_names=["trained", "reloaded"], parameter_names=["mu", "sigma"],
            use_gpu=False, verbose=False,
        )
        table = risk_table(estimates).set_index(["estimator", "m", "parameter"])["risk"]
        assert table[("trained", 30, "mu")] == pytest.approx(table[("reloaded", 30, "mu")])

        # Bootstrap around the estimate from one observed data set
        observed = gaussian_simulator(test_params.subset([0]), xi, 30)[0]
        with torch.no_grad():
            theta_hat = estimator([observed]).numpy().T
        boot = parametricbootstrap(
            estimator, gaussian_simulator, GaussianParameters.from_theta(theta_hat), xi,
            m=30, B=50, use_gpu=False,
        )
        assert boot.shape == (2, 50)
        ci = interval(boot, parameter_names=["mu", "sigma"])
        assert np.all(ci["lower"] <= ci["upper"])

        boot_np = nonparametricbootstrap(estimator, observed, B=50, use_gpu=False, seed=0)
        assert boot_np.shape == (2, 50)

    def test_expert_and_piecewise(self):
        xi = GaussianModel(seed=3)
        options = dict(K=100, epochs=2, batch_size=25, use_gpu=False, seed=3, verbose=False)

        torch.manual_seed(3)
        small, _ = train(make_deepset(), gaussian_simulator, xi, sampler=gaussian_sampler,
                         m=range(1, 11), **options)
        expert = DeepSetExpert.from_deepset(small, make_phi(16, n_in=17), [samplesize])
        expert, _ = train(expert, gaussian_simulator, xi, sampler=gaussian_sampler,
                          m=range(11, 31), **options)

        piecewise = DeepSetPiecewise([small, expert], [10])
        Z = gaussian_simulator(gaussian_sampler(xi, 4), xi, np.array([3, 25, 10, 11]))
        with torch.no_grad():
            out = piecewise(Z)
            np.testing.assert_allclose(out[0].numpy(), small([Z[0]])[0].numpy(), rtol=1e-5)
            np.testing.assert_allclose(out[1].numpy(), expert([Z[1]])[0].numpy(), rtol=1e-5)
        assert out.shape == (4, 2)


@dataclass
class SpatialParameters(ParameterConfigurations):
    """Matérn range parameter with the Cholesky factor of each configuration."""
    chols: np.ndarray  # (n, n, K)


@dataclass
class SpatialModel:
    D: np.ndarray
    nu: float = 1.0
    seed: int = 0

    def __post_init__(self):
        self.rng = np.random.default_rng(self.seed)


def spatial_sampler(xi: SpatialModel, K: int) -> SpatialParameters:
    rho = xi.rng.uniform(0.05, 0.5, size=K)
    return SpatialParameters(rho[np.newaxis, :], maternchols(xi.D, rho, xi.nu))


def spatial_simulator(parameters: SpatialParameters, xi: SpatialModel, m):
    K = parameters.num_configurations
    m = np.broadcast_to(np.asarray(m), (K,))
    return [
        simulategaussianprocess(parameters.chols[..., k], m=int(m[k]), rng=xi.rng)
        for k in range(K)
    ]


@pytest.mark.tier5
class TestSpatialModel:
    """A Gaussian process model whose simulation needs intermediate objects."""

    def test_train_with_cholesky_factors(self):
        s = np.linspace(0, 1, 8)
        xi = SpatialModel(D=np.abs(s[:, None] - s[None, :]))
        torch.manual_seed(0)
        estimator = DeepSet(make_psi(16, n_in=8), make_phi(16, p=1), "mean")
        estimator, state = train(
            estimator, spatial_simulator, xi, sampler=spatial_sampler,
            K=50, m=5, epochs=2, batch_size=10,
            epochs_per_theta_refresh=2, epochs_per_Z_refresh=1,
            use_gpu=False, seed=0, verbose=False, n_jobs=2,
        )
        assert len(state.val_risks) == 3
        assert np.all(np.isfinite(state.val_risks))
