"""
Tier 4: parametric and non-parametric bootstrap.
"""

import pytest
import numpy as np

from neuralestimators import (
    ConfigurationError,
    DegenerateInputError,
    interval,
    nonparametricbootstrap,
    parametricbootstrap,
    resample_indices,
)

from conftest import GaussianParameters, gaussian_simulator, make_deepset


@pytest.fixture
def single(parameters):
    """One configuration of the Gaussian model."""
    return parameters.subset([0])


@pytest.mark.tier4
class TestParametricBootstrap:
    """Bootstrap data simulated from a single configuration."""

    def test_shape(self, deepset, single, xi, config):
        samples = parametricbootstrap(deepset, gaussian_simulator, single, xi, m=10,
                                      B=config.B, use_gpu=False)
        assert samples.shape == (2, config.B)
        assert np.all(np.isfinite(samples))

    def test_samples_vary(self, deepset, single, xi, config):
        samples = parametricbootstrap(deepset, gaussian_simulator, single, xi, m=10,
                                      B=config.B, use_gpu=False)
        assert np.all(samples.std(axis=1) > 0)

    def test_requires_simulator(self, deepset, single, xi):
        with pytest.raises(ConfigurationError, match="simulator"):
            parametricbootstrap(deepset, None, single, xi, m=10, use_gpu=False)

    def test_requires_single_configuration(self, deepset, parameters, xi):
        with pytest.raises(ConfigurationError, match="single configuration"):
            parametricbootstrap(deepset, gaussian_simulator, parameters, xi, m=10,
                                use_gpu=False)

    def test_zero_samples(self, deepset, single, xi):
        with pytest.raises(DegenerateInputError):
            parametricbootstrap(deepset, gaussian_simulator, single, xi, m=10, B=0,
                                use_gpu=False)

    def test_intermediate_objects_repeated(self, xi):
        seen = []

        def simulator(parameters, xi, m):
            seen.append(parameters)
            return gaussian_simulator(parameters, xi, m)

        params = GaussianParameters.from_theta(np.array([[0.5], [2.0]]))
        parametricbootstrap(make_deepset(), simulator, params, xi, m=3, B=4, use_gpu=False)
        np.testing.assert_allclose(seen[0].variance, np.full(4, 4.0))


@pytest.mark.tier4
class TestNonparametricBootstrap:
    """Resampling replicates of one observed data set."""

    def test_shape(self, deepset, rng, config):
        Z = rng.normal(size=(15, 1))
        samples = nonparametricbootstrap(deepset, Z, B=config.B, use_gpu=False, seed=1)
        assert samples.shape == (2, config.B)

    def test_one_element_list(self, deepset, rng):
        Z = [rng.normal(size=(15, 1))]
        assert nonparametricbootstrap(deepset, Z, B=3, use_gpu=False).shape == (2, 3)

    def test_several_data_sets_rejected(self, deepset, rng):
        Z = [rng.normal(size=(15, 1)), rng.normal(size=(15, 1))]
        with pytest.raises(ConfigurationError):
            nonparametricbootstrap(deepset, Z, use_gpu=False)

    def test_seed_reproducible(self, deepset, rng):
        Z = rng.normal(size=(15, 1))
        a = nonparametricbootstrap(deepset, Z, B=5, use_gpu=False, seed=3)
        b = nonparametricbootstrap(deepset, Z, B=5, use_gpu=False, seed=3)
        np.testing.assert_allclose(a, b)

    def test_zero_samples(self, deepset, rng):
        with pytest.raises(DegenerateInputError):
            nonparametricbootstrap(deepset, rng.normal(size=(5, 1)), B=0, use_gpu=False)

    def test_blocks_length_mismatch(self, deepset, rng):
        with pytest.raises(ConfigurationError, match="labels"):
            nonparametricbootstrap(deepset, rng.normal(size=(6, 1)), blocks=[1, 1, 2],
                                   use_gpu=False)

    def test_with_blocks(self, deepset, rng):
        Z = rng.normal(size=(6, 1))
        samples = nonparametricbootstrap(deepset, Z, blocks=[1, 1, 2, 2, 3, 3], B=4,
                                         use_gpu=False, seed=0)
        assert samples.shape == (2, 4)


@pytest.mark.tier4
class TestResampleIndices:
    """Sizes of bootstrap data sets."""

    def test_ordinary(self, rng):
        idx = resample_indices(10, rng=rng)
        assert idx.shape == (10,)
        assert idx.min() >= 0 and idx.max() < 10

    def test_equal_blocks_give_exact_size(self, rng):
        blocks = [1, 1, 2, 2, 3, 3]
        for _ in range(50):
            assert resample_indices(6, blocks, rng).size == 6

    def test_blocks_drawn_whole(self, rng):
        blocks = np.array(["a", "a", "a", "b", "b", "b"])
        idx = resample_indices(6, blocks, rng)
        labels = blocks[idx]
        # Each run of three indices comes from a single block
        assert all(len(set(labels[i:i + 3])) == 1 for i in range(0, 6, 3))

    def test_non_contiguous_blocks(self, rng):
        blocks = [1, 2, 1, 2]
        idx = resample_indices(4, blocks, rng)
        assert idx.size == 4
        assert set(idx[:2].tolist()) in ({0, 2}, {1, 3})

    def test_unequal_blocks_approximate_size(self, rng):
        blocks = [1, 1, 1, 1, 2]
        sizes = [resample_indices(5, blocks, rng).size for _ in range(100)]
        assert all(abs(s - 5) <= 3 for s in sizes)

    def test_empty(self, rng):
        with pytest.raises(DegenerateInputError):
            resample_indices(0, rng=rng)


@pytest.mark.tier4
class TestInterval:
    """Percentile intervals."""

    def test_interval(self, rng):
        samples = np.vstack([rng.normal(0, 1, 4000), rng.normal(5, 2, 4000)])
        df = interval(samples, parameter_names=["mu", "sigma"])
        assert list(df.index) == ["mu", "sigma"]
        assert df.loc["mu", "lower"] == pytest.approx(-1.96, abs=0.15)
        assert df.loc["sigma", "upper"] == pytest.approx(5 + 2 * 1.96, abs=0.3)

    def test_invalid_levels(self):
        with pytest.raises(ValueError):
            interval(np.zeros((1, 10)), probs=(0.9, 0.1))


@pytest.mark.tier4
class TestParametricBootstrapThreads:
    """Threaded simulation of the bootstrap data sets."""

    def test_numpy_integer_sample_size(self, deepset, single, xi):
        samples = parametricbootstrap(deepset, gaussian_simulator, single, xi,
                                      m=np.int64(5), B=4, use_gpu=False, n_jobs=2)
        assert samples.shape == (2, 4)
