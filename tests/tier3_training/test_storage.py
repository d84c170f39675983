"""
Tier 3: network snapshots, risk history and best-weight selection.
"""

import h5py
import pytest
import numpy as np
import torch

from neuralestimators import (
    DegenerateInputError,
    best_epoch,
    bestweights,
    list_snapshot_epochs,
    load_loss_per_epoch,
    load_network,
    loadbestweights,
    save_loss_per_epoch,
    save_network,
    train,
)

from conftest import gaussian_sampler, gaussian_simulator, make_deepset


@pytest.mark.tier3
class TestBestWeights:
    """Selection of the snapshot with the smallest validation risk."""

    def test_bestweights_picks_minimum(self):
        losses = [0.9, 0.5, 0.6, 0.4, 0.7]
        snapshots = {epoch: f"weights{epoch}" for epoch in range(len(losses))}
        assert bestweights(snapshots, losses) == "weights3"

    def test_nan_ignored(self):
        assert best_epoch([np.nan, 0.3, 0.2]) == 2

    def test_empty(self):
        with pytest.raises(DegenerateInputError):
            best_epoch([])
        with pytest.raises(DegenerateInputError):
            bestweights({}, [0.1])

    def test_missing_snapshot(self):
        with pytest.raises(KeyError):
            bestweights({0: "a"}, [0.5, 0.1])


@pytest.mark.tier3
class TestRunDirectory:
    """Files written to and read from a training run directory."""

    def test_network_roundtrip(self, tmp_path, deepset):
        save_network(deepset.state_dict(), tmp_path, 2)
        loaded = load_network(tmp_path, 2)
        for name, value in deepset.state_dict().items():
            assert torch.equal(value, loaded[name])

    def test_missing_network(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_network(tmp_path, 0)

    def test_list_snapshot_epochs(self, tmp_path, deepset):
        for epoch in (10, 0, 2):
            save_network(deepset.state_dict(), tmp_path, epoch)
        (tmp_path / "notes.txt").write_text("not a snapshot")
        assert list_snapshot_epochs(tmp_path) == [0, 2, 10]
        assert list_snapshot_epochs(tmp_path / "missing") == []

    def test_loss_history(self, tmp_path):
        save_loss_per_epoch([1.0, 0.5], [1.1, 0.6], tmp_path,
                            metadata={"K": np.int64(50), "lr": 1e-3})
        train_risk, val_risk, metadata = load_loss_per_epoch(tmp_path)
        np.testing.assert_allclose(train_risk, [1.0, 0.5])
        np.testing.assert_allclose(val_risk, [1.1, 0.6])
        assert metadata["K"] == 50
        assert "_saved_at" in metadata

    def test_loadbestweights(self, tmp_path):
        losses = [0.9, 0.5, 0.6, 0.4, 0.7]
        for epoch in range(len(losses)):
            save_network({"w": torch.full((2,), float(epoch))}, tmp_path, epoch)
        save_loss_per_epoch(np.zeros(len(losses)), losses, tmp_path)
        state = loadbestweights(tmp_path)
        assert state["w"].tolist() == [3.0, 3.0]

    def test_loadbestweights_empty_directory(self, tmp_path):
        with pytest.raises(DegenerateInputError):
            loadbestweights(tmp_path)

    def test_train_writes_run_directory(self, tmp_path, config, xi):
        estimator, state = train(
            make_deepset(), gaussian_simulator, xi, sampler=gaussian_sampler,
            K=config.K, m=config.m, epochs=2, batch_size=config.batch_size,
            savepath=str(tmp_path), use_gpu=False, seed=0, verbose=False,
        )
        assert list_snapshot_epochs(tmp_path) == [0, 1, 2]
        _, val_risk, metadata = load_loss_per_epoch(tmp_path)
        assert len(val_risk) == 3
        assert metadata["best_epoch"] == state.best_epoch

        best = loadbestweights(tmp_path)
        for name, value in estimator.state_dict().items():
            assert torch.equal(value.cpu(), best[name])

    def test_loss_history_compressed(self, tmp_path):
        filepath = save_loss_per_epoch([1.0, 0.5, 0.4], [1.1, 0.6, 0.5], tmp_path)
        with h5py.File(filepath, "r") as f:
            assert f["train_risk"].compression == "gzip"
            assert f["val_risk"].compression == "gzip"
