"""
Storage for Training Runs

A training run directory holds one network snapshot per epoch and the risk
history of the run:

    savepath/
        network_epoch0.pt        # state dict before training
        network_epoch1.pt
        ...
        loss_per_epoch.h5        # datasets "train_risk", "val_risk"

Networks are saved with torch; the risk history is stored in HDF5 with the
run metadata as a JSON attribute.
"""

import json
import re
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Sequence, Tuple, Union

import h5py
import numpy as np
import torch

from .core import DegenerateInputError

PathLike = Union[str, Path]

LOSS_FILE = "loss_per_epoch.h5"
_SNAPSHOT_PATTERN = re.compile(r"^network_epoch(\d+)\.pt$")


def _serialize_metadata(metadata: dict) -> str:
    """Serialize metadata dict to JSON string for HDF5 attribute storage."""
    def convert(obj):
        if isinstance(obj, np.ndarray):
            return obj.tolist()
        elif isinstance(obj, (np.integer, np.floating)):
            return obj.item()
        elif isinstance(obj, datetime):
            return obj.isoformat()
        elif isinstance(obj, Path):
            return str(obj)
        elif isinstance(obj, (int, float, str, bool, list, dict)) or obj is None:
            return obj
        return repr(obj)

    converted = {k: convert(v) for k, v in metadata.items()}
    return json.dumps(converted)


def snapshot_path(savepath: PathLike, epoch: int) -> Path:
    return Path(savepath) / f"network_epoch{epoch}.pt"


def save_network(state_dict: Mapping[str, torch.Tensor], savepath: PathLike, epoch: int) -> Path:
    """Save an estimator state dict as the snapshot for `epoch`."""
    savepath = Path(savepath)
    savepath.mkdir(parents=True, exist_ok=True)
    filepath = snapshot_path(savepath, epoch)
    torch.save({k: v.detach().cpu() for k, v in state_dict.items()}, filepath)
    return filepath


def load_network(savepath: PathLike, epoch: int) -> Dict[str, torch.Tensor]:
    """Load the snapshot saved for `epoch`."""
    filepath = snapshot_path(savepath, epoch)
    if not filepath.exists():
        raise FileNotFoundError(f"Network snapshot not found: {filepath}")
    return torch.load(filepath, map_location='cpu', weights_only=True)


def list_snapshot_epochs(savepath: PathLike) -> list[int]:
    """Epochs with a saved network snapshot, in increasing order."""
    savepath = Path(savepath)
    if not savepath.exists():
        return []
    epochs = []
    for f in savepath.iterdir():
        match = _SNAPSHOT_PATTERN.match(f.name)
        if match:
            epochs.append(int(match.group(1)))
    return sorted(epochs)


def save_loss_per_epoch(
    train_risks: Sequence[float],
    val_risks: Sequence[float],
    savepath: PathLike,
    metadata: Optional[dict[str, Any]] = None,
) -> Path:
    """Save the per-epoch risk history of a run.

    Args:
        train_risks: Training risk per epoch (entry 0 is the initial risk)
        val_risks: Validation risk per epoch (entry 0 is the initial risk)
        savepath: Run directory
        metadata: Training options and other run information

    Returns:
        Path to saved file
    """
    savepath = Path(savepath)
    savepath.mkdir(parents=True, exist_ok=True)
    filepath = savepath / LOSS_FILE

    metadata = dict(metadata or {})
    metadata["_saved_at"] = datetime.now().isoformat()

    with h5py.File(filepath, "w") as f:
        f.create_dataset("train_risk", data=np.asarray(train_risks, dtype=np.float64), compression="gzip")
        f.create_dataset("val_risk", data=np.asarray(val_risks, dtype=np.float64), compression="gzip")
        f.attrs["metadata"] = _serialize_metadata(metadata)

    return filepath


def load_loss_per_epoch(savepath: PathLike) -> Tuple[np.ndarray, np.ndarray, dict[str, Any]]:
    """Load the risk history of a run.

    Returns:
        Tuple of (train_risk, val_risk, metadata)

    Raises:
        FileNotFoundError: If the run has no risk history
    """
    filepath = Path(savepath) / LOSS_FILE
    if not filepath.exists():
        raise FileNotFoundError(f"Risk history not found: {filepath}")

    with h5py.File(filepath, "r") as f:
        train_risk = f["train_risk"][:]
        val_risk = f["val_risk"][:]
        metadata = json.loads(f.attrs["metadata"])

    return train_risk, val_risk, metadata


def best_epoch(losses: Sequence[float]) -> int:
    """Epoch (index into `losses`) with the smallest validation risk."""
    losses = np.asarray(losses, dtype=np.float64)
    if losses.size == 0:
        raise DegenerateInputError("Empty loss sequence")
    return int(np.nanargmin(losses))


def bestweights(snapshots: Mapping[int, Any], losses: Sequence[float]) -> Any:
    """Snapshot at the epoch with the smallest validation risk.

    Parameters
    ----------
    snapshots : mapping
        Estimator states keyed by epoch
    losses : sequence of float
        Validation risk per epoch, indexed by epoch

    Returns
    -------
    state : the snapshot stored for the best epoch
    """
    if len(snapshots) == 0:
        raise DegenerateInputError("No snapshots to choose from")
    epoch = best_epoch(losses)
    if epoch not in snapshots:
        raise KeyError(f"No snapshot stored for best epoch {epoch}")
    return snapshots[epoch]


def loadbestweights(savepath: PathLike) -> Dict[str, torch.Tensor]:
    """Load the state dict of the best network of a training run on disk.

    The run directory must contain snapshots named 'network_epoch{x}.pt' and
    the risk history 'loss_per_epoch.h5'.
    """
    epochs = list_snapshot_epochs(savepath)
    if not epochs:
        raise DegenerateInputError(f"No network snapshots in {savepath}")
    _, val_risk, _ = load_loss_per_epoch(savepath)
    epoch = best_epoch(val_risk)
    return load_network(savepath, epoch)
