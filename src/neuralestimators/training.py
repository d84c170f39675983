"""
Training of neural estimators with on-the-fly simulation.

Parameters and data are regenerated during training on two independent
cadences:

- every `epochs_per_theta_refresh` epochs the training parameters are
  resampled (only when a sampler is given);
- every `epochs_per_Z_refresh` epochs the training data are resimulated
  for the current training parameters.

Resampling parameters (and their intermediate objects, e.g. Cholesky
factors) is often the dominant cost, so refreshing only the data amortizes
that cost while still avoiding overfitting to one realized data set. The
parameter cadence must be a multiple of the data cadence. Fixing both
parameters and data usually degrades out-of-sample performance.

The validation parameters are sampled once (K // 5 of them) and held fixed
so that the validation risk is comparable across epochs. Training stops
when the validation risk has not improved for `stopping_epochs` epochs, and
the estimator is returned with the weights of its best epoch.
"""

import math
import time
import warnings
from dataclasses import dataclass, field, fields
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
import torch
import torch.nn as nn

from .core import (
    ConfigurationError,
    DegenerateInputError,
    as_tensor,
    get_device,
    mae,
)
from .parameters import ParameterConfigurations, Sampler, sample_parameters
from .simulate import Simulator, draw_sample_sizes, simulate
from .storage import save_loss_per_epoch, save_network


# ==============================================================================
# Configuration
# ==============================================================================

@dataclass
class TrainingOptions:
    """Options recognised by `train`.

    Attributes
    ----------
    m : int or collection of int
        Sample size, or candidate sample sizes drawn per configuration
    batch_size : int
        Number of configurations per gradient step
    epochs : int
        Maximum number of epochs
    epochs_per_theta_refresh : int
        How often to resample the training parameters (sampler mode only);
        must be a multiple of `epochs_per_Z_refresh`
    epochs_per_Z_refresh : int
        How often to resimulate the training data
    loss : callable
        loss(theta_hat, theta) -> scalar tensor, averaged over configurations
    optimiser : torch.optim.Optimizer or callable, optional
        An optimizer bound to the estimator's parameters, or a factory
        params -> optimizer. Default: AdamW with learning rate `lr`.
    lr : float
        Learning rate of the default optimiser
    stopping_epochs : int
        Halt if the validation risk does not improve for this many epochs
    K : int
        Number of training configurations (sampler mode only); the
        validation set has K // 5 configurations
    use_gpu : bool
        Train on CUDA when available
    savepath : str, optional
        Directory for per-epoch snapshots and the risk history; nothing is
        written when None
    refresh_validation_data : bool
        Resimulate the validation data every epoch (parameters stay fixed)
    n_jobs : int
        Worker threads used for simulation (-1 for all CPUs)
    seed : int, optional
        Seed for shuffling, sample-size draws and torch initialisation
    verbose : bool
        Print training progress
    """
    m: Union[int, Sequence[int]] = 10
    batch_size: int = 32
    epochs: int = 100
    epochs_per_theta_refresh: int = 1
    epochs_per_Z_refresh: int = 1
    loss: Callable = mae
    optimiser: Any = None
    lr: float = 1e-4
    stopping_epochs: int = 10
    K: int = 10_000
    use_gpu: bool = True
    savepath: Optional[str] = None
    refresh_validation_data: bool = True
    n_jobs: int = 1
    seed: Optional[int] = None
    verbose: bool = True

    @classmethod
    def from_kwargs(cls, **kwargs) -> "TrainingOptions":
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(kwargs) - known)
        if unknown:
            raise ConfigurationError(f"Unknown training options: {', '.join(unknown)}")
        return cls(**kwargs)

    def validate(self, sampler_mode: bool) -> None:
        """Raise ConfigurationError for invalid combinations of options."""
        for name in ("batch_size", "epochs", "epochs_per_theta_refresh",
                     "epochs_per_Z_refresh", "stopping_epochs"):
            value = getattr(self, name)
            if not isinstance(value, (int, np.integer)) or value < 1:
                raise ConfigurationError(f"{name} must be a positive integer, got {value!r}")

        if sampler_mode:
            if self.epochs_per_theta_refresh % self.epochs_per_Z_refresh != 0:
                raise ConfigurationError(
                    f"epochs_per_theta_refresh ({self.epochs_per_theta_refresh}) must be "
                    f"a multiple of epochs_per_Z_refresh ({self.epochs_per_Z_refresh})"
                )
            if self.K < 5:
                raise DegenerateInputError(
                    f"K={self.K} leaves no validation configurations (K // 5 == 0)"
                )
            never_refreshed = (self.epochs_per_theta_refresh >= self.epochs
                               and self.epochs_per_Z_refresh >= self.epochs)
        else:
            never_refreshed = self.epochs_per_Z_refresh >= self.epochs

        if never_refreshed and self.epochs > 1:
            warnings.warn(
                "Neither parameters nor data are refreshed during training; "
                "this often degrades out-of-sample performance",
                stacklevel=3,
            )

        if not callable(self.loss):
            raise ConfigurationError("loss must be callable")


# ==============================================================================
# Run state
# ==============================================================================

def _copy_state(state_dict: Dict[str, torch.Tensor]) -> Dict[str, torch.Tensor]:
    return {k: v.detach().cpu().clone() for k, v in state_dict.items()}


@dataclass
class TrainingRunState:
    """State of one training run.

    Epoch 0 holds the risk of the untrained estimator. `best_risk` is
    monotonically non-increasing over the run.
    """
    epoch: int = 0
    best_risk: float = math.inf
    best_epoch: int = 0
    best_state: Optional[Dict[str, torch.Tensor]] = None
    stall_count: int = 0
    train_risks: List[float] = field(default_factory=list)
    val_risks: List[float] = field(default_factory=list)
    snapshots: Dict[int, Dict[str, torch.Tensor]] = field(default_factory=dict)
    keep_snapshots: bool = True

    def update(
        self,
        epoch: int,
        val_risk: float,
        state_dict: Dict[str, torch.Tensor],
        train_risk: float = math.nan,
    ) -> bool:
        """Record the risks of an epoch.

        Returns True (and stores a copy of the state) when the validation
        risk improves on the best so far; otherwise the stall counter grows.
        """
        self.epoch = epoch
        self.train_risks.append(float(train_risk))
        self.val_risks.append(float(val_risk))
        if self.keep_snapshots:
            self.snapshots[epoch] = _copy_state(state_dict)

        if val_risk < self.best_risk:
            self.best_risk = float(val_risk)
            self.best_epoch = epoch
            self.best_state = _copy_state(state_dict)
            self.stall_count = 0
            return True

        self.stall_count += 1
        return False

    def should_stop(self, patience: int) -> bool:
        return self.stall_count >= patience


# ==============================================================================
# Helpers
# ==============================================================================

def _build_optimiser(options: TrainingOptions, estimator: nn.Module) -> torch.optim.Optimizer:
    optimiser = options.optimiser
    if optimiser is None:
        return torch.optim.AdamW(estimator.parameters(), lr=options.lr)
    if isinstance(optimiser, torch.optim.Optimizer):
        return optimiser
    if callable(optimiser):
        return optimiser(estimator.parameters())
    raise ConfigurationError(
        f"optimiser must be an Optimizer or a factory, got {type(optimiser).__name__}"
    )


def _batches(n: int, batch_size: int, rng: Optional[np.random.Generator] = None):
    order = rng.permutation(n) if rng is not None else np.arange(n)
    for start in range(0, n, batch_size):
        yield order[start:start + batch_size]


def _theta_batch(parameters: ParameterConfigurations, idx: np.ndarray, device) -> torch.Tensor:
    # (p, K) storage -> (batch, p) to match the estimator output
    return as_tensor(parameters.theta[:, idx].T, device)


def risk(
    estimator: nn.Module,
    Z: Sequence,
    parameters: ParameterConfigurations,
    loss: Callable = mae,
    batch_size: int = 32,
) -> float:
    """Empirical risk of `estimator` over realizations Z of `parameters`."""
    n = len(Z)
    if n != parameters.num_configurations:
        raise ConfigurationError(
            f"{n} realizations for {parameters.num_configurations} configurations"
        )
    device = next(estimator.parameters()).device

    estimator.eval()
    total = 0.0
    with torch.no_grad():
        for idx in _batches(n, batch_size):
            theta_hat = estimator([Z[i] for i in idx])
            total += loss(theta_hat, _theta_batch(parameters, idx, device)).item() * len(idx)
    return total / n


def _resolve_mode(
    sampler: Optional[Sampler],
    theta_train: Optional[ParameterConfigurations],
    theta_val: Optional[ParameterConfigurations],
) -> bool:
    """True for sampler mode, False for fixed training/validation sets."""
    if sampler is not None:
        if theta_train is not None or theta_val is not None:
            raise ConfigurationError(
                "Provide either a sampler or fixed theta_train/theta_val, not both"
            )
        return True
    if theta_train is None or theta_val is None:
        raise ConfigurationError(
            "Provide a sampler, or both theta_train and theta_val"
        )
    for name, p in (("theta_train", theta_train), ("theta_val", theta_val)):
        if not isinstance(p, ParameterConfigurations):
            raise ConfigurationError(f"{name} must be ParameterConfigurations")
        if p.num_configurations == 0:
            raise DegenerateInputError(f"{name} has no configurations")
    return False


# ==============================================================================
# Training loop
# ==============================================================================

def train(
    estimator: nn.Module,
    simulator: Simulator,
    xi: Any,
    sampler: Optional[Sampler] = None,
    theta_train: Optional[ParameterConfigurations] = None,
    theta_val: Optional[ParameterConfigurations] = None,
    **kwargs,
) -> Tuple[nn.Module, TrainingRunState]:
    """Train a neural estimator with on-the-fly simulation.

    Two modes are supported:

    - sampler mode: `sampler(xi, K)` draws training and validation
      parameters; training parameters are refreshed every
      `epochs_per_theta_refresh` epochs;
    - fixed mode: `theta_train` and `theta_val` are held fixed.

    Parameters
    ----------
    estimator : nn.Module
        Estimator applied to lists of realizations (e.g. DeepSet)
    simulator : callable
        simulator(parameters, xi, m) -> list of realizations
    xi : any
        Invariant model information
    sampler : callable, optional
        sampler(xi, K) -> ParameterConfigurations
    theta_train, theta_val : ParameterConfigurations, optional
        Fixed training and validation parameters
    **kwargs
        Options of `TrainingOptions`

    Returns
    -------
    estimator : nn.Module
        The estimator carrying the weights of its best epoch
    state : TrainingRunState
        Risk history and best-epoch information
    """
    options = TrainingOptions.from_kwargs(**kwargs)
    sampler_mode = _resolve_mode(sampler, theta_train, theta_val)
    options.validate(sampler_mode)

    verbose = options.verbose
    rng = np.random.default_rng(options.seed)
    if options.seed is not None:
        torch.manual_seed(options.seed)

    device = get_device(options.use_gpu)
    estimator = estimator.to(device)
    optimiser = _build_optimiser(options, estimator)
    loss_fn = options.loss

    if verbose:
        print(f"Training on: {device}")

    # Validation parameters are drawn once and never resampled
    t0 = time.time()
    if sampler_mode:
        theta_val = sample_parameters(sampler, xi, options.K // 5)
        theta_train = sample_parameters(sampler, xi, options.K)
    K_val = theta_val.num_configurations
    m_val = draw_sample_sizes(options.m, K_val, rng)
    Z_val = simulate(simulator, theta_val, xi, m_val, n_jobs=options.n_jobs)
    Z_train = simulate(
        simulator, theta_train, xi,
        draw_sample_sizes(options.m, theta_train.num_configurations, rng),
        n_jobs=options.n_jobs,
    )
    if verbose:
        print(f"  Simulated {theta_train.num_configurations} training and {K_val} "
              f"validation configurations in {time.time() - t0:.2f}s")

    state = TrainingRunState(keep_snapshots=options.savepath is None)

    initial_train = risk(estimator, Z_train, theta_train, loss_fn, options.batch_size)
    initial_val = risk(estimator, Z_val, theta_val, loss_fn, options.batch_size)
    state.update(0, initial_val, estimator.state_dict(), initial_train)
    if options.savepath is not None:
        save_network(estimator.state_dict(), options.savepath, 0)

    if verbose:
        print(f"  Epoch {0:4d}/{options.epochs}: train={initial_train:.6f}, val={initial_val:.6f}")

    for epoch in range(1, options.epochs + 1):
        epoch_start = time.time()

        # Refresh parameters and/or data; the first epoch uses the initial draws
        sim_time = 0.0
        if epoch > 1:
            t0 = time.time()
            theta_refreshed = (
                sampler_mode and (epoch - 1) % options.epochs_per_theta_refresh == 0
            )
            if theta_refreshed:
                theta_train = sample_parameters(sampler, xi, options.K)
            Z_refreshed = theta_refreshed or (epoch - 1) % options.epochs_per_Z_refresh == 0
            if Z_refreshed:
                # Release the previous data before simulating the next
                Z_train = None
                Z_train = simulate(
                    simulator, theta_train, xi,
                    draw_sample_sizes(options.m, theta_train.num_configurations, rng),
                    n_jobs=options.n_jobs,
                )
            if options.refresh_validation_data:
                Z_val = None
                Z_val = simulate(simulator, theta_val, xi, m_val, n_jobs=options.n_jobs)
            sim_time = time.time() - t0

            if verbose and (theta_refreshed or Z_refreshed):
                refreshed = "parameters and data" if theta_refreshed else "data"
                print(f"  Epoch {epoch:4d}: refreshed training {refreshed} "
                      f"in {sim_time:.2f}s")

        # Optimisation
        t0 = time.time()
        estimator.train()
        total, n_seen = 0.0, 0
        for idx in _batches(theta_train.num_configurations, options.batch_size, rng):
            optimiser.zero_grad()
            theta_hat = estimator([Z_train[i] for i in idx])
            loss = loss_fn(theta_hat, _theta_batch(theta_train, idx, device))
            loss.backward()
            optimiser.step()
            total += loss.item() * len(idx)
            n_seen += len(idx)
        train_risk = total / n_seen
        opt_time = time.time() - t0

        val_risk = risk(estimator, Z_val, theta_val, loss_fn, options.batch_size)
        improved = state.update(epoch, val_risk, estimator.state_dict(), train_risk)
        if options.savepath is not None:
            save_network(estimator.state_dict(), options.savepath, epoch)

        if verbose:
            print(f"  Epoch {epoch:4d}/{options.epochs}: "
                  f"train={train_risk:.6f}, val={val_risk:.6f}"
                  f"{' *' if improved else ''} "
                  f"(simulation {sim_time:.2f}s, optimisation {opt_time:.2f}s, "
                  f"total {time.time() - epoch_start:.2f}s)", flush=True)

        if state.should_stop(options.stopping_epochs):
            if verbose:
                print(f"Stopping early: validation risk has not improved in "
                      f"{options.stopping_epochs} epochs")
            break

    if options.savepath is not None:
        save_loss_per_epoch(
            state.train_risks,
            state.val_risks,
            options.savepath,
            metadata={
                "best_epoch": state.best_epoch,
                "best_risk": state.best_risk,
                "batch_size": options.batch_size,
                "epochs_per_theta_refresh": options.epochs_per_theta_refresh,
                "epochs_per_Z_refresh": options.epochs_per_Z_refresh,
                "stopping_epochs": options.stopping_epochs,
                "K": options.K if sampler_mode else theta_train.num_configurations,
                "sampler_mode": sampler_mode,
            },
        )

    # best_state stays None only if every validation risk was NaN
    if state.best_state is not None:
        estimator.load_state_dict(state.best_state)
    estimator.eval()

    if verbose:
        print(f"Training complete. Best val risk {state.best_risk:.6f} at epoch {state.best_epoch}")

    return estimator, state
