"""
Assessment of trained estimators on test parameter configurations.

For each sample size, data are simulated once from the test parameters and
shared by every estimator, so that differences between estimators are not
due to Monte Carlo noise in the data. Results are returned as pandas
DataFrames that merge into one long-form table keyed by
(estimator, m, k, replicate, parameter).
"""

import time
from dataclasses import dataclass
from typing import Any, Iterator, List, Optional, Sequence, Union

import numpy as np
import pandas as pd
import torch
import torch.nn as nn
from tqdm import tqdm

from .core import ConfigurationError, DegenerateInputError, get_device, to_numpy
from .parameters import ParameterConfigurations
from .simulate import Simulator, simulate


@dataclass(frozen=True)
class EstimateRecord:
    """One estimate of one configuration by one estimator at one sample size."""
    k: int
    replicate: int
    m: int
    estimator: str
    truth: np.ndarray
    estimate: np.ndarray
    runtime: float


@dataclass
class Estimates:
    """True parameters, estimates and run times from a call to `estimate`.

    Attributes
    ----------
    theta : DataFrame
        True parameters; columns `k`, `replicate` and one per parameter
    theta_hat : DataFrame
        Estimates; columns `estimator`, `m`, `k`, `replicate` and one per parameter
    runtime : DataFrame
        Wall-clock time per (estimator, m); columns `estimator`, `m`, `time`
    parameter_names : list of str
    """
    theta: pd.DataFrame
    theta_hat: pd.DataFrame
    runtime: pd.DataFrame
    parameter_names: List[str]

    def merge(self) -> pd.DataFrame:
        """Long-form table with one row per (estimator, m, k, replicate, parameter)."""
        keys = ["k", "replicate"]
        truth = self.theta.melt(
            id_vars=keys, value_vars=self.parameter_names,
            var_name="parameter", value_name="truth",
        )
        est = self.theta_hat.melt(
            id_vars=["estimator", "m"] + keys, value_vars=self.parameter_names,
            var_name="parameter", value_name="estimate",
        )
        merged = est.merge(truth, on=keys + ["parameter"], how="left", validate="many_to_one")
        columns = ["estimator", "m", "k", "replicate", "parameter", "truth", "estimate"]
        return merged[columns].sort_values(["estimator", "m", "replicate", "k", "parameter"],
                                           kind="stable").reset_index(drop=True)

    def records(self) -> Iterator[EstimateRecord]:
        """Iterate over the estimates as EstimateRecord objects."""
        truth = self.theta.set_index(["k", "replicate"])[self.parameter_names]
        times = self.runtime.set_index(["estimator", "m"])["time"]
        for row in self.theta_hat.to_dict("records"):
            k, r = row["k"], row["replicate"]
            yield EstimateRecord(
                k=int(k),
                replicate=int(r),
                m=int(row["m"]),
                estimator=row["estimator"],
                truth=truth.loc[(k, r)].to_numpy(),
                estimate=np.array([row[name] for name in self.parameter_names]),
                runtime=float(times.loc[(row["estimator"], row["m"])]),
            )


def merge(estimates: Estimates) -> pd.DataFrame:
    """Merge estimates into a single long-form DataFrame."""
    return estimates.merge()


def _per_estimator(value, n: int, name: str) -> List:
    if isinstance(value, (list, tuple, np.ndarray)):
        if len(value) != n:
            raise ConfigurationError(f"{name} has {len(value)} entries for {n} estimators")
        return list(value)
    return [value] * n


def estimate(
    estimators: Union[nn.Module, Sequence[nn.Module]],
    simulator: Simulator,
    parameters: ParameterConfigurations,
    xi: Any,
    m: Union[int, Sequence[int]],
    estimator_names: Optional[Sequence[str]] = None,
    parameter_names: Optional[Sequence[str]] = None,
    num_rep: int = 1,
    use_xi: Union[bool, Sequence[bool]] = False,
    use_gpu: Union[bool, Sequence[bool]] = True,
    n_jobs: int = 1,
    verbose: bool = True,
) -> Estimates:
    """Estimate parameters from data simulated at `parameters` with several estimators.

    Parameters
    ----------
    estimators : nn.Module or sequence of nn.Module
        Trained estimators
    simulator : callable
        simulator(parameters, xi, m) -> list of realizations
    parameters : ParameterConfigurations
        Test parameters (K configurations)
    xi : any
        Invariant model information
    m : int or sequence of int
        Sample sizes to estimate from
    estimator_names : sequence of str, optional
        Default: "estimator1", "estimator2", ...
    parameter_names : sequence of str, optional
        Default: "theta1", "theta2", ...
    num_rep : int
        Number of data sets simulated per configuration
    use_xi : bool or sequence of bool
        Per estimator: apply as estimator(Z, xi) instead of estimator(Z)
    use_gpu : bool or sequence of bool
        Per estimator: run on CUDA when available
    n_jobs : int
        Worker threads used for simulation
    verbose : bool
        Show a progress bar

    Returns
    -------
    estimates : Estimates
    """
    if isinstance(estimators, nn.Module):
        estimators = [estimators]
    estimators = list(estimators)
    n_est = len(estimators)
    if n_est == 0:
        raise DegenerateInputError("No estimators given")

    sample_sizes = [int(m)] if isinstance(m, (int, np.integer)) else [int(x) for x in m]
    if len(sample_sizes) == 0:
        raise DegenerateInputError("No sample sizes given")
    if len(set(sample_sizes)) != len(sample_sizes):
        raise ConfigurationError(f"Sample sizes must be distinct, got {sample_sizes}")

    K = parameters.num_configurations
    p = parameters.num_parameters
    if K == 0:
        raise DegenerateInputError("No parameter configurations to estimate")
    if num_rep < 1:
        raise DegenerateInputError(f"num_rep must be positive, got {num_rep}")

    if estimator_names is None:
        estimator_names = [f"estimator{i + 1}" for i in range(n_est)]
    if parameter_names is None:
        parameter_names = [f"theta{i + 1}" for i in range(p)]
    estimator_names = list(estimator_names)
    parameter_names = list(parameter_names)
    if len(estimator_names) != n_est:
        raise ConfigurationError(f"{len(estimator_names)} names for {n_est} estimators")
    if len(parameter_names) != p:
        raise ConfigurationError(f"{len(parameter_names)} names for {p} parameters")
    if len(set(estimator_names)) != n_est:
        raise ConfigurationError(f"Estimator names must be distinct, got {estimator_names}")
    if len(set(parameter_names)) != p:
        raise ConfigurationError(f"Parameter names must be distinct, got {parameter_names}")
    reserved = set(parameter_names) & {"estimator", "m", "k", "replicate", "parameter"}
    if reserved:
        raise ConfigurationError(f"Parameter names clash with table columns: {sorted(reserved)}")

    use_xi = _per_estimator(use_xi, n_est, "use_xi")
    use_gpu = _per_estimator(use_gpu, n_est, "use_gpu")

    ks = np.tile(np.arange(K), num_rep)
    replicates = np.repeat(np.arange(num_rep), K)

    theta_df = pd.DataFrame(np.tile(parameters.theta.T, (num_rep, 1)), columns=parameter_names)
    theta_df.insert(0, "k", ks)
    theta_df.insert(1, "replicate", replicates)

    estimate_frames = []
    runtime_rows = []

    pbar = tqdm(total=len(sample_sizes) * n_est, desc="Estimating", unit="estimator",
                disable=not verbose)

    for m_i in sample_sizes:
        Z = simulate(simulator, parameters, xi, m_i, num_rep=num_rep, n_jobs=n_jobs)

        for j, estimator in enumerate(estimators):
            device = get_device(use_gpu[j])
            estimator = estimator.to(device)
            estimator.eval()

            t0 = time.time()
            with torch.no_grad():
                theta_hat = estimator(Z, xi) if use_xi[j] else estimator(Z)
            if device.type == "cuda":
                torch.cuda.synchronize()
            elapsed = time.time() - t0

            theta_hat = to_numpy(theta_hat).reshape(len(Z), -1)
            if theta_hat.shape[1] != p:
                raise ConfigurationError(
                    f"{estimator_names[j]} returned {theta_hat.shape[1]} parameters, expected {p}"
                )

            frame = pd.DataFrame(theta_hat, columns=parameter_names)
            frame.insert(0, "estimator", estimator_names[j])
            frame.insert(1, "m", m_i)
            frame.insert(2, "k", ks)
            frame.insert(3, "replicate", replicates)
            estimate_frames.append(frame)
            runtime_rows.append({"estimator": estimator_names[j], "m": m_i, "time": elapsed})

            pbar.set_postfix(m=m_i, estimator=estimator_names[j])
            pbar.update(1)

    pbar.close()

    return Estimates(
        theta=theta_df,
        theta_hat=pd.concat(estimate_frames, ignore_index=True),
        runtime=pd.DataFrame(runtime_rows, columns=["estimator", "m", "time"]),
        parameter_names=parameter_names,
    )


def risk_table(estimates: Estimates, loss: str = "mae") -> pd.DataFrame:
    """Average loss per (estimator, m, parameter).

    Args:
        estimates: Output of `estimate`
        loss: "mae" (absolute error) or "mse" (squared error)

    Returns:
        DataFrame with columns estimator, m, parameter, risk
    """
    df = estimates.merge()
    error = df["estimate"] - df["truth"]
    if loss == "mae":
        df["loss"] = error.abs()
    elif loss == "mse":
        df["loss"] = error ** 2
    else:
        raise ValueError(f"Unknown loss: {loss}")

    return (df.groupby(["estimator", "m", "parameter"], sort=True)["loss"]
              .mean()
              .rename("risk")
              .reset_index())
