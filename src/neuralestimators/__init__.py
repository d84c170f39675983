"""
Neural Estimators

Likelihood-free parameter estimation with amortized neural point
estimators. Permutation-invariant (Deep Set) estimators are trained on data
simulated on the fly from a user-supplied statistical model, then assessed
against test parameters and used for bootstrap uncertainty quantification.
"""

from .core import (
    # Errors
    ConfigurationError,
    SimulationContractError,
    DegenerateInputError,
    # Aggregation
    Aggregation,
    get_aggregation,
    aggregate,
    samplesize,
    # Losses
    mae,
    mse,
    # Devices
    get_device,
)

from .utility import (
    stackarrays,
    expandgrid,
)

from .parameters import (
    ParameterConfigurations,
    subsetparameters,
    sample_parameters,
)

from .simulate import (
    simulate,
    check_realizations,
    draw_sample_sizes,
)

from .architectures import (
    DeepSet,
    DeepSetExpert,
    DeepSetPiecewise,
)

from .training import (
    TrainingOptions,
    TrainingRunState,
    train,
    risk,
)

from .storage import (
    save_network,
    load_network,
    save_loss_per_epoch,
    load_loss_per_epoch,
    list_snapshot_epochs,
    best_epoch,
    bestweights,
    loadbestweights,
)

from .estimation import (
    EstimateRecord,
    Estimates,
    estimate,
    merge,
    risk_table,
)

from .bootstrap import (
    parametricbootstrap,
    nonparametricbootstrap,
    resample_indices,
    interval,
)

__version__ = "0.1.0"

__all__ = [
    # Errors
    "ConfigurationError",
    "SimulationContractError",
    "DegenerateInputError",
    # Core
    "Aggregation",
    "get_aggregation",
    "aggregate",
    "samplesize",
    "mae",
    "mse",
    "get_device",
    # Utility
    "stackarrays",
    "expandgrid",
    # Parameters and simulation
    "ParameterConfigurations",
    "subsetparameters",
    "sample_parameters",
    "simulate",
    "check_realizations",
    "draw_sample_sizes",
    # Architectures
    "DeepSet",
    "DeepSetExpert",
    "DeepSetPiecewise",
    # Training
    "TrainingOptions",
    "TrainingRunState",
    "train",
    "risk",
    # Storage
    "save_network",
    "load_network",
    "save_loss_per_epoch",
    "load_loss_per_epoch",
    "list_snapshot_epochs",
    "best_epoch",
    "bestweights",
    "loadbestweights",
    # Estimation
    "EstimateRecord",
    "Estimates",
    "estimate",
    "merge",
    "risk_table",
    # Bootstrap
    "parametricbootstrap",
    "nonparametricbootstrap",
    "resample_indices",
    "interval",
]
