"""
Building blocks for user simulators.

Modules:
- covariance: Matérn covariance and Cholesky factors (intermediate objects)
- models: Gaussian process and Schlather max-stable simulators
- distributions: Subbotin distribution, lower incomplete gamma function
"""

from .covariance import (
    matern,
    maternchols,
)

from .models import (
    simulategaussianprocess,
    simulateschlather,
)

from .distributions import (
    incgammalower,
    f_s,
    F_s,
    F_s_inv,
)

__all__ = [
    # Covariance
    "matern",
    "maternchols",
    # Models
    "simulategaussianprocess",
    "simulateschlather",
    # Distributions
    "incgammalower",
    "f_s",
    "F_s",
    "F_s_inv",
]
