"""Array helpers for collections of realizations."""

from typing import Sequence

import numpy as np

from .core import ArrayLike, DegenerateInputError, SimulationContractError


def stackarrays(v: Sequence[ArrayLike], merge: bool = True) -> np.ndarray:
    """Stack a list of arrays along the replicate axis.

    Parameters
    ----------
    v : sequence of arrays
        Arrays sharing every dimension except possibly the first
    merge : bool
        If True, concatenate along the first axis (the first dimension may
        differ between arrays). If False, all arrays must have the same shape
        and a new leading axis is created.

    Returns
    -------
    stacked : ndarray
    """
    if len(v) == 0:
        raise DegenerateInputError("Cannot stack an empty collection of arrays")

    arrays = [np.asarray(a) for a in v]
    trailing = arrays[0].shape[1:]

    if merge:
        for a in arrays:
            if a.shape[1:] != trailing:
                raise SimulationContractError(
                    f"Arrays differ beyond the first axis: {a.shape[1:]} vs {trailing}"
                )
        return np.concatenate(arrays, axis=0)

    for a in arrays:
        if a.shape != arrays[0].shape:
            raise SimulationContractError(
                f"merge=False requires equal shapes: {a.shape} vs {arrays[0].shape}"
            )
    return np.stack(arrays, axis=0)


def expandgrid(xs: Sequence, ys: Sequence) -> np.ndarray:
    """Same as expand.grid() in R, for two vectors.

    Returns an array of shape (len(xs) * len(ys), 2) whose first column
    varies fastest.
    """
    xs = np.asarray(xs)
    ys = np.asarray(ys)
    return np.column_stack([np.tile(xs, len(ys)), np.repeat(ys, len(xs))])
