"""Reproducible subsampling of locations for model fitting."""

from __future__ import annotations

from typing import Optional

import numpy as np

from .exceptions import ConfigurationError


def subset_size(n_locations: int, proportion: float) -> int:
    """round(proportion * n_locations), halves rounded up."""
    return int(np.floor(proportion * n_locations + 0.5))


def select_subset(
    n_locations: int,
    proportion: float,
    seed: int,
    min_size: Optional[int] = None,
) -> np.ndarray:
    """Select a uniform random subset of location indices without replacement.

    Parameters
    ----------
    n_locations : int
        Total number of locations.
    proportion : float
        Fraction of locations to keep, in (0, 1]. ``1`` keeps every location.
    seed : int
        Seed for the generator; the same seed always gives the same subset.
    min_size : int, optional
        Smallest acceptable subset (e.g. the number of model coefficients).

    Returns
    -------
    np.ndarray
        Sorted integer indices into ``range(n_locations)``.
    """
    if not 0.0 < proportion <= 1.0:
        raise ConfigurationError(f"sample.p must be in (0, 1], got {proportion!r}")
    size = subset_size(n_locations, proportion)
    if min_size is not None and size < min_size:
        raise ConfigurationError(
            f"sample.p={proportion} keeps {size} of {n_locations} locations, "
            f"fewer than the minimum of {min_size}"
        )
    if size == 0:
        raise ConfigurationError(f"sample.p={proportion} keeps no locations out of {n_locations}")
    if size >= n_locations:
        return np.arange(n_locations)
    rng = np.random.default_rng(seed)
    return np.sort(rng.choice(n_locations, size=size, replace=False))
