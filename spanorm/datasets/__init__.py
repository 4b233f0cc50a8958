"""Count providers for spatial transcriptomics data."""

from .base import SpatialCounts, read_h5ad

__all__ = [
    "SpatialCounts",
    "read_h5ad",
]
