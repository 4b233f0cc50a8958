"""Gene x location count provider built from AnnData."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Tuple, Union

import anndata as ad
import numpy as np
from scipy import sparse

from ..exceptions import ConfigurationError
from ..fit import DatasetIdentity, as_count_matrix


@dataclass
class SpatialCounts:
    """Container for the data the model consumes.

    Attributes
    ----------
    counts : np.ndarray or scipy.sparse.csr_matrix
        Count matrix, shape (G, N): genes x locations.
    coords : np.ndarray
        Spatial coordinates, shape (N, 2).
    gene_names : list of str
        Names of genes (length G).
    location_names : list of str
        Names of spots/cells (length N).
    """

    counts: Union[np.ndarray, sparse.csr_matrix]
    coords: np.ndarray
    gene_names: List[str] = field(default_factory=list)
    location_names: List[str] = field(default_factory=list)

    def __post_init__(self):
        self.counts = as_count_matrix(self.counts)
        self.coords = np.asarray(self.coords, dtype=float)
        if not self.gene_names:
            self.gene_names = [f"gene_{i}" for i in range(self.counts.shape[0])]
        if not self.location_names:
            self.location_names = [f"location_{j}" for j in range(self.counts.shape[1])]
        if self.coords.shape != (self.n_locations, 2):
            raise ConfigurationError(
                f"Coordinates have shape {self.coords.shape}, expected ({self.n_locations}, 2)"
            )
        if len(self.gene_names) != self.n_genes or len(self.location_names) != self.n_locations:
            raise ConfigurationError("Identifier counts do not match the count matrix shape")

    @property
    def n_genes(self) -> int:
        """Number of genes."""
        return self.counts.shape[0]

    @property
    def n_locations(self) -> int:
        """Number of spots/cells."""
        return self.counts.shape[1]

    @property
    def identity(self) -> DatasetIdentity:
        return DatasetIdentity.from_names(self.gene_names, self.location_names)

    @classmethod
    def from_anndata(
        cls,
        adata: ad.AnnData,
        layer: Optional[str] = None,
        spatial_key: str = "spatial",
    ) -> "SpatialCounts":
        """Read counts (``adata.X`` or ``adata.layers[layer]``) and ``adata.obsm[spatial_key]``."""
        if spatial_key not in adata.obsm:
            raise KeyError(f"spatial_key '{spatial_key}' not found in adata.obsm")
        if layer is not None and layer not in adata.layers:
            raise KeyError(f"layer '{layer}' not found in adata.layers")
        X = adata.layers[layer] if layer is not None else adata.X
        # AnnData stores locations x genes
        counts = sparse.csr_matrix(X.T) if sparse.issparse(X) else np.asarray(X).T
        coords = np.asarray(adata.obsm[spatial_key], dtype=float)[:, :2]
        return cls(
            counts=counts,
            coords=coords,
            gene_names=[str(g) for g in adata.var_names],
            location_names=[str(s) for s in adata.obs_names],
        )

    def __repr__(self) -> str:
        return f"SpatialCounts(n_genes={self.n_genes}, n_locations={self.n_locations})"


def read_h5ad(
    path: Union[str, Path],
    layer: Optional[str] = None,
    spatial_key: str = "spatial",
) -> Tuple[ad.AnnData, SpatialCounts]:
    """Load an .h5ad file and its count provider."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Input file not found: {path}")
    adata = ad.read_h5ad(path)
    return adata, SpatialCounts.from_anndata(adata, layer=layer, spatial_key=spatial_key)
