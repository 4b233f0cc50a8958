"""Filter the input dataset (Stage 1).

Writes ``{output_dir}/preprocessed.h5ad`` with genes detected in fewer than
``min_cells`` locations and locations with fewer than ``min_counts`` total
counts removed.
"""

import time
from pathlib import Path
from typing import Optional, Tuple

import anndata as ad
import scanpy as sc

from ..config import Config


def preprocessed_path(config: Config) -> Path:
    return Path(config.output_dir) / "preprocessed.h5ad"


def load_input(config: Config) -> Tuple[ad.AnnData, Optional[str]]:
    """Preprocessed data when available, otherwise the configured input file.

    Returns the AnnData and the layer holding raw counts (preprocessed data
    keeps them in ``X``).
    """
    path = preprocessed_path(config)
    if path.exists():
        return ad.read_h5ad(path), None
    if config.input is None:
        raise ValueError("No preprocessed data found and no 'input' set in the config")
    return ad.read_h5ad(config.input), config.counts_layer


def run(config_path: str):
    """Filter genes/locations and save the preprocessed dataset.

    Parameters
    ----------
    config_path : str
        Path to config YAML file.
    """
    config = Config.from_yaml(config_path)
    if config.input is None:
        raise ValueError("Config has no 'input' path")

    print(f"Preprocessing: {config.input}")
    adata = ad.read_h5ad(config.input)
    if config.counts_layer is not None:
        adata.X = adata.layers[config.counts_layer].copy()
    print(f"  Loaded: {adata.n_obs} locations × {adata.n_vars} genes")

    if config.spatial_key not in adata.obsm:
        raise KeyError(f"spatial_key '{config.spatial_key}' not found in adata.obsm")

    sc.pp.filter_cells(adata, min_counts=config.preprocessing["min_counts"])
    sc.pp.filter_genes(adata, min_cells=config.preprocessing["min_cells"])
    print(f"  After filtering: {adata.n_obs} locations × {adata.n_vars} genes")

    adata.uns["spanorm_preprocessing"] = {
        **config.preprocessing,
        "timestamp": time.strftime("%Y-%m-%dT%H:%M:%S"),
    }

    out = preprocessed_path(config)
    out.parent.mkdir(parents=True, exist_ok=True)
    adata.write_h5ad(out)
    print(f"Preprocessed data saved to: {out}")
