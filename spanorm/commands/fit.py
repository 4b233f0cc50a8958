"""Fit the model and save it (Stage 2)."""

import json
import time
from pathlib import Path

from ..config import Config
from ..datasets.base import SpatialCounts
from ..fit import SpaNormFit, fit_spanorm
from .preprocess import load_input


def fit_dir(config: Config) -> Path:
    return Path(config.output_dir) / "fit"


def fit_dataset(config: Config, data: SpatialCounts) -> SpaNormFit:
    """Fit ``data`` with ``config`` and save the result."""
    t0 = time.perf_counter()
    fit = fit_spanorm(
        data.counts,
        data.coords,
        data.gene_names,
        data.location_names,
        **config.to_fit_kwargs(),
    )
    elapsed = time.perf_counter() - t0

    out = fit.save(fit_dir(config))
    summary = {
        "n_genes": fit.n_genes,
        "n_locations": fit.n_locations,
        "n_fit_locations": int(len(fit.fit_locations)),
        "status_counts": fit.status_counts(),
        "fit_time": elapsed,
        "timestamp": time.strftime("%Y-%m-%dT%H:%M:%S"),
    }
    with open(out / "summary.json", "w") as f:
        json.dump(summary, f, indent=2)
    print(f"  Fit {fit.n_genes} genes in {elapsed:.1f}s: {summary['status_counts']}")
    print(f"Fit saved to: {out}")
    return fit


def run(config_path: str):
    """Fit every gene of the (preprocessed) dataset.

    Parameters
    ----------
    config_path : str
        Path to config YAML file.
    """
    config = Config.from_yaml(config_path).validate()
    adata, layer = load_input(config)
    data = SpatialCounts.from_anndata(adata, layer=layer, spatial_key=config.spatial_key)
    print(f"Fitting: {data.n_locations} locations × {data.n_genes} genes")
    fit_dataset(config, data)
