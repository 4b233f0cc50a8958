"""Dataset-level normalisation with a cached fit.

The fit is stored on the AnnData under ``adata.uns[FIT_KEY]`` as plain
arrays (see :meth:`SpaNormFit.to_uns`), so the dataset stays writable to
``.h5ad``. :class:`FitCache` wraps it on the way out. A cached fit is reused
while the dataset's genes and locations are unchanged; otherwise the data is
refit.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Optional

import anndata as ad
from rich.console import Console

from .adjustment import adjust
from .config import Config
from .datasets.base import SpatialCounts
from .exceptions import FitMismatchError
from .fit import DatasetIdentity, SpaNormFit, fit_spanorm, validate

FIT_KEY = "spanorm_fit"


@dataclass
class FitCache:
    """Cached fit attached to a dataset."""

    fit: SpaNormFit

    @property
    def identity(self) -> DatasetIdentity:
        return self.fit.identity

    def lookup(self, identity: DatasetIdentity) -> SpaNormFit:
        """Return the fit if it matches ``identity``, else raise :class:`FitMismatchError`."""
        if not validate(self.fit, identity):
            raise FitMismatchError(
                f"Cached fit ({self.fit.n_genes} genes x {self.fit.n_locations} locations) "
                f"does not match the dataset ({identity.n_genes} x {identity.n_locations})"
            )
        return self.fit

    def store(self, adata: ad.AnnData) -> None:
        adata.uns[FIT_KEY] = self.fit.to_uns()

    @classmethod
    def from_anndata(cls, adata: ad.AnnData) -> Optional["FitCache"]:
        """Cache stored on ``adata``, or None when there is none."""
        value = adata.uns.get(FIT_KEY)
        if not isinstance(value, Mapping) or "arrays" not in value:
            return None
        return cls(SpaNormFit.from_uns(value))


def get_fit(adata: ad.AnnData) -> Optional[SpaNormFit]:
    """The fit cached on ``adata``, if any."""
    cache = FitCache.from_anndata(adata)
    return cache.fit if cache is not None else None


def cached_fit(adata: ad.AnnData, identity: DatasetIdentity) -> Optional[SpaNormFit]:
    """Cached fit valid for ``identity``; None when nothing is cached.

    Raises :class:`FitMismatchError` when the cached fit is stale.
    """
    cache = FitCache.from_anndata(adata)
    if cache is None:
        return None
    return cache.lookup(identity)


def spanorm(
    adata: ad.AnnData,
    config: Optional[Config] = None,
    *,
    return_fit: bool = False,
    console: Optional[Console] = None,
    **options,
):
    """Fit (or reuse) the model and write adjusted values to ``adata.layers``.

    Parameters
    ----------
    adata : AnnData
        Locations x genes counts with coordinates in ``adata.obsm``.
    config : Config, optional
        Base configuration; defaults to :class:`Config` defaults.
    return_fit : bool
        Also return the :class:`SpaNormFit`.
    **options
        Flat option overrides, e.g. ``df_tps=4`` or ``**{"adj.method": "pearson"}``.

    Returns
    -------
    AnnData or (AnnData, SpaNormFit)
        ``adata`` with ``adata.layers[norm_layer]`` replaced.
    """
    config = (config or Config()).with_overrides(**options).validate()
    console = console or Console(stderr=True)
    verbose = config.verbose
    data = SpatialCounts.from_anndata(adata, layer=config.counts_layer, spatial_key=config.spatial_key)
    identity = data.identity

    fit = None
    if not config.overwrite:
        try:
            fit = cached_fit(adata, identity)
        except FitMismatchError as e:
            if verbose:
                console.print(f"{e}; refitting")
    if fit is None:
        fit = fit_spanorm(
            data.counts,
            data.coords,
            data.gene_names,
            data.location_names,
            console=console,
            **config.to_fit_kwargs(),
        )
        FitCache(fit).store(adata)
    elif verbose:
        console.print("Using cached fit")

    if verbose:
        console.print(f"Adjusting with method={config.adj_method}, scale.factor={config.scale_factor}")
    normalized = adjust(
        fit,
        data.counts,
        fit.basis.transform(data.coords),
        method=config.adj_method,
        scale_factor=config.scale_factor,
        gene_names=data.gene_names,
        location_names=data.location_names,
        n_jobs=config.fitting["n_jobs"],
    )
    adata.layers[config.norm_layer] = normalized.T

    if return_fit:
        return adata, fit
    return adata
