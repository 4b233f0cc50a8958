"""Fitting driver and the fit object.

:func:`fit_spanorm` builds the basis, draws the fitting subset, fits every
gene independently (optionally on a thread pool) and aggregates the
per-gene results into a :class:`SpaNormFit`.
"""

from __future__ import annotations

import json
import warnings
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union

import numpy as np
import pandas as pd
from rich.console import Console
from scipy import sparse

from .basis import TPSBasis, build_basis
from .exceptions import ConfigurationError, ConvergenceWarning, NumericInstabilityFallback
from .model import FitStatus, GeneFit, fit_gene
from .sampling import select_subset
from .status import FitProgress, print_fit_summary

FIT_VERSION = 1


@dataclass(frozen=True)
class DatasetIdentity:
    """Ordered gene and location identifiers of a dataset."""

    gene_names: tuple
    location_names: tuple

    @classmethod
    def from_names(cls, gene_names: Sequence, location_names: Sequence) -> "DatasetIdentity":
        genes = tuple(str(g) for g in gene_names)
        locations = tuple(str(s) for s in location_names)
        if len(set(genes)) != len(genes):
            raise ConfigurationError("Gene identifiers must be unique")
        if len(set(locations)) != len(locations):
            raise ConfigurationError("Location identifiers must be unique")
        return cls(genes, locations)

    @property
    def n_genes(self) -> int:
        return len(self.gene_names)

    @property
    def n_locations(self) -> int:
        return len(self.location_names)


@dataclass
class SpaNormFit:
    """Per-gene parameters plus the identity of the dataset they were fit on.

    Attributes
    ----------
    identity : DatasetIdentity
        Genes and locations of the dataset.
    fit_locations : np.ndarray
        Indices (into ``identity.location_names``) of the fitting subset.
    basis : TPSBasis
        Basis transform; evaluate at any coordinates for prediction.
    ls_mean : float
        Mean library size used to normalise library sizes.
    alpha, gamma : np.ndarray
        (G, df) biology and library-size coefficients.
    psi : np.ndarray
        (G,) dispersions (0 for Poisson and all-zero genes).
    status : np.ndarray
        (G,) :class:`FitStatus` codes.
    eta_bio, eta_lib : np.ndarray
        (G, n_fit) fitted linear predictor terms on the fitting subset.
    settings : dict
        Configuration the fit was produced with.
    """

    identity: DatasetIdentity
    fit_locations: np.ndarray
    basis: TPSBasis
    ls_mean: float
    alpha: np.ndarray
    gamma: np.ndarray
    psi: np.ndarray
    status: np.ndarray
    n_iter: np.ndarray
    loglik: np.ndarray
    inner_converged: np.ndarray
    outer_converged: np.ndarray
    eta_bio: np.ndarray
    eta_lib: np.ndarray
    settings: Dict[str, Any] = field(default_factory=dict)

    @property
    def gene_names(self) -> tuple:
        return self.identity.gene_names

    @property
    def n_genes(self) -> int:
        return self.identity.n_genes

    @property
    def n_locations(self) -> int:
        return self.identity.n_locations

    def gene_fit(self, gene: Union[str, int]) -> GeneFit:
        """Per-gene parameters by name or position."""
        i = self.gene_names.index(gene) if isinstance(gene, str) else int(gene)
        return GeneFit(
            alpha=self.alpha[i].copy(),
            gamma=self.gamma[i].copy(),
            psi=float(self.psi[i]),
            status=FitStatus(int(self.status[i])),
            inner_converged=bool(self.inner_converged[i]),
            outer_converged=bool(self.outer_converged[i]),
            n_iter=int(self.n_iter[i]),
            loglik=float(self.loglik[i]),
            eta_bio=self.eta_bio[i].copy(),
            eta_lib=self.eta_lib[i].copy(),
        )

    @property
    def params(self) -> Dict[str, GeneFit]:
        """Mapping gene name -> :class:`GeneFit`."""
        return {g: self.gene_fit(i) for i, g in enumerate(self.gene_names)}

    def genes_with_status(self, status: FitStatus) -> List[str]:
        return [g for g, s in zip(self.gene_names, self.status) if s == status]

    def status_counts(self) -> Dict[str, int]:
        codes, counts = np.unique(self.status, return_counts=True)
        return {FitStatus(int(c)).name.lower(): int(n) for c, n in zip(codes, counts)}

    def to_frame(self) -> pd.DataFrame:
        """Per-gene summary table indexed by gene."""
        df = pd.DataFrame(
            {
                "psi": self.psi,
                "status": [FitStatus(int(s)).name.lower() for s in self.status],
                "n_iter": self.n_iter,
                "loglik": self.loglik,
                "inner_converged": self.inner_converged,
                "outer_converged": self.outer_converged,
            },
            index=pd.Index(self.gene_names, name="gene"),
        )
        k = self.alpha.shape[1]
        for j in range(k):
            df[f"alpha_{j}"] = self.alpha[:, j]
        for j in range(k):
            df[f"gamma_{j}"] = self.gamma[:, j]
        return df

    def arrays(self) -> Dict[str, np.ndarray]:
        """Every array of the fit, basis state under ``basis_*`` keys."""
        arrays = {
            "fit_locations": self.fit_locations,
            "alpha": self.alpha,
            "gamma": self.gamma,
            "psi": self.psi,
            "status": self.status,
            "n_iter": self.n_iter,
            "loglik": self.loglik,
            "inner_converged": self.inner_converged,
            "outer_converged": self.outer_converged,
            "eta_bio": self.eta_bio,
            "eta_lib": self.eta_lib,
        }
        arrays.update({f"basis_{k}": v for k, v in self.basis.state_dict().items()})
        return arrays

    def metadata(self) -> Dict[str, Any]:
        return {"version": FIT_VERSION, "ls_mean": self.ls_mean, "settings": self.settings}

    @classmethod
    def from_arrays(
        cls,
        arrays: Dict[str, np.ndarray],
        meta: Dict[str, Any],
        gene_names: Sequence,
        location_names: Sequence,
    ) -> "SpaNormFit":
        """Rebuild a fit from :meth:`arrays` and :meth:`metadata`."""
        basis = TPSBasis.from_state(
            {k[len("basis_"):]: v for k, v in arrays.items() if k.startswith("basis_")}
        )
        return cls(
            identity=DatasetIdentity.from_names(gene_names, location_names),
            fit_locations=np.asarray(arrays["fit_locations"], dtype=np.int64),
            basis=basis,
            ls_mean=float(meta["ls_mean"]),
            alpha=np.asarray(arrays["alpha"], dtype=float),
            gamma=np.asarray(arrays["gamma"], dtype=float),
            psi=np.asarray(arrays["psi"], dtype=float),
            status=np.asarray(arrays["status"], dtype=np.int8),
            n_iter=np.asarray(arrays["n_iter"], dtype=np.int64),
            loglik=np.asarray(arrays["loglik"], dtype=float),
            inner_converged=np.asarray(arrays["inner_converged"], dtype=bool),
            outer_converged=np.asarray(arrays["outer_converged"], dtype=bool),
            eta_bio=np.asarray(arrays["eta_bio"], dtype=float),
            eta_lib=np.asarray(arrays["eta_lib"], dtype=float),
            settings=dict(meta.get("settings", {})),
        )

    def to_uns(self) -> Dict[str, Any]:
        """Representation for ``adata.uns``: plain arrays, strings and scalars only.

        The basis scalars become Python numbers and the settings a JSON string,
        so that the AnnData can still be written to ``.h5ad``.
        """
        arrays = {k: (v.item() if np.ndim(v) == 0 else v) for k, v in self.arrays().items()}
        return {
            "arrays": arrays,
            "gene_names": np.array(self.identity.gene_names, dtype=object),
            "location_names": np.array(self.identity.location_names, dtype=object),
            "meta": json.dumps(self.metadata()),
        }

    @classmethod
    def from_uns(cls, value: Dict[str, Any]) -> "SpaNormFit":
        """Inverse of :meth:`to_uns`, also for values read back from ``.h5ad``."""
        arrays = {k: np.asarray(v) for k, v in value["arrays"].items()}
        return cls.from_arrays(
            arrays,
            json.loads(str(value["meta"])),
            list(value["gene_names"]),
            list(value["location_names"]),
        )

    def save(self, directory: Union[str, Path]) -> Path:
        """Write ``fit.npz``, ``fit.json`` and ``params.csv`` into ``directory``."""
        directory = Path(directory)
        directory.mkdir(parents=True, exist_ok=True)
        np.savez_compressed(directory / "fit.npz", **self.arrays())

        meta = self.metadata()
        meta["gene_names"] = list(self.identity.gene_names)
        meta["location_names"] = list(self.identity.location_names)
        with open(directory / "fit.json", "w") as f:
            json.dump(meta, f, indent=2)
        self.to_frame().to_csv(directory / "params.csv")
        return directory

    @classmethod
    def load(cls, directory: Union[str, Path]) -> "SpaNormFit":
        """Load a fit written by :meth:`save`."""
        directory = Path(directory)
        if not (directory / "fit.npz").exists():
            raise FileNotFoundError(f"No saved fit found in {directory}")
        with open(directory / "fit.json") as f:
            meta = json.load(f)
        with np.load(directory / "fit.npz") as data:
            arrays = {k: data[k] for k in data.files}
        return cls.from_arrays(arrays, meta, meta["gene_names"], meta["location_names"])

    def __repr__(self) -> str:
        counts = ", ".join(f"{k}={v}" for k, v in self.status_counts().items())
        return (
            f"SpaNormFit(n_genes={self.n_genes}, n_locations={self.n_locations}, "
            f"n_fit={len(self.fit_locations)}, df={self.basis.df}, {counts})"
        )


def aggregate(
    results: Sequence[GeneFit],
    identity: DatasetIdentity,
    fit_locations: np.ndarray,
    basis: TPSBasis,
    ls_mean: float,
    settings: Optional[Dict[str, Any]] = None,
) -> SpaNormFit:
    """Collect per-gene results (in gene order) into a :class:`SpaNormFit`."""
    if len(results) != identity.n_genes:
        raise ValueError(f"Got {len(results)} gene fits for {identity.n_genes} genes")
    return SpaNormFit(
        identity=identity,
        fit_locations=np.asarray(fit_locations, dtype=np.int64),
        basis=basis,
        ls_mean=float(ls_mean),
        alpha=np.vstack([r.alpha for r in results]),
        gamma=np.vstack([r.gamma for r in results]),
        psi=np.array([r.psi for r in results], dtype=float),
        status=np.array([int(r.status) for r in results], dtype=np.int8),
        n_iter=np.array([r.n_iter for r in results], dtype=np.int64),
        loglik=np.array([r.loglik for r in results], dtype=float),
        inner_converged=np.array([r.inner_converged for r in results], dtype=bool),
        outer_converged=np.array([r.outer_converged for r in results], dtype=bool),
        eta_bio=np.vstack([r.eta_bio for r in results]),
        eta_lib=np.vstack([r.eta_lib for r in results]),
        settings=dict(settings or {}),
    )


def validate(fit: Optional[SpaNormFit], identity: DatasetIdentity) -> bool:
    """True when ``fit`` was produced on exactly the same genes and locations.

    Identifiers are compared as sets with equal cardinality; a pure reordering
    of the same identifiers stays valid.
    """
    if fit is None:
        return False
    ours = fit.identity
    return (
        ours.n_genes == identity.n_genes
        and ours.n_locations == identity.n_locations
        and set(ours.gene_names) == set(identity.gene_names)
        and set(ours.location_names) == set(identity.location_names)
    )


def as_count_matrix(counts) -> Union[np.ndarray, sparse.csr_matrix]:
    """Genes x locations counts as a float ndarray or CSR matrix, checked non-negative."""
    if sparse.issparse(counts):
        counts = sparse.csr_matrix(counts, dtype=float)
        values = counts.data
    else:
        counts = np.asarray(counts, dtype=float)
        if counts.ndim != 2:
            raise ConfigurationError(f"Counts must be a 2-D genes x locations matrix, got {counts.shape}")
        values = counts
    if not np.all(np.isfinite(values)) or np.any(values < 0):
        raise ConfigurationError("Counts must be finite and non-negative")
    return counts


def gene_row(counts, i: int) -> np.ndarray:
    """Dense counts of gene ``i``."""
    if sparse.issparse(counts):
        return counts.getrow(i).toarray().ravel()
    return counts[i]


def library_sizes(counts) -> np.ndarray:
    """Total counts per location, zeros replaced by the smallest positive total."""
    totals = np.asarray(counts.sum(axis=0)).ravel().astype(float)
    positive = totals[totals > 0]
    if positive.size == 0:
        raise ConfigurationError("Every location has zero total counts")
    return np.where(totals > 0, totals, positive.min())


def log_library_sizes(counts, ls_mean: Optional[float] = None):
    """``(log(L / ls_mean), ls_mean)``; ``ls_mean`` defaults to the mean library size."""
    totals = library_sizes(counts)
    if ls_mean is None:
        ls_mean = float(totals.mean())
    return np.log(totals / ls_mean), ls_mean


def _fit_chunk(Y_sub, genes, W, log_l, kwargs) -> List[GeneFit]:
    return [fit_gene(gene_row(Y_sub, g), W, log_l, **kwargs) for g in genes]


def _warn_problem_genes(fit: SpaNormFit) -> None:
    capped = fit.genes_with_status(FitStatus.MAX_ITER)
    if capped:
        warnings.warn(
            f"{len(capped)} gene(s) did not converge within the iteration cap "
            f"(e.g. {', '.join(capped[:5])}); last iterates kept",
            ConvergenceWarning,
            stacklevel=3,
        )
    fallback = fit.genes_with_status(FitStatus.FALLBACK)
    if fallback:
        warnings.warn(
            f"{len(fallback)} gene(s) were numerically unstable and use the intercept-only "
            f"fallback model (e.g. {', '.join(fallback[:5])})",
            NumericInstabilityFallback,
            stacklevel=3,
        )


def fit_spanorm(
    counts,
    coords,
    gene_names: Optional[Sequence[str]] = None,
    location_names: Optional[Sequence[str]] = None,
    *,
    df_tps: int = 6,
    sample_p: float = 0.25,
    seed: int = 42,
    gene_model: str = "nb",
    tol: float = 1e-4,
    lambda_a: float = 1e-4,
    step_factor: float = 0.5,
    maxit_nb: int = 50,
    maxit_irls: int = 25,
    maxit_psi: int = 25,
    maxn_psi: int = 500,
    n_jobs: int = 1,
    verbose: bool = False,
    console: Optional[Console] = None,
) -> SpaNormFit:
    """Fit the spatial library-size model to every gene.

    Parameters
    ----------
    counts : array-like or sparse matrix
        (G, N) genes x locations counts.
    coords : array-like
        (N, 2) coordinates, in the same location order as ``counts`` columns.
    gene_names, location_names : sequence of str, optional
        Identifiers; default to ``gene_<i>`` / ``location_<j>``.
    df_tps : int
        Spline degrees of freedom (basis columns per spatial term).
    sample_p : float
        Proportion of locations used for fitting.
    seed : int
        Seed for the fitting subset and the dispersion subset.
    n_jobs : int
        Worker threads; genes are fit independently.
    verbose : bool
        Print progress and a convergence summary (no effect on results).

    Returns
    -------
    SpaNormFit
    """
    counts = as_count_matrix(counts)
    coords = np.asarray(coords, dtype=float)
    n_genes, n_locations = counts.shape
    if coords.shape != (n_locations, 2):
        raise ConfigurationError(
            f"Coordinates have shape {coords.shape}, expected ({n_locations}, 2)"
        )
    if not tol > 0:
        raise ConfigurationError(f"tol must be > 0, got {tol!r}")
    if gene_model not in ("nb", "poisson"):
        raise ConfigurationError(f"gene.model must be 'nb' or 'poisson', got {gene_model!r}")
    if gene_names is None:
        gene_names = [f"gene_{i}" for i in range(n_genes)]
    if location_names is None:
        location_names = [f"location_{j}" for j in range(n_locations)]
    identity = DatasetIdentity.from_names(gene_names, location_names)
    if identity.n_genes != n_genes or identity.n_locations != n_locations:
        raise ConfigurationError("Identifier counts do not match the count matrix shape")

    basis = build_basis(coords, df_tps)
    idx = select_subset(n_locations, sample_p, seed, min_size=2 * df_tps + 1)
    log_l_all, ls_mean = log_library_sizes(counts)
    W = basis.transform(coords[idx])
    log_l = log_l_all[idx]

    psi_idx = None
    if len(idx) > maxn_psi:
        rng = np.random.default_rng(seed + 1)
        psi_idx = np.sort(rng.choice(len(idx), size=maxn_psi, replace=False))

    Y_sub = counts[:, idx]
    gene_kwargs = dict(
        gene_model=gene_model,
        tol=tol,
        lambda_a=lambda_a,
        step_factor=step_factor,
        maxit_nb=maxit_nb,
        maxit_irls=maxit_irls,
        maxit_psi=maxit_psi,
        psi_idx=psi_idx,
    )

    console = console or Console(stderr=True)
    if verbose:
        console.print(
            f"Fitting {n_genes} genes on {len(idx)}/{n_locations} locations "
            f"(df.tps={df_tps}, sample.p={sample_p}, seed={seed})"
        )

    n_jobs = max(1, int(n_jobs))
    chunk = max(1, int(np.ceil(n_genes / (n_jobs * 4))))
    chunks = [range(s, min(s + chunk, n_genes)) for s in range(0, n_genes, chunk)]
    results: List[GeneFit] = []
    with FitProgress(n_genes, verbose=verbose, console=console) as progress:
        if n_jobs == 1:
            for genes in chunks:
                results.extend(_fit_chunk(Y_sub, genes, W, log_l, gene_kwargs))
                progress.advance(len(genes))
        else:
            with ThreadPoolExecutor(max_workers=n_jobs) as pool:
                futures = [pool.submit(_fit_chunk, Y_sub, genes, W, log_l, gene_kwargs) for genes in chunks]
                # results are collected in submission order so genes stay aligned
                for genes, fut in zip(chunks, futures):
                    results.extend(fut.result())
                    progress.advance(len(genes))

    settings = {
        "df_tps": int(df_tps),
        "sample_p": float(sample_p),
        "seed": int(seed),
        "gene_model": gene_model,
        "tol": float(tol),
        "lambda_a": float(lambda_a),
        "step_factor": float(step_factor),
        "maxit_nb": int(maxit_nb),
        "maxit_irls": int(maxit_irls),
        "maxit_psi": int(maxit_psi),
        "maxn_psi": int(maxn_psi),
    }
    fit = aggregate(results, identity, idx, basis, ls_mean, settings)
    if verbose:
        print_fit_summary(fit, console)
    _warn_problem_genes(fit)
    return fit
