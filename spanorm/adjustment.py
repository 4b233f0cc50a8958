"""Adjusted expression values from a fitted model.

Four methods, all evaluated at every location (fitted or held out):

- ``logpac``: percentile-adjusted counts. The observed count's
  mid-percentile under the full model (biology + library size) is mapped to
  the count with the same percentile under the biology-only model, then
  ``log2(pac + 1)``.
- ``pearson``: ``(y - mu) / sqrt(mu + psi mu^2)`` under the full model.
- ``meanbio``: ``log2(mu_bio + 1)``, the biology-only mean.
- ``medbio``: ``log2(m + 1)``, with ``m`` the median of the gamma expression
  rate behind the biology-only NB distribution (``mu_bio`` when psi is 0).

``scale_factor`` multiplies the biology-only mean before the logpac,
meanbio and medbio outputs are computed; pearson residuals ignore it.
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from enum import Enum
from typing import Optional, Sequence

import numpy as np
from scipy import stats
from scipy.special import gammaincinv

from .exceptions import AdjustmentError, ConfigurationError
from .fit import DatasetIdentity, SpaNormFit, as_count_matrix, log_library_sizes, validate
from .model import FitStatus

P_EPS = 1e-12
PAC_MAX = np.finfo(float).max
MU_FLOOR = 1e-300
ETA_CLIP = 700.0
CHUNK_SIZE = 256


class AdjustMethod(str, Enum):
    LOGPAC = "logpac"
    PEARSON = "pearson"
    MEANBIO = "meanbio"
    MEDBIO = "medbio"

    @classmethod
    def parse(cls, value) -> "AdjustMethod":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            raise AdjustmentError(
                f"Unknown adjustment method '{value}'. "
                f"Available: {', '.join(m.value for m in cls)}"
            ) from None


def _log2p1(x):
    return np.log1p(x) / np.log(2.0)


def _row_split(psi: np.ndarray):
    nb = psi > 0
    return nb, ~nb


def nb_cdf(k: np.ndarray, mu: np.ndarray, psi: np.ndarray) -> np.ndarray:
    """NB2 CDF row-wise; ``psi`` is per row (Poisson rows where psi is 0)."""
    out = np.empty_like(mu)
    mu = np.maximum(mu, MU_FLOOR)
    nb, pois = _row_split(psi)
    if nb.any():
        r = (1.0 / psi[nb])[:, None]
        out[nb] = stats.nbinom.cdf(k[nb], r, r / (r + mu[nb]))
    if pois.any():
        out[pois] = stats.poisson.cdf(k[pois], mu[pois])
    return out


def nb_ppf(q: np.ndarray, mu: np.ndarray, psi: np.ndarray) -> np.ndarray:
    """NB2 quantile function row-wise, matching :func:`nb_cdf`."""
    out = np.empty_like(mu)
    mu = np.maximum(mu, MU_FLOOR)
    nb, pois = _row_split(psi)
    if nb.any():
        r = (1.0 / psi[nb])[:, None]
        out[nb] = stats.nbinom.ppf(q[nb], r, r / (r + mu[nb]))
    if pois.any():
        out[pois] = stats.poisson.ppf(q[pois], mu[pois])
    return out


def _logpac(y, mu_full, mu_bio, psi):
    lower = nb_cdf(y - 1, mu_full, psi)
    upper = nb_cdf(y, mu_full, psi)
    p = np.clip(0.5 * (lower + upper), P_EPS, 1.0 - P_EPS)
    pac = nb_ppf(p, mu_bio, psi)
    return _log2p1(np.nan_to_num(pac, nan=0.0, posinf=PAC_MAX))


def _pearson(y, mu_full, psi):
    var = mu_full + psi[:, None] * mu_full**2
    out = np.zeros_like(mu_full)
    np.divide(y - mu_full, np.sqrt(var), out=out, where=var > 0)
    return out


def _medbio(mu_bio, psi):
    med = mu_bio.copy()
    nb = psi > 0
    if nb.any():
        shape = 1.0 / psi[nb]
        # median / mean of the gamma rate, floored where it underflows
        ratio = np.fmax(psi[nb] * gammaincinv(shape, 0.5), P_EPS)
        med[nb] = mu_bio[nb] * ratio[:, None]
    return _log2p1(med)


def _adjust_chunk(rows, fit_rows, Y, W, log_l, fit, method, scale_factor):
    alpha = fit.alpha[fit_rows]
    gamma = fit.gamma[fit_rows]
    psi = fit.psi[fit_rows].astype(float)
    zero = fit.status[fit_rows] == FitStatus.ZERO

    eta_bio = np.clip(alpha @ W.T, -ETA_CLIP, ETA_CLIP)
    mu_bio = np.exp(eta_bio)
    mu_bio[zero] = 0.0

    if method is AdjustMethod.MEANBIO:
        return _log2p1(scale_factor * mu_bio)
    if method is AdjustMethod.MEDBIO:
        return _medbio(scale_factor * mu_bio, psi)

    eta_lib = (gamma @ W.T) * log_l[None, :]
    mu_full = np.exp(np.clip(eta_bio + eta_lib, -ETA_CLIP, ETA_CLIP))
    mu_full[zero] = 0.0
    y = Y[rows] if isinstance(Y, np.ndarray) else Y[rows].toarray()

    if method is AdjustMethod.PEARSON:
        return _pearson(y, mu_full, psi)
    out = _logpac(y, mu_full, scale_factor * mu_bio, psi)
    out[zero] = 0.0
    return out


def adjust(
    fit: Optional[SpaNormFit],
    counts,
    full_basis: np.ndarray,
    method="logpac",
    scale_factor: float = 1.0,
    gene_names: Optional[Sequence[str]] = None,
    location_names: Optional[Sequence[str]] = None,
    n_jobs: int = 1,
) -> np.ndarray:
    """Compute adjusted values for every gene at every location.

    Parameters
    ----------
    fit : SpaNormFit
        A fit valid for this dataset.
    counts : array-like or sparse matrix
        (G, N) genes x locations counts for the full dataset.
    full_basis : np.ndarray
        (N, df) basis evaluated at every location, e.g.
        ``fit.basis.transform(coords)``.
    method : str or AdjustMethod
        ``logpac``, ``pearson``, ``meanbio`` or ``medbio``.
    scale_factor : float
        Multiplier on the biology-only mean; ignored by ``pearson``.
    gene_names, location_names : sequence of str, optional
        Dataset identifiers. When given the fit is validated against them
        and its genes are aligned to ``gene_names`` order.
    n_jobs : int
        Worker threads over gene chunks.

    Returns
    -------
    np.ndarray
        (G, N) adjusted values.

    Raises
    ------
    AdjustmentError
        Unknown method, missing fit, or fit not valid for the dataset.
    """
    method = AdjustMethod.parse(method)
    if not isinstance(fit, SpaNormFit):
        raise AdjustmentError("No fit available: run the fitting step before adjusting")
    if not isinstance(scale_factor, (int, float, np.floating)) or not scale_factor > 0:
        raise ConfigurationError(f"scale.factor must be > 0, got {scale_factor!r}")

    counts = as_count_matrix(counts)
    W = np.asarray(full_basis, dtype=float)
    n_genes, n_locations = counts.shape
    if n_genes != fit.n_genes or n_locations != fit.n_locations:
        raise AdjustmentError(
            f"Fit was made on {fit.n_genes} genes x {fit.n_locations} locations, "
            f"counts are {n_genes} x {n_locations}"
        )
    if W.shape != (n_locations, fit.basis.df):
        raise AdjustmentError(f"Basis has shape {W.shape}, expected ({n_locations}, {fit.basis.df})")

    if gene_names is not None:
        identity = DatasetIdentity.from_names(
            gene_names, location_names if location_names is not None else fit.identity.location_names
        )
        if not validate(fit, identity):
            raise AdjustmentError("Fit does not match the dataset's genes/locations; refit first")
        position = {g: i for i, g in enumerate(fit.gene_names)}
        order = np.array([position[g] for g in identity.gene_names], dtype=np.int64)
    else:
        order = np.arange(n_genes)

    log_l, _ = log_library_sizes(counts, fit.ls_mean)
    scale_factor = float(scale_factor)

    chunks = [np.arange(s, min(s + CHUNK_SIZE, n_genes)) for s in range(0, n_genes, CHUNK_SIZE)]

    def run(rows):
        with np.errstate(over="ignore", under="ignore", divide="ignore", invalid="ignore"):
            return _adjust_chunk(rows, order[rows], counts, W, log_l, fit, method, scale_factor)

    out = np.empty((n_genes, n_locations), dtype=float)
    if n_jobs > 1 and len(chunks) > 1:
        with ThreadPoolExecutor(max_workers=int(n_jobs)) as pool:
            for rows, block in zip(chunks, pool.map(run, chunks)):
                out[rows] = block
    else:
        for rows in chunks:
            out[rows] = run(rows)
    return out
