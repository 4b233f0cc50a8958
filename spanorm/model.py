"""Per-gene negative binomial fit with a spatial library-size term.

For one gene with counts ``y`` over the fitting locations, the mean is

    log mu_i = (W alpha)_i + log(l_i) * (W gamma)_i

where ``W`` is the spatial basis, ``l`` the normalised library size,
``alpha`` the biology coefficients and ``gamma`` the library-size
coefficients. Counts follow NB2 with ``Var = mu + psi * mu^2`` (``psi = 0``
for the Poisson model).

The fit alternates between a dispersion step (1-D likelihood maximisation
in log psi with the mean held fixed) and a mean step (penalised IRLS with psi
held fixed) until both the dispersion and the log-likelihood stop changing.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum
from typing import Optional

import numpy as np
from scipy.optimize import minimize_scalar
from scipy.special import gammaln, xlogy

PSI_MIN = 1e-8
PSI_MAX = 1e4
MU_MIN = 1e-8
ETA_MAX = 40.0
MAX_COND = 1e12


class FitStatus(IntEnum):
    """Per-gene outcome of the fit."""

    CONVERGED = 0
    MAX_ITER = 1  # iteration cap hit, last iterate kept
    FALLBACK = 2  # numeric failure, intercept-only model substituted
    ZERO = 3  # no counts on the fitting locations, every mean is 0


class _Unstable(Exception):
    """Rank-deficient system or non-finite iterate."""


@dataclass
class GeneFit:
    """Fitted parameters for one gene.

    ``eta_bio`` and ``eta_lib`` are the two linear predictor terms on the
    fitting locations.
    """

    alpha: np.ndarray
    gamma: np.ndarray
    psi: float
    status: FitStatus
    inner_converged: bool
    outer_converged: bool
    n_iter: int
    loglik: float
    eta_bio: np.ndarray
    eta_lib: np.ndarray

    @property
    def converged(self) -> bool:
        return self.status == FitStatus.CONVERGED


def nb_loglik(y: np.ndarray, mu: np.ndarray, psi: float) -> float:
    """NB2 log-likelihood, Poisson when ``psi <= 0``."""
    if psi <= 0:
        return float(np.sum(xlogy(y, mu) - mu - gammaln(y + 1)))
    r = 1.0 / psi
    return float(
        np.sum(
            gammaln(y + r)
            - gammaln(r)
            - gammaln(y + 1)
            + r * np.log(r / (r + mu))
            + xlogy(y, mu / (r + mu))
        )
    )


def moment_dispersion(y: np.ndarray, mu: np.ndarray) -> float:
    """Method-of-moments NB2 dispersion given fitted means, clipped to [PSI_MIN, PSI_MAX]."""
    denom = float(np.sum(mu**2))
    if denom <= 0:
        return PSI_MIN
    psi = float(np.sum((y - mu) ** 2 - mu)) / denom
    return float(np.clip(psi, PSI_MIN, PSI_MAX))


def estimate_dispersion(
    y: np.ndarray,
    mu: np.ndarray,
    psi_start: float,
    maxit: int = 25,
) -> float:
    """Maximise the NB log-likelihood over psi with the means held fixed."""

    def negll(log_psi):
        return -nb_loglik(y, mu, float(np.exp(log_psi)))

    res = minimize_scalar(
        negll,
        bounds=(np.log(PSI_MIN), np.log(PSI_MAX)),
        method="bounded",
        options={"maxiter": int(maxit), "xatol": 1e-6},
    )
    psi = float(np.exp(res.x))
    psi_start = float(np.clip(psi_start, PSI_MIN, PSI_MAX))
    if not np.isfinite(res.fun) or negll(np.log(psi_start)) < res.fun:
        psi = psi_start
    return psi


def _penalised_loglik(y, eta, beta, psi, pen) -> float:
    return nb_loglik(y, np.exp(eta), psi) - 0.5 * float(np.sum(pen * beta**2))


def irls(
    y: np.ndarray,
    X: np.ndarray,
    beta: np.ndarray,
    psi: float,
    pen: np.ndarray,
    maxit: int = 25,
    tol: float = 1e-4,
    step_factor: float = 0.5,
):
    """Penalised IRLS for the log-link NB mean with dispersion fixed.

    Returns ``(beta, penalised loglik, converged, n_iter)``. Raises
    ``_Unstable`` on a rank-deficient or non-finite system.
    """
    eta = X @ beta
    ll = _penalised_loglik(y, eta, beta, psi, pen)
    if not np.isfinite(ll):
        raise _Unstable("non-finite starting log-likelihood")
    converged = False
    it = 0
    for it in range(1, maxit + 1):
        mu = np.maximum(np.exp(eta), MU_MIN)
        w = mu / (1.0 + psi * mu)
        z = eta + (y - mu) / mu
        A = X.T @ (w[:, None] * X) + np.diag(pen)
        if not np.all(np.isfinite(A)) or np.linalg.cond(A) > MAX_COND:
            raise _Unstable("rank-deficient IRLS system")
        target = np.linalg.solve(A, X.T @ (w * z))
        if not np.all(np.isfinite(target)):
            raise _Unstable("non-finite IRLS update")

        # step halving until the penalised log-likelihood does not decrease
        step = 1.0
        while True:
            cand = beta + step * (target - beta)
            eta_c = X @ cand
            if np.all(eta_c < ETA_MAX):
                ll_c = _penalised_loglik(y, eta_c, cand, psi, pen)
                if np.isfinite(ll_c) and ll_c >= ll - 1e-10 * abs(ll):
                    break
            step *= step_factor
            if step < 1e-10:
                # no ascent direction left before reaching tol
                return beta, ll, False, it

        delta = abs(ll_c - ll) / (abs(ll) + 0.1)
        beta, eta, ll = cand, eta_c, ll_c
        if delta < tol:
            converged = True
            break
    return beta, ll, converged, it


def fallback_fit(y: np.ndarray, W: np.ndarray, log_l: np.ndarray, gene_model: str = "nb") -> GeneFit:
    """Intercept-only model ``mu = exp(alpha_0) * l`` with moment dispersion."""
    k = W.shape[1]
    alpha = np.zeros(k)
    gamma = np.zeros(k)
    total = float(np.sum(y))
    if total <= 0:
        return GeneFit(
            alpha=alpha,
            gamma=gamma,
            psi=0.0,
            status=FitStatus.ZERO,
            inner_converged=True,
            outer_converged=True,
            n_iter=0,
            loglik=0.0,
            eta_bio=np.zeros(len(y)),
            eta_lib=np.zeros(len(y)),
        )
    alpha[0] = np.log(total / float(np.sum(np.exp(log_l))))
    gamma[0] = 1.0
    eta_bio = W @ alpha
    eta_lib = log_l * (W @ gamma)
    mu = np.exp(eta_bio + eta_lib)
    psi = moment_dispersion(y, mu) if gene_model == "nb" else 0.0
    return GeneFit(
        alpha=alpha,
        gamma=gamma,
        psi=psi,
        status=FitStatus.FALLBACK,
        inner_converged=False,
        outer_converged=False,
        n_iter=0,
        loglik=nb_loglik(y, mu, psi),
        eta_bio=eta_bio,
        eta_lib=eta_lib,
    )


def design_matrix(W: np.ndarray, log_l: np.ndarray) -> np.ndarray:
    """Combined design ``[log(l) * W, W]``; coefficients are ``[gamma, alpha]``."""
    return np.hstack([log_l[:, None] * W, W])


def penalty_vector(k: int, lambda_a: float) -> np.ndarray:
    """Ridge penalty on every coefficient except the library-size slope and the intercept."""
    pen = np.full(2 * k, float(lambda_a))
    pen[0] = 0.0
    pen[k] = 0.0
    return pen


def fit_gene(
    y: np.ndarray,
    W: np.ndarray,
    log_l: np.ndarray,
    *,
    gene_model: str = "nb",
    tol: float = 1e-4,
    lambda_a: float = 1e-4,
    step_factor: float = 0.5,
    maxit_nb: int = 50,
    maxit_irls: int = 25,
    maxit_psi: int = 25,
    psi_idx: Optional[np.ndarray] = None,
) -> GeneFit:
    """Fit one gene by alternating dispersion and mean estimation.

    Parameters
    ----------
    y : np.ndarray
        (n,) counts on the fitting locations.
    W : np.ndarray
        (n, k) basis evaluated on the fitting locations.
    log_l : np.ndarray
        (n,) log normalised library sizes on the fitting locations.
    gene_model : str
        ``"nb"`` or ``"poisson"``.
    psi_idx : np.ndarray, optional
        Subset of rows used by the dispersion step (all rows if None).

    Returns
    -------
    GeneFit
        Never raises for numeric problems; failures come back with
        ``FitStatus.FALLBACK`` and an intercept-only model.
    """
    y = np.asarray(y, dtype=float)
    if np.sum(y) <= 0:
        return fallback_fit(y, W, log_l, gene_model)

    k = W.shape[1]
    X = design_matrix(W, log_l)
    pen = penalty_vector(k, lambda_a)
    if psi_idx is None:
        psi_idx = slice(None)

    start = fallback_fit(y, W, log_l, gene_model)
    beta = np.concatenate([start.gamma, start.alpha])
    psi = start.psi
    nb = gene_model == "nb"

    try:
        with np.errstate(over="ignore", under="ignore", divide="ignore", invalid="ignore"):
            ll_old = _penalised_loglik(y, X @ beta, beta, psi, pen)
            inner_converged = outer_converged = False
            n_iter = 0
            for n_iter in range(1, maxit_nb + 1):
                if nb:
                    mu = np.exp(X @ beta)
                    psi_new = estimate_dispersion(y[psi_idx], mu[psi_idx], psi, maxit=maxit_psi)
                else:
                    psi_new = 0.0
                beta, ll, inner_converged, _ = irls(
                    y, X, beta, psi_new, pen,
                    maxit=maxit_irls, tol=tol, step_factor=step_factor,
                )
                d_psi = abs(psi_new - psi) / (psi + PSI_MIN) if nb else 0.0
                d_ll = abs(ll - ll_old) / (abs(ll_old) + 0.1)
                psi, ll_old = psi_new, ll
                if d_psi < tol and d_ll < tol:
                    outer_converged = True
                    break
    except (_Unstable, np.linalg.LinAlgError):
        return start

    if not (np.all(np.isfinite(beta)) and np.isfinite(psi) and np.isfinite(ll_old)):
        return start

    gamma, alpha = beta[:k], beta[k:]
    eta_lib = X[:, :k] @ gamma
    eta_bio = W @ alpha
    converged = inner_converged and outer_converged
    return GeneFit(
        alpha=alpha,
        gamma=gamma,
        psi=float(psi),
        status=FitStatus.CONVERGED if converged else FitStatus.MAX_ITER,
        inner_converged=bool(inner_converged),
        outer_converged=bool(outer_converged),
        n_iter=n_iter,
        loglik=nb_loglik(y, np.exp(eta_bio + eta_lib), psi),
        eta_bio=eta_bio,
        eta_lib=eta_lib,
    )
