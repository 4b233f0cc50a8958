"""Low-rank thin-plate spline basis over 2-D spatial coordinates.

The basis is built once from a coordinate set and can then be evaluated at
any other set of coordinates (e.g. the full dataset after fitting on a
subsample). Columns are ordered from smoothest to least smooth:

    0       constant
    1, 2    principal axes of the standardised coordinates (TPS null space)
    3, ...  radial TPS functions, eta(r) = r^2 log r, projected away from the
            null space and truncated to the leading eigenvectors of the
            constrained radial matrix (Wood, 2003)

so ``df`` simply takes the first ``df`` columns.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional

import numpy as np
from scipy.spatial.distance import cdist

from .exceptions import ConfigurationError

# df may not exceed (number of distinct locations - DF_MARGIN)
DF_MARGIN = 3
MAX_KNOTS = 500


def _tps_radial(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    """eta(r) = r^2 log r between every point of ``a`` and ``b``."""
    r2 = cdist(a, b, metric="sqeuclidean")
    out = np.zeros_like(r2)
    np.log(r2, out=out, where=r2 > 0)
    return 0.5 * r2 * out


def _fix_signs(mat: np.ndarray) -> np.ndarray:
    """Flip columns so that the largest-magnitude entry of each is positive."""
    idx = np.argmax(np.abs(mat), axis=0)
    signs = np.sign(mat[idx, np.arange(mat.shape[1])])
    signs[signs == 0] = 1.0
    return mat * signs


def farthest_point_knots(points: np.ndarray, n_knots: int) -> np.ndarray:
    """Deterministic space-filling subset of ``points`` (farthest-point sampling).

    Starts from the point closest to the centroid; ties resolve to the lowest index.
    """
    n = points.shape[0]
    if n <= n_knots:
        return points.copy()
    start = int(np.argmin(((points - points.mean(axis=0)) ** 2).sum(axis=1)))
    chosen = [start]
    min_d = ((points - points[start]) ** 2).sum(axis=1)
    for _ in range(n_knots - 1):
        nxt = int(np.argmax(min_d))
        chosen.append(nxt)
        min_d = np.minimum(min_d, ((points - points[nxt]) ** 2).sum(axis=1))
    return points[np.sort(chosen)]


@dataclass
class TPSBasis:
    """Reusable thin-plate spline basis transform.

    Attributes
    ----------
    df : int
        Number of basis columns.
    center, scale : np.ndarray, float
        Standardisation of the construction coordinates.
    rotation : np.ndarray
        (2, 2) principal axes of the standardised coordinates.
    knots : np.ndarray
        (m, 2) knots in standardised space (empty when df <= 3).
    weights : np.ndarray
        (m, df - 3) map from radial evaluations to basis columns.
    col_mean, col_sd : np.ndarray
        Centring/scaling of the non-constant columns, shape (df - 1,).
    """

    df: int
    center: np.ndarray
    scale: float
    rotation: np.ndarray
    knots: np.ndarray
    weights: np.ndarray
    col_mean: np.ndarray
    col_sd: np.ndarray

    def _raw(self, coords: np.ndarray) -> np.ndarray:
        z = (coords - self.center) / self.scale
        cols = [(z @ self.rotation)[:, : min(2, self.df - 1)]]
        if self.weights.shape[1] > 0:
            cols.append(_tps_radial(z, self.knots) @ self.weights)
        return np.hstack(cols)

    def transform(self, coords) -> np.ndarray:
        """Evaluate the basis at ``coords``, returning an (n, df) matrix."""
        coords = _check_coords(coords)
        W = np.ones((coords.shape[0], self.df))
        if self.df > 1:
            W[:, 1:] = (self._raw(coords) - self.col_mean) / self.col_sd
        return W

    __call__ = transform

    def state_dict(self) -> Dict[str, np.ndarray]:
        """Plain arrays for serialisation."""
        return {
            "df": np.asarray(self.df),
            "center": self.center,
            "scale": np.asarray(self.scale),
            "rotation": self.rotation,
            "knots": self.knots,
            "weights": self.weights,
            "col_mean": self.col_mean,
            "col_sd": self.col_sd,
        }

    @classmethod
    def from_state(cls, state: Dict[str, np.ndarray]) -> "TPSBasis":
        return cls(
            df=int(state["df"]),
            center=np.asarray(state["center"], dtype=float),
            scale=float(state["scale"]),
            rotation=np.asarray(state["rotation"], dtype=float),
            knots=np.asarray(state["knots"], dtype=float).reshape(-1, 2),
            weights=np.asarray(state["weights"], dtype=float),
            col_mean=np.asarray(state["col_mean"], dtype=float),
            col_sd=np.asarray(state["col_sd"], dtype=float),
        )

    def __repr__(self) -> str:
        return f"TPSBasis(df={self.df}, n_knots={self.knots.shape[0]})"


def _check_coords(coords) -> np.ndarray:
    coords = np.asarray(coords, dtype=float)
    if coords.ndim != 2 or coords.shape[1] != 2:
        raise ConfigurationError(f"Coordinates must have shape (n, 2), got {coords.shape}")
    if not np.all(np.isfinite(coords)):
        raise ConfigurationError("Coordinates contain non-finite values")
    return coords


def build_basis(coords, df: int, max_knots: Optional[int] = None) -> TPSBasis:
    """Construct a thin-plate spline basis with ``df`` columns from ``coords``.

    Parameters
    ----------
    coords : array-like
        (n, 2) spatial coordinates; duplicates are allowed.
    df : int
        Degrees of freedom (number of basis columns).
    max_knots : int, optional
        Cap on the number of knots used for the radial part (default 500).

    Returns
    -------
    TPSBasis
        Basis transform; call ``.transform(coords)`` to get the design matrix.

    Raises
    ------
    ConfigurationError
        If ``df`` is not a positive integer or exceeds the number of distinct
        locations minus ``DF_MARGIN``.
    """
    coords = _check_coords(coords)
    max_knots = MAX_KNOTS if max_knots is None else int(max_knots)
    if isinstance(df, bool) or not isinstance(df, (int, np.integer)) or df < 1:
        raise ConfigurationError(f"df.tps must be a positive integer, got {df!r}")
    df = int(df)

    unique = np.unique(coords, axis=0)
    n_distinct = unique.shape[0]
    if df > n_distinct - DF_MARGIN:
        raise ConfigurationError(
            f"df.tps={df} is too large for {n_distinct} distinct locations "
            f"(must be <= {n_distinct - DF_MARGIN})"
        )
    if df > max_knots:
        raise ConfigurationError(f"df.tps={df} exceeds the knot limit ({max_knots})")

    center = coords.mean(axis=0)
    centered = coords - center
    scale = float(np.sqrt(np.mean(np.sum(centered**2, axis=1))))
    if scale <= 0:
        scale = 1.0
    z = centered / scale
    _, _, vt = np.linalg.svd(z, full_matrices=False)
    rotation = _fix_signs(vt.T)

    n_wiggly = max(df - 3, 0)
    if n_wiggly > 0:
        knots = farthest_point_knots((unique - center) / scale, max_knots)
        E = _tps_radial(knots, knots)
        T = np.column_stack([np.ones(knots.shape[0]), knots])
        q, _ = np.linalg.qr(T, mode="complete")
        Z = q[:, 3:]
        evals, evecs = np.linalg.eigh(Z.T @ E @ Z)
        order = np.argsort(-np.abs(evals), kind="stable")[:n_wiggly]
        weights = _fix_signs(Z @ evecs[:, order])
    else:
        knots = np.empty((0, 2))
        weights = np.empty((0, 0))

    basis = TPSBasis(
        df=df,
        center=center,
        scale=scale,
        rotation=rotation,
        knots=knots,
        weights=weights,
        col_mean=np.zeros(df - 1),
        col_sd=np.ones(df - 1),
    )
    if df > 1:
        raw = basis._raw(coords)
        col_sd = raw.std(axis=0)
        if np.any(col_sd < 1e-12):
            raise ConfigurationError(
                f"Coordinates are degenerate (e.g. collinear) for df.tps={df}"
            )
        basis.col_mean = raw.mean(axis=0)
        basis.col_sd = col_sd
    return basis
