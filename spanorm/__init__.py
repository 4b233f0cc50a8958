"""spanorm: spatially aware library-size normalisation for spatial transcriptomics.

Each gene's counts are modelled as negative binomial with a log mean made of
two smooth spatial terms over a thin-plate spline basis: one scaled by the
log library size (technical) and one independent of it (biology). The fit is
then used to produce library-size-adjusted expression:

    import spanorm
    spanorm.spanorm(adata, df_tps=6, sample_p=0.25, adj_method="logpac")
    adata.layers["logcounts"]
"""

from .adjustment import AdjustMethod, adjust
from .basis import TPSBasis, build_basis
from .config import Config
from .datasets import SpatialCounts, read_h5ad
from .exceptions import (
    AdjustmentError,
    ConfigurationError,
    ConvergenceWarning,
    FitMismatchError,
    NumericInstabilityFallback,
    SpaNormError,
)
from .fit import DatasetIdentity, SpaNormFit, aggregate, fit_spanorm, validate
from .model import FitStatus, GeneFit, fit_gene
from .normalize import FIT_KEY, FitCache, get_fit, spanorm
from .sampling import select_subset

__version__ = "0.1.0"

__all__ = [
    "AdjustMethod",
    "AdjustmentError",
    "Config",
    "ConfigurationError",
    "ConvergenceWarning",
    "DatasetIdentity",
    "FIT_KEY",
    "FitCache",
    "FitMismatchError",
    "FitStatus",
    "GeneFit",
    "NumericInstabilityFallback",
    "SpaNormError",
    "SpaNormFit",
    "SpatialCounts",
    "TPSBasis",
    "adjust",
    "aggregate",
    "build_basis",
    "fit_gene",
    "fit_spanorm",
    "get_fit",
    "read_h5ad",
    "select_subset",
    "spanorm",
    "validate",
]
