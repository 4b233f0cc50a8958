"""Configuration system for spanorm runs.

Simple two-level config: top-level fields + nested dicts for
model/fitting/adjustment/preprocessing. Option names may be written with
dots (``df.tps``) or underscores (``df_tps``).
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from .exceptions import AdjustmentError, ConfigurationError

ADJ_METHODS = ("logpac", "pearson", "meanbio", "medbio")
GENE_MODELS = ("nb", "poisson")

MODEL_DEFAULTS: Dict[str, Any] = {
    "df_tps": 6,
    "gene_model": "nb",
    "lambda_a": 1e-4,
}

FITTING_DEFAULTS: Dict[str, Any] = {
    "sample_p": 0.25,
    "tol": 1e-4,
    "step_factor": 0.5,
    "maxit_nb": 50,
    "maxit_irls": 25,
    "maxit_psi": 25,
    "maxn_psi": 500,
    "n_jobs": 1,
    "overwrite": False,
    "verbose": False,
}

ADJUSTMENT_DEFAULTS: Dict[str, Any] = {
    "adj_method": "logpac",
    "scale_factor": 1.0,
    "norm_layer": "logcounts",
}

PREPROCESSING_DEFAULTS: Dict[str, Any] = {
    "min_cells": 1,
    "min_counts": 1,
}

# option name -> config section, used to route flat keyword overrides
OPTION_SECTIONS: Dict[str, str] = {
    **{k: "model" for k in MODEL_DEFAULTS},
    **{k: "fitting" for k in FITTING_DEFAULTS},
    **{k: "adjustment" for k in ADJUSTMENT_DEFAULTS},
    **{k: "preprocessing" for k in PREPROCESSING_DEFAULTS},
}

TOP_LEVEL_FIELDS = ("name", "seed", "input", "output_dir", "counts_layer", "spatial_key")


def normalize_key(key: str) -> str:
    """Map ``df.tps`` style option names onto ``df_tps``."""
    return key.replace(".", "_").replace("-", "_")


def _normalize_section(section: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    return {normalize_key(k): v for k, v in (section or {}).items()}


@dataclass
class Config:
    """Normalisation configuration.

    Attributes:
        name: Run name
        seed: Random seed for the fitting subset and dispersion subset
        input: Path to the input .h5ad (CLI only)
        output_dir: Output directory path (CLI only)
        counts_layer: AnnData layer holding raw counts (None uses ``X``)
        spatial_key: Key in ``adata.obsm`` with the coordinates
        model: Model parameters dict
        fitting: Fitting-loop parameters dict
        adjustment: Adjustment parameters dict
        preprocessing: Gene/location filtering parameters (CLI only)
    """

    name: str = "spanorm"
    seed: int = 42
    input: Optional[str] = None
    output_dir: str = "outputs"
    counts_layer: Optional[str] = None
    spatial_key: str = "spatial"

    model: Dict[str, Any] = field(default_factory=lambda: dict(MODEL_DEFAULTS))
    fitting: Dict[str, Any] = field(default_factory=lambda: dict(FITTING_DEFAULTS))
    adjustment: Dict[str, Any] = field(default_factory=lambda: dict(ADJUSTMENT_DEFAULTS))
    preprocessing: Dict[str, Any] = field(default_factory=lambda: dict(PREPROCESSING_DEFAULTS))

    def __post_init__(self):
        # fill in defaults for partially specified sections
        self.model = {**MODEL_DEFAULTS, **_normalize_section(self.model)}
        self.fitting = {**FITTING_DEFAULTS, **_normalize_section(self.fitting)}
        self.adjustment = {**ADJUSTMENT_DEFAULTS, **_normalize_section(self.adjustment)}
        self.preprocessing = {**PREPROCESSING_DEFAULTS, **_normalize_section(self.preprocessing)}

    @property
    def df_tps(self) -> int:
        return self.model["df_tps"]

    @property
    def sample_p(self) -> float:
        return self.fitting["sample_p"]

    @property
    def tol(self) -> float:
        return self.fitting["tol"]

    @property
    def adj_method(self) -> str:
        return self.adjustment["adj_method"]

    @property
    def scale_factor(self) -> float:
        return self.adjustment["scale_factor"]

    @property
    def verbose(self) -> bool:
        return bool(self.fitting["verbose"])

    @property
    def overwrite(self) -> bool:
        return bool(self.fitting["overwrite"])

    @property
    def norm_layer(self) -> str:
        return self.adjustment["norm_layer"]

    def with_overrides(self, **options) -> "Config":
        """Return a copy with flat options (``df.tps=4``, ``seed=1``) applied."""
        new = copy.deepcopy(self)
        for key, value in options.items():
            key = normalize_key(key)
            if key in TOP_LEVEL_FIELDS:
                setattr(new, key, value)
            elif key in OPTION_SECTIONS:
                getattr(new, OPTION_SECTIONS[key])[key] = value
            else:
                raise ConfigurationError(f"Unknown option '{key}'")
        return new

    def validate(self) -> "Config":
        """Check every option, raising before any fitting starts."""
        df_tps = self.model["df_tps"]
        if isinstance(df_tps, bool) or not isinstance(df_tps, int) or df_tps < 1:
            raise ConfigurationError(f"df.tps must be a positive integer, got {df_tps!r}")

        sample_p = self.fitting["sample_p"]
        if not isinstance(sample_p, (int, float)) or not 0.0 < sample_p <= 1.0:
            raise ConfigurationError(f"sample.p must be in (0, 1], got {sample_p!r}")

        tol = self.fitting["tol"]
        if not isinstance(tol, (int, float)) or not tol > 0:
            raise ConfigurationError(f"tol must be > 0, got {tol!r}")

        scale_factor = self.adjustment["scale_factor"]
        if not isinstance(scale_factor, (int, float)) or not scale_factor > 0:
            raise ConfigurationError(f"scale.factor must be > 0, got {scale_factor!r}")

        if self.adjustment["adj_method"] not in ADJ_METHODS:
            raise AdjustmentError(
                f"Unknown adj.method '{self.adjustment['adj_method']}'. "
                f"Available: {', '.join(ADJ_METHODS)}"
            )

        if self.model["gene_model"] not in GENE_MODELS:
            raise ConfigurationError(
                f"gene.model must be one of {', '.join(GENE_MODELS)}, got {self.model['gene_model']!r}"
            )
        if not self.model["lambda_a"] >= 0:
            raise ConfigurationError(f"lambda.a must be >= 0, got {self.model['lambda_a']!r}")
        if not 0.0 < self.fitting["step_factor"] < 1.0:
            raise ConfigurationError(
                f"step.factor must be in (0, 1), got {self.fitting['step_factor']!r}"
            )
        for key in ("maxit_nb", "maxit_irls", "maxit_psi", "maxn_psi", "n_jobs"):
            value = self.fitting[key]
            if isinstance(value, bool) or not isinstance(value, int) or value < 1:
                raise ConfigurationError(f"{key.replace('_', '.')} must be a positive integer, got {value!r}")
        if isinstance(self.seed, bool) or not isinstance(self.seed, int):
            raise ConfigurationError(f"seed must be an integer, got {self.seed!r}")
        return self

    def to_fit_kwargs(self) -> Dict[str, Any]:
        """Keyword arguments for :func:`spanorm.fit.fit_spanorm`."""
        return {
            "df_tps": self.model["df_tps"],
            "sample_p": float(self.fitting["sample_p"]),
            "seed": self.seed,
            "gene_model": self.model["gene_model"],
            "tol": float(self.fitting["tol"]),
            "lambda_a": float(self.model["lambda_a"]),
            "step_factor": float(self.fitting["step_factor"]),
            "maxit_nb": self.fitting["maxit_nb"],
            "maxit_irls": self.fitting["maxit_irls"],
            "maxit_psi": self.fitting["maxit_psi"],
            "maxn_psi": self.fitting["maxn_psi"],
            "n_jobs": self.fitting["n_jobs"],
            "verbose": self.verbose,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Config":
        data = dict(data or {})
        sections = {s: dict(data.pop(s, None) or {}) for s in ("model", "fitting", "adjustment", "preprocessing")}
        top = {}
        for key, value in data.items():
            key = normalize_key(key)
            if key in TOP_LEVEL_FIELDS:
                top[key] = value
            elif key in OPTION_SECTIONS:
                # flat option written at the top level of the YAML
                sections[OPTION_SECTIONS[key]][key] = value
            else:
                raise ConfigurationError(f"Unknown option '{key}'")
        return cls(**top, **sections)

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary."""
        return {
            "name": self.name,
            "seed": self.seed,
            "input": self.input,
            "output_dir": self.output_dir,
            "counts_layer": self.counts_layer,
            "spatial_key": self.spatial_key,
            "model": dict(self.model),
            "fitting": dict(self.fitting),
            "adjustment": dict(self.adjustment),
            "preprocessing": dict(self.preprocessing),
        }

    @classmethod
    def from_yaml(cls, path: str | Path) -> "Config":
        """Load configuration from a YAML file."""
        with open(path) as f:
            data = yaml.safe_load(f)
        return cls.from_dict(data)

    def save_yaml(self, path: str | Path) -> None:
        """Save configuration to a YAML file with blank lines between sections."""
        d = self.to_dict()
        with open(path, "w") as f:
            for key in TOP_LEVEL_FIELDS:
                f.write(yaml.dump({key: d[key]}, default_flow_style=False))

            for key in ["model", "fitting", "adjustment", "preprocessing"]:
                f.write(f"\n{key}:\n")
                content = yaml.dump(d[key], default_flow_style=False, sort_keys=False)
                for line in content.strip().split("\n"):
                    f.write(f"  {line}\n")
