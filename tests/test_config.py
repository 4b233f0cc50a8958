"""Tests for the configuration system."""

from pathlib import Path
from tempfile import TemporaryDirectory

import pytest

from spanorm.config import ADJ_METHODS, Config
from spanorm.exceptions import AdjustmentError, ConfigurationError


def test_defaults():
    config = Config()
    assert config.df_tps == 6
    assert config.sample_p == 0.25
    assert config.tol == 1e-4
    assert config.adj_method == "logpac"
    assert config.scale_factor == 1.0
    assert config.verbose is False
    assert config.model["gene_model"] == "nb"
    assert config.validate() is config


def test_adj_methods():
    assert ADJ_METHODS == ("logpac", "pearson", "meanbio", "medbio")


def test_dotted_option_names():
    config = Config.from_dict({
        "seed": 1,
        "model": {"df.tps": 4},
        "fitting": {"sample.p": 0.5},
        "adj.method": "pearson",
        "scale.factor": 2.0,
    })
    assert config.df_tps == 4
    assert config.sample_p == 0.5
    assert config.adj_method == "pearson"
    assert config.scale_factor == 2.0
    assert config.seed == 1
    # untouched options keep their defaults
    assert config.tol == 1e-4
    assert config.fitting["maxit_nb"] == 50


def test_with_overrides_returns_copy():
    base = Config()
    new = base.with_overrides(**{"df.tps": 3, "seed": 7, "verbose": True})
    assert new.df_tps == 3
    assert new.seed == 7
    assert new.verbose is True
    assert base.df_tps == 6
    assert base.seed == 42


def test_unknown_option():
    with pytest.raises(ConfigurationError, match="bogus"):
        Config().with_overrides(bogus=1)
    with pytest.raises(ConfigurationError, match="bogus"):
        Config.from_dict({"bogus": 1})


@pytest.mark.parametrize(
    "options, match",
    [
        ({"df_tps": 0}, "df.tps"),
        ({"df_tps": 2.5}, "df.tps"),
        ({"sample_p": 0.0}, "sample.p"),
        ({"sample_p": 1.5}, "sample.p"),
        ({"tol": 0}, "tol"),
        ({"tol": -1e-3}, "tol"),
        ({"scale_factor": 0}, "scale.factor"),
        ({"scale_factor": -2.0}, "scale.factor"),
        ({"gene_model": "zinb"}, "gene.model"),
        ({"step_factor": 1.0}, "step.factor"),
        ({"maxit_nb": 0}, "maxit.nb"),
        ({"seed": "one"}, "seed"),
    ],
)
def test_validate_rejects(options, match):
    with pytest.raises(ConfigurationError, match=match):
        Config().with_overrides(**options).validate()


def test_invalid_adj_method_is_adjustment_error():
    with pytest.raises(AdjustmentError, match="median"):
        Config().with_overrides(adj_method="median").validate()


def test_to_fit_kwargs():
    kwargs = Config().with_overrides(df_tps=2, sample_p=0.5, seed=1).to_fit_kwargs()
    assert kwargs["df_tps"] == 2
    assert kwargs["sample_p"] == 0.5
    assert kwargs["seed"] == 1
    assert "adj_method" not in kwargs


def test_yaml_round_trip():
    config = Config(name="visium", input="data.h5ad").with_overrides(df_tps=4, adj_method="medbio")
    with TemporaryDirectory() as tmpdir:
        path = Path(tmpdir) / "config.yaml"
        config.save_yaml(path)
        text = path.read_text()
        assert "\nmodel:\n" in text
        loaded = Config.from_yaml(path)

    assert loaded.to_dict() == config.to_dict()
    assert loaded.counts_layer is None
