"""Tests for the command-line pipeline."""

from pathlib import Path
from tempfile import TemporaryDirectory

import anndata as ad
import numpy as np
import yaml
from click.testing import CliRunner

from spanorm.cli import cli
from spanorm.config import Config
from spanorm.fit import SpaNormFit

from conftest import make_adata


def _write_config(tmpdir: Path, **fitting) -> Path:
    adata = make_adata()
    adata.write_h5ad(tmpdir / "input.h5ad")
    config = Config(
        name="test",
        seed=1,
        input=str(tmpdir / "input.h5ad"),
        output_dir=str(tmpdir / "outputs"),
    ).with_overrides(df_tps=3, sample_p=0.5, **fitting)
    path = tmpdir / "config.yaml"
    config.save_yaml(path)
    return path


def test_init_config():
    runner = CliRunner()
    with TemporaryDirectory() as tmpdir:
        path = Path(tmpdir) / "config.yaml"
        result = runner.invoke(cli, ["init-config", "-o", str(path), "--input", "data.h5ad"])
        assert result.exit_code == 0, result.output
        config = Config.from_yaml(path)
        with open(path) as f:
            raw = yaml.safe_load(f)

    assert config.input == "data.h5ad"
    assert config.df_tps == 6
    assert raw["model"]["df_tps"] == 6


def test_run_all():
    runner = CliRunner()
    with TemporaryDirectory() as tmpdir:
        tmpdir = Path(tmpdir)
        config_path = _write_config(tmpdir)
        result = runner.invoke(cli, ["run", "all", "-c", str(config_path)])
        assert result.exit_code == 0, result.output

        out = tmpdir / "outputs"
        assert (out / "preprocessed.h5ad").exists()
        assert (out / "fit" / "fit.npz").exists()
        assert (out / "fit" / "params.csv").exists()
        assert (out / "fit" / "summary.json").exists()

        normalized = ad.read_h5ad(out / "normalized.h5ad")
        fit = SpaNormFit.load(out / "fit")

    # the all-zero gene is removed by preprocessing
    assert normalized.n_vars == 5
    assert fit.n_genes == 5
    assert normalized.layers["logcounts"].shape == normalized.shape
    assert np.all(np.isfinite(normalized.layers["logcounts"]))
    assert normalized.uns["spanorm"]["adj_method"] == "logpac"


def test_adjust_without_fit_refits():
    runner = CliRunner()
    with TemporaryDirectory() as tmpdir:
        tmpdir = Path(tmpdir)
        config_path = _write_config(tmpdir)
        result = runner.invoke(cli, ["adjust", "-c", str(config_path), "--method", "pearson"])
        assert result.exit_code == 0, result.output
        assert (tmpdir / "outputs" / "fit" / "fit.npz").exists()
        normalized = ad.read_h5ad(tmpdir / "outputs" / "normalized.h5ad")

    assert normalized.uns["spanorm"]["adj_method"] == "pearson"
    assert normalized.n_vars == 6


def test_adjust_refits_stale_fit():
    runner = CliRunner()
    with TemporaryDirectory() as tmpdir:
        tmpdir = Path(tmpdir)
        config_path = _write_config(tmpdir)
        # fit on the raw input (6 genes), then preprocess drops the zero gene
        assert runner.invoke(cli, ["fit", "-c", str(config_path)]).exit_code == 0
        assert runner.invoke(cli, ["preprocess", "-c", str(config_path)]).exit_code == 0
        result = runner.invoke(cli, ["adjust", "-c", str(config_path)])
        assert result.exit_code == 0, result.output
        assert "refitting" in result.output
        fit = SpaNormFit.load(tmpdir / "outputs" / "fit")

    assert fit.n_genes == 5


def test_unknown_stage():
    runner = CliRunner()
    with TemporaryDirectory() as tmpdir:
        config_path = _write_config(Path(tmpdir))
        result = runner.invoke(cli, ["run", "train", "-c", str(config_path)])
    assert result.exit_code != 0
    assert "Unknown stage" in result.output
