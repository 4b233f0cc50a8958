"""Tests for the fitting driver and the fit object."""

from pathlib import Path
from tempfile import TemporaryDirectory

import numpy as np
import pandas as pd
import pytest
from scipy import sparse

from spanorm.adjustment import adjust
from spanorm.exceptions import ConfigurationError, ConvergenceWarning, NumericInstabilityFallback
from spanorm.fit import (
    DatasetIdentity,
    SpaNormFit,
    aggregate,
    fit_spanorm,
    library_sizes,
    log_library_sizes,
    validate,
)
from spanorm.model import FitStatus, fit_gene
from spanorm.sampling import select_subset

from conftest import make_dataset


def _fit(dataset, **kwargs):
    counts, coords, genes, locations = dataset
    opts = dict(df_tps=2, sample_p=0.5, seed=1)
    opts.update(kwargs)
    return fit_spanorm(counts, coords, genes, locations, **opts)


def test_example_five_genes_hundred_locations():
    counts, coords, genes, locations = make_dataset(n_genes=5, n_side=10)
    fit = fit_spanorm(counts, coords, genes, locations, df_tps=2, sample_p=0.5, seed=1)

    assert len(fit.fit_locations) == 50
    np.testing.assert_array_equal(fit.fit_locations, select_subset(100, 0.5, seed=1))
    assert fit.alpha.shape == (5, 2)
    assert fit.gamma.shape == (5, 2)
    for gene_fit in fit.params.values():
        assert gene_fit.alpha.shape == (2,)
        assert gene_fit.gamma.shape == (2,)
    assert fit.eta_bio.shape == (5, 50)

    again = fit_spanorm(counts, coords, genes, locations, df_tps=2, sample_p=0.5, seed=1)
    np.testing.assert_array_equal(again.fit_locations, fit.fit_locations)


def test_fit_is_deterministic(dataset):
    a = _fit(dataset, df_tps=4)
    b = _fit(dataset, df_tps=4)
    np.testing.assert_array_equal(a.alpha, b.alpha)
    np.testing.assert_array_equal(a.gamma, b.gamma)
    np.testing.assert_array_equal(a.psi, b.psi)
    np.testing.assert_array_equal(a.status, b.status)


def test_threads_match_serial(dataset):
    serial = _fit(dataset, df_tps=3)
    threaded = _fit(dataset, df_tps=3, n_jobs=3)
    np.testing.assert_allclose(threaded.alpha, serial.alpha)
    np.testing.assert_allclose(threaded.psi, serial.psi)
    np.testing.assert_array_equal(threaded.status, serial.status)


def test_per_gene_fits_are_independent(dataset):
    """Fitting a gene alone gives the same parameters as fitting it with the others."""
    counts, coords, genes, locations = dataset
    fit = _fit(dataset, df_tps=3)
    W = fit.basis.transform(coords[fit.fit_locations])
    log_l, _ = log_library_sizes(counts)
    alone = fit_gene(counts[2, fit.fit_locations], W, log_l[fit.fit_locations])
    np.testing.assert_allclose(fit.alpha[2], alone.alpha)
    assert fit.psi[2] == pytest.approx(alone.psi)


def test_sparse_counts_match_dense(dataset):
    counts, coords, genes, locations = dataset
    dense = fit_spanorm(counts, coords, genes, locations, df_tps=3, sample_p=0.5, seed=1)
    sp = fit_spanorm(sparse.csr_matrix(counts), coords, genes, locations, df_tps=3, sample_p=0.5, seed=1)
    np.testing.assert_allclose(sp.alpha, dense.alpha)
    np.testing.assert_allclose(sp.psi, dense.psi)


def test_zero_gene_status(dataset):
    fit = _fit(dataset)
    zero = fit.gene_fit("Gene5")
    assert zero.status == FitStatus.ZERO
    assert np.all(np.isfinite(fit.alpha)) and np.all(np.isfinite(fit.gamma))
    assert np.all(np.isfinite(fit.psi))
    assert fit.genes_with_status(FitStatus.ZERO) == ["Gene5"]
    assert fit.status_counts()["zero"] == 1


def test_convergence_warning(dataset):
    with pytest.warns(ConvergenceWarning, match="did not converge"):
        fit = _fit(dataset, maxit_nb=1)
    assert len(fit.genes_with_status(FitStatus.MAX_ITER)) > 0


def test_equal_library_sizes_fall_back():
    """Equal totals at every location leave the library-size slope unidentifiable."""
    counts, coords, genes, locations = make_dataset(n_genes=4, zero_gene=False)
    counts[-1] = counts[:-1].sum(axis=0).max() - counts[:-1].sum(axis=0)
    assert len(set(counts.sum(axis=0))) == 1

    with pytest.warns(NumericInstabilityFallback, match="intercept-only"):
        fit = fit_spanorm(counts, coords, genes, locations, df_tps=3, sample_p=0.5, seed=1)
    assert fit.genes_with_status(FitStatus.FALLBACK) == genes
    assert not fit.inner_converged.any()

    W = fit.basis.transform(coords)
    for method in ("logpac", "pearson", "meanbio", "medbio"):
        out = adjust(fit, counts, W, method=method)
        assert np.all(np.isfinite(out)), method
        if method != "pearson":
            assert np.all(out >= 0), method
    pac = 2.0 ** adjust(fit, counts, W, method="logpac") - 1.0
    assert np.all(pac >= -1e-9)


def test_default_names():
    counts, coords, _, _ = make_dataset(n_genes=3)
    fit = fit_spanorm(counts, coords, df_tps=2, sample_p=0.5)
    assert fit.gene_names == ("gene_0", "gene_1", "gene_2")
    assert fit.identity.location_names[0] == "location_0"


def test_configuration_errors(dataset):
    counts, coords, genes, locations = dataset
    with pytest.raises(ConfigurationError, match="Coordinates"):
        fit_spanorm(counts, coords[:-1], genes, locations)
    with pytest.raises(ConfigurationError, match="df.tps"):
        fit_spanorm(counts, coords, genes, locations, df_tps=200)
    with pytest.raises(ConfigurationError, match="minimum"):
        fit_spanorm(counts, coords, genes, locations, df_tps=6, sample_p=0.1)
    with pytest.raises(ConfigurationError, match="tol"):
        fit_spanorm(counts, coords, genes, locations, tol=0)
    with pytest.raises(ConfigurationError, match="non-negative"):
        fit_spanorm(-counts, coords, genes, locations)
    with pytest.raises(ConfigurationError, match="unique"):
        fit_spanorm(counts, coords, ["g"] * len(genes), locations)


def test_library_sizes_replace_zero_totals():
    counts = np.array([[0.0, 2.0, 4.0], [0.0, 1.0, 2.0]])
    np.testing.assert_array_equal(library_sizes(counts), [3.0, 3.0, 6.0])
    log_l, ls_mean = log_library_sizes(counts)
    assert ls_mean == pytest.approx(4.0)
    np.testing.assert_allclose(log_l, np.log([0.75, 0.75, 1.5]))
    log_l2, _ = log_library_sizes(counts, ls_mean=3.0)
    np.testing.assert_allclose(log_l2, np.log([1.0, 1.0, 2.0]))


# ── Validity of a fit against a dataset ─────────────────────────────


@pytest.fixture
def small_fit(dataset):
    return _fit(dataset)


def test_validate_same_identity(small_fit, dataset):
    _, _, genes, locations = dataset
    assert validate(small_fit, DatasetIdentity.from_names(genes, locations))


def test_validate_reordered_same_identifiers(small_fit, dataset):
    _, _, genes, locations = dataset
    assert validate(small_fit, DatasetIdentity.from_names(genes[::-1], locations[::-1]))


@pytest.mark.parametrize(
    "change",
    ["drop_gene", "add_gene", "rename_gene", "drop_location", "add_location", "rename_location"],
)
def test_validate_detects_changes(small_fit, dataset, change):
    _, _, genes, locations = dataset
    genes, locations = list(genes), list(locations)
    if change == "drop_gene":
        genes = genes[1:]
    elif change == "add_gene":
        genes = genes + ["NewGene"]
    elif change == "rename_gene":
        genes[0] = "Renamed"
    elif change == "drop_location":
        locations = locations[:-1]
    elif change == "add_location":
        locations = locations + ["spot_new"]
    elif change == "rename_location":
        locations[3] = "spot_renamed"
    assert not validate(small_fit, DatasetIdentity.from_names(genes, locations))


def test_validate_none(dataset):
    _, _, genes, locations = dataset
    assert not validate(None, DatasetIdentity.from_names(genes, locations))


def test_aggregate_checks_gene_count(small_fit):
    results = list(small_fit.params.values())[:-1]
    with pytest.raises(ValueError, match="gene fits"):
        aggregate(results, small_fit.identity, small_fit.fit_locations, small_fit.basis, small_fit.ls_mean)


def test_aggregate_round_trip(small_fit):
    rebuilt = aggregate(
        list(small_fit.params.values()),
        small_fit.identity,
        small_fit.fit_locations,
        small_fit.basis,
        small_fit.ls_mean,
        small_fit.settings,
    )
    np.testing.assert_array_equal(rebuilt.alpha, small_fit.alpha)
    np.testing.assert_array_equal(rebuilt.status, small_fit.status)


# ── Persistence and summaries ───────────────────────────────────────


def test_to_frame(small_fit):
    df = small_fit.to_frame()
    assert isinstance(df, pd.DataFrame)
    assert list(df.index) == list(small_fit.gene_names)
    assert {"psi", "status", "n_iter", "alpha_0", "alpha_1", "gamma_0", "gamma_1"} <= set(df.columns)
    assert df.loc["Gene5", "status"] == "zero"


def test_save_load(small_fit, dataset):
    _, coords, _, _ = dataset
    with TemporaryDirectory() as tmpdir:
        out = small_fit.save(Path(tmpdir) / "fit")
        assert (out / "fit.npz").exists()
        assert (out / "fit.json").exists()
        assert (out / "params.csv").exists()
        loaded = SpaNormFit.load(out)

    assert loaded.identity == small_fit.identity
    assert loaded.ls_mean == small_fit.ls_mean
    assert loaded.settings == small_fit.settings
    for name in ("alpha", "gamma", "psi", "status", "fit_locations", "eta_bio", "eta_lib"):
        np.testing.assert_array_equal(getattr(loaded, name), getattr(small_fit, name))
    np.testing.assert_array_equal(loaded.basis.transform(coords), small_fit.basis.transform(coords))


def test_load_missing():
    with TemporaryDirectory() as tmpdir:
        with pytest.raises(FileNotFoundError):
            SpaNormFit.load(tmpdir)


def test_repr(small_fit):
    text = repr(small_fit)
    assert "n_genes=6" in text
    assert "zero=1" in text
