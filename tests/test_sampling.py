"""Tests for the fitting-subset sampler."""

import numpy as np
import pytest

from spanorm.exceptions import ConfigurationError
from spanorm.sampling import select_subset, subset_size


def test_half_of_hundred():
    idx = select_subset(100, 0.5, seed=1)
    assert len(idx) == 50
    assert len(np.unique(idx)) == 50
    assert np.all(np.diff(idx) > 0)
    assert idx.min() >= 0 and idx.max() < 100


def test_reproducible():
    np.testing.assert_array_equal(select_subset(100, 0.5, seed=1), select_subset(100, 0.5, seed=1))


def test_seed_changes_subset():
    assert not np.array_equal(select_subset(1000, 0.25, seed=1), select_subset(1000, 0.25, seed=2))


def test_independent_of_global_state():
    a = select_subset(500, 0.3, seed=11)
    np.random.seed(0)
    np.random.random(1000)
    b = select_subset(500, 0.3, seed=11)
    np.testing.assert_array_equal(a, b)


def test_full_proportion():
    np.testing.assert_array_equal(select_subset(37, 1.0, seed=0), np.arange(37))


@pytest.mark.parametrize("n, p, expected", [(100, 0.25, 25), (10, 0.25, 3), (10, 0.05, 1), (7, 0.5, 4)])
def test_subset_size_rounding(n, p, expected):
    assert subset_size(n, p) == expected
    assert len(select_subset(n, p, seed=0)) == expected


@pytest.mark.parametrize("p", [0.0, -0.1, 1.01])
def test_invalid_proportion(p):
    with pytest.raises(ConfigurationError, match="sample.p"):
        select_subset(100, p, seed=0)


def test_minimum_size():
    select_subset(100, 0.1, seed=0, min_size=10)
    with pytest.raises(ConfigurationError, match="minimum"):
        select_subset(100, 0.1, seed=0, min_size=11)


def test_empty_subset():
    with pytest.raises(ConfigurationError, match="no locations"):
        select_subset(10, 0.01, seed=0)
