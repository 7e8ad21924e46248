"""Tests for LD statistics and Pearson correlation."""

import numpy as np
import pytest

from ngsld.statistics import allele_frequencies, ld_statistics, pearson_r


def test_complete_positive_ld():
    stats = ld_statistics(np.array([0.5, 0.0, 0.0, 0.5]), n_ind=10)
    assert stats.D == pytest.approx(0.25)
    assert stats.D_prime == pytest.approx(1.0)
    assert stats.r2 == pytest.approx(1.0)
    assert stats.chi2 == pytest.approx(20.0)
    assert not stats.monomorphic


def test_complete_negative_ld():
    stats = ld_statistics(np.array([0.0, 0.5, 0.5, 0.0]), n_ind=10)
    assert stats.D == pytest.approx(-0.25)
    assert stats.D_prime == pytest.approx(-1.0)
    assert stats.r2 == pytest.approx(1.0)


def test_equilibrium():
    frequencies = np.outer([0.7, 0.3], [0.2, 0.8]).ravel()
    stats = ld_statistics(frequencies, n_ind=50)
    assert stats.D == pytest.approx(0.0, abs=1e-12)
    assert stats.D_prime == pytest.approx(0.0, abs=1e-10)
    assert stats.r2 == pytest.approx(0.0, abs=1e-12)
    assert stats.chi2 == pytest.approx(0.0, abs=1e-10)


def test_known_values():
    """Hand-computed D, D' and r^2."""
    frequencies = np.array([0.4, 0.1, 0.2, 0.3])
    p_a, p_b = allele_frequencies(frequencies)
    assert (p_a, p_b) == pytest.approx((0.5, 0.6))

    stats = ld_statistics(frequencies, n_ind=100)
    D = 0.4 - 0.5 * 0.6
    assert stats.D == pytest.approx(D)
    assert stats.D_prime == pytest.approx(D / min(0.5 * 0.4, 0.5 * 0.6))
    assert stats.r2 == pytest.approx(D ** 2 / (0.5 * 0.5 * 0.6 * 0.4))
    assert stats.chi2 == pytest.approx(stats.r2 * 200)


def test_monomorphic_site():
    """A fixed allele at one site leaves D', r^2 and chi^2 undefined."""
    stats = ld_statistics(np.array([0.6, 0.4, 0.0, 0.0]), n_ind=10)
    assert stats.monomorphic
    assert stats.D == pytest.approx(0.0)
    assert np.isnan(stats.D_prime)
    assert np.isnan(stats.r2)
    assert np.isnan(stats.chi2)


def test_undefined_frequencies():
    stats = ld_statistics(np.full(4, np.nan), n_ind=0)
    assert all(np.isnan(v) for v in (stats.D, stats.D_prime, stats.r2, stats.chi2))


def test_bounds_over_random_frequencies():
    """D' lies in [-1, 1] and r^2 in [0, 1] for any frequency vector."""
    rng = np.random.default_rng(2024)
    samples = np.vstack([
        rng.dirichlet(np.ones(4), size=2000),
        rng.dirichlet(np.full(4, 0.05), size=2000),
    ])
    for frequencies in samples:
        stats = ld_statistics(frequencies, n_ind=10)
        if stats.monomorphic:
            continue
        assert -1.0 <= stats.D_prime <= 1.0
        assert 0.0 <= stats.r2 <= 1.0


def test_symmetric_in_sites():
    rng = np.random.default_rng(8)
    for frequencies in rng.dirichlet(np.ones(4), size=200):
        forward = ld_statistics(frequencies, n_ind=10)
        backward = ld_statistics(frequencies[[0, 2, 1, 3]], n_ind=10)
        assert forward.D == pytest.approx(backward.D)
        assert forward.D_prime == pytest.approx(backward.D_prime)
        assert forward.r2 == pytest.approx(backward.r2)
        assert forward.chi2 == pytest.approx(backward.chi2)


def test_wrong_length():
    with pytest.raises(ValueError, match="length 4"):
        ld_statistics(np.array([0.5, 0.5]), n_ind=1)


def test_pearson_matches_numpy():
    rng = np.random.default_rng(4)
    x = rng.random(50) * 2
    y = x + rng.normal(0, 0.3, size=50)
    assert pearson_r(x, y) == pytest.approx(np.corrcoef(x, y)[0, 1])
    assert pearson_r(x, 2 - x) == pytest.approx(-1.0)


def test_pearson_pairwise_complete():
    """Individuals missing at either site are dropped from both vectors."""
    x = np.array([0.0, 1.0, 2.0, np.nan, 1.0, 0.0])
    y = np.array([0.0, 1.0, 2.0, 2.0, np.nan, 2.0])
    complete = np.array([0, 1, 2, 5])
    assert pearson_r(x, y) == pytest.approx(np.corrcoef(x[complete], y[complete])[0, 1])


def test_pearson_undefined():
    assert np.isnan(pearson_r(np.array([1.0, 1.0, 1.0]), np.array([0.0, 1.0, 2.0])))
    assert np.isnan(pearson_r(np.array([1.0, np.nan]), np.array([0.0, 1.0])))
    with pytest.raises(ValueError, match="shape"):
        pearson_r(np.zeros(3), np.zeros(4))
