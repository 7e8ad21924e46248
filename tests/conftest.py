"""Shared test fixtures for ngsld."""

import numpy as np
import pytest

from ngsld import GenotypeLikelihoodStore, PositionArray


def genotypes_to_probs(genotypes: np.ndarray, error: float = 0.0) -> np.ndarray:
    """Genotype probabilities putting 1 - error on the true genotype."""
    return np.eye(3)[genotypes] * (1 - error) + error / 3


@pytest.fixture
def simulate_pair():
    """Factory fixture drawing genotypes at two sites from haplotype frequencies."""
    def _simulate_pair(frequencies, n_ind: int, seed: int = 42):
        rng = np.random.default_rng(seed)
        haplotypes = rng.choice(4, size=(n_ind, 2), p=frequencies)
        allele_i, allele_j = np.divmod(haplotypes, 2)
        return allele_i.sum(axis=1), allele_j.sum(axis=1)

    return _simulate_pair


@pytest.fixture
def make_store():
    """Factory fixture building a probability store from an (n_sites, n_ind) genotype matrix."""
    def _make_store(genotypes, error: float = 0.0) -> GenotypeLikelihoodStore:
        genotypes = np.asarray(genotypes)
        return GenotypeLikelihoodStore(genotypes_to_probs(genotypes, error), probs=True)

    return _make_store


@pytest.fixture
def small_store(make_store):
    """Eight sites over 30 individuals: linked, independent and monomorphic sites."""
    rng = np.random.default_rng(7)
    base = rng.choice(3, size=30, p=[0.36, 0.48, 0.16])
    genotypes = np.vstack([
        base,
        base,
        rng.choice(3, size=30),
        2 - base,
        np.zeros(30, dtype=int),
        rng.choice(3, size=30),
        base,
        rng.choice(3, size=30),
    ])
    return make_store(genotypes, error=0.05)


@pytest.fixture
def small_positions():
    """Positions for small_store, two chromosomes."""
    return PositionArray(
        [100, 150, 400, 5000, 20, 60, 90, 10000],
        chromosomes=['1', '1', '1', '1', '2', '2', '2', '2'],
    )


@pytest.fixture
def random_store(make_store):
    """Larger random store for determinism checks."""
    rng = np.random.default_rng(123)
    genotypes = rng.choice(3, size=(25, 40), p=[0.5, 0.3, 0.2])
    genotypes[1::2] = np.where(rng.random((12, 40)) < 0.8, genotypes[0:-1:2], genotypes[1::2])
    return make_store(genotypes, error=0.1)
