"""Per-site genotype calling and expected genotype dosages.

Both functions work on the whole store at once, so they are meant to run in
a single pre-pass before pairs are dispatched; the resulting dosages are
then shared read-only by every pair containing a site.
"""

import logging
from typing import Tuple

import numpy as np

from .likelihoods import N_GENO, GenotypeLikelihoodStore

_ALLELE_COUNTS = np.arange(N_GENO, dtype=np.float64)


def _posteriors(store: GenotypeLikelihoodStore) -> Tuple[np.ndarray, np.ndarray]:
    """Rows normalized to sum one, and a mask of rows with any weight."""
    values = store.values
    totals = values.sum(axis=2, keepdims=True)
    has_data = totals[..., 0] > 0
    posteriors = np.zeros_like(values)
    np.divide(values, totals, out=posteriors, where=totals > 0)
    return posteriors, has_data


def expected_genotypes(store: GenotypeLikelihoodStore) -> np.ndarray:
    """Likelihood-weighted allele-2 dosage of each individual at each site.

    Returns:
        (n_sites, n_ind) array in [0, 2]; NaN where the row carries no weight
    """
    posteriors, has_data = _posteriors(store)
    dosages = posteriors @ _ALLELE_COUNTS
    dosages[~has_data] = np.nan
    return dosages


def call_genotypes(store: GenotypeLikelihoodStore,
                   call_thresh: float = 0.0,
                   n_thresh: float = 0.0) -> Tuple[GenotypeLikelihoodStore, np.ndarray]:
    """Call hard genotypes from posterior probabilities.

    For each individual and site, with max_pp the largest normalized
    probability:
        - max_pp < n_thresh: no information; the row becomes uniform and
          the dosage is missing
        - max_pp < call_thresh: the dosage is missing and the row is left
          as is
        - otherwise the argmax genotype is called; the row becomes one-hot
          and the dosage is its allele count

    Args:
        store: Store holding genotype probabilities
        call_thresh: Minimum posterior probability to call a genotype
        n_thresh: Minimum posterior probability for the site to count as
            observed for that individual

    Returns:
        Tuple of (store with called rows, (n_sites, n_ind) dosage array with
        NaN for missing calls)
    """
    for name, value in (('call_thresh', call_thresh), ('n_thresh', n_thresh)):
        if not 0 <= value <= 1:
            raise ValueError(f"{name} must be between 0 and 1, got {value}")

    posteriors, has_data = _posteriors(store)
    best = np.argmax(posteriors, axis=2)
    max_pp = np.max(posteriors, axis=2)

    unobserved = ~has_data | (max_pp < n_thresh)
    uncalled = unobserved | (max_pp < call_thresh)
    called = ~uncalled

    values = np.array(store.values)
    one_hot = np.eye(N_GENO)[best]
    values[called] = one_hot[called]
    values[unobserved & has_data] = 1.0 / N_GENO

    dosages = best.astype(np.float64)
    dosages[uncalled] = np.nan

    logging.info(
        f"Called {int(called.sum())} of {called.size} genotypes "
        f"({int(unobserved.sum())} unobserved, {int((uncalled & ~unobserved).sum())} below call threshold)"
    )

    return GenotypeLikelihoodStore(values, probs=True), dosages
