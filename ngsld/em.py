"""EM estimation of two-locus haplotype frequencies from genotype likelihoods.

Haplotypes over a pair of biallelic sites are indexed 0..3 as
[11, 12, 21, 22], where the first digit is the allele at site i and the
second the allele at site j. Genotype states count copies of allele 2, so a
haplotype pair (h, h') produces genotype a + a' at site i and b + b' at
site j. The E-step enumerates all 16 ordered haplotype pairs; the double
heterozygote is reached by both 11/22 and 12/21 and is split between the two
phases according to their current prior weight.
"""

from dataclasses import dataclass
from typing import Optional

import numpy as np

EM_TOLERANCE = 1e-9
EM_MAX_ITERATIONS = 1000
UNIFORM_START = np.full(4, 0.25)

_HAPLOTYPE_ALLELES = np.array([[0, 0], [0, 1], [1, 0], [1, 1]])
_FIRST, _SECOND = np.divmod(np.arange(16), 4)
_GENOTYPE_I = _HAPLOTYPE_ALLELES[_FIRST, 0] + _HAPLOTYPE_ALLELES[_SECOND, 0]
_GENOTYPE_J = _HAPLOTYPE_ALLELES[_FIRST, 1] + _HAPLOTYPE_ALLELES[_SECOND, 1]

# Copies of each haplotype carried by each ordered pair, shape (16, 4)
_COPIES = np.zeros((16, 4))
_COPIES[np.arange(16), _FIRST] += 1
_COPIES[np.arange(16), _SECOND] += 1

_MIN_ROW_SUM = np.finfo(np.float64).tiny


@dataclass(frozen=True)
class EMResult:
    """Outcome of haplotype-frequency EM for one pair of sites.

    Attributes:
        frequencies: [p11, p12, p21, p22]; NaN when no individual contributed
        num_iterations: EM iterations run
        converged: Whether the tolerance was reached before the iteration cap
        n_ind: Number of individuals contributing non-zero weight
    """
    frequencies: np.ndarray
    num_iterations: int
    converged: bool
    n_ind: int

    @property
    def is_defined(self) -> bool:
        return self.n_ind > 0 and bool(np.all(np.isfinite(self.frequencies)))


def _undefined(num_iterations: int = 0) -> EMResult:
    return EMResult(np.full(4, np.nan), num_iterations, False, 0)


def _check_start(start: Optional[np.ndarray]) -> np.ndarray:
    if start is None:
        return UNIFORM_START.copy()
    start = np.asarray(start, dtype=np.float64)
    if start.shape != (4,):
        raise ValueError(f"Starting haplotype frequencies must have length 4, got shape {start.shape}")
    if np.any(start < 0) or not np.isclose(start.sum(), 1.0):
        raise ValueError(f"Starting haplotype frequencies must be non-negative and sum to 1, got {start}")
    return start.copy()


def pair_genotype_likelihoods(gl_i: np.ndarray, gl_j: np.ndarray) -> tuple[np.ndarray, int]:
    """Likelihood of each ordered haplotype pair for each usable individual.

    Rows are normalized per individual. Individuals whose likelihoods sum to
    zero at either site carry no information and are dropped.

    Args:
        gl_i: (n_ind, 3) likelihoods at site i
        gl_j: (n_ind, 3) likelihoods at site j

    Returns:
        Tuple of the (n_used, 16) likelihood matrix and the number of
        individuals excluded
    """
    gl_i = np.asarray(gl_i, dtype=np.float64)
    gl_j = np.asarray(gl_j, dtype=np.float64)
    if gl_i.shape != gl_j.shape or gl_i.ndim != 2 or gl_i.shape[1] != 3:
        raise ValueError(
            f"Likelihoods for the two sites must both have shape (n_ind, 3), got {gl_i.shape} and {gl_j.shape}"
        )

    total_i = gl_i.sum(axis=1)
    total_j = gl_j.sum(axis=1)
    keep = (total_i > _MIN_ROW_SUM) & (total_j > _MIN_ROW_SUM)

    lkl_i = gl_i[keep] / total_i[keep, None]
    lkl_j = gl_j[keep] / total_j[keep, None]
    return lkl_i[:, _GENOTYPE_I] * lkl_j[:, _GENOTYPE_J], int(np.sum(~keep))


def estimate_haplotype_frequencies(gl_i: np.ndarray,
                                   gl_j: np.ndarray,
                                   start: Optional[np.ndarray] = None,
                                   tolerance: float = EM_TOLERANCE,
                                   max_iterations: int = EM_MAX_ITERATIONS) -> EMResult:
    """Estimate two-locus haplotype frequencies by EM.

    Args:
        gl_i: (n_ind, 3) linear-space genotype likelihoods at site i
        gl_j: (n_ind, 3) linear-space genotype likelihoods at site j
        start: Initial [p11, p12, p21, p22]; uniform if None
        tolerance: Stop once the largest absolute change in a frequency
            falls below this value
        max_iterations: Iteration cap; the last estimate is returned
            with converged=False when it is reached

    Returns:
        EMResult for the pair
    """
    if max_iterations < 1:
        raise ValueError(f"max_iterations must be at least 1, got {max_iterations}")
    frequencies = _check_start(start)
    pair_lkl, _ = pair_genotype_likelihoods(gl_i, gl_j)
    if pair_lkl.shape[0] == 0:
        return _undefined()

    converged = False
    n_used = 0
    iteration = 0
    for iteration in range(1, max_iterations + 1):
        # E-step: posterior over ordered haplotype pairs under random mating
        weights = pair_lkl * (frequencies[_FIRST] * frequencies[_SECOND])
        totals = weights.sum(axis=1)
        informative = totals > 0
        n_used = int(np.sum(informative))
        if n_used == 0:
            return _undefined(iteration)
        posterior = weights[informative] / totals[informative, None]

        # M-step: expected haplotype copies over 2 * n_used chromosomes
        updated = posterior.sum(axis=0) @ _COPIES / (2 * n_used)

        change = np.max(np.abs(updated - frequencies))
        frequencies = updated
        if change < tolerance:
            converged = True
            break

    return EMResult(frequencies, iteration, converged, n_used)
