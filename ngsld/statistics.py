"""LD statistics derived from two-locus haplotype frequencies."""

from dataclasses import dataclass

import numpy as np
from scipy import stats

# Marginal allele frequencies this close to 0 or 1 are treated as monomorphic
MONOMORPHIC_TOLERANCE = 1e-10


@dataclass(frozen=True)
class LDStatistics:
    """Pairwise LD summary.

    Attributes:
        D: p11 - pA * pB
        D_prime: D scaled by its maximum given the allele frequencies
        r2: squared allelic correlation
        chi2: r2 * 2 * n_ind
        monomorphic: Whether either site has a fixed allele
    """
    D: float
    D_prime: float
    r2: float
    chi2: float
    monomorphic: bool = False


def allele_frequencies(frequencies: np.ndarray) -> tuple[float, float]:
    """Frequencies of allele 1 at site i and at site j."""
    p11, p12, p21, _ = frequencies
    return p11 + p12, p11 + p21


def is_monomorphic(freq: float) -> bool:
    return freq <= MONOMORPHIC_TOLERANCE or freq >= 1 - MONOMORPHIC_TOLERANCE


def ld_statistics(frequencies: np.ndarray, n_ind: int) -> LDStatistics:
    """Compute D, D', r^2 and chi^2 from [p11, p12, p21, p22].

    D' and r^2 are undefined (NaN) when either site is monomorphic; D is
    still reported since it is zero there by construction.

    Args:
        frequencies: Haplotype frequency vector summing to one
        n_ind: Number of individuals the frequencies were estimated from

    Returns:
        LDStatistics
    """
    frequencies = np.asarray(frequencies, dtype=np.float64)
    if frequencies.shape != (4,):
        raise ValueError(f"Haplotype frequencies must have length 4, got shape {frequencies.shape}")
    if not np.all(np.isfinite(frequencies)):
        return LDStatistics(np.nan, np.nan, np.nan, np.nan)

    p_a, p_b = allele_frequencies(frequencies)
    D = float(frequencies[0] - p_a * p_b)
    if is_monomorphic(p_a) or is_monomorphic(p_b):
        return LDStatistics(D, np.nan, np.nan, np.nan, monomorphic=True)

    if D >= 0:
        D_max = min(p_a * (1 - p_b), (1 - p_a) * p_b)
    else:
        D_max = min(p_a * p_b, (1 - p_a) * (1 - p_b))
    D_prime = float(np.clip(D / D_max, -1.0, 1.0))

    r2 = float(np.clip(D ** 2 / (p_a * (1 - p_a) * p_b * (1 - p_b)), 0.0, 1.0))
    chi2 = r2 * 2 * n_ind

    return LDStatistics(D, D_prime, r2, chi2)


def pearson_r(x: np.ndarray, y: np.ndarray) -> float:
    """Pearson correlation over individuals with a defined value in both vectors.

    Returns NaN when fewer than two individuals are complete or either
    vector is constant over them.
    """
    x = np.asarray(x, dtype=np.float64)
    y = np.asarray(y, dtype=np.float64)
    if x.shape != y.shape:
        raise ValueError(f"Dosage vectors differ in shape: {x.shape} and {y.shape}")

    complete = ~np.isnan(x) & ~np.isnan(y)
    if np.sum(complete) < 2:
        return np.nan
    x = x[complete]
    y = y[complete]
    if np.ptp(x) == 0 or np.ptp(y) == 0:
        return np.nan

    return float(stats.pearsonr(x, y)[0])
