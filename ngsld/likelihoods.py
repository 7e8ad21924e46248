"""
In-memory genotype likelihoods and site positions.
"""

from typing import Optional, Sequence, Union

import numpy as np
from scipy.special import logsumexp

# Biallelic diploid genotypes, ordered by copies of the second allele
N_GENO = 3


def _first_bad_row(bad: np.ndarray) -> tuple[int, int]:
    """Return (individual, site) of the first True entry in a (site, ind) mask."""
    site, individual = np.argwhere(bad)[0]
    return int(individual), int(site)


class GenotypeLikelihoodStore:
    """Read-only genotype likelihoods packed site-major.

    The values are held in one contiguous float64 array of shape
    (n_sites, n_ind, N_GENO), always in linear space. Rows declared as
    probabilities are normalized to sum to one; rows declared as likelihoods
    keep their scale, and consumers normalize per use.

    Attributes:
        probs: Whether rows were declared as posterior probabilities
    """

    def __init__(self, values: np.ndarray, probs: bool = False, log_scale: bool = False):
        """Validate raw site-major values and convert them to linear space.

        Args:
            values: Array of shape (n_sites, n_ind, N_GENO), or
                (n_sites, n_ind * N_GENO)
            probs: Rows are genotype probabilities (normalized to sum 1)
            log_scale: Rows are natural-log likelihoods or probabilities

        Raises:
            ValueError: If the shape is wrong or a row contains a negative
                (linear input) or non-finite value
        """
        values = np.array(values, dtype=np.float64)
        if values.ndim == 2:
            if values.shape[1] % N_GENO != 0:
                raise ValueError(
                    f"Number of columns ({values.shape[1]}) is not a multiple of {N_GENO} genotypes"
                )
            values = values.reshape(values.shape[0], -1, N_GENO)
        if values.ndim != 3 or values.shape[2] != N_GENO:
            raise ValueError(
                f"Genotype likelihoods must have shape (n_sites, n_ind, {N_GENO}), got {values.shape}"
            )

        # Log-scale input may hold -inf (zero likelihood) but nothing else non-finite
        if log_scale:
            bad = np.any(np.isnan(values) | (values == np.inf), axis=2)
        else:
            bad = np.any(~np.isfinite(values) | (values < 0), axis=2)
        if np.any(bad):
            individual, site = _first_bad_row(bad)
            row = values[site, individual]
            raise ValueError(
                f"Malformed genotype likelihood row for individual {individual}, site {site}: {row}"
            )

        if log_scale:
            values = self._from_log_scale(values, probs)
        elif probs:
            totals = values.sum(axis=2, keepdims=True)
            np.divide(values, totals, out=values, where=totals > 0)

        values.flags.writeable = False
        self._values = values
        self.probs = probs

    @staticmethod
    def _from_log_scale(values: np.ndarray, probs: bool) -> np.ndarray:
        """Exponentiate log values, shifting each row by its maximum first."""
        with np.errstate(divide='ignore', invalid='ignore'):
            if probs:
                shift = logsumexp(values, axis=2, keepdims=True)
            else:
                shift = np.max(values, axis=2, keepdims=True)
        # Rows of all -inf stay zero and are excluded downstream
        shift[~np.isfinite(shift)] = 0.0
        return np.exp(values - shift)

    @classmethod
    def from_individual_major(cls, values: np.ndarray, **kwargs) -> 'GenotypeLikelihoodStore':
        """Build a store from an (n_ind, n_sites, N_GENO) array."""
        values = np.asarray(values, dtype=np.float64)
        if values.ndim != 3:
            raise ValueError(f"Expected a 3-D array, got shape {values.shape}")
        return cls(np.ascontiguousarray(values.transpose(1, 0, 2)), **kwargs)

    @property
    def n_sites(self) -> int:
        return self._values.shape[0]

    @property
    def n_ind(self) -> int:
        return self._values.shape[1]

    @property
    def shape(self) -> tuple[int, int, int]:
        return self._values.shape

    @property
    def values(self) -> np.ndarray:
        """Read-only (n_sites, n_ind, N_GENO) view."""
        return self._values

    def site(self, site: int) -> np.ndarray:
        """Likelihood rows of every individual at one site, shape (n_ind, N_GENO)."""
        return self._values[site]

    def likelihoods(self, individual: int, site: int) -> np.ndarray:
        """Linear-space likelihood row for one individual at one site."""
        return self._values[site, individual]

    def __repr__(self) -> str:
        kind = 'probabilities' if self.probs else 'likelihoods'
        return f"GenotypeLikelihoodStore(n_sites={self.n_sites}, n_ind={self.n_ind}, {kind})"


class PositionArray:
    """Genomic coordinates of the sites, sorted within each chromosome.

    Attributes:
        positions: Coordinate of each site
        chromosomes: Chromosome label of each site, or None for a single sequence
        labels: Label of each site used in output
    """

    def __init__(self,
                 positions: Sequence[float],
                 chromosomes: Optional[Sequence[str]] = None,
                 labels: Optional[Sequence[str]] = None):
        positions = np.asarray(positions)
        if positions.ndim != 1:
            raise ValueError(f"Positions must be one-dimensional, got shape {positions.shape}")
        if not np.issubdtype(positions.dtype, np.number):
            raise ValueError("Positions must be numeric")
        if np.any(~np.isfinite(positions)):
            raise ValueError("Positions must be finite")
        n = len(positions)

        if chromosomes is not None:
            chromosomes = np.asarray([str(c) for c in chromosomes], dtype=object)
            if len(chromosomes) != n:
                raise ValueError(
                    f"Got {len(chromosomes)} chromosome labels for {n} positions"
                )
        if labels is not None:
            labels = [str(label) for label in labels]
            if len(labels) != n:
                raise ValueError(f"Got {len(labels)} site labels for {n} positions")
        elif chromosomes is not None:
            labels = [f"{c}:{p}" for c, p in zip(chromosomes, positions)]
        else:
            labels = [str(p) for p in positions]

        # Sites must be sorted within each chromosome run
        same_chrom = np.ones(max(n - 1, 0), dtype=bool)
        if chromosomes is not None and n > 1:
            same_chrom = chromosomes[1:] == chromosomes[:-1]
        decreasing = (np.diff(positions) < 0) & same_chrom
        if np.any(decreasing):
            site = int(np.argmax(decreasing)) + 1
            raise ValueError(
                f"Positions must be non-decreasing; site {site} ({positions[site]}) "
                f"comes after {positions[site - 1]}"
            )

        self.positions = positions
        self.chromosomes = chromosomes
        self.labels = labels

    def __len__(self) -> int:
        return len(self.positions)

    def chromosome_runs(self) -> list[tuple[int, int]]:
        """Half-open (start, end) site ranges sharing one chromosome."""
        n = len(self)
        if self.chromosomes is None or n == 0:
            return [(0, n)]
        breaks = np.flatnonzero(self.chromosomes[1:] != self.chromosomes[:-1]) + 1
        bounds = np.concatenate([[0], breaks, [n]])
        return [(int(start), int(end)) for start, end in zip(bounds[:-1], bounds[1:])]


def check_consistent(store: GenotypeLikelihoodStore,
                     positions: Optional[Union[PositionArray, Sequence[float]]]) -> Optional[PositionArray]:
    """Wrap raw positions and check they match the number of sites in the store."""
    if positions is None:
        return None
    if not isinstance(positions, PositionArray):
        positions = PositionArray(positions)
    if len(positions) != store.n_sites:
        raise ValueError(
            f"Position array has {len(positions)} sites but the likelihood store has {store.n_sites}"
        )
    return positions
