"""Pairwise LD over all site pairs within a maximum distance, using the ParallelProcessor framework."""

import enum
import logging
import threading
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional, Sequence, Tuple, Union

import numpy as np
import polars as pl

from .calling import call_genotypes, expected_genotypes
from .em import EM_MAX_ITERATIONS, EM_TOLERANCE, estimate_haplotype_frequencies
from .likelihoods import GenotypeLikelihoodStore, PositionArray, check_consistent
from .statistics import ld_statistics, pearson_r
from .threading_template import ParallelProcessor, SerialManager, WorkerManager


class PairFlag(enum.IntFlag):
    """Diagnostics attached to a pair result."""
    NONE = 0
    NON_CONVERGED = 1
    MONOMORPHIC = 2
    NO_INDIVIDUALS = 4
    NUMERIC_ERROR = 8
    ABORTED = 16


@dataclass
class LDOptions:
    """Stores parameters for pairwise LD estimation.

    Attributes:
        max_dist: Maximum distance between the sites of a pair, in position
            units; negative disables distance filtering
        n_threads: Number of worker threads
        call_geno: Call genotypes before estimating LD
        call_thresh: Minimum posterior probability to call a genotype
        n_thresh: Minimum posterior probability for a genotype to count
            as observed
        pearson: Also report Pearson's r between expected genotypes
        min_r2: Drop pairs with r^2 below this value from the output
        em_tolerance: EM convergence tolerance
        em_max_iterations: EM iteration cap
    """
    max_dist: float = -1
    n_threads: int = 1
    call_geno: bool = False
    call_thresh: float = 0.0
    n_thresh: float = 0.0
    pearson: bool = False
    min_r2: float = 0.0
    em_tolerance: float = EM_TOLERANCE
    em_max_iterations: int = EM_MAX_ITERATIONS

    def __post_init__(self):
        if self.n_threads < 1:
            raise ValueError(f"Number of threads cannot be less than 1, got {self.n_threads}")
        if not 0 <= self.call_thresh <= 1:
            raise ValueError(f"call_thresh must be between 0 and 1, got {self.call_thresh}")
        if not 0 <= self.n_thresh <= 1:
            raise ValueError(f"n_thresh must be between 0 and 1, got {self.n_thresh}")
        if not self.call_geno and (self.call_thresh > 0 or self.n_thresh > 0):
            raise ValueError("call_thresh and n_thresh only apply when call_geno is set")
        if not 0 <= self.min_r2 <= 1:
            raise ValueError(f"min_r2 must be between 0 and 1, got {self.min_r2}")
        if self.em_tolerance <= 0:
            raise ValueError(f"em_tolerance must be positive, got {self.em_tolerance}")
        if self.em_max_iterations < 1:
            raise ValueError(f"em_max_iterations must be at least 1, got {self.em_max_iterations}")


@dataclass(frozen=True)
class PairTask:
    """One unit of work: the pair at a given rank in canonical order."""
    rank: int
    site_i: int
    site_j: int


@dataclass(frozen=True)
class PairContext:
    """Read-only state shared by every pair job."""
    store: GenotypeLikelihoodStore
    positions: Optional[np.ndarray]
    chromosomes: Optional[np.ndarray]
    dosages: Optional[np.ndarray]
    options: LDOptions


@dataclass(frozen=True)
class PairResult:
    site_i: int
    site_j: int
    dist: float
    D: float
    D_prime: float
    r2: float
    chi2: float
    r_pearson: float
    n_ind: int
    flags: PairFlag


def enumerate_pairs(n_sites: int,
                    positions: Optional[PositionArray] = None,
                    max_dist: float = -1) -> Tuple[np.ndarray, np.ndarray]:
    """List site pairs (i, j), i < j, in canonical order.

    With distance filtering, only pairs on the same chromosome with
    positions[j] - positions[i] <= max_dist are kept. For each site the end
    of its window is found by binary search on the sorted positions, so
    distant sites are never visited.

    Args:
        n_sites: Number of sites
        positions: Site positions, required when max_dist >= 0
        max_dist: Maximum distance; negative disables filtering

    Returns:
        Tuple of (site_i, site_j) int64 arrays
    """
    if max_dist < 0:
        site_i, site_j = np.triu_indices(n_sites, k=1)
        return site_i.astype(np.int64), site_j.astype(np.int64)

    if positions is None:
        raise ValueError("Positions are required in order to filter pairs by maximum distance")
    if len(positions) != n_sites:
        raise ValueError(f"Position array has {len(positions)} sites, expected {n_sites}")

    all_i: List[np.ndarray] = []
    all_j: List[np.ndarray] = []
    for start, end in positions.chromosome_runs():
        pos = positions.positions[start:end]
        sites = np.arange(start, end)
        window_end = start + np.searchsorted(pos, pos + max_dist, side='right')
        counts = window_end - sites - 1

        site_i = np.repeat(sites, counts)
        first = np.cumsum(counts) - counts
        site_j = site_i + 1 + np.arange(counts.sum()) - np.repeat(first, counts)
        all_i.append(site_i)
        all_j.append(site_j)

    if not all_i:
        return np.zeros(0, dtype=np.int64), np.zeros(0, dtype=np.int64)
    return np.concatenate(all_i).astype(np.int64), np.concatenate(all_j).astype(np.int64)


def compute_pair(site_i: int, site_j: int, context: PairContext) -> PairResult:
    """Estimate haplotype frequencies and LD statistics for one pair.

    Numeric failures never propagate; they produce a result flagged
    NUMERIC_ERROR with undefined statistics.
    """
    options = context.options
    dist = np.nan
    # Sites on different chromosomes have no defined distance
    same_chrom = context.chromosomes is None or context.chromosomes[site_i] == context.chromosomes[site_j]
    if context.positions is not None and same_chrom:
        dist = float(context.positions[site_j] - context.positions[site_i])

    r_pearson = np.nan
    if context.dosages is not None:
        r_pearson = pearson_r(context.dosages[site_i], context.dosages[site_j])

    try:
        with np.errstate(divide='raise', invalid='raise', over='raise'):
            em = estimate_haplotype_frequencies(
                context.store.site(site_i),
                context.store.site(site_j),
                tolerance=options.em_tolerance,
                max_iterations=options.em_max_iterations,
            )
            ld = ld_statistics(em.frequencies, em.n_ind)
    except (FloatingPointError, ZeroDivisionError, ValueError) as e:
        logging.debug(f"Numeric error for pair ({site_i}, {site_j}): {e}")
        return PairResult(site_i, site_j, dist, np.nan, np.nan, np.nan, np.nan,
                          r_pearson, 0, PairFlag.NUMERIC_ERROR)

    flags = PairFlag.NONE
    if not em.is_defined:
        flags |= PairFlag.NO_INDIVIDUALS
    elif not em.converged:
        flags |= PairFlag.NON_CONVERGED
    if ld.monomorphic:
        flags |= PairFlag.MONOMORPHIC

    return PairResult(site_i, site_j, dist, ld.D, ld.D_prime, ld.r2, ld.chi2,
                      r_pearson, em.n_ind, flags)


class PairTasks:
    """Pair tasks in canonical order, created lazily from index arrays."""

    def __init__(self, site_i: np.ndarray, site_j: np.ndarray):
        self.site_i = site_i
        self.site_j = site_j

    def __len__(self) -> int:
        return len(self.site_i)

    def __getitem__(self, rank: int) -> PairTask:
        return PairTask(rank, int(self.site_i[rank]), int(self.site_j[rank]))

    def __iter__(self) -> Iterator[PairTask]:
        for rank in range(len(self)):
            yield self[rank]


class PairResults:
    """Columnar results indexed by pair rank.

    Each slot is written by exactly one job, so workers store results
    without locking. Slots never written keep the ABORTED flag.
    """

    FLOAT_COLUMNS = ('dist', 'D', 'D_prime', 'r2', 'chi2', 'r_pearson')

    def __init__(self, site_i: np.ndarray, site_j: np.ndarray):
        n = len(site_i)
        self.site_i = site_i
        self.site_j = site_j
        self.columns: Dict[str, np.ndarray] = {
            name: np.full(n, np.nan) for name in self.FLOAT_COLUMNS
        }
        self.n_ind = np.zeros(n, dtype=np.int64)
        self.flags = np.full(n, int(PairFlag.ABORTED), dtype=np.int64)
        self.completed = np.zeros(n, dtype=bool)

    def __len__(self) -> int:
        return len(self.site_i)

    def store(self, rank: int, result: PairResult) -> None:
        if (result.site_i, result.site_j) != (self.site_i[rank], self.site_j[rank]):
            raise ValueError(
                f"Result for pair ({result.site_i}, {result.site_j}) stored at rank {rank}"
            )
        for name in self.FLOAT_COLUMNS:
            self.columns[name][rank] = getattr(result, name)
        self.n_ind[rank] = result.n_ind
        self.flags[rank] = int(result.flags)
        self.completed[rank] = True

    def __getitem__(self, rank: int) -> PairResult:
        return PairResult(
            int(self.site_i[rank]),
            int(self.site_j[rank]),
            *(float(self.columns[name][rank]) for name in ('dist', 'D', 'D_prime', 'r2', 'chi2', 'r_pearson')),
            int(self.n_ind[rank]),
            PairFlag(int(self.flags[rank])),
        )

    @property
    def aborted(self) -> bool:
        return not bool(np.all(self.completed))

    def flag_counts(self) -> Dict[str, int]:
        """Number of pairs carrying each diagnostic flag."""
        return {
            flag.name: int(np.sum((self.flags & flag) != 0))
            for flag in PairFlag if flag != PairFlag.NONE
        }

    def to_frame(self, min_r2: float = 0.0, pearson: bool = False,
                 completed_only: bool = True) -> pl.DataFrame:
        """Results as a DataFrame in canonical (site_i, site_j) order.

        Args:
            min_r2: If positive, drop pairs whose r^2 is below it or undefined
            pearson: Include the r_pearson column
            completed_only: Drop slots that were never computed
        """
        data = {
            'site_i': self.site_i,
            'site_j': self.site_j,
            'dist': self.columns['dist'],
        }
        if pearson:
            data['r_pearson'] = self.columns['r_pearson']
        data.update({
            'D': self.columns['D'],
            'D_prime': self.columns['D_prime'],
            'r2': self.columns['r2'],
            'chi2': self.columns['chi2'],
            'n_ind': self.n_ind,
            'flags': self.flags,
        })
        keep = np.ones(len(self), dtype=bool)
        if completed_only:
            keep &= self.completed
        if min_r2 > 0:
            with np.errstate(invalid='ignore'):
                keep &= self.columns['r2'] >= min_r2

        return pl.DataFrame({name: values[keep] for name, values in data.items()})


class PairwiseLD(ParallelProcessor):
    """LD between all site pairs within a maximum distance."""

    @classmethod
    def prepare_tasks(cls, store: GenotypeLikelihoodStore = None,
                      positions: Optional[PositionArray] = None,
                      options: LDOptions = None, **kwargs) -> PairTasks:
        """Enumerate eligible pairs in canonical order."""
        site_i, site_j = enumerate_pairs(store.n_sites, positions, options.max_dist)
        logging.info(f"Enumerated {len(site_i)} site pairs across {store.n_sites} sites")
        return PairTasks(site_i, site_j)

    @classmethod
    def create_shared_data(cls, tasks: PairTasks, **kwargs) -> PairResults:
        return PairResults(tasks.site_i, tasks.site_j)

    @classmethod
    def process_task(cls,
                     task: PairTask,
                     shared_data: PairResults,
                     abort: threading.Event,
                     worker_params: PairContext = None) -> None:
        """Compute one pair and store it in its slot."""
        if abort.is_set():
            return
        shared_data.store(task.rank, compute_pair(task.site_i, task.site_j, worker_params))

    @classmethod
    def supervise(cls, manager: Union[WorkerManager, SerialManager],
                  shared_data: PairResults,
                  tasks: PairTasks, **kwargs) -> PairResults:
        """Run all pair jobs and summarize their diagnostics."""
        results = super().supervise(manager, shared_data, tasks, **kwargs)

        num_completed = int(results.completed.sum())
        logging.info(f"Computed LD for {num_completed} of {len(results)} pairs")
        flagged = {name: count for name, count in results.flag_counts().items() if count > 0}
        if flagged:
            summary = ', '.join(f"{name}: {count}" for name, count in flagged.items())
            logging.warning(f"Flagged pairs ({summary})")

        return results

    @classmethod
    def compute(cls,
                store: GenotypeLikelihoodStore,
                positions: Optional[Union[PositionArray, Sequence[float]]] = None,
                options: Optional[LDOptions] = None,
                abort: Optional[threading.Event] = None) -> PairResults:
        """Compute LD for every eligible pair of sites.

        Args:
            store: Genotype likelihoods
            positions: Site positions; required when options.max_dist >= 0
            options: Estimation options; defaults to LDOptions()
            abort: Optional flag that cancels remaining pairs when set

        Returns:
            PairResults in canonical (site_i, site_j) order
        """
        options = options or LDOptions()
        positions = check_consistent(store, positions)

        # Per-site pre-pass, shared read-only by all pairs
        dosages = None
        if options.call_geno:
            if not store.probs:
                raise ValueError("Genotypes can only be called from genotype probabilities")
            store, dosages = call_genotypes(store, options.call_thresh, options.n_thresh)
        elif options.pearson:
            dosages = expected_genotypes(store)
        if not options.pearson:
            dosages = None

        context = PairContext(
            store=store,
            positions=None if positions is None else positions.positions,
            chromosomes=None if positions is None else positions.chromosomes,
            dosages=dosages,
            options=options,
        )
        return cls.run(
            num_threads=options.n_threads,
            worker_params=context,
            abort=abort,
            store=store,
            positions=positions,
            options=options,
        )


def run_pairwise_ld(*args, **kwargs) -> PairResults:
    """
    Compute pairwise LD from genotype likelihoods.

    Args:
        store (GenotypeLikelihoodStore): Genotype likelihoods
        positions (PositionArray, optional): Site positions
        options (LDOptions, optional): Estimation options
        abort (threading.Event, optional): Cancellation flag

    Returns:
        PairResults: Results in canonical (site_i, site_j) order
    """
    return PairwiseLD.compute(*args, **kwargs)
