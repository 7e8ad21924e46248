"""ngsLD package for linkage disequilibrium from genotype likelihoods."""

from ngsld.calling import call_genotypes, expected_genotypes
from ngsld.em import EMResult, estimate_haplotype_frequencies
from ngsld.io import (
    read_genotype_likelihoods,
    read_pair_results_hdf5,
    read_positions,
    write_pair_results,
    write_pair_results_hdf5,
    write_results,
)
from ngsld.likelihoods import N_GENO, GenotypeLikelihoodStore, PositionArray
from ngsld.pairwise import (
    LDOptions,
    PairFlag,
    PairResult,
    PairResults,
    PairwiseLD,
    enumerate_pairs,
    run_pairwise_ld,
)
from ngsld.statistics import LDStatistics, ld_statistics, pearson_r
from ngsld.threading_template import ParallelProcessor, SerialManager, WorkerManager

__all__ = [
    'N_GENO',
    'GenotypeLikelihoodStore',
    'PositionArray',
    'read_genotype_likelihoods',
    'read_positions',
    'write_pair_results',
    'write_pair_results_hdf5',
    'read_pair_results_hdf5',
    'write_results',
    'EMResult',
    'estimate_haplotype_frequencies',
    'LDStatistics',
    'ld_statistics',
    'pearson_r',
    'call_genotypes',
    'expected_genotypes',
    'ParallelProcessor',
    'SerialManager',
    'WorkerManager',
    'LDOptions',
    'PairFlag',
    'PairResult',
    'PairResults',
    'PairwiseLD',
    'enumerate_pairs',
    'run_pairwise_ld',
]
