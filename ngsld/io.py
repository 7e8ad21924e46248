"""
Input/output operations for genotype likelihoods, positions and pairwise LD results.
"""

import gzip
from pathlib import Path
from typing import List, Optional, Sequence, Union

import h5py
import numpy as np
import polars as pl
from filelock import FileLock

from .likelihoods import N_GENO, GenotypeLikelihoodStore, PositionArray

MISSING_VALUE = 'NA'
FLOAT_PRECISION = 6
RESULTS_COMPRESSION_TYPE = 'lzf'
HDF5_SUFFIXES = ('.h5', '.hdf5')

# Output column names, in output order
OUTPUT_COLUMNS = {
    'site_i': 'site1',
    'site_j': 'site2',
    'dist': 'dist',
    'r_pearson': 'r_pearson',
    'D': 'D',
    'D_prime': 'Dp',
    'r2': 'r2',
    'chi2': 'chi2',
    'n_ind': 'n_ind',
    'flags': 'flags',
}


def _read_table(filepath: Union[str, Path], **kwargs) -> pl.DataFrame:
    """Read a headerless tab-separated file, decompressing .gz files first."""
    filepath = Path(filepath)
    if not filepath.exists():
        raise FileNotFoundError(f"File not found: {filepath}")

    source: Union[Path, bytes] = filepath
    if filepath.suffix == '.gz':
        with gzip.open(filepath, 'rb') as f:
            source = f.read()
        if not source:
            return pl.DataFrame()
    elif filepath.stat().st_size == 0:
        return pl.DataFrame()

    df = pl.read_csv(source, separator='\t', has_header=False, **kwargs)

    # Trailing tabs produce empty columns
    return df.select([col.name for col in df if col.null_count() < df.height])


def read_genotype_likelihoods(filepath: Union[str, Path],
                              n_ind: Optional[int] = None,
                              n_sites: Optional[int] = None,
                              probs: bool = False,
                              log_scale: bool = False,
                              binary: bool = False) -> GenotypeLikelihoodStore:
    """
    Load genotype likelihoods or probabilities into a store.

    Text input has one row per site and n_ind * 3 tab-separated values per
    row (genotypes 0, 1, 2 for each individual in turn), optionally gzipped.
    ANGSD beagle files must have their header line and first three columns
    removed. Binary input is raw float64 in the same order.

    Args:
        filepath: Path to the genotype file
        n_ind: Number of individuals; inferred from text input if None
        n_sites: Number of sites; inferred from text input if None
        probs: Values are genotype probabilities
        log_scale: Values are natural-log scaled
        binary: Read raw float64 values instead of text

    Returns:
        GenotypeLikelihoodStore

    Raises:
        FileNotFoundError: If the file does not exist
        ValueError: If the file does not match n_ind and n_sites or holds
            non-numeric values
    """
    filepath = Path(filepath)
    if binary:
        if not filepath.exists():
            raise FileNotFoundError(f"File not found: {filepath}")
        if n_ind is None and n_sites is None:
            raise ValueError("Binary genotype input requires n_ind or n_sites")
        values = np.fromfile(filepath, dtype=np.float64)
        if n_ind is None:
            n_ind = values.size // (n_sites * N_GENO) if n_sites else 0
        if n_sites is None:
            n_sites = values.size // (n_ind * N_GENO) if n_ind else 0
        if values.size != n_ind * n_sites * N_GENO:
            raise ValueError(
                f"Binary file {filepath} has {values.size} values, expected "
                f"{n_ind} individuals x {n_sites} sites x {N_GENO} genotypes"
            )
        values = values.reshape(n_sites, n_ind, N_GENO)
    else:
        df = _read_table(filepath, null_values=MISSING_VALUE)
        try:
            values = df.select(pl.all().cast(pl.Float64)).to_numpy()
        except pl.exceptions.PolarsError as e:
            raise ValueError(f"Non-numeric genotype likelihoods in {filepath}: {e}") from e

        if values.ndim != 2 or values.size == 0:
            raise ValueError(f"No genotype likelihoods found in {filepath}")
        if n_sites is not None and values.shape[0] != n_sites:
            raise ValueError(f"{filepath} has {values.shape[0]} sites, expected {n_sites}")
        if values.shape[1] % N_GENO != 0:
            raise ValueError(
                f"{filepath} has {values.shape[1]} columns, not a multiple of {N_GENO}; "
                "remove any marker/allele columns and header first"
            )
        if n_ind is not None and values.shape[1] != n_ind * N_GENO:
            raise ValueError(
                f"{filepath} has {values.shape[1] // N_GENO} individuals, expected {n_ind}"
            )
        if np.any(np.isnan(values)):
            site, col = np.argwhere(np.isnan(values))[0]
            raise ValueError(
                f"Missing value in {filepath} for individual {col // N_GENO}, site {site}"
            )

    return GenotypeLikelihoodStore(values, probs=probs, log_scale=log_scale)


def read_positions(filepath: Union[str, Path], n_sites: Optional[int] = None) -> PositionArray:
    """
    Load site positions.

    The file is tab-separated with one site per line: either a single
    position column, or chromosome and position columns (further columns
    are ignored). A header line is detected and skipped.

    Args:
        filepath: Path to the position file
        n_sites: Expected number of sites

    Returns:
        PositionArray with "chrom:pos" site labels
    """
    df = _read_table(filepath, infer_schema_length=0)
    if df.width == 0:
        raise ValueError(f"No positions found in {filepath}")

    pos_col = df.columns[0] if df.width == 1 else df.columns[1]
    if df.height > 0 and df[pos_col].cast(pl.Float64, strict=False)[0] is None:
        df = df.slice(1)

    positions = df[pos_col].cast(pl.Float64, strict=False)
    if positions.null_count() > 0:
        row = int(positions.is_null().arg_max())
        raise ValueError(f"Non-numeric position in {filepath}: {df[pos_col][row]!r}")
    positions = positions.to_numpy()
    if np.all(positions == np.round(positions)):
        positions = positions.astype(np.int64)

    if n_sites is not None and len(positions) != n_sites:
        raise ValueError(f"{filepath} has {len(positions)} positions, expected {n_sites}")

    chromosomes = None if df.width == 1 else df[df.columns[0]].to_list()
    return PositionArray(positions, chromosomes=chromosomes)


def _format_results(frame: pl.DataFrame, labels: Optional[Sequence[str]] = None) -> pl.DataFrame:
    """Rename columns for output and replace site indices by labels."""
    if labels is not None:
        labels = np.asarray(labels, dtype=object)
        frame = frame.with_columns(
            pl.Series('site_i', labels[frame['site_i'].to_numpy()].tolist(), dtype=pl.String),
            pl.Series('site_j', labels[frame['site_j'].to_numpy()].tolist(), dtype=pl.String),
        )

    float_cols = [name for name, dtype in frame.schema.items() if dtype == pl.Float64]
    frame = frame.with_columns(pl.col(float_cols).fill_nan(None))

    # Integral distances are written as integers; undefined ones stay null
    dist = frame['dist'].drop_nulls().to_numpy()
    if np.all(np.isfinite(dist)) and np.all(dist == np.round(dist)):
        frame = frame.with_columns(pl.col('dist').cast(pl.Int64))

    columns = [name for name in OUTPUT_COLUMNS if name in frame.columns]
    return frame.select(columns).rename({name: OUTPUT_COLUMNS[name] for name in columns})


def write_pair_results(frame: pl.DataFrame,
                       filepath: Union[str, Path],
                       labels: Optional[Sequence[str]] = None) -> None:
    """
    Write pairwise LD results as a tab-separated table.

    Undefined statistics are written as NA. Files ending in .gz are
    gzip-compressed.

    Args:
        frame: Results from PairResults.to_frame()
        filepath: Output path
        labels: Optional site labels written instead of site indices
    """
    out = _format_results(frame, labels)
    text = out.write_csv(None, separator='\t', null_value=MISSING_VALUE,
                         float_precision=FLOAT_PRECISION)
    filepath = Path(filepath)
    if filepath.suffix == '.gz':
        with gzip.open(filepath, 'wt') as f:
            f.write(text)
    else:
        with open(filepath, 'w') as f:
            f.write(text)


def write_pair_results_hdf5(frame: pl.DataFrame,
                            filepath: Union[str, Path],
                            name: str,
                            labels: Optional[Sequence[str]] = None) -> None:
    """
    Append pairwise LD results to an HDF5 file as group 'runs/<name>'.

    Several runs (e.g. one per chromosome) may write to the same file
    concurrently; access is serialized with a lock file.

    Args:
        frame: Results from PairResults.to_frame()
        filepath: HDF5 file path
        name: Group name for this run
        labels: Optional site labels stored alongside the results

    Raises:
        ValueError: If the group already exists
    """
    filepath = str(filepath)
    lock = FileLock(filepath + ".lock")
    with lock:
        with h5py.File(filepath, 'a') as f:
            runs_group = f.require_group('runs')
            if name in runs_group:
                raise ValueError(f"The group 'runs/{name}' already exists.")
            group = runs_group.create_group(name)
            for column in frame.columns:
                group.create_dataset(column,
                                     data=frame[column].to_numpy(),
                                     compression=RESULTS_COMPRESSION_TYPE,
                                     )
            if labels is not None:
                group.create_dataset('labels',
                                     data=np.asarray(labels, dtype=object),
                                     compression=RESULTS_COMPRESSION_TYPE,
                                     dtype=h5py.special_dtype(vlen=str),
                                     )
            group.attrs['columns'] = list(frame.columns)


def read_pair_results_hdf5(filepath: Union[str, Path], name: str) -> pl.DataFrame:
    """Read one run written by write_pair_results_hdf5."""
    with h5py.File(filepath, 'r') as f:
        group = f['runs'][name]
        columns: List[str] = [str(c) for c in group.attrs['columns']]
        return pl.DataFrame({column: group[column][:] for column in columns})


def write_results(frame: pl.DataFrame,
                  filepath: Union[str, Path],
                  labels: Optional[Sequence[str]] = None,
                  name: str = 'ld') -> None:
    """Write results as HDF5 if the path ends in .h5/.hdf5, as text otherwise."""
    if str(filepath).endswith(HDF5_SUFFIXES):
        write_pair_results_hdf5(frame, filepath, name, labels)
    else:
        write_pair_results(frame, filepath, labels)
