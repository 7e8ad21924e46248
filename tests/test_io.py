"""Tests for reading inputs and writing pairwise LD results."""

import gzip

import h5py
import numpy as np
import polars as pl
import pytest

from ngsld import LDOptions, PairwiseLD, PositionArray
from ngsld.io import (
    read_genotype_likelihoods,
    read_pair_results_hdf5,
    read_positions,
    write_pair_results,
    write_pair_results_hdf5,
    write_results,
)


@pytest.fixture
def genotype_values():
    """Three sites by two individuals, flat rows."""
    return np.array([
        [0.9, 0.05, 0.05, 0.1, 0.8, 0.1],
        [0.2, 0.3, 0.5, 0.0, 0.0, 1.0],
        [0.6, 0.3, 0.1, 0.25, 0.25, 0.5],
    ])


def _write_tsv(path, values):
    text = '\n'.join('\t'.join(str(v) for v in row) for row in values) + '\n'
    if str(path).endswith('.gz'):
        with gzip.open(path, 'wt') as f:
            f.write(text)
    else:
        path.write_text(text)


@pytest.mark.parametrize("filename", ["geno.tsv", "geno.tsv.gz"])
def test_read_text(tmp_path, genotype_values, filename):
    path = tmp_path / filename
    _write_tsv(path, genotype_values)

    store = read_genotype_likelihoods(path, probs=True)
    assert store.shape == (3, 2, 3)
    assert np.allclose(store.likelihoods(1, 0), [0.1, 0.8, 0.1])
    assert np.allclose(store.likelihoods(1, 1), [0.0, 0.0, 1.0])


def test_read_text_checks_dimensions(tmp_path, genotype_values):
    path = tmp_path / "geno.tsv"
    _write_tsv(path, genotype_values)

    assert read_genotype_likelihoods(path, n_ind=2, n_sites=3).n_ind == 2
    with pytest.raises(ValueError, match="expected 4"):
        read_genotype_likelihoods(path, n_sites=4)
    with pytest.raises(ValueError, match="expected 3"):
        read_genotype_likelihoods(path, n_ind=3)


def test_read_text_with_marker_columns(tmp_path, genotype_values):
    """Beagle marker columns left in place give a clear error."""
    path = tmp_path / "geno.tsv"
    rows = [[f"1_{k}", 'A', 'G'] + list(row) for k, row in enumerate(genotype_values)]
    _write_tsv(path, rows)
    with pytest.raises(ValueError):
        read_genotype_likelihoods(path)


def test_read_text_trailing_tab(tmp_path, genotype_values):
    path = tmp_path / "geno.tsv"
    text = '\n'.join('\t'.join(str(v) for v in row) + '\t' for row in genotype_values) + '\n'
    path.write_text(text)
    assert read_genotype_likelihoods(path).n_ind == 2


def test_read_text_missing_value(tmp_path, genotype_values):
    path = tmp_path / "geno.tsv"
    rows = genotype_values.tolist()
    rows[2][4] = 'NA'
    _write_tsv(path, rows)
    with pytest.raises(ValueError, match="individual 1, site 2"):
        read_genotype_likelihoods(path)


def test_read_log_scale(tmp_path, genotype_values):
    path = tmp_path / "geno.tsv"
    linear = genotype_values + 0.1
    _write_tsv(path, np.log(linear))
    store = read_genotype_likelihoods(path, probs=True, log_scale=True)
    expected = linear.reshape(3, 2, 3) / linear.reshape(3, 2, 3).sum(axis=2, keepdims=True)
    assert np.allclose(store.values, expected)


def test_read_binary(tmp_path, genotype_values):
    path = tmp_path / "geno.bin"
    genotype_values.astype(np.float64).tofile(path)

    store = read_genotype_likelihoods(path, n_ind=2, binary=True)
    assert store.shape == (3, 2, 3)
    assert np.array_equal(store.values.reshape(3, 6), genotype_values)
    assert read_genotype_likelihoods(path, n_sites=3, binary=True).n_ind == 2

    with pytest.raises(ValueError, match="expected"):
        read_genotype_likelihoods(path, n_ind=4, binary=True)
    with pytest.raises(ValueError, match="requires"):
        read_genotype_likelihoods(path, binary=True)


def test_read_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        read_genotype_likelihoods(tmp_path / "missing.tsv")
    with pytest.raises(FileNotFoundError):
        read_genotype_likelihoods(tmp_path / "missing.bin", n_ind=2, binary=True)


def test_read_positions(tmp_path):
    path = tmp_path / "sites.pos"
    path.write_text("chr\tpos\n1\t100\n1\t250\n2\t50\n")
    positions = read_positions(path, n_sites=3)

    assert positions.positions.tolist() == [100, 250, 50]
    assert positions.labels == ['1:100', '1:250', '2:50']
    assert positions.chromosome_runs() == [(0, 2), (2, 3)]

    with pytest.raises(ValueError, match="expected 4"):
        read_positions(path, n_sites=4)


def test_read_positions_single_column(tmp_path):
    path = tmp_path / "sites.pos"
    path.write_text("10\n20\n30\n")
    positions = read_positions(path)
    assert positions.chromosomes is None
    assert positions.labels == ['10', '20', '30']


def test_read_positions_errors(tmp_path):
    path = tmp_path / "sites.pos"
    path.write_text("1\t100\n1\tfoo\n")
    with pytest.raises(ValueError, match="Non-numeric position"):
        read_positions(path)

    path.write_text("1\t100\n1\t50\n")
    with pytest.raises(ValueError, match="non-decreasing"):
        read_positions(path)


def _compute(store, positions=None, **options):
    return PairwiseLD.compute(store, positions, LDOptions(**options))


def test_write_text(tmp_path, small_store, small_positions):
    results = _compute(small_store, small_positions, max_dist=300)
    path = tmp_path / "out.ld"
    write_pair_results(results.to_frame(), path, labels=small_positions.labels)

    lines = path.read_text().splitlines()
    assert lines[0].split('\t') == ['site1', 'site2', 'dist', 'D', 'Dp', 'r2', 'chi2', 'n_ind', 'flags']
    assert lines[1].split('\t')[:3] == ['1:100', '1:150', '50']
    assert len(lines) == 7


def test_write_missing_values(tmp_path, make_store):
    """Undefined statistics are written as NA."""
    genotypes = np.vstack([np.zeros(10, dtype=int), np.arange(10) % 3])
    results = _compute(make_store(genotypes), pearson=True)
    path = tmp_path / "out.ld.gz"
    write_pair_results(results.to_frame(pearson=True), path)

    with gzip.open(path, 'rt') as f:
        text = f.read()
    header, row = text.splitlines()
    fields = dict(zip(header.split('\t'), row.split('\t')))
    assert fields['site1'] == '0'
    assert fields['dist'] == 'NA'
    assert fields['Dp'] == 'NA'
    assert fields['r2'] == 'NA'
    assert fields['r_pearson'] == 'NA'
    assert fields['flags'] == '2'

    frame = pl.read_csv(text.encode(), separator='\t', null_values='NA')
    assert frame['r2'].null_count() == 1


def test_hdf5_round_trip(tmp_path, small_store, small_positions):
    results = _compute(small_store, small_positions, max_dist=300)
    frame = results.to_frame()
    path = tmp_path / "out.h5"

    write_results(frame, path, labels=small_positions.labels, name='chr1')
    write_results(frame, path, name='chr1_again')

    restored = read_pair_results_hdf5(path, 'chr1')
    assert restored.columns == frame.columns
    assert np.array_equal(restored['site_j'].to_numpy(), frame['site_j'].to_numpy())
    assert np.allclose(restored['r2'].to_numpy(), frame['r2'].to_numpy(), equal_nan=True)

    with h5py.File(path, 'r') as f:
        assert set(f['runs'].keys()) == {'chr1', 'chr1_again'}
        labels = [label.decode() if isinstance(label, bytes) else label
                  for label in f['runs/chr1/labels'][:]]
        assert labels == small_positions.labels
        assert 'labels' not in f['runs/chr1_again']


def test_hdf5_duplicate_group(tmp_path, small_store):
    frame = _compute(small_store).to_frame()
    path = tmp_path / "out.hdf5"
    write_pair_results_hdf5(frame, path, 'run')
    with pytest.raises(ValueError, match="already exists"):
        write_pair_results_hdf5(frame, path, 'run')


def test_positions_labels_in_output(tmp_path, small_store):
    positions = PositionArray(np.arange(8) * 10, labels=[f"snp{k}" for k in range(8)])
    results = _compute(small_store, positions, max_dist=10)
    path = tmp_path / "out.ld"
    write_results(results.to_frame(), path, labels=positions.labels)

    frame = pl.read_csv(path, separator='\t')
    assert frame['site1'].to_list() == [f"snp{k}" for k in range(7)]
    assert frame['site2'].to_list() == [f"snp{k}" for k in range(1, 8)]
    assert frame['dist'].to_list() == [10] * 7


def test_write_integer_distances_with_missing(tmp_path, small_store, small_positions):
    """Integral distances stay integers next to undefined ones."""
    results = _compute(small_store, small_positions)
    path = tmp_path / "out.ld"
    write_pair_results(results.to_frame(), path, labels=small_positions.labels)

    rows = [line.split('\t') for line in path.read_text().splitlines()[1:]]
    dist = {(row[0], row[1]): row[2] for row in rows}
    assert dist[('1:100', '1:150')] == '50'
    assert dist[('1:100', '2:20')] == 'NA'
