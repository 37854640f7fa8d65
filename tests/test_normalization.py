"""Tests for size factors and count-matrix helpers."""

import numpy as np
import pandas as pd
import pytest

from rnaseq_de.exceptions import DegenerateInputError
from rnaseq_de.preprocessing.normalization import (
    SizeFactorNormalizer,
    drop_all_zero,
    filter_low_counts,
    library_size_summary
)


@pytest.fixture
def balanced_counts():
    """A flat gene plus every rotation of [10, 20, 30, 40]; all column medians are 1."""
    rows = [[100, 100, 100, 100]] + [list(np.roll([10, 20, 30, 40], k)) for k in range(4)]
    return pd.DataFrame(
        rows,
        index=['flat', 'r0', 'r1', 'r2', 'r3'],
        columns=['A1', 'A2', 'B1', 'B2']
    )


def test_size_factors_equal_one_by_construction(balanced_counts):
    sf = SizeFactorNormalizer(balanced_counts).fit()
    assert sf.name == 'size_factor'
    assert list(sf.index) == ['A1', 'A2', 'B1', 'B2']
    np.testing.assert_allclose(sf.to_numpy(), 1.0)


def test_size_factors_are_scale_free(counts):
    nonzero, _ = drop_all_zero(counts)
    sf = SizeFactorNormalizer(nonzero).fit()
    sf_scaled = SizeFactorNormalizer(nonzero * 7).fit()
    np.testing.assert_allclose(sf.to_numpy(), sf_scaled.to_numpy(), rtol=1e-10)


def test_size_factors_positive_and_track_depth(counts):
    from conftest import TRUE_SIZE_FACTORS

    nonzero, _ = drop_all_zero(counts)
    sf = SizeFactorNormalizer(nonzero).fit()
    assert (sf > 0).all()
    # Recovered up to a common scale
    ratio = sf.to_numpy() / TRUE_SIZE_FACTORS
    assert ratio.max() / ratio.min() < 1.15


def test_degenerate_input_raises():
    counts = pd.DataFrame(
        [[5, 6, 7], [0, 3, 4], [2, 0, 1]],
        index=['g1', 'g2', 'g3'],
        columns=['s1', 's2', 's3']
    )
    with pytest.raises(DegenerateInputError):
        SizeFactorNormalizer(counts).fit()


def test_normalized_counts_divide_by_size_factor(balanced_counts):
    doubled = balanced_counts.copy()
    doubled['B2'] = doubled['B2'] * 2
    normalizer = SizeFactorNormalizer(doubled)
    sf = normalizer.fit()
    assert sf['B2'] == pytest.approx(2 * sf['A1'])
    normalized = normalizer.normalized_counts()
    assert normalized.loc['flat', 'B2'] == pytest.approx(normalized.loc['flat', 'A1'])


def test_drop_all_zero(counts):
    kept, dropped = drop_all_zero(counts)
    assert list(dropped) == ['silent']
    assert 'silent' not in kept.index
    assert len(kept) == len(counts) - 1


def test_filter_low_counts():
    counts = pd.DataFrame(
        [[0, 1, 2, 3], [10, 12, 15, 0], [50, 60, 70, 80]],
        index=['low', 'mid', 'high'],
        columns=['s1', 's2', 's3', 's4']
    )
    keep = filter_low_counts(counts, min_counts=10, min_samples=3)
    assert keep.to_dict() == {'low': False, 'mid': True, 'high': True}


def test_cpm_columns_sum_to_million(balanced_counts):
    cpm = SizeFactorNormalizer(balanced_counts).cpm()
    np.testing.assert_allclose(cpm.sum(axis=0).to_numpy(), 1e6)


def test_library_size_summary(balanced_counts):
    sf = SizeFactorNormalizer(balanced_counts).fit()
    summary = library_size_summary(balanced_counts, sf)
    assert summary['total_counts'].tolist() == [200, 200, 200, 200]
    assert 'size_factor' in summary.columns
