"""Tests for gene classification, threshold grids and overlaps."""

import numpy as np
import pandas as pd
import pytest

from conftest import make_result
from rnaseq_de.summary.de_summary import (
    DOWN,
    NOT_SIGNIFICANT,
    UP,
    classify_genes,
    summarize,
    summarize_comparisons,
    threshold_grid
)
from rnaseq_de.summary.overlap import compute_overlaps, significant_genes


class TestClassification:

    def test_labels(self):
        result = make_result(
            lfc=[2.0, -1.5, 0.0, 3.0, 1.0, np.nan],
            padj=[0.01, 0.001, 0.02, 0.2, np.nan, 0.01]
        )
        labels = classify_genes(result, alpha=0.05)
        assert labels.tolist() == [UP, DOWN, DOWN, NOT_SIGNIFICANT, NOT_SIGNIFICANT, NOT_SIGNIFICANT]

    def test_threshold_is_strict(self):
        result = make_result(lfc=[1.0, -1.0], padj=[0.05, 0.05])
        assert (classify_genes(result, alpha=0.05) == NOT_SIGNIFICANT).all()

    def test_reclassification_is_idempotent(self):
        rng = np.random.default_rng(5)
        result = make_result(lfc=rng.normal(0, 2, 200), padj=rng.uniform(0, 0.2, 200))
        first = summarize(result, alpha=0.05)
        second = summarize(result, alpha=0.05)
        pd.testing.assert_series_equal(first.labels, second.labels)
        pd.testing.assert_series_equal(classify_genes(result, 0.05), first.labels)

    def test_summary_counts_cover_all_genes(self):
        result = make_result(lfc=[2.0, -2.0, 0.5], padj=[0.01, 0.01, 0.5])
        summary = summarize(result)
        assert summary.counts() == {UP: 1, DOWN: 1, NOT_SIGNIFICANT: 1}
        assert summary.comparison == 'test'


class TestThresholdGrid:

    def test_signed_counts(self):
        result = make_result(
            lfc=[3.5, 1.5, 0.5, 0.0, -0.5, -2.5, 4.0],
            padj=[0.001, 0.02, 0.0001, 0.0001, 0.04, 0.0005, 0.5]
        )
        grid = threshold_grid(result, lfc_thresholds=[0, 1, 2, 3], padj_thresholds=[0.05, 0.01])
        grid = grid.set_index(['padj_threshold', 'lfc_threshold', 'direction'])['n_genes']

        assert grid[(0.05, 0, UP)] == 3
        assert grid[(0.05, 0, DOWN)] == -3
        assert grid[(0.05, 1, UP)] == 2
        assert grid[(0.05, 1, DOWN)] == -1
        assert grid[(0.05, 3, UP)] == 1
        assert grid[(0.05, 3, DOWN)] == 0
        assert grid[(0.01, 0, UP)] == 2
        assert grid[(0.01, 0, DOWN)] == -2

    def test_grid_shape_and_signs(self):
        rng = np.random.default_rng(9)
        result = make_result(lfc=rng.normal(0, 2, 100), padj=rng.uniform(0, 0.1, 100))
        grid = threshold_grid(result)
        assert len(grid) == 4 * 3 * 2
        assert (grid.loc[grid['direction'] == UP, 'n_genes'] >= 0).all()
        assert (grid.loc[grid['direction'] == DOWN, 'n_genes'] <= 0).all()

    def test_zero_cutoff_matches_labels(self):
        rng = np.random.default_rng(13)
        result = make_result(lfc=np.round(rng.normal(0, 1, 100), 1), padj=rng.uniform(0, 0.1, 100))
        labels = classify_genes(result, 0.05)
        grid = threshold_grid(result, lfc_thresholds=[0], padj_thresholds=[0.05])
        counts = dict(zip(grid['direction'], grid['n_genes']))
        assert counts[UP] == (labels == UP).sum()
        assert counts[DOWN] == -(labels == DOWN).sum()


class TestComparisons:

    def test_summarize_comparisons(self):
        results = {
            'a': make_result(lfc=[1.0, -1.0, 2.0], padj=[0.01, 0.01, np.nan], name='a'),
            'b': make_result(lfc=[1.0, 1.0, 1.0], padj=[0.5, 0.01, 0.01], name='b'),
        }
        table = summarize_comparisons(results).set_index('comparison')
        assert table.loc['a', 'n_up'] == 1
        assert table.loc['a', 'n_down'] == 1
        assert table.loc['a', 'n_missing'] == 1
        assert table.loc['b', 'n_significant'] == 2

    def test_significant_counts_match_overlap_sets(self):
        omnibus = make_result(lfc=[np.nan] * 4, padj=[0.01, 0.02, 0.3, np.nan], name='LRT')
        wald = make_result(lfc=[1.0, -2.0, 0.5, 1.0], padj=[0.01, 0.5, 0.01, 0.04], name='wald')
        results = {'LRT': omnibus, 'wald': wald}

        table = summarize_comparisons(results).set_index('comparison')
        overlaps = compute_overlaps(results)
        for name in results:
            assert table.loc[name, 'n_significant'] == len(overlaps.sets[name])
        assert table.loc['LRT', 'n_up'] + table.loc['LRT', 'n_down'] == 0


class TestOverlaps:

    def test_self_overlap_is_the_set(self):
        result = make_result(lfc=[1.0, -1.0, 2.0, 0.5], padj=[0.01, 0.02, 0.3, 0.04], name='A')
        overlaps = compute_overlaps({'A': result, 'A_again': result})
        assert overlaps.overlap('A', 'A') == significant_genes(result)
        assert overlaps.overlap('A', 'A_again') == frozenset({'g0', 'g1', 'g3'})
        assert overlaps.intersection == frozenset({'g0', 'g1', 'g3'})

    def test_disjoint_sets_have_empty_overlap(self):
        a = make_result(lfc=[1.0, 1.0], padj=[0.01, 0.01], genes=['x1', 'x2'])
        b = make_result(lfc=[1.0, 1.0], padj=[0.01, 0.01], genes=['y1', 'y2'])
        overlaps = compute_overlaps({'a': a, 'b': b})
        assert overlaps.overlap('a', 'b') == frozenset()
        assert overlaps.overlap('b', 'a') == frozenset()
        assert overlaps.intersection == frozenset()

    def test_sizes_and_membership(self):
        overlaps = compute_overlaps({
            'a': {'g1', 'g2', 'g3'},
            'b': {'g2', 'g3', 'g4'},
            'c': {'g3', 'g5'},
        })
        sizes = overlaps.pairwise_sizes()
        assert sizes.loc['a', 'a'] == 3
        assert sizes.loc['a', 'b'] == sizes.loc['b', 'a'] == 2
        assert sizes.loc['b', 'c'] == 1
        assert overlaps.intersection == frozenset({'g3'})

        membership = overlaps.membership()
        assert membership.index.tolist() == ['g1', 'g2', 'g3', 'g4', 'g5']
        assert membership.loc['g3'].all()
        assert membership.loc['g5'].tolist() == [False, False, True]

    def test_missing_padj_never_significant(self):
        result = make_result(lfc=[1.0, 1.0], padj=[np.nan, 0.001])
        assert significant_genes(result) == frozenset({'g1'})
