"""Tests for the variance-stabilizing transformation and RLE."""

import numpy as np
import pandas as pd
import pytest

from rnaseq_de.config import AnalysisConfig, CovariateSpec, DispersionConfig
from rnaseq_de.de_analysis.differential_expression import DEAnalysis
from rnaseq_de.transformation.vst import (
    VarianceStabilizer,
    relative_log_expression,
    rle_summary,
    vst_parametric
)

CONDITION_SCHEMA = [CovariateSpec(name='condition', levels=['control', 'treated'])]


def test_vst_is_monotone():
    q = np.linspace(0, 5000, 2001)
    values = vst_parametric(q, asympt_disp=0.05, extra_pois=2.0)
    assert np.all(np.diff(values) > 0)
    assert np.all(np.isfinite(values))


def test_vst_approaches_log2_for_large_counts():
    q = np.array([1e6, 1e7])
    np.testing.assert_allclose(vst_parametric(q, 0.05, 2.0), np.log2(q), atol=1e-3)


def test_vst_stabilizes_variance():
    # Under the trend, log2 variance falls with the mean while the VST stays flat
    rng = np.random.default_rng(3)
    a, b = 0.05, 2.0
    spreads_vst, spreads_log = [], []
    for mu in (5.0, 50.0, 500.0, 5000.0):
        size = 1.0 / (a + b / mu)
        y = rng.negative_binomial(size, size / (size + mu), 20000)
        spreads_vst.append(vst_parametric(y, a, b).std())
        spreads_log.append(np.log2(y + 1.0).std())
    assert max(spreads_vst) / min(spreads_vst) < max(spreads_log) / min(spreads_log)


def test_fallback_is_log2_with_pseudocount():
    counts = pd.DataFrame([[0, 3], [7, 15]], index=['g1', 'g2'], columns=['s1', 's2'])
    sf = pd.Series([1.0, 1.0], index=['s1', 's2'])
    stabilizer = VarianceStabilizer(counts, sf, dispersion=None)
    transformed = stabilizer.transform()
    assert stabilizer.method == 'log2_pseudocount'
    np.testing.assert_allclose(transformed.to_numpy(), np.log2(counts.to_numpy() + 1.0))


def test_analysis_vst_uses_parametric_trend(counts, metadata):
    de = DEAnalysis(counts, metadata, '~ condition', '~ 1', covariates=CONDITION_SCHEMA)
    transformed = de.vst()
    assert de.stabilizer.method == 'parametric_vst'
    assert transformed.shape == counts.shape
    assert transformed.index.equals(counts.index)
    assert transformed.notna().all().all()


def test_analysis_vst_fallback_after_trend_failure(counts, metadata):
    config = AnalysisConfig(dispersion=DispersionConfig(min_genes_for_trend=10_000, allow_trend_fallback=True))
    de = DEAnalysis(counts, metadata, '~ condition', '~ 1', covariates=CONDITION_SCHEMA, config=config)
    de.vst()
    assert de.dispersion.trend_kind == 'mean'
    assert de.stabilizer.method == 'log2_pseudocount'


def test_rle_median_zero_per_gene():
    transformed = pd.DataFrame(
        [[1.0, 2.0, 3.0], [5.0, 5.0, 8.0]],
        index=['g1', 'g2'],
        columns=['s1', 's2', 's3']
    )
    rle = relative_log_expression(transformed)
    np.testing.assert_allclose(rle.median(axis=1), 0.0)
    np.testing.assert_allclose(rle.loc['g2'].to_numpy(), [0.0, 0.0, 3.0])


def test_rle_summary_flags_shifted_sample(counts, metadata):
    de = DEAnalysis(counts, metadata, '~ condition', '~ 1', covariates=CONDITION_SCHEMA)
    rle = relative_log_expression(de.vst())
    summary = rle_summary(rle)
    assert list(summary.columns) == ['median', 'q1', 'q3', 'iqr']
    assert summary['median'].abs().max() < 0.2

    shifted = rle.copy()
    shifted['S1'] += 1.0
    assert rle_summary(shifted).loc['S1', 'median'] == pytest.approx(summary.loc['S1', 'median'] + 1.0)
