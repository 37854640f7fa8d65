"""Tests for PCA and covariate correlation."""

import numpy as np
import pandas as pd
import pytest

from rnaseq_de.config import CovariateSpec
from rnaseq_de.diagnostics.pca import SampleDiagnostics, encode_covariates
from rnaseq_de.preprocessing.data_loader import apply_covariate_schema

SAMPLES = ['A1', 'A2', 'A3', 'B1', 'B2', 'B3']
SCHEMA = [
    CovariateSpec(name='condition', levels=['control', 'treated']),
    CovariateSpec(name='site', levels=['north']),
    CovariateSpec(name='rin', kind='numeric'),
]


@pytest.fixture
def sample_metadata():
    raw = pd.DataFrame({
        'condition': ['control'] * 3 + ['treated'] * 3,
        'site': ['north'] * 6,
        'rin': ['7.1', '8.4', '6.9', '9.0', '7.7', '8.1'],
    }, index=SAMPLES)
    return apply_covariate_schema(raw, SCHEMA)


@pytest.fixture
def transformed():
    rng = np.random.default_rng(11)
    values = rng.normal(8.0, 0.1, size=(50, 6))
    values[:10, 3:] += 3.0
    return pd.DataFrame(values, index=[f'g{i}' for i in range(50)], columns=SAMPLES)


def test_encoding_uses_declared_level_order(sample_metadata):
    encoded = encode_covariates(sample_metadata, SCHEMA)
    assert encoded['condition'].tolist() == [0, 0, 0, 1, 1, 1]
    assert encoded['site'].tolist() == [0] * 6
    assert encoded['rin'].tolist() == [7.1, 8.4, 6.9, 9.0, 7.7, 8.1]


def test_percent_variance_matches_singular_values(transformed, sample_metadata):
    scores, percent = SampleDiagnostics(transformed, sample_metadata, SCHEMA).pca()

    centered = transformed.T.to_numpy() - transformed.T.to_numpy().mean(axis=0)
    s = np.linalg.svd(centered, compute_uv=False)
    expected = s ** 2 / np.sum(s ** 2) * 100

    np.testing.assert_allclose(percent.to_numpy(), expected[:len(percent)], atol=1e-8)
    assert percent.sum() == pytest.approx(100.0)
    assert list(scores.index) == SAMPLES
    assert scores.columns[0] == 'PC1'


def test_first_component_separates_groups(transformed, sample_metadata):
    diagnostics = SampleDiagnostics(transformed, sample_metadata, SCHEMA)
    scores, percent = diagnostics.pca()
    assert percent['PC1'] > 50
    pc1 = scores['PC1']
    assert np.sign(pc1[:3]).nunique() == 1
    assert np.sign(pc1[:3].iloc[0]) != np.sign(pc1[3:].iloc[0])


def test_covariate_correlation(transformed, sample_metadata):
    corr = SampleDiagnostics(transformed, sample_metadata, SCHEMA).covariate_correlation(n_components=3)
    assert corr.shape == (3, 3)
    assert list(corr.index) == ['condition', 'site', 'rin']
    assert abs(corr.loc['condition', 'PC1']) > 0.85
    assert corr.loc['site'].isna().all()
    assert corr.loc['rin'].notna().all()


def test_top_gene_selection(transformed, sample_metadata):
    diagnostics = SampleDiagnostics(transformed, sample_metadata, SCHEMA)
    _, percent_all = diagnostics.pca()
    _, percent_top = diagnostics.pca(n_top_genes=10)
    # The ten shifted genes carry the group signal almost alone
    assert percent_top['PC1'] > percent_all['PC1']
