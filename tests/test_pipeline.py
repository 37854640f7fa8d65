"""End-to-end pipeline runs on temporary files."""

import json

import pandas as pd
import pytest
import yaml

from rnaseq_de.exceptions import InputValidationError
from rnaseq_de.pipeline import RNAseqPipeline, main


@pytest.fixture
def config_file(tmp_path, counts, metadata):
    data_dir = tmp_path / 'data'
    data_dir.mkdir()
    counts.to_csv(data_dir / 'counts.tsv', sep='\t', index_label='gene_id')
    metadata.reset_index().to_csv(data_dir / 'samples.tsv', sep='\t', index=False)

    config = {
        'project': 'pipeline-test',
        'data': {
            'counts': 'data/counts.tsv',
            'metadata': 'data/samples.tsv',
            'sample_col': 'sample_id',
            'sep': '\t',
            'output_dir': 'results',
        },
        'design': {
            'full': '~ batch + condition',
            'reduced': '~ batch',
            'covariates': [
                {'name': 'condition', 'levels': ['control', 'treated']},
                {'name': 'batch', 'levels': ['b1', 'b2']},
                {'name': 'age', 'kind': 'numeric'},
            ],
        },
        'comparisons': [
            {'name': 'treated_vs_control', 'contrast': ['condition', 'treated', 'control']},
            {'name': 'batch_b2', 'coef': 'batch[T.b2]'},
        ],
        'diagnostics': {'n_components': 4},
    }
    path = tmp_path / 'config.yaml'
    with open(path, 'w') as f:
        yaml.safe_dump(config, f)
    return path


def test_full_pipeline_writes_outputs(config_file, counts):
    pipeline = RNAseqPipeline(str(config_file))
    summaries = pipeline.run_full_pipeline()
    results_dir = config_file.parent / 'results'

    expected = [
        'size_factors.csv', 'library_sizes.csv', 'log_cpm.csv', 'dispersions.csv',
        'de_LRT.csv', 'de_treated_vs_control.csv', 'de_batch_b2.csv',
        'vst_counts.csv', 'rle_summary.csv',
        'pca_coordinates.csv', 'pca_variance.csv', 'covariate_correlation.csv',
        'comparison_summary.csv', 'de_labels.csv', 'threshold_grid.csv',
        'overlap_sizes.csv', 'overlap_membership.csv', 'pipeline_summary.json',
    ]
    for name in expected:
        assert (results_dir / name).exists(), name

    de = pd.read_csv(results_dir / 'de_treated_vs_control.csv', index_col='gene')
    assert len(de) == len(counts)
    assert de.loc['strong_up', 'padj'] < 0.05
    assert de.loc['silent', 'status'] == 'all_zero'

    corr = pd.read_csv(results_dir / 'covariate_correlation.csv', index_col='covariate')
    assert corr.index.tolist() == ['condition', 'batch', 'age']
    assert corr.shape[1] == 4

    assert set(summaries) == {'LRT', 'treated_vs_control', 'batch_b2'}
    assert pipeline.size_factors is pipeline.analysis.size_factors

    comparison = pd.read_csv(results_dir / 'comparison_summary.csv', index_col='comparison')
    for name, genes in pipeline.overlaps.sets.items():
        assert comparison.loc[name, 'n_significant'] == len(genes)
    lrt = pd.read_csv(results_dir / 'de_LRT.csv', index_col='gene')
    assert lrt['log2FoldChange'].notna().any()

    with open(results_dir / 'pipeline_summary.json') as f:
        report = json.load(f)
    assert report['project'] == 'pipeline-test'
    assert report['dispersion']['trend_kind'] == 'parametric'
    assert report['transformation'] == 'parametric_vst'
    assert report['data']['genes'] == len(counts)


def test_single_step_from_cli(config_file):
    main(['--config', str(config_file), '--step', 'de'])
    results_dir = config_file.parent / 'results'
    assert (results_dir / 'de_LRT.csv').exists()
    assert not (results_dir / 'vst_counts.csv').exists()


def test_missing_data_paths_fail_fast(tmp_path):
    path = tmp_path / 'config.yaml'
    path.write_text('project: empty\n')
    pipeline = RNAseqPipeline(str(path))
    with pytest.raises(InputValidationError):
        pipeline.step1_load_data()
