"""
Shared fixtures: a seeded negative binomial count matrix with known
differentially expressed genes.
"""

import numpy as np
import pandas as pd
import pytest

from rnaseq_de.de_analysis.hypothesis import ComparisonResult, RESULT_COLUMNS

SAMPLES = [f'S{i}' for i in range(1, 9)]
CONDITION = ['control'] * 4 + ['treated'] * 4
BATCH = ['b1', 'b2'] * 4
AGE = [31.0, 45.0, 52.0, 38.0, 60.0, 29.0, 41.0, 55.0]
TRUE_SIZE_FACTORS = np.array([0.8, 1.25, 1.0, 1.1, 0.9, 1.2, 1.0, 0.85])

N_GENES = 300
N_DE = 40
ASYMPT_DISP = 0.02
EXTRA_POIS = 4.0


def simulate_counts(seed: int = 42) -> pd.DataFrame:
    """Negative binomial counts; the first N_DE genes change 4-fold with condition."""
    rng = np.random.default_rng(seed)

    base = np.exp(rng.uniform(np.log(20), np.log(2000), N_GENES))
    base[:N_DE] = rng.uniform(200, 1000, N_DE)

    fold = np.ones(N_GENES)
    fold[:N_DE // 2] = 4.0
    fold[N_DE // 2:N_DE] = 0.25

    treated = np.array([c == 'treated' for c in CONDITION])
    mu = base[:, None] * np.where(treated, fold[:, None], 1.0) * TRUE_SIZE_FACTORS[None, :]

    size = 1.0 / (ASYMPT_DISP + EXTRA_POIS / base)
    counts = rng.negative_binomial(size[:, None], size[:, None] / (size[:, None] + mu))

    genes = (
        [f'up_{i:02d}' for i in range(N_DE // 2)]
        + [f'down_{i:02d}' for i in range(N_DE // 2)]
        + [f'null_{i:03d}' for i in range(N_GENES - N_DE)]
    )
    df = pd.DataFrame(counts, index=genes, columns=SAMPLES)

    df.loc['flat'] = np.round(200 * TRUE_SIZE_FACTORS).astype(int)
    df.loc['strong_up'] = [20, 22, 18, 21, 200, 210, 190, 205]
    df.loc['silent'] = 0
    return df.astype(np.int64)


@pytest.fixture
def counts():
    return simulate_counts()


@pytest.fixture
def metadata():
    return pd.DataFrame(
        {'condition': CONDITION, 'batch': BATCH, 'age': [str(a) for a in AGE]},
        index=pd.Index(SAMPLES, name='sample_id')
    )


@pytest.fixture
def de_genes():
    return [f'up_{i:02d}' for i in range(N_DE // 2)] + [f'down_{i:02d}' for i in range(N_DE // 2)]


def make_result(lfc, padj, name='test', genes=None) -> ComparisonResult:
    """ComparisonResult with given fold changes and adjusted p-values."""
    genes = genes or [f'g{i}' for i in range(len(lfc))]
    table = pd.DataFrame({
        'baseMean': 100.0,
        'log2FoldChange': lfc,
        'lfcSE': 0.1,
        'stat': np.nan,
        'pvalue': padj,
        'padj': padj,
        'status': 'ok'
    }, index=pd.Index(genes))
    return ComparisonResult(name=name, test='wald', table=table[RESULT_COLUMNS])
