"""
Result Summaries
================

Up / Down / NotSignificant labels per gene, signed counts over a grid of
fold-change and significance cutoffs, and a side-by-side table of several
comparisons.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Mapping, Sequence

import pandas as pd

from ..de_analysis.hypothesis import ComparisonResult

logger = logging.getLogger(__name__)

UP = 'Up'
DOWN = 'Down'
NOT_SIGNIFICANT = 'NotSignificant'

DEFAULT_LFC_THRESHOLDS = (0, 1, 2, 3)
DEFAULT_PADJ_THRESHOLDS = (0.05, 0.01, 0.001)


@dataclass(frozen=True)
class DESummary:
    """Labels and threshold-grid counts of one comparison."""
    comparison: str
    alpha: float
    labels: pd.Series
    threshold_counts: pd.DataFrame

    def counts(self) -> Dict[str, int]:
        return {label: int((self.labels == label).sum()) for label in (UP, DOWN, NOT_SIGNIFICANT)}


def classify_genes(result: ComparisonResult, alpha: float = 0.05) -> pd.Series:
    """
    Label every gene of a comparison.

    ``Up`` if padj < alpha and log2 fold change > 0, ``Down`` if padj < alpha
    and log2 fold change <= 0, ``NotSignificant`` otherwise. A missing padj
    or fold change is never significant.
    """
    table = result.table
    significant = (table['padj'] < alpha) & table['log2FoldChange'].notna()
    labels = pd.Series(NOT_SIGNIFICANT, index=table.index, name=result.name)
    labels.loc[significant & (table['log2FoldChange'] > 0)] = UP
    labels.loc[significant & (table['log2FoldChange'] <= 0)] = DOWN
    return labels


def threshold_grid(
    result: ComparisonResult,
    lfc_thresholds: Sequence[float] = DEFAULT_LFC_THRESHOLDS,
    padj_thresholds: Sequence[float] = DEFAULT_PADJ_THRESHOLDS
) -> pd.DataFrame:
    """
    Signed gene counts for every fold-change and padj cutoff.

    Up counts genes with padj < p and lfc > c and is positive; Down counts
    genes with padj < p and lfc < -c and is negative. At c = 0 Down includes
    lfc == 0, the same tie rule as ``classify_genes``.

    Returns
    -------
    pd.DataFrame
        Columns lfc_threshold, padj_threshold, direction, n_genes
    """
    table = result.table
    lfc = table['log2FoldChange']
    rows = []
    for p in padj_thresholds:
        passing = table['padj'] < p
        for c in lfc_thresholds:
            n_up = int((passing & (lfc > c)).sum())
            down = (lfc <= 0) if c == 0 else (lfc < -c)
            n_down = int((passing & down).sum())
            rows.append({'lfc_threshold': c, 'padj_threshold': p, 'direction': UP, 'n_genes': n_up})
            rows.append({'lfc_threshold': c, 'padj_threshold': p, 'direction': DOWN, 'n_genes': -n_down})
    return pd.DataFrame(rows)


def summarize(
    result: ComparisonResult,
    alpha: float = 0.05,
    lfc_thresholds: Sequence[float] = DEFAULT_LFC_THRESHOLDS,
    padj_thresholds: Sequence[float] = DEFAULT_PADJ_THRESHOLDS
) -> DESummary:
    """
    Summarize one comparison.

    Parameters
    ----------
    result : ComparisonResult
        Per-gene statistics
    alpha : float
        Significance threshold for the labels
    lfc_thresholds, padj_thresholds : sequence of float
        Grid for the signed counts

    Returns
    -------
    DESummary
        Labels and threshold-grid counts
    """
    labels = classify_genes(result, alpha)
    summary = DESummary(
        comparison=result.name,
        alpha=alpha,
        labels=labels,
        threshold_counts=threshold_grid(result, lfc_thresholds, padj_thresholds)
    )
    counts = summary.counts()
    logger.info(f"{result.name}: {counts[UP]} up, {counts[DOWN]} down (padj < {alpha})")
    return summary


def summarize_comparisons(
    results: Mapping[str, ComparisonResult],
    alpha: float = 0.05
) -> pd.DataFrame:
    """
    Compare several comparisons side by side.

    Parameters
    ----------
    results : Mapping[str, ComparisonResult]
        Results keyed by comparison name
    alpha : float
        Significance threshold

    Returns
    -------
    pd.DataFrame
        Comparison summary. ``n_significant`` counts padj < alpha, the same
        genes as ``significant_genes``; an LRT without a fold change has
        significant genes that are neither up nor down
    """
    comparison = []

    for name, result in results.items():
        labels = classify_genes(result, alpha)
        comparison.append({
            'comparison': name,
            'test': result.test,
            'n_tested': int(result.table['pvalue'].notna().sum()),
            'n_missing': int(result.table['padj'].isna().sum()),
            'n_significant': int((result.table['padj'] < alpha).sum()),
            'n_up': int((labels == UP).sum()),
            'n_down': int((labels == DOWN).sum())
        })

    return pd.DataFrame(comparison)
