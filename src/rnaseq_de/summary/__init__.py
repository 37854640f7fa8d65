"""
Summaries of differential expression results.
"""

from .de_summary import (
    DESummary,
    classify_genes,
    threshold_grid,
    summarize,
    summarize_comparisons
)
from .overlap import OverlapSet, significant_genes, compute_overlaps

__all__ = [
    'DESummary',
    'classify_genes',
    'threshold_grid',
    'summarize',
    'summarize_comparisons',
    'OverlapSet',
    'significant_genes',
    'compute_overlaps'
]
