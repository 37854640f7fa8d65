"""
Preprocessing module for RNA-seq counts.
"""

from .data_loader import (
    load_counts,
    load_metadata,
    validate_count_matrix,
    align_samples,
    infer_covariate_schema,
    apply_covariate_schema
)
from .normalization import (
    SizeFactorNormalizer,
    drop_all_zero,
    filter_low_counts,
    library_size_summary
)

__all__ = [
    'load_counts',
    'load_metadata',
    'validate_count_matrix',
    'align_samples',
    'infer_covariate_schema',
    'apply_covariate_schema',
    'SizeFactorNormalizer',
    'drop_all_zero',
    'filter_low_counts',
    'library_size_summary'
]
