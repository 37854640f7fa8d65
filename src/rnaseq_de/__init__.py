"""
rnaseq_de: differential expression analysis of RNA-seq counts.

Median-of-ratios normalization, shrunk negative binomial dispersions,
per-gene GLM fits with likelihood-ratio and Wald tests, variance-stabilized
values for sample diagnostics, and summaries of the significant genes.
"""

__version__ = '0.1.0'

# de_analysis first: transformation depends on its dispersion model
from .de_analysis import (
    DEAnalysis,
    DesignSpecification,
    DispersionEstimator,
    DispersionModel,
    ModelFitter,
    FittedModel,
    ComparisonResult,
    likelihood_ratio_test,
    wald_test,
    benjamini_hochberg
)
from .preprocessing import SizeFactorNormalizer, load_counts, load_metadata
from .transformation import VarianceStabilizer, relative_log_expression, rle_summary
from .diagnostics import SampleDiagnostics
from .summary import DESummary, OverlapSet, classify_genes, summarize, compute_overlaps
from .config import AnalysisConfig, CovariateSpec, load_config
from .exceptions import (
    DEAnalysisError,
    InputValidationError,
    DegenerateInputError,
    TrendFitError,
    InvalidDesignError,
    ConvergenceFailure
)

__all__ = [
    'DEAnalysis',
    'DesignSpecification',
    'DispersionEstimator',
    'DispersionModel',
    'ModelFitter',
    'FittedModel',
    'ComparisonResult',
    'likelihood_ratio_test',
    'wald_test',
    'benjamini_hochberg',
    'SizeFactorNormalizer',
    'load_counts',
    'load_metadata',
    'VarianceStabilizer',
    'relative_log_expression',
    'rle_summary',
    'SampleDiagnostics',
    'DESummary',
    'OverlapSet',
    'classify_genes',
    'summarize',
    'compute_overlaps',
    'AnalysisConfig',
    'CovariateSpec',
    'load_config',
    'DEAnalysisError',
    'InputValidationError',
    'DegenerateInputError',
    'TrendFitError',
    'InvalidDesignError',
    'ConvergenceFailure'
]
