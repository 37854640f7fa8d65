"""
Differential Expression Analysis module.
"""

from .design import DesignSpecification, formula_covariates
from .dispersion import DispersionEstimator, DispersionModel
from .glm import FittedModel, ModelFitter, fit_nb_glm
from .hypothesis import (
    ComparisonResult,
    benjamini_hochberg,
    likelihood_ratio_test,
    wald_test
)
from .differential_expression import (
    DEAnalysis,
    get_top_genes,
    filter_significant
)

__all__ = [
    'DesignSpecification',
    'formula_covariates',
    'DispersionEstimator',
    'DispersionModel',
    'FittedModel',
    'ModelFitter',
    'fit_nb_glm',
    'ComparisonResult',
    'benjamini_hochberg',
    'likelihood_ratio_test',
    'wald_test',
    'DEAnalysis',
    'get_top_genes',
    'filter_significant'
]
