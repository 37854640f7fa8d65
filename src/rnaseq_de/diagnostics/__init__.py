"""
Sample diagnostics: PCA and covariate correlation.
"""

from .pca import SampleDiagnostics, encode_covariates

__all__ = ['SampleDiagnostics', 'encode_covariates']
