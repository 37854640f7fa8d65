"""
Error Types
===========

Fatal errors (input validation, degenerate input, trend fitting, invalid
design) propagate to the caller. ``ConvergenceFailure`` is raised for a single
gene inside the GLM fitter and is absorbed there as a missing result.
"""

from typing import Optional


class DEAnalysisError(Exception):
    """Base class for all analysis errors."""


class InputValidationError(DEAnalysisError, ValueError):
    """Count matrix or sample metadata violate the data model."""


class DegenerateInputError(DEAnalysisError):
    """Too few usable genes or samples to normalize or fit."""


class TrendFitError(DEAnalysisError):
    """The mean-dispersion trend could not be fitted."""


class InvalidDesignError(DEAnalysisError, ValueError):
    """Design formulas are inconsistent with each other or the metadata."""


class ConvergenceFailure(DEAnalysisError):
    """IRLS did not converge for one gene."""

    def __init__(self, message: str, gene: Optional[str] = None, iterations: int = 0):
        super().__init__(message)
        self.gene = gene
        self.iterations = iterations
