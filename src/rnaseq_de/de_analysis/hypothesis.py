"""
Hypothesis Testing
==================

Likelihood-ratio test of the full against the reduced design, Wald tests of
single coefficients or contrasts, and Benjamini-Hochberg correction. Each
test is corrected on its own; p-values are never pooled across tests.
"""

import logging
from dataclasses import dataclass
from typing import Mapping, Optional, Sequence, Union

import numpy as np
import pandas as pd
from scipy import stats
from statsmodels.stats.multitest import multipletests

from .glm import (
    FittedModel,
    STATUS_NOT_CONVERGED,
    STATUS_OK,
    STATUS_REDUCED_NOT_CONVERGED,
    STATUS_SEPARATED
)

logger = logging.getLogger(__name__)

STATUS_ALL_ZERO = 'all_zero'
STATUS_COOKS_OUTLIER = 'cooks_outlier'
STATUS_LOW_COUNT = 'low_count'

RESULT_COLUMNS = ['baseMean', 'log2FoldChange', 'lfcSE', 'stat', 'pvalue', 'padj', 'status']

ContrastLike = Union[str, Sequence[str], Mapping[str, float], np.ndarray]


@dataclass(frozen=True)
class ComparisonResult:
    """
    Per-gene statistics of one test.

    ``table`` is indexed by gene and has the columns of ``RESULT_COLUMNS``.
    Every gene of the input matrix has a row; genes without statistics hold
    NaN and a ``status`` other than ``'ok'``.
    """
    name: str
    test: str
    table: pd.DataFrame

    @property
    def log2_fold_change(self) -> pd.Series:
        return self.table['log2FoldChange']

    @property
    def padj(self) -> pd.Series:
        return self.table['padj']

    def significant(self, alpha: float = 0.05) -> pd.DataFrame:
        """Rows with adjusted p-value strictly below ``alpha``."""
        return self.table[self.table['padj'] < alpha]


def benjamini_hochberg(pvalues) -> np.ndarray:
    """
    Benjamini-Hochberg adjusted p-values over the non-missing entries.

    Missing p-values stay missing and do not count toward the number of tests.
    """
    pvalues = np.asarray(pvalues, dtype=float)
    padj = np.full_like(pvalues, np.nan)
    present = ~np.isnan(pvalues)
    if present.any():
        padj[present] = multipletests(pvalues[present], method='fdr_bh')[1]
    return padj


def _wald_status(fitted: FittedModel) -> np.ndarray:
    """Wald tests only need the full fit, with finite coefficients."""
    return np.where(
        ~fitted.converged.to_numpy(), STATUS_NOT_CONVERGED,
        np.where(fitted.separated.to_numpy(), STATUS_SEPARATED, STATUS_OK)
    )


def _lrt_status(fitted: FittedModel) -> np.ndarray:
    """The LRT needs both deviances; diverging coefficients do not matter."""
    return np.where(
        ~fitted.converged.to_numpy(), STATUS_NOT_CONVERGED,
        np.where(~fitted.converged_reduced.to_numpy(), STATUS_REDUCED_NOT_CONVERGED, STATUS_OK)
    )


def _contrast_estimate(fitted: FittedModel, weights: np.ndarray):
    """log2 estimate and standard error of a contrast; NaN for separated genes."""
    estimate = fitted.coefficients.to_numpy() @ weights
    with np.errstate(invalid='ignore'):
        se = np.sqrt(np.einsum('gij,i,j->g', fitted.covariances, weights, weights))
    separated = fitted.separated.to_numpy()
    estimate[separated] = np.nan
    se[separated] = np.nan
    return estimate / np.log(2), se / np.log(2)


def _finalize(
    table: pd.DataFrame,
    fitted: FittedModel,
    all_genes: Optional[pd.Index],
    excluded_status: Optional[Mapping[str, str]],
    cooks_cutoff: bool,
    min_base_mean: float
) -> pd.DataFrame:
    """Apply outlier and low-count filters, restore dropped genes, then adjust."""
    if cooks_cutoff:
        n_coef = fitted.coefficients.shape[1]
        residual_df = fitted.n_samples - n_coef
        if residual_df > 0:
            cutoff = stats.f.ppf(0.99, n_coef, residual_df)
            flagged = (fitted.cooks_max > cutoff) & table['pvalue'].notna()
            table.loc[flagged, ['stat', 'pvalue']] = np.nan
            table.loc[flagged, 'status'] = STATUS_COOKS_OUTLIER
            if flagged.any():
                logger.info(f"{int(flagged.sum())} genes flagged by Cook's distance (cutoff {cutoff:.2f})")

    if min_base_mean > 0:
        low = (table['baseMean'] < min_base_mean) & table['pvalue'].notna()
        table.loc[low, ['stat', 'pvalue']] = np.nan
        table.loc[low, 'status'] = STATUS_LOW_COUNT

    if all_genes is not None:
        table = table.reindex(all_genes)
        excluded_status = excluded_status or {}
        missing = table['status'].isna()
        table.loc[missing, 'status'] = [
            excluded_status.get(gene, STATUS_ALL_ZERO) for gene in table.index[missing]
        ]
        table.loc[table['status'] == STATUS_ALL_ZERO, 'baseMean'] = 0.0

    table['padj'] = benjamini_hochberg(table['pvalue'])
    return table[RESULT_COLUMNS]


def wald_test(
    fitted: FittedModel,
    contrast: ContrastLike,
    name: Optional[str] = None,
    all_genes: Optional[pd.Index] = None,
    excluded_status: Optional[Mapping[str, str]] = None,
    cooks_cutoff: bool = True,
    min_base_mean: float = 0.0
) -> ComparisonResult:
    """
    Wald test of one coefficient or contrast.

    Parameters
    ----------
    fitted : FittedModel
        Per-gene fits
    contrast : str, sequence, mapping or array
        See ``DesignSpecification.contrast_vector``
    name : str, optional
        Name of the comparison; derived from the contrast when omitted
    all_genes : pd.Index, optional
        Full gene list of the input matrix, so filtered genes keep a row
    excluded_status : mapping, optional
        Status of genes left out of fitting; others missing from the fit
        are all-zero genes
    cooks_cutoff : bool
        Drop p-values of genes with an outlying Cook's distance
    min_base_mean : float
        Drop p-values of genes with a lower mean normalized count

    Returns
    -------
    ComparisonResult
        log2 fold change, standard error, statistic, p-value, adjusted p-value
    """
    weights = fitted.design.contrast_vector(contrast)
    if name is None:
        name = contrast if isinstance(contrast, str) else '_'.join(map(str, contrast))

    lfc, lfc_se = _contrast_estimate(fitted, weights)
    with np.errstate(invalid='ignore'):
        stat = lfc / lfc_se
    pvalue = 2 * stats.norm.sf(np.abs(stat))

    table = pd.DataFrame({
        'baseMean': fitted.dispersion.base_mean.loc[fitted.genes].to_numpy(),
        'log2FoldChange': lfc,
        'lfcSE': lfc_se,
        'stat': stat,
        'pvalue': pvalue,
        'status': _wald_status(fitted)
    }, index=fitted.genes)

    table = _finalize(table, fitted, all_genes, excluded_status, cooks_cutoff, min_base_mean)
    logger.info(f"Wald test '{name}': {int(table['pvalue'].notna().sum())} genes tested")
    return ComparisonResult(name=name, test='wald', table=table)


def likelihood_ratio_test(
    fitted: FittedModel,
    coef: Optional[ContrastLike] = None,
    name: str = 'LRT',
    all_genes: Optional[pd.Index] = None,
    excluded_status: Optional[Mapping[str, str]] = None,
    cooks_cutoff: bool = True,
    min_base_mean: float = 0.0
) -> ComparisonResult:
    """
    Likelihood-ratio test of the full design against the reduced design.

    The statistic is deviance(reduced) - deviance(full), chi-squared with
    p_full - p_reduced degrees of freedom. Only genes converged under both
    designs are tested. With zero degrees of freedom nothing is dropped:
    every tested gene gets statistic 0 and p-value 1.

    Parameters
    ----------
    fitted : FittedModel
        Per-gene fits
    coef : str, sequence, mapping or array, optional
        Coefficient or contrast whose estimate fills ``log2FoldChange``
    name : str
        Name of the comparison
    all_genes, excluded_status, cooks_cutoff, min_base_mean
        As in ``wald_test``

    Returns
    -------
    ComparisonResult
        One p-value per gene for the omnibus question
    """
    df = fitted.df
    status = _lrt_status(fitted)
    testable = status == STATUS_OK

    stat = np.full(len(fitted.genes), np.nan)
    pvalue = np.full(len(fitted.genes), np.nan)

    if df == 0:
        logger.warning("Reduced design equals the full design; LRT has 0 degrees of freedom")
        stat[testable] = 0.0
        pvalue[testable] = 1.0
    else:
        diff = (fitted.deviance_reduced - fitted.deviance_full).to_numpy()
        stat[testable] = np.maximum(diff[testable], 0.0)
        pvalue[testable] = stats.chi2.sf(stat[testable], df)

    if coef is not None:
        lfc, lfc_se = _contrast_estimate(fitted, fitted.design.contrast_vector(coef))
    else:
        lfc = lfc_se = np.full(len(fitted.genes), np.nan)

    table = pd.DataFrame({
        'baseMean': fitted.dispersion.base_mean.loc[fitted.genes].to_numpy(),
        'log2FoldChange': lfc,
        'lfcSE': lfc_se,
        'stat': stat,
        'pvalue': pvalue,
        'status': status
    }, index=fitted.genes)

    table = _finalize(table, fitted, all_genes, excluded_status, cooks_cutoff, min_base_mean)
    logger.info(f"LRT '{name}' ({df} df): {int(table['pvalue'].notna().sum())} genes tested")
    return ComparisonResult(name=name, test='lrt', table=table)
