"""
Differential Expression Analysis
================================

Negative binomial GLM analysis of a raw counts matrix:
1. Size factors (median of ratios)
2. Dispersion estimation with trend fitting and empirical-Bayes shrinkage
3. Per-gene GLM fits under the full and reduced designs
4. Likelihood-ratio and Wald tests with Benjamini-Hochberg correction

Input and design are validated when the analysis is created, before any
fitting starts.
"""

import pandas as pd
from typing import Dict, Optional, Sequence, Union
import logging

from ..config import AnalysisConfig, CovariateSpec
from ..diagnostics.pca import SampleDiagnostics
from ..preprocessing.data_loader import (
    validate_count_matrix,
    align_samples,
    infer_covariate_schema,
    apply_covariate_schema
)
from ..preprocessing.normalization import SizeFactorNormalizer, drop_all_zero, filter_low_counts
from ..transformation.vst import VarianceStabilizer
from .design import DesignSpecification, formula_covariates
from .dispersion import DispersionEstimator, DispersionModel
from .glm import FittedModel, ModelFitter
from .hypothesis import (
    ComparisonResult,
    ContrastLike,
    STATUS_LOW_COUNT,
    likelihood_ratio_test,
    wald_test
)

logger = logging.getLogger(__name__)


class DEAnalysis:
    """Differential Expression Analysis."""

    def __init__(
        self,
        counts: pd.DataFrame,
        metadata: pd.DataFrame,
        full_design: Optional[str] = None,
        reduced_design: Optional[str] = None,
        covariates: Optional[Sequence[CovariateSpec]] = None,
        config: Optional[AnalysisConfig] = None
    ):
        """
        Initialize DE analysis.

        Parameters
        ----------
        counts : pd.DataFrame
            Count matrix (genes x samples)
        metadata : pd.DataFrame
            Sample metadata indexed by sample id
        full_design, reduced_design : str, optional
            patsy formulas; taken from ``config.design`` when omitted
        covariates : sequence of CovariateSpec, optional
            Covariate schema; taken from ``config.design`` or inferred once
        config : AnalysisConfig, optional
            Numerical settings

        Raises
        ------
        InputValidationError
            If counts and metadata violate the data model
        InvalidDesignError
            If the designs or covariates are inconsistent
        """
        self.config = config or AnalysisConfig()
        full_design = full_design or self.config.design.full
        reduced_design = reduced_design or self.config.design.reduced

        self.counts = validate_count_matrix(counts)
        metadata = align_samples(self.counts, metadata)

        schema = covariates or self.config.design.covariates
        if schema is None:
            schema = infer_covariate_schema(metadata, formula_covariates(full_design, reduced_design))
        self.schema = list(schema)
        self.metadata = apply_covariate_schema(metadata, self.schema)

        self.design = DesignSpecification.from_formulas(full_design, reduced_design, self.metadata)

        self.size_factors: Optional[pd.Series] = None
        self.dispersion: Optional[DispersionModel] = None
        self.fitted: Optional[FittedModel] = None
        self.fit_counts: Optional[pd.DataFrame] = None
        self.excluded_status: Dict[str, str] = {}
        self.stabilizer: Optional[VarianceStabilizer] = None

        logger.info(f"Initialized DE analysis with {self.counts.shape[0]} genes x "
                    f"{self.counts.shape[1]} samples")

    def estimate_size_factors(self) -> pd.Series:
        """Median-of-ratios size factors over the genes with any reads; computed once."""
        if self.size_factors is None:
            nonzero, _ = drop_all_zero(self.counts)
            self.size_factors = SizeFactorNormalizer(nonzero).fit()
        return self.size_factors

    def run(self) -> FittedModel:
        """
        Normalize, estimate dispersions and fit every gene.

        Returns
        -------
        FittedModel
            Per-gene fits shared by all downstream tests and transforms
        """
        nonzero, _ = drop_all_zero(self.counts)
        self.estimate_size_factors()

        prep = self.config.preprocessing
        fit_counts = nonzero
        if prep.min_counts_per_gene > 0 and prep.min_samples_per_gene > 0:
            keep = filter_low_counts(nonzero, prep.min_counts_per_gene, prep.min_samples_per_gene)
            self.excluded_status = {gene: STATUS_LOW_COUNT for gene in nonzero.index[~keep]}
            fit_counts = nonzero.loc[keep]
        self.fit_counts = fit_counts

        disp_cfg = self.config.dispersion
        self.dispersion = DispersionEstimator(
            fit_counts,
            self.size_factors,
            self.design.full_matrix,
            min_disp=disp_cfg.min_disp,
            min_genes_for_trend=disp_cfg.min_genes_for_trend,
            outlier_sd=disp_cfg.outlier_sd,
            allow_trend_fallback=disp_cfg.allow_trend_fallback
        ).fit()

        irls = self.config.irls
        self.fitted = ModelFitter(
            fit_counts,
            self.size_factors,
            self.dispersion,
            self.design,
            tol=irls.tol,
            max_iter=irls.max_iter,
            n_jobs=irls.n_jobs,
            chunk_size=irls.chunk_size
        ).fit()

        return self.fitted

    def _require_fit(self) -> FittedModel:
        if self.fitted is None:
            self.run()
        return self.fitted

    def results(self, contrast: ContrastLike, name: Optional[str] = None) -> ComparisonResult:
        """
        Wald test results for one coefficient or contrast.

        Parameters
        ----------
        contrast : str, sequence, mapping or array
            Coefficient name, (factor, numerator, denominator) triple,
            coefficient weights or a weight vector
        name : str, optional
            Name of the comparison

        Returns
        -------
        ComparisonResult
            One row per input gene
        """
        fitted = self._require_fit()
        result = wald_test(
            fitted, contrast, name=name,
            all_genes=self.counts.index,
            excluded_status=self.excluded_status,
            cooks_cutoff=self.config.testing.cooks_cutoff,
            min_base_mean=self.config.testing.min_base_mean
        )
        alpha = self.config.testing.alpha
        logger.info(f"{result.name}: {int((result.padj < alpha).sum())} significant genes (padj < {alpha})")
        return result

    def lrt_results(self, coef: Optional[ContrastLike] = None, name: str = 'LRT') -> ComparisonResult:
        """Likelihood-ratio test of the full against the reduced design."""
        fitted = self._require_fit()
        result = likelihood_ratio_test(
            fitted, coef=coef, name=name,
            all_genes=self.counts.index,
            excluded_status=self.excluded_status,
            cooks_cutoff=self.config.testing.cooks_cutoff,
            min_base_mean=self.config.testing.min_base_mean
        )
        alpha = self.config.testing.alpha
        logger.info(f"{name}: {int((result.padj < alpha).sum())} significant genes (padj < {alpha})")
        return result

    def run_comparisons(self, include_lrt: bool = True) -> Dict[str, ComparisonResult]:
        """
        Run every comparison named in the configuration.

        Returns
        -------
        Dict[str, ComparisonResult]
            Results keyed by comparison name
        """
        results = {}
        if include_lrt and self.design.df_difference > 0:
            dropped = self.design.dropped_coefficients
            # One dropped coefficient gives the LRT genes a direction
            coef = dropped[0] if len(dropped) == 1 else None
            results['LRT'] = self.lrt_results(coef=coef)
        for spec in self.config.comparisons:
            target = spec.coef if spec.coef is not None else spec.contrast
            results[spec.name] = self.results(target, name=spec.name)
        return results

    def normalized_counts(self) -> pd.DataFrame:
        """Counts of the fitted genes divided by the size factors."""
        self._require_fit()
        return self.fit_counts.divide(self.size_factors, axis=1)

    def vst(self) -> pd.DataFrame:
        """
        Variance-stabilized values of every input gene.

        Uses the fitted dispersion trend; falls back to log2(count + 1) when
        the trend is not parametric.
        """
        self._require_fit()
        self.stabilizer = VarianceStabilizer(self.counts, self.size_factors, self.dispersion)
        return self.stabilizer.transform()

    def diagnostics(self, transformed: Optional[pd.DataFrame] = None) -> SampleDiagnostics:
        """PCA and covariate correlation on the transformed matrix."""
        if transformed is None:
            transformed = self.vst()
        return SampleDiagnostics(transformed, self.metadata, self.schema)


def get_top_genes(
    de_results: Union[ComparisonResult, pd.DataFrame],
    n_top: int = 50,
    by: str = 'padj'
) -> pd.DataFrame:
    """Get top differentially expressed genes."""
    table = de_results.table if isinstance(de_results, ComparisonResult) else de_results
    return table.dropna(subset=[by]).nsmallest(n_top, by)


def filter_significant(
    de_results: Union[ComparisonResult, pd.DataFrame],
    padj_threshold: float = 0.05,
    log2fc_threshold: float = 1.0
) -> pd.DataFrame:
    """Filter for significant genes based on padj and log2FC."""
    table = de_results.table if isinstance(de_results, ComparisonResult) else de_results

    mask = (
        (table['padj'] < padj_threshold) &
        (table['log2FoldChange'].abs() > log2fc_threshold)
    )

    return table[mask]
