"""
Dispersion Estimation
=====================

Negative binomial dispersion in three steps:
1. Gene-wise method-of-moments estimates from normalized counts
2. A parametric mean-dispersion trend, alpha(mu) = asympt_disp + extra_pois / mu,
   fitted with a gamma-family GLM while iteratively dropping outlying genes
3. Empirical-Bayes shrinkage of each gene-wise estimate toward the trend

Based on Love, Huber & Anders (2014) - Moderated estimation of fold change
and dispersion for RNA-seq data with DESeq2.
"""

import logging
import warnings
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np
import pandas as pd
import statsmodels.api as sm
from scipy import stats
from scipy.special import polygamma

from ..exceptions import TrendFitError

logger = logging.getLogger(__name__)

# Genes whose fitted/observed ratio leaves this band are dropped from the trend fit
TREND_RATIO_BOUNDS = (1e-4, 15.0)
TREND_MAX_ITER = 10
MIN_PRIOR_VARIANCE = 0.25


@dataclass(frozen=True)
class DispersionModel:
    """
    Fitted dispersions for one counts matrix and design.

    Attributes
    ----------
    base_mean : pd.Series
        Mean of normalized counts per gene
    gene_wise : pd.Series
        Raw method-of-moments estimates
    trend : pd.Series
        Trend value at each gene's base mean
    final : pd.Series
        Shrunk estimates used for model fitting
    outlier : pd.Series
        Genes kept at their raw estimate because it lies far above the trend
    trend_coefficients : Tuple[float, float] or None
        (asympt_disp, extra_pois) of the parametric trend
    trend_kind : str
        'parametric' or 'mean'
    prior_variance, sampling_variance : float
        Variances used for the shrinkage weights (log scale)
    """
    base_mean: pd.Series
    gene_wise: pd.Series
    trend: pd.Series
    final: pd.Series
    outlier: pd.Series
    trend_coefficients: Optional[Tuple[float, float]]
    trend_kind: str
    prior_variance: float
    sampling_variance: float

    def trend_function(self, mean) -> np.ndarray:
        """Evaluate the fitted trend at arbitrary mean normalized counts."""
        mean = np.asarray(mean, dtype=float)
        if self.trend_kind == 'parametric':
            asympt_disp, extra_pois = self.trend_coefficients
            return asympt_disp + extra_pois / mean
        return np.full_like(mean, float(self.trend.iloc[0]))

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame({
            'baseMean': self.base_mean,
            'dispGeneEst': self.gene_wise,
            'dispFit': self.trend,
            'dispersion': self.final,
            'dispOutlier': self.outlier
        })


def moments_dispersion(
    normalized: np.ndarray,
    size_factors: np.ndarray,
    design: np.ndarray,
    min_disp: float = 1e-8
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Method-of-moments dispersion for every gene at once.

    The variance is taken from residuals of a least-squares fit of the
    design, so differences between groups are not counted as dispersion.

    Parameters
    ----------
    normalized : np.ndarray
        Normalized counts (genes x samples)
    size_factors : np.ndarray
        Size factor per sample
    design : np.ndarray
        Full design matrix (samples x coefficients)
    min_disp : float
        Lower bound of the estimates

    Returns
    -------
    Tuple[np.ndarray, np.ndarray]
        Base means and dispersion estimates
    """
    n_samples, n_coef = design.shape
    hat = design @ np.linalg.pinv(design)
    resid = normalized - normalized @ hat.T
    resid_var = (resid ** 2).sum(axis=1) / (n_samples - n_coef)

    base_mean = normalized.mean(axis=1)
    poisson_part = base_mean * np.mean(1.0 / size_factors)

    with np.errstate(divide='ignore', invalid='ignore'):
        disp = (resid_var - poisson_part) / base_mean ** 2

    max_disp = max(10.0, float(n_samples))
    disp = np.clip(np.nan_to_num(disp, nan=min_disp), min_disp, max_disp)
    return base_mean, disp


def fit_parametric_trend(
    base_mean: np.ndarray,
    disp: np.ndarray,
    min_disp: float = 1e-8,
    min_genes: int = 10
) -> Tuple[float, float]:
    """
    Fit alpha(mu) = asympt_disp + extra_pois / mu.

    Gamma-family GLM with identity link on 1/mu; genes whose ratio of
    estimate to fit leaves ``TREND_RATIO_BOUNDS`` are dropped and the fit is
    repeated until the coefficients settle.

    Raises
    ------
    TrendFitError
        If too few genes are eligible, the GLM fails, or a coefficient is
        not positive
    """
    eligible = (disp >= 100 * min_disp) & (base_mean > 0)
    n_eligible = int(eligible.sum())
    if n_eligible < min_genes:
        raise TrendFitError(
            f"Only {n_eligible} genes have dispersion above the floor; "
            f"{min_genes} are needed to fit the trend"
        )

    use = eligible.copy()
    coefs = np.array([0.1, 1.0])
    for iteration in range(1, TREND_MAX_ITER + 1):
        if use.sum() < min_genes:
            raise TrendFitError(f"Only {int(use.sum())} genes left after outlier removal")

        X = np.column_stack([np.ones(use.sum()), 1.0 / base_mean[use]])
        try:
            with warnings.catch_warnings():
                warnings.simplefilter('ignore')
                fit = sm.GLM(
                    disp[use], X,
                    family=sm.families.Gamma(link=sm.families.links.Identity())
                ).fit()
        except (ValueError, np.linalg.LinAlgError) as e:
            raise TrendFitError(f"Gamma GLM for the dispersion trend failed: {e}") from e

        new_coefs = np.asarray(fit.params, dtype=float)
        if not np.all(np.isfinite(new_coefs)) or np.any(new_coefs <= 0):
            raise TrendFitError(
                f"Dispersion trend coefficients are not all positive: {new_coefs.round(6).tolist()}"
            )

        fitted = new_coefs[0] + new_coefs[1] / base_mean
        ratio = disp / fitted
        use = eligible & (ratio > TREND_RATIO_BOUNDS[0]) & (ratio < TREND_RATIO_BOUNDS[1])

        converged = np.sum(np.log(new_coefs / coefs) ** 2) < 1e-6
        coefs = new_coefs
        if converged:
            break
    else:
        logger.warning(f"Dispersion trend did not settle in {TREND_MAX_ITER} iterations")

    logger.info(
        f"Dispersion trend: asymptDisp={coefs[0]:.4g}, extraPois={coefs[1]:.4g} "
        f"({int(use.sum())} genes, {iteration} iterations)"
    )
    return float(coefs[0]), float(coefs[1])


def mean_trend(disp: np.ndarray, min_disp: float = 1e-8) -> float:
    """Trimmed mean of informative gene-wise dispersions, used when no curve fits."""
    informative = disp[disp >= 100 * min_disp]
    if len(informative) == 0:
        informative = disp
    return float(stats.trim_mean(informative, proportiontocut=0.001))


def shrink_dispersions(
    disp: np.ndarray,
    trend: np.ndarray,
    residual_df: int,
    min_disp: float = 1e-8,
    max_disp: float = 10.0,
    outlier_sd: float = 2.0
) -> Tuple[np.ndarray, np.ndarray, float, float]:
    """
    Precision-weighted average of log gene-wise estimate and log trend.

    The weight of the gene-wise estimate is the inverse of its sampling
    variance, trigamma(residual_df / 2); the weight of the trend is the
    inverse of the prior variance, estimated robustly from the spread of
    log residuals around the trend. Estimates more than ``outlier_sd``
    residual SDs above the trend are kept as-is; estimates at the Poisson
    floor carry no information and take the trend value.

    Returns
    -------
    Tuple[np.ndarray, np.ndarray, float, float]
        Final dispersions, outlier mask, prior variance, sampling variance
    """
    informative = disp >= 100 * min_disp
    log_disp = np.log(disp)
    log_trend = np.log(trend)

    sampling_var = float(polygamma(1, residual_df / 2.0))
    resid = (log_disp - log_trend)[informative]

    if len(resid) >= 2:
        resid_var = float(stats.median_abs_deviation(resid, scale='normal') ** 2)
        prior_var = max(resid_var - sampling_var, MIN_PRIOR_VARIANCE)
        outlier = informative & (log_disp > log_trend + outlier_sd * np.sqrt(resid_var))
    else:
        prior_var = MIN_PRIOR_VARIANCE
        outlier = np.zeros_like(informative)

    w_gene = 1.0 / sampling_var
    w_prior = 1.0 / prior_var
    log_final = (w_gene * log_disp + w_prior * log_trend) / (w_gene + w_prior)
    log_final = np.where(informative, log_final, log_trend)

    final = np.where(outlier, disp, np.exp(log_final))
    final = np.clip(final, min_disp, max_disp)
    return final, outlier, prior_var, sampling_var


class DispersionEstimator:
    """Estimate, trend-fit and shrink per-gene dispersions."""

    def __init__(
        self,
        counts: pd.DataFrame,
        size_factors: pd.Series,
        design: pd.DataFrame,
        min_disp: float = 1e-8,
        min_genes_for_trend: int = 10,
        outlier_sd: float = 2.0,
        allow_trend_fallback: bool = False
    ):
        """
        Parameters
        ----------
        counts : pd.DataFrame
            Raw counts (genes x samples), all-zero genes removed
        size_factors : pd.Series
            Size factor per sample
        design : pd.DataFrame
            Full design matrix (samples x coefficients)
        min_disp : float
            Floor for all dispersion estimates
        min_genes_for_trend : int
            Minimum number of informative genes for the trend fit
        outlier_sd : float
            Residual SDs above the trend beyond which a gene is not shrunk
        allow_trend_fallback : bool
            Use a constant (trimmed mean) trend when the curve cannot be fitted
        """
        self.counts = counts
        self.size_factors = size_factors.loc[counts.columns]
        self.design = design.loc[counts.columns]
        self.min_disp = min_disp
        self.min_genes_for_trend = min_genes_for_trend
        self.outlier_sd = outlier_sd
        self.allow_trend_fallback = allow_trend_fallback

    def fit(self) -> DispersionModel:
        """Run all three steps and return the dispersion model."""
        sf = self.size_factors.to_numpy(dtype=float)
        X = self.design.to_numpy(dtype=float)
        normalized = self.counts.to_numpy(dtype=float) / sf

        base_mean, gene_wise = moments_dispersion(normalized, sf, X, self.min_disp)
        logger.info(f"Gene-wise dispersions for {len(gene_wise)} genes "
                    f"(median {np.median(gene_wise):.4g})")

        try:
            coefs = fit_parametric_trend(base_mean, gene_wise, self.min_disp, self.min_genes_for_trend)
            trend = coefs[0] + coefs[1] / base_mean
            trend_kind = 'parametric'
        except TrendFitError as e:
            if not self.allow_trend_fallback:
                raise
            coefs = None
            trend = np.full_like(gene_wise, mean_trend(gene_wise, self.min_disp))
            trend_kind = 'mean'
            logger.warning(f"Parametric dispersion trend failed ({e}); "
                           f"using constant trend {trend[0]:.4g}")

        n_samples, n_coef = X.shape
        final, outlier, prior_var, sampling_var = shrink_dispersions(
            gene_wise, trend,
            residual_df=n_samples - n_coef,
            min_disp=self.min_disp,
            max_disp=max(10.0, float(n_samples)),
            outlier_sd=self.outlier_sd
        )
        logger.info(f"Shrunk dispersions: prior variance {prior_var:.3f}, "
                    f"sampling variance {sampling_var:.3f}, {int(outlier.sum())} outliers kept raw")

        index = self.counts.index
        return DispersionModel(
            base_mean=pd.Series(base_mean, index=index, name='baseMean'),
            gene_wise=pd.Series(gene_wise, index=index, name='dispGeneEst'),
            trend=pd.Series(trend, index=index, name='dispFit'),
            final=pd.Series(final, index=index, name='dispersion'),
            outlier=pd.Series(outlier.astype(bool), index=index, name='dispOutlier'),
            trend_coefficients=coefs,
            trend_kind=trend_kind,
            prior_variance=prior_var,
            sampling_variance=sampling_var
        )
