"""
RNA-seq Normalization
=====================

This module implements:
1. Median-of-ratios size factors (Anders & Huber 2010)
2. CPM (Counts Per Million) for QC
3. Low-count gene filtering and library size summaries

Size factors are scale-free: multiplying the whole matrix by a constant
leaves them unchanged.
"""

import pandas as pd
import numpy as np
from typing import Tuple
import logging

from ..exceptions import DegenerateInputError

logger = logging.getLogger(__name__)

# Size factors this far from 1 (either direction, log2 scale) are reported
OUTLIER_LOG2_SIZE_FACTOR = 2.0


class SizeFactorNormalizer:
    """Median-of-ratios normalization of a counts matrix."""

    def __init__(self, counts_df: pd.DataFrame):
        """
        Initialize normalizer with counts DataFrame.

        Parameters
        ----------
        counts_df : pd.DataFrame
            Raw counts matrix (genes x samples), all-zero genes removed
        """
        self.counts_df = counts_df
        self.size_factors = None

    def fit(self) -> pd.Series:
        """
        Estimate one size factor per sample.

        For every gene with a strictly positive count in all samples, take
        the geometric mean across samples; a sample's size factor is the
        median over those genes of count / geometric mean.

        Returns
        -------
        pd.Series
            Size factors indexed by sample

        Raises
        ------
        DegenerateInputError
            If fewer than two genes are positive in every sample
        """
        values = self.counts_df.to_numpy(dtype=float)
        usable = (values > 0).all(axis=1)
        n_usable = int(usable.sum())

        if n_usable < 2:
            raise DegenerateInputError(
                f"Only {n_usable} gene(s) have positive counts in all "
                f"{values.shape[1]} samples; at least 2 are needed for size factors"
            )

        log_counts = np.log(values[usable])
        log_geo_means = log_counts.mean(axis=1)
        size_factors = np.exp(np.median(log_counts - log_geo_means[:, np.newaxis], axis=0))

        self.size_factors = pd.Series(size_factors, index=self.counts_df.columns, name='size_factor')

        logger.info(
            f"Size factors from {n_usable} genes: "
            f"min={size_factors.min():.3f}, max={size_factors.max():.3f}"
        )
        outliers = self.size_factors[np.abs(np.log2(self.size_factors)) > OUTLIER_LOG2_SIZE_FACTOR]
        if len(outliers):
            logger.warning(f"Samples with extreme size factors (possible technical outliers): "
                           f"{outliers.round(3).to_dict()}")

        return self.size_factors

    def normalized_counts(self) -> pd.DataFrame:
        """Counts divided by the sample size factors."""
        if self.size_factors is None:
            self.fit()
        return self.counts_df.divide(self.size_factors, axis=1)

    def cpm(self, log: bool = False, prior_count: float = 2) -> pd.DataFrame:
        """
        Calculate Counts Per Million (CPM).

        Parameters
        ----------
        log : bool
            If True, return log2(CPM + prior_count)
        prior_count : float
            Prior count added before log transformation

        Returns
        -------
        pd.DataFrame
            CPM normalized counts
        """
        lib_sizes = self.counts_df.sum(axis=0)
        cpm_df = self.counts_df * 1e6 / lib_sizes

        if log:
            cpm_df = np.log2(cpm_df + prior_count)

        return cpm_df


def drop_all_zero(counts_df: pd.DataFrame) -> Tuple[pd.DataFrame, pd.Index]:
    """Split off genes with no reads in any sample; returns (kept, dropped ids)."""
    nonzero = counts_df.sum(axis=1) > 0
    dropped = counts_df.index[~nonzero]
    if len(dropped):
        logger.info(f"Excluding {len(dropped)} all-zero genes from fitting")
    return counts_df.loc[nonzero], dropped


def filter_low_counts(
    counts_df: pd.DataFrame,
    min_counts: int = 10,
    min_samples: int = 3
) -> pd.Series:
    """Boolean mask of genes with at least ``min_counts`` reads in ``min_samples`` samples."""
    keep = (counts_df >= min_counts).sum(axis=1) >= min_samples
    logger.info(f"Low-count filter: {counts_df.shape[0]} -> {int(keep.sum())} genes")
    return keep


def library_size_summary(counts_df: pd.DataFrame, size_factors: pd.Series = None) -> pd.DataFrame:
    """
    Library size statistics per sample.

    Parameters
    ----------
    counts_df : pd.DataFrame
        Raw counts matrix
    size_factors : pd.Series, optional
        Size factors to report alongside

    Returns
    -------
    pd.DataFrame
        Library size statistics
    """
    stats_df = pd.DataFrame({
        'sample_id': counts_df.columns,
        'total_counts': counts_df.sum(axis=0).values,
        'detected_genes': (counts_df > 0).sum(axis=0).values,
        'mean_count': counts_df.mean(axis=0).values,
        'median_count': counts_df.median(axis=0).values
    })

    if size_factors is not None:
        stats_df['size_factor'] = size_factors.loc[counts_df.columns].values

    return stats_df
