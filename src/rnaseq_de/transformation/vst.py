"""
Variance-Stabilizing Transformation
===================================

Closed-form transform for the parametric dispersion trend
alpha(mu) = a + b / mu, obtained by integrating 1 / sqrt(mu + alpha(mu) mu^2)
(Anders & Huber 2010):

    f(q) = log2((1 + b + 2 a q + 2 sqrt(a q (1 + b + a q))) / (4 a))

When no parametric trend is available the transform falls back to
log2(q + 1). The fallback does not stabilize the variance of low counts and
is recorded in ``VarianceStabilizer.method``.

Relative log expression (RLE) is computed on the transformed values.
"""

import logging
from typing import Optional

import numpy as np
import pandas as pd

from ..de_analysis.dispersion import DispersionModel

logger = logging.getLogger(__name__)

METHOD_PARAMETRIC = 'parametric_vst'
METHOD_LOG = 'log2_pseudocount'


def vst_parametric(normalized, asympt_disp: float, extra_pois: float) -> np.ndarray:
    """Apply the closed-form VST to normalized counts."""
    q = np.asarray(normalized, dtype=float)
    a, b = asympt_disp, extra_pois
    return np.log2(
        (1.0 + b + 2.0 * a * q + 2.0 * np.sqrt(a * q * (1.0 + b + a * q))) / (4.0 * a)
    )


def log_transform(normalized, pseudocount: float = 1.0) -> np.ndarray:
    return np.log2(np.asarray(normalized, dtype=float) + pseudocount)


class VarianceStabilizer:
    """Transform normalized counts to a scale with near-constant variance."""

    def __init__(
        self,
        counts: pd.DataFrame,
        size_factors: pd.Series,
        dispersion: Optional[DispersionModel] = None,
        pseudocount: float = 1.0
    ):
        """
        Parameters
        ----------
        counts : pd.DataFrame
            Raw counts (genes x samples)
        size_factors : pd.Series
            Size factor per sample
        dispersion : DispersionModel, optional
            Fitted dispersions; the parametric trend is used when present
        pseudocount : float
            Added before taking logs in the fallback transform
        """
        self.counts = counts
        self.size_factors = size_factors.loc[counts.columns]
        self.dispersion = dispersion
        self.pseudocount = pseudocount
        self.method = None

    def transform(self) -> pd.DataFrame:
        """
        Transform every gene of the counts matrix.

        Returns
        -------
        pd.DataFrame
            Transformed values (genes x samples)
        """
        normalized = self.counts.divide(self.size_factors, axis=1)

        if self.dispersion is not None and self.dispersion.trend_kind == 'parametric':
            asympt_disp, extra_pois = self.dispersion.trend_coefficients
            values = vst_parametric(normalized.to_numpy(), asympt_disp, extra_pois)
            self.method = METHOD_PARAMETRIC
            logger.info(f"VST with asymptDisp={asympt_disp:.4g}, extraPois={extra_pois:.4g}")
        else:
            values = log_transform(normalized.to_numpy(), self.pseudocount)
            self.method = METHOD_LOG
            logger.warning(
                f"No parametric dispersion trend; using log2(count + {self.pseudocount:g}). "
                "Variance of low-count genes is not stabilized"
            )

        return pd.DataFrame(values, index=self.counts.index, columns=self.counts.columns)


def relative_log_expression(transformed: pd.DataFrame) -> pd.DataFrame:
    """Transformed values minus the per-gene median across samples."""
    return transformed.sub(transformed.median(axis=1), axis=0)


def rle_summary(rle: pd.DataFrame) -> pd.DataFrame:
    """
    Per-sample distribution of RLE values.

    Medians far from zero point at normalization or batch problems; they
    are reported, not raised.

    Returns
    -------
    pd.DataFrame
        median, IQR and quartiles of RLE per sample
    """
    q1 = rle.quantile(0.25)
    q3 = rle.quantile(0.75)
    summary = pd.DataFrame({
        'median': rle.median(),
        'q1': q1,
        'q3': q3,
        'iqr': q3 - q1
    })
    summary.index.name = 'sample'

    worst = summary['median'].abs().max()
    logger.info(f"RLE medians: max |median| = {worst:.3f} across {len(summary)} samples")
    return summary
