"""
Sample-Level Diagnostics
========================

PCA of the transformed matrix and Spearman correlation of each covariate
with the leading components. Purely descriptive: nothing here feeds back
into model fitting.
"""

import logging
import warnings
from typing import Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from scipy import stats
from sklearn.decomposition import PCA

from ..config import CovariateSpec

logger = logging.getLogger(__name__)


def encode_covariates(metadata: pd.DataFrame, schema: Sequence[CovariateSpec]) -> pd.DataFrame:
    """
    Numeric surrogate of every covariate in the schema.

    Categorical covariates map to the position of their level in the
    declared order (reference level = 0); numeric covariates are used as-is.
    """
    encoded = pd.DataFrame(index=metadata.index)
    for spec in schema:
        values = metadata[spec.name]
        if spec.kind == 'categorical':
            codes = {level: i for i, level in enumerate(spec.levels)}
            encoded[spec.name] = values.astype(str).map(codes).astype(float)
        else:
            encoded[spec.name] = values.astype(float)
    return encoded


class SampleDiagnostics:
    """PCA and covariate correlation on a transformed matrix."""

    def __init__(
        self,
        transformed: pd.DataFrame,
        metadata: pd.DataFrame,
        schema: Sequence[CovariateSpec]
    ):
        """
        Parameters
        ----------
        transformed : pd.DataFrame
            Variance-stabilized values (genes x samples)
        metadata : pd.DataFrame
            Sample metadata indexed by sample id
        schema : sequence of CovariateSpec
            Covariates to correlate with the components
        """
        self.transformed = transformed
        self.metadata = metadata.loc[transformed.columns]
        self.schema = list(schema)
        self.scores: Optional[pd.DataFrame] = None
        self.percent_variance: Optional[pd.Series] = None

    def pca(self, n_top_genes: Optional[int] = None) -> Tuple[pd.DataFrame, pd.Series]:
        """
        Perform PCA on the transformed data.

        Genes are centered but not scaled. All components are kept, so the
        percent variance of component i is s_i^2 / sum(s^2) * 100.

        Parameters
        ----------
        n_top_genes : int, optional
            Restrict to the genes with the highest variance across samples

        Returns
        -------
        Tuple[pd.DataFrame, pd.Series]
            Sample coordinates (PC1..PCk) and percent variance per component
        """
        data = self.transformed
        if n_top_genes is not None and n_top_genes < len(data):
            top = data.var(axis=1).nlargest(n_top_genes).index
            data = data.loc[top]

        # Transpose: samples as rows, genes as columns
        X = data.T.to_numpy(dtype=float)

        pca = PCA(n_components=min(X.shape))
        scores = pca.fit_transform(X)

        columns = [f'PC{i+1}' for i in range(scores.shape[1])]
        self.scores = pd.DataFrame(scores, index=data.columns, columns=columns)
        self.percent_variance = pd.Series(
            pca.explained_variance_ratio_ * 100, index=columns, name='percent_variance'
        )

        logger.info(f"PCA on {data.shape[0]} genes: variance explained "
                    f"{self.percent_variance.iloc[:3].round(1).tolist()}")
        return self.scores, self.percent_variance

    def covariate_correlation(self, n_components: int = 8) -> pd.DataFrame:
        """
        Spearman correlation of every covariate with the first components.

        Covariates that are constant across samples give NaN.

        Parameters
        ----------
        n_components : int
            Number of leading components K

        Returns
        -------
        pd.DataFrame
            Covariate x component correlation matrix
        """
        if self.scores is None:
            self.pca()

        components = self.scores.iloc[:, :n_components]
        encoded = encode_covariates(self.metadata, self.schema)

        corr = pd.DataFrame(np.nan, index=encoded.columns, columns=components.columns)
        for covariate in encoded.columns:
            x = encoded[covariate].to_numpy()
            if np.unique(x).size < 2:
                logger.warning(f"Covariate '{covariate}' is constant; correlations are undefined")
                continue
            for pc in components.columns:
                y = components[pc].to_numpy()
                if np.unique(y).size < 2:
                    continue
                with warnings.catch_warnings():
                    warnings.simplefilter('ignore')
                    rho, _ = stats.spearmanr(x, y)
                corr.loc[covariate, pc] = rho

        return corr
