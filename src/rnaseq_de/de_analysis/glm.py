"""
Negative Binomial GLM Fitting
=============================

Per-gene negative binomial GLM with log link, log(size factor) offset and
dispersion fixed to the gene's shrunk estimate, fitted by iteratively
reweighted least squares. Genes are independent once the dispersion model
is fixed, so they are fitted in chunks on a bounded joblib worker pool and
written into pre-allocated arrays indexed by gene position.
"""

import logging
from dataclasses import dataclass
from typing import Dict, List

import numpy as np
import pandas as pd
from joblib import Parallel, delayed
from scipy.special import xlogy

from ..exceptions import ConvergenceFailure
from .design import DesignSpecification
from .dispersion import DispersionModel

logger = logging.getLogger(__name__)

# Small ridge on the weighted normal equations, natural-log scale
RIDGE = 1e-6
MIN_MU = 1e-10
# Fitted normalized mean below which a zero count marks a diverging coefficient
SEPARATION_MU = 1e-4

STATUS_OK = 'ok'
STATUS_NOT_CONVERGED = 'not_converged'
STATUS_REDUCED_NOT_CONVERGED = 'reduced_not_converged'
STATUS_SEPARATED = 'separated'


@dataclass
class NBGLMFit:
    """Result of one IRLS fit."""
    coefficients: np.ndarray
    covariance: np.ndarray
    deviance: float
    iterations: int
    mu: np.ndarray
    hat_diagonal: np.ndarray
    separated: bool = False


def nb_deviance(y: np.ndarray, mu: np.ndarray, alpha: float) -> float:
    """Negative binomial deviance with fixed dispersion."""
    inv_alpha = 1.0 / alpha
    unit = xlogy(y, y / mu) - (y + inv_alpha) * np.log((1.0 + alpha * y) / (1.0 + alpha * mu))
    return float(2.0 * unit.sum())


def fit_nb_glm(
    y: np.ndarray,
    X: np.ndarray,
    log_sf: np.ndarray,
    alpha: float,
    tol: float = 1e-6,
    max_iter: int = 100
) -> NBGLMFit:
    """
    Fit one gene by IRLS.

    Iterates until ||beta_new - beta|| <= tol * (||beta_new|| + tol).

    Parameters
    ----------
    y : np.ndarray
        Raw counts of the gene
    X : np.ndarray
        Design matrix (samples x coefficients)
    log_sf : np.ndarray
        log size factors, used as offset
    alpha : float
        Dispersion
    tol : float
        Relative tolerance on the coefficient change
    max_iter : int
        Maximum number of IRLS iterations

    Returns
    -------
    NBGLMFit
        Coefficients (natural log scale), covariance, deviance. ``separated``
        is set when a group of zero counts pushed its fitted mean to the
        ridge floor; the deviance stays usable but the coefficients and
        their covariance do not

    Raises
    ------
    ConvergenceFailure
        If the tolerance is not reached, values become non-finite or the
        weighted normal equations are singular
    """
    n_coef = X.shape[1]
    ridge = RIDGE * np.eye(n_coef)

    beta = np.linalg.lstsq(X, np.log(y + 0.1) - log_sf, rcond=None)[0]

    for iteration in range(1, max_iter + 1):
        eta = X @ beta + log_sf
        mu = np.maximum(np.exp(eta), MIN_MU)
        w = mu / (1.0 + alpha * mu)
        z = eta - log_sf + (y - mu) / mu

        XtW = X.T * w
        try:
            beta_new = np.linalg.solve(XtW @ X + ridge, XtW @ z)
        except np.linalg.LinAlgError as e:
            raise ConvergenceFailure(f"Singular weighted normal equations: {e}", iterations=iteration) from e

        if not np.all(np.isfinite(beta_new)):
            raise ConvergenceFailure("Non-finite coefficients", iterations=iteration)

        step = np.linalg.norm(beta_new - beta)
        beta = beta_new
        if step <= tol * (np.linalg.norm(beta) + tol):
            break
    else:
        raise ConvergenceFailure(f"No convergence in {max_iter} iterations", iterations=max_iter)

    mu = np.maximum(np.exp(X @ beta + log_sf), MIN_MU)
    w = mu / (1.0 + alpha * mu)
    information = (X.T * w) @ X
    try:
        penalized_inv = np.linalg.inv(information + ridge)
    except np.linalg.LinAlgError as e:
        raise ConvergenceFailure(f"Singular information matrix: {e}", iterations=iteration) from e

    # Sandwich covariance of the ridge estimator
    covariance = penalized_inv @ information @ penalized_inv
    hat_diagonal = w * np.einsum('ij,jk,ik->i', X, penalized_inv, X)

    # A zero-count sample whose normalized mean was driven to the ridge floor
    # means the coefficients diverge instead of converging
    normalized_mu = mu / np.exp(log_sf)
    separated = bool(np.any((y == 0) & (normalized_mu < SEPARATION_MU)))

    return NBGLMFit(
        coefficients=beta,
        covariance=covariance,
        deviance=nb_deviance(y, mu, alpha),
        iterations=iteration,
        mu=mu,
        hat_diagonal=hat_diagonal,
        separated=separated
    )


def cooks_distance(y: np.ndarray, fit: NBGLMFit, alpha: float) -> np.ndarray:
    """Cook's distance per sample for one fitted gene."""
    n_coef = len(fit.coefficients)
    pearson_sq = (y - fit.mu) ** 2 / (fit.mu + alpha * fit.mu ** 2)
    h = np.minimum(fit.hat_diagonal, 1.0 - 1e-8)
    return pearson_sq / n_coef * h / (1.0 - h) ** 2


def _fit_chunk(
    genes: List[str],
    counts: np.ndarray,
    X_full: np.ndarray,
    X_reduced: np.ndarray,
    log_sf: np.ndarray,
    alphas: np.ndarray,
    tol: float,
    max_iter: int
) -> Dict[str, np.ndarray]:
    """Fit full and reduced models for a block of genes; failures stay NaN."""
    n_genes = counts.shape[0]
    n_coef = X_full.shape[1]

    out = {
        'coef': np.full((n_genes, n_coef), np.nan),
        'cov': np.full((n_genes, n_coef, n_coef), np.nan),
        'dev_full': np.full(n_genes, np.nan),
        'dev_reduced': np.full(n_genes, np.nan),
        'converged': np.zeros(n_genes, dtype=bool),
        'converged_reduced': np.zeros(n_genes, dtype=bool),
        'separated': np.zeros(n_genes, dtype=bool),
        'iterations': np.zeros(n_genes, dtype=int),
        'cooks_max': np.full(n_genes, np.nan),
    }

    for i in range(n_genes):
        y = counts[i]
        try:
            fit = fit_nb_glm(y, X_full, log_sf, alphas[i], tol, max_iter)
        except ConvergenceFailure as e:
            logger.debug(f"Gene {genes[i]}: {e}")
            out['iterations'][i] = e.iterations
        else:
            out['coef'][i] = fit.coefficients
            out['cov'][i] = fit.covariance
            out['dev_full'][i] = fit.deviance
            out['converged'][i] = True
            out['separated'][i] = fit.separated
            out['iterations'][i] = fit.iterations
            out['cooks_max'][i] = cooks_distance(y, fit, alphas[i]).max()

        try:
            reduced = fit_nb_glm(y, X_reduced, log_sf, alphas[i], tol, max_iter)
        except ConvergenceFailure as e:
            logger.debug(f"Gene {genes[i]} (reduced design): {e}")
        else:
            out['dev_reduced'][i] = reduced.deviance
            out['converged_reduced'][i] = True

    return out


@dataclass(frozen=True)
class FittedModel:
    """
    Per-gene GLM fits under the full and reduced designs.

    Coefficients and standard errors are on the natural log scale. Rows of
    genes that did not converge hold NaN. Genes flagged in ``separated`` keep
    their deviances but their coefficients are not finite estimates.
    """
    coefficients: pd.DataFrame
    standard_errors: pd.DataFrame
    covariances: np.ndarray
    deviance_full: pd.Series
    deviance_reduced: pd.Series
    df: int
    converged: pd.Series
    converged_reduced: pd.Series
    separated: pd.Series
    iterations: pd.Series
    status: pd.Series
    cooks_max: pd.Series
    size_factors: pd.Series
    dispersion: DispersionModel
    design: DesignSpecification

    @property
    def genes(self) -> pd.Index:
        return self.coefficients.index

    @property
    def n_samples(self) -> int:
        return len(self.size_factors)


class ModelFitter:
    """Fit the negative binomial GLM for every gene."""

    def __init__(
        self,
        counts: pd.DataFrame,
        size_factors: pd.Series,
        dispersion: DispersionModel,
        design: DesignSpecification,
        tol: float = 1e-6,
        max_iter: int = 100,
        n_jobs: int = 1,
        chunk_size: int = 500
    ):
        """
        Parameters
        ----------
        counts : pd.DataFrame
            Raw counts (genes x samples), all-zero genes removed
        size_factors : pd.Series
            Size factor per sample
        dispersion : DispersionModel
            Fitted dispersions; ``final`` is used
        design : DesignSpecification
            Full and reduced designs
        tol, max_iter : float, int
            IRLS stopping rule
        n_jobs : int
            joblib workers for the per-gene fan-out
        chunk_size : int
            Genes per task
        """
        self.counts = counts
        self.size_factors = size_factors.loc[counts.columns]
        self.dispersion = dispersion
        self.design = design
        self.tol = tol
        self.max_iter = max_iter
        self.n_jobs = n_jobs
        self.chunk_size = chunk_size

    def fit(self) -> FittedModel:
        """
        Fit all genes. Non-convergent genes are marked and never abort the batch.

        Returns
        -------
        FittedModel
            Coefficients, standard errors, deviances and convergence flags
        """
        genes = self.counts.index.tolist()
        n_genes = len(genes)
        Y = self.counts.to_numpy(dtype=float)
        log_sf = np.log(self.size_factors.to_numpy(dtype=float))
        alphas = self.dispersion.final.loc[self.counts.index].to_numpy(dtype=float)
        X_full = self.design.full_matrix.loc[self.counts.columns].to_numpy(dtype=float)
        X_reduced = self.design.reduced_matrix.loc[self.counts.columns].to_numpy(dtype=float)
        names = self.design.coefficient_names
        n_coef = len(names)

        logger.info(f"Fitting NB GLM for {n_genes} genes "
                    f"({n_coef} coefficients, n_jobs={self.n_jobs})")

        chunks = [slice(start, min(start + self.chunk_size, n_genes))
                  for start in range(0, n_genes, self.chunk_size)]
        outputs = Parallel(n_jobs=self.n_jobs)(
            delayed(_fit_chunk)(
                genes[s], Y[s], X_full, X_reduced, log_sf, alphas[s], self.tol, self.max_iter
            )
            for s in chunks
        )

        coef = np.full((n_genes, n_coef), np.nan)
        cov = np.full((n_genes, n_coef, n_coef), np.nan)
        dev_full = np.full(n_genes, np.nan)
        dev_reduced = np.full(n_genes, np.nan)
        converged = np.zeros(n_genes, dtype=bool)
        converged_reduced = np.zeros(n_genes, dtype=bool)
        separated = np.zeros(n_genes, dtype=bool)
        iterations = np.zeros(n_genes, dtype=int)
        cooks_max = np.full(n_genes, np.nan)

        for s, out in zip(chunks, outputs):
            coef[s] = out['coef']
            cov[s] = out['cov']
            dev_full[s] = out['dev_full']
            dev_reduced[s] = out['dev_reduced']
            converged[s] = out['converged']
            converged_reduced[s] = out['converged_reduced']
            separated[s] = out['separated']
            iterations[s] = out['iterations']
            cooks_max[s] = out['cooks_max']

        status = np.where(
            ~converged, STATUS_NOT_CONVERGED,
            np.where(
                ~converged_reduced, STATUS_REDUCED_NOT_CONVERGED,
                np.where(separated, STATUS_SEPARATED, STATUS_OK)
            )
        )

        n_failed = int((~converged).sum())
        n_failed_reduced = int((converged & ~converged_reduced).sum())
        if n_failed or n_failed_reduced:
            logger.warning(f"{n_failed} genes did not converge under the full design, "
                           f"{n_failed_reduced} more only under the reduced design")
        if separated.any():
            logger.warning(f"{int(separated.sum())} genes have a group of zero counts; "
                           "their coefficients diverge and Wald statistics are left missing")
        logger.info(f"GLM fitting complete: {int(converged.sum())}/{n_genes} genes converged")

        index = self.counts.index
        se = np.sqrt(np.diagonal(cov, axis1=1, axis2=2))

        return FittedModel(
            coefficients=pd.DataFrame(coef, index=index, columns=names),
            standard_errors=pd.DataFrame(se, index=index, columns=names),
            covariances=cov,
            deviance_full=pd.Series(dev_full, index=index, name='deviance_full'),
            deviance_reduced=pd.Series(dev_reduced, index=index, name='deviance_reduced'),
            df=self.design.df_difference,
            converged=pd.Series(converged, index=index, name='converged'),
            converged_reduced=pd.Series(converged_reduced, index=index, name='converged_reduced'),
            separated=pd.Series(separated, index=index, name='separated'),
            iterations=pd.Series(iterations, index=index, name='iterations'),
            status=pd.Series(status, index=index, name='status'),
            cooks_max=pd.Series(cooks_max, index=index, name='cooks_max'),
            size_factors=self.size_factors,
            dispersion=self.dispersion,
            design=self.design
        )
