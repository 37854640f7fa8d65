"""
Design Matrices
===============

Full and reduced model formulas over the sample covariates, built with
patsy. Every check here runs before any fitting starts.
"""

import ast
import logging
from dataclasses import dataclass
from typing import Dict, List, Mapping, Sequence, Set, Union

import numpy as np
import pandas as pd
import patsy
from patsy import ModelDesc, PatsyError

from ..exceptions import InvalidDesignError

logger = logging.getLogger(__name__)

# Names patsy formulas may call that are not covariates
_FORMULA_BUILTINS = {
    'C', 'I', 'Q', 'np', 'center', 'standardize', 'scale',
    'Treatment', 'Sum', 'Poly', 'Diff', 'Helmert', 'bs', 'cr', 'cc', 'te'
}


def _parse(formula: str) -> ModelDesc:
    try:
        desc = ModelDesc.from_formula(formula)
    except PatsyError as e:
        raise InvalidDesignError(f"Cannot parse formula '{formula}': {e}") from e
    if desc.lhs_termlist:
        raise InvalidDesignError(f"Design formula '{formula}' must not have a left-hand side")
    return desc


def referenced_covariates(desc: ModelDesc) -> Set[str]:
    """Variable names used by the factors of a parsed formula."""
    names = set()
    for term in desc.rhs_termlist:
        for factor in term.factors:
            tree = ast.parse(factor.code, mode='eval')
            excluded = set()
            for node in ast.walk(tree):
                if isinstance(node, ast.Call) and isinstance(node.func, ast.Name):
                    excluded.add(node.func.id)
                elif isinstance(node, ast.Attribute) and isinstance(node.value, ast.Name):
                    excluded.add(node.value.id)
            for node in ast.walk(tree):
                if isinstance(node, ast.Name) and node.id not in excluded:
                    names.add(node.id)
    return names - _FORMULA_BUILTINS


def formula_covariates(*formulas: str) -> List[str]:
    """Sorted covariate names referenced by any of the formulas."""
    names = set()
    for formula in formulas:
        names |= referenced_covariates(_parse(formula))
    return sorted(names)


def _build_matrix(formula: str, metadata: pd.DataFrame) -> pd.DataFrame:
    try:
        matrix = patsy.dmatrix(formula, metadata, NA_action='raise', return_type='dataframe')
    except PatsyError as e:
        raise InvalidDesignError(f"Cannot build design for '{formula}': {e}") from e
    # patsy yields a single row when the formula references no covariate
    if len(matrix) != len(metadata):
        matrix = pd.DataFrame(
            np.repeat(matrix.to_numpy(), len(metadata), axis=0),
            columns=matrix.columns
        )
    matrix.index = metadata.index
    return matrix


@dataclass(frozen=True)
class DesignSpecification:
    """
    Full and reduced designs for one analysis.

    Attributes
    ----------
    full_formula, reduced_formula : str
        patsy formulas over the metadata covariates
    full_matrix, reduced_matrix : pd.DataFrame
        Design matrices (samples x coefficients)
    full_terms, reduced_terms : List[str]
        Term names of each formula
    factor_levels : Dict[str, List[str]]
        Level order of each categorical covariate, reference first
    """
    full_formula: str
    reduced_formula: str
    full_matrix: pd.DataFrame
    reduced_matrix: pd.DataFrame
    full_terms: List[str]
    reduced_terms: List[str]
    factor_levels: Dict[str, List[str]]

    @classmethod
    def from_formulas(
        cls,
        full: str,
        reduced: str,
        metadata: pd.DataFrame
    ) -> 'DesignSpecification':
        """
        Validate both formulas against the metadata and build their matrices.

        Raises
        ------
        InvalidDesignError
            If a referenced covariate is absent, the reduced terms are not a
            subset of the full terms, or a design is rank deficient
        """
        full_desc = _parse(full)
        reduced_desc = _parse(reduced)

        missing = sorted(
            (referenced_covariates(full_desc) | referenced_covariates(reduced_desc))
            - set(metadata.columns)
        )
        if missing:
            raise InvalidDesignError(f"Covariates {missing} are not in the sample metadata")

        extra = [t.name() for t in reduced_desc.rhs_termlist if t not in full_desc.rhs_termlist]
        if extra:
            raise InvalidDesignError(
                f"Reduced design '{reduced}' is not nested in '{full}': extra terms {extra}"
            )

        full_matrix = _build_matrix(full, metadata)
        reduced_matrix = _build_matrix(reduced, metadata)

        for formula, matrix in ((full, full_matrix), (reduced, reduced_matrix)):
            rank = np.linalg.matrix_rank(matrix.to_numpy())
            if rank < matrix.shape[1]:
                raise InvalidDesignError(
                    f"Design '{formula}' is rank deficient ({rank} < {matrix.shape[1]} columns)"
                )

        n_samples, n_coef = full_matrix.shape
        if n_samples <= n_coef:
            raise InvalidDesignError(
                f"Full design has {n_coef} coefficients for {n_samples} samples; "
                "no residual degrees of freedom for dispersion estimation"
            )

        logger.info(f"Full design {full} -> {full_matrix.columns.tolist()}")
        logger.info(f"Reduced design {reduced} -> {reduced_matrix.columns.tolist()}")

        return cls(
            full_formula=full,
            reduced_formula=reduced,
            full_matrix=full_matrix,
            reduced_matrix=reduced_matrix,
            full_terms=[t.name() for t in full_desc.rhs_termlist],
            reduced_terms=[t.name() for t in reduced_desc.rhs_termlist],
            factor_levels={
                col: [str(level) for level in metadata[col].cat.categories]
                for col in metadata.columns
                if isinstance(metadata[col].dtype, pd.CategoricalDtype)
            },
        )

    @property
    def coefficient_names(self) -> List[str]:
        return self.full_matrix.columns.tolist()

    @property
    def df_difference(self) -> int:
        return self.full_matrix.shape[1] - self.reduced_matrix.shape[1]

    @property
    def dropped_coefficients(self) -> List[str]:
        """Full-design coefficients absent from the reduced design."""
        reduced = set(self.reduced_matrix.columns)
        return [name for name in self.coefficient_names if name not in reduced]

    def contrast_vector(
        self,
        contrast: Union[str, Sequence[str], Mapping[str, float], np.ndarray]
    ) -> np.ndarray:
        """
        Weights over the full-design coefficients for a Wald test.

        Parameters
        ----------
        contrast : str, sequence, mapping or array
            A coefficient name; a ``(factor, numerator, denominator)`` triple
            of treatment-coded levels; a mapping of coefficient name to
            weight; or a numeric vector of length p

        Returns
        -------
        np.ndarray
            Contrast weights
        """
        names = self.coefficient_names
        weights = np.zeros(len(names))

        if isinstance(contrast, str):
            if contrast not in names:
                raise InvalidDesignError(f"Unknown coefficient '{contrast}'; available: {names}")
            weights[names.index(contrast)] = 1.0

        elif isinstance(contrast, Mapping):
            for name, value in contrast.items():
                if name not in names:
                    raise InvalidDesignError(f"Unknown coefficient '{name}'; available: {names}")
                weights[names.index(name)] = float(value)

        elif isinstance(contrast, np.ndarray) or (
            isinstance(contrast, Sequence) and all(isinstance(v, (int, float)) for v in contrast)
        ):
            weights = np.asarray(contrast, dtype=float)
            if weights.shape != (len(names),):
                raise InvalidDesignError(f"Contrast vector needs {len(names)} entries")

        elif isinstance(contrast, Sequence) and len(contrast) == 3:
            factor, numerator, denominator = contrast
            levels = self.factor_levels.get(factor)
            if levels is None:
                raise InvalidDesignError(f"'{factor}' is not a categorical covariate")
            for level, sign in ((numerator, 1.0), (denominator, -1.0)):
                if level not in levels:
                    raise InvalidDesignError(f"'{level}' is not a level of '{factor}': {levels}")
                if level == levels[0]:
                    continue
                name = f"{factor}[T.{level}]"
                if name not in names:
                    raise InvalidDesignError(
                        f"Level '{level}' of '{factor}' has no main-effect coefficient in the full design"
                    )
                weights[names.index(name)] += sign
        else:
            raise InvalidDesignError(f"Unrecognized contrast: {contrast!r}")

        if not np.any(weights):
            raise InvalidDesignError(f"Contrast {contrast!r} has all-zero weights")
        return weights

