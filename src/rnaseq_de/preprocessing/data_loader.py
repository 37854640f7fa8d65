"""
RNA-seq Data Loading and Validation
===================================

This module handles:
1. Loading a delimited counts matrix and sample table
2. Validating the count matrix against the data model
3. Fixing the covariate schema of the sample metadata before any fitting
"""

import pandas as pd
import numpy as np
from pathlib import Path
from typing import List, Optional, Sequence, Union
import logging

from ..config import CovariateSpec
from ..exceptions import InputValidationError, InvalidDesignError

logger = logging.getLogger(__name__)


def load_counts(counts_file: Union[str, Path], sep: str = '\t') -> pd.DataFrame:
    """Load a genes x samples counts matrix (first column holds gene ids)."""
    logger.info(f"Loading counts from {counts_file}")

    counts_df = pd.read_csv(counts_file, sep=sep, index_col=0)

    logger.info(f"Loaded {counts_df.shape[0]} genes x {counts_df.shape[1]} samples")
    return counts_df


def load_metadata(
    metadata_file: Union[str, Path],
    sep: str = '\t',
    sample_col: Optional[str] = None
) -> pd.DataFrame:
    """
    Load the sample table and index it by sample id.

    Parameters
    ----------
    metadata_file : str or Path
        Delimited table, one row per sample
    sep : str
        Field delimiter
    sample_col : str, optional
        Column holding sample ids; the first column when omitted

    Returns
    -------
    pd.DataFrame
        Metadata indexed by sample id
    """
    metadata = pd.read_csv(metadata_file, sep=sep, dtype=str)
    sample_col = sample_col or metadata.columns[0]
    if sample_col not in metadata.columns:
        raise InputValidationError(f"Sample column '{sample_col}' not in {metadata_file}")

    metadata = metadata.set_index(sample_col)
    metadata.index = metadata.index.astype(str)

    logger.info(f"Loaded metadata for {len(metadata)} samples: {metadata.columns.tolist()}")
    return metadata


def validate_count_matrix(counts: pd.DataFrame) -> pd.DataFrame:
    """
    Check the count matrix invariants and return it with an integer dtype.

    Raises
    ------
    InputValidationError
        On duplicate ids, missing or non-integer or negative entries
    """
    if counts.shape[0] == 0 or counts.shape[1] == 0:
        raise InputValidationError(f"Empty count matrix: shape {counts.shape}")
    if counts.index.has_duplicates:
        dupes = counts.index[counts.index.duplicated()].unique().tolist()
        raise InputValidationError(f"Duplicate gene identifiers: {dupes[:5]}")
    if counts.columns.has_duplicates:
        dupes = counts.columns[counts.columns.duplicated()].unique().tolist()
        raise InputValidationError(f"Duplicate sample identifiers: {dupes[:5]}")

    try:
        values = counts.to_numpy(dtype=float)
    except (TypeError, ValueError) as e:
        raise InputValidationError(f"Count matrix holds non-numeric values: {e}") from e

    if np.isnan(values).any():
        raise InputValidationError("Count matrix holds missing values")
    if (values < 0).any():
        raise InputValidationError("Count matrix holds negative values")
    if not np.array_equal(values, np.round(values)):
        raise InputValidationError("Count matrix holds non-integer values")

    return pd.DataFrame(
        values.astype(np.int64),
        index=counts.index.astype(str),
        columns=counts.columns.astype(str)
    )


def align_samples(counts: pd.DataFrame, metadata: pd.DataFrame) -> pd.DataFrame:
    """
    Return metadata reordered to the count matrix columns.

    The two sample sets must be identical.
    """
    count_samples = set(counts.columns)
    meta_samples = set(metadata.index.astype(str))

    if metadata.index.has_duplicates:
        raise InputValidationError("Duplicate sample identifiers in metadata")

    missing_meta = sorted(count_samples - meta_samples)
    missing_counts = sorted(meta_samples - count_samples)
    if missing_meta or missing_counts:
        raise InputValidationError(
            f"Samples do not join: without metadata {missing_meta[:5]}, "
            f"without counts {missing_counts[:5]}"
        )

    metadata = metadata.copy()
    metadata.index = metadata.index.astype(str)
    return metadata.loc[counts.columns]


def infer_covariate_schema(
    metadata: pd.DataFrame,
    columns: Optional[Sequence[str]] = None
) -> List[CovariateSpec]:
    """
    Derive a schema once from the table: numeric columns stay numeric,
    everything else becomes categorical with sorted levels.
    """
    schema = []
    for col in (metadata.columns if columns is None else columns):
        if col not in metadata.columns:
            raise InvalidDesignError(f"Covariate '{col}' not found in metadata")
        numeric = pd.to_numeric(metadata[col], errors='coerce')
        if numeric.notna().all():
            schema.append(CovariateSpec(name=col, kind='numeric'))
        else:
            levels = sorted(metadata[col].dropna().astype(str).unique().tolist())
            schema.append(CovariateSpec(name=col, kind='categorical', levels=levels))

    logger.info("Inferred covariate schema: " + ", ".join(
        f"{s.name}={s.levels if s.kind == 'categorical' else 'numeric'}" for s in schema
    ))
    return schema


def apply_covariate_schema(
    metadata: pd.DataFrame,
    schema: Sequence[CovariateSpec]
) -> pd.DataFrame:
    """
    Type the metadata columns named in the schema.

    Categorical columns become pandas Categoricals with the declared level
    order; numeric columns become float. Nothing is coerced silently.

    Raises
    ------
    InvalidDesignError
        On a missing column, a value outside the declared levels or a
        non-numeric value in a numeric covariate
    """
    typed = pd.DataFrame(index=metadata.index)

    for spec in schema:
        if spec.name not in metadata.columns:
            raise InvalidDesignError(f"Covariate '{spec.name}' not found in metadata")
        column = metadata[spec.name]

        if column.isna().any():
            raise InvalidDesignError(f"Covariate '{spec.name}' has missing values")

        if spec.kind == 'numeric':
            numeric = pd.to_numeric(column, errors='coerce')
            bad = column[numeric.isna()]
            if len(bad):
                raise InvalidDesignError(
                    f"Non-numeric values in numeric covariate '{spec.name}': {bad.unique().tolist()[:5]}"
                )
            typed[spec.name] = numeric.astype(float)
        else:
            values = column.astype(str)
            unknown = sorted(set(values) - set(spec.levels))
            if unknown:
                raise InvalidDesignError(
                    f"Values {unknown} of covariate '{spec.name}' are not in levels {spec.levels}"
                )
            typed[spec.name] = pd.Categorical(values, categories=spec.levels, ordered=False)

    return typed
