"""
Analysis Configuration
======================

Settings for the differential expression pipeline, read from a YAML file
and validated with pydantic before any data is touched.
"""

from pathlib import Path
from typing import Dict, List, Literal, Optional, Union

import yaml
from pydantic import BaseModel, Field, model_validator


class CovariateSpec(BaseModel):
    """One covariate of the sample metadata.

    Categorical covariates carry an explicit level order; the first level is
    the reference level of the design.
    """
    name: str
    kind: Literal['categorical', 'numeric'] = 'categorical'
    levels: Optional[List[str]] = None

    @model_validator(mode='after')
    def _check_levels(self):
        if self.kind == 'categorical':
            if not self.levels:
                raise ValueError(f"Categorical covariate '{self.name}' needs explicit levels")
            if len(set(self.levels)) != len(self.levels):
                raise ValueError(f"Duplicate levels for covariate '{self.name}'")
        elif self.levels:
            raise ValueError(f"Numeric covariate '{self.name}' cannot declare levels")
        return self


class ComparisonSpec(BaseModel):
    """A named Wald test: either one coefficient or a contrast."""
    name: str
    coef: Optional[str] = None
    contrast: Optional[Union[List[str], Dict[str, float]]] = None

    @model_validator(mode='after')
    def _one_of(self):
        if (self.coef is None) == (self.contrast is None):
            raise ValueError(f"Comparison '{self.name}' needs exactly one of coef or contrast")
        if isinstance(self.contrast, list) and len(self.contrast) != 3:
            raise ValueError("A level contrast is [factor, numerator, denominator]")
        return self


class DataConfig(BaseModel):
    counts: Optional[Path] = None
    metadata: Optional[Path] = None
    sample_col: Optional[str] = None
    sep: str = '\t'
    output_dir: Path = Path('results')


class DesignConfig(BaseModel):
    full: str = '~ condition'
    reduced: str = '~ 1'
    covariates: Optional[List[CovariateSpec]] = None


class PreprocessingConfig(BaseModel):
    min_counts_per_gene: int = Field(default=0, ge=0)
    min_samples_per_gene: int = Field(default=0, ge=0)


class DispersionConfig(BaseModel):
    min_disp: float = Field(default=1e-8, gt=0)
    min_genes_for_trend: int = Field(default=10, ge=2)
    outlier_sd: float = Field(default=2.0, gt=0)
    allow_trend_fallback: bool = False


class IRLSConfig(BaseModel):
    tol: float = Field(default=1e-6, gt=0)
    max_iter: int = Field(default=100, ge=1)
    n_jobs: int = 1
    chunk_size: int = Field(default=500, ge=1)


class StatsTestConfig(BaseModel):
    alpha: float = Field(default=0.05, gt=0, lt=1)
    cooks_cutoff: bool = True
    min_base_mean: float = Field(default=0.0, ge=0)


class SummaryConfig(BaseModel):
    lfc_thresholds: List[float] = [0, 1, 2, 3]
    padj_thresholds: List[float] = [0.05, 0.01, 0.001]


class DiagnosticsConfig(BaseModel):
    n_components: int = Field(default=8, ge=1)
    n_top_genes: Optional[int] = Field(default=None, ge=2)


class AnalysisConfig(BaseModel):
    """Complete pipeline configuration."""
    project: str = 'rnaseq-de'
    data: DataConfig = Field(default_factory=DataConfig)
    design: DesignConfig = Field(default_factory=DesignConfig)
    comparisons: List[ComparisonSpec] = []
    preprocessing: PreprocessingConfig = Field(default_factory=PreprocessingConfig)
    dispersion: DispersionConfig = Field(default_factory=DispersionConfig)
    irls: IRLSConfig = Field(default_factory=IRLSConfig)
    testing: StatsTestConfig = Field(default_factory=StatsTestConfig)
    summary: SummaryConfig = Field(default_factory=SummaryConfig)
    diagnostics: DiagnosticsConfig = Field(default_factory=DiagnosticsConfig)


def load_config(config_path: Union[str, Path]) -> AnalysisConfig:
    """
    Load and validate a YAML configuration file.

    Relative data paths are resolved against the directory holding the file.

    Parameters
    ----------
    config_path : str or Path
        Path to YAML configuration file

    Returns
    -------
    AnalysisConfig
        Validated configuration
    """
    config_path = Path(config_path)
    with open(config_path, 'r') as f:
        raw = yaml.safe_load(f) or {}

    config = AnalysisConfig.model_validate(raw)

    base = config_path.parent
    for field in ('counts', 'metadata', 'output_dir'):
        value = getattr(config.data, field)
        if value is not None and not value.is_absolute():
            setattr(config.data, field, base / value)

    return config
