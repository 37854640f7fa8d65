"""
Variance-stabilizing transformation and relative log expression.
"""

from .vst import (
    VarianceStabilizer,
    vst_parametric,
    log_transform,
    relative_log_expression,
    rle_summary
)

__all__ = [
    'VarianceStabilizer',
    'vst_parametric',
    'log_transform',
    'relative_log_expression',
    'rle_summary'
]
