"""
Significant-Gene Overlaps
=========================

Pairwise and full intersections of the significant genes of several
comparisons.
"""

import logging
from dataclasses import dataclass
from itertools import combinations
from typing import AbstractSet, Dict, FrozenSet, Mapping, Tuple, Union

import pandas as pd

from ..de_analysis.hypothesis import ComparisonResult

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OverlapSet:
    """
    Significant genes per comparison and their intersections.

    ``pairwise`` holds every unordered pair once, keyed in input order, plus
    each comparison with itself.
    """
    sets: Dict[str, FrozenSet[str]]
    pairwise: Dict[Tuple[str, str], FrozenSet[str]]
    intersection: FrozenSet[str]

    def overlap(self, a: str, b: str) -> FrozenSet[str]:
        if (a, b) in self.pairwise:
            return self.pairwise[(a, b)]
        return self.pairwise[(b, a)]

    def pairwise_sizes(self) -> pd.DataFrame:
        """Square table of intersection sizes; the diagonal holds set sizes."""
        names = list(self.sets)
        return pd.DataFrame(
            [[len(self.overlap(a, b)) for b in names] for a in names],
            index=names,
            columns=names
        )

    def membership(self) -> pd.DataFrame:
        """Gene x comparison table of significance flags."""
        genes = sorted(set().union(*self.sets.values())) if self.sets else []
        return pd.DataFrame(
            {name: [gene in members for gene in genes] for name, members in self.sets.items()},
            index=pd.Index(genes, name='gene')
        )


def significant_genes(result: ComparisonResult, alpha: float = 0.05) -> FrozenSet[str]:
    """Gene ids with padj strictly below ``alpha``; missing padj never counts."""
    return frozenset(result.table.index[result.table['padj'] < alpha])


def compute_overlaps(
    results: Mapping[str, Union[ComparisonResult, AbstractSet[str]]],
    alpha: float = 0.05
) -> OverlapSet:
    """
    Intersect the significant genes of two or more comparisons.

    Parameters
    ----------
    results : Mapping[str, ComparisonResult or set]
        Comparison results, or precomputed gene sets, keyed by name
    alpha : float
        Significance threshold applied to results

    Returns
    -------
    OverlapSet
        Per-comparison sets with pairwise and full intersections
    """
    sets = {
        name: significant_genes(value, alpha) if isinstance(value, ComparisonResult) else frozenset(value)
        for name, value in results.items()
    }

    names = list(sets)
    pairwise = {(name, name): sets[name] for name in names}
    for a, b in combinations(names, 2):
        pairwise[(a, b)] = sets[a] & sets[b]

    intersection = frozenset.intersection(*sets.values()) if sets else frozenset()

    logger.info(f"Overlap of {len(names)} comparisons: "
                f"{len(intersection)} genes significant in all")
    return OverlapSet(sets=sets, pairwise=pairwise, intersection=intersection)
