"""
popancestry: Population-reference ancestry inference.

Builds per-population allele frequency tables from multi-sample VCFs and
scores query genotypes against them under a Hardy-Weinberg model.
"""

__version__ = "0.1.0"

from popancestry.frequencies import FrequencyTable, FrequencyTableBuilder
from popancestry.panel import PopulationPanel
from popancestry.scoring import AncestryResult, AncestryScorer

__all__ = [
    "FrequencyTable",
    "FrequencyTableBuilder",
    "PopulationPanel",
    "AncestryScorer",
    "AncestryResult",
    "__version__",
]
