"""
Ancestry scoring against population allele frequencies.

Each query genotype is scored under Hardy-Weinberg proportions for every
population's alternate allele frequency p:

    P(hom-ref) = (1-p)^2,  P(het) = 2p(1-p),  P(hom-alt) = p^2

Log-probabilities are weighted by call confidence and summed per
population, then converted to proportions with a softmax.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Iterable, Mapping
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field

from popancestry.errors import InsufficientDataError
from popancestry.frequencies import FrequencyTable, Site
from popancestry.vcf import QueryCall

logger = logging.getLogger(__name__)

# Keeps log-likelihoods finite when a population is fixed for one allele
DEFAULT_EPSILON = 1e-6


def genotype_probability(dosage: int, p: float) -> float:
    """
    Hardy-Weinberg probability of a genotype.

    Args:
        dosage: Copies of the alternate allele (0, 1 or 2)
        p: Alternate allele frequency

    Returns:
        Probability of observing the genotype
    """
    if dosage == 0:
        return (1.0 - p) ** 2
    if dosage == 1:
        return 2.0 * p * (1.0 - p)
    if dosage == 2:
        return p * p
    raise ValueError(f"Invalid dosage: {dosage}")


def genotype_log_likelihood(dosage: int, p: float, epsilon: float = DEFAULT_EPSILON) -> float:
    """Log Hardy-Weinberg probability with p clamped to [epsilon, 1-epsilon]."""
    p = min(max(p, epsilon), 1.0 - epsilon)
    return math.log(genotype_probability(dosage, p))


def softmax(log_scores: Mapping[str, float]) -> dict[str, float]:
    """
    Convert log-scores to proportions summing to 1.

    Uses max subtraction (log-sum-exp) for numerical stability.
    """
    if not log_scores:
        return {}
    top = max(log_scores.values())
    weights = {k: math.exp(v - top) for k, v in log_scores.items()}
    total = sum(weights.values())
    return {k: w / total for k, w in weights.items()}


@dataclass
class AncestryResult:
    """
    Ancestry proportions for one query sample.

    Attributes:
        sample: Query sample identifier
        proportions: Population -> proportion (sums to 1)
        variants_used: Population -> number of shared variants scored
        log_likelihoods: Population -> confidence-weighted log-likelihood
        superpopulation_proportions: Superpopulation -> summed proportion
        query_calls: Non-missing calls supplied for the query
        calls_matched: Calls that matched a table site
        allele_mismatches: Calls whose alleles disagreed with the table site
        panel_unmatched_samples: Samples skipped during table construction
        table_version: Version of the frequency table used
    """

    sample: str
    proportions: dict[str, float]
    variants_used: dict[str, int]
    log_likelihoods: dict[str, float] = field(default_factory=dict)
    superpopulation_proportions: dict[str, float] = field(default_factory=dict)
    query_calls: int = 0
    calls_matched: int = 0
    allele_mismatches: int = 0
    panel_unmatched_samples: int = 0
    table_version: str = ""

    def ranked(self) -> list[tuple[str, float]]:
        """Return (population, proportion) pairs, highest first."""
        return sorted(self.proportions.items(), key=lambda x: (-x[1], x[0]))

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON output."""
        return {
            "sample": self.sample,
            "table_version": self.table_version,
            "proportions": dict(self.ranked()),
            "superpopulation_proportions": dict(
                sorted(self.superpopulation_proportions.items(), key=lambda x: -x[1])
            ),
            "variants_used": self.variants_used,
            "log_likelihoods": self.log_likelihoods,
            "query_stats": {
                "query_calls": self.query_calls,
                "calls_matched": self.calls_matched,
                "allele_mismatches": self.allele_mismatches,
            },
            "panel_unmatched_samples": self.panel_unmatched_samples,
        }


class AncestryScorer:
    """
    Scores query genotypes against a published FrequencyTable.

    The scorer only reads the table, so one table can serve many scorers
    or threads at once.
    """

    def __init__(self, table: FrequencyTable, epsilon: float = DEFAULT_EPSILON):
        """
        Initialize scorer.

        Args:
            table: Frequency table snapshot
            epsilon: Clamp distance of allele frequencies from 0 and 1
        """
        if not 0.0 < epsilon < 0.5:
            raise ValueError("epsilon must be in (0, 0.5)")
        self.table = table
        self.epsilon = epsilon

    def _resolve(self, call: QueryCall) -> tuple[Site | None, int, bool]:
        """
        Find the table site for a call and orient its dosage to that site.

        Returns:
            (site or None, alt dosage relative to site, allele mismatch flag)
        """
        dosage = call.genotype.dosage(1)
        if dosage is None:
            return None, 0, False
        sites = self.table.find_sites(call.variant_id, call.locus)
        for site in sites:
            if site.ref == call.ref and site.alt == call.alt:
                return site, dosage, False
        for site in sites:
            if site.alt and site.ref == call.alt and site.alt == call.ref:
                return site, 2 - dosage, False
        return None, 0, bool(sites)

    def score(self, calls: Iterable[QueryCall], sample: str = "") -> AncestryResult:
        """
        Compute ancestry proportions for a query sample.

        Args:
            calls: Genotype calls of the query (may be sparse)
            sample: Label carried into the result

        Returns:
            AncestryResult with one proportion per table population

        Raises:
            InsufficientDataError: If no population shares any scored variant
            ValueError: If a call's confidence lies outside [0, 1]
        """
        log_likelihoods: dict[str, float] = {}
        variants_used: dict[str, int] = {}
        query_calls = 0
        matched = 0
        mismatches = 0

        for call in calls:
            if not 0.0 <= call.confidence <= 1.0:
                raise ValueError(
                    f"confidence {call.confidence} for {call.variant_id} outside [0, 1]"
                )
            if call.genotype.is_missing:
                continue
            query_calls += 1

            site, dosage, mismatch = self._resolve(call)
            if site is None:
                mismatches += mismatch
                continue
            matched += 1
            if call.confidence == 0.0:
                continue

            for population, entry in self.table.entries_for(site).items():
                ll = genotype_log_likelihood(dosage, entry.frequency, self.epsilon)
                log_likelihoods[population] = log_likelihoods.get(population, 0.0) + (
                    call.confidence * ll
                )
                variants_used[population] = variants_used.get(population, 0) + 1

        if not variants_used:
            raise InsufficientDataError(
                f"no population shares a usable variant with {sample or 'the query'} "
                f"({query_calls} calls, {matched} matched a table site)"
            )

        shared = softmax(log_likelihoods)
        proportions = {pop: shared.get(pop, 0.0) for pop in self.table.populations}
        for pop, value in shared.items():
            proportions.setdefault(pop, value)
        used = {pop: variants_used.get(pop, 0) for pop in proportions}

        if mismatches:
            logger.info("%s: %d call(s) skipped for allele mismatch", sample or "query", mismatches)

        return AncestryResult(
            sample=sample,
            proportions=proportions,
            variants_used=used,
            log_likelihoods=log_likelihoods,
            superpopulation_proportions=self._rollup(proportions),
            query_calls=query_calls,
            calls_matched=matched,
            allele_mismatches=mismatches,
            panel_unmatched_samples=self.table.panel_unmatched_samples,
            table_version=self.table.version,
        )

    def _rollup(self, proportions: Mapping[str, float]) -> dict[str, float]:
        """Sum population proportions by superpopulation."""
        supers = self.table.superpopulations
        if not supers:
            return {}
        rolled: dict[str, float] = {}
        for pop, value in proportions.items():
            sup = supers.get(pop)
            if sup:
                rolled[sup] = rolled.get(sup, 0.0) + value
        return rolled

    def score_many(
        self,
        queries: Mapping[str, Iterable[QueryCall]],
        workers: int = 4,
    ) -> dict[str, AncestryResult]:
        """
        Score several query samples concurrently against the same table.

        Args:
            queries: Sample label -> calls
            workers: Thread pool size

        Returns:
            Sample label -> AncestryResult, in input order
        """
        with ThreadPoolExecutor(max_workers=max(1, workers)) as executor:
            futures = {
                name: executor.submit(self.score, list(calls), name)
                for name, calls in queries.items()
            }
            return {name: future.result() for name, future in futures.items()}
