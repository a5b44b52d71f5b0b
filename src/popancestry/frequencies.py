"""
Per-population allele frequency tables.

Builds alternate-allele counts for every (site, population) pair from a
multi-sample VCF and a population panel. Work is split into line batches
(or tabix contigs) processed by a worker pool; partial integer counters
are merged by addition, so the finished table does not depend on the
degree of parallelism or on the order in which workers finish.

A built FrequencyTable is an immutable, versioned snapshot.
"""

from __future__ import annotations

import gzip
import hashlib
import logging
import os
import tempfile
import threading
from collections import deque
from collections.abc import Callable, Iterable, Iterator, Mapping
from concurrent.futures import Future, ProcessPoolExecutor
from dataclasses import dataclass
from itertools import islice
from pathlib import Path
from types import MappingProxyType
from typing import Literal

import pysam

from popancestry.errors import BuildCancelledError, FormatError
from popancestry.panel import UNASSIGNED, PopulationPanel
from popancestry.vcf import Variant, VCFReader, normalize_chrom, open_text, parse_record

logger = logging.getLogger(__name__)

GroupLevel = Literal["population", "superpopulation"]

TABLE_COLUMNS = (
    "variant_id",
    "chrom",
    "position",
    "ref",
    "alt",
    "population",
    "alt_count",
    "total_count",
    "frequency",
    "sample_count",
)

# (variant_id, chrom, position, ref, alt) -> group -> [alt_count, total_count]
Counts = dict[tuple[str, str, int, str, str], dict[str, list[int]]]


def chrom_rank(chrom: str) -> tuple[int, int, str]:
    """Sort key placing autosomes numerically, then X, Y, MT, then the rest."""
    c = normalize_chrom(chrom)
    if c.isdigit():
        return (0, int(c), "")
    upper = c.upper()
    if upper == "X":
        return (1, 0, "")
    if upper == "Y":
        return (1, 1, "")
    if upper in ("MT", "M"):
        return (1, 2, "")
    return (2, 0, c)


@dataclass(frozen=True)
class Site:
    """
    Identity of a variant within a frequency table.

    Only the first alternate allele is tracked.
    """

    variant_id: str
    chrom: str
    position: int
    ref: str
    alt: str

    @classmethod
    def from_variant(cls, variant: Variant) -> Site:
        return cls(
            variant_id=variant.variant_id,
            chrom=normalize_chrom(variant.chrom),
            position=variant.position,
            ref=variant.ref,
            alt=variant.first_alt,
        )

    @property
    def key(self) -> tuple[str, str, int, str, str]:
        return (self.variant_id, self.chrom, self.position, self.ref, self.alt)

    @property
    def locus(self) -> tuple[str, int]:
        return (self.chrom, self.position)

    def sort_key(self) -> tuple:
        return (chrom_rank(self.chrom), self.position, self.ref, self.alt, self.variant_id)


@dataclass(frozen=True)
class FrequencyEntry:
    """
    Allele counts for one (site, population) pair.

    Attributes:
        site: The variant site
        population: Population (or superpopulation) code
        alt_count: Observed copies of the first alternate allele
        total_count: Observed alleles (2 x non-missing genotyped samples)
    """

    site: Site
    population: str
    alt_count: int
    total_count: int

    def __post_init__(self) -> None:
        if self.total_count <= 0:
            raise ValueError("FrequencyEntry requires total_count > 0")
        if not 0 <= self.alt_count <= self.total_count:
            raise ValueError(
                f"alt_count {self.alt_count} outside [0, {self.total_count}]"
            )

    @property
    def frequency(self) -> float:
        """Alternate allele frequency."""
        return self.alt_count / self.total_count

    @property
    def sample_count(self) -> int:
        """Number of genotyped samples backing this entry."""
        return self.total_count // 2


class FrequencyTable:
    """
    Immutable snapshot of per-population allele frequencies.

    Sites are held in natural genomic order. The version string is a
    digest of the table contents, so two tables with equal versions hold
    identical counts.
    """

    def __init__(
        self,
        entries: Iterable[FrequencyEntry],
        populations: Iterable[str],
        superpopulations: Mapping[str, str] | None = None,
        panel_unmatched_samples: int = 0,
        records_processed: int = 0,
        level: GroupLevel = "population",
    ):
        by_site: dict[Site, dict[str, FrequencyEntry]] = {}
        for entry in entries:
            by_site.setdefault(entry.site, {})[entry.population] = entry

        self._sites = tuple(sorted(by_site, key=Site.sort_key))
        self._entries: Mapping[Site, Mapping[str, FrequencyEntry]] = MappingProxyType(
            {
                site: MappingProxyType(dict(sorted(by_site[site].items())))
                for site in self._sites
            }
        )
        self._populations = tuple(sorted(set(populations)))
        self._superpopulations = MappingProxyType(dict(sorted((superpopulations or {}).items())))
        self._panel_unmatched_samples = panel_unmatched_samples
        self._records_processed = records_processed
        self._level = level

        self._by_id: dict[str, list[Site]] = {}
        self._by_locus: dict[tuple[str, int], list[Site]] = {}
        for site in self._sites:
            self._by_id.setdefault(site.variant_id, []).append(site)
            self._by_locus.setdefault(site.locus, []).append(site)

        self._version = self._compute_version()

    @classmethod
    def from_counts(
        cls,
        counts: Counts,
        populations: Iterable[str],
        superpopulations: Mapping[str, str] | None = None,
        panel_unmatched_samples: int = 0,
        records_processed: int = 0,
        level: GroupLevel = "population",
    ) -> FrequencyTable:
        """Build a table from merged counters, dropping zero-denominator cells."""
        entries = []
        for key, groups in counts.items():
            site = Site(*key)
            for group, (alt_count, total_count) in groups.items():
                if total_count > 0:
                    entries.append(FrequencyEntry(site, group, alt_count, total_count))
        return cls(
            entries,
            populations,
            superpopulations,
            panel_unmatched_samples,
            records_processed,
            level,
        )

    @property
    def version(self) -> str:
        return self._version

    @property
    def sites(self) -> tuple[Site, ...]:
        return self._sites

    @property
    def populations(self) -> tuple[str, ...]:
        return self._populations

    @property
    def superpopulations(self) -> Mapping[str, str]:
        return self._superpopulations

    @property
    def panel_unmatched_samples(self) -> int:
        return self._panel_unmatched_samples

    @property
    def records_processed(self) -> int:
        return self._records_processed

    @property
    def level(self) -> GroupLevel:
        return self._level

    def entries_for(self, site: Site) -> Mapping[str, FrequencyEntry]:
        """Return population -> entry for a site (empty if unknown)."""
        return self._entries.get(site, MappingProxyType({}))

    def find_sites(
        self, variant_id: str | None = None, locus: tuple[str, int] | None = None
    ) -> list[Site]:
        """
        Look up sites by variant ID and by locus.

        Args:
            variant_id: rsID or composite identifier
            locus: (chrom, position); chrom is normalized

        Returns:
            ID matches first, then the remaining sites at the locus, each
            in table order (may be empty)
        """
        found: list[Site] = []
        if variant_id is not None:
            found.extend(self._by_id.get(variant_id, []))
        if locus is not None:
            key = (normalize_chrom(locus[0]), locus[1])
            found += [s for s in self._by_locus.get(key, []) if s not in found]
        return found

    def get(self, variant_id: str, population: str) -> FrequencyEntry | None:
        """Return the entry for the first site with this ID, or None."""
        for site in self._by_id.get(variant_id, []):
            entry = self._entries[site].get(population)
            if entry is not None:
                return entry
        return None

    def frequency(self, variant_id: str, population: str) -> float | None:
        """Return alternate allele frequency, or None when absent."""
        entry = self.get(variant_id, population)
        return entry.frequency if entry else None

    def __iter__(self) -> Iterator[FrequencyEntry]:
        for site in self._sites:
            yield from self._entries[site].values()

    def __len__(self) -> int:
        return sum(len(pops) for pops in self._entries.values())

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, FrequencyTable):
            return NotImplemented
        return self._canonical_lines() == other._canonical_lines()

    def __hash__(self) -> int:
        return hash(self._version)

    def __repr__(self) -> str:
        return (
            f"FrequencyTable(version={self._version!r}, sites={len(self._sites)}, "
            f"populations={len(self._populations)})"
        )

    def _metadata_lines(self) -> list[str]:
        lines = [
            f"##level={self._level}",
            f"##records_processed={self._records_processed}",
            f"##panel_unmatched_samples={self._panel_unmatched_samples}",
            f"##populations={','.join(self._populations)}",
        ]
        for pop, sup in self._superpopulations.items():
            lines.append(f"##superpopulation={pop}:{sup}")
        return lines

    def _row_lines(self) -> Iterator[str]:
        for entry in self:
            site = entry.site
            yield "\t".join(
                [
                    site.variant_id,
                    site.chrom,
                    str(site.position),
                    site.ref,
                    site.alt or ".",
                    entry.population,
                    str(entry.alt_count),
                    str(entry.total_count),
                    f"{entry.frequency:.6f}",
                    str(entry.sample_count),
                ]
            )

    def _canonical_lines(self) -> list[str]:
        return self._metadata_lines() + ["#" + "\t".join(TABLE_COLUMNS)] + list(self._row_lines())

    def _compute_version(self) -> str:
        digest = hashlib.sha256()
        for line in self._canonical_lines():
            digest.update(line.encode("utf-8"))
            digest.update(b"\n")
        return digest.hexdigest()[:16]

    def write(self, path: Path | str) -> Path:
        """
        Write the table as TSV, atomically.

        The file is written to a temporary sibling and renamed into place,
        so readers see either the previous file or the complete new one.
        A '.gz' suffix selects gzip compression.

        Args:
            path: Destination path

        Returns:
            The destination path
        """
        path = Path(path)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
        os.close(fd)
        tmp_path = Path(tmp_name)
        try:
            opener = gzip.open if path.suffix == ".gz" else open
            with opener(tmp_path, "wt", encoding="utf-8") as f:
                f.write("##popancestry_frequency_table\n")
                f.write(f"##version={self._version}\n")
                for line in self._canonical_lines():
                    f.write(line + "\n")
            os.replace(tmp_path, path)
        except BaseException:
            tmp_path.unlink(missing_ok=True)
            raise
        return path

    @classmethod
    def read(cls, path: Path | str) -> FrequencyTable:
        """
        Read a table written by write().

        Raises:
            FileNotFoundError: If the file doesn't exist
            FormatError: If the file is malformed or its contents do not
                match the recorded version
        """
        path = Path(path)
        meta: dict[str, str] = {}
        superpopulations: dict[str, str] = {}
        entries: list[FrequencyEntry] = []
        header_seen = False

        with open_text(path) as f:
            for line_number, raw in enumerate(f, start=1):
                line = raw.rstrip("\r\n")
                if not line:
                    continue
                if line.startswith("##"):
                    key, _, value = line[2:].partition("=")
                    if key == "superpopulation":
                        pop, _, sup = value.partition(":")
                        superpopulations[pop] = sup
                    else:
                        meta[key] = value
                    continue
                if line.startswith("#"):
                    if tuple(line[1:].split("\t")) != TABLE_COLUMNS:
                        raise FormatError("unexpected table header", path, line_number)
                    header_seen = True
                    continue
                if not header_seen:
                    raise FormatError("row before table header", path, line_number)
                entries.append(_parse_table_row(line, path, line_number))

        if not header_seen:
            raise FormatError("missing table header", path)

        level = meta.get("level", "population")
        if level not in ("population", "superpopulation"):
            raise FormatError(f"unknown level {level!r}", path)
        try:
            table = cls(
                entries,
                [p for p in meta.get("populations", "").split(",") if p]
                or {e.population for e in entries},
                superpopulations,
                int(meta.get("panel_unmatched_samples", "0")),
                int(meta.get("records_processed", "0")),
                level,  # type: ignore[arg-type]
            )
        except ValueError as e:
            raise FormatError(f"invalid table metadata: {e}", path) from e

        recorded = meta.get("version")
        if recorded and recorded != table.version:
            raise FormatError(
                f"table version {recorded} does not match contents ({table.version})", path
            )
        return table


def _parse_table_row(line: str, path: Path, line_number: int) -> FrequencyEntry:
    parts = line.split("\t")
    if len(parts) != len(TABLE_COLUMNS):
        raise FormatError(
            f"expected {len(TABLE_COLUMNS)} fields, found {len(parts)}", path, line_number
        )
    variant_id, chrom, pos, ref, alt, population, alt_count, total_count = parts[:8]
    try:
        site = Site(variant_id, chrom, int(pos), ref, "" if alt == "." else alt)
        return FrequencyEntry(site, population, int(alt_count), int(total_count))
    except ValueError as e:
        raise FormatError(f"invalid table row: {e}", path, line_number) from e


@dataclass(frozen=True)
class CountingContext:
    """
    What a worker needs to count one chunk of a VCF.

    Attributes:
        path: Source VCF (used for error context and tabix access)
        samples: Sample IDs in column order
        groups: Group code per sample column, None for panel-unmatched samples
    """

    path: str
    samples: tuple[str, ...]
    groups: tuple[str | None, ...]


def accumulate(counts: Counts, variant: Variant, context: CountingContext) -> None:
    """Add one variant's first-alt allele counts to a counter, per group."""
    key = Site.from_variant(variant).key
    per_group = counts.setdefault(key, {})
    genotypes = variant.genotypes
    for sample, group in zip(context.samples, context.groups):
        if group is None:
            continue
        alleles = genotypes[sample].alleles
        if alleles is None:
            continue
        cell = per_group.get(group)
        if cell is None:
            cell = per_group[group] = [0, 0]
        cell[0] += (alleles[0] == 1) + (alleles[1] == 1)
        cell[1] += 2


def count_lines(context: CountingContext, lines: list[tuple[int, str]]) -> tuple[int, Counts]:
    """
    Count allele observations in a batch of raw VCF data lines.

    Runs inside worker processes, so it only takes picklable arguments.

    Returns:
        (records counted, partial counts)
    """
    counts: Counts = {}
    for line_number, raw in lines:
        variant = parse_record(raw, context.samples, context.path, line_number)
        accumulate(counts, variant, context)
    return len(lines), counts


def count_region(context: CountingContext, contig: str) -> tuple[int, Counts]:
    """
    Count allele observations for one contig of a tabix-indexed VCF.

    Line numbers are unknown under index access, so errors report the
    contig and record index instead.
    """
    counts: Counts = {}
    records = 0
    with pysam.TabixFile(context.path) as tabix:
        for records, raw in enumerate(tabix.fetch(contig), start=1):
            try:
                variant = parse_record(raw, context.samples, context.path)
            except FormatError as e:
                raise FormatError(f"{contig} record {records}: {e.reason}", context.path) from e
            accumulate(counts, variant, context)
    return records, counts


def merge_counts(total: Counts, partial: Counts) -> None:
    """Add partial counts into total. Addition commutes, so order is irrelevant."""
    for key, groups in partial.items():
        target = total.setdefault(key, {})
        for group, (alt_count, total_count) in groups.items():
            cell = target.get(group)
            if cell is None:
                target[group] = [alt_count, total_count]
            else:
                cell[0] += alt_count
                cell[1] += total_count


def has_tabix_index(path: Path | str) -> bool:
    """Check for a .tbi or .csi index next to the file."""
    path = Path(path)
    return path.with_name(path.name + ".tbi").exists() or path.with_name(path.name + ".csi").exists()


def _batched(items: Iterable[tuple[int, str]], size: int) -> Iterator[list[tuple[int, str]]]:
    iterator = iter(items)
    while batch := list(islice(iterator, size)):
        yield batch


class FrequencyTableBuilder:
    """
    Builds a FrequencyTable from a VCF and a population panel.

    The table is published only when the whole input has been counted;
    a cancelled or failed build produces nothing.
    """

    def __init__(
        self,
        panel: PopulationPanel,
        workers: int = 1,
        batch_size: int = 5000,
        level: GroupLevel = "population",
        use_index: bool = False,
    ):
        """
        Initialize builder.

        Args:
            panel: Completed population panel
            workers: Number of worker processes (1 = count in-process)
            batch_size: Data lines per work unit
            level: Group samples by 'population' or 'superpopulation'
            use_index: Shard by contig when a tabix index is present
        """
        if workers < 1:
            raise ValueError("workers must be >= 1")
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        if level not in ("population", "superpopulation"):
            raise ValueError(f"Unknown grouping level: {level}")
        self.panel = panel
        self.workers = workers
        self.batch_size = batch_size
        self.level = level
        self.use_index = use_index

    def _groups(self) -> tuple[list[str], dict[str, str]]:
        if self.level == "population":
            return self.panel.populations, self.panel.superpopulations
        return sorted(set(self.panel.superpopulations.values())), {}

    def _context(self, path: Path, samples: tuple[str, ...]) -> tuple[CountingContext, int]:
        groups: list[str | None] = []
        unmatched = 0
        for sample in samples:
            group = self.panel.group_of(sample, self.level)
            if group == UNASSIGNED:
                groups.append(None)
                if sample not in self.panel:
                    unmatched += 1
            else:
                groups.append(group)
        return CountingContext(str(path), samples, tuple(groups)), unmatched

    @staticmethod
    def _check_stop(stop_event: threading.Event | None) -> None:
        if stop_event is not None and stop_event.is_set():
            raise BuildCancelledError("frequency table build cancelled")

    def _execute(
        self,
        func: Callable[[CountingContext, object], tuple[int, Counts]],
        context: CountingContext,
        work: Iterable[object],
        stop_event: threading.Event | None,
    ) -> tuple[int, Counts]:
        counts: Counts = {}
        records = 0

        if self.workers == 1:
            for item in work:
                self._check_stop(stop_event)
                n, partial = func(context, item)
                records += n
                merge_counts(counts, partial)
            self._check_stop(stop_event)
            return records, counts

        max_pending = 2 * self.workers
        with ProcessPoolExecutor(max_workers=self.workers) as executor:
            pending: deque[Future[tuple[int, Counts]]] = deque()
            try:
                for item in work:
                    self._check_stop(stop_event)
                    pending.append(executor.submit(func, context, item))
                    while len(pending) >= max_pending:
                        n, partial = pending.popleft().result()
                        records += n
                        merge_counts(counts, partial)
                while pending:
                    self._check_stop(stop_event)
                    n, partial = pending.popleft().result()
                    records += n
                    merge_counts(counts, partial)
            except BaseException:
                for future in pending:
                    future.cancel()
                executor.shutdown(wait=True, cancel_futures=True)
                raise
        self._check_stop(stop_event)
        return records, counts

    def build(self, path: Path | str, stop_event: threading.Event | None = None) -> FrequencyTable:
        """
        Count allele frequencies for every (site, population) pair.

        Args:
            path: VCF file (plain, gzip or bgzip)
            stop_event: Set from another thread to abandon the build

        Returns:
            Completed FrequencyTable

        Raises:
            FormatError: On malformed VCF content
            InputReadError: On truncated or unreadable compressed input
            BuildCancelledError: If stop_event was set
        """
        path = Path(path)
        self._check_stop(stop_event)

        if self.use_index and has_tabix_index(path):
            with VCFReader(path) as reader:
                context, unmatched = self._context(path, reader.samples)
            with pysam.TabixFile(str(path)) as tabix:
                contigs = list(tabix.contigs)
            logger.info("%s: counting %d contigs via tabix index", path, len(contigs))
            records, counts = self._execute(count_region, context, contigs, stop_event)
        else:
            with VCFReader(path) as reader:
                context, unmatched = self._context(path, reader.samples)
                batches = _batched(reader.iter_lines(), self.batch_size)
                records, counts = self._execute(count_lines, context, batches, stop_event)

        if unmatched:
            logger.warning("%s: %d sample(s) not found in panel were skipped", path, unmatched)

        populations, superpopulations = self._groups()
        table = FrequencyTable.from_counts(
            counts,
            populations,
            superpopulations,
            panel_unmatched_samples=unmatched,
            records_processed=records,
            level=self.level,
        )
        logger.info(
            "%s: %d records, %d sites, %d entries (version %s)",
            path,
            records,
            len(table.sites),
            len(table),
            table.version,
        )
        return table
