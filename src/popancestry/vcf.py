"""
Streaming VCF parsing for population-scale genotype data.

Reads plain or gzip/bgzip-compressed VCF files line by line and yields
one Variant per data line, with a Genotype for every sample column.
Memory use per record is proportional to the number of samples.
"""

from __future__ import annotations

import gzip
import logging
import re
import zlib
from collections import Counter
from collections.abc import Iterator
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from types import TracebackType
from typing import TextIO

from popancestry.errors import FormatError, InputReadError

logger = logging.getLogger(__name__)

FIXED_COLUMNS = ("#CHROM", "POS", "ID", "REF", "ALT", "QUAL", "FILTER", "INFO", "FORMAT")

GZIP_MAGIC = b"\x1f\x8b"

_REF_PATTERN = re.compile(r"^[ACGTNacgtn]+$")
_ALT_PATTERN = re.compile(r"^(?:[ACGTNacgtn]+|\*|<[^<>\s]+>|\S*[\[\]]\S*)$")


def normalize_chrom(chrom: str) -> str:
    """Strip a leading 'chr' prefix so 'chr15' and '15' compare equal."""
    if chrom[:3].lower() == "chr":
        return chrom[3:]
    return chrom


@dataclass(frozen=True)
class Genotype:
    """
    A diploid genotype call.

    Attributes:
        alleles: Pair of allele indices (0=ref, 1..N=alt), None when missing
        phased: True when the call used the '|' delimiter
    """

    alleles: tuple[int, int] | None = None
    phased: bool = False

    @property
    def is_missing(self) -> bool:
        return self.alleles is None

    def dosage(self, allele: int = 1) -> int | None:
        """Count copies of an allele index (first alternate by default)."""
        if self.alleles is None:
            return None
        return (self.alleles[0] == allele) + (self.alleles[1] == allele)

    def __str__(self) -> str:
        sep = "|" if self.phased else "/"
        if self.alleles is None:
            return f".{sep}."
        return f"{self.alleles[0]}{sep}{self.alleles[1]}"


MISSING = Genotype()


@lru_cache(maxsize=4096)
def parse_genotype(token: str, n_alt: int) -> Genotype:
    """
    Parse a GT token such as '0|1' or '1/1'.

    A call with any missing allele ('./.', '0/.', '.') is missing as a whole.

    Args:
        token: The GT subfield
        n_alt: Number of alternate alleles declared by the record

    Returns:
        Parsed Genotype (shared instances; Genotype is immutable)

    Raises:
        ValueError: If the token is not a diploid allele-index pair or an
            index exceeds the alternate allele count
    """
    if token == ".":
        return MISSING
    phased = "|" in token
    if phased and "/" in token:
        raise ValueError(f"mixed phasing delimiters in genotype {token!r}")
    parts = token.split("|" if phased else "/")
    if len(parts) != 2:
        raise ValueError(f"not a diploid genotype: {token!r}")
    if "." in parts:
        return MISSING
    for part in parts:
        if not part.isdigit():
            raise ValueError(f"invalid allele index in genotype {token!r}")
    first, second = int(parts[0]), int(parts[1])
    if first > n_alt or second > n_alt:
        raise ValueError(
            f"allele index in genotype {token!r} exceeds {n_alt} alternate allele(s)"
        )
    return Genotype(alleles=(first, second), phased=phased)


@dataclass(frozen=True)
class QueryCall:
    """
    One genotype of a query sample, with the weight it carries in scoring.

    File-derived calls have confidence 1.0; manual entries carry the
    confidence stated by whoever entered them.
    """

    variant_id: str
    chrom: str
    position: int
    ref: str
    alt: str
    genotype: Genotype
    confidence: float = 1.0

    @property
    def locus(self) -> tuple[str, int]:
        return (normalize_chrom(self.chrom), self.position)


@dataclass
class Variant:
    """
    A variant record with per-sample genotype calls.

    Attributes:
        variant_id: rsID, or 'chrom:pos' when the ID column is '.'
        chrom: Chromosome as written in the file
        position: 1-based genomic position
        ref: Reference allele
        alt: Alternate alleles in file order (empty when ALT is '.')
        genotypes: Sample ID -> Genotype
        quality: QUAL column, None when '.'
        line: Line number in the source file, if read from one
    """

    variant_id: str
    chrom: str
    position: int
    ref: str
    alt: tuple[str, ...]
    genotypes: dict[str, Genotype] = field(default_factory=dict)
    quality: float | None = None
    line: int | None = None

    @property
    def first_alt(self) -> str:
        """First alternate allele, or '' for monomorphic records."""
        return self.alt[0] if self.alt else ""

    @property
    def is_multiallelic(self) -> bool:
        return len(self.alt) > 1

    @property
    def is_snp(self) -> bool:
        """Check if variant is a SNP (not indel)."""
        if len(self.ref) != 1:
            return False
        return all(len(a) == 1 for a in self.alt)

    @property
    def locus(self) -> tuple[str, int]:
        return (normalize_chrom(self.chrom), self.position)

    def call_for(self, sample: str, confidence: float = 1.0) -> QueryCall:
        """Build the QueryCall for one sample of this record."""
        return QueryCall(
            variant_id=self.variant_id,
            chrom=self.chrom,
            position=self.position,
            ref=self.ref,
            alt=self.first_alt,
            genotype=self.genotypes.get(sample, MISSING),
            confidence=confidence,
        )


def parse_record(
    line: str,
    samples: tuple[str, ...],
    path: Path | str | None = None,
    line_number: int | None = None,
) -> Variant:
    """
    Parse one tab-delimited VCF data line.

    Args:
        line: Raw data line (trailing newline allowed)
        samples: Sample IDs from the header, in column order
        path: Source file, used for error context
        line_number: 1-based line number, used for error context

    Returns:
        Variant with one Genotype per sample

    Raises:
        FormatError: If the line is structurally invalid
    """
    fields = line.rstrip("\r\n").split("\t")
    expected = len(FIXED_COLUMNS) + len(samples)
    if len(fields) != expected:
        raise FormatError(
            f"expected {expected} fields, found {len(fields)}", path, line_number
        )

    chrom, pos_text, raw_id, ref, alt_text, qual_text, _filter, _info, fmt = fields[:9]

    if not chrom:
        raise FormatError("empty CHROM field", path, line_number)
    if not pos_text.isdigit() or int(pos_text) <= 0:
        raise FormatError(f"invalid position {pos_text!r}", path, line_number)
    position = int(pos_text)

    if not _REF_PATTERN.match(ref):
        raise FormatError(f"invalid reference allele {ref!r}", path, line_number)
    alts: tuple[str, ...] = () if alt_text == "." else tuple(alt_text.split(","))
    for alt in alts:
        if not _ALT_PATTERN.match(alt):
            raise FormatError(f"invalid alternate allele {alt!r}", path, line_number)

    format_keys = fmt.split(":")
    if "GT" not in format_keys:
        raise FormatError(f"FORMAT {fmt!r} has no GT key", path, line_number)
    gt_index = format_keys.index("GT")

    try:
        quality = None if qual_text == "." else float(qual_text)
    except ValueError:
        quality = None

    variant_id = raw_id if raw_id and raw_id != "." else f"{normalize_chrom(chrom)}:{position}"
    n_alt = len(alts)

    genotypes: dict[str, Genotype] = {}
    for sample, value in zip(samples, fields[9:]):
        subfields = value.split(":")
        token = subfields[gt_index] if gt_index < len(subfields) else ""
        if not token:
            raise FormatError(f"sample {sample}: empty genotype", path, line_number)
        try:
            genotypes[sample] = parse_genotype(token, n_alt)
        except ValueError as e:
            raise FormatError(f"sample {sample}: {e}", path, line_number) from e

    return Variant(
        variant_id=variant_id,
        chrom=chrom,
        position=position,
        ref=ref.upper(),
        alt=tuple(a.upper() if _REF_PATTERN.match(a) else a for a in alts),
        genotypes=genotypes,
        quality=quality,
        line=line_number,
    )


def parse_header(line: str, path: Path | str | None = None, line_number: int | None = None) -> tuple[str, ...]:
    """
    Validate a '#CHROM' header line and return its sample IDs.

    Raises:
        FormatError: If the fixed columns are wrong, no sample columns are
            declared, or sample IDs repeat
    """
    fields = line.rstrip("\r\n").split("\t")
    declared = tuple(fields[: len(FIXED_COLUMNS)])
    if declared == FIXED_COLUMNS[:8] and len(fields) == 8:
        raise FormatError("header declares no sample columns", path, line_number)
    if declared != FIXED_COLUMNS:
        raise FormatError(
            f"malformed header, expected columns {' '.join(FIXED_COLUMNS)}", path, line_number
        )
    samples = tuple(fields[len(FIXED_COLUMNS) :])
    if not samples:
        raise FormatError("header declares no sample columns", path, line_number)
    if any(not s for s in samples):
        raise FormatError("empty sample ID in header", path, line_number)
    duplicates = sorted(s for s, n in Counter(samples).items() if n > 1)
    if duplicates:
        raise FormatError(f"duplicate sample IDs in header: {duplicates}", path, line_number)
    return samples


def open_text(path: Path | str) -> TextIO:
    """
    Open a VCF for text reading, decompressing gzip/bgzip transparently.

    Compression is detected from the gzip magic bytes, not the suffix.
    """
    path = Path(path)
    with open(path, "rb") as f:
        magic = f.read(2)
    if magic == GZIP_MAGIC:
        return gzip.open(path, "rt", encoding="utf-8")
    return open(path, encoding="utf-8")


class VCFReader:
    """
    Forward-only reader for multi-sample VCF files.

    The header is read once on entry; data lines are then streamed in file
    order. The stream cannot be restarted; open a new reader to read again.
    """

    def __init__(self, path: Path | str):
        """
        Initialize VCF reader.

        Args:
            path: Path to VCF file (plain text, gzip or bgzip)
        """
        self.path = Path(path)
        self._handle: TextIO | None = None
        self._samples: tuple[str, ...] | None = None
        self._line_number = 0
        self._header_line: int | None = None
        self._started = False

    def __enter__(self) -> VCFReader:
        self._handle = open_text(self.path)
        try:
            self._read_header()
        except BaseException:
            self._handle.close()
            self._handle = None
            raise
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        if self._handle:
            self._handle.close()
            self._handle = None

    @property
    def samples(self) -> tuple[str, ...]:
        """Return sample IDs in column order."""
        if self._samples is None:
            raise RuntimeError("VCF not opened")
        return self._samples

    @property
    def header_line(self) -> int:
        """Return the line number of the '#CHROM' header."""
        if self._header_line is None:
            raise RuntimeError("VCF not opened")
        return self._header_line

    def _raw_lines(self) -> Iterator[str]:
        if self._handle is None:
            raise RuntimeError("VCF not opened")
        try:
            for raw in self._handle:
                self._line_number += 1
                yield raw
        except UnicodeDecodeError as e:
            raise FormatError(
                f"file is not valid UTF-8 text: {e}", self.path, self._line_number + 1
            ) from e
        except (EOFError, zlib.error, OSError) as e:
            raise InputReadError(
                f"read failed: {e}", self.path, self._line_number + 1
            ) from e

    def _read_header(self) -> None:
        for raw in self._raw_lines():
            if raw.startswith("##"):
                continue
            if raw.startswith("#CHROM"):
                self._samples = parse_header(raw, self.path, self._line_number)
                self._header_line = self._line_number
                logger.debug(
                    "%s: header at line %d, %d samples",
                    self.path,
                    self._line_number,
                    len(self._samples),
                )
                return
            if not raw.strip():
                continue
            if raw.startswith("#"):
                raise FormatError("malformed header line", self.path, self._line_number)
            raise FormatError("data line before '#CHROM' header", self.path, self._line_number)
        raise FormatError("missing '#CHROM' header line", self.path)

    def iter_lines(self) -> Iterator[tuple[int, str]]:
        """
        Iterate over raw data lines.

        Blank lines and '#' comment lines after the header are skipped.

        Yields:
            (line_number, line) pairs in file order
        """
        if self._samples is None:
            raise RuntimeError("VCF not opened")
        if self._started:
            raise RuntimeError("VCF stream already consumed; open a new reader")
        self._started = True

        for raw in self._raw_lines():
            if raw.startswith("#") or not raw.strip():
                continue
            yield self._line_number, raw

    def iter_variants(self) -> Iterator[Variant]:
        """
        Iterate over all variant records.

        Yields:
            Variant objects in file order
        """
        samples = self.samples
        for line_number, raw in self.iter_lines():
            yield parse_record(raw, samples, self.path, line_number)

    def sample_calls(self, sample: str) -> Iterator[QueryCall]:
        """
        Iterate over the non-missing genotype calls of one sample.

        Args:
            sample: Sample ID from the header

        Yields:
            QueryCall objects with confidence 1.0
        """
        if sample not in self.samples:
            raise ValueError(f"Sample '{sample}' not found in {self.path}")
        for variant in self.iter_variants():
            call = variant.call_for(sample)
            if not call.genotype.is_missing:
                yield call


@dataclass
class VCFStats:
    """Summary counts for a VCF file."""

    records: int = 0
    samples: int = 0
    multiallelic: int = 0
    missing_calls: int = 0
    by_chrom: Counter[str] = field(default_factory=Counter)

    def to_dict(self) -> dict:
        return {
            "records": self.records,
            "samples": self.samples,
            "multiallelic": self.multiallelic,
            "missing_calls": self.missing_calls,
            "by_chrom": dict(self.by_chrom),
        }


def collect_stats(path: Path | str) -> VCFStats:
    """
    Count records, samples and missing calls in a VCF.

    Args:
        path: Path to VCF file

    Returns:
        VCFStats for the whole file
    """
    stats = VCFStats()
    with VCFReader(path) as reader:
        stats.samples = len(reader.samples)
        for variant in reader.iter_variants():
            stats.records += 1
            stats.by_chrom[variant.chrom] += 1
            if variant.is_multiallelic:
                stats.multiallelic += 1
            stats.missing_calls += sum(1 for g in variant.genotypes.values() if g.is_missing)
    return stats


@dataclass
class Concordance:
    """
    Genotype agreement between two samples.

    Attributes:
        sample_a: First sample ID
        sample_b: Second sample ID
        matches: Sites where both calls carry the same alleles
        compared: Sites where both samples have a call
    """

    sample_a: str
    sample_b: str
    matches: int = 0
    compared: int = 0

    @property
    def fraction(self) -> float:
        """Matching fraction of compared sites (0.0 when nothing was compared)."""
        return self.matches / self.compared if self.compared else 0.0

    def to_dict(self) -> dict:
        return {
            "sample_a": self.sample_a,
            "sample_b": self.sample_b,
            "matches": self.matches,
            "compared": self.compared,
            "fraction": self.fraction,
        }


def genotype_concordance(path: Path | str, sample_a: str, sample_b: str) -> Concordance:
    """
    Compare the genotype calls of two samples site by site.

    Calls are compared as unordered allele pairs, so 0|1 matches 1|0.
    Sites where either sample is missing are skipped.

    Args:
        path: Path to VCF file
        sample_a: First sample ID
        sample_b: Second sample ID

    Returns:
        Concordance over all sites both samples have called

    Raises:
        ValueError: If either sample is not in the VCF
    """
    result = Concordance(sample_a, sample_b)
    with VCFReader(path) as reader:
        for sample in (sample_a, sample_b):
            if sample not in reader.samples:
                raise ValueError(f"Sample '{sample}' not found in {path}")
        for variant in reader.iter_variants():
            first = variant.genotypes[sample_a].alleles
            second = variant.genotypes[sample_b].alleles
            if first is None or second is None:
                continue
            result.compared += 1
            if sorted(first) == sorted(second):
                result.matches += 1
    logger.debug(
        "%s: %s vs %s, %d/%d sites match",
        path,
        sample_a,
        sample_b,
        result.matches,
        result.compared,
    )
    return result


def read_vcf(path: Path | str) -> list[Variant]:
    """
    Convenience function to read all variants from a VCF.

    Loads the whole file into memory; use VCFReader for large inputs.
    """
    with VCFReader(path) as reader:
        return list(reader.iter_variants())
