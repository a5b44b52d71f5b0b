"""
Manually entered genotypes.

Converts DIY genotype records of the form

    rsid,chromosome,position,genotype,confidence,method

into the same Variant / QueryCall shapes produced by the VCF reader, so
manual data and file data go through one scoring path. Each record is
validated against a reference of known markers; invalid records are
rejected one by one while valid records in the same batch are kept.
"""

from __future__ import annotations

import csv
import logging
import math
from collections import Counter
from collections.abc import Iterable, Iterator, Sequence
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from popancestry.errors import ValidationError
from popancestry.vcf import Genotype, QueryCall, Variant, normalize_chrom

logger = logging.getLogger(__name__)

BASES = frozenset("ACGT")

COMPLEMENT = {"A": "T", "C": "G", "G": "C", "T": "A"}


class GenotypingMethod(Enum):
    """How a manual genotype was determined."""

    VISUAL_TRAIT = "visual_trait"
    PHENOTYPE = "phenotype"
    FAMILY_HISTORY = "family_history"
    ANCESTRY = "ancestry"
    LAB_TEST = "lab_test"


@dataclass(frozen=True)
class Marker:
    """
    A known SNP marker with its reference and alternate alleles.

    Attributes:
        rsid: dbSNP identifier
        chromosome: Chromosome (GRCh37 naming, no 'chr' prefix)
        position: GRCh37 1-based position
        ref: Reference allele
        alt: Alternate allele
        description: Trait or ancestry association
    """

    rsid: str
    chromosome: str
    position: int
    ref: str
    alt: str
    description: str = ""

    @property
    def is_palindromic(self) -> bool:
        """True for A/T and C/G markers, whose strand cannot be told from the bases."""
        return COMPLEMENT.get(self.ref) == self.alt


# Markers that can be estimated from traits or family history (GRCh37)
DIY_KIT_MARKERS = (
    Marker("rs12913832", "15", 28365618, "A", "G", "Eye color (HERC2)"),
    Marker("rs1805007", "16", 89986091, "C", "T", "Red hair (MC1R)"),
    Marker("rs4988235", "2", 136608646, "G", "A", "Lactose tolerance (MCM6)"),
    Marker("rs17822931", "16", 48258198, "C", "T", "Earwax type (ABCC11)"),
    Marker("rs3827760", "2", 109513601, "A", "G", "Hair thickness (EDAR)"),
    Marker("rs2814778", "1", 159174683, "T", "C", "Duffy antigen (ACKR1)"),
    Marker("rs671", "12", 112241766, "G", "A", "Alcohol flush (ALDH2)"),
    Marker("rs1426654", "15", 48426484, "A", "G", "Skin pigmentation (SLC24A5)"),
    Marker("rs16891982", "5", 33951693, "C", "G", "Eye color (SLC45A2)"),
    Marker("rs6152", "X", 66765627, "G", "A", "Hair texture (AR)"),
)


class MarkerReference:
    """Lookup of known markers by rsID."""

    def __init__(self, markers: Iterable[Marker] = ()) -> None:
        self._markers: dict[str, Marker] = {}
        for marker in markers:
            self.add(marker)

    @classmethod
    def default(cls) -> MarkerReference:
        """Return a reference holding the built-in DIY kit markers."""
        return cls(DIY_KIT_MARKERS)

    @classmethod
    def from_csv(cls, path: Path | str, include_defaults: bool = True) -> MarkerReference:
        """
        Load markers from CSV.

        Expected columns: rsid, chromosome, position, ref, alt, description

        Args:
            path: Path to CSV file
            include_defaults: Start from the built-in markers

        Returns:
            Populated MarkerReference
        """
        reference = cls.default() if include_defaults else cls()
        path = Path(path)

        with open(path, newline="") as f:
            reader = csv.DictReader(f)
            for row in reader:
                reference.add(
                    Marker(
                        rsid=row["rsid"].strip(),
                        chromosome=normalize_chrom(row["chromosome"].strip()),
                        position=int(row["position"]),
                        ref=row["ref"].strip().upper(),
                        alt=row["alt"].strip().upper(),
                        description=(row.get("description") or "").strip(),
                    )
                )

        return reference

    def add(self, marker: Marker) -> None:
        """Add or replace a marker."""
        if marker.ref not in BASES or marker.alt not in BASES or marker.ref == marker.alt:
            raise ValueError(f"Marker {marker.rsid} needs distinct single-base alleles")
        self._markers[marker.rsid.lower()] = marker

    def get(self, rsid: str) -> Marker:
        """
        Get marker by rsID (case-insensitive).

        Raises:
            KeyError: If the marker is unknown
        """
        try:
            return self._markers[rsid.lower()]
        except KeyError:
            raise KeyError(f"Marker not found: {rsid}") from None

    def __contains__(self, rsid: str) -> bool:
        return rsid.lower() in self._markers

    def __len__(self) -> int:
        return len(self._markers)

    def __iter__(self) -> Iterator[Marker]:
        return iter(self._markers.values())


@dataclass(frozen=True)
class ManualEntry:
    """
    A validated manual genotype.

    Attributes:
        index: Position of the record in its batch (or its line number)
        marker: The known marker the entry refers to
        bases: Genotype as entered, e.g. 'GG'
        genotype: Allele-index genotype relative to the marker alleles
        confidence: Confidence weight in [0, 1]
        method: How the genotype was determined
        reverse_strand: Bases were entered on the opposite strand and complemented
        relocated: Stated locus differed from the marker's and was replaced
    """

    index: int
    marker: Marker
    bases: str
    genotype: Genotype
    confidence: float
    method: GenotypingMethod
    reverse_strand: bool = False
    relocated: bool = False

    @property
    def rsid(self) -> str:
        return self.marker.rsid

    def to_call(self) -> QueryCall:
        """Convert to a QueryCall carrying the entry's confidence."""
        return QueryCall(
            variant_id=self.marker.rsid,
            chrom=self.marker.chromosome,
            position=self.marker.position,
            ref=self.marker.ref,
            alt=self.marker.alt,
            genotype=self.genotype,
            confidence=self.confidence,
        )

    def to_variant(self, sample: str) -> Variant:
        """Convert to a single-sample Variant."""
        return Variant(
            variant_id=self.marker.rsid,
            chrom=self.marker.chromosome,
            position=self.marker.position,
            ref=self.marker.ref,
            alt=(self.marker.alt,),
            genotypes={sample: self.genotype},
        )


@dataclass
class ManualBatch:
    """Outcome of converting a batch of manual records."""

    sample: str
    accepted: list[ManualEntry] = field(default_factory=list)
    errors: list[ValidationError] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    def calls(self) -> list[QueryCall]:
        return [entry.to_call() for entry in self.accepted]

    def variants(self) -> list[Variant]:
        return [entry.to_variant(self.sample) for entry in self.accepted]

    def summary(self) -> dict:
        """Counts, average confidence and method breakdown."""
        methods = Counter(entry.method.value for entry in self.accepted)
        average = (
            sum(entry.confidence for entry in self.accepted) / len(self.accepted)
            if self.accepted
            else 0.0
        )
        return {
            "sample": self.sample,
            "accepted": len(self.accepted),
            "rejected": len(self.errors),
            "average_confidence": average,
            "methods": dict(sorted(methods.items())),
            "reverse_strand": sum(entry.reverse_strand for entry in self.accepted),
            "relocated": sum(entry.relocated for entry in self.accepted),
            "errors": [str(e) for e in self.errors],
        }


class ManualEntryAdapter:
    """
    Validates manual genotype records and converts them for scoring.

    The adapter owns the marker reference used to decode genotype letters
    into allele indices. Records are keyed by rsID: a stated locus that
    disagrees with the marker is replaced by the marker's coordinates,
    and bases given on the opposite strand are complemented unless the
    marker is A/T or C/G.
    """

    def __init__(
        self,
        markers: MarkerReference | None = None,
        sample: str = "DIY_SAMPLE",
        strict_coordinates: bool = False,
    ):
        """
        Initialize adapter.

        Args:
            markers: Known markers (built-in DIY kit markers if None)
            sample: Identifier of the DIY subject
            strict_coordinates: Reject records whose locus differs from the
                marker instead of correcting them
        """
        self.markers = markers if markers is not None else MarkerReference.default()
        self.sample = sample
        self.strict_coordinates = strict_coordinates

    def parse(self, record: str | Sequence[str], index: int = 1) -> ManualEntry:
        """
        Validate one record.

        Args:
            record: Comma-separated line or a sequence of six fields
            index: Record index used in error messages

        Returns:
            Validated ManualEntry

        Raises:
            ValidationError: If any field is invalid
        """
        fields = record.split(",") if isinstance(record, str) else list(record)
        fields = [f.strip() for f in fields]
        if len(fields) != 6:
            raise ValidationError(
                index, f"expected 6 comma-separated fields, found {len(fields)}"
            )
        rsid, chromosome, position_text, genotype_text, confidence_text, method_text = fields

        if not rsid:
            raise ValidationError(index, "missing rsID")
        if rsid not in self.markers:
            raise ValidationError(index, "unknown marker", rsid)
        marker = self.markers.get(rsid)

        if not position_text.isdigit():
            raise ValidationError(index, f"invalid position {position_text!r}", rsid)
        relocated = (normalize_chrom(chromosome), int(position_text)) != (
            marker.chromosome,
            marker.position,
        )
        if relocated:
            if self.strict_coordinates:
                raise ValidationError(
                    index,
                    f"locus {chromosome}:{position_text} does not match marker "
                    f"({marker.chromosome}:{marker.position})",
                    rsid,
                )
            logger.warning(
                "Entry %d (%s): stated locus %s:%s replaced by marker locus %s:%d",
                index,
                marker.rsid,
                chromosome,
                position_text,
                marker.chromosome,
                marker.position,
            )

        bases, genotype, reverse_strand = self._decode_genotype(genotype_text, marker, index)

        try:
            confidence = float(confidence_text)
        except ValueError:
            raise ValidationError(index, f"invalid confidence {confidence_text!r}", rsid) from None
        if not math.isfinite(confidence) or not 0.0 <= confidence <= 1.0:
            raise ValidationError(
                index, f"confidence {confidence_text} outside [0, 1]", rsid
            )

        try:
            method = GenotypingMethod(method_text.lower())
        except ValueError:
            allowed = ", ".join(m.value for m in GenotypingMethod)
            raise ValidationError(
                index, f"unknown method {method_text!r} (expected one of: {allowed})", rsid
            ) from None

        return ManualEntry(
            index=index,
            marker=marker,
            bases=bases,
            genotype=genotype,
            confidence=confidence,
            method=method,
            reverse_strand=reverse_strand,
            relocated=relocated,
        )

    @staticmethod
    def _decode_genotype(
        text: str, marker: Marker, index: int
    ) -> tuple[str, Genotype, bool]:
        """
        Decode entered bases into allele indices.

        Returns:
            Bases as entered, the genotype, and whether the bases were
            complemented to reach the marker's strand
        """
        value = text.upper()
        if len(value) == 3 and value[1] in "/|":
            value = value[0] + value[2]
        if len(value) != 2 or not set(value) <= BASES:
            raise ValidationError(
                index, f"genotype {text!r} must be two bases (A, C, G, T)", marker.rsid
            )
        alleles = {marker.ref: 0, marker.alt: 1}
        oriented = value
        reverse_strand = False
        if not set(value) <= alleles.keys() and not marker.is_palindromic:
            flipped = "".join(COMPLEMENT[base] for base in value)
            if set(flipped) <= alleles.keys():
                oriented = flipped
                reverse_strand = True
        for base in oriented:
            if base not in alleles:
                raise ValidationError(
                    index,
                    f"genotype {text!r} uses allele {base}, marker alleles are "
                    f"{marker.ref}/{marker.alt}",
                    marker.rsid,
                )
        genotype = Genotype(alleles=(alleles[oriented[0]], alleles[oriented[1]]))
        return value, genotype, reverse_strand

    def _collect(self, records: Iterable[tuple[int, str | Sequence[str]]]) -> ManualBatch:
        batch = ManualBatch(sample=self.sample)
        for index, record in records:
            try:
                batch.accepted.append(self.parse(record, index))
            except ValidationError as e:
                batch.errors.append(e)
        return batch

    def convert(self, records: Iterable[str | Sequence[str]]) -> ManualBatch:
        """
        Validate a batch of records, keeping valid ones.

        Args:
            records: Comma-separated lines or six-field sequences

        Returns:
            ManualBatch with accepted entries and per-entry errors
        """
        return self._collect(enumerate(records, start=1))

    def read(self, path: Path | str) -> ManualBatch:
        """
        Read records from a text file, one per line.

        Blank lines and '#' comments are ignored; errors are indexed by
        line number.
        """
        path = Path(path)
        pairs: list[tuple[int, str]] = []
        with open(path, encoding="utf-8") as f:
            for line_number, raw in enumerate(f, start=1):
                line = raw.split("#", 1)[0].strip()
                if line:
                    pairs.append((line_number, line))
        return self._collect(pairs)
