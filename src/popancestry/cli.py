"""
Command-line interface for popancestry.

Provides pipeline-friendly CLI with proper exit codes and output formats.
"""

from __future__ import annotations

import json
import logging
import sys
from pathlib import Path
from typing import TextIO

import click

from popancestry import __version__
from popancestry.errors import (
    FormatError,
    InputReadError,
    InsufficientDataError,
    ValidationError,
)
from popancestry.frequencies import FrequencyTable, FrequencyTableBuilder
from popancestry.manual import ManualEntryAdapter, MarkerReference
from popancestry.panel import PopulationPanel
from popancestry.scoring import DEFAULT_EPSILON, AncestryResult, AncestryScorer
from popancestry.vcf import VCFReader, collect_stats, genotype_concordance

# Exit codes
EXIT_OK = 0
EXIT_INSUFFICIENT_DATA = 1
EXIT_PARTIAL_REJECT = 2
EXIT_NOT_FOUND = 10
EXIT_INVALID_INPUT = 11
EXIT_ERROR = 99


@click.group()
@click.version_option(version=__version__, prog_name="popancestry")
@click.option("--verbose", "-v", is_flag=True, help="Log progress and diagnostics to stderr")
def main(verbose: bool) -> None:
    """
    popancestry: Population-reference ancestry inference.

    Builds per-population allele frequency tables from multi-sample VCFs
    and scores query genotypes against them.
    """
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


@main.command()
@click.argument("vcf", type=click.Path(exists=True, path_type=Path))
@click.option(
    "--panel",
    "-p",
    type=click.Path(exists=True, path_type=Path),
    required=True,
    help="Sample-to-population panel file",
)
@click.option(
    "--output",
    "-o",
    type=click.Path(path_type=Path),
    required=True,
    help="Frequency table output (.tsv or .tsv.gz)",
)
@click.option(
    "--workers",
    "-w",
    type=click.IntRange(min=1),
    default=1,
    help="Number of worker processes [default: 1]",
)
@click.option(
    "--batch-size",
    type=click.IntRange(min=1),
    default=5000,
    help="Data lines per work unit [default: 5000]",
)
@click.option(
    "--level",
    type=click.Choice(["population", "superpopulation"]),
    default="population",
    help="Group samples by population or superpopulation [default: population]",
)
@click.option(
    "--use-index",
    is_flag=True,
    help="Shard work by contig when a tabix index (.tbi/.csi) is present",
)
def build(
    vcf: Path,
    panel: Path,
    output: Path,
    workers: int,
    batch_size: int,
    level: str,
    use_index: bool,
) -> None:
    """
    Build a per-population allele frequency table from a VCF.

    The table file is written only after the whole VCF has been counted.
    """
    try:
        click.echo(f"Loading panel from {panel}...", err=True)
        panel_obj = PopulationPanel.from_file(panel)
        click.echo(
            f"  {len(panel_obj)} samples in {len(panel_obj.populations)} populations", err=True
        )

        builder = FrequencyTableBuilder(
            panel_obj,
            workers=workers,
            batch_size=batch_size,
            level=level,  # type: ignore[arg-type]
            use_index=use_index,
        )

        click.echo(f"Counting alleles in {vcf}...", err=True)
        table = builder.build(vcf)
        table.write(output)

        click.echo(
            f"  {table.records_processed} records, {len(table.sites)} sites, "
            f"{len(table)} entries",
            err=True,
        )
        if table.panel_unmatched_samples:
            click.echo(
                f"  Warning: {table.panel_unmatched_samples} sample(s) not in panel were skipped",
                err=True,
            )
        click.echo(f"Table {table.version} written to {output}", err=True)
        sys.exit(EXIT_OK)

    except FileNotFoundError as e:
        click.echo(f"Error: File not found: {e}", err=True)
        sys.exit(EXIT_NOT_FOUND)
    except InputReadError as e:
        click.echo(f"Error: Read failed: {e}", err=True)
        sys.exit(EXIT_NOT_FOUND)
    except FormatError as e:
        click.echo(f"Error: Invalid input: {e}", err=True)
        sys.exit(EXIT_INVALID_INPUT)
    except Exception as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(EXIT_ERROR)


@main.command()
@click.option(
    "--table",
    "-t",
    type=click.Path(exists=True, path_type=Path),
    required=True,
    help="Frequency table written by 'build'",
)
@click.option(
    "--vcf",
    type=click.Path(exists=True, path_type=Path),
    default=None,
    help="VCF holding the query sample",
)
@click.option(
    "--sample",
    type=str,
    default=None,
    help="Query sample name in --vcf [default: first sample]",
)
@click.option(
    "--manual",
    type=click.Path(exists=True, path_type=Path),
    default=None,
    help="Manual entry file (rsid,chromosome,position,genotype,confidence,method)",
)
@click.option(
    "--markers",
    type=click.Path(exists=True, path_type=Path),
    default=None,
    help="Extra marker CSV for manual entries (rsid,chromosome,position,ref,alt,description)",
)
@click.option(
    "--strict-coordinates",
    is_flag=True,
    help="Reject manual entries whose locus differs from the marker's",
)
@click.option(
    "--epsilon",
    type=click.FloatRange(min=0.0, max=0.5, min_open=True, max_open=True),
    default=DEFAULT_EPSILON,
    help=f"Allele frequency clamp [default: {DEFAULT_EPSILON}]",
)
@click.option(
    "--output",
    "-o",
    type=click.Path(path_type=Path),
    default=None,
    help="Output file [default: stdout]",
)
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["json", "tsv"]),
    default="json",
    help="Output format [default: json]",
)
def score(
    table: Path,
    vcf: Path | None,
    sample: str | None,
    manual: Path | None,
    markers: Path | None,
    strict_coordinates: bool,
    epsilon: float,
    output: Path | None,
    output_format: str,
) -> None:
    """
    Estimate ancestry proportions for one query sample.

    The query comes either from a VCF sample (--vcf) or from manually
    entered genotypes (--manual).
    """
    if (vcf is None) == (manual is None):
        click.echo("Error: Provide exactly one of --vcf or --manual", err=True)
        sys.exit(EXIT_INVALID_INPUT)

    partial_reject = False
    try:
        click.echo(f"Loading frequency table from {table}...", err=True)
        table_obj = FrequencyTable.read(table)
        scorer = AncestryScorer(table_obj, epsilon=epsilon)

        if vcf is not None:
            with VCFReader(vcf) as reader:
                name = sample or reader.samples[0]
                click.echo(f"Scoring {name} from {vcf}...", err=True)
                result = scorer.score(reader.sample_calls(name), sample=name)
        else:
            reference = MarkerReference.from_csv(markers) if markers else MarkerReference.default()
            adapter = ManualEntryAdapter(
                reference,
                sample=manual.stem,  # type: ignore[union-attr]
                strict_coordinates=strict_coordinates,
            )
            batch = adapter.read(manual)  # type: ignore[arg-type]
            for error in batch.errors:
                click.echo(f"  Rejected {error}", err=True)
            click.echo(
                f"Scoring {len(batch.accepted)} manual entries "
                f"({len(batch.errors)} rejected)...",
                err=True,
            )
            partial_reject = not batch.ok
            result = scorer.score(batch.calls(), sample=batch.sample)

        if output:
            with open(output, "w") as f:
                _write_result(result, f, output_format)
            click.echo(f"Result written to {output}", err=True)
        else:
            _write_result(result, sys.stdout, output_format)

        sys.exit(EXIT_PARTIAL_REJECT if partial_reject else EXIT_OK)

    except InsufficientDataError as e:
        click.echo(f"Error: Insufficient data: {e}", err=True)
        sys.exit(EXIT_INSUFFICIENT_DATA)
    except FileNotFoundError as e:
        click.echo(f"Error: File not found: {e}", err=True)
        sys.exit(EXIT_NOT_FOUND)
    except InputReadError as e:
        click.echo(f"Error: Read failed: {e}", err=True)
        sys.exit(EXIT_NOT_FOUND)
    except (FormatError, ValidationError, ValueError) as e:
        click.echo(f"Error: Invalid input: {e}", err=True)
        sys.exit(EXIT_INVALID_INPUT)
    except Exception as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(EXIT_ERROR)


def _write_result(result: AncestryResult, file: TextIO, format: str) -> None:
    """Write ancestry result to file."""
    if format == "json":
        json.dump(result.to_dict(), file, indent=2)
        file.write("\n")
    elif format == "tsv":
        file.write("\t".join(["sample", "population", "proportion", "variants_used"]) + "\n")
        for population, proportion in result.ranked():
            row = [
                result.sample,
                population,
                f"{proportion:.6f}",
                str(result.variants_used.get(population, 0)),
            ]
            file.write("\t".join(row) + "\n")


@main.command()
@click.argument("vcf", type=click.Path(exists=True, path_type=Path))
@click.option(
    "--panel",
    "-p",
    type=click.Path(exists=True, path_type=Path),
    default=None,
    help="Panel file to summarise alongside the VCF",
)
def stats(vcf: Path, panel: Path | None) -> None:
    """Print record, sample and population counts as JSON."""
    try:
        summary = collect_stats(vcf).to_dict()
        if panel is not None:
            panel_obj = PopulationPanel.from_file(panel)
            summary["populations"] = {
                pop: {
                    "name": panel_obj.population_name(pop),
                    "superpopulation": panel_obj.superpopulation_of(pop),
                    "samples": count,
                }
                for pop, count in panel_obj.summary().items()
            }
        json.dump(summary, sys.stdout, indent=2)
        sys.stdout.write("\n")
    except InputReadError as e:
        click.echo(f"Error: Read failed: {e}", err=True)
        sys.exit(EXIT_NOT_FOUND)
    except FormatError as e:
        click.echo(f"Error: Invalid input: {e}", err=True)
        sys.exit(EXIT_INVALID_INPUT)
    except Exception as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(EXIT_ERROR)


@main.command()
@click.argument("vcf", type=click.Path(exists=True, path_type=Path))
@click.argument("sample_a")
@click.argument("sample_b")
def similarity(vcf: Path, sample_a: str, sample_b: str) -> None:
    """Print the genotype concordance of two VCF samples as JSON."""
    try:
        concordance = genotype_concordance(vcf, sample_a, sample_b)
        json.dump(concordance.to_dict(), sys.stdout, indent=2)
        sys.stdout.write("\n")
    except InputReadError as e:
        click.echo(f"Error: Read failed: {e}", err=True)
        sys.exit(EXIT_NOT_FOUND)
    except (FormatError, ValueError) as e:
        click.echo(f"Error: Invalid input: {e}", err=True)
        sys.exit(EXIT_INVALID_INPUT)
    except Exception as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(EXIT_ERROR)


@main.command()
def markers() -> None:
    """List the built-in markers accepted for manual entry."""
    for marker in MarkerReference.default():
        click.echo(
            f"{marker.rsid}\tchr{marker.chromosome}:{marker.position}\t"
            f"{marker.ref}/{marker.alt}\t{marker.description}"
        )


if __name__ == "__main__":
    main()
