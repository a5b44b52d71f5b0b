"""
Pytest configuration and fixtures for popancestry tests.
"""

import gzip
import random
from pathlib import Path

import pytest

VCF_HEADER = """##fileformat=VCFv4.2
##contig=<ID=1,length=249250621>
##contig=<ID=2,length=243199373>
##FORMAT=<ID=GT,Number=1,Type=String,Description="Genotype">
##FORMAT=<ID=DP,Number=1,Type=Integer,Description="Read Depth">
"""

SAMPLE_VCF = (
    VCF_HEADER
    + "#CHROM\tPOS\tID\tREF\tALT\tQUAL\tFILTER\tINFO\tFORMAT\tS1\tS2\tS3\tS4\tS5\tS6\n"
    + "1\t1000\trs1\tA\tG\t100\tPASS\t.\tGT\t1|1\t1|1\t0|0\t0|0\t0|1\t1|1\n"
    + "1\t2000\trs2\tC\tT\t100\tPASS\t.\tGT\t0|0\t0|1\t1|1\t1|1\t./.\t0|0\n"
    + "1\t3000\t.\tG\tA,C\t50\tPASS\t.\tGT:DP\t0/2:10\t1/1:12\t0/0:9\t0/1:11\t2/2:8\t0/0:7\n"
    + "2\t500\trs4\tT\tC\t.\tPASS\t.\tGT\t0|0\t0|0\t0|0\t0|1\t1|1\t1|1\n"
)

SAMPLE_PANEL = """sample\tpop\tsuper_pop\tgender
S1\tPOPX\tEUR\tmale
S2\tPOPX\tEUR\tfemale
S3\tPOPY\tAFR\tmale
S4\tPOPY\tAFR\tfemale
S5\tPOPZ\tEAS\tmale
"""


@pytest.fixture
def sample_vcf(tmp_path: Path) -> Path:
    """
    Create a small multi-sample VCF.

    S1/S2 -> POPX, S3/S4 -> POPY, S5 -> POPZ, S6 is not in the panel.
    The third record is multi-allelic and has no rsID.
    """
    vcf_path = tmp_path / "sample.vcf"
    vcf_path.write_text(SAMPLE_VCF)
    return vcf_path


@pytest.fixture
def sample_vcf_gz(tmp_path: Path) -> Path:
    """Create a gzip-compressed copy of the sample VCF."""
    vcf_path = tmp_path / "sample.vcf.gz"
    with gzip.open(vcf_path, "wt") as f:
        f.write(SAMPLE_VCF)
    return vcf_path


@pytest.fixture
def sample_panel(tmp_path: Path) -> Path:
    """Create a 1000 Genomes style panel file."""
    panel_path = tmp_path / "sample.panel"
    panel_path.write_text(SAMPLE_PANEL)
    return panel_path


def write_random_vcf(path: Path, n_records: int = 240, n_samples: int = 12, seed: int = 7) -> Path:
    """Write a reproducible pseudo-random VCF spread over three contigs."""
    rng = random.Random(seed)
    samples = [f"R{i}" for i in range(n_samples)]
    lines = [
        "##fileformat=VCFv4.2",
        "##contig=<ID=1>",
        "##contig=<ID=2>",
        "##contig=<ID=3>",
        "##FORMAT=<ID=GT,Number=1,Type=String,Description=\"Genotype\">",
        "\t".join(["#CHROM", "POS", "ID", "REF", "ALT", "QUAL", "FILTER", "INFO", "FORMAT"] + samples),
    ]
    per_contig = n_records // 3
    for contig in ("1", "2", "3"):
        for i in range(per_contig):
            calls = [rng.choice(["0|0", "0|1", "1|0", "1|1", "./."]) for _ in samples]
            lines.append(
                "\t".join(
                    [contig, str(100 * (i + 1)), f"rs{contig}{i:04d}", "A", "G", ".", "PASS", ".", "GT"]
                    + calls
                )
            )
    path.write_text("\n".join(lines) + "\n")
    return path


@pytest.fixture
def random_vcf(tmp_path: Path) -> Path:
    """Create a larger reproducible VCF for parallelism tests."""
    return write_random_vcf(tmp_path / "random.vcf")


@pytest.fixture
def random_panel(tmp_path: Path) -> Path:
    """Panel for random_vcf: R0-R3 -> AAA, R4-R7 -> BBB, R8-R10 -> CCC, R11 unmatched."""
    rows = ["sample\tpop\tsuper_pop\tgender"]
    for i in range(11):
        pop, sup = ("AAA", "EUR") if i < 4 else ("BBB", "AFR") if i < 8 else ("CCC", "EAS")
        rows.append(f"R{i}\t{pop}\t{sup}\tfemale")
    panel_path = tmp_path / "random.panel"
    panel_path.write_text("\n".join(rows) + "\n")
    return panel_path


MARKER_VCF = (
    "##fileformat=VCFv4.2\n"
    "##reference=GRCh37\n"
    "#CHROM\tPOS\tID\tREF\tALT\tQUAL\tFILTER\tINFO\tFORMAT"
    "\tE1\tE2\tE3\tE4\tY1\tY2\tY3\tY4\tC1\tC2\n"
    "2\t109513601\trs3827760\tA\tG\t.\tPASS\t.\tGT"
    "\t0|0\t0|0\t0|0\t0|0\t0|0\t0|0\t0|0\t0|0\t1|1\t1|1\n"
    "2\t136608646\trs4988235\tG\tA\t.\tPASS\t.\tGT"
    "\t1|1\t0|1\t1|0\t0|0\t0|0\t0|0\t0|0\t0|0\t0|0\t0|0\n"
    "15\t28365618\trs12913832\tA\tG\t.\tPASS\t.\tGT"
    "\t1|1\t1|1\t1|1\t0|1\t0|0\t0|0\t0|0\t0|0\t0|0\t0|0\n"
    "15\t48426484\trs1426654\tA\tG\t.\tPASS\t.\tGT"
    "\t0|0\t0|0\t0|0\t0|0\t1|1\t1|1\t1|1\t0|1\t0|0\t0|1\n"
)

MARKER_PANEL = "sample\tpop\tsuper_pop\tgender\n" + "".join(
    f"{sample}\t{pop}\t{sup}\tfemale\n"
    for sample, pop, sup in [
        ("E1", "CEU", "EUR"),
        ("E2", "CEU", "EUR"),
        ("E3", "CEU", "EUR"),
        ("E4", "CEU", "EUR"),
        ("Y1", "YRI", "AFR"),
        ("Y2", "YRI", "AFR"),
        ("Y3", "YRI", "AFR"),
        ("Y4", "YRI", "AFR"),
        ("C1", "CHB", "EAS"),
        ("C2", "CHB", "EAS"),
    ]
)


@pytest.fixture
def marker_vcf(tmp_path: Path) -> Path:
    """Reference VCF at the built-in DIY marker positions (GRCh37)."""
    vcf_path = tmp_path / "markers.vcf"
    vcf_path.write_text(MARKER_VCF)
    return vcf_path


@pytest.fixture
def marker_panel(tmp_path: Path) -> Path:
    """Panel for marker_vcf: E* -> CEU, Y* -> YRI, C* -> CHB."""
    panel_path = tmp_path / "markers.panel"
    panel_path.write_text(MARKER_PANEL)
    return panel_path
