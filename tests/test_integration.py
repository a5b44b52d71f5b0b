"""
End-to-end tests: build a reference table, publish it, and score queries
from both VCF samples and manual entries.
"""

from __future__ import annotations

from pathlib import Path

import pytest

from popancestry import AncestryScorer, FrequencyTable, FrequencyTableBuilder, PopulationPanel
from popancestry.manual import ManualEntryAdapter
from popancestry.vcf import VCFReader


@pytest.fixture
def published_table(marker_vcf: Path, marker_panel: Path, tmp_path: Path) -> FrequencyTable:
    """Build with a worker pool, write to disk and read back."""
    panel = PopulationPanel.from_file(marker_panel)
    table = FrequencyTableBuilder(panel, workers=2, batch_size=1).build(marker_vcf)
    return FrequencyTable.read(table.write(tmp_path / "reference.tsv.gz"))


class TestPipeline:
    """Reference samples are assigned to their own population."""

    @pytest.mark.parametrize(
        ("sample", "population"),
        [("E1", "CEU"), ("E2", "CEU"), ("Y1", "YRI"), ("Y4", "YRI"), ("C1", "CHB"), ("C2", "CHB")],
    )
    def test_reference_sample_assignment(
        self, published_table: FrequencyTable, marker_vcf: Path, sample: str, population: str
    ) -> None:
        with VCFReader(marker_vcf) as reader:
            result = AncestryScorer(published_table).score(reader.sample_calls(sample), sample)

        assert result.ranked()[0][0] == population
        assert sum(result.proportions.values()) == pytest.approx(1.0)
        assert all(v >= 0.0 for v in result.proportions.values())

    def test_manual_matches_vcf_at_full_confidence(
        self, published_table: FrequencyTable, marker_vcf: Path
    ) -> None:
        """Manual entries and file calls for the same genotypes score identically."""
        batch = ManualEntryAdapter(sample="E1").convert(
            [
                "rs3827760,2,109513601,AA,1.0,lab_test",
                "rs4988235,2,136608646,AA,1.0,lab_test",
                "rs12913832,15,28365618,GG,1.0,lab_test",
                "rs1426654,15,48426484,AA,1.0,lab_test",
            ]
        )
        assert batch.ok

        scorer = AncestryScorer(published_table)
        manual = scorer.score(batch.calls(), "E1")
        with VCFReader(marker_vcf) as reader:
            from_file = scorer.score(reader.sample_calls("E1"), "E1")

        assert manual.proportions == pytest.approx(from_file.proportions)
        assert manual.variants_used == from_file.variants_used

    def test_low_confidence_entry_moves_result_less(self, published_table: FrequencyTable) -> None:
        adapter = ManualEntryAdapter()
        scorer = AncestryScorer(published_table)

        base = adapter.convert(["rs12913832,15,28365618,AG,1.0,lab_test"])
        strong = adapter.convert(
            ["rs12913832,15,28365618,AG,1.0,lab_test", "rs3827760,2,109513601,GG,1.0,lab_test"]
        )
        weak = adapter.convert(
            ["rs12913832,15,28365618,AG,1.0,lab_test", "rs3827760,2,109513601,GG,0.1,visual_trait"]
        )

        chb_base = scorer.score(base.calls()).proportions["CHB"]
        chb_strong = scorer.score(strong.calls()).proportions["CHB"]
        chb_weak = scorer.score(weak.calls()).proportions["CHB"]

        assert chb_base < chb_weak < chb_strong

    def test_concurrent_scoring_matches_sequential(
        self, published_table: FrequencyTable, marker_vcf: Path
    ) -> None:
        with VCFReader(marker_vcf) as reader:
            samples = reader.samples
        queries = {}
        for sample in samples:
            with VCFReader(marker_vcf) as reader:
                queries[sample] = list(reader.sample_calls(sample))

        scorer = AncestryScorer(published_table)
        concurrent = scorer.score_many(queries, workers=4)

        for sample, calls in queries.items():
            assert concurrent[sample].proportions == scorer.score(calls, sample).proportions
