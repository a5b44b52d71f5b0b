"""
Unit tests for popancestry.panel module.
"""

from __future__ import annotations

from pathlib import Path

import pytest

from popancestry.errors import FormatError
from popancestry.panel import UNASSIGNED, PanelEntry, PopulationPanel


def _write(tmp_path: Path, text: str) -> Path:
    path = tmp_path / "test.panel"
    path.write_text(text)
    return path


class TestPanelLoading:
    """Tests for reading panel files."""

    def test_load_sample_panel(self, sample_panel: Path) -> None:
        panel = PopulationPanel.from_file(sample_panel)

        assert len(panel) == 5
        assert panel.populations == ["POPX", "POPY", "POPZ"]
        assert panel.population_of("S1") == "POPX"
        assert panel.population_of("S5") == "POPZ"

    def test_unknown_sample_is_unassigned(self, sample_panel: Path) -> None:
        panel = PopulationPanel.from_file(sample_panel)

        assert panel.population_of("S6") == UNASSIGNED
        assert "S6" not in panel

    def test_two_column_panel(self, tmp_path: Path) -> None:
        panel = PopulationPanel.from_file(_write(tmp_path, "sample\tpop\nA\tCEU\nB\tYRI\n"))

        assert panel.populations == ["CEU", "YRI"]
        assert panel.superpopulations == {}

    def test_blank_lines_skipped(self, tmp_path: Path) -> None:
        text = "\nsample\tpop\n\nA\tCEU\n\n"
        panel = PopulationPanel.from_file(_write(tmp_path, text))
        assert panel.members("CEU") == ["A"]

    def test_members_keep_panel_order(self, sample_panel: Path) -> None:
        panel = PopulationPanel.from_file(sample_panel)
        assert panel.members("POPY") == ["S3", "S4"]
        assert panel.members("NOPE") == []

    def test_summary(self, sample_panel: Path) -> None:
        panel = PopulationPanel.from_file(sample_panel)
        assert panel.summary() == {"POPX": 2, "POPY": 2, "POPZ": 1}

    def test_entries_keep_optional_columns(self, sample_panel: Path) -> None:
        entries = {e.sample: e for e in PopulationPanel.from_file(sample_panel)}

        assert entries["S1"].superpopulation == "EUR"
        assert entries["S1"].sex == "male"
        assert entries["S1"].line == 2

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(FileNotFoundError):
            PopulationPanel.from_file(tmp_path / "missing.panel")


class TestPanelErrors:
    """Tests for malformed and conflicting panels."""

    def test_conflicting_assignment(self, tmp_path: Path) -> None:
        """A sample listed under two populations is rejected."""
        text = "sample\tpop\nA\tCEU\nB\tYRI\nA\tYRI\n"
        with pytest.raises(FormatError) as exc_info:
            PopulationPanel.from_file(_write(tmp_path, text))

        assert exc_info.value.line == 4
        assert "CEU (line 2)" in str(exc_info.value)

    def test_identical_duplicate_is_ignored(self, tmp_path: Path) -> None:
        text = "sample\tpop\nA\tCEU\nA\tCEU\n"
        panel = PopulationPanel.from_file(_write(tmp_path, text))

        assert len(panel) == 1
        assert panel.members("CEU") == ["A"]

    def test_single_column_row(self, tmp_path: Path) -> None:
        with pytest.raises(FormatError, match="sample ID and population"):
            PopulationPanel.from_file(_write(tmp_path, "sample\tpop\nA\n"))

    def test_empty_population(self, tmp_path: Path) -> None:
        with pytest.raises(FormatError):
            PopulationPanel.from_file(_write(tmp_path, "sample\tpop\nA\t\n"))

    def test_header_only(self, tmp_path: Path) -> None:
        with pytest.raises(FormatError, match="no samples"):
            PopulationPanel.from_file(_write(tmp_path, "sample\tpop\n"))

    def test_repeated_sample_with_conflicting_superpopulation(self, tmp_path: Path) -> None:
        """Same sample and population but a different superpopulation is rejected."""
        text = "sample\tpop\tsuper_pop\nS1\tCEU\tEUR\nS1\tCEU\tAFR\n"
        with pytest.raises(FormatError) as exc_info:
            PopulationPanel.from_file(_write(tmp_path, text))

        assert exc_info.value.line == 3
        assert "EUR (line 2) and AFR" in str(exc_info.value)

    def test_repeated_sample_without_superpopulation_is_ignored(self, tmp_path: Path) -> None:
        text = "sample\tpop\tsuper_pop\nS1\tCEU\tEUR\nS1\tCEU\n"
        panel = PopulationPanel.from_file(_write(tmp_path, text))

        assert len(panel) == 1
        assert panel.superpopulation_of("CEU") == "EUR"

    def test_superpopulation_conflict(self, tmp_path: Path) -> None:
        text = "sample\tpop\tsuper_pop\nA\tCEU\tEUR\nB\tCEU\tAFR\n"
        with pytest.raises(FormatError, match="superpopulations EUR and AFR"):
            PopulationPanel.from_file(_write(tmp_path, text))


class TestGrouping:
    """Tests for population and superpopulation grouping."""

    def test_group_of_population(self, sample_panel: Path) -> None:
        panel = PopulationPanel.from_file(sample_panel)
        assert panel.group_of("S3") == "POPY"

    def test_group_of_superpopulation(self, sample_panel: Path) -> None:
        panel = PopulationPanel.from_file(sample_panel)

        assert panel.group_of("S3", "superpopulation") == "AFR"
        assert panel.group_of("S6", "superpopulation") == UNASSIGNED

    def test_group_without_superpopulation(self) -> None:
        panel = PopulationPanel.from_entries([PanelEntry("A", "CEU")])
        assert panel.group_of("A", "superpopulation") == UNASSIGNED

    def test_unknown_level(self, sample_panel: Path) -> None:
        panel = PopulationPanel.from_file(sample_panel)
        with pytest.raises(ValueError, match="Unknown grouping level"):
            panel.group_of("S1", "continent")

    def test_superpopulation_of(self, sample_panel: Path) -> None:
        panel = PopulationPanel.from_file(sample_panel)

        assert panel.superpopulation_of("POPX") == "EUR"
        assert panel.superpopulation_of("NOPE") == ""

    def test_population_names(self) -> None:
        assert PopulationPanel.population_name("CEU") == "Utah residents with European ancestry"
        assert PopulationPanel.population_name("AFR") == "Africa"
        assert PopulationPanel.population_name("POPX") == "POPX"
