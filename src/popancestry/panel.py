"""
Sample-to-population panel.

Loads 1000 Genomes style panel files (sample, pop, super_pop, gender)
and answers population membership queries.
"""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import Path

from popancestry.errors import FormatError

UNASSIGNED = "unassigned"

# 1000 Genomes phase 3 population codes
POPULATION_NAMES = {
    "CHB": "Han Chinese in Beijing",
    "JPT": "Japanese in Tokyo",
    "CHS": "Southern Han Chinese",
    "CDX": "Chinese Dai in Xishuangbanna",
    "KHV": "Kinh in Ho Chi Minh City",
    "CEU": "Utah residents with European ancestry",
    "TSI": "Toscani in Italia",
    "FIN": "Finnish in Finland",
    "GBR": "British in England and Scotland",
    "IBS": "Iberian populations in Spain",
    "YRI": "Yoruba in Ibadan, Nigeria",
    "LWK": "Luhya in Webuye, Kenya",
    "GWD": "Gambian in Western Division",
    "MSL": "Mende in Sierra Leone",
    "ESN": "Esan in Nigeria",
    "ASW": "African Ancestry in Southwest US",
    "ACB": "African Caribbean in Barbados",
    "MXL": "Mexican Ancestry in Los Angeles",
    "PUR": "Puerto Rican in Puerto Rico",
    "CLM": "Colombian in Medellin",
    "PEL": "Peruvian in Lima",
    "GIH": "Gujarati Indian in Houston",
    "PJL": "Punjabi in Lahore, Pakistan",
    "BEB": "Bengali in Bangladesh",
    "STU": "Sri Lankan Tamil in the UK",
    "ITU": "Indian Telugu in the UK",
}

SUPERPOPULATION_REGIONS = {
    "EAS": "East Asia",
    "EUR": "Europe",
    "AFR": "Africa",
    "AMR": "Americas",
    "SAS": "South Asia",
}


@dataclass(frozen=True)
class PanelEntry:
    """
    One panel row.

    Attributes:
        sample: Sample identifier
        population: Population code
        superpopulation: Superpopulation code, '' when absent
        sex: Sex label, '' when absent
        line: Line number the sample was first declared on
    """

    sample: str
    population: str
    superpopulation: str = ""
    sex: str = ""
    line: int = 0


class PopulationPanel:
    """
    Mapping of sample IDs to population codes.

    A sample belongs to at most one population. Membership comes only
    from the panel file.
    """

    def __init__(self) -> None:
        self._entries: dict[str, PanelEntry] = {}
        self._members: dict[str, list[str]] = {}
        self._superpopulations: dict[str, str] = {}

    @classmethod
    def from_file(cls, path: Path | str) -> PopulationPanel:
        """
        Load a tab-delimited panel file with one header line.

        Columns: sample ID, population code, superpopulation (optional),
        sex (optional).

        Args:
            path: Path to panel file

        Returns:
            Populated PopulationPanel

        Raises:
            FileNotFoundError: If the file doesn't exist
            FormatError: If a row is malformed or a sample is assigned to
                conflicting populations
        """
        panel = cls()
        path = Path(path)

        with open(path, encoding="utf-8") as f:
            header_seen = False
            for line_number, raw in enumerate(f, start=1):
                if not raw.strip():
                    continue
                if not header_seen:
                    header_seen = True
                    continue
                parts = [p.strip() for p in raw.rstrip("\r\n").split("\t")]
                if len(parts) < 2 or not parts[0] or not parts[1]:
                    raise FormatError(
                        "expected sample ID and population code", path, line_number
                    )
                entry = PanelEntry(
                    sample=parts[0],
                    population=parts[1],
                    superpopulation=parts[2] if len(parts) > 2 else "",
                    sex=parts[3] if len(parts) > 3 else "",
                    line=line_number,
                )
                panel._add(entry, path)

        if not panel._entries:
            raise FormatError("no samples found in panel", path)

        return panel

    @classmethod
    def from_entries(cls, entries: list[PanelEntry]) -> PopulationPanel:
        """Build a panel from in-memory entries."""
        panel = cls()
        for entry in entries:
            panel._add(entry, None)
        return panel

    def _add(self, entry: PanelEntry, path: Path | None) -> None:
        existing = self._entries.get(entry.sample)
        if existing is not None:
            if existing.population != entry.population:
                raise FormatError(
                    f"sample {entry.sample} assigned to {existing.population} "
                    f"(line {existing.line}) and {entry.population}",
                    path,
                    entry.line or None,
                )
            if (
                existing.superpopulation
                and entry.superpopulation
                and existing.superpopulation != entry.superpopulation
            ):
                raise FormatError(
                    f"sample {entry.sample} assigned to superpopulation "
                    f"{existing.superpopulation} (line {existing.line}) and "
                    f"{entry.superpopulation}",
                    path,
                    entry.line or None,
                )
            return

        known_super = self._superpopulations.get(entry.population)
        if entry.superpopulation and known_super and known_super != entry.superpopulation:
            raise FormatError(
                f"population {entry.population} assigned to superpopulations "
                f"{known_super} and {entry.superpopulation}",
                path,
                entry.line or None,
            )

        self._entries[entry.sample] = entry
        self._members.setdefault(entry.population, []).append(entry.sample)
        if entry.superpopulation:
            self._superpopulations[entry.population] = entry.superpopulation

    def population_of(self, sample: str) -> str:
        """Return the population code of a sample, or UNASSIGNED."""
        entry = self._entries.get(sample)
        return entry.population if entry else UNASSIGNED

    def superpopulation_of(self, population: str) -> str:
        """Return the superpopulation code for a population ('' if unknown)."""
        return self._superpopulations.get(population, "")

    def group_of(self, sample: str, level: str = "population") -> str:
        """
        Return the group a sample is counted under.

        Args:
            sample: Sample ID
            level: 'population' or 'superpopulation'

        Returns:
            Group code, or UNASSIGNED when the sample (or its
            superpopulation) is unknown
        """
        population = self.population_of(sample)
        if level == "population" or population == UNASSIGNED:
            return population
        if level == "superpopulation":
            return self._superpopulations.get(population) or UNASSIGNED
        raise ValueError(f"Unknown grouping level: {level}")

    def members(self, population: str) -> list[str]:
        """Return sample IDs assigned to a population, in panel order."""
        return list(self._members.get(population, []))

    @property
    def populations(self) -> list[str]:
        """Return population codes, sorted."""
        return sorted(self._members)

    @property
    def superpopulations(self) -> dict[str, str]:
        """Return population -> superpopulation mapping."""
        return dict(self._superpopulations)

    @staticmethod
    def population_name(code: str) -> str:
        """Return a descriptive name for a population or superpopulation code."""
        return POPULATION_NAMES.get(code) or SUPERPOPULATION_REGIONS.get(code) or code

    def summary(self) -> dict[str, int]:
        """Return sample counts per population."""
        return {pop: len(self._members[pop]) for pop in self.populations}

    def __contains__(self, sample: str) -> bool:
        return sample in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[PanelEntry]:
        return iter(self._entries.values())
