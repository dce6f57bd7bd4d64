"""
Sample sheet loading and validation.

The sample sheet maps each sample identifier to a group label (knockdown
variant or control) and a binary treatment label. Column names are
configurable; internally they are renamed to ``sample_id``, ``group`` and
``treatment``.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Optional

import pandas as pd

from ..exceptions import SampleSheetError


@dataclass(frozen=True)
class Sample:
    sample_id: str
    group: str
    treatment: str
    run_accession: Optional[str] = None


class SampleSheet:
    """Fixed, ordered set of samples for one analysis."""

    REQUIRED = ("sample_id", "group", "treatment")

    def __init__(self, frame: pd.DataFrame):
        missing = [c for c in self.REQUIRED if c not in frame.columns]
        if missing:
            raise SampleSheetError(f"Sample sheet missing columns: {missing}")

        frame = frame.copy()
        for col in self.REQUIRED:
            if frame[col].isna().any():
                bad = frame.loc[frame[col].isna()].index.tolist()
                raise SampleSheetError(f"Missing '{col}' values in rows {bad}")
            frame[col] = frame[col].astype(str).str.strip()

        duplicated = frame.loc[frame["sample_id"].duplicated(), "sample_id"].tolist()
        if duplicated:
            raise SampleSheetError(f"Duplicate sample identifiers: {duplicated}")

        treatments = list(dict.fromkeys(frame["treatment"]))
        if len(treatments) != 2:
            raise SampleSheetError(
                f"Treatment must have exactly two levels (knockdown/control), got {treatments}"
            )

        self.frame = frame.reset_index(drop=True)

    @classmethod
    def from_csv(
        cls,
        path: Path,
        sample_column: str = "sample_id",
        group_column: str = "group",
        treatment_column: str = "treatment"
    ) -> "SampleSheet":
        """Read a comma- or tab-delimited sample sheet."""
        path = Path(path)
        sep = "\t" if path.suffix in (".tsv", ".txt") else ","
        frame = pd.read_csv(path, sep=sep, dtype=str)
        frame = frame.rename(columns={
            sample_column: "sample_id",
            group_column: "group",
            treatment_column: "treatment",
        })
        return cls(frame)

    def __len__(self) -> int:
        return len(self.frame)

    @property
    def sample_ids(self) -> List[str]:
        return self.frame["sample_id"].tolist()

    @property
    def samples(self) -> List[Sample]:
        has_run = "run_accession" in self.frame.columns
        return [
            Sample(
                sample_id=row["sample_id"],
                group=row["group"],
                treatment=row["treatment"],
                run_accession=(
                    row["run_accession"]
                    if has_run and pd.notna(row["run_accession"]) else None
                ),
            )
            for _, row in self.frame.iterrows()
        ]

    def levels(self, column: str) -> List[str]:
        """Distinct values of a column, in order of first appearance."""
        return list(dict.fromkeys(self.frame[column]))

    def design_frame(self) -> pd.DataFrame:
        """Sample-indexed design table (group, treatment) for model fitting."""
        return self.frame.set_index("sample_id")[["group", "treatment"]]

    def check_manifest(self, identifiers: Iterable[str], what: str = "quantification outputs") -> None:
        """Require a one-to-one match between sheet rows and stage outputs."""
        identifiers = list(identifiers)
        sheet_ids = set(self.sample_ids)
        output_ids = set(identifiers)

        problems = []
        if len(identifiers) != len(self):
            problems.append(f"{len(self)} samples in sheet but {len(identifiers)} {what}")
        missing = sorted(sheet_ids - output_ids)
        if missing:
            problems.append(f"no {what} for: {missing}")
        extra = sorted(output_ids - sheet_ids)
        if extra:
            problems.append(f"{what} not in sheet: {extra}")

        if problems:
            raise SampleSheetError("; ".join(problems))
