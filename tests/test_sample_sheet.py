"""
Sample sheet loading and sheet-vs-manifest validation
"""
import pytest
import pandas as pd
import numpy as np

from rnaseq_de.exceptions import SampleSheetError
from rnaseq_de.utils.sample_sheet import Sample, SampleSheet


class TestSampleSheetLoading:
    """Reading sample sheets from disk."""

    def test_from_csv(self, sample_sheet_df, tmp_path):
        path = tmp_path / "samples.csv"
        sample_sheet_df.to_csv(path, index=False)

        sheet = SampleSheet.from_csv(path)

        assert len(sheet) == 6
        assert sheet.sample_ids == sample_sheet_df["sample_id"].tolist()

    def test_from_tsv_with_custom_columns(self, sample_sheet_df, tmp_path):
        path = tmp_path / "samples.tsv"
        sample_sheet_df.rename(columns={
            "sample_id": "Run", "group": "shRNA", "treatment": "condition"
        }).to_csv(path, sep="\t", index=False)

        sheet = SampleSheet.from_csv(
            path, sample_column="Run", group_column="shRNA", treatment_column="condition"
        )

        assert list(sheet.frame.columns[:3]) == ["sample_id", "group", "treatment"]
        assert sheet.levels("group") == ["shA", "shB", "control"]

    def test_values_are_stripped(self):
        sheet = SampleSheet(pd.DataFrame({
            "sample_id": [" s1", "s2 "], "group": ["a ", "b"], "treatment": ["x", " y"]
        }))
        assert sheet.sample_ids == ["s1", "s2"]
        assert sheet.levels("treatment") == ["x", "y"]

    def test_samples_with_run_accessions(self, sample_sheet_df):
        df = sample_sheet_df.copy()
        df["run_accession"] = ["SRR1", "SRR2", np.nan, "SRR4", "SRR5", "SRR6"]
        samples = SampleSheet(df).samples

        assert samples[0] == Sample("shA_1", "shA", "knockdown", "SRR1")
        assert samples[2].run_accession is None


class TestSampleSheetValidation:
    """Malformed sheets are rejected."""

    def test_missing_column(self, sample_sheet_df):
        with pytest.raises(SampleSheetError, match="treatment"):
            SampleSheet(sample_sheet_df.drop(columns=["treatment"]))

    def test_missing_label(self, sample_sheet_df):
        df = sample_sheet_df.copy()
        df.loc[3, "group"] = np.nan
        with pytest.raises(SampleSheetError, match="group"):
            SampleSheet(df)

    def test_duplicate_ids(self, sample_sheet_df):
        df = sample_sheet_df.copy()
        df.loc[1, "sample_id"] = "shA_1"
        with pytest.raises(SampleSheetError, match="Duplicate"):
            SampleSheet(df)

    def test_third_treatment_level(self, sample_sheet_df):
        df = sample_sheet_df.copy()
        df.loc[5, "treatment"] = "overexpression"
        with pytest.raises(SampleSheetError, match="two levels"):
            SampleSheet(df)

    def test_single_treatment_level(self, sample_sheet_df):
        df = sample_sheet_df.copy()
        df["treatment"] = "knockdown"
        with pytest.raises(SampleSheetError, match="two levels"):
            SampleSheet(df)

    def test_error_is_value_error(self, sample_sheet_df):
        with pytest.raises(ValueError):
            SampleSheet(sample_sheet_df.drop(columns=["group"]))


class TestDesign:
    """Design table and factor levels."""

    def test_levels_in_order_of_appearance(self, sample_sheet_df):
        sheet = SampleSheet(sample_sheet_df)
        assert sheet.levels("group") == ["shA", "shB", "control"]
        assert sheet.levels("treatment") == ["knockdown", "control"]

    def test_design_frame(self, sample_sheet_df):
        design = SampleSheet(sample_sheet_df).design_frame()

        assert design.index.name == "sample_id"
        assert list(design.columns) == ["group", "treatment"]
        assert design.loc["ctrl_1", "treatment"] == "control"


class TestManifestCheck:
    """Sheet rows must match quantification outputs one-to-one."""

    def test_matching_manifest(self, sample_sheet_df):
        sheet = SampleSheet(sample_sheet_df)
        sheet.check_manifest(reversed(sheet.sample_ids))

    def test_fewer_outputs(self, sample_sheet_df):
        sheet = SampleSheet(sample_sheet_df)
        with pytest.raises(SampleSheetError, match="ctrl_2"):
            sheet.check_manifest(sheet.sample_ids[:-1])

    def test_extra_output(self, sample_sheet_df):
        sheet = SampleSheet(sample_sheet_df)
        with pytest.raises(SampleSheetError, match="not in sheet"):
            sheet.check_manifest(sheet.sample_ids + ["shC_1"])

    def test_renamed_output(self, sample_sheet_df):
        sheet = SampleSheet(sample_sheet_df)
        ids = sheet.sample_ids[:-1] + ["ctrl_3"]
        with pytest.raises(SampleSheetError) as exc:
            sheet.check_manifest(ids)
        assert "ctrl_2" in str(exc.value)
        assert "ctrl_3" in str(exc.value)

    def test_duplicate_outputs(self, sample_sheet_df):
        sheet = SampleSheet(sample_sheet_df)
        with pytest.raises(SampleSheetError, match="6 samples in sheet but 7"):
            sheet.check_manifest(sheet.sample_ids + ["shA_1"])
