"""
Pipeline orchestrator and synthetic dataset
"""
import json
import shutil
import pytest
import pandas as pd

from rnaseq_de.orchestrator import DEPipeline, create_sample_data
from rnaseq_de.utils.expression import load_quant_matrix, manifest_from_frame


class TestSampleData:
    """Synthetic dataset layout."""

    def test_files(self, sample_data_dir):
        for name in ["samples.csv", "quant_manifest.csv", "tx2gene.csv",
                     "gene_symbols.csv", "pathways.gmt", "config.json"]:
            assert (sample_data_dir / name).exists()

    def test_manifest_matches_sheet(self, sample_data_dir):
        sheet = pd.read_csv(sample_data_dir / "samples.csv")
        manifest = pd.read_csv(sample_data_dir / "quant_manifest.csv")
        assert manifest["sample_id"].tolist() == sheet["sample_id"].tolist()

    def test_quant_files(self, sample_data_dir):
        manifest = manifest_from_frame(pd.read_csv(sample_data_dir / "quant_manifest.csv"), "quant_file")
        matrix = load_quant_matrix(manifest, "TPM")
        assert matrix.shape == (1200, 6)
        assert matrix.sum().round().eq(1e6).all()

    def test_reproducible(self, tmp_path):
        create_sample_data(tmp_path / "a", n_genes=60)
        create_sample_data(tmp_path / "b", n_genes=60)
        a = pd.read_csv(tmp_path / "a" / "quant" / "shA_1" / "quant.sf", sep="\t")
        b = pd.read_csv(tmp_path / "b" / "quant" / "shA_1" / "quant.sf", sep="\t")
        pd.testing.assert_frame_equal(a, b)


class TestDEPipeline:
    """Stage ordering, accumulation and failure handling."""

    def test_stage_order(self):
        assert DEPipeline.STAGE_ORDER[0] == "stage1_acquisition"
        assert DEPipeline.STAGE_ORDER[-1] == "stage7_visualization"
        assert set(DEPipeline.STAGE_ORDER) == set(DEPipeline.STAGE_CLASSES)
        assert set(DEPipeline.STAGE_ORDER) == set(DEPipeline.STAGE_DEPENDENCIES)

    def test_run_from_stage4(self, pipeline_run):
        state = pipeline_run.execution_state
        assert state["completed_stages"] == DEPipeline.STAGE_ORDER[3:]
        assert state["failed_stages"] == []

    def test_summary_and_logs(self, pipeline_run):
        with open(pipeline_run.run_dir / "pipeline_summary.json") as f:
            summary = json.load(f)
        assert summary["completed_stages"] == DEPipeline.STAGE_ORDER[3:]
        assert (pipeline_run.run_dir / "pipeline.log").exists()
        assert (pipeline_run.run_dir / "stage4_deg" / "log_stage4_deg.txt").exists()
        assert (pipeline_run.run_dir / "stage4_deg" / "meta_stage4_deg.json").exists()

    def test_outputs_accumulated(self, pipeline_run):
        acc = pipeline_run.accumulated_dir
        for name in ["samples.csv", "pathways.gmt", "comparisons.json",
                     "deg_shA_vs_control_results.csv", "deg_summary.csv", "enrichment_summary.csv"]:
            assert (acc / name).exists()

    def test_config_from_input_dir(self, pipeline_run):
        assert pipeline_run.config["gene_sets"] == ["pathways.gmt"]
        assert pipeline_run.config["min_count"] == 10

    def test_runs_get_separate_directories(self, sample_data_dir, tmp_path):
        first = DEPipeline(input_dir=sample_data_dir, output_dir=tmp_path)
        second = DEPipeline(input_dir=sample_data_dir, output_dir=tmp_path)

        assert first.run_dir != second.run_dir
        assert first.run_dir.is_dir() and second.run_dir.is_dir()
        assert len(list(tmp_path.glob("run_*"))) == 2

    def test_missing_dependency(self, sample_data_dir, tmp_path):
        pipeline = DEPipeline(input_dir=sample_data_dir, output_dir=tmp_path)
        with pytest.raises(FileNotFoundError, match="comparisons.json"):
            pipeline.run_stage("stage5_annotation")
        assert pipeline.execution_state["failed_stages"] == ["stage5_annotation"]

    def test_unknown_stage(self, sample_data_dir, tmp_path):
        pipeline = DEPipeline(input_dir=sample_data_dir, output_dir=tmp_path)
        with pytest.raises(ValueError):
            pipeline.run_stage("stage8_report")
        with pytest.raises(ValueError):
            pipeline.run(stop_after="stage8_report")

    def test_failure_halts_run(self, sample_data_dir, tmp_path):
        pipeline = DEPipeline(
            input_dir=sample_data_dir, output_dir=tmp_path,
            config={"tools": {"prefetch": "prefetch-not-installed-xyz"}}
        )
        state = pipeline.run(stop_after="stage4_deg")

        assert state["failed_stages"] == ["stage1_acquisition"]
        assert state["completed_stages"] == []
        assert not (pipeline.run_dir / "stage2_qc").exists()

    def test_resume_in_existing_run_dir(self, pipeline_run, sample_data_dir, tmp_path):
        run_dir = tmp_path / "run_copy"
        shutil.copytree(pipeline_run.run_dir, run_dir)

        pipeline = DEPipeline(input_dir=sample_data_dir, output_dir=tmp_path,
                              run_dir=run_dir, config={"dpi": 50})
        state = pipeline.run_from("stage6_enrichment")

        assert state["failed_stages"] == []
        assert state["completed_stages"] == ["stage6_enrichment", "stage7_visualization"]
        # Earlier outputs in the run directory were kept, not replaced by inputs
        symbols = pd.read_csv(run_dir / "accumulated" / "gene_symbols.csv")
        assert len(symbols) < 600
