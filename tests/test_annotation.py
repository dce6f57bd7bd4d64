"""
Stage 5 - Symbol annotation and significance flagging
"""
import json
import pytest
import pandas as pd
import numpy as np

from rnaseq_de.stages.stage5_annotation import AnnotationStage


@pytest.fixture(scope="module")
def annotation_dir(pipeline_run):
    return pipeline_run.run_dir / "stage5_annotation"


@pytest.fixture
def small_deg_input(tmp_path, sample_deg_results):
    """Input dir with one comparison and Ensembl gene IDs, no symbol table."""
    input_dir = tmp_path / "input"
    input_dir.mkdir()
    df = sample_deg_results.copy()
    df["gene_id"] = [f"ENSG{i:011d}.{i + 1}" for i in range(len(df))]
    df.to_csv(input_dir / "deg_kd_vs_control_results.csv", index=False)
    with open(input_dir / "comparisons.json", "w") as f:
        json.dump([{"name": "kd_vs_control", "factor": "group",
                    "numerator": "kd", "denominator": "control", "kind": "pairwise"}], f)
    return input_dir


class TestAnnotatedOutputs:
    """Annotation of the synthetic pipeline run."""

    def test_significance_definition(self, annotation_dir, pipeline_run):
        for comp in pipeline_run.execution_state["stage_results"]["stage4_deg"]["comparisons"]:
            df = pd.read_csv(annotation_dir / f"deg_{comp}_annotated.csv")
            expected = (((df["log2FC"] > 2) & (df["padj"] < 0.05))
                        | ((df["log2FC"] < -2) & (df["padj"] < 0.05)))
            assert (df["significant"] == expected).all()

    def test_significant_table(self, annotation_dir):
        sig = pd.read_csv(annotation_dir / "deg_shA_vs_control_significant.csv")
        assert len(sig) > 0
        assert sig["significant"].all()
        assert set(sig["direction"]) <= {"up", "down"}
        assert sig["padj"].is_monotonic_increasing

    def test_symbols_from_table(self, annotation_dir):
        df = pd.read_csv(annotation_dir / "deg_shA_vs_control_annotated.csv").set_index("gene_id")
        assert df.loc["ENSG00000000001", "symbol"] == "TP53"

    def test_summary_counts(self, annotation_dir):
        summary = pd.read_csv(annotation_dir / "deg_summary.csv").set_index("comparison")
        sig = pd.read_csv(annotation_dir / "deg_shB_vs_control_significant.csv")

        row = summary.loc["shB_vs_control"]
        assert row["significant"] == len(sig)
        assert row["up"] + row["down"] == row["significant"]
        assert row["denominator"] == "control"


class TestSymbolLookup:
    """mygene lookup and its failure mode."""

    def test_mygene_lookup(self, small_deg_input, tmp_path, monkeypatch):
        import mygene

        class FakeMyGeneInfo:
            def querymany(self, ids, scopes, fields, species, verbose):
                assert scopes == "ensembl.gene"
                assert all("." not in i for i in ids)
                return [{"query": i, "symbol": f"SYM{n}"} for n, i in enumerate(ids[:3])] + \
                       [{"query": i, "notfound": True} for i in ids[3:]]

        monkeypatch.setattr(mygene, "MyGeneInfo", FakeMyGeneInfo)
        stage = AnnotationStage(input_dir=small_deg_input, output_dir=tmp_path / "out")
        stage.execute()

        df = pd.read_csv(tmp_path / "out" / "deg_kd_vs_control_annotated.csv").set_index("gene_id")
        assert df.loc["ENSG00000000000.1", "symbol"] == "SYM0"
        # Unresolved genes keep their ID
        assert df.loc["ENSG00000000007.8", "symbol"] == "ENSG00000000007.8"

    def test_mygene_failure_keeps_ids(self, small_deg_input, tmp_path, monkeypatch):
        import mygene

        class BrokenMyGeneInfo:
            def querymany(self, *args, **kwargs):
                raise ConnectionError("offline")

        monkeypatch.setattr(mygene, "MyGeneInfo", BrokenMyGeneInfo)
        stage = AnnotationStage(input_dir=small_deg_input, output_dir=tmp_path / "out")
        stage.execute()

        df = pd.read_csv(tmp_path / "out" / "deg_kd_vs_control_annotated.csv")
        assert (df["symbol"] == df["gene_id"]).all()

    def test_flags_and_order(self, small_deg_input, tmp_path):
        stage = AnnotationStage(input_dir=small_deg_input, output_dir=tmp_path / "out",
                                config={"use_mygene": False})
        stage.execute()

        df = pd.read_csv(tmp_path / "out" / "deg_kd_vs_control_annotated.csv")
        assert df["significant"].sum() == 2
        # Sorted by padj, missing padj last
        assert np.isnan(df["padj"].iloc[-1])
        assert df["padj"].dropna().is_monotonic_increasing

        summary = pd.read_csv(tmp_path / "out" / "deg_summary.csv")
        assert summary.loc[0, "tested"] == 7
        assert summary.loc[0, "up"] == 1
        assert summary.loc[0, "down"] == 1
