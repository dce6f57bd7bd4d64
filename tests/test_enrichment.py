"""
Stage 6 - Enrichr over-representation and prerank helpers
"""
import pytest
import pandas as pd
import numpy as np

from rnaseq_de.stages.stage6_enrichment import ENRICHMENT_COLUMNS, EnrichmentStage

from conftest import requires_network


@pytest.fixture(scope="module")
def enrichment_dir(pipeline_run):
    return pipeline_run.run_dir / "stage6_enrichment"


@pytest.fixture
def stage(tmp_path):
    return EnrichmentStage(input_dir=tmp_path, output_dir=tmp_path / "out")


class TestEnrichmentOutputs:
    """Offline enrichment against the synthetic .gmt library."""

    def test_columns(self, enrichment_dir):
        df = pd.read_csv(enrichment_dir / "enrichment_shA_vs_control.csv")
        assert list(df.columns) == ENRICHMENT_COLUMNS

    def test_knockdown_response_found(self, enrichment_dir):
        df = pd.read_csv(enrichment_dir / "enrichment_shA_vs_control.csv")
        up_terms = set(df.loc[df["gene_list"] == "up", "term_name"])
        down_terms = set(df.loc[df["gene_list"] == "down", "term_name"])

        assert "SHA_RESPONSE" in up_terms
        assert "KNOCKDOWN_TARGETS" in down_terms
        assert (df["database"] == "pathways").all()

    def test_filters_applied(self, enrichment_dir, sample_config):
        df = pd.read_csv(enrichment_dir / "enrichment_shA_vs_control.csv")
        assert (df["padj"] < 0.05).all()
        assert (df["gene_count"] >= 3).all()

    def test_summary(self, enrichment_dir):
        summary = pd.read_csv(enrichment_dir / "enrichment_summary.csv")
        assert set(summary["gene_list"]) <= {"up", "down", "all"}
        assert summary["significant_terms"].sum() > 0

    def test_gene_to_pathway(self, enrichment_dir):
        mapping = pd.read_csv(enrichment_dir / "gene_to_pathway.csv")
        assert list(mapping.columns) == ["gene_id", "pathway_count", "pathway_ids", "databases"]
        assert mapping["gene_id"].is_unique
        assert (mapping["pathway_count"] >= 1).all()


class TestEnrichmentHelpers:
    """Pure helpers of the enrichment stage."""

    def test_ranking_deduplicates_symbols(self, stage):
        df = pd.DataFrame({
            "symbol": ["A", "A", "B", "C", "D"],
            "stat": [1.0, -5.0, 3.0, np.nan, -2.0],
        })
        ranking = stage._ranking(df)

        assert list(ranking.index) == ["B", "D", "A"]
        assert ranking["A"] == -5.0

    def test_gene_sets_resolution(self, stage, tmp_path):
        assert stage._resolve_gene_sets("KEGG_2021_Human") == "KEGG_2021_Human"
        assert stage._resolve_gene_sets("sets.gmt") == tmp_path / "sets.gmt"
        assert stage._database_label("/data/libs/hallmark.gmt") == "hallmark"

    def test_gene_to_pathway_mapping(self, stage):
        results = pd.DataFrame({
            "database": ["db1", "db1", "db2"],
            "term_name": ["T1", "T2", "T1"],
            "genes": ["A;B", "B", "A"],
        })
        mapping = stage._create_gene_to_pathway_mapping(results).set_index("gene_id")

        assert mapping.loc["A", "pathway_count"] == 2
        assert mapping.loc["A", "databases"] == "db1;db2"
        assert mapping.loc["B", "pathway_ids"] == "db1:T1;db1:T2"

    def test_missing_gmt(self, tmp_path):
        (tmp_path / "comparisons.json").write_text("[]")
        stage = EnrichmentStage(input_dir=tmp_path, output_dir=tmp_path / "out",
                                config={"gene_sets": ["missing.gmt"]})
        assert stage.validate_inputs() is False


class TestPrerank:
    """GSEA prerank on the Wald statistic."""

    def test_prerank_local_library(self, pipeline_run, tmp_path):
        input_dir = pipeline_run.accumulated_dir
        stage = EnrichmentStage(
            input_dir=input_dir, output_dir=tmp_path,
            config={"gene_sets": ["pathways.gmt"], "prerank_permutations": 100,
                    "prerank_min_size": 10, "threads": 1}
        )
        stage.validate_inputs()
        df = stage.annotated["shA_vs_control"]
        result = stage._run_prerank("shA_vs_control", df)

        assert list(result.columns) == ["comparison", "database", "term_name", "es", "nes",
                                        "pvalue", "fdr", "lead_genes"]
        nes = result.set_index("term_name")["nes"]
        assert nes["SHA_RESPONSE"] > 0
        assert nes["KNOCKDOWN_TARGETS"] < 0


@requires_network
class TestEnrichrOnline:

    def test_enrichr_library(self, stage):
        genes = ["CDK1", "CCNB1", "PLK1", "AURKA", "BUB1", "CDC20", "MKI67", "TOP2A"]
        results = stage._run_enrichr(genes, "KEGG_2021_Human", background=None)
        assert results is not None
        assert "Cell cycle" in set(results["term_name"])
