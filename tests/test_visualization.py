"""
Stage 7 - Figures
"""
import pytest

from rnaseq_de.stages.stage7_visualization import VisualizationStage


@pytest.fixture(scope="module")
def figures_dir(pipeline_run):
    return pipeline_run.run_dir / "stage7_visualization" / "figures"


class TestFigures:

    @pytest.mark.parametrize("name", [
        "pca", "sample_distances", "top_genes_heatmap", "venn_pairwise",
        "volcano_shA_vs_control", "ma_shA_vs_control",
        "volcano_knockdown_vs_control", "enrichment_shA_vs_control",
    ])
    def test_figure_written(self, figures_dir, name):
        assert (figures_dir / f"{name}.png").stat().st_size > 0

    def test_figures_accumulated(self, pipeline_run):
        assert (pipeline_run.accumulated_dir / "figures" / "pca.png").exists()

    def test_svg_output(self, pipeline_run, tmp_path):
        stage = VisualizationStage(
            input_dir=pipeline_run.accumulated_dir, output_dir=tmp_path,
            config={"figure_format": ["png", "svg"], "dpi": 50}
        )
        stage.validate_inputs()
        saved = stage._plot_volcano("shB_vs_control")

        assert sorted(p.rsplit(".", 1)[1] for p in saved) == ["png", "svg"]

    def test_venn_skipped_without_pairwise(self, pipeline_run, tmp_path):
        stage = VisualizationStage(input_dir=pipeline_run.accumulated_dir, output_dir=tmp_path,
                                   config={"dpi": 50})
        stage.validate_inputs()
        stage.comparisons = [c for c in stage.comparisons if c["kind"] == "pooled"]
        assert stage._plot_venn() is None
