"""
Command-line interface
"""
import json
import pytest

from rnaseq_de.cli import build_parser, main


class TestParser:

    def test_run_arguments(self):
        args = build_parser().parse_args(
            ["run", "-i", "data", "-o", "out", "--stop-after", "stage3_quant", "-t", "8"]
        )
        assert args.command == "run"
        assert args.stop_after == "stage3_quant"
        assert args.threads == 8

    def test_unknown_stage_rejected(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["stage", "stage9_unknown", "-i", "data", "-o", "out"])

    def test_command_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])


class TestMain:

    def test_sample_data(self, tmp_path):
        assert main(["sample-data", str(tmp_path / "data"), "--n-genes", "120"]) == 0
        assert (tmp_path / "data" / "samples.csv").exists()
        assert len(list((tmp_path / "data" / "quant").iterdir())) == 6

    def test_failed_run_exit_code(self, sample_data_dir, tmp_path):
        config_file = tmp_path / "extra.json"
        config_file.write_text(json.dumps({"tools": {"prefetch": "prefetch-not-installed-xyz"}}))

        code = main(["run", "-i", str(sample_data_dir), "-o", str(tmp_path / "out"),
                     "-c", str(config_file), "--stop-after", "stage1_acquisition"])
        assert code == 1

    def test_single_stage(self, sample_data_dir, tmp_path):
        code = main(["stage", "stage4_deg", "-i", str(sample_data_dir), "-o", str(tmp_path)])
        assert code == 0

        run_dirs = list(tmp_path.glob("run_*"))
        assert len(run_dirs) == 1
        assert (run_dirs[0] / "stage4_deg" / "deg_knockdown_vs_control_results.csv").exists()

    def test_single_stage_failure(self, sample_data_dir, tmp_path):
        code = main(["stage", "stage6_enrichment", "-i", str(sample_data_dir), "-o", str(tmp_path)])
        assert code == 1
