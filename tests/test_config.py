"""
Configuration loading and logging setup
"""
import json
import logging
import pytest

from rnaseq_de.config import DEFAULT_CONFIG, load_config, merge_config, setup_logging


class TestLoadConfig:
    """Precedence: defaults < config.json < environment < overrides."""

    def test_defaults(self, tmp_path, monkeypatch):
        monkeypatch.delenv("RNASEQ_THREADS", raising=False)
        config = load_config(tmp_path)

        assert config["min_count"] == 10
        assert config["min_samples"] == 2
        assert config["lfc_cutoff"] == 2.0
        assert config["padj_cutoff"] == 0.05
        assert config["reference_group"] == "control"

    def test_config_file(self, tmp_path, monkeypatch):
        monkeypatch.delenv("RNASEQ_THREADS", raising=False)
        with open(tmp_path / "config.json", "w") as f:
            json.dump({"threads": 2, "tools": {"salmon": "/opt/salmon/bin/salmon"}}, f)

        config = load_config(tmp_path)

        assert config["threads"] == 2
        assert config["tools"]["salmon"] == "/opt/salmon/bin/salmon"
        # Other executables keep their defaults
        assert config["tools"]["fastqc"] == "fastqc"

    def test_environment_beats_file(self, tmp_path, monkeypatch):
        with open(tmp_path / "config.json", "w") as f:
            json.dump({"threads": 2}, f)
        monkeypatch.setenv("RNASEQ_THREADS", "16")
        monkeypatch.setenv("RNASEQ_ORGANISM", "mouse")

        config = load_config(tmp_path)

        assert config["threads"] == 16
        assert config["organism"] == "mouse"

    def test_overrides_win(self, tmp_path, monkeypatch):
        monkeypatch.setenv("RNASEQ_THREADS", "16")
        config = load_config(tmp_path, overrides={"threads": 1})
        assert config["threads"] == 1

    def test_defaults_not_mutated(self, tmp_path):
        load_config(tmp_path, overrides={"tools": {"salmon": "other"}})
        assert DEFAULT_CONFIG["tools"]["salmon"] == "salmon"


class TestMergeConfig:

    def test_nested_merge(self):
        merged = merge_config({"a": 1, "tools": {"x": "x", "y": "y"}}, None, {"tools": {"y": "z"}})
        assert merged == {"a": 1, "tools": {"x": "x", "y": "z"}}

    def test_later_wins(self):
        assert merge_config({"a": 1}, {"a": 2})["a"] == 2


class TestLogging:

    def test_no_duplicate_handlers(self):
        logger = setup_logging("rnaseq_de.test_logging")
        n_handlers = len(logger.handlers)
        assert setup_logging("rnaseq_de.test_logging") is logger
        assert len(logger.handlers) == n_handlers

    def test_log_file(self, tmp_path, monkeypatch):
        monkeypatch.setenv("LOG_FILE", str(tmp_path / "app.log"))
        logger = setup_logging("rnaseq_de.test_log_file")
        logger.warning("written")
        for handler in logger.handlers:
            handler.flush()
        assert "written" in (tmp_path / "app.log").read_text()
        for handler in list(logger.handlers):
            logger.removeHandler(handler)
            handler.close()
