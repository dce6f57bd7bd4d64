"""
RNA-seq DE Pipeline - Test Configuration and Fixtures
"""
import os
import shutil
import pytest
import pandas as pd
import numpy as np
from pathlib import Path

from rnaseq_de.config import load_config
from rnaseq_de.orchestrator import DEPipeline, create_sample_data


@pytest.fixture(scope="session")
def project_root():
    """Return project root directory."""
    return Path(__file__).parent.parent


@pytest.fixture(scope="session")
def sample_data_dir(tmp_path_factory):
    """Synthetic 6-sample Salmon dataset (shA, shB, control x 2 replicates)."""
    data_dir = tmp_path_factory.mktemp("sample_data")
    create_sample_data(data_dir)
    return data_dir


@pytest.fixture(scope="session")
def sample_config(sample_data_dir):
    """Resolved config for the synthetic dataset."""
    return load_config(sample_data_dir)


@pytest.fixture(scope="session")
def pipeline_run(sample_data_dir, tmp_path_factory):
    """Stages 4-7 run once on the synthetic dataset."""
    output_dir = tmp_path_factory.mktemp("pipeline_output")
    pipeline = DEPipeline(input_dir=sample_data_dir, output_dir=output_dir)
    state = pipeline.run_from("stage4_deg")
    assert state["failed_stages"] == [], state["stage_results"]
    return pipeline


@pytest.fixture
def sample_sheet_df():
    """Sample sheet for two knockdown variants and a control."""
    return pd.DataFrame({
        "sample_id": ["shA_1", "shA_2", "shB_1", "shB_2", "ctrl_1", "ctrl_2"],
        "group": ["shA", "shA", "shB", "shB", "control", "control"],
        "treatment": ["knockdown"] * 4 + ["control"] * 2,
    })


@pytest.fixture
def sample_count_matrix():
    """Small genes x samples count matrix with a few low-count genes."""
    rng = np.random.default_rng(42)
    samples = ["shA_1", "shA_2", "shB_1", "shB_2", "ctrl_1", "ctrl_2"]
    counts = rng.negative_binomial(10, 0.05, size=(40, 6))
    counts[30:] = rng.integers(0, 12, size=(10, 6))

    df = pd.DataFrame(counts, index=[f"ENSG{i:011d}" for i in range(40)], columns=samples)
    df.index.name = "gene_id"
    return df


@pytest.fixture
def sample_deg_results():
    """DE results spanning every side of the significance thresholds."""
    return pd.DataFrame({
        "gene_id": [f"GENE{i}" for i in range(8)],
        "baseMean": [500.0] * 8,
        "log2FC": [3.0, -3.0, 2.0, -2.0, 2.5, -2.5, 5.0, 0.1],
        "padj": [0.01, 0.01, 0.001, 0.001, 0.05, 0.2, np.nan, 0.0001],
    })


@pytest.fixture
def copy_dir(tmp_path):
    """Copy a directory into the test's tmp_path."""
    def _copy(src: Path, name: str = "input") -> Path:
        dest = tmp_path / name
        shutil.copytree(src, dest)
        return dest
    return _copy


@pytest.fixture
def fake_tool(tmp_path):
    """Write an executable shell script standing in for an external tool."""
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir(exist_ok=True)

    def _write(name: str, body: str) -> str:
        path = bin_dir / name
        path.write_text("#!/bin/sh\n" + body)
        path.chmod(0o755)
        return str(path)
    return _write


def _has_r() -> bool:
    if shutil.which("R") is None:
        return False
    try:
        import rpy2  # noqa: F401
    except ImportError:
        return False
    return True


# Skip markers for tests requiring specific resources
requires_r = pytest.mark.skipif(not _has_r(), reason="R / rpy2 not installed")

requires_network = pytest.mark.skipif(
    not os.environ.get("RNASEQ_NETWORK_TESTS"),
    reason="Network tests disabled (set RNASEQ_NETWORK_TESTS=1)"
)
