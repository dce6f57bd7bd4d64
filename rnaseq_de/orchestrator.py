"""
RNA-seq DE Pipeline Orchestrator

Runs the seven stages once, in fixed order. Every run gets its own
timestamped directory; each stage writes to run_<ts>/<stage>/ and its CSV/JSON
outputs are carried forward through run_<ts>/accumulated/, which is the input
directory of every stage.

Usage:
    from rnaseq_de import DEPipeline

    pipeline = DEPipeline(
        input_dir="./data",
        output_dir="./results",
        config={"threads": 8}
    )

    # Run full pipeline
    results = pipeline.run()

    # Or run specific stages
    pipeline.run_stage("stage4_deg")
    pipeline.run_from("stage5_annotation")  # Resume from stage 5
"""

import json
import logging
import shutil
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

import numpy as np
import pandas as pd

from .config import LOG_FORMAT, load_config
from .stages import (
    AcquisitionStage,
    AnnotationStage,
    DEGStage,
    EnrichmentStage,
    QCTrimStage,
    QuantificationStage,
    VisualizationStage,
)


class DEPipeline:
    """Orchestrator for the knockdown RNA-seq DE pipeline."""

    STAGE_ORDER = [
        "stage1_acquisition",
        "stage2_qc",
        "stage3_quant",
        "stage4_deg",
        "stage5_annotation",
        "stage6_enrichment",
        "stage7_visualization",
    ]

    STAGE_CLASSES = {
        "stage1_acquisition": AcquisitionStage,
        "stage2_qc": QCTrimStage,
        "stage3_quant": QuantificationStage,
        "stage4_deg": DEGStage,
        "stage5_annotation": AnnotationStage,
        "stage6_enrichment": EnrichmentStage,
        "stage7_visualization": VisualizationStage,
    }

    # Outputs each stage needs from previous stages (besides the sample sheet)
    STAGE_DEPENDENCIES = {
        "stage1_acquisition": [],
        "stage2_qc": ["fastq_manifest.csv"],
        "stage3_quant": ["fastq_manifest.csv"],
        "stage4_deg": ["quant_manifest.csv"],
        "stage5_annotation": ["comparisons.json"],
        "stage6_enrichment": ["comparisons.json", "deg_summary.csv"],
        "stage7_visualization": ["comparisons.json", "vst_counts.csv", "deg_summary.csv"],
    }

    INPUT_PATTERNS = ["*.csv", "*.tsv", "*.txt", "*.json", "*.gmt"]

    def __init__(
        self,
        input_dir: Path,
        output_dir: Path,
        config: Optional[Dict[str, Any]] = None,
        run_dir: Optional[Path] = None
    ):
        self.input_dir = Path(input_dir)
        self.output_dir = Path(output_dir)
        self.config = load_config(self.input_dir, config)

        # Reuse an existing run directory (resume), or create a timestamped one
        if run_dir:
            self.run_dir = Path(run_dir)
            self.run_dir.mkdir(parents=True, exist_ok=True)
        else:
            self.run_dir = self._new_run_dir()
        self.accumulated_dir = self.run_dir / "accumulated"

        self.logger = self._setup_logging()

        self.execution_state: Dict[str, Any] = {
            "run_id": self.run_dir.name,
            "start_time": None,
            "end_time": None,
            "completed_stages": [],
            "failed_stages": [],
            "stage_results": {},
        }

    def _new_run_dir(self) -> Path:
        """Create run_<timestamp>, suffixed when a run started in the same second."""
        self.output_dir.mkdir(parents=True, exist_ok=True)
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        run_dir = self.output_dir / f"run_{timestamp}"
        suffix = 1
        while True:
            try:
                run_dir.mkdir()
                return run_dir
            except FileExistsError:
                suffix += 1
                run_dir = self.output_dir / f"run_{timestamp}_{suffix}"

    def _setup_logging(self) -> logging.Logger:
        """Setup pipeline-level logging."""
        logger = logging.getLogger("rnaseq_de")
        logger.setLevel(logging.DEBUG)

        for handler in list(logger.handlers):
            logger.removeHandler(handler)
            handler.close()

        fh = logging.FileHandler(self.run_dir / "pipeline.log", mode='a', encoding='utf-8')
        fh.setLevel(logging.DEBUG)

        ch = logging.StreamHandler()
        ch.setLevel(logging.INFO)

        formatter = logging.Formatter(LOG_FORMAT)
        fh.setFormatter(formatter)
        ch.setFormatter(formatter)

        logger.addHandler(fh)
        logger.addHandler(ch)

        return logger

    def _copy_initial_inputs(self, overwrite: bool = True) -> None:
        """Copy initial input files to accumulated directory."""
        self.accumulated_dir.mkdir(exist_ok=True)

        for pattern in self.INPUT_PATTERNS:
            for f in self.input_dir.glob(pattern):
                dest = self.accumulated_dir / f.name
                if overwrite or not dest.exists():
                    shutil.copy2(f, dest)

    def _accumulate_outputs(self, stage_name: str) -> None:
        """Copy stage outputs to accumulated directory for next stages."""
        self.accumulated_dir.mkdir(exist_ok=True)

        stage_output_dir = self.run_dir / stage_name
        if not stage_output_dir.exists():
            return

        for pattern in ["*.csv", "*.json"]:
            for f in stage_output_dir.glob(pattern):
                shutil.copy2(f, self.accumulated_dir / f.name)

        figures_dir = stage_output_dir / "figures"
        if figures_dir.exists():
            dest_figures = self.accumulated_dir / "figures"
            if dest_figures.exists():
                shutil.rmtree(dest_figures)
            shutil.copytree(figures_dir, dest_figures)

    def _check_dependencies(self, stage_name: str) -> None:
        missing = [
            name for name in self.STAGE_DEPENDENCIES[stage_name]
            if not (self.accumulated_dir / name).exists()
        ]
        if missing:
            raise FileNotFoundError(
                f"{stage_name} needs {missing} - run the earlier stages or provide them in {self.input_dir}"
            )

    def run_stage(self, stage_name: str, config_override: Optional[Dict] = None) -> Dict[str, Any]:
        """Run a single stage."""
        if stage_name not in self.STAGE_CLASSES:
            raise ValueError(f"Unknown stage: {stage_name}")

        self.logger.info(f"{'='*60}")
        self.logger.info(f"Running {stage_name}")
        self.logger.info(f"{'='*60}")

        if not self.accumulated_dir.exists():
            self._copy_initial_inputs()

        stage_config = {**self.config, **(config_override or {})}
        StageClass = self.STAGE_CLASSES[stage_name]

        try:
            self._check_dependencies(stage_name)
            stage = StageClass(
                input_dir=self.accumulated_dir,
                output_dir=self.run_dir / stage_name,
                config=stage_config
            )
            results = stage.execute()
        except Exception as e:
            self.logger.error(f"Stage {stage_name} failed: {e}")
            self.execution_state["failed_stages"].append(stage_name)
            self.execution_state["stage_results"][stage_name] = {"error": str(e)}
            raise

        self.execution_state["completed_stages"].append(stage_name)
        self.execution_state["stage_results"][stage_name] = results
        self._accumulate_outputs(stage_name)

        return results

    def _run_stages(self, stages: List[str]) -> Dict[str, Any]:
        self.logger.info(f"Stages to run: {stages}")

        for stage_name in stages:
            try:
                self.run_stage(stage_name)
            except Exception as e:
                self.logger.error(f"Pipeline stopped at {stage_name}: {e}")
                break

        self.execution_state["end_time"] = datetime.now().isoformat()
        self._save_execution_state()

        self.logger.info(f"{'='*60}")
        self.logger.info("Pipeline Complete" if not self.execution_state["failed_stages"] else "Pipeline Failed")
        self.logger.info(f"Completed: {len(self.execution_state['completed_stages'])} stages")
        self.logger.info(f"Failed: {self.execution_state['failed_stages']}")
        self.logger.info(f"Results: {self.run_dir}")
        self.logger.info(f"{'='*60}")

        return self.execution_state

    def run(self, stop_after: Optional[str] = None) -> Dict[str, Any]:
        """Run the full pipeline or until a specific stage."""
        self.execution_state["start_time"] = datetime.now().isoformat()

        self.logger.info("Starting RNA-seq DE Pipeline")
        self.logger.info(f"Input directory: {self.input_dir}")
        self.logger.info(f"Run directory: {self.run_dir}")

        self._copy_initial_inputs()

        if stop_after:
            if stop_after not in self.STAGE_ORDER:
                raise ValueError(f"Unknown stage: {stop_after}")
            stages = self.STAGE_ORDER[:self.STAGE_ORDER.index(stop_after) + 1]
        else:
            stages = self.STAGE_ORDER

        return self._run_stages(stages)

    def run_from(self, stage_name: str) -> Dict[str, Any]:
        """Resume pipeline from a specific stage."""
        if stage_name not in self.STAGE_ORDER:
            raise ValueError(f"Unknown stage: {stage_name}")

        self.execution_state["start_time"] = datetime.now().isoformat()
        self.logger.info(f"Resuming from {stage_name}")

        # Outputs of an earlier run in this directory take precedence over inputs
        self._copy_initial_inputs(overwrite=False)

        return self._run_stages(self.STAGE_ORDER[self.STAGE_ORDER.index(stage_name):])

    def _save_execution_state(self) -> None:
        """Save execution state to JSON."""
        state_file = self.run_dir / "pipeline_summary.json"
        with open(state_file, 'w', encoding='utf-8') as f:
            json.dump(self.execution_state, f, indent=2, default=str)


def create_sample_data(output_dir: Path, n_genes: int = 600, seed: int = 42) -> None:
    """
    Create a synthetic 6-sample knockdown dataset (two shRNAs + control, two
    replicates each) as Salmon outputs, so stages 4-7 run without downloads.
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    rng = np.random.default_rng(seed)

    samples = ["shA_1", "shA_2", "shB_1", "shB_2", "ctrl_1", "ctrl_2"]
    groups = ["shA", "shA", "shB", "shB", "control", "control"]
    treatments = ["knockdown"] * 4 + ["control"] * 2

    genes = [f"ENSG{i + 1:011d}" for i in range(n_genes)]
    known = ['TP53', 'MYC', 'EGFR', 'KRAS', 'PTEN', 'CDK4', 'CCND1', 'E2F1',
             'MCM2', 'PCNA', 'TOP2A', 'MKI67', 'BIRC5', 'AURKA', 'PLK1']
    symbols = known + [f"GENE{i}" for i in range(len(known), n_genes)]

    # Mean expression; the last sixth of the genes stays below the count filter
    n_unexpressed = n_genes // 6
    means = rng.lognormal(mean=6.0, sigma=1.0, size=n_genes)
    if n_unexpressed:
        means[-n_unexpressed:] = 1.0

    # Fold changes per group (rows: genes, columns: shA, shB, control)
    fold = np.ones((n_genes, 3))
    fold[0:60, 0:2] = 1 / 8       # Shared knockdown targets
    fold[60:100, 0] = 8           # shA-specific
    fold[100:140, 1] = 8          # shB-specific
    fold[140:180, 0:2] = 6        # Shared induction
    group_index = {"shA": 0, "shB": 1, "control": 2}

    dispersion = 0.05
    counts = np.zeros((n_genes, len(samples)), dtype=int)
    for j, group in enumerate(groups):
        mu = means * fold[:, group_index[group]]
        size = 1 / dispersion
        counts[:, j] = rng.negative_binomial(size, size / (size + mu))

    # Two transcripts per gene; Salmon-style versioned names
    transcripts = []
    tx2gene_rows = []
    for i, gene in enumerate(genes):
        for k in (1, 2):
            tx = f"ENST{2 * i + k:011d}"
            transcripts.append(f"{tx}.1")
            tx2gene_rows.append({"transcript_id": tx, "gene_id": gene})

    lengths = rng.integers(500, 5000, size=len(transcripts))
    quant_root = output_dir / "quant"
    manifest_rows = []
    for j, sample in enumerate(samples):
        major = rng.binomial(counts[:, j], 0.7)
        num_reads = np.column_stack([major, counts[:, j] - major]).ravel().astype(float)
        effective = lengths - 200
        rate = num_reads / effective
        tpm = rate / rate.sum() * 1e6

        quant = pd.DataFrame({
            "Name": transcripts,
            "Length": lengths,
            "EffectiveLength": effective.astype(float),
            "TPM": tpm,
            "NumReads": num_reads,
        })
        sample_dir = quant_root / sample
        sample_dir.mkdir(parents=True, exist_ok=True)
        quant.to_csv(sample_dir / "quant.sf", sep="\t", index=False)
        manifest_rows.append({"sample_id": sample, "quant_file": str((sample_dir / "quant.sf").resolve())})

    pd.DataFrame({"sample_id": samples, "group": groups, "treatment": treatments}).to_csv(
        output_dir / "samples.csv", index=False
    )
    pd.DataFrame(manifest_rows).to_csv(output_dir / "quant_manifest.csv", index=False)
    pd.DataFrame(tx2gene_rows).to_csv(output_dir / "tx2gene.csv", index=False)
    pd.DataFrame({"gene_id": genes, "symbol": symbols}).to_csv(output_dir / "gene_symbols.csv", index=False)

    # Small gene-set library: one set per simulated response plus null sets
    gene_sets = {
        "KNOCKDOWN_TARGETS": symbols[0:60],
        "SHA_RESPONSE": symbols[60:100],
        "SHB_RESPONSE": symbols[100:140],
        "SHARED_INDUCTION": symbols[140:180],
    }
    null_genes = symbols[180:n_genes - n_unexpressed]
    if len(null_genes) >= 30:
        for k in range(4):
            gene_sets[f"RANDOM_SET_{k + 1}"] = list(rng.choice(null_genes, size=30, replace=False))

    with open(output_dir / "pathways.gmt", 'w') as f:
        for name, members in gene_sets.items():
            f.write("\t".join([name, "synthetic"] + list(members)) + "\n")

    config = {
        "gene_sets": ["pathways.gmt"],
        "threads": 1,
        "use_mygene": False,
        "run_prerank": False,
        "dpi": 72,
    }
    with open(output_dir / 'config.json', 'w') as f:
        json.dump(config, f, indent=2)

    logger = logging.getLogger("rnaseq_de")
    logger.info(f"Sample data created in {output_dir}")
    logger.info(f"  - samples.csv: {len(samples)} samples, groups {sorted(set(groups))}")
    logger.info(f"  - quant/: {len(transcripts)} transcripts x {len(samples)} samples")
    logger.info(f"  - tx2gene.csv, gene_symbols.csv, pathways.gmt, config.json")
