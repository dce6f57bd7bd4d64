"""
Stage 2: Quality Control & Trimming

Runs FastQC on raw reads, trims with Trimmomatic (sliding-window average
quality filter), then runs FastQC again on the trimmed reads.

Input:
- samples.csv
- fastq_manifest.csv: From Stage 1

Output:
- fastqc_raw/, fastqc_trimmed/: FastQC reports
- trimmed/<sample>_1.trimmed.fastq (+ _2 for paired-end)
- trimmed_manifest.csv: sample_id, layout, fastq_1, fastq_2
- trimming_summary.csv: per-sample input/surviving reads
- meta_stage2_qc.json
"""

from pathlib import Path
from typing import Any, Dict, List, Optional

import pandas as pd

from ..utils.base_stage import BaseStage
from ..utils.tools import (
    fastqc_command,
    parse_trimmomatic_log,
    trimmomatic_command,
    trimming_steps,
)


class QCTrimStage(BaseStage):
    """Stage for read quality assessment and sliding-window trimming."""

    REQUIRED_TOOLS = ["fastqc", "trimmomatic"]

    def __init__(
        self,
        input_dir: Path,
        output_dir: Path,
        config: Optional[Dict[str, Any]] = None
    ):
        default_config = {
            "window_size": 4,
            "required_quality": 20,
            "min_length": 36,
            "adapters": None,  # Path to adapter FASTA for ILLUMINACLIP
            "leading": None,
            "trailing": None,
            "run_fastqc": True,
        }
        super().__init__("stage2_qc", input_dir, output_dir, config, default_config)

        self.sheet = None
        self.manifest: Optional[pd.DataFrame] = None

    def validate_inputs(self) -> bool:
        """Validate FASTQ manifest against the sample sheet."""
        self.sheet = self.load_sample_sheet()
        self.manifest = self.load_csv("fastq_manifest.csv")

        self.sheet.check_manifest(self.manifest["sample_id"], what="FASTQ entries")

        for col in ("fastq_1", "fastq_2"):
            for path in self.manifest[col].dropna():
                if not Path(path).exists():
                    self.logger.error(f"FASTQ not found: {path}")
                    return False

        tools = list(self.REQUIRED_TOOLS) if self.config["run_fastqc"] else ["trimmomatic"]
        missing = self.runner.check(tools)
        if missing:
            self.logger.error(f"Missing executables: {missing}")
            return False

        return True

    def _fastqc(self, files: List[Path], subdir: str) -> None:
        outdir = self.output_dir / subdir
        outdir.mkdir(exist_ok=True)
        self.runner.run(
            "fastqc",
            fastqc_command(files, outdir, self.config["threads"]),
            log_name=subdir
        )

    def _trim_sample(self, sample_id: str, inputs: List[Path], trimmed_dir: Path) -> Dict[str, Any]:
        steps = trimming_steps(
            window_size=self.config["window_size"],
            required_quality=self.config["required_quality"],
            min_length=self.config["min_length"],
            adapters=self.config["adapters"],
            leading=self.config["leading"],
            trailing=self.config["trailing"],
        )

        if len(inputs) == 1:
            outputs = [trimmed_dir / f"{sample_id}_1.trimmed.fastq"]
            kept = outputs
        else:
            outputs = [
                trimmed_dir / f"{sample_id}_1.trimmed.fastq",
                trimmed_dir / f"{sample_id}_1.unpaired.fastq",
                trimmed_dir / f"{sample_id}_2.trimmed.fastq",
                trimmed_dir / f"{sample_id}_2.unpaired.fastq",
            ]
            kept = [outputs[0], outputs[2]]

        result = self.runner.run(
            "trimmomatic",
            trimmomatic_command(inputs, outputs, steps, self.config["threads"]),
            log_name=f"trimmomatic_{sample_id}"
        )
        stats = parse_trimmomatic_log(result.stderr)
        self.logger.info(
            f"  {sample_id}: {stats['surviving_reads']}/{stats['input_reads']} "
            f"surviving ({stats['percent_surviving']:.2f}%)"
        )

        return {"stats": stats, "kept": kept}

    def run(self) -> Dict[str, Any]:
        """Run FastQC -> Trimmomatic -> FastQC for all samples."""
        trimmed_dir = self.output_dir / "trimmed"
        trimmed_dir.mkdir(exist_ok=True)

        manifest = self.manifest.set_index("sample_id").loc[self.sheet.sample_ids]

        raw_files = [Path(p) for col in ("fastq_1", "fastq_2") for p in manifest[col].dropna()]
        if self.config["run_fastqc"]:
            self.logger.info(f"FastQC on {len(raw_files)} raw FASTQ files...")
            self._fastqc(raw_files, "fastqc_raw")

        step_desc = f"SLIDINGWINDOW:{self.config['window_size']}:{self.config['required_quality']}"
        self.logger.info(f"Trimming with {step_desc}, MINLEN:{self.config['min_length']}")

        summary_rows = []
        manifest_rows = []
        trimmed_files: List[Path] = []
        for sample_id, row in manifest.iterrows():
            inputs = [Path(row["fastq_1"])]
            if pd.notna(row.get("fastq_2")):
                inputs.append(Path(row["fastq_2"]))

            trimmed = self._trim_sample(sample_id, inputs, trimmed_dir)
            trimmed_files.extend(trimmed["kept"])

            summary_rows.append({"sample_id": sample_id, **trimmed["stats"]})
            manifest_rows.append({
                "sample_id": sample_id,
                "layout": "paired" if len(inputs) == 2 else "single",
                "fastq_1": str(trimmed["kept"][0].resolve()),
                "fastq_2": str(trimmed["kept"][1].resolve()) if len(inputs) == 2 else None,
            })

        if self.config["run_fastqc"]:
            self.logger.info(f"FastQC on {len(trimmed_files)} trimmed FASTQ files...")
            self._fastqc(trimmed_files, "fastqc_trimmed")

        summary = pd.DataFrame(summary_rows)
        self.save_csv(summary, "trimming_summary.csv")
        self.save_csv(pd.DataFrame(manifest_rows), "trimmed_manifest.csv")

        self.logger.info("QC & Trimming Complete:")
        self.logger.info(f"  Samples trimmed: {len(summary)}")
        self.logger.info(f"  Mean surviving: {summary['percent_surviving'].mean():.2f}%")

        return {
            "samples_trimmed": len(summary),
            "trimming_steps": step_desc,
            "mean_percent_surviving": float(summary["percent_surviving"].mean()),
            "min_percent_surviving": float(summary["percent_surviving"].min()),
        }

    def validate_outputs(self) -> bool:
        """Check trimmed FASTQs exist."""
        manifest_file = self.output_dir / "trimmed_manifest.csv"
        if not manifest_file.exists():
            self.logger.error("Missing trimmed_manifest.csv")
            return False

        manifest = pd.read_csv(manifest_file)
        for col in ("fastq_1", "fastq_2"):
            for path in manifest[col].dropna():
                if not Path(path).exists():
                    self.logger.error(f"Missing trimmed FASTQ: {path}")
                    return False

        return True
