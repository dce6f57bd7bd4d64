"""
Stage 1: Read Acquisition

Downloads raw reads for every sample in the sample sheet with the SRA Toolkit
(prefetch + fasterq-dump). GEO sample accessions are resolved to SRA runs
through pysradb; samples with several runs have their reads concatenated.

Input:
- samples.csv: sample_id, group, treatment (optional run_accession)

Output:
- fastq/<sample>_1.fastq (+ <sample>_2.fastq for paired-end)
- fastq_manifest.csv: sample_id, layout, fastq_1, fastq_2
- meta_stage1_acquisition.json
"""

import shutil
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import pandas as pd

from ..utils.base_stage import BaseStage
from ..utils.tools import (
    fasterq_dump_command,
    prefetch_command,
    resolve_run_accessions,
)


class AcquisitionStage(BaseStage):
    """Stage for downloading raw sequencing reads."""

    REQUIRED_TOOLS = ["prefetch", "fasterq-dump"]

    def __init__(
        self,
        input_dir: Path,
        output_dir: Path,
        config: Optional[Dict[str, Any]] = None
    ):
        default_config = {
            "prefetch_max_size": "50G",
            "keep_sra": False,  # Keep .sra files after conversion
        }
        super().__init__("stage1_acquisition", input_dir, output_dir, config, default_config)

        self.sheet = None
        self.fastq_dir = self.output_dir / "fastq"
        self.sra_dir = self.output_dir / "sra"

    def validate_inputs(self) -> bool:
        """Validate sample sheet and SRA Toolkit availability."""
        self.sheet = self.load_sample_sheet()

        missing = self.runner.check(self.REQUIRED_TOOLS)
        if missing:
            self.logger.error(f"SRA Toolkit executables missing: {missing}")
            return False

        return True

    def _download_run(self, run: str) -> Tuple[str, List[Path]]:
        """prefetch + fasterq-dump one run; returns (layout, fastq files)."""
        self.runner.run(
            "prefetch",
            prefetch_command(run, self.sra_dir, self.config["prefetch_max_size"]),
            log_name=f"prefetch_{run}"
        )

        run_sra_dir = self.sra_dir / run
        sra_files = sorted(run_sra_dir.glob(f"{run}.sra*"))
        sra_path = sra_files[0] if sra_files else run_sra_dir

        run_fastq_dir = self.fastq_dir / "_runs" / run
        run_fastq_dir.mkdir(parents=True, exist_ok=True)
        self.runner.run(
            "fasterq-dump",
            fasterq_dump_command(sra_path, run_fastq_dir, self.config["threads"]),
            log_name=f"fasterq_dump_{run}"
        )

        mate1 = run_fastq_dir / f"{run}_1.fastq"
        mate2 = run_fastq_dir / f"{run}_2.fastq"
        single = run_fastq_dir / f"{run}.fastq"

        if mate1.exists() and mate2.exists():
            return "paired", [mate1, mate2]
        if single.exists():
            return "single", [single]
        if mate1.exists():
            return "single", [mate1]

        raise FileNotFoundError(f"fasterq-dump produced no FASTQ for {run} in {run_fastq_dir}")

    @staticmethod
    def _concatenate(parts: List[Path], destination: Path) -> None:
        with open(destination, 'wb') as out:
            for part in parts:
                with open(part, 'rb') as f:
                    shutil.copyfileobj(f, out)

    def run(self) -> Dict[str, Any]:
        """Download reads for every sample, in sample sheet order."""
        self.fastq_dir.mkdir(exist_ok=True)
        self.sra_dir.mkdir(exist_ok=True)

        samples = self.sheet.samples
        identifiers = [s.run_accession or s.sample_id for s in samples]
        accessions = resolve_run_accessions(list(dict.fromkeys(identifiers)))

        rows = []
        total_runs = 0
        for sample, identifier in zip(samples, identifiers):
            runs = accessions[identifier]
            self.logger.info(f"{sample.sample_id}: {len(runs)} run(s) {runs}")

            layouts = set()
            mates: List[List[Path]] = [[], []]
            for run in runs:
                layout, files = self._download_run(run)
                layouts.add(layout)
                for i, f in enumerate(files):
                    mates[i].append(f)
                total_runs += 1

            if len(layouts) > 1:
                raise ValueError(f"Runs of {sample.sample_id} mix single and paired layouts")
            layout = layouts.pop()

            fastq_1 = self.fastq_dir / f"{sample.sample_id}_1.fastq"
            self._concatenate(mates[0], fastq_1)
            fastq_2 = None
            if layout == "paired":
                fastq_2 = self.fastq_dir / f"{sample.sample_id}_2.fastq"
                self._concatenate(mates[1], fastq_2)

            rows.append({
                "sample_id": sample.sample_id,
                "layout": layout,
                "runs": ";".join(runs),
                "fastq_1": str(fastq_1.resolve()),
                "fastq_2": str(fastq_2.resolve()) if fastq_2 else None,
            })

        shutil.rmtree(self.fastq_dir / "_runs", ignore_errors=True)
        if not self.config["keep_sra"]:
            shutil.rmtree(self.sra_dir, ignore_errors=True)

        manifest = pd.DataFrame(rows)
        self.save_csv(manifest, "fastq_manifest.csv")

        self.logger.info("Acquisition Complete:")
        self.logger.info(f"  Samples: {len(rows)}")
        self.logger.info(f"  Runs downloaded: {total_runs}")

        return {
            "samples": len(rows),
            "runs_downloaded": total_runs,
            "layouts": manifest["layout"].value_counts().to_dict()
        }

    def validate_outputs(self) -> bool:
        """Check every manifest FASTQ exists."""
        manifest_file = self.output_dir / "fastq_manifest.csv"
        if not manifest_file.exists():
            self.logger.error("Missing fastq_manifest.csv")
            return False

        manifest = pd.read_csv(manifest_file)
        for col in ("fastq_1", "fastq_2"):
            for path in manifest[col].dropna():
                if not Path(path).exists():
                    self.logger.error(f"Missing FASTQ: {path}")
                    return False

        return True
