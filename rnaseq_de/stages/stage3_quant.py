"""
Stage 3: Transcript Quantification

Builds (or reuses) a Salmon index of the reference transcriptome and runs
selective-alignment quantification for each sample.

Input:
- samples.csv
- trimmed_manifest.csv: From Stage 2 (falls back to fastq_manifest.csv)
- config: transcriptome_fasta and/or salmon_index

Output:
- salmon_index/ (when built here)
- quant/<sample>/quant.sf
- quant_manifest.csv: sample_id, quant_file
- quant_summary.csv: processed/mapped fragments and mapping rate
- meta_stage3_quant.json
"""

from pathlib import Path
from typing import Any, Dict, Optional

import pandas as pd

from ..utils.base_stage import BaseStage
from ..utils.tools import read_salmon_meta_info, salmon_index_command, salmon_quant_command


class QuantificationStage(BaseStage):
    """Stage for Salmon transcript quantification."""

    def __init__(
        self,
        input_dir: Path,
        output_dir: Path,
        config: Optional[Dict[str, Any]] = None
    ):
        default_config = {
            "transcriptome_fasta": None,
            "salmon_index": None,  # Existing index directory to reuse
            "kmer_size": 31,
            "gencode": False,  # Transcriptome headers are GENCODE-style
            "libtype": "A",
            "salmon_extra_args": [],  # e.g. ["--gcBias", "--seqBias"]
            "min_mapping_rate": 30.0,  # Warn below this percentage
        }
        super().__init__("stage3_quant", input_dir, output_dir, config, default_config)

        self.sheet = None
        self.manifest: Optional[pd.DataFrame] = None

    def validate_inputs(self) -> bool:
        """Validate reads manifest, reference and Salmon availability."""
        self.sheet = self.load_sample_sheet()

        self.manifest = self.load_csv("trimmed_manifest.csv", required=False)
        if self.manifest is None:
            self.logger.warning("No trimmed reads - quantifying raw reads")
            self.manifest = self.load_csv("fastq_manifest.csv")

        self.sheet.check_manifest(self.manifest["sample_id"], what="read entries")

        index = self.config.get("salmon_index")
        fasta = self.config.get("transcriptome_fasta")
        if index and Path(index).is_dir():
            self.logger.info(f"Using existing Salmon index: {index}")
        elif not fasta:
            self.logger.error("Neither an existing salmon_index nor transcriptome_fasta configured")
            return False
        elif not Path(fasta).exists():
            self.logger.error(f"Transcriptome FASTA not found: {fasta}")
            return False

        missing = self.runner.check(["salmon"])
        if missing:
            self.logger.error(f"Missing executables: {missing}")
            return False

        return True

    def _build_index(self) -> Path:
        """Return the configured index, building it from the FASTA if needed."""
        index = self.config.get("salmon_index")
        if index and Path(index).is_dir():
            return Path(index)

        index_dir = Path(index) if index else self.output_dir / "salmon_index"
        self.logger.info(f"Building Salmon index at {index_dir} (k={self.config['kmer_size']})...")
        self.runner.run(
            "salmon",
            salmon_index_command(
                Path(self.config["transcriptome_fasta"]),
                index_dir,
                threads=self.config["threads"],
                kmer=self.config["kmer_size"],
                gencode=self.config["gencode"],
            ),
            log_name="salmon_index"
        )
        return index_dir

    def run(self) -> Dict[str, Any]:
        """Index once, then quantify each sample in sample sheet order."""
        index_dir = self._build_index()
        quant_root = self.output_dir / "quant"
        quant_root.mkdir(exist_ok=True)

        manifest = self.manifest.set_index("sample_id").loc[self.sheet.sample_ids]

        manifest_rows = []
        summary_rows = []
        for sample_id, row in manifest.iterrows():
            reads = [Path(row["fastq_1"])]
            if pd.notna(row.get("fastq_2")):
                reads.append(Path(row["fastq_2"]))

            sample_dir = quant_root / sample_id
            self.logger.info(f"Quantifying {sample_id} ({len(reads)} read file(s))...")
            self.runner.run(
                "salmon",
                salmon_quant_command(
                    index_dir, reads, sample_dir,
                    threads=self.config["threads"],
                    libtype=self.config["libtype"],
                    extra_args=self.config["salmon_extra_args"],
                ),
                log_name=f"salmon_quant_{sample_id}"
            )

            quant_file = sample_dir / "quant.sf"
            manifest_rows.append({"sample_id": sample_id, "quant_file": str(quant_file.resolve())})

            stats = read_salmon_meta_info(sample_dir)
            summary_rows.append({"sample_id": sample_id, **stats})
            self.logger.info(f"  {sample_id}: {stats['percent_mapped']:.2f}% mapped")
            if stats["percent_mapped"] < self.config["min_mapping_rate"]:
                self.logger.warning(
                    f"  Low mapping rate for {sample_id}: {stats['percent_mapped']:.2f}%"
                )

        self.save_csv(pd.DataFrame(manifest_rows), "quant_manifest.csv")
        summary = pd.DataFrame(summary_rows)
        self.save_csv(summary, "quant_summary.csv")

        self.logger.info("Quantification Complete:")
        self.logger.info(f"  Samples: {len(summary)}")
        self.logger.info(f"  Mean mapping rate: {summary['percent_mapped'].mean():.2f}%")

        return {
            "salmon_index": str(index_dir),
            "samples_quantified": len(summary),
            "mean_percent_mapped": float(summary["percent_mapped"].mean()),
        }

    def validate_outputs(self) -> bool:
        """Check one quant.sf per sample."""
        manifest_file = self.output_dir / "quant_manifest.csv"
        if not manifest_file.exists():
            self.logger.error("Missing quant_manifest.csv")
            return False

        manifest = pd.read_csv(manifest_file)
        self.sheet.check_manifest(manifest["sample_id"])
        for path in manifest["quant_file"]:
            if not Path(path).exists():
                self.logger.error(f"Missing quant.sf: {path}")
                return False

        return True
