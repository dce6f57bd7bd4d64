"""
External command-line tool wrappers.

Builds argument lists for the SRA Toolkit, FastQC, Trimmomatic and Salmon,
runs them through ``subprocess`` and parses the few outputs the pipeline
summarizes (Trimmomatic survival counts, Salmon mapping rate).
"""

import json
import logging
import re
import shutil
import subprocess
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from ..exceptions import ToolExecutionError, ToolNotFoundError

RUN_ACCESSION_PATTERN = re.compile(r"^[SED]RR\d+$")
GEO_SAMPLE_PATTERN = re.compile(r"^GSM\d+$")


class ToolRunner:
    """Resolve and run external executables."""

    def __init__(
        self,
        logger: Optional[logging.Logger] = None,
        executables: Optional[Dict[str, str]] = None,
        log_dir: Optional[Path] = None
    ):
        self.logger = logger or logging.getLogger(__name__)
        self.executables = dict(executables or {})
        self.log_dir = Path(log_dir) if log_dir else None

    def resolve(self, tool: str) -> str:
        """Return the absolute path of a tool's executable."""
        executable = self.executables.get(tool, tool)
        path = shutil.which(executable)
        if path is None:
            raise ToolNotFoundError(tool, executable)
        return path

    def check(self, tools: Sequence[str]) -> List[str]:
        """Return the tools that cannot be resolved."""
        missing = []
        for tool in tools:
            try:
                self.resolve(tool)
            except ToolNotFoundError as e:
                self.logger.error(str(e))
                missing.append(tool)
        return missing

    def run(
        self,
        tool: str,
        args: Sequence[str],
        log_name: Optional[str] = None,
        cwd: Optional[Path] = None
    ) -> subprocess.CompletedProcess:
        """Run a tool and raise ToolExecutionError on a non-zero exit."""
        command = [self.resolve(tool)] + [str(a) for a in args]
        self.logger.info(f"$ {tool} {' '.join(command[1:])}")

        result = subprocess.run(
            command, capture_output=True, text=True, cwd=cwd
        )

        if self.log_dir is not None and log_name:
            self.log_dir.mkdir(parents=True, exist_ok=True)
            log_file = self.log_dir / f"{log_name}.log"
            with open(log_file, 'w', encoding='utf-8') as f:
                f.write(f"$ {' '.join(command)}\n\n")
                f.write(result.stdout or "")
                f.write(result.stderr or "")

        if result.returncode != 0:
            raise ToolExecutionError(command, result.returncode, result.stderr)

        self.logger.debug(f"{tool} finished (exit 0)")
        return result


# =============================================================================
# Command builders
# =============================================================================

def prefetch_command(run_accession: str, output_dir: Path, max_size: str = "50G") -> List[str]:
    return [run_accession, "--output-directory", str(output_dir), "--max-size", max_size]


def fasterq_dump_command(sra_path: Path, output_dir: Path, threads: int = 4) -> List[str]:
    return [
        str(sra_path),
        "--split-files",
        "--outdir", str(output_dir),
        "--threads", str(threads),
    ]


def fastqc_command(fastq_files: Sequence[Path], output_dir: Path, threads: int = 4) -> List[str]:
    return ["--outdir", str(output_dir), "--threads", str(threads), "--quiet"] + [
        str(f) for f in fastq_files
    ]


def trimming_steps(
    window_size: int = 4,
    required_quality: int = 20,
    min_length: int = 36,
    adapters: Optional[str] = None,
    leading: Optional[int] = None,
    trailing: Optional[int] = None
) -> List[str]:
    """Trimmomatic step list; the sliding window filter is always applied."""
    steps = []
    if adapters:
        steps.append(f"ILLUMINACLIP:{adapters}:2:30:10")
    if leading is not None:
        steps.append(f"LEADING:{leading}")
    if trailing is not None:
        steps.append(f"TRAILING:{trailing}")
    steps.append(f"SLIDINGWINDOW:{window_size}:{required_quality}")
    steps.append(f"MINLEN:{min_length}")
    return steps


def trimmomatic_command(
    inputs: Sequence[Path],
    outputs: Sequence[Path],
    steps: Sequence[str],
    threads: int = 4
) -> List[str]:
    """
    Trimmomatic SE (1 input, 1 output) or PE (2 inputs, 4 outputs:
    forward paired, forward unpaired, reverse paired, reverse unpaired).
    """
    if len(inputs) == 1 and len(outputs) == 1:
        mode = "SE"
    elif len(inputs) == 2 and len(outputs) == 4:
        mode = "PE"
    else:
        raise ValueError(
            f"Trimmomatic expects 1 input/1 output or 2 inputs/4 outputs, "
            f"got {len(inputs)}/{len(outputs)}"
        )
    return (
        [mode, "-threads", str(threads), "-phred33"]
        + [str(p) for p in inputs]
        + [str(p) for p in outputs]
        + list(steps)
    )


def salmon_index_command(
    transcriptome: Path,
    index_dir: Path,
    threads: int = 4,
    kmer: int = 31,
    gencode: bool = False
) -> List[str]:
    args = [
        "index",
        "--transcripts", str(transcriptome),
        "--index", str(index_dir),
        "--kmerLen", str(kmer),
        "--threads", str(threads),
    ]
    if gencode:
        args.append("--gencode")
    return args


def salmon_quant_command(
    index_dir: Path,
    reads: Sequence[Path],
    output_dir: Path,
    threads: int = 4,
    libtype: str = "A",
    extra_args: Optional[Sequence[str]] = None
) -> List[str]:
    args = ["quant", "--index", str(index_dir), "--libType", libtype]
    if len(reads) == 1:
        args += ["--unmatedReads", str(reads[0])]
    elif len(reads) == 2:
        args += ["--mates1", str(reads[0]), "--mates2", str(reads[1])]
    else:
        raise ValueError(f"Salmon expects 1 or 2 read files, got {len(reads)}")
    args += [
        "--validateMappings",
        "--threads", str(threads),
        "--output", str(output_dir),
    ]
    return args + list(extra_args or [])


# =============================================================================
# Output parsers
# =============================================================================

_TRIM_SE = re.compile(
    r"Input Reads:\s*(\d+)\s+Surviving:\s*(\d+)\s+\(([\d.]+)%\)\s+Dropped:\s*(\d+)"
)
_TRIM_PE = re.compile(
    r"Input Read Pairs:\s*(\d+)\s+Both Surviving:\s*(\d+)\s+\(([\d.]+)%\)\s+"
    r"Forward Only Surviving:\s*(\d+).*?Reverse Only Surviving:\s*(\d+).*?Dropped:\s*(\d+)",
    re.DOTALL
)


def parse_trimmomatic_log(text: str) -> Dict[str, float]:
    """Extract read survival counts from Trimmomatic's stderr summary."""
    match = _TRIM_PE.search(text)
    if match:
        return {
            "layout": "paired",
            "input_reads": int(match.group(1)),
            "surviving_reads": int(match.group(2)),
            "percent_surviving": float(match.group(3)),
            "forward_only": int(match.group(4)),
            "reverse_only": int(match.group(5)),
            "dropped_reads": int(match.group(6)),
        }

    match = _TRIM_SE.search(text)
    if match:
        return {
            "layout": "single",
            "input_reads": int(match.group(1)),
            "surviving_reads": int(match.group(2)),
            "percent_surviving": float(match.group(3)),
            "dropped_reads": int(match.group(4)),
        }

    raise ValueError("No Trimmomatic summary line found")


def read_salmon_meta_info(quant_dir: Path) -> Dict[str, float]:
    """Read processed/mapped fragment counts from aux_info/meta_info.json."""
    meta_file = Path(quant_dir) / "aux_info" / "meta_info.json"
    with open(meta_file, 'r', encoding='utf-8') as f:
        meta = json.load(f)
    return {
        "num_processed": int(meta.get("num_processed", 0)),
        "num_mapped": int(meta.get("num_mapped", 0)),
        "percent_mapped": float(meta.get("percent_mapped", 0.0)),
        "library_types": ",".join(meta.get("library_types", [])),
    }


# =============================================================================
# Accessions
# =============================================================================

def is_run_accession(identifier: str) -> bool:
    return bool(RUN_ACCESSION_PATTERN.match(identifier))


def resolve_run_accessions(identifiers: Sequence[str]) -> Dict[str, List[str]]:
    """
    Map sample identifiers to SRA run accessions.

    Run accessions map to themselves; GEO sample accessions (GSM...) are
    resolved through pysradb. Anything else raises ValueError.
    """
    resolved: Dict[str, List[str]] = {}
    geo_ids = []

    for identifier in identifiers:
        if is_run_accession(identifier):
            resolved[identifier] = [identifier]
        elif GEO_SAMPLE_PATTERN.match(identifier):
            geo_ids.append(identifier)
        else:
            raise ValueError(f"Cannot resolve '{identifier}' to an SRA run accession")

    if geo_ids:
        from pysradb.sraweb import SRAweb

        db = SRAweb()
        mapping = db.gsm_to_srr(geo_ids)
        for gsm, group in mapping.groupby("experiment_alias"):
            resolved[gsm] = sorted(group["run_accession"].tolist())

        unresolved = [g for g in geo_ids if g not in resolved]
        if unresolved:
            raise ValueError(f"No SRA runs found for {unresolved}")

    return resolved
