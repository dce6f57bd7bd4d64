"""
Command-line interface for the RNA-seq DE pipeline.

Usage:
    rnaseq-de run -i ./data -o ./results [--stop-after stage4_deg]
    rnaseq-de stage stage4_deg -i ./data -o ./results
    rnaseq-de resume stage5_annotation -i ./data -o ./results [--run-dir ./results/run_...]
    rnaseq-de sample-data ./data
"""

import argparse
import json
from pathlib import Path
from typing import Any, Dict, List, Optional

from .config import setup_logging
from .orchestrator import DEPipeline, create_sample_data


def _overrides(args: argparse.Namespace) -> Dict[str, Any]:
    config: Dict[str, Any] = {}
    if args.config:
        with open(args.config, 'r', encoding='utf-8') as f:
            config.update(json.load(f))
    if args.threads is not None:
        config["threads"] = args.threads
    if args.engine:
        config["de_engine"] = args.engine
    return config


def _add_common(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--input", "-i", required=True, help="Input directory (samples.csv, config.json, ...)")
    parser.add_argument("--output", "-o", required=True, help="Output directory")
    parser.add_argument("--config", "-c", help="Extra JSON config file (overrides input config.json)")
    parser.add_argument("--threads", "-t", type=int, help="Threads for external tools and the DE fit")
    parser.add_argument("--engine", choices=["pydeseq2", "deseq2_r"], help="Differential expression engine")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="rnaseq-de",
        description="Knockdown RNA-seq differential expression pipeline"
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Run the full pipeline")
    _add_common(run_parser)
    run_parser.add_argument("--stop-after", choices=DEPipeline.STAGE_ORDER, help="Last stage to run")

    stage_parser = subparsers.add_parser("stage", help="Run a single stage")
    stage_parser.add_argument("name", choices=DEPipeline.STAGE_ORDER)
    _add_common(stage_parser)
    stage_parser.add_argument("--run-dir", help="Existing run directory to run the stage in")

    resume_parser = subparsers.add_parser("resume", help="Run from a stage to the end")
    resume_parser.add_argument("name", choices=DEPipeline.STAGE_ORDER)
    _add_common(resume_parser)
    resume_parser.add_argument("--run-dir", help="Existing run directory to resume")

    sample_parser = subparsers.add_parser("sample-data", help="Create a synthetic dataset for stages 4-7")
    sample_parser.add_argument("output", help="Directory to write the dataset to")
    sample_parser.add_argument("--n-genes", type=int, default=600)
    sample_parser.add_argument("--seed", type=int, default=42)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logger = setup_logging()

    if args.command == "sample-data":
        create_sample_data(Path(args.output), n_genes=args.n_genes, seed=args.seed)
        return 0

    pipeline = DEPipeline(
        input_dir=Path(args.input),
        output_dir=Path(args.output),
        config=_overrides(args),
        run_dir=getattr(args, "run_dir", None)
    )

    if args.command == "run":
        state = pipeline.run(stop_after=args.stop_after)
    elif args.command == "resume":
        state = pipeline.run_from(args.name)
    else:
        try:
            pipeline.run_stage(args.name)
        except Exception as e:
            logger.error(f"{args.name} failed: {e}")
            return 1
        return 0

    return 1 if state["failed_stages"] else 0


if __name__ == "__main__":
    raise SystemExit(main())
