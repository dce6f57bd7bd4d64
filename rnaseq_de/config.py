"""Configuration settings for the RNA-seq DE pipeline."""
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv

load_dotenv()

# ═══════════════════════════════════════════════════════════════
# Logging Configuration
# ═══════════════════════════════════════════════════════════════

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FORMAT = os.getenv(
    "LOG_FORMAT",
    "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def setup_logging(name: str = "rnaseq_de") -> logging.Logger:
    """
    Configure and return a logger for the application.

    Args:
        name: Logger name (usually module name)

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)

    # Avoid duplicate handlers
    if logger.handlers:
        return logger

    logger.setLevel(getattr(logging, LOG_LEVEL, logging.INFO))

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(getattr(logging, LOG_LEVEL, logging.INFO))
    console_handler.setFormatter(logging.Formatter(LOG_FORMAT, LOG_DATE_FORMAT))
    logger.addHandler(console_handler)

    log_file = os.getenv("LOG_FILE")
    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(getattr(logging, LOG_LEVEL, logging.INFO))
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT, LOG_DATE_FORMAT))
        logger.addHandler(file_handler)

    return logger


# ═══════════════════════════════════════════════════════════════
# Pipeline Defaults
# ═══════════════════════════════════════════════════════════════

DEFAULT_CONFIG: Dict[str, Any] = {
    # Sample sheet
    "sample_sheet": "samples.csv",
    "sample_column": "sample_id",
    "group_column": "group",
    "treatment_column": "treatment",
    "reference_group": "control",
    "treatment_levels": ["knockdown", "control"],  # [treated, reference]

    # Resources
    "threads": 4,
    "organism": "human",

    # Thresholds
    "min_count": 10,
    "min_samples": 2,
    "lfc_cutoff": 2.0,
    "padj_cutoff": 0.05,

    # External executables (name or absolute path)
    "tools": {
        "prefetch": "prefetch",
        "fasterq-dump": "fasterq-dump",
        "fastqc": "fastqc",
        "trimmomatic": "trimmomatic",
        "salmon": "salmon",
    },
}

# Environment variable -> (config key, type)
ENV_OVERRIDES = {
    "RNASEQ_THREADS": ("threads", int),
    "RNASEQ_ORGANISM": ("organism", str),
    "RNASEQ_TRANSCRIPTOME": ("transcriptome_fasta", str),
    "RNASEQ_SALMON_INDEX": ("salmon_index", str),
}


def load_config(
    input_dir: Optional[Path] = None,
    overrides: Optional[Dict[str, Any]] = None,
    config_file: str = "config.json"
) -> Dict[str, Any]:
    """
    Build the pipeline configuration.

    Precedence (later wins): DEFAULT_CONFIG, <input_dir>/config.json,
    environment variables, explicit overrides.
    """
    config = json.loads(json.dumps(DEFAULT_CONFIG))

    if input_dir is not None:
        config_path = Path(input_dir) / config_file
        if config_path.exists():
            with open(config_path, 'r', encoding='utf-8') as f:
                file_config = json.load(f)
            config = merge_config(config, file_config)

    for env_var, (key, cast) in ENV_OVERRIDES.items():
        value = os.getenv(env_var)
        if value:
            config[key] = cast(value)

    if overrides:
        config = merge_config(config, overrides)

    return config


def merge_config(*configs: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Merge configs left to right, one level deep, so a partial "tools"
    mapping keeps the default executables."""
    merged: Dict[str, Any] = {}
    for config in configs:
        for key, value in (config or {}).items():
            if isinstance(value, dict) and isinstance(merged.get(key), dict):
                merged[key] = {**merged[key], **value}
            else:
                merged[key] = value
    return merged
