"""
Base Stage Class for the RNA-seq DE Pipeline

All stages inherit from this base class for consistent:
- Input/Output handling
- Logging
- Error handling
- Metadata generation
"""

import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional
import pandas as pd

from ..config import DEFAULT_CONFIG, merge_config
from .sample_sheet import SampleSheet
from .tools import ToolRunner


class BaseStage(ABC):
    """Base class for all pipeline stages."""

    def __init__(
        self,
        stage_name: str,
        input_dir: Path,
        output_dir: Path,
        config: Optional[Dict[str, Any]] = None,
        default_config: Optional[Dict[str, Any]] = None
    ):
        self.stage_name = stage_name
        self.input_dir = Path(input_dir)
        self.output_dir = Path(output_dir)
        self.config = merge_config(DEFAULT_CONFIG, default_config, config)

        # Create output directory
        self.output_dir.mkdir(parents=True, exist_ok=True)

        # Setup logging
        self.logger = self._setup_logging()

        # Track execution
        self.start_time: Optional[datetime] = None
        self.end_time: Optional[datetime] = None
        self.success: bool = False
        self.errors: list = []

        self._runner: Optional[ToolRunner] = None

    def _setup_logging(self) -> logging.Logger:
        """Setup stage-specific logging."""
        logger = logging.getLogger(f"rnaseq_de.{self.stage_name}")
        logger.setLevel(logging.DEBUG)

        # Drop handlers left over from a previous instance of this stage
        for handler in list(logger.handlers):
            logger.removeHandler(handler)
            handler.close()

        # File handler
        log_file = self.output_dir / f"log_{self.stage_name}.txt"
        fh = logging.FileHandler(log_file, mode='w', encoding='utf-8')
        fh.setLevel(logging.DEBUG)

        # Console handler
        ch = logging.StreamHandler()
        ch.setLevel(logging.INFO)

        # Formatter
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )
        fh.setFormatter(formatter)
        ch.setFormatter(formatter)

        logger.addHandler(fh)
        logger.addHandler(ch)
        logger.propagate = False

        return logger

    @property
    def runner(self) -> ToolRunner:
        """External tool runner bound to this stage's logger."""
        if self._runner is None:
            self._runner = ToolRunner(
                logger=self.logger,
                executables=self.config.get("tools"),
                log_dir=self.output_dir / "tool_logs"
            )
        return self._runner

    def load_sample_sheet(self) -> SampleSheet:
        """Load the sample sheet from the input directory."""
        path = self.input_dir / self.config["sample_sheet"]
        if not path.exists():
            raise FileNotFoundError(f"Required sample sheet not found: {path}")

        sheet = SampleSheet.from_csv(
            path,
            sample_column=self.config["sample_column"],
            group_column=self.config["group_column"],
            treatment_column=self.config["treatment_column"]
        )
        self.logger.info(f"Sample sheet: {len(sheet)} samples, groups {sheet.levels('group')}")
        return sheet

    def load_csv(self, filename: str, required: bool = True) -> Optional[pd.DataFrame]:
        """Load CSV file from input directory."""
        filepath = self.input_dir / filename

        if not filepath.exists():
            if required:
                raise FileNotFoundError(f"Required input file not found: {filepath}")
            self.logger.warning(f"Optional file not found: {filepath}")
            return None

        self.logger.info(f"Loading {filename}...")
        df = pd.read_csv(filepath)
        self.logger.info(f"  -> {len(df)} rows, {len(df.columns)} columns")
        return df

    def save_csv(self, df: pd.DataFrame, filename: str) -> Path:
        """Save DataFrame to CSV in output directory."""
        filepath = self.output_dir / filename
        df.to_csv(filepath, index=False)
        self.logger.info(f"Saved {filename}: {len(df)} rows")
        return filepath

    def load_json(self, filename: str, required: bool = True) -> Optional[Any]:
        """Load JSON file from input directory."""
        filepath = self.input_dir / filename

        if not filepath.exists():
            if required:
                raise FileNotFoundError(f"Required input file not found: {filepath}")
            return None

        with open(filepath, 'r', encoding='utf-8') as f:
            return json.load(f)

    def save_json(self, data: Any, filename: str) -> Path:
        """Save data to JSON in output directory."""
        filepath = self.output_dir / filename
        with open(filepath, 'w', encoding='utf-8') as f:
            json.dump(data, f, indent=2, ensure_ascii=False, default=str)
        self.logger.info(f"Saved {filename}")
        return filepath

    def generate_metadata(self, **kwargs) -> Dict[str, Any]:
        """Generate stage metadata."""
        metadata = {
            "stage_name": self.stage_name,
            "timestamp": datetime.now().isoformat(),
            "execution_time_seconds": (
                (self.end_time - self.start_time).total_seconds()
                if self.end_time and self.start_time else None
            ),
            "success": self.success,
            "errors": self.errors,
            "config_used": self.config,
            **kwargs
        }
        return metadata

    @abstractmethod
    def validate_inputs(self) -> bool:
        """Validate that all required inputs are present and valid."""
        pass

    @abstractmethod
    def run(self) -> Dict[str, Any]:
        """Execute the stage's main logic. Returns results dict."""
        pass

    @abstractmethod
    def validate_outputs(self) -> bool:
        """Validate that all required outputs were generated correctly."""
        pass

    def execute(self) -> Dict[str, Any]:
        """Full execution with validation and error handling."""
        self.start_time = datetime.now()
        self.logger.info(f"{'='*60}")
        self.logger.info(f"Starting {self.stage_name}")
        self.logger.info(f"{'='*60}")

        results: Dict[str, Any] = {}
        try:
            self.logger.info("Validating inputs...")
            if not self.validate_inputs():
                raise ValueError("Input validation failed")
            self.logger.info("Input validation passed")

            self.logger.info("Running analysis...")
            results = self.run()

            self.logger.info("Validating outputs...")
            if not self.validate_outputs():
                raise ValueError("Output validation failed")
            self.logger.info("Output validation passed")

            self.success = True
            self.logger.info(f"{self.stage_name} completed successfully!")

        except Exception as e:
            self.success = False
            self.errors.append(str(e))
            self.logger.error(f"Error in {self.stage_name}: {e}")
            raise

        finally:
            self.end_time = datetime.now()

            metadata = self.generate_metadata(**(results if self.success else {}))
            self.save_json(metadata, f"meta_{self.stage_name}.json")

        return results
