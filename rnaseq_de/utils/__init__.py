"""Utility modules for the RNA-seq DE pipeline."""

from .base_stage import BaseStage
from .sample_sheet import Sample, SampleSheet
from .tools import ToolRunner

__all__ = [
    "BaseStage",
    "Sample",
    "SampleSheet",
    "ToolRunner",
]
