"""Exceptions raised by the pipeline stages."""

from typing import List, Optional


class PipelineError(Exception):
    """Base class for pipeline errors."""


class SampleSheetError(PipelineError, ValueError):
    """Sample sheet is malformed or disagrees with stage outputs."""


class ToolNotFoundError(PipelineError):
    """External executable is not available on PATH."""

    def __init__(self, tool: str, executable: str):
        self.tool = tool
        self.executable = executable
        super().__init__(f"{tool} not found (looked for '{executable}' on PATH)")


class ToolExecutionError(PipelineError):
    """External executable exited with a non-zero status."""

    def __init__(self, command: List[str], returncode: int, stderr: Optional[str] = None):
        self.command = command
        self.returncode = returncode
        self.stderr = stderr or ""
        tail = "\n".join(self.stderr.strip().splitlines()[-10:])
        message = f"Command failed ({returncode}): {' '.join(command)}"
        if tail:
            message += f"\n{tail}"
        super().__init__(message)
