from __future__ import annotations

from typing import Sequence


class PipelineError(RuntimeError):
    """Base class for failures that abort a pipeline run."""


class DefinitionError(PipelineError):
    """Raised when a pipeline definition cannot be parsed or is inconsistent."""


class ConfigurationError(PipelineError):
    """Raised when a build argument is missing, malformed or not declared."""


class CompilationError(PipelineError):
    """Raised when a build command exits with a non-zero status."""

    def __init__(self, stage: str, command: Sequence[str], returncode: int, output: str = "") -> None:
        self.stage = stage
        self.command = list(command)
        self.returncode = returncode
        self.output = output
        super().__init__(
            f"Stage {stage!r}: command {' '.join(command)} failed with exit code {returncode}"
        )


class ArtifactHandoffError(PipelineError):
    """Raised when the artifact expected by the release stage is not available."""
