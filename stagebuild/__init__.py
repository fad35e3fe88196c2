"""Two-stage build and release orchestration: compile in one stage, ship only the artifact."""

from .config import BuildConfiguration
from .errors import (
    ArtifactHandoffError,
    CompilationError,
    ConfigurationError,
    DefinitionError,
    PipelineError,
)
from .pipeline import PipelineContext, ReleasePipeline, Stage, run_release
from .specfile import PipelineFile

__all__ = [
    "ArtifactHandoffError",
    "BuildConfiguration",
    "CompilationError",
    "ConfigurationError",
    "DefinitionError",
    "PipelineContext",
    "PipelineError",
    "PipelineFile",
    "ReleasePipeline",
    "Stage",
    "run_release",
]
