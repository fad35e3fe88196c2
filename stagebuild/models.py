from __future__ import annotations

import re
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from .errors import DefinitionError
from .utils import sha256_bytes


def _as_command(value: Any) -> List[str]:
    if isinstance(value, str):
        return ["/bin/sh", "-c", value]
    if isinstance(value, (list, tuple)) and value and all(isinstance(item, str) for item in value):
        return list(value)
    raise DefinitionError(f"Command must be a string or a list of strings, got {value!r}")


def _section(data: Any, what: str) -> Dict[str, Any]:
    if not isinstance(data, dict):
        raise DefinitionError(f"{what} must be a mapping, got {type(data).__name__}")
    return data


def _entries(data: Any, what: str) -> List[Any]:
    if not isinstance(data, list):
        raise DefinitionError(f"{what} must be a list, got {type(data).__name__}")
    return data


def _scalar(data: Any, what: str) -> str:
    if isinstance(data, (dict, list)) or data is None:
        raise DefinitionError(f"{what} must be a string, got {type(data).__name__}")
    return str(data)


def _str_mapping(data: Any, what: str) -> Dict[str, str]:
    return {str(k): _scalar(v, f"{what}[{k}]") for k, v in _section(data, what).items()}


@dataclass(frozen=True)
class BuildArg:
    """A named build parameter a stage declares it needs."""

    name: str
    default: Optional[str] = None
    pattern: Optional[str] = None
    secret: bool = True

    @classmethod
    def from_dict(cls, data: Union[str, Dict[str, Any]]) -> "BuildArg":
        if isinstance(data, str):
            return cls(name=data)
        data = _section(data, "Build argument")
        if "name" not in data:
            raise DefinitionError(f"Build argument entry without a name: {data!r}")
        default = data.get("default")
        pattern = data.get("pattern")
        if pattern is not None:
            try:
                re.compile(str(pattern))
            except re.error as exc:
                raise DefinitionError(f"Build argument pattern {pattern!r} is invalid: {exc}") from exc
        return cls(
            name=_scalar(data["name"], "Build argument name"),
            default=None if default is None else _scalar(default, "Build argument default"),
            pattern=None if pattern is None else _scalar(pattern, "Build argument pattern"),
            secret=bool(data.get("secret", True)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "default": self.default,
            "pattern": self.pattern,
            "secret": self.secret,
        }


@dataclass(frozen=True)
class CopySource:
    """Copy a path from the build context into the stage."""

    source: str = "."
    destination: str = "."

    def describe(self) -> str:
        return f"COPY {self.source} {self.destination}"


@dataclass(frozen=True)
class RunCommand:
    command: Tuple[str, ...]

    def describe(self) -> str:
        return f"RUN {shlex.join(self.command)}"


Step = Union[CopySource, RunCommand]


def _step_from_dict(data: Any) -> Step:
    if isinstance(data, dict) and "copy" in data:
        return CopySource(source=_scalar(data["copy"], "copy"), destination=_scalar(data.get("to", "."), "to"))
    if isinstance(data, dict) and "run" in data:
        return RunCommand(tuple(_as_command(data["run"])))
    raise DefinitionError(f"Unknown build step: {data!r}")


def _step_to_dict(step: Step) -> Dict[str, Any]:
    if isinstance(step, CopySource):
        return {"copy": step.source, "to": step.destination}
    return {"run": list(step.command)}


@dataclass
class BuildStageSpec:
    """Declarative description of the stage that compiles the artifact."""

    name: str
    base: str
    workdir: str = "/"
    args: List[BuildArg] = field(default_factory=list)
    env: Dict[str, str] = field(default_factory=dict)
    steps: List[Step] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BuildStageSpec":
        data = _section(data, "Build stage")
        if "base" not in data:
            raise DefinitionError("Build stage must declare a base")
        return cls(
            name=_scalar(data.get("name", "builder"), "Build stage name"),
            base=_scalar(data["base"], "Build stage base"),
            workdir=_scalar(data.get("workdir", "/"), "Build stage workdir"),
            args=[BuildArg.from_dict(entry) for entry in _entries(data.get("args", []), "Build stage args")],
            env=_str_mapping(data.get("env", {}), "Build stage env"),
            steps=[_step_from_dict(entry) for entry in _entries(data.get("steps", []), "Build stage steps")],
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "base": self.base,
            "workdir": self.workdir,
            "args": [arg.to_dict() for arg in self.args],
            "env": dict(self.env),
            "steps": [_step_to_dict(step) for step in self.steps],
        }


@dataclass(frozen=True)
class ArtifactCopy:
    """The single ``COPY --from`` handing the artifact to the release stage."""

    stage: str
    source: str
    destination: str = "."

    @classmethod
    def from_dict(cls, data: Dict[str, Any], default_stage: str) -> "ArtifactCopy":
        data = _section(data, "Release artifact")
        if "source" not in data:
            raise DefinitionError("Release artifact must name its source path")
        return cls(
            stage=_scalar(data.get("from", default_stage), "Release artifact stage"),
            source=_scalar(data["source"], "Release artifact source"),
            destination=_scalar(data.get("destination", "."), "Release artifact destination"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"from": self.stage, "source": self.source, "destination": self.destination}


@dataclass
class ReleaseStageSpec:
    name: str
    base: str
    artifact: ArtifactCopy
    entrypoint: List[str]
    workdir: str = "/"
    args: List[BuildArg] = field(default_factory=list)
    env: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any], build_stage: str) -> "ReleaseStageSpec":
        data = _section(data, "Release stage")
        for key in ("base", "artifact", "entrypoint"):
            if key not in data:
                raise DefinitionError(f"Release stage must declare {key!r}")
        return cls(
            name=_scalar(data.get("name", "release"), "Release stage name"),
            base=_scalar(data["base"], "Release stage base"),
            artifact=ArtifactCopy.from_dict(data["artifact"], build_stage),
            entrypoint=_as_command(data["entrypoint"]),
            workdir=_scalar(data.get("workdir", "/"), "Release stage workdir"),
            args=[BuildArg.from_dict(entry) for entry in _entries(data.get("args", []), "Release stage args")],
            env=_str_mapping(data.get("env", {}), "Release stage env"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "base": self.base,
            "workdir": self.workdir,
            "args": [arg.to_dict() for arg in self.args],
            "env": dict(self.env),
            "artifact": self.artifact.to_dict(),
            "entrypoint": list(self.entrypoint),
        }


@dataclass
class PipelineSpec:
    """A build stage, a release stage and the base environments they start from."""

    build: BuildStageSpec
    release: ReleaseStageSpec
    bases: Dict[str, str] = field(default_factory=dict)
    ignore: List[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.validate()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PipelineSpec":
        if not isinstance(data, dict) or "build" not in data or "release" not in data:
            raise DefinitionError("Pipeline definition must contain 'build' and 'release' sections")
        build = BuildStageSpec.from_dict(data["build"])
        release = ReleaseStageSpec.from_dict(data["release"], build.name)
        return cls(
            build=build,
            release=release,
            bases=_str_mapping(data.get("bases", {}), "bases"),
            ignore=[_scalar(pattern, "ignore pattern") for pattern in _entries(data.get("ignore", []), "ignore")],
        )

    def validate(self) -> None:
        if self.build.name == self.release.name:
            raise DefinitionError(f"Stages must have distinct names, both are {self.build.name!r}")
        if self.build.base == self.release.base:
            raise DefinitionError(
                f"Release stage must start from a different base than the build stage ({self.build.base!r})"
            )
        if self.release.artifact.stage != self.build.name:
            raise DefinitionError(
                f"Release copies from unknown stage {self.release.artifact.stage!r}; "
                f"expected {self.build.name!r}"
            )
        if not self.release.entrypoint:
            raise DefinitionError("Release stage must declare an entry point")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "build": self.build.to_dict(),
            "release": self.release.to_dict(),
            "bases": dict(self.bases),
            "ignore": list(self.ignore),
        }


@dataclass(frozen=True)
class Artifact:
    """Immutable copy of the compiled output taken from a finished build stage."""

    name: str
    source: str
    data: bytes = field(repr=False)
    mode: int = 0o755

    @property
    def sha256(self) -> str:
        return sha256_bytes(self.data)

    @property
    def size(self) -> int:
        return len(self.data)

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "source": self.source, "sha256": self.sha256, "size": self.size}


@dataclass(frozen=True)
class ReleaseImage:
    """A constructed release stage.

    ``env`` holds resolved values and only lives in memory; the manifest keeps
    the templates so secrets never reach disk.
    """

    root: Path
    base: str
    workdir: str
    entrypoint: Tuple[str, ...]
    artifact: Dict[str, Any]
    args: Tuple[BuildArg, ...] = ()
    env_template: Mapping[str, str] = field(default_factory=dict)
    env: Mapping[str, str] = field(default_factory=dict, repr=False)

    def to_manifest(self) -> Dict[str, Any]:
        return {
            "root": str(self.root),
            "base": self.base,
            "workdir": self.workdir,
            "entrypoint": list(self.entrypoint),
            "artifact": dict(self.artifact),
            "args": [arg.to_dict() for arg in self.args],
            "env": dict(self.env_template),
        }


@dataclass
class StageResult:
    """Summary emitted by a pipeline stage."""

    name: str
    status: str
    details: Dict[str, Any]

    def to_dict(self) -> Dict[str, Any]:
        return {"stage": self.name, "status": self.status, "details": self.details}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StageResult":
        return cls(
            name=data.get("stage", ""),
            status=data.get("status", "unknown"),
            details=data.get("details", {}),
        )
