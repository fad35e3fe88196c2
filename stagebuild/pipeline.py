from __future__ import annotations

import json
import logging
import os
import shutil
import stat
from dataclasses import dataclass, field
from enum import Enum, auto
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from .config import (
    BuildConfiguration,
    expand_env,
    redact,
    redact_mapping,
    resolve_args,
    secret_values,
)
from .errors import ArtifactHandoffError, CompilationError, ConfigurationError, DefinitionError, PipelineError
from .models import (
    Artifact,
    ArtifactCopy,
    BuildArg,
    CopySource,
    PipelineSpec,
    ReleaseImage,
    RunCommand,
    StageResult,
)
from .utils import copy_tree, dump_json, ensure_directory, read_ignore_file, reset_directory, run_command, stage_path

logger = logging.getLogger(__name__)

ALWAYS_IGNORED = (".git",)
MANIFEST_NAME = "release.json"


class Stage(Enum):
    BUILD = auto()
    RELEASE = auto()

    @classmethod
    def ordered(cls) -> Iterable["Stage"]:
        return (cls.BUILD, cls.RELEASE)


@dataclass
class PipelineContext:
    spec: PipelineSpec
    context_dir: Path
    workspace: Path
    bases: Dict[str, Path] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.context_dir = Path(self.context_dir).resolve()
        self.workspace = Path(self.workspace).resolve()
        ensure_directory(self.workspace)

    @property
    def state_dir(self) -> Path:
        return ensure_directory(self.workspace / "state")

    @property
    def logs_dir(self) -> Path:
        return ensure_directory(self.workspace / "logs")

    @property
    def manifest_path(self) -> Path:
        return self.workspace / MANIFEST_NAME

    def stage_root(self, stage: Stage) -> Path:
        return self.workspace / "stages" / stage.name.lower() / "rootfs"

    def stage_output(self, stage: Stage) -> Path:
        return self.state_dir / f"{stage.name.lower()}.json"

    def stage_log(self, stage: Stage) -> Path:
        return self.logs_dir / f"{stage.name.lower()}.log"

    def ignore_patterns(self) -> List[str]:
        patterns = list(ALWAYS_IGNORED)
        patterns += self.spec.ignore
        patterns += read_ignore_file(self.context_dir / ".dockerignore")
        return patterns

    def reset(self) -> None:
        """Discard stage filesystems, state and manifest left by an earlier run."""

        for stage in Stage.ordered():
            root = self.stage_root(stage)
            if root.parent.exists():
                _make_writable(root.parent)
                shutil.rmtree(root.parent)
            self.stage_output(stage).unlink(missing_ok=True)
        self.manifest_path.unlink(missing_ok=True)


def _make_writable(path: Path) -> None:
    for current, dirnames, filenames in os.walk(path):
        for name in dirnames + filenames:
            target = Path(current) / name
            if not target.is_symlink():
                target.chmod(target.stat().st_mode | stat.S_IWUSR)


def _base_dir(context: PipelineContext, base: str) -> Optional[Path]:
    """Return the directory mapped to ``base``, or None for an unmapped (empty) base."""

    base_dir = context.bases.get(base)
    if base_dir is not None and not base_dir.is_dir():
        raise ConfigurationError(f"Base {base!r} maps to {base_dir}, which is not a directory")
    return base_dir


def _seed_root(context: PipelineContext, stage: Stage, base: str) -> Path:
    """Create an empty stage root populated from ``base`` when a directory is mapped to it."""

    base_dir = _base_dir(context, base)
    root = reset_directory(context.stage_root(stage))
    if base_dir is None:
        logger.info("Stage %s starts from unmapped base %s (empty root)", stage.name.lower(), base)
        return root
    count = copy_tree(base_dir, root)
    logger.info("Stage %s seeded from base %s (%d files)", stage.name.lower(), base, count)
    return root


def _copy_source(context: PipelineContext, root: Path, workdir: str, step: CopySource) -> int:
    source = (context.context_dir / step.source).resolve()
    if source != context.context_dir and context.context_dir not in source.parents:
        raise DefinitionError(f"{step.describe()}: source lies outside the build context")
    if not source.exists():
        raise DefinitionError(f"{step.describe()}: {source} does not exist")
    destination = stage_path(root, step.destination, workdir)
    if source.is_dir():
        return copy_tree(
            source,
            destination,
            ignore=context.ignore_patterns(),
            exclude=[context.workspace],
        )
    if step.destination.endswith("/") or destination.is_dir():
        destination = destination / source.name
    ensure_directory(destination.parent)
    shutil.copy2(source, destination)
    return 1


def _write_result(context: PipelineContext, stage: Stage, result: StageResult) -> StageResult:
    dump_json(context.stage_output(stage), result.to_dict())
    return result


def run_build_stage(context: PipelineContext, config: BuildConfiguration) -> StageResult:
    """Execute the build stage: bind arguments, copy the source tree, run build commands."""

    spec = context.spec.build
    args = resolve_args(spec.name, spec.args, config)
    env = expand_env(spec.name, spec.env, args)
    secrets = secret_values(spec.args, args)
    # declared arguments are visible to commands even without an ENV line
    command_env = {**args, **env}

    root = _seed_root(context, Stage.BUILD, spec.base)
    workdir_path = ensure_directory(stage_path(root, spec.workdir))
    log_path = context.stage_log(Stage.BUILD)
    log_lines: List[str] = []
    copied = 0
    commands: List[Dict[str, object]] = []

    try:
        for step in spec.steps:
            if not isinstance(step, (CopySource, RunCommand)):
                raise DefinitionError(f"Unsupported build step {step!r}")
            log_lines.append(f"# {redact(step.describe(), secrets)}")
            if isinstance(step, CopySource):
                copied += _copy_source(context, root, spec.workdir, step)
                continue
            logger.info("[%s] %s", spec.name, redact(step.describe(), secrets))
            result = run_command(step.command, cwd=workdir_path, env=command_env)
            output = redact((result.stdout or "") + (result.stderr or ""), secrets)
            log_lines.append(output)
            commands.append(
                {
                    "command": [redact(part, secrets) for part in step.command],
                    "returncode": result.returncode,
                }
            )
            if result.returncode != 0:
                raise CompilationError(
                    spec.name,
                    [redact(part, secrets) for part in step.command],
                    result.returncode,
                    output,
                )
    except PipelineError as exc:
        _write_result(
            context,
            Stage.BUILD,
            StageResult(spec.name, "failed", {"commands": commands, "message": str(exc)}),
        )
        raise
    finally:
        log_path.write_text("\n".join(log_lines) + "\n")

    details = {
        "base": spec.base,
        "workdir": spec.workdir,
        "root": str(root),
        "args": sorted(args),
        "env": redact_mapping(env, secrets),
        "files_copied": copied,
        "commands": commands,
        "log": str(log_path),
    }
    logger.info("Build stage %s completed (%d commands)", spec.name, len(commands))
    return _write_result(context, Stage.BUILD, StageResult(spec.name, "completed", details))


def extract_artifact(context: PipelineContext, copy: ArtifactCopy) -> Artifact:
    """Read the artifact out of the finished build stage as an immutable blob."""

    build = context.spec.build
    if copy.stage != build.name:
        raise ArtifactHandoffError(f"Artifact must come from stage {build.name!r}, not {copy.stage!r}")
    root = context.stage_root(Stage.BUILD).resolve()
    path = stage_path(root, copy.source, build.workdir)
    if path.is_symlink() or root not in path.resolve().parents:
        raise ArtifactHandoffError(
            f"Artifact {copy.source!r} in stage {build.name!r} is a link or leaves the stage filesystem"
        )
    if not path.is_file():
        raise ArtifactHandoffError(
            f"Artifact {copy.source!r} was not produced by stage {build.name!r} (looked for {path})"
        )
    data = path.read_bytes()
    mode = stat.S_IMODE(path.stat().st_mode)
    artifact = Artifact(name=path.name, source=copy.source, data=data, mode=mode)
    logger.info("Extracted artifact %s (%d bytes, sha256 %s)", artifact.name, artifact.size, artifact.sha256[:12])
    return artifact


def _install_artifact(root: Path, workdir: str, destination: str, artifact: Artifact) -> Path:
    target = stage_path(root, destination, workdir)
    if destination.endswith("/") or destination in (".", "./") or target.is_dir():
        target = target / artifact.name
    ensure_directory(target.parent)
    target.write_bytes(artifact.data)
    target.chmod(0o555)
    return target


def run_release_stage(
    context: PipelineContext, artifact: Artifact, config: BuildConfiguration
) -> ReleaseImage:
    """Construct the release stage from its own base and the extracted artifact.

    Only arguments the release stage declares are resolved; nothing from the
    build stage environment is carried over.
    """

    spec = context.spec.release
    args = resolve_args(spec.name, spec.args, config)
    env = expand_env(spec.name, spec.env, args)

    root = _seed_root(context, Stage.RELEASE, spec.base)
    ensure_directory(stage_path(root, spec.workdir))
    installed = _install_artifact(root, spec.workdir, spec.artifact.destination, artifact)

    image = ReleaseImage(
        root=root,
        base=spec.base,
        workdir=spec.workdir,
        entrypoint=tuple(spec.entrypoint),
        artifact={**artifact.to_dict(), "path": "/" + installed.relative_to(root).as_posix()},
        args=tuple(spec.args),
        env_template=dict(spec.env),
        env=env,
    )
    dump_json(context.manifest_path, image.to_manifest())
    details = {
        "base": spec.base,
        "root": str(root),
        "artifact": image.artifact,
        "entrypoint": list(image.entrypoint),
        "manifest": str(context.manifest_path),
    }
    _write_result(context, Stage.RELEASE, StageResult(spec.name, "completed", details))
    logger.info("Release stage %s ready: %s", spec.name, " ".join(image.entrypoint))
    return image


def load_release(manifest_path: str | Path, config: BuildConfiguration) -> ReleaseImage:
    """Rebuild a :class:`ReleaseImage` from its manifest, re-binding declared arguments."""

    manifest_path = Path(manifest_path)
    if not manifest_path.exists():
        raise ArtifactHandoffError(f"No release manifest at {manifest_path}; run the build first")
    data = json.loads(manifest_path.read_text())
    args = tuple(BuildArg.from_dict(entry) for entry in data.get("args", []))
    resolved = resolve_args("release", args, config)
    env_template = data.get("env", {})
    return ReleaseImage(
        root=Path(data["root"]),
        base=data["base"],
        workdir=data["workdir"],
        entrypoint=tuple(data["entrypoint"]),
        artifact=data["artifact"],
        args=args,
        env_template=env_template,
        env=expand_env("release", env_template, resolved),
    )


def run_release(image: ReleaseImage) -> int:
    """Execute the entry point inside the release root and return its exit code.

    The process sees the release's declared environment and a default PATH only.
    """

    argv = list(image.entrypoint)
    cwd = stage_path(image.root, image.workdir)
    if not cwd.is_dir():
        raise ArtifactHandoffError(f"Release root {image.root} is missing its workdir {image.workdir}")
    logger.info("Starting %s in %s", " ".join(argv), cwd)
    try:
        result = run_command(argv, cwd=cwd, env=image.env, inherit_env=False, capture=False)
    except OSError as exc:
        raise ArtifactHandoffError(f"Cannot execute {argv[0]!r} in {cwd}: {exc}") from exc
    if result.returncode < 0:
        # killed by signal N: report 128+N like a shell
        return 128 - result.returncode
    return result.returncode


class ReleasePipeline:
    """Runs the build stage, hands the artifact over and constructs the release stage."""

    def __init__(self, context: PipelineContext) -> None:
        self.context = context

    def preflight(self, config: BuildConfiguration) -> None:
        """Check both stages' arguments, environment and base mappings before anything is built."""

        for stage in (self.context.spec.build, self.context.spec.release):
            expand_env(stage.name, stage.env, resolve_args(stage.name, stage.args, config))
            _base_dir(self.context, stage.base)

    def run(self, config: BuildConfiguration) -> ReleaseImage:
        self.context.reset()
        build, release = self.context.spec.build, self.context.spec.release
        self.preflight(config)
        logger.info("Building %s -> %s", build.name, release.name)
        run_build_stage(self.context, config)
        try:
            artifact = extract_artifact(self.context, release.artifact)
        except ArtifactHandoffError as exc:
            _write_result(self.context, Stage.RELEASE, StageResult(release.name, "failed", {"message": str(exc)}))
            raise
        return run_release_stage(self.context, artifact, config)

    def status(self) -> Dict[str, str]:
        statuses: Dict[str, str] = {}
        for stage in Stage.ordered():
            stage_output = self.context.stage_output(stage)
            if stage_output.exists():
                result = StageResult.from_dict(json.loads(stage_output.read_text()))
                statuses[stage.name.lower()] = result.status
        return statuses
