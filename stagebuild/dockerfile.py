"""Parser for the two-stage Dockerfile subset understood by the pipeline."""

from __future__ import annotations

import json
import logging
import posixpath
import shlex
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from .errors import DefinitionError
from .models import (
    ArtifactCopy,
    BuildArg,
    BuildStageSpec,
    CopySource,
    PipelineSpec,
    ReleaseStageSpec,
    RunCommand,
)

logger = logging.getLogger(__name__)

SUPPORTED_INSTRUCTIONS = ("FROM", "WORKDIR", "ARG", "ENV", "COPY", "RUN", "CMD")


@dataclass
class _StageDraft:
    index: int
    base: str
    name: str
    line: int
    workdir: str = "/"
    args: List[BuildArg] = field(default_factory=list)
    env: Dict[str, str] = field(default_factory=dict)
    steps: List[Any] = field(default_factory=list)
    copies_from: List[Tuple[ArtifactCopy, int]] = field(default_factory=list)
    cmd: Optional[List[str]] = None


def logical_lines(text: str) -> List[Tuple[int, str]]:
    """Join backslash continuations and drop comments and blank lines.

    Returns ``(line_number, content)`` pairs, numbered from the first physical line.
    """

    lines: List[Tuple[int, str]] = []
    buffer: List[str] = []
    start = 0
    for number, raw in enumerate(text.splitlines(), start=1):
        stripped = raw.strip()
        if stripped.startswith("#") or (not stripped and not buffer):
            continue
        if not buffer:
            start = number
        if stripped.endswith("\\"):
            buffer.append(stripped[:-1].strip())
            continue
        buffer.append(stripped)
        joined = " ".join(part for part in buffer if part)
        buffer = []
        if joined:
            lines.append((start, joined))
    if buffer:
        raise DefinitionError(f"Line {start}: unterminated line continuation")
    return lines


def _exec_form(value: str) -> Optional[List[str]]:
    if not value.startswith("["):
        return None
    try:
        parsed = json.loads(value)
    except json.JSONDecodeError:
        return None
    if not isinstance(parsed, list) or not all(isinstance(item, str) for item in parsed):
        return None
    return parsed


def _command(value: str, line: int) -> List[str]:
    if not value:
        raise DefinitionError(f"Line {line}: empty command")
    exec_form = _exec_form(value)
    if exec_form is not None:
        if not exec_form:
            raise DefinitionError(f"Line {line}: empty command")
        return exec_form
    return ["/bin/sh", "-c", value]


def _split(value: str, line: int) -> List[str]:
    try:
        return shlex.split(value)
    except ValueError as exc:
        raise DefinitionError(f"Line {line}: {exc}") from exc


def _parse_env(value: str, line: int) -> Dict[str, str]:
    tokens = _split(value, line)
    if not tokens:
        raise DefinitionError(f"Line {line}: ENV requires a value")
    if "=" not in tokens[0]:
        key, _, rest = value.partition(" ")
        if not rest.strip():
            raise DefinitionError(f"Line {line}: ENV {key} has no value")
        return {key: rest.strip()}
    env: Dict[str, str] = {}
    for token in tokens:
        if "=" not in token:
            raise DefinitionError(f"Line {line}: malformed ENV entry {token!r}")
        key, item = token.split("=", 1)
        env[key] = item
    return env


def _parse_arg(value: str, line: int, global_defaults: Dict[str, str]) -> BuildArg:
    name, sep, default = value.partition("=")
    name = name.strip()
    if not name or " " in name:
        raise DefinitionError(f"Line {line}: malformed ARG {value!r}")
    # an ARG whose default is written into the file is not treated as secret
    if not sep:
        inherited = global_defaults.get(name)
        return BuildArg(name=name, default=inherited, secret=inherited is None)
    return BuildArg(name=name, default=default.strip().strip("\"'"), secret=False)


def _split_copy(value: str, line: int) -> Tuple[Dict[str, str], List[str]]:
    tokens = _split(value, line)
    flags: Dict[str, str] = {}
    while tokens and tokens[0].startswith("--"):
        flag, _, flag_value = tokens.pop(0)[2:].partition("=")
        flags[flag] = flag_value
    paths = tokens
    if len(paths) < 2:
        raise DefinitionError(f"Line {line}: COPY needs a source and a destination")
    unsupported = set(flags) - {"from"}
    if unsupported:
        raise DefinitionError(f"Line {line}: unsupported COPY flags {sorted(unsupported)}")
    return flags, paths


def parse_dockerfile(text: str) -> PipelineSpec:
    """Parse ``text`` into a :class:`PipelineSpec`.

    The first ``FROM`` section becomes the build stage, the second the release
    stage. The release stage may only receive the artifact through a single
    ``COPY --from``.
    """

    stages: List[_StageDraft] = []
    global_defaults: Dict[str, str] = {}

    for line, content in logical_lines(text):
        keyword, _, value = content.partition(" ")
        keyword = keyword.upper()
        value = value.strip()
        if keyword not in SUPPORTED_INSTRUCTIONS:
            raise DefinitionError(
                f"Line {line}: unsupported instruction {keyword}; expected one of {', '.join(SUPPORTED_INSTRUCTIONS)}"
            )

        if keyword == "FROM":
            parts = value.split()
            if len(parts) == 3 and parts[1].upper() == "AS":
                base, name = parts[0], parts[2]
            elif len(parts) == 1:
                base, name = parts[0], str(len(stages))
            else:
                raise DefinitionError(f"Line {line}: malformed FROM {value!r}")
            stages.append(_StageDraft(index=len(stages), base=base, name=name, line=line))
            continue

        if not stages:
            if keyword == "ARG":
                arg = _parse_arg(value, line, {})
                if arg.default is not None:
                    global_defaults[arg.name] = arg.default
                continue
            raise DefinitionError(f"Line {line}: {keyword} before the first FROM")

        stage = stages[-1]
        if keyword == "WORKDIR":
            if not value:
                raise DefinitionError(f"Line {line}: WORKDIR requires a path")
            stage.workdir = posixpath.normpath(posixpath.join(stage.workdir, value))
        elif keyword == "ARG":
            stage.args.append(_parse_arg(value, line, global_defaults))
        elif keyword == "ENV":
            stage.env.update(_parse_env(value, line))
        elif keyword == "COPY":
            flags, paths = _split_copy(value, line)
            *sources, destination = paths
            if "from" in flags:
                if len(sources) != 1:
                    raise DefinitionError(f"Line {line}: COPY --from must copy exactly one artifact")
                stage.copies_from.append(
                    (ArtifactCopy(stage=flags["from"], source=sources[0], destination=destination), line)
                )
            else:
                stage.steps.extend(CopySource(source=src, destination=destination) for src in sources)
        elif keyword == "RUN":
            stage.steps.append(RunCommand(tuple(_command(value, line))))
        elif keyword == "CMD":
            stage.cmd = _command(value, line)

    if len(stages) != 2:
        raise DefinitionError(f"Expected exactly two FROM stages (build, release), found {len(stages)}")

    build_draft, release_draft = stages
    if build_draft.copies_from:
        raise DefinitionError(f"Line {build_draft.copies_from[0][1]}: the build stage cannot copy from another stage")
    if build_draft.cmd is not None:
        logger.warning("Ignoring CMD in build stage %s", build_draft.name)
    if release_draft.steps:
        raise DefinitionError(
            f"Release stage {release_draft.name!r} may only receive the artifact; "
            f"found {release_draft.steps[0].describe()}"
        )
    if len(release_draft.copies_from) != 1:
        raise DefinitionError(
            f"Release stage {release_draft.name!r} must contain exactly one COPY --from, "
            f"found {len(release_draft.copies_from)}"
        )
    if release_draft.cmd is None:
        raise DefinitionError(f"Release stage {release_draft.name!r} has no CMD")

    artifact, _ = release_draft.copies_from[0]
    if artifact.stage == str(build_draft.index):
        artifact = ArtifactCopy(stage=build_draft.name, source=artifact.source, destination=artifact.destination)

    build = BuildStageSpec(
        name=build_draft.name,
        base=build_draft.base,
        workdir=build_draft.workdir,
        args=build_draft.args,
        env=build_draft.env,
        steps=build_draft.steps,
    )
    release = ReleaseStageSpec(
        name=release_draft.name,
        base=release_draft.base,
        artifact=artifact,
        entrypoint=release_draft.cmd,
        workdir=release_draft.workdir,
        args=release_draft.args,
        env=release_draft.env,
    )
    return PipelineSpec(build=build, release=release)

