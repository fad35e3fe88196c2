from __future__ import annotations

import fnmatch
import hashlib
import json
import os
import shutil
import subprocess
from pathlib import Path
from typing import Iterable, Mapping, Sequence


def run_command(
    command: Sequence[str],
    *,
    cwd: str | Path | None = None,
    env: Mapping[str, str] | None = None,
    inherit_env: bool = True,
    capture: bool = True,
) -> subprocess.CompletedProcess[str]:
    """Execute a subprocess command and return the completed process.

    With ``inherit_env=False`` the child sees only ``env`` plus a default PATH,
    nothing from the calling process.
    """

    if inherit_env:
        process_env = os.environ.copy()
    else:
        process_env = {"PATH": os.defpath}
    if env:
        process_env.update(env)

    result = subprocess.run(
        list(command),
        cwd=str(cwd) if cwd else None,
        env=process_env,
        stdout=subprocess.PIPE if capture else None,
        stderr=subprocess.PIPE if capture else None,
        text=True,
        check=False,
    )
    return result


def ensure_directory(path: str | Path) -> Path:
    """Create a directory and return its Path object."""

    path = Path(path)
    path.mkdir(parents=True, exist_ok=True)
    return path


def reset_directory(path: str | Path) -> Path:
    """Remove ``path`` if present and recreate it empty."""

    path = Path(path)
    if path.exists():
        shutil.rmtree(path)
    return ensure_directory(path)


def sha256_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def dump_json(path: str | Path, payload: Mapping[str, object], *, indent: int = 2) -> None:
    """Write structured JSON to disk with a trailing newline for readability."""

    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, indent=indent, sort_keys=True) + "\n")


def read_ignore_file(path: str | Path) -> list[str]:
    """Read a ``.dockerignore`` style file into a list of patterns."""

    path = Path(path)
    if not path.exists():
        return []
    patterns = []
    for line in path.read_text(encoding="utf-8").splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        patterns.append(stripped.rstrip("/"))
    return patterns


def is_ignored(relative: str, patterns: Iterable[str]) -> bool:
    parts = relative.split("/")
    for pattern in patterns:
        if fnmatch.fnmatch(relative, pattern):
            return True
        # a bare name pattern matches at any depth
        if "/" not in pattern and any(fnmatch.fnmatch(part, pattern) for part in parts):
            return True
    return False


def copy_tree(
    source: str | Path,
    destination: str | Path,
    *,
    ignore: Sequence[str] = (),
    exclude: Sequence[Path] = (),
) -> int:
    """Copy ``source`` into ``destination`` honouring ignore patterns.

    ``exclude`` holds absolute paths that are skipped regardless of patterns.
    Returns the number of files copied.
    """

    source = Path(source).resolve()
    destination = ensure_directory(destination)
    excluded = {Path(path).resolve() for path in exclude}
    copied = 0
    for current, dirnames, filenames in os.walk(source):
        current_path = Path(current)
        rel_dir = current_path.relative_to(source)
        kept_dirs = []
        for dirname in sorted(dirnames):
            child = current_path / dirname
            rel = (rel_dir / dirname).as_posix()
            if child.resolve() in excluded or is_ignored(rel, ignore):
                continue
            kept_dirs.append(dirname)
        dirnames[:] = kept_dirs
        target_dir = ensure_directory(destination / rel_dir)
        for filename in sorted(filenames):
            rel = (rel_dir / filename).as_posix()
            if is_ignored(rel, ignore):
                continue
            shutil.copy2(current_path / filename, target_dir / filename, follow_symlinks=False)
            copied += 1
    return copied


def stage_path(root: Path, path: str, workdir: str = "/") -> Path:
    """Map a path as seen inside a stage onto the stage's ``root`` directory."""

    joined = Path(workdir) / path if not path.startswith("/") else Path(path)
    resolved = Path(os.path.normpath("/" + joined.as_posix().lstrip("/")))
    return root / resolved.relative_to("/")
