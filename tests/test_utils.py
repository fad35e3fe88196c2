from __future__ import annotations

import sys
from pathlib import Path

import pytest

from stagebuild.utils import copy_tree, is_ignored, read_ignore_file, run_command, stage_path


def test_stage_path_maps_into_root(tmp_path: Path) -> None:
    assert stage_path(tmp_path, "/app/target/release/rust_api") == tmp_path / "app/target/release/rust_api"
    assert stage_path(tmp_path, "target/release/rust_api", "/app") == tmp_path / "app/target/release/rust_api"
    assert stage_path(tmp_path, ".", "/usr/local/bin") == tmp_path / "usr/local/bin"
    assert stage_path(tmp_path, "../../../etc/passwd", "/app") == tmp_path / "etc/passwd"


def test_is_ignored_matches_paths_and_bare_names() -> None:
    patterns = ["target", "docs/*.md"]
    assert is_ignored("target", patterns)
    assert is_ignored("crates/core/target", patterns)
    assert is_ignored("docs/readme.md", patterns)
    assert not is_ignored("src/main.rs", patterns)


def test_read_ignore_file_skips_comments(tmp_path: Path) -> None:
    path = tmp_path / ".dockerignore"
    path.write_text("# build output\ntarget/\n\n*.log\n")
    assert read_ignore_file(path) == ["target", "*.log"]
    assert read_ignore_file(tmp_path / "absent") == []


def test_copy_tree_honours_ignore_and_exclude(tmp_path: Path) -> None:
    src = tmp_path / "src"
    (src / "target/release").mkdir(parents=True)
    (src / "target/release/old").write_text("stale")
    (src / "cache").mkdir()
    (src / "main.rs").write_text("fn main() {}")
    dest = tmp_path / "dest"

    copied = copy_tree(src, dest, ignore=["target"], exclude=[src / "cache"])

    assert copied == 1
    assert (dest / "main.rs").exists()
    assert not (dest / "target").exists()
    assert not (dest / "cache").exists()


def test_run_command_without_inherited_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("LEAKY", "1")
    code = "import os, sys; sys.exit(0 if 'LEAKY' not in os.environ and os.environ['KEPT'] == 'yes' else 1)"
    result = run_command([sys.executable, "-c", code], env={"KEPT": "yes"}, inherit_env=False)
    assert result.returncode == 0

