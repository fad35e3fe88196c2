from pathlib import Path

import pytest

from stagebuild.errors import DefinitionError
from stagebuild.models import RunCommand
from stagebuild.specfile import PipelineFile, apply_bases

YAML_DEFINITION = """
build:
  name: builder
  base: rust:1.71-slim
  workdir: /app
  args:
    - name: DATABASE_URL
      pattern: "postgres://.+"
  env:
    DATABASE_URL: $DATABASE_URL
  steps:
    - copy: .
    - run: cargo build --release
release:
  base: debian:buster-slim
  workdir: /usr/local/bin
  artifact:
    source: target/release/rust_api
  entrypoint: ["./rust_api"]
bases:
  debian:buster-slim: bases/debian
ignore:
  - target
"""


def test_loads_yaml_definition(tmp_path: Path) -> None:
    path = tmp_path / "pipeline.yaml"
    path.write_text(YAML_DEFINITION)

    spec = PipelineFile.from_file(path).load()

    assert spec.build.args[0].pattern == "postgres://.+"
    assert spec.build.steps[1] == RunCommand(("/bin/sh", "-c", "cargo build --release"))
    assert spec.release.artifact.stage == "builder"
    assert spec.release.artifact.destination == "."
    assert spec.release.entrypoint == ["./rust_api"]
    assert spec.ignore == ["target"]

    bases = apply_bases(spec, {"rust:1.71-slim": "/opt/rust"}, tmp_path)
    assert bases == {"debian:buster-slim": tmp_path / "bases/debian", "rust:1.71-slim": Path("/opt/rust")}


def test_loads_json_and_toml_definitions(tmp_path: Path) -> None:
    json_path = tmp_path / "pipeline.json"
    json_path.write_text(
        '{"build": {"base": "a", "steps": [{"run": ["make"]}]},'
        ' "release": {"base": "b", "artifact": {"source": "/out/app"}, "entrypoint": ["./app"]}}'
    )
    toml_path = tmp_path / "pipeline.toml"
    toml_path.write_text(
        '[build]\nbase = "a"\nsteps = [{run = ["make"]}]\n\n'
        '[release]\nbase = "b"\nentrypoint = ["./app"]\nartifact = {source = "/out/app"}\n'
    )

    for path in (json_path, toml_path):
        spec = PipelineFile.from_file(path).load()
        assert spec.build.steps == [RunCommand(("make",))]
        assert spec.release.artifact.source == "/out/app"


def test_dockerfile_is_detected_by_name(tmp_path: Path) -> None:
    path = tmp_path / "Dockerfile"
    path.write_text('FROM a AS b\nRUN make\nFROM c\nCOPY --from=b /x .\nCMD ["./x"]\n')
    assert PipelineFile.from_file(path).load().build.base == "a"


@pytest.mark.parametrize(
    "content, message",
    [
        ("- just\n- a list\n", "mapping"),
        ("build: {base: a}\n", "'build' and 'release'"),
        ("build: {base: a}\nrelease: {base: b, entrypoint: x}\n", "'artifact'"),
        ("build: {steps: []}\nrelease: {}\n", "declare a base"),
        ("build: [unclosed\n", "Invalid YAML"),
        ("build: {base: a, env: [X]}\nrelease: {}\n", "env must be a mapping"),
        ("build: {base: a, args: [[DATABASE_URL]]}\nrelease: {}\n", "Build argument must be a mapping"),
        ("build: x\nrelease: {}\n", "Build stage must be a mapping"),
        ("build: {base: a, args: [{name: X, pattern: '['}]}\nrelease: {}\n", "pattern"),
    ],
)
def test_rejects_invalid_files(tmp_path: Path, content: str, message: str) -> None:
    path = tmp_path / "pipeline.yml"
    path.write_text(content)
    with pytest.raises(DefinitionError, match=message):
        PipelineFile.from_file(path).load()


def test_missing_file_is_a_definition_error(tmp_path: Path) -> None:
    with pytest.raises(DefinitionError, match="Cannot read"):
        PipelineFile.from_file(tmp_path / "nope.yaml").load()
