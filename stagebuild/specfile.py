from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from .dockerfile import parse_dockerfile
from .errors import DefinitionError
from .models import PipelineSpec


@dataclass
class PipelineFile:
    """Loader for pipeline definitions: a Dockerfile or a YAML/JSON/TOML mapping."""

    path: Path
    _cache: Optional[PipelineSpec] = None

    @classmethod
    def from_file(cls, path: str | Path) -> "PipelineFile":
        return cls(path=Path(path))

    @property
    def is_dockerfile(self) -> bool:
        name = self.path.name.lower()
        return name == "dockerfile" or name.startswith("dockerfile.") or name.endswith(".dockerfile")

    def _read_mapping(self, raw_text: str) -> Any:
        if self.path.suffix.lower() == ".toml":
            try:
                return tomllib.loads(raw_text)
            except tomllib.TOMLDecodeError as exc:
                raise DefinitionError(f"Invalid TOML in {self.path}: {exc}") from exc
        try:
            return json.loads(raw_text)
        except json.JSONDecodeError:
            try:
                return yaml.safe_load(raw_text)
            except yaml.YAMLError as exc:
                raise DefinitionError(f"Invalid YAML in {self.path}: {exc}") from exc

    def load(self) -> PipelineSpec:
        if self._cache is not None:
            return self._cache

        try:
            raw_text = self.path.read_text(encoding="utf-8")
        except OSError as exc:
            raise DefinitionError(f"Cannot read pipeline definition {self.path}: {exc}") from exc

        if self.is_dockerfile:
            spec = parse_dockerfile(raw_text)
        else:
            raw_data = self._read_mapping(raw_text)
            if not isinstance(raw_data, dict):
                raise DefinitionError(f"{self.path} must contain a mapping at the top level")
            spec = PipelineSpec.from_dict(raw_data)
        self._cache = spec
        return spec


def apply_bases(spec: PipelineSpec, overrides: Mapping[str, str], relative_to: Path) -> Dict[str, Path]:
    """Merge base directory mappings, resolving relative paths against ``relative_to``."""

    merged: Dict[str, Path] = {}
    for name, directory in {**spec.bases, **dict(overrides)}.items():
        path = Path(directory)
        if not path.is_absolute():
            path = relative_to / path
        merged[name] = path
    return merged
