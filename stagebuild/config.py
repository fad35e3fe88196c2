"""Build configuration: externally supplied arguments and their expansion per stage."""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from typing import Dict, Iterable, Mapping, Optional, Sequence

from .errors import ConfigurationError
from .models import BuildArg

logger = logging.getLogger(__name__)

REDACTED = "***"

_REFERENCE = re.compile(r"\$(?:\{(?P<braced>[A-Za-z_][A-Za-z0-9_]*)\}|(?P<bare>[A-Za-z_][A-Za-z0-9_]*))")


@dataclass(frozen=True)
class BuildConfiguration:
    """Values supplied for one pipeline run, keyed by argument name."""

    values: Mapping[str, str] = field(default_factory=dict)

    @classmethod
    def from_pairs(
        cls, pairs: Iterable[str], environ: Optional[Mapping[str, str]] = None
    ) -> "BuildConfiguration":
        """Parse ``KEY=VALUE`` pairs; a bare ``KEY`` takes its value from ``environ``."""

        environ = os.environ if environ is None else environ
        values: Dict[str, str] = {}
        for pair in pairs:
            if "=" in pair:
                key, value = pair.split("=", 1)
            else:
                key = pair
                if key not in environ:
                    logger.debug("Build argument %s not set in the environment", key)
                    continue
                value = environ[key]
            key = key.strip()
            if not key:
                raise ConfigurationError(f"Build argument without a name: {pair!r}")
            values[key] = value
        return cls(values=dict(values))

    def __contains__(self, name: object) -> bool:
        return name in self.values

    def get(self, name: str) -> Optional[str]:
        return self.values.get(name)


def resolve_args(
    stage: str, declared: Sequence[BuildArg], config: BuildConfiguration
) -> Dict[str, str]:
    """Bind every argument ``stage`` declares, failing on missing or malformed values.

    Supplied values for arguments the stage does not declare are ignored.
    """

    resolved: Dict[str, str] = {}
    for arg in declared:
        value = config.get(arg.name)
        if value is None:
            value = arg.default
        if value is None:
            raise ConfigurationError(f"Stage {stage!r} requires build argument {arg.name!r}")
        if not value.strip():
            raise ConfigurationError(f"Stage {stage!r}: build argument {arg.name!r} is empty")
        if "\x00" in value or "\n" in value:
            raise ConfigurationError(f"Stage {stage!r}: build argument {arg.name!r} contains control characters")
        if arg.pattern and not re.fullmatch(arg.pattern, value):
            raise ConfigurationError(
                f"Stage {stage!r}: build argument {arg.name!r} does not match {arg.pattern!r}"
            )
        resolved[arg.name] = value
    logger.debug("Stage %s bound arguments: %s", stage, ", ".join(sorted(resolved)) or "none")
    return resolved


def expand_env(stage: str, templates: Mapping[str, str], args: Mapping[str, str]) -> Dict[str, str]:
    """Expand ``$NAME`` / ``${NAME}`` references against the stage's own arguments.

    Earlier entries are visible to later ones. A reference to anything else is
    a configuration error rather than an empty string.
    """

    scope = dict(args)
    env: Dict[str, str] = {}

    def _substitute(match: re.Match[str]) -> str:
        name = match.group("braced") or match.group("bare")
        if name not in scope:
            raise ConfigurationError(
                f"Stage {stage!r} references {name!r} in its environment without declaring it"
            )
        return scope[name]

    for key, template in templates.items():
        value = _REFERENCE.sub(_substitute, template)
        env[key] = value
        scope[key] = value
    return env


def secret_values(declared: Sequence[BuildArg], resolved: Mapping[str, str]) -> list[str]:
    return [resolved[arg.name] for arg in declared if arg.secret and arg.name in resolved]


def redact(text: str, secrets: Iterable[str]) -> str:
    for secret in sorted(set(secrets), key=len, reverse=True):
        if secret:
            text = text.replace(secret, REDACTED)
    return text


def redact_mapping(values: Mapping[str, str], secrets: Iterable[str]) -> Dict[str, str]:
    secrets = list(secrets)
    return {key: redact(value, secrets) for key, value in values.items()}
