from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Dict, List

from .config import BuildConfiguration
from .errors import PipelineError
from .pipeline import MANIFEST_NAME, PipelineContext, ReleasePipeline, load_release, run_release
from .specfile import PipelineFile, apply_bases

logger = logging.getLogger("stagebuild")


def _parse_bases(pairs: List[str]) -> Dict[str, str]:
    bases: Dict[str, str] = {}
    for pair in pairs:
        name, sep, directory = pair.partition("=")
        if not sep or not name or not directory:
            raise argparse.ArgumentTypeError(f"--base expects NAME=DIR, got {pair!r}")
        bases[name] = directory
    return bases


def _load_pipeline(args: argparse.Namespace) -> ReleasePipeline:
    definition = Path(args.file)
    if not definition.is_absolute():
        definition = Path(args.context) / definition
    spec = PipelineFile.from_file(definition).load()
    bases = apply_bases(spec, _parse_bases(args.base), definition.resolve().parent)
    context = PipelineContext(spec=spec, context_dir=Path(args.context), workspace=Path(args.workspace), bases=bases)
    return ReleasePipeline(context)


def cmd_build(args: argparse.Namespace) -> int:
    pipeline = _load_pipeline(args)
    config = BuildConfiguration.from_pairs(args.build_arg)
    image = pipeline.run(config)
    print(json.dumps(image.to_manifest(), indent=2))
    return 0


def cmd_status(args: argparse.Namespace) -> int:
    pipeline = _load_pipeline(args)
    print(json.dumps(pipeline.status(), indent=2))
    return 0


def cmd_run(args: argparse.Namespace) -> int:
    config = BuildConfiguration.from_pairs(args.build_arg)
    image = load_release(Path(args.workspace) / MANIFEST_NAME, config)
    return run_release(image)


def cmd_show(args: argparse.Namespace) -> int:
    pipeline = _load_pipeline(args)
    print(json.dumps(pipeline.context.spec.to_dict(), indent=2))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Two-stage build and release orchestrator")
    parser.add_argument(
        "--workspace",
        default=".stagebuild",
        help="Directory used for stage filesystems, state, logs and the release manifest.",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging verbosity.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    def _definition_args(sub: argparse.ArgumentParser) -> None:
        sub.add_argument("-f", "--file", default="Dockerfile", help="Pipeline definition, relative to the context.")
        sub.add_argument("--context", default=".", help="Build context copied into the build stage.")
        sub.add_argument(
            "--base",
            action="append",
            default=[],
            metavar="NAME=DIR",
            help="Directory that seeds the stage filesystem for base NAME.",
        )

    def _build_arg(sub: argparse.ArgumentParser) -> None:
        sub.add_argument(
            "--build-arg",
            action="append",
            default=[],
            metavar="KEY[=VALUE]",
            help="Build argument; without a value it is read from the environment.",
        )

    build_parser_ = subparsers.add_parser("build", help="Run the build stage and construct the release stage")
    _definition_args(build_parser_)
    _build_arg(build_parser_)
    build_parser_.set_defaults(func=cmd_build)

    status_parser = subparsers.add_parser("status", help="Show per-stage status")
    _definition_args(status_parser)
    status_parser.set_defaults(func=cmd_status)

    run_parser = subparsers.add_parser("run", help="Execute the release entry point")
    _build_arg(run_parser)
    run_parser.set_defaults(func=cmd_run)

    show_parser = subparsers.add_parser("show", help="Print the parsed pipeline definition")
    _definition_args(show_parser)
    show_parser.set_defaults(func=cmd_show)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(level=args.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    try:
        return args.func(args)
    except argparse.ArgumentTypeError as exc:
        parser.error(str(exc))
    except PipelineError as exc:
        logger.error("%s: %s", type(exc).__name__, exc)
        return 1


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
