"""Command line entry point."""

import argparse
import asyncio
import logging
import sys
from dataclasses import replace
from typing import List, Optional

from . import __version__
from .core.types import Platform, RegistryConfig
from .exceptions import ImageAppendError
from .pipeline import BuildRequest, Stage, run_build


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="image-append",
        description="Add files and runtime config to a registry image and push the result.",
    )
    parser.add_argument("-b", "--base-image", required=True, help="base image URL")
    parser.add_argument("-t", "--target", required=True, help="destination image URL")
    parser.add_argument(
        "-f", "--file", dest="files", action="append", default=[],
        help="file or directory to add (repeatable)",
    )
    parser.add_argument(
        "-e", "--env", action="append", default=[], metavar="KEY=VALUE",
        help="environment variable (repeatable)",
    )
    parser.add_argument(
        "-c", "--cmd", default="", help="command to run when starting the container"
    )
    parser.add_argument("--platform", help="platform to pick from a manifest list, os/arch[/variant]")
    parser.add_argument(
        "--insecure-registry", action="append", default=[], metavar="HOST",
        help="registry to reach over plain HTTP (repeatable)",
    )
    parser.add_argument("--timeout", type=int, help="request timeout in seconds")
    parser.add_argument("-v", "--verbose", action="store_true", help="verbose logging")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def config_from_args(args: argparse.Namespace) -> RegistryConfig:
    """Environment defaults overridden by command line flags."""
    config = RegistryConfig.from_env()
    if args.platform:
        config = replace(config, platform=Platform.parse(args.platform))
    if args.insecure_registry:
        config = replace(
            config,
            insecure_registries=(*config.insecure_registries, *args.insecure_registry),
        )
    if args.timeout:
        config = replace(config, timeout=args.timeout)
    return config


def _print_stage(stage: Stage, message: str) -> None:
    print(message)


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        config = config_from_args(args)
    except ValueError as e:
        parser.error(str(e))

    request = BuildRequest(
        base=args.base_image,
        target=args.target,
        paths=tuple(args.files),
        env=tuple(args.env),
        cmd=args.cmd,
    )

    try:
        result = asyncio.run(run_build(request, config=config, on_stage=_print_stage))
    except ImageAppendError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    print(f"{result.reference.context}@{result.digest}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
