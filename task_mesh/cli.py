"""
Command-line entry point for Task Mesh.
"""

import argparse
import sys
from pathlib import Path
from typing import List, Optional

import uvicorn

from . import __version__
from .api.main import create_app
from .utils.config import build_config, set_config
from .utils.logging import configure_logging, get_logger


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="task-mesh",
        description="Capability-based task orchestration for agent meshes",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    subparsers = parser.add_subparsers(dest="command")

    serve = subparsers.add_parser("serve", help="Run the orchestrator HTTP service")
    serve.add_argument("--host", help="Bind address (overrides config)")
    serve.add_argument("--port", type=int, help="Bind port (overrides config)")
    serve.add_argument("--config", type=Path, help="JSON or YAML configuration file")
    serve.add_argument("--log-level", help="Logging level (overrides config)")
    return parser


def serve(args: argparse.Namespace) -> int:
    config = build_config(args.config)
    if args.log_level:
        config.log_level = args.log_level
    set_config(config)
    configure_logging(config.log_level, config.json_logging)

    host = args.host or config.api.host
    port = args.port or config.api.port
    get_logger(__name__).info("Serving Task Mesh", host=host, port=port, version=__version__)

    uvicorn.run(create_app(config), host=host, port=port, log_level=config.log_level.lower())
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command == "serve":
        return serve(args)

    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
