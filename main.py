#!/usr/bin/env python3

from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import Sequence

from dotenv import load_dotenv

# Load environment variables from .env file if it exists
_env_file = Path(__file__).parent / ".env"
if _env_file.exists():
    load_dotenv(_env_file)

from harvester.cli.commands.batches import (
    register_commands as register_batch_commands,
)
from harvester.cli.commands.dashboard import (
    register_commands as register_dashboard_commands,
)
from harvester.cli.commands.items import (
    register_commands as register_item_commands,
)
from harvester.cli.commands.logs import (
    register_commands as register_log_commands,
)
from harvester.cli.commands.pipeline import (
    register_commands as register_pipeline_commands,
)
from harvester.cli.commands.review import (
    register_commands as register_review_commands,
)
from harvester.cli.commands.sources import (
    register_commands as register_source_commands,
)


def _build_command_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="python -m main",
        description=(
            "Crawl instructional sources, extract problems and run them through review."
        ),
    )
    subparsers = parser.add_subparsers(dest="command", metavar="COMMAND")
    subparsers.required = True
    register_source_commands(subparsers)
    register_batch_commands(subparsers)
    register_pipeline_commands(subparsers)
    register_item_commands(subparsers)
    register_log_commands(subparsers)
    register_review_commands(subparsers)
    register_dashboard_commands(subparsers)
    return parser


def _dispatch(args: argparse.Namespace) -> int:
    handler = getattr(args, "func", None)
    if handler is None:  # pragma: no cover - defensive guard
        raise ValueError("No handler registered for parsed arguments.")
    return handler(args)


def main(argv: Sequence[str] | None = None) -> int:
    raw_args = list(sys.argv[1:] if argv is None else argv)

    command_parser = _build_command_parser()
    args = command_parser.parse_args(raw_args)
    return _dispatch(args)


if __name__ == "__main__":
    raise SystemExit(main())
