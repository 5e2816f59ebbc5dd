"""Shared plumbing for CLI command handlers.

Every handler is wrapped by :func:`command`, which configures logging,
identifies the actor, checks the handler's permission, opens the stores
under the data root and renders any :class:`HarvesterError` as a JSON
payload on stderr.
"""

from __future__ import annotations

import argparse
import functools
import json
import logging
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

from harvester import paths
from harvester.access import Actor, actor_from_env, require_permission
from harvester.config import ProjectConfig
from harvester.errors import HarvesterError
from harvester.knowledge.storage import Stores, open_stores

EXIT_SUCCESS = 0
EXIT_ERROR = 1

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def add_common_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--data-root",
        type=Path,
        help="Directory holding the harvester stores (default: $HARVESTER_DATA_ROOT or ./data).",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        dest="output_json",
        help="Output results in JSON format.",
    )
    parser.add_argument(
        "--actor",
        type=str,
        help="Acting user id (default: $HARVESTER_ACTOR).",
    )
    parser.add_argument(
        "--role",
        type=str,
        help="Acting user role (default: $HARVESTER_ROLE).",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable debug logging.",
    )


@dataclass
class CommandContext:
    """Everything a handler needs for one invocation."""

    actor: Actor
    data_root: Path
    config: ProjectConfig
    stores: Stores

    def pipeline_config(self, **overrides):
        from harvester.knowledge.pipeline.config import PipelineConfig

        return PipelineConfig.from_project_config(self.config, **overrides)

    def runtime(self, **overrides):
        from harvester.knowledge.pipeline.runner import build_runtime

        return build_runtime(self.stores, self.pipeline_config(**overrides))

    def review_pipeline(self):
        from harvester.knowledge.review import ReviewPipeline

        return ReviewPipeline(self.stores, require_manual=self.config.require_manual_review)


def _config_for(data_root: Path) -> ProjectConfig:
    if os.environ.get(paths.CONFIG_FILE_ENV):
        return ProjectConfig(paths.get_config_file())
    return ProjectConfig(data_root / "config.json")


def print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, default=str, ensure_ascii=False))


def report_error(exc: HarvesterError) -> int:
    print(json.dumps(exc.to_dict(), default=str, ensure_ascii=False), file=sys.stderr)
    return EXIT_ERROR


def command(permission: str) -> Callable:
    """Decorate a ``handler(args, ctx) -> int`` as an argparse ``func``."""

    def decorator(handler: Callable[[argparse.Namespace, CommandContext], int]) -> Callable[[argparse.Namespace], int]:
        @functools.wraps(handler)
        def wrapper(args: argparse.Namespace) -> int:
            logging.basicConfig(
                level=logging.DEBUG if getattr(args, "verbose", False) else logging.INFO,
                format=LOG_FORMAT,
            )
            try:
                actor = actor_from_env(getattr(args, "actor", None), getattr(args, "role", None))
                require_permission(actor, permission)
                data_root = getattr(args, "data_root", None) or paths.get_data_root()
                ctx = CommandContext(
                    actor=actor,
                    data_root=data_root,
                    config=_config_for(data_root),
                    stores=open_stores(data_root),
                )
                return handler(args, ctx)
            except HarvesterError as exc:
                return report_error(exc)

        return wrapper

    return decorator
