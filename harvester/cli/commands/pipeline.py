"""CLI commands for the crawl pipeline.

Commands:
- pipeline tick: Claim and run the next due batch, if any
- pipeline serve: Tick on an interval until interrupted
- pipeline crawl: Run one manual job for a single source
"""

from __future__ import annotations

import argparse
import logging

from ._context import EXIT_ERROR, EXIT_SUCCESS, CommandContext, add_common_args, command, print_json

logger = logging.getLogger(__name__)


def register_commands(subparsers: argparse._SubParsersAction[argparse.ArgumentParser]) -> None:
    """Add pipeline subcommands to the main CLI parser."""

    pipeline_parser = subparsers.add_parser(
        "pipeline",
        description="Dispatch batches and run crawl jobs.",
        help="Run the crawl pipeline.",
    )
    pipeline_subparsers = pipeline_parser.add_subparsers(dest="pipeline_command", metavar="SUBCOMMAND")
    pipeline_subparsers.required = True

    def add_runtime_args(parser: argparse.ArgumentParser) -> None:
        add_common_args(parser)
        parser.add_argument(
            "--workers",
            type=int,
            help="Concurrent crawl jobs (default: worker_count from config).",
        )
        parser.add_argument(
            "--max-pages",
            type=int,
            help="Maximum pages fetched per job (default: max_pages_per_job from config).",
        )

    # pipeline tick
    tick_parser = pipeline_subparsers.add_parser("tick", help="Run the next due batch once.")
    add_runtime_args(tick_parser)
    tick_parser.set_defaults(func=pipeline_tick_cli)

    # pipeline serve
    serve_parser = pipeline_subparsers.add_parser("serve", help="Tick repeatedly.")
    add_runtime_args(serve_parser)
    serve_parser.add_argument(
        "--interval",
        type=float,
        default=60.0,
        help="Seconds to wait when no batch is due (default: 60).",
    )
    serve_parser.add_argument(
        "--max-ticks",
        type=int,
        help="Stop after this many ticks (default: run until interrupted).",
    )
    serve_parser.set_defaults(func=pipeline_serve_cli)

    # pipeline crawl
    crawl_parser = pipeline_subparsers.add_parser("crawl", help="Crawl one source now, outside any batch.")
    add_runtime_args(crawl_parser)
    crawl_parser.add_argument("source_id", help="Source id.")
    crawl_parser.set_defaults(func=pipeline_crawl_cli)


def _runtime(args: argparse.Namespace, ctx: CommandContext):
    return ctx.runtime(worker_count=args.workers, max_pages_per_job=args.max_pages)


@command("run_crawl")
def pipeline_tick_cli(args: argparse.Namespace, ctx: CommandContext) -> int:
    from harvester.knowledge.pipeline.runner import run_tick

    runtime = _runtime(args, ctx)
    result = run_tick(runtime.scheduler, runtime.executor)
    if result is None:
        if args.output_json:
            print_json({"claimed": False})
        else:
            print("No batch due.")
        return EXIT_SUCCESS

    if args.output_json:
        print_json({"claimed": True, **result.to_dict()})
    else:
        print(result.summary())
        for job in result.jobs:
            if job.error:
                print(f"  ✗ {job.source_id}: {job.error}")
    return EXIT_SUCCESS if result.failed == 0 else EXIT_ERROR


@command("run_crawl")
def pipeline_serve_cli(args: argparse.Namespace, ctx: CommandContext) -> int:
    from harvester.knowledge.pipeline.runner import run_loop

    runtime = _runtime(args, ctx)
    logger.info("Serving pipeline (interval %.0fs)", args.interval)
    try:
        results = run_loop(
            runtime.scheduler,
            runtime.executor,
            interval_seconds=args.interval,
            max_ticks=args.max_ticks,
        )
    except KeyboardInterrupt:
        logger.info("Interrupted; stopping")
        return EXIT_SUCCESS

    if args.output_json:
        print_json([result.to_dict() for result in results])
    else:
        print(f"Ran {len(results)} batch(es)")
    return EXIT_SUCCESS


@command("run_crawl")
def pipeline_crawl_cli(args: argparse.Namespace, ctx: CommandContext) -> int:
    from harvester.knowledge.pipeline.runner import run_source

    runtime = _runtime(args, ctx)
    job = run_source(runtime.executor, ctx.stores, args.source_id)
    if args.output_json:
        print_json(job.to_dict())
    else:
        print(f"Job {job.id}: {job.status}")
        print(f"  Pages visited: {job.pages_visited}")
        print(f"  Items found: {job.items_found}")
        if job.error:
            print(f"  Error: {job.error}")
    return EXIT_SUCCESS if job.error is None else EXIT_ERROR
