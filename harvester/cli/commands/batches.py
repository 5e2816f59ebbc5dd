"""CLI commands for crawl batches.

Commands:
- batches create: Group sources into a scheduled batch
- batches list: List batches in dispatch order
- batches pause / resume / run: Batch actions
- batches priority: Change a batch's priority
- batches delete: Delete a batch that is not running
"""

from __future__ import annotations

import argparse

from harvester.knowledge.pipeline.config import SCHEDULE_INTERVALS
from harvester.knowledge.pipeline.scheduler import BatchScheduler

from ._context import EXIT_SUCCESS, CommandContext, add_common_args, command, print_json


def _print_batch(batch) -> None:
    next_run = batch.next_run_at.isoformat() if batch.next_run_at else "on next tick"
    flags = []
    if batch.is_night_mode:
        flags.append("night")
    if batch.schedule:
        flags.append(batch.schedule)
    if batch.pause_requested:
        flags.append("pause requested")
    suffix = f" ({', '.join(flags)})" if flags else ""
    print(f"{batch.id}  {batch.status:<7} p={batch.priority:<3} {batch.name}{suffix}")
    print(f"    sources: {len(batch.source_ids)}  next run: {next_run}")


def register_commands(subparsers: argparse._SubParsersAction[argparse.ArgumentParser]) -> None:
    """Add batch subcommands to the main CLI parser."""

    batches_parser = subparsers.add_parser(
        "batches",
        description="Create and control crawl batches.",
        help="Manage crawl batches.",
    )
    batches_subparsers = batches_parser.add_subparsers(dest="batches_command", metavar="SUBCOMMAND")
    batches_subparsers.required = True

    # batches create
    create_parser = batches_subparsers.add_parser("create", help="Create a batch.")
    add_common_args(create_parser)
    create_parser.add_argument("--name", required=True, help="Batch name.")
    create_parser.add_argument(
        "--source",
        dest="source_ids",
        action="append",
        required=True,
        help="Member source id (repeatable).",
    )
    create_parser.add_argument(
        "--schedule",
        choices=sorted(SCHEDULE_INTERVALS),
        help="Re-run interval.",
    )
    create_parser.add_argument(
        "--night",
        dest="is_night_mode",
        action="store_true",
        help="Run at the next local 22:00 and every night after.",
    )
    create_parser.add_argument("--priority", type=int, default=0, help="Priority 0-100 (default: 0).")
    create_parser.add_argument(
        "--filter-type",
        dest="filter_types",
        action="append",
        help="Only crawl member sources of this type (repeatable).",
    )
    create_parser.add_argument(
        "--filter-grade",
        dest="filter_grades",
        action="append",
        help="Only crawl member sources of this grade (repeatable).",
    )
    create_parser.add_argument("--description", default="", help="Free-form description.")
    create_parser.set_defaults(func=batches_create_cli)

    # batches list
    list_parser = batches_subparsers.add_parser("list", help="List batches.")
    add_common_args(list_parser)
    list_parser.add_argument("--status", help="Filter by status.")
    list_parser.add_argument("--page", type=int, default=1)
    list_parser.add_argument("--limit", type=int, default=20)
    list_parser.set_defaults(func=batches_list_cli)

    # batches pause / resume / run
    for action, help_text in (
        ("pause", "Pause a batch (deferred until completion while it runs)."),
        ("resume", "Resume a paused batch, or withdraw a deferred pause."),
        ("run", "Queue a batch to run on the next tick at top priority."),
    ):
        action_parser = batches_subparsers.add_parser(action, help=help_text)
        add_common_args(action_parser)
        action_parser.add_argument("batch_id", help="Batch id.")
        action_parser.set_defaults(func=batches_action_cli, batch_action=action)

    # batches priority
    priority_parser = batches_subparsers.add_parser("priority", help="Set a batch's priority.")
    add_common_args(priority_parser)
    priority_parser.add_argument("batch_id", help="Batch id.")
    priority_parser.add_argument("priority", type=int, help="New priority 0-100.")
    priority_parser.set_defaults(func=batches_priority_cli)

    # batches delete
    delete_parser = batches_subparsers.add_parser("delete", help="Delete a batch.")
    add_common_args(delete_parser)
    delete_parser.add_argument("batch_id", help="Batch id.")
    delete_parser.set_defaults(func=batches_delete_cli)


@command("manage_batch")
def batches_create_cli(args: argparse.Namespace, ctx: CommandContext) -> int:
    filters = {}
    if args.filter_types:
        filters["source_types"] = args.filter_types
    if args.filter_grades:
        filters["grades"] = [grade.upper() for grade in args.filter_grades]

    batch = BatchScheduler(ctx.stores).create(
        name=args.name,
        source_ids=args.source_ids,
        schedule=args.schedule,
        is_night_mode=args.is_night_mode,
        priority=args.priority,
        filters=filters,
        description=args.description,
    )
    if args.output_json:
        print_json(batch.to_dict())
    else:
        print(f"Created batch {batch.id}")
        _print_batch(batch)
    return EXIT_SUCCESS


@command("view_batch")
def batches_list_cli(args: argparse.Namespace, ctx: CommandContext) -> int:
    result = BatchScheduler(ctx.stores).list(
        status=args.status.upper() if args.status else None,
        page=args.page,
        limit=args.limit,
    )
    if args.output_json:
        print_json(result.to_dict())
        return EXIT_SUCCESS

    if not result.items:
        print("No batches.")
        return EXIT_SUCCESS
    for batch in result.items:
        _print_batch(batch)
    print(f"\nPage {result.page}/{max(result.total_pages, 1)} ({result.total} batches)")
    return EXIT_SUCCESS


@command("manage_batch")
def batches_action_cli(args: argparse.Namespace, ctx: CommandContext) -> int:
    batch = BatchScheduler(ctx.stores).mutate(args.batch_id, action=args.batch_action)
    if args.output_json:
        print_json(batch.to_dict())
    else:
        _print_batch(batch)
    return EXIT_SUCCESS


@command("manage_batch")
def batches_priority_cli(args: argparse.Namespace, ctx: CommandContext) -> int:
    batch = BatchScheduler(ctx.stores).mutate(args.batch_id, priority=args.priority)
    if args.output_json:
        print_json(batch.to_dict())
    else:
        _print_batch(batch)
    return EXIT_SUCCESS


@command("manage_batch")
def batches_delete_cli(args: argparse.Namespace, ctx: CommandContext) -> int:
    BatchScheduler(ctx.stores).delete(args.batch_id)
    if args.output_json:
        print_json({"id": args.batch_id, "deleted": True})
    else:
        print(f"Deleted batch {args.batch_id}")
    return EXIT_SUCCESS
