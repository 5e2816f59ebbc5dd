"""CLI commands for the crawl log.

Commands:
- logs list: Page through crawl-log entries (newest page first, each page chronological)
- logs purge: Delete entries older than N days
"""

from __future__ import annotations

import argparse

from ._context import EXIT_SUCCESS, CommandContext, add_common_args, command, print_json


def register_commands(subparsers: argparse._SubParsersAction[argparse.ArgumentParser]) -> None:
    """Add log subcommands to the main CLI parser."""

    logs_parser = subparsers.add_parser(
        "logs",
        description="Read and maintain the crawl log.",
        help="Crawl log access.",
    )
    logs_subparsers = logs_parser.add_subparsers(dest="logs_command", metavar="SUBCOMMAND")
    logs_subparsers.required = True

    list_parser = logs_subparsers.add_parser("list", help="List crawl-log entries.")
    add_common_args(list_parser)
    list_parser.add_argument("--level", help="DEBUG, INFO, WARN or ERROR.")
    list_parser.add_argument("--action", help="Only entries with this action, e.g. TIMEOUT.")
    list_parser.add_argument("--job-id", help="Only entries of this job.")
    list_parser.add_argument("--page", type=int, default=1)
    list_parser.add_argument("--limit", type=int, default=100)
    list_parser.set_defaults(func=logs_list_cli)

    purge_parser = logs_subparsers.add_parser("purge", help="Delete old crawl-log entries.")
    add_common_args(purge_parser)
    purge_parser.add_argument(
        "--days-old",
        type=int,
        default=30,
        help="Delete entries older than this many days (default: 30).",
    )
    purge_parser.set_defaults(func=logs_purge_cli)


@command("view_logs")
def logs_list_cli(args: argparse.Namespace, ctx: CommandContext) -> int:
    result = ctx.stores.logs.page(
        page=args.page,
        limit=args.limit,
        level=args.level,
        action=args.action,
        job_id=args.job_id,
    )
    if args.output_json:
        print_json(result.to_dict())
        return EXIT_SUCCESS

    for entry in result.items:
        print(f"{entry.created_at.isoformat()} {entry.level:<5} {entry.action:<16} {entry.job_id} {entry.message}")
    print(f"\nPage {result.page}/{max(result.total_pages, 1)} ({result.total} entries)")
    return EXIT_SUCCESS


@command("configure_settings")
def logs_purge_cli(args: argparse.Namespace, ctx: CommandContext) -> int:
    deleted = ctx.stores.logs.purge(days_old=args.days_old)
    if args.output_json:
        print_json({"deleted": deleted, "days_old": args.days_old})
    else:
        print(f"Purged {deleted} entries older than {args.days_old} days")
    return EXIT_SUCCESS
