"""CLI command for the operations dashboard."""

from __future__ import annotations

import argparse

from ._context import EXIT_SUCCESS, CommandContext, add_common_args, command, print_json


def register_commands(subparsers: argparse._SubParsersAction[argparse.ArgumentParser]) -> None:
    """Add dashboard subcommands to the main CLI parser."""

    dashboard_parser = subparsers.add_parser(
        "dashboard",
        description="Crawl and review KPIs aggregated from the stores.",
        help="Show the operations dashboard.",
    )
    dashboard_subparsers = dashboard_parser.add_subparsers(dest="dashboard_command", metavar="SUBCOMMAND")
    dashboard_subparsers.required = True

    show_parser = dashboard_subparsers.add_parser("show", help="Print today's KPIs.")
    add_common_args(show_parser)
    show_parser.add_argument(
        "--error-sample",
        type=int,
        default=100,
        help="Recent ERROR entries considered for rankings (default: 100).",
    )
    show_parser.set_defaults(func=dashboard_show_cli)


@command("view_dashboard")
def dashboard_show_cli(args: argparse.Namespace, ctx: CommandContext) -> int:
    from harvester.knowledge.pipeline.monitor import build_dashboard

    report = build_dashboard(ctx.stores, error_sample=args.error_sample)
    if args.output_json:
        print_json(report.to_dict())
        return EXIT_SUCCESS

    print(f"Dashboard since {report.window_start.isoformat()}")
    print(f"  Items today:        {report.items_today}")
    print(f"  Problems today:     {report.problems_today}")
    print(f"  Import success:     {report.success_rate:.1%}")
    print(f"  Avg OCR confidence: {report.avg_ocr_confidence:.2f}")
    print(f"  Pending review:     {report.pending_review}")
    print(f"  Running jobs:       {len(report.running_jobs)}")
    if report.top_errors:
        print("\nTop errors:")
        for error in report.top_errors:
            print(f"  {error['type']:<20} {error['count']}")
    if report.source_stats:
        print("\nSources:")
        for stat in report.source_stats:
            print(f"  {stat['status']:<7} {stat['name']} (items={stat['item_count']}, jobs={stat['job_count']})")
    if report.degraded:
        print(f"\nDegraded metrics: {', '.join(report.degraded)}")
    return EXIT_SUCCESS
