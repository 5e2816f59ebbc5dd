"""CLI commands for captured items.

Commands:
- items list: List captured items, newest first
- items parse: Extract candidate problems from NEW or FAILED items
- items import: Turn parsed items into problems entering review
"""

from __future__ import annotations

import argparse

from harvester.knowledge.models import ITEM_FAILED

from ._context import EXIT_ERROR, EXIT_SUCCESS, CommandContext, add_common_args, command, print_json


def register_commands(subparsers: argparse._SubParsersAction[argparse.ArgumentParser]) -> None:
    """Add item subcommands to the main CLI parser."""

    items_parser = subparsers.add_parser(
        "items",
        description="Inspect, parse and import captured items.",
        help="Work with captured items.",
    )
    items_subparsers = items_parser.add_subparsers(dest="items_command", metavar="SUBCOMMAND")
    items_subparsers.required = True

    # items list
    list_parser = items_subparsers.add_parser("list", help="List captured items.")
    add_common_args(list_parser)
    list_parser.add_argument("--source-id", help="Only items of this source.")
    list_parser.add_argument("--job-id", help="Only items of this job.")
    list_parser.add_argument("--status", help="Only items with this status.")
    list_parser.add_argument("--page", type=int, default=1)
    list_parser.add_argument("--limit", type=int, default=20)
    list_parser.set_defaults(func=items_list_cli)

    # items parse
    parse_parser = items_subparsers.add_parser("parse", help="Parse items into candidate problems.")
    add_common_args(parse_parser)
    parse_parser.add_argument("item_ids", nargs="+", help="Item ids.")
    parse_parser.set_defaults(func=items_parse_cli)

    # items import
    import_parser = items_subparsers.add_parser("import", help="Import parsed items as problems.")
    add_common_args(import_parser)
    import_parser.add_argument("item_ids", nargs="+", help="Item ids.")
    import_parser.add_argument("--subject-id", help="Subject to attach the problems to.")
    import_parser.set_defaults(func=items_import_cli)


@command("view_review")
def items_list_cli(args: argparse.Namespace, ctx: CommandContext) -> int:
    result = ctx.stores.items.list(
        source_id=args.source_id,
        job_id=args.job_id,
        status=args.status.upper() if args.status else None,
        page=args.page,
        limit=args.limit,
    )
    if args.output_json:
        print_json(result.to_dict())
        return EXIT_SUCCESS

    if not result.items:
        print("No items.")
        return EXIT_SUCCESS
    for item in result.items:
        flag = " [manual review]" if item.requires_manual_review else ""
        print(f"{item.id}  {item.status:<8} {item.kind:<4} {item.file_type or '-':<4} {item.url}{flag}")
    print(f"\nPage {result.page}/{max(result.total_pages, 1)} ({result.total} items)")
    return EXIT_SUCCESS


@command("edit_items")
def items_parse_cli(args: argparse.Namespace, ctx: CommandContext) -> int:
    from harvester.parsing.extraction import ItemParser

    parser = ItemParser(
        ctx.stores,
        ocr_threshold=ctx.config.ocr_confidence_threshold,
        fetcher=ctx.runtime().fetcher,
    )
    items = [parser.parse(item_id) for item_id in args.item_ids]

    if args.output_json:
        print_json([item.to_dict() for item in items])
    else:
        for item in items:
            if item.status == ITEM_FAILED:
                print(f"✗ {item.id}: {item.error}")
            else:
                print(f"✓ {item.id}: {item.problem_count} candidates")
    return EXIT_ERROR if any(item.status == ITEM_FAILED for item in items) else EXIT_SUCCESS


@command("edit_items")
def items_import_cli(args: argparse.Namespace, ctx: CommandContext) -> int:
    from harvester.knowledge.importer import ItemImporter
    from harvester.knowledge.similarity import DuplicateGate

    gate = DuplicateGate(
        duplicate_threshold=ctx.config.duplicate_threshold,
        review_threshold=ctx.config.review_threshold,
        sample_size=ctx.config.similarity_sample_size,
    )
    importer = ItemImporter(ctx.stores, gate, ctx.review_pipeline())
    report = importer.import_items(args.item_ids, subject_id=args.subject_id, actor_id=ctx.actor.actor_id)

    if args.output_json:
        print_json(report.to_dict())
    else:
        for item_id, problem_ids in report.imported.items():
            print(f"✓ {item_id}: {len(problem_ids)} problems")
        for item_id, error in report.failed.items():
            print(f"✗ {item_id}: {error}")
    return EXIT_ERROR if report.failed else EXIT_SUCCESS
