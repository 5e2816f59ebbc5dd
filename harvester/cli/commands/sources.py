"""CLI commands for the source registry.

Commands:
- sources add: Register a crawl target
- sources list: List registered sources
- sources update: Change fields of a source
- sources remove: Delete (or only deactivate) a source
- sources test: Robots check plus one page fetch, without persisting anything
"""

from __future__ import annotations

import argparse

from ._context import EXIT_SUCCESS, CommandContext, add_common_args, command, print_json


def _add_source_fields(parser: argparse.ArgumentParser, required: bool) -> None:
    parser.add_argument("--name", required=required, help="Display name.")
    parser.add_argument(
        "--type",
        dest="source_type",
        required=required,
        help="Source type, e.g. website, pdf_archive, board.",
    )
    parser.add_argument("--url", dest="base_url", required=required, help="Base URL to start crawling from.")
    parser.add_argument("--pattern", dest="crawl_pattern", help="Regex a URL must match to be followed/captured.")
    parser.add_argument("--file-types", help="Comma-separated file extensions to collect (default: pdf,hwp).")
    parser.add_argument("--max-depth", type=int, help="Maximum link depth from the base URL.")
    parser.add_argument("--delay-ms", dest="crawl_delay_ms", type=int, help="Minimum delay between requests.")
    parser.add_argument("--grade", help="Source trust grade A-E.")
    parser.add_argument("--description", help="Free-form description.")


def _source_fields(args: argparse.Namespace) -> dict:
    fields = {
        "name": args.name,
        "source_type": args.source_type,
        "base_url": args.base_url,
        "crawl_pattern": args.crawl_pattern,
        "file_types": args.file_types,
        "max_depth": args.max_depth,
        "crawl_delay_ms": args.crawl_delay_ms,
        "grade": args.grade.upper() if args.grade else None,
        "description": args.description,
    }
    if getattr(args, "is_active", None) is not None:
        fields["is_active"] = args.is_active
    return {k: v for k, v in fields.items() if v is not None}


def register_commands(subparsers: argparse._SubParsersAction[argparse.ArgumentParser]) -> None:
    """Add source subcommands to the main CLI parser."""

    sources_parser = subparsers.add_parser(
        "sources",
        description="Manage registered crawl sources.",
        help="Manage crawl sources.",
    )
    sources_subparsers = sources_parser.add_subparsers(dest="sources_command", metavar="SUBCOMMAND")
    sources_subparsers.required = True

    # sources add
    add_parser = sources_subparsers.add_parser("add", help="Register a new source.")
    add_common_args(add_parser)
    _add_source_fields(add_parser, required=True)
    add_parser.set_defaults(func=sources_add_cli)

    # sources list
    list_parser = sources_subparsers.add_parser("list", help="List registered sources.")
    add_common_args(list_parser)
    active_group = list_parser.add_mutually_exclusive_group()
    active_group.add_argument("--active", dest="active", action="store_true", default=None, help="Only active sources.")
    active_group.add_argument("--inactive", dest="active", action="store_false", help="Only inactive sources.")
    list_parser.set_defaults(func=sources_list_cli)

    # sources update
    update_parser = sources_subparsers.add_parser("update", help="Update fields of a source.")
    add_common_args(update_parser)
    update_parser.add_argument("source_id", help="Source id.")
    _add_source_fields(update_parser, required=False)
    state_group = update_parser.add_mutually_exclusive_group()
    state_group.add_argument("--activate", dest="is_active", action="store_true", default=None)
    state_group.add_argument("--deactivate", dest="is_active", action="store_false")
    update_parser.set_defaults(func=sources_update_cli)

    # sources remove
    remove_parser = sources_subparsers.add_parser("remove", help="Delete a source.")
    add_common_args(remove_parser)
    remove_parser.add_argument("source_id", help="Source id.")
    remove_parser.add_argument(
        "--deactivate-only",
        action="store_true",
        help="Keep the record but exclude it from future batches.",
    )
    remove_parser.set_defaults(func=sources_remove_cli)

    # sources test
    test_parser = sources_subparsers.add_parser(
        "test",
        help="Test-crawl a source or URL (robots check + one fetch).",
    )
    add_common_args(test_parser)
    target = test_parser.add_mutually_exclusive_group(required=True)
    target.add_argument("--source-id", help="Registered source id.")
    target.add_argument("--url", help="Raw URL to test.")
    test_parser.set_defaults(func=sources_test_cli)


@command("manage_source")
def sources_add_cli(args: argparse.Namespace, ctx: CommandContext) -> int:
    source = ctx.stores.sources.create(**_source_fields(args))
    if args.output_json:
        print_json(source.to_dict())
    else:
        print(f"Registered source {source.id}: {source.name} ({source.base_url})")
    return EXIT_SUCCESS


@command("view_dashboard")
def sources_list_cli(args: argparse.Namespace, ctx: CommandContext) -> int:
    sources = ctx.stores.sources.list(active=args.active)
    if args.output_json:
        print_json([source.to_dict() for source in sources])
        return EXIT_SUCCESS

    if not sources:
        print("No sources registered.")
        return EXIT_SUCCESS
    for source in sources:
        state = "active" if source.is_active else "inactive"
        print(f"{source.id}  [{source.grade}] {source.name} ({state})")
        print(f"    {source.base_url}  depth={source.max_depth} delay={source.crawl_delay_ms}ms")
    return EXIT_SUCCESS


@command("manage_source")
def sources_update_cli(args: argparse.Namespace, ctx: CommandContext) -> int:
    source = ctx.stores.sources.update(args.source_id, **_source_fields(args))
    if args.output_json:
        print_json(source.to_dict())
    else:
        print(f"Updated source {source.id}")
    return EXIT_SUCCESS


@command("manage_source")
def sources_remove_cli(args: argparse.Namespace, ctx: CommandContext) -> int:
    if args.deactivate_only:
        ctx.stores.sources.deactivate(args.source_id)
        message = f"Deactivated source {args.source_id}"
    else:
        ctx.stores.sources.delete(args.source_id)
        message = f"Deleted source {args.source_id}"
    if args.output_json:
        print_json({"id": args.source_id, "deleted": not args.deactivate_only})
    else:
        print(message)
    return EXIT_SUCCESS


@command("run_crawl")
def sources_test_cli(args: argparse.Namespace, ctx: CommandContext) -> int:
    from harvester.knowledge.pipeline.crawl_check import test_crawl

    runtime = ctx.runtime()
    result = test_crawl(ctx.stores, runtime.resolver, runtime.fetcher, source_id=args.source_id, url=args.url)
    if args.output_json:
        print_json(result)
        return EXIT_SUCCESS

    robots = result["robots"]
    print(f"Test crawl of {result['url']} ({result['elapsedMs']}ms)")
    print(f"  robots.txt: {'found' if robots['exists'] else 'not found'}, allowed={robots['isAllowed']}")
    if robots["crawlDelay"] is not None:
        print(f"  Crawl-delay: {robots['crawlDelay']}ms")
    page = result["page"]
    if page:
        print(f"  Title: {page['title']}")
        print(f"  Links: {page['linksFound']}, file links: {page['fileLinksFound']}")
        for file_link in page["fileLinks"]:
            print(f"    [{file_link['type']}] {file_link['url']}")
    if result["error"]:
        print(f"  Error: {result['error']}")
    return EXIT_SUCCESS
