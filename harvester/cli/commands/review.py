"""CLI commands for the review pipeline.

Commands:
- review pending: Problems awaiting a stage
- review submit: Record one reviewer decision
- review auto: Run the rule-based AUTO reviewer over its queue
- review history: All review records of a problem
"""

from __future__ import annotations

import argparse

from harvester.access import require_permission
from harvester.knowledge.models import OUTCOME_APPROVED, REVIEW_OUTCOMES, REVIEW_STAGES

from ._context import EXIT_SUCCESS, CommandContext, add_common_args, command, print_json


def register_commands(subparsers: argparse._SubParsersAction[argparse.ArgumentParser]) -> None:
    """Add review subcommands to the main CLI parser."""

    review_parser = subparsers.add_parser(
        "review",
        description="Staged review of imported problems (AUTO, AI, MANUAL).",
        help="Review imported problems.",
    )
    review_subparsers = review_parser.add_subparsers(dest="review_command", metavar="SUBCOMMAND")
    review_subparsers.required = True

    pending_parser = review_subparsers.add_parser("pending", help="List problems awaiting review.")
    add_common_args(pending_parser)
    pending_parser.add_argument("--stage", choices=REVIEW_STAGES, help="Only problems awaiting this stage.")
    pending_parser.add_argument("--page", type=int, default=1)
    pending_parser.add_argument("--limit", type=int, default=20)
    pending_parser.set_defaults(func=review_pending_cli)

    submit_parser = review_subparsers.add_parser("submit", help="Submit a review decision.")
    add_common_args(submit_parser)
    submit_parser.add_argument("problem_id", help="Problem id.")
    submit_parser.add_argument("--stage", required=True, choices=REVIEW_STAGES)
    submit_parser.add_argument("--outcome", required=True, choices=REVIEW_OUTCOMES)
    submit_parser.add_argument("--score", type=float, help="Quality score 0-100.")
    submit_parser.add_argument("--comments", help="Reviewer comments.")
    submit_parser.add_argument("--issue", dest="issues", action="append", default=[], help="Issue tag (repeatable).")
    submit_parser.set_defaults(func=review_submit_cli)

    auto_parser = review_subparsers.add_parser("auto", help="Run the rule-based AUTO reviewer.")
    add_common_args(auto_parser)
    auto_parser.add_argument("--limit", type=int, help="Review at most this many problems.")
    auto_parser.add_argument(
        "--min-score",
        type=float,
        default=50.0,
        help="Approve at or above this quality score (default: 50).",
    )
    auto_parser.set_defaults(func=review_auto_cli)

    history_parser = review_subparsers.add_parser("history", help="Show review records of a problem.")
    add_common_args(history_parser)
    history_parser.add_argument("problem_id", help="Problem id.")
    history_parser.set_defaults(func=review_history_cli)


@command("view_review")
def review_pending_cli(args: argparse.Namespace, ctx: CommandContext) -> int:
    pipeline = ctx.review_pipeline()
    result = pipeline.pending(stage=args.stage, page=args.page, limit=args.limit)
    if args.output_json:
        print_json({**result.to_dict(), "stats": pipeline.stats()})
        return EXIT_SUCCESS

    if not result.items:
        print("Nothing awaiting review.")
        return EXIT_SUCCESS
    for problem in result.items:
        reasons = f" [{', '.join(problem.manual_review_reasons)}]" if problem.manual_review_reasons else ""
        preview = problem.content.replace("\n", " ")[:60]
        print(f"{problem.id}  stage={problem.review_stage:<6} {preview}{reasons}")
    print(f"\nPage {result.page}/{max(result.total_pages, 1)} ({result.total} problems)")
    return EXIT_SUCCESS


@command("view_review")
def review_submit_cli(args: argparse.Namespace, ctx: CommandContext) -> int:
    require_permission(ctx.actor, "approve_items" if args.outcome == OUTCOME_APPROVED else "reject_items")
    pipeline = ctx.review_pipeline()
    record = pipeline.submit(
        args.problem_id,
        args.stage,
        args.outcome,
        ctx.actor.actor_id,
        score=args.score,
        comments=args.comments,
        issues=args.issues,
    )
    problem = ctx.stores.problems.require(args.problem_id)
    if args.output_json:
        print_json({"record": record.to_dict(), "problem": problem.to_dict()})
    else:
        print(f"Recorded {record.stage} {record.outcome} for {problem.id}")
        print(f"  Status: {problem.status}  stage: {problem.review_stage}")
    return EXIT_SUCCESS


@command("approve_items")
def review_auto_cli(args: argparse.Namespace, ctx: CommandContext) -> int:
    from harvester.knowledge.review import AutoReviewer

    records = AutoReviewer(ctx.review_pipeline(), min_score=args.min_score).run(limit=args.limit)
    if args.output_json:
        print_json([record.to_dict() for record in records])
    else:
        approved = sum(1 for record in records if record.outcome == OUTCOME_APPROVED)
        print(f"Reviewed {len(records)} problems: {approved} approved, {len(records) - approved} rejected")
    return EXIT_SUCCESS


@command("view_review")
def review_history_cli(args: argparse.Namespace, ctx: CommandContext) -> int:
    records = ctx.review_pipeline().history(args.problem_id)
    if args.output_json:
        print_json([record.to_dict() for record in records])
        return EXIT_SUCCESS

    if not records:
        print("No reviews recorded.")
    for record in records:
        score = f" score={record.score}" if record.score is not None else ""
        print(f"{record.created_at.isoformat()} {record.stage:<6} {record.outcome:<8} by {record.reviewer_id}{score}")
        if record.comments:
            print(f"    {record.comments}")
    return EXIT_SUCCESS
