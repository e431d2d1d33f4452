"""
Operator commands for a reelforge database.

    reelforge init                      create tables, load workflow files, fail orphaned artifacts
    reelforge workflows [--type T]      list active workflows
    reelforge check-chain PROJECT_ID    report transition chain problems
    reelforge impact TYPE ID            show what a change to an entity would affect
    reelforge audit PROJECT_ID          frame continuity check over the project's timeline
    reelforge export PROJECT_ID [--output PATH]   render the timeline with its audio
"""
import sys
import asyncio
import argparse
import logging

from reelforge.errors import ReelforgeError
from reelforge.log_config import setup_logging
from reelforge.pipeline import Pipeline

logger = logging.getLogger(__name__)


def cmd_init(pipeline: Pipeline, args) -> int:
    asyncio.run(pipeline.startup(args.workflows_dir))
    for workflow in pipeline.workflows.list_workflows():
        print(f"{workflow.name:<28} {workflow.type}")
    return 0


def cmd_workflows(pipeline: Pipeline, args) -> int:
    for workflow in pipeline.workflows.list_workflows(type=args.type):
        print(f"{workflow.name:<28} {workflow.type:<16} {len(workflow.parameters or [])} params")
    return 0


def cmd_check_chain(pipeline: Pipeline, args) -> int:
    report = pipeline.shots.validate_transition_chain(args.project_id)
    if report.is_valid:
        print("[PASS] Transition chain is consistent.")
        return 0
    for issue in report.errors:
        print(f"[FAIL] {issue.shot_code}: {issue.message}")
    return 1


def cmd_impact(pipeline: Pipeline, args) -> int:
    impact = pipeline.graph.check_impact(args.entity_type, args.entity_id)
    for label, entities in (("direct", impact.direct), ("indirect", impact.indirect)):
        for entity in entities:
            print(f"{label:<9} {entity.entity_type:<9} {entity.entity_name:<24} {entity.status}")
    print(f"{impact.total_affected} affected")
    return 0


def cmd_audit(pipeline: Pipeline, args) -> int:
    mismatches = asyncio.run(pipeline.timelines.detect_frame_mismatches(args.project_id))
    for check in mismatches:
        print(f"[WARN] {check.clip1_id} -> {check.clip2_id}: {check.message}")
    print(f"{len(mismatches)} mismatches")
    return 0


def cmd_export(pipeline: Pipeline, args) -> int:
    path = asyncio.run(pipeline.timelines.export_video(args.project_id, args.output))
    print(path)
    return 0


COMMANDS = {
    "init": cmd_init,
    "workflows": cmd_workflows,
    "check-chain": cmd_check_chain,
    "impact": cmd_impact,
    "audit": cmd_audit,
    "export": cmd_export,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="reelforge", description="Storyboard-to-video pipeline tools")
    parser.add_argument("--verbose", action="store_true", help="Debug logging")
    subparsers = parser.add_subparsers(dest="command")

    init_parser = subparsers.add_parser("init", help="Create tables and load workflow definitions")
    init_parser.add_argument("--workflows-dir", default=None, help="Directory of workflow JSON files")

    workflows_parser = subparsers.add_parser("workflows", help="List active workflows")
    workflows_parser.add_argument("--type", default=None, choices=["text_to_image", "image_to_video", "text_to_video"])

    chain_parser = subparsers.add_parser("check-chain", help="Validate the shot transition chain")
    chain_parser.add_argument("project_id")

    impact_parser = subparsers.add_parser("impact", help="Entities affected by a change")
    impact_parser.add_argument("entity_type")
    impact_parser.add_argument("entity_id")

    audit_parser = subparsers.add_parser("audit", help="Frame continuity audit of the timeline")
    audit_parser.add_argument("project_id")

    export_parser = subparsers.add_parser("export", help="Render the timeline to a video file")
    export_parser.add_argument("project_id")
    export_parser.add_argument("--output", default=None, help="Output path (default: storage/exports/PROJECT_ID/)")
    return parser


def main(argv=None, pipeline: Pipeline = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command not in COMMANDS:
        parser.print_help()
        return 2

    setup_logging(logging.DEBUG if args.verbose else logging.INFO)
    pipeline = pipeline or Pipeline()
    try:
        return COMMANDS[args.command](pipeline, args)
    except ReelforgeError as e:
        logger.error(f"{args.command} failed: {e}")
        print(f"Error: {e.message}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
