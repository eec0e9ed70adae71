from __future__ import annotations

import argparse
import sys
from typing import Sequence

from stackwright import __version__
from stackwright.config import get_settings
from stackwright.logging import configure_logging


def _add_common(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("stack_file", help="Path to stack YAML file")
    parser.add_argument("--state-dir", help="Directory holding persisted execution state")
    parser.add_argument("--output", choices=["text", "json"], default="text",
                        help="Output format")
    parser.add_argument("-v", "--verbose", action="store_true",
                        help="Show detailed progress and debug logs")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="stackwright",
        description="Provision a containerized service and its DNS binding",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    subparsers = parser.add_subparsers(dest="command")

    plan_parser = subparsers.add_parser(
        "plan",
        help="Preview the staged plan and the action each node would take",
    )
    _add_common(plan_parser)
    plan_parser.add_argument("--teardown", action="store_true",
                             help="Show the teardown order instead")

    apply_parser = subparsers.add_parser(
        "apply",
        help="Provision every resource, resuming from persisted state",
    )
    _add_common(apply_parser)
    apply_parser.add_argument("--backend", help="Resource backend (default: settings)")
    apply_parser.add_argument("--concurrency", type=int,
                              help="Maximum nodes provisioned at once within a stage")
    apply_parser.add_argument("--policy", choices=["rollback", "contain"],
                              help="What to do after a node fails")

    teardown_parser = subparsers.add_parser(
        "teardown",
        help="Delete every resource in reverse dependency order",
    )
    _add_common(teardown_parser)
    teardown_parser.add_argument("--backend", help="Resource backend (default: settings)")
    teardown_parser.add_argument("--concurrency", type=int,
                                 help="Maximum nodes deleted at once within a stage")

    return parser


def main(argv: Sequence[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    settings = get_settings()
    level = "DEBUG" if args.verbose or settings.debug else settings.log_level
    configure_logging(level, json=not args.verbose)

    if args.command == "plan":
        from stackwright.cli.plan import plan_command
        sys.exit(plan_command(
            stack_file=args.stack_file,
            state_dir=args.state_dir,
            output_format=args.output,
            teardown=args.teardown,
        ))

    if args.command == "apply":
        from stackwright.cli.apply import apply_command
        sys.exit(apply_command(
            stack_file=args.stack_file,
            state_dir=args.state_dir,
            backend=args.backend,
            concurrency=args.concurrency,
            policy=args.policy,
            output_format=args.output,
            verbose=args.verbose,
        ))

    if args.command == "teardown":
        from stackwright.cli.apply import teardown_command
        sys.exit(teardown_command(
            stack_file=args.stack_file,
            state_dir=args.state_dir,
            backend=args.backend,
            concurrency=args.concurrency,
            output_format=args.output,
            verbose=args.verbose,
        ))


if __name__ == "__main__":
    main()
