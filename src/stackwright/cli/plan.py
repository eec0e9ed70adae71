"""
CLI command for planning (dry-run) a stack.
"""

import json
from pathlib import Path
from typing import List, Optional

from stackwright.cli.ux import console, header, print_table, warning
from stackwright.config import get_settings, load_stack
from stackwright.core.errors import main_with_error_handling
from stackwright.orchestration import PlanCompiler, PlannedChange
from stackwright.orchestration.plan_builder import Plan
from stackwright.state import StateStore

ACTION_STYLES = {
    "create": "success",
    "update": "warning",
    "noop": "muted",
    "delete": "error",
    "skip": "muted",
}


def print_plan_summary(stack: str, plan: Plan, changes: List[PlannedChange], stack_file: str) -> None:
    """Print the staged plan with the action each node would take."""
    header(f"Plan: {stack}")
    console.print()

    if not changes:
        warning("No resources declared")
        return

    rows = []
    for change in changes:
        style = ACTION_STYLES.get(change.action, "muted")
        rows.append(
            [
                str(change.stage),
                change.node_id,
                change.kind,
                f"[{style}]{change.action}[/{style}]",
            ]
        )
    print_table(None, ["Stage", "Node", "Kind", "Action"], rows)

    totals: dict[str, int] = {}
    for change in changes:
        totals[change.action] = totals.get(change.action, 0) + 1
    summary = ", ".join(f"{count} {action}" for action, count in sorted(totals.items()))
    console.print()
    console.print(f"[bold]Total:[/bold] {len(changes)} nodes in {len(plan)} stages ({summary})")
    console.print()
    console.print("[muted]To apply these changes, run:[/muted]")
    verb = "teardown" if plan.direction == "reverse" else "apply"
    console.print(f"  [info]stackwright {verb} {stack_file}[/info]")
    console.print()


def print_plan_json(stack: str, plan: Plan, changes: List[PlannedChange]) -> None:
    """Print plan in JSON format."""
    output = {
        "stack": stack,
        "direction": plan.direction,
        "stages": plan.to_list(),
        "changes": [c.to_dict() for c in changes],
    }
    print(json.dumps(output, indent=2))


@main_with_error_handling()
def plan_command(
    stack_file: str,
    state_dir: Optional[str] = None,
    output_format: str = "text",
    teardown: bool = False,
) -> int:
    """
    Preview the staged plan for a stack.

    Args:
        stack_file: Path to the stack YAML file
        state_dir: Directory holding persisted execution state
        output_format: Output format (text, json)
        teardown: Show the teardown order instead of the apply order

    Returns:
        Exit code (0 for success)
    """
    stack = load_stack(stack_file)
    compiler = PlanCompiler()
    plan = compiler.compile_nodes(stack.nodes)
    if teardown:
        plan = plan.reversed()

    store = StateStore(Path(state_dir) if state_dir else get_settings().state_dir)
    previous = store.load(stack.name)
    changes = compiler.describe(plan, previous)

    if output_format == "json":
        print_plan_json(stack.name, plan, changes)
    else:
        print_plan_summary(stack.name, plan, changes, stack_file)
    return 0
