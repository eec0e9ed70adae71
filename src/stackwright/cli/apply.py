"""
CLI commands for applying and tearing down a stack.
"""

import asyncio
import contextlib
import json
import signal
from pathlib import Path
from typing import Iterator, Optional

import structlog

from stackwright.cli.runtime import build_runtime
from stackwright.cli.ux import console, error, styled_status, success, warning
from stackwright.config import get_settings, load_stack
from stackwright.core.errors import ExitCode, main_with_error_handling
from stackwright.orchestration import (
    CancellationToken,
    ExecutionResult,
    NodeStatus,
    compile_plan,
    run_operation,
)
from stackwright.orchestration.results import Operation
from stackwright.state import StateStore

logger = structlog.get_logger()


def exit_code_for(result: ExecutionResult) -> int:
    if result.cancelled:
        return ExitCode.CANCELLED
    if result.success:
        return ExitCode.SUCCESS
    return ExitCode.PARTIAL_FAILURE


def print_result_summary(result: ExecutionResult, verbose: bool = False) -> None:
    """Print every node with its terminal status, then the failures."""
    console.print()
    for outcome in result.outcomes.values():
        action = f" [muted]({outcome.action})[/muted]" if outcome.action else ""
        line = f"  {outcome.node_id:<20} {styled_status(outcome.status.value)}{action}"
        if verbose and outcome.attempts > 1:
            line += f" [muted]{outcome.attempts} attempts[/muted]"
        console.print(line)

    console.print()
    duration = f" in {result.duration_seconds:.1f}s" if result.duration_seconds > 0 else ""
    verb = "Applied" if result.operation == "apply" else "Tore down"
    if result.cancelled:
        warning(f"Cancelled after {result.stages_completed} stages; run again to resume")
    elif result.success:
        success(f"{verb} {len(result.outcomes)} nodes{duration}")
    else:
        error(f"{verb} stack '{result.stack}' with errors{duration}")

    failed = result.failed_nodes
    if failed:
        console.print()
        console.print("[error]Failed:[/error]")
        for node_id in failed:
            message = result.outcomes[node_id].error or "unknown error"
            if not verbose and len(message) > 100:
                message = message[:97] + "..."
            console.print(f"  [dim]•[/dim] {node_id}: {message}")

    if result.rolled_back and result.operation == "apply":
        console.print()
        console.print(f"[orange]Rolled back:[/orange] {' → '.join(result.rolled_back)}")

    remaining = remaining_nodes(result)
    if remaining and result.operation == "teardown":
        console.print()
        console.print(f"[warning]Still present:[/warning] {', '.join(remaining)}")

    blocked = result.blocked_nodes
    if blocked:
        console.print()
        console.print("[warning]Blocked:[/warning]")
        for node_id in blocked:
            console.print(f"  [dim]•[/dim] {node_id} (by {result.outcomes[node_id].blocked_by})")
    console.print()


def print_result_json(result: ExecutionResult) -> None:
    """Print execution result in JSON format."""
    print(json.dumps(result.to_dict(), indent=2))


@contextlib.contextmanager
def _cancel_on_interrupt(token: CancellationToken) -> Iterator[None]:
    """Turn Ctrl-C into a cooperative cancel at the next stage boundary."""
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, token.cancel)
        installed = True
    except (NotImplementedError, RuntimeError):
        # no signal support on this loop/thread; Ctrl-C interrupts hard
        installed = False
    try:
        yield
    finally:
        if installed:
            loop.remove_signal_handler(signal.SIGINT)


async def _run(
    operation: Operation,
    stack_file: str,
    state_dir: Optional[str],
    backend: Optional[str],
    concurrency: Optional[int],
    policy: Optional[str],
) -> ExecutionResult:
    settings = get_settings()
    stack = load_stack(stack_file)
    plan = compile_plan(stack.nodes)

    store = StateStore(Path(state_dir) if state_dir else settings.state_dir)
    previous = store.load(stack.name)

    runtime = build_runtime(
        settings,
        stack=stack.name,
        backend_name=backend,
        concurrency=concurrency,
        policy=policy,
    )
    token = CancellationToken()
    try:
        with _cancel_on_interrupt(token):
            result = await run_operation(runtime.engine, operation, plan, previous, token)
    finally:
        await runtime.close()

    path = store.save(result)
    logger.info("state_persisted", stack=stack.name, path=str(path))
    return result


def _execute(
    operation: Operation,
    stack_file: str,
    *,
    state_dir: Optional[str],
    backend: Optional[str],
    concurrency: Optional[int],
    policy: Optional[str],
    output_format: str,
    verbose: bool,
) -> int:
    result = asyncio.run(_run(operation, stack_file, state_dir, backend, concurrency, policy))
    if output_format == "json":
        print_result_json(result)
    else:
        print_result_summary(result, verbose=verbose)
    return exit_code_for(result)


@main_with_error_handling()
def apply_command(
    stack_file: str,
    state_dir: Optional[str] = None,
    backend: Optional[str] = None,
    concurrency: Optional[int] = None,
    policy: Optional[str] = None,
    output_format: str = "text",
    verbose: bool = False,
) -> int:
    """
    Provision every resource of a stack, resuming from persisted state.

    Args:
        stack_file: Path to the stack YAML file
        state_dir: Directory holding persisted execution state
        backend: Resource backend name (defaults to settings)
        concurrency: Maximum nodes provisioned at once within a stage
        policy: Failure policy (rollback, contain)
        output_format: Output format (text, json)
        verbose: Show attempts and full error messages

    Returns:
        Exit code (0 success, 1 partial failure, 2 cancelled)
    """
    return _execute(
        "apply",
        stack_file,
        state_dir=state_dir,
        backend=backend,
        concurrency=concurrency,
        policy=policy,
        output_format=output_format,
        verbose=verbose,
    )


@main_with_error_handling()
def teardown_command(
    stack_file: str,
    state_dir: Optional[str] = None,
    backend: Optional[str] = None,
    concurrency: Optional[int] = None,
    output_format: str = "text",
    verbose: bool = False,
) -> int:
    """Delete every resource of a stack in reverse dependency order."""
    return _execute(
        "teardown",
        stack_file,
        state_dir=state_dir,
        backend=backend,
        concurrency=concurrency,
        policy=None,
        output_format=output_format,
        verbose=verbose,
    )


def remaining_nodes(result: ExecutionResult) -> list[str]:
    """Nodes still provisioned after an operation."""
    return [n for n, o in result.outcomes.items() if o.status is NodeStatus.SUCCEEDED]
