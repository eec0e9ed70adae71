"""
Unified error handling for stackwright commands.

This module provides the error taxonomy shared by the graph builder,
plan compiler, execution engine and service-discovery binder, plus the
exit-code mapping used by the CLI.

Exit Codes:
- 0: Success
- 1: Partial failure (some nodes failed, see the execution result)
- 2: Cancelled (stopped at a stage boundary, resumable)
- 10: Configuration error
- 11: Backend error (control-plane failure outside a node)
- 12: Validation error (cycles, dangling references)
- 127: Unknown/internal error
"""

from __future__ import annotations

import functools
import sys
import traceback
from enum import IntEnum
from typing import Any, Callable, Sequence, TypeVar

import structlog

logger = structlog.get_logger()


class ExitCode(IntEnum):
    """Standardized exit codes for CLI commands."""

    SUCCESS = 0
    PARTIAL_FAILURE = 1
    CANCELLED = 2
    CONFIG_ERROR = 10
    BACKEND_ERROR = 11
    VALIDATION_ERROR = 12
    UNKNOWN_ERROR = 127


class StackwrightError(Exception):
    """Base exception for stackwright errors with exit code support."""

    exit_code: ExitCode = ExitCode.UNKNOWN_ERROR
    show_traceback: bool = False

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ConfigurationError(StackwrightError):
    """Raised for configuration-related errors."""

    exit_code = ExitCode.CONFIG_ERROR


class ValidationError(StackwrightError):
    """Raised when a declared resource set cannot be compiled."""

    exit_code = ExitCode.VALIDATION_ERROR


class CycleError(ValidationError):
    """Raised when the reference relation contains a cycle.

    ``cycle`` lists the node ids along the cycle and repeats the first
    id at the end, e.g. ``["a", "b", "c", "a"]``.
    """

    def __init__(self, cycle: Sequence[str]):
        self.cycle = list(cycle)
        super().__init__(
            f"Dependency cycle detected: {' -> '.join(self.cycle)}",
            {"cycle": self.cycle},
        )

    @property
    def members(self) -> set[str]:
        return set(self.cycle)


class DanglingReferenceError(ValidationError):
    """Raised when a node references an id that is not declared."""

    def __init__(self, source: str, target: str):
        self.source = source
        self.target = target
        super().__init__(
            f"Node '{source}' references unknown node '{target}'",
            {"from": source, "to": target},
        )


class BackendError(StackwrightError):
    """Raised by a resource backend or DNS API call.

    Transient errors (throttling, propagation lag, timeouts) are retried
    by the engine; permanent ones (bad configuration, permission denied)
    fail the node immediately.
    """

    exit_code = ExitCode.BACKEND_ERROR

    def __init__(
        self,
        message: str,
        *,
        transient: bool = False,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, details)
        self.transient = transient

    @classmethod
    def throttled(cls, message: str = "Rate exceeded") -> BackendError:
        return cls(message, transient=True, details={"reason": "throttled"})

    @classmethod
    def not_ready(cls, message: str = "Resource not yet stable") -> BackendError:
        return cls(message, transient=True, details={"reason": "not_ready"})

    @classmethod
    def denied(cls, message: str = "Access denied") -> BackendError:
        return cls(message, transient=False, details={"reason": "denied"})


class BindingConsistencyError(StackwrightError):
    """Raised when a DNS record cannot be brought in line with its task."""

    exit_code = ExitCode.BACKEND_ERROR


class InvalidTransitionError(StackwrightError):
    """Raised on an illegal node or binding state transition."""


# Type variable for decorated functions
F = TypeVar("F", bound=Callable[..., int])


def main_with_error_handling(
    *,
    show_traceback: bool = False,
    log_errors: bool = True,
) -> Callable[[F], F]:
    """
    Decorator for CLI command functions that provides unified error handling.

    Catches exceptions and converts them to appropriate exit codes with
    consistent error reporting.

    Exit codes:
        - StackwrightError subclasses: Uses the error's exit_code
        - KeyboardInterrupt: Returns 130 (standard for SIGINT)
        - Other exceptions: Returns 127 (unknown error)
    """

    def decorator(func: F) -> F:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> int:
            try:
                return func(*args, **kwargs)
            except StackwrightError as e:
                if log_errors:
                    logger.error(
                        "command_error",
                        error_type=type(e).__name__,
                        message=e.message,
                        exit_code=int(e.exit_code),
                        **e.details,
                    )
                if e.show_traceback or show_traceback:
                    traceback.print_exc(file=sys.stderr)
                return e.exit_code
            except KeyboardInterrupt:
                if log_errors:
                    logger.info("command_interrupted")
                return 130
            except Exception as e:
                if log_errors:
                    logger.error(
                        "unexpected_error",
                        error_type=type(e).__name__,
                        message=str(e),
                        exit_code=int(ExitCode.UNKNOWN_ERROR),
                    )
                if show_traceback:
                    traceback.print_exc(file=sys.stderr)
                return ExitCode.UNKNOWN_ERROR

        return wrapper  # type: ignore[return-value]

    return decorator


def format_error_message(error: StackwrightError) -> str:
    """Format an error message for display to users."""
    msg = error.message
    if error.details:
        detail_str = ", ".join(f"{k}={v}" for k, v in error.details.items())
        msg = f"{msg} ({detail_str})"
    return msg
