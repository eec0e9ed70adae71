"""Core error types shared across stackwright."""

from stackwright.core.errors import (
    BackendError,
    BindingConsistencyError,
    ConfigurationError,
    CycleError,
    DanglingReferenceError,
    ExitCode,
    InvalidTransitionError,
    StackwrightError,
    ValidationError,
)

__all__ = [
    "BackendError",
    "BindingConsistencyError",
    "ConfigurationError",
    "CycleError",
    "DanglingReferenceError",
    "ExitCode",
    "InvalidTransitionError",
    "StackwrightError",
    "ValidationError",
]
