"""Resource backends consumed by the execution engine."""

from stackwright.providers.base import (
    BackendHandle,
    ResourceBackend,
    ResourceNotReadyError,
    ResourceState,
)
from stackwright.providers.memory import InMemoryBackend
from stackwright.providers.registry import create_backend, list_backends, register_backend

__all__ = [
    "BackendHandle",
    "InMemoryBackend",
    "ResourceBackend",
    "ResourceNotReadyError",
    "ResourceState",
    "create_backend",
    "list_backends",
    "register_backend",
]
