"""
stackwright configuration.

Provides:
- Pydantic-based settings (environment variables, .env files)
- Stack file loading (explicit resources or a built-in template)
"""

from stackwright.config.loader import StackDefinition, load_stack, parse_stack
from stackwright.config.settings import Settings, get_settings

__all__ = [
    "Settings",
    "StackDefinition",
    "get_settings",
    "load_stack",
    "parse_stack",
]
