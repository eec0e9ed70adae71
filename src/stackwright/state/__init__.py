"""Execution state persistence."""

from stackwright.state.store import DEFAULT_STATE_DIR, STATE_VERSION, StateStore

__all__ = ["DEFAULT_STATE_DIR", "STATE_VERSION", "StateStore"]
