"""Persisted execution results, one JSON file per stack."""

from __future__ import annotations

import json
import re
import time
from pathlib import Path

import structlog

from stackwright.core.errors import ConfigurationError
from stackwright.orchestration.results import ExecutionResult

logger = structlog.get_logger()

DEFAULT_STATE_DIR = Path(".stackwright")
STATE_VERSION = 1

_SAFE_NAME = re.compile(r"[^A-Za-z0-9_.-]")


class StateStore:
    """Loads and saves the last execution result of each stack."""

    def __init__(self, directory: Path | None = None) -> None:
        self.directory = Path(directory or DEFAULT_STATE_DIR)

    def path_for(self, stack: str) -> Path:
        return self.directory / f"{_SAFE_NAME.sub('_', stack)}.json"

    def load(self, stack: str) -> ExecutionResult | None:
        path = self.path_for(stack)
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text())
        except json.JSONDecodeError as exc:
            raise ConfigurationError(
                f"State file {path} is not valid JSON",
                {"path": str(path)},
            ) from exc
        version = data.get("version")
        if version != STATE_VERSION:
            raise ConfigurationError(
                f"Unsupported state version {version!r} in {path}",
                {"path": str(path), "expected": STATE_VERSION},
            )
        return ExecutionResult.from_dict(data["result"])

    def save(self, result: ExecutionResult) -> Path:
        path = self.path_for(result.stack)
        path.parent.mkdir(parents=True, exist_ok=True)
        payload = {
            "version": STATE_VERSION,
            "stack": result.stack,
            "updated_at": time.time(),
            "result": result.to_dict(),
        }
        # write-then-rename so a crash never leaves a truncated file
        tmp = path.with_suffix(".json.tmp")
        tmp.write_text(json.dumps(payload, indent=2, sort_keys=True) + "\n")
        tmp.replace(path)
        logger.debug("state_saved", stack=result.stack, path=str(path))
        return path

    def delete(self, stack: str) -> bool:
        path = self.path_for(stack)
        if not path.exists():
            return False
        path.unlink()
        return True
