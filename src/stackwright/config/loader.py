"""
Stack file loading.

A stack file is YAML and declares its resources in one of two ways::

    stack:
      name: orders
    resources:
      - id: vpc
        kind: Network
      - id: cluster
        kind: Cluster
        references: [vpc]

or through a built-in template::

    stack: orders
    template: ecs-cloudmap
    parameters:
      service_name: orders
      namespace: internal.local
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Mapping

import structlog
import yaml

from stackwright.core.errors import ConfigurationError, ValidationError
from stackwright.resources.models import ResourceKind, ResourceNode, index_nodes
from stackwright.resources.templates import render_template

logger = structlog.get_logger()


@dataclass(frozen=True)
class StackDefinition:
    """A named set of resource nodes read from a stack file."""

    name: str
    nodes: List[ResourceNode]
    source: Path | None = None
    template: str | None = None


def load_stack(path: str | Path) -> StackDefinition:
    """Load and validate a stack file."""
    stack_path = Path(path)
    if not stack_path.exists():
        raise ConfigurationError(f"Stack file not found: {stack_path}", {"path": str(stack_path)})

    try:
        with open(stack_path) as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as exc:
        raise ConfigurationError(
            f"Stack file {stack_path} is not valid YAML",
            {"path": str(stack_path), "error": str(exc)},
        ) from exc

    if not isinstance(data, dict):
        raise ConfigurationError(
            f"Stack file {stack_path} must contain a mapping",
            {"path": str(stack_path)},
        )

    definition = parse_stack(data, default_name=stack_path.stem)
    logger.debug(
        "stack_loaded",
        stack=definition.name,
        path=str(stack_path),
        nodes=len(definition.nodes),
        template=definition.template,
    )
    return StackDefinition(
        name=definition.name,
        nodes=definition.nodes,
        source=stack_path,
        template=definition.template,
    )


def parse_stack(data: Mapping[str, Any], default_name: str = "default") -> StackDefinition:
    """Build a stack definition from already-parsed YAML data."""
    name = _stack_name(data.get("stack"), default_name)
    template = data.get("template")

    if template and data.get("resources"):
        raise ConfigurationError(
            "A stack declares either 'resources' or 'template', not both",
            {"stack": name},
        )

    if template:
        parameters = data.get("parameters") or {}
        if not isinstance(parameters, dict):
            raise ConfigurationError("'parameters' must be a mapping", {"stack": name})
        nodes = render_template(str(template), parameters)
    else:
        raw = data.get("resources")
        if not isinstance(raw, list) or not raw:
            raise ConfigurationError(
                "Stack file must declare a non-empty 'resources' list or a 'template'",
                {"stack": name},
            )
        nodes = [ResourceNode.from_dict(_as_mapping(item)) for item in raw]

    validate_service_registrations(nodes)
    return StackDefinition(name=name, nodes=nodes, template=str(template) if template else None)


def validate_service_registrations(nodes: List[ResourceNode]) -> None:
    """Check that every ServiceRegistration names a namespace and a target it references."""
    indexed = index_nodes(nodes)
    for node in nodes:
        if node.kind is not ResourceKind.SERVICE_REGISTRATION:
            continue
        namespaces = [
            ref
            for ref in node.references
            if ref in indexed and indexed[ref].kind is ResourceKind.NAMESPACE
        ]
        if not namespaces and not node.attributes.get("namespace"):
            raise ValidationError(
                f"Service registration '{node.id}' must reference a Namespace node",
                {"node": node.id},
            )
        target = node.attributes.get("target")
        if target is not None and target not in node.references:
            raise ValidationError(
                f"Service registration '{node.id}' targets '{target}' without referencing it",
                {"node": node.id, "target": target},
            )


def _stack_name(raw: Any, default: str) -> str:
    if isinstance(raw, dict):
        raw = raw.get("name")
    name = str(raw or default).strip()
    if not name:
        raise ConfigurationError("Stack name must not be empty")
    return name


def _as_mapping(item: Any) -> Dict[str, Any]:
    if not isinstance(item, dict):
        raise ValidationError(
            "Each resource declaration must be a mapping",
            {"declaration": item},
        )
    return item
