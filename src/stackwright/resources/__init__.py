"""Resource node model and stack templates."""

from stackwright.resources.models import Endpoint, ResourceKind, ResourceNode, index_nodes
from stackwright.resources.templates import EcsCloudMapParameters, ecs_cloudmap, render_template

__all__ = [
    "EcsCloudMapParameters",
    "Endpoint",
    "ResourceKind",
    "ResourceNode",
    "ecs_cloudmap",
    "index_nodes",
    "render_template",
]
