"""
Built-in stack templates.

A template expands a handful of parameters into the full set of
resource nodes for a common topology. ``ecs-cloudmap`` describes a single
Fargate service registered in a private DNS namespace.
"""

from __future__ import annotations

from typing import Any, Callable, Dict, List

from pydantic import BaseModel, Field, ValidationError as PydanticValidationError, model_validator

from stackwright.core.errors import ConfigurationError
from stackwright.resources.models import ResourceKind, ResourceNode

# Allowed Fargate cpu units -> memory (MiB) sizes
FARGATE_MEMORY_BY_CPU: Dict[int, List[int]] = {
    256: [512, 1024, 2048],
    512: list(range(1024, 4097, 1024)),
    1024: list(range(2048, 8193, 1024)),
    2048: list(range(4096, 16385, 1024)),
    4096: list(range(8192, 30721, 1024)),
}

TASK_EXECUTION_POLICY = "service-role/AmazonECSTaskExecutionRolePolicy"


class EcsCloudMapParameters(BaseModel):
    """Parameters for the ``ecs-cloudmap`` template."""

    service_name: str = Field("my-service", min_length=1)
    namespace: str = Field("my-namespace", min_length=1)
    image: str = "amazon/amazon-ecs-sample"
    container_port: int = Field(80, ge=1, le=65535)
    cpu: int = 256
    memory_mib: int = 512
    desired_count: int = Field(1, ge=0)
    record_type: str = "A"
    assign_public_ip: bool = False
    ingress_cidrs: List[str] = Field(default_factory=list)
    allow_all_outbound: bool = True

    @model_validator(mode="after")
    def _check_task_size(self) -> "EcsCloudMapParameters":
        allowed = FARGATE_MEMORY_BY_CPU.get(self.cpu)
        if allowed is None:
            raise ValueError(f"cpu must be one of {sorted(FARGATE_MEMORY_BY_CPU)}")
        if self.memory_mib not in allowed:
            raise ValueError(f"memory_mib {self.memory_mib} is not valid for cpu {self.cpu}")
        return self


def ecs_cloudmap(params: EcsCloudMapParameters) -> List[ResourceNode]:
    """Expand the ecs-cloudmap template into resource nodes."""
    svc = params.service_name
    return [
        ResourceNode("vpc", ResourceKind.NETWORK, {"lookup": {"is_default": True}}),
        ResourceNode(
            "cluster",
            ResourceKind.CLUSTER,
            {"name": f"{svc}-cluster"},
            frozenset({"vpc"}),
        ),
        ResourceNode(
            "namespace",
            ResourceKind.NAMESPACE,
            {
                "name": params.namespace,
                "type": "private_dns",
                "description": f"Private DNS namespace for {svc}",
            },
            frozenset({"vpc"}),
        ),
        ResourceNode(
            "task-role",
            ResourceKind.ROLE,
            {
                "assumed_by": "ecs-tasks.amazonaws.com",
                "managed_policies": [TASK_EXECUTION_POLICY],
            },
        ),
        ResourceNode(
            "log-group",
            ResourceKind.LOG_SINK,
            {"log_group_name": f"/ecs/{svc}Service", "removal_policy": "destroy"},
        ),
        ResourceNode(
            "task-definition",
            ResourceKind.TASK_TEMPLATE,
            {
                "family": f"{svc}ServiceTaskDef",
                "launch_type": "FARGATE",
                "cpu": params.cpu,
                "memory_mib": params.memory_mib,
            },
            frozenset({"task-role"}),
        ),
        ResourceNode(
            "container",
            ResourceKind.CONTAINER_SPEC,
            {
                "name": f"{svc}ServiceContainer",
                "image": params.image,
                "port_mappings": [{"container_port": params.container_port, "protocol": "tcp"}],
                "log_driver": {"type": "awslogs", "stream_prefix": f"{svc}Service"},
            },
            frozenset({"task-definition", "log-group"}),
        ),
        ResourceNode(
            "security-group",
            ResourceKind.SECURITY_RULE,
            {
                "name": f"{svc}ServiceSecurityGroup",
                "allow_all_outbound": params.allow_all_outbound,
                "ingress": [
                    {"cidr": cidr, "port": params.container_port, "protocol": "tcp"}
                    for cidr in params.ingress_cidrs
                ],
            },
            frozenset({"vpc"}),
        ),
        ResourceNode(
            "service",
            ResourceKind.SERVICE_REGISTRATION,
            {
                "name": svc,
                "record_type": params.record_type,
                "desired_count": params.desired_count,
                "assign_public_ip": params.assign_public_ip,
                "target": "container",
                "port": params.container_port,
            },
            frozenset({"cluster", "container", "security-group", "namespace"}),
        ),
    ]


TemplateFn = Callable[[Dict[str, Any]], List[ResourceNode]]


def _ecs_cloudmap_from_dict(raw: Dict[str, Any]) -> List[ResourceNode]:
    return ecs_cloudmap(EcsCloudMapParameters(**raw))


TEMPLATES: Dict[str, TemplateFn] = {
    "ecs-cloudmap": _ecs_cloudmap_from_dict,
}


def render_template(name: str, parameters: Dict[str, Any] | None = None) -> List[ResourceNode]:
    """Render a named template with the given parameters."""
    template = TEMPLATES.get(name)
    if template is None:
        raise ConfigurationError(
            f"Unknown stack template '{name}'",
            {"available": sorted(TEMPLATES)},
        )
    try:
        return template(parameters or {})
    except PydanticValidationError as exc:
        raise ConfigurationError(
            f"Invalid parameters for template '{name}'",
            {"errors": [e["msg"] for e in exc.errors()]},
        ) from exc
