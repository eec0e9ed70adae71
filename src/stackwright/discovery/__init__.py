"""Service discovery: DNS bindings that follow compute task endpoints."""

from stackwright.discovery.binder import ServiceDiscoveryBinder
from stackwright.discovery.dns import DnsRecordApi, InMemoryDnsRegistry
from stackwright.discovery.endpoints import EndpointSource, InMemoryEndpointSource
from stackwright.discovery.models import (
    BindingState,
    EndpointChange,
    RecordHandle,
    ServiceBinding,
)

__all__ = [
    "BindingState",
    "DnsRecordApi",
    "EndpointChange",
    "EndpointSource",
    "InMemoryDnsRegistry",
    "InMemoryEndpointSource",
    "RecordHandle",
    "ServiceBinding",
    "ServiceDiscoveryBinder",
]
