"""Tests for resource node models."""

import pytest
from stackwright.core.errors import ValidationError
from stackwright.resources.models import (
    Endpoint,
    ResourceKind,
    ResourceNode,
    index_nodes,
    target_task_id,
)


class TestResourceKind:
    def test_parse_exact(self):
        assert ResourceKind.parse("Network") is ResourceKind.NETWORK

    def test_parse_is_case_and_separator_insensitive(self):
        assert ResourceKind.parse("service_registration") is ResourceKind.SERVICE_REGISTRATION
        assert ResourceKind.parse("log-sink") is ResourceKind.LOG_SINK
        assert ResourceKind.parse("TASKTEMPLATE") is ResourceKind.TASK_TEMPLATE

    def test_parse_unknown(self):
        with pytest.raises(ValidationError, match="Unknown resource kind"):
            ResourceKind.parse("LoadBalancer")


class TestResourceNode:
    def test_kind_string_is_parsed(self):
        node = ResourceNode("vpc", "network")
        assert node.kind is ResourceKind.NETWORK

    def test_attributes_are_read_only(self):
        node = ResourceNode("vpc", ResourceKind.NETWORK, {"cidr": "10.0.0.0/16"})
        with pytest.raises(TypeError):
            node.attributes["cidr"] = "0.0.0.0/0"

    def test_declared_attributes_are_copied(self):
        attrs = {"cidr": "10.0.0.0/16"}
        node = ResourceNode("vpc", ResourceKind.NETWORK, attrs)
        attrs["cidr"] = "changed"
        assert node.attributes["cidr"] == "10.0.0.0/16"

    def test_self_reference_rejected(self):
        with pytest.raises(ValidationError, match="references itself"):
            ResourceNode("a", ResourceKind.ROLE, references=frozenset({"a"}))

    def test_empty_id_rejected(self):
        with pytest.raises(ValidationError):
            ResourceNode("", ResourceKind.ROLE)

    def test_fingerprint_is_stable(self):
        a = ResourceNode("c", ResourceKind.CLUSTER, {"x": 1, "y": 2}, frozenset({"b", "a"}))
        b = ResourceNode("c", ResourceKind.CLUSTER, {"y": 2, "x": 1}, frozenset({"a", "b"}))
        assert a.fingerprint == b.fingerprint

    def test_fingerprint_changes_with_attributes(self):
        a = ResourceNode("c", ResourceKind.CLUSTER, {"x": 1})
        b = ResourceNode("c", ResourceKind.CLUSTER, {"x": 2})
        assert a.fingerprint != b.fingerprint

    def test_from_dict(self):
        node = ResourceNode.from_dict(
            {"id": "cluster", "kind": "Cluster", "references": ["vpc"], "attributes": {"name": "c"}}
        )
        assert node.references == frozenset({"vpc"})
        assert node.attributes["name"] == "c"
        assert ResourceNode.from_dict(node.to_dict()) == node

    def test_from_dict_missing_kind(self):
        with pytest.raises(ValidationError, match="missing 'kind'"):
            ResourceNode.from_dict({"id": "cluster"})

    def test_target_task_defaults_to_node_id(self):
        service = ResourceNode("svc", ResourceKind.SERVICE_REGISTRATION)
        assert target_task_id(service) == "svc"
        service = ResourceNode(
            "svc", ResourceKind.SERVICE_REGISTRATION, {"target": "c"}, frozenset({"c"})
        )
        assert target_task_id(service) == "c"


def test_index_nodes_rejects_duplicates():
    nodes = [ResourceNode("a", ResourceKind.ROLE), ResourceNode("a", ResourceKind.NETWORK)]
    with pytest.raises(ValidationError, match="Duplicate node id 'a'"):
        index_nodes(nodes)


def test_endpoint_ordering_and_str():
    a = Endpoint("10.0.0.1", 80)
    b = Endpoint("10.0.0.2", 80)
    assert sorted([b, a]) == [a, b]
    assert str(a) == "10.0.0.1:80/tcp"
    assert Endpoint.from_dict(a.to_dict()) == a
    assert len({a, Endpoint("10.0.0.1", 80)}) == 1
