"""Tests for persisted execution state."""

import json

import pytest
from stackwright.core.errors import ConfigurationError
from stackwright.orchestration.results import ExecutionResult, NodeOutcome, NodeStatus
from stackwright.providers.base import BackendHandle
from stackwright.state.store import STATE_VERSION, StateStore


@pytest.fixture
def result():
    return ExecutionResult(
        stack="orders",
        operation="apply",
        outcomes={
            "vpc": NodeOutcome(
                node_id="vpc",
                kind="Network",
                status=NodeStatus.SUCCEEDED,
                action="create",
                handle=BackendHandle("vpc", "Network", "network-1234"),
                fingerprint="abc",
                attempts=2,
            ),
            "cluster": NodeOutcome(
                node_id="cluster",
                kind="Cluster",
                status=NodeStatus.FAILED,
                action="create",
                error="Access denied",
                attempts=1,
            ),
        },
        stages_completed=1,
        finished_at=12.5,
        started_at=10.0,
    )


def test_load_missing_returns_none(tmp_path):
    assert StateStore(tmp_path).load("orders") is None


def test_save_writes_versioned_record(tmp_path, result):
    store = StateStore(tmp_path / "state")

    path = store.save(result)

    data = json.loads(path.read_text())
    assert data["version"] == STATE_VERSION
    assert data["stack"] == "orders"
    assert data["updated_at"] > 0
    assert data["result"]["failed"] == ["cluster"]
    assert not path.with_suffix(".json.tmp").exists()


def test_save_then_load(tmp_path, result):
    store = StateStore(tmp_path)
    store.save(result)

    loaded = store.load("orders")

    assert loaded.statuses() == result.statuses()
    assert loaded.outcomes["vpc"].handle == result.outcomes["vpc"].handle
    assert loaded.outcomes["cluster"].error == "Access denied"
    assert loaded.duration_seconds == pytest.approx(2.5)


def test_version_mismatch(tmp_path):
    store = StateStore(tmp_path)
    store.path_for("orders").write_text(json.dumps({"version": 99, "result": {}}))

    with pytest.raises(ConfigurationError, match="Unsupported state version"):
        store.load("orders")


def test_corrupt_file(tmp_path):
    store = StateStore(tmp_path)
    store.path_for("orders").write_text("{not json")

    with pytest.raises(ConfigurationError, match="not valid JSON"):
        store.load("orders")


def test_stack_name_is_sanitised(tmp_path):
    store = StateStore(tmp_path)
    assert store.path_for("team/orders v2").name == "team_orders_v2.json"


def test_delete(tmp_path, result):
    store = StateStore(tmp_path)
    store.save(result)

    assert store.delete("orders")
    assert not store.delete("orders")
    assert store.load("orders") is None
