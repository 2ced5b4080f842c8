"""End-to-end sync tests against a real single-node replica set."""

import pytest
import time

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '../../'))

import pymongo
from bson import ObjectId

from cafesync.diagnostics import PreflightStatus, check_replica_set, initiate_replica_set, run_roundtrip
from cafesync.sync import CoordinatorState, SyncCoordinator, SyncDirection, WorkerConfig


# Skip integration tests if testcontainers not available
try:
    from testcontainers.core.container import DockerContainer
    from testcontainers.core.waiting_utils import wait_for_logs
    TESTCONTAINERS_AVAILABLE = True
except ImportError:
    TESTCONTAINERS_AVAILABLE = False

pytestmark = [
    pytest.mark.integration,
    pytest.mark.skipif(not TESTCONTAINERS_AVAILABLE, reason="testcontainers not available"),
]

COLLECTIONS = ["bills", "orders", "sync_roundtrip_markers"]


def wait_until(predicate, timeout=5.0, interval=0.1):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return bool(predicate())


@pytest.fixture(scope="module")
def replica_set():
    """mongod started with --replSet and initiated as rs0. Yields host:port."""
    try:
        container = DockerContainer("mongo:6.0").with_command("--replSet rs0 --bind_ip_all").with_exposed_ports(27017)
        container.start()
    except Exception as e:
        pytest.skip(f"Docker not available: {e}")

    try:
        wait_for_logs(container, "Waiting for connections", timeout=60)
        address = f"{container.get_container_host_ip()}:{container.get_exposed_port(27017)}"

        result = initiate_replica_set(f"mongodb://{address}/", host="localhost:27017", wait_seconds=60)
        assert result.ok, result.details
        yield address
    finally:
        container.stop()


@pytest.fixture
def client(replica_set):
    client = pymongo.MongoClient(f"mongodb://{replica_set}/?directConnection=true")
    yield client
    client.close()


@pytest.fixture
def databases(client):
    """Two databases in one replica set stand in for the local and cloud sides."""
    for name in ("cafe_local", "cafe_remote"):
        client.drop_database(name)
    yield client["cafe_local"], client["cafe_remote"]
    for name in ("cafe_local", "cafe_remote"):
        client.drop_database(name)


@pytest.fixture
def coordinator(databases):
    local_db, remote_db = databases
    coordinator = SyncCoordinator(
        local_db, remote_db, COLLECTIONS, bidirectional=True,
        worker_config=WorkerConfig(max_await_time_ms=200, retry_backoff_base=0.5, max_retry_delay=2.0)
    )
    assert coordinator.start() is CoordinatorState.RUNNING
    yield coordinator
    coordinator.stop()


def test_preflight_ok(replica_set):
    result = check_replica_set(f"mongodb://{replica_set}/cafe_local?replicaSet=rs0&directConnection=true")

    assert result.ok is True, result.remediation
    assert result.status is PreflightStatus.OK
    assert result.details["set_name"] == "rs0"


def test_preflight_uri_without_replica_set(replica_set):
    result = check_replica_set(f"mongodb://{replica_set}/cafe_local")

    assert result.status is PreflightStatus.URI_MISSING_REPLICA_SET


def test_local_insert_reaches_remote(databases, coordinator):
    local_db, remote_db = databases

    bill_id = ObjectId()
    local_db.bills.insert_one({"_id": bill_id, "tableNumber": "T1", "total": 420})

    assert wait_until(lambda: remote_db.bills.find_one({"_id": bill_id}) is not None)
    replicated = remote_db.bills.find_one({"_id": bill_id})
    assert replicated == local_db.bills.find_one({"_id": bill_id})
    assert replicated["tableNumber"] == "T1"


def test_no_ping_pong(databases, coordinator):
    local_db, remote_db = databases
    reverse = coordinator.workers[SyncDirection.REMOTE_TO_LOCAL]

    local_db.orders.insert_one({"_id": "o-1", "items": ["espresso"]})
    local_db.orders.update_one({"_id": "o-1"}, {"$set": {"status": "served"}})

    assert wait_until(lambda: (remote_db.orders.find_one({"_id": "o-1"}) or {}).get("status") == "served")
    assert wait_until(lambda: reverse.events_skipped >= 2)
    time.sleep(1.0)

    assert reverse.events_applied == 0
    assert local_db.orders.count_documents({}) == 1


def test_remote_delete_propagates_and_is_not_resurrected(databases, coordinator):
    local_db, remote_db = databases

    local_db.bills.insert_one({"_id": "b-9", "tableNumber": "T9"})
    assert wait_until(lambda: remote_db.bills.find_one({"_id": "b-9"}) is not None)

    remote_db.bills.delete_one({"_id": "b-9"})
    assert wait_until(lambda: local_db.bills.find_one({"_id": "b-9"}) is None)

    report = coordinator.reconcile()

    assert report.errors == 0
    assert local_db.bills.find_one({"_id": "b-9"}) is None
    assert remote_db.bills.find_one({"_id": "b-9"}) is None


def test_reconcile_backfills_missed_documents(databases, coordinator):
    local_db, remote_db = databases
    coordinator.stop()
    remote_db.orders.insert_many([{"_id": f"missed-{i}"} for i in range(20)])

    report = coordinator.reconcile(SyncDirection.REMOTE_TO_LOCAL)

    assert report.inserted == 20
    assert local_db.orders.count_documents({}) == 20


def test_roundtrip_both_directions(databases, coordinator):
    local_db, remote_db = databases

    forward = run_roundtrip(local_db, remote_db, direction="local_to_remote", timeout=5.0)
    backward = run_roundtrip(remote_db, local_db, direction="remote_to_local", timeout=5.0)

    assert forward.ok, forward.error
    assert backward.ok, backward.error
