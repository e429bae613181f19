import sys
import threading
from datetime import timedelta

import pytest

# Ensure project root is importable when the package is not installed.
import os as _os
_project_root = _os.path.dirname(_os.path.dirname(__file__))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from dyncluster.clusters import ClusterService  # noqa: E402
from dyncluster.context import new_context, system_context  # noqa: E402
from dyncluster.db import Cluster, MetaDataStore, Node, utc_now  # noqa: E402
from dyncluster.docker_ops import ContainerRef  # noqa: E402
from dyncluster.errors import EngineError  # noqa: E402
from dyncluster.settings import Settings  # noqa: E402


class FakeEngine:
    """In-memory stand-in for EngineClient; records every call."""

    def __init__(self, network: str = "macvlan0"):
        self.networks = {network}
        self.containers: dict[str, ContainerRef] = {}
        self.removed: list[str] = []
        self.fail_run_on: set[str] = set()
        self.connected = False
        self.logins: list[str] = []
        self._lock = threading.Lock()
        self._seq = 0

    def connect(self):
        self.connected = True

    def has_network(self, name):
        return name in self.networks

    def registry_login(self, username, password=None):
        self.logins.append(username)

    def run_node(self, cluster_id, node_name, server_version):
        if node_name in self.fail_run_on:
            raise EngineError(f"cannot start {node_name}")
        with self._lock:
            self._seq += 1
            cid = f"c{self._seq:04d}"
            self.containers[cid] = ContainerRef(id=cid, name=f"dynclsr-{cluster_id}-{node_name}", cluster_id=cluster_id)
        return Node(
            container_id=cid,
            name=f"dynclsr-{cluster_id}-{node_name}",
            initial_server_version=server_version,
            ipv4_address=f"10.0.0.{self._seq}",
        )

    def remove_container(self, container_id, force=True):
        with self._lock:
            self.containers.pop(container_id, None)
            self.removed.append(container_id)

    def list_containers(self, cluster_id=None):
        with self._lock:
            return [c for c in self.containers.values() if cluster_id is None or c.cluster_id == cluster_id]


@pytest.fixture
def cfg(tmp_path):
    return Settings(db_path=str(tmp_path / "meta.db"), wait_for_nodes=False, max_nodes=5)


@pytest.fixture
def store(cfg):
    s = MetaDataStore()
    s.open(cfg.db_path)
    yield s
    s.close()


@pytest.fixture
def engine():
    return FakeEngine()


@pytest.fixture
def service(store, engine, cfg):
    return ClusterService(store, engine, cfg)


@pytest.fixture
def system_ctx():
    return system_context()


@pytest.fixture
def alice():
    return new_context("alice", False)


@pytest.fixture
def make_cluster(store, engine):
    """Insert a cluster with one running node container; ttl may be negative."""

    def _make(cluster_id: str, owner: str = "alice", ttl: timedelta = timedelta(hours=1)) -> Cluster:
        node = engine.run_node(cluster_id, "node1", "6.5.1")
        cluster = Cluster(
            id=cluster_id,
            owner=owner,
            creator=owner,
            timeout=utc_now() + ttl,
            nodes=[node],
        )
        store.add_cluster(cluster)
        return cluster

    return _make
