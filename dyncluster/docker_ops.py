from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any

import docker
from docker.errors import DockerException, NotFound

from .db import Node
from .errors import EngineError
from .settings import Settings, settings as default_settings


NODE_NAME_RE = re.compile(r"^[a-z0-9][a-z0-9\-]{0,31}$")
SERVER_VERSION_RE = re.compile(r"^[0-9]+\.[0-9]+\.[0-9]+(-[0-9]{1,5})?$")

LABEL_CLUSTER = "com.couchbase.dyncluster.cluster_id"
LABEL_NODE = "com.couchbase.dyncluster.node_name"
LABEL_VERSION = "com.couchbase.dyncluster.initial_server_version"


def validate_node_name(name: str) -> None:
    if not NODE_NAME_RE.match(name):
        raise ValueError("Invalid node name. Use lowercase letters/numbers and hyphen (max 32 chars).")


def validate_server_version(version: str) -> None:
    if not SERVER_VERSION_RE.match(version):
        raise ValueError("Invalid server version. Expected e.g. 6.5.1 or 6.5.1-1234.")


@dataclass(frozen=True)
class ContainerRef:
    id: str
    name: str
    cluster_id: str | None = None


class EngineClient:
    """Thin wrapper around a single docker-py client.

    Containers are labeled with their cluster id so they can be re-discovered
    after a daemon restart.
    """

    def __init__(self, cfg: Settings | None = None, client: docker.DockerClient | None = None):
        self.settings = cfg or default_settings
        self._client = client

    def connect(self) -> None:
        if self._client is not None:
            return
        try:
            c = docker.DockerClient(base_url=self.settings.docker_host, version=self.settings.docker_api_version)
            c.ping()
        except DockerException as e:
            raise EngineError(f"cannot reach docker at {self.settings.docker_host}: {e}") from e
        self._client = c

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

    @property
    def client(self) -> docker.DockerClient:
        if self._client is None:
            raise EngineError("docker client is not connected")
        return self._client

    def ping(self) -> bool:
        try:
            return bool(self.client.ping())
        except DockerException:
            return False

    def has_network(self, name: str) -> bool:
        try:
            networks = self.client.networks.list(names=[name])
        except DockerException as e:
            raise EngineError(f"failed to list docker networks: {e}") from e
        return any(n.name == name for n in networks)

    def image_for(self, server_version: str) -> str:
        return f"{self.settings.docker_registry}/dynclsr-couchbase_{server_version}"

    def registry_login(self, username: str, password: str | None = None) -> None:
        try:
            self.client.login(username=username, password=password, registry=self.settings.docker_registry)
        except DockerException as e:
            raise EngineError(f"registry login to {self.settings.docker_registry} failed: {e}") from e

    def run_node(self, cluster_id: str, node_name: str, server_version: str) -> Node:
        """Create and start one node container attached to the cluster network."""
        validate_node_name(node_name)
        validate_server_version(server_version)

        image = self.image_for(server_version)
        name = f"dynclsr-{cluster_id}-{node_name}"
        labels: dict[str, str] = {
            LABEL_CLUSTER: cluster_id,
            LABEL_NODE: node_name,
            LABEL_VERSION: server_version,
        }

        try:
            container = self.client.containers.run(
                image,
                detach=True,
                name=name,
                hostname=name,
                network=self.settings.docker_network,
                labels=labels,
                # Expired clusters are torn down by the daemon; never let docker resurrect them.
                restart_policy={"Name": "no"},
            )
            container.reload()
        except DockerException as e:
            raise EngineError(f"failed to start node {name} from {image}: {e}") from e

        networks: dict[str, Any] = container.attrs.get("NetworkSettings", {}).get("Networks", {})
        ip = networks.get(self.settings.docker_network, {}).get("IPAddress", "")
        return Node(
            container_id=container.id,
            name=name,
            initial_server_version=server_version,
            ipv4_address=ip,
        )

    def remove_container(self, container_id: str, force: bool = True) -> None:
        """Remove a container; one that is already gone counts as removed."""
        try:
            cont = self.client.containers.get(container_id)
            cont.remove(force=force, v=True)
        except NotFound:
            return
        except DockerException as e:
            raise EngineError(f"failed to remove container {container_id[:12]}: {e}") from e

    def list_containers(self, cluster_id: str | None = None) -> list[ContainerRef]:
        label = f"{LABEL_CLUSTER}={cluster_id}" if cluster_id else LABEL_CLUSTER
        try:
            containers = self.client.containers.list(all=True, filters={"label": [label]})
        except DockerException as e:
            raise EngineError(f"failed to list containers: {e}") from e
        return [ContainerRef(id=x.id, name=x.name, cluster_id=x.labels.get(LABEL_CLUSTER)) for x in containers]
