from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable

from .context import ActorContext
from .db import Cluster, MetaDataStore, Node, utc_now
from .docker_ops import EngineClient, validate_node_name, validate_server_version
from .errors import ClusterNotFoundError, DynClusterError, NotOwnerError
from .health import wait_node_ready
from .settings import Settings, settings as default_settings

logger = logging.getLogger(__name__)


@dataclass
class NodeOptions:
    server_version: str
    name: str = ""


@dataclass
class ClusterOptions:
    nodes: list[NodeOptions] = field(default_factory=list)
    ttl: timedelta | None = None


class ClusterService:
    """Ownership-enforcing facade over the registry and the container engine.

    Non-system actors only see and modify clusters they own; the system
    actor sees everything.
    """

    def __init__(
        self,
        store: MetaDataStore,
        engine: EngineClient,
        cfg: Settings | None = None,
        node_probe: Callable[[str, float], bool] | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.engine = engine
        self.settings = cfg or default_settings
        self.node_probe = node_probe or (lambda ip, timeout: wait_node_ready(ip, timeout))
        self.clock = clock

    def list_all(self, ctx: ActorContext) -> list[Cluster]:
        if ctx.is_system:
            return self.store.list_clusters()
        return self.store.list_clusters(owner=ctx.identity)

    def events(self, ctx: ActorContext, limit: int = 100) -> list[dict[str, Any]]:
        """Recent events; non-system actors only get events of clusters they own."""
        if ctx.is_system:
            return self.store.latest_events(limit=limit)
        return self.store.latest_events(limit=limit, owner=ctx.identity)

    def get(self, ctx: ActorContext, cluster_id: str) -> Cluster:
        cluster = self.store.get_cluster(cluster_id)
        # Hide other owners' clusters instead of confirming they exist.
        if cluster is None or not ctx.can_access(cluster.owner):
            raise ClusterNotFoundError(cluster_id)
        return cluster

    def kill(self, ctx: ActorContext, cluster_id: str) -> None:
        """Remove every node container of the cluster, then its registry record."""
        cluster = self.store.get_cluster(cluster_id)
        if cluster is None:
            raise ClusterNotFoundError(cluster_id)
        if not ctx.can_access(cluster.owner):
            raise NotOwnerError(cluster_id, ctx.identity)

        container_ids = [n.container_id for n in cluster.nodes]
        # Containers left behind by an interrupted allocation carry the label but no record.
        for ref in self.engine.list_containers(cluster_id):
            if ref.id not in container_ids:
                container_ids.append(ref.id)

        for container_id in container_ids:
            self.engine.remove_container(container_id, force=True)

        self.store.delete_cluster(cluster_id)
        self.store.log_event("INFO", f"Cluster killed by {ctx.identity}", cluster_id=cluster_id, owner=cluster.owner)
        logger.info("Killed cluster %s (%d containers) as %s", cluster_id, len(container_ids), ctx.identity)

    def allocate(self, ctx: ActorContext, opts: ClusterOptions) -> str:
        ttl = self._check_ttl(opts.ttl)
        if not opts.nodes:
            raise ValueError("A cluster needs at least one node.")
        if len(opts.nodes) > self.settings.max_nodes:
            raise ValueError(f"A cluster may have at most {self.settings.max_nodes} nodes.")

        names: list[str] = []
        for idx, node in enumerate(opts.nodes):
            validate_server_version(node.server_version)
            name = node.name or f"node{idx + 1}"
            validate_node_name(name)
            if name in names:
                raise ValueError(f"Duplicate node name '{name}'.")
            names.append(name)

        cluster_id = secrets.token_hex(4)
        started: list[Node] = []
        try:
            for name, node in zip(names, opts.nodes):
                started.append(self.engine.run_node(cluster_id, name, node.server_version))

            if self.settings.wait_for_nodes:
                self._wait_ready(ctx, cluster_id, started)

            now = self.clock()
            self.store.add_cluster(
                Cluster(
                    id=cluster_id,
                    owner=ctx.identity,
                    creator=ctx.identity,
                    timeout=now + ttl,
                    nodes=started,
                    created_at=now,
                )
            )
        except Exception:
            logger.warning("Allocation of cluster %s failed, removing %d started nodes", cluster_id, len(started))
            for n in started:
                try:
                    self.engine.remove_container(n.container_id, force=True)
                except DynClusterError as e:
                    logger.error("Failed to remove node %s during rollback: %s", n.name, e)
            raise

        self.store.log_event(
            "INFO",
            f"Cluster allocated by {ctx.identity} with {len(started)} nodes",
            cluster_id=cluster_id,
            owner=ctx.identity,
        )
        logger.info("Allocated cluster %s for %s (ttl %s)", cluster_id, ctx.identity, ttl)
        return cluster_id

    def refresh(self, ctx: ActorContext, cluster_id: str, ttl: timedelta | None = None) -> Cluster:
        """Push the cluster's expiry to now + ttl."""
        ttl = self._check_ttl(ttl)
        cluster = self.store.get_cluster(cluster_id)
        if cluster is None:
            raise ClusterNotFoundError(cluster_id)
        if not ctx.can_access(cluster.owner):
            raise NotOwnerError(cluster_id, ctx.identity)
        self.store.update_timeout(cluster_id, self.clock() + ttl)
        self.store.log_event(
            "INFO", f"Cluster timeout extended by {ctx.identity} ({ttl})", cluster_id=cluster_id, owner=cluster.owner
        )
        return self.get(ctx, cluster_id)

    def _check_ttl(self, ttl: timedelta | None) -> timedelta:
        if ttl is None:
            return timedelta(seconds=self.settings.default_ttl_s)
        if ttl <= timedelta(0):
            raise ValueError("Cluster TTL must be positive.")
        if ttl > timedelta(seconds=self.settings.max_ttl_s):
            raise ValueError(f"Cluster TTL may not exceed {self.settings.max_ttl_s} seconds.")
        return ttl

    def _wait_ready(self, ctx: ActorContext, cluster_id: str, nodes: list[Node]) -> None:
        for n in nodes:
            timeout = float(self.settings.node_ready_timeout_s)
            remaining = ctx.remaining()
            if remaining is not None:
                timeout = min(timeout, remaining)
            if not self.node_probe(n.ipv4_address, timeout):
                raise TimeoutError(f"node {n.name} of cluster {cluster_id} did not become ready in {timeout:.0f}s")


def log_clusters(service: ClusterService, ctx: ActorContext) -> None:
    """Log a one-line summary per visible cluster, followed by its nodes."""
    try:
        clusters = service.list_all(ctx)
    except DynClusterError as e:
        logger.error("Failed to fetch all clusters: %s", e)
        return

    now = utc_now()
    logger.info("Clusters:")
    for cluster in clusters:
        left = round((cluster.timeout - now).total_seconds())
        logger.info(
            "  %s [Owner: %s, Creator: %s, Timeout: %ss]", cluster.id, cluster.owner, cluster.creator, left
        )
        for node in cluster.nodes:
            logger.info(
                "    %-16s  %-20s %-10s %-20s",
                node.container_id[:16],
                node.name,
                node.initial_server_version,
                node.ipv4_address,
            )
