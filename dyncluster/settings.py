from __future__ import annotations

import os
from dataclasses import dataclass


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    # Core
    db_path: str = os.getenv("DYNCLUSTER_DB_PATH", os.path.join("data", "dyncluster.db"))
    listen_host: str = os.getenv("DYNCLUSTER_LISTEN_HOST", "0.0.0.0")
    listen_port: int = _env_int("DYNCLUSTER_LISTEN_PORT", 19923)
    cleanup_interval_s: int = _env_int("DYNCLUSTER_CLEANUP_INTERVAL_S", 300)
    log_level: str = os.getenv("DYNCLUSTER_LOG_LEVEL", "INFO")

    # Docker
    docker_host: str = os.getenv("DYNCLUSTER_DOCKER_HOST", "unix:///var/run/docker.sock")
    docker_api_version: str = os.getenv("DYNCLUSTER_DOCKER_API_VERSION", "1.38")
    docker_registry: str = os.getenv("DYNCLUSTER_DOCKER_REGISTRY", "dockerhub.build.couchbase.com")
    # Nodes must be reachable from outside the docker host, so they join a macvlan network.
    docker_network: str = os.getenv("DYNCLUSTER_DOCKER_NETWORK", "macvlan0")
    docker_registry_user: str | None = os.getenv("DYNCLUSTER_DOCKER_REGISTRY_USER")
    docker_registry_password: str | None = os.getenv("DYNCLUSTER_DOCKER_REGISTRY_PASSWORD")

    # Allocation limits
    default_ttl_s: int = _env_int("DYNCLUSTER_DEFAULT_TTL_S", 3600)
    max_ttl_s: int = _env_int("DYNCLUSTER_MAX_TTL_S", 14 * 24 * 3600)
    max_nodes: int = _env_int("DYNCLUSTER_MAX_NODES", 10)
    wait_for_nodes: bool = _env_bool("DYNCLUSTER_WAIT_FOR_NODES", True)
    node_ready_timeout_s: int = _env_int("DYNCLUSTER_NODE_READY_TIMEOUT_S", 120)


settings = Settings()
