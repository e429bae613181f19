from __future__ import annotations

import argparse
import dataclasses
import json
import os
import sys

import requests

from .errors import StartupError
from .logging_config import setup_logging
from .settings import settings


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def _serve(args: argparse.Namespace) -> int:
    from .daemon import Daemon

    overrides = {
        "db_path": args.db_path,
        "docker_host": args.docker_host,
        "docker_registry": args.docker_registry,
        "docker_network": args.network,
        "listen_port": args.port,
        "cleanup_interval_s": args.cleanup_interval_s,
    }
    cfg = dataclasses.replace(settings, **{k: v for k, v in overrides.items() if v is not None})
    setup_logging(cfg.log_level)

    try:
        Daemon(cfg).run()
    except StartupError:
        return 1
    return 0


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="Dynamic Cluster daemon and client")
    p.add_argument("--api", default=os.getenv("DYNCLUSTER_API", "http://localhost:19923"), help="API base URL")
    p.add_argument("--user", default=os.getenv("DYNCLUSTER_USER"), help="Identity sent as the Authorization header")
    sub = p.add_subparsers(dest="cmd", required=True)

    s_serve = sub.add_parser("serve", help="Run the daemon in the foreground")
    s_serve.add_argument("--db-path")
    s_serve.add_argument("--docker-host", help="docker host where containers are running (i.e. tcp://127.0.0.1:2376)")
    s_serve.add_argument("--docker-registry", help="docker registry to pull images from")
    s_serve.add_argument("--network", help="docker network nodes attach to")
    s_serve.add_argument("--port", type=int)
    s_serve.add_argument("--cleanup-interval-s", type=int)

    sub.add_parser("clusters", help="List your clusters")

    s_ev = sub.add_parser("events", help="Show daemon events")
    s_ev.add_argument("--limit", type=int, default=20)

    s_alloc = sub.add_parser("allocate", help="Allocate a new cluster")
    s_alloc.add_argument("--version", required=True, dest="server_version", help="Server version for every node")
    s_alloc.add_argument("--nodes", type=int, default=3)
    s_alloc.add_argument("--ttl-s", type=int)

    s_ref = sub.add_parser("refresh", help="Extend a cluster's lifetime")
    s_ref.add_argument("cluster_id")
    s_ref.add_argument("--ttl-s", type=int)

    s_kill = sub.add_parser("kill", help="Tear down a cluster now")
    s_kill.add_argument("cluster_id")

    args = p.parse_args(argv)

    if args.cmd == "serve":
        return _serve(args)

    if not args.user:
        p.error("--user (or DYNCLUSTER_USER) is required for client commands")

    base = args.api.rstrip("/")
    headers = {"Authorization": args.user}

    if args.cmd == "clusters":
        r = requests.get(f"{base}/clusters", headers=headers, timeout=10)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "events":
        r = requests.get(f"{base}/events", params={"limit": args.limit}, headers=headers, timeout=10)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "allocate":
        payload = {
            "nodes": [{"server_version": args.server_version} for _ in range(args.nodes)],
            "ttl_s": args.ttl_s,
        }
        # Allocation waits for every node to come up.
        r = requests.post(f"{base}/clusters", json=payload, headers=headers, timeout=600)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "refresh":
        r = requests.put(
            f"{base}/cluster/{args.cluster_id}/refresh", json={"ttl_s": args.ttl_s}, headers=headers, timeout=30
        )
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "kill":
        r = requests.delete(f"{base}/cluster/{args.cluster_id}", headers=headers, timeout=120)
        if r.ok:
            _print({"killed": args.cluster_id})
            return 0
        _print(r.json())
        return 1

    return 2


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
