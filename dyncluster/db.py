from __future__ import annotations

import os
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Iterator

from .errors import ClusterNotFoundError, StoreClosedError


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _to_db_ts(ts: datetime) -> str:
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _from_db_ts(raw: str) -> datetime:
    ts = datetime.fromisoformat(raw)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def _resolve_db_path(path: str) -> str:
    """Return a file path usable by sqlite.

    If the configured path is a directory (docker creates one for a missing
    bind-mounted file), the DB file is placed inside it.
    """

    p = os.path.abspath(path)

    if os.path.isdir(p):
        p = os.path.join(p, "dyncluster.db")

    parent = os.path.dirname(p)
    if parent and not os.path.exists(parent):
        os.makedirs(parent, exist_ok=True)

    return p


@dataclass(frozen=True)
class Node:
    container_id: str
    name: str
    initial_server_version: str
    ipv4_address: str


@dataclass(frozen=True)
class Cluster:
    id: str
    owner: str
    creator: str
    timeout: datetime
    nodes: list[Node] = field(default_factory=list)
    created_at: datetime | None = None

    def expired_at(self, now: datetime) -> bool:
        return self.timeout < now


_SCHEMA = """
CREATE TABLE IF NOT EXISTS clusters (
  id TEXT PRIMARY KEY,
  owner TEXT NOT NULL,
  creator TEXT NOT NULL,
  timeout TEXT NOT NULL,
  created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS nodes (
  cluster_id TEXT NOT NULL,
  position INTEGER NOT NULL,
  container_id TEXT NOT NULL,
  name TEXT NOT NULL,
  initial_server_version TEXT NOT NULL,
  ipv4_address TEXT NOT NULL,
  PRIMARY KEY(cluster_id, position),
  FOREIGN KEY(cluster_id) REFERENCES clusters(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS events (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  ts TEXT NOT NULL,
  level TEXT NOT NULL,
  cluster_id TEXT,
  owner TEXT,
  message TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_events_ts ON events(ts);
CREATE INDEX IF NOT EXISTS idx_clusters_owner ON clusters(owner);
CREATE INDEX IF NOT EXISTS idx_events_owner ON events(owner);
"""


class MetaDataStore:
    """Durable record of clusters, their nodes and daemon events.

    One sqlite connection is shared by every thread; a lock serialises
    access so the store is safe for concurrent callers.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self._conn: sqlite3.Connection | None = None
        self.path: str | None = None

    def open(self, path: str) -> None:
        with self._lock:
            if self._conn is not None:
                return
            resolved = _resolve_db_path(path)
            conn = sqlite3.connect(resolved, check_same_thread=False)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA foreign_keys=ON")
            with conn:
                conn.executescript(_SCHEMA)
            self._conn = conn
            self.path = resolved

    def close(self) -> None:
        with self._lock:
            if self._conn is None:
                return
            conn, self._conn = self._conn, None
            conn.close()

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    @contextmanager
    def _tx(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            if self._conn is None:
                raise StoreClosedError("metadata store is not open")
            with self._conn:
                yield self._conn

    def add_cluster(self, cluster: Cluster) -> None:
        with self._tx() as conn:
            conn.execute(
                "INSERT INTO clusters (id, owner, creator, timeout, created_at) VALUES (?, ?, ?, ?, ?)",
                (
                    cluster.id,
                    cluster.owner,
                    cluster.creator,
                    _to_db_ts(cluster.timeout),
                    _to_db_ts(cluster.created_at or utc_now()),
                ),
            )
            conn.executemany(
                """
                INSERT INTO nodes (cluster_id, position, container_id, name, initial_server_version, ipv4_address)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                [
                    (cluster.id, pos, n.container_id, n.name, n.initial_server_version, n.ipv4_address)
                    for pos, n in enumerate(cluster.nodes)
                ],
            )

    def get_cluster(self, cluster_id: str) -> Cluster | None:
        with self._tx() as conn:
            row = conn.execute("SELECT * FROM clusters WHERE id=?", (cluster_id,)).fetchone()
            if row is None:
                return None
            return self._build_cluster(conn, row)

    def list_clusters(self, owner: str | None = None) -> list[Cluster]:
        with self._tx() as conn:
            if owner is None:
                rows = conn.execute("SELECT * FROM clusters ORDER BY created_at, id").fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM clusters WHERE owner=? ORDER BY created_at, id", (owner,)
                ).fetchall()
            return [self._build_cluster(conn, r) for r in rows]

    def update_timeout(self, cluster_id: str, timeout: datetime) -> None:
        with self._tx() as conn:
            cur = conn.execute("UPDATE clusters SET timeout=? WHERE id=?", (_to_db_ts(timeout), cluster_id))
            if cur.rowcount == 0:
                raise ClusterNotFoundError(cluster_id)

    def delete_cluster(self, cluster_id: str) -> None:
        with self._tx() as conn:
            cur = conn.execute("DELETE FROM clusters WHERE id=?", (cluster_id,))
            if cur.rowcount == 0:
                raise ClusterNotFoundError(cluster_id)

    def log_event(
        self,
        level: str,
        message: str,
        cluster_id: str | None = None,
        owner: str | None = None,
    ) -> None:
        with self._tx() as conn:
            conn.execute(
                "INSERT INTO events (ts, level, cluster_id, owner, message) VALUES (?, ?, ?, ?, ?)",
                (_to_db_ts(utc_now()), level.upper(), cluster_id, owner, message),
            )

    def latest_events(self, limit: int = 100, owner: str | None = None) -> list[dict[str, Any]]:
        """Newest events first. With an owner, only that owner's cluster events."""
        with self._tx() as conn:
            if owner is None:
                rows = conn.execute("SELECT * FROM events ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM events WHERE owner=? ORDER BY id DESC LIMIT ?", (owner, limit)
                ).fetchall()
            return [dict(r) for r in rows]

    @staticmethod
    def _build_cluster(conn: sqlite3.Connection, row: sqlite3.Row) -> Cluster:
        node_rows = conn.execute(
            "SELECT * FROM nodes WHERE cluster_id=? ORDER BY position", (row["id"],)
        ).fetchall()
        nodes = [
            Node(
                container_id=n["container_id"],
                name=n["name"],
                initial_server_version=n["initial_server_version"],
                ipv4_address=n["ipv4_address"],
            )
            for n in node_rows
        ]
        return Cluster(
            id=row["id"],
            owner=row["owner"],
            creator=row["creator"],
            timeout=_from_db_ts(row["timeout"]),
            nodes=nodes,
            created_at=_from_db_ts(row["created_at"]),
        )
