from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from dyncluster.api import create_app


def _auth(user: str) -> dict:
    return {"Authorization": user}


@pytest.fixture
def client(service):
    with TestClient(create_app(service)) as c:
        yield c


def test_requests_without_identity_are_rejected(client):
    r = client.get("/clusters")
    assert r.status_code == 401


def test_system_identity_is_reserved(client):
    r = client.get("/clusters", headers=_auth("system"))
    assert r.status_code == 403


def test_version(client):
    r = client.get("/version")
    assert r.status_code == 200
    assert "version" in r.json()


def test_list_only_shows_own_clusters(client, make_cluster):
    make_cluster("A", owner="alice")
    make_cluster("B", owner="bob")
    make_cluster("C", owner="alice")

    r = client.get("/clusters", headers=_auth("alice"))
    assert r.status_code == 200
    assert sorted(c["id"] for c in r.json()) == ["A", "C"]

    r = client.get("/clusters", headers=_auth("Bearer bob"))
    assert [c["id"] for c in r.json()] == ["B"]


def test_get_cluster_and_not_found(client, make_cluster):
    make_cluster("A", owner="alice")
    r = client.get("/cluster/A", headers=_auth("alice"))
    assert r.status_code == 200
    body = r.json()
    assert body["owner"] == "alice"
    assert len(body["nodes"]) == 1

    assert client.get("/cluster/A", headers=_auth("bob")).status_code == 404
    assert client.get("/cluster/zzz", headers=_auth("alice")).status_code == 404


def test_allocate_then_kill(client, store, engine):
    r = client.post(
        "/clusters",
        json={"nodes": [{"server_version": "6.5.1"}, {"server_version": "6.5.1"}], "ttl_s": 600},
        headers=_auth("alice"),
    )
    assert r.status_code == 201, r.text
    cluster_id = r.json()["id"]
    assert store.get_cluster(cluster_id).owner == "alice"

    assert client.delete(f"/cluster/{cluster_id}", headers=_auth("bob")).status_code == 403
    assert client.delete(f"/cluster/{cluster_id}", headers=_auth("alice")).status_code == 204
    assert store.get_cluster(cluster_id) is None
    assert client.delete(f"/cluster/{cluster_id}", headers=_auth("alice")).status_code == 404


def test_allocate_validation_errors(client):
    r = client.post("/clusters", json={"nodes": []}, headers=_auth("alice"))
    assert r.status_code == 422

    r = client.post("/clusters", json={"nodes": [{"server_version": "nope"}]}, headers=_auth("alice"))
    assert r.status_code == 400


def test_allocate_engine_failure_maps_to_502(client, engine):
    engine.fail_run_on.add("node1")
    r = client.post("/clusters", json={"nodes": [{"server_version": "6.5.1"}]}, headers=_auth("alice"))
    assert r.status_code == 502


def test_refresh(client, make_cluster):
    make_cluster("A", owner="alice", ttl=timedelta(minutes=1))
    r = client.put("/cluster/A/refresh", json={"ttl_s": 7200}, headers=_auth("alice"))
    assert r.status_code == 200
    assert r.json()["id"] == "A"
    assert client.put("/cluster/A/refresh", json={"ttl_s": 60}, headers=_auth("bob")).status_code == 403


def test_events(client, make_cluster):
    make_cluster("A", owner="alice")
    client.delete("/cluster/A", headers=_auth("alice"))
    r = client.get("/events", params={"limit": 5}, headers=_auth("alice"))
    assert r.status_code == 200
    assert r.json()[0]["cluster_id"] == "A"


def test_events_of_other_owners_are_hidden(client, make_cluster):
    make_cluster("A", owner="alice")
    assert client.delete("/cluster/A", headers=_auth("alice")).status_code == 204

    r = client.get("/events", headers=_auth("bob"))
    assert r.status_code == 200
    assert r.json() == []
