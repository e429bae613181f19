import threading
import time
from datetime import timedelta

import pytest

from dyncluster.context import system_context
from dyncluster.db import Cluster, utc_now
from dyncluster.errors import ClusterNotFoundError
from dyncluster.reconciler import Reconciler


class ScriptedService:
    """Cluster service double with per-cluster kill latency and failures."""

    def __init__(self, clusters=None, delays=None, errors=None):
        self.clusters = list(clusters or [])
        self.delays = delays or {}
        self.errors = errors or {}
        self.list_calls = 0
        self.killed: list[str] = []
        self.finished: list[str] = []
        self.log: list[str] = []
        self._lock = threading.Lock()

    def list_all(self, ctx):
        assert ctx.is_system
        with self._lock:
            self.list_calls += 1
            self.log.append("list")
        return list(self.clusters)

    def kill(self, ctx, cluster_id):
        assert ctx.is_system
        with self._lock:
            self.killed.append(cluster_id)
        time.sleep(self.delays.get(cluster_id, 0))
        with self._lock:
            self.finished.append(cluster_id)
            self.log.append(f"killed:{cluster_id}")
        if cluster_id in self.errors:
            raise self.errors[cluster_id]


def _cluster(cluster_id, timeout, owner="alice"):
    return Cluster(id=cluster_id, owner=owner, creator=owner, timeout=timeout)


@pytest.fixture
def now():
    return utc_now()


def _reconciler(service, now, **kw):
    return Reconciler(service, system_context(), clock=lambda: now, **kw)


def test_sweep_kills_only_clusters_expired_before_sampled_time(service, store, make_cluster, now):
    make_cluster("old", ttl=timedelta(seconds=-60))
    make_cluster("just", ttl=timedelta(seconds=-1))
    make_cluster("alive", ttl=timedelta(seconds=600))

    killed = Reconciler(service, system_context(), clock=lambda: now + timedelta(milliseconds=10)).sweep()

    assert sorted(killed) == ["just", "old"]
    assert store.get_cluster("old") is None
    assert store.get_cluster("just") is None
    assert store.get_cluster("alive") is not None


def test_sweep_launches_one_teardown_per_expired_cluster(now):
    svc = ScriptedService(
        [
            _cluster("a", now - timedelta(seconds=60)),
            _cluster("b", now - timedelta(seconds=1)),
            _cluster("c", now + timedelta(seconds=600)),
            _cluster("d", now),
        ]
    )
    killed = _reconciler(svc, now).sweep()
    assert killed == ["a", "b"]
    assert sorted(svc.killed) == ["a", "b"]


def test_empty_listing_is_a_successful_noop(now):
    svc = ScriptedService([])
    assert _reconciler(svc, now).sweep() == []
    assert svc.killed == []


def test_all_alive_listing_is_a_successful_noop(now):
    svc = ScriptedService([_cluster("a", now + timedelta(hours=1)), _cluster("b", now + timedelta(seconds=1))])
    assert _reconciler(svc, now).sweep() == []
    assert svc.killed == []


def test_duplicate_ids_in_snapshot_are_killed_once(now):
    expired = _cluster("a", now - timedelta(seconds=5))
    svc = ScriptedService([expired, expired])
    assert _reconciler(svc, now).sweep() == ["a"]
    assert svc.killed == ["a"]


def test_single_failure_waits_for_every_teardown(now):
    boom = RuntimeError("docker went away")
    svc = ScriptedService(
        [_cluster(cid, now - timedelta(seconds=10)) for cid in ("a", "b", "c", "d")],
        delays={"a": 0.15, "b": 0.0, "c": 0.1, "d": 0.2},
        errors={"b": boom},
    )
    with pytest.raises(RuntimeError) as excinfo:
        _reconciler(svc, now).sweep()
    assert excinfo.value is boom
    assert sorted(svc.finished) == ["a", "b", "c", "d"]


def test_first_failure_in_arrival_order_wins(now):
    slow_err = RuntimeError("slow failure")
    fast_err = RuntimeError("fast failure")
    svc = ScriptedService(
        [
            _cluster("slow", now - timedelta(seconds=10)),
            _cluster("ok", now - timedelta(seconds=10)),
            _cluster("fast", now - timedelta(seconds=10)),
        ],
        delays={"slow": 0.3, "ok": 0.1, "fast": 0.0},
        errors={"slow": slow_err, "fast": fast_err},
    )
    with pytest.raises(RuntimeError) as excinfo:
        _reconciler(svc, now).sweep()
    assert excinfo.value is fast_err
    assert sorted(svc.finished) == ["fast", "ok", "slow"]


def test_listing_failure_aborts_sweep(now):
    class BrokenService(ScriptedService):
        def list_all(self, ctx):
            raise OSError("registry unavailable")

    svc = BrokenService([_cluster("a", now - timedelta(seconds=10))])
    with pytest.raises(OSError):
        _reconciler(svc, now).sweep()
    assert svc.killed == []


def test_stale_cluster_surfaces_not_found(service, make_cluster, now):
    make_cluster("gone", ttl=timedelta(seconds=-5))
    stale = service.store.get_cluster("gone")
    service.kill(system_context(), "gone")

    class StaleSnapshot:
        def list_all(self, ctx):
            return [stale]

        def kill(self, ctx, cluster_id):
            return service.kill(ctx, cluster_id)

    with pytest.raises(ClusterNotFoundError):
        _reconciler(StaleSnapshot(), now).sweep()


class _TracingReconciler(Reconciler):
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.sweeps = 0
        self.swept = threading.Event()

    def sweep(self):
        self.service.log.append("sweep-start")
        try:
            return super().sweep()
        finally:
            self.service.log.append("sweep-end")
            self.sweeps += 1
            if self.sweeps >= 3:
                self.swept.set()


def test_sweeps_never_overlap():
    class FreshExpiry(ScriptedService):
        def list_all(self, ctx):
            super().list_all(ctx)
            n = self.list_calls
            return [_cluster(f"x{n}-{i}", utc_now() - timedelta(seconds=1)) for i in range(3)]

        def kill(self, ctx, cluster_id):
            time.sleep(0.02)
            super().kill(ctx, cluster_id)

    svc = FreshExpiry()
    rec = _TracingReconciler(svc, system_context(), interval_s=0.001)
    rec.start()
    assert rec.swept.wait(5)
    rec.stop()

    # Every listing and every teardown must sit inside exactly one sweep.
    in_sweep = False
    kills_in_sweep = 0
    for entry in list(svc.log):
        if entry == "sweep-start":
            assert not in_sweep
            in_sweep = True
            kills_in_sweep = 0
        elif entry == "sweep-end":
            assert in_sweep
            assert kills_in_sweep == 3
            in_sweep = False
        else:
            assert in_sweep
            if entry != "list":
                kills_in_sweep += 1
    assert not in_sweep


def test_stop_is_acknowledged_without_sweeping(now):
    svc = ScriptedService([_cluster("a", now - timedelta(seconds=10))])
    rec = _reconciler(svc, now, interval_s=60)
    rec.start()
    started = time.monotonic()
    rec.stop()
    assert time.monotonic() - started < 5
    assert rec.wait_stopped(0)
    assert svc.list_calls == 0


def test_stop_waits_for_running_sweep_to_finish(now):
    release = threading.Event()
    entered = threading.Event()

    class BlockingService(ScriptedService):
        def kill(self, ctx, cluster_id):
            entered.set()
            release.wait(5)
            super().kill(ctx, cluster_id)

    svc = BlockingService([_cluster("a", now - timedelta(seconds=10))])
    rec = _reconciler(svc, now, interval_s=0.001)
    rec.start()
    assert entered.wait(5)

    rec.request_shutdown()
    assert rec.wait_stopped(0.2) is False

    release.set()
    assert rec.wait_stopped(5) is True
    assert "a" in svc.finished


def test_loop_survives_failed_sweep_and_records_event(store, now):
    class FlakyService(ScriptedService):
        def list_all(self, ctx):
            n = super().list_all(ctx)
            if self.list_calls == 1:
                raise OSError("registry unavailable")
            return n

    svc = FlakyService([_cluster("a", now - timedelta(seconds=10))])
    rec = _reconciler(svc, now, interval_s=0.001, events=store)
    rec.start()
    deadline = time.monotonic() + 5
    while "a" not in svc.finished and time.monotonic() < deadline:
        time.sleep(0.01)
    rec.stop()

    assert "a" in svc.finished
    messages = [e["message"] for e in store.latest_events(limit=100000)]
    assert any("Failed to cleanup old clusters" in m for m in messages)
    assert "Reconciler started" in messages


def test_stop_without_start_returns_immediately(now):
    rec = _reconciler(ScriptedService(), now)
    rec.stop()
    assert rec.wait_stopped(0)


def test_reconciler_can_be_restarted_after_stop(now):
    svc = ScriptedService([])
    rec = _reconciler(svc, now, interval_s=60)
    rec.start()
    rec.stop()
    assert svc.list_calls == 0

    rec.interval_s = 0.001
    rec.start()
    deadline = time.monotonic() + 5
    while svc.list_calls == 0 and time.monotonic() < deadline:
        time.sleep(0.01)
    rec.stop()
    assert svc.list_calls > 0
    assert rec.wait_stopped(0)
