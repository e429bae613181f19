from __future__ import annotations

import logging
import queue
from datetime import datetime
from threading import Event, Thread
from typing import Callable

from .clusters import ClusterService
from .context import ActorContext
from .db import MetaDataStore, utc_now
from .errors import DynClusterError

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_S = 300


class Reconciler:
    """Periodically tears down clusters whose timeout has passed.

    A single loop thread alternates between waiting and sweeping, so two
    sweeps never overlap: a slow sweep only delays the next one. Within a
    sweep every expired cluster is killed on its own thread.
    """

    def __init__(
        self,
        service: ClusterService,
        ctx: ActorContext,
        interval_s: float = DEFAULT_INTERVAL_S,
        clock: Callable[[], datetime] = utc_now,
        events: MetaDataStore | None = None,
    ):
        self.service = service
        self.ctx = ctx
        self.interval_s = interval_s
        self.clock = clock
        self.events = events
        self._shutdown = Event()
        self._stopped = Event()
        self._thr: Thread | None = None

    def start(self) -> None:
        """Start the loop thread; a stopped reconciler can be started again."""
        if self._thr is not None and self._thr.is_alive() and not self._stopped.is_set():
            return
        self._shutdown.clear()
        self._stopped.clear()
        self._thr = Thread(target=self._loop, name="reconciler", daemon=True)
        self._thr.start()

    def request_shutdown(self) -> None:
        self._shutdown.set()

    def wait_stopped(self, timeout: float | None = None) -> bool:
        if self._thr is None:
            return True
        return self._stopped.wait(timeout)

    def stop(self) -> None:
        """Ask the loop to exit and block until it acknowledges."""
        self.request_shutdown()
        self.wait_stopped()

    def _loop(self) -> None:
        self._event("INFO", "Reconciler started")
        try:
            # The shutdown request is only observed here, between sweeps.
            while not self._shutdown.wait(self.interval_s):
                try:
                    self.sweep()
                except Exception as e:
                    logger.error("Failed to cleanup old clusters: %s: %s", type(e).__name__, e)
                    self._event("ERROR", f"Failed to cleanup old clusters: {type(e).__name__}: {e}")
        finally:
            self._stopped.set()

    def sweep(self) -> list[str]:
        """Kill every cluster that expired before this sweep's sampled time.

        Waits for every kill to report. Raises the first failure in arrival
        order once all kills have finished; otherwise returns the ids that
        were torn down.
        """
        logger.info("Cleaning up dead clusters")

        clusters = self.service.list_all(self.ctx)
        now = self.clock()
        expired = list(dict.fromkeys(c.id for c in clusters if c.expired_at(now)))
        if not expired:
            return []

        self._event("INFO", f"Sweep found {len(expired)} expired clusters")
        results: queue.Queue[tuple[str, BaseException | None]] = queue.Queue(maxsize=len(expired))

        for cluster_id in expired:
            Thread(
                target=self._kill_one,
                args=(cluster_id, results),
                name=f"teardown-{cluster_id}",
                daemon=True,
            ).start()

        first_error: BaseException | None = None
        for _ in expired:
            cluster_id, err = results.get()
            if err is None:
                continue
            logger.warning("Failed to kill expired cluster %s: %s", cluster_id, err)
            if first_error is None:
                first_error = err

        if first_error is not None:
            raise first_error
        return expired

    def _kill_one(self, cluster_id: str, results: queue.Queue[tuple[str, BaseException | None]]) -> None:
        try:
            self.service.kill(self.ctx, cluster_id)
        except Exception as e:
            results.put((cluster_id, e))
            return
        results.put((cluster_id, None))

    def _event(self, level: str, message: str) -> None:
        if self.events is None:
            return
        try:
            self.events.log_event(level, message)
        except DynClusterError as e:
            logger.debug("Could not record event %r: %s", message, e)
